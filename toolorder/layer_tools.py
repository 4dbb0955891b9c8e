from typing import List, Optional

from .config import RegionConfig
from .model import CustomGCodeItem, ExtrusionCollection, is_infill, is_solid_infill
from .wiping import WipingExtrusions

# One-based placeholder for "any extruder will do", resolved when reordering.
DONT_CARE = 0


class LayerTools:
    """Tool plan of one print height."""

    def __init__(self, print_z: float):
        self.print_z = print_z
        self.has_object = False
        self.has_support = False
        # Zero-based filament ids in printing order once ToolOrdering is done.
        self.extruders: List[int] = []
        # One-based filament forced on every region of this layer, None if not overridden.
        self.extruder_override: Optional[int] = None
        self.has_skirt = False
        self.has_wipe_tower = False
        self.wipe_tower_partitions = 0
        self.wipe_tower_layer_height = 0.
        self.custom_gcode: Optional[CustomGCodeItem] = None
        self._wiping_extrusions = WipingExtrusions(self)

    def __lt__(self, other: 'LayerTools') -> bool:
        return self.print_z < other.print_z

    def __repr__(self) -> str:
        return f"LayerTools(print_z={self.print_z:.4f}, extruders={self.extruders})"

    def wiping_extrusions(self) -> WipingExtrusions:
        return self._wiping_extrusions

    def is_extruder_order(self, a: int, b: int) -> bool:
        """True if extruder ``a`` prints before ``b`` on this layer (``b`` need not print)."""
        if a == b:
            return False
        for extruder in self.extruders:
            if extruder == a:
                return True
            if extruder == b:
                return False
        return False

    def has_extruder(self, extruder: int) -> bool:
        return extruder in self.extruders

    def _resolve(self, configured: int) -> int:
        return (configured if self.extruder_override is None else self.extruder_override) - 1

    def wall_filament(self, region: RegionConfig) -> int:
        return self._resolve(region.wall_filament)

    def sparse_infill_filament(self, region: RegionConfig) -> int:
        return self._resolve(region.sparse_infill_filament)

    def solid_infill_filament(self, region: RegionConfig) -> int:
        return self._resolve(region.solid_infill_filament)

    def extruder(self, extrusions: ExtrusionCollection, region: RegionConfig) -> int:
        """Zero-based filament printing ``extrusions`` of ``region`` on this layer."""
        if self.extruder_override is not None:
            extruder = self.extruder_override
        elif is_infill(extrusions.role):
            extruder = (region.solid_infill_filament if is_solid_infill(extrusions.first_role)
                        else region.sparse_infill_filament)
        else:
            extruder = region.wall_filament
        return 0 if extruder == 0 else extruder - 1
