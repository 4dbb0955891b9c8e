"""
In-memory model of an already sliced print.

Only what tool ordering needs is kept: per layer region filament settings,
extrusion collections with their role and volume, first layer island
contours and the custom G-code timeline. Extrusion collections and objects
are compared by identity, so they can key the wiping override tables.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from shapely.geometry import Polygon
from shapely.ops import unary_union

from .config import ObjectConfig, PrintConfig, RegionConfig
from .utils import EPSILON


class ExtrusionRole(str, Enum):
    NONE = 'none'
    PERIMETER = 'perimeter'
    EXTERNAL_PERIMETER = 'external_perimeter'
    OVERHANG_PERIMETER = 'overhang_perimeter'
    INTERNAL_INFILL = 'internal_infill'
    SOLID_INFILL = 'solid_infill'
    TOP_SOLID_INFILL = 'top_solid_infill'
    BOTTOM_SURFACE = 'bottom_surface'
    IRONING = 'ironing'
    BRIDGE_INFILL = 'bridge_infill'
    GAP_FILL = 'gap_fill'
    SUPPORT_MATERIAL = 'support_material'
    SUPPORT_MATERIAL_INTERFACE = 'support_material_interface'
    SUPPORT_TRANSITION = 'support_transition'
    MIXED = 'mixed'


SOLID_INFILL_ROLES = {
    ExtrusionRole.SOLID_INFILL,
    ExtrusionRole.TOP_SOLID_INFILL,
    ExtrusionRole.BOTTOM_SURFACE,
    ExtrusionRole.IRONING,
    ExtrusionRole.BRIDGE_INFILL,
}


def is_solid_infill(role: ExtrusionRole) -> bool:
    return role in SOLID_INFILL_ROLES


def is_infill(role: ExtrusionRole) -> bool:
    return role == ExtrusionRole.INTERNAL_INFILL or role in SOLID_INFILL_ROLES


def is_support_body(role: ExtrusionRole) -> bool:
    return role in (ExtrusionRole.SUPPORT_MATERIAL, ExtrusionRole.SUPPORT_TRANSITION)


@dataclass(eq=False)
class ExtrusionEntity:
    role: ExtrusionRole
    volume: float = 0.0


@dataclass(eq=False)
class ExtrusionCollection:
    """One island's perimeters or one island's fill."""
    entities: List[ExtrusionEntity] = field(default_factory=list)

    @property
    def role(self) -> ExtrusionRole:
        roles = {e.role for e in self.entities}
        if not roles:
            return ExtrusionRole.NONE
        if len(roles) == 1:
            return next(iter(roles))
        return ExtrusionRole.MIXED

    @property
    def first_role(self) -> ExtrusionRole:
        return self.entities[0].role if self.entities else ExtrusionRole.NONE

    def total_volume(self) -> float:
        return sum(e.volume for e in self.entities)


@dataclass(eq=False)
class LayerRegion:
    region: RegionConfig
    perimeters: List[ExtrusionCollection] = field(default_factory=list)
    fills: List[ExtrusionCollection] = field(default_factory=list)
    raw_slices: List[Polygon] = field(default_factory=list)


@dataclass(eq=False)
class Layer:
    print_z: float
    height: float
    regions: List[LayerRegion] = field(default_factory=list)

    def has_extrusions(self) -> bool:
        return any(r.perimeters or r.fills for r in self.regions)


@dataclass(eq=False)
class SupportLayer:
    print_z: float
    height: float
    support_fills: ExtrusionCollection = field(default_factory=ExtrusionCollection)


@dataclass(eq=False)
class PrintObject:
    id: int
    config: ObjectConfig = field(default_factory=ObjectConfig)
    layers: List[Layer] = field(default_factory=list)
    support_layers: List[SupportLayer] = field(default_factory=list)
    instances: int = 1
    print: Optional['Print'] = field(default=None, repr=False)
    first_layer_wall_extruders: List[int] = field(default_factory=list)

    def get_layer_at_printz(self, print_z: float, epsilon: float = EPSILON) -> Optional[Layer]:
        for layer in self.layers:
            if abs(layer.print_z - print_z) < epsilon:
                return layer
        return None

    def get_support_layer_at_printz(self, print_z: float, epsilon: float = EPSILON) -> Optional[SupportLayer]:
        for layer in self.support_layers:
            if abs(layer.print_z - print_z) < epsilon:
                return layer
        return None

    def extruders(self) -> List[int]:
        """One-based filaments configured for this object's regions and support."""
        used = set()
        for layer in self.layers:
            for layerm in layer.regions:
                used.update((layerm.region.wall_filament,
                             layerm.region.sparse_infill_filament,
                             layerm.region.solid_infill_filament))
        if self.support_layers:
            used.update(f for f in (self.config.support_filament,
                                    self.config.support_interface_filament) if f > 0)
        return sorted(used)

    def footprint(self):
        """Union of every island contour over all layers."""
        polys = [poly for layer in self.layers for layerm in layer.regions for poly in layerm.raw_slices]
        return unary_union(polys) if polys else Polygon()


class CustomGCodeType(str, Enum):
    COLOR_CHANGE = 'color_change'
    PAUSE_PRINT = 'pause_print'
    TOOL_CHANGE = 'tool_change'
    CUSTOM = 'custom'
    TEMPLATE = 'template'


class CustomGCodeMode(str, Enum):
    SINGLE_EXTRUDER = 'single_extruder'
    MULTI_AS_SINGLE = 'multi_as_single'
    MULTI_EXTRUDER = 'multi_extruder'


@dataclass(frozen=True)
class CustomGCodeItem:
    print_z: float
    type: CustomGCodeType
    extruder: int = 0  # one-based, 0 = current
    color: str = ''
    extra: str = ''


@dataclass
class CustomGCodeInfo:
    mode: CustomGCodeMode = CustomGCodeMode.SINGLE_EXTRUDER
    gcodes: List[CustomGCodeItem] = field(default_factory=list)


def custom_tool_changes(info: CustomGCodeInfo, num_filaments: int):
    """Per-layer tool switches from the timeline as ``(print_z, one-based filament)``."""
    return [(item.print_z, item.extruder) for item in sorted(info.gcodes, key=lambda g: g.print_z)
            if item.type == CustomGCodeType.TOOL_CHANGE and 0 < item.extruder <= num_filaments]


@dataclass(eq=False)
class Print:
    config: PrintConfig
    objects: List[PrintObject] = field(default_factory=list)
    custom_gcodes: CustomGCodeInfo = field(default_factory=CustomGCodeInfo)
    # Colours loaded in the feed slots of each extruder, '#RRGGBB'
    extruder_filament_colours: List[List[str]] = field(default_factory=list)
    # One-based filament ids each extruder cannot reach, None = derive from geometry
    unprintable_filament_ids: Optional[List[List[int]]] = None

    def __post_init__(self):
        for obj in self.objects:
            obj.print = self

    def add_object(self, obj: PrintObject) -> PrintObject:
        obj.print = self
        self.objects.append(obj)
        return obj

    def object_extruders(self) -> List[int]:
        """One-based filaments used by all objects."""
        used = set()
        for obj in self.objects:
            used.update(obj.extruders())
        return sorted(used)

    def get_filament_maps(self) -> List[int]:
        return list(self.config.filament_map)

    def update_filament_maps_to_config(self, filament_maps: List[int]) -> None:
        """Persist a one-based filament -> extruder map."""
        self.config.filament_map = list(filament_maps)