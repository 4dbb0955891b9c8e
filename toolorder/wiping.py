"""
Purging into objects.

When a layer switches from one filament to another, the old filament left in
the nozzle must be purged. Instead of dumping all of it on the wipe tower,
extrusions the user allowed for it (infill, perimeters of dedicated objects,
auto-selected support) are printed with the new filament. This module keeps
the per layer table of such substitutions.
"""

from typing import Dict, List, Optional, Tuple

from .config import PrintConfig, RegionConfig
from .log_utils import get_logger
from .model import (ExtrusionCollection, ExtrusionRole, Print, PrintObject, is_support_body)
from .utils import EPSILON

logger = get_logger(__name__)

# Ignore infill with a smaller volume than this.
MIN_INFILL_VOLUME = 0.0


class WipingExtrusions:
    def __init__(self, layer_tools):
        self._layer_tools = layer_tools
        # Set when an extrusion that could be overridden was found while collecting.
        self.something_overridable = False
        self.something_overridden = False
        # (collection, object) -> zero-based extruder per instance copy, None = print as usual
        self._entity_map: Dict[Tuple[ExtrusionCollection, PrintObject], List[Optional[int]]] = {}
        self._support_map: Dict[PrintObject, int] = {}
        self._support_intf_map: Dict[PrintObject, int] = {}

    def is_anything_overridden(self) -> bool:
        return self.something_overridden

    def is_entity_overridden(self, entity: ExtrusionCollection, obj: PrintObject, copy_id: int) -> bool:
        copies = self._entity_map.get((entity, obj))
        return copies is not None and copy_id < len(copies) and copies[copy_id] is not None

    def is_support_overridden(self, obj: PrintObject) -> bool:
        return obj in self._support_map

    def is_support_interface_overridden(self, obj: PrintObject) -> bool:
        return obj in self._support_intf_map

    def set_extruder_override(self, entity: ExtrusionCollection, obj: PrintObject, copy_id: int,
                              extruder: int, num_of_copies: int) -> None:
        self.something_overridden = True
        copies = self._entity_map.setdefault((entity, obj), [])
        if len(copies) < num_of_copies:
            copies.extend([None] * (num_of_copies - len(copies)))
        if copies[copy_id] is not None:
            logger.error(f"Extrusion of object {obj.id} copy {copy_id} overridden multiple times")
        copies[copy_id] = extruder

    def set_support_extruder_override(self, obj: PrintObject, extruder: int) -> None:
        self.something_overridden = True
        self._support_map.setdefault(obj, extruder)

    def set_support_interface_extruder_override(self, obj: PrintObject, extruder: int) -> None:
        self.something_overridden = True
        self._support_intf_map.setdefault(obj, extruder)

    def _is_wipeable(self, extruder: int, config: PrintConfig) -> bool:
        return not config.filament_soluble[extruder] and not config.filament_is_support[extruder]

    def first_nonsoluble_extruder_on_layer(self, config: PrintConfig) -> Optional[int]:
        for extruder in self._layer_tools.extruders:
            if self._is_wipeable(extruder, config):
                return extruder
        return None

    def last_nonsoluble_extruder_on_layer(self, config: PrintConfig) -> Optional[int]:
        for extruder in reversed(self._layer_tools.extruders):
            if self._is_wipeable(extruder, config):
                return extruder
        return None

    def is_overriddable(self, eec: ExtrusionCollection, config: PrintConfig,
                        obj: PrintObject, region: RegionConfig) -> bool:
        """Whether ``eec`` may be printed with another filament to purge the nozzle."""
        extruder = self._layer_tools.extruder(eec, region)
        if extruder < config.filament_count and not self._is_wipeable(extruder, config):
            return False
        if obj.config.flush_into_objects:
            return True
        return obj.config.flush_into_infill and eec.role == ExtrusionRole.INTERNAL_INFILL

    def is_overriddable_and_mark(self, eec: ExtrusionCollection, config: PrintConfig,
                                 obj: PrintObject, region: RegionConfig) -> bool:
        out = self.is_overriddable(eec, config, obj, region)
        self.something_overridable |= out
        return out

    def is_support_overriddable(self, role: ExtrusionRole, obj: PrintObject) -> bool:
        object_config = obj.config
        if not object_config.flush_into_support:
            return False
        if role == ExtrusionRole.MIXED:
            return object_config.support_filament == 0 or object_config.support_interface_filament == 0
        if is_support_body(role):
            return object_config.support_filament == 0
        if role == ExtrusionRole.SUPPORT_MATERIAL_INTERFACE:
            return object_config.support_interface_filament == 0
        return False

    def is_support_overriddable_and_mark(self, role: ExtrusionRole, obj: PrintObject) -> bool:
        out = self.is_support_overriddable(role, obj)
        self.something_overridable |= out
        return out

    def mark_wiping_extrusions(self, print_: Print, old_extruder: int, new_extruder: int,
                               volume_to_wipe: float) -> float:
        """
        Print extrusions of this layer with ``new_extruder`` to purge ``old_extruder``.

        Objects dedicated to purging are scanned first, then every object again,
        so neighbouring infills of one object are taken together.

        Args:
            print_: The print being ordered
            old_extruder: Zero-based filament being unloaded
            new_extruder: Zero-based filament being loaded
            volume_to_wipe: Purge volume required by the change in mm3

        Returns:
            Volume still to be purged on the wipe tower
        """
        lt = self._layer_tools
        config = print_.config

        if not self.something_overridable or volume_to_wipe <= 0.:
            return max(0., volume_to_wipe)
        # Soluble and support filaments can neither be purged into objects nor follow such a purge.
        if not self._is_wipeable(old_extruder, config) or not self._is_wipeable(new_extruder, config):
            return max(0., volume_to_wipe)

        object_list = sorted(print_.objects, key=lambda o: (not o.config.flush_into_objects, o.id))
        is_infill_first = config.is_infill_first

        for perimeters_done in (False, True):
            for obj in object_list:
                object_config = obj.config
                if not perimeters_done and not object_config.flush_into_objects:
                    break

                this_layer = obj.get_layer_at_printz(lt.print_z, EPSILON)
                if this_layer is None:
                    continue

                num_of_copies = obj.instances
                for copy_id in range(num_of_copies):
                    for layerm in this_layer.regions:
                        region = layerm.region
                        if not (object_config.flush_into_infill or object_config.flush_into_objects
                                or object_config.flush_into_support):
                            continue
                        wipe_into_infill_only = not object_config.flush_into_objects and object_config.flush_into_infill

                        if is_infill_first != perimeters_done or wipe_into_infill_only:
                            for fill in layerm.fills:
                                if not self.is_overriddable(fill, config, obj, region):
                                    continue
                                # The infill may only take the new filament once its perimeter is printed.
                                if wipe_into_infill_only and not is_infill_first:
                                    if not lt.is_extruder_order(lt.wall_filament(region), new_extruder):
                                        continue
                                if not self.is_entity_overridden(fill, obj, copy_id) \
                                        and fill.total_volume() > MIN_INFILL_VOLUME:
                                    self.set_extruder_override(fill, obj, copy_id, new_extruder, num_of_copies)
                                    volume_to_wipe -= fill.total_volume()
                                    if volume_to_wipe <= 0.:
                                        return 0.

                        if object_config.flush_into_objects and is_infill_first == perimeters_done:
                            for perimeter in layerm.perimeters:
                                if self.is_overriddable(perimeter, config, obj, region) \
                                        and not self.is_entity_overridden(perimeter, obj, copy_id) \
                                        and perimeter.total_volume() > MIN_INFILL_VOLUME:
                                    self.set_extruder_override(perimeter, obj, copy_id, new_extruder, num_of_copies)
                                    volume_to_wipe -= perimeter.total_volume()
                                    if volume_to_wipe <= 0.:
                                        return 0.

                    if object_config.flush_into_support:
                        volume_to_wipe = self._mark_support(obj, old_extruder, new_extruder, volume_to_wipe)
                        if volume_to_wipe <= 0.:
                            return 0.

        return volume_to_wipe

    def _mark_support(self, obj: PrintObject, old_extruder: int, new_extruder: int,
                      volume_to_wipe: float) -> float:
        object_config = obj.config
        support_layer = obj.get_support_layer_at_printz(self._layer_tools.print_z, EPSILON)
        if support_layer is None:
            return volume_to_wipe

        support_overriddable = object_config.support_filament == 0
        intf_overriddable = object_config.support_interface_filament == 0
        entities = support_layer.support_fills.entities

        # A pinned interface filament must not end up in the support body.
        interface_filament = object_config.support_interface_filament - 1
        body_forbidden = (object_config.support_interface_not_for_body and not intf_overriddable
                          and interface_filament in (new_extruder, old_extruder))
        if support_overriddable and not self.is_support_overridden(obj) and not body_forbidden:
            self.set_support_extruder_override(obj, new_extruder)
            for entity in entities:
                if is_support_body(entity.role):
                    volume_to_wipe -= entity.volume
                if volume_to_wipe <= 0.:
                    return 0.

        if intf_overriddable and not self.is_support_interface_overridden(obj):
            self.set_support_interface_extruder_override(obj, new_extruder)
            for entity in entities:
                if entity.role == ExtrusionRole.SUPPORT_MATERIAL_INTERFACE:
                    volume_to_wipe -= entity.volume
                if volume_to_wipe <= 0.:
                    return 0.

        return volume_to_wipe

    def ensure_perimeters_infills_order(self, print_: Print) -> None:
        """
        Force every extrusion that could have been used for purging, but was
        not, onto a filament that actually prints on this layer.

        Left alone it could print before its perimeter, or with a filament
        this layer never loads.
        """
        if not self.something_overridable:
            return

        lt = self._layer_tools
        config = print_.config
        is_infill_first = config.is_infill_first
        first_nonsoluble = self.first_nonsoluble_extruder_on_layer(config)
        last_nonsoluble = self.last_nonsoluble_extruder_on_layer(config)
        if first_nonsoluble is None:
            return

        for obj in print_.objects:
            this_layer = obj.get_layer_at_printz(lt.print_z, EPSILON)
            if this_layer is None:
                continue
            num_of_copies = obj.instances

            for copy_id in range(num_of_copies):
                for layerm in this_layer.regions:
                    region = layerm.region
                    if not obj.config.flush_into_infill and not obj.config.flush_into_objects:
                        continue

                    for fill in layerm.fills:
                        if not self.is_overriddable(fill, config, obj, region) \
                                or self.is_entity_overridden(fill, obj, copy_id):
                            continue
                        if (is_infill_first
                                or lt.is_extruder_order(lt.wall_filament(region), last_nonsoluble)
                                or not lt.has_extruder(lt.sparse_infill_filament(region))):
                            self.set_extruder_override(fill, obj, copy_id,
                                                       first_nonsoluble if is_infill_first else last_nonsoluble,
                                                       num_of_copies)

                    for perimeter in layerm.perimeters:
                        if self.is_overriddable(perimeter, config, obj, region) \
                                and not self.is_entity_overridden(perimeter, obj, copy_id):
                            self.set_extruder_override(perimeter, obj, copy_id,
                                                       last_nonsoluble if is_infill_first else first_nonsoluble,
                                                       num_of_copies)

    def get_extruder_overrides(self, entity: ExtrusionCollection, obj: PrintObject,
                               correct_extruder_id: int, num_of_copies: int) -> Optional[List[Tuple[int, bool]]]:
        """
        Extruder used for each instance copy of ``entity``.

        Returns:
            None if the entity is not overridden on any copy, otherwise one
            ``(extruder, overridden)`` pair per copy; copies printed as usual
            get ``correct_extruder_id``.
        """
        copies = self._entity_map.get((entity, obj))
        if copies is None:
            return None
        if len(copies) < num_of_copies:
            copies.extend([None] * (num_of_copies - len(copies)))
        return [(correct_extruder_id, False) if extruder is None else (extruder, True)
                for extruder in copies[:num_of_copies]]

    def get_support_extruder_overrides(self, obj: PrintObject) -> Optional[int]:
        return self._support_map.get(obj)

    def get_support_interface_extruder_overrides(self, obj: PrintObject) -> Optional[int]:
        return self._support_intf_map.get(obj)
