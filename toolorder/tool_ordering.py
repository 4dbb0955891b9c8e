"""
Tool ordering driver.

Builds the list of ``LayerTools`` for a print (all objects layer by layer) or
for a single object (sequential printing), and runs the fixed pipeline over
it: collect the filaments each height needs, order them, group filaments onto
physical extruders, mark wipe tower and skirt layers and attach the custom
G-code events.

Filament ids are one-based while collecting and zero-based afterwards; the
switch happens in ``reorder_extruders``.
"""

import bisect
from dataclasses import replace
from enum import Enum
from typing import Dict, List, Optional, Sequence, Set, Tuple

from shapely.geometry import Polygon

from .config import (FilamentMapMode, PrintConfig, PrintSequence, TimelapseType, build_flush_matrices,
                     calc_max_layer_height, group_capacities)
from .errors import ConfigurationInconsistent, EmptyFirstLayer, GroupingInfeasible
from .grouping import (FilamentGroupContext, check_tpu_group, collect_sorted_used_filaments,
                       recommend_filament_maps)
from .layer_tools import DONT_CARE, LayerTools
from .log_utils import get_logger
from .model import (CustomGCodeItem, CustomGCodeMode, CustomGCodeType, ExtrusionRole, Print, PrintObject,
                    custom_tool_changes, is_solid_infill, is_support_body)
from .sequencer import (CustomSequenceFn, FilamentChangeStats, calc_filament_change_info_by_toolorder,
                        reorder_filaments_for_minimum_flush_volume)
from .unprintable import TPU_TYPE, get_filament_by_type, unprintables_for_print
from .utils import EPSILON, sort_remove_duplicates, timed

logger = get_logger(__name__)


class FilamentChangeMode(str, Enum):
    SINGLE_EXT = 'single_ext'
    MULTI_EXT_AUTO = 'multi_ext_auto'
    MULTI_EXT_MANUAL = 'multi_ext_manual'


class ToolOrdering:
    def __init__(self, print_: Print, processes: Optional[int] = None):
        self.print_ = print_
        self.processes = processes
        self.layer_tools: List[LayerTools] = []
        # print_z of every layer record, kept in step with layer_tools
        self._zs: List[float] = []
        # Zero-based extruder of every filament, set by the flush volume reordering.
        self.filament_maps: List[int] = []
        self.first_printing_extruder: Optional[int] = None
        self.last_printing_extruder: Optional[int] = None
        self.all_printing_extruders: List[int] = []
        self.warnings: List[Warning] = []
        self._stats: Dict[FilamentChangeMode, FilamentChangeStats] = {
            mode: FilamentChangeStats() for mode in FilamentChangeMode}
        # Overridability is only evaluated when all objects print layer by layer.
        self._by_layer = False

    @property
    def config(self) -> PrintConfig:
        return self.print_.config

    def __len__(self) -> int:
        return len(self.layer_tools)

    def __iter__(self):
        return iter(self.layer_tools)

    def empty(self) -> bool:
        return not self.layer_tools

    @classmethod
    @timed
    def for_print(cls, print_: Print, first_extruder: Optional[int] = None,
                  prime_multi_material: bool = False, processes: Optional[int] = None) -> 'ToolOrdering':
        """
        Tool ordering of all objects printed at once.

        Args:
            print_: Sliced print
            first_extruder: Zero-based filament loaded before the print starts,
                None to derive the first layer order from its islands
            prime_multi_material: Prime every used filament before printing
            processes: Worker processes for the group optimizer

        Raises:
            GroupingInfeasible: No filament grouping satisfies the printer's constraints
            ConfigurationInconsistent: The manual filament map is invalid
        """
        ordering = cls(print_, processes=processes)
        ordering._by_layer = True
        config = print_.config

        object_bottom_z = 0.
        max_layer_height = 0.
        zs = []
        for obj in print_.objects:
            zs.extend(layer.print_z for layer in obj.layers)
            zs.extend(layer.print_z for layer in obj.support_layers)
            # Layers below the first printing object layer belong to a raft.
            for layer in obj.layers:
                if layer.has_extrusions():
                    object_bottom_z = max(object_bottom_z, layer.print_z - layer.height)
                    break
            max_layer_height = max(max_layer_height, obj.config.layer_height)
        ordering.initialize_layers(zs)
        max_layer_height = calc_max_layer_height(config, max_layer_height)

        # Tool changes of a single filament plate on a multi filament printer
        # switch the filament the objects are printed with.
        per_layer_extruder_switches = []
        num_filaments = config.filament_count
        if num_filaments > 1 and len(print_.object_extruders()) == 1 \
                and print_.custom_gcodes.mode == CustomGCodeMode.MULTI_AS_SINGLE:
            per_layer_extruder_switches = custom_tool_changes(print_.custom_gcodes, num_filaments)

        for obj in print_.objects:
            ordering.collect_extruders(obj, per_layer_extruder_switches)

        first_layer_tool_order = []
        if first_extruder is None:
            first_layer_tool_order = ordering.generate_first_layer_tool_order(
                print_.objects, config.initial_layer_line_width)
        if first_layer_tool_order:
            ordering.reorder_extruders_with_first_layer(first_layer_tool_order)
        else:
            ordering.reorder_extruders(first_extruder)

        ordering.fill_wipe_tower_partitions(config, object_bottom_z, max_layer_height)
        ordering.collect_extruder_statistics(prime_multi_material)
        ordering.mark_skirt_layers(config, max_layer_height)
        if config.print_sequence == PrintSequence.BY_LAYER:
            ordering.assign_custom_gcodes(print_)
        return ordering

    @classmethod
    @timed
    def for_object(cls, obj: PrintObject, first_extruder: Optional[int] = None,
                   prime_multi_material: bool = False, processes: Optional[int] = None) -> 'ToolOrdering':
        """Tool ordering of one object printed on its own (sequential printing)."""
        print_ = obj.print
        if print_ is None:
            raise ValueError(f"Object {obj.id} does not belong to a print")
        ordering = cls(print_, processes=processes)
        if not obj.layers:
            return ordering

        config = print_.config
        ordering.initialize_layers([layer.print_z for layer in obj.layers]
                                   + [layer.print_z for layer in obj.support_layers])
        max_layer_height = calc_max_layer_height(config, obj.config.layer_height)

        ordering.collect_extruders(obj, [])

        if first_extruder is None:
            ordering.reorder_extruders_with_first_layer(
                ordering.generate_first_layer_tool_order([obj], obj.config.line_width))
        else:
            ordering.reorder_extruders(first_extruder)

        first_layer = obj.layers[0]
        ordering.fill_wipe_tower_partitions(config, first_layer.print_z - first_layer.height, max_layer_height)
        ordering.collect_extruder_statistics(prime_multi_material)
        ordering.mark_skirt_layers(config, max_layer_height)
        return ordering

    def initialize_layers(self, zs: Sequence[float]) -> None:
        """Create one LayerTools per height, averaging heights closer than EPSILON."""
        zs = sort_remove_duplicates(zs)
        i = 0
        while i < len(zs):
            # last height roughly equal to zs[i]
            j = i + 1
            zmax = zs[i] + EPSILON
            while j < len(zs) and zs[j] <= zmax:
                j += 1
            self.layer_tools.append(LayerTools(0.5 * (zs[i] + zs[j - 1])))
            i = j
        self._zs = [lt.print_z for lt in self.layer_tools]

    def tools_for_layer(self, print_z: float) -> LayerTools:
        """Layer record nearest to ``print_z``."""
        if not self.layer_tools:
            raise IndexError("Tool ordering has no layers")
        zs = self._zs
        idx = min(bisect.bisect_left(zs, print_z - EPSILON), len(zs) - 1)
        if idx > 0 and abs(zs[idx - 1] - print_z) < abs(zs[idx] - print_z):
            idx -= 1
        dist_min = abs(zs[idx] - print_z)
        for k in range(idx + 1, len(zs)):
            d = abs(zs[k] - print_z)
            if d >= dist_min:
                break
            dist_min = d
            idx = k
        return self.layer_tools[idx]

    def collect_extruders(self, obj: PrintObject, per_layer_extruder_switches: Sequence[Tuple[float, int]]) -> None:
        """
        Add the one-based filaments ``obj`` needs to every layer it prints on.

        When printing layer by layer, a region whose extrusions may all be used
        for purging does not force its own filament onto the layer.
        """
        config = self.config
        object_config = obj.config

        for support_layer in obj.support_layers:
            lt = self.tools_for_layer(support_layer.print_z)
            role = support_layer.support_fills.role
            has_support = role == ExtrusionRole.MIXED or is_support_body(role)
            has_interface = role in (ExtrusionRole.MIXED, ExtrusionRole.SUPPORT_MATERIAL_INTERFACE)
            if has_support:
                lt.extruders.append(object_config.support_filament)
            if has_interface:
                lt.extruders.append(object_config.support_interface_filament)
            if has_support or has_interface:
                lt.has_support = True
                lt.wiping_extrusions().is_support_overriddable_and_mark(role, obj)

        switches = iter(sorted(per_layer_extruder_switches))
        pending = next(switches, None)
        extruder_override = None
        first_layer_extruders = []

        for layer_idx, layer in enumerate(obj.layers):
            lt = self.tools_for_layer(layer.print_z)

            while pending is not None and pending[0] < layer.print_z + EPSILON:
                extruder_override = pending[1]
                pending = next(switches, None)
            # is_overriddable_and_mark() below resolves filaments through the override
            lt.extruder_override = extruder_override

            for layerm in layer.regions:
                region = layerm.region

                if layerm.perimeters:
                    something_nonoverriddable = True
                    if self._by_layer:
                        something_nonoverriddable = False
                        for eec in layerm.perimeters:
                            if not lt.wiping_extrusions().is_overriddable_and_mark(eec, config, obj, region):
                                something_nonoverriddable = True
                    if something_nonoverriddable:
                        wall = region.wall_filament if extruder_override is None else extruder_override
                        lt.extruders.append(wall)
                        if layer_idx == 0:
                            first_layer_extruders.append(wall)
                    lt.has_object = True

                has_infill = False
                has_solid_infill = False
                something_nonoverriddable = False
                for fill in layerm.fills:
                    role = fill.first_role
                    if is_solid_infill(role):
                        has_solid_infill = True
                    elif role != ExtrusionRole.NONE:
                        has_infill = True
                    if self._by_layer and not lt.wiping_extrusions().is_overriddable_and_mark(
                            fill, config, obj, region):
                        something_nonoverriddable = True

                if something_nonoverriddable or not self._by_layer:
                    if extruder_override is None:
                        if has_solid_infill:
                            lt.extruders.append(region.solid_infill_filament)
                        if has_infill:
                            lt.extruders.append(region.sparse_infill_filament)
                    elif has_solid_infill or has_infill:
                        lt.extruders.append(extruder_override)
                if has_solid_infill or has_infill:
                    lt.has_object = True

        obj.first_layer_wall_extruders = sort_remove_duplicates(first_layer_extruders)

        for lt in self.layer_tools:
            lt.extruders = sort_remove_duplicates(lt.extruders)
            # An object layer printed entirely by purging still needs a tool.
            if not lt.extruders and lt.has_object:
                lt.extruders.append(DONT_CARE)

    def generate_first_layer_tool_order(self, objects: Sequence[PrintObject], line_width: float) -> List[int]:
        """
        One-based wall filaments of the first layer, smallest island first.

        Islands too thin to survive an inward offset of a fifth of the line
        width are ignored. A configured first layer sequence, if it names every
        filament found, replaces the area order.
        """
        min_areas: Dict[int, float] = {}
        for obj in objects:
            if not obj.layers:
                continue
            for layerm in obj.layers[0].regions:
                extruder_id = layerm.region.wall_filament
                for island in layerm.raw_slices:
                    if island.buffer(-0.2 * line_width).is_empty:
                        continue
                    contour_area = Polygon(island.exterior.coords).area
                    if extruder_id not in min_areas or contour_area < min_areas[extruder_id]:
                        min_areas[extruder_id] = contour_area

        tool_order = sorted(min_areas, key=lambda e: (min_areas[e], e))

        sequence = self.config.first_layer_print_sequence
        if sequence and len(sequence) >= len(tool_order):
            tool_order.sort(key=lambda e: sequence.index(e) if e in sequence else len(sequence))
        return tool_order

    def _first_concrete_extruder(self, start: int = 0) -> int:
        for lt in self.layer_tools[start:]:
            for extruder_id in lt.extruders:
                if extruder_id != DONT_CARE:
                    return extruder_id
        return DONT_CARE

    def _chain_layers(self, start: int, last_extruder_id: int) -> None:
        """Start every layer from ``start`` on with the filament the layer below ended with."""
        for idx in range(start, len(self.layer_tools)):
            lt = self.layer_tools[idx]
            if not lt.extruders:
                continue
            if lt.extruders == [DONT_CARE]:
                lt.extruders[0] = last_extruder_id
            else:
                if lt.extruders[0] == DONT_CARE:
                    # merged with the next region
                    lt.extruders.pop(0)
                if last_extruder_id in lt.extruders[1:]:
                    lt.extruders.remove(last_extruder_id)
                    lt.extruders.insert(0, last_extruder_id)
                # A soluble filament goes first on the first layer so it is not purged there.
                if idx == 0 and self._by_layer and self.config.enable_prime_tower:
                    for i, extruder_id in enumerate(lt.extruders):
                        if self.config.filament_soluble[extruder_id - 1]:
                            lt.extruders[0], lt.extruders[i] = lt.extruders[i], lt.extruders[0]
                            break
            last_extruder_id = lt.extruders[-1]

    def _to_zero_based(self) -> None:
        for lt in self.layer_tools:
            lt.extruders = [extruder_id - 1 for extruder_id in lt.extruders]

    def reorder_extruders(self, last_extruder_id: Optional[int] = None) -> None:
        """
        Chain the layers starting from a known loaded filament.

        Args:
            last_extruder_id: Zero-based filament loaded before the first layer,
                None to start from the first filament the print uses
        """
        if not self.layer_tools:
            return
        if last_extruder_id is None:
            last_extruder_id = self._first_concrete_extruder()
            if last_extruder_id == DONT_CARE:
                # everything may print with any filament
                last_extruder_id = 1
        else:
            last_extruder_id += 1

        self._chain_layers(0, last_extruder_id)
        self._to_zero_based()
        # the chained first layer keeps its soluble filament in front
        self.reorder_extruders_for_minimum_flush_volume(reorder_first_layer=not self._soluble_goes_first())

    def _soluble_goes_first(self) -> bool:
        """Whether the chained first layer order, soluble filament first, must be kept."""
        if not (self._by_layer and self.config.enable_prime_tower and self.layer_tools):
            return False
        return any(self.config.filament_soluble[f] for f in self.layer_tools[0].extruders if f >= 0)

    def reorder_extruders_with_first_layer(self, tool_order_layer0: Sequence[int]) -> None:
        """Put the first layer in ``tool_order_layer0`` (one-based) and chain the rest."""
        if not self.layer_tools:
            return

        lt = self.layer_tools[0]
        remaining = list(lt.extruders)
        lt.extruders = [extruder_id for extruder_id in tool_order_layer0 if extruder_id in remaining]
        lt.extruders.extend(extruder_id for extruder_id in remaining
                            if extruder_id != DONT_CARE and extruder_id not in lt.extruders)
        if not lt.extruders and tool_order_layer0 and remaining:
            lt.extruders.append(tool_order_layer0[0])

        if lt.extruders:
            last_extruder_id = lt.extruders[-1]
        else:
            last_extruder_id = self._first_concrete_extruder(1)
            if last_extruder_id == DONT_CARE:
                last_extruder_id = 1

        self._chain_layers(1, last_extruder_id)
        self._to_zero_based()
        self.reorder_extruders_for_minimum_flush_volume(reorder_first_layer=False)

    def _custom_sequence_fn(self, first_layer_filaments: Optional[Sequence[int]]) -> CustomSequenceFn:
        """
        Per-layer one-based order override.

        Args:
            first_layer_filaments: Zero-based first layer order to keep, None to
                let the sequencer order the first layer too
        """
        other_layers_seqs = self.config.other_layers_sequences()

        def get_custom_seq(layer_idx: int) -> Optional[List[int]]:
            if first_layer_filaments is not None and layer_idx == 0:
                return [f + 1 for f in first_layer_filaments]
            # later ranges win
            for (begin, end), sequence in reversed(other_layers_seqs):
                if begin <= layer_idx + 1 <= end:
                    return list(sequence)
            return None

        return get_custom_seq

    def _filament_group_context(self, flush_matrices, used_filaments: Sequence[int],
                                physical: Sequence[Set[int]], geometric: Sequence[Set[int]]) -> FilamentGroupContext:
        config = self.config
        return FilamentGroupContext(
            flush_matrix=flush_matrices,
            max_group_size=tuple(group_capacities(config)),
            physical_unprintables=tuple(frozenset(s) for s in physical),
            geometric_unprintables=tuple(frozenset(s) for s in geometric),
            master_extruder_id=config.master_extruder,
            total_filament_num=config.filament_count,
            tpu_filaments=frozenset(get_filament_by_type(used_filaments, config, TPU_TYPE)),
        )

    def get_recommended_filament_maps(self, layer_filaments: Sequence[Sequence[int]], flush_matrices,
                                      physical: Sequence[Set[int]], geometric: Sequence[Set[int]]) -> List[int]:
        """Zero-based extruder of every filament chosen by the group optimizer."""
        config = self.config
        used_filaments = collect_sorted_used_filaments(layer_filaments)
        context = self._filament_group_context(flush_matrices, used_filaments, physical, geometric)
        used_colors = [config.filament_colour[f] for f in used_filaments]
        return recommend_filament_maps(layer_filaments, context, used_colors,
                                       self.print_.extruder_filament_colours,
                                       get_custom_seq=self._custom_sequence_fn(None),
                                       processes=self.processes)

    def _validate_manual_maps(self, filament_maps: Sequence[int], used_filaments: Sequence[int],
                              physical: Sequence[Set[int]], geometric: Sequence[Set[int]]) -> None:
        """Check a zero-based user map against the printer's hard constraints."""
        config = self.config
        n_extruders = config.extruder_count
        capacities = group_capacities(config)
        counts = [0] * n_extruders
        for f in used_filaments:
            extruder_id = filament_maps[f]
            counts[extruder_id] += 1
            if f in physical[extruder_id] or f in geometric[extruder_id]:
                raise ConfigurationInconsistent(
                    f"Manual grouping error: filament {f + 1} cannot be printed by extruder {extruder_id + 1}.")
        for extruder_id, (count, capacity) in enumerate(zip(counts, capacities)):
            if count > capacity:
                raise ConfigurationInconsistent(
                    f"Manual grouping error: extruder {extruder_id + 1} holds {count} filaments, "
                    f"it can take {capacity}.")

    def _stored_filament_maps(self) -> List[int]:
        """Zero-based copy of the map stored in the configuration."""
        stored = self.print_.get_filament_maps()
        if len(stored) != self.config.filament_count:
            raise ConfigurationInconsistent(
                f"filament_map has {len(stored)} entries, expected {self.config.filament_count}")
        n_extruders = self.config.extruder_count
        for f, value in enumerate(stored):
            if not 1 <= value <= n_extruders:
                raise ConfigurationInconsistent(
                    f"Manual grouping error: filament {f + 1} is mapped to extruder {value}, "
                    f"the printer has {n_extruders}.")
        return [value - 1 for value in stored]

    def reorder_extruders_for_minimum_flush_volume(self, reorder_first_layer: bool) -> None:
        """
        Group filaments onto extruders and order every layer for the least flush.

        Also computes the filament change statistics of the single extruder,
        automatic and manual grouping modes.
        """
        if not self.layer_tools:
            return

        config = self.config
        print_ = self.print_
        num_filaments = config.filament_count
        nozzle_nums = config.extruder_count
        flush_matrices = build_flush_matrices(config)

        layer_filaments = [list(lt.extruders) for lt in self.layer_tools]
        used_filaments = collect_sorted_used_filaments(layer_filaments)
        physical, geometric = unprintables_for_print(print_, used_filaments)

        map_mode = FilamentMapMode.AUTO
        if nozzle_nums > 1:
            map_mode = config.filament_map_mode
            # In sequential printing of several objects the stored map is used as is.
            if config.print_sequence != PrintSequence.BY_OBJECT or len(print_.objects) == 1:
                if map_mode == FilamentMapMode.AUTO:
                    filament_maps = self.get_recommended_filament_maps(layer_filaments, flush_matrices,
                                                                       physical, geometric)
                    print_.update_filament_maps_to_config([value + 1 for value in filament_maps])
                else:
                    filament_maps = self._stored_filament_maps()
                    self._validate_manual_maps(filament_maps, used_filaments, physical, geometric)

                tpu_filaments = get_filament_by_type(used_filaments, config, TPU_TYPE)
                if not check_tpu_group(used_filaments, filament_maps, tpu_filaments, config.master_extruder):
                    if map_mode == FilamentMapMode.MANUAL:
                        raise ConfigurationInconsistent(
                            "Manual grouping error: TPU can only be placed in a nozzle alone.")
                    raise GroupingInfeasible("Auto grouping error: TPU can only be placed in a nozzle alone.")
            else:
                filament_maps = self._stored_filament_maps()
        else:
            stored = print_.get_filament_maps()
            if any(value != 1 for value in stored) or len(stored) != num_filaments:
                logger.warning(f"The filament_map of a single extruder printer is invalid: {stored}, resetting")
                print_.update_filament_maps_to_config([1] * num_filaments)
            filament_maps = [0] * num_filaments

        first_layer_filaments = None if reorder_first_layer else list(self.layer_tools[0].extruders)
        get_custom_seq = self._custom_sequence_fn(first_layer_filaments)

        _, filament_sequences = reorder_filaments_for_minimum_flush_volume(
            filament_maps, layer_filaments, flush_matrices, get_custom_seq)

        curr_flush_info = calc_filament_change_info_by_toolorder(
            config, filament_maps, flush_matrices, filament_sequences)
        if nozzle_nums <= 1:
            self._stats[FilamentChangeMode.SINGLE_EXT] = curr_flush_info
        elif map_mode == FilamentMapMode.AUTO:
            self._stats[FilamentChangeMode.MULTI_EXT_AUTO] = curr_flush_info
        else:
            self._stats[FilamentChangeMode.MULTI_EXT_MANUAL] = curr_flush_info

        if nozzle_nums > 1:
            maps_without_group = [0] * num_filaments
            _, one_extruder_sequences = reorder_filaments_for_minimum_flush_volume(
                maps_without_group, layer_filaments, flush_matrices, get_custom_seq)
            self._stats[FilamentChangeMode.SINGLE_EXT] = calc_filament_change_info_by_toolorder(
                config, maps_without_group, flush_matrices, one_extruder_sequences)

            if map_mode == FilamentMapMode.MANUAL:
                maps_auto = self.get_recommended_filament_maps(layer_filaments, flush_matrices, physical, geometric)
                _, auto_sequences = reorder_filaments_for_minimum_flush_volume(
                    maps_auto, layer_filaments, flush_matrices, get_custom_seq)
                self._stats[FilamentChangeMode.MULTI_EXT_AUTO] = calc_filament_change_info_by_toolorder(
                    config, maps_auto, flush_matrices, auto_sequences)

        self.filament_maps = list(filament_maps)
        for lt, sequence in zip(self.layer_tools, filament_sequences):
            lt.extruders = list(sequence)

    def get_filament_change_stats(self, mode: FilamentChangeMode) -> FilamentChangeStats:
        return self._stats[FilamentChangeMode(mode)]

    def fill_wipe_tower_partitions(self, config: PrintConfig, object_bottom_z: float, max_layer_height: float) -> None:
        """
        Decide which layers carry the wipe tower and how many tool changes it serves.

        Args:
            config: Print configuration
            object_bottom_z: Bottom of the first object layer; layers below are raft
            max_layer_height: Largest allowed gap between two wipe tower layers
        """
        layers = self.layer_tools
        if not layers:
            return

        # Minimum number of tool changes per layer.
        last_extruder = None
        for lt in layers:
            lt.wipe_tower_partitions = len(lt.extruders)
            if lt.extruders:
                if last_extruder is None or last_extruder == lt.extruders[0]:
                    # no initial tool change needed
                    lt.wipe_tower_partitions -= 1
                last_extruder = lt.extruders[-1]

        # Lower layers carry the partitions of the layers above.
        for i in range(len(layers) - 2, -1, -1):
            layers[i].wipe_tower_partitions = max(layers[i + 1].wipe_tower_partitions,
                                                  layers[i].wipe_tower_partitions)

        smooth = config.timelapse_type == TimelapseType.SMOOTH
        for lt in layers:
            lt.has_wipe_tower = ((lt.has_object and (smooth or lt.wipe_tower_partitions > 0))
                                 or lt.print_z < object_bottom_z + EPSILON)

        self._fill_raft_gap(object_bottom_z, max_layer_height)
        self._mark_ghost_layers(max_layer_height)

        wipe_tower_print_z_last = 0.
        for lt in layers:
            if lt.has_wipe_tower:
                lt.wipe_tower_layer_height = lt.print_z - wipe_tower_print_z_last
                wipe_tower_print_z_last = lt.print_z

    def _fill_raft_gap(self, object_bottom_z: float, max_layer_height: float) -> None:
        """Add a wipe tower layer between the last raft layer and the first object one if they are too far apart."""
        layers = self.layer_tools
        for i in range(len(layers) - 1):
            lt, lt_next = layers[i], layers[i + 1]
            if not (lt.print_z < object_bottom_z + EPSILON <= lt_next.print_z):
                continue
            j = next((k for k in range(i + 1, len(layers)) if layers[k].has_wipe_tower), None)
            if j is None:
                break
            lt_object = layers[j]
            if lt_object.print_z - lt.print_z > max_layer_height + EPSILON:
                print_z = 0.5 * (lt.print_z + lt_object.print_z)
                j = i + 1
                while j < len(layers) and layers[j].print_z < print_z - EPSILON:
                    j += 1
                if abs(layers[j].print_z - print_z) < EPSILON:
                    layers[j].has_wipe_tower = True
                elif layers[j].extruders:
                    lt_extra = LayerTools(print_z)
                    lt_extra.has_wipe_tower = True
                    lt_extra.extruders.append(layers[j].extruders[0])
                    lt_extra.wipe_tower_partitions = layers[j].wipe_tower_partitions
                    layers.insert(j, lt_extra)
                    self._zs.insert(j, print_z)
                    logger.debug(f"Inserted wipe tower layer at {print_z:.3f} above the raft")
            break

    def _mark_ghost_layers(self, max_layer_height: float) -> None:
        """
        Mark layers the wipe tower cannot skip.

        A layer starting with another filament than the last printed one, or
        printing several, needs the tower. So does an empty layer sitting
        between two layers that hand over to a different filament. Finally no
        two consecutive wipe tower layers may be further apart than
        ``max_layer_height``.
        """
        layers = self.layer_tools
        prev_idx = None
        for i, lt in enumerate(layers):
            if lt.extruders:
                if prev_idx is not None and not lt.has_wipe_tower:
                    prev_last = layers[prev_idx].extruders[-1]
                    if lt.extruders[0] != prev_last or len(lt.extruders) > 1:
                        lt.has_wipe_tower = True
                prev_idx = i
            elif prev_idx is not None and not lt.has_wipe_tower:
                next_lt = next((layers[k] for k in range(i + 1, len(layers)) if layers[k].extruders), None)
                if next_lt is not None and next_lt.extruders[0] != layers[prev_idx].extruders[-1]:
                    lt.has_wipe_tower = True

        last_wipe_tower_print_z = None
        for i in range(len(layers) - 1):
            lt = layers[i]
            if lt.has_wipe_tower:
                last_wipe_tower_print_z = lt.print_z
            elif last_wipe_tower_print_z is not None \
                    and layers[i + 1].print_z - last_wipe_tower_print_z > max_layer_height + EPSILON:
                lt.has_wipe_tower = True
                last_wipe_tower_print_z = lt.print_z

    def collect_extruder_statistics(self, prime_multi_material: bool) -> None:
        self.first_printing_extruder = next((lt.extruders[0] for lt in self.layer_tools if lt.extruders), None)
        self.last_printing_extruder = next((lt.extruders[-1] for lt in reversed(self.layer_tools) if lt.extruders),
                                           None)
        self.all_printing_extruders = sort_remove_duplicates(
            extruder for lt in self.layer_tools for extruder in lt.extruders)

        if prime_multi_material and self.all_printing_extruders:
            # Priming order: the first printing extruder is primed last.
            self.all_printing_extruders.remove(self.first_printing_extruder)
            self.all_printing_extruders.append(self.first_printing_extruder)
            self.first_printing_extruder = self.all_printing_extruders[0]

    def mark_skirt_layers(self, config: PrintConfig, max_layer_height: float) -> None:
        """Mark the layers printing the skirt (draft shield); gaps never exceed ``max_layer_height``."""
        layers = self.layer_tools
        if not layers:
            return
        if not layers[0].extruders:
            warning = EmptyFirstLayer("The first layer prints nothing, no skirt is generated")
            logger.warning(str(warning))
            self.warnings.append(warning)
            return

        i = 0
        while True:
            layers[i].has_skirt = True
            j = i + 1
            while j < len(layers) and not layers[j].has_object:
                j += 1
            # no skirt above the last object layer
            if j == len(layers):
                break
            last_z = layers[i].print_z
            k = i + 1
            while k < j:
                if layers[k + 1].print_z - last_z > max_layer_height + EPSILON:
                    # k is the last layer not violating the maximum layer height
                    while k > i and not layers[k].extruders:
                        k -= 1
                    if layers[k].has_skirt:
                        logger.debug(f"Skirt would skip empty layers above {layers[k].print_z:.3f}")
                        break
                    layers[k].has_skirt = True
                    last_z = layers[k].print_z
                k += 1
            i = j

    def assign_custom_gcodes(self, print_: Print) -> None:
        """
        Attach the plate's custom G-code events to the nearest layers.

        Colour changes for a filament that does not print at or above the
        layer have no visible effect and are dropped. When several events land
        on one layer the lowest one is kept.
        """
        info = print_.custom_gcodes
        if not info.gcodes or not self.layer_tools:
            return

        num_filaments = self.config.filament_count
        if num_filaments == 1:
            mode = CustomGCodeMode.SINGLE_EXTRUDER
        elif len(print_.object_extruders()) == 1:
            mode = CustomGCodeMode.MULTI_AS_SINGLE
        else:
            mode = CustomGCodeMode.MULTI_EXTRUDER
        model_mode = info.mode
        # Colour changes authored for the other kind of printer become pauses.
        mode_mismatch = (mode == CustomGCodeMode.MULTI_EXTRUDER) != (model_mode == CustomGCodeMode.MULTI_EXTRUDER)
        # A single extruder printer performs a multi-as-single plate's tool changes as colour changes.
        tool_changes_as_color_changes = (mode == CustomGCodeMode.SINGLE_EXTRUDER
                                         and model_mode == CustomGCodeMode.MULTI_AS_SINGLE)

        extruder_printing_above: List[Set[int]] = [set() for _ in self.layer_tools]
        above = set()
        for idx in range(len(self.layer_tools) - 1, -1, -1):
            above |= set(self.layer_tools[idx].extruders)
            extruder_printing_above[idx] = set(above)

        zs = self._zs
        for item in sorted(info.gcodes, key=lambda g: g.print_z, reverse=True):
            if item.type == CustomGCodeType.TOOL_CHANGE and not tool_changes_as_color_changes:
                continue

            upper_idx = bisect.bisect_right(zs, item.print_z)
            if upper_idx == 0:
                layer_idx = 0
            elif upper_idx == len(zs):
                layer_idx = upper_idx - 1
            else:
                lower_idx = upper_idx - 1
                gap_to_lower = abs(item.print_z - zs[lower_idx])
                gap_to_upper = abs(item.print_z - zs[upper_idx])
                layer_idx = lower_idx if gap_to_lower < gap_to_upper else upper_idx

            gcode = self._applicable_gcode(item, extruder_printing_above[layer_idx], mode_mismatch, num_filaments)
            if gcode is not None:
                self.layer_tools[layer_idx].custom_gcode = gcode

    @staticmethod
    def _applicable_gcode(item: CustomGCodeItem, printing_above: Set[int], mode_mismatch: bool,
                          num_filaments: int) -> Optional[CustomGCodeItem]:
        if item.type == CustomGCodeType.TOOL_CHANGE:
            return item
        if item.type != CustomGCodeType.COLOR_CHANGE:
            return item
        if mode_mismatch:
            return replace(item, type=CustomGCodeType.PAUSE_PRINT)
        if item.extruder <= 0:
            # current extruder
            return item if printing_above else None
        if item.extruder <= num_filaments and item.extruder - 1 in printing_above:
            return item
        return None
