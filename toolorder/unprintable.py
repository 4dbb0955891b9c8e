from typing import List, Optional, Sequence, Set

from shapely.geometry import Polygon

from .config import PrintConfig, get_hrc_by_nozzle_type
from .errors import GroupingInfeasible
from .log_utils import get_logger
from .model import Print

logger = get_logger(__name__)

TPU_TYPE = 'TPU'


def get_filament_by_type(used_filaments: Sequence[int], config: PrintConfig, filament_type: str) -> Set[int]:
    """Zero-based filaments among ``used_filaments`` whose type is ``filament_type``."""
    return {f for f in used_filaments if config.filament_type[f] == filament_type}


def get_physical_unprintables(used_filaments: Sequence[int], config: PrintConfig) -> List[Set[int]]:
    """
    Filaments each extruder cannot print because of its hardware.

    - At most one TPU filament is supported, and it may only go into the
      master extruder.
    - A filament needing a harder nozzle than the extruder has is excluded.

    Args:
        used_filaments: Zero-based filaments used by the print
        config: Print configuration

    Returns:
        One set of zero-based filament ids per extruder (all empty for a
        single extruder printer)
    """
    tpu_filaments = get_filament_by_type(used_filaments, config, TPU_TYPE)
    if len(tpu_filaments) > 1:
        logger.error(f"TPU filaments {sorted(f + 1 for f in tpu_filaments)} requested, only one is supported")
        raise GroupingInfeasible("Only supports up to one TPU filament.")

    extruder_num = config.extruder_count
    unprintables = [set() for _ in range(extruder_num)]
    if extruder_num < 2:
        return unprintables

    master = config.master_extruder
    for eid in range(extruder_num):
        if eid != master:
            unprintables[eid].update(tpu_filaments)

    for eid in range(extruder_num):
        nozzle_hrc = get_hrc_by_nozzle_type(config.nozzle_type[eid])
        for f in used_filaments:
            if config.required_nozzle_hrc[f] > nozzle_hrc:
                unprintables[eid].add(f)

    return unprintables


def get_geometrical_unprintables(unprintable_arrs: Sequence[Sequence[int]], config: PrintConfig) -> List[Set[int]]:
    """Convert per-extruder one-based unreachable filament lists into zero-based sets."""
    extruder_num = config.extruder_count
    unprintables = [set() for _ in range(extruder_num)]
    if extruder_num < 2:
        return unprintables
    for idx, arr in enumerate(unprintable_arrs[:extruder_num]):
        unprintables[idx] = {item - 1 for item in arr}
    return unprintables


def _printable_area(points) -> Optional[Polygon]:
    if not points or len(points) < 3:
        return None
    return Polygon(points)


def compute_unprintable_filament_ids(print_: Print) -> List[List[int]]:
    """
    Derive, per extruder, the one-based filaments it cannot reach.

    An object whose footprint leaves an extruder's printable area cannot be
    printed by that extruder, so none of the object's filaments may be
    assigned to it.
    """
    config = print_.config
    result = [set() for _ in range(config.extruder_count)]
    areas = [_printable_area(points) for points in config.extruder_printable_area]

    for obj in print_.objects:
        footprint = obj.footprint()
        if footprint.is_empty:
            continue
        for eid, area in enumerate(areas[:config.extruder_count]):
            if area is None:
                continue
            if not area.buffer(1e-6).covers(footprint):
                logger.debug(f"Object {obj.id} is out of reach of extruder {eid + 1}")
                result[eid].update(obj.extruders())

    return [sorted(ids) for ids in result]


def unprintables_for_print(print_: Print, used_filaments: Sequence[int]):
    """Physical and geometric unprintable sets for a print."""
    config = print_.config
    unprintable_ids = print_.unprintable_filament_ids
    if unprintable_ids is None:
        unprintable_ids = compute_unprintable_filament_ids(print_)
    return (get_physical_unprintables(used_filaments, config),
            get_geometrical_unprintables(unprintable_ids, config))
