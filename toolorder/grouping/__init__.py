"""
Filament Group Package

Assigns the filaments of a multi-nozzle print to physical extruders.

Key features:
- Exhaustive search for typical filament counts, beam search beyond that
- Hard constraints: feed slot capacity, nozzle hardness, reachability, TPU
- Near-best candidates are re-ranked by how well their colours match the
  filaments currently loaded in each extruder's feed slots
"""

from .core import (
    FilamentGroupContext,
    FilamentGroup,
    build_patterns,
    evaluate_groups,
    optimize_group_for_master_extruder,
    recommend_filament_maps,
)

from .utils import (
    collect_sorted_used_filaments,
    color_distance_matrix,
    count_color_matches,
    select_best_group_for_ams,
    is_map_feasible,
    check_tpu_group,
)

__all__ = [
    "FilamentGroupContext",
    "FilamentGroup",
    "build_patterns",
    "evaluate_groups",
    "optimize_group_for_master_extruder",
    "recommend_filament_maps",
    "collect_sorted_used_filaments",
    "color_distance_matrix",
    "count_color_matches",
    "select_best_group_for_ams",
    "is_map_feasible",
    "check_tpu_group",
]
