from typing import Dict, List, Sequence, Set, Tuple

import numpy as np
from skimage.color import deltaE_ciede2000, rgb2lab

from ..utils import SIMILAR_COLOR_THRESHOLD_DE2000, parse_color


def collect_sorted_used_filaments(layer_filaments: Sequence[Sequence[int]]) -> List[int]:
    """Zero-based filaments used on any layer, ascending."""
    used = set()
    for lf in layer_filaments:
        used.update(lf)
    return sorted(used)


def colors_to_lab(colors: Sequence[str]) -> np.ndarray:
    """Convert '#RRGGBB' strings to an (N, 3) array of CIE Lab values."""
    if not colors:
        return np.zeros((0, 3))
    rgb = np.array([parse_color(c) for c in colors], dtype=float) / 255.0
    return rgb2lab(rgb.reshape(1, -1, 3)).reshape(-1, 3)


def color_distance_matrix(colors_a: Sequence[str], colors_b: Sequence[str]) -> np.ndarray:
    """CIEDE2000 distance between every colour of ``colors_a`` and ``colors_b``."""
    lab_a = colors_to_lab(colors_a)
    lab_b = colors_to_lab(colors_b)
    if len(lab_a) == 0 or len(lab_b) == 0:
        return np.zeros((len(lab_a), len(lab_b)))
    shape = (len(lab_a), len(lab_b), 3)
    a = np.broadcast_to(lab_a[:, None, :], shape).copy()
    b = np.broadcast_to(lab_b[None, :, :], shape).copy()
    return deltaE_ciede2000(a, b)


def count_color_matches(distances: np.ndarray, threshold: float) -> Tuple[int, float]:
    """
    Greedily pair filaments with feed slots, closest pairs first.

    Args:
        distances: (filaments, slots) colour distance matrix
        threshold: Pairs at or above this distance do not match

    Returns:
        Tuple of (number of matched filaments, summed distance of the matches)
    """
    if distances.size == 0:
        return 0, 0.0
    pairs = sorted((float(distances[i, j]), i, j)
                   for i in range(distances.shape[0])
                   for j in range(distances.shape[1])
                   if distances[i, j] < threshold)
    used_rows, used_cols = set(), set()
    matched, total = 0, 0.0
    for dist, i, j in pairs:
        if i in used_rows or j in used_cols:
            continue
        used_rows.add(i)
        used_cols.add(j)
        matched += 1
        total += dist
    return matched, total


def select_best_group_for_ams(filament_maps: Sequence[Sequence[int]],
                              used_filaments: Sequence[int],
                              used_colors: Sequence[str],
                              ams_colors: Sequence[Sequence[str]],
                              threshold: float = SIMILAR_COLOR_THRESHOLD_DE2000) -> List[int]:
    """
    Pick the filament map whose groups best match the colours loaded per extruder.

    Maps are scored by how many used filaments find a loaded slot of similar
    colour on the extruder they are assigned to. Ties keep the earlier map,
    so callers pass their candidates cheapest first.
    """
    if not filament_maps:
        return []
    if not any(ams_colors):
        return list(filament_maps[0])

    per_extruder = [color_distance_matrix(used_colors, colors) for colors in ams_colors]

    best_map = filament_maps[0]
    best_score = None
    for filament_map in filament_maps:
        matched, distance = 0, 0.0
        for extruder_id, distances in enumerate(per_extruder):
            rows = [idx for idx, f in enumerate(used_filaments) if filament_map[f] == extruder_id]
            if not rows or distances.size == 0:
                continue
            m, d = count_color_matches(distances[rows, :], threshold)
            matched += m
            distance += d
        score = (matched, -distance)
        if best_score is None or score > best_score:
            best_score = score
            best_map = filament_map
    return list(best_map)


def group_by_extruder(used_filaments: Sequence[int], filament_map: Sequence[int]) -> Dict[int, List[int]]:
    groups = {}
    for f in used_filaments:
        groups.setdefault(filament_map[f], []).append(f)
    return groups


def is_map_feasible(used_filaments: Sequence[int],
                    filament_map: Sequence[int],
                    max_group_size: Sequence[int],
                    unprintables: Sequence[Set[int]],
                    tpu_filaments: Set[int],
                    master_extruder_id: int) -> bool:
    """Check a complete map against capacity, unprintable sets and the TPU rule."""
    groups = group_by_extruder(used_filaments, filament_map)
    for extruder_id, filaments in groups.items():
        if not 0 <= extruder_id < len(max_group_size):
            return False
        if len(filaments) > max_group_size[extruder_id]:
            return False
        if any(f in unprintables[extruder_id] for f in filaments):
            return False
    return check_tpu_group(used_filaments, filament_map, tpu_filaments, master_extruder_id)


def check_tpu_group(used_filaments: Sequence[int],
                    filament_map: Sequence[int],
                    tpu_filaments: Set[int],
                    master_extruder_id: int) -> bool:
    """TPU must sit alone in the master extruder, and there may be only one."""
    used_tpu = [f for f in used_filaments if f in tpu_filaments]
    if len(used_tpu) > 1:
        return False
    if not used_tpu:
        return True
    extruder_id = filament_map[used_tpu[0]]
    if extruder_id != master_extruder_id:
        return False
    return sum(1 for f in used_filaments if filament_map[f] == extruder_id) == 1


def swap_master_groups(used_filaments: Sequence[int],
                       filament_map: Sequence[int],
                       master_extruder_id: int) -> List[int]:
    """
    Return ``filament_map`` with the master and the other extruder's groups
    exchanged when the other group is larger, otherwise an unchanged copy.

    Only meaningful on two extruder printers.
    """
    swapped = list(filament_map)
    other = 1 - master_extruder_id
    groups = group_by_extruder(used_filaments, filament_map)
    if len(groups.get(other, [])) <= len(groups.get(master_extruder_id, [])):
        return swapped
    for f in groups.get(other, []):
        swapped[f] = master_extruder_id
    for f in groups.get(master_extruder_id, []):
        swapped[f] = other
    return swapped
