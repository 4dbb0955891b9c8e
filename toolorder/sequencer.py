"""
Per-layer filament sequencing.

Given a fixed filament -> extruder map, decide in which order the filaments of
every layer are printed so that the flush volume between consecutive
filaments on the same nozzle is minimal. Every nozzle keeps its own loaded
filament, so costs only accrue within a nozzle's sub-sequence.
"""

from dataclasses import dataclass
from itertools import permutations
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .config import PrintConfig
from .utils import MAX_PERMUTATION_FILAMENTS

# layer index -> one-based custom filament order for that layer, or None
CustomSequenceFn = Callable[[int], Optional[List[int]]]


@dataclass
class FilamentChangeStats:
    filament_change_count: int = 0
    filament_flush_weight: int = 0  # grams


def sequence_flush_cost(flush_matrix: np.ndarray, current: Optional[int], sequence: Sequence[int]) -> float:
    """Flush volume for printing ``sequence`` on a nozzle currently loaded with ``current``."""
    cost = 0.0
    prev = current
    for filament in sequence:
        if prev is not None and prev != filament:
            cost += float(flush_matrix[prev, filament])
        prev = filament
    return cost


def _lookahead_cost(flush_matrix: np.ndarray, last: int, next_filaments: Sequence[int]) -> float:
    if not next_filaments or last in next_filaments:
        return 0.0
    return min(float(flush_matrix[last, f]) for f in next_filaments)


def get_extruders_order(flush_matrix: np.ndarray,
                        filaments: Sequence[int],
                        current: Optional[int] = None,
                        next_filaments: Sequence[int] = ()) -> Tuple[float, List[int]]:
    """
    Order the filaments one nozzle prints within a layer.

    Small sets are searched exhaustively, scoring each order by its own flush
    cost plus the cheapest hop into the next layer's filaments. On equal cost
    the order starting with the loaded filament wins. Larger sets fall back
    to a greedy nearest-neighbour walk.

    Returns:
        Tuple of (flush cost of the chosen order, filament order)
    """
    filaments = sorted(set(filaments))
    if not filaments:
        return 0.0, []
    if len(filaments) == 1:
        return sequence_flush_cost(flush_matrix, current, filaments), filaments

    if len(filaments) <= MAX_PERMUTATION_FILAMENTS:
        best_key = None
        best_sequence = None
        best_cost = 0.0
        for perm in permutations(filaments):
            cost = sequence_flush_cost(flush_matrix, current, perm)
            total = round(cost + _lookahead_cost(flush_matrix, perm[-1], next_filaments), 6)
            key = (total, 0 if perm[0] == current else 1)
            if best_key is None or key < best_key:
                best_key = key
                best_sequence = list(perm)
                best_cost = cost
        return best_cost, best_sequence

    remaining = list(filaments)
    if current in remaining:
        start = current
    elif current is None:
        start = remaining[0]
    else:
        start = min(remaining, key=lambda f: float(flush_matrix[current, f]))
    sequence = [start]
    remaining.remove(start)
    while remaining:
        prev = sequence[-1]
        nxt = min(remaining, key=lambda f: float(flush_matrix[prev, f]))
        sequence.append(nxt)
        remaining.remove(nxt)
    return sequence_flush_cost(flush_matrix, current, sequence), sequence


def _custom_layer_sequences(layer_filaments, get_custom_seq: Optional[CustomSequenceFn]) -> Dict[int, List[int]]:
    """Zero-based custom orders restricted to what each layer actually prints."""
    custom = {}
    if get_custom_seq is None:
        return custom
    for layer_idx, lf in enumerate(layer_filaments):
        seq = get_custom_seq(layer_idx)
        if not seq:
            continue
        ordered = []
        for filament in seq:
            filament -= 1
            if filament in lf and filament not in ordered:
                ordered.append(filament)
        # filaments the custom order does not mention keep printing, after it
        ordered.extend(f for f in sorted(lf) if f not in ordered)
        custom[layer_idx] = ordered
    return custom


def reorder_filaments_for_minimum_flush_volume(filament_maps: Sequence[int],
                                               layer_filaments: Sequence[Sequence[int]],
                                               flush_matrices: np.ndarray,
                                               get_custom_seq: Optional[CustomSequenceFn] = None
                                               ) -> Tuple[float, List[List[int]]]:
    """
    Compute the printing order of every layer.

    Args:
        filament_maps: Zero-based extruder for every zero-based filament
        layer_filaments: Zero-based filaments required per layer
        flush_matrices: Array (nozzles, filaments, filaments) of flush volumes
        get_custom_seq: Optional per-layer override returning a one-based order

    Returns:
        Tuple of (total flush volume, per-layer zero-based filament order)
    """
    n_extruders = max(int(flush_matrices.shape[0]), max(filament_maps, default=0) + 1)
    custom = _custom_layer_sequences(layer_filaments, get_custom_seq)

    groups_per_layer = []
    for lf in layer_filaments:
        groups = [[] for _ in range(n_extruders)]
        for filament in sorted(set(lf)):
            groups[filament_maps[filament]].append(filament)
        groups_per_layer.append(groups)

    total_cost = 0.0
    layer_sequences = [[[] for _ in layer_filaments] for _ in range(n_extruders)]
    for extruder_id in range(n_extruders):
        flush_matrix = flush_matrices[min(extruder_id, flush_matrices.shape[0] - 1)]
        cache = {}
        current = None
        for layer_idx in range(len(layer_filaments)):
            if layer_idx in custom:
                sub = [f for f in custom[layer_idx] if filament_maps[f] == extruder_id]
                cost = sequence_flush_cost(flush_matrix, current, sub)
            else:
                group = tuple(groups_per_layer[layer_idx][extruder_id])
                next_group = ()
                if layer_idx + 1 < len(layer_filaments):
                    next_group = tuple(groups_per_layer[layer_idx + 1][extruder_id])
                key = (group, current, next_group)
                if key not in cache:
                    cache[key] = get_extruders_order(flush_matrix, group, current, next_group)
                cost, sub = cache[key]
                sub = list(sub)
            layer_sequences[extruder_id][layer_idx] = sub
            total_cost += cost
            if sub:
                current = sub[-1]

    sequences = []
    last_filament = None
    for layer_idx in range(len(layer_filaments)):
        if layer_idx in custom:
            sequence = list(custom[layer_idx])
        else:
            extruder_order = list(range(n_extruders))
            if last_filament is not None:
                first = filament_maps[last_filament]
                extruder_order.remove(first)
                extruder_order.insert(0, first)
            sequence = [f for e in extruder_order for f in layer_sequences[e][layer_idx]]
        if sequence:
            last_filament = sequence[-1]
        sequences.append(sequence)

    return total_cost, sequences


def calc_filament_change_info_by_toolorder(config: PrintConfig,
                                           filament_maps: Sequence[int],
                                           flush_matrices: np.ndarray,
                                           layer_sequences: Sequence[Sequence[int]]) -> FilamentChangeStats:
    """Count filament changes and the purged mass for a sequenced plan."""
    flush_volume_per_filament = {}
    last_filament_per_extruder = {}
    change_count = 0

    for sequence in layer_sequences:
        for filament in sequence:
            extruder_id = filament_maps[filament]
            last = last_filament_per_extruder.get(extruder_id)
            if last is not None and last != filament:
                volume = float(flush_matrices[min(extruder_id, flush_matrices.shape[0] - 1), last, filament])
                flush_volume_per_filament[filament] = flush_volume_per_filament.get(filament, 0.0) + volume
                change_count += 1
            last_filament_per_extruder[extruder_id] = filament

    weight = sum(config.filament_density[f] * 0.001 * volume
                 for f, volume in flush_volume_per_filament.items())
    return FilamentChangeStats(filament_change_count=change_count, filament_flush_weight=int(weight))
