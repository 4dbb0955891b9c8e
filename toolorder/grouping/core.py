"""
Filament group optimizer.

Assigns every used filament to one physical extruder so that the flush
volume summed over all layers is minimal, subject to:

- each extruder holds at most ``max_group_size[e]`` filaments
- a filament may not go to an extruder listing it as physically or
  geometrically unprintable
- a TPU filament sits alone in the master extruder

Small problems are enumerated exhaustively (optionally across a process
pool); large ones use a beam search that only keeps partial maps the
remaining filaments still fit into. The best candidates within
``memory_threshold`` of the optimum are remembered; those tying the optimum
compete in the colour tie-break.
"""

import itertools
import multiprocessing as mp
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, FrozenSet, List, Optional, Sequence, Set, Tuple

import numpy as np

from ..errors import GroupingInfeasible
from ..log_utils import get_logger
from ..utils import (BEAM_WIDTH, COST_TIE_TOLERANCE, MAX_ENUM_CANDIDATES, MAX_MEMORY_GROUPS, MEMORY_THRESHOLD,
                     PARALLEL_MIN_CANDIDATES, SIMILAR_COLOR_THRESHOLD_DE2000, timed)
from .utils import (collect_sorted_used_filaments, is_map_feasible, select_best_group_for_ams,
                    swap_master_groups)

logger = get_logger(__name__)

# (filament positions in the used list, filament ids, number of layers)
Pattern = Tuple[Tuple[int, ...], Tuple[int, ...], int]


@dataclass(frozen=True)
class FilamentGroupContext:
    flush_matrix: np.ndarray  # (nozzles, filaments, filaments)
    max_group_size: Tuple[int, ...]
    physical_unprintables: Tuple[FrozenSet[int], ...]
    geometric_unprintables: Tuple[FrozenSet[int], ...]
    master_extruder_id: int  # zero-based
    total_filament_num: int
    tpu_filaments: FrozenSet[int] = field(default_factory=frozenset)

    @property
    def extruder_num(self) -> int:
        return len(self.max_group_size)

    def unprintables(self) -> List[Set[int]]:
        result = []
        for eid in range(self.extruder_num):
            items = set()
            if eid < len(self.physical_unprintables):
                items |= self.physical_unprintables[eid]
            if eid < len(self.geometric_unprintables):
                items |= self.geometric_unprintables[eid]
            result.append(items)
        return result


def build_patterns(layer_filaments: Sequence[Sequence[int]],
                   used_filaments: Sequence[int],
                   get_custom_seq: Optional[Callable[[int], Optional[List[int]]]] = None) -> List[Pattern]:
    """
    Collapse identical layers into weighted print orders.

    Layers print their filaments in ascending id order, unless a custom order
    applies to them.
    """
    index = {f: i for i, f in enumerate(used_filaments)}
    counter = Counter()
    for layer_idx, lf in enumerate(layer_filaments):
        order = sorted(set(lf))
        custom = get_custom_seq(layer_idx) if get_custom_seq else None
        if custom:
            ordered = [f - 1 for f in custom if f - 1 in order]
            ordered = list(dict.fromkeys(ordered))
            order = ordered + [f for f in order if f not in ordered]
        if len(order) > 1:
            counter[tuple(order)] += 1
    return [(tuple(index[f] for f in order), order, count) for order, count in sorted(counter.items())]


def evaluate_groups(candidates: np.ndarray, patterns: Sequence[Pattern], flush_matrix: np.ndarray) -> np.ndarray:
    """
    Flush cost of every candidate map.

    Args:
        candidates: (K, used) array; column i holds the extruder of the i-th
            used filament, -1 for filaments not assigned yet
        patterns: Weighted layer print orders from ``build_patterns``
        flush_matrix: (nozzles, filaments, filaments) flush volumes

    Returns:
        (K,) array of costs; a consecutive pair on the same nozzle pays the
        flush volume of that nozzle
    """
    costs = np.zeros(len(candidates))
    for positions, filaments, count in patterns:
        for i in range(len(positions)):
            col_i = candidates[:, positions[i]]
            open_mask = col_i >= 0
            for j in range(i + 1, len(positions)):
                col_j = candidates[:, positions[j]]
                pair = open_mask & (col_i == col_j)
                if pair.any():
                    nozzles = np.clip(col_i, 0, flush_matrix.shape[0] - 1)
                    costs += np.where(pair, flush_matrix[nozzles, filaments[i], filaments[j]], 0.0) * count
                # a later filament on the same nozzle ends this pair chain
                open_mask = open_mask & ~(col_i == col_j)
                if not open_mask.any():
                    break
    return costs


def _evaluate_chunk(task):
    """Worker function for parallel candidate evaluation."""
    chunk, patterns, flush_matrix = task
    return evaluate_groups(chunk, patterns, flush_matrix)


class FilamentGroup:
    def __init__(self, context: FilamentGroupContext, processes: Optional[int] = None):
        self.ctx = context
        self.processes = processes
        self.memory_threshold = MEMORY_THRESHOLD
        self.get_custom_seq = None
        self._memoryed_groups: List[Tuple[float, List[int]]] = []

    def set_memory_threshold(self, threshold: float) -> None:
        self.memory_threshold = threshold

    def get_memoryed_groups(self) -> List[List[int]]:
        """Near-best complete maps found by the last search, cheapest first."""
        return [list(m) for _, m in self._memoryed_groups]

    def get_memoryed_costs(self) -> List[float]:
        return [cost for cost, _ in self._memoryed_groups]

    def _forbidden(self, used_filaments: Sequence[int]) -> np.ndarray:
        """(used, extruders) mask of assignments that break a hard constraint."""
        n_extruders = self.ctx.extruder_num
        unprintables = self.ctx.unprintables()
        forbidden = np.zeros((len(used_filaments), n_extruders), dtype=bool)
        used_tpu = [f for f in used_filaments if f in self.ctx.tpu_filaments]
        for i, f in enumerate(used_filaments):
            for eid in range(n_extruders):
                if f in unprintables[eid]:
                    forbidden[i, eid] = True
            if used_tpu:
                if f in self.ctx.tpu_filaments:
                    forbidden[i, :] = True
                    forbidden[i, self.ctx.master_extruder_id] = f in unprintables[self.ctx.master_extruder_id]
                else:
                    forbidden[i, self.ctx.master_extruder_id] = True
        return forbidden

    def _feasible_mask(self, candidates: np.ndarray, forbidden: np.ndarray) -> np.ndarray:
        mask = np.ones(len(candidates), dtype=bool)
        for eid, capacity in enumerate(self.ctx.max_group_size):
            on_extruder = candidates == eid
            mask &= on_extruder.sum(axis=1) <= capacity
            mask &= ~(on_extruder & forbidden[:, eid][None, :]).any(axis=1)
        return mask

    def _completable_mask(self, partial: np.ndarray, forbidden: np.ndarray) -> np.ndarray:
        """
        Rows of partial maps (-1 marks an unplaced filament) that can still be completed.

        For every subset of extruders, the unplaced filaments that may only go to
        extruders of that subset must fit in the room those extruders have left.
        """
        n_extruders = self.ctx.extruder_num
        allowed = ~forbidden
        unplaced = partial < 0
        room = np.stack([self.ctx.max_group_size[eid] - (partial == eid).sum(axis=1)
                         for eid in range(n_extruders)], axis=1)
        mask = np.ones(len(partial), dtype=bool)
        for subset in range(1, 1 << n_extruders):
            members = np.array([bool((subset >> eid) & 1) for eid in range(n_extruders)])
            confined = ~(allowed & ~members[None, :]).any(axis=1)
            need = (unplaced & confined[None, :]).sum(axis=1)
            mask &= need <= room[:, members].sum(axis=1)
        return mask

    def _evaluate(self, candidates: np.ndarray, patterns: Sequence[Pattern]) -> np.ndarray:
        if self.processes == 1 or len(candidates) < PARALLEL_MIN_CANDIDATES or not patterns:
            return evaluate_groups(candidates, patterns, self.ctx.flush_matrix)
        processes = self.processes or mp.cpu_count()
        chunks = np.array_split(candidates, processes * 4)
        tasks = [(chunk, patterns, self.ctx.flush_matrix) for chunk in chunks if len(chunk)]
        with mp.Pool(processes=processes) as pool:
            results = pool.map(_evaluate_chunk, tasks)
        return np.concatenate(results)

    def _remember(self, costs: np.ndarray, candidates: np.ndarray, used_filaments: Sequence[int]) -> None:
        order = np.argsort(costs, kind='stable')
        best = float(costs[order[0]])
        limit = best * (1.0 + self.memory_threshold) + 1e-6
        self._memoryed_groups = []
        for idx in order[:MAX_MEMORY_GROUPS]:
            cost = float(costs[idx])
            if cost > limit:
                break
            self._memoryed_groups.append((cost, self._to_filament_map(candidates[idx], used_filaments)))

    def _to_filament_map(self, row: np.ndarray, used_filaments: Sequence[int]) -> List[int]:
        filament_map = [0] * self.ctx.total_filament_num
        for f, eid in zip(used_filaments, row):
            filament_map[f] = int(eid)
        return filament_map

    def _enumerate(self, used_filaments, forbidden, patterns) -> Tuple[np.ndarray, np.ndarray]:
        n_extruders = self.ctx.extruder_num
        candidates = np.array(list(itertools.product(range(n_extruders), repeat=len(used_filaments))),
                              dtype=np.int64).reshape(-1, len(used_filaments))
        candidates = candidates[self._feasible_mask(candidates, forbidden)]
        logger.debug(f"Enumerated {len(candidates)} feasible groups for {len(used_filaments)} filaments")
        if len(candidates) == 0:
            return candidates, np.zeros(0)
        return candidates, self._evaluate(candidates, patterns)

    def _beam_search(self, used_filaments, forbidden, patterns) -> Tuple[np.ndarray, np.ndarray]:
        n_used = len(used_filaments)
        n_extruders = self.ctx.extruder_num
        usage = Counter()
        for positions, _, count in patterns:
            for p in positions:
                usage[p] += count
        # most used filaments first, they shape the cost the most
        order = sorted(range(n_used), key=lambda p: (-usage[p], p))

        beam = np.full((1, n_used), -1, dtype=np.int64)
        costs = np.zeros(1)
        if not self._completable_mask(beam, forbidden).all():
            return np.zeros((0, n_used), dtype=np.int64), np.zeros(0)
        for position in order:
            expanded = []
            for eid in range(n_extruders):
                if forbidden[position, eid]:
                    continue
                step = beam.copy()
                step[:, position] = eid
                expanded.append(step)
            if not expanded:
                return np.zeros((0, n_used), dtype=np.int64), np.zeros(0)
            beam = np.concatenate(expanded)
            beam = beam[self._feasible_mask(beam, forbidden) & self._completable_mask(beam, forbidden)]
            if len(beam) == 0:
                return beam, np.zeros(0)
            costs = self._evaluate(beam, patterns)
            keep = np.lexsort((np.arange(len(beam)), costs))[:BEAM_WIDTH]
            beam, costs = beam[keep], costs[keep]
        logger.debug(f"Beam search kept {len(beam)} groups for {n_used} filaments")
        return beam, costs

    @timed
    def calc_filament_group(self, layer_filaments: Sequence[Sequence[int]]) -> List[int]:
        """
        Compute the cheapest feasible filament map.

        Args:
            layer_filaments: Zero-based filaments used per layer

        Returns:
            Zero-based extruder for every filament (unused filaments map to 0)

        Raises:
            GroupingInfeasible: No map satisfies the hard constraints
        """
        used_filaments = collect_sorted_used_filaments(layer_filaments)
        self._memoryed_groups = []
        if not used_filaments:
            return [0] * self.ctx.total_filament_num
        if len([f for f in used_filaments if f in self.ctx.tpu_filaments]) > 1:
            logger.error("More than one TPU filament is used")
            raise GroupingInfeasible("Only supports up to one TPU filament.")
        if self.ctx.extruder_num == 1:
            filament_map = [0] * self.ctx.total_filament_num
            self._memoryed_groups = [(0.0, filament_map)]
            return list(filament_map)

        forbidden = self._forbidden(used_filaments)
        patterns = build_patterns(layer_filaments, used_filaments, self.get_custom_seq)

        if self.ctx.extruder_num ** len(used_filaments) <= MAX_ENUM_CANDIDATES:
            candidates, costs = self._enumerate(used_filaments, forbidden, patterns)
        else:
            logger.info(f"{len(used_filaments)} filaments, using beam search")
            candidates, costs = self._beam_search(used_filaments, forbidden, patterns)

        if len(candidates) == 0:
            message = ("No filament grouping satisfies the nozzle capacity, "
                       "material and TPU constraints.")
            logger.error(message)
            raise GroupingInfeasible(message)

        self._remember(costs, candidates, used_filaments)
        best_cost, best_map = self._memoryed_groups[0]
        logger.info(f"Best filament group costs {best_cost:.1f} mm3 of flush")
        return list(best_map)

    def group_cost(self, layer_filaments: Sequence[Sequence[int]], filament_map: Sequence[int]) -> float:
        """Flush cost of a given complete map under the optimizer's cost model."""
        used_filaments = collect_sorted_used_filaments(layer_filaments)
        patterns = build_patterns(layer_filaments, used_filaments, self.get_custom_seq)
        row = np.array([[filament_map[f] for f in used_filaments]], dtype=np.int64)
        return float(evaluate_groups(row, patterns, self.ctx.flush_matrix)[0])


def optimize_group_for_master_extruder(used_filaments: Sequence[int],
                                       context: FilamentGroupContext,
                                       filament_map: List[int]) -> List[int]:
    """Move the larger group onto the master extruder when the swap stays feasible."""
    if context.extruder_num != 2:
        return filament_map
    swapped = swap_master_groups(used_filaments, filament_map, context.master_extruder_id)
    if swapped == list(filament_map):
        return filament_map
    if not is_map_feasible(used_filaments, swapped, context.max_group_size, context.unprintables(),
                           set(context.tpu_filaments), context.master_extruder_id):
        return filament_map
    return swapped


@timed
def recommend_filament_maps(layer_filaments: Sequence[Sequence[int]],
                            context: FilamentGroupContext,
                            used_colors: Sequence[str],
                            ams_colors: Sequence[Sequence[str]],
                            get_custom_seq=None,
                            processes: Optional[int] = None) -> List[int]:
    """
    Optimizer entry point used by the tool ordering driver.

    Finds the cheapest map, then breaks ties: a swap that puts the larger
    group on the master extruder is admitted if it costs no more than the
    best map, and among the maps tying the best cost the one whose groups
    best match the colours loaded in each extruder's feed slots wins.

    Args:
        layer_filaments: Zero-based filaments used per layer
        context: Optimizer constraints and flush matrices
        used_colors: Colour of each used filament, ascending filament id
        ams_colors: Loaded slot colours per extruder

    Returns:
        Zero-based extruder for every filament
    """
    used_filaments = collect_sorted_used_filaments(layer_filaments)
    fg = FilamentGroup(context, processes=processes)
    fg.get_custom_seq = get_custom_seq
    best = fg.calc_filament_group(layer_filaments)
    if context.extruder_num < 2 or not used_filaments:
        return best

    memoryed = fg.get_memoryed_groups()
    costs = fg.get_memoryed_costs()
    # only exact ties of the best cost compete on colour
    limit = costs[0] + COST_TIE_TOLERANCE

    nudged = optimize_group_for_master_extruder(used_filaments, context, list(best))
    candidates = [best]
    if nudged != best and fg.group_cost(layer_filaments, nudged) <= limit:
        candidates = [nudged, best]
    candidates.extend(m for m, cost in zip(memoryed, costs) if cost <= limit and m not in candidates)

    return select_best_group_for_ams(candidates, used_filaments, used_colors, ams_colors,
                                     SIMILAR_COLOR_THRESHOLD_DE2000)
