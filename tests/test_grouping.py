import itertools

import numpy as np
import pytest

from toolorder.errors import GroupingInfeasible
from toolorder.grouping import (FilamentGroup, FilamentGroupContext, build_patterns, check_tpu_group,
                                color_distance_matrix, count_color_matches, evaluate_groups, is_map_feasible,
                                recommend_filament_maps, select_best_group_for_ams)


def make_context(flush, max_group_size=(16, 16), master=0, tpu=(), physical=None, geometric=None):
    flush = np.asarray(flush, dtype=float)
    if flush.ndim == 2:
        flush = np.stack([flush] * len(max_group_size))
    n_extruders = len(max_group_size)
    return FilamentGroupContext(
        flush_matrix=flush,
        max_group_size=tuple(max_group_size),
        physical_unprintables=tuple(frozenset(s) for s in (physical or [()] * n_extruders)),
        geometric_unprintables=tuple(frozenset(s) for s in (geometric or [()] * n_extruders)),
        master_extruder_id=master,
        total_filament_num=flush.shape[1],
        tpu_filaments=frozenset(tpu),
    )


def uniform(n, volume=100.0):
    matrix = np.full((n, n), volume)
    np.fill_diagonal(matrix, 0.0)
    return matrix


def test_evaluate_groups_charges_consecutive_pairs_on_same_nozzle():
    flush = np.zeros((2, 3, 3))
    flush[0, 0, 1] = 50
    flush[0, 1, 2] = 7
    flush[1, 0, 2] = 1000
    patterns = build_patterns([[0, 1, 2], [0, 1, 2]], [0, 1, 2])
    candidates = np.array([[0, 0, 0], [0, 0, 1], [1, 0, 1]])
    costs = evaluate_groups(candidates, patterns, flush)
    # all on nozzle 0: 0->1 and 1->2, twice
    assert costs[0] == pytest.approx(2 * 57)
    assert costs[1] == pytest.approx(2 * 50)
    assert costs[2] == pytest.approx(2 * 1000)


def test_single_extruder_maps_everything_to_zero():
    fg = FilamentGroup(make_context(uniform(3), max_group_size=(16,)))
    assert fg.calc_filament_group([[0, 1], [2]]) == [0, 0, 0]


def test_no_used_filaments():
    fg = FilamentGroup(make_context(uniform(3)))
    assert fg.calc_filament_group([[], []]) == [0, 0, 0]


def test_cheapest_group_separates_expensive_pair():
    flush = uniform(4, 10.0)
    flush[0, 1] = flush[1, 0] = 500.0
    flush[2, 3] = flush[3, 2] = 500.0
    ctx = make_context(flush, max_group_size=(2, 2))
    filament_map = FilamentGroup(ctx).calc_filament_group([[0, 1, 2, 3]] * 5)
    assert filament_map[0] != filament_map[1]
    assert filament_map[2] != filament_map[3]


def test_result_is_the_strict_minimum_over_feasible_maps():
    rng = np.random.default_rng(7)
    flush = rng.integers(10, 400, size=(2, 5, 5)).astype(float)
    for nozzle in range(2):
        np.fill_diagonal(flush[nozzle], 0.0)
    layer_filaments = [[0, 1, 2], [1, 3, 4], [0, 2, 4], [0, 1, 2, 3, 4]]
    ctx = make_context(flush, max_group_size=(3, 3))
    fg = FilamentGroup(ctx)
    best = fg.calc_filament_group(layer_filaments)
    best_cost = fg.group_cost(layer_filaments, best)

    used = [0, 1, 2, 3, 4]
    for row in itertools.product(range(2), repeat=5):
        if not is_map_feasible(used, row, (3, 3), [set(), set()], set(), 0):
            continue
        assert fg.group_cost(layer_filaments, row) >= best_cost - 1e-9


def test_capacity_is_respected():
    ctx = make_context(np.zeros((5, 5)), max_group_size=(2, 3))
    filament_map = FilamentGroup(ctx).calc_filament_group([[0, 1, 2, 3, 4]])
    assert filament_map.count(0) <= 2
    assert filament_map.count(1) <= 3


def test_capacity_too_small_is_infeasible():
    ctx = make_context(uniform(3), max_group_size=(1, 1))
    with pytest.raises(GroupingInfeasible):
        FilamentGroup(ctx).calc_filament_group([[0, 1, 2]])


def test_unprintable_filament_avoids_extruder():
    ctx = make_context(np.zeros((3, 3)), physical=[{2}, set()], geometric=[set(), {0}])
    filament_map = FilamentGroup(ctx).calc_filament_group([[0, 1, 2]])
    assert filament_map[2] == 1
    assert filament_map[0] == 0


def test_tpu_sits_alone_on_master():
    # filament 1 is TPU, master is the second extruder
    ctx = make_context(uniform(3), max_group_size=(2, 1), master=1, tpu={1})
    filament_map = FilamentGroup(ctx).calc_filament_group([[0, 1, 2]] * 3)
    assert filament_map == [0, 1, 0]
    assert check_tpu_group([0, 1, 2], filament_map, {1}, 1)


def test_tpu_with_too_little_room_elsewhere_is_infeasible():
    ctx = make_context(uniform(3), max_group_size=(1, 1), master=1, tpu={1})
    with pytest.raises(GroupingInfeasible):
        FilamentGroup(ctx).calc_filament_group([[0, 1, 2]])


def test_two_tpu_filaments_are_infeasible():
    ctx = make_context(uniform(3), tpu={0, 2})
    with pytest.raises(GroupingInfeasible):
        FilamentGroup(ctx).calc_filament_group([[0, 1, 2]])


def test_beam_search_for_many_filaments():
    n = 16
    rng = np.random.default_rng(3)
    flush = rng.integers(10, 300, size=(n, n)).astype(float)
    np.fill_diagonal(flush, 0.0)
    layer_filaments = [sorted(rng.choice(n, size=6, replace=False).tolist()) for _ in range(30)]
    layer_filaments.append(list(range(n)))
    ctx = make_context(flush, max_group_size=(8, 8))
    fg = FilamentGroup(ctx, processes=1)
    filament_map = fg.calc_filament_group(layer_filaments)
    assert len(filament_map) == n
    assert filament_map.count(0) <= 8 and filament_map.count(1) <= 8
    assert fg.get_memoryed_groups()[0] == filament_map


def test_beam_search_leaves_room_for_confined_filaments():
    n = 15
    flush = np.stack([np.zeros((n, n)), uniform(n, 1000.0)])
    # filaments 7..14 only fit the free nozzle, which tempts the early picks
    ctx = make_context(flush, max_group_size=(8, 8), geometric=[set(), set(range(7, n))])
    fg = FilamentGroup(ctx, processes=1)
    filament_map = fg.calc_filament_group([list(range(n))])
    assert filament_map == [1] * 7 + [0] * 8
    assert is_map_feasible(list(range(n)), filament_map, (8, 8), ctx.unprintables(), set(), 0)


def test_beam_search_reports_truly_infeasible_capacity():
    n = 15
    ctx = make_context(uniform(n), max_group_size=(8, 8), geometric=[set(), set(range(6, n))])
    with pytest.raises(GroupingInfeasible):
        FilamentGroup(ctx, processes=1).calc_filament_group([list(range(n))])


def test_memory_keeps_near_best_groups_sorted():
    fg = FilamentGroup(make_context(np.zeros((2, 2)), max_group_size=(1, 1)))
    fg.calc_filament_group([[0], [1]])
    costs = fg.get_memoryed_costs()
    assert costs == sorted(costs)
    assert sorted(map(tuple, fg.get_memoryed_groups())) == [(0, 1), (1, 0)]


def test_color_distance_and_matching():
    distances = color_distance_matrix(['#FF0000', '#00FF00'], ['#FE0101', '#0000FF'])
    assert distances.shape == (2, 2)
    assert distances[0, 0] < 5
    assert distances[1, 1] > 20
    assert count_color_matches(distances, 20.0) == (1, pytest.approx(distances[0, 0]))


def test_select_best_group_for_ams_prefers_matching_colours():
    maps = [[0, 1], [1, 0]]
    ams = [['#00FF00'], ['#FF0000']]
    assert select_best_group_for_ams(maps, [0, 1], ['#FF0000', '#00FF00'], ams) == [1, 0]
    assert select_best_group_for_ams(maps, [0, 1], ['#FF0000', '#00FF00'], []) == [0, 1]


def test_recommend_uses_loaded_colours_on_cost_ties():
    # disjoint usage: every feasible grouping costs nothing
    ctx = make_context(np.zeros((2, 2)), max_group_size=(1, 1))
    colours = ['#FF0000', '#00FF00']
    assert recommend_filament_maps([[0], [1]], ctx, colours, [['#00FF00'], ['#FF0000']]) == [1, 0]
    assert recommend_filament_maps([[0], [1]], ctx, colours, [['#FF0000'], ['#00FF00']]) == [0, 1]


def test_recommend_never_trades_cost_for_colour():
    flush = uniform(2, 300.0)
    ctx = make_context(flush, max_group_size=(2, 2))
    # sharing a nozzle costs 300 per layer, so colours must not pull them together
    filament_map = recommend_filament_maps([[0, 1]] * 4, ctx, ['#FF0000', '#00FF00'],
                                           [['#FF0000', '#00FF00'], []])
    assert filament_map[0] != filament_map[1]


def test_recommend_keeps_colour_choice_among_cheapest_maps_only():
    flush = uniform(3, 1000.0)
    flush[0, 1] = 100.0
    flush[0, 2] = 101.0
    ctx = make_context(flush, max_group_size=(2, 1))
    layer_filaments = [[0, 1, 2]]
    colours = ['#FF0000', '#00FF00', '#0000FF']
    # the slots match [0, 1, 0] perfectly, but it flushes 1 mm3 more than [0, 0, 1]
    ams = [['#FF0000', '#0000FF'], ['#00FF00']]
    filament_map = recommend_filament_maps(layer_filaments, ctx, colours, ams, processes=1)
    assert filament_map == [0, 0, 1]

    fg = FilamentGroup(ctx, processes=1)
    feasible = [list(m) for m in itertools.product(range(2), repeat=3)
                if is_map_feasible([0, 1, 2], m, (2, 1), ctx.unprintables(), set(), 0)]
    best = min(fg.group_cost(layer_filaments, m) for m in feasible)
    assert fg.group_cost(layer_filaments, filament_map) == pytest.approx(best)
