import numpy as np
import pytest

from toolorder.sequencer import (FilamentChangeStats, calc_filament_change_info_by_toolorder, get_extruders_order,
                                 reorder_filaments_for_minimum_flush_volume, sequence_flush_cost)

from helpers import make_config


def uniform(n, volume=100.0):
    matrix = np.full((n, n), volume)
    np.fill_diagonal(matrix, 0.0)
    return matrix


def test_sequence_flush_cost():
    matrix = uniform(3)
    assert sequence_flush_cost(matrix, None, [0, 1, 2]) == 200
    assert sequence_flush_cost(matrix, 2, [0, 1]) == 200
    assert sequence_flush_cost(matrix, 0, [0, 1]) == 100


def test_extruders_order_follows_cheap_chain():
    matrix = uniform(3)
    matrix[0, 1] = 10
    matrix[1, 2] = 10
    cost, order = get_extruders_order(matrix, [2, 0, 1])
    assert order == [0, 1, 2]
    assert cost == 20


def test_extruders_order_keeps_loaded_filament_first_on_ties():
    cost, order = get_extruders_order(uniform(3, 50.0), [1, 2], current=2)
    assert order == [2, 1]
    assert cost == 50


def test_extruders_order_greedy_for_large_sets():
    n = 9
    matrix = uniform(n)
    for f in range(n - 1):
        matrix[f, f + 1] = 1
    cost, order = get_extruders_order(matrix, list(range(n)), current=0)
    assert order == list(range(n))
    assert cost == n - 1


def test_layers_continue_with_last_filament():
    flush = np.stack([uniform(3)])
    _, sequences = reorder_filaments_for_minimum_flush_volume([0, 0, 0], [[0, 1, 2], [0, 1, 2], [1, 2]], flush)
    for below, above in zip(sequences, sequences[1:]):
        assert above[0] == below[-1]
    assert sorted(sequences[0]) == [0, 1, 2]


def test_nozzles_keep_their_own_loaded_filament():
    # filament 0 and 1 on nozzle 0, filament 2 on nozzle 1
    flush = np.stack([uniform(3), uniform(3)])
    total, sequences = reorder_filaments_for_minimum_flush_volume([0, 0, 1], [[0, 2], [1, 2], [0, 2]], flush)
    # nozzle 1 never changes filament, nozzle 0 swaps twice
    assert total == 200
    assert all(sorted(s) in ([0, 2], [1, 2]) for s in sequences)


def test_custom_sequence_wins():
    flush = np.stack([uniform(3)])

    def custom(layer_idx):
        return [3, 1] if layer_idx == 1 else None

    _, sequences = reorder_filaments_for_minimum_flush_volume([0, 0, 0], [[0, 1], [0, 1, 2]], flush, custom)
    # unnamed filaments follow the custom order
    assert sequences[1] == [2, 0, 1]


def test_change_info_counts_changes_and_weight():
    config = make_config(n_filaments=2, filament_density=[1.25, 1.0])
    flush = np.stack([uniform(2, 1000.0)])
    stats = calc_filament_change_info_by_toolorder(config, [0, 0], flush, [[0, 1], [1, 0]])
    # 0->1 purges 1000 mm3 of filament 1, 1->0 1000 mm3 of filament 0
    assert stats == FilamentChangeStats(filament_change_count=2, filament_flush_weight=2)


def test_change_info_is_per_nozzle():
    config = make_config(n_filaments=2, n_extruders=2)
    flush = np.stack([uniform(2), uniform(2)])
    stats = calc_filament_change_info_by_toolorder(config, [0, 1], flush, [[0, 1], [1, 0], [0, 1]])
    assert stats.filament_change_count == 0
    assert stats.filament_flush_weight == 0


def test_unknown_filament_in_custom_order_is_ignored():
    flush = np.stack([uniform(2)])
    _, sequences = reorder_filaments_for_minimum_flush_volume([0, 0], [[1]], flush, lambda idx: [5, 2])
    assert sequences == [[1]]


@pytest.mark.parametrize("current", [None, 0, 1])
def test_single_filament_order(current):
    cost, order = get_extruders_order(uniform(2), [1], current=current)
    assert order == [1]
    assert cost == (100 if current == 0 else 0)
