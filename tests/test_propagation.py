"""
Unit tests for cross-layer propagation.
"""

import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from regprune.config import DecisionConfig, PruneConfig
from regprune.decider import ThresholdDecider
from regprune.errors import PruningInvariantError
from regprune.logger import Logger, LogLevel
from regprune.propagation import CrossLayerPropagator, PropagationQueue
from regprune.state import PruningStateStore

logger = Logger(program_name='test_propagation', level=LogLevel.WARNING)


def test_queue_drains_each_entry_once():
    queue = PropagationQueue()
    queue.push(0, 3)
    queue.extend(1, [0, 2])
    assert len(queue) == 3
    assert list(queue.drain()) == [(0, 3), (1, 0), (1, 2)]
    assert len(queue) == 0
    assert list(queue.drain()) == []


def test_conv_propagation_masks_filter_block():
    """Row 3 of L clears exactly columns 12..15 of a 2x2 conv reading 4 channels."""
    store = PruningStateStore()
    store.register("conv1", (4, 9), "Row", kind="conv", filter_area=9, in_per_group=1, prune_ratio=0.5)
    store.register("conv2", (3, 16), "Row", kind="conv", filter_area=4, in_per_group=4)
    weights = {0: torch.ones(4, 9), 1: torch.ones(3, 16)}
    propagator = CrossLayerPropagator(store)

    store[0].prune_rows([3], weights[0])
    store.queue.push(0, 3)
    assert propagator.propagate(weights, step=1) == {1}

    target = store[1]
    assert not target.mask[:, 12:16].any()
    assert target.mask[:, :12].all()
    assert weights[1][:, 12:16].abs().sum().item() == 0
    assert target.pruned_count_col == pytest.approx(4.0)

    # a second propagation of the same row counts nothing
    store.queue.push(0, 3)
    propagator.propagate(weights, step=2)
    assert target.pruned_count_col == pytest.approx(4.0)


def test_grouped_conv_propagation():
    """With two groups a channel is cleared only inside the group reading it."""
    store = PruningStateStore()
    store.register("conv1", (4, 1), "Row", kind="conv")
    store.register("conv2", (4, 2), "Col", kind="conv", group=2, filter_area=1, in_per_group=2)
    weights = {0: torch.ones(4, 1), 1: torch.ones(4, 2)}
    propagator = CrossLayerPropagator(store)

    store.queue.push(0, 3)
    propagator.propagate(weights, step=1)
    target = store[1]
    # channel 3 is input 1 of group 1, i.e. rows 2..3 of conv2
    assert target.mask[:2].all()
    assert not target.mask[2:, 1].any()
    assert target.pruned_count_col == pytest.approx(0.5)
    assert not target.unit_pruned().any()


def test_linear_after_conv_propagation():
    store = PruningStateStore()
    store.register("conv", (2, 9), "Row", kind="conv", filter_area=9, in_per_group=1)
    store.register("fc", (3, 8), "Col")
    weights = {0: torch.ones(2, 9), 1: torch.ones(3, 8)}
    propagator = CrossLayerPropagator(store)

    store.queue.push(0, 1)
    propagator.propagate(weights, step=1)
    target = store[1]
    assert target.col_pruned[:, 0].tolist() == [False] * 4 + [True] * 4
    assert target.pruned_count_col == pytest.approx(4.0)
    # fully pruned columns get a frozen rank
    assert (target.history_rank[4:] < 0).all()


def test_linear_after_linear_propagation():
    store = PruningStateStore()
    store.register("fc1", (3, 4), "Row")
    store.register("fc2", (2, 3), "Row")
    weights = {0: torch.ones(3, 4), 1: torch.ones(2, 3)}
    propagator = CrossLayerPropagator(store)

    store.queue.push(0, 2)
    propagator.propagate(weights, step=1)
    assert store[1].mask[:, 2].tolist() == [False, False]
    assert store[1].mask[:, :2].all()


def test_mismatched_fan_in_raises():
    store = PruningStateStore()
    store.register("fc1", (3, 4), "Row")
    store.register("fc2", (2, 5), "Row")
    propagator = CrossLayerPropagator(store)
    store.queue.push(0, 0)
    with pytest.raises(PruningInvariantError):
        propagator.propagate({0: torch.ones(3, 4), 1: torch.ones(2, 5)}, step=1)


def test_last_layer_rows_go_nowhere():
    store = PruningStateStore()
    store.register("fc", (3, 4), "Row")
    propagator = CrossLayerPropagator(store)
    store.queue.push(0, 1)
    assert propagator.propagate({0: torch.ones(3, 4)}, step=1) == set()
    assert len(store.queue) == 0


def test_orphan_rows_are_pruned():
    """A row whose consumers are all gone is pruned when update_row_col is set."""
    store = PruningStateStore()
    store.register("fc1", (3, 4), "Row", update_row_col=True, prune_ratio=0.5)
    store.register("fc2", (2, 3), "Col", prune_ratio=0.5)
    weights = {0: torch.ones(3, 4), 1: torch.ones(2, 3)}
    propagator = CrossLayerPropagator(store)

    store[1].prune_cols([1], weights[1])
    assert propagator.prune_orphan_rows(0, weights[0], step=2) == [1]
    assert store[0].row_pruned.tolist() == [False, True, False]
    assert weights[0][1].abs().sum().item() == 0
    # rows frozen this way take a sunk rank
    assert store[0].history_rank[1].item() < 0
    assert propagator.prune_orphan_rows(0, weights[0], step=3) == []


def test_orphan_rows_need_the_flag():
    store = PruningStateStore()
    store.register("fc1", (3, 4), "Row")
    store.register("fc2", (2, 3), "Col")
    weights = {0: torch.ones(3, 4), 1: torch.ones(2, 3)}
    store[1].prune_cols([1], weights[1])
    assert CrossLayerPropagator(store).prune_orphan_rows(0, weights[0], step=2) == []


def test_orphan_rows_into_conv():
    store = PruningStateStore()
    store.register("conv1", (2, 9), "Row", kind="conv", filter_area=9, in_per_group=1, update_row_col=True)
    store.register("conv2", (3, 8), "Col", kind="conv", filter_area=4, in_per_group=2)
    weights = {0: torch.ones(2, 9), 1: torch.ones(3, 8)}
    store[1].prune_cols([4, 5, 6], weights[1])

    propagator = CrossLayerPropagator(store)
    assert propagator.prune_orphan_rows(0, weights[0], step=1) == []
    store[1].prune_cols([7], weights[1])
    assert propagator.prune_orphan_rows(0, weights[0], step=1) == [1]


def test_weight_unit_full_row_reaches_next_layer():
    """A row emptied weight by weight clears the matching input of the next layer."""
    store = PruningStateStore()
    store.register("fc1", (2, 3), "Weight", prune_ratio=0.5)
    store.register("fc2", (2, 2), "Weight")
    weights = {0: torch.tensor([[1e-6] * 3, [1.0] * 3]), 1: torch.ones(2, 2)}
    decider = ThresholdDecider(store, PruneConfig(
        prune_unit="Weight", decision=DecisionConfig(prune_threshold=1e-3)
    ))

    assert decider.decide(0, weights[0], step=1) == [0, 1, 2]
    assert store[0].row_pruned.tolist() == [True, False]
    assert len(store.queue) == 1
    assert CrossLayerPropagator(store).propagate(weights, step=1) == {1}

    target = store[1]
    assert not target.mask[:, 0].any()
    assert target.mask[:, 1].all()
    assert weights[1][:, 0].abs().sum().item() == 0
    assert target.pruned_count_col == 1
    assert target.pruned_count_weight == 2


def test_weight_unit_rows_found_at_finish_are_queued():
    store = PruningStateStore()
    store.register("fc1", (2, 3), "Weight", prune_ratio=0.5)
    store.register("fc2", (2, 2), "Weight")
    weights = {0: torch.ones(2, 3), 1: torch.ones(2, 2)}
    decider = ThresholdDecider(store, PruneConfig(prune_unit="Weight"))

    # pruned outside a decider, so only the finish check sees the full row
    store[0].prune_weights([3, 4, 5], weights[0])
    assert decider.check_finished(0, weights[0], step=2)
    assert list(store.queue.drain()) == [(0, 1)]


def test_weight_unit_propagation_cascades():
    """A target row emptied by propagation is itself propagated in the same pass."""
    store = PruningStateStore()
    store.register("fc1", (2, 3), "Row")
    store.register("fc2", (2, 2), "Weight")
    store.register("fc3", (2, 2), "Weight")
    weights = {0: torch.ones(2, 3), 1: torch.ones(2, 2), 2: torch.ones(2, 2)}
    store[1].prune_weights([0], weights[1])

    store.queue.push(0, 1)
    assert CrossLayerPropagator(store).propagate(weights, step=1) == {1, 2}
    # fc2 column 1 plus the weight already gone leave row 0 empty
    assert store[1].row_pruned.tolist() == [True, False]
    assert not store[2].mask[:, 0].any()
    assert len(store.queue) == 0

def run_all_tests():
    """Run all tests."""
    tests = [
        test_queue_drains_each_entry_once,
        test_conv_propagation_masks_filter_block,
        test_grouped_conv_propagation,
        test_linear_after_conv_propagation,
        test_linear_after_linear_propagation,
        test_mismatched_fan_in_raises,
        test_last_layer_rows_go_nowhere,
        test_orphan_rows_are_pruned,
        test_orphan_rows_need_the_flag,
        test_orphan_rows_into_conv,
        test_weight_unit_full_row_reaches_next_layer,
        test_weight_unit_rows_found_at_finish_are_queued,
        test_weight_unit_propagation_cascades,
    ]

    passed = 0
    failed = 0
    for test in tests:
        try:
            test()
            passed += 1
        except Exception as e:
            logger.error(f"✗ {test.__name__} failed: {e}")
            failed += 1

    logger.warning(f"Test Results: {passed} passed, {failed} failed")
    return failed == 0


if __name__ == "__main__":
    success = run_all_tests()
    sys.exit(0 if success else 1)
