"""
Unit tests for scoring and rank smoothing.
"""

import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from regprune.errors import ConfigurationError
from regprune.logger import Logger, LogLevel
from regprune.ranking import ScoreRanker
from regprune.state import LayerPruneState, PruneUnit

logger = Logger(program_name='test_ranking', level=LogLevel.WARNING)


def test_unit_scores_per_axis():
    weight = torch.tensor([[1.0, -2.0], [3.0, 0.5]])
    assert ScoreRanker.unit_scores(weight, PruneUnit.ROW).tolist() == [3.0, 3.5]
    assert ScoreRanker.unit_scores(weight, PruneUnit.COL).tolist() == [4.0, 2.5]
    assert ScoreRanker.unit_scores(weight, PruneUnit.WEIGHT).tolist() == [1.0, 2.0, 3.0, 0.5]


def test_order_sentinels():
    """Pruned units go last with the float sentinel and first with the sink sentinel."""
    keys = torch.tensor([0.5, 0.1, 0.3, 0.2])
    pruned = torch.tensor([False, True, False, False])
    frozen = torch.tensor([0.0, -1e6, 0.0, 0.0])

    assert ScoreRanker.order(keys, pruned, "float").tolist() == [3, 2, 0, 1]
    assert ScoreRanker.order(keys, pruned, "sink", frozen=frozen).tolist() == [1, 3, 2, 0]
    assert ScoreRanker.order(keys, pruned, "float", largest_first=True).tolist() == [0, 2, 3, 1]


def test_order_is_stable_on_ties():
    keys = torch.tensor([1.0, 1.0, 1.0])
    pruned = torch.zeros(3, dtype=torch.bool)
    assert ScoreRanker.order(keys, pruned).tolist() == [0, 1, 2]


def test_history_rank_average():
    """Average mode keeps the mean of all ranks seen."""
    state = LayerPruneState("fc", (1, 3), PruneUnit.COL)
    ranker = ScoreRanker("average")
    ranker.update_history_rank(state, torch.tensor([0, 1, 2]), step=0)
    ranker.update_history_rank(state, torch.tensor([2, 1, 0]), step=1)
    # unit 0: ranks 0 then 2, unit 2: ranks 2 then 0
    assert state.history_rank.tolist() == pytest.approx([1.0, 1.0, 1.0])


def test_history_rank_momentum_seeds_first_rank():
    state = LayerPruneState("fc", (1, 3), PruneUnit.COL)
    ranker = ScoreRanker("momentum", momentum=0.5)
    ranker.update_history_rank(state, torch.tensor([2, 1, 0]), step=0)
    # unit 2 had rank 0, which leaves h == 0 and seeds again next time
    assert state.history_rank.tolist() == pytest.approx([2.0, 1.0, 0.0])
    ranker.update_history_rank(state, torch.tensor([0, 1, 2]), step=1)
    assert state.history_rank.tolist() == pytest.approx([1.0, 1.0, 2.0])


def test_pruned_history_rank_is_frozen():
    state = LayerPruneState("fc", (2, 3), PruneUnit.COL)
    state.prune_cols([1])
    state.record_finished_rank([1], step=4, target_reg=1.0)
    frozen = state.history_rank[1].item()

    ranker = ScoreRanker()
    weight = torch.tensor([[1.0, 0.0, 3.0], [1.0, 0.0, 3.0]])
    for step in range(5, 10):
        ranker.rank(state, weight, step, sentinel="sink")
    assert state.history_rank[1].item() == frozen
    assert ScoreRanker.order_by_history_rank(state)[0].item() == 1
    assert ScoreRanker.order_by_history_rank(state, pruned_last=True)[-1].item() == 1


def test_invalid_rank_mode():
    with pytest.raises(ConfigurationError):
        ScoreRanker("median")
    with pytest.raises(ConfigurationError):
        ScoreRanker("momentum", momentum=1.0)


def run_all_tests():
    """Run all tests."""
    tests = [
        test_unit_scores_per_axis,
        test_order_sentinels,
        test_order_is_stable_on_ties,
        test_history_rank_average,
        test_history_rank_momentum_seeds_first_rank,
        test_pruned_history_rank_is_frozen,
        test_invalid_rank_mode,
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
