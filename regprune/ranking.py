"""
Importance scoring and rank smoothing.

Units are scored by the L1 magnitude of their weights, ordered weakest
first, and the rank of each live unit is smoothed over time into
`history_rank`, which is what the rank-driven regularizers sort by.
"""

from enum import Enum

import torch

from .errors import ConfigurationError
from .state import LayerPruneState, PruneUnit


class RankMode(str, Enum):
    """How a fresh rank is folded into history_rank."""
    AVERAGE = "average"
    MOMENTUM = "momentum"


class ScoreRanker:
    """
    Scores and ranks the units of one layer.

    Args:
        mode: AVERAGE keeps the running mean of all ranks seen so far
              (h = ((n-1)h + rk) / n with n the 1-based step). MOMENTUM keeps
              an exponential moving average with a fixed momentum and no drift
              correction, which suits long schedules better.
        momentum: EMA momentum for MOMENTUM mode.
    """

    def __init__(self, mode="average", momentum: float = 0.999):
        try:
            self.mode = RankMode(mode)
        except ValueError:
            raise ConfigurationError(f"Unknown history rank mode: {mode}") from None
        if not 0 <= momentum < 1:
            raise ConfigurationError(f"Rank momentum must be in [0, 1), got {momentum}")
        self.momentum = momentum

    @staticmethod
    def unit_scores(weight: torch.Tensor, unit: PruneUnit) -> torch.Tensor:
        """Sum of |w| per unit, as float32 on the CPU."""
        magnitude = weight.detach().abs().float().cpu()
        if unit == PruneUnit.WEIGHT:
            return magnitude.reshape(-1)
        if unit == PruneUnit.ROW:
            return magnitude.sum(dim=1)
        return magnitude.sum(dim=0)

    @staticmethod
    def order(
        keys: torch.Tensor,
        pruned: torch.Tensor,
        sentinel: str = "float",
        frozen: torch.Tensor = None,
        largest_first: bool = False,
    ) -> torch.Tensor:
        """
        Unit indices sorted by key, ties kept in index order.

        Pruned units never compete with live ones: with sentinel "float"
        they are pushed to the end, with "sink" they take their frozen value
        (the large negative history rank recorded at pruning time) and land
        in front.
        """
        keys = keys.clone()
        if largest_first:
            keys = -keys
        if sentinel == "float":
            keys[pruned] = float("inf")
        elif sentinel == "sink":
            keys[pruned] = frozen[pruned]
        else:
            raise ValueError(f"Unknown sentinel: {sentinel}")
        return torch.sort(keys, stable=True).indices

    def score(self, state: LayerPruneState, weight: torch.Tensor) -> torch.Tensor:
        state.score = self.unit_scores(weight, state.unit)
        return state.score

    def update_history_rank(self, state: LayerPruneState, order: torch.Tensor, step: int):
        """Fold the ranks given by `order` into history_rank for live units only."""
        ranks = torch.empty_like(order, dtype=torch.float32)
        ranks[order] = torch.arange(order.numel(), dtype=torch.float32)
        live = ~state.unit_pruned()
        old = state.history_rank
        if self.mode == RankMode.AVERAGE:
            n = step + 1
            new = ((n - 1) * old + ranks) / n
        else:
            m = self.momentum
            new = torch.where(old != 0, m * old + (1 - m) * ranks, ranks)
        state.history_rank = torch.where(live, new, old)

    def rank(
        self,
        state: LayerPruneState,
        weight: torch.Tensor,
        step: int,
        sentinel: str = "float",
        largest_first: bool = False,
    ) -> torch.Tensor:
        """Score, order and smooth in one go; returns the score order."""
        scores = self.score(state, weight)
        order = self.order(
            scores, state.unit_pruned(), sentinel,
            frozen=state.history_rank, largest_first=largest_first
        )
        self.update_history_rank(state, order, step)
        return order

    @staticmethod
    def order_by_history_rank(state: LayerPruneState, pruned_last: bool = False) -> torch.Tensor:
        """Units sorted by smoothed rank; pruned units first unless `pruned_last`."""
        keys = state.history_rank.clone()
        if pruned_last:
            keys[state.unit_pruned()] = float("inf")
        return torch.sort(keys, stable=True).indices
