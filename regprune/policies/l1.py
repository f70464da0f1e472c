"""
Magnitude-linear pruning regularizer ("Reg-L1").

The increment falls linearly with a unit's L1 score: the weakest live unit
gets AA, the unit sitting right at the prune boundary gets zero, and
stronger units get negative increments.
"""

import torch

from .base import (
    RegContext, UnitRegularizationPolicy, apply_delta, check_positive,
    live_reg, remaining_to_prune,
)


class L1RegPolicy(UnitRegularizationPolicy):
    """Linear-in-score increments; see module docstring."""

    name = "Reg-L1"

    def __init__(self, AA: float = 0.00025, rank_mode: str = "average", rank_momentum: float = 0.999):
        super().__init__(rank_mode, rank_momentum)
        check_positive(AA, "AA", self.name)
        self.AA = AA

    def slope(self, sorted_scores: torch.Tensor, to_prune: int) -> float:
        """AA over the score gap between the weakest unit and the boundary unit."""
        if to_prune >= sorted_scores.numel():
            return 0.0
        gap = float(sorted_scores[to_prune] - sorted_scores[0])
        if gap <= 0:
            return 0.0
        return self.AA / gap

    def unit_multiplier(self, ctx: RegContext) -> torch.Tensor:
        state = ctx.state
        order = self.ranker.rank(state, ctx.weight, ctx.step, sentinel="float")
        if ctx.accumulate:
            to_prune = remaining_to_prune(state, self.name)
            active = int((~state.unit_pruned()).sum().item())
            units = order[:active]
            if active == 0:
                return live_reg(state)
            scores = state.score[units].double()
            k = self.slope(scores, to_prune)
            delta = self.AA - k * (scores - scores[0])
            apply_delta(state, units, delta, ctx.target_reg, self.name)
        return live_reg(state)
