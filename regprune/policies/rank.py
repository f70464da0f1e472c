"""
Rank-driven pruning regularizer ("Reg-rank").

Each live unit gets a regularization increment that depends only on its
smoothed rank: the weakest units receive the largest positive increments,
the strongest ones negative increments, so their multipliers drain back to
zero. Two increment curves are available:

- "continuous": one exponential that crosses zero past the to-prune zone.
- "two_segment": a decaying positive branch over the to-prune zone and a
  separate negative branch over the spared zone, both reaching kk2*AA at
  their inner ends.
"""

import math

import torch

from .base import (
    RegContext, UnitRegularizationPolicy, apply_delta, check_fraction,
    check_positive, exponential_curve, live_in_order, live_reg,
    remaining_to_prune,
)
from ..errors import ConfigurationError
from ..ranking import ScoreRanker


SCHEMES = ("continuous", "two_segment")


class RankRegPolicy(UnitRegularizationPolicy):
    """
    Args:
        AA: Increment of the weakest unit per accumulation step.
        kk: Continuous scheme shape; the curve reaches kk*AA at N1.
        kk2: Two-segment scheme ratio between the inner and outer ends.
        scheme: "continuous" or "two_segment".
        reg_cushion_iter: Ramp AA up linearly over this many initial steps.
        rank_mode / rank_momentum: How ranks are smoothed (see ScoreRanker).
    """

    name = "Reg-rank"

    def __init__(
        self,
        AA: float = 0.00025,
        kk: float = 0.25,
        kk2: float = 0.1,
        scheme: str = "continuous",
        reg_cushion_iter: int = 0,
        rank_mode: str = "average",
        rank_momentum: float = 0.999,
    ):
        super().__init__(rank_mode, rank_momentum)
        check_positive(AA, "AA", self.name)
        if scheme not in SCHEMES:
            raise ConfigurationError(f"Unknown Reg-rank scheme: {scheme}", policy=self.name)
        if scheme == "continuous":
            check_fraction(kk, "kk", self.name)
        else:
            check_fraction(kk2, "kk2", self.name)
        if reg_cushion_iter < 0:
            raise ConfigurationError(
                f"reg_cushion_iter must be >= 0, got {reg_cushion_iter}", policy=self.name
            )
        self.AA = AA
        self.kk = kk
        self.kk2 = kk2
        self.scheme = scheme
        self.reg_cushion_iter = reg_cushion_iter

    def amplitude(self, step: int) -> float:
        if self.reg_cushion_iter and step < self.reg_cushion_iter:
            return (step + 1) / self.reg_cushion_iter * self.AA
        return self.AA

    def increments(self, active: int, to_prune: int, amplitude: float) -> torch.Tensor:
        """Increment for live ranks 0..active-1 (weakest first)."""
        j = torch.arange(active, dtype=torch.float64)
        if self.scheme == "continuous":
            alpha = math.log(2 / self.kk) / (to_prune + 1)
            return exponential_curve(j, amplitude, alpha, self.kk)

        alpha1 = 0.0 if to_prune == 1 else math.log(1 / self.kk2) / (to_prune - 1)
        spared = active - 1 - to_prune
        alpha2 = 0.0 if spared <= 0 else math.log(1 / self.kk2) / spared
        head = amplitude * torch.exp(-alpha1 * j)
        tail = -amplitude * torch.exp(-alpha2 * (active - 1 - j))
        return torch.where(j < to_prune, head, tail)

    def unit_multiplier(self, ctx: RegContext) -> torch.Tensor:
        state = ctx.state
        # pruned units keep their frozen negative rank and sort in front
        self.ranker.rank(state, ctx.weight, ctx.step, sentinel="sink")
        if ctx.accumulate:
            to_prune = remaining_to_prune(state, self.name)
            units = live_in_order(state, ScoreRanker.order_by_history_rank(state))
            delta = self.increments(units.numel(), to_prune, self.amplitude(ctx.step))
            apply_delta(state, units, delta, ctx.target_reg, self.name)
        return live_reg(state)
