"""
Budgeted pruning regularizer ("OptimalReg").

The layer owns a regularization budget of `total * target_reg` where
`total` is the number of units to prune. Each accumulation step hands out a
quota of the remaining budget so that, spread linearly over the iterations
left, the budget is used up exactly when regularization ends at
`num_iter_reg`. The quota is split among the to-prune zone in proportion
to smoothed rank; spared units are pulled back toward zero by the same
slope.
"""

import torch

from .base import RegContext, UnitRegularizationPolicy, apply_delta, live_reg
from ..errors import ConfigurationError, PruningInvariantError
from ..ranking import ScoreRanker


class OptimalRegPolicy(UnitRegularizationPolicy):
    """
    Args:
        num_iter_reg: Iteration at which the whole budget must be spent.
    """

    name = "OptimalReg"

    def __init__(self, num_iter_reg: int = None, rank_mode: str = "average", rank_momentum: float = 0.999):
        super().__init__(rank_mode, rank_momentum)
        if num_iter_reg is None or num_iter_reg <= 1:
            raise ConfigurationError(
                f"num_iter_reg must be an integer > 1, got {num_iter_reg}", policy=self.name
            )
        self.num_iter_reg = int(num_iter_reg)

    def unit_multiplier(self, ctx: RegContext) -> torch.Tensor:
        state = ctx.state
        # strongest unit gets rank 0, so weak units carry large history ranks
        self.ranker.rank(state, ctx.weight, ctx.step, sentinel="float", largest_first=True)
        if ctx.accumulate:
            self.distribute(state, ctx.step, ctx.target_reg)
        return live_reg(state)

    def distribute(self, state, step: int, target_reg: float):
        n = state.num_units
        total = state.num_units_to_prune
        pruned = state.num_pruned_units
        if pruned >= total:
            return
        if state.reg_to_distribute is None:
            state.reg_to_distribute = total * target_reg

        iter_left = self.num_iter_reg - step
        if iter_left <= 1:
            raise PruningInvariantError(
                f"OptimalReg ran out of iterations at step {step} "
                f"(num_iter_reg = {self.num_iter_reg}) with {total - pruned} units left",
                layer=state.name
            )
        left = total - pruned
        quota_end = state.reg_to_distribute * 2 / iter_left / (left + 1)
        d = (left - 1) * quota_end / (iter_left - 1)
        quota_now = (left - 1) * d + quota_end

        order = ScoreRanker.order_by_history_rank(state, pruned_last=True)
        hrank = state.history_rank.double()
        zone = order[n - total:n - pruned]
        hrank_sum = float(hrank[zone].sum())
        k = quota_now / hrank_sum if hrank_sum > 0 else 0.0

        apply_delta(state, zone, k * hrank[zone], target_reg, self.name)
        reg_sum = float(state.history_reg[zone].double().sum())
        state.reg_to_distribute = total * target_reg - reg_sum

        if n - total > 0:
            spared = order[:n - total]
            reference = hrank[order[n - total - 1]]
            apply_delta(state, spared, k * (hrank[spared] - reference), target_reg, self.name)
