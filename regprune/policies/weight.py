"""
Magnitude-threshold regularizer for individual weights ("Reg_Weight").

Live magnitudes are modelled as a normal distribution spanning [min, max]
(mean at the midpoint, sigma an eighth of the range). The quantile of the
target ratio gives a threshold: weights below it get positive increments
falling linearly from AA at the minimum to zero at the threshold, weights
above it get negative increments growing linearly toward -AA at the maximum.

The two sides of the ramp act on the accumulated multiplier, not on the
gradient directly: the further a weight sits above the threshold, the faster
whatever multiplier it picked up earlier drains back to zero, the same way
Reg-rank treats the units it spares. The multiplier itself never goes
negative, so no weight is ever pushed away from zero.
"""

import torch

from .base import RegContext, UnitRegularizationPolicy, apply_delta, check_positive, live_reg
from ..state import PruneUnit


# standard normal quantiles for p = 0.50, 0.55, ..., 0.95, 0.999
NORMAL_QUANTILES = (
    0.0, 0.1257, 0.2533, 0.3853, 0.5244, 0.6745,
    0.8416, 1.0364, 1.2816, 1.6449, 3.0902,
)


def ratio_quantile(ratio: float) -> float:
    """Normal quantile of `ratio`, snapped to the nearest 0.05 step."""
    r = ratio if ratio >= 0.5 else 1 - ratio
    idx = int(round((round(r / 0.05) * 0.05 - 0.5) / 0.05))
    z = NORMAL_QUANTILES[min(idx, len(NORMAL_QUANTILES) - 1)]
    return z if ratio > 0.5 else -z


class WeightThresholdRegPolicy(UnitRegularizationPolicy):
    """Bimodal increments around a ratio-derived magnitude threshold."""

    name = "Reg_Weight"
    supported_units = (PruneUnit.WEIGHT,)

    def __init__(self, AA: float = 0.00025):
        super().__init__()
        check_positive(AA, "AA", self.name)
        self.AA = AA

    def threshold(self, magnitudes: torch.Tensor, ratio: float):
        """(threshold, min, max) of the live magnitudes, or None when they are all equal."""
        low = float(magnitudes.min())
        high = float(magnitudes.max())
        if high <= low:
            return None
        mean = (high + low) / 2
        sigma = (high - low) / 8
        return mean + ratio_quantile(ratio) * sigma, low, high

    def unit_multiplier(self, ctx: RegContext) -> torch.Tensor:
        state = ctx.state
        magnitudes = self.ranker.score(state, ctx.weight).double()
        if not ctx.accumulate:
            return live_reg(state)

        units = torch.nonzero(~state.unit_pruned()).flatten()
        if units.numel() == 0:
            return live_reg(state)
        live = magnitudes[units]
        bounds = self.threshold(live, state.prune_ratio)
        if bounds is None:
            return live_reg(state)
        thr, low, high = bounds
        k1 = self.AA / (thr - low)
        k2 = self.AA / (high - thr)
        delta = torch.where(live < thr, self.AA - k1 * (live - low), k2 * (thr - live))
        apply_delta(state, units, delta, ctx.target_reg, self.name)
        return live_reg(state)
