"""
Sign-forcing regularizer ("SignForce").

Negative weights are pulled toward a floor value, positive weights get a
constant-size push toward zero. Unlike the rank policies it keeps no
per-unit history; the term is recomputed from the weights every step.
"""

import torch

from .base import RegContext, RegularizationPolicy, check_positive


class SignForcingPolicy(RegularizationPolicy):
    """
    Args:
        rate: Strength of the term.
        floor: Value negative weights are drawn to.
        eps: Keeps w / |w| finite at zero.
    """

    name = "SignForce"

    def __init__(self, rate: float = 1e-4, floor: float = 0.0, eps: float = 1e-8):
        super().__init__()
        check_positive(rate, "rate", self.name)
        check_positive(eps, "eps", self.name)
        self.rate = rate
        self.floor = floor
        self.eps = eps

    def regularization_term(self, ctx: RegContext) -> torch.Tensor:
        self.ranker.score(ctx.state, ctx.weight)
        w = ctx.weight
        term = torch.where(
            w < 0,
            self.rate * (w - self.floor),
            self.rate * w / (w.abs() + self.eps),
        )
        return term * ctx.state.mask.to(device=w.device, dtype=w.dtype)
