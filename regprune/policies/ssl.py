"""
Group-lasso regularizers ("SSL" and "SSL_discriminative").

The gradient of AA * sum ||w_u||_2 over units u is AA * w / ||w_u||_2,
which shrinks every element of a unit by the same relative amount. The
discriminative variant applies it to the to-prune zone only, leaving the
units that will survive untouched.
"""

import torch

from .base import RegContext, UnitRegularizationPolicy, check_positive, remaining_to_prune
from ..ranking import ScoreRanker
from ..state import PruneUnit


class SSLPolicy(UnitRegularizationPolicy):
    """
    Args:
        AA: Group-lasso strength.
        discriminative: Only regularize the weakest units still to prune.
    """

    name = "SSL"
    supported_units = (PruneUnit.ROW, PruneUnit.COL)

    def __init__(self, AA: float = 0.00025, discriminative: bool = False):
        super().__init__()
        check_positive(AA, "AA", self.name)
        self.AA = AA
        self.discriminative = bool(discriminative)
        if self.discriminative:
            self.name = "SSL_discriminative"

    def unit_norms(self, state, weight: torch.Tensor) -> torch.Tensor:
        squared = weight.detach().float().cpu() ** 2
        dim = 1 if state.unit == PruneUnit.ROW else 0
        norms = squared.sum(dim=dim).sqrt()
        # an all-zero unit contributes no gradient either way
        return torch.where(norms > 0, norms, torch.ones_like(norms))

    def unit_multiplier(self, ctx: RegContext) -> torch.Tensor:
        state = ctx.state
        scores = self.ranker.score(state, ctx.weight)
        multiplier = self.AA / self.unit_norms(state, ctx.weight)
        if self.discriminative:
            pruned = state.unit_pruned()
            order = ScoreRanker.order(scores, pruned, "float")
            to_prune = remaining_to_prune(state, self.name)
            active = int((~pruned).sum().item())
            multiplier[order[to_prune:active]] = 0
        return multiplier
