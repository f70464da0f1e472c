"""
Base regularization policy interface for regprune.

A policy turns the current weights of a layer that is being pruned into an
extra gradient term. Rank-driven policies do this through a per-unit
regularization multiplier (`history_reg`) that only changes on accumulation
steps but is applied on every step; the multiplier of a pruned unit is
always zero.
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass

import torch

from ..errors import ConfigurationError, PruningInvariantError
from ..logger import LogLevel, get_logger
from ..ranking import ScoreRanker
from ..state import LayerPruneState, PruneUnit


@dataclass
class RegContext:
    """Everything a policy sees for one layer on one step."""
    state: LayerPruneState
    # (rows, cols) view of the parameter
    weight: torch.Tensor
    step: int
    target_reg: float
    # True on reg_interval boundaries, when history_reg may change
    accumulate: bool


class RegularizationPolicy(ABC):
    """
    Abstract base class for pruning regularizers.

    Subclasses implement `regularization_term`, the extra gradient for the
    weights of one layer on one step.
    """

    name = None
    supported_units = (PruneUnit.WEIGHT, PruneUnit.ROW, PruneUnit.COL)

    def __init__(self, rank_mode: str = "average", rank_momentum: float = 0.999):
        self.ranker = ScoreRanker(rank_mode, rank_momentum)

    def check_unit(self, unit: PruneUnit):
        if unit not in self.supported_units:
            raise ConfigurationError(
                f"Prune unit {unit.value} is not supported; use one of "
                f"{', '.join(u.value for u in self.supported_units)}",
                policy=self.name
            )

    @abstractmethod
    def regularization_term(self, ctx: RegContext) -> torch.Tensor:
        """Gradient term for `ctx.weight`, same shape/device/dtype."""
        pass

    def get_name(self) -> str:
        return self.name


class UnitRegularizationPolicy(RegularizationPolicy):
    """
    Base for policies that work through one multiplier per unit.

    Subclasses implement `unit_multiplier`; the term broadcasts it to the
    weight matrix and multiplies it with the weights, i.e. an L2-like pull
    whose strength differs per unit.
    """

    def regularization_term(self, ctx: RegContext) -> torch.Tensor:
        multiplier = self.unit_multiplier(ctx)
        elements = ctx.state.unit_to_elements(multiplier)
        return elements.to(device=ctx.weight.device, dtype=ctx.weight.dtype) * ctx.weight

    @abstractmethod
    def unit_multiplier(self, ctx: RegContext) -> torch.Tensor:
        """One non-negative multiplier per unit (CPU float32)."""
        pass


def live_reg(state: LayerPruneState) -> torch.Tensor:
    """history_reg with pruned units zeroed."""
    reg = state.history_reg.clone()
    reg[state.unit_pruned()] = 0
    return reg


def remaining_to_prune(state: LayerPruneState, policy: str) -> int:
    """Units still to prune; raises once there is nothing left to target."""
    to_prune = state.num_units_to_prune - state.num_pruned_units
    if to_prune <= 0:
        raise PruningInvariantError(
            f"{policy}: no units left to prune ({state.num_pruned_units} of "
            f"{state.num_units_to_prune} pruned) but the layer is not finished",
            layer=state.name
        )
    return to_prune


def live_in_order(state: LayerPruneState, order: torch.Tensor) -> torch.Tensor:
    """Restrict a unit order to live units, keeping the order."""
    return order[~state.unit_pruned()[order]]


def apply_delta(
    state: LayerPruneState,
    units: torch.Tensor,
    delta: torch.Tensor,
    target_reg: float,
    policy: str,
):
    """history_reg[u] = clamp(history_reg[u] + delta, 0, target_reg)."""
    if units.numel() == 0:
        return
    old = state.history_reg[units].double()
    new = (old + delta.double()).clamp(0, target_reg)
    state.history_reg[units] = new.float()

    logger = get_logger()
    if logger.is_enabled_for(LogLevel.DEBUG):
        at_target = int((new >= target_reg).sum().item())
        logger.debug(
            f"    {policy} {state.name}: {units.numel()} units updated, "
            f"{at_target} at target, max delta {float(delta.max()):.3e}"
        )


def exponential_curve(j: torch.Tensor, amplitude: float, alpha: float, kk: float) -> torch.Tensor:
    """
    Two-segment exponential shared by Reg-rank and the probabilistic decider:
    amplitude*exp(-alpha*j) up to N1 = -ln(kk)/alpha, then mirrored into a
    negative branch that meets the first one at amplitude*kk.
    """
    n1 = -math.log(kk) / alpha
    head = amplitude * torch.exp(-alpha * j)
    tail = -amplitude * torch.exp(-alpha * (2 * n1 - j)) + 2 * kk * amplitude
    return torch.where(j < n1, head, tail)


def check_positive(value: float, name: str, policy: str):
    if value is None or value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value}", policy=policy)


def check_fraction(value: float, name: str, policy: str):
    if value is None or not 0 < value < 1:
        raise ConfigurationError(f"{name} must be in (0, 1), got {value}", policy=policy)
