"""
Pruning deciders.

A decider turns the continuous state of a layer (weights, regularization
multipliers, pruning probabilities) into permanent prunes. It runs on
pruning ticks only, for layers that are currently being pruned, and queues
every pruned row so that the propagator can clear the matching inputs of
the next layer.
"""

import math
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import torch

from .config import PruneConfig
from .errors import ConfigurationError, PruningInvariantError
from .logger import get_logger
from .policies.base import exponential_curve
from .ranking import ScoreRanker
from .state import PruneUnit, PruningStateStore

# growth of the recovery chance per iteration
RECOVERY_STEP_GAIN = 0.00027


class PruningDecider(ABC):
    """
    Abstract base class for deciders.

    Args:
        store: Pruning state shared with the other components
        config: Root configuration
    """

    name = None

    def __init__(self, store: PruningStateStore, config: PruneConfig):
        self.store = store
        self.config = config

    def is_tick(self, step: int) -> bool:
        return step % self.config.prune_interval == 0

    def before_forward(self, handle: int, weight: torch.Tensor, step: int):
        """Hook run before the forward pass of layers being pruned."""
        pass

    def restore_weights(self, handle: int, weight: torch.Tensor):
        """Hook run right after backward; undoes whatever before_forward did."""
        pass

    @abstractmethod
    def decide(self, handle: int, weight: torch.Tensor, step: int) -> List[int]:
        """
        Freeze the units of layer `handle` that should be pruned now.

        Args:
            weight: (rows, cols) view of the parameter, modified in place

        Returns:
            Units pruned by this call
        """
        pass

    def on_finished(self, handle: int, weight: torch.Tensor):
        """Hook run once when a layer reaches its ratio."""
        pass

    def check_finished(self, handle: int, weight: torch.Tensor, step: int) -> bool:
        """Move the layer to the finished state once its ratio is met. Idempotent."""
        state = self.store[handle]
        if state.is_finished:
            return True
        if state.prune_ratio <= 0:
            return False
        self.store.queue_rows(handle, state.refresh_weight_structure())
        if state.unit_pruned_ratio < state.prune_ratio:
            return False
        self.on_finished(handle, weight)
        state.mark_finished(step)
        get_logger().info(
            f"{state.name}: prune finished at step {step}  "
            f"unit_pruned_ratio = {state.unit_pruned_ratio:.4f}  "
            f"pruned_ratio = {state.pruned_ratio:.4f}"
        )
        return True

    def _commit(self, handle: int, units: List[int], weight: torch.Tensor, step: int) -> List[int]:
        """Prune `units`, freeze their rank and queue pruned rows."""
        state = self.store[handle]
        newly = state.prune_units(units, weight)
        if not newly:
            return newly
        state.record_finished_rank(newly, step, self.config.target_reg)
        if state.unit == PruneUnit.ROW:
            self.store.queue_rows(handle, newly)
        else:
            # individual weights can add up to a whole row
            self.store.queue_rows(handle, state.refresh_weight_structure())
        get_logger().info(
            f"    {state.name}: {len(newly)} {state.unit.value.lower()}s pruned at step {step}  "
            f"pruned_ratio = {state.unit_pruned_ratio:.4f} / {state.prune_ratio}"
        )
        return newly

    def state_dict(self) -> Dict:
        return {}

    def load_state_dict(self, state: Dict):
        pass


class ThresholdDecider(PruningDecider):
    """
    Prune a unit when its mean magnitude drops below `prune_threshold` or its
    regularization multiplier has reached `target_reg`.
    """

    name = "threshold"

    @staticmethod
    def mean_magnitudes(weight: torch.Tensor, unit: PruneUnit) -> torch.Tensor:
        magnitude = weight.detach().abs().float().cpu()
        if unit == PruneUnit.WEIGHT:
            return magnitude.reshape(-1)
        if unit == PruneUnit.ROW:
            return magnitude.mean(dim=1)
        return magnitude.mean(dim=0)

    @torch.no_grad()
    def decide(self, handle: int, weight: torch.Tensor, step: int) -> List[int]:
        state = self.store[handle]
        means = self.mean_magnitudes(weight, state.unit)
        due = (means < self.config.decision.prune_threshold) | (
            state.history_reg >= self.config.target_reg
        )
        candidates = due & ~state.unit_pruned()
        units = torch.nonzero(candidates).flatten().tolist()
        return self._commit(handle, units, weight, step)


class FixedCountDecider(PruningDecider):
    """Prune the `num_once_prune` weakest live rows on every tick."""

    name = "fixed_count"

    def __init__(self, store: PruningStateStore, config: PruneConfig):
        super().__init__(store, config)
        if PruneUnit.parse(config.prune_unit) != PruneUnit.ROW:
            raise ConfigurationError(
                f"Decision mode 'fixed_count' prunes rows, got prune_unit={config.prune_unit}"
            )

    @torch.no_grad()
    def decide(self, handle: int, weight: torch.Tensor, step: int) -> List[int]:
        state = self.store[handle]
        scores = ScoreRanker.unit_scores(weight, state.unit)
        state.score = scores
        pruned = state.unit_pruned()
        order = ScoreRanker.order(scores, pruned, "float")
        active = int((~pruned).sum().item())
        left = state.num_units_to_prune - state.num_pruned_units
        count = min(self.config.decision.num_once_prune, active, max(left, 0))
        return self._commit(handle, order[:count].tolist(), weight, step)


class ProbabilisticDecider(PruningDecider):
    """
    Keep a pruning probability per unit and lower it for weak units on every
    tick; a unit whose probability reaches 0 is pruned for good.

    Between ticks, each unit takes part in the forward pass only with its
    probability: a Bernoulli mask is drawn every step and applied to the
    weights for forward/backward, then the full weights are restored
    before the update. When the layer finishes, surviving weights are
    scaled by their probability so that the deterministic network matches
    the expected output of the stochastic one.
    """

    name = "probabilistic"

    def __init__(self, store: PruningStateStore, config: PruneConfig):
        super().__init__(store, config)
        self.params = config.decision.probabilistic
        self.generator = torch.Generator()
        if self.params.seed is not None:
            self.generator.manual_seed(self.params.seed)
        else:
            self.generator.seed()

    def goal(self, state) -> int:
        return math.ceil((state.prune_ratio + self.params.slack) * state.num_units)

    def before_forward(self, handle: int, weight: torch.Tensor, step: int):
        if self.is_tick(step):
            self.update_probabilities(handle, weight, step)
            # the layer may be done before this step's regularization runs
            if self.check_finished(handle, weight, step):
                return
        self.sample_mask(handle)
        self.mask_for_forward(handle, weight)

    @torch.no_grad()
    def update_probabilities(self, handle: int, weight: torch.Tensor, step: int) -> List[int]:
        state = self.store[handle]
        scores = ScoreRanker.unit_scores(weight, state.unit)
        state.score = scores
        state.history_score = self.params.score_decay * state.history_score + scores
        order = ScoreRanker.order(state.history_score, state.unit_pruned(), "float")
        goal = self.goal(state)
        self.recover(handle, order, goal, step)
        return self.decrease(handle, order, goal, weight, step)

    def recovery_due(self, step: int) -> bool:
        p = self.params
        if p.rgamma <= 0:
            return False
        u = float(torch.rand(1, generator=self.generator))
        return math.pow(p.rgamma + RECOVERY_STEP_GAIN * step, p.rpower) > u * p.iter_size

    def recover(self, handle: int, order: torch.Tensor, goal: int, step: int, force: bool = False) -> int:
        """
        Reset the probability of borderline-and-stronger live units to 1.
        Units already at probability 0 stay pruned. Returns the number of
        units whose probability went up.
        """
        if not force and not self.recovery_due(step):
            return 0
        state = self.store[handle]
        pruned = state.unit_pruned()
        active = int((~pruned).sum().item())
        start = max(goal - state.num_pruned_units - 1, 0)
        units = order[start:active]
        units = units[(state.history_prob[units] > 0) & ~pruned[units]]
        raised = int((state.history_prob[units] < 1).sum().item())
        state.history_prob[units] = 1
        if raised:
            get_logger().debug(f"    {state.name}: {raised} units recovered at step {step}")
        return raised

    def increments(self, active: int, left: int) -> torch.Tensor:
        p = self.params
        j = torch.arange(active, dtype=torch.float64)
        if p.curve == "linear":
            return p.AA - (p.AA / left) * j
        alpha = math.log(2 / p.kk) / left
        return exponential_curve(j, p.AA, alpha, p.kk)

    def decrease(self, handle: int, order: torch.Tensor, goal: int, weight: torch.Tensor, step: int) -> List[int]:
        state = self.store[handle]
        left = goal - state.num_pruned_units
        if left <= 0:
            raise PruningInvariantError(
                f"probabilistic decider has no units left to prune "
                f"(goal {goal}, pruned {state.num_pruned_units})", layer=state.name
            )
        # active count is fixed before any unit in this pass reaches 0
        active = int((~state.unit_pruned()).sum().item())
        units = order[:active]
        delta = self.increments(active, left)
        old = state.history_prob[units].double()
        new = (old - delta).clamp(0, 1)
        state.history_prob[units] = new.float()
        zeroed = units[new == 0].tolist()
        return self._commit(handle, zeroed, weight, step)

    def sample_mask(self, handle: int) -> torch.Tensor:
        """Draw this step's Bernoulli keep-mask and store it on the layer."""
        state = self.store[handle]
        draws = torch.rand(state.num_units, generator=self.generator)
        keep = draws < state.history_prob
        state.step_mask = state.unit_to_elements(keep).contiguous() & state.mask
        return state.step_mask

    @torch.no_grad()
    def mask_for_forward(self, handle: int, weight: torch.Tensor):
        state = self.store[handle]
        backup = state.weight_backup
        if backup.device != weight.device or backup.dtype != weight.dtype:
            backup = torch.empty_like(weight)
            state.weight_backup = backup
        backup.copy_(weight)
        weight.mul_(state.step_mask.to(device=weight.device, dtype=weight.dtype))

    @torch.no_grad()
    def restore_weights(self, handle: int, weight: torch.Tensor):
        state = self.store[handle]
        if state.step_mask is None:
            return
        weight.copy_(state.weight_backup)

    def decide(self, handle: int, weight: torch.Tensor, step: int) -> List[int]:
        # pruning happens in update_probabilities, before the forward pass
        return []

    @torch.no_grad()
    def on_finished(self, handle: int, weight: torch.Tensor):
        state = self.store[handle]
        prob = state.history_prob
        scale = torch.where(prob > 0, prob, torch.ones_like(prob))
        weight.mul_(state.unit_to_elements(scale).to(device=weight.device, dtype=weight.dtype))
        prob[prob > 0] = 1
        state.step_mask = None
        get_logger().debug(f"    {state.name}: surviving weights scaled by their probability")

    def state_dict(self) -> Dict:
        return {"generator": self.generator.get_state()}

    def load_state_dict(self, state: Dict):
        if "generator" in state:
            self.generator.set_state(state["generator"])


DECIDERS = {
    ThresholdDecider.name: ThresholdDecider,
    ProbabilisticDecider.name: ProbabilisticDecider,
    FixedCountDecider.name: FixedCountDecider,
}


def build_decider(store: PruningStateStore, config: PruneConfig) -> PruningDecider:
    cls: Optional[type] = DECIDERS.get(config.decision.mode)
    if cls is None:
        raise ConfigurationError(f"Unknown decision mode: {config.decision.mode}")
    return cls(store, config)
