"""
RegPruner: regularization-driven pruning during training.

This module binds a model and its optimizer to the pruning components and
runs them in a fixed order around every training step:

    begin_step -> before_forward -> (forward, backward) -> after_backward
    -> optimizer.step() -> after_update

`train_step` wraps the whole sequence for the common case.
"""

from typing import Callable, Dict, Optional

import torch
import torch.nn as nn

from .config import PruneConfig
from .decider import PruningDecider, build_decider
from .diagnostics import log_prune_summary, log_unit_table
from .errors import ConfigurationError
from .gate import UpdateGate
from .logger import get_logger
from .propagation import CrossLayerPropagator
from .scheduler import RegularizationScheduler
from .state import PruneUnit, PruningStateStore


class RegPruner:
    """
    Prunes a model while it trains by pushing the weakest units to zero with
    an adaptive regularization term and freezing them once they get there.

    Every nn.Linear and nn.Conv2d weight is registered as a layer, in
    named_modules() order; consecutive registered layers are assumed to
    feed each other for cross-layer propagation.

    The optimizer must be created with weight_decay=0: decay is applied by
    the pruner so that its schedule and per-layer multipliers take effect.
    """

    def __init__(
        self,
        model: nn.Module,
        optimizer: Optional[torch.optim.Optimizer] = None,
        config: Optional[PruneConfig] = None
    ):
        """
        Initialize the pruner.

        Args:
            model: Model to prune
            optimizer: Optimizer whose momentum buffers get masked (optional)
            config: Pruning configuration (default: PruneConfig())
        """
        self.model = model
        self.optimizer = optimizer
        self.config = config or PruneConfig()
        self.iteration = 0
        self.store = PruningStateStore()
        self.params: Dict[int, nn.Parameter] = {}
        self._handles: Dict[int, int] = {}

        try:
            self.config.validate()
            self.unit = PruneUnit.parse(self.config.prune_unit)
            self.scheduler = RegularizationScheduler(self.store, self.config)
            self.decider: PruningDecider = build_decider(self.store, self.config)
            self._register_layers()
        except ConfigurationError as e:
            get_logger().error(f"Invalid pruning configuration: {e}")
            raise

        self.propagator = CrossLayerPropagator(self.store, self.config.target_reg)
        self.gate = UpdateGate(self.store)

        if optimizer is not None and any(g.get("weight_decay", 0) for g in optimizer.param_groups):
            get_logger().warning(
                "Optimizer has weight_decay > 0; decay will be applied twice. "
                "Set it to 0 and use config.decay instead."
            )
        policy = self.scheduler.policy.get_name() if self.scheduler.policy else "none"
        get_logger().info(
            f"RegPruner: {len(self.store)} layers, unit {self.unit.value}, "
            f"policy {policy}, decision {self.decider.name}"
        )

    def _register_layers(self):
        for name, module in self.model.named_modules():
            if isinstance(module, nn.Conv2d):
                w = module.weight
                layout = dict(
                    kind="conv",
                    group=module.groups,
                    filter_area=w.shape[2] * w.shape[3],
                    in_per_group=w.shape[1],
                )
            elif isinstance(module, nn.Linear):
                w = module.weight
                layout = dict(kind="linear")
            else:
                continue
            layer_cfg = self.config.layer_config(name)
            handle = self.store.register(
                name,
                (w.shape[0], w[0].numel()),
                self.unit,
                prune_ratio=layer_cfg.prune_ratio,
                priority=layer_cfg.priority,
                update_row_col=layer_cfg.update_row_col,
                decay_mult=layer_cfg.decay_mult,
                **layout
            )
            self.params[handle] = w
            self._handles[id(w)] = handle

        for name in self.config.layers:
            if self.store.handle_of(name) is None:
                raise ConfigurationError("No Linear/Conv2d layer with this name", layer=name)

    def weight_2d(self, handle: int) -> torch.Tensor:
        """(rows, cols) view of a registered weight, sharing storage."""
        state = self.store[handle]
        return self.params[handle].data.view(state.rows, state.cols)

    def _pruning(self, handle: int) -> bool:
        return self.store.is_pruning(handle, self.iteration, self.config.prune_begin_iter)

    # ------------------------------------------------------------------ #
    # Per-step hooks
    # ------------------------------------------------------------------ #
    def begin_step(self):
        self.store.begin_step(self.iteration)

    def before_forward(self):
        """Probabilistic decisions and stochastic masks for this step."""
        for handle in self.params:
            if self._pruning(handle):
                self.decider.before_forward(handle, self.weight_2d(handle), self.iteration)

    def after_backward(self):
        """Restore masked weights, add regularization and gate gradients."""
        step = self.iteration
        for handle in self.params:
            self.decider.restore_weights(handle, self.weight_2d(handle))
        self.scheduler.regularize_model(self.model, self._handles, step)
        for handle, param in self.params.items():
            self.gate.mask_gradient(handle, param)
            self.gate.mask_momentum(handle, param, self.optimizer)

    def after_update(self):
        """Re-mask weights, decide, propagate and check which layers are done."""
        step = self.iteration
        for handle, param in self.params.items():
            self.gate.mask_weights(handle, param)
            self.store[handle].step_mask = None

        weights = {handle: self.weight_2d(handle) for handle in self.params}
        tick = step % self.config.prune_interval == 0
        if tick:
            for handle in self.params:
                if self._pruning(handle):
                    self.decider.decide(handle, weights[handle], step)

        self.propagator.propagate(weights, step)

        if tick:
            for handle in self.params:
                if self.store[handle].update_row_col:
                    self.propagator.prune_orphan_rows(handle, weights[handle], step)

        for handle in self.params:
            if self.store[handle].prune_ratio > 0:
                self.decider.check_finished(handle, weights[handle], step)

        if tick and step % self.config.show_interval == 0:
            self._show(step, weights)
        self.iteration += 1

    def _show(self, step: int, weights: Dict[int, torch.Tensor]):
        show_prob = self.decider.name == "probabilistic"
        for handle, weight in weights.items():
            state = self.store[handle]
            if state.prune_ratio > 0 and not state.is_finished:
                log_unit_table(state, weight, self.config.show_num, show_prob)
        log_prune_summary(self.store, step)

    def train_step(self, inputs: torch.Tensor, targets: torch.Tensor, loss_fn: Callable) -> float:
        """
        One full training step with pruning.

        Returns:
            Loss value
        """
        if self.optimizer is None:
            raise ConfigurationError("train_step needs an optimizer")
        self.begin_step()
        self.before_forward()
        self.optimizer.zero_grad()
        loss = loss_fn(self.model(inputs), targets)
        loss.backward()
        self.after_backward()
        self.optimizer.step()
        self.after_update()
        return loss.item()

    # ------------------------------------------------------------------ #
    # State
    # ------------------------------------------------------------------ #
    @property
    def all_finished(self) -> bool:
        return self.store.all_finished

    def restore_from_weights(self):
        """Rebuild masks and counters from zeros in the current weights."""
        for handle, param in self.params.items():
            self.store[handle].rebuild_from_weights(param)

    def state_dict(self) -> Dict:
        return {
            "iteration": self.iteration,
            "store": self.store.state_dict(),
            "decider": self.decider.state_dict(),
        }

    def load_state_dict(self, state: Dict):
        self.store.load_state_dict(state["store"])
        self.decider.load_state_dict(state["decider"])
        self.iteration = state["iteration"]

    def save(self, path: str):
        torch.save(self.state_dict(), path)

    def load(self, path: str):
        self.load_state_dict(torch.load(path, map_location="cpu", weights_only=False))

    def get_sparsity(self) -> float:
        """
        Fraction of zero weights over all registered layers.
        """
        total = 0
        zeros = 0
        for param in self.params.values():
            total += param.numel()
            zeros += (param.data == 0).sum().item()
        return zeros / total if total > 0 else 0

    def print_summary(self):
        """Print per-layer pruning statistics."""
        get_logger().info("\n" + "=" * 60)
        get_logger().info("PRUNING STATISTICS")
        get_logger().info("=" * 60)
        total = 0
        total_masked = 0
        for layer in self.store:
            masked = int((~layer.mask).sum().item())
            total += layer.count
            total_masked += masked
            get_logger().info(
                f"{layer.name:30s}: {masked:8d} / {layer.count:8d} ({masked / layer.count:6.2%})"
                f"  rows {layer.pruned_count_row}  cols {layer.pruned_count_col:.2f}"
            )
        get_logger().info("=" * 60)
        overall = total_masked / total if total > 0 else 0
        get_logger().info(f"{'TOTAL':30s}: {total_masked:8d} / {total:8d} ({overall:6.2%})")
        get_logger().info("=" * 60)
