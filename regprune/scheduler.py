"""
Regularization scheduler.

Adds two things to the gradient of every parameter after backward:

1. Baseline weight decay (L2 or L1) on every parameter, biases included,
   with an optional decreasing-weight-decay schedule.
2. The pruning policy term, for weight tensors of layers that are currently
   being pruned.

The optimizer itself must run with weight_decay=0, otherwise decay is
applied twice.
"""

from typing import Optional

import torch
import torch.nn as nn

from .config import DecayConfig, PruneConfig
from .logger import get_logger
from .policies import RegContext, RegularizationPolicy, build_policy
from .state import PruneUnit, PruningStateStore


class DecaySchedule:
    """
    Current weight decay for a step.

    - "none": constant weight_decay
    - "linearly": from weight_decay at begin_iter down to weight_decay*wd_end
      at end_iter, constant afterwards
    - "step_linearly": the same line, sampled every `step` iterations
    - "adaptive": scaled down by the largest column prune count of any layer,
      reaching weight_decay*wd_end at max_num_column_to_prune

    Every schedule keeps the constant weight_decay before begin_iter.
    """

    def __init__(self, config: DecayConfig):
        self.config = config

    def current(self, step: int, store: Optional[PruningStateStore] = None) -> float:
        cfg = self.config
        wd = cfg.weight_decay
        if cfg.schedule == "none" or step < cfg.begin_iter:
            return wd

        if cfg.schedule == "adaptive":
            pruned = max((layer.pruned_count_col for layer in store), default=0.0) if store else 0.0
            return wd * (1 - (1 - cfg.wd_end) / cfg.max_num_column_to_prune * pruned)

        elapsed = min(step, cfg.end_iter) - cfg.begin_iter
        if cfg.schedule == "step_linearly":
            elapsed = elapsed // cfg.step * cfg.step
        return wd * (1 - (1 - cfg.wd_end) / (cfg.end_iter - cfg.begin_iter) * elapsed)


class RegularizationScheduler:
    """
    Applies decay and the configured pruning policy to gradients.

    Args:
        store: Pruning state shared with the other components
        config: Root configuration
    """

    def __init__(self, store: PruningStateStore, config: PruneConfig):
        self.store = store
        self.config = config
        self.decay = DecaySchedule(config.decay)
        self.policy: Optional[RegularizationPolicy] = None
        if config.policy.name is not None:
            self.policy = build_policy(config.policy.name, **config.policy.params)
            self.policy.check_unit(PruneUnit.parse(config.prune_unit))
        self._last_wd = None

    def current_wd(self, step: int) -> float:
        wd = self.decay.current(step, self.store)
        if wd != self._last_wd:
            if self._last_wd is not None:
                get_logger().debug(f"    weight decay at step {step}: {wd:.6g}")
            self._last_wd = wd
        return wd

    def is_regularizing(self, handle: Optional[int], param: torch.Tensor, step: int) -> bool:
        if handle is None or self.policy is None:
            return False
        if param.dim() == 1:
            return False
        return self.store.is_pruning(handle, step, self.config.prune_begin_iter)

    @torch.no_grad()
    def apply_decay(self, param: nn.Parameter, decay_mult: float, step: int):
        local = self.current_wd(step) * decay_mult
        if local == 0 or param.grad is None:
            return
        if self.config.decay.regularization_type == "L2":
            param.grad.add_(param.detach(), alpha=local)
        else:
            param.grad.add_(torch.sign(param.detach()), alpha=local)

    @torch.no_grad()
    def regularize(self, param: nn.Parameter, handle: Optional[int], step: int):
        """Decay plus, if the layer is being pruned, the policy term."""
        if param.grad is None:
            return
        decay_mult = self.store[handle].decay_mult if handle is not None else 1.0
        self.apply_decay(param, decay_mult, step)
        if not self.is_regularizing(handle, param, step):
            return

        state = self.store[handle]
        ctx = RegContext(
            state=state,
            weight=param.detach().view(state.rows, state.cols),
            step=step,
            target_reg=self.config.target_reg,
            accumulate=step % self.config.reg_interval == 0,
        )
        term = self.policy.regularization_term(ctx)
        param.grad.add_(term.view_as(param.grad))

    def regularize_model(self, model: nn.Module, handles, step: int):
        """
        Regularize every parameter of `model`.

        Args:
            handles: Mapping from id(parameter) to store handle for the
                     registered weight tensors
        """
        for name, param in model.named_parameters():
            if not param.requires_grad:
                continue
            handle = handles.get(id(param))
            if handle is None and param.dim() > 1:
                get_logger().debug(f"    {name}: not registered, decay only")
            self.regularize(param, handle, step)
