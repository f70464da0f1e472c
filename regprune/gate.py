"""
Update gate: keeps pruned weights at exactly zero across optimizer steps.
"""

from typing import Optional

import torch
import torch.nn as nn

from .state import PruningStateStore


class UpdateGate:
    """
    Masks gradients, momentum buffers and weights of registered layers.

    Gradients and momentum use the effective mask (permanent mask combined
    with the probabilistic decider's step mask, if any). Weights only ever
    see the permanent mask.
    """

    def __init__(self, store: PruningStateStore):
        self.store = store

    def _mask_like(self, mask: torch.Tensor, tensor: torch.Tensor) -> torch.Tensor:
        return mask.reshape(tensor.shape).to(device=tensor.device, dtype=tensor.dtype)

    @torch.no_grad()
    def mask_gradient(self, handle: int, param: nn.Parameter):
        if param.grad is None:
            return
        param.grad.mul_(self._mask_like(self.store[handle].effective_mask(), param.grad))

    @torch.no_grad()
    def mask_momentum(self, handle: int, param: nn.Parameter, optimizer: Optional[torch.optim.Optimizer]):
        if optimizer is None:
            return
        buf = optimizer.state.get(param, {}).get("momentum_buffer")
        if buf is None:
            return
        buf.mul_(self._mask_like(self.store[handle].effective_mask(), buf))

    @torch.no_grad()
    def mask_weights(self, handle: int, param: nn.Parameter):
        param.mul_(self._mask_like(self.store[handle].mask, param))
