"""
Human-readable reports of the pruning state.

The unit table lists the first `show_num` units of a layer with their mean
weight magnitude, mask status and either the regularization multiplier or
the pruning probability. Tables are built only when DEBUG output is on.
"""

from typing import List

import torch

from .logger import LogLevel, get_logger
from .state import LayerPruneState, PruneUnit, PruningStateStore


def unit_table(state: LayerPruneState, weight: torch.Tensor, show_num: int = 20,
               show_prob: bool = False) -> List[str]:
    """Lines of the per-unit table for one layer."""
    magnitude = weight.detach().abs().float().cpu()
    if state.unit == PruneUnit.ROW:
        means = magnitude.mean(dim=1)
    elif state.unit == PruneUnit.COL:
        means = magnitude.mean(dim=0)
    else:
        means = magnitude.reshape(-1)
    pruned = state.unit_pruned()
    values = state.history_prob if show_prob else state.history_reg

    lines = [f"{'Index':>6}  {'WeightMean':>12}  {'Mask':>4}  "
             f"{'HistoryProb' if show_prob else 'HistoryReg':>12}   - {state.name}"]
    for i in range(min(show_num, state.num_units)):
        lines.append(
            f"{i + 1:>6}  {float(means[i]):>12.6f}  {int(not pruned[i]):>4}  {float(values[i]):>12.6f}"
        )
    return lines


def log_unit_table(state: LayerPruneState, weight: torch.Tensor, show_num: int = 20,
                   show_prob: bool = False):
    logger = get_logger()
    if not logger.is_enabled_for(LogLevel.DEBUG):
        return
    for line in unit_table(state, weight, show_num, show_prob):
        logger.debug(line)


def log_prune_summary(store: PruningStateStore, step: int):
    """One line per layer with its pruning progress."""
    logger = get_logger()
    logger.info(f"pruning state at step {step}:")
    for layer in store:
        if layer.prune_ratio <= 0:
            continue
        status = f"finished at {layer.finished_at_step}" if layer.is_finished else "active"
        logger.info(
            f"  {layer.name:30s}: {layer.unit.value} {layer.unit_pruned_ratio:6.2%} / "
            f"{layer.prune_ratio:6.2%}  (pruned_ratio {layer.pruned_ratio:6.2%}, {status})"
        )
    logger.log_memory_usage(f"step {step}")
