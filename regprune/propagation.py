"""
Cross-layer propagation of structural prunes.

When an output unit (row) of layer L is pruned, the fan-in columns of layer
L+1 that read from it are dead as well. Deciders only push (layer, row)
pairs onto the store's PropagationQueue; the CrossLayerPropagator drains it
once per step, after all deciders ran, so a layer is never modified while
another component is iterating over it.
"""

from collections import deque
from typing import Dict, Iterator, List, Set, Tuple

import torch

from .errors import PruningInvariantError
from .logger import get_logger
from .state import LayerPruneState, PruneUnit, PruningStateStore


class PropagationQueue:
    """FIFO of (handle, row) pairs awaiting propagation."""

    def __init__(self):
        self._items = deque()

    def push(self, handle: int, row: int):
        self._items.append((int(handle), int(row)))

    def extend(self, handle: int, rows):
        for row in rows:
            self.push(handle, row)

    def drain(self) -> Iterator[Tuple[int, int]]:
        """Yield every queued entry exactly once, emptying the queue."""
        while self._items:
            yield self._items.popleft()

    def clear(self):
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)


class CrossLayerPropagator:
    """
    Applies queued row prunes to the input side of the following layer and,
    for layers flagged `update_row_col`, the reverse: a row of L whose every
    consuming column in L+1 is pruned gets pruned too.
    """

    def __init__(self, store: PruningStateStore, target_reg: float = 1.0):
        self.store = store
        self.target_reg = target_reg

    @staticmethod
    def input_block(source: LayerPruneState, target: LayerPruneState, row: int) -> Tuple[range, int]:
        """
        Columns of `target` fed by output `row` of `source`, and the row group
        of `target` they belong to.

        conv -> conv: the channel's filter_area block, inside the group that
        reads that channel. Anything -> linear: `cols(L+1) / rows(L)`
        consecutive columns, which is 1 for linear -> linear and the spatial
        size of the flattened feature map for conv -> linear.
        """
        if target.kind == "conv":
            chl = row % target.in_per_group
            g = row // target.in_per_group
            fa = target.filter_area
            return range(chl * fa, (chl + 1) * fa), g
        if target.cols % source.rows != 0:
            raise PruningInvariantError(
                f"{target.name} has {target.cols} inputs, not a multiple of "
                f"{source.rows} outputs of {source.name}", layer=target.name
            )
        k = target.cols // source.rows
        return range(row * k, (row + 1) * k), 0

    def propagate(self, weights: Dict[int, torch.Tensor], step: int) -> Set[int]:
        """Drain the queue; returns the handles of layers that received prunes."""
        touched = set()
        for source_handle, row in self.store.queue.drain():
            target_handle = self.store.next_handle(source_handle)
            if target_handle is None:
                continue
            self.prune_input_block(source_handle, target_handle, row, weights[target_handle], step)
            touched.add(target_handle)
        return touched

    @torch.no_grad()
    def prune_input_block(
        self,
        source_handle: int,
        target_handle: int,
        row: int,
        weight: torch.Tensor,
        step: int,
    ) -> List[int]:
        source = self.store[source_handle]
        target = self.store[target_handle]
        cols, group = self.input_block(source, target, row)
        if target.kind != "conv" or target.group == 1:
            group = None

        if target.unit == PruneUnit.WEIGHT:
            rpg = target.rows_per_group
            row_range = range(target.rows) if group is None else range(group * rpg, (group + 1) * rpg)
            flat = [r * target.cols + c for r in row_range for c in cols]
            newly = target.prune_weights(flat, weight)
            # drained in this same pass
            self.store.queue_rows(target_handle, target.refresh_weight_structure())
        else:
            newly = target.prune_cols(cols, weight, group=group)
            if target.unit == PruneUnit.COL:
                full = target.col_pruned.all(dim=1)
                target.record_finished_rank(
                    [c for c in newly if full[c]], step, self.target_reg
                )

        if newly:
            get_logger().debug(
                f"    {source.name} row {row} -> {target.name} columns "
                f"{cols.start}..{cols.stop - 1}  pruned_count_col = {target.pruned_count_col:.2f}"
            )
        return newly

    @torch.no_grad()
    def prune_orphan_rows(self, handle: int, weight: torch.Tensor, step: int) -> List[int]:
        """Prune rows of layer `handle` whose consumers in the next layer are all pruned."""
        state = self.store[handle]
        nxt = self.store.next_handle(handle)
        if nxt is None or not state.update_row_col:
            return []
        target = self.store[nxt]

        orphans = []
        for i in torch.nonzero(~state.row_pruned).flatten().tolist():
            if target.kind == "conv":
                chl = i % target.in_per_group
                g = i // target.in_per_group
                fa = target.filter_area
                block = target.col_pruned[chl * fa:(chl + 1) * fa, g]
            else:
                cols, _ = self.input_block(state, target, i)
                block = target.col_pruned[cols.start:cols.stop].all(dim=1)
            if bool(block.all()):
                orphans.append(i)

        newly = state.prune_rows(orphans, weight)
        if newly and state.unit == PruneUnit.ROW:
            state.record_finished_rank(newly, step, self.target_reg)
        if newly:
            get_logger().info(
                f"    {state.name}: {len(newly)} rows pruned because their consumers in "
                f"{target.name} are gone  pruned_count_row = {state.pruned_count_row}"
            )
        return newly
