"""
Pruning state shared by all pruning components.

A PruningStateStore owns one LayerPruneState per registered weight tensor.
Consumers (the regularization scheduler, the deciders, the propagator and
the update gate) only ever hold the integer handle of a layer and look the
record up in the store, so there is exactly one copy of every mask, counter
and history array.

Weights are always viewed as a 2-D matrix: rows are output units
(filters/neurons) and columns the flattened fan-in. For grouped convolutions
the rows are split into `group` consecutive blocks and a column can be
pruned inside one block only, which is why the column counter is a float.
"""

import math
import sys
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import torch

from .errors import ConfigurationError, PruningInvariantError
from .logger import get_logger


NOT_FINISHED = sys.maxsize
FINISHED_RANK_OFFSET = 1000000


class PruneUnit(str, Enum):
    """Pruning granularity."""
    WEIGHT = "Weight"
    ROW = "Row"
    COL = "Col"

    @classmethod
    def parse(cls, value) -> 'PruneUnit':
        if isinstance(value, PruneUnit):
            return value
        aliases = {"weight": cls.WEIGHT, "row": cls.ROW, "col": cls.COL, "column": cls.COL}
        unit = aliases.get(str(value).lower())
        if unit is None:
            raise ConfigurationError(f"Unknown prune unit: {value}")
        return unit


class LayerPruneState:
    """
    Pruning record of one weight tensor.

    Per-unit arrays (score, history_rank, history_reg, history_prob,
    history_score) are indexed by unit: row index, column index, or flat
    weight index depending on `unit`.
    """

    def __init__(
        self,
        name: str,
        shape: Tuple[int, int],
        unit: PruneUnit,
        kind: str = "linear",
        group: int = 1,
        filter_area: int = 1,
        in_per_group: Optional[int] = None,
        prune_ratio: float = 0.0,
        priority: int = 0,
        update_row_col: bool = False,
        decay_mult: float = 1.0,
    ):
        rows, cols = int(shape[0]), int(shape[1])
        if rows <= 0 or cols <= 0:
            raise ConfigurationError(f"Invalid weight shape {tuple(shape)}", layer=name)
        if rows % group != 0:
            raise ConfigurationError(
                f"{rows} output units cannot be split into {group} groups", layer=name
            )
        self.name = name
        self.shape = (rows, cols)
        self.unit = PruneUnit.parse(unit)
        self.kind = kind
        self.group = int(group)
        self.filter_area = int(filter_area)
        self.in_per_group = int(in_per_group) if in_per_group is not None else cols // self.filter_area
        self.prune_ratio = float(prune_ratio)
        self.priority = int(priority)
        self.update_row_col = bool(update_row_col)
        self.decay_mult = float(decay_mult)

        self.mask = torch.ones(rows, cols, dtype=torch.bool)
        self.weight_pruned = torch.zeros(rows, cols, dtype=torch.bool)
        self.row_pruned = torch.zeros(rows, dtype=torch.bool)
        self.col_pruned = torch.zeros(cols, self.group, dtype=torch.bool)
        self.pruned_count_row = 0
        self.pruned_count_col = 0.0
        self.pruned_count_weight = 0

        n = self.num_units
        self.score = torch.zeros(n, dtype=torch.float32)
        self.history_rank = torch.zeros(n, dtype=torch.float32)
        self.history_reg = torch.zeros(n, dtype=torch.float32)
        self.history_prob = torch.ones(n, dtype=torch.float32)
        self.history_score = torch.zeros(n, dtype=torch.float32)
        self.reg_to_distribute: Optional[float] = None
        self.finished_at_step = NOT_FINISHED

        # scratch, reused every step
        self.weight_backup = torch.zeros(rows, cols, dtype=torch.float32)
        self.step_mask: Optional[torch.Tensor] = None

    # ------------------------------------------------------------------ #
    # Geometry and derived quantities
    # ------------------------------------------------------------------ #
    @property
    def rows(self) -> int:
        return self.shape[0]

    @property
    def cols(self) -> int:
        return self.shape[1]

    @property
    def count(self) -> int:
        return self.rows * self.cols

    @property
    def rows_per_group(self) -> int:
        return self.rows // self.group

    @property
    def num_units(self) -> int:
        if self.unit == PruneUnit.WEIGHT:
            return self.count
        if self.unit == PruneUnit.ROW:
            return self.rows
        return self.cols

    @property
    def num_pruned_units(self) -> int:
        """Whole units pruned so far, truncated like a unit index."""
        if self.unit == PruneUnit.WEIGHT:
            return self.pruned_count_weight
        if self.unit == PruneUnit.ROW:
            return self.pruned_count_row
        return int(self.pruned_count_col)

    @property
    def num_units_to_prune(self) -> int:
        """Total units the target ratio asks for."""
        return math.ceil(self.num_units * self.prune_ratio)

    @property
    def pruned_ratio_row(self) -> float:
        return self.pruned_count_row / self.rows

    @property
    def pruned_ratio_col(self) -> float:
        return self.pruned_count_col / self.cols

    @property
    def pruned_ratio_weight(self) -> float:
        return self.pruned_count_weight / self.count

    @property
    def pruned_ratio(self) -> float:
        if self.unit == PruneUnit.WEIGHT:
            return self.pruned_ratio_weight
        r, c = self.pruned_ratio_row, self.pruned_ratio_col
        return r + c - r * c

    @property
    def unit_pruned_ratio(self) -> float:
        if self.unit == PruneUnit.WEIGHT:
            return self.pruned_ratio_weight
        if self.unit == PruneUnit.ROW:
            return self.pruned_ratio_row
        return self.pruned_ratio_col

    @property
    def is_finished(self) -> bool:
        return self.finished_at_step != NOT_FINISHED

    def unit_pruned(self) -> torch.Tensor:
        """Boolean per unit, True once the unit is permanently pruned."""
        if self.unit == PruneUnit.WEIGHT:
            return self.weight_pruned.reshape(-1)
        if self.unit == PruneUnit.ROW:
            return self.row_pruned
        return self.col_pruned.all(dim=1)

    def unit_to_elements(self, values: torch.Tensor) -> torch.Tensor:
        """Broadcast one value per unit to a (rows, cols) matrix."""
        if self.unit == PruneUnit.WEIGHT:
            return values.reshape(self.rows, self.cols)
        if self.unit == PruneUnit.ROW:
            return values.reshape(self.rows, 1).expand(self.rows, self.cols)
        return values.reshape(1, self.cols).expand(self.rows, self.cols)

    def effective_mask(self) -> torch.Tensor:
        """Permanent mask combined with this step's stochastic mask, if any."""
        if self.step_mask is None:
            return self.mask
        return self.mask & self.step_mask

    # ------------------------------------------------------------------ #
    # Mutations
    # ------------------------------------------------------------------ #
    def prune_rows(self, rows: Sequence[int], weight: Optional[torch.Tensor] = None) -> List[int]:
        """Permanently prune whole rows; returns the rows that were not pruned before."""
        newly = []
        for r in rows:
            r = int(r)
            if self.row_pruned[r]:
                continue
            self.row_pruned[r] = True
            self.mask[r, :] = False
            if weight is not None:
                weight[r, :] = 0
            newly.append(r)
        self.pruned_count_row += len(newly)
        if self.pruned_count_row > self.rows:
            raise PruningInvariantError(
                f"{self.pruned_count_row} rows pruned out of {self.rows}", layer=self.name
            )
        return newly

    def prune_cols(
        self,
        cols: Sequence[int],
        weight: Optional[torch.Tensor] = None,
        group: Optional[int] = None,
    ) -> List[int]:
        """
        Permanently prune columns, in every row group or only in `group`.

        Each (column, group) pair that flips to pruned adds 1/group to the
        column counter. Returns the columns that gained at least one pruned
        group.
        """
        groups = range(self.group) if group is None else [int(group)]
        rpg = self.rows_per_group
        newly = []
        added = 0
        for j in cols:
            j = int(j)
            changed = False
            for g in groups:
                if self.col_pruned[j, g]:
                    continue
                self.col_pruned[j, g] = True
                self.mask[g * rpg:(g + 1) * rpg, j] = False
                if weight is not None:
                    weight[g * rpg:(g + 1) * rpg, j] = 0
                added += 1
                changed = True
            if changed:
                newly.append(j)
        self.pruned_count_col += added / self.group
        if self.pruned_count_col > self.cols + 1e-6:
            raise PruningInvariantError(
                f"{self.pruned_count_col} columns pruned out of {self.cols}", layer=self.name
            )
        return newly

    def prune_weights(self, indices: Sequence[int], weight: Optional[torch.Tensor] = None) -> List[int]:
        """Permanently prune individual weights given as flat indices."""
        flat_pruned = self.weight_pruned.view(-1)
        flat_mask = self.mask.view(-1)
        flat_weight = weight.reshape(-1) if weight is not None else None
        newly = []
        for i in indices:
            i = int(i)
            if flat_pruned[i]:
                continue
            flat_pruned[i] = True
            flat_mask[i] = False
            if flat_weight is not None:
                flat_weight[i] = 0
            newly.append(i)
        self.pruned_count_weight += len(newly)
        if self.pruned_count_weight > self.count:
            raise PruningInvariantError(
                f"{self.pruned_count_weight} weights pruned out of {self.count}", layer=self.name
            )
        return newly

    def prune_units(self, units: Sequence[int], weight: Optional[torch.Tensor] = None) -> List[int]:
        """Prune units of this layer's own granularity."""
        if self.unit == PruneUnit.WEIGHT:
            return self.prune_weights(units, weight)
        if self.unit == PruneUnit.ROW:
            return self.prune_rows(units, weight)
        return self.prune_cols(units, weight)

    def record_finished_rank(self, units: Sequence[int], step: int, target_reg: float):
        """
        Freeze the history rank of freshly pruned units far below any live
        rank. Units that overshot the regularization target more sort first.
        """
        for u in units:
            overshoot = float(self.history_reg[u]) - target_reg
            self.history_rank[u] = step - FINISHED_RANK_OFFSET - overshoot

    def refresh_weight_structure(self) -> List[int]:
        """
        Weight granularity: promote fully pruned rows/columns to row/column
        prunes. Returns the rows promoted by this call.
        """
        if self.unit != PruneUnit.WEIGHT:
            return []
        full_rows = self.weight_pruned.all(dim=1) & ~self.row_pruned
        promoted = torch.nonzero(full_rows).flatten().tolist()
        for r in promoted:
            self.row_pruned[r] = True
            self.pruned_count_row += 1
        full_cols = self.weight_pruned.all(dim=0) & ~self.col_pruned[:, 0]
        for j in torch.nonzero(full_cols).flatten().tolist():
            self.col_pruned[j, :] = True
            self.pruned_count_col += 1
        return promoted

    def mark_finished(self, step: int) -> bool:
        """Enter the terminal state; returns False if already finished."""
        if self.is_finished:
            return False
        self.finished_at_step = int(step)
        self.step_mask = None
        return True

    @torch.no_grad()
    def rebuild_from_weights(self, weight: torch.Tensor):
        """
        Recover masks and counters from a weight matrix when retraining from
        a checkpoint that carries weights but no pruning state.
        """
        weight = weight.detach().reshape(self.rows, self.cols).cpu()
        zero = weight == 0
        if self.unit == PruneUnit.WEIGHT:
            self.weight_pruned = zero.clone()
            self.mask = ~zero
            self.pruned_count_weight = int(zero.sum().item())
            self.row_pruned.zero_()
            self.col_pruned.zero_()
            self.pruned_count_row = 0
            self.pruned_count_col = 0.0
            self.refresh_weight_structure()
            return

        self.mask.fill_(True)
        self.col_pruned.zero_()
        self.row_pruned.zero_()
        rpg = self.rows_per_group
        pruned_col = 0.0
        for g in range(self.group):
            block_zero = zero[g * rpg:(g + 1) * rpg].all(dim=0)
            self.col_pruned[:, g] = block_zero
            self.mask[g * rpg:(g + 1) * rpg, block_zero] = False
            pruned_col += block_zero.sum().item() / self.group
        row_zero = zero.all(dim=1)
        self.row_pruned = row_zero.clone()
        self.mask[row_zero, :] = False
        self.pruned_count_col = pruned_col
        self.pruned_count_row = int(row_zero.sum().item())

        if self.unit == PruneUnit.COL:
            self.history_prob[self.col_pruned.all(dim=1)] = 0
        else:
            self.history_prob[self.row_pruned] = 0
        get_logger().info(
            f"    Masks restored for {self.name}: pruned_col = {self.pruned_count_col}"
            f"  pruned_row = {self.pruned_count_row}"
            f"  pruned_ratio = {self.pruned_ratio:.4f}  prune_ratio = {self.prune_ratio}"
        )

    # ------------------------------------------------------------------ #
    # Snapshot
    # ------------------------------------------------------------------ #
    _TENSORS = (
        "mask", "weight_pruned", "row_pruned", "col_pruned",
        "score", "history_rank", "history_reg", "history_prob", "history_score",
    )
    _SCALARS = (
        "pruned_count_row", "pruned_count_col", "pruned_count_weight",
        "reg_to_distribute", "finished_at_step", "prune_ratio", "priority",
        "update_row_col", "decay_mult",
    )

    def state_dict(self) -> Dict:
        state = {
            "name": self.name,
            "shape": self.shape,
            "unit": self.unit.value,
            "kind": self.kind,
            "group": self.group,
            "filter_area": self.filter_area,
            "in_per_group": self.in_per_group,
        }
        for key in self._TENSORS:
            state[key] = getattr(self, key).clone()
        for key in self._SCALARS:
            state[key] = getattr(self, key)
        return state

    def check_snapshot(self, state: Dict):
        """Raise if a layer snapshot was taken from a differently shaped layer."""
        if tuple(state["shape"]) != self.shape or state["unit"] != self.unit.value:
            raise ConfigurationError(
                f"Snapshot shape/unit {tuple(state['shape'])}/{state['unit']} does not match "
                f"{self.shape}/{self.unit.value}", layer=self.name
            )

    def load_state_dict(self, state: Dict):
        self.check_snapshot(state)
        for key in self._TENSORS:
            setattr(self, key, state[key].clone())
        for key in self._SCALARS:
            setattr(self, key, state[key])
        self.step_mask = None

    @classmethod
    def from_state_dict(cls, state: Dict) -> 'LayerPruneState':
        layer = cls(
            name=state["name"],
            shape=state["shape"],
            unit=state["unit"],
            kind=state["kind"],
            group=state["group"],
            filter_area=state["filter_area"],
            in_per_group=state["in_per_group"],
        )
        layer.load_state_dict(state)
        return layer


class PruningStateStore:
    """
    Owner of every LayerPruneState, addressed by integer handles assigned
    in first-registration order.
    """

    def __init__(self):
        self.layers: List[LayerPruneState] = []
        self.index: Dict[str, int] = {}
        self.step = -1
        # Imported here to keep state.py free of a module-level cycle
        from .propagation import PropagationQueue
        self.queue = PropagationQueue()

    def __len__(self) -> int:
        return len(self.layers)

    def __getitem__(self, handle: int) -> LayerPruneState:
        return self.layers[handle]

    def __iter__(self):
        return iter(self.layers)

    def register(self, name: str, shape: Tuple[int, int], unit, **kwargs) -> int:
        """Register a layer once; later calls with the same name return its handle."""
        if name in self.index:
            return self.index[name]
        layer = LayerPruneState(name, shape, unit, **kwargs)
        handle = len(self.layers)
        self.layers.append(layer)
        self.index[name] = handle
        get_logger().info(
            f"a new layer registered: {name}  handle: {handle}  total layers: {len(self.layers)}"
        )
        return handle

    def handle_of(self, name: str) -> Optional[int]:
        return self.index.get(name)

    def next_handle(self, handle: int) -> Optional[int]:
        """Handle of the layer that consumes this layer's output, if any."""
        nxt = handle + 1
        return nxt if nxt < len(self.layers) else None

    def queue_rows(self, handle: int, rows: Sequence[int]):
        """Queue pruned rows of `handle` for propagation, if a next layer exists."""
        if rows and self.next_handle(handle) is not None:
            self.queue.extend(handle, rows)

    def begin_step(self, step: int):
        if len(self.queue):
            raise PruningInvariantError(
                f"{len(self.queue)} propagation entries left over from step {self.step}"
            )
        self.step = int(step)

    def higher_priority_finished(self, handle: int) -> bool:
        """True when every pruned layer with a smaller priority value has finished."""
        own = self.layers[handle].priority
        return all(
            layer.is_finished for layer in self.layers
            if layer.priority < own and layer.prune_ratio > 0
        )

    def is_pruning(self, handle: int, step: int, begin_iter: int) -> bool:
        """
        Whether a layer is currently being driven toward its ratio: it wants
        pruning, has started (already pruned something or passed the begin
        iteration), is not finished, and is not blocked by a higher-priority
        layer.
        """
        layer = self.layers[handle]
        if layer.prune_ratio <= 0 or layer.is_finished:
            return False
        started = layer.pruned_ratio > 0 or step >= begin_iter + 1
        return started and self.higher_priority_finished(handle)

    @property
    def all_finished(self) -> bool:
        return all(
            layer.is_finished for layer in self.layers if layer.prune_ratio > 0
        )

    def state_dict(self) -> Dict:
        return {
            "step": self.step,
            "index": dict(self.index),
            "layers": [layer.state_dict() for layer in self.layers],
        }

    def load_state_dict(self, state: Dict):
        """
        Restore from a snapshot. Layers already registered must match; layers
        present only in the snapshot are recreated. Nothing is modified
        unless the whole snapshot fits.
        """
        index = dict(self.index)
        restored = []
        for layer_state in state["layers"]:
            name = layer_state["name"]
            handle = index.get(name)
            if handle is None:
                index[name] = len(index)
                restored.append(LayerPruneState.from_state_dict(layer_state))
            else:
                self.layers[handle].check_snapshot(layer_state)
        if dict(state["index"]) != index:
            raise ConfigurationError("Snapshot layer order does not match registered layers")

        for layer_state in state["layers"]:
            handle = self.index.get(layer_state["name"])
            if handle is not None:
                self.layers[handle].load_state_dict(layer_state)
        self.layers.extend(restored)
        self.index = index
        self.step = state["step"]
        self.queue.clear()

    def save(self, path: str):
        torch.save(self.state_dict(), path)

    def load(self, path: str):
        self.load_state_dict(torch.load(path, map_location="cpu", weights_only=False))
