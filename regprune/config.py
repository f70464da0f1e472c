"""
Configuration for regprune.

Everything the optimizer front end would normally supply (prune ratios,
policy name and parameters, schedule bounds, unit granularity) lives in a
tree of dataclasses rooted at PruneConfig. A config can be built in code or
read from a YAML file with load_config().
"""

from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigurationError


REGULARIZATION_TYPES = ("L2", "L1")
DECAY_SCHEDULES = ("none", "linearly", "step_linearly", "adaptive")
DECISION_MODES = ("threshold", "probabilistic", "fixed_count")
PROBABILITY_CURVES = ("exponential", "linear")


@dataclass
class DecayConfig:
    """Baseline weight decay and its decreasing-weight-decay schedule."""
    weight_decay: float = 0.0
    regularization_type: str = "L2"
    schedule: str = "none"
    begin_iter: int = 0
    end_iter: int = 0
    step: int = 1
    wd_end: float = 1.0
    # required by the "adaptive" schedule
    max_num_column_to_prune: int = 0

    def validate(self):
        if self.regularization_type not in REGULARIZATION_TYPES:
            raise ConfigurationError(
                f"Unknown regularization type: {self.regularization_type}"
            )
        if self.schedule not in DECAY_SCHEDULES:
            raise ConfigurationError(f"Unknown weight decay schedule: {self.schedule}")
        if self.schedule == "none":
            return
        if self.wd_end < 0:
            raise ConfigurationError(f"wd_end must be >= 0, got {self.wd_end}")
        if self.schedule in ("linearly", "step_linearly") and self.end_iter <= self.begin_iter:
            raise ConfigurationError(
                f"Decay schedule '{self.schedule}' needs end_iter > begin_iter, "
                f"got {self.begin_iter}..{self.end_iter}"
            )
        if self.schedule == "step_linearly" and self.step <= 0:
            raise ConfigurationError(f"Decay schedule step must be positive, got {self.step}")
        if self.schedule == "adaptive" and self.max_num_column_to_prune <= 0:
            raise ConfigurationError(
                "Decay schedule 'adaptive' requires max_num_column_to_prune > 0"
            )


@dataclass
class PolicyConfig:
    """Name of the pruning regularizer plus its numeric parameters."""
    name: Optional[str] = "Reg-rank"
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProbabilisticConfig:
    """Parameters of the probabilistic decider."""
    AA: float = 0.05
    kk: float = 0.25
    curve: str = "exponential"
    # prune a little beyond the target ratio
    slack: float = 0.0
    score_decay: float = 0.0
    rgamma: float = 0.0
    rpower: float = 1.0
    iter_size: int = 1
    seed: Optional[int] = None

    def validate(self):
        if self.curve not in PROBABILITY_CURVES:
            raise ConfigurationError(f"Unknown probability curve: {self.curve}")
        if self.AA <= 0:
            raise ConfigurationError(f"AA must be positive, got {self.AA}")
        if self.curve == "exponential" and not 0 < self.kk < 1:
            raise ConfigurationError(f"kk must be in (0, 1), got {self.kk}")
        # a goal below the target ratio would run out of units before finishing
        if self.slack < 0:
            raise ConfigurationError(f"slack must be >= 0, got {self.slack}")
        if self.iter_size < 1:
            raise ConfigurationError(f"iter_size must be >= 1, got {self.iter_size}")


@dataclass
class DecisionConfig:
    """How units are finally frozen."""
    mode: str = "threshold"
    prune_threshold: float = 1e-4
    num_once_prune: int = 1
    probabilistic: ProbabilisticConfig = field(default_factory=ProbabilisticConfig)

    def validate(self):
        if self.mode not in DECISION_MODES:
            raise ConfigurationError(f"Unknown decision mode: {self.mode}")
        if self.mode == "fixed_count" and self.num_once_prune < 1:
            raise ConfigurationError(
                f"num_once_prune must be >= 1, got {self.num_once_prune}"
            )
        if self.mode == "probabilistic":
            self.probabilistic.validate()


@dataclass
class LayerConfig:
    """Per-layer settings; layers without an entry use the defaults."""
    prune_ratio: float = 0.0
    priority: int = 0
    update_row_col: bool = False
    decay_mult: float = 1.0


@dataclass
class PruneConfig:
    """Root configuration object consumed by RegPruner."""
    prune_unit: str = "Col"
    prune_begin_iter: int = 0
    prune_interval: int = 1
    reg_interval: int = 1
    target_reg: float = 1.0
    default_prune_ratio: float = 0.0
    layers: Dict[str, LayerConfig] = field(default_factory=dict)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    decay: DecayConfig = field(default_factory=DecayConfig)
    decision: DecisionConfig = field(default_factory=DecisionConfig)
    show_num: int = 20
    show_interval: int = 10

    def layer_config(self, name: str) -> LayerConfig:
        if name in self.layers:
            return self.layers[name]
        return LayerConfig(prune_ratio=self.default_prune_ratio)

    def validate(self):
        """Raise ConfigurationError on the first invalid setting."""
        # Local import: policies import this module for parameter validation
        from .policies import build_policy
        from .state import PruneUnit

        PruneUnit.parse(self.prune_unit)
        if self.prune_interval < 1:
            raise ConfigurationError(f"prune_interval must be >= 1, got {self.prune_interval}")
        if self.reg_interval < 1:
            raise ConfigurationError(f"reg_interval must be >= 1, got {self.reg_interval}")
        if self.target_reg <= 0:
            raise ConfigurationError(f"target_reg must be positive, got {self.target_reg}")
        _check_ratio(self.default_prune_ratio, None)
        for name, layer in self.layers.items():
            _check_ratio(layer.prune_ratio, name)
        self.decay.validate()
        self.decision.validate()
        if self.policy.name is not None:
            build_policy(self.policy.name, **self.policy.params)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PruneConfig':
        data = dict(data or {})
        _reject_unknown(cls, data, "prune config")
        layers = {
            name: _build(LayerConfig, value, f"layers.{name}")
            for name, value in (data.pop("layers", None) or {}).items()
        }
        policy = _build(PolicyConfig, data.pop("policy", None), "policy")
        decay = _build(DecayConfig, data.pop("decay", None), "decay")
        decision_data = dict(data.pop("decision", None) or {})
        probabilistic = _build(
            ProbabilisticConfig, decision_data.pop("probabilistic", None),
            "decision.probabilistic"
        )
        decision = _build(DecisionConfig, decision_data, "decision")
        decision.probabilistic = probabilistic
        return cls(layers=layers, policy=policy, decay=decay, decision=decision, **data)


def _check_ratio(ratio: float, layer: Optional[str]):
    if not 0 <= ratio < 1:
        raise ConfigurationError(f"prune_ratio must be in [0, 1), got {ratio}", layer=layer)


def _reject_unknown(cls, data: Dict[str, Any], where: str):
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(f"Unknown keys in {where}: {', '.join(unknown)}")


def _build(cls, data: Optional[Dict[str, Any]], where: str):
    data = dict(data or {})
    _reject_unknown(cls, data, where)
    return cls(**data)


def load_config(path: str) -> PruneConfig:
    """Read a YAML file into a validated PruneConfig."""
    cfg_path = Path(path)
    if not cfg_path.is_file():
        raise FileNotFoundError(f"Configuration file not found: {cfg_path}")
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    config = PruneConfig.from_dict(data)
    config.validate()
    return config
