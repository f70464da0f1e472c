"""
regprune: Regularization-driven Neural Network Pruning

Prunes a network while it trains: an adaptive per-unit regularization term
pushes the weakest rows, columns or weights toward zero, a decider freezes
them once they get there, and structural prunes are propagated between
adjacent layers.
"""

from .pruner import RegPruner
from .config import (
    PruneConfig, LayerConfig, PolicyConfig, DecayConfig, DecisionConfig,
    ProbabilisticConfig, load_config,
)
from .errors import ConfigurationError, PruningInvariantError
from .state import PruneUnit, LayerPruneState, PruningStateStore
from .policies import RegularizationPolicy, build_policy
from .models import TinyMLP, TinyConvNet
from .logger import Logger, LogLevel, get_logger

__version__ = "0.1.0"

__all__ = [
    'RegPruner',
    'PruneConfig',
    'LayerConfig',
    'PolicyConfig',
    'DecayConfig',
    'DecisionConfig',
    'ProbabilisticConfig',
    'load_config',
    'ConfigurationError',
    'PruningInvariantError',
    'PruneUnit',
    'LayerPruneState',
    'PruningStateStore',
    'RegularizationPolicy',
    'build_policy',
    'TinyMLP',
    'TinyConvNet',
    'Logger',
    'LogLevel',
    'get_logger',
]
