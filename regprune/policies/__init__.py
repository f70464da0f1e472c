"""
Regularization policies for regprune.

This package contains the regularizers that push the weakest units of a
layer toward zero before the decider freezes them. Policies are looked up by
name; the set of names is closed.
"""

from .base import RegContext, RegularizationPolicy, UnitRegularizationPolicy
from .rank import RankRegPolicy
from .l1 import L1RegPolicy
from .optimal import OptimalRegPolicy
from .weight import WeightThresholdRegPolicy
from .sign import SignForcingPolicy
from .ssl import SSLPolicy
from ..errors import ConfigurationError


POLICIES = {
    "Reg-rank": RankRegPolicy,
    "Reg-L1": L1RegPolicy,
    "OptimalReg": OptimalRegPolicy,
    "Reg_Weight": WeightThresholdRegPolicy,
    "SignForce": SignForcingPolicy,
    "SSL": SSLPolicy,
    "SSL_discriminative": SSLPolicy,
}


def build_policy(name: str, **params) -> RegularizationPolicy:
    """Instantiate a policy by name, validating its parameters."""
    cls = POLICIES.get(name)
    if cls is None:
        raise ConfigurationError(
            f"Unknown regularization policy; expected one of {', '.join(POLICIES)}",
            policy=name
        )
    if name == "SSL_discriminative":
        params = dict(params, discriminative=True)
    try:
        return cls(**params)
    except TypeError as e:
        raise ConfigurationError(f"Invalid parameters: {e}", policy=name) from e


__all__ = [
    'RegContext',
    'RegularizationPolicy',
    'UnitRegularizationPolicy',
    'RankRegPolicy',
    'L1RegPolicy',
    'OptimalRegPolicy',
    'WeightThresholdRegPolicy',
    'SignForcingPolicy',
    'SSLPolicy',
    'POLICIES',
    'build_policy',
]
