"""
Exception types raised by regprune.

Configuration errors are detected before any pruning state is touched.
Invariant errors signal that the bookkeeping would otherwise produce garbage
(division by a zero remaining count, double pruning, a stale propagation
queue). Both are fatal: callers are expected to stop training.
"""


class ConfigurationError(ValueError):
    """Invalid or incomplete pruning configuration."""

    def __init__(self, message: str, layer: str = None, policy: str = None):
        context = []
        if layer is not None:
            context.append(f"layer={layer}")
        if policy is not None:
            context.append(f"policy={policy}")
        if context:
            message = f"{message} ({', '.join(context)})"
        super().__init__(message)
        self.layer = layer
        self.policy = policy


class PruningInvariantError(RuntimeError):
    """Pruning bookkeeping reached a state it must never be in."""

    def __init__(self, message: str, layer: str = None):
        if layer is not None:
            message = f"{message} (layer={layer})"
        super().__init__(message)
        self.layer = layer
