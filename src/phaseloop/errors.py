from __future__ import annotations


class EngineError(RuntimeError):
    """Base class for every failure raised by the loop engine."""


class ConfigError(EngineError, ValueError):
    """Missing or malformed configuration: policy, strategy, adapter or loop definition."""


class StrategyFailure(EngineError):
    """A phase strategy raised or returned something that is not a phase result."""


class AdapterFailure(EngineError):
    """A state adapter backend was unreachable or rejected an operation.

    The gateway retries these with backoff before surfacing them to the engine,
    unless ``retryable`` is false (the backend rejected the request outright).
    """

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class ArtifactNotFound(AdapterFailure):
    """The addressed artifact does not exist in its backend. Never retried."""

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=False)


class CapabilityUnsupported(EngineError):
    """The bound adapter does not implement ``link`` or ``update_status``."""

    def __init__(self, backend: str, capability: str) -> None:
        super().__init__(f"adapter '{backend}' does not support {capability}")
        self.backend = backend
        self.capability = capability


class IterationCapExceeded(EngineError):
    """An instance re-entered a phase more times than its policy allows."""


class InvariantViolation(EngineError):
    """A structural operation would break the loop tree invariants."""


class InstanceStateError(EngineError, ValueError):
    """An external call targeted an instance whose status does not allow it."""
