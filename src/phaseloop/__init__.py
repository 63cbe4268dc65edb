from importlib.metadata import version

from .backends import ArtifactQuery, FilesystemStateAdapter, InMemoryStateAdapter, StateAdapter
from .config import Configuration, LoopDefinition, PolicyTable, TransitionKey, TransitionPolicy
from .dispatcher import PhaseContext, PhaseDispatcher, PhaseStrategy
from .engine import LoopEngine, RunOutcome
from .errors import (
    AdapterFailure,
    ArtifactNotFound,
    CapabilityUnsupported,
    ConfigError,
    EngineError,
    InstanceStateError,
    InvariantViolation,
    IterationCapExceeded,
    StrategyFailure,
)
from .gateway import AdapterGateway
from .models import (
    Artifact,
    ArtifactLink,
    ArtifactRef,
    DecisionAction,
    FlowMode,
    HistoryEntry,
    HumanDecision,
    InstanceStatus,
    LoopInstance,
    Notification,
    NotificationKind,
    PhaseResult,
    PhaseStatus,
    ResultOrigin,
    TransitionAction,
    WaitState,
    WorkItem,
)
from .notifications import LoggingNotificationChannel, NotificationChannel, RecordingNotificationChannel
from .registry import StrategyRegistry
from .settings import EngineSettings
from .state_store import EngineSnapshot, EngineStateStore
from .transitions import DecisionKind, FlowContext, TransitionDecision, TransitionEvaluator
from .tree import LoopTree


def get_version() -> str:
    try:
        return version(__name__)
    except Exception:
        return "0.0.0"


__all__ = [
    "AdapterFailure",
    "AdapterGateway",
    "Artifact",
    "ArtifactLink",
    "ArtifactNotFound",
    "ArtifactQuery",
    "ArtifactRef",
    "CapabilityUnsupported",
    "ConfigError",
    "Configuration",
    "DecisionAction",
    "DecisionKind",
    "EngineError",
    "EngineSettings",
    "EngineSnapshot",
    "EngineStateStore",
    "FilesystemStateAdapter",
    "FlowContext",
    "FlowMode",
    "HistoryEntry",
    "HumanDecision",
    "InMemoryStateAdapter",
    "InstanceStateError",
    "InstanceStatus",
    "InvariantViolation",
    "IterationCapExceeded",
    "LoggingNotificationChannel",
    "LoopDefinition",
    "LoopEngine",
    "LoopInstance",
    "LoopTree",
    "Notification",
    "NotificationChannel",
    "NotificationKind",
    "PhaseContext",
    "PhaseDispatcher",
    "PhaseResult",
    "PhaseStatus",
    "PhaseStrategy",
    "PolicyTable",
    "RecordingNotificationChannel",
    "ResultOrigin",
    "RunOutcome",
    "StateAdapter",
    "StrategyFailure",
    "StrategyRegistry",
    "TransitionAction",
    "TransitionDecision",
    "TransitionEvaluator",
    "TransitionKey",
    "TransitionPolicy",
    "WaitState",
    "WorkItem",
    "get_version",
]
