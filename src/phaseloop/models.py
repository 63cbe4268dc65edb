from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_instance_id() -> str:
    return f"LI-{uuid.uuid4().hex[:12]}"


class InstanceStatus(str, Enum):
    RUNNING = "running"
    PAUSED_FOR_HUMAN = "paused_for_human"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[InstanceStatus] = frozenset(
    {InstanceStatus.COMPLETED, InstanceStatus.FAILED, InstanceStatus.ABORTED}
)


class WaitState(str, Enum):
    """Sub-state of a running instance that is parked on its children."""

    NONE = "none"
    WAITING_FOR_DESCEND = "waiting_for_descend"
    WAITING_FOR_JOIN = "waiting_for_join"


class PhaseStatus(str, Enum):
    DONE = "done"
    NEEDS_MORE = "needs_more"
    BLOCKED = "blocked"
    FAILED = "failed"
    DESCEND = "descend"
    PARALLEL = "parallel"


class FlowMode(str, Enum):
    AUTONOMOUS = "autonomous"
    HITL_NOTIFY = "hitl_notify"
    HITL_APPROVE = "hitl_approve"
    HITL_COLLABORATE = "hitl_collaborate"


class TransitionAction(str, Enum):
    ADVANCE_PHASE = "advance_phase"
    ESCALATE = "escalate"
    CONTINUE = "continue"
    DESCEND = "descend"
    FORK = "fork"
    BLOCK = "block"
    FAIL = "fail"


class ResultOrigin(str, Enum):
    STRATEGY = "strategy"
    HUMAN = "human"
    DESCEND = "descend"
    JOIN = "join"


class SuspensionKind(str, Enum):
    APPROVAL = "approval"
    COLLABORATION = "collaboration"


class DecisionAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    OVERRIDE = "override"
    RETRY = "retry"
    ABANDON = "abandon"


class NotificationKind(str, Enum):
    PHASE_COMPLETED = "phase_completed"
    APPROVAL_REQUESTED = "approval_requested"
    COLLABORATION_REQUESTED = "collaboration_requested"
    BLOCKED = "blocked"
    FAILED = "failed"
    TIMEOUT = "timeout"


class ArtifactRef(BaseModel):
    """Backend-agnostic pointer to a persisted artifact: ``backend:type:id``."""

    model_config = ConfigDict(frozen=True)

    backend: str
    artifact_type: str
    artifact_id: str

    @field_validator("backend", "artifact_type")
    @classmethod
    def _no_separator(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must be non-empty")
        if ":" in value:
            raise ValueError(f"must not contain ':' ({value!r})")
        return value

    @field_validator("artifact_id")
    @classmethod
    def _non_empty_id(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("artifact_id must be non-empty")
        return value

    def __str__(self) -> str:
        return f"{self.backend}:{self.artifact_type}:{self.artifact_id}"

    @classmethod
    def parse(cls, value: str) -> "ArtifactRef":
        parts = value.split(":", 2)
        if len(parts) != 3:
            raise ValueError(f"artifact reference must look like backend:type:id, got {value!r}")
        backend, artifact_type, artifact_id = parts
        return cls(backend=backend, artifact_type=artifact_type, artifact_id=artifact_id)


class ArtifactLink(BaseModel):
    model_config = ConfigDict(frozen=True)

    relation: str
    target: ArtifactRef


class Artifact(BaseModel):
    """A typed work product as produced by a strategy or read from a backend."""

    artifact_type: str
    artifact_id: str
    content: Any = None
    status: str | None = None
    links: list[ArtifactLink] = Field(default_factory=list)


class WorkItem(BaseModel):
    name: str
    artifacts: list[Artifact] = Field(default_factory=list)
    refs: list[ArtifactRef] = Field(default_factory=list)


class PhaseResult(BaseModel):
    """Normalized outcome of one phase execution.

    ``suggested_next`` is advisory only; the engine never routes on it.
    """

    status: PhaseStatus
    artifacts: list[Artifact] = Field(default_factory=list)
    refs: list[ArtifactRef] = Field(default_factory=list)
    work_items: list[WorkItem] = Field(default_factory=list)
    suggested_next: str | None = None
    detail: str | None = None
    origin: ResultOrigin = ResultOrigin.STRATEGY


class HistoryEntry(BaseModel):
    phase: str
    iteration: int
    status: PhaseStatus
    origin: ResultOrigin
    mode: FlowMode | None = None
    action: TransitionAction | None = None
    refs: list[ArtifactRef] = Field(default_factory=list)
    note: str | None = None
    recorded_at: datetime = Field(default_factory=utc_now)


class Suspension(BaseModel):
    kind: SuspensionKind
    requested_at: datetime
    deadline: datetime | None = None
    result: PhaseResult


class HumanDecision(BaseModel):
    """External decision record that resumes a paused or blocked instance."""

    action: DecisionAction = DecisionAction.APPROVE
    status: PhaseStatus | None = None
    artifacts: list[Artifact] | None = None
    rationale: str = ""


class LoopInstance(BaseModel):
    """Mutable unit of execution. Parent and children are ids into the tree arena."""

    instance_id: str = Field(default_factory=new_instance_id)
    level: str
    phase: str
    phase_index: int = 0
    iteration: int = 1
    status: InstanceStatus = InstanceStatus.RUNNING
    wait: WaitState = WaitState.NONE
    parent_id: str | None = None
    children: list[str] = Field(default_factory=list)
    artifacts: list[ArtifactRef] = Field(default_factory=list)
    context: list[HistoryEntry] = Field(default_factory=list)
    suspension: Suspension | None = None
    resume_result: PhaseResult | None = None
    held_result: PhaseResult | None = None
    final_result: PhaseResult | None = None
    reason: str | None = None
    work_item: str | None = None
    retired: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_runnable(self) -> bool:
        return self.status == InstanceStatus.RUNNING and self.wait == WaitState.NONE and not self.retired


class Notification(BaseModel):
    kind: NotificationKind
    instance_id: str
    level: str
    phase: str
    iteration: int
    reason: str | None = None
    result: PhaseResult | None = None
    created_at: datetime = Field(default_factory=utc_now)
