"""Transition Evaluator.

``evaluate`` is a pure function of the phase result, the resolved policy and
the flow context.  Both dispatch tables below are checked for completeness
against their enumerations at import time, so adding a mode or a status
without deciding what it does is an import error rather than a silent
fall-through.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from .config import TransitionPolicy
from .errors import InvariantViolation
from .models import FlowMode, PhaseResult, PhaseStatus, ResultOrigin, TransitionAction


class DecisionKind(str, Enum):
    ADVANCE = "advance"
    REQUEST_NOTIFY = "request_notify"
    REQUEST_APPROVAL = "request_approval"
    REQUEST_COLLABORATION = "request_collaboration"


@dataclass(frozen=True)
class FlowContext:
    instance_id: str
    level: str
    phase: str
    iteration: int
    is_last_phase: bool
    now: datetime


@dataclass(frozen=True)
class TransitionDecision:
    kind: DecisionKind
    action: TransitionAction
    result: PhaseResult
    reason: str | None = None
    deadline: datetime | None = None

    @property
    def suspends(self) -> bool:
        return self.kind in (DecisionKind.REQUEST_APPROVAL, DecisionKind.REQUEST_COLLABORATION)


MODE_DECISIONS: dict[FlowMode, DecisionKind] = {
    FlowMode.AUTONOMOUS: DecisionKind.ADVANCE,
    FlowMode.HITL_NOTIFY: DecisionKind.REQUEST_NOTIFY,
    FlowMode.HITL_APPROVE: DecisionKind.REQUEST_APPROVAL,
    FlowMode.HITL_COLLABORATE: DecisionKind.REQUEST_COLLABORATION,
}

# Actions that move control across the transition are the ones a human gate applies to.
GATED_ACTIONS = frozenset(
    {
        TransitionAction.ADVANCE_PHASE,
        TransitionAction.ESCALATE,
        TransitionAction.DESCEND,
        TransitionAction.FORK,
    }
)


def _on_done(result: PhaseResult, policy: TransitionPolicy, flow: FlowContext) -> tuple[TransitionAction, str | None]:
    return (TransitionAction.ESCALATE if flow.is_last_phase else TransitionAction.ADVANCE_PHASE), None


def _on_needs_more(result: PhaseResult, policy: TransitionPolicy, flow: FlowContext) -> tuple[TransitionAction, str | None]:
    return TransitionAction.CONTINUE, None


def _on_blocked(result: PhaseResult, policy: TransitionPolicy, flow: FlowContext) -> tuple[TransitionAction, str | None]:
    return TransitionAction.BLOCK, result.detail or "phase_blocked"


def _on_failed(result: PhaseResult, policy: TransitionPolicy, flow: FlowContext) -> tuple[TransitionAction, str | None]:
    if result.origin == ResultOrigin.JOIN:
        return TransitionAction.BLOCK, "join_failed"
    if result.origin == ResultOrigin.DESCEND:
        return TransitionAction.BLOCK, "descend_failed"
    # A failed phase re-enters itself while its policy still has iterations to spend.
    if policy.max_iterations is not None and flow.iteration < policy.max_iterations:
        return TransitionAction.CONTINUE, None
    return TransitionAction.FAIL, "strategy_failure"


def _on_descend(result: PhaseResult, policy: TransitionPolicy, flow: FlowContext) -> tuple[TransitionAction, str | None]:
    return TransitionAction.DESCEND, None


def _on_parallel(result: PhaseResult, policy: TransitionPolicy, flow: FlowContext) -> tuple[TransitionAction, str | None]:
    return TransitionAction.FORK, None


STATUS_ACTIONS = {
    PhaseStatus.DONE: _on_done,
    PhaseStatus.NEEDS_MORE: _on_needs_more,
    PhaseStatus.BLOCKED: _on_blocked,
    PhaseStatus.FAILED: _on_failed,
    PhaseStatus.DESCEND: _on_descend,
    PhaseStatus.PARALLEL: _on_parallel,
}


def _require_exhaustive(table: dict, enum_type: type[Enum]) -> None:
    missing = set(enum_type) - set(table)
    if missing:
        raise InvariantViolation(f"{enum_type.__name__} values without a decision: {sorted(m.value for m in missing)}")


_require_exhaustive(MODE_DECISIONS, FlowMode)
_require_exhaustive(STATUS_ACTIONS, PhaseStatus)


class TransitionEvaluator:
    def evaluate(self, result: PhaseResult, policy: TransitionPolicy, flow: FlowContext) -> TransitionDecision:
        """Decide what happens to a phase result under *policy*.

        Human decisions are never gated again, and ``continue``/``block``/``fail``
        bypass the gate because they do not cross the transition.  A timeout on
        an approval or collaboration gate becomes the suspension deadline.
        """
        action, reason = STATUS_ACTIONS[result.status](result, policy, flow)
        kind = DecisionKind.ADVANCE
        if action in GATED_ACTIONS and result.origin != ResultOrigin.HUMAN:
            kind = MODE_DECISIONS[policy.mode]
        deadline = None
        if kind in (DecisionKind.REQUEST_APPROVAL, DecisionKind.REQUEST_COLLABORATION) and policy.timeout is not None:
            deadline = flow.now + policy.timeout
        return TransitionDecision(kind=kind, action=action, result=result, reason=reason, deadline=deadline)
