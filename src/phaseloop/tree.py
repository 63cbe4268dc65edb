"""Loop Tree Manager.

Instances live in an arena keyed by id; parent and child links are ids, never
object references, so the whole tree can be copied out for a snapshot and
loaded back unchanged.  Every structural operation runs under one re-entrant
lock and hands callers deep copies, so nothing outside this module mutates an
instance in place.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from .config import Configuration, PolicyTable, TransitionPolicy
from .errors import ConfigError, InstanceStateError, InvariantViolation, IterationCapExceeded
from .models import (
    ArtifactRef,
    HistoryEntry,
    InstanceStatus,
    LoopInstance,
    PhaseResult,
    PhaseStatus,
    ResultOrigin,
    Suspension,
    WaitState,
    WorkItem,
    utc_now,
)

logger = logging.getLogger(__name__)

TreeListener = Callable[[str, LoopInstance, dict[str, Any]], None]


def merge_refs(*groups: Iterable[ArtifactRef]) -> list[ArtifactRef]:
    """Ordered union of artifact references."""
    seen: set[str] = set()
    merged: list[ArtifactRef] = []
    for group in groups:
        for ref in group:
            key = str(ref)
            if key not in seen:
                seen.add(key)
                merged.append(ref)
    return merged


class LoopTree:
    def __init__(
        self,
        configuration: Configuration,
        *,
        iteration_ceiling: int = 50,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.iteration_ceiling = iteration_ceiling
        self._clock = clock
        self._lock = threading.RLock()
        self._instances: dict[str, LoopInstance] = {}
        self._listeners: list[TreeListener] = []
        self.root_id: str | None = None
        self.reconfigure(configuration)

    def reconfigure(self, configuration: Configuration) -> None:
        with self._lock:
            self.configuration = configuration
            self._policies: PolicyTable = configuration.policy_table()

    def subscribe(self, listener: TreeListener) -> None:
        self._listeners.append(listener)

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Hold the tree lock across a check-then-act sequence."""
        with self._lock:
            yield

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _get(self, instance_id: str) -> LoopInstance:
        try:
            return self._instances[instance_id]
        except KeyError:
            raise InstanceStateError(f"unknown loop instance {instance_id!r}") from None

    def get(self, instance_id: str) -> LoopInstance:
        with self._lock:
            return self._get(instance_id).model_copy(deep=True)

    def parent_of(self, instance_id: str) -> LoopInstance | None:
        with self._lock:
            parent_id = self._get(instance_id).parent_id
            return self._instances[parent_id].model_copy(deep=True) if parent_id else None

    def instances(self) -> list[LoopInstance]:
        with self._lock:
            return [instance.model_copy(deep=True) for instance in self._instances.values()]

    def __len__(self) -> int:
        return len(self._instances)

    def __contains__(self, instance_id: object) -> bool:
        return instance_id in self._instances

    @property
    def root(self) -> LoopInstance | None:
        with self._lock:
            return self.get(self.root_id) if self.root_id else None

    def root_is_terminal(self) -> bool:
        with self._lock:
            return self.root_id is not None and self._get(self.root_id).is_terminal

    def runnable(self) -> list[str]:
        with self._lock:
            return [instance_id for instance_id, instance in self._instances.items() if instance.is_runnable]

    def suspended(self) -> list[LoopInstance]:
        with self._lock:
            return [
                instance.model_copy(deep=True)
                for instance in self._instances.values()
                if instance.status == InstanceStatus.PAUSED_FOR_HUMAN
            ]

    def is_current(self, instance_id: str, phase_index: int, iteration: int) -> bool:
        """True while a step started at (*phase_index*, *iteration*) may still be applied."""
        with self._lock:
            instance = self._instances.get(instance_id)
            return (
                instance is not None
                and instance.is_runnable
                and instance.phase_index == phase_index
                and instance.iteration == iteration
            )

    def descendants(self, instance_id: str) -> list[str]:
        with self._lock:
            ordered: list[str] = []
            stack = list(reversed(self._get(instance_id).children))
            while stack:
                child_id = stack.pop()
                ordered.append(child_id)
                stack.extend(reversed(self._instances[child_id].children))
            return ordered

    def _active_children(self, instance: LoopInstance) -> list[LoopInstance]:
        return [self._instances[child_id] for child_id in instance.children if not self._instances[child_id].retired]

    def policy_for(self, instance_id: str) -> TransitionPolicy:
        """Resolve the policy for leaving the instance's current phase.

        Raises:
            ConfigError: If no policy matches.
        """
        with self._lock:
            instance = self._get(instance_id)
            parent = self._instances[instance.parent_id] if instance.parent_id else None
            return self._policies.lookup(self.configuration.transition_key(instance, parent))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _emit(self, event: str, instance: LoopInstance, **data: Any) -> None:
        instance.updated_at = self._clock()
        if not self._listeners:
            return
        frozen = instance.model_copy(deep=True)
        for listener in self._listeners:
            listener(event, frozen, data)

    def _require(self, instance: LoopInstance, operation: str, *statuses: InstanceStatus) -> None:
        if instance.status not in statuses:
            allowed = ", ".join(status.value for status in statuses)
            raise InstanceStateError(
                f"cannot {operation} {instance.instance_id}: status is {instance.status.value}, expected {allowed}"
            )

    def _require_idle(self, instance: LoopInstance, operation: str) -> None:
        self._require(instance, operation, InstanceStatus.RUNNING)
        if instance.wait != WaitState.NONE:
            raise InvariantViolation(
                f"cannot {operation} {instance.instance_id} while it is {instance.wait.value}"
            )

    def _enter_phase(self, instance: LoopInstance, index: int) -> None:
        definition = self.configuration.definition(instance.level)
        instance.phase_index = index
        instance.phase = definition.phase_at(index)
        instance.iteration = 1
        instance.resume_result = None
        instance.held_result = None

    def _spawn(
        self,
        parent: LoopInstance | None,
        level: str,
        refs: list[ArtifactRef],
        work_item: str | None = None,
    ) -> LoopInstance:
        definition = self.configuration.definition(level)
        now = self._clock()
        child = LoopInstance(
            level=level,
            phase=definition.phase_at(0),
            parent_id=parent.instance_id if parent else None,
            artifacts=merge_refs(refs),
            work_item=work_item,
            created_at=now,
            updated_at=now,
        )
        self._instances[child.instance_id] = child
        if parent is not None:
            parent.children.append(child.instance_id)
        self._emit("created", child, parent_id=child.parent_id, work_item=work_item)
        return child

    def _descend_level(self, instance: LoopInstance) -> str:
        target = self.configuration.definition(instance.level).descend_to
        if target is None:
            raise ConfigError(f"level {instance.level!r} has no descend target")
        self.configuration.definition(target)
        return target

    def _settle(self, instance: LoopInstance) -> None:
        """Hand a terminal instance back to whoever is waiting on it."""
        if instance.parent_id is None:
            instance.retired = True
            return
        parent = self._instances[instance.parent_id]
        if parent.is_terminal:
            instance.retired = True
            return
        if parent.wait == WaitState.WAITING_FOR_DESCEND:
            completed = instance.status == InstanceStatus.COMPLETED
            parent.resume_result = PhaseResult(
                status=PhaseStatus.DONE if completed else PhaseStatus.FAILED,
                refs=list(instance.final_result.refs) if instance.final_result else list(instance.artifacts),
                detail=None if completed else f"{instance.level} child {instance.instance_id} {instance.status.value}: {instance.reason}",
                origin=ResultOrigin.DESCEND,
            )
            parent.wait = WaitState.NONE
            instance.retired = True
            logger.info("%s returned from %s (%s)", parent.instance_id, instance.instance_id, instance.status.value)
            self._emit("descend_returned", parent, child_id=instance.instance_id, status=instance.status.value)
        elif parent.wait == WaitState.WAITING_FOR_JOIN:
            if all(child.is_terminal for child in self._active_children(parent)):
                self.join(parent.instance_id)

    def _fail(self, instance: LoopInstance, reason: str, result: PhaseResult | None) -> None:
        instance.status = InstanceStatus.FAILED
        instance.reason = reason
        instance.final_result = PhaseResult(
            status=PhaseStatus.FAILED,
            refs=list(instance.artifacts),
            detail=(result.detail if result is not None and result.detail else reason),
            origin=result.origin if result is not None else ResultOrigin.STRATEGY,
        )
        instance.wait = WaitState.NONE
        instance.suspension = None
        instance.resume_result = None
        instance.held_result = None
        logger.error("%s %s.%s failed: %s", instance.instance_id, instance.level, instance.phase, reason)
        self._emit("failed", instance, reason=reason, result=instance.final_result)
        self._settle(instance)

    # ------------------------------------------------------------------
    # Structural operations
    # ------------------------------------------------------------------

    def create_root(self, artifacts: Iterable[ArtifactRef] = ()) -> LoopInstance:
        with self._lock:
            if self.root_id is not None:
                raise InvariantViolation(f"root instance {self.root_id} already exists")
            root = self._spawn(None, self.configuration.root_level, list(artifacts))
            self.root_id = root.instance_id
            return root.model_copy(deep=True)

    def record(self, instance_id: str, entry: HistoryEntry) -> None:
        with self._lock:
            self._get(instance_id).context.append(entry)

    def advance(self, instance_id: str, result: PhaseResult) -> LoopInstance:
        """Move to the next phase of the same level, carrying the result's refs forward."""
        with self._lock:
            instance = self._get(instance_id)
            self._require_idle(instance, "advance")
            definition = self.configuration.definition(instance.level)
            if definition.is_last(instance.phase_index):
                raise InvariantViolation(f"{instance_id} is in its last phase; escalate instead")
            previous = instance.phase
            instance.artifacts = merge_refs(instance.artifacts, result.refs)
            self._enter_phase(instance, instance.phase_index + 1)
            logger.debug("%s advanced %s -> %s", instance_id, previous, instance.phase)
            self._emit("advanced", instance, from_phase=previous)
            return instance.model_copy(deep=True)

    def escalate(self, instance_id: str, result: PhaseResult) -> LoopInstance:
        """Complete the instance and return control to its parent, or finish the run at the root."""
        with self._lock:
            instance = self._get(instance_id)
            self._require_idle(instance, "escalate")
            instance.artifacts = merge_refs(instance.artifacts, result.refs)
            instance.status = InstanceStatus.COMPLETED
            instance.reason = None
            instance.resume_result = None
            instance.final_result = result.model_copy(update={"refs": list(instance.artifacts)}, deep=True)
            logger.info("%s escalated out of %s.%s", instance_id, instance.level, instance.phase)
            self._emit("escalated", instance, result=instance.final_result)
            self._settle(instance)
            return instance.model_copy(deep=True)

    def continue_(self, instance_id: str, result: PhaseResult, policy: TransitionPolicy) -> LoopInstance:
        """Re-enter the current phase with the iteration count bumped.

        Past the iteration cap the policy's escalation condition decides
        between forced escalation and failure with ``iteration_cap_exceeded``.
        """
        with self._lock:
            instance = self._get(instance_id)
            self._require_idle(instance, "continue")
            instance.artifacts = merge_refs(instance.artifacts, result.refs)
            instance.resume_result = None
            instance.iteration += 1
            try:
                self._check_iteration_cap(instance, policy)
            except IterationCapExceeded as exc:
                if self._escalation_allowed(instance, result, policy):
                    logger.info("%s: %s; escalation condition holds, escalating", instance_id, exc)
                    return self.escalate(instance_id, result.model_copy(update={"status": PhaseStatus.DONE}))
                self._fail(instance, "iteration_cap_exceeded", result.model_copy(update={"detail": str(exc)}))
                return instance.model_copy(deep=True)
            self._emit("continued", instance, iteration=instance.iteration)
            return instance.model_copy(deep=True)

    def _check_iteration_cap(self, instance: LoopInstance, policy: TransitionPolicy) -> None:
        cap = policy.max_iterations if policy.max_iterations is not None else self.iteration_ceiling
        if instance.iteration > cap:
            raise IterationCapExceeded(
                f"{instance.level}.{instance.phase} reached iteration {instance.iteration} with a cap of {cap}"
            )

    def _escalation_allowed(self, instance: LoopInstance, result: PhaseResult, policy: TransitionPolicy) -> bool:
        if policy.escalation_condition is None:
            return False
        try:
            return bool(policy.escalation_condition(instance.model_copy(deep=True), result))
        except Exception:  # noqa: BLE001 - user predicate; failure counts as not satisfied
            logger.exception("Escalation condition for %s raised", instance.instance_id)
            return False

    def descend(self, instance_id: str, result: PhaseResult) -> LoopInstance:
        """Create the single child at the next-deeper level; the parent waits for it."""
        with self._lock:
            instance = self._get(instance_id)
            self._require_idle(instance, "descend")
            level = self._descend_level(instance)
            instance.resume_result = None
            instance.wait = WaitState.WAITING_FOR_DESCEND
            child = self._spawn(instance, level, result.refs or list(instance.artifacts))
            logger.info("%s descended into %s (%s)", instance_id, child.instance_id, level)
            self._emit("descended", instance, child_id=child.instance_id)
            return child.model_copy(deep=True)

    def fork(self, instance_id: str, result: PhaseResult) -> list[LoopInstance]:
        """Create one child per work item; the parent waits for the join.

        A result without work items forks one child per produced reference.
        With nothing to fork the instance fails with ``empty_fork``.
        """
        with self._lock:
            instance = self._get(instance_id)
            self._require_idle(instance, "fork")
            level = self._descend_level(instance)
            items = list(result.work_items) or [
                WorkItem(name=ref.artifact_id, refs=[ref]) for ref in result.refs
            ]
            if not items:
                self._fail(instance, "empty_fork", result)
                return []
            instance.resume_result = None
            instance.wait = WaitState.WAITING_FOR_JOIN
            children = [
                self._spawn(instance, level, item.refs or list(instance.artifacts), work_item=item.name)
                for item in items
            ]
            logger.info("%s forked %d children at %s", instance_id, len(children), level)
            self._emit("forked", instance, child_ids=[child.instance_id for child in children])
            return [child.model_copy(deep=True) for child in children]

    def join(self, instance_id: str) -> PhaseResult:
        """Synthesize the parent's result from its finished fork children and resume it once."""
        with self._lock:
            instance = self._get(instance_id)
            if instance.wait != WaitState.WAITING_FOR_JOIN:
                raise InvariantViolation(f"{instance_id} is not waiting for a join")
            children = self._active_children(instance)
            pending = [child.instance_id for child in children if not child.is_terminal]
            if pending:
                raise InvariantViolation(f"{instance_id} cannot join while {pending} are still live")
            tolerance = self.policy_for(instance_id).join_tolerance
            completed = sum(1 for child in children if child.status == InstanceStatus.COMPLETED)
            fraction = completed / len(children) if children else 0.0
            status = PhaseStatus.DONE if children and fraction >= tolerance else PhaseStatus.FAILED
            result = PhaseResult(
                status=status,
                refs=merge_refs(
                    *(child.final_result.refs if child.final_result else child.artifacts for child in children)
                ),
                detail=f"{completed}/{len(children)} children completed (tolerance {tolerance:g})",
                origin=ResultOrigin.JOIN,
            )
            for child in children:
                child.retired = True
            instance.wait = WaitState.NONE
            instance.resume_result = result
            logger.info("%s joined %d children: %s (%s)", instance_id, len(children), status.value, result.detail)
            self._emit("joined", instance, status=status.value, completed=completed, total=len(children))
            return result

    def pause(self, instance_id: str, reason: str, suspension: Suspension | None = None) -> LoopInstance:
        with self._lock:
            instance = self._get(instance_id)
            self._require_idle(instance, "pause")
            instance.status = InstanceStatus.PAUSED_FOR_HUMAN
            instance.reason = reason
            instance.suspension = suspension
            instance.resume_result = None
            self._emit("paused", instance, reason=reason)
            return instance.model_copy(deep=True)

    def resume(self, instance_id: str, result: PhaseResult | None) -> LoopInstance:
        """Wake a paused or blocked instance.

        With a result the next step skips dispatch and evaluates *result*;
        without one the current phase is dispatched again.
        """
        with self._lock:
            instance = self._get(instance_id)
            self._require(instance, "resume", InstanceStatus.PAUSED_FOR_HUMAN, InstanceStatus.BLOCKED)
            instance.status = InstanceStatus.RUNNING
            instance.reason = None
            instance.suspension = None
            instance.held_result = None
            instance.resume_result = result
            self._emit("resumed", instance, redispatch=result is None)
            return instance.model_copy(deep=True)

    def block(self, instance_id: str, reason: str, result: PhaseResult | None = None) -> LoopInstance:
        with self._lock:
            instance = self._get(instance_id)
            self._require(instance, "block", InstanceStatus.RUNNING, InstanceStatus.PAUSED_FOR_HUMAN)
            held = result
            if held is None and instance.suspension is not None:
                held = instance.suspension.result
            instance.status = InstanceStatus.BLOCKED
            instance.reason = reason
            instance.held_result = held
            instance.suspension = None
            instance.resume_result = None
            logger.warning("%s %s.%s blocked: %s", instance_id, instance.level, instance.phase, reason)
            self._emit("blocked", instance, reason=reason, result=held)
            return instance.model_copy(deep=True)

    def fail(self, instance_id: str, reason: str, result: PhaseResult | None = None) -> LoopInstance:
        with self._lock:
            instance = self._get(instance_id)
            if instance.is_terminal:
                raise InstanceStateError(f"cannot fail {instance_id}: already {instance.status.value}")
            self._fail(instance, reason, result)
            return instance.model_copy(deep=True)

    def abort(self, instance_id: str, reason: str = "aborted") -> list[str]:
        """Abort the instance and every live descendant, deepest first.

        Returns the ids that were aborted.  Cancellation never travels
        upward; the aborted instance is handed to its parent like any other
        terminal instance.
        """
        with self._lock:
            instance = self._get(instance_id)
            if instance.is_terminal:
                raise InstanceStateError(f"cannot abort {instance_id}: already {instance.status.value}")
            aborted: list[str] = []
            for descendant_id in reversed(self.descendants(instance_id)):
                descendant = self._instances[descendant_id]
                if not descendant.is_terminal:
                    self._mark_aborted(descendant, f"ancestor {instance_id} aborted")
                    aborted.append(descendant_id)
                descendant.retired = True
            self._mark_aborted(instance, reason)
            aborted.append(instance_id)
            logger.info("Aborted %s and %d live descendant(s)", instance_id, len(aborted) - 1)
            self._settle(instance)
            return aborted

    def _mark_aborted(self, instance: LoopInstance, reason: str) -> None:
        instance.status = InstanceStatus.ABORTED
        instance.reason = reason
        instance.wait = WaitState.NONE
        instance.suspension = None
        instance.resume_result = None
        instance.held_result = None
        if instance.final_result is None:
            instance.final_result = PhaseResult(
                status=PhaseStatus.FAILED,
                refs=list(instance.artifacts),
                detail=reason,
                origin=ResultOrigin.STRATEGY,
            )
        self._emit("aborted", instance, reason=reason)

    # ------------------------------------------------------------------
    # Invariants and persistence
    # ------------------------------------------------------------------

    def check_invariants(self) -> None:
        """Verify the tree shape and wait-state rules.

        Raises:
            InvariantViolation: Listing every broken rule.
        """
        with self._lock:
            problems: list[str] = []
            roots = [instance_id for instance_id, instance in self._instances.items() if instance.parent_id is None]
            if self._instances and roots != [self.root_id]:
                problems.append(f"expected exactly the root {self.root_id} without a parent, found {roots}")
            for instance_id, instance in self._instances.items():
                if instance.parent_id is not None:
                    parent = self._instances.get(instance.parent_id)
                    if parent is None:
                        problems.append(f"{instance_id} points at missing parent {instance.parent_id}")
                    elif parent.children.count(instance_id) != 1:
                        problems.append(f"{instance_id} is listed {parent.children.count(instance_id)} times under its parent")
                for child_id in instance.children:
                    child = self._instances.get(child_id)
                    if child is None or child.parent_id != instance_id:
                        problems.append(f"{instance_id} lists {child_id} which does not point back")
                seen: set[str] = set()
                cursor: str | None = instance_id
                while cursor is not None and cursor in self._instances:
                    if cursor in seen:
                        problems.append(f"cycle through {cursor}")
                        break
                    seen.add(cursor)
                    cursor = self._instances[cursor].parent_id
                active = self._active_children(instance)
                if instance.wait != WaitState.NONE and instance.status != InstanceStatus.RUNNING:
                    problems.append(f"{instance_id} is {instance.status.value} but still {instance.wait.value}")
                if instance.wait == WaitState.WAITING_FOR_DESCEND and len(active) != 1:
                    problems.append(f"{instance_id} waits for a descend with {len(active)} active children")
                if instance.wait == WaitState.WAITING_FOR_JOIN and not active:
                    problems.append(f"{instance_id} waits for a join with no active children")
                if instance.is_terminal:
                    live = [d for d in self.descendants(instance_id) if not self._instances[d].is_terminal]
                    if live:
                        problems.append(f"{instance_id} is {instance.status.value} with live descendants {live}")
            if problems:
                raise InvariantViolation("; ".join(problems))

    def export(self) -> tuple[str | None, dict[str, LoopInstance]]:
        with self._lock:
            return self.root_id, {key: value.model_copy(deep=True) for key, value in self._instances.items()}

    def load(self, root_id: str | None, instances: dict[str, LoopInstance]) -> None:
        with self._lock:
            if root_id is not None and root_id not in instances:
                raise InvariantViolation(f"snapshot root {root_id} is not among its instances")
            self._instances = {key: value.model_copy(deep=True) for key, value in instances.items()}
            self.root_id = root_id
            self.check_invariants()
