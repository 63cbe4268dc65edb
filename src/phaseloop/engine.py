"""Engine Core.

The scheduler keeps a worker pool busy with runnable instances.  Each worker
pulls one instance through a single step, built as a LangGraph ``StateGraph``::

    prepare -> load_inputs -> dispatch -> persist -> evaluate -> transition
                    \\______________________/
                               block        (adapter failure)

``prepare`` short-circuits to ``persist`` when the instance carries a pending
result (a join, a returning descend child, or a human decision), so those
results are evaluated without dispatching the strategy again.

Human interaction never blocks a worker: ``approve``, ``collaborate`` and
``resolve`` are plain calls that flip a suspended instance back to running,
and the next ``run`` picks it up.  With a state store attached every step is
checkpointed, so a paused engine can be restored in a different process.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .backends import StateAdapter
from .config import Configuration, TransitionPolicy
from .dispatcher import PhaseDispatcher
from .errors import AdapterFailure, ConfigError, InstanceStateError, InvariantViolation
from .gateway import AdapterGateway
from .models import (
    Artifact,
    ArtifactRef,
    DecisionAction,
    HistoryEntry,
    HumanDecision,
    InstanceStatus,
    LoopInstance,
    Notification,
    NotificationKind,
    PhaseResult,
    PhaseStatus,
    ResultOrigin,
    Suspension,
    SuspensionKind,
    TransitionAction,
    utc_now,
)
from .notifications import LoggingNotificationChannel, NotificationChannel
from .registry import StrategyRegistry
from .settings import EngineSettings
from .state_store import EngineSnapshot, EngineStateStore
from .transitions import DecisionKind, FlowContext, TransitionDecision, TransitionEvaluator
from .tree import LoopTree, merge_refs

logger = logging.getLogger(__name__)

HITL_TIMEOUT = "hitl_timeout"

_SUSPENSION_KINDS = {
    DecisionKind.REQUEST_APPROVAL: (SuspensionKind.APPROVAL, NotificationKind.APPROVAL_REQUESTED),
    DecisionKind.REQUEST_COLLABORATION: (SuspensionKind.COLLABORATION, NotificationKind.COLLABORATION_REQUESTED),
}


class StepState(TypedDict, total=False):
    instance_id: str
    instance: LoopInstance
    phase_index: int
    iteration: int
    policy: TransitionPolicy
    inputs: list[Artifact]
    result: PhaseResult
    decision: TransitionDecision
    failure: str | None
    outcome: str


@dataclass
class RunOutcome:
    root_id: str | None
    root_status: InstanceStatus | None
    suspended: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    next_deadline: datetime | None = None
    steps: int = 0

    @property
    def finished(self) -> bool:
        return self.root_status is not None and self.root_status.is_terminal


class LoopEngine:
    def __init__(
        self,
        configuration: Configuration,
        registry: StrategyRegistry,
        adapters: Mapping[str, StateAdapter],
        *,
        notifier: NotificationChannel | None = None,
        settings: EngineSettings | None = None,
        state_store: EngineStateStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = (settings if settings is not None else EngineSettings.from_env()).normalized()
        configuration.validate_bindings(registry.ids(), list(adapters))
        self.configuration = configuration
        self.registry = registry
        self.notifier: NotificationChannel = notifier if notifier is not None else LoggingNotificationChannel()
        self.state_store = state_store
        self._clock = clock
        self._checkpoint_lock = threading.Lock()

        self.tree = LoopTree(configuration, iteration_ceiling=self.settings.iteration_ceiling, clock=clock)
        self.tree.subscribe(self._on_tree_event)
        self.gateway = AdapterGateway(configuration, adapters, self.settings)
        self.dispatcher = PhaseDispatcher(configuration, registry)
        self.evaluator = TransitionEvaluator()

        self._actions: dict[TransitionAction, Callable[[str, TransitionDecision, TransitionPolicy], Any]] = {
            TransitionAction.ADVANCE_PHASE: lambda iid, d, p: self.tree.advance(iid, d.result),
            TransitionAction.ESCALATE: lambda iid, d, p: self.tree.escalate(iid, d.result),
            TransitionAction.CONTINUE: lambda iid, d, p: self.tree.continue_(iid, d.result, p),
            TransitionAction.DESCEND: lambda iid, d, p: self.tree.descend(iid, d.result),
            TransitionAction.FORK: lambda iid, d, p: self.tree.fork(iid, d.result),
            TransitionAction.BLOCK: lambda iid, d, p: self.tree.block(iid, d.reason or "phase_blocked", d.result),
            TransitionAction.FAIL: lambda iid, d, p: self.tree.fail(iid, d.reason or "phase_failed", d.result),
        }
        missing = set(TransitionAction) - set(self._actions)
        if missing:
            raise InvariantViolation(f"transition actions without a handler: {sorted(a.value for a in missing)}")

        self.graph = self._build_graph().compile()

    # ------------------------------------------------------------------
    # Step graph
    # ------------------------------------------------------------------

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(StepState)
        graph.add_node("prepare", self._prepare_node)
        graph.add_node("load_inputs", self._load_inputs_node)
        graph.add_node("dispatch", self._dispatch_node)
        graph.add_node("persist", self._persist_node)
        graph.add_node("evaluate", self._evaluate_node)
        graph.add_node("transition", self._transition_node)
        graph.add_node("block", self._block_node)

        graph.add_edge(START, "prepare")
        graph.add_conditional_edges(
            "load_inputs",
            self._failure_route,
            {
                "ok": "dispatch",
                "block": "block",
            },
        )
        graph.add_edge("dispatch", "persist")
        graph.add_conditional_edges(
            "persist",
            self._failure_route,
            {
                "ok": "evaluate",
                "block": "block",
            },
        )
        graph.add_edge("evaluate", "transition")
        graph.add_edge("transition", END)
        graph.add_edge("block", END)
        return graph

    def _prepare_node(self, state: StepState) -> Command[Literal["load_inputs", "persist", "__end__"]]:
        instance = self.tree.get(state["instance_id"])
        if not instance.is_runnable:
            return Command(update={"outcome": "skipped"}, goto=END)
        update: dict[str, Any] = {
            "instance": instance,
            "phase_index": instance.phase_index,
            "iteration": instance.iteration,
            "policy": self.tree.policy_for(instance.instance_id),
            "failure": None,
        }
        if instance.resume_result is not None:
            update["result"] = instance.resume_result
            return Command(update=update, goto="persist")
        return Command(update=update, goto="load_inputs")

    def _load_inputs_node(self, state: StepState) -> dict[str, Any]:
        instance = state["instance"]
        try:
            inputs = [self.gateway.read_artifact(ref) for ref in instance.artifacts]
        except AdapterFailure as exc:
            return {"failure": f"adapter_failure: {exc}"}
        return {"inputs": inputs}

    def _dispatch_node(self, state: StepState) -> dict[str, Any]:
        result = self.dispatcher.dispatch(state["instance"], state.get("inputs", []), state["policy"])
        return {"result": result}

    def _persist_node(self, state: StepState) -> dict[str, Any]:
        try:
            result = self._persist_result(state["result"])
        except AdapterFailure as exc:
            return {"failure": f"adapter_failure: {exc}"}
        return {"result": result}

    def _failure_route(self, state: StepState) -> str:
        return "block" if state.get("failure") else "ok"

    def _evaluate_node(self, state: StepState) -> dict[str, Any]:
        instance = state["instance"]
        definition = self.configuration.definition(instance.level)
        flow = FlowContext(
            instance_id=instance.instance_id,
            level=instance.level,
            phase=instance.phase,
            iteration=instance.iteration,
            is_last_phase=definition.is_last(instance.phase_index),
            now=self._clock(),
        )
        return {"decision": self.evaluator.evaluate(state["result"], state["policy"], flow)}

    def _transition_node(self, state: StepState) -> dict[str, Any]:
        instance = state["instance"]
        decision = state["decision"]
        policy = state["policy"]
        result = decision.result
        with self.tree.atomic():
            if not self.tree.is_current(instance.instance_id, state["phase_index"], state["iteration"]):
                logger.info("Discarding stale step for %s (%s.%s)", instance.instance_id, instance.level, instance.phase)
                return {"outcome": "stale"}
            self.tree.record(
                instance.instance_id,
                HistoryEntry(
                    phase=instance.phase,
                    iteration=instance.iteration,
                    status=result.status,
                    origin=result.origin,
                    mode=policy.mode,
                    action=decision.action,
                    refs=list(result.refs),
                    note=result.detail,
                    recorded_at=self._clock(),
                ),
            )
            if decision.suspends:
                suspension_kind, notification_kind = _SUSPENSION_KINDS[decision.kind]
                paused = self.tree.pause(
                    instance.instance_id,
                    f"awaiting_{suspension_kind.value}",
                    Suspension(
                        kind=suspension_kind,
                        requested_at=self._clock(),
                        deadline=decision.deadline,
                        result=result,
                    ),
                )
                self._notify(notification_kind, paused, result, paused.reason)
                return {"outcome": "suspended"}
            if decision.kind == DecisionKind.REQUEST_NOTIFY:
                self._notify(NotificationKind.PHASE_COMPLETED, instance, result, None)
            self._actions[decision.action](instance.instance_id, decision, policy)
        return {"outcome": decision.action.value}

    def _block_node(self, state: StepState) -> dict[str, Any]:
        instance = state["instance"]
        with self.tree.atomic():
            if not self.tree.is_current(instance.instance_id, state["phase_index"], state["iteration"]):
                return {"outcome": "stale"}
            self.tree.block(instance.instance_id, state["failure"] or "adapter_failure", state.get("result"))
        return {"outcome": "blocked"}

    def _persist_result(self, result: PhaseResult) -> PhaseResult:
        """Write produced artifacts that have no reference yet and record the refs on the result."""
        known = {str(ref) for ref in result.refs}
        refs = list(result.refs)
        for artifact in result.artifacts:
            refs.append(self._persist_artifact(artifact, known))
        work_items = []
        for item in result.work_items:
            item_known = {str(ref) for ref in item.refs}
            item_refs = list(item.refs)
            for artifact in item.artifacts:
                item_refs.append(self._persist_artifact(artifact, item_known))
            work_items.append(item.model_copy(update={"refs": merge_refs(item_refs)}))
        return result.model_copy(update={"refs": merge_refs(refs), "work_items": work_items})

    def _persist_artifact(self, artifact: Artifact, known: set[str]) -> ArtifactRef:
        ref = self.gateway.adapter_for(artifact.artifact_type).ref(artifact.artifact_type, artifact.artifact_id)
        if str(ref) in known:
            return ref
        return self.gateway.persist(artifact)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def start(self, artifacts: Iterable[ArtifactRef] = ()) -> LoopInstance:
        root = self.tree.create_root(artifacts)
        logger.info("Started %s at %s.%s", root.instance_id, root.level, root.phase)
        self.checkpoint()
        return root

    def _step(self, instance_id: str) -> None:
        try:
            self.graph.invoke(
                {"instance_id": instance_id},
                config={"recursion_limit": self.settings.recursion_limit},
            )
        except ConfigError as exc:
            with self.tree.atomic():
                if not self.tree.get(instance_id).is_terminal:
                    self.tree.fail(instance_id, f"config_error: {exc}")
            raise
        finally:
            self.checkpoint()

    def step(self, instance_id: str) -> None:
        """Run one step of one instance on the calling thread."""
        self._step(instance_id)

    def run(self) -> RunOutcome:
        """Drive runnable instances until the root finishes or nothing is runnable.

        Returning with the root still live means every remaining instance is
        suspended, blocked or waiting on one that is; ``RunOutcome`` says which
        and when the earliest human deadline falls due.

        Raises:
            ConfigError: When an instance hits a missing binding.  The instance
                is marked failed first.
        """
        if self.tree.root_id is None:
            raise InstanceStateError("no root instance; call start() or restore() first")
        workers = self.settings.max_parallelism
        steps = 0
        in_flight: dict[Future[None], str] = {}
        try:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="phaseloop") as pool:
                while True:
                    self.expire_timeouts()
                    if self.tree.root_is_terminal():
                        break
                    busy = set(in_flight.values())
                    for instance_id in self.tree.runnable():
                        if len(in_flight) >= workers:
                            break
                        if instance_id not in busy:
                            in_flight[pool.submit(self._step, instance_id)] = instance_id
                    if not in_flight:
                        break
                    done, _ = wait(in_flight, timeout=self._seconds_to_deadline(), return_when=FIRST_COMPLETED)
                    errors = self._drain(done, in_flight)
                    steps += len(done)
                    if errors:
                        # let steps already running finish so their failures are logged too
                        rest, _ = wait(in_flight)
                        errors += self._drain(rest, in_flight)
                        steps += len(rest)
                        raise errors[0]
        finally:
            self.checkpoint()
        outcome = self._outcome(steps)
        logger.info(
            "Run stopped after %d step(s): root=%s suspended=%d blocked=%d",
            steps,
            outcome.root_status.value if outcome.root_status else "-",
            len(outcome.suspended),
            len(outcome.blocked),
        )
        return outcome

    @staticmethod
    def _drain(done: Iterable[Future[None]], in_flight: dict[Future[None], str]) -> list[BaseException]:
        errors: list[BaseException] = []
        for future in done:
            instance_id = in_flight.pop(future)
            exc = future.exception()
            if exc is not None:
                logger.error("Step of %s raised %s: %s", instance_id, type(exc).__name__, exc, exc_info=exc)
                errors.append(exc)
        return errors

    def _next_deadline(self) -> datetime | None:
        deadlines = [
            instance.suspension.deadline
            for instance in self.tree.suspended()
            if instance.suspension is not None and instance.suspension.deadline is not None
        ]
        return min(deadlines) if deadlines else None

    def _seconds_to_deadline(self) -> float | None:
        deadline = self._next_deadline()
        if deadline is None:
            return None
        return max(0.0, (deadline - self._clock()).total_seconds())

    def _outcome(self, steps: int) -> RunOutcome:
        root = self.tree.root
        instances = self.tree.instances()
        return RunOutcome(
            root_id=root.instance_id if root else None,
            root_status=root.status if root else None,
            suspended=[i.instance_id for i in instances if i.status == InstanceStatus.PAUSED_FOR_HUMAN],
            blocked=[i.instance_id for i in instances if i.status == InstanceStatus.BLOCKED],
            next_deadline=self._next_deadline(),
            steps=steps,
        )

    # ------------------------------------------------------------------
    # Human resumption
    # ------------------------------------------------------------------

    def approve(self, instance_id: str, decision: HumanDecision | None = None) -> LoopInstance:
        """Apply an external decision to an instance paused under ``hitl_approve``.

        ``approve`` releases the held result unchanged, ``reject`` turns it into
        ``needs_more``, ``override`` replaces its status and/or artifacts,
        ``retry`` re-dispatches the phase and ``abandon`` fails the instance.
        """
        decision = decision if decision is not None else HumanDecision()
        self.expire_timeouts()
        with self.tree.atomic():
            instance = self.tree.get(instance_id)
            suspension = self._require_suspension(instance, SuspensionKind.APPROVAL)
            self._apply_decision(instance, decision, suspension.result, force_done=False)
        self.checkpoint()
        return self.tree.get(instance_id)

    def collaborate(self, instance_id: str, result: PhaseResult | Mapping[str, Any]) -> LoopInstance:
        """Replace the held result of an instance paused under ``hitl_collaborate``."""
        replacement = result if isinstance(result, PhaseResult) else PhaseResult.model_validate(dict(result))
        replacement = replacement.model_copy(update={"origin": ResultOrigin.HUMAN}, deep=True)
        self.expire_timeouts()
        with self.tree.atomic():
            instance = self.tree.get(instance_id)
            self._require_suspension(instance, SuspensionKind.COLLABORATION)
            self._record_decision(instance, replacement.status, "collaborative result")
            self.tree.resume(instance_id, replacement)
        self.checkpoint()
        return self.tree.get(instance_id)

    def resolve(self, instance_id: str, decision: HumanDecision) -> LoopInstance:
        """Unblock a ``blocked`` instance; ``approve`` here treats the held result as done."""
        with self.tree.atomic():
            instance = self.tree.get(instance_id)
            if instance.status != InstanceStatus.BLOCKED:
                raise InstanceStateError(f"{instance_id} is {instance.status.value}, not blocked")
            self._apply_decision(instance, decision, instance.held_result, force_done=True)
        self.checkpoint()
        return self.tree.get(instance_id)

    def abort(self, instance_id: str, reason: str = "aborted") -> list[str]:
        aborted = self.tree.abort(instance_id, reason)
        self.checkpoint()
        return aborted

    def expire_timeouts(self, now: datetime | None = None) -> list[str]:
        """Block every suspension whose deadline has passed.  Never auto-approves."""
        now = now if now is not None else self._clock()
        expired: list[str] = []
        with self.tree.atomic():
            for instance in self.tree.suspended():
                suspension = instance.suspension
                if suspension is None or suspension.deadline is None or suspension.deadline > now:
                    continue
                self.tree.block(instance.instance_id, HITL_TIMEOUT)
                expired.append(instance.instance_id)
        if expired:
            logger.warning("Human decision timed out for %s", ", ".join(expired))
            self.checkpoint()
        return expired

    def _require_suspension(self, instance: LoopInstance, kind: SuspensionKind) -> Suspension:
        suspension = instance.suspension
        if instance.status != InstanceStatus.PAUSED_FOR_HUMAN or suspension is None or suspension.kind != kind:
            raise InstanceStateError(f"{instance.instance_id} is not awaiting {kind.value} (status {instance.status.value})")
        return suspension

    def _apply_decision(
        self,
        instance: LoopInstance,
        decision: HumanDecision,
        held: PhaseResult | None,
        *,
        force_done: bool,
    ) -> None:
        instance_id = instance.instance_id
        if decision.action == DecisionAction.RETRY:
            self._record_decision(instance, held.status if held else PhaseStatus.BLOCKED, decision.rationale or "retry")
            self.tree.resume(instance_id, None)
            return
        if decision.action == DecisionAction.ABANDON:
            self._record_decision(instance, PhaseStatus.FAILED, decision.rationale or "abandon")
            reason = f"abandoned: {decision.rationale}" if decision.rationale else "abandoned"
            self.tree.fail(instance_id, reason, held)
            return
        result = self._decided_result(instance_id, decision, held, force_done=force_done)
        self._record_decision(instance, result.status, decision.rationale or decision.action.value)
        self.tree.resume(instance_id, result)

    @staticmethod
    def _decided_result(
        instance_id: str,
        decision: HumanDecision,
        held: PhaseResult | None,
        *,
        force_done: bool,
    ) -> PhaseResult:
        detail = decision.rationale or (held.detail if held else None)
        if decision.action == DecisionAction.APPROVE:
            if held is None:
                raise InstanceStateError(f"{instance_id} holds no result to approve; use retry or override")
            status = PhaseStatus.DONE if force_done else held.status
            return held.model_copy(update={"status": status, "origin": ResultOrigin.HUMAN, "detail": detail}, deep=True)
        if decision.action == DecisionAction.REJECT:
            base = held if held is not None else PhaseResult(status=PhaseStatus.NEEDS_MORE)
            return base.model_copy(
                update={"status": PhaseStatus.NEEDS_MORE, "origin": ResultOrigin.HUMAN, "detail": detail},
                deep=True,
            )
        # override
        status = decision.status if decision.status is not None else (held.status if held else None)
        if status is None:
            raise InstanceStateError(f"override on {instance_id} needs a status: nothing is held")
        update: dict[str, Any] = {"status": status, "origin": ResultOrigin.HUMAN, "detail": detail}
        if decision.artifacts is not None:
            update["artifacts"] = [artifact.model_copy(deep=True) for artifact in decision.artifacts]
            update["refs"] = []
        base = held if held is not None else PhaseResult(status=status)
        return base.model_copy(update=update, deep=True)

    def _record_decision(self, instance: LoopInstance, status: PhaseStatus, note: str) -> None:
        self.tree.record(
            instance.instance_id,
            HistoryEntry(
                phase=instance.phase,
                iteration=instance.iteration,
                status=status,
                origin=ResultOrigin.HUMAN,
                note=note,
                recorded_at=self._clock(),
            ),
        )

    # ------------------------------------------------------------------
    # Notifications and events
    # ------------------------------------------------------------------

    def _notify(
        self,
        kind: NotificationKind,
        instance: LoopInstance,
        result: PhaseResult | None,
        reason: str | None,
    ) -> None:
        notification = Notification(
            kind=kind,
            instance_id=instance.instance_id,
            level=instance.level,
            phase=instance.phase,
            iteration=instance.iteration,
            reason=reason,
            result=result,
            created_at=self._clock(),
        )
        try:
            self.notifier.notify(notification)
        except Exception:  # noqa: BLE001 - delivery is fire-and-forget
            logger.exception("Notification channel failed on %s for %s", kind.value, instance.instance_id)

    def _on_tree_event(self, event: str, instance: LoopInstance, data: dict[str, Any]) -> None:
        if self.state_store is not None:
            record: dict[str, Any] = {
                "event": event,
                "instance_id": instance.instance_id,
                "level": instance.level,
                "phase": instance.phase,
                "iteration": instance.iteration,
                "status": instance.status.value,
            }
            record.update({key: value for key, value in data.items() if key != "result"})
            try:
                self.state_store.append_event(record)
            except OSError:
                logger.exception("Could not append %s event for %s", event, instance.instance_id)
        if event == "blocked":
            reason = data.get("reason")
            kind = NotificationKind.TIMEOUT if reason == HITL_TIMEOUT else NotificationKind.BLOCKED
            self._notify(kind, instance, data.get("result"), reason)
        elif event == "failed":
            self._notify(NotificationKind.FAILED, instance, data.get("result"), data.get("reason"))

    # ------------------------------------------------------------------
    # Persistence and reconfiguration
    # ------------------------------------------------------------------

    def snapshot(self) -> EngineSnapshot:
        root_id, instances = self.tree.export()
        return EngineSnapshot(
            engine_id=self.settings.engine_id,
            config_version=self.configuration.version,
            root_id=root_id,
            instances=instances,
            updated_at=self._clock(),
        )

    def checkpoint(self) -> None:
        if self.state_store is None:
            return
        with self._checkpoint_lock:
            self.state_store.write_snapshot(self.snapshot())

    def restore(self, snapshot: EngineSnapshot | None = None) -> LoopInstance | None:
        """Load a snapshot into this (empty) engine.

        Raises:
            ConfigError: If the snapshot was taken under a different
                configuration version or names levels/phases it lacks.
            InstanceStateError: If the engine already has a tree or has no
                state store to read from.
        """
        if snapshot is None:
            if self.state_store is None:
                raise InstanceStateError("restore() without a snapshot needs a state store")
            snapshot = self.state_store.read_snapshot()
        if snapshot.config_version != self.configuration.version:
            raise ConfigError(
                f"snapshot was taken under configuration {snapshot.config_version!r}, "
                f"engine runs {self.configuration.version!r}"
            )
        if self.tree.root_id is not None:
            raise InstanceStateError(f"engine already owns root {self.tree.root_id}")
        self._check_compatible(self.configuration, snapshot.instances.values())
        self.tree.load(snapshot.root_id, snapshot.instances)
        logger.info("Restored %d instance(s) from snapshot of %s", len(snapshot.instances), snapshot.updated_at)
        return self.tree.root

    def reload(self, configuration: Configuration) -> None:
        """Swap in a new configuration version between steps.

        Raises:
            ConfigError: If the version is unchanged, bindings are invalid, or
                a live instance sits at a level/phase the new version lacks.
                The old configuration stays active.
        """
        if configuration.version == self.configuration.version:
            raise ConfigError(f"reload needs a new configuration version, got {configuration.version!r} again")
        configuration.validate_bindings(self.registry.ids(), list(self.gateway.adapters))
        with self.tree.atomic():
            live = [instance for instance in self.tree.instances() if not instance.is_terminal]
            self._check_compatible(configuration, live)
            previous = self.configuration.version
            self.configuration = configuration
            self.tree.reconfigure(configuration)
            self.gateway.configuration = configuration
            self.dispatcher.configuration = configuration
        logger.info("Reloaded configuration %s -> %s", previous, configuration.version)
        self.checkpoint()

    @staticmethod
    def _check_compatible(configuration: Configuration, instances: Iterable[LoopInstance]) -> None:
        levels = configuration.levels
        problems: list[str] = []
        for instance in instances:
            if instance.is_terminal:
                continue
            definition = levels.get(instance.level)
            if definition is None:
                problems.append(f"{instance.instance_id}: level {instance.level!r} is not defined")
            elif (
                instance.phase_index >= len(definition.phases)
                or definition.phases[instance.phase_index] != instance.phase
            ):
                problems.append(f"{instance.instance_id}: phase {instance.level}.{instance.phase} moved or vanished")
        if problems:
            raise ConfigError("configuration does not fit live instances: " + "; ".join(problems))
