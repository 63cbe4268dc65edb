from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path

import pytest

from phaseloop import (
    Artifact,
    ArtifactRef,
    ConfigError,
    Configuration,
    DecisionAction,
    FlowMode,
    HumanDecision,
    InMemoryStateAdapter,
    InstanceStateError,
    InstanceStatus,
    LoopDefinition,
    LoopEngine,
    NotificationKind,
    PhaseContext,
    PhaseResult,
    PhaseStatus,
    ResultOrigin,
    StrategyRegistry,
    TransitionAction,
    TransitionPolicy,
    WaitState,
    WorkItem,
)
from phaseloop.engine import HITL_TIMEOUT
from phaseloop.state_store import EngineStateStore

APPROVE_PLAN = {"planning.plan->planning.review": TransitionPolicy(mode=FlowMode.HITL_APPROVE)}


def _done(**kwargs) -> PhaseResult:
    return PhaseResult(status=PhaseStatus.DONE, **kwargs)


def _story(number: int) -> Artifact:
    return Artifact(artifact_type="story", artifact_id=f"S-{number}", content={"title": f"Story {number}"})


def _fork_plan() -> PhaseResult:
    return PhaseResult(
        status=PhaseStatus.PARALLEL,
        work_items=[WorkItem(name=f"story-{n}", artifacts=[_story(n)]) for n in (1, 2, 3)],
    )


def _implement_failing_story_3(context: PhaseContext) -> PhaseResult:
    if context.work_item == "story-3":
        return PhaseResult(status=PhaseStatus.FAILED, detail="tests red")
    return _done()


class FlakyAdapter(InMemoryStateAdapter):
    """Write fails the first *failures* times it is called."""

    def __init__(self, backend: str, failures: int) -> None:
        super().__init__(backend)
        self.failures = failures
        self.attempts = 0

    def write(self, artifact_type: str, artifact_id: str, content):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConnectionError("backend unreachable")
        return super().write(artifact_type, artifact_id, content)


# ---------------------------------------------------------------------------
# Autonomous flow
# ---------------------------------------------------------------------------


def test_autonomous_run_completes_root(make_engine, notifier) -> None:
    engine = make_engine()
    root = engine.start()
    outcome = engine.run()

    assert outcome.finished
    assert outcome.root_id == root.instance_id
    assert outcome.root_status == InstanceStatus.COMPLETED
    assert outcome.steps == 2
    history = engine.tree.get(root.instance_id).context
    assert [(entry.phase, entry.action) for entry in history] == [
        ("plan", TransitionAction.ADVANCE_PHASE),
        ("review", TransitionAction.ESCALATE),
    ]
    assert notifier.notifications == []


def test_run_without_root_is_rejected(make_engine) -> None:
    with pytest.raises(InstanceStateError):
        make_engine().run()


def test_needs_more_reenters_phase_with_bumped_iteration(make_engine, make_configuration, script) -> None:
    design = script(PhaseResult(status=PhaseStatus.NEEDS_MORE, detail="missing edge cases"), _done())
    engine = make_engine(make_configuration(root_level="execution"), {"design": design})
    root = engine.start()

    engine.step(root.instance_id)
    after_first = engine.tree.get(root.instance_id)
    assert (after_first.phase, after_first.iteration) == ("design", 2)

    assert engine.run().root_status == InstanceStatus.COMPLETED
    assert design.iterations == [1, 2]
    assert design.contexts[1].history[0].note == "missing edge cases"
    actions = [entry.action for entry in engine.tree.get(root.instance_id).context]
    assert actions == [TransitionAction.CONTINUE, TransitionAction.ADVANCE_PHASE, TransitionAction.ESCALATE]


def test_max_iterations_fails_instance(make_engine, make_configuration, script, notifier) -> None:
    configuration = make_configuration({"planning.plan->planning.review": TransitionPolicy(max_iterations=2)})
    plan = script(PhaseResult(status=PhaseStatus.NEEDS_MORE))
    engine = make_engine(configuration, {"plan": plan})
    root = engine.start()

    outcome = engine.run()
    assert outcome.root_status == InstanceStatus.FAILED
    assert engine.tree.get(root.instance_id).reason == "iteration_cap_exceeded"
    assert plan.iterations == [1, 2]
    assert [n.reason for n in notifier.of_kind(NotificationKind.FAILED)] == ["iteration_cap_exceeded"]


def test_descend_seeds_child_and_returns_done(make_engine, script, adapters) -> None:
    plan = script(PhaseResult(status=PhaseStatus.DESCEND, artifacts=[_story(1)]))
    design = script()
    engine = make_engine(strategies={"plan": plan, "design": design})
    root = engine.start()

    assert engine.run().root_status == InstanceStatus.COMPLETED
    assert adapters["tracker"].read("story", "S-1") == {"title": "Story 1"}
    assert design.contexts[0].level == "execution"
    assert design.contexts[0].artifacts_of_type("story")[0].content == {"title": "Story 1"}
    history = engine.tree.get(root.instance_id).context
    assert [(entry.origin, entry.action) for entry in history] == [
        (ResultOrigin.STRATEGY, TransitionAction.DESCEND),
        (ResultOrigin.DESCEND, TransitionAction.ADVANCE_PHASE),
        (ResultOrigin.STRATEGY, TransitionAction.ESCALATE),
    ]
    assert len(plan.contexts) == 1
    engine.tree.check_invariants()


# ---------------------------------------------------------------------------
# Fork and join
# ---------------------------------------------------------------------------


def test_fork_with_failing_child_blocks_parent(make_engine, script, notifier) -> None:
    engine = make_engine(strategies={"plan": script(_fork_plan()), "implement": script(_implement_failing_story_3)})
    root = engine.start()

    outcome = engine.run()
    assert outcome.root_status == InstanceStatus.BLOCKED
    assert outcome.blocked == [root.instance_id]

    parent = engine.tree.get(root.instance_id)
    assert parent.reason == "join_failed"
    assert parent.wait == WaitState.NONE
    assert parent.held_result is not None
    assert parent.held_result.status == PhaseStatus.FAILED
    assert parent.held_result.origin == ResultOrigin.JOIN
    assert sorted(ref.artifact_id for ref in parent.held_result.refs) == ["S-1", "S-2", "S-3"]

    children = [engine.tree.get(child_id) for child_id in parent.children]
    assert sorted(child.status.value for child in children) == ["completed", "completed", "failed"]
    assert all(child.retired for child in children)
    assert [n.instance_id for n in notifier.of_kind(NotificationKind.BLOCKED)] == [root.instance_id]
    failed = notifier.of_kind(NotificationKind.FAILED)
    assert len(failed) == 1 and failed[0].instance_id != root.instance_id
    engine.tree.check_invariants()


def test_join_tolerance_lets_partial_fork_advance(make_engine, make_configuration, script) -> None:
    configuration = make_configuration({"planning.plan->planning.review": TransitionPolicy(join_tolerance=0.6)})
    review = script()
    engine = make_engine(
        configuration,
        {"plan": script(_fork_plan()), "implement": script(_implement_failing_story_3), "review": review},
    )
    engine.start()

    assert engine.run().root_status == InstanceStatus.COMPLETED
    reviewed = {artifact.artifact_id for artifact in review.contexts[0].artifacts_of_type("story")}
    assert reviewed == {"S-1", "S-2", "S-3"}


def test_work_item_with_unknown_backend_blocks_only_its_child(make_engine, script) -> None:
    stray = ArtifactRef(backend="nowhere", artifact_type="story", artifact_id="S-9")
    plan = PhaseResult(
        status=PhaseStatus.PARALLEL,
        work_items=[
            WorkItem(name="story-1", artifacts=[_story(1)]),
            WorkItem(name="story-stray", refs=[stray]),
            WorkItem(name="story-3", artifacts=[_story(3)]),
        ],
    )
    engine = make_engine(strategies={"plan": script(plan)})
    root = engine.start()

    outcome = engine.run()
    assert outcome.root_status == InstanceStatus.RUNNING
    parent = engine.tree.get(root.instance_id)
    assert parent.wait == WaitState.WAITING_FOR_JOIN

    children = {engine.tree.get(child_id).work_item: engine.tree.get(child_id) for child_id in parent.children}
    bad = children["story-stray"]
    assert outcome.blocked == [bad.instance_id]
    assert bad.reason.startswith("adapter_failure:") and "nowhere" in bad.reason
    assert children["story-1"].status == InstanceStatus.COMPLETED
    assert children["story-3"].status == InstanceStatus.COMPLETED

    engine.resolve(bad.instance_id, HumanDecision(action=DecisionAction.ABANDON, rationale="stray ref"))
    assert engine.run().root_status == InstanceStatus.BLOCKED
    assert engine.tree.get(root.instance_id).reason == "join_failed"


def test_concurrent_step_errors_are_all_logged(make_engine, script, caplog) -> None:
    blueprint = Artifact(artifact_type="blueprint", artifact_id="B-1", content="draft")
    engine = make_engine(strategies={"plan": script(_fork_plan()), "design": script(_done(artifacts=[blueprint]))})
    root = engine.start()

    with caplog.at_level(logging.ERROR, logger="phaseloop.engine"):
        with pytest.raises(ConfigError, match="blueprint"):
            engine.run()

    step_errors = [record for record in caplog.records if record.getMessage().startswith("Step of")]
    children = engine.tree.get(root.instance_id).children
    assert sorted(record.getMessage().split()[2] for record in step_errors) == sorted(children)
    assert all(engine.tree.get(child_id).status == InstanceStatus.FAILED for child_id in children)


def test_fork_children_receive_their_work_item(make_engine, script) -> None:
    design = script()
    engine = make_engine(strategies={"plan": script(_fork_plan()), "design": design})
    engine.start()
    engine.run()

    seen = {(context.work_item, context.artifacts[0].artifact_id) for context in design.contexts}
    assert seen == {("story-1", "S-1"), ("story-2", "S-2"), ("story-3", "S-3")}


# ---------------------------------------------------------------------------
# Human in the loop
# ---------------------------------------------------------------------------


def test_notify_mode_reports_and_keeps_going(make_engine, make_configuration, notifier) -> None:
    configuration = make_configuration({"planning.plan->planning.review": TransitionPolicy(mode=FlowMode.HITL_NOTIFY)})
    engine = make_engine(configuration)
    root = engine.start()

    assert engine.run().root_status == InstanceStatus.COMPLETED
    completed = notifier.of_kind(NotificationKind.PHASE_COMPLETED)
    assert [(n.instance_id, n.phase) for n in completed] == [(root.instance_id, "plan")]


def test_approval_timeout_blocks_and_notifies(make_engine, make_configuration, clock, notifier) -> None:
    configuration = make_configuration(
        {"planning.plan->planning.review": TransitionPolicy(mode=FlowMode.HITL_APPROVE, timeout=timedelta(hours=1))}
    )
    engine = make_engine(configuration)
    root = engine.start()

    outcome = engine.run()
    assert outcome.suspended == [root.instance_id]
    assert outcome.next_deadline == clock.now + timedelta(hours=1)
    assert engine.expire_timeouts() == []

    clock.advance(hours=2)
    assert engine.expire_timeouts() == [root.instance_id]
    blocked = engine.tree.get(root.instance_id)
    assert (blocked.status, blocked.reason) == (InstanceStatus.BLOCKED, HITL_TIMEOUT)
    assert blocked.held_result is not None and blocked.held_result.status == PhaseStatus.DONE
    assert [n.reason for n in notifier.of_kind(NotificationKind.TIMEOUT)] == [HITL_TIMEOUT]
    assert notifier.of_kind(NotificationKind.BLOCKED) == []

    with pytest.raises(InstanceStateError):
        engine.approve(root.instance_id)


def test_late_approval_is_refused(make_engine, make_configuration, clock, notifier) -> None:
    configuration = make_configuration(
        {"planning.plan->planning.review": TransitionPolicy(mode=FlowMode.HITL_APPROVE, timeout=timedelta(hours=1))}
    )
    engine = make_engine(configuration)
    root = engine.start()
    engine.run()

    clock.advance(hours=5)
    with pytest.raises(InstanceStateError):
        engine.approve(root.instance_id, HumanDecision(rationale="sorry, was away"))

    blocked = engine.tree.get(root.instance_id)
    assert (blocked.status, blocked.reason) == (InstanceStatus.BLOCKED, HITL_TIMEOUT)
    assert len(notifier.of_kind(NotificationKind.TIMEOUT)) == 1
    assert engine.run().root_status == InstanceStatus.BLOCKED


def test_late_collaboration_is_refused(make_engine, make_configuration, clock, notifier) -> None:
    configuration = make_configuration(
        {
            "planning.plan->planning.review": TransitionPolicy(
                mode=FlowMode.HITL_COLLABORATE, timeout=timedelta(minutes=5)
            )
        }
    )
    engine = make_engine(configuration)
    root = engine.start()
    engine.run()

    clock.advance(days=3)
    with pytest.raises(InstanceStateError):
        engine.collaborate(root.instance_id, {"status": "done", "detail": "finally"})

    blocked = engine.tree.get(root.instance_id)
    assert (blocked.status, blocked.reason) == (InstanceStatus.BLOCKED, HITL_TIMEOUT)
    assert blocked.held_result is not None and blocked.held_result.detail != "finally"
    assert len(notifier.of_kind(NotificationKind.TIMEOUT)) == 1


def test_approve_releases_held_result(make_engine, make_configuration, notifier) -> None:
    engine = make_engine(make_configuration(APPROVE_PLAN))
    root = engine.start()

    assert engine.run().suspended == [root.instance_id]
    paused = engine.tree.get(root.instance_id)
    assert paused.status == InstanceStatus.PAUSED_FOR_HUMAN
    assert paused.phase == "plan"
    assert [n.kind for n in notifier.notifications] == [NotificationKind.APPROVAL_REQUESTED]

    engine.approve(root.instance_id, HumanDecision(rationale="looks right"))
    assert engine.run().root_status == InstanceStatus.COMPLETED
    history = engine.tree.get(root.instance_id).context
    assert [(entry.origin, entry.note) for entry in history if entry.origin == ResultOrigin.HUMAN][0] == (
        ResultOrigin.HUMAN,
        "looks right",
    )


def test_reject_turns_result_into_needs_more(make_engine, make_configuration, script) -> None:
    plan = script()
    engine = make_engine(make_configuration(APPROVE_PLAN), {"plan": plan})
    root = engine.start()
    engine.run()

    engine.approve(root.instance_id, HumanDecision(action=DecisionAction.REJECT, rationale="split the epic"))
    outcome = engine.run()

    assert outcome.suspended == [root.instance_id]
    assert plan.iterations == [1, 2]
    notes = [entry.note for entry in plan.contexts[1].history]
    assert "split the epic" in notes
    assert engine.tree.get(root.instance_id).iteration == 2


def test_override_with_artifacts_persists_them(make_engine, make_configuration, script, adapters) -> None:
    review = script()
    engine = make_engine(make_configuration(APPROVE_PLAN), {"review": review})
    root = engine.start()
    engine.run()

    replacement = Artifact(artifact_type="design_doc", artifact_id="D-9", content={"sections": ["api", "data"]})
    engine.approve(root.instance_id, HumanDecision(action=DecisionAction.OVERRIDE, artifacts=[replacement]))
    assert engine.run().root_status == InstanceStatus.COMPLETED

    assert adapters["docs"].read("design_doc", "D-9") == {"sections": ["api", "data"]}
    docs = review.contexts[0].artifacts_of_type("design_doc")
    assert [doc.artifact_id for doc in docs] == ["D-9"]


def test_collaborate_replaces_result(make_engine, make_configuration, notifier) -> None:
    configuration = make_configuration(
        {"planning.plan->planning.review": TransitionPolicy(mode=FlowMode.HITL_COLLABORATE)}
    )
    engine = make_engine(configuration)
    root = engine.start()
    engine.run()

    assert [n.kind for n in notifier.notifications] == [NotificationKind.COLLABORATION_REQUESTED]
    with pytest.raises(InstanceStateError):
        engine.approve(root.instance_id)

    resumed = engine.collaborate(root.instance_id, {"status": "done", "detail": "rewritten together"})
    assert resumed.status == InstanceStatus.RUNNING
    assert resumed.resume_result is not None and resumed.resume_result.origin == ResultOrigin.HUMAN
    assert engine.run().root_status == InstanceStatus.COMPLETED


def test_approve_requires_a_paused_instance(make_engine) -> None:
    engine = make_engine()
    root = engine.start()
    with pytest.raises(InstanceStateError):
        engine.approve(root.instance_id)
    with pytest.raises(InstanceStateError):
        engine.resolve(root.instance_id, HumanDecision())


def test_step_on_suspended_instance_is_a_no_op(make_engine, make_configuration, script) -> None:
    plan = script()
    engine = make_engine(make_configuration(APPROVE_PLAN), {"plan": plan})
    root = engine.start()
    engine.run()

    engine.step(root.instance_id)
    assert len(plan.contexts) == 1
    assert engine.tree.get(root.instance_id).status == InstanceStatus.PAUSED_FOR_HUMAN


# ---------------------------------------------------------------------------
# Blocked instances
# ---------------------------------------------------------------------------


def test_blocked_strategy_resolved_by_approval(make_engine, script, notifier) -> None:
    plan = script(PhaseResult(status=PhaseStatus.BLOCKED, detail="needs credentials"))
    engine = make_engine(strategies={"plan": plan})
    root = engine.start()

    assert engine.run().blocked == [root.instance_id]
    blocked = engine.tree.get(root.instance_id)
    assert blocked.reason == "needs credentials"
    assert [n.reason for n in notifier.of_kind(NotificationKind.BLOCKED)] == ["needs credentials"]

    engine.resolve(root.instance_id, HumanDecision(rationale="credentials rotated"))
    assert engine.run().root_status == InstanceStatus.COMPLETED
    assert len(plan.contexts) == 1


def test_resolve_abandon_fails_instance(make_engine, script) -> None:
    engine = make_engine(strategies={"plan": script(PhaseResult(status=PhaseStatus.BLOCKED))})
    root = engine.start()
    engine.run()
    assert engine.tree.get(root.instance_id).reason == "phase_blocked"

    failed = engine.resolve(root.instance_id, HumanDecision(action=DecisionAction.ABANDON, rationale="obsolete"))
    assert (failed.status, failed.reason) == (InstanceStatus.FAILED, "abandoned: obsolete")
    assert engine.run().finished


def test_adapter_failure_blocks_then_retry_succeeds(make_engine, script, adapters, notifier) -> None:
    flaky = FlakyAdapter("docs", failures=3)
    adapters["docs"] = flaky
    doc = Artifact(artifact_type="design_doc", artifact_id="D-1", content={"outline": []})
    plan = script(_done(artifacts=[doc]))
    engine = make_engine(strategies={"plan": plan})
    root = engine.start()

    outcome = engine.run()
    assert outcome.blocked == [root.instance_id]
    assert flaky.attempts == 3
    blocked = engine.tree.get(root.instance_id)
    assert blocked.reason.startswith("adapter_failure:")
    assert "backend unreachable" in blocked.reason
    assert len(notifier.of_kind(NotificationKind.BLOCKED)) == 1

    engine.resolve(root.instance_id, HumanDecision(action=DecisionAction.RETRY))
    assert engine.run().root_status == InstanceStatus.COMPLETED
    assert flaky.attempts == 4
    assert plan.iterations == [1, 1]


def test_missing_input_artifact_blocks_without_retrying(make_engine, script) -> None:
    plan = script()
    engine = make_engine(strategies={"plan": plan})
    root = engine.start([engine.gateway.adapter_for("story").ref("story", "S-404")])

    assert engine.run().blocked == [root.instance_id]
    assert "S-404" in engine.tree.get(root.instance_id).reason
    assert plan.contexts == []


# ---------------------------------------------------------------------------
# Cancellation and configuration errors
# ---------------------------------------------------------------------------


def test_abort_cancels_waiting_parent_and_suspended_child(make_engine, make_configuration, script) -> None:
    configuration = make_configuration(
        execution_policies={"design->implement": TransitionPolicy(mode=FlowMode.HITL_APPROVE)}
    )
    engine = make_engine(configuration, {"plan": script(PhaseResult(status=PhaseStatus.DESCEND))})
    root = engine.start()

    outcome = engine.run()
    assert outcome.root_status == InstanceStatus.RUNNING
    assert len(outcome.suspended) == 1
    child_id = outcome.suspended[0]
    assert engine.tree.get(root.instance_id).wait == WaitState.WAITING_FOR_DESCEND

    assert engine.abort(root.instance_id, "superseded") == [child_id, root.instance_id]
    assert engine.tree.get(child_id).status == InstanceStatus.ABORTED
    assert engine.tree.get(root.instance_id).reason == "superseded"
    assert engine.run().finished
    engine.tree.check_invariants()


def test_unbound_artifact_type_fails_instance_at_first_use(make_engine, script, notifier) -> None:
    blueprint = Artifact(artifact_type="blueprint", artifact_id="B-1", content="draft")
    engine = make_engine(strategies={"plan": script(_done(artifacts=[blueprint]))})
    root = engine.start()

    with pytest.raises(ConfigError, match="blueprint"):
        engine.run()
    failed = engine.tree.get(root.instance_id)
    assert failed.status == InstanceStatus.FAILED
    assert failed.reason.startswith("config_error:")
    assert len(notifier.of_kind(NotificationKind.FAILED)) == 1


def test_startup_rejects_unregistered_strategy(make_configuration, adapters) -> None:
    registry = StrategyRegistry({"plan": lambda context: {"status": "done"}})
    with pytest.raises(ConfigError, match="strategy 'review' is not registered"):
        LoopEngine(make_configuration(), registry, adapters)


def test_startup_rejects_missing_adapter(make_configuration) -> None:
    registry = StrategyRegistry({name: lambda context: {"status": "done"} for name in ("plan", "review", "design", "implement")})
    with pytest.raises(ConfigError, match="adapter 'docs' is not configured"):
        LoopEngine(make_configuration(), registry, {"tracker": InMemoryStateAdapter("tracker")})


# ---------------------------------------------------------------------------
# Persistence and reconfiguration
# ---------------------------------------------------------------------------


def test_restore_resumes_paused_engine(make_engine, make_configuration, tmp_path: Path) -> None:
    store = EngineStateStore(tmp_path, engine_id="ENGINE-TEST")
    first = make_engine(make_configuration(APPROVE_PLAN), state_store=store)
    root = first.start()
    first.run()
    assert store.has_snapshot()

    second = make_engine(make_configuration(APPROVE_PLAN), state_store=EngineStateStore(tmp_path, engine_id="ENGINE-TEST"))
    restored = second.restore()
    assert restored is not None and restored.instance_id == root.instance_id
    assert restored.status == InstanceStatus.PAUSED_FOR_HUMAN
    with pytest.raises(InstanceStateError):
        second.restore()

    second.approve(root.instance_id)
    assert second.run().root_status == InstanceStatus.COMPLETED
    assert store.read_snapshot().instances[root.instance_id].status == InstanceStatus.COMPLETED
    events = [event["event"] for event in store.read_events(instance_id=root.instance_id)]
    assert events[0] == "created"
    assert "paused" in events and events[-1] == "escalated"


def test_restore_rejects_other_configuration_version(make_engine, make_configuration, tmp_path: Path) -> None:
    store = EngineStateStore(tmp_path, engine_id="ENGINE-TEST")
    first = make_engine(make_configuration(APPROVE_PLAN), state_store=store)
    first.start()
    first.run()

    newer = make_engine(make_configuration(APPROVE_PLAN, version="2"), state_store=store)
    with pytest.raises(ConfigError, match="configuration"):
        newer.restore()


def _renamed_planning(version: str) -> Configuration:
    return Configuration(
        version=version,
        root_level="planning",
        definitions=(
            LoopDefinition(
                level="planning",
                phases=("draft", "review"),
                strategies={"draft": "plan", "review": "review"},
                descend_to="execution",
            ),
            LoopDefinition(
                level="execution",
                phases=("design", "implement"),
                strategies={"design": "design", "implement": "implement"},
            ),
        ),
        policies={"*.*->*.*": TransitionPolicy()},
        adapters={"story": "tracker", "design_doc": "docs", "code": "docs"},
    )


def test_reload_requires_new_compatible_version(make_engine, make_configuration) -> None:
    engine = make_engine()
    engine.start()

    with pytest.raises(ConfigError, match="new configuration version"):
        engine.reload(make_configuration())
    with pytest.raises(ConfigError, match="moved or vanished"):
        engine.reload(_renamed_planning("2"))
    assert engine.configuration.version == "1"


def test_reload_applies_new_policies_between_steps(make_engine, make_configuration) -> None:
    engine = make_engine()
    root = engine.start()
    engine.reload(make_configuration(APPROVE_PLAN, version="2"))

    assert engine.run().suspended == [root.instance_id]
    assert engine.snapshot().config_version == "2"
