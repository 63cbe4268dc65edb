from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from typing import Any, Callable

import pytest

from phaseloop import (
    Configuration,
    EngineSettings,
    InMemoryStateAdapter,
    LoopDefinition,
    LoopEngine,
    PhaseContext,
    PhaseResult,
    PhaseStatus,
    RecordingNotificationChannel,
    StrategyRegistry,
    TransitionPolicy,
)
from phaseloop.state_store import EngineStateStore

TEST_SETTINGS = EngineSettings(
    engine_id="ENGINE-TEST",
    max_parallelism=4,
    adapter_max_attempts=3,
    adapter_backoff_seconds=0.0,
    adapter_backoff_max_seconds=0.0,
)


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start if start is not None else datetime(2026, 1, 5, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class ScriptedStrategy:
    """Plays back results in order and repeats the last one; records every context it sees.

    A scripted entry may be a callable taking the context, for results that
    depend on the work item or the inputs.
    """

    def __init__(self, *results: Any) -> None:
        if not results:
            results = (PhaseResult(status=PhaseStatus.DONE),)
        self._results = list(results)
        self._lock = threading.Lock()
        self.contexts: list[PhaseContext] = []

    def __call__(self, context: PhaseContext) -> Any:
        with self._lock:
            self.contexts.append(context)
            result = self._results.pop(0) if len(self._results) > 1 else self._results[0]
        return result(context) if callable(result) else result

    @property
    def iterations(self) -> list[int]:
        return [context.iteration for context in self.contexts]


def build_configuration(
    policies: dict[str, TransitionPolicy] | None = None,
    *,
    version: str = "1",
    root_level: str = "planning",
    execution_policies: dict[str, TransitionPolicy] | None = None,
) -> Configuration:
    """Two levels: planning (plan, review) descends into execution (design, implement)."""
    return Configuration(
        version=version,
        root_level=root_level,
        definitions=(
            LoopDefinition(
                level="planning",
                phases=("plan", "review"),
                strategies={"plan": "plan", "review": "review"},
                descend_to="execution",
            ),
            LoopDefinition(
                level="execution",
                phases=("design", "implement"),
                strategies={"design": "design", "implement": "implement"},
                policies=execution_policies or {},
            ),
        ),
        policies={"*.*->*.*": TransitionPolicy(), **(policies or {})},
        adapters={"story": "tracker", "design_doc": "docs", "code": "docs"},
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotificationChannel:
    return RecordingNotificationChannel()


@pytest.fixture
def adapters() -> dict[str, InMemoryStateAdapter]:
    return {"tracker": InMemoryStateAdapter("tracker"), "docs": InMemoryStateAdapter("docs")}


@pytest.fixture
def script() -> Callable[..., ScriptedStrategy]:
    return ScriptedStrategy


@pytest.fixture
def make_configuration() -> Callable[..., Configuration]:
    return build_configuration


@pytest.fixture
def make_engine(
    clock: FakeClock,
    notifier: RecordingNotificationChannel,
    adapters: dict[str, InMemoryStateAdapter],
) -> Callable[..., LoopEngine]:
    def _make(
        configuration: Configuration | None = None,
        strategies: dict[str, Any] | None = None,
        *,
        state_store: EngineStateStore | None = None,
        settings: EngineSettings = TEST_SETTINGS,
    ) -> LoopEngine:
        bound: dict[str, Any] = {name: ScriptedStrategy() for name in ("plan", "review", "design", "implement")}
        bound.update(strategies or {})
        return LoopEngine(
            configuration if configuration is not None else build_configuration(),
            StrategyRegistry(bound),
            adapters,
            notifier=notifier,
            settings=settings,
            state_store=state_store,
            clock=clock,
        )

    return _make
