"""Phase Dispatcher: resolve, invoke and normalize phase strategies.

A strategy receives a read-only ``PhaseContext`` and returns either a
``PhaseResult`` or a mapping with the same shape.  Anything else, and any
exception, becomes a ``failed`` result so a misbehaving strategy can never
corrupt the loop tree.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any, Protocol, Union, runtime_checkable

from pydantic import BaseModel, ConfigDict, ValidationError

from .config import Configuration, TransitionPolicy
from .errors import StrategyFailure
from .models import Artifact, HistoryEntry, LoopInstance, PhaseResult, PhaseStatus, ResultOrigin

logger = logging.getLogger(__name__)


class PhaseContext(BaseModel):
    """Everything a strategy may look at.  The policy is for reference only."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    instance_id: str
    level: str
    phase: str
    iteration: int
    artifacts: tuple[Artifact, ...] = ()
    history: tuple[HistoryEntry, ...] = ()
    work_item: str | None = None
    policy: TransitionPolicy

    def artifacts_of_type(self, artifact_type: str) -> list[Artifact]:
        return [artifact for artifact in self.artifacts if artifact.artifact_type == artifact_type]


@runtime_checkable
class RunnableStrategy(Protocol):
    def run(self, context: PhaseContext) -> PhaseResult | Mapping[str, Any]: ...


PhaseStrategy = Union[Callable[[PhaseContext], Any], RunnableStrategy]


def failed_result(detail: str) -> PhaseResult:
    return PhaseResult(status=PhaseStatus.FAILED, detail=detail)


class PhaseDispatcher:
    def __init__(self, configuration: Configuration, registry: Any) -> None:
        self.configuration = configuration
        self.registry = registry

    def resolve(self, level: str, phase: str) -> PhaseStrategy:
        """Look up the strategy bound to ``level.phase``.

        Raises:
            ConfigError: If no strategy is bound or the bound id is not registered.
        """
        return self.registry.get(self.configuration.strategy_id(level, phase))

    def build_context(
        self,
        instance: LoopInstance,
        inputs: list[Artifact],
        policy: TransitionPolicy,
    ) -> PhaseContext:
        return PhaseContext(
            instance_id=instance.instance_id,
            level=instance.level,
            phase=instance.phase,
            iteration=instance.iteration,
            artifacts=tuple(artifact.model_copy(deep=True) for artifact in inputs),
            history=tuple(entry.model_copy(deep=True) for entry in instance.context),
            work_item=instance.work_item,
            policy=policy,
        )

    def dispatch(
        self,
        instance: LoopInstance,
        inputs: list[Artifact],
        policy: TransitionPolicy,
    ) -> PhaseResult:
        strategy = self.resolve(instance.level, instance.phase)
        context = self.build_context(instance, inputs, policy)
        label = f"{instance.instance_id} {instance.level}.{instance.phase}#{instance.iteration}"
        runner = strategy.run if isinstance(strategy, RunnableStrategy) else strategy
        try:
            result = self.normalize(runner(context))
        except StrategyFailure as exc:
            logger.warning("Strategy for %s returned a malformed result: %s", label, exc)
            return failed_result(f"strategy_failure: {exc}")
        except Exception as exc:  # noqa: BLE001 - strategies are untrusted leaves
            logger.warning("Strategy for %s raised %s: %s", label, type(exc).__name__, exc)
            return failed_result(f"strategy_failure: {type(exc).__name__}: {exc}")
        logger.debug("Strategy for %s returned %s", label, result.status.value)
        return result

    @staticmethod
    def normalize(raw: Any) -> PhaseResult:
        """Coerce a strategy return value into a ``PhaseResult`` owned by the engine.

        Raises:
            StrategyFailure: If *raw* cannot be read as a phase result.
        """
        if isinstance(raw, PhaseResult):
            result = raw.model_copy(deep=True)
        elif isinstance(raw, Mapping):
            try:
                result = PhaseResult.model_validate(dict(raw))
            except ValidationError as exc:
                raise StrategyFailure(f"result failed validation: {exc.error_count()} error(s): {exc.errors()[0]['msg']}") from exc
        else:
            raise StrategyFailure(f"expected a PhaseResult or mapping, got {type(raw).__name__}")
        return result.model_copy(update={"origin": ResultOrigin.STRATEGY})
