"""Immutable engine configuration: loop definitions, policy table, strategy and adapter bindings.

A ``Configuration`` is built once and handed by reference to every engine
component.  Nothing at runtime mutates it; a new version is swapped in through
``LoopEngine.reload``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection
from datetime import timedelta

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import ConfigError
from .models import FlowMode, LoopInstance, PhaseResult

logger = logging.getLogger(__name__)

WILDCARD = "*"
END_PHASE = "end"

EscalationCondition = Callable[[LoopInstance, PhaseResult], bool]


def _check_name(value: str, what: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError(f"{what} must be non-empty")
    if any(char in value for char in ".*>:") or " " in value:
        raise ValueError(f"{what} {value!r} must not contain '.', '*', '>', ':' or spaces")
    return value


class TransitionKey(BaseModel):
    """``source_level.source_phase -> target_level.target_phase``; any component may be ``*``."""

    model_config = ConfigDict(frozen=True)

    source_level: str
    source_phase: str
    target_level: str
    target_phase: str

    @classmethod
    def parse(cls, text: str, *, default_level: str | None = None) -> "TransitionKey":
        """Parse a key string.

        A side without a ``.`` is a bare phase name.  The source side of a bare
        key takes *default_level* (the owning definition's level) when given;
        every other bare side matches any level.
        """
        if text.count("->") != 1:
            raise ConfigError(f"transition key must contain exactly one '->': {text!r}")
        source, target = (part.strip() for part in text.split("->"))
        if not source or not target:
            raise ConfigError(f"transition key has an empty side: {text!r}")
        source_level, source_phase = cls._split_side(source, default_level or WILDCARD)
        target_level, target_phase = cls._split_side(target, WILDCARD)
        return cls(
            source_level=source_level,
            source_phase=source_phase,
            target_level=target_level,
            target_phase=target_phase,
        )

    @staticmethod
    def _split_side(side: str, default_level: str) -> tuple[str, str]:
        if "." in side:
            level, phase = side.split(".", 1)
        else:
            level, phase = default_level, side
        if not level or not phase or "." in phase:
            raise ConfigError(f"malformed transition key side: {side!r}")
        return level, phase

    @property
    def components(self) -> tuple[str, str, str, str]:
        return (self.source_level, self.source_phase, self.target_level, self.target_phase)

    @property
    def specificity(self) -> int:
        return sum(1 for part in self.components if part != WILDCARD)

    @property
    def is_exact(self) -> bool:
        return self.specificity == 4

    def matches(self, concrete: "TransitionKey") -> bool:
        return all(
            pattern == WILDCARD or pattern == value
            for pattern, value in zip(self.components, concrete.components, strict=True)
        )

    def __str__(self) -> str:
        return f"{self.source_level}.{self.source_phase}->{self.target_level}.{self.target_phase}"


class TransitionPolicy(BaseModel):
    """Flow policy for one transition.  Strategies may read it but never decide on it."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    mode: FlowMode = FlowMode.AUTONOMOUS
    max_iterations: int | None = Field(default=None, ge=1)
    escalation_condition: EscalationCondition | None = Field(default=None, exclude=True)
    timeout: timedelta | None = None
    join_tolerance: float = Field(default=1.0, ge=0.0, le=1.0)

    @field_validator("timeout")
    @classmethod
    def _positive_timeout(cls, value: timedelta | None) -> timedelta | None:
        if value is not None and value <= timedelta(0):
            raise ValueError("timeout must be positive")
        return value


class LoopDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    level: str
    phases: tuple[str, ...]
    strategies: dict[str, str] = Field(default_factory=dict)
    policies: dict[str, TransitionPolicy] = Field(default_factory=dict)
    descend_to: str | None = None

    @field_validator("level")
    @classmethod
    def _valid_level(cls, value: str) -> str:
        return _check_name(value, "level")

    @field_validator("phases")
    @classmethod
    def _valid_phases(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        if not value:
            raise ValueError("a loop definition needs at least one phase")
        phases = tuple(_check_name(phase, "phase") for phase in value)
        if len(set(phases)) != len(phases):
            raise ValueError(f"duplicate phase names: {list(phases)}")
        if END_PHASE in phases:
            raise ValueError(f"'{END_PHASE}' is reserved and cannot be a phase name")
        return phases

    @model_validator(mode="after")
    def _strategies_name_phases(self) -> "LoopDefinition":
        unknown = set(self.strategies) - set(self.phases)
        if unknown:
            raise ValueError(f"strategies bound to unknown phases of {self.level}: {sorted(unknown)}")
        return self

    def phase_at(self, index: int) -> str:
        return self.phases[index]

    def is_last(self, index: int) -> bool:
        return index == len(self.phases) - 1


class PolicyTable:
    """Deterministic policy lookup: exact key first, then the most specific wildcard."""

    def __init__(self, entries: list[tuple[TransitionKey, TransitionPolicy]]) -> None:
        self._entries = list(entries)
        self._exact: dict[TransitionKey, TransitionPolicy] = {}
        for key, policy in self._entries:
            if key.is_exact:
                self._exact.setdefault(key, policy)

    def __len__(self) -> int:
        return len(self._entries)

    def find(self, key: TransitionKey) -> TransitionPolicy | None:
        exact = self._exact.get(key)
        if exact is not None:
            return exact
        best: tuple[int, int, TransitionPolicy] | None = None
        for order, (pattern, policy) in enumerate(self._entries):
            if not pattern.matches(key):
                continue
            # Ties on specificity go to the earliest declaration.
            rank = (pattern.specificity, -order)
            if best is None or rank > best[:2]:
                best = (rank[0], rank[1], policy)
        return best[2] if best else None

    def lookup(self, key: TransitionKey) -> TransitionPolicy:
        policy = self.find(key)
        if policy is None:
            raise ConfigError(f"no transition policy matches {key}")
        return policy


class Configuration(BaseModel):
    """Loop definitions plus the policy, strategy and adapter tables.  Read-only at runtime."""

    model_config = ConfigDict(frozen=True)

    version: str = "1"
    root_level: str
    definitions: tuple[LoopDefinition, ...]
    policies: dict[str, TransitionPolicy] = Field(default_factory=dict)
    strategies: dict[str, str] = Field(default_factory=dict)
    adapters: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _unique_levels(self) -> "Configuration":
        levels = [definition.level for definition in self.definitions]
        if len(set(levels)) != len(levels):
            raise ValueError(f"duplicate loop levels: {levels}")
        if self.root_level not in levels:
            raise ValueError(f"root_level {self.root_level!r} has no loop definition")
        return self

    @property
    def levels(self) -> dict[str, LoopDefinition]:
        return {definition.level: definition for definition in self.definitions}

    def definition(self, level: str) -> LoopDefinition:
        try:
            return self.levels[level]
        except KeyError:
            raise ConfigError(f"no loop definition for level {level!r}") from None

    def policy_table(self) -> PolicyTable:
        entries: list[tuple[TransitionKey, TransitionPolicy]] = []
        seen: set[TransitionKey] = set()
        for raw_key, policy in self.policies.items():
            key = TransitionKey.parse(raw_key)
            if key not in seen:
                seen.add(key)
                entries.append((key, policy))
        for definition in self.definitions:
            for raw_key, policy in definition.policies.items():
                key = TransitionKey.parse(raw_key, default_level=definition.level)
                if key not in seen:
                    seen.add(key)
                    entries.append((key, policy))
        return PolicyTable(entries)

    def strategy_id(self, level: str, phase: str) -> str:
        override = self.strategies.get(f"{level}.{phase}")
        if override is not None:
            return override
        definition = self.definition(level)
        if phase not in definition.phases:
            raise ConfigError(f"phase {phase!r} is not part of level {level!r}")
        try:
            return definition.strategies[phase]
        except KeyError:
            raise ConfigError(f"no strategy bound to {level}.{phase}") from None

    def adapter_id(self, artifact_type: str) -> str:
        try:
            return self.adapters[artifact_type]
        except KeyError:
            raise ConfigError(f"no adapter bound to artifact type {artifact_type!r}") from None

    def transition_key(self, instance: LoopInstance, parent: LoopInstance | None) -> TransitionKey:
        """Concrete key for leaving the instance's current phase."""
        definition = self.definition(instance.level)
        if not definition.is_last(instance.phase_index):
            return TransitionKey(
                source_level=instance.level,
                source_phase=instance.phase,
                target_level=instance.level,
                target_phase=definition.phase_at(instance.phase_index + 1),
            )
        if parent is not None:
            return TransitionKey(
                source_level=instance.level,
                source_phase=instance.phase,
                target_level=parent.level,
                target_phase=parent.phase,
            )
        return TransitionKey(
            source_level=instance.level,
            source_phase=instance.phase,
            target_level=instance.level,
            target_phase=END_PHASE,
        )

    def _spawning_phases(self, level: str) -> list[tuple[str, str]]:
        return [
            (definition.level, phase)
            for definition in self.definitions
            if definition.descend_to == level
            for phase in definition.phases
        ]

    def _reachable_keys(self) -> list[TransitionKey]:
        keys: list[TransitionKey] = []
        for definition in self.definitions:
            for index, phase in enumerate(definition.phases[:-1]):
                keys.append(
                    TransitionKey(
                        source_level=definition.level,
                        source_phase=phase,
                        target_level=definition.level,
                        target_phase=definition.phases[index + 1],
                    )
                )
            last = definition.phases[-1]
            targets = self._spawning_phases(definition.level)
            if definition.level == self.root_level:
                targets.append((definition.level, END_PHASE))
            for target_level, target_phase in targets:
                keys.append(
                    TransitionKey(
                        source_level=definition.level,
                        source_phase=last,
                        target_level=target_level,
                        target_phase=target_phase,
                    )
                )
        return keys

    def validate_bindings(self, strategy_ids: Collection[str], adapter_ids: Collection[str]) -> None:
        """Fail fast on any binding the engine would otherwise trip over at first use.

        Raises:
            ConfigError: Listing every problem found.
        """
        problems: list[str] = []
        levels = self.levels

        for definition in self.definitions:
            if definition.descend_to is not None and definition.descend_to not in levels:
                problems.append(f"{definition.level}: descend_to {definition.descend_to!r} is not a defined level")

        for definition in self.definitions:
            seen: set[str] = set()
            current: str | None = definition.level
            while current is not None and current in levels:
                if current in seen:
                    problems.append(f"descend chain starting at {definition.level!r} cycles through {current!r}")
                    break
                seen.add(current)
                current = levels[current].descend_to

        for key in self.strategies:
            level, _, phase = key.partition(".")
            if level not in levels or phase not in levels[level].phases:
                problems.append(f"strategy override {key!r} names no known level.phase")

        for definition in self.definitions:
            for phase in definition.phases:
                try:
                    strategy_id = self.strategy_id(definition.level, phase)
                except ConfigError as exc:
                    problems.append(str(exc))
                    continue
                if strategy_id not in strategy_ids:
                    problems.append(f"{definition.level}.{phase}: strategy {strategy_id!r} is not registered")

        for artifact_type, adapter_id in self.adapters.items():
            if adapter_id not in adapter_ids:
                problems.append(f"artifact type {artifact_type!r}: adapter {adapter_id!r} is not configured")

        table = self.policy_table()
        for key in self._reachable_keys():
            if table.find(key) is None:
                problems.append(f"no transition policy matches {key}")

        if problems:
            for problem in problems:
                logger.error("Configuration %s: %s", self.version, problem)
            raise ConfigError("invalid configuration: " + "; ".join(problems))
