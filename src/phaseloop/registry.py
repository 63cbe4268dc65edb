from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping

from .dispatcher import PhaseStrategy
from .errors import ConfigError

logger = logging.getLogger(__name__)


class StrategyRegistry:
    """Maps stable strategy identifiers to phase strategy implementations.

    Registration is append-only: re-registering an identifier is a
    configuration error rather than a silent replacement.
    """

    def __init__(self, strategies: Mapping[str, PhaseStrategy] | None = None) -> None:
        self._strategies: dict[str, PhaseStrategy] = {}
        for strategy_id, strategy in (strategies or {}).items():
            self.register(strategy_id, strategy)

    def register(self, strategy_id: str, strategy: PhaseStrategy) -> None:
        key = strategy_id.strip()
        if not key:
            raise ConfigError("strategy identifier must be non-empty")
        if key in self._strategies:
            raise ConfigError(f"strategy already registered: {key}")
        if not callable(strategy) and not callable(getattr(strategy, "run", None)):
            raise ConfigError(f"strategy {key!r} is neither callable nor exposes run(context)")
        self._strategies[key] = strategy
        logger.debug("Registered strategy %s", key)

    def get(self, strategy_id: str) -> PhaseStrategy:
        try:
            return self._strategies[strategy_id]
        except KeyError:
            raise ConfigError(f"strategy {strategy_id!r} is not registered") from None

    def ids(self) -> list[str]:
        return sorted(self._strategies)

    def __contains__(self, strategy_id: object) -> bool:
        return strategy_id in self._strategies

    def __iter__(self) -> Iterator[str]:
        return iter(self.ids())

    def __len__(self) -> int:
        return len(self._strategies)
