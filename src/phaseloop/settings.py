from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


@dataclass(frozen=True)
class EngineSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    engine_id: str = "ENGINE-001"
    state_store_root: str = "state_store"
    max_parallelism: int = 4
    adapter_max_attempts: int = 3
    adapter_backoff_seconds: float = 0.5
    adapter_backoff_max_seconds: float = 8.0
    iteration_ceiling: int = 50
    recursion_limit: int = 50

    @classmethod
    def from_env(cls, env_file: Path | None = None) -> "EngineSettings":
        if env_file is not None and env_file.is_file():
            load_dotenv(env_file)
        return cls(
            engine_id=os.getenv("PHASELOOP_ENGINE_ID", "ENGINE-001"),
            state_store_root=os.getenv("PHASELOOP_STATE_STORE_ROOT", "state_store"),
            max_parallelism=_get_env_int("PHASELOOP_MAX_PARALLELISM", default=4, minimum=1, maximum=256),
            adapter_max_attempts=_get_env_int("PHASELOOP_ADAPTER_MAX_ATTEMPTS", default=3, minimum=1, maximum=20),
            adapter_backoff_seconds=_get_env_float("PHASELOOP_ADAPTER_BACKOFF_SECONDS", default=0.5, minimum=0.0),
            adapter_backoff_max_seconds=_get_env_float(
                "PHASELOOP_ADAPTER_BACKOFF_MAX_SECONDS", default=8.0, minimum=0.0
            ),
            iteration_ceiling=_get_env_int("PHASELOOP_ITERATION_CEILING", default=50, minimum=1),
            recursion_limit=_get_env_int("PHASELOOP_RECURSION_LIMIT", default=50, minimum=10),
        ).normalized()

    def normalized(self) -> "EngineSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        engine_id = self.engine_id.strip()
        if not engine_id:
            raise ValueError("PHASELOOP_ENGINE_ID must be non-empty")
        if not self.state_store_root.strip():
            raise ValueError("PHASELOOP_STATE_STORE_ROOT must be non-empty")
        if self.max_parallelism < 1:
            raise ValueError(f"PHASELOOP_MAX_PARALLELISM must be >= 1, got: {self.max_parallelism}")
        if self.adapter_max_attempts < 1:
            raise ValueError(f"PHASELOOP_ADAPTER_MAX_ATTEMPTS must be >= 1, got: {self.adapter_max_attempts}")
        if self.adapter_backoff_seconds < 0 or self.adapter_backoff_max_seconds < 0:
            raise ValueError("adapter backoff durations must be >= 0")
        if self.iteration_ceiling < 1:
            raise ValueError(f"PHASELOOP_ITERATION_CEILING must be >= 1, got: {self.iteration_ceiling}")

        # The cap never undercuts the initial wait.
        backoff_max = max(self.adapter_backoff_max_seconds, self.adapter_backoff_seconds)
        return EngineSettings(
            engine_id=engine_id,
            state_store_root=self.state_store_root,
            max_parallelism=self.max_parallelism,
            adapter_max_attempts=self.adapter_max_attempts,
            adapter_backoff_seconds=self.adapter_backoff_seconds,
            adapter_backoff_max_seconds=backoff_max,
            iteration_ceiling=self.iteration_ceiling,
            recursion_limit=self.recursion_limit,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float = 3_600.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        raise ValueError(f"{name} must be within [{minimum}, {maximum}], got: {parsed}")
    return parsed
