from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from pydantic import BaseModel, Field, ValidationError

from .models import LoopInstance, utc_now

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive lock on a ``.lock`` sidecar of *path*.

    The sidecar lives next to the data file so the data file itself can be
    swapped with ``os.replace`` while the lock is held.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* via a temp file in the same directory and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def safe_read_text(path: Path, label: str) -> str:
    """Read a UTF-8 file, raising a clear error if it is missing, empty or undecodable.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{label} at {path} is empty")
    return text


def sanitize_component(value: str) -> str:
    """Make *value* usable as a single path component.

    Raises:
        ValueError: If nothing filesystem-safe remains.
    """
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "-", value.strip()).strip("-.")
    if not cleaned:
        raise ValueError(f"{value!r} contains no filesystem-safe characters")
    return cleaned[:128]


# ---------------------------------------------------------------------------
# Engine snapshots
# ---------------------------------------------------------------------------


class EngineSnapshot(BaseModel):
    """Durable image of the instance arena, enough to restart a suspended engine."""

    engine_id: str
    config_version: str
    root_id: str | None = None
    instances: dict[str, LoopInstance] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=utc_now)


class EngineStateStore:
    """Filesystem store for one engine's snapshot and event log.

    Layout::

        <root>/engines/<engine_id>/snapshot.json
        <root>/engines/<engine_id>/events.jsonl
    """

    def __init__(self, root: Path, *, engine_id: str) -> None:
        self.base_root = root
        self.engine_id = engine_id
        self.root = root / "engines" / sanitize_component(engine_id)
        self.root.mkdir(parents=True, exist_ok=True)

    @property
    def snapshot_path(self) -> Path:
        return self.root / "snapshot.json"

    @property
    def events_path(self) -> Path:
        return self.root / "events.jsonl"

    def has_snapshot(self) -> bool:
        return self.snapshot_path.is_file()

    def write_snapshot(self, snapshot: EngineSnapshot) -> None:
        with locked_file(self.snapshot_path):
            atomic_write_text(self.snapshot_path, snapshot.model_dump_json(indent=2))

    def read_snapshot(self) -> EngineSnapshot:
        """Read the persisted snapshot under the snapshot lock.

        Raises:
            FileNotFoundError: If no snapshot has been written.
            ValueError: If the file is corrupt or fails validation.
        """
        if not self.snapshot_path.is_file():
            raise FileNotFoundError(f"engine snapshot not found: {self.snapshot_path}")
        with locked_file(self.snapshot_path):
            text = safe_read_text(self.snapshot_path, "engine snapshot")
            try:
                return EngineSnapshot.model_validate_json(text)
            except ValidationError as exc:
                raise ValueError(f"engine snapshot at {self.snapshot_path} failed validation: {exc}") from exc

    def append_event(self, event: dict[str, Any]) -> None:
        record = {"at": utc_now().isoformat(), **event}
        line = json.dumps(record, sort_keys=True, default=str)
        with locked_file(self.events_path):
            with self.events_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")

    def read_events(self, *, instance_id: str | None = None) -> list[dict[str, Any]]:
        if not self.events_path.is_file():
            return []
        events: list[dict[str, Any]] = []
        with locked_file(self.events_path):
            for line in self.events_path.read_text(encoding="utf-8").splitlines():
                if not line.strip():
                    continue
                event = json.loads(line)
                if instance_id is None or event.get("instance_id") == instance_id:
                    events.append(event)
        return events
