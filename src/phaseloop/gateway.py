from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from typing import Any, TypeVar

from tenacity import Retrying, before_sleep_log, retry_if_exception, stop_after_attempt, wait_exponential

from .backends import LINK, UPDATE_STATUS, ArtifactQuery, StateAdapter
from .config import Configuration
from .errors import AdapterFailure, CapabilityUnsupported, ConfigError, EngineError
from .models import Artifact, ArtifactRef
from .settings import EngineSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, AdapterFailure) and exc.retryable


class _KeyLock:
    """Per-artifact lock, dropped from the table when its last holder leaves."""

    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.holders = 0


class AdapterGateway:
    """Single artifact interface over every configured state adapter.

    Calls are routed by semantic artifact type through the configuration's
    adapter table.  ``AdapterFailure`` is retried with exponential backoff;
    ``write``/``link``/``update_status`` against one artifact are serialized
    while different artifacts proceed in parallel.
    """

    def __init__(
        self,
        configuration: Configuration,
        adapters: Mapping[str, StateAdapter],
        settings: EngineSettings,
    ) -> None:
        self.configuration = configuration
        self.adapters = dict(adapters)
        self.settings = settings
        self._guard = threading.Lock()
        self._locks: dict[str, _KeyLock] = {}
        self._by_backend: dict[str, StateAdapter] = {}
        for adapter_id, adapter in self.adapters.items():
            other = self._by_backend.setdefault(adapter.backend, adapter)
            if other is not adapter:
                raise ConfigError(f"adapter {adapter_id!r} reuses backend tag {adapter.backend!r}")

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def adapter_for(self, artifact_type: str) -> StateAdapter:
        adapter_id = self.configuration.adapter_id(artifact_type)
        try:
            return self.adapters[adapter_id]
        except KeyError:
            raise ConfigError(f"adapter {adapter_id!r} for {artifact_type!r} is not configured") from None

    def _adapter_for_ref(self, ref: ArtifactRef) -> StateAdapter:
        """Adapter owning *ref*.

        Refs come from strategy output, so an unknown backend tag is a bad
        reference rather than a configuration error: it fails only the
        instance holding it.

        Raises:
            AdapterFailure: Non-retryable, when no configured adapter carries
                the ref's backend tag.
        """
        adapter = self._by_backend.get(ref.backend)
        if adapter is None:
            known = ", ".join(sorted(self._by_backend)) or "none"
            raise AdapterFailure(f"{ref} names unknown backend {ref.backend!r} (configured: {known})", retryable=False)
        return adapter

    @contextmanager
    def _artifact_lock(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _KeyLock()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.holders -= 1
                if not entry.holders:
                    del self._locks[key]

    def _call(self, description: str, fn: Callable[..., T], *args: Any) -> T:
        def _guarded() -> T:
            try:
                return fn(*args)
            except EngineError:
                raise
            except Exception as exc:  # noqa: BLE001 - backend errors become AdapterFailure
                raise AdapterFailure(f"{description}: {exc}") from exc

        retrying = Retrying(
            stop=stop_after_attempt(self.settings.adapter_max_attempts),
            wait=wait_exponential(
                multiplier=self.settings.adapter_backoff_seconds,
                max=self.settings.adapter_backoff_max_seconds,
            ),
            retry=retry_if_exception(_is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retrying(_guarded)

    # ------------------------------------------------------------------
    # Adapter contract
    # ------------------------------------------------------------------

    def read(self, ref: ArtifactRef) -> Any:
        adapter = self._adapter_for_ref(ref)
        return self._call(f"read {ref}", adapter.read, ref.artifact_type, ref.artifact_id)

    def write(self, artifact_type: str, artifact_id: str, content: Any) -> ArtifactRef:
        adapter = self.adapter_for(artifact_type)
        with self._artifact_lock(str(adapter.ref(artifact_type, artifact_id))):
            return self._call(
                f"write {adapter.backend}:{artifact_type}:{artifact_id}",
                adapter.write,
                artifact_type,
                artifact_id,
                content,
            )

    def list(self, artifact_type: str, query: ArtifactQuery | None = None) -> list[ArtifactRef]:
        adapter = self.adapter_for(artifact_type)
        return self._call(f"list {artifact_type}", adapter.list, artifact_type, query)

    def link(self, from_ref: ArtifactRef, to_ref: ArtifactRef, relation: str) -> None:
        """Record ``from_ref --relation--> to_ref`` on the source artifact's backend.

        Raises:
            CapabilityUnsupported: If the source backend cannot link.
        """
        adapter = self._adapter_for_ref(from_ref)
        if not adapter.supports(LINK):
            raise CapabilityUnsupported(adapter.backend, LINK)
        with self._artifact_lock(str(from_ref)):
            self._call(f"link {from_ref} -[{relation}]-> {to_ref}", adapter.link, from_ref, to_ref, relation)

    def update_status(self, ref: ArtifactRef, status: str) -> None:
        """Set the lifecycle status tracked by the backend.

        Raises:
            CapabilityUnsupported: If the backend does not track status.
        """
        adapter = self._adapter_for_ref(ref)
        if not adapter.supports(UPDATE_STATUS):
            raise CapabilityUnsupported(adapter.backend, UPDATE_STATUS)
        with self._artifact_lock(str(ref)):
            self._call(f"update_status {ref} -> {status}", adapter.update_status, ref, status)

    # ------------------------------------------------------------------
    # Engine-facing helpers
    # ------------------------------------------------------------------

    def try_link(self, from_ref: ArtifactRef, to_ref: ArtifactRef, relation: str) -> bool:
        try:
            self.link(from_ref, to_ref, relation)
        except CapabilityUnsupported as exc:
            logger.warning("Skipping link %s -[%s]-> %s: %s", from_ref, relation, to_ref, exc)
            return False
        return True

    def try_update_status(self, ref: ArtifactRef, status: str) -> bool:
        try:
            self.update_status(ref, status)
        except CapabilityUnsupported as exc:
            logger.warning("Skipping status update %s -> %s: %s", ref, status, exc)
            return False
        return True

    def read_artifact(self, ref: ArtifactRef) -> Artifact:
        return Artifact(artifact_type=ref.artifact_type, artifact_id=ref.artifact_id, content=self.read(ref))

    def persist(self, artifact: Artifact) -> ArtifactRef:
        """Write a produced artifact, then apply its status and links best-effort.

        Raises:
            AdapterFailure: When the write (or a supported link/status call)
                still fails after retries.
        """
        ref = self.write(artifact.artifact_type, artifact.artifact_id, artifact.content)
        if artifact.status is not None:
            self.try_update_status(ref, artifact.status)
        for link in artifact.links:
            self.try_link(ref, link.target, link.relation)
        return ref
