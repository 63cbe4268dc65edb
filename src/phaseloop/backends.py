"""State adapter contract and two reference backends.

A state adapter persists artifacts of the types bound to it.  ``read``,
``write`` and ``list`` are mandatory; ``link`` and ``update_status`` are
optional capabilities.  An adapter that lacks one raises
``CapabilityUnsupported`` from the default implementation below, and the
gateway degrades gracefully.

Both reference backends record links on the *source* artifact only, holding
the target as an opaque ``backend:type:id`` reference, so a link may point
into a backend the source adapter knows nothing about.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .canonical import content_fingerprint
from .errors import AdapterFailure, ArtifactNotFound, CapabilityUnsupported
from .models import ArtifactLink, ArtifactRef
from .state_store import atomic_write_text, locked_file, safe_read_text, sanitize_component

logger = logging.getLogger(__name__)

LINK = "link"
UPDATE_STATUS = "update_status"


class ArtifactQuery(BaseModel):
    """Filter for ``list``.  Every given field must match."""

    model_config = ConfigDict(frozen=True)

    relation: str | None = None
    linked_to: ArtifactRef | None = None
    status: str | None = None


class ArtifactRecord(BaseModel):
    """What a reference backend stores per artifact."""

    artifact_type: str
    artifact_id: str
    content: Any = None
    status: str | None = None
    fingerprint: str
    links: list[ArtifactLink] = Field(default_factory=list)

    def matches(self, query: ArtifactQuery | None) -> bool:
        if query is None:
            return True
        if query.status is not None and self.status != query.status:
            return False
        if query.relation is None and query.linked_to is None:
            return True
        return any(
            (query.relation is None or link.relation == query.relation)
            and (query.linked_to is None or link.target == query.linked_to)
            for link in self.links
        )


class StateAdapter(ABC):
    """Backend-specific implementation of the artifact interface."""

    def __init__(self, backend: str) -> None:
        backend = backend.strip()
        if not backend or ":" in backend:
            raise ValueError(f"backend tag must be non-empty and free of ':', got {backend!r}")
        self.backend = backend

    def ref(self, artifact_type: str, artifact_id: str) -> ArtifactRef:
        return ArtifactRef(backend=self.backend, artifact_type=artifact_type, artifact_id=artifact_id)

    def supports(self, capability: str) -> bool:
        method = {LINK: "link", UPDATE_STATUS: "update_status"}[capability]
        return getattr(type(self), method) is not getattr(StateAdapter, method)

    @abstractmethod
    def read(self, artifact_type: str, artifact_id: str) -> Any: ...

    @abstractmethod
    def write(self, artifact_type: str, artifact_id: str, content: Any) -> ArtifactRef: ...

    @abstractmethod
    def list(self, artifact_type: str, query: ArtifactQuery | None = None) -> list[ArtifactRef]: ...

    def link(self, from_ref: ArtifactRef, to_ref: ArtifactRef, relation: str) -> None:
        raise CapabilityUnsupported(self.backend, LINK)

    def update_status(self, ref: ArtifactRef, status: str) -> None:
        raise CapabilityUnsupported(self.backend, UPDATE_STATUS)


class InMemoryStateAdapter(StateAdapter):
    """Process-local backend with full capabilities."""

    def __init__(self, backend: str = "memory") -> None:
        super().__init__(backend)
        self._lock = threading.Lock()
        self._records: dict[tuple[str, str], ArtifactRecord] = {}

    def _get(self, artifact_type: str, artifact_id: str) -> ArtifactRecord:
        try:
            return self._records[(artifact_type, artifact_id)]
        except KeyError:
            raise ArtifactNotFound(f"{self.backend}:{artifact_type}:{artifact_id} does not exist") from None

    def _own(self, ref: ArtifactRef) -> ArtifactRecord:
        if ref.backend != self.backend:
            raise AdapterFailure(f"{ref} does not belong to backend {self.backend}", retryable=False)
        return self._get(ref.artifact_type, ref.artifact_id)

    def read(self, artifact_type: str, artifact_id: str) -> Any:
        with self._lock:
            return self._get(artifact_type, artifact_id).content

    def write(self, artifact_type: str, artifact_id: str, content: Any) -> ArtifactRef:
        try:
            fingerprint = content_fingerprint(content)
        except (TypeError, ValueError) as exc:
            raise AdapterFailure(f"{self.backend} rejected {artifact_type}:{artifact_id}: {exc}", retryable=False) from exc
        with self._lock:
            existing = self._records.get((artifact_type, artifact_id))
            self._records[(artifact_type, artifact_id)] = ArtifactRecord(
                artifact_type=artifact_type,
                artifact_id=artifact_id,
                content=content,
                status=existing.status if existing else None,
                fingerprint=fingerprint,
                links=list(existing.links) if existing else [],
            )
        return self.ref(artifact_type, artifact_id)

    def list(self, artifact_type: str, query: ArtifactQuery | None = None) -> list[ArtifactRef]:
        with self._lock:
            records = [
                record
                for (record_type, _), record in self._records.items()
                if record_type == artifact_type and record.matches(query)
            ]
        return [self.ref(artifact_type, record.artifact_id) for record in sorted(records, key=lambda r: r.artifact_id)]

    def link(self, from_ref: ArtifactRef, to_ref: ArtifactRef, relation: str) -> None:
        with self._lock:
            record = self._own(from_ref)
            link = ArtifactLink(relation=relation, target=to_ref)
            if link not in record.links:
                record.links.append(link)

    def update_status(self, ref: ArtifactRef, status: str) -> None:
        with self._lock:
            self._own(ref).status = status

    def links(self, ref: ArtifactRef) -> list[ArtifactLink]:
        with self._lock:
            return list(self._own(ref).links)

    def status_of(self, ref: ArtifactRef) -> str | None:
        with self._lock:
            return self._own(ref).status


class FilesystemStateAdapter(StateAdapter):
    """One JSON record per artifact under ``<root>/<backend>/<type>/<id>/record.json``.

    Writes are atomic and every read-modify-write (status, links) happens under
    an ``fcntl`` lock on the record, so several engine processes may share the
    directory.
    """

    def __init__(self, root: Path, backend: str = "fs") -> None:
        super().__init__(backend)
        self.root = root / sanitize_component(backend)
        self.root.mkdir(parents=True, exist_ok=True)

    def _type_dir(self, artifact_type: str) -> Path:
        return self.root / sanitize_component(artifact_type)

    def _record_path(self, artifact_type: str, artifact_id: str) -> Path:
        # Sanitizing is lossy, so a digest of the raw id keeps distinct ids apart.
        digest = hashlib.sha256(artifact_id.encode("utf-8")).hexdigest()[:10]
        try:
            stem = sanitize_component(artifact_id)[:64]
        except ValueError:
            stem = "artifact"
        return self._type_dir(artifact_type) / f"{stem}-{digest}" / "record.json"

    def _load(self, path: Path, label: str) -> ArtifactRecord:
        try:
            text = safe_read_text(path, label)
        except FileNotFoundError:
            raise ArtifactNotFound(f"{label} does not exist") from None
        except (OSError, ValueError) as exc:
            raise AdapterFailure(f"cannot read {label}: {exc}") from exc
        try:
            return ArtifactRecord.model_validate_json(text)
        except ValidationError as exc:
            raise AdapterFailure(f"{label} at {path} failed validation: {exc}", retryable=False) from exc

    def _store(self, path: Path, record: ArtifactRecord) -> None:
        try:
            atomic_write_text(path, record.model_dump_json(indent=2))
        except OSError as exc:
            raise AdapterFailure(f"cannot write {path}: {exc}") from exc

    def _mutate_own(self, ref: ArtifactRef, mutate: Any) -> None:
        if ref.backend != self.backend:
            raise AdapterFailure(f"{ref} does not belong to backend {self.backend}", retryable=False)
        path = self._record_path(ref.artifact_type, ref.artifact_id)
        try:
            with locked_file(path):
                record = self._load(path, str(ref))
                mutate(record)
                self._store(path, record)
        except OSError as exc:
            raise AdapterFailure(f"cannot lock {path}: {exc}") from exc

    def read(self, artifact_type: str, artifact_id: str) -> Any:
        path = self._record_path(artifact_type, artifact_id)
        return self._load(path, f"{self.backend}:{artifact_type}:{artifact_id}").content

    def write(self, artifact_type: str, artifact_id: str, content: Any) -> ArtifactRef:
        try:
            fingerprint = content_fingerprint(content)
            json.dumps(content)
        except (TypeError, ValueError) as exc:
            raise AdapterFailure(f"{self.backend} rejected {artifact_type}:{artifact_id}: {exc}", retryable=False) from exc
        path = self._record_path(artifact_type, artifact_id)
        try:
            with locked_file(path):
                previous: ArtifactRecord | None = None
                if path.is_file():
                    previous = self._load(path, f"{self.backend}:{artifact_type}:{artifact_id}")
                self._store(
                    path,
                    ArtifactRecord(
                        artifact_type=artifact_type,
                        artifact_id=artifact_id,
                        content=content,
                        status=previous.status if previous else None,
                        fingerprint=fingerprint,
                        links=previous.links if previous else [],
                    ),
                )
        except OSError as exc:
            raise AdapterFailure(f"cannot lock {path}: {exc}") from exc
        return self.ref(artifact_type, artifact_id)

    def list(self, artifact_type: str, query: ArtifactQuery | None = None) -> list[ArtifactRef]:
        type_dir = self._type_dir(artifact_type)
        if not type_dir.is_dir():
            return []
        refs: list[ArtifactRef] = []
        for path in sorted(type_dir.glob("*/record.json")):
            record = self._load(path, str(path))
            if record.artifact_type == artifact_type and record.matches(query):
                refs.append(self.ref(artifact_type, record.artifact_id))
        return sorted(refs, key=lambda ref: ref.artifact_id)

    def link(self, from_ref: ArtifactRef, to_ref: ArtifactRef, relation: str) -> None:
        link = ArtifactLink(relation=relation, target=to_ref)

        def _add(record: ArtifactRecord) -> None:
            if link not in record.links:
                record.links.append(link)

        self._mutate_own(from_ref, _add)

    def update_status(self, ref: ArtifactRef, status: str) -> None:
        def _set(record: ArtifactRecord) -> None:
            record.status = status

        self._mutate_own(ref, _set)
