from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from phaseloop import (
    AdapterFailure,
    ArtifactNotFound,
    ArtifactQuery,
    ArtifactRef,
    EngineSnapshot,
    EngineStateStore,
    FilesystemStateAdapter,
    HistoryEntry,
    LoopInstance,
    PhaseStatus,
    ResultOrigin,
)
from phaseloop.backends import LINK, UPDATE_STATUS
from phaseloop.canonical import content_fingerprint, to_canonical_json


def _snapshot(instance: LoopInstance) -> EngineSnapshot:
    return EngineSnapshot(
        engine_id="ENGINE-1",
        config_version="3",
        root_id=instance.instance_id,
        instances={instance.instance_id: instance},
        updated_at=datetime(2026, 2, 1, 8, 30, tzinfo=UTC),
    )


def test_snapshot_round_trip(tmp_path: Path) -> None:
    store = EngineStateStore(tmp_path, engine_id="ENGINE-1")
    instance = LoopInstance(level="planning", phase="plan", iteration=3)
    instance.context.append(
        HistoryEntry(phase="plan", iteration=2, status=PhaseStatus.NEEDS_MORE, origin=ResultOrigin.STRATEGY)
    )
    assert not store.has_snapshot()

    store.write_snapshot(_snapshot(instance))
    loaded = store.read_snapshot()

    assert store.has_snapshot()
    assert loaded.model_dump() == _snapshot(instance).model_dump()
    assert loaded.instances[instance.instance_id].context[0].status == PhaseStatus.NEEDS_MORE


def test_missing_snapshot_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        EngineStateStore(tmp_path, engine_id="ENGINE-1").read_snapshot()


@pytest.mark.parametrize("text", ["", "   \n", "{not json", '{"engine_id": "ENGINE-1"}'])
def test_corrupt_snapshot_raises_value_error(tmp_path: Path, text: str) -> None:
    store = EngineStateStore(tmp_path, engine_id="ENGINE-1")
    store.snapshot_path.write_text(text, encoding="utf-8")
    with pytest.raises(ValueError):
        store.read_snapshot()


def test_engine_id_is_sanitized_into_one_directory(tmp_path: Path) -> None:
    store = EngineStateStore(tmp_path, engine_id="team/alpha engine")
    assert store.root == tmp_path / "engines" / "team-alpha-engine"
    assert store.root.is_dir()


def test_events_are_appended_and_filtered(tmp_path: Path) -> None:
    store = EngineStateStore(tmp_path, engine_id="ENGINE-1")
    assert store.read_events() == []
    store.append_event({"event": "created", "instance_id": "LI-a"})
    store.append_event({"event": "forked", "instance_id": "LI-a", "child_ids": ["LI-b"]})
    store.append_event({"event": "created", "instance_id": "LI-b"})

    assert [event["event"] for event in store.read_events()] == ["created", "forked", "created"]
    own = store.read_events(instance_id="LI-a")
    assert [event["event"] for event in own] == ["created", "forked"]
    assert own[1]["child_ids"] == ["LI-b"]
    assert "at" in own[0]


# ---------------------------------------------------------------------------
# Filesystem adapter
# ---------------------------------------------------------------------------


def test_filesystem_adapter_round_trip(tmp_path: Path) -> None:
    adapter = FilesystemStateAdapter(tmp_path, backend="files")
    ref = adapter.write("story", "S-1", {"title": "Login", "points": 3})

    assert ref == ArtifactRef(backend="files", artifact_type="story", artifact_id="S-1")
    assert adapter.read("story", "S-1") == {"title": "Login", "points": 3}
    assert adapter.list("story") == [ref]
    assert adapter.list("design_doc") == []
    assert adapter.supports(LINK) and adapter.supports(UPDATE_STATUS)
    with pytest.raises(ArtifactNotFound):
        adapter.read("story", "S-2")


def test_filesystem_adapter_status_and_links_survive_rewrites(tmp_path: Path) -> None:
    adapter = FilesystemStateAdapter(tmp_path, backend="files")
    story = adapter.write("story", "S-1", "v1")
    other = adapter.write("story", "S-2", "other")
    target = ArtifactRef(backend="tracker", artifact_type="epic", artifact_id="E-7")

    adapter.update_status(story, "in_progress")
    adapter.link(story, target, "part_of")
    adapter.link(story, target, "part_of")
    adapter.write("story", "S-1", "v2")

    assert adapter.read("story", "S-1") == "v2"
    assert adapter.list("story", ArtifactQuery(status="in_progress")) == [story]
    assert adapter.list("story", ArtifactQuery(relation="part_of", linked_to=target)) == [story]
    assert other not in adapter.list("story", ArtifactQuery(relation="part_of"))


def test_filesystem_adapter_keeps_awkward_ids_apart(tmp_path: Path) -> None:
    adapter = FilesystemStateAdapter(tmp_path, backend="files")
    adapter.write("story", "epic/12", "slash")
    adapter.write("story", "epic-12", "dash")
    adapter.write("story", "///", "only separators")

    assert adapter.read("story", "epic/12") == "slash"
    assert adapter.read("story", "epic-12") == "dash"
    assert adapter.read("story", "///") == "only separators"
    assert [ref.artifact_id for ref in adapter.list("story")] == ["///", "epic-12", "epic/12"]


def test_filesystem_adapter_rejects_foreign_refs_and_bad_content(tmp_path: Path) -> None:
    adapter = FilesystemStateAdapter(tmp_path, backend="files")
    foreign = ArtifactRef(backend="tracker", artifact_type="story", artifact_id="S-1")
    with pytest.raises(AdapterFailure) as excinfo:
        adapter.update_status(foreign, "done")
    assert excinfo.value.retryable is False

    with pytest.raises(AdapterFailure):
        adapter.write("story", "S-1", {"bad": object()})


def test_filesystem_adapter_reports_corrupt_records(tmp_path: Path) -> None:
    adapter = FilesystemStateAdapter(tmp_path, backend="files")
    adapter.write("story", "S-1", "fine")
    record = next((tmp_path / "files" / "story").glob("*/record.json"))
    record.write_text('{"artifact_type": "story"}', encoding="utf-8")

    with pytest.raises(AdapterFailure) as excinfo:
        adapter.read("story", "S-1")
    assert excinfo.value.retryable is False


# ---------------------------------------------------------------------------
# Canonical content
# ---------------------------------------------------------------------------


def test_canonical_json_is_order_independent() -> None:
    assert to_canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'
    assert content_fingerprint({"b": 1, "a": 2}) == content_fingerprint({"a": 2, "b": 1})
    assert content_fingerprint((1, 2)) == content_fingerprint([1, 2])
    assert content_fingerprint({"x", "y"}) == content_fingerprint({"y", "x"})
    assert content_fingerprint({"a": 1}) != content_fingerprint({"a": 2})


def test_canonical_json_reduces_rich_values() -> None:
    ref = ArtifactRef(backend="docs", artifact_type="design_doc", artifact_id="D-1")
    when = datetime(2026, 2, 1, 8, 30, tzinfo=UTC)
    assert to_canonical_json({"ref": ref, "at": when, "status": PhaseStatus.DONE}) == (
        '{"at":"2026-02-01T08:30:00+00:00",'
        '"ref":{"artifact_id":"D-1","artifact_type":"design_doc","backend":"docs"},'
        '"status":"done"}'
    )
    with pytest.raises(TypeError):
        to_canonical_json({"handle": object()})
