"""Unit tests for resumable progress persistence and locking."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from chunkrelay.engine.progress import (
    ProgressStore,
    compute_fingerprint,
    source_key,
    source_key_for_file,
)
from chunkrelay.errors import ConfigurationError
from chunkrelay.models.datatypes import ProgressState


def _state(key: str = "k1", **overrides: object) -> ProgressState:
    values: dict[str, object] = {
        "source_key": key,
        "file_name": f"/out/{key}.txt",
        "last_index": 2,
        "fingerprint": "fp",
        "output_bytes": 120,
        "total_chunks": 6,
        "config": {"model": "m1", "mode": "translate"},
    }
    values.update(overrides)
    return ProgressState(**values)  # type: ignore[arg-type]


def test_save_and_load_roundtrip_without_temp_leftovers(tmp_path: Path) -> None:
    """Saved records should reload unchanged and use the documented JSON field names."""

    store = ProgressStore(tmp_path / "state")
    state = _state()

    path = store.save(state)

    assert store.load("k1") == state
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["fileName"] == "/out/k1.txt"
    assert payload["lastIndex"] == 2
    assert payload["model"] == "m1"
    assert list((tmp_path / "state").glob("*.tmp")) == []


def test_load_missing_record_returns_none(tmp_path: Path) -> None:
    assert ProgressStore(tmp_path).load("absent") is None


@pytest.mark.parametrize(
    "content",
    [
        "{not json",
        "[]",
        '{"fileName": "x"}',
        '{"fileName": "x", "lastIndex": "2", "fingerprint": "f", "sourceKey": "k"}',
    ],
)
def test_corrupt_record_raises_configuration_error(tmp_path: Path, content: str) -> None:
    store = ProgressStore(tmp_path)
    store.path_for("bad").write_text(content, encoding="utf-8")

    with pytest.raises(ConfigurationError) as exc_info:
        store.load("bad")

    assert exc_info.value.kind == "corrupt_progress"


def test_list_entries_sorts_by_file_name_and_skips_corrupt_records(tmp_path: Path) -> None:
    store = ProgressStore(tmp_path)
    store.save(_state("k2", file_name="/out/b.txt"))
    store.save(_state("k1", file_name="/out/a.txt"))
    store.path_for("broken").write_text("{", encoding="utf-8")

    entries = store.list_entries()

    assert [entry.file_name for entry in entries] == ["/out/a.txt", "/out/b.txt"]


def test_remove_and_remove_all(tmp_path: Path) -> None:
    store = ProgressStore(tmp_path)
    store.save(_state("k1"))
    store.save(_state("k2"))

    assert store.remove("k1") is True
    assert store.remove("k1") is False
    assert store.remove_all() == 1
    assert store.list_entries() == []
    assert ProgressStore(tmp_path / "missing").remove_all() == 0


def test_lock_is_exclusive_and_released_on_exit(tmp_path: Path) -> None:
    """A second holder should fail with `job_locked` until the first one exits."""

    store = ProgressStore(tmp_path)

    with store.lock("k1") as lock_path:
        assert store.is_locked("k1")
        assert lock_path.exists()
        with pytest.raises(ConfigurationError) as exc_info:
            with store.lock("k1"):
                pass
        assert exc_info.value.kind == "job_locked"

    assert not store.is_locked("k1")
    with store.lock("k1"):
        pass


def test_lock_is_released_when_body_raises(tmp_path: Path) -> None:
    store = ProgressStore(tmp_path)

    with pytest.raises(RuntimeError):
        with store.lock("k1"):
            raise RuntimeError("job failed")

    assert not store.is_locked("k1")


def test_break_lock_removes_stale_lock(tmp_path: Path) -> None:
    store = ProgressStore(tmp_path)
    store.lock_path_for("k1").write_text("12345", encoding="ascii")

    assert store.break_lock("k1") is True
    assert store.break_lock("k1") is False
    assert not store.is_locked("k1")


def test_source_key_for_file_matches_normalized_text(tmp_path: Path) -> None:
    """CRLF and LF variants of the same text share one progress identity."""

    crlf = tmp_path / "crlf.txt"
    crlf.write_bytes(b"line one\r\nline two\r\n")

    assert source_key_for_file(crlf) == source_key("line one\nline two\n")
    assert len(source_key("x")) == 32


def test_fingerprint_ignores_key_order() -> None:
    assert compute_fingerprint({"a": 1, "b": [1, 2]}) == compute_fingerprint(
        {"b": [1, 2], "a": 1}
    )
    assert compute_fingerprint({"a": 1}) != compute_fingerprint({"a": 2})


def test_progress_state_completion_and_advance() -> None:
    state = _state(last_index=4, total_chunks=6)

    advanced = state.advanced(last_index=5, output_bytes=300)

    assert state.is_complete is False
    assert advanced.is_complete is True
    assert advanced.output_bytes == 300
    assert advanced.fingerprint == state.fingerprint
