"""Shared pytest fixtures for the full chunkrelay test suite."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from loguru import logger


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[None]:
    """Keep host endpoint settings and progress directories out of every test."""

    for key in ("CHUNKRELAY_URL", "CHUNKRELAY_MODEL", "CHUNKRELAY_API_KEY"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("CHUNKRELAY_STATE_DIR", str(tmp_path / "state"))
    yield
    logger.remove()


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    """Return the per-test progress directory also exported via `CHUNKRELAY_STATE_DIR`."""

    return tmp_path / "state"
