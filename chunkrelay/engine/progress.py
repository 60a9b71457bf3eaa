"""Resumable progress persistence.

Responsibilities:
- Persist one `ProgressState` per source text in the state directory.
- Guard each source with an exclusive lock file so two runs cannot race.
- Compute configuration fingerprints used to refuse incompatible resumes.
"""

from __future__ import annotations

from contextlib import contextmanager
from hashlib import sha256
import json
import os
from pathlib import Path
from typing import Any, Iterator, Mapping

from ..errors import ConfigurationError
from ..models.datatypes import ProgressState
from ..text.normalizer import TextNormalizer
from ..telemetry.logger import RunLogger

_STATE_SUFFIX = ".json"
_LOCK_SUFFIX = ".lock"


def compute_fingerprint(fields: Mapping[str, Any]) -> str:
    """Hash determinism-relevant configuration fields as canonical JSON."""

    canonical = json.dumps(dict(fields), sort_keys=True, separators=(",", ":"))
    return sha256(canonical.encode("utf-8")).hexdigest()


def source_key(text: str) -> str:
    """Return the progress identity of a normalized source text."""

    return sha256(text.encode("utf-8")).hexdigest()[:32]


def source_key_for_file(path: Path) -> str:
    """Return the progress identity of a UTF-8 source file."""

    return source_key(TextNormalizer().normalize(path.read_text(encoding="utf-8")))


class ProgressStore:
    """Filesystem-backed progress records keyed by source hash."""

    def __init__(self, state_dir: Path, run_logger: RunLogger | None = None) -> None:
        self.state_dir = state_dir
        self._logger = run_logger

    def path_for(self, key: str) -> Path:
        return self.state_dir / f"{key}{_STATE_SUFFIX}"

    def lock_path_for(self, key: str) -> Path:
        return self.state_dir / f"{key}{_LOCK_SUFFIX}"

    def load(self, key: str) -> ProgressState | None:
        """Load the record for a source key, or `None` when absent.

        Raises:
            ConfigurationError: If the record exists but cannot be parsed.
        """

        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("progress record must be a JSON object")
            return ProgressState.from_json_payload(payload)
        except (OSError, UnicodeDecodeError, ValueError) as exc:
            raise ConfigurationError(
                stage="progress",
                kind="corrupt_progress",
                detail=f"Progress file `{path}` is unreadable: {exc}",
                hint=(
                    "Inspect the file or discard it with "
                    "`chunkrelay progress rm <source> --force`."
                ),
            ) from exc

    def save(self, state: ProgressState) -> Path:
        """Atomically write a record (temp file, fsync, rename)."""

        path = self.path_for(state.source_key)
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_name(f"{path.name}.tmp")
        encoded = json.dumps(
            state.to_json_payload(), ensure_ascii=False, indent=2, sort_keys=True
        )
        with temp_path.open("w", encoding="utf-8") as handle:
            handle.write(encoded)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
        return path

    def remove(self, key: str) -> bool:
        """Delete the record for a key; return whether one existed."""

        path = self.path_for(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def list_entries(self) -> list[ProgressState]:
        """Return all readable records sorted by target file name."""

        if not self.state_dir.is_dir():
            return []
        entries: list[ProgressState] = []
        for path in sorted(self.state_dir.glob(f"*{_STATE_SUFFIX}")):
            try:
                entry = self.load(path.name[: -len(_STATE_SUFFIX)])
            except ConfigurationError:
                if self._logger is not None:
                    self._logger.log_warning("progress", "skip_corrupt", path=path.name)
                continue
            if entry is not None:
                entries.append(entry)
        return sorted(entries, key=lambda entry: entry.file_name)

    def remove_all(self) -> int:
        """Delete every record; return the number removed."""

        if not self.state_dir.is_dir():
            return 0
        removed = 0
        for path in self.state_dir.glob(f"*{_STATE_SUFFIX}"):
            path.unlink()
            removed += 1
        return removed

    def is_locked(self, key: str) -> bool:
        return self.lock_path_for(key).exists()

    def break_lock(self, key: str) -> bool:
        """Delete a lock left behind by a crashed run; return whether one existed."""

        try:
            self.lock_path_for(key).unlink()
        except FileNotFoundError:
            return False
        return True

    @contextmanager
    def lock(self, key: str) -> Iterator[Path]:
        """Hold the exclusive lock for a source key for the duration of a run.

        Raises:
            ConfigurationError: If another run already holds the lock.
        """

        lock_path = self.lock_path_for(key)
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            descriptor = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as exc:
            raise ConfigurationError(
                stage="progress",
                kind="job_locked",
                detail="Another run is already processing this source.",
                hint=f"If no other run is active, delete the stale lock `{lock_path}`.",
            ) from exc
        try:
            os.write(descriptor, str(os.getpid()).encode("ascii"))
            yield lock_path
        finally:
            os.close(descriptor)
            lock_path.unlink(missing_ok=True)
