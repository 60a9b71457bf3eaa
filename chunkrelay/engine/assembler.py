"""Ordered output assembly.

Responsibilities:
- Accept chunk outcomes in any arrival order.
- Write only the longest contiguous prefix, strictly in index order.
- Make each write durable before reporting the commit.
"""

from __future__ import annotations

import os
import threading
from typing import BinaryIO, Callable

from ..errors import EngineError
from ..models.datatypes import RequestOutcome
from ..text.normalizer import TextNormalizer

CommitHook = Callable[[RequestOutcome, int], None]


class OutputAssembler:
    """Single writer to the output sink.

    Out-of-order outcomes wait in a sparse index-keyed holding area until the
    cursor reaches them. `on_commit(outcome, sink_size)` runs synchronously
    after each durable write, under the same lock, so commits are reported in
    index order.
    """

    SEPARATOR = "\n\n"

    def __init__(
        self,
        sink: BinaryIO,
        *,
        next_index: int = 0,
        on_commit: CommitHook | None = None,
        normalizer: TextNormalizer | None = None,
    ) -> None:
        self._sink = sink
        self._next_index = next_index
        self._on_commit = on_commit
        self._normalizer = normalizer or TextNormalizer()
        self._pending: dict[int, RequestOutcome] = {}
        self._committed: list[RequestOutcome] = []
        self._lock = threading.Lock()

    @property
    def next_index(self) -> int:
        return self._next_index

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def committed(self) -> list[RequestOutcome]:
        """Outcomes written by this assembler, in index order."""

        with self._lock:
            return list(self._committed)

    def submit(self, outcome: RequestOutcome) -> int:
        """Accept one outcome and flush whatever became contiguous.

        Returns:
            Number of outcomes written by this call.

        Raises:
            EngineError: If the index was already submitted or committed.
        """

        with self._lock:
            if outcome.index < self._next_index or outcome.index in self._pending:
                raise EngineError(
                    stage="assemble",
                    kind="duplicate_outcome",
                    detail=f"Chunk {outcome.index} was already submitted.",
                )
            self._pending[outcome.index] = outcome
            written = 0
            while self._next_index in self._pending:
                ready = self._pending.pop(self._next_index)
                size = self._write(ready)
                self._committed.append(ready)
                self._next_index += 1
                written += 1
                if self._on_commit is not None:
                    self._on_commit(ready, size)
            return written

    def _write(self, outcome: RequestOutcome) -> int:
        """Append one chunk and fsync; return the sink size afterwards."""

        text = self._normalizer.normalize(outcome.text).strip()
        self._sink.write(f"{text}{self.SEPARATOR}".encode("utf-8"))
        self._sink.flush()
        os.fsync(self._sink.fileno())
        return self._sink.tell()
