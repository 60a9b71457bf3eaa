"""Bounded concurrent chunk dispatch.

Responsibilities:
- Keep at most `concurrency` chunk exchanges in flight (semaphore backpressure).
- Admit chunks in source order, pacing the start of each request.
- Hand every completion to the `OutputAssembler` as soon as it arrives.
- Stop admitting work on the first failure or on cancellation, then drain.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import threading
from typing import Callable, Sequence

from ..errors import ConfigurationError, JobCancelledError
from ..llm.rate_limiter import RateLimiter
from ..models.datatypes import ChunkJob, RequestOutcome
from ..telemetry.logger import RunLogger
from .assembler import OutputAssembler
from .cancellation import CancellationController

ExecuteChunk = Callable[[ChunkJob], RequestOutcome]

_PACING_KEY = "chunk-start"


class Scheduler:
    """Feed chunk jobs to a bounded worker pool."""

    def __init__(
        self,
        *,
        execute_chunk: ExecuteChunk,
        assembler: OutputAssembler,
        cancellation: CancellationController,
        run_logger: RunLogger | None = None,
        poll_interval_seconds: float = 0.1,
    ) -> None:
        self._execute_chunk = execute_chunk
        self._assembler = assembler
        self._cancellation = cancellation
        self._logger = run_logger
        self._poll_interval_seconds = poll_interval_seconds
        self._failure_lock = threading.Lock()
        self._failure: BaseException | None = None
        self._stop = threading.Event()

    def run(
        self,
        jobs: Sequence[ChunkJob],
        concurrency: int,
        inter_request_delay: float = 0.0,
    ) -> list[RequestOutcome]:
        """Process jobs and return the outcomes committed during this run, in order.

        Raises:
            ConfigurationError: If `concurrency` is not positive.
            ChunkFailedError: The first chunk that exhausted its retries, raised
                after in-flight chunks finished and committed.
        """

        if concurrency < 1:
            raise ConfigurationError(
                stage="schedule",
                detail=f"Concurrency must be at least 1, got {concurrency}.",
            )
        self._failure = None
        self._stop.clear()
        already_committed = len(self._assembler.committed)
        pacer = RateLimiter(
            min_interval_seconds=inter_request_delay,
            sleeper=self._cancellation.wait_requested,
        )
        slots = threading.BoundedSemaphore(concurrency)

        with ThreadPoolExecutor(
            max_workers=concurrency, thread_name_prefix="chunkrelay-worker"
        ) as pool:
            for job in jobs:
                if not self._acquire_slot(slots):
                    break
                pacer.acquire(_PACING_KEY)
                if self._should_stop():
                    slots.release()
                    break
                pool.submit(self._run_one, job, slots)

        if self._failure is not None:
            raise self._failure
        return self._assembler.committed[already_committed:]

    def _run_one(self, job: ChunkJob, slots: threading.BoundedSemaphore) -> None:
        try:
            outcome = self._execute_chunk(job)
            if self._cancellation.is_forceful:
                return
            self._assembler.submit(outcome)
            if self._logger is not None:
                self._logger.log_commit(job.index, attempts=outcome.attempts)
        except JobCancelledError:
            if self._logger is not None:
                self._logger.log_warning("request", "aborted", chunk=job.index)
        except BaseException as exc:
            with self._failure_lock:
                if self._failure is None:
                    self._failure = exc
            self._stop.set()
        finally:
            slots.release()

    def _acquire_slot(self, slots: threading.BoundedSemaphore) -> bool:
        """Wait for a free slot while watching stop conditions."""

        while not slots.acquire(timeout=self._poll_interval_seconds):
            if self._should_stop():
                return False
        if self._should_stop():
            slots.release()
            return False
        return True

    def _should_stop(self) -> bool:
        return self._stop.is_set() or self._cancellation.is_requested
