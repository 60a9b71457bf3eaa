"""Cooperative job cancellation.

Responsibilities:
- Hold the job's tri-state `TerminationState` and only move it forward.
- Offer interruptible waits so pacing and retry delays end early on cancel.
- Run registered abort hooks (closing live responses) on forceful escalation.
"""

from __future__ import annotations

import threading
from typing import Callable

from ..models.datatypes import TerminationState
from ..telemetry.logger import RunLogger

AbortHook = Callable[[], None]

_ORDER = (TerminationState.NONE, TerminationState.REQUESTED, TerminationState.FORCEFUL)


class CancellationController:
    """Tri-state cancellation flag shared by the scheduler and executors."""

    def __init__(self, run_logger: RunLogger | None = None) -> None:
        self._lock = threading.Lock()
        self._state = TerminationState.NONE
        self._requested = threading.Event()
        self._forceful = threading.Event()
        self._abort_hooks: dict[int, AbortHook] = {}
        self._next_handle = 0
        self._logger = run_logger

    @property
    def state(self) -> TerminationState:
        return self._state

    @property
    def is_requested(self) -> bool:
        """Return whether any cancellation level has been reached."""

        return self._requested.is_set()

    @property
    def is_forceful(self) -> bool:
        return self._forceful.is_set()

    def cancel(self) -> TerminationState:
        """Escalate one step: none -> requested -> forceful."""

        with self._lock:
            position = _ORDER.index(self._state)
            target = _ORDER[min(position + 1, len(_ORDER) - 1)]
        return self._advance(target)

    def request(self) -> TerminationState:
        return self._advance(TerminationState.REQUESTED)

    def force(self) -> TerminationState:
        return self._advance(TerminationState.FORCEFUL)

    def _advance(self, target: TerminationState) -> TerminationState:
        hooks: list[AbortHook] = []
        with self._lock:
            if _ORDER.index(target) <= _ORDER.index(self._state):
                return self._state
            self._state = target
            self._requested.set()
            if target is TerminationState.FORCEFUL:
                self._forceful.set()
                hooks = list(self._abort_hooks.values())
        if self._logger is not None:
            self._logger.log_cancellation(target.value)
        for hook in hooks:
            self._run_hook(hook)
        return target

    def register_abort(self, hook: AbortHook) -> int:
        """Register a hook run on forceful cancellation; runs at once if already forceful."""

        with self._lock:
            handle = self._next_handle
            self._next_handle += 1
            self._abort_hooks[handle] = hook
            already_forceful = self._state is TerminationState.FORCEFUL
        if already_forceful:
            self._run_hook(hook)
        return handle

    def unregister_abort(self, handle: int) -> None:
        with self._lock:
            self._abort_hooks.pop(handle, None)

    def wait_forceful(self, seconds: float) -> bool:
        """Sleep up to `seconds`; return `True` early when forcefully cancelled."""

        if seconds <= 0:
            return self.is_forceful
        return self._forceful.wait(seconds)

    def wait_requested(self, seconds: float) -> bool:
        """Sleep up to `seconds`; return `True` early when any cancellation arrives."""

        if seconds <= 0:
            return self.is_requested
        return self._requested.wait(seconds)

    def _run_hook(self, hook: AbortHook) -> None:
        try:
            hook()
        except Exception as exc:
            if self._logger is not None:
                self._logger.log_warning(
                    "cancel", "abort_hook_failed", error_type=type(exc).__name__
                )
