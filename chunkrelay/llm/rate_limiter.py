"""Request start pacing.

Responsibilities:
- Enforce a minimum interval between the starts of consecutive chunk requests.
- Keep pacing independent from the pool size so only start bursts are smoothed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from time import monotonic, sleep
from typing import Callable


@dataclass(slots=True)
class RateLimiter:
    """Per-key minimum-interval limiter used before each chunk request starts.

    `sleeper` may return early (for example when a cancellation event fires);
    callers check their own stop conditions after `acquire` returns.
    """

    min_interval_seconds: float = 0.0
    clock: Callable[[], float] = monotonic
    sleeper: Callable[[float], object] = sleep
    _next_allowed_at: dict[str, float] = field(default_factory=dict)

    def acquire(self, key: str) -> float:
        """Block until `key` is allowed to start; return the seconds waited."""

        if self.min_interval_seconds <= 0.0:
            return 0.0
        now = self.clock()
        waited = 0.0
        next_allowed = self._next_allowed_at.get(key)
        if next_allowed is not None and next_allowed > now:
            self.sleeper(next_allowed - now)
            later = self.clock()
            waited = later - now
            now = later
        self._next_allowed_at[key] = now + self.min_interval_seconds
        return waited
