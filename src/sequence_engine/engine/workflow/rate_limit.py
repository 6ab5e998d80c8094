"""Per-tenant sliding-window dispatch limiter.

Shared by all sweep workers in the process so that together they respect each
tenant's external channel quota.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_at: datetime | None = None


class TenantRateLimiter:
    def __init__(self, *, max_per_window: int, window_seconds: float) -> None:
        if max_per_window < 1:
            raise ValueError("max_per_window must be >= 1")
        self._max = max_per_window
        self._window = timedelta(seconds=window_seconds)
        self._sent: dict[str, deque[datetime]] = {}
        self._lock = threading.Lock()

    def try_acquire(self, tenant_id: str, now: datetime) -> RateLimitDecision:
        """Consume one slot for the tenant if the window has room."""

        with self._lock:
            window = self._sent.setdefault(tenant_id, deque())
            cutoff = now - self._window
            while window and window[0] <= cutoff:
                window.popleft()
            if len(window) >= self._max:
                return RateLimitDecision(
                    allowed=False, remaining=0, retry_at=window[0] + self._window
                )
            window.append(now)
            return RateLimitDecision(allowed=True, remaining=self._max - len(window))

    def release(self, tenant_id: str, acquired_at: datetime) -> None:
        """Return a slot that was acquired but not used (e.g. the claim was lost)."""

        with self._lock:
            window = self._sent.get(tenant_id)
            if window and acquired_at in window:
                window.remove(acquired_at)
