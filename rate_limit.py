import math
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from pydantic import BaseModel

SWEEP_INTERVAL_SECONDS = 60


class RateLimitResult(BaseModel):
    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0
    reset_at: float


class _Window:
    __slots__ = ("count", "reset_at")

    def __init__(self, count: int, reset_at: float):
        self.count = count
        self.reset_at = reset_at


class RateLimiter:
    """Fixed-window request counter keyed by caller identity.

    State lives in this process only; separate server processes count separately.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()
        self._next_sweep = clock() + SWEEP_INTERVAL_SECONDS

    def check(self, key: str) -> RateLimitResult:
        now = self.clock()
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)

            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                window = _Window(count=1, reset_at=now + self.window_seconds)
                self._windows[key] = window
                return self._result(True, window)

            if window.count >= self.max_requests:
                return self._result(False, window, retry_after=math.ceil(window.reset_at - now))

            window.count += 1
            return self._result(True, window)

    def _result(self, allowed: bool, window: _Window, retry_after: int = 0) -> RateLimitResult:
        return RateLimitResult(
            allowed=allowed,
            limit=self.max_requests,
            remaining=max(self.max_requests - window.count, 0),
            retry_after=retry_after,
            reset_at=window.reset_at,
        )

    def _sweep(self, now: float) -> None:
        for key in [k for k, w in self._windows.items() if w.reset_at <= now]:
            del self._windows[key]
        self._next_sweep = now + SWEEP_INTERVAL_SECONDS

    def sweep(self) -> None:
        with self._lock:
            self._sweep(self.clock())

    def __len__(self) -> int:
        return len(self._windows)

    def reset_time(self, result: RateLimitResult) -> datetime:
        """Wall-clock time at which the window of ``result`` ends."""
        return datetime.now(timezone.utc) + timedelta(seconds=max(result.reset_at - self.clock(), 0))


def client_key(user_id: Optional[str], forwarded_for: Optional[str], client_host: Optional[str]) -> str:
    if user_id:
        return user_id
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return client_host or "unknown"
