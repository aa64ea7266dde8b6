from __future__ import annotations

import math
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Callable, Protocol

from anon_identity.settings import get_settings


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime
    retry_after_seconds: int | None = None
    reserved_at: datetime | None = None


class RateLimiter(Protocol):
    def check(self, key: str) -> RateLimitDecision: ...

    def record_failure(self, key: str) -> None: ...

    def hit(self, key: str) -> RateLimitDecision: ...

    def release(self, key: str, reserved_at: datetime | None) -> None: ...

    def reset(self, key: str) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryRateLimiter:
    """Sliding-window failure counter per key.

    Counters live in this process only; horizontally scaled instances each
    enforce their own window.
    """

    def __init__(
        self,
        *,
        max_failures: int,
        window: timedelta,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if max_failures < 1:
            raise ValueError("max_failures must be at least 1")
        if window <= timedelta(0):
            raise ValueError("window must be positive")
        self.max_failures = max_failures
        self.window = window
        self._clock = clock
        self._lock = threading.Lock()
        self._failures: dict[str, deque[datetime]] = {}

    def _cleanup(self, key: str, now: datetime) -> deque[datetime]:
        queue = self._failures.get(key)
        if queue is None:
            return deque()
        threshold = now - self.window
        while queue and queue[0] <= threshold:
            queue.popleft()
        if not queue:
            self._failures.pop(key, None)
        return queue

    def _decision(self, queue: deque[datetime], now: datetime) -> RateLimitDecision:
        reset_at = queue[0] + self.window if queue else now + self.window
        remaining = max(0, self.max_failures - len(queue))
        if len(queue) < self.max_failures:
            return RateLimitDecision(
                allowed=True,
                limit=self.max_failures,
                remaining=remaining,
                reset_at=reset_at,
            )
        retry_after = max(1, math.ceil((reset_at - now).total_seconds()))
        return RateLimitDecision(
            allowed=False,
            limit=self.max_failures,
            remaining=0,
            reset_at=reset_at,
            retry_after_seconds=retry_after,
        )

    def check(self, key: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            queue = self._cleanup(key, now)
            return self._decision(queue, now)

    def record_failure(self, key: str) -> None:
        now = self._clock()
        with self._lock:
            self._cleanup(key, now)
            self._failures.setdefault(key, deque()).append(now)

    def hit(self, key: str) -> RateLimitDecision:
        """Check and count one attempt under a single lock acquisition.

        The counted entry is returned as `reserved_at` so callers that only
        want failures counted can `release` it once the attempt succeeds.
        """
        now = self._clock()
        with self._lock:
            queue = self._cleanup(key, now)
            decision = self._decision(queue, now)
            if not decision.allowed:
                return decision
            queue = self._failures.setdefault(key, deque())
            queue.append(now)
            return RateLimitDecision(
                allowed=True,
                limit=self.max_failures,
                remaining=max(0, self.max_failures - len(queue)),
                reset_at=queue[0] + self.window,
                reserved_at=now,
            )

    def release(self, key: str, reserved_at: datetime | None) -> None:
        if reserved_at is None:
            return
        with self._lock:
            queue = self._failures.get(key)
            if not queue:
                return
            try:
                queue.remove(reserved_at)
            except ValueError:
                # Already pruned by the window.
                return
            if not queue:
                self._failures.pop(key, None)

    def reset(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)


@lru_cache
def get_restore_rate_limiter() -> InMemoryRateLimiter:
    settings = get_settings()
    return InMemoryRateLimiter(
        max_failures=max(1, int(settings.restore_rate_limit_max_failures)),
        window=timedelta(seconds=max(1, int(settings.restore_rate_limit_window_seconds))),
    )


@lru_cache
def get_rotation_rate_limiter() -> InMemoryRateLimiter:
    settings = get_settings()
    return InMemoryRateLimiter(
        max_failures=max(1, int(settings.rotation_rate_limit_max_attempts)),
        window=timedelta(seconds=max(1, int(settings.rotation_rate_limit_window_seconds))),
    )
