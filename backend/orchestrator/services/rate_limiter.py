"""In-memory throttling of authentication attempts."""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional


class LoginThrottle:
    """
    Sliding-window attempt counter keyed by client and username.

    Each attempt is stored as the moment it stops counting. Keys whose
    attempts have all expired are dropped, so usernames that are tried once
    do not accumulate. Per-process state; each replica throttles on its own.
    """

    def __init__(
        self,
        clock: Optional[Callable[[], float]] = None,
        max_keys: int = 10000,
        sweep_interval_seconds: float = 60.0,
    ) -> None:
        self._lock = threading.Lock()
        self._attempts: Dict[str, Deque[float]] = {}
        self._clock = clock or time.monotonic
        self._max_keys = max_keys
        self._sweep_interval = sweep_interval_seconds
        self._last_sweep = self._clock()

    @staticmethod
    def key(scope: str, client: Optional[str], username: Optional[str] = None) -> str:
        parts = [scope, client or "unknown"]
        if username:
            parts.append(username.strip().lower())
        return ":".join(parts)

    def _live(self, key: str, now: float) -> Optional[Deque[float]]:
        expiries = self._attempts.get(key)
        if expiries is None:
            return None
        while expiries and expiries[0] <= now:
            expiries.popleft()
        if not expiries:
            del self._attempts[key]
            return None
        return expiries

    def _sweep(self, now: float) -> None:
        stale = [key for key, expiries in self._attempts.items() if expiries[-1] <= now]
        for key in stale:
            del self._attempts[key]
        self._last_sweep = now

    def hit(self, key: str, limit: int, window_seconds: int) -> bool:
        """Record an attempt; False when the key is over its limit"""
        with self._lock:
            now = self._clock()
            if len(self._attempts) >= self._max_keys or now - self._last_sweep >= self._sweep_interval:
                self._sweep(now)

            expiries = self._live(key, now)
            if expiries is None:
                expiries = self._attempts[key] = deque()
            elif len(expiries) >= limit:
                return False
            expiries.append(now + window_seconds)
            return True

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._attempts)

    def reset(self, key: str) -> None:
        """Forget a key, e.g. after a successful login"""
        with self._lock:
            self._attempts.pop(key, None)


login_throttle = LoginThrottle()
