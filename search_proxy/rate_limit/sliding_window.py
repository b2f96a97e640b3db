"""In-memory sliding window rate limiter keyed by client identity."""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional

logger = logging.getLogger("uvicorn.error")


def _now_ms() -> float:
    return time.time() * 1000


class SlidingWindowRateLimiter:
    """
    Tracks request timestamps (milliseconds since epoch) per identity.

    Every check is recorded, admitted or not, so a client that keeps sending
    while over budget stays rejected until it backs off for a full window.
    Identities whose whole window has expired are swept at most once per
    window so the mapping does not grow for the lifetime of the process.
    """

    def __init__(
        self,
        max_requests: int = 60,
        window_ms: float = 60_000,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._max = max_requests
        self._window = window_ms
        self._clock = clock or _now_ms
        self._lock = threading.Lock()
        self._requests: Dict[str, List[float]] = {}
        self._last_sweep = self._clock()

    @property
    def max_requests(self) -> int:
        return self._max

    @property
    def window_ms(self) -> float:
        return self._window

    @property
    def tracked_identities(self) -> int:
        with self._lock:
            return len(self._requests)

    def check(self, identity: str) -> bool:
        """Record a request for identity and return True if it is within budget."""
        now = self._clock()
        with self._lock:
            window = [ts for ts in self._requests.get(identity, []) if now - ts < self._window]
            window.append(now)
            self._requests[identity] = window
            if now - self._last_sweep >= self._window:
                self._sweep_locked(now)
            return len(window) <= self._max

    def sweep(self) -> int:
        """Evict identities with no request inside the window. Returns the number evicted."""
        now = self._clock()
        with self._lock:
            return self._sweep_locked(now)

    def _sweep_locked(self, now: float) -> int:
        stale = [
            identity
            for identity, window in self._requests.items()
            if not window or now - window[-1] >= self._window
        ]
        for identity in stale:
            del self._requests[identity]
        self._last_sweep = now
        if stale:
            logger.debug(f"[RateLimit] Evicted {len(stale)} idle identities")
        return len(stale)
