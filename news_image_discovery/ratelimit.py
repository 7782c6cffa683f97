from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from .errors import DeadlineExceeded
from .utils import extract_host

log = logging.getLogger(__name__)


@dataclass
class _Bucket:
    tokens: float
    updated: float
    lock: threading.Lock = field(default_factory=threading.Lock)


class HostRateLimiter:
    """Token bucket per host, shared by every worker of a batch.

    Each host has its own lock so a slow host never delays acquisitions for
    another one. Tokens may go negative: a negative balance is a queue of
    reservations, and each caller sleeps outside the lock until its slot.
    """

    def __init__(
        self,
        interval: float,
        burst: int = 1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if interval < 0:
            raise ValueError("interval must not be negative")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self.interval = interval
        self.burst = burst
        self._clock = clock
        self._sleep = sleep
        self._buckets: dict[str, _Bucket] = {}
        self._registry_lock = threading.Lock()

    def _bucket(self, host: str) -> _Bucket:
        with self._registry_lock:
            bucket = self._buckets.get(host)
            if bucket is None:
                bucket = _Bucket(tokens=float(self.burst), updated=self._clock())
                self._buckets[host] = bucket
            return bucket

    def reserve(self, host: str, deadline_at: float | None = None) -> float:
        """Take a token for ``host`` and return how long the caller must wait."""
        if self.interval == 0:
            return 0.0
        bucket = self._bucket(host)
        with bucket.lock:
            now = self._clock()
            refill = (now - bucket.updated) / self.interval
            bucket.tokens = min(float(self.burst), bucket.tokens + refill)
            bucket.updated = now
            bucket.tokens -= 1.0
            wait = 0.0 if bucket.tokens >= 0 else -bucket.tokens * self.interval
            if deadline_at is not None and now + wait > deadline_at:
                bucket.tokens += 1.0
                raise DeadlineExceeded("rate-limit")
        return wait

    def acquire(self, url: str, deadline_at: float | None = None) -> None:
        host = extract_host(url)
        wait = self.reserve(host, deadline_at=deadline_at)
        if wait > 0:
            log.debug("Rate limit: waiting %.2fs for %s", wait, host)
            self._sleep(wait)
