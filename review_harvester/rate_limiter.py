from __future__ import annotations

import threading
import time
from typing import Dict
from urllib.parse import urlsplit


class DomainRateLimiter:
    """Thread-safe per-host request spacing.

    Calling acquire(url) blocks the current thread until at least
    ``min_interval_secs`` has passed since the previous request slot handed
    out for the same host. Different hosts never wait on each other."""

    def __init__(self, min_interval_secs: float) -> None:
        self._interval = max(0.0, min_interval_secs)
        self._lock = threading.Lock()
        self._next_allowed: Dict[str, float] = {}

    def acquire(self, url: str) -> float:
        """Block until a request to ``url``'s host is permitted. Returns seconds waited."""
        if self._interval <= 0:
            return 0.0
        host = urlsplit(url).netloc.lower()
        with self._lock:
            now = time.monotonic()
            slot = max(now, self._next_allowed.get(host, 0.0))
            self._next_allowed[host] = slot + self._interval
        wait = slot - now
        if wait > 0:
            time.sleep(wait)
        return max(0.0, wait)
