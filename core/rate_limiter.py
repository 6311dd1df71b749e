#!/usr/bin/env python3
"""
PEHCHAAN Rate Limiter
=====================

Per-client sliding-window request limiter.

Features:
- Timestamp deque per client, trimmed to the window on every check
- Periodic sweep evicting idle clients to bound memory

Author: Team PEHCHAAN
"""

import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

from loguru import logger


class SlidingWindowRateLimiter:
    """
    Sliding-window counter keyed by client (usually the remote address).

    A request is allowed while fewer than max_requests were allowed in the
    trailing window_seconds; rejected requests are not counted.
    """

    DEFAULT_MAX_REQUESTS = 120
    DEFAULT_WINDOW_SECONDS = 60

    def __init__(self, config: dict, clock: Optional[Callable[[], float]] = None):
        """
        Initialize rate limiter.

        Args:
            config: PEHCHAAN configuration dictionary
            clock: Monotonic time source (injectable for tests)
        """
        limit_config = config.get("rate_limit", {})
        self.enabled = limit_config.get("enabled", True)
        self.max_requests = limit_config.get("max_requests", self.DEFAULT_MAX_REQUESTS)
        self.window_seconds = limit_config.get("window_seconds", self.DEFAULT_WINDOW_SECONDS)

        self._clock = clock or time.monotonic
        self._requests: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

        self.stats = {
            "allowed": 0,
            "rejected": 0,
            "swept_clients": 0
        }

        logger.info(f"RateLimiter initialized ({self.max_requests} requests / {self.window_seconds}s, "
                    f"enabled={self.enabled})")

    def _trim(self, timestamps: Deque[float], now: float):
        while timestamps and now - timestamps[0] >= self.window_seconds:
            timestamps.popleft()

    def allow(self, client: str) -> bool:
        """
        Record a request from client if it fits in the window.

        Returns:
            True if allowed, False if over the limit
        """
        if not self.enabled:
            return True

        client = client or "unknown"
        now = self._clock()

        with self._lock:
            timestamps = self._requests.setdefault(client, deque())
            self._trim(timestamps, now)

            if len(timestamps) >= self.max_requests:
                self.stats["rejected"] += 1
                logger.warning(f"Rate limit exceeded for {client}")
                return False

            timestamps.append(now)
            self.stats["allowed"] += 1
            return True

    def sweep(self) -> int:
        """Evict clients with no requests inside the window. Returns count evicted."""
        now = self._clock()
        with self._lock:
            idle = []
            for client, timestamps in self._requests.items():
                self._trim(timestamps, now)
                if not timestamps:
                    idle.append(client)
            for client in idle:
                del self._requests[client]
            self.stats["swept_clients"] += len(idle)

        if idle:
            logger.debug(f"Rate limiter swept {len(idle)} idle clients")
        return len(idle)

    @property
    def tracked_clients(self) -> int:
        with self._lock:
            return len(self._requests)
