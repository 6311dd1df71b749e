#!/usr/bin/env python3
"""
PEHCHAAN Maintenance Scheduler
==============================

Background housekeeping over the shared profile store.

Features:
- Prune loop (duplicates, stale profiles, idle tokens, ultrasonic sessions)
- Rate-limiter sweep loop
- One-shot prune for startup and the --prune-only CLI mode

Author: Team PEHCHAAN
"""

import threading
from typing import Optional

from loguru import logger

from core.profile_store import ProfileStore, PruneResult
from core.rate_limiter import SlidingWindowRateLimiter


class MaintenanceScheduler:
    """
    Runs periodic pruning and rate-limit sweeps as daemon threads.

    Deletions only touch superseded or expired rows, so both loops are safe
    to run alongside request handling.
    """

    DEFAULT_PRUNE_INTERVAL = 6 * 3600
    DEFAULT_SWEEP_INTERVAL = 300

    def __init__(self, config: dict, store: ProfileStore,
                 rate_limiter: Optional[SlidingWindowRateLimiter] = None):
        """
        Initialize maintenance scheduler.

        Args:
            config: PEHCHAAN configuration dictionary
            store: Profile store to prune
            rate_limiter: Limiter to sweep (optional)
        """
        self.store = store
        self.rate_limiter = rate_limiter

        maintenance_config = config.get("maintenance", {})
        self.enabled = maintenance_config.get("enabled", True)
        self.prune_interval = maintenance_config.get("prune_interval", self.DEFAULT_PRUNE_INTERVAL)
        self.duplicate_retention_days = maintenance_config.get("duplicate_retention_days", 7)
        self.stale_retention_days = maintenance_config.get("stale_retention_days", 90)
        self.token_retention_days = maintenance_config.get("token_retention_days", 90)
        self.ultrasonic_session_ttl = maintenance_config.get("ultrasonic_session_ttl", 300)
        self.sweep_interval = config.get("rate_limit", {}).get("sweep_interval", self.DEFAULT_SWEEP_INTERVAL)

        self._running = False
        self._stop_event = threading.Event()
        self._prune_thread = None
        self._sweep_thread = None

        self.stats = {
            "prune_runs": 0,
            "rows_pruned": 0,
            "ultrasonic_sessions_pruned": 0,
            "sweeps": 0,
            "errors": 0
        }

        logger.info(f"MaintenanceScheduler initialized (prune every {self.prune_interval}s, "
                    f"sweep every {self.sweep_interval}s)")

    def start(self):
        """Start background maintenance loops."""
        if not self.enabled:
            logger.warning("MaintenanceScheduler is disabled in config")
            return

        if self._running:
            logger.warning("MaintenanceScheduler already running")
            return

        self._running = True
        self._stop_event.clear()

        self._prune_thread = threading.Thread(
            target=self._prune_loop,
            daemon=True,
            name="PruneLoop"
        )
        self._prune_thread.start()

        if self.rate_limiter is not None:
            self._sweep_thread = threading.Thread(
                target=self._sweep_loop,
                daemon=True,
                name="RateLimitSweep"
            )
            self._sweep_thread.start()

        logger.info("MaintenanceScheduler started")

    def stop(self):
        """Stop background maintenance loops."""
        if not self._running:
            return

        self._running = False
        self._stop_event.set()
        for thread in (self._prune_thread, self._sweep_thread):
            if thread:
                thread.join(timeout=5)
        logger.info("MaintenanceScheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def run_prune(self) -> PruneResult:
        """Run one prune pass over profiles, tokens, households and ultrasonic sessions."""
        result = self.store.prune(
            duplicate_retention_days=self.duplicate_retention_days,
            stale_retention_days=self.stale_retention_days,
            token_retention_days=self.token_retention_days
        )
        sessions = self.store.prune_ultrasonic_sessions(ttl_seconds=self.ultrasonic_session_ttl)

        self.stats["prune_runs"] += 1
        self.stats["rows_pruned"] += result.total
        self.stats["ultrasonic_sessions_pruned"] += sessions
        return result

    def run_sweep(self) -> int:
        if self.rate_limiter is None:
            return 0
        evicted = self.rate_limiter.sweep()
        self.stats["sweeps"] += 1
        return evicted

    def _prune_loop(self):
        """Background loop for pruning."""
        logger.info("Prune loop started")

        while not self._stop_event.wait(self.prune_interval):
            try:
                self.run_prune()
            except Exception as e:
                self.stats["errors"] += 1
                logger.error(f"Prune error: {e}")

    def _sweep_loop(self):
        """Background loop for rate-limit sweeps."""
        while not self._stop_event.wait(self.sweep_interval):
            try:
                self.run_sweep()
            except Exception as e:
                self.stats["errors"] += 1
                logger.error(f"Rate limit sweep error: {e}")

    def get_statistics(self) -> dict:
        return {**self.stats, "running": self._running}
