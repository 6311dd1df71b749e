"""
Maintenance Scheduler Tests
===========================

Tests for one-shot pruning, sweeps and the background loop lifecycle.
"""

from datetime import timedelta

import pytest

from core.maintenance import MaintenanceScheduler
from core.profile_store import PROFILE_COLUMNS
from core.rate_limiter import SlidingWindowRateLimiter
from core.timestamps import utc_now


@pytest.fixture
def scheduler(test_config, profile_store):
    limiter = SlidingWindowRateLimiter(test_config, clock=lambda: 0.0)
    return MaintenanceScheduler(test_config, profile_store, rate_limiter=limiter)


class TestRunPrune:
    """Test one-shot pruning."""

    def test_prune_updates_stats(self, scheduler, profile_store, stored_profile):
        """A prune pass removes stale rows and counts them."""
        fields = {k: v for k, v in stored_profile(visitor_id="ancient").items() if k in PROFILE_COLUMNS}
        profile_store.save_profile(fields, now=utc_now() - timedelta(days=200))
        profile_store.create_ultrasonic_session(1234, "emitter", now=utc_now() - timedelta(hours=1))

        result = scheduler.run_prune()

        assert result.stale_removed == 1
        assert scheduler.stats["prune_runs"] == 1
        assert scheduler.stats["rows_pruned"] == result.total
        assert scheduler.stats["ultrasonic_sessions_pruned"] == 1

    def test_prune_on_empty_store(self, scheduler):
        """Pruning an empty store is a no-op."""
        assert scheduler.run_prune().total == 0


class TestRunSweep:
    """Test rate-limiter sweeps."""

    def test_sweep_counts(self, scheduler):
        """Each sweep is counted even when nothing is evicted."""
        assert scheduler.run_sweep() == 0
        assert scheduler.stats["sweeps"] == 1

    def test_sweep_without_limiter(self, test_config, profile_store):
        """No limiter means nothing to sweep."""
        scheduler = MaintenanceScheduler(test_config, profile_store)
        assert scheduler.run_sweep() == 0


class TestLifecycle:
    """Test start/stop."""

    def test_start_stop(self, scheduler):
        """Loops start as daemon threads and stop promptly."""
        scheduler.start()
        assert scheduler.is_running
        assert scheduler._prune_thread.daemon

        scheduler.stop()
        assert not scheduler.is_running
        assert not scheduler._prune_thread.is_alive()

    def test_disabled_does_not_start(self, test_config, profile_store):
        """A disabled scheduler never starts threads."""
        test_config["maintenance"]["enabled"] = False
        scheduler = MaintenanceScheduler(test_config, profile_store)

        scheduler.start()

        assert not scheduler.is_running
        assert scheduler.get_statistics()["running"] is False
