"""
Profile Store Tests
===================

Tests for SQLite persistence:
- Profile round trip and append-only history
- Candidate retrieval (indexed union and fallback)
- Households, identity tokens, ultrasonic sessions
- Idempotent pruning
"""

from datetime import timedelta

import pytest

from core.profile_store import PROFILE_COLUMNS, ProfileStore


def profile_fields(stored_profile, **overrides):
    """Stored-profile factory output restricted to insertable columns."""
    profile = stored_profile(**overrides)
    return {k: v for k, v in profile.items() if k in PROFILE_COLUMNS}


class TestProfiles:
    """Test profile persistence."""

    def test_round_trip(self, profile_store, stored_profile):
        """Saved field values come back unchanged."""
        fields = profile_fields(stored_profile)
        row_id = profile_store.save_profile(fields)

        saved = profile_store.get_profile(fields["visitor_id"])

        assert saved["id"] == row_id
        for key, value in fields.items():
            assert saved[key] == value, key

    def test_visitor_id_required(self, profile_store):
        """Profiles without a visitor id are rejected."""
        with pytest.raises(ValueError):
            profile_store.save_profile({"fingerprint": "f" * 32})

    def test_latest_row_wins(self, profile_store, stored_profile):
        """get_profile returns the most recent insert, get_profiles all of them."""
        profile_store.save_profile(profile_fields(stored_profile, platform="Win32"))
        profile_store.save_profile(profile_fields(stored_profile, platform="MacIntel"))

        visitor_id = stored_profile()["visitor_id"]
        assert profile_store.get_profile(visitor_id)["platform"] == "MacIntel"
        assert [p["platform"] for p in profile_store.get_profiles(visitor_id)] == ["MacIntel", "Win32"]

    def test_missing_visitor(self, profile_store):
        """Unknown visitors have no profile."""
        assert profile_store.get_profile("nobody") is None

    def test_update_mouse_patches_latest_row(self, profile_store, stored_profile):
        """Mouse dynamics are patched on the newest row only."""
        first = profile_store.save_profile(profile_fields(stored_profile, pointer_type=None))
        second = profile_store.save_profile(profile_fields(stored_profile, pointer_type=None))
        visitor_id = stored_profile()["visitor_id"]

        assert profile_store.update_mouse(visitor_id, {"pointer_type": "touch", "smooth_scroll": 1})

        rows = {p["id"]: p for p in profile_store.get_profiles(visitor_id)}
        assert rows[second]["pointer_type"] == "touch"
        assert rows[second]["smooth_scroll"] == 1
        assert rows[first]["pointer_type"] is None

    def test_update_mouse_unknown_visitor(self, profile_store):
        """Patching an unknown visitor updates nothing."""
        assert profile_store.update_mouse("nobody", {"pointer_type": "pen"}) is False

    def test_update_last_active(self, profile_store, stored_profile, fixed_now):
        """last_active is bumped on every row of the visitor."""
        fields = profile_fields(stored_profile)
        profile_store.save_profile(fields, now=fixed_now - timedelta(hours=1))

        assert profile_store.update_last_active(fields["visitor_id"], now=fixed_now) == 1
        assert profile_store.get_profile(fields["visitor_id"])["last_active"] == "2026-03-01 12:00:00"


class TestCandidates:
    """Test candidate retrieval."""

    def test_indexed_union(self, profile_store, stored_profile):
        """Rows matching device id, subnet or fingerprint are returned newest first."""
        by_device = profile_store.save_profile(profile_fields(
            stored_profile, visitor_id="v-device", ip_subnet="10.0.0", fingerprint="other"))
        by_subnet = profile_store.save_profile(profile_fields(
            stored_profile, visitor_id="v-subnet", device_id="other", fingerprint="other"))
        profile_store.save_profile(profile_fields(
            stored_profile, visitor_id="v-none", device_id="x", ip_subnet="x", fingerprint="x"))

        incoming = {"device_id": "d" * 32, "ip_subnet": "192.168.1", "fingerprint": "f" * 32}
        candidates = profile_store.find_candidates(incoming)

        assert [c["id"] for c in candidates] == [by_subnet, by_device]

    def test_fallback_latest_row_per_visitor(self, profile_store, stored_profile):
        """Without index keys the fallback scans the latest row per visitor."""
        profile_store.save_profile(profile_fields(stored_profile, visitor_id="v1", platform="old"))
        latest_v1 = profile_store.save_profile(profile_fields(stored_profile, visitor_id="v1", platform="new"))
        latest_v2 = profile_store.save_profile(profile_fields(stored_profile, visitor_id="v2"))

        candidates = profile_store.find_candidates({"timezone": "Asia/Kolkata"})

        assert sorted(c["id"] for c in candidates) == sorted([latest_v1, latest_v2])

    def test_fallback_when_index_empty(self, profile_store, stored_profile):
        """An empty indexed lookup falls back to the scan."""
        row_id = profile_store.save_profile(profile_fields(stored_profile))

        candidates = profile_store.find_candidates({"device_id": "unknown"})

        assert [c["id"] for c in candidates] == [row_id]

    def test_fallback_is_capped(self, test_config, stored_profile):
        """The fallback window is bounded."""
        test_config["matching"]["candidate_fallback_limit"] = 2
        store = ProfileStore(test_config)
        for i in range(4):
            store.save_profile(profile_fields(stored_profile, visitor_id=f"v{i}"))

        assert len(store.find_candidates({})) == 2

    def test_household_members(self, profile_store, stored_profile):
        """Household members are deduplicated to their latest row."""
        profile_store.save_profile(profile_fields(stored_profile, visitor_id="phone"))
        latest_phone = profile_store.save_profile(profile_fields(stored_profile, visitor_id="phone"))
        laptop = profile_store.save_profile(profile_fields(stored_profile, visitor_id="laptop"))
        profile_store.save_profile(profile_fields(stored_profile, visitor_id="elsewhere", household_id="other"))

        members = profile_store.find_household_members("h" * 64)

        assert sorted(m["id"] for m in members) == sorted([latest_phone, laptop])
        assert profile_store.find_household_members(None) == []


class TestHouseholds:
    """Test household aggregates."""

    def test_device_count_recomputed(self, profile_store, stored_profile, fixed_now):
        """device_count counts distinct visitors in the household."""
        household_id = "h" * 64
        profile_store.save_profile(profile_fields(stored_profile, visitor_id="phone"))
        profile_store.upsert_household(household_id, now=fixed_now)
        assert profile_store.get_household(household_id)["device_count"] == 1

        profile_store.save_profile(profile_fields(stored_profile, visitor_id="phone"))
        profile_store.save_profile(profile_fields(stored_profile, visitor_id="laptop"))
        profile_store.upsert_household(household_id, now=fixed_now + timedelta(minutes=5))

        household = profile_store.get_household(household_id)
        assert household["device_count"] == 2
        assert household["first_seen"] == "2026-03-01 12:00:00"
        assert household["last_seen"] == "2026-03-01 12:05:00"


class TestTokens:
    """Test identity tokens."""

    def test_set_and_get(self, profile_store):
        """A token resolves to its visitor id."""
        token = profile_store.set_token("visitor-1")

        assert token
        assert profile_store.get_token(token) == "visitor-1"

    def test_token_reused_for_same_visitor(self, profile_store):
        """Re-storing a visitor refreshes its existing token."""
        assert profile_store.set_token("visitor-1") == profile_store.set_token("visitor-1")
        assert profile_store.set_token("visitor-1") != profile_store.set_token("visitor-2")

    def test_unknown_token(self, profile_store):
        """Unknown or empty tokens resolve to None."""
        assert profile_store.get_token("nope") is None
        assert profile_store.get_token("") is None


class TestUltrasonicSessions:
    """Test pairing sessions."""

    def test_session_within_ttl(self, profile_store, fixed_now):
        """A fresh session is found by its code."""
        profile_store.create_ultrasonic_session(4242, "emitter", now=fixed_now)

        session = profile_store.find_ultrasonic_session(4242, ttl_seconds=300, now=fixed_now + timedelta(seconds=60))
        assert session["visitor_id"] == "emitter"

    def test_expired_session(self, profile_store, fixed_now):
        """Sessions older than the TTL are ignored and pruned."""
        profile_store.create_ultrasonic_session(4242, "emitter", now=fixed_now)
        later = fixed_now + timedelta(seconds=600)

        assert profile_store.find_ultrasonic_session(4242, ttl_seconds=300, now=later) is None
        assert profile_store.prune_ultrasonic_sessions(ttl_seconds=300, now=later) == 1


class TestPrune:
    """Test retention pruning."""

    def seed(self, store, stored_profile, now):
        old = now - timedelta(days=10)
        ancient = now - timedelta(days=100)

        store.save_profile(profile_fields(stored_profile, visitor_id="keep"), now=old)
        store.save_profile(profile_fields(stored_profile, visitor_id="keep"), now=old)
        store.save_profile(profile_fields(stored_profile, visitor_id="recent"), now=now)
        store.save_profile(profile_fields(stored_profile, visitor_id="recent"), now=now)
        store.save_profile(profile_fields(stored_profile, visitor_id="gone", household_id="lonely"), now=ancient)
        store.upsert_household("lonely", now=ancient)
        store.set_token("gone", now=ancient)
        store.set_token("recent", now=now)

    def test_prune_removes_expected_rows(self, profile_store, stored_profile, fixed_now):
        """Old duplicates, stale rows, idle tokens and orphan households go."""
        self.seed(profile_store, stored_profile, fixed_now)

        result = profile_store.prune(now=fixed_now)

        assert result.duplicates_removed == 1
        assert result.stale_removed == 1
        assert result.tokens_removed == 1
        assert result.households_removed == 1
        assert len(profile_store.get_profiles("keep")) == 1
        assert len(profile_store.get_profiles("recent")) == 2
        assert profile_store.get_profile("gone") is None

    def test_prune_is_idempotent(self, profile_store, stored_profile, fixed_now):
        """A second consecutive pass removes nothing."""
        self.seed(profile_store, stored_profile, fixed_now)

        profile_store.prune(now=fixed_now)
        second = profile_store.prune(now=fixed_now)

        assert second.total == 0


class TestStats:
    """Test statistics."""

    def test_counts(self, profile_store, stored_profile, fixed_now):
        """Stats count rows, distinct visitors, households and tokens."""
        profile_store.save_profile(profile_fields(stored_profile, visitor_id="a"))
        profile_store.save_profile(profile_fields(stored_profile, visitor_id="a"))
        profile_store.save_profile(profile_fields(stored_profile, visitor_id="b"))
        profile_store.upsert_household("h" * 64, now=fixed_now)
        profile_store.set_token("a")

        assert profile_store.get_stats() == {"profiles": 3, "visitors": 2, "households": 1, "tokens": 1}
