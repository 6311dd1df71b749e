"""
Same-Device Matcher Tests
=========================

Tests for the weighted same-device comparator:
- Weight table invariants
- Exact, fuzzy, language and screen comparators
- Strict-improvement best-match selection
"""

import pytest

from core.fingerprinting.device_matcher import (
    DeviceMatcher,
    SIGNAL_WEIGHTS,
    MATCH_THRESHOLD,
    canonical_languages,
    within_tolerance,
)


@pytest.fixture
def matcher(test_config):
    return DeviceMatcher(test_config)


@pytest.fixture
def unrelated_profile():
    """Profile differing from the stored fixture in every comparable field."""
    return {
        "visitor_id": "cccccccc-3333-4333-8333-333333333333",
        "device_id": "x" * 32,
        "ip_subnet": "10.0.0",
        "audio_sum": 500.0,
        "timezone": "Europe/Amsterdam",
        "timezone_offset": -60,
        "languages": ["nl", "en"],
        "screen_width": 800,
        "screen_height": 600,
        "hardware_concurrency": 2,
        "device_memory": 2,
        "platform": "Win32",
        "touch_support": 1,
        "color_depth": 30,
        "pointer_type": "touch",
        "wheel_delta_y": 10.0
    }


class TestWeightTable:
    """Test weight table invariants."""

    def test_weights_sum_to_one(self):
        """Same-device weights sum to exactly 1.0."""
        assert abs(sum(SIGNAL_WEIGHTS.values()) - 1.0) < 1e-3

    def test_default_threshold(self, matcher):
        """Default threshold is 0.70."""
        assert matcher.threshold == MATCH_THRESHOLD == 0.70


class TestMatch:
    """Test single comparisons."""

    def test_identical_profile_scores_one(self, matcher, stored_profile):
        """A profile compared with a stored copy of itself scores 1.0."""
        profile = stored_profile()
        result = matcher.match(profile, dict(profile))

        assert result.score == 1.0
        assert set(result.matched_signals) == set(SIGNAL_WEIGHTS.keys())

    def test_all_fields_differ_scores_zero(self, matcher, stored_profile, unrelated_profile):
        """Every comparable field differing scores 0."""
        result = matcher.match(unrelated_profile, stored_profile())

        assert result.score == 0
        assert result.matched_signals == []

    def test_missing_fields_never_match(self, matcher, stored_profile):
        """Absent incoming fields contribute nothing."""
        result = matcher.match({}, stored_profile())
        assert result.score == 0

    def test_null_on_both_sides_does_not_match(self, matcher):
        """None == None is not a match."""
        result = matcher.match({"platform": None}, {"platform": None})
        assert result.score == 0

    @pytest.mark.parametrize("incoming,expected", [
        (100.5, True),
        (101.0, True),      # boundary inclusive
        (99.0, True),
        (101.1, False),
        (98.9, False),
    ])
    def test_audio_tolerance(self, matcher, incoming, expected):
        """Audio matches within 1% of the stored value."""
        result = matcher.match({"audio_sum": incoming}, {"audio_sum": 100.0})
        assert ("audio" in result.matched_signals) is expected

    def test_audio_match_contributes_its_weight(self, matcher):
        """An audio-only match scores the audio weight."""
        result = matcher.match({"audio_sum": 100.5}, {"audio_sum": 100.0})
        assert result.score == pytest.approx(SIGNAL_WEIGHTS["audio"])

    def test_wheel_delta_tolerance(self, matcher):
        """Wheel delta matches within 5%."""
        assert "wheel_delta" in matcher.match({"wheel_delta_y": 104.0}, {"wheel_delta_y": 100.0}).matched_signals
        assert "wheel_delta" not in matcher.match({"wheel_delta_y": 106.0}, {"wheel_delta_y": 100.0}).matched_signals

    def test_screen_requires_both_dimensions(self, matcher):
        """Matching only the width contributes nothing."""
        stored = {"screen_width": 1920, "screen_height": 1080}

        partial = matcher.match({"screen_width": 1920, "screen_height": 1200}, stored)
        full = matcher.match({"screen_width": 1920, "screen_height": 1080}, stored)

        assert partial.score == 0
        assert "screen" not in partial.matched_signals
        assert full.score == pytest.approx(SIGNAL_WEIGHTS["screen"])

    def test_languages_list_matches_serialized_text(self, matcher):
        """A language list matches its pre-serialized text form."""
        stored = {"languages": '["en-IN","hi"]'}

        assert "languages" in matcher.match({"languages": ["en-IN", "hi"]}, stored).matched_signals
        assert "languages" in matcher.match({"languages": "en-IN,hi"}, stored).matched_signals
        assert "languages" not in matcher.match({"languages": ["hi", "en-IN"]}, stored).matched_signals

    def test_zero_touch_support_is_comparable(self, matcher):
        """0 is a value, not an absence."""
        result = matcher.match({"touch_support": 0}, {"touch_support": 0})
        assert result.matched_signals == ["touch_support"]


class TestHelpers:
    """Test comparator helpers."""

    def test_canonical_languages_forms(self):
        """Lists, JSON text and comma text canonicalize identically."""
        expected = '["en","nl"]'
        assert canonical_languages(["en", "nl"]) == expected
        assert canonical_languages('["en", "nl"]') == expected
        assert canonical_languages("en, nl") == expected
        assert canonical_languages(None) is None
        assert canonical_languages("") is None

    def test_within_tolerance_requires_both_values(self):
        """Missing values never fall within tolerance."""
        assert not within_tolerance(None, 1.0, 0.5)
        assert not within_tolerance(1.0, None, 0.5)


class TestFindBestMatch:
    """Test strict-improvement candidate selection."""

    def test_empty_candidates(self, matcher, incoming_profile):
        """No candidates means no match."""
        assert matcher.find_best_match(incoming_profile(), []) is None

    def test_all_below_threshold(self, matcher, stored_profile, unrelated_profile):
        """Candidates scoring under the threshold are never returned."""
        candidates = [stored_profile(id=1), stored_profile(id=2, visitor_id="other")]
        assert matcher.find_best_match(unrelated_profile, candidates) is None

    def test_picks_highest_scoring_candidate(self, matcher, stored_profile, incoming_profile):
        """A later, better candidate replaces an earlier qualifying one."""
        weaker = stored_profile(id=1, visitor_id="weaker", audio_sum=300.0, wheel_delta_y=1.0)
        stronger = stored_profile(id=2, visitor_id="stronger")

        result = matcher.find_best_match(incoming_profile(), [weaker, stronger])

        assert result.visitor_id == "stronger"
        assert result.confidence == 1.0
        assert result.profile_id == 2

    def test_tie_keeps_earlier_candidate(self, matcher, stored_profile, incoming_profile):
        """Equal top scores resolve to the earlier candidate."""
        first = stored_profile(id=7, visitor_id="first")
        second = stored_profile(id=8, visitor_id="second")

        result = matcher.find_best_match(incoming_profile(), [first, second])

        assert result.visitor_id == "first"

    def test_explicit_threshold(self, matcher):
        """A lower explicit threshold admits weaker candidates."""
        candidate = {"id": 1, "visitor_id": "v1", "timezone": "UTC"}

        assert matcher.find_best_match({"timezone": "UTC"}, [candidate]) is None
        result = matcher.find_best_match({"timezone": "UTC"}, [candidate], threshold=0.05)
        assert result.visitor_id == "v1"
