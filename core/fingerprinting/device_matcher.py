"""
Same-Device Matcher

Scores an incoming visit against a stored profile with a fixed weight
table. Only a candidate at or above the 0.70 threshold is treated as the
same device; everything else is a new visitor.

Confidence Formula:
score = Σ(weight_i × matched_i)     matched_i ∈ {0, 1}
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from loguru import logger


# Signal weights (total = 1.00)
SIGNAL_WEIGHTS = {
    'ip_subnet': 0.14,              # Network /24 - shared by the whole LAN
    'audio': 0.11,                  # Audio stack output (fuzzy)
    'timezone': 0.10,
    'languages': 0.10,
    'screen': 0.10,                 # Width AND height
    'hardware_concurrency': 0.08,
    'device_memory': 0.07,
    'platform': 0.07,
    'device_id': 0.05,              # Device-tier hash
    'touch_support': 0.05,
    'color_depth': 0.04,
    'timezone_offset': 0.04,
    'wheel_delta': 0.03,            # Mouse wheel step (fuzzy)
    'pointer_type': 0.02
}

# Same-device threshold
MATCH_THRESHOLD = 0.70

# Fuzzy tolerances (relative to the stored value, inclusive)
AUDIO_TOLERANCE = 0.01
WHEEL_DELTA_TOLERANCE = 0.05

# Exact-match signals: signal name -> profile field
EXACT_FIELDS = {
    'ip_subnet': 'ip_subnet',
    'timezone': 'timezone',
    'platform': 'platform',
    'touch_support': 'touch_support',
    'color_depth': 'color_depth',
    'timezone_offset': 'timezone_offset',
    'device_id': 'device_id',
    'hardware_concurrency': 'hardware_concurrency',
    'device_memory': 'device_memory',
    'pointer_type': 'pointer_type'
}


def canonical_languages(value: Any) -> Optional[str]:
    """
    Canonical ordered-list form of a language preference.

    Accepts a list (['en', 'nl']) or pre-serialized text ('["en","nl"]'
    or 'en,nl') and returns compact JSON text: '["en","nl"]'.
    """
    if value is None:
        return None

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = [part.strip() for part in text.split(',') if part.strip()]
        if isinstance(parsed, str):
            parsed = [parsed]
        value = parsed

    if isinstance(value, (list, tuple)):
        return json.dumps([str(v) for v in value], separators=(',', ':'))

    return None


def within_tolerance(incoming: Optional[float], stored: Optional[float], tolerance: float) -> bool:
    """True if |incoming - stored| <= |stored| × tolerance (both present)."""
    if incoming is None or stored is None:
        return False
    try:
        return abs(float(incoming) - float(stored)) <= abs(float(stored)) * tolerance
    except (TypeError, ValueError):
        return False


def exact_match(incoming: Any, stored: Any) -> bool:
    """True if both values are present and equal."""
    if incoming is None or stored is None:
        return False
    if isinstance(incoming, str) and not incoming:
        return False
    return incoming == stored


@dataclass
class MatchScore:
    """Weighted score of one incoming/stored comparison"""
    score: float = 0.0
    matched_signals: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {'score': self.score, 'matched_signals': self.matched_signals}


@dataclass
class MatchResult:
    """Best candidate selected from a candidate list"""
    visitor_id: str
    confidence: float
    matched_signals: List[str] = field(default_factory=list)
    profile_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            'visitor_id': self.visitor_id,
            'confidence': self.confidence,
            'matched_signals': self.matched_signals,
            'profile_id': self.profile_id
        }


class DeviceMatcher:
    """
    Probabilistic same-device comparator.

    Both sides are mappings using profile field names (ip_subnet,
    audio_sum, screen_width, ...). Missing or None fields never match.
    """

    def __init__(self, config: Optional[dict] = None):
        """
        Initialize same-device matcher.

        Args:
            config: Configuration dict (reads the "matching" section)
        """
        match_config = (config or {}).get("matching", {})

        self.signal_weights = SIGNAL_WEIGHTS
        self.threshold = match_config.get("same_device_threshold", MATCH_THRESHOLD)
        self.audio_tolerance = match_config.get("audio_tolerance", AUDIO_TOLERANCE)
        self.wheel_delta_tolerance = match_config.get("wheel_delta_tolerance", WHEEL_DELTA_TOLERANCE)

    def match(self, incoming: Mapping[str, Any], stored: Mapping[str, Any]) -> MatchScore:
        """
        Score an incoming visit against one stored profile.

        Args:
            incoming: Incoming profile fields
            stored: Stored profile row

        Returns:
            MatchScore with score in [0, 1] and matched signal names
        """
        score = 0.0
        matched = []

        for signal, column in EXACT_FIELDS.items():
            if exact_match(incoming.get(column), stored.get(column)):
                score += self.signal_weights[signal]
                matched.append(signal)

        if within_tolerance(incoming.get('audio_sum'), stored.get('audio_sum'), self.audio_tolerance):
            score += self.signal_weights['audio']
            matched.append('audio')

        incoming_langs = canonical_languages(incoming.get('languages'))
        if incoming_langs is not None and incoming_langs == canonical_languages(stored.get('languages')):
            score += self.signal_weights['languages']
            matched.append('languages')

        # Partial screen matches contribute nothing
        if (exact_match(incoming.get('screen_width'), stored.get('screen_width')) and
                exact_match(incoming.get('screen_height'), stored.get('screen_height'))):
            score += self.signal_weights['screen']
            matched.append('screen')

        if within_tolerance(incoming.get('wheel_delta_y'), stored.get('wheel_delta_y'),
                            self.wheel_delta_tolerance):
            score += self.signal_weights['wheel_delta']
            matched.append('wheel_delta')

        return MatchScore(round(min(score, 1.0), 4), matched)

    def find_best_match(self, incoming: Mapping[str, Any], candidates: Iterable[Mapping[str, Any]],
                        threshold: Optional[float] = None) -> Optional[MatchResult]:
        """
        Strict-improvement scan over candidates.

        The first candidate whose score is both greater than the best so far
        and at or above the threshold wins; equal top scores keep the earlier
        candidate.

        Returns:
            MatchResult or None if no candidate qualifies
        """
        threshold = self.threshold if threshold is None else threshold
        best: Optional[MatchResult] = None
        best_score = 0.0
        scanned = 0

        for candidate in candidates:
            scanned += 1
            result = self.match(incoming, candidate)
            if result.score > best_score and result.score >= threshold:
                best_score = result.score
                best = MatchResult(
                    visitor_id=candidate.get('visitor_id'),
                    confidence=result.score,
                    matched_signals=result.matched_signals,
                    profile_id=candidate.get('id')
                )

        if best:
            logger.debug(f"Same-device match {best.visitor_id} (confidence={best.confidence:.2f}, "
                         f"scanned={scanned})")
        else:
            logger.debug(f"No same-device match among {scanned} candidates (threshold={threshold})")

        return best
