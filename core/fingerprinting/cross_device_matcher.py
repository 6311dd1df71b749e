"""
Cross-Device (Household) Matcher

Weaker comparator used only when no same-device match exists. Operates on
members of the same household and never matches a profile carrying the
incoming visitor id.

Confidence Formula:
score = Σ(weight_i × credit_i) + weak_evidence_bonus      (capped at 1.0)
credit_i ∈ {0, 0.5, 1}
"""

from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Sequence

from loguru import logger

from core.timestamps import parse_timestamp, utc_now
from .device_matcher import MatchResult, MatchScore, canonical_languages, exact_match


# Signal weights (total = 1.00)
CROSS_DEVICE_WEIGHTS = {
    'household': 0.25,
    'local_subnet': 0.15,
    'timezone': 0.10,
    'languages': 0.10,
    'ip_subnet': 0.10,
    'timing_correlation': 0.10,
    'login_pattern': 0.10,
    'lan_topology': 0.10
}

# Household threshold
CROSS_DEVICE_THRESHOLD = 0.55

# Time correlation windows (minutes)
TIMING_FULL_WINDOW_MINUTES = 5
TIMING_HALF_WINDOW_MINUTES = 30

# Login bitmask: one bit per probed service
LOGIN_FULL_MATCHING_BITS = 6
LOGIN_HALF_MATCHING_BITS = 5

# LAN topology policy. These thresholds are tunable and pending product
# confirmation; do not treat them as a fixed contract.
LAN_MIN_RESPONSIVE_HOSTS = 3
LAN_FULL_SIMILARITY = 0.90
LAN_HALF_SIMILARITY = 0.75

# Bonus per independent weak-evidence channel (DNS probe hit, ultrasonic pairing)
WEAK_EVIDENCE_BONUS = 0.05
DNS_PROBE_PREFIX_LENGTH = 8


def _is_bitmask(value: Any) -> bool:
    return isinstance(value, str) and len(value) > 0 and set(value) <= {'0', '1'}


def login_pattern_credit(incoming: Any, stored: Any) -> float:
    """1.0 at >= 6 matching bits, 0.5 at 5, else 0.0 (absent or unequal length -> 0.0)."""
    if not _is_bitmask(incoming) or not _is_bitmask(stored) or len(incoming) != len(stored):
        return 0.0

    matching = sum(1 for a, b in zip(incoming, stored) if a == b)
    if matching >= LOGIN_FULL_MATCHING_BITS:
        return 1.0
    if matching >= LOGIN_HALF_MATCHING_BITS:
        return 0.5
    return 0.0


def lan_topology_similarity(incoming: Any, stored: Any) -> Optional[float]:
    """
    Fraction of matching host positions, or None if the evidence is too sparse.

    Both bitmasks must have equal length and at least LAN_MIN_RESPONSIVE_HOSTS
    responsive ('1') positions.
    """
    if not _is_bitmask(incoming) or not _is_bitmask(stored) or len(incoming) != len(stored):
        return None
    if incoming.count('1') < LAN_MIN_RESPONSIVE_HOSTS or stored.count('1') < LAN_MIN_RESPONSIVE_HOSTS:
        return None

    matching = sum(1 for a, b in zip(incoming, stored) if a == b)
    return matching / len(incoming)


def lan_topology_credit(incoming: Any, stored: Any) -> float:
    similarity = lan_topology_similarity(incoming, stored)
    if similarity is None:
        return 0.0
    if similarity >= LAN_FULL_SIMILARITY:
        return 1.0
    if similarity >= LAN_HALF_SIMILARITY:
        return 0.5
    return 0.0


def timing_credit(last_active: Any, now: datetime) -> float:
    """1.0 if active within 5 minutes of now, 0.5 within 30, else 0.0."""
    moment = parse_timestamp(last_active)
    if moment is None:
        return 0.0

    gap_minutes = (now - moment).total_seconds() / 60.0
    if gap_minutes < 0:
        gap_minutes = 0.0
    if gap_minutes < TIMING_FULL_WINDOW_MINUTES:
        return 1.0
    if gap_minutes < TIMING_HALF_WINDOW_MINUTES:
        return 0.5
    return 0.0


class CrossDeviceMatcher:
    """
    Household-level comparator.

    Incoming fields use profile names (household_id, local_subnet,
    login_bitmask, lan_topology, ...). Optional weak evidence:
    - dns_probes: hostnames the client resolved from the /dns-probes list
    - paired_visitor_id: emitter visitor id confirmed by ultrasonic pairing
    """

    def __init__(self, config: Optional[dict] = None):
        match_config = (config or {}).get("matching", {})

        self.weights = CROSS_DEVICE_WEIGHTS
        self.threshold = match_config.get("cross_device_threshold", CROSS_DEVICE_THRESHOLD)
        self.weak_evidence_bonus = match_config.get("weak_evidence_bonus", WEAK_EVIDENCE_BONUS)

    def match(self, incoming: Mapping[str, Any], stored: Mapping[str, Any],
              now: Optional[datetime] = None) -> MatchScore:
        """
        Score an incoming visit against one household member.

        Args:
            incoming: Incoming profile fields (plus optional weak evidence)
            stored: Stored household member row
            now: Reference time for the timing correlation (defaults to UTC now)

        Returns:
            MatchScore with score in [0, 1]
        """
        now = now or utc_now()
        score = 0.0
        matched = []

        credits = {
            'household': 1.0 if exact_match(incoming.get('household_id'), stored.get('household_id')) else 0.0,
            'local_subnet': 1.0 if exact_match(incoming.get('local_subnet'), stored.get('local_subnet')) else 0.0,
            'timezone': 1.0 if exact_match(incoming.get('timezone'), stored.get('timezone')) else 0.0,
            'ip_subnet': 1.0 if exact_match(incoming.get('ip_subnet'), stored.get('ip_subnet')) else 0.0,
            'timing_correlation': timing_credit(stored.get('last_active'), now),
            'login_pattern': login_pattern_credit(incoming.get('login_bitmask'), stored.get('login_bitmask')),
            'lan_topology': lan_topology_credit(incoming.get('lan_topology'), stored.get('lan_topology'))
        }

        incoming_langs = canonical_languages(incoming.get('languages'))
        credits['languages'] = 1.0 if (
            incoming_langs is not None and incoming_langs == canonical_languages(stored.get('languages'))
        ) else 0.0

        for signal, weight in self.weights.items():
            credit = credits.get(signal, 0.0)
            if credit > 0:
                score += weight * credit
                matched.append(signal)

        for evidence in self._weak_evidence(incoming, stored):
            score += self.weak_evidence_bonus
            matched.append(evidence)

        return MatchScore(round(min(score, 1.0), 4), matched)

    def _weak_evidence(self, incoming: Mapping[str, Any], stored: Mapping[str, Any]):
        visitor_id = stored.get('visitor_id') or ''
        if not visitor_id:
            return []

        evidence = []
        prefix = visitor_id[:DNS_PROBE_PREFIX_LENGTH]
        probes: Sequence[str] = incoming.get('dns_probes') or []
        if any(isinstance(p, str) and p.split('.', 1)[0] == prefix for p in probes):
            evidence.append('dns_probe')

        if incoming.get('paired_visitor_id') and incoming.get('paired_visitor_id') == visitor_id:
            evidence.append('ultrasonic')

        return evidence

    def find_best_match(self, incoming: Mapping[str, Any], household_members: Iterable[Mapping[str, Any]],
                        threshold: Optional[float] = None,
                        now: Optional[datetime] = None) -> Optional[MatchResult]:
        """
        Strict-improvement scan over household members, skipping self-matches.

        Returns:
            MatchResult or None if no member qualifies
        """
        threshold = self.threshold if threshold is None else threshold
        now = now or utc_now()
        incoming_visitor = incoming.get('visitor_id')
        best: Optional[MatchResult] = None
        best_score = 0.0

        for member in household_members:
            if incoming_visitor and member.get('visitor_id') == incoming_visitor:
                continue

            result = self.match(incoming, member, now=now)
            if result.score > best_score and result.score >= threshold:
                best_score = result.score
                best = MatchResult(
                    visitor_id=member.get('visitor_id'),
                    confidence=result.score,
                    matched_signals=result.matched_signals,
                    profile_id=member.get('id')
                )

        if best:
            logger.info(f"Cross-device match {best.visitor_id} (confidence={best.confidence:.2f}, "
                        f"signals={','.join(best.matched_signals)})")

        return best
