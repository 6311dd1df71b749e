#!/usr/bin/env python3
"""
PEHCHAAN Identity Resolver
==========================

Server-side decision pipeline for one submitted visit.

Pipeline:
1. Derive IP subnet and household id from the client address
2. Indexed candidate retrieval (bounded fallback scan)
3. Same-device matcher over candidates
4. Cross-device matcher over household members (only if step 3 fails)
5. Assign visitor id, persist profile, refresh household and last_active

Author: Team PEHCHAAN
"""

import hashlib
import ipaddress
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from loguru import logger

from core.fingerprinting.cross_device_matcher import CrossDeviceMatcher
from core.fingerprinting.device_matcher import DeviceMatcher, canonical_languages
from core.profile_store import ProfileStore
from core.submission import VisitSubmission
from core.timestamps import utc_now


MATCH_TYPE_SAME_DEVICE = "same-device"
MATCH_TYPE_CROSS_DEVICE = "cross-device"


def ip_subnet_of(ip: Optional[str]) -> Optional[str]:
    """
    Subnet key for an address.

    IPv4 -> first three octets ("192.168.1"), IPv6 -> "/64" network string,
    anything unparseable -> None.
    """
    if not ip:
        return None

    try:
        address = ipaddress.ip_address(ip.strip())
    except ValueError:
        return None

    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        address = address.ipv4_mapped

    if address.version == 4:
        return ".".join(str(address).split(".")[:3])

    return str(ipaddress.ip_network(f"{address}/64", strict=False))


def household_id_of(ip_subnet: Optional[str], timezone: Optional[str],
                    languages) -> str:
    """SHA-256 of "ipSubnet|timezone|languages" (languages canonicalized)."""
    key = f"{ip_subnet or ''}|{timezone or ''}|{canonical_languages(languages) or ''}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


@dataclass
class MatchDecision:
    """Outcome of resolving one visit"""
    visitor_id: str
    matched_visitor_id: Optional[str] = None
    confidence: float = 0.0
    matched_signals: List[str] = field(default_factory=list)
    match_type: Optional[str] = None
    profile_id: Optional[int] = None

    def to_response(self) -> dict:
        """Wire shape returned by POST /fingerprint."""
        return {
            "matchedVisitorId": self.matched_visitor_id,
            "confidence": self.confidence,
            "matchedSignals": self.matched_signals,
            "matchType": self.match_type,
            "visitorId": self.visitor_id
        }


class IdentityResolver:
    """
    Resolves submitted visits to visitor identifiers.

    Storage errors propagate to the caller (the API request boundary).
    """

    def __init__(self, config: dict, store: ProfileStore,
                 device_matcher: Optional[DeviceMatcher] = None,
                 cross_device_matcher: Optional[CrossDeviceMatcher] = None):
        """
        Initialize resolver.

        Args:
            config: PEHCHAAN configuration dictionary
            store: Profile store
            device_matcher: Same-device matcher (built from config if omitted)
            cross_device_matcher: Household matcher (built from config if omitted)
        """
        self.config = config
        self.store = store
        self.device_matcher = device_matcher or DeviceMatcher(config)
        self.cross_device_matcher = cross_device_matcher or CrossDeviceMatcher(config)

        logger.info(f"IdentityResolver initialized (same-device>={self.device_matcher.threshold}, "
                    f"cross-device>={self.cross_device_matcher.threshold})")

    def resolve(self, submission: VisitSubmission, client_ip: Optional[str],
                now: Optional[datetime] = None) -> MatchDecision:
        """
        Match, persist and answer one visit.

        Args:
            submission: Validated visit submission
            client_ip: Remote address of the client
            now: Reference time (defaults to UTC now)

        Returns:
            MatchDecision
        """
        now = now or utc_now()

        submission.ip = client_ip
        submission.ip_subnet = ip_subnet_of(client_ip)
        submission.household_id = household_id_of(
            submission.ip_subnet, submission.timezone, submission.languages
        )
        incoming = submission.to_profile_fields()

        match_type = None
        match = self.device_matcher.find_best_match(incoming, self.store.find_candidates(incoming))
        if match:
            match_type = MATCH_TYPE_SAME_DEVICE
        else:
            members = self.store.find_household_members(submission.household_id)
            match = self.cross_device_matcher.find_best_match(incoming, members, now=now)
            if match:
                match_type = MATCH_TYPE_CROSS_DEVICE

        if match:
            visitor_id = match.visitor_id
        else:
            visitor_id = submission.visitor_id or str(uuid.uuid4())

        incoming["visitor_id"] = visitor_id
        profile_id = self.store.save_profile(incoming, now=now)
        self.store.upsert_household(submission.household_id, now=now)
        self.store.update_last_active(visitor_id, now=now)

        decision = MatchDecision(
            visitor_id=visitor_id,
            matched_visitor_id=match.visitor_id if match else None,
            confidence=match.confidence if match else 0.0,
            matched_signals=match.matched_signals if match else [],
            match_type=match_type,
            profile_id=profile_id
        )

        if match:
            logger.info(f"Visit resolved to {visitor_id} ({match_type}, confidence={decision.confidence:.2f})")
        else:
            logger.info(f"New visitor {visitor_id} from {submission.ip_subnet or 'unknown subnet'}")

        return decision
