#!/usr/bin/env python3
"""
PEHCHAAN Visit Submission Schema
================================

Parses and validates the flat JSON body a client posts to /fingerprint.

This module provides:
- VisitSubmission: typed view of one submitted visit
- Validation with a list of human-readable problems
- Conversion to profile field names used by the matchers and the store

Author: Team PEHCHAAN
"""

import math
import numbers
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Tuple

from core.fingerprinting.device_matcher import canonical_languages


class InvalidSubmissionError(ValueError):
    """Raised when a submitted body is malformed or incomplete."""

    def __init__(self, problems: List[str]):
        self.problems = problems
        super().__init__("; ".join(problems))


# Payload key -> (profile field, expected kind)
PAYLOAD_FIELDS = {
    "visitorId": ("visitor_id", "str"),
    "fingerprint": ("fingerprint", "str"),
    "deviceId": ("device_id", "str"),
    "browserId": ("browser_id", "str"),
    "audioSum": ("audio_sum", "number"),
    "timezone": ("timezone", "str"),
    "timezoneOffset": ("timezone_offset", "number"),
    "languages": ("languages", "languages"),
    "screenWidth": ("screen_width", "number"),
    "screenHeight": ("screen_height", "number"),
    "hardwareConcurrency": ("hardware_concurrency", "number"),
    "deviceMemory": ("device_memory", "number"),
    "platform": ("platform", "str"),
    "touchSupport": ("touch_support", "flag"),
    "colorDepth": ("color_depth", "number"),
    "pointerType": ("pointer_type", "str"),
    "wheelDeltaY": ("wheel_delta_y", "number"),
    "localSubnet": ("local_subnet", "str"),
    "batteryLevel": ("battery_level", "number"),
    "batteryCharging": ("battery_charging", "flag"),
    "loginBitmask": ("login_bitmask", "str"),
    "lanTopology": ("lan_topology", "str"),
    "dnsProbes": ("dns_probes", "str_list"),
    "pairedVisitorId": ("paired_visitor_id", "str"),
}

IDENTIFIER_KEYS = ("fingerprint", "deviceId", "browserId")

# Mouse payload key -> (profile column, expected kind)
MOUSE_FIELDS = {
    "pointerType": ("pointer_type", "str"),
    "wheelDeltaY": ("wheel_delta_y", "number"),
    "wheelDeltaMode": ("wheel_delta_mode", "int"),
    "smoothScroll": ("smooth_scroll", "flag"),
    "movementMinStep": ("movement_min_step", "number"),
}

SQLITE_MAX_INTEGER = 2 ** 63 - 1


def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def _in_range(value: numbers.Real) -> bool:
    """Finite and storable as an SQLite INTEGER/REAL."""
    if isinstance(value, numbers.Integral):
        return abs(value) <= SQLITE_MAX_INTEGER
    return math.isfinite(value)


def _coerce(key: str, kind: str, value: Any, problems: List[str]) -> Any:
    if value is None:
        return None

    if kind == "str":
        if not isinstance(value, str):
            problems.append(f"{key} must be a string")
            return None
        return value or None

    if kind == "number":
        if not _is_number(value):
            problems.append(f"{key} must be a number")
            return None
        if not _in_range(value):
            problems.append(f"{key} is out of range")
            return None
        return value

    if kind == "int":
        if not _is_number(value) or not _in_range(value) or value != int(value):
            problems.append(f"{key} must be an integer")
            return None
        return int(value)

    if kind == "flag":
        if isinstance(value, bool):
            return 1 if value else 0
        if _is_number(value) and value in (0, 1):
            return int(value)
        problems.append(f"{key} must be a boolean or 0/1")
        return None

    if kind == "languages":
        if isinstance(value, list) and all(isinstance(v, str) for v in value):
            return canonical_languages(value)
        if isinstance(value, str):
            return canonical_languages(value)
        problems.append(f"{key} must be a list of strings or a string")
        return None

    if kind == "str_list":
        if isinstance(value, list) and all(isinstance(v, str) for v in value):
            return value
        problems.append(f"{key} must be a list of strings")
        return None

    return value


@dataclass
class VisitSubmission:
    """One visit as submitted by a client (server-derived fields filled later)."""

    # Identifiers
    visitor_id: Optional[str] = None
    fingerprint: Optional[str] = None
    device_id: Optional[str] = None
    browser_id: Optional[str] = None

    # Comparable signals
    audio_sum: Optional[float] = None
    timezone: Optional[str] = None
    timezone_offset: Optional[int] = None
    languages: Optional[str] = None
    screen_width: Optional[int] = None
    screen_height: Optional[int] = None
    hardware_concurrency: Optional[int] = None
    device_memory: Optional[float] = None
    platform: Optional[str] = None
    touch_support: Optional[int] = None
    color_depth: Optional[int] = None
    pointer_type: Optional[str] = None
    wheel_delta_y: Optional[float] = None

    # Household / network evidence
    local_subnet: Optional[str] = None
    battery_level: Optional[float] = None
    battery_charging: Optional[int] = None
    login_bitmask: Optional[str] = None
    lan_topology: Optional[str] = None
    dns_probes: List[str] = field(default_factory=list)
    paired_visitor_id: Optional[str] = None

    # Server-derived
    ip: Optional[str] = None
    ip_subnet: Optional[str] = None
    household_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "VisitSubmission":
        """
        Build a submission from a decoded JSON body.

        Raises:
            InvalidSubmissionError: if the body is not an object, carries no
                identifier, or has fields of the wrong type
        """
        if not isinstance(payload, dict):
            raise InvalidSubmissionError(["Request body must be a JSON object"])

        problems: List[str] = []
        values: Dict[str, Any] = {}

        for key, (attr, kind) in PAYLOAD_FIELDS.items():
            value = _coerce(key, kind, payload.get(key), problems)
            if value is not None:
                values[attr] = value

        if not any(isinstance(payload.get(k), str) and payload.get(k) for k in IDENTIFIER_KEYS):
            problems.append("At least one identifier (fingerprint, deviceId, browserId) is required")

        if problems:
            raise InvalidSubmissionError(problems)

        return cls(**values)

    def to_profile_fields(self) -> Dict[str, Any]:
        """Field map used by the matchers and ProfileStore.save_profile()."""
        return asdict(self)


def parse_mouse_update(payload: Any) -> Tuple[str, Dict[str, Any]]:
    """
    Validate a POST /fingerprint/mouse body.

    Returns:
        (visitor_id, profile column -> value) for the fields present

    Raises:
        InvalidSubmissionError: if visitorId is missing or a field has the wrong type
    """
    if not isinstance(payload, dict):
        raise InvalidSubmissionError(["Request body must be a JSON object"])

    problems: List[str] = []
    visitor_id = payload.get("visitorId")
    if not isinstance(visitor_id, str) or not visitor_id:
        problems.append("visitorId is required")

    mouse: Dict[str, Any] = {}
    for key, (column, kind) in MOUSE_FIELDS.items():
        value = _coerce(key, kind, payload.get(key), problems)
        if value is not None:
            mouse[column] = value

    if problems:
        raise InvalidSubmissionError(problems)

    return visitor_id, mouse
