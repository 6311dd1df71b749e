"""
Submission Builder

Flattens collected module data into the camelCase body accepted by
POST /fingerprint. Modules that were unavailable simply leave their
fields out.
"""

from typing import Any, Callable, Dict, Mapping, Optional

from .collection_runner import CollectionResult
from .tier_composer import TieredIdentifiers


def _flag(value: Any) -> Optional[int]:
    if value is None:
        return None
    return 1 if value else 0


def _audio(data: Mapping[str, Any]) -> Dict[str, Any]:
    return {"audioSum": data.get("sampleSum", data.get("sum"))}


def _timezone(data: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "timezone": data.get("timezone"),
        "timezoneOffset": data.get("timezoneOffset")
    }


def _navigator(data: Mapping[str, Any]) -> Dict[str, Any]:
    languages = data.get("languages")
    return {
        "languages": list(languages) if isinstance(languages, (list, tuple)) else languages,
        "hardwareConcurrency": data.get("hardwareConcurrency"),
        "deviceMemory": data.get("deviceMemory"),
        "platform": data.get("platform")
    }


def _screen(data: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "screenWidth": data.get("width"),
        "screenHeight": data.get("height"),
        "colorDepth": data.get("colorDepth"),
        "touchSupport": _flag(data.get("touchSupport"))
    }


def _battery(data: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "batteryLevel": data.get("level"),
        "batteryCharging": _flag(data.get("charging"))
    }


def _mouse(data: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "pointerType": data.get("pointerType"),
        "wheelDeltaY": data.get("wheelDeltaY")
    }


# Module name -> extractor producing payload keys
EXTRACTORS: Dict[str, Callable[[Mapping[str, Any]], Dict[str, Any]]] = {
    "audio": _audio,
    "timezone": _timezone,
    "navigator": _navigator,
    "screen": _screen,
    "webrtc": lambda data: {"localSubnet": data.get("localSubnet")},
    "battery": _battery,
    "loginDetect": lambda data: {"loginBitmask": data.get("bitmask")},
    "lanTopology": lambda data: {"lanTopology": data.get("bitmask")},
    "mouse": _mouse,
    "dns-probe": lambda data: {"dnsProbes": data.get("probes")},
}


def build_submission(collection: CollectionResult, identifiers: TieredIdentifiers,
                     visitor_id: Optional[str] = None,
                     paired_visitor_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Build the POST /fingerprint body.

    Args:
        collection: Result of one collection run
        identifiers: Tier identifiers composed from the same run
        visitor_id: Locally resolved visitor id, if any
        paired_visitor_id: Emitter id from a confirmed ultrasonic pairing, if any

    Returns:
        Flat payload with None values dropped
    """
    payload: Dict[str, Any] = {
        "fingerprint": identifiers.fingerprint,
        "deviceId": identifiers.device_id,
        "browserId": identifiers.browser_id,
        "visitorId": visitor_id,
        "pairedVisitorId": paired_visitor_id
    }

    for name, extract in EXTRACTORS.items():
        data = collection.components.get(name)
        if isinstance(data, Mapping):
            payload.update(extract(data))

    return {key: value for key, value in payload.items() if value is not None}
