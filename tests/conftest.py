"""
PEHCHAAN Test Fixtures
======================

Shared pytest fixtures for matcher, store, resolver, persistence and API
tests.
"""

import pytest
import sys
from pathlib import Path
from unittest.mock import Mock
from datetime import datetime, timezone

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def test_config(tmp_path):
    """Basic test configuration."""
    return {
        "general": {
            "app_name": "PEHCHAAN",
            "version": "1.0.0",
            "debug": True,
            "log_level": "DEBUG"
        },
        "api": {
            "host": "127.0.0.1",
            "port": 15000,
            "url_prefix": "/api",
            "cors_origins": "*",
            "trust_proxy": False,
            "max_body_bytes": 51200
        },
        "database": {
            "path": str(tmp_path / "pehchaan.db")
        },
        "matching": {
            "same_device_threshold": 0.70,
            "cross_device_threshold": 0.55,
            "audio_tolerance": 0.01,
            "wheel_delta_tolerance": 0.05,
            "candidate_fallback_limit": 500
        },
        "rate_limit": {
            "enabled": True,
            "max_requests": 120,
            "window_seconds": 60,
            "sweep_interval": 300
        },
        "maintenance": {
            "enabled": True,
            "prune_interval": 21600,
            "duplicate_retention_days": 7,
            "stale_retention_days": 90,
            "token_retention_days": 90,
            "ultrasonic_session_ttl": 300
        },
        "probes": {
            "dns_probe_domain": "probe.test",
            "dns_probe_window_minutes": 30,
            "dns_probe_limit": 10
        }
    }


@pytest.fixture
def fixed_now():
    """Deterministic reference time."""
    return FIXED_NOW


@pytest.fixture
def profile_store(test_config):
    """SQLite profile store in a temporary directory."""
    from core.profile_store import ProfileStore
    return ProfileStore(test_config)


@pytest.fixture
def stored_profile():
    """Factory for stored profile rows (profile field names)."""
    def make(**overrides):
        profile = {
            "id": 1,
            "visitor_id": "aaaaaaaa-1111-4111-8111-111111111111",
            "fingerprint": "f" * 32,
            "device_id": "d" * 32,
            "browser_id": "b" * 32,
            "ip": "192.168.1.20",
            "ip_subnet": "192.168.1",
            "audio_sum": 100.0,
            "timezone": "Asia/Kolkata",
            "timezone_offset": -330,
            "languages": '["en-IN","hi"]',
            "screen_width": 1920,
            "screen_height": 1080,
            "hardware_concurrency": 8,
            "device_memory": 8,
            "platform": "Linux x86_64",
            "touch_support": 0,
            "color_depth": 24,
            "pointer_type": "mouse",
            "wheel_delta_y": 100.0,
            "household_id": "h" * 64,
            "local_subnet": "192.168.1",
            "login_bitmask": "10110010",
            "lan_topology": "1110100011",
            "last_active": "2026-03-01 11:58:00"
        }
        profile.update(overrides)
        return profile
    return make


@pytest.fixture
def incoming_profile(stored_profile):
    """Factory for incoming visits: the stored profile without row metadata."""
    def make(**overrides):
        profile = stored_profile(**overrides)
        profile.pop("id", None)
        profile.pop("last_active", None)
        return profile
    return make


@pytest.fixture
def sample_payload():
    """Valid POST /fingerprint body."""
    return {
        "fingerprint": "f" * 32,
        "deviceId": "d" * 32,
        "browserId": "b" * 32,
        "audioSum": 124.04347527516074,
        "timezone": "Asia/Kolkata",
        "timezoneOffset": -330,
        "languages": ["en-IN", "hi"],
        "screenWidth": 1920,
        "screenHeight": 1080,
        "hardwareConcurrency": 8,
        "deviceMemory": 8,
        "platform": "Linux x86_64",
        "touchSupport": 0,
        "colorDepth": 24,
        "pointerType": "mouse",
        "localSubnet": "192.168.1"
    }


@pytest.fixture
def app(test_config, profile_store):
    """Flask app backed by the temporary store."""
    from api.app import create_app
    app = create_app(test_config, profile_store)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def mock_identity_client():
    """Mock IdentityClient with an in-memory token table."""
    tokens = {}
    client = Mock()

    def store_token(visitor_id):
        token = f"tok-{len(tokens) + 1}"
        tokens[token] = visitor_id
        return token

    client.store_token = Mock(side_effect=store_token)
    client.resolve_token = Mock(side_effect=lambda token: tokens.get(token))
    client.tokens = tokens
    return client
