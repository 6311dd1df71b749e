#!/usr/bin/env python3
"""
PEHCHAAN Flask API
==================

HTTP surface of the matching service.

Features:
- Visit submission and matching (/fingerprint)
- Mouse-dynamics patching
- Server-held identity token (ETag channel)
- DNS-probe list and ultrasonic pairing (weak household evidence)
- Per-client rate limiting, statistics and health check

Author: Team PEHCHAAN
"""

import secrets
import sqlite3
import time
from datetime import datetime
from typing import Optional

from flask import Flask, jsonify, request
from flask_cors import CORS
from loguru import logger
from werkzeug.middleware.proxy_fix import ProxyFix

from core.identity_resolver import IdentityResolver
from core.profile_store import ProfileStore
from core.rate_limiter import SlidingWindowRateLimiter
from core.submission import InvalidSubmissionError, VisitSubmission, parse_mouse_update


DEFAULT_DNS_PROBE_DOMAIN = "probe.pehchaan.local"
PAIRING_CODE_SPACE = 65536


def create_app(config: dict, store: ProfileStore,
               resolver: Optional[IdentityResolver] = None,
               rate_limiter: Optional[SlidingWindowRateLimiter] = None) -> Flask:
    """
    Create and configure Flask application.

    Args:
        config: PEHCHAAN configuration dictionary
        store: Profile store
        resolver: Identity resolver (built from config if omitted)
        rate_limiter: Per-client limiter (built from config if omitted)

    Returns:
        Configured Flask app
    """
    app = Flask(__name__)

    # Configuration
    api_config = config.get("api", {})
    app.config["DEBUG"] = config.get("general", {}).get("debug", False)
    app.config["MAX_CONTENT_LENGTH"] = api_config.get("max_body_bytes", 50 * 1024)

    if api_config.get("trust_proxy", False):
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1)

    # Enable CORS (the identity token travels in the ETag header)
    CORS(app, origins=api_config.get("cors_origins", "*"), expose_headers=["ETag"])

    # Store component references
    app.config_data = config
    app.store = store
    app.resolver = resolver or IdentityResolver(config, store)
    app.rate_limiter = rate_limiter or SlidingWindowRateLimiter(config)
    app.url_prefix = "/" + api_config.get("url_prefix", "/api").strip("/")
    app.started_at = time.monotonic()

    # Register routes
    register_routes(app)
    register_error_handlers(app)

    logger.info(f"Flask app created successfully (prefix={app.url_prefix})")
    return app


def _error(message: str, status: int):
    return jsonify({"success": False, "error": message}), status


def _json_body() -> Optional[dict]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


def _extract_token(raw: Optional[str]) -> Optional[str]:
    """Strip weak-validator prefix and quotes from an If-None-Match value."""
    if not raw:
        return None
    token = raw.strip()
    if token.startswith("W/"):
        token = token[2:]
    token = token.strip('"')
    return token or None


def register_routes(app: Flask):
    """Register all REST API routes."""
    prefix = app.url_prefix
    probes_config = app.config_data.get("probes", {})
    maintenance_config = app.config_data.get("maintenance", {})

    @app.before_request
    def enforce_rate_limit():
        if not request.path.startswith(prefix):
            return None
        if not app.rate_limiter.allow(request.remote_addr or "unknown"):
            return _error("Too many requests, try again later", 429)
        return None

    # =========================================================================
    # API Routes - Fingerprint
    # =========================================================================

    @app.route(f"{prefix}/fingerprint", methods=["POST"])
    def submit_fingerprint():
        """Match a submitted visit and persist it."""
        submission = VisitSubmission.from_payload(request.get_json(silent=True))
        decision = app.resolver.resolve(submission, request.remote_addr)

        return jsonify({
            "success": True,
            **decision.to_response()
        })

    @app.route(f"{prefix}/fingerprint/mouse", methods=["POST"])
    def update_mouse():
        """Patch mouse-dynamics fields on the visitor's latest profile."""
        visitor_id, mouse = parse_mouse_update(request.get_json(silent=True))
        app.store.update_mouse(visitor_id, mouse)
        return jsonify({"success": True, "updated": True})

    # =========================================================================
    # API Routes - Identity Token
    # =========================================================================

    @app.route(f"{prefix}/identity-token", methods=["GET"])
    def resolve_identity_token():
        """Resolve a previously issued token back to its visitor id."""
        token = _extract_token(request.headers.get("If-None-Match") or
                               request.headers.get("X-Identity-Token"))
        visitor_id = app.store.get_token(token) if token else None
        if not visitor_id:
            return "", 204

        response = jsonify({"success": True, "visitorId": visitor_id, "token": token})
        response.set_etag(token)
        return response

    @app.route(f"{prefix}/identity-token", methods=["POST"])
    def store_identity_token():
        """Issue (or refresh) the token mapped to a visitor id."""
        data = _json_body()
        visitor_id = data.get("visitorId") if data else None
        if not visitor_id or not isinstance(visitor_id, str):
            return _error("visitorId is required", 400)

        token = app.store.set_token(visitor_id)
        response = jsonify({"success": True, "stored": True, "token": token})
        response.set_etag(token)
        return response

    # =========================================================================
    # API Routes - Weak Evidence
    # =========================================================================

    @app.route(f"{prefix}/dns-probes", methods=["GET"])
    def get_dns_probes():
        """Probe hostnames for recently active visitors."""
        domain = probes_config.get("dns_probe_domain", DEFAULT_DNS_PROBE_DOMAIN)
        limit = probes_config.get("dns_probe_limit", 10)
        recent = app.store.find_recent_profiles(
            minutes=probes_config.get("dns_probe_window_minutes", 30),
            limit=limit
        )
        probes = [f"{p['visitor_id'][:8]}.{domain}" for p in recent][:limit]
        return jsonify({"success": True, "probes": probes})

    @app.route(f"{prefix}/ultrasonic/pair", methods=["POST"])
    def ultrasonic_pair():
        """Emitter requests a 16-bit pairing code."""
        data = _json_body()
        visitor_id = data.get("visitorId") if data else None
        if not visitor_id or not isinstance(visitor_id, str):
            return _error("visitorId is required", 400)

        pairing_code = secrets.randbelow(PAIRING_CODE_SPACE)
        app.store.create_ultrasonic_session(pairing_code, visitor_id)
        logger.debug(f"Ultrasonic pairing code issued for {visitor_id}")
        return jsonify({"success": True, "pairingCode": pairing_code})

    @app.route(f"{prefix}/ultrasonic/confirm", methods=["POST"])
    def ultrasonic_confirm():
        """Receiver reports a detected pairing code."""
        data = _json_body()
        visitor_id = data.get("visitorId") if data else None
        if not visitor_id or not isinstance(visitor_id, str):
            return _error("visitorId is required", 400)

        pairing_code = data.get("pairingCode")
        if not isinstance(pairing_code, int) or isinstance(pairing_code, bool):
            return _error("pairingCode is required", 400)

        session = app.store.find_ultrasonic_session(
            pairing_code, ttl_seconds=maintenance_config.get("ultrasonic_session_ttl", 300)
        )
        if not session:
            return jsonify({
                "success": True,
                "matched": False,
                "reason": "No active session for this pairing code"
            })

        emitter = session["visitor_id"]
        logger.info(f"Ultrasonic pairing linked {visitor_id} -> {emitter}")
        return jsonify({
            "success": True,
            "matched": True,
            "emitterVisitorId": emitter,
            "receiverVisitorId": visitor_id,
            "linkedVisitorId": emitter
        })

    # =========================================================================
    # API Routes - Status
    # =========================================================================

    @app.route(f"{prefix}/stats")
    def get_stats():
        """Row counts and uptime."""
        return jsonify({
            "success": True,
            "status": "ok",
            **app.store.get_stats(),
            "uptime": round(time.monotonic() - app.started_at, 1)
        })

    @app.route(f"{prefix}/health")
    def health_check():
        """Health check endpoint."""
        return jsonify({
            "status": "healthy",
            "service": "PEHCHAAN",
            "version": app.config_data.get("general", {}).get("version", "1.0.0"),
            "timestamp": datetime.now().isoformat()
        })


def register_error_handlers(app: Flask):
    """Map domain and storage errors onto JSON responses."""

    @app.errorhandler(InvalidSubmissionError)
    def invalid_submission(e):
        logger.debug(f"Rejected submission: {e}")
        return jsonify({
            "success": False,
            "error": "Invalid submission",
            "problems": e.problems
        }), 400

    @app.errorhandler(sqlite3.Error)
    def storage_error(e):
        logger.exception(f"Storage failure on {request.method} {request.path}")
        return _error("Internal server error", 500)

    @app.errorhandler(404)
    def not_found(e):
        return _error("Not found", 404)

    @app.errorhandler(405)
    def method_not_allowed(e):
        return _error("Method not allowed", 405)

    @app.errorhandler(413)
    def payload_too_large(e):
        return _error("Request body too large", 413)

    @app.errorhandler(500)
    def internal_error(e):
        return _error("Internal server error", 500)
