#!/usr/bin/env python3
"""
PEHCHAAN Identity Client
========================

HTTP client for the PEHCHAAN matching service.

Features:
- Visit submission and mouse-dynamics updates
- Server-held identity token (ETag channel) read/write
- DNS-probe list and ultrasonic pairing helpers

Author: Team PEHCHAAN
"""

from typing import Any, Dict, List, Optional

import requests
from loguru import logger


class IdentityServiceError(Exception):
    """Raised when the matching service is unreachable or answers with an error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class IdentityClient:
    """Thin requests-based wrapper over the /api routes."""

    def __init__(self, base_url: str, session: Optional[requests.Session] = None,
                 timeout: float = 10, url_prefix: str = "/api"):
        """
        Initialize identity client.

        Args:
            base_url: Service root (e.g. "http://localhost:5000")
            session: requests session (created if omitted)
            timeout: Per-request timeout in seconds
            url_prefix: Route prefix the service is mounted under
        """
        self.base_url = base_url.rstrip("/")
        self.url_prefix = "/" + url_prefix.strip("/") if url_prefix.strip("/") else ""
        self.session = session or requests.Session()
        self.timeout = timeout

    def _url(self, path: str) -> str:
        return f"{self.base_url}{self.url_prefix}/{path.lstrip('/')}"

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        try:
            response = self.session.request(method, self._url(path), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise IdentityServiceError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            try:
                detail = response.json().get("error", response.reason)
            except ValueError:
                detail = response.reason
            raise IdentityServiceError(f"{method} {path} returned {response.status_code}: {detail}",
                                       status_code=response.status_code)
        return response

    def _json(self, response: requests.Response) -> Dict[str, Any]:
        try:
            return response.json()
        except ValueError as e:
            raise IdentityServiceError(f"Invalid JSON from {response.url}") from e

    # =========================================================================
    # Fingerprint submission
    # =========================================================================

    def submit(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST /fingerprint; returns the match decision."""
        return self._json(self._request("POST", "fingerprint", json=payload))

    def update_mouse(self, visitor_id: str, data: Dict[str, Any]) -> bool:
        body = {"visitorId": visitor_id, **data}
        return bool(self._json(self._request("POST", "fingerprint/mouse", json=body)).get("updated"))

    # =========================================================================
    # Identity token
    # =========================================================================

    def resolve_token(self, token: str) -> Optional[str]:
        """GET /identity-token; visitor id for a token, None if unknown."""
        response = self._request("GET", "identity-token", headers={"If-None-Match": token})
        if response.status_code == 204:
            return None
        return self._json(response).get("visitorId")

    def store_token(self, visitor_id: str) -> str:
        """POST /identity-token; returns the issued token."""
        data = self._json(self._request("POST", "identity-token", json={"visitorId": visitor_id}))
        token = data.get("token") or ""
        if not token:
            raise IdentityServiceError("Identity token missing from response")
        return token

    # =========================================================================
    # Weak-evidence side channels
    # =========================================================================

    def fetch_dns_probes(self) -> List[str]:
        return list(self._json(self._request("GET", "dns-probes")).get("probes", []))

    def request_pairing(self, visitor_id: str) -> int:
        data = self._json(self._request("POST", "ultrasonic/pair", json={"visitorId": visitor_id}))
        return int(data["pairingCode"])

    def confirm_pairing(self, visitor_id: str, pairing_code: int) -> Dict[str, Any]:
        return self._json(self._request("POST", "ultrasonic/confirm",
                                        json={"visitorId": visitor_id, "pairingCode": pairing_code}))
