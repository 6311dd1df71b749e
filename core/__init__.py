"""
PEHCHAAN Core Modules
=====================

Probabilistic visitor identity: tiered identifiers, same-device and
household matching, persistence and maintenance.

Modules:
- fingerprinting: Signal registry, collection, tiers and matchers
- persistence: Client-side multi-backend visitor id storage
- submission: Validation of submitted visits
- identity_resolver: Server-side match pipeline
- profile_store: SQLite profiles, households, tokens
- rate_limiter: Per-client sliding window limiter
- maintenance: Background pruning and sweeps
- identity_client: HTTP client for the matching API
"""

from .submission import VisitSubmission, InvalidSubmissionError
from .profile_store import ProfileStore, PruneResult
from .identity_resolver import IdentityResolver, MatchDecision
from .rate_limiter import SlidingWindowRateLimiter
from .maintenance import MaintenanceScheduler
from .identity_client import IdentityClient, IdentityServiceError

__all__ = [
    "VisitSubmission",
    "InvalidSubmissionError",
    "ProfileStore",
    "PruneResult",
    "IdentityResolver",
    "MatchDecision",
    "SlidingWindowRateLimiter",
    "MaintenanceScheduler",
    "IdentityClient",
    "IdentityServiceError"
]

__version__ = "1.0.0"
