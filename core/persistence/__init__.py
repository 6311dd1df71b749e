"""
PEHCHAAN Client-Side Persistence
================================

Multi-backend visitor identifier storage with majority-vote resolution.
"""

from .storage_backends import (
    StorageBackend,
    MemoryBackend,
    JsonFileBackend,
    SQLiteBackend,
    EnvironmentBackend,
    ServerTokenBackend,
)
from .visitor_id_manager import VisitorIdManager, ResolvedIdentity, majority_vote

__all__ = [
    "StorageBackend",
    "MemoryBackend",
    "JsonFileBackend",
    "SQLiteBackend",
    "EnvironmentBackend",
    "ServerTokenBackend",
    "VisitorIdManager",
    "ResolvedIdentity",
    "majority_vote",
]
