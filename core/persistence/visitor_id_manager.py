"""
Visitor ID Manager

Keeps one logical visitor identifier replicated across several storage
backends.

Resolution:
1. Probe availability (a raising probe counts as unavailable)
2. Read every available backend (a raising read counts as absent)
3. Majority vote over present values; ties go to the earliest backend
4. Generate a UUID4 only if no backend holds a value
5. Respawn: write the winner to every available backend
"""

import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from loguru import logger

from .storage_backends import StorageBackend


@dataclass
class ResolvedIdentity:
    """Outcome of one resolve/reconcile cycle"""
    visitor_id: str
    is_new: bool = False
    sources: List[str] = field(default_factory=list)     # backends that already held visitor_id
    healed: List[str] = field(default_factory=list)      # backends rewritten to visitor_id
    failed: List[str] = field(default_factory=list)      # unavailable or failed writes

    def to_dict(self) -> dict:
        return {
            "visitor_id": self.visitor_id,
            "is_new": self.is_new,
            "sources": self.sources,
            "healed": self.healed,
            "failed": self.failed
        }


def majority_vote(values: Sequence[Optional[str]]) -> Optional[str]:
    """
    Most frequent non-None value.

    Ties are broken by position: the value seen first wins.
    """
    counts: Dict[str, int] = {}
    for value in values:
        if value is not None:
            counts[value] = counts.get(value, 0) + 1

    winner = None
    best = 0
    for value, count in counts.items():
        if count > best:
            best = count
            winner = value
    return winner


class VisitorIdManager:
    """
    Majority-vote identifier store with self-healing writes.

    Backends are given in priority order; backend failures are never
    raised to the caller.
    """

    def __init__(self, backends: Sequence[StorageBackend],
                 id_factory: Optional[Callable[[], str]] = None):
        names = [b.name for b in backends]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate backend names: {names}")

        self.backends = list(backends)
        self.id_factory = id_factory or (lambda: str(uuid.uuid4()))

    def _available(self) -> List[StorageBackend]:
        available = []
        for backend in self.backends:
            try:
                if backend.is_available():
                    available.append(backend)
            except Exception as e:
                logger.debug(f"Availability probe failed for {backend.name}: {e}")
        return available

    def _read_all(self, backends: Sequence[StorageBackend]) -> Dict[str, Optional[str]]:
        reads: Dict[str, Optional[str]] = {}
        for backend in backends:
            try:
                value = backend.read()
            except Exception as e:
                logger.debug(f"Read failed for {backend.name}: {e}")
                value = None
            reads[backend.name] = value if isinstance(value, str) and value else None
        return reads

    def _respawn(self, visitor_id: str, available: Sequence[StorageBackend],
                 reads: Dict[str, Optional[str]], is_new: bool) -> ResolvedIdentity:
        result = ResolvedIdentity(visitor_id=visitor_id, is_new=is_new)
        available_names = {b.name for b in available}
        result.failed = [b.name for b in self.backends if b.name not in available_names]

        for backend in available:
            if reads.get(backend.name) == visitor_id:
                result.sources.append(backend.name)

            try:
                backend.write(visitor_id)
            except Exception as e:
                logger.debug(f"Respawn write failed for {backend.name}: {e}")
                result.failed.append(backend.name)
                continue

            if reads.get(backend.name) != visitor_id:
                result.healed.append(backend.name)

        if result.healed:
            logger.info(f"Respawned visitor id into {', '.join(result.healed)}")
        return result

    def resolve(self) -> ResolvedIdentity:
        """Resolve the canonical identifier and repair every reachable backend."""
        available = self._available()
        reads = self._read_all(available)

        visitor_id = majority_vote([reads[b.name] for b in available])
        is_new = visitor_id is None
        if is_new:
            visitor_id = self.id_factory()
            logger.info(f"No stored visitor id found, generated {visitor_id}")

        return self._respawn(visitor_id, available, reads, is_new)

    def reconcile(self, visitor_id: str) -> ResolvedIdentity:
        """Adopt an externally assigned identifier (e.g. the server's) and respawn it."""
        if not visitor_id:
            raise ValueError("visitor_id is required")

        available = self._available()
        reads = self._read_all(available)
        return self._respawn(visitor_id, available, reads, is_new=False)
