"""
Fingerprinter

Client-side orchestration of one visit:
collect -> compose tiers -> resolve local identity -> submit -> reconcile.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from loguru import logger

from core.identity_client import IdentityClient, IdentityServiceError
from core.persistence.visitor_id_manager import ResolvedIdentity, VisitorIdManager
from .collection_runner import CollectionResult, CollectionRunner
from .submission_builder import build_submission
from .tier_composer import TieredIdentifierComposer, TieredIdentifiers


@dataclass
class VisitReport:
    """Everything produced by one identify() call"""
    visitor_id: str
    collection: CollectionResult
    identifiers: TieredIdentifiers
    local_identity: ResolvedIdentity
    payload: Dict[str, Any] = field(default_factory=dict)
    server_response: Optional[Dict[str, Any]] = None
    reconciled: Optional[ResolvedIdentity] = None

    @property
    def online(self) -> bool:
        return self.server_response is not None

    def to_dict(self) -> dict:
        return {
            "visitor_id": self.visitor_id,
            "identifiers": self.identifiers.to_dict(),
            "collection": self.collection.to_dict(),
            "local_identity": self.local_identity.to_dict(),
            "server_response": self.server_response,
            "reconciled": self.reconciled.to_dict() if self.reconciled else None
        }


class Fingerprinter:
    """
    Runs the full client flow.

    Without a client (or when the service is unreachable) the locally
    resolved identifier is kept.
    """

    def __init__(self, runner: CollectionRunner, composer: TieredIdentifierComposer,
                 id_manager: VisitorIdManager, client: Optional[IdentityClient] = None):
        self.runner = runner
        self.composer = composer
        self.id_manager = id_manager
        self.client = client
        self.paired_visitor_id: Optional[str] = None

    def confirm_pairing(self, visitor_id: str, pairing_code: int) -> Optional[str]:
        """
        Report an ultrasonic pairing code heard by this device.

        On a match the emitter's visitor id is remembered and sent as
        pairedVisitorId with every later submission.

        Returns:
            Linked (emitter) visitor id, or None if not matched
        """
        if self.client is None:
            return None

        try:
            data = self.client.confirm_pairing(visitor_id, pairing_code)
        except IdentityServiceError as e:
            logger.warning(f"Pairing confirmation failed: {e}")
            return None

        if not data.get("matched"):
            logger.debug(f"Pairing code not matched: {data.get('reason')}")
            return None

        self.paired_visitor_id = data.get("linkedVisitorId") or data.get("emitterVisitorId")
        logger.info(f"Paired with visitor {self.paired_visitor_id}")
        return self.paired_visitor_id

    def identify(self) -> VisitReport:
        collection = self.runner.run()
        identifiers = self.composer.compose(collection.components)
        local_identity = self.id_manager.resolve()

        report = VisitReport(
            visitor_id=local_identity.visitor_id,
            collection=collection,
            identifiers=identifiers,
            local_identity=local_identity
        )
        report.payload = build_submission(collection, identifiers, local_identity.visitor_id,
                                          self.paired_visitor_id)

        if self.client is None:
            return report

        try:
            report.server_response = self.client.submit(report.payload)
        except IdentityServiceError as e:
            logger.warning(f"Submission failed, keeping local visitor id: {e}")
            return report

        server_visitor_id = report.server_response.get("visitorId")
        if server_visitor_id and server_visitor_id != local_identity.visitor_id:
            logger.info(f"Server assigned visitor id {server_visitor_id} "
                        f"(local was {local_identity.visitor_id})")
            report.reconciled = self.id_manager.reconcile(server_visitor_id)
            report.visitor_id = server_visitor_id

        return report
