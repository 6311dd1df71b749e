"""
PEHCHAAN Signal Fingerprinting Module

This module turns weak client signals into identifiers and match decisions:
- Registry: static entropy/stability metadata per signal module
- Collection: concurrent module runs with per-module deadlines
- Tiers: device / browser / fingerprint identifiers
- Matching: same-device and household (cross-device) comparators

Same-device threshold 0.70, household threshold 0.55.
"""

from .registry import SignalModuleDescriptor, SignalRegistry, DEFAULT_REGISTRY
from .collection_runner import SignalModule, CollectionRunner, CollectionResult, ModuleOutcome
from .tier_composer import TieredIdentifierComposer, TieredIdentifiers, TierDefinition, DEFAULT_TIERS
from .device_matcher import DeviceMatcher, MatchResult, MatchScore
from .cross_device_matcher import CrossDeviceMatcher
from .submission_builder import build_submission
from .fingerprinter import Fingerprinter, VisitReport

__all__ = [
    'SignalModuleDescriptor',
    'SignalRegistry',
    'DEFAULT_REGISTRY',
    'SignalModule',
    'CollectionRunner',
    'CollectionResult',
    'ModuleOutcome',
    'TieredIdentifierComposer',
    'TieredIdentifiers',
    'TierDefinition',
    'DEFAULT_TIERS',
    'DeviceMatcher',
    'MatchResult',
    'MatchScore',
    'CrossDeviceMatcher',
    'build_submission',
    'Fingerprinter',
    'VisitReport'
]
