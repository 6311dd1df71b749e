"""
Tiered Identifier Composer

Partitions collected module outputs into named tiers and hashes each tier
into its own identifier:

- device:      minimal cross-engine tier (hardware limits only)
- browser:     broader cross-engine tier (device tier + display/locale)
- fingerprint: full browser-specific tier

Each tier is canonicalized (keys sorted recursively), serialized to
compact JSON and hashed with SHA-256 truncated to 32 hex chars. When the
digest algorithm is unavailable, a 32-bit FNV-1a hash is used instead.
"""

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from loguru import logger

from .registry import SignalRegistry


IDENTIFIER_LENGTH = 32
DIGEST_ALGORITHM = "sha256"

FNV_OFFSET_BASIS = 0x811C9DC5
FNV_PRIME = 0x01000193

DEVICE_TIER_MODULES = (
    'floating-point',
    'webgl-capabilities',
    'perf-ratios',
    'screen-aspect',
    'hardware',
    'canvas-properties',
    'touch-capabilities',
    'color-depth',
)

BROWSER_TIER_MODULES = DEVICE_TIER_MODULES + (
    'screen',
    'timezone',
    'fonts',
    'media-devices',
    'webgpu',
)

FINGERPRINT_TIER_MODULES = BROWSER_TIER_MODULES + (
    'webgl',
    'webgl-render',
    'canvas',
    'audio',
    'navigator',
    'intl',
    'math',
    'css-supports',
    'speech-synthesis',
    'system',
    'performance',
)


@dataclass(frozen=True)
class TierDefinition:
    """Named, ordered set of module names forming one identifier"""
    name: str
    modules: Tuple[str, ...]


# Ordered from most cross-engine-stable to most engine-specific
DEFAULT_TIERS = (
    TierDefinition('device', DEVICE_TIER_MODULES),
    TierDefinition('browser', BROWSER_TIER_MODULES),
    TierDefinition('fingerprint', FINGERPRINT_TIER_MODULES),
)


@dataclass
class TierIdentifier:
    """Identifier and quality metrics for one tier"""
    name: str
    identifier: Optional[str]
    modules: List[str] = field(default_factory=list)
    entropy_bits: float = 0.0
    stability: float = 0.0

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'identifier': self.identifier,
            'modules': self.modules,
            'entropy_bits': self.entropy_bits,
            'stability': self.stability
        }


@dataclass
class TieredIdentifiers:
    """All tier identifiers produced from one collection"""
    tiers: Dict[str, TierIdentifier] = field(default_factory=dict)

    def identifier(self, tier_name: str) -> Optional[str]:
        tier = self.tiers.get(tier_name)
        return tier.identifier if tier else None

    @property
    def device_id(self) -> Optional[str]:
        return self.identifier('device')

    @property
    def browser_id(self) -> Optional[str]:
        return self.identifier('browser')

    @property
    def fingerprint(self) -> Optional[str]:
        return self.identifier('fingerprint')

    def to_dict(self) -> dict:
        return {name: tier.to_dict() for name, tier in self.tiers.items()}


def canonicalize(components: Mapping[str, Any]) -> str:
    """Deterministic serialization, independent of key insertion order."""
    return json.dumps(components, sort_keys=True, separators=(',', ':'),
                      ensure_ascii=False, default=str)


def fnv1a_32(text: str) -> str:
    """32-bit FNV-1a rolling hash as 8 hex chars."""
    value = FNV_OFFSET_BASIS
    for byte in text.encode('utf-8'):
        value ^= byte
        value = (value * FNV_PRIME) & 0xFFFFFFFF
    return f"{value:08x}"


def hash_canonical(text: str, algorithm: str = DIGEST_ALGORITHM,
                   length: int = IDENTIFIER_LENGTH) -> str:
    """Hash canonical text, falling back to FNV-1a if the digest is unsupported."""
    try:
        digest = hashlib.new(algorithm, text.encode('utf-8')).hexdigest()
    except ValueError:
        logger.warning(f"Digest '{algorithm}' unavailable - using FNV-1a fallback")
        return fnv1a_32(text)
    return digest[:length]


class TieredIdentifierComposer:
    """
    Composes one identifier per tier from collected components.

    Guarantees:
    - Identical module output always yields an identical identifier
    - A missing module only affects the tiers it belongs to
    """

    def __init__(self, registry: SignalRegistry,
                 tiers: Sequence[TierDefinition] = DEFAULT_TIERS,
                 algorithm: str = DIGEST_ALGORITHM):
        self.registry = registry
        self.tiers = tuple(tiers)
        self.algorithm = algorithm

        names = [t.name for t in self.tiers]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate tier names: {names}")

    def compose(self, components: Mapping[str, Any]) -> TieredIdentifiers:
        """
        Build every tier identifier.

        Args:
            components: Module name -> collected data (unavailable modules absent or None)

        Returns:
            TieredIdentifiers keyed by tier name
        """
        result = TieredIdentifiers()

        for tier in self.tiers:
            result.tiers[tier.name] = self.compose_tier(tier, components)

        return result

    def compose_tier(self, tier: TierDefinition, components: Mapping[str, Any]) -> TierIdentifier:
        participating = {
            name: components[name]
            for name in tier.modules
            if components.get(name) is not None
        }
        modules = sorted(participating.keys())

        if not participating:
            logger.debug(f"Tier '{tier.name}': no participating modules")
            return TierIdentifier(tier.name, None)

        identifier = hash_canonical(canonicalize(participating), self.algorithm)
        entropy = self.registry.total_entropy(modules)
        stability = round(self.registry.average_stability(modules), 1)

        logger.debug(f"Tier '{tier.name}': {len(modules)} modules, "
                     f"entropy={entropy:.1f} bits, stability={stability}%")

        return TierIdentifier(tier.name, identifier, modules, entropy, stability)
