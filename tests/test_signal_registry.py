"""
Signal Registry Tests
=====================

Tests for descriptor validation and entropy/stability aggregation.
"""

import pytest

from core.fingerprinting.registry import DEFAULT_REGISTRY, SignalModuleDescriptor, SignalRegistry
from core.fingerprinting.tier_composer import DEFAULT_TIERS


@pytest.fixture
def registry():
    return SignalRegistry([
        SignalModuleDescriptor("hardware", 6, 99, True),
        SignalModuleDescriptor("timezone", 3, 98),
        SignalModuleDescriptor("fonts", 7, 92),
    ])


class TestValidation:
    """Test descriptor validation."""

    def test_duplicate_name_rejected(self):
        """Module names are unique."""
        with pytest.raises(ValueError):
            SignalRegistry([
                SignalModuleDescriptor("audio", 6, 85),
                SignalModuleDescriptor("audio", 5, 80),
            ])

    def test_negative_entropy_rejected(self):
        """Entropy is non-negative."""
        with pytest.raises(ValueError):
            SignalRegistry([SignalModuleDescriptor("audio", -1, 85)])

    @pytest.mark.parametrize("stability", [-0.1, 100.5])
    def test_stability_out_of_range_rejected(self, stability):
        """Stability lies in [0, 100]."""
        with pytest.raises(ValueError):
            SignalRegistry([SignalModuleDescriptor("audio", 6, stability)])

    def test_descriptor_is_immutable(self):
        """Descriptors cannot be modified after registration."""
        descriptor = SignalModuleDescriptor("audio", 6, 85)
        with pytest.raises(AttributeError):
            descriptor.entropy_bits = 10


class TestAggregation:
    """Test entropy and stability aggregation."""

    def test_total_entropy(self, registry):
        """Entropy is additive over named modules."""
        assert registry.total_entropy(["hardware", "fonts"]) == 13

    def test_unknown_names_ignored(self, registry):
        """Unregistered names contribute nothing."""
        assert registry.total_entropy(["hardware", "nope"]) == 6

    def test_average_stability(self, registry):
        """Stability is the arithmetic mean."""
        assert registry.average_stability(["hardware", "timezone"]) == pytest.approx(98.5)

    def test_average_stability_empty(self, registry):
        """An empty selection has stability 0."""
        assert registry.average_stability([]) == 0.0

    def test_lookup(self, registry):
        """Descriptors are retrievable by name."""
        assert "timezone" in registry
        assert registry.get("timezone").entropy_bits == 3
        assert registry.get("missing") is None
        assert len(registry) == 3
        assert [d.name for d in registry.hardware_modules()] == ["hardware"]


class TestDefaultRegistry:
    """Test the built-in module table."""

    def test_every_tier_module_registered(self):
        """Each tier only references registered modules."""
        for tier in DEFAULT_TIERS:
            for name in tier.modules:
                assert name in DEFAULT_REGISTRY, f"{name} missing from registry"

    def test_network_probes_registered(self):
        """Household evidence probes are known modules."""
        for name in ("webrtc", "battery", "loginDetect", "lanTopology", "mouse", "dns-probe"):
            assert name in DEFAULT_REGISTRY
