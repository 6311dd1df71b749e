"""
Signal Registry

Static table of signal module descriptors. Each descriptor carries the
module name, an additive entropy estimate (bits) and the empirical
stability percentage across repeated runs on the same device.

The registry is built once at startup and passed by reference to the
Collection Runner and the Tiered Identifier Composer.
"""

from dataclasses import dataclass, asdict
from typing import Dict, Iterable, List, Optional


@dataclass(frozen=True)
class SignalModuleDescriptor:
    """Immutable metadata for one signal module"""
    name: str
    entropy_bits: float
    stability_percent: float
    hardware_based: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class SignalRegistry:
    """
    Immutable lookup table of signal module descriptors.

    Raises ValueError on duplicate names, negative entropy or a
    stability percentage outside [0, 100].
    """

    def __init__(self, descriptors: Iterable[SignalModuleDescriptor]):
        modules: Dict[str, SignalModuleDescriptor] = {}

        for descriptor in descriptors:
            if descriptor.name in modules:
                raise ValueError(f"Duplicate signal module: {descriptor.name}")
            if descriptor.entropy_bits < 0:
                raise ValueError(f"Negative entropy for module {descriptor.name}")
            if not 0 <= descriptor.stability_percent <= 100:
                raise ValueError(f"Stability out of range for module {descriptor.name}")
            modules[descriptor.name] = descriptor

        self._modules = modules

    def __contains__(self, name: str) -> bool:
        return name in self._modules

    def __len__(self) -> int:
        return len(self._modules)

    def __iter__(self):
        return iter(self._modules.values())

    def get(self, name: str) -> Optional[SignalModuleDescriptor]:
        return self._modules.get(name)

    def names(self) -> List[str]:
        return list(self._modules.keys())

    def hardware_modules(self) -> List[SignalModuleDescriptor]:
        return [d for d in self._modules.values() if d.hardware_based]

    def total_entropy(self, names: Iterable[str]) -> float:
        """Sum of entropy bits over the named modules (unknown names ignored)."""
        return sum(self._modules[n].entropy_bits for n in names if n in self._modules)

    def average_stability(self, names: Iterable[str]) -> float:
        """Arithmetic mean stability over the named modules, 0.0 when empty."""
        values = [self._modules[n].stability_percent for n in names if n in self._modules]
        if not values:
            return 0.0
        return sum(values) / len(values)


# Known modules (name, entropy bits, stability %, hardware-based)
DEFAULT_MODULES = [
    # Cross-engine hardware probes
    SignalModuleDescriptor("floating-point", 5, 95, True),
    SignalModuleDescriptor("webgl-capabilities", 4, 90, True),
    SignalModuleDescriptor("perf-ratios", 4, 85, True),
    SignalModuleDescriptor("screen-aspect", 3, 92, True),
    SignalModuleDescriptor("hardware", 6, 99, True),
    SignalModuleDescriptor("canvas-properties", 2, 95, True),
    SignalModuleDescriptor("touch-capabilities", 1, 99, True),
    SignalModuleDescriptor("color-depth", 2, 98, True),

    # Broader cross-engine signals
    SignalModuleDescriptor("screen", 8, 95, True),
    SignalModuleDescriptor("timezone", 3, 98, False),
    SignalModuleDescriptor("fonts", 7, 92, False),
    SignalModuleDescriptor("media-devices", 5, 85, True),
    SignalModuleDescriptor("webgpu", 18, 90, True),

    # Engine-specific signals
    SignalModuleDescriptor("webgl", 12, 95, True),
    SignalModuleDescriptor("webgl-render", 10, 95, True),
    SignalModuleDescriptor("canvas", 8, 90, True),
    SignalModuleDescriptor("audio", 6, 85, True),
    SignalModuleDescriptor("navigator", 6, 90, False),
    SignalModuleDescriptor("intl", 4, 95, False),
    SignalModuleDescriptor("math", 3, 99, False),
    SignalModuleDescriptor("css-supports", 10, 98, False),
    SignalModuleDescriptor("speech-synthesis", 5, 95, False),
    SignalModuleDescriptor("system", 4, 90, False),
    SignalModuleDescriptor("performance", 5, 80, True),

    # Network and behaviour probes (excluded from every tier)
    SignalModuleDescriptor("webrtc", 6, 70, False),
    SignalModuleDescriptor("battery", 2, 20, True),
    SignalModuleDescriptor("loginDetect", 8, 60, False),
    SignalModuleDescriptor("lanTopology", 6, 65, False),
    SignalModuleDescriptor("mouse", 3, 80, True),
    SignalModuleDescriptor("dns-probe", 0, 50, False),
]

DEFAULT_REGISTRY = SignalRegistry(DEFAULT_MODULES)
