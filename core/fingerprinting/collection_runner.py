"""
Collection Runner

Runs every available signal module concurrently, each raced against a
per-module deadline. A module that raises, times out or reports itself
unavailable is recorded as such and excluded from the components map;
the batch itself never aborts.

Confidence Formula:
confidence = min(100, entropy_bits / 40 * 100) * 0.6 + stability * 0.4
"""

import time
from abc import ABC, abstractmethod
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from loguru import logger

from .registry import SignalRegistry


# Outcome statuses
COLLECTED = "collected"
UNAVAILABLE = "unavailable"
FAILED = "failed"
TIMEOUT = "timeout"

# Entropy at which the entropy score saturates at 100
ENTROPY_SATURATION_BITS = 40.0


class SignalModule(ABC):
    """Opaque signal collector capability"""

    name: str = ""

    @abstractmethod
    def is_available(self) -> bool:
        """Return True if the underlying API is present."""
        pass

    @abstractmethod
    def collect(self) -> Any:
        """Collect the signal data (must be JSON-serializable)."""
        pass


@dataclass
class ModuleOutcome:
    """Per-module success/failure metadata"""
    name: str
    status: str
    duration_ms: float = 0.0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'status': self.status,
            'duration_ms': round(self.duration_ms, 2),
            'error': self.error
        }


@dataclass
class CollectionResult:
    """Aggregated output of one collection run"""
    components: Dict[str, Any] = field(default_factory=dict)
    outcomes: Dict[str, ModuleOutcome] = field(default_factory=dict)
    entropy_bits: float = 0.0
    stability: float = 0.0
    confidence: float = 0.0
    duration_ms: float = 0.0

    @property
    def failed_modules(self) -> List[str]:
        return sorted(name for name, o in self.outcomes.items() if o.status != COLLECTED)

    def to_dict(self) -> dict:
        return {
            'components': self.components,
            'outcomes': {k: v.to_dict() for k, v in self.outcomes.items()},
            'entropy_bits': self.entropy_bits,
            'stability': self.stability,
            'confidence': self.confidence,
            'failed_modules': self.failed_modules,
            'duration_ms': round(self.duration_ms, 2)
        }


def calculate_confidence(entropy_bits: float, stability: float) -> float:
    """Blend entropy and stability into a 0-100 confidence value."""
    entropy_score = min(100.0, (entropy_bits / ENTROPY_SATURATION_BITS) * 100.0)
    return round(entropy_score * 0.6 + stability * 0.4, 1)


class CollectionRunner:
    """
    Runs signal modules concurrently with a per-module deadline.

    Process:
    1. Probe capability for every module (probe errors count as unavailable)
    2. Submit available modules to a thread pool
    3. Each module's deadline starts when a worker picks it up
    4. Modules still running at their deadline are recorded as TIMEOUT
    """

    def __init__(self, registry: SignalRegistry, modules: Iterable[SignalModule],
                 capability_check: Optional[Callable[[SignalModule], bool]] = None,
                 timeout: float = 5.0, max_workers: Optional[int] = None):
        """
        Initialize collection runner.

        Args:
            registry: Signal registry with module metadata
            modules: Signal module instances
            capability_check: Callable deciding if a module can run
                              (defaults to module.is_available())
            timeout: Per-module deadline in seconds
            max_workers: Thread pool size (defaults to module count)
        """
        self.registry = registry
        self.modules: List[SignalModule] = []
        self.capability_check = capability_check or (lambda module: module.is_available())
        self.timeout = timeout
        self.max_workers = max_workers

        for module in modules:
            if module.name not in registry:
                logger.warning(f"Signal module '{module.name}' not in registry - skipped")
                continue
            self.modules.append(module)

        logger.debug(f"CollectionRunner initialized ({len(self.modules)} modules, timeout={timeout}s)")

    @classmethod
    def from_config(cls, config: dict, registry: SignalRegistry,
                    modules: Iterable[SignalModule]) -> "CollectionRunner":
        """Build a runner using the `collection` config section."""
        collection_config = config.get("collection", {})
        return cls(
            registry,
            modules,
            timeout=collection_config.get("module_timeout", 5.0),
            max_workers=collection_config.get("max_workers")
        )

    def run(self) -> CollectionResult:
        """Run one collection pass."""
        start = time.monotonic()
        result = CollectionResult()

        runnable = []
        for module in self.modules:
            try:
                available = bool(self.capability_check(module))
            except Exception as e:
                logger.debug(f"Capability probe for {module.name} failed: {e}")
                available = False

            if available:
                runnable.append(module)
            else:
                result.outcomes[module.name] = ModuleOutcome(module.name, UNAVAILABLE)

        if runnable:
            self._collect_concurrently(runnable, result)

        collected = list(result.components.keys())
        result.entropy_bits = self.registry.total_entropy(collected)
        result.stability = round(self.registry.average_stability(collected), 1)
        result.confidence = calculate_confidence(result.entropy_bits, result.stability)
        result.duration_ms = (time.monotonic() - start) * 1000

        logger.info(f"Collected {len(collected)}/{len(self.modules)} signal modules "
                    f"(entropy={result.entropy_bits:.1f} bits, stability={result.stability}%)")
        return result

    def _collect_concurrently(self, runnable: List[SignalModule], result: CollectionResult):
        """
        Race every module against its own deadline.

        A module's deadline starts when a worker picks it up, so modules
        queued behind a small pool still get the full timeout. Modules that
        can no longer start because every worker is held by an overrunning
        module are reported as timed out.
        """
        workers = self.max_workers or len(runnable)
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="SignalCollect")
        starts: Dict[str, float] = {}

        try:
            futures = {executor.submit(self._timed_collect, module, starts): module for module in runnable}
            pending = set(futures)
            overrunning = set()

            while pending:
                now = time.monotonic()
                for future in list(pending):
                    begun = starts.get(futures[future].name)
                    if not future.done() and begun is not None and now - begun >= self.timeout:
                        pending.discard(future)
                        overrunning.add(future)
                        self._record_timeout(futures[future], (now - begun) * 1000, result)

                overrunning = {f for f in overrunning if not f.done()}
                if pending and len(overrunning) >= workers and \
                        not any(futures[f].name in starts for f in pending):
                    for future in pending:
                        future.cancel()
                        self._record_timeout(futures[future], 0.0, result)
                    break

                if not pending:
                    break

                deadlines = [starts[futures[f].name] + self.timeout
                             for f in pending if futures[f].name in starts]
                wait_for = max(0.0, min(deadlines) - now) if deadlines else self.timeout
                done, _ = wait(pending, timeout=wait_for, return_when=FIRST_COMPLETED)

                for future in done:
                    pending.discard(future)
                    self._record_done(futures[future], future, result)
        finally:
            # Do not block on modules that overran their deadline
            executor.shutdown(wait=False, cancel_futures=True)

    def _record_timeout(self, module: SignalModule, duration_ms: float, result: CollectionResult):
        logger.debug(f"Signal module {module.name} timed out after {self.timeout}s")
        result.outcomes[module.name] = ModuleOutcome(module.name, TIMEOUT, duration_ms, "Timeout")

    @staticmethod
    def _record_done(module: SignalModule, future, result: CollectionResult):
        try:
            data, duration_ms = future.result()
        except Exception as e:
            # _timed_collect attaches the duration to the exception
            duration_ms = getattr(e, "duration_ms", 0.0)
            logger.debug(f"Signal module {module.name} failed: {e}")
            result.outcomes[module.name] = ModuleOutcome(
                module.name, FAILED, duration_ms, str(e) or type(e).__name__
            )
            return

        if data is None:
            result.outcomes[module.name] = ModuleOutcome(module.name, UNAVAILABLE, duration_ms)
        else:
            result.components[module.name] = data
            result.outcomes[module.name] = ModuleOutcome(module.name, COLLECTED, duration_ms)

    @staticmethod
    def _timed_collect(module: SignalModule, starts: Optional[Dict[str, float]] = None):
        start = time.monotonic()
        if starts is not None:
            starts[module.name] = start
        try:
            data = module.collect()
        except Exception as e:
            e.duration_ms = (time.monotonic() - start) * 1000
            raise
        return data, (time.monotonic() - start) * 1000
