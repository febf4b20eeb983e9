"""
Calculator Registry - versioned calculators by id.

An explicit instance (no process-wide registry) created at startup and
handed to the scheduler, so tests can build isolated registries.

Registering a newer version of an id marks every cache that holds a
track from an older version STALE (calculator-upgraded).

Usage:
    registry = CalculatorRegistry.with_builtins(store)
    registry.register(MyCalculator())
    calculator = registry.get("spectrogram")
"""

import threading
from typing import Callable, Dict, Iterable, List, Optional, TYPE_CHECKING

from audio_features.common.logging import get_logger
from audio_features.core.errors import UnknownCalculator, ValidationError
from audio_features.core.interfaces import CalculatorProtocol

if TYPE_CHECKING:
    from audio_features.core.cache.store import FeatureCacheStore

logger = get_logger(__name__)

# Args: (calculator_id, new_version) -> affected source ids
InvalidationHook = Callable[[str, int], List[str]]


class CalculatorRegistry:
    """Holds calculators by id in registration order."""

    def __init__(
        self,
        store: Optional['FeatureCacheStore'] = None,
        on_upgrade: Optional[InvalidationHook] = None,
    ):
        """
        Args:
            store: Cache store to invalidate on version upgrades
            on_upgrade: Custom invalidation hook (overrides the store's)
        """
        self._lock = threading.RLock()
        self._calculators: Dict[str, CalculatorProtocol] = {}
        if on_upgrade is not None:
            self._on_upgrade = on_upgrade
        elif store is not None:
            self._on_upgrade = store.invalidate_by_calculator
        else:
            self._on_upgrade = None

    @classmethod
    def with_builtins(cls, store: Optional['FeatureCacheStore'] = None) -> 'CalculatorRegistry':
        """Registry pre-populated with spectrogram, rms and waveform."""
        from .calculators import BUILTIN_CALCULATORS

        registry = cls(store)
        for calculator_cls in BUILTIN_CALCULATORS:
            registry.register(calculator_cls())
        return registry

    def register(self, calculator: CalculatorProtocol) -> List[str]:
        """
        Register a calculator (or a newer version of one).

        Returns:
            Source ids marked stale by the upgrade (empty for new ids)

        Raises:
            ValidationError: empty id, or version not above the registered one
        """
        calculator_id = calculator.id
        if not calculator_id:
            raise ValidationError("Calculator id must be a non-empty string")
        version = int(calculator.version)

        with self._lock:
            existing = self._calculators.get(calculator_id)
            if existing is calculator:
                return []
            if existing is not None and int(existing.version) >= version:
                raise ValidationError(
                    f"Calculator {calculator_id} v{version} does not supersede v{existing.version}",
                    data={
                        "calculator_id": calculator_id,
                        "registered_version": int(existing.version),
                        "version": version,
                    },
                )
            self._calculators[calculator_id] = calculator

        if existing is None:
            logger.debug(f"Registered calculator {calculator_id} v{version}", data={
                "calculator_id": calculator_id,
                "version": version,
            })
            return []

        marked = self._on_upgrade(calculator_id, version) if self._on_upgrade else []
        logger.info(f"Upgraded calculator {calculator_id} v{existing.version} -> v{version}", data={
            "calculator_id": calculator_id,
            "previous_version": int(existing.version),
            "version": version,
            "stale_sources": marked,
        })
        return marked

    def get(self, calculator_id: str) -> CalculatorProtocol:
        calculator = self._calculators.get(calculator_id)
        if calculator is None:
            raise UnknownCalculator(calculator_id)
        return calculator

    def find(self, calculator_id: str) -> Optional[CalculatorProtocol]:
        return self._calculators.get(calculator_id)

    def resolve(self, calculator_ids: Optional[Iterable[str]] = None) -> List[CalculatorProtocol]:
        """
        Calculators for a job, in registration order.

        Raises:
            UnknownCalculator: any id is not registered
        """
        if calculator_ids is None:
            return self.list()
        wanted = list(dict.fromkeys(calculator_ids))
        for calculator_id in wanted:
            self.get(calculator_id)
        return [c for cid, c in self._calculators.items() if cid in wanted]

    def unregister(self, calculator_id: str) -> bool:
        with self._lock:
            removed = self._calculators.pop(calculator_id, None)
        return removed is not None

    def list(self) -> List[CalculatorProtocol]:
        return list(self._calculators.values())

    def ids(self) -> List[str]:
        return list(self._calculators)

    def versions(self) -> Dict[str, int]:
        return {cid: int(c.version) for cid, c in self._calculators.items()}

    def __contains__(self, calculator_id: str) -> bool:
        return calculator_id in self._calculators

    def __len__(self) -> int:
        return len(self._calculators)
