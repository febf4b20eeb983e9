"""
Cache Interfaces - Abstract contracts for cache operations.

Separates read-only status queries from write operations:
- ICacheStatusProvider: read-only interface for diagnostics and UI
- Full cache operations remain in FeatureCacheStore

Architecture:
    IntentBus / diagnostics -> ICacheStatusProvider (read-only)
    AnalysisScheduler       -> FeatureCacheStore (full access)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

from .models import AudioFeatureCache, CacheStatus


@dataclass
class CacheStats:
    """Cache statistics for diagnostics."""
    source_count: int
    ready_count: int
    pending_count: int
    stale_count: int
    failed_count: int
    track_count: int
    total_size_mb: float

    def to_dict(self) -> Dict:
        return {
            'source_count': self.source_count,
            'ready_count': self.ready_count,
            'pending_count': self.pending_count,
            'stale_count': self.stale_count,
            'failed_count': self.failed_count,
            'track_count': self.track_count,
            'total_size_mb': self.total_size_mb,
        }


class ICacheStatusProvider(ABC):
    """
    Read-only interface for querying cache state.

    Consumers that only display or diff cache contents depend on this
    instead of the store, so they cannot trigger writes by accident.
    """

    @abstractmethod
    def exists(self, source_id: str) -> bool:
        """Check if a cache is held for the source."""
        pass

    @abstractmethod
    def get(self, source_id: str) -> Optional[AudioFeatureCache]:
        """Current cache of the source (None if nothing was ingested)."""
        pass

    @abstractmethod
    def status(self, source_id: str) -> CacheStatus:
        """Lifecycle status of the source (IDLE if unknown)."""
        pass

    @abstractmethod
    def list_sources(self) -> List[str]:
        """Bound source ids."""
        pass

    @abstractmethod
    def get_stats(self) -> CacheStats:
        """Get overall cache statistics."""
        pass
