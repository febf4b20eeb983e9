"""
Feature cache - models, serialization and the store.

Usage:
    from audio_features.core.cache import FeatureCacheStore, serialize_cache

    store = FeatureCacheStore()
    payload = serialize_cache(store.get("kick"))
"""

from .models import (
    CACHE_PAYLOAD_VERSION,
    DEFAULT_PROFILE_ID,
    AnalysisParams,
    AudioFeatureCache,
    AudioFeatureTrack,
    CacheState,
    CacheStatus,
    FeatureFormat,
    MinMaxData,
    StaleReason,
    TempoProjection,
)
from .interfaces import ICacheStatusProvider, CacheStats
from .store import FeatureCacheStore, SourceBinding
from .serialization import (
    serialize_track,
    deserialize_track,
    serialize_cache,
    deserialize_cache,
    parse_format,
)

__all__ = [
    # Models
    'CACHE_PAYLOAD_VERSION',
    'DEFAULT_PROFILE_ID',
    'AnalysisParams',
    'AudioFeatureCache',
    'AudioFeatureTrack',
    'CacheState',
    'CacheStatus',
    'FeatureFormat',
    'MinMaxData',
    'StaleReason',
    'TempoProjection',
    # Interfaces
    'ICacheStatusProvider',
    'CacheStats',
    # Store
    'FeatureCacheStore',
    'SourceBinding',
    # Serialization
    'serialize_track',
    'deserialize_track',
    'serialize_cache',
    'deserialize_cache',
    'parse_format',
]
