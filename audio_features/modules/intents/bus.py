"""
Analysis Intent Bus - which features consumers currently need.

Consumers publish (consumer_id, source_id, descriptors). A fingerprint
per consumer skips republishing an unchanged set. A reverse index
source_id -> match_key -> descriptor (+ owning consumers) lets
diagnostics compare what is required against what a cache holds.

The bus never schedules analysis, and a consumer detaching never evicts
cached data.

Usage:
    bus = AnalysisIntentBus()
    bus.publish("meter-1", "kick", [create_descriptor("rms")])
    diff = bus.diff("kick", store.get("kick"), store.status("kick"))
    diff.missing   # match keys without a cached track
"""

import hashlib
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple, TYPE_CHECKING

from audio_features.common.logging import get_logger
from audio_features.core.cache.models import AudioFeatureCache, CacheState, CacheStatus, DEFAULT_PROFILE_ID
from audio_features.modules.sampling.identity import resolve_feature_track, sanitize_profile_id
from .descriptors import Descriptor

if TYPE_CHECKING:
    from audio_features.modules.analysis.registry import CalculatorRegistry

logger = get_logger(__name__)

EVENT_PUBLISH = "publish"
EVENT_CLEAR = "clear"


@dataclass(frozen=True)
class Intent:
    """Active subscription of one consumer."""
    consumer_id: str
    source_id: str
    descriptors: Tuple[Descriptor, ...]
    analysis_profile_id: str
    fingerprint: str
    requested_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "consumer_id": self.consumer_id,
            "source_id": self.source_id,
            "analysis_profile_id": self.analysis_profile_id,
            "descriptors": [d.match_key for d in self.descriptors],
            "fingerprint": self.fingerprint,
            "requested_at": self.requested_at,
        }


@dataclass(frozen=True)
class IntentEvent:
    """Bus event: `publish` carries the intent, `clear` only the consumer id."""
    type: str
    consumer_id: str
    intent: Optional[Intent] = None


IntentListener = Callable[[IntentEvent], None]


@dataclass(frozen=True)
class CacheDiff:
    """Required-versus-present view of one source (match keys)."""
    source_id: str
    requested: Tuple[str, ...]
    cached: Tuple[str, ...]
    missing: Tuple[str, ...]
    stale: Tuple[str, ...]
    extraneous: Tuple[str, ...]
    owners: Dict[str, Tuple[str, ...]]
    status: Optional[CacheState] = None

    @property
    def satisfied(self) -> bool:
        return not self.missing and not self.stale

    def to_dict(self) -> dict:
        return {
            "source_id": self.source_id,
            "requested": list(self.requested),
            "cached": list(self.cached),
            "missing": list(self.missing),
            "stale": list(self.stale),
            "extraneous": list(self.extraneous),
            "owners": {k: list(v) for k, v in self.owners.items()},
            "status": self.status.value if self.status else None,
        }


@dataclass
class _IndexEntry:
    descriptor: Descriptor
    owners: set = field(default_factory=set)


def compute_intent_fingerprint(source_id: str, profile_id: str, descriptors: Iterable[Descriptor]) -> str:
    """Order-independent hash of an intent's content."""
    parts = sorted(f"{d.descriptor_id}:{d.match_key}:{d.channel!r}" for d in descriptors)
    payload = f"{source_id}|{profile_id}|{';'.join(parts)}"
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()


class AnalysisIntentBus:
    """Deduplicating registry of consumer feature requests."""

    def __init__(self):
        self._lock = threading.RLock()
        self._intents: Dict[str, Intent] = {}
        self._index: Dict[str, Dict[str, _IndexEntry]] = {}
        self._listeners: List[IntentListener] = []

    # ============== Publishing ==============

    def publish(
        self,
        consumer_id: str,
        source_id: Optional[str],
        descriptors: Optional[Iterable[Optional[Descriptor]]],
        profile: Optional[str] = None,
    ) -> bool:
        """
        Publish (or replace) a consumer's intent.

        An empty descriptor list or missing source clears the consumer.

        Returns:
            True if the bus state changed
        """
        if not consumer_id:
            logger.warning("Dropping intent publish without consumer_id", data={"source_id": source_id})
            return False

        profile_id = sanitize_profile_id(profile) or DEFAULT_PROFILE_ID
        entries: Dict[str, Descriptor] = {}
        for descriptor in descriptors or ():
            if descriptor is None or not descriptor.feature_key:
                continue
            if descriptor.analysis_profile_id is None:
                descriptor = descriptor.with_profile(profile_id)
            entries.setdefault(descriptor.match_key, descriptor)

        if not source_id or not entries:
            return self.unpublish(consumer_id)

        fingerprint = compute_intent_fingerprint(source_id, profile_id, entries.values())
        with self._lock:
            previous = self._intents.get(consumer_id)
            if previous is not None and previous.fingerprint == fingerprint:
                return False
            intent = Intent(
                consumer_id=consumer_id,
                source_id=source_id,
                descriptors=tuple(entries.values()),
                analysis_profile_id=profile_id,
                fingerprint=fingerprint,
            )
            if previous is not None:
                self._remove_from_index(previous)
            self._intents[consumer_id] = intent
            source_index = self._index.setdefault(source_id, {})
            for match_key, descriptor in entries.items():
                entry = source_index.setdefault(match_key, _IndexEntry(descriptor))
                entry.owners.add(consumer_id)

        logger.debug(f"Intent published by {consumer_id} for {source_id}", data=intent.to_dict())
        self._emit(IntentEvent(EVENT_PUBLISH, consumer_id, intent))
        return True

    def unpublish(self, consumer_id: str) -> bool:
        """Detach a consumer. Cached data is never touched."""
        with self._lock:
            previous = self._intents.pop(consumer_id, None)
            if previous is not None:
                self._remove_from_index(previous)
        if previous is None:
            return False
        logger.debug(f"Intent cleared for {consumer_id}", data={
            "consumer_id": consumer_id,
            "source_id": previous.source_id,
        })
        self._emit(IntentEvent(EVENT_CLEAR, consumer_id))
        return True

    def _remove_from_index(self, intent: Intent) -> None:
        source_index = self._index.get(intent.source_id)
        if not source_index:
            return
        for descriptor in intent.descriptors:
            entry = source_index.get(descriptor.match_key)
            if entry is None:
                continue
            entry.owners.discard(intent.consumer_id)
            if not entry.owners:
                del source_index[descriptor.match_key]
        if not source_index:
            del self._index[intent.source_id]

    # ============== Listeners ==============

    def subscribe(self, listener: IntentListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return unsubscribe

    def _emit(self, event: IntentEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Intent listener failed: {e}", data={"consumer_id": event.consumer_id})

    # ============== Queries ==============

    def intent(self, consumer_id: str) -> Optional[Intent]:
        return self._intents.get(consumer_id)

    def intents(self) -> List[Intent]:
        with self._lock:
            return list(self._intents.values())

    def required(self, source_id: str) -> Dict[str, Descriptor]:
        """match_key -> descriptor currently required for a source."""
        with self._lock:
            return {k: e.descriptor for k, e in self._index.get(source_id, {}).items()}

    def consumers(self, source_id: str) -> List[str]:
        with self._lock:
            owners = set()
            for entry in self._index.get(source_id, {}).values():
                owners.update(entry.owners)
        return sorted(owners)

    def sources(self) -> List[str]:
        with self._lock:
            return list(self._index)

    def diff(
        self,
        source_id: str,
        cache: Optional[AudioFeatureCache],
        status: Optional[CacheStatus] = None,
        registry: Optional['CalculatorRegistry'] = None,
    ) -> CacheDiff:
        """
        Compare required descriptors with a cache.

        A cached track counts as stale when the source is STALE or when the
        registry holds a newer version of its calculator.
        """
        with self._lock:
            entries = {k: (e.descriptor, tuple(sorted(e.owners))) for k, e in self._index.get(source_id, {}).items()}

        versions = registry.versions() if registry is not None else {}
        source_stale = status is not None and status.state is CacheState.STALE
        cached, missing, stale, used_keys = [], [], [], set()

        for match_key, (descriptor, _) in sorted(entries.items()):
            key, track = resolve_feature_track(cache, descriptor.feature_key, descriptor.analysis_profile_id)
            if track is not None and descriptor.calculator_id and track.calculator_id != descriptor.calculator_id:
                track = None
            if track is None:
                missing.append(match_key)
                continue
            used_keys.add(key)
            cached.append(match_key)
            registered = versions.get(track.calculator_id)
            if source_stale or (registered is not None and track.version < registered):
                stale.append(match_key)

        extraneous = sorted(k for k in (cache.feature_tracks if cache is not None else {}) if k not in used_keys)
        return CacheDiff(
            source_id=source_id,
            requested=tuple(sorted(entries)),
            cached=tuple(cached),
            missing=tuple(missing),
            stale=tuple(stale),
            extraneous=tuple(extraneous),
            owners={k: owners for k, (_, owners) in entries.items()},
            status=status.state if status is not None else None,
        )
