"""Intents - consumer feature requests and required-vs-cached diffs."""

from .descriptors import (
    Descriptor,
    build_descriptor_id,
    build_descriptor_match_key,
    build_descriptor_label,
    create_descriptor,
)
from .bus import (
    AnalysisIntentBus,
    CacheDiff,
    Intent,
    IntentEvent,
    compute_intent_fingerprint,
)

__all__ = [
    'Descriptor',
    'build_descriptor_id',
    'build_descriptor_match_key',
    'build_descriptor_label',
    'create_descriptor',
    'AnalysisIntentBus',
    'CacheDiff',
    'Intent',
    'IntentEvent',
    'compute_intent_fingerprint',
]
