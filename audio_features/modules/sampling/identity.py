"""
Feature track identity.

Tracks analyzed with the default profile are stored under their plain
feature key ("spectrogram"); other profiles use "feature:profile"
("spectrogram:detail"). Lookups try the candidates in a fixed order so
callers may pass either form.
"""

from typing import List, Optional, Tuple, TYPE_CHECKING

from audio_features.core.cache.models import DEFAULT_PROFILE_ID

if TYPE_CHECKING:
    from audio_features.core.cache.models import AudioFeatureCache, AudioFeatureTrack

KEY_SEPARATOR = ":"


def sanitize_profile_id(value) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def build_track_key(feature_key: str, profile_id: Optional[str] = None) -> str:
    feature = (feature_key or "").strip() or "unknown"
    profile = sanitize_profile_id(profile_id) or DEFAULT_PROFILE_ID
    if profile == DEFAULT_PROFILE_ID:
        return feature
    return f"{feature}{KEY_SEPARATOR}{profile}"


def parse_track_key(key: Optional[str]) -> Tuple[str, str]:
    """'feature[:profile]' -> (feature, profile)."""
    if not isinstance(key, str) or not key.strip():
        return "", DEFAULT_PROFILE_ID
    trimmed = key.strip()
    index = trimmed.rfind(KEY_SEPARATOR)
    if index <= 0:
        return trimmed, DEFAULT_PROFILE_ID
    feature = trimmed[:index].strip() or trimmed
    profile = sanitize_profile_id(trimmed[index + 1:]) or DEFAULT_PROFILE_ID
    return feature, profile


def track_key_candidates(feature_key: str, profile_id: Optional[str] = None) -> List[str]:
    candidates: List[str] = []

    def push(value: Optional[str]):
        if value and value not in candidates:
            candidates.append(value)

    trimmed = (feature_key or "").strip()
    if not trimmed:
        return candidates
    push(trimmed)
    base, parsed_profile = parse_track_key(trimmed)
    requested = sanitize_profile_id(profile_id)
    if requested:
        push(build_track_key(base, requested))
    push(build_track_key(base, parsed_profile))
    push(build_track_key(base, DEFAULT_PROFILE_ID))
    push(f"{base}{KEY_SEPARATOR}{DEFAULT_PROFILE_ID}")
    return candidates


def resolve_feature_track(
    cache: Optional['AudioFeatureCache'],
    feature_key: Optional[str],
    profile_id: Optional[str] = None,
) -> Tuple[Optional[str], Optional['AudioFeatureTrack']]:
    """
    Find the track a consumer means by `feature_key`.

    Returns:
        (matched key, track) or (first candidate, None) when absent
    """
    if cache is None or not isinstance(feature_key, str) or not feature_key.strip():
        return None, None
    candidates = track_key_candidates(feature_key, profile_id)
    for candidate in candidates:
        track = cache.feature_tracks.get(candidate)
        if track is not None:
            return candidate, track
    return (candidates[0] if candidates else None), None
