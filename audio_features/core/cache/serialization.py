"""
Cache payload serialization (JSON-safe envelope).

Payload layout (version 2):

    {
        "version": 2,
        "sourceId": str,
        "hopSeconds": float,
        "hopTicks": float,
        "tempoProjection": {"startTick": float, "tempoMapHash": str | None},
        "frameCount": int,
        "featureTracks": {
            key: {
                "key", "calculatorId", "version", "frameCount", "channels",
                "format", "hopSeconds", "hopTicks", "channelAliases",
                "analysisProfileId", "metadata", "analysisParams",
                "data": {"type": "float32", "values": [...]}
                      | {"type": "minmax", "min": [...], "max": [...]}
            }
        },
        "analysisParams": {...},
        "channelAliases": {...},
        "inputHash": str | None
    }

Version 1 payloads (no tempoProjection, `audioSourceId`, rounded tick
hops) are still accepted on load.
"""

import math
import numpy as np
from typing import Any, Dict, Optional, TYPE_CHECKING

from audio_features.common.logging import get_logger
from audio_features.core.errors import UnsupportedFormat, ValidationError
from .models import (
    CACHE_PAYLOAD_VERSION,
    AnalysisParams,
    AudioFeatureCache,
    AudioFeatureTrack,
    FeatureFormat,
    MinMaxData,
    TempoProjection,
)

if TYPE_CHECKING:
    from audio_features.modules.analysis.registry import CalculatorRegistry

logger = get_logger(__name__)

# Format names written by older payloads
_FORMAT_ALIASES = {
    "waveform-minmax": FeatureFormat.MINMAX,
}


def parse_format(value: Any, key: str = "") -> FeatureFormat:
    """Map a serialized format name to FeatureFormat or raise UnsupportedFormat."""
    if isinstance(value, FeatureFormat):
        return value
    if isinstance(value, str):
        if value in _FORMAT_ALIASES:
            return _FORMAT_ALIASES[value]
        try:
            return FeatureFormat(value)
        except ValueError:
            pass
    raise UnsupportedFormat(
        f"Unsupported feature track format {value!r}" + (f" for track {key}" if key else ""),
        data={"format": repr(value), "key": key},
    )


def _plain(value: Any) -> Any:
    """Convert numpy scalars/containers inside metadata to JSON-safe values."""
    if isinstance(value, dict) or hasattr(value, "items"):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    return value


# ============== Tracks ==============

def serialize_track(track: AudioFeatureTrack) -> Dict[str, Any]:
    """Track -> JSON-safe dict with flattened data."""
    if isinstance(track.data, MinMaxData):
        data = {
            "type": FeatureFormat.MINMAX.value,
            "min": track.data.min.ravel().tolist(),
            "max": track.data.max.ravel().tolist(),
        }
    else:
        data = {"type": track.format.value, "values": track.data.ravel().tolist()}

    return {
        "key": track.key,
        "calculatorId": track.calculator_id,
        "version": track.version,
        "frameCount": track.frame_count,
        "channels": track.channels,
        "format": track.format.value,
        "hopSeconds": track.hop_seconds,
        "hopTicks": track.hop_ticks,
        "channelAliases": dict(track.channel_aliases),
        "analysisProfileId": track.analysis_profile_id,
        "metadata": _plain(track.metadata),
        "analysisParams": _plain(track.analysis_params),
        "data": data,
    }


def deserialize_track(
    payload: Dict[str, Any],
    key: Optional[str] = None,
    hop_ticks: Optional[float] = None,
) -> AudioFeatureTrack:
    """
    JSON dict -> track.

    Raises:
        UnsupportedFormat: unknown `format` or data type
        ValidationError: data length does not match frameCount x channels
    """
    key = payload.get("key") or key or ""
    fmt = parse_format(payload.get("format"), key)
    data = payload.get("data")
    if not isinstance(data, dict):
        raise ValidationError(
            f"Serialized track {key} is missing its data payload",
            data={"key": key},
        )

    if fmt is FeatureFormat.MINMAX:
        values: Any = MinMaxData(
            np.asarray(data.get("min", []), dtype=np.float32),
            np.asarray(data.get("max", []), dtype=np.float32),
        )
    else:
        data_format = parse_format(data.get("type", fmt.value), key)
        if data_format is not fmt:
            raise UnsupportedFormat(
                f"Track {key} declares format {fmt.value} but carries {data_format.value} data",
                data={"key": key, "format": fmt.value, "data_type": data_format.value},
            )
        values = np.asarray(data.get("values", []), dtype=fmt.dtype)

    return AudioFeatureTrack(
        key=key,
        calculator_id=payload["calculatorId"],
        version=int(payload["version"]),
        frame_count=int(payload["frameCount"]),
        channels=int(payload.get("channels", 1)),
        format=fmt,
        hop_seconds=float(payload["hopSeconds"]),
        hop_ticks=float(hop_ticks if hop_ticks is not None else payload.get("hopTicks", 0.0)),
        data=values,
        channel_aliases=payload.get("channelAliases") or {},
        analysis_profile_id=payload.get("analysisProfileId"),
        metadata=payload.get("metadata") or {},
        analysis_params=payload.get("analysisParams") or {},
    )


# ============== Caches ==============

def serialize_cache(
    cache: AudioFeatureCache,
    registry: Optional['CalculatorRegistry'] = None,
) -> Dict[str, Any]:
    """
    Cache -> JSON-safe payload.

    Calculators registered in `registry` may provide their own track
    serializer; the default one is used otherwise.
    """
    tracks: Dict[str, Any] = {}
    for key, track in cache.feature_tracks.items():
        calculator = registry.find(track.calculator_id) if registry is not None else None
        if calculator is not None:
            tracks[key] = calculator.serialize_track(track)
        else:
            tracks[key] = serialize_track(track)

    return {
        "version": CACHE_PAYLOAD_VERSION,
        "sourceId": cache.source_id,
        "hopSeconds": cache.hop_seconds,
        "hopTicks": cache.hop_ticks,
        "tempoProjection": cache.tempo_projection.to_dict(),
        "frameCount": cache.frame_count,
        "featureTracks": tracks,
        "analysisParams": cache.analysis_params.to_dict(),
        "channelAliases": dict(cache.channel_aliases),
        "inputHash": cache.input_hash,
    }


def deserialize_cache(
    payload: Dict[str, Any],
    registry: Optional['CalculatorRegistry'] = None,
) -> AudioFeatureCache:
    """
    Payload -> cache. Accepts version 2 and legacy version 1 envelopes.

    Raises:
        UnsupportedFormat: any track has an unrecognized format
        ValidationError: malformed envelope
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid audio feature cache payload")

    version = int(payload.get("version", 1))
    if version == CACHE_PAYLOAD_VERSION:
        return _deserialize_v2(payload, registry)
    if version == 1:
        return _deserialize_v1(payload)
    raise ValidationError(
        f"Unsupported cache payload version {version}",
        data={"version": version},
    )


def _source_id(payload: Dict[str, Any]) -> str:
    source_id = payload.get("sourceId") or payload.get("audioSourceId")
    if not source_id:
        raise ValidationError("Cache payload is missing sourceId")
    return str(source_id)


def _deserialize_v2(payload: Dict[str, Any], registry: Optional['CalculatorRegistry']) -> AudioFeatureCache:
    source_id = _source_id(payload)
    hop_seconds = float(payload["hopSeconds"])
    hop_ticks = float(payload.get("hopTicks") or 0.0)

    tracks: Dict[str, AudioFeatureTrack] = {}
    for key, track_payload in (payload.get("featureTracks") or {}).items():
        calculator = registry.find(track_payload.get("calculatorId", "")) if registry is not None else None
        if calculator is not None:
            tracks[key] = calculator.deserialize_track(track_payload)
        else:
            tracks[key] = deserialize_track(track_payload, key=key)

    return AudioFeatureCache(
        source_id=source_id,
        hop_seconds=hop_seconds,
        hop_ticks=hop_ticks,
        frame_count=int(payload.get("frameCount", 0)),
        tempo_projection=TempoProjection.from_dict(payload.get("tempoProjection")),
        feature_tracks=tracks,
        analysis_params=AnalysisParams.from_dict(payload.get("analysisParams")),
        channel_aliases=payload.get("channelAliases") or {},
        input_hash=payload.get("inputHash"),
    )


def _deserialize_v1(payload: Dict[str, Any]) -> AudioFeatureCache:
    """Legacy envelope: rounded tick hops, no tempo projection."""
    source_id = _source_id(payload)
    hop_seconds = float(payload["hopSeconds"])
    hop_ticks = float(payload.get("hopTicks") or 0.0)
    params = AnalysisParams.from_dict(payload.get("analysisParams"))

    tracks: Dict[str, AudioFeatureTrack] = {}
    for key, track_payload in (payload.get("featureTracks") or {}).items():
        track_hop_seconds = float(track_payload.get("hopSeconds", hop_seconds))
        # Re-derive from the cache ratio; v1 tick hops were rounded per track.
        track_hop_ticks = hop_ticks * track_hop_seconds / hop_seconds if not math.isclose(
            track_hop_seconds, hop_seconds
        ) else hop_ticks
        tracks[key] = deserialize_track(track_payload, key=key, hop_ticks=track_hop_ticks)

    logger.info(f"Upgraded legacy cache payload for {source_id}", data={
        "source_id": source_id,
        "tracks": list(tracks),
    })

    return AudioFeatureCache(
        source_id=source_id,
        hop_seconds=hop_seconds,
        hop_ticks=hop_ticks,
        frame_count=int(payload.get("frameCount", 0)),
        tempo_projection=TempoProjection(0.0, params.tempo_map_hash),
        feature_tracks=tracks,
        analysis_params=params,
    )
