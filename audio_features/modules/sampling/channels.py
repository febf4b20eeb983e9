"""
Channel Resolver - channel index or alias -> column of a track.

Lookup order for string selectors:
    1. numeric strings ("1")
    2. track alias table
    3. cache alias table
    4. extra aliases from config
    5. well-known aliases (mono, left, right, mid, side, ...)

Alias matching is case-insensitive. Every resolved index is checked
against the track's channel count.
"""

from typing import Mapping, Optional, Union, TYPE_CHECKING

from audio_features.core.errors import ChannelResolutionError

if TYPE_CHECKING:
    from audio_features.core.cache.models import AudioFeatureTrack

ChannelSelector = Union[int, str, None]

WELL_KNOWN_ALIASES = {
    "mono": 0,
    "mid": 0,
    "middle": 0,
    "center": 0,
    "centre": 0,
    "l": 0,
    "left": 0,
    "r": 1,
    "right": 1,
    "side": 1,
    "stereo": 0,
    "bass": 0,
    "low": 0,
    "high": 1,
}


def _plural(count: int) -> str:
    return "" if count == 1 else "s"


def _check_range(index: int, channel_count: Optional[int], selector) -> int:
    if channel_count is None or channel_count <= 0:
        return max(0, index)
    if index < 0 or index >= channel_count:
        raise ChannelResolutionError(
            f"Channel {selector!r} -> index {index} is out of range for a track "
            f"with {channel_count} channel{_plural(channel_count)}",
            data={"channel": selector, "index": index, "channel_count": channel_count},
        )
    return index


def _lookup(name: str, aliases: Optional[Mapping[str, int]]) -> Optional[int]:
    if not aliases:
        return None
    for alias, index in aliases.items():
        if isinstance(alias, str) and alias.strip().lower() == name:
            return int(index)
    return None


def resolve_channel(
    channel: ChannelSelector,
    track: Optional['AudioFeatureTrack'] = None,
    cache_aliases: Optional[Mapping[str, int]] = None,
    extra_aliases: Optional[Mapping[str, int]] = None,
) -> int:
    """
    Resolve a channel selector to a concrete column index.

    Args:
        channel: Index, alias, numeric string or None (-> 0)
        track: Track whose channel count and alias table apply
        cache_aliases: Cache-level alias table
        extra_aliases: Additional aliases (e.g. from config)

    Raises:
        ChannelResolutionError: unknown alias or index out of range
    """
    channel_count = track.channels if track is not None else None

    if channel is None:
        return 0
    if isinstance(channel, bool):
        raise ChannelResolutionError(
            f"Unsupported channel value: {channel!r}",
            data={"channel": channel},
        )
    if isinstance(channel, (int, float)):
        if channel != channel or channel in (float("inf"), float("-inf")):
            raise ChannelResolutionError(f"Unsupported channel value: {channel!r}", data={"channel": channel})
        return _check_range(int(channel), channel_count, channel)
    if not isinstance(channel, str):
        raise ChannelResolutionError(
            f"Unsupported channel value: {channel!r}",
            data={"channel": repr(channel)},
        )

    trimmed = channel.strip()
    if not trimmed:
        return 0
    if trimmed.lstrip("-").isdigit():
        return _check_range(int(trimmed), channel_count, channel)

    name = trimmed.lower()
    track_aliases = track.channel_aliases if track is not None else None
    for table in (track_aliases, cache_aliases, extra_aliases):
        index = _lookup(name, table)
        if index is not None:
            return _check_range(index, channel_count, channel)

    fallback = WELL_KNOWN_ALIASES.get(name)
    if fallback is not None:
        if channel_count is not None and channel_count <= fallback:
            raise ChannelResolutionError(
                f"Alias {channel!r} resolves to channel {fallback}, but the track only "
                f"exposes {channel_count} channel{_plural(channel_count)}",
                data={"channel": channel, "index": fallback, "channel_count": channel_count},
            )
        return fallback

    available = [
        alias for table in (track_aliases, cache_aliases, extra_aliases) if table
        for alias in table
    ]
    raise ChannelResolutionError(
        f"Unknown channel alias {channel!r}. Available aliases: {', '.join(available) or 'none'}",
        data={"channel": channel, "available": available},
    )
