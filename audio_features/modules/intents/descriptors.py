"""
Descriptors - a consumer's request for one feature / channel / band.

Identity:
- descriptor_id: "id:feature:<key>|calc:<id>|band:<n>"
- match_key: dedup key shared by equivalent requests; adds
  "|profile:<id>" for non-default analysis profiles
"""

import math
from dataclasses import dataclass, replace
from typing import Optional, Union, TYPE_CHECKING

from audio_features.core.cache.models import DEFAULT_PROFILE_ID
from audio_features.core.errors import ValidationError
from audio_features.modules.sampling.identity import sanitize_profile_id

if TYPE_CHECKING:
    from audio_features.modules.analysis.registry import CalculatorRegistry

_UNSET = object()


@dataclass(frozen=True)
class Descriptor:
    """
    Feature request.

    Attributes:
        feature_key: Feature (track) key, e.g. "spectrogram"
        calculator_id: Producing calculator (None = any)
        channel: Channel index or alias (None = all / first)
        band_index: Column of multi-band tracks (e.g. spectrogram bin)
        analysis_profile_id: Analysis profile (None = the intent's profile)
    """
    feature_key: str
    calculator_id: Optional[str] = None
    channel: Union[int, str, None] = None
    band_index: Optional[int] = None
    analysis_profile_id: Optional[str] = None

    @property
    def descriptor_id(self) -> str:
        return build_descriptor_id(self)

    @property
    def match_key(self) -> str:
        return build_descriptor_match_key(self)

    @property
    def label(self) -> str:
        return build_descriptor_label(self)

    def with_profile(self, profile_id: Optional[str]) -> 'Descriptor':
        return replace(self, analysis_profile_id=sanitize_profile_id(profile_id))


def _parts(descriptor: Descriptor) -> list:
    parts = [f"feature:{descriptor.feature_key or 'unknown'}"]
    if descriptor.calculator_id:
        parts.append(f"calc:{descriptor.calculator_id}")
    if descriptor.band_index is not None:
        parts.append(f"band:{descriptor.band_index}")
    return parts


def build_descriptor_id(descriptor: Descriptor) -> str:
    return "id:" + "|".join(_parts(descriptor))


def build_descriptor_match_key(descriptor: Descriptor) -> str:
    key = "match:" + "|".join(_parts(descriptor))
    profile = sanitize_profile_id(descriptor.analysis_profile_id)
    if profile and profile != DEFAULT_PROFILE_ID:
        key += f"|profile:{profile}"
    return key


def build_descriptor_label(descriptor: Optional[Descriptor]) -> str:
    if descriptor is None:
        return "Unknown descriptor"
    label = descriptor.feature_key or "unknown"
    if descriptor.band_index is not None:
        label += f" / band {descriptor.band_index}"
    return label


def _sanitize_string(value) -> Optional[str]:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _sanitize_band(value) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return max(0, int(value))


def _sanitize_channel(value) -> Union[int, str, None]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) else None
    return _sanitize_string(value)


def create_descriptor(
    feature: Union[str, Descriptor],
    calculator_id=_UNSET,
    channel=_UNSET,
    band_index=_UNSET,
    profile=_UNSET,
    registry: Optional['CalculatorRegistry'] = None,
) -> Descriptor:
    """
    Build a sanitized descriptor, or update an existing one.

    Omitted arguments keep the base descriptor's value (or the default);
    an explicit None clears it. With a registry, a missing calculator_id
    defaults to the registered calculator producing `feature`.

    Raises:
        ValidationError: empty feature key
    """
    base = feature if isinstance(feature, Descriptor) else None
    feature_key = base.feature_key if base is not None else _sanitize_string(feature)
    if not feature_key:
        raise ValidationError("create_descriptor requires a feature key", data={"feature": repr(feature)})

    def pick(value, current, sanitize):
        if value is _UNSET:
            return current
        return None if value is None else sanitize(value)

    resolved_calculator = pick(calculator_id, base.calculator_id if base else None, _sanitize_string)
    if resolved_calculator is None and calculator_id is _UNSET and registry is not None:
        for calculator in registry.list():
            if calculator.feature_key == feature_key:
                resolved_calculator = calculator.id
                break

    return Descriptor(
        feature_key=feature_key,
        calculator_id=resolved_calculator,
        channel=pick(channel, base.channel if base else None, _sanitize_channel),
        band_index=pick(band_index, base.band_index if base else None, _sanitize_band),
        analysis_profile_id=pick(profile, base.analysis_profile_id if base else None, sanitize_profile_id),
    )
