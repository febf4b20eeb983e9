"""
Analysis profiles - named window/hop/FFT presets.

The `default` profile always exists. Further profiles come from the
`profiles` section of the YAML config; callers may also derive an ad-hoc
profile from explicit overrides, identified by a hash of its values.

Usage:
    profiles = ProfileRegistry.from_config(get_config())
    params = profiles.params_for("detail", sample_rate=44100)
"""

import hashlib
import json
from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from audio_features.common.logging import get_logger
from audio_features.core.cache.models import AnalysisParams, DEFAULT_PROFILE_ID
from audio_features.core.errors import ValidationError
from audio_features.modules.sampling.identity import sanitize_profile_id

if TYPE_CHECKING:
    from audio_features.core.config import Config

logger = get_logger(__name__)

ADHOC_PREFIX = "adhoc-"

_PROFILE_FIELDS = ("window_size", "hop_size", "fft_size", "min_decibels", "max_decibels", "window")


@dataclass(frozen=True)
class AnalysisProfile:
    """Named analysis preset."""
    id: str
    window_size: int = 2048
    hop_size: int = 512
    fft_size: Optional[int] = None
    min_decibels: float = -80.0
    max_decibels: float = 0.0
    window: str = "hann"

    def __post_init__(self):
        # Validates sizes and dB range
        self.to_params()

    def to_params(self, sample_rate: Optional[int] = None) -> AnalysisParams:
        return AnalysisParams(
            window_size=self.window_size,
            hop_size=self.hop_size,
            fft_size=self.fft_size,
            sample_rate=sample_rate,
            min_decibels=self.min_decibels,
            max_decibels=self.max_decibels,
            window=self.window,
            analysis_profile_id=self.id,
        )

    @classmethod
    def from_dict(cls, profile_id: str, values: Dict[str, Any]) -> 'AnalysisProfile':
        values = values or {}
        unknown = set(values) - set(_PROFILE_FIELDS)
        if unknown:
            raise ValidationError(
                f"Profile {profile_id} has unknown keys: {sorted(unknown)}",
                data={"profile_id": profile_id, "unknown": sorted(unknown)},
            )
        fields = {k: values[k] for k in _PROFILE_FIELDS if values.get(k) is not None}
        for key in ("window_size", "hop_size", "fft_size"):
            if key in fields:
                fields[key] = int(fields[key])
        for key in ("min_decibels", "max_decibels"):
            if key in fields:
                fields[key] = float(fields[key])
        return cls(id=profile_id, **fields)


def adhoc_profile_id(values: Dict[str, Any]) -> str:
    """Stable id for an override set: adhoc-<sha1 prefix>."""
    canonical = json.dumps(values, sort_keys=True, separators=(",", ":"), default=str)
    return ADHOC_PREFIX + hashlib.sha1(canonical.encode("utf-8")).hexdigest()[:10]


class ProfileRegistry:
    """Lookup of analysis profiles by id."""

    def __init__(self, profiles: Optional[List[AnalysisProfile]] = None):
        self._profiles: Dict[str, AnalysisProfile] = {
            DEFAULT_PROFILE_ID: AnalysisProfile(DEFAULT_PROFILE_ID),
        }
        for profile in profiles or []:
            self.add(profile)

    @classmethod
    def from_config(cls, config: 'Config') -> 'ProfileRegistry':
        """Default profile from the `analysis` section, others from `profiles`."""
        analysis = {k: v for k, v in (config.analysis or {}).items() if k in _PROFILE_FIELDS}
        definitions = dict(config.profiles or {})
        default_values = {**analysis, **(definitions.pop(DEFAULT_PROFILE_ID, None) or {})}

        registry = cls([AnalysisProfile.from_dict(DEFAULT_PROFILE_ID, default_values)])
        for profile_id, values in definitions.items():
            registry.add(AnalysisProfile.from_dict(str(profile_id), values))

        logger.debug(f"Loaded {len(registry)} analysis profiles", data={"profiles": registry.ids()})
        return registry

    def add(self, profile: AnalysisProfile) -> None:
        profile_id = sanitize_profile_id(profile.id)
        if profile_id is None:
            raise ValidationError("Profile id must be a non-empty string")
        self._profiles[profile_id] = profile if profile_id == profile.id else replace(profile, id=profile_id)

    def get(self, profile_id: Optional[str] = None) -> AnalysisProfile:
        key = sanitize_profile_id(profile_id) or DEFAULT_PROFILE_ID
        profile = self._profiles.get(key)
        if profile is None:
            raise ValidationError(
                f"Unknown analysis profile: {key}",
                data={"profile_id": key, "available": self.ids()},
            )
        return profile

    def derive(self, base_id: Optional[str] = None, **overrides) -> AnalysisProfile:
        """
        Ad-hoc profile: `base_id` with `overrides` applied.

        Returns the base profile itself when the overrides change nothing.
        """
        base = self.get(base_id)
        changes = {k: v for k, v in overrides.items() if v is not None}
        unknown = set(changes) - set(_PROFILE_FIELDS)
        if unknown:
            raise ValidationError(
                f"Unknown profile overrides: {sorted(unknown)}",
                data={"unknown": sorted(unknown)},
            )
        merged = {**asdict(base), **changes}
        merged.pop("id")
        if all(getattr(base, k) == v for k, v in changes.items()):
            return base
        return AnalysisProfile(adhoc_profile_id(merged), **merged)

    def params_for(
        self,
        profile_id: Optional[str] = None,
        sample_rate: Optional[int] = None,
        **overrides,
    ) -> AnalysisParams:
        """AnalysisParams for a profile (optionally with ad-hoc overrides)."""
        profile = self.derive(profile_id, **overrides) if overrides else self.get(profile_id)
        return profile.to_params(sample_rate)

    def ids(self) -> List[str]:
        return list(self._profiles)

    def __contains__(self, profile_id: str) -> bool:
        return profile_id in self._profiles

    def __len__(self) -> int:
        return len(self._profiles)
