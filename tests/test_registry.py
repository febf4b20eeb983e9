"""
Unit tests for the calculator registry.

Tests cover:
1. Registration, lookup and ordering
2. Version upgrades and cache invalidation
3. Rejection of invalid calculators
"""

import numpy as np
import pytest

from audio_features.core.cache import CacheState, StaleReason
from audio_features.core.errors import UnknownCalculator, ValidationError
from audio_features.modules.analysis import CalculatorRegistry, RmsCalculator, SpectrogramCalculator
from audio_features.modules.analysis.calculators import BaseCalculator

from conftest import make_cache, make_track


class RmsV2(RmsCalculator):
    version = 2


class PeakCalculator(BaseCalculator):
    """Absolute peak per hop (test calculator)."""

    id = "peak"
    version = 1
    feature_key = "peak"

    def steps(self, context):
        mono = context.get_mono()
        hop = context.params.hop_size
        values = np.array(
            [np.abs(mono[i * hop:(i + 1) * hop]).max(initial=0.0) for i in range(context.frame_count)],
            dtype=np.float32,
        )
        yield context.frame_count
        return self.build_track(context, values)


# =============================================================================
# Registration Tests
# =============================================================================

@pytest.mark.unit
class TestRegistration:
    """Tests for registering and resolving calculators."""

    def test_builtins(self, registry):
        assert registry.ids() == ["spectrogram", "rms", "waveform"]
        assert len(registry) == 3
        assert "rms" in registry

    def test_get_unknown_raises(self, registry):
        with pytest.raises(UnknownCalculator) as exc_info:
            registry.get("chroma")

        assert exc_info.value.calculator_id == "chroma"
        assert isinstance(exc_info.value, KeyError)

    def test_find_returns_none(self, registry):
        assert registry.find("chroma") is None

    def test_register_new_id(self, registry):
        assert registry.register(PeakCalculator()) == []
        assert registry.ids()[-1] == "peak"

    def test_resolve_keeps_registration_order(self, registry):
        resolved = registry.resolve(["waveform", "spectrogram", "waveform"])

        assert [c.id for c in resolved] == ["spectrogram", "waveform"]

    def test_resolve_all(self, registry):
        assert [c.id for c in registry.resolve()] == registry.ids()

    def test_resolve_unknown_raises(self, registry):
        with pytest.raises(UnknownCalculator):
            registry.resolve(["rms", "chroma"])

    def test_same_instance_is_noop(self, registry):
        rms = registry.get("rms")

        assert registry.register(rms) == []
        assert registry.get("rms") is rms

    def test_unregister(self, registry):
        assert registry.unregister("rms") is True
        assert registry.unregister("rms") is False
        assert "rms" not in registry

    def test_empty_id_rejected(self, registry):
        class Anonymous(PeakCalculator):
            id = ""

        with pytest.raises(ValidationError):
            registry.register(Anonymous())

    def test_versions(self, registry):
        assert registry.versions() == {"spectrogram": 2, "rms": 1, "waveform": 1}

    def test_empty_registry(self):
        registry = CalculatorRegistry()

        assert registry.ids() == []
        assert registry.register(SpectrogramCalculator()) == []


# =============================================================================
# Version Upgrade Tests
# =============================================================================

@pytest.mark.unit
class TestVersionUpgrades:
    """Tests for calculator upgrades invalidating caches."""

    def test_same_version_rejected(self, registry):
        with pytest.raises(ValidationError):
            registry.register(RmsCalculator())

    def test_downgrade_rejected(self, registry):
        registry.register(RmsV2())

        with pytest.raises(ValidationError):
            registry.register(RmsCalculator())
        assert registry.get("rms").version == 2

    def test_upgrade_marks_caches_stale(self, registry, store):
        store.put(make_cache([make_track("rms", version=1)], source_id="kick"))
        store.put(make_cache([make_track("spectrogram", version=2)], source_id="snare"))

        marked = registry.register(RmsV2())

        assert marked == ["kick"]
        status = store.status("kick")
        assert status.state is CacheState.STALE
        assert status.reason is StaleReason.CALCULATOR_UPGRADED
        assert status.calculator_id == "rms"
        assert store.status("snare").state is CacheState.READY

    def test_upgrade_keeps_cached_data(self, registry, store):
        cache = make_cache([make_track("rms", version=1)])
        store.put(cache)

        registry.register(RmsV2())

        assert store.get("kick") is cache

    def test_custom_upgrade_hook(self):
        calls = []
        registry = CalculatorRegistry(on_upgrade=lambda cid, version: calls.append((cid, version)) or ["x"])
        registry.register(RmsCalculator())

        assert registry.register(RmsV2()) == ["x"]
        assert calls == [("rms", 2)]
