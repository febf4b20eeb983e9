"""
Sampling - tick-addressed reads from feature caches.

- identity.py: track keys per analysis profile
- channels.py: channel index / alias resolution
- view_adapter.py: interpolated samples and dense ranges

Import from the submodules, e.g.
    from audio_features.modules.sampling.view_adapter import TempoAlignedViewAdapter
"""
