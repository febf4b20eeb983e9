"""
Audio Primitives - decoded PCM container and framing helpers.

PURE NUMPY. Decoding happens outside this package; everything here
operates on already-decoded float samples.
"""

import hashlib
import numpy as np
import scipy.signal
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Union

from audio_features.core.errors import ValidationError


@dataclass(frozen=True)
class AudioBuffer:
    """
    Decoded PCM supplied by the host.

    Attributes:
        sample_rate: Samples per second
        samples: float32 array shaped (channels, length)
        channel_aliases: Optional alias -> channel index table (e.g. {"Left": 0})
    """
    sample_rate: int
    samples: np.ndarray
    channel_aliases: Dict[str, int] = field(default_factory=dict)

    def __post_init__(self):
        if self.sample_rate <= 0:
            raise ValidationError(
                f"sample_rate must be positive, got {self.sample_rate}",
                data={"sample_rate": self.sample_rate},
            )
        samples = np.asarray(self.samples, dtype=np.float32)
        if samples.ndim == 1:
            samples = samples[np.newaxis, :]
        if samples.ndim != 2:
            raise ValidationError(
                f"samples must be 1-D or (channels, length), got shape {samples.shape}",
                data={"shape": list(samples.shape)},
            )
        samples = np.ascontiguousarray(samples)
        samples.setflags(write=False)
        object.__setattr__(self, "samples", samples)

    @classmethod
    def from_channels(
        cls,
        sample_rate: int,
        channels: Sequence[Union[np.ndarray, Sequence[float]]],
        channel_aliases: Optional[Dict[str, int]] = None,
    ) -> 'AudioBuffer':
        """Build from a list of per-channel arrays (padded to the longest)."""
        arrays = [np.asarray(ch, dtype=np.float32).ravel() for ch in channels]
        if not arrays:
            raise ValidationError("at least one channel is required")
        length = max(len(a) for a in arrays)
        stacked = np.zeros((len(arrays), length), dtype=np.float32)
        for index, array in enumerate(arrays):
            stacked[index, :len(array)] = array
        return cls(sample_rate, stacked, dict(channel_aliases or {}))

    @property
    def channel_count(self) -> int:
        return int(self.samples.shape[0])

    @property
    def length(self) -> int:
        return int(self.samples.shape[1])

    @property
    def duration_seconds(self) -> float:
        return self.length / float(self.sample_rate)

    def content_hash(self) -> str:
        """SHA-1 over sample rate and PCM bytes (input drift detection)."""
        digest = hashlib.sha1()
        digest.update(str(self.sample_rate).encode("ascii"))
        digest.update(str(self.samples.shape).encode("ascii"))
        digest.update(self.samples.tobytes())
        return digest.hexdigest()


def mix_to_mono(audio: AudioBuffer) -> np.ndarray:
    """Average all channels into one contiguous float32 signal."""
    if audio.length == 0:
        return np.zeros(0, dtype=np.float32)
    mono = audio.samples.astype(np.float64).mean(axis=0)
    return np.ascontiguousarray(mono, dtype=np.float32)


def hann_window(length: int) -> np.ndarray:
    """Symmetric Hann window as contiguous float32."""
    return np.ascontiguousarray(scipy.signal.windows.hann(length, sym=True), dtype=np.float32)


def compute_frame_count(length: int, window_size: int, hop_size: int) -> int:
    """Frames covered by a window sliding at hop_size (at least one)."""
    if hop_size <= 0 or window_size <= 0:
        raise ValidationError(
            "window_size and hop_size must be positive",
            data={"window_size": window_size, "hop_size": hop_size},
        )
    if length <= window_size:
        return 1
    return max(1, (length - window_size) // hop_size + 1)


def frame_signal(
    signal: np.ndarray,
    window_size: int,
    hop_size: int,
    start_frame: int,
    stop_frame: int,
) -> np.ndarray:
    """
    Extract frames [start_frame, stop_frame) as a (n, window_size) array.

    Windows running past the end of the signal are zero-padded.
    """
    count = max(0, stop_frame - start_frame)
    if count == 0:
        return np.zeros((0, window_size), dtype=np.float32)

    first = start_frame * hop_size
    last = (stop_frame - 1) * hop_size + window_size
    segment = signal[first:min(last, len(signal))]
    if len(segment) < last - first:
        segment = np.pad(segment, (0, last - first - len(segment)))

    segment = np.ascontiguousarray(segment, dtype=np.float32)
    shape = (count, window_size)
    strides = (hop_size * segment.strides[0], segment.strides[0])
    return np.lib.stride_tricks.as_strided(segment, shape=shape, strides=strides, writeable=False)
