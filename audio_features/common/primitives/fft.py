"""
FFT Engine - radix-2 Cooley-Tukey with cached per-size plans.

A plan holds the bit-reversal permutation and the per-stage twiddle
factors for one transform size. Plans are built once per size, stored in a
process-wide cache and never mutated afterwards, so concurrent analysis
jobs share them freely.

Butterflies are vectorized across both the frame batch and the blocks of
each stage: one numpy expression per stage, log2(N) stages per call.
"""

import threading
import numpy as np
from typing import Dict, List

from audio_features.core.errors import ValidationError


def is_power_of_two(n: int) -> bool:
    return n > 0 and (n & (n - 1)) == 0


def next_power_of_two(n: int) -> int:
    """Smallest power of two >= n (n >= 1)."""
    if n <= 1:
        return 1
    return 1 << (int(n) - 1).bit_length()


def _bit_reversal_indices(size: int) -> np.ndarray:
    bits = size.bit_length() - 1
    indices = np.arange(size, dtype=np.int64)
    reversed_ = np.zeros(size, dtype=np.int64)
    for _ in range(bits):
        reversed_ = (reversed_ << 1) | (indices & 1)
        indices >>= 1
    return reversed_


class FFTPlan:
    """
    Precomputed transform plan for one power-of-two size.

    Usage:
        plan = get_fft_plan(1024)
        spectrum = plan.rfft(frames)  # frames: (n_frames, 1024)
    """

    def __init__(self, size: int):
        if not is_power_of_two(size):
            raise ValidationError(
                f"FFT size must be a power of two, got {size}",
                data={"size": size},
            )
        self.size = size
        self.bin_count = size // 2 + 1
        self.bit_reversal = _bit_reversal_indices(size)
        self.bit_reversal.setflags(write=False)

        half = np.exp(-2j * np.pi * np.arange(max(1, size // 2)) / size)
        self.stage_twiddles: List[np.ndarray] = []
        m = 1
        while m < size:
            twiddle = np.ascontiguousarray(half[::size // (2 * m)][:m])
            twiddle.setflags(write=False)
            self.stage_twiddles.append(twiddle)
            m *= 2

    def transform(self, frames: np.ndarray) -> np.ndarray:
        """
        Complex forward DFT of every row.

        Args:
            frames: Real or complex array (n_frames, size) or (size,)

        Returns:
            complex128 array with the same shape
        """
        data = np.asarray(frames)
        single = data.ndim == 1
        if single:
            data = data[np.newaxis, :]
        if data.shape[-1] != self.size:
            raise ValidationError(
                f"frame length {data.shape[-1]} does not match plan size {self.size}",
                data={"frame_length": int(data.shape[-1]), "size": self.size},
            )

        batch = data.shape[0]
        x = data[:, self.bit_reversal].astype(np.complex128)

        m = 1
        for twiddle in self.stage_twiddles:
            blocks = x.reshape(batch, self.size // (2 * m), 2, m)
            even = blocks[:, :, 0, :]
            odd = blocks[:, :, 1, :] * twiddle
            x = np.stack((even + odd, even - odd), axis=2).reshape(batch, self.size)
            m *= 2

        return x[0] if single else x

    def rfft(self, frames: np.ndarray) -> np.ndarray:
        """Non-negative frequency bins (size/2 + 1) of a real input."""
        return self.transform(frames)[..., :self.bin_count]

    def magnitude(self, frames: np.ndarray) -> np.ndarray:
        """|rfft| of every row."""
        return np.abs(self.rfft(frames))


# ============== Plan Cache ==============

_plans: Dict[int, FFTPlan] = {}
_plans_lock = threading.Lock()


def get_fft_plan(size: int) -> FFTPlan:
    """Get (or build once) the shared plan for a transform size."""
    plan = _plans.get(size)
    if plan is not None:
        return plan
    with _plans_lock:
        plan = _plans.get(size)
        if plan is None:
            plan = FFTPlan(size)
            _plans[size] = plan
        return plan


def cached_plan_sizes() -> List[int]:
    """Sizes with a built plan (diagnostics)."""
    return sorted(_plans)
