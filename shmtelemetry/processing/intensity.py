"""JMA seismic intensity from a three-axis acceleration window.

The window is band-shaped in the frequency domain by the JMA filter
(period-effect, high-cut and low-cut factors), the filtered axes are combined
into a vector magnitude, and the amplitude exceeded for a cumulative 0.3 s is
converted to the intensity scale.  Class labels and colors come from a fixed
table of ten shindo bins.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from functools import lru_cache

import numpy as np

from ..constants import JMA_DURATION_S, JMA_OFFSET
from ..errors import InsufficientWindow, IntensityDomainError
from .fft import demean

__all__ = [
    "IntensityValue",
    "SHINDO_CLASSES",
    "ShindoClass",
    "build_jma_filter",
    "classify_intensity",
    "compute_intensity",
    "filtered_vector_magnitude",
    "shindo_index",
]


@dataclass(frozen=True, slots=True)
class ShindoClass:
    label: str
    lower: float
    upper: float
    color: tuple[int, int, int]

    @property
    def mid(self) -> float:
        return 0.5 * (self.lower + self.upper)


SHINDO_CLASSES: tuple[ShindoClass, ...] = (
    ShindoClass("0", -math.inf, 0.5, (255, 255, 255)),
    ShindoClass("1", 0.5, 1.5, (242, 242, 255)),
    ShindoClass("2", 1.5, 2.5, (0, 170, 255)),
    ShindoClass("3", 2.5, 3.5, (0, 65, 255)),
    ShindoClass("4", 3.5, 4.5, (255, 230, 150)),
    ShindoClass("5-", 4.5, 5.0, (255, 230, 0)),
    ShindoClass("5+", 5.0, 5.5, (255, 153, 0)),
    ShindoClass("6-", 5.5, 6.0, (255, 40, 0)),
    ShindoClass("6+", 6.0, 6.5, (165, 0, 33)),
    ShindoClass("7", 6.5, math.inf, (180, 0, 104)),
)


@dataclass(frozen=True, slots=True)
class IntensityValue:
    value: float
    label: str
    rgb: tuple[int, int, int]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@lru_cache(maxsize=32)
def _jma_filter_cached(n: int, dt: float) -> np.ndarray:
    gain = np.zeros(n, dtype=np.float64)
    if n < 2:
        return gain
    duration = n * dt
    idx = np.arange(1, n // 2 + 1, dtype=np.float64)
    freq = idx / duration
    y = freq / 10.0
    period_effect = np.sqrt(1.0 / freq)
    high_cut = 1.0 / np.sqrt(
        1.0
        + 0.694 * y**2
        + 0.241 * y**4
        + 0.0557 * y**6
        + 0.009664 * y**8
        + 0.00134 * y**10
        + 0.000155 * y**12
    )
    low_cut = np.sqrt(1.0 - np.exp(-((2.0 * freq) ** 3)))
    values = period_effect * high_cut * low_cut
    positions = idx.astype(np.intp)
    gain[positions] = values
    gain[n - positions] = values
    gain[0] = 0.0
    gain.setflags(write=False)
    return gain


def build_jma_filter(n: int, dt: float) -> np.ndarray:
    """Real, symmetric frequency response for an *n*-point FFT at spacing *dt* seconds.

    The returned array is shared between callers with the same ``(n, dt)``
    and is read-only.
    """
    if n < 0:
        raise ValueError(f"filter length must be non-negative, got {n}")
    if dt <= 0:
        raise ValueError(f"sample spacing must be positive, got {dt}")
    return _jma_filter_cached(int(n), float(dt))


def filtered_vector_magnitude(x, y, z, sample_rate_hz: float) -> np.ndarray:
    """JMA-filtered vector magnitude ``sqrt(ax² + ay² + az²)`` per sample."""
    if sample_rate_hz <= 0:
        raise ValueError(f"sample_rate_hz must be positive, got {sample_rate_hz!r}")
    block = np.vstack([demean(x), demean(y), demean(z)])
    n = block.shape[1]
    if n == 0:
        return np.empty(0, dtype=np.float64)
    gain = build_jma_filter(n, 1.0 / float(sample_rate_hz))
    filtered = np.fft.ifft(np.fft.fft(block, axis=1) * gain, axis=1).real
    return np.sqrt(np.sum(filtered * filtered, axis=0))


def compute_intensity(x, y, z, sample_rate_hz: float) -> float:
    """JMA seismic intensity of a three-axis window in gal.

    Raises :class:`InsufficientWindow` when the window is not longer than the
    0.3 s exceedance count, and :class:`IntensityDomainError` when the
    selected amplitude is not positive (e.g. an all-zero window).
    """
    magnitude = np.sort(filtered_vector_magnitude(x, y, z, sample_rate_hz))
    k = _round_half_up(JMA_DURATION_S * float(sample_rate_hz))
    if magnitude.size <= k:
        raise InsufficientWindow(
            "not enough data for calculating JMA seismic intensity scale",
            required=k + 1,
            actual=int(magnitude.size),
        )
    a0 = float(magnitude[magnitude.size - 1 - k])
    if not math.isfinite(a0) or a0 <= 0.0:
        raise IntensityDomainError(
            f"JMA amplitude must be positive, got {a0!r}",
            amplitude=a0,
        )
    return 2.0 * math.log10(a0) + JMA_OFFSET


def shindo_index(value: float) -> int:
    for idx, shindo in enumerate(SHINDO_CLASSES):
        if value < shindo.upper:
            return idx
    return len(SHINDO_CLASSES) - 1


def classify_intensity(value: float) -> IntensityValue:
    """Shindo label and display color for an intensity value.

    Inner classes blend linearly from their midpoint color toward the
    neighbour on the value's side; the open-ended edge classes use their
    fixed color, as does 6+ above its midpoint.
    """
    if math.isnan(value):
        raise ValueError("cannot classify NaN intensity")
    idx = shindo_index(value)
    shindo = SHINDO_CLASSES[idx]
    if idx == 0 or idx == len(SHINDO_CLASSES) - 1:
        return IntensityValue(value=value, label=shindo.label, rgb=shindo.color)
    mid = shindo.mid
    if value < mid:
        lower = SHINDO_CLASSES[idx - 1]
        # Class 0 has no finite midpoint; blend from its upper bound instead.
        lower_mid = lower.mid if math.isfinite(lower.lower) else lower.upper
        ratio = (value - lower_mid) / (mid - lower_mid)
        rgb = tuple(
            lc + int((c - lc) * ratio) for lc, c in zip(lower.color, shindo.color, strict=True)
        )
    else:
        upper = SHINDO_CLASSES[idx + 1]
        if not math.isfinite(upper.upper):
            # Class 7 has no finite midpoint; 6+ keeps its own color above its midpoint.
            return IntensityValue(value=value, label=shindo.label, rgb=shindo.color)
        ratio = (value - mid) / (upper.mid - mid)
        rgb = tuple(
            c + int((uc - c) * ratio) for c, uc in zip(shindo.color, upper.color, strict=True)
        )
    return IntensityValue(value=value, label=shindo.label, rgb=rgb)  # type: ignore[arg-type]
