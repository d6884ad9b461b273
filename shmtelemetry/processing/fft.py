"""Pure spectral-analysis functions for accelerometer windows.

All functions in this module are stateless: they take arrays (and scalar
parameters) and return results without touching any shared mutable state,
so they can run concurrently per device or per message.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from ..constants import CEPSTRUM_MAGNITUDE_FLOOR

AXES = ("x", "y", "z")


@dataclass(slots=True)
class SpectrumBin:
    frequency_hz: float
    amp_x: float
    amp_y: float
    amp_z: float
    smooth_x: float | None = None
    smooth_y: float | None = None
    smooth_z: float | None = None


def demean(values: np.ndarray | list[float]) -> np.ndarray:
    """Return *values* as float64 with the arithmetic mean removed."""
    arr = np.asarray(values, dtype=np.float64)
    if arr.size == 0:
        return arr.copy()
    return arr - arr.mean()


def _stack_axes(x, y, z) -> np.ndarray:
    block = np.vstack([demean(x), demean(y), demean(z)])
    if block.shape[1] == 0:
        raise ValueError("spectrum window is empty")
    return block


def cepstral_envelope(full_fft: np.ndarray, coeff: int) -> np.ndarray:
    """Smooth a full-length complex spectrum by liftering its real cepstrum.

    Takes ``20*log10(|F|)``, inverse-transforms it, zeroes every quefrency
    outside ``[-coeff, +coeff]``, transforms back and returns
    ``10**(|.|/20)`` (same units as ``|F|``).
    """
    n = full_fft.shape[-1]
    magnitude = np.maximum(np.abs(full_fft), CEPSTRUM_MAGNITUDE_FLOOR)
    log_spectrum = 20.0 * np.log10(magnitude)
    cepstrum = np.fft.ifft(log_spectrum, axis=-1).real
    coeff = max(0, int(coeff))
    if 2 * coeff + 1 < n:
        cepstrum[..., coeff + 1 : n - coeff] = 0.0
    smoothed = np.fft.fft(cepstrum, axis=-1)
    return np.power(10.0, np.abs(smoothed) / 20.0)


def compute_spectrum(
    x: np.ndarray | list[float],
    y: np.ndarray | list[float],
    z: np.ndarray | list[float],
    sample_rate_hz: float,
    *,
    cepstrum_coeff: int | None = None,
) -> dict[str, np.ndarray | None]:
    """Compute one-sided amplitude spectra for a three-axis window.

    Parameters
    ----------
    x, y, z:
        Equal-length time-domain windows in gal.
    sample_rate_hz:
        Sampling rate of the window.
    cepstrum_coeff:
        When given, also return the cepstrally smoothed envelope.

    Returns
    -------
    dict with keys ``freq`` (``N//2 + 1`` bins), ``amp`` (``(3, bins)``,
    ``|FFT| / fs``) and ``smooth`` (``(3, bins)`` or ``None``).
    """
    if sample_rate_hz <= 0:
        raise ValueError(f"sample_rate_hz must be positive, got {sample_rate_hz!r}")
    block = _stack_axes(x, y, z)
    n = block.shape[1]
    amp = np.abs(np.fft.rfft(block, axis=1)) / float(sample_rate_hz)
    bins = amp.shape[1]
    freq = np.arange(bins, dtype=np.float64) * (float(sample_rate_hz) / n)
    smooth = None
    if cepstrum_coeff is not None:
        # The cepstrum needs the full two-sided spectrum.
        full = np.fft.fft(block, axis=1)
        smooth = cepstral_envelope(full, cepstrum_coeff)[:, :bins] / float(sample_rate_hz)
    return {"freq": freq, "amp": amp, "smooth": smooth}


def analyze(
    x: np.ndarray | list[float],
    y: np.ndarray | list[float],
    z: np.ndarray | list[float],
    sample_rate_hz: float,
    *,
    cepstrum_coeff: int | None = None,
) -> list[SpectrumBin]:
    """Spectrum of a three-axis window as a list of :class:`SpectrumBin`."""
    spectrum = compute_spectrum(x, y, z, sample_rate_hz, cepstrum_coeff=cepstrum_coeff)
    freq = spectrum["freq"]
    amp = spectrum["amp"]
    smooth = spectrum["smooth"]
    bins: list[SpectrumBin] = []
    for idx in range(freq.size):
        item = SpectrumBin(
            frequency_hz=float(freq[idx]),
            amp_x=float(amp[0, idx]),
            amp_y=float(amp[1, idx]),
            amp_z=float(amp[2, idx]),
        )
        if smooth is not None:
            item.smooth_x = float(smooth[0, idx])
            item.smooth_y = float(smooth[1, idx])
            item.smooth_z = float(smooth[2, idx])
        bins.append(item)
    return bins


def peak_bin(bins: list[SpectrumBin], *, skip_dc: bool = True) -> SpectrumBin | None:
    """Bin with the largest combined (root-sum-square) amplitude."""
    candidates = bins[1:] if skip_dc and len(bins) > 1 else bins
    if not candidates:
        return None
    return max(candidates, key=lambda b: b.amp_x**2 + b.amp_y**2 + b.amp_z**2)


def amplitude_rows(bins: list[SpectrumBin]) -> np.ndarray:
    """``(bins, 3)`` array of x/y/z amplitudes, the shape the spectrum archive takes."""
    return np.array([[b.amp_x, b.amp_y, b.amp_z] for b in bins], dtype=np.float64).reshape(-1, 3)
