from __future__ import annotations

import math

import numpy as np
import pytest

from shmtelemetry.config import config_from_dict
from shmtelemetry.processing.fft import (
    amplitude_rows,
    analyze,
    cepstral_envelope,
    compute_spectrum,
    demean,
    peak_bin,
)

FS = 62.5
N = 256


def _sine(freq_hz: float, amplitude: float = 10.0, n: int = N, fs: float = FS) -> np.ndarray:
    t = np.arange(n) / fs
    return amplitude * np.sin(2.0 * math.pi * freq_hz * t)


def test_demean_removes_mean() -> None:
    out = demean([1.0, 2.0, 3.0, 6.0])
    assert out.mean() == pytest.approx(0.0, abs=1e-12)
    np.testing.assert_allclose(out, [-2.0, -1.0, 0.0, 3.0])


def test_demean_empty() -> None:
    assert demean([]).size == 0


def test_spectrum_is_one_sided() -> None:
    zeros = np.zeros(N)
    spectrum = compute_spectrum(zeros, zeros, zeros, FS)
    assert spectrum["freq"].shape == (N // 2 + 1,)
    assert spectrum["amp"].shape == (3, N // 2 + 1)
    assert spectrum["smooth"] is None
    assert spectrum["freq"][1] == pytest.approx(FS / N)
    assert spectrum["freq"][-1] == pytest.approx(FS / 2)


def test_bin_exact_sine_amplitude_is_scaled_by_sample_rate() -> None:
    freq = 20 * FS / N
    spectrum = compute_spectrum(_sine(freq), _sine(freq, 5.0), np.full(N, 980.0), FS)
    amp = spectrum["amp"]
    assert amp[0, 20] == pytest.approx(10.0 * N / 2 / FS)
    assert amp[1, 20] == pytest.approx(5.0 * N / 2 / FS)
    # Constant offset disappears once the window is demeaned.
    assert np.max(amp[2]) == pytest.approx(0.0, abs=1e-9)


def test_peak_is_within_one_bin_of_sine_frequency() -> None:
    bins = analyze(_sine(5.0), _sine(5.0, 2.0), np.zeros(N), FS)
    peak = peak_bin(bins)
    assert peak is not None
    assert abs(peak.frequency_hz - 5.0) <= FS / N


def test_peak_bin_skips_dc() -> None:
    bins = analyze(np.ones(16), np.zeros(16), np.zeros(16), FS)
    bins[0].amp_x = 1e9
    assert peak_bin(bins) is not bins[0]
    assert peak_bin(bins, skip_dc=False) is bins[0]
    assert peak_bin([]) is None


def test_empty_window_rejected() -> None:
    with pytest.raises(ValueError):
        compute_spectrum([], [], [], FS)


@pytest.mark.parametrize("fs", [0.0, -62.5])
def test_non_positive_sample_rate_rejected(fs: float) -> None:
    with pytest.raises(ValueError):
        compute_spectrum([1.0, 2.0], [1.0, 2.0], [1.0, 2.0], fs)


def test_cepstral_envelope_of_flat_spectrum_is_flat() -> None:
    envelope = cepstral_envelope(np.full(64, 5.0 + 0.0j), coeff=4)
    np.testing.assert_allclose(envelope, 5.0, rtol=1e-9)


def test_cepstral_envelope_removes_high_quefrency_ripple() -> None:
    k = np.arange(64)
    log_spectrum = 40.0 + 6.0 * np.cos(2.0 * math.pi * 20 * k / 64)
    spectrum = np.power(10.0, log_spectrum / 20.0).astype(np.complex128)
    envelope = cepstral_envelope(spectrum, coeff=4)
    np.testing.assert_allclose(envelope, 100.0, rtol=1e-9)


def test_cepstrum_without_liftering_reproduces_magnitude() -> None:
    rng = np.random.default_rng(3)
    x, y, z = (rng.normal(0.0, 1000.0, N) for _ in range(3))
    spectrum = compute_spectrum(x, y, z, FS, cepstrum_coeff=N // 2)
    np.testing.assert_allclose(spectrum["smooth"][:, 1:], spectrum["amp"][:, 1:], rtol=1e-6)


def test_default_envelope_is_smoother_than_raw_spectrum() -> None:
    processing = config_from_dict().processing
    rng = np.random.default_rng(11)
    x, y, z = (rng.normal(0.0, 1000.0, processing.window_samples) for _ in range(3))
    spectrum = compute_spectrum(
        x, y, z, processing.sample_rate_hz, cepstrum_coeff=processing.cepstrum_coeff
    )
    band = slice(16, 112)
    raw_db = 20.0 * np.log10(spectrum["amp"][:, band])
    smooth_db = 20.0 * np.log10(spectrum["smooth"][:, band])
    raw_roughness = np.mean(np.diff(raw_db, axis=1) ** 2)
    smooth_roughness = np.mean(np.diff(smooth_db, axis=1) ** 2)
    assert smooth_roughness < 0.1 * raw_roughness


def test_smoothed_spectrum_shape_and_positivity() -> None:
    rng = np.random.default_rng(7)
    x, y, z = (rng.normal(0.0, 5.0, N) for _ in range(3))
    bins = analyze(x, y, z, FS, cepstrum_coeff=8)
    assert len(bins) == N // 2 + 1
    for item in bins:
        for value in (item.smooth_x, item.smooth_y, item.smooth_z):
            assert value is not None
            assert math.isfinite(value)
            assert value > 0.0


def test_amplitude_rows_shape() -> None:
    bins = analyze(_sine(5.0), np.zeros(N), np.zeros(N), FS)
    rows = amplitude_rows(bins)
    assert rows.shape == (N // 2 + 1, 3)
    assert rows[:, 0].max() == pytest.approx(max(b.amp_x for b in bins))
