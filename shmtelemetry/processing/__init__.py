"""Numeric pipeline built on decoded accelerometer windows.

- :mod:`~shmtelemetry.processing.buffers`: per-device window accumulation.
- :mod:`~shmtelemetry.processing.fft`: pure spectrum / cepstrum functions.
- :mod:`~shmtelemetry.processing.intensity`: JMA seismic intensity and shindo classes.
"""

from .buffers import AccelWindow, Orientation
from .fft import SpectrumBin, analyze, compute_spectrum
from .intensity import IntensityValue, classify_intensity, compute_intensity

__all__ = [
    "AccelWindow",
    "IntensityValue",
    "Orientation",
    "SpectrumBin",
    "analyze",
    "classify_intensity",
    "compute_intensity",
    "compute_spectrum",
]
