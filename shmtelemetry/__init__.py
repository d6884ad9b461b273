"""Structural-health telemetry core: accelerometer codec, spectra, JMA intensity, record store."""

from importlib.metadata import PackageNotFoundError, version

__all__ = ["__version__"]

try:
    __version__: str = version("shmtelemetry")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"
