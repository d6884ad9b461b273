"""Wire, physical and processing constants shared across the package.

Every numeric literal that appears in more than one module should live here
so that a change only needs to happen in one place.
"""

from __future__ import annotations

from typing import Final

# ---------------------------------------------------------------------------
# Accelerometer fixed-point format (20-bit two's complement in 3 bytes)
# ---------------------------------------------------------------------------
POW19: Final[int] = 1 << 19
POW20: Final[int] = 1 << 20

ACC_FACTOR_GAL_PER_LSB: Final[float] = 980.665 / 256000.0
"""Scale from raw LSB to gal (cm/s²): 1 g = 980.665 gal at 256000 LSB/g."""

TRIPLE_BYTES: Final[int] = 3
MARKER_BIT: Final[int] = 0x01
"""Low bit of the third byte flags the X sample of an axis-aligned triplet."""

AXIS_COUNT: Final[int] = 3

# ---------------------------------------------------------------------------
# Packet framing
# ---------------------------------------------------------------------------
SUBPACKET_HEADER_BYTES: Final[int] = 4
MAX_SUBPACKET_SAMPLES: Final[int] = 32768
"""Exclusive upper bound on a sub-packet's declared sample count."""

ENVELOPE_BYTES: Final[int] = 12
"""8-byte big-endian send timestamp (ms) followed by 4 reserved bytes."""

FLOAT32_BYTES: Final[int] = 4

# ---------------------------------------------------------------------------
# Sensor defaults
# ---------------------------------------------------------------------------
DEFAULT_SAMPLE_RATE_HZ: Final[float] = 62.5
DEFAULT_WINDOW_SAMPLES: Final[int] = 256
DEFAULT_CEPSTRUM_COEFF: Final[int] = 16
ACC_CHANNEL: Final[str] = "acc02"

# ---------------------------------------------------------------------------
# JMA seismic intensity
# ---------------------------------------------------------------------------
JMA_DURATION_S: Final[float] = 0.3
"""Total time the filtered magnitude must exceed a0 (JMA definition)."""

JMA_OFFSET: Final[float] = 0.94

CEPSTRUM_MAGNITUDE_FLOOR: Final[float] = 1e-12
"""Magnitudes below this are clamped before taking the log spectrum."""
