"""Per-device accumulation of axis-aligned accelerometer triplets.

``AccelWindow`` collects decoded messages until it holds a full analysis
window, reconstructing a timestamp for every triplet from the message send
times.  It is owned by a single ingest path and is not thread-safe.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from ..constants import AXIS_COUNT
from ..protocol import AccMessage


@dataclass(frozen=True, slots=True)
class Orientation:
    """Index of the sensor axis that points north-south, east-west and up-down."""

    ns: int = 0
    ew: int = 1
    ud: int = 2

    def __post_init__(self) -> None:
        if sorted((self.ns, self.ew, self.ud)) != [0, 1, 2]:
            raise ValueError(
                f"orientation must be a permutation of 0,1,2, got {(self.ns, self.ew, self.ud)}"
            )


@dataclass(slots=True)
class AccelWindow:
    window_samples: int
    sample_rate_hz: float
    orientation: Orientation = field(default_factory=Orientation)
    data: np.ndarray = field(init=False)
    times_ms: np.ndarray = field(init=False)
    count: int = field(init=False, default=0)
    last_send_time_ms: int | None = field(init=False, default=None)

    def __post_init__(self) -> None:
        if self.window_samples < 1:
            raise ValueError(f"window_samples must be >= 1, got {self.window_samples}")
        if self.sample_rate_hz <= 0:
            raise ValueError(f"sample_rate_hz must be positive, got {self.sample_rate_hz}")
        self.data = np.zeros((self.window_samples, AXIS_COUNT), dtype=np.float64)
        self.times_ms = np.zeros(self.window_samples, dtype=np.float64)

    @property
    def limit(self) -> int:
        """Triplets still needed to fill the window."""
        return self.window_samples - self.count

    @property
    def is_full(self) -> bool:
        return self.count >= self.window_samples

    def reset(self) -> None:
        """Drop the buffered samples; the send-time history is kept for spacing."""
        self.data.fill(0.0)
        self.times_ms.fill(0.0)
        self.count = 0

    def snapshot(self) -> AccelWindow:
        """Independent copy, safe to analyze while this window keeps filling."""
        clone = AccelWindow(self.window_samples, self.sample_rate_hz, self.orientation)
        clone.data[:] = self.data
        clone.times_ms[:] = self.times_ms
        clone.count = self.count
        clone.last_send_time_ms = self.last_send_time_ms
        return clone

    def add_message(self, message: AccMessage) -> int:
        """Append the aligned triplets of *message*; returns how many were taken.

        Triplets beyond :attr:`limit` are discarded.
        """
        triplets = message.aligned().reshape(-1, AXIS_COUNT)
        size = triplets.shape[0]
        if size == 0:
            return 0
        if self.last_send_time_ms is None:
            dt_ms = 1000.0 / self.sample_rate_hz
        else:
            dt_ms = float(message.send_time_ms - self.last_send_time_ms) / size
        self.last_send_time_ms = message.send_time_ms
        offsets = np.arange(size - 1, -1, -1, dtype=np.float64) * dt_ms
        times = float(message.send_time_ms) - offsets

        taken = min(size, self.limit)
        self.data[self.count : self.count + taken] = triplets[:taken]
        self.times_ms[self.count : self.count + taken] = times[:taken]
        self.count += taken
        return taken

    def axes(self) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Buffered samples as (NS, EW, UD) arrays."""
        block = self.data[: self.count]
        o = self.orientation
        return block[:, o.ns].copy(), block[:, o.ew].copy(), block[:, o.ud].copy()

    def timestamps(self) -> np.ndarray:
        return self.times_ms[: self.count].copy()

    def effective_sample_rate_hz(self) -> float | None:
        """Rate implied by the reconstructed timestamps, or ``None`` if undetermined."""
        if self.count < 2:
            return None
        span_ms = float(self.times_ms[self.count - 1] - self.times_ms[0])
        if span_ms <= 0:
            return None
        return (self.count - 1) * 1000.0 / span_ms
