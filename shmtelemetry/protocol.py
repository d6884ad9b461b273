from __future__ import annotations

import math
import struct
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

import numpy as np

from .constants import (
    ACC_FACTOR_GAL_PER_LSB,
    AXIS_COUNT,
    ENVELOPE_BYTES,
    FLOAT32_BYTES,
    MARKER_BIT,
    MAX_SUBPACKET_SAMPLES,
    POW19,
    POW20,
    SUBPACKET_HEADER_BYTES,
    TRIPLE_BYTES,
)
from .errors import (
    EnvelopeTooShort,
    ProtocolError,
    SizeOverflow,
    TruncatedInput,
    TruncatedPacket,
)

__all__ = [
    "AccMessage",
    "AccPacket",
    "EnvelopeTooShort",
    "ProtocolError",
    "SizeOverflow",
    "TruncatedInput",
    "TruncatedPacket",
    "advance_phase",
    "decode_acc_message",
    "decode_acc_packet",
    "decode_float32_array",
    "decode_spectrum",
    "decode_triple",
    "decode_triples",
    "encode_float32_array",
    "encode_spectrum",
    "encode_triple",
    "pack_acc_message",
    "pack_acc_packet",
    "pack_subpacket",
]

SUBPACKET_HEADER = struct.Struct(">i")
ENVELOPE_HEADER = struct.Struct(">q4x")
SPECTRUM_HEADER = struct.Struct("<hf")
_MAX_SPECTRUM_WINDOW = 32767

# Archival arrays are little-endian float32 throughout.
FLOAT32_DTYPE = np.dtype("<f4")

_MAX_RAW = POW19
_MIN_RAW = -(POW19 - 1)


@dataclass(slots=True)
class AccPacket:
    samples: np.ndarray
    axis_offset: int

    def aligned(self) -> np.ndarray:
        """Samples from ``axis_offset`` on, truncated to whole X,Y,Z triplets."""
        tail = self.samples[self.axis_offset :]
        usable = (tail.size // AXIS_COUNT) * AXIS_COUNT
        return tail[:usable]


@dataclass(slots=True)
class AccMessage:
    send_time_ms: int
    samples: np.ndarray
    axis_offset: int

    def aligned(self) -> np.ndarray:
        return AccPacket(self.samples, self.axis_offset).aligned()


# -- single readings ----------------------------------------------------------


def decode_triple(b0: int, b1: int, b2: int) -> float:
    """Decode one 20-bit reading to gal.

    The sign fix uses a strict ``>``: the raw pattern ``0x80000`` stays
    positive (``+2**19``) so archived data decodes exactly as it always has.
    """
    raw = (b0 << 12) | (b1 << 4) | (b2 >> 4)
    if raw > POW19:
        raw -= POW20
    return raw * ACC_FACTOR_GAL_PER_LSB


def encode_triple(value: float, *, marker: bool = False) -> bytes:
    """Encode a gal value to its 3-byte wire form (nearest LSB, clamped)."""
    if not math.isfinite(value):
        raise ValueError(f"cannot encode non-finite acceleration {value!r}")
    raw = int(round(value / ACC_FACTOR_GAL_PER_LSB))
    raw = max(_MIN_RAW, min(_MAX_RAW, raw)) & (POW20 - 1)
    b2 = (raw & 0x0F) << 4
    if marker:
        b2 |= MARKER_BIT
    return bytes(((raw >> 12) & 0xFF, (raw >> 4) & 0xFF, b2))


def decode_triples(data: bytes | memoryview) -> tuple[np.ndarray, np.ndarray]:
    """Vectorised :func:`decode_triple` over a run of triples.

    Returns ``(values_gal, marker_flags)``.
    """
    if len(data) % TRIPLE_BYTES != 0:
        raise TruncatedInput(
            f"triple run length {len(data)} is not a multiple of {TRIPLE_BYTES}",
            declared=len(data) - len(data) % TRIPLE_BYTES,
            actual=len(data),
        )
    raw_bytes = np.frombuffer(data, dtype=np.uint8).reshape(-1, TRIPLE_BYTES).astype(np.int32)
    raw = (raw_bytes[:, 0] << 12) | (raw_bytes[:, 1] << 4) | (raw_bytes[:, 2] >> 4)
    raw = np.where(raw > POW19, raw - POW20, raw)
    markers = (raw_bytes[:, 2] & MARKER_BIT).astype(bool)
    return raw.astype(np.float64) * ACC_FACTOR_GAL_PER_LSB, markers


# -- archival float32 arrays --------------------------------------------------


def encode_float32_array(values: Iterable[float] | np.ndarray) -> bytes:
    return np.asarray(values, dtype=FLOAT32_DTYPE).tobytes(order="C")


def decode_float32_array(data: bytes) -> np.ndarray:
    if len(data) % FLOAT32_BYTES != 0:
        raise TruncatedInput(
            f"float32 array length {len(data)} is not a multiple of {FLOAT32_BYTES}",
            declared=(len(data) // FLOAT32_BYTES) * FLOAT32_BYTES,
            actual=len(data),
        )
    return np.frombuffer(data, dtype=FLOAT32_DTYPE).copy()


def encode_spectrum(
    amplitudes: np.ndarray | Sequence[Sequence[float]],
    window_samples: int,
    sample_rate_hz: float,
) -> bytes:
    """Archive the lower half of a spectrum.

    Layout: ``int16 window_samples``, ``float32 df``, then ``window_samples // 2``
    rows of three float32 amplitudes (x, y, z).
    """
    if not 0 < int(window_samples) <= _MAX_SPECTRUM_WINDOW:
        raise ValueError(
            f"window_samples must be in 1..{_MAX_SPECTRUM_WINDOW}, got {window_samples!r}"
        )
    rows = np.asarray(amplitudes, dtype=FLOAT32_DTYPE)
    half = int(window_samples) // 2
    if rows.ndim != 2 or rows.shape[1] != AXIS_COUNT:
        raise ValueError("amplitudes must be shaped (bins, 3)")
    if rows.shape[0] < half:
        raise ValueError(f"need at least {half} spectrum rows, got {rows.shape[0]}")
    df = float(sample_rate_hz) / float(window_samples)
    header = SPECTRUM_HEADER.pack(int(window_samples), df)
    return header + rows[:half].tobytes(order="C")


def decode_spectrum(data: bytes) -> tuple[int, float, np.ndarray]:
    if len(data) < SPECTRUM_HEADER.size:
        raise TruncatedInput(
            "spectrum header too short",
            declared=SPECTRUM_HEADER.size,
            actual=len(data),
        )
    window_samples, df = SPECTRUM_HEADER.unpack_from(data, 0)
    half = max(0, window_samples) // 2
    expected = SPECTRUM_HEADER.size + half * AXIS_COUNT * FLOAT32_BYTES
    if len(data) < expected:
        raise TruncatedInput(
            f"spectrum rows truncated: expected {expected} bytes, got {len(data)}",
            offset=SPECTRUM_HEADER.size,
            declared=expected,
            actual=len(data),
        )
    rows = np.frombuffer(
        data, dtype=FLOAT32_DTYPE, count=half * AXIS_COUNT, offset=SPECTRUM_HEADER.size
    )
    return window_samples, float(df), rows.reshape(half, AXIS_COUNT).copy()


# -- axis-aligned packet stream -----------------------------------------------


def advance_phase(current_phase: int, marker_pos: int, sample_count: int) -> tuple[int, int]:
    """Phase transition for one sub-packet.

    *current_phase* is where the X marker is expected in the incoming
    sub-packet, *marker_pos* where it actually is.  Returns
    ``(next_phase, drop_count)``: the leading samples to drop so the
    concatenated stream stays X,Y,Z-ordered, and where the marker is
    expected in the sub-packet after this one.
    """
    drop = ((marker_pos - current_phase) % AXIS_COUNT + AXIS_COUNT) % AXIS_COUNT
    kept = max(0, sample_count - drop)
    next_phase = (current_phase + (AXIS_COUNT - kept % AXIS_COUNT)) % AXIS_COUNT
    return next_phase, drop


def _marker_position(markers: np.ndarray) -> int:
    head = np.flatnonzero(markers[:AXIS_COUNT])
    return int(head[0]) if head.size else 0


def _concat(chunks: list[np.ndarray]) -> np.ndarray:
    if not chunks:
        return np.empty(0, dtype=np.float64)
    return np.concatenate(chunks)


def decode_acc_packet(payload: bytes | memoryview) -> AccPacket:
    """Decode a run of sub-packets into one axis-aligned sample stream.

    Raises :class:`SizeOverflow` or :class:`TruncatedPacket`; the exception's
    ``partial`` attribute holds the samples decoded up to that point.
    """
    view = memoryview(payload)
    total = len(view)
    chunks: list[np.ndarray] = []
    axis_offset = 0
    phase = 0
    offset = 0
    first = True
    while offset < total:
        if offset + SUBPACKET_HEADER_BYTES > total:
            raise TruncatedPacket(
                f"dangling sub-packet header at byte {offset}",
                offset=offset,
                declared=SUBPACKET_HEADER_BYTES,
                actual=total - offset,
                partial=_concat(chunks),
            )
        (count,) = SUBPACKET_HEADER.unpack_from(view, offset)
        if count < 0 or count >= MAX_SUBPACKET_SAMPLES:
            raise SizeOverflow(
                f"size overflow: {count}",
                offset=offset,
                declared=count,
                actual=total - offset - SUBPACKET_HEADER_BYTES,
                partial=_concat(chunks),
            )
        offset += SUBPACKET_HEADER_BYTES
        body_len = TRIPLE_BYTES * count
        if offset + body_len > total:
            raise TruncatedPacket(
                f"not enough data: {total} < {offset + body_len}",
                offset=offset,
                declared=body_len,
                actual=total - offset,
                partial=_concat(chunks),
            )
        values, markers = decode_triples(view[offset : offset + body_len])
        marker_pos = _marker_position(markers)
        if first:
            axis_offset = marker_pos
            phase, drop = advance_phase(marker_pos, marker_pos, count)
            first = False
        else:
            phase, drop = advance_phase(phase, marker_pos, count)
        chunks.append(values[drop:])
        offset += body_len
    return AccPacket(samples=_concat(chunks), axis_offset=axis_offset)


def decode_acc_message(payload: bytes | memoryview) -> AccMessage:
    """Strip the 12-byte envelope and decode the sub-packet stream behind it."""
    if len(payload) <= ENVELOPE_BYTES:
        raise EnvelopeTooShort(
            f"message too short: {len(payload)} <= {ENVELOPE_BYTES}",
            declared=ENVELOPE_BYTES + 1,
            actual=len(payload),
        )
    (send_time_ms,) = ENVELOPE_HEADER.unpack_from(payload, 0)
    try:
        packet = decode_acc_packet(memoryview(payload)[ENVELOPE_BYTES:])
    except ProtocolError as exc:
        exc.offset += ENVELOPE_BYTES
        raise
    return AccMessage(
        send_time_ms=send_time_ms,
        samples=packet.samples,
        axis_offset=packet.axis_offset,
    )


def pack_subpacket(values: Sequence[float] | np.ndarray, marker_pos: int | None = 0) -> bytes:
    """Encode one sub-packet; every third sample from *marker_pos* carries the marker."""
    parts = [SUBPACKET_HEADER.pack(len(values))]
    for idx, value in enumerate(values):
        marker = marker_pos is not None and idx >= marker_pos and (idx - marker_pos) % 3 == 0
        parts.append(encode_triple(float(value), marker=marker))
    return b"".join(parts)


def pack_acc_packet(subpackets: Iterable[bytes]) -> bytes:
    return b"".join(subpackets)


def pack_acc_message(send_time_ms: int, body: bytes) -> bytes:
    return ENVELOPE_HEADER.pack(int(send_time_ms)) + body
