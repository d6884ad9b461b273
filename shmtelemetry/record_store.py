"""Append-only framed log of raw bus messages.

Frame layout (all integers big-endian)::

    [int64 timestamp_ms][topic utf-8][0x00][int32 payload_len][payload]

``RecordStore`` owns one destination handle and serializes appends and
rotations through a single lock.  Readers parse the same layout from a path
or an open binary stream.
"""

from __future__ import annotations

import logging
import os
import shutil
import struct
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import BinaryIO

from .errors import CorruptFrame, RecordStoreClosed

LOGGER = logging.getLogger(__name__)

__all__ = [
    "DeviceRecorders",
    "RecordFrame",
    "RecordStore",
    "backup_file",
    "device_dirname",
    "pack_frame",
    "prune_old_records",
    "read_all",
    "read_stream",
    "replay",
    "timestamp_destination",
]

FRAME_TIMESTAMP = struct.Struct(">q")
FRAME_LENGTH = struct.Struct(">i")
TOPIC_TERMINATOR = b"\x00"
RECORD_SUFFIX = ".dat"
TIMESTAMP_FORMAT = "%Y-%m-%d-%H-%M-%S"

Source = str | os.PathLike[str] | BinaryIO


@dataclass(frozen=True, slots=True)
class RecordFrame:
    timestamp_ms: int
    topic: str
    payload: bytes


def pack_frame(timestamp_ms: int, topic: str, payload: bytes) -> bytes:
    topic_bytes = topic.encode("utf-8")
    if TOPIC_TERMINATOR in topic_bytes:
        raise ValueError("topic must not contain NUL bytes")
    return b"".join(
        (
            FRAME_TIMESTAMP.pack(int(timestamp_ms)),
            topic_bytes,
            TOPIC_TERMINATOR,
            FRAME_LENGTH.pack(len(payload)),
            bytes(payload),
        )
    )


def _sync(dest: BinaryIO) -> None:
    dest.flush()
    try:
        fd = dest.fileno()
    except (AttributeError, OSError):
        # In-memory streams have nothing to sync.
        return
    os.fsync(fd)


class RecordStore:
    """Lock-guarded owner of the active record destination.

    Parameters
    ----------
    dest:
        Initial destination: a path (opened for append) or a writable binary
        stream.  ``None`` leaves the store closed until :meth:`rotate`.
    fsync:
        Force each frame to stable storage after the flush.
    """

    def __init__(self, dest: Source | None = None, *, fsync: bool = True) -> None:
        self._lock = threading.Lock()
        self._fsync = bool(fsync)
        self._dest: BinaryIO | None = None
        self._path: Path | None = None
        self._frames_written = 0
        if dest is not None:
            self._dest, self._path = self._open(dest)

    @staticmethod
    def _open(dest: Source) -> tuple[BinaryIO, Path | None]:
        if isinstance(dest, (str, os.PathLike)):
            path = Path(dest)
            path.parent.mkdir(parents=True, exist_ok=True)
            return path.open("ab"), path
        return dest, None

    @property
    def path(self) -> Path | None:
        with self._lock:
            return self._path

    @property
    def frames_written(self) -> int:
        with self._lock:
            return self._frames_written

    def append(self, timestamp_ms: int, topic: str, payload: bytes) -> None:
        frame = pack_frame(timestamp_ms, topic, payload)
        with self._lock:
            if self._dest is None:
                raise RecordStoreClosed("record store has no destination")
            self._dest.write(frame)
            if self._fsync:
                _sync(self._dest)
            else:
                self._dest.flush()
            self._frames_written += 1

    def rotate(self, new_dest: Source) -> Path | None:
        """Install *new_dest* and close the previous destination.

        Returns the previous destination's path, if it was opened from one.
        """
        opened, new_path = self._open(new_dest)
        with self._lock:
            previous, previous_path = self._dest, self._path
            self._dest, self._path = opened, new_path
            self._frames_written = 0
            # No append can hold the old handle once the lock is ours.
            if previous is not None:
                previous.close()
        LOGGER.info("Rotated record destination %s -> %s", previous_path, new_path)
        return previous_path

    def close(self) -> None:
        with self._lock:
            if self._dest is not None:
                self._dest.close()
            self._dest = None

    def __enter__(self) -> RecordStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


# -- reading ------------------------------------------------------------------


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    chunks: list[bytes] = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def _read_topic(stream: BinaryIO) -> bytes | None:
    topic = bytearray()
    while True:
        byte = stream.read(1)
        if not byte:
            return None
        if byte == TOPIC_TERMINATOR:
            return bytes(topic)
        topic += byte


def _iter_frames(stream: BinaryIO, name: str) -> Iterator[RecordFrame]:
    offset = 0
    while True:
        head = _read_exact(stream, FRAME_TIMESTAMP.size)
        if len(head) < FRAME_TIMESTAMP.size:
            if head:
                LOGGER.debug("%s ends inside a timestamp at byte %d", name, offset)
            return
        (timestamp_ms,) = FRAME_TIMESTAMP.unpack(head)
        topic = _read_topic(stream)
        if topic is None:
            LOGGER.debug("%s ends inside a topic at byte %d", name, offset)
            return
        length_offset = offset + FRAME_TIMESTAMP.size + len(topic) + 1
        length_raw = _read_exact(stream, FRAME_LENGTH.size)
        if not length_raw:
            LOGGER.debug("%s ends before a length field at byte %d", name, length_offset)
            return
        if len(length_raw) < FRAME_LENGTH.size:
            raise CorruptFrame(
                f"truncated length field in {name} at byte {length_offset}",
                offset=length_offset,
                declared=FRAME_LENGTH.size,
                actual=len(length_raw),
            )
        (length,) = FRAME_LENGTH.unpack(length_raw)
        payload_offset = length_offset + FRAME_LENGTH.size
        if length < 0:
            raise CorruptFrame(
                f"negative payload length {length} in {name} at byte {length_offset}",
                offset=length_offset,
                declared=length,
                actual=0,
            )
        payload = _read_exact(stream, length)
        if len(payload) < length:
            raise CorruptFrame(
                f"reading data: {len(payload)} != {length} in {name} at byte {payload_offset}",
                offset=payload_offset,
                declared=length,
                actual=len(payload),
            )
        yield RecordFrame(
            timestamp_ms=timestamp_ms,
            topic=topic.decode("utf-8", errors="replace"),
            payload=payload,
        )
        offset = payload_offset + length


def read_stream(source: Source) -> Iterator[RecordFrame]:
    """Lazily yield the frames of *source*.

    A path is opened on first iteration and closed when the generator
    finishes; call again to replay from the start.  An open stream is read
    from its current position and left open.
    """
    if isinstance(source, (str, os.PathLike)):
        path = Path(source)
        with path.open("rb") as stream:
            yield from _iter_frames(stream, str(path))
    else:
        yield from _iter_frames(source, getattr(source, "name", "<stream>"))


def read_all(source: Source) -> list[RecordFrame]:
    """Read every frame of *source*.

    On :class:`CorruptFrame` the frames parsed before the corruption are
    attached to the exception as ``frames``.
    """
    frames: list[RecordFrame] = []
    try:
        for frame in read_stream(source):
            frames.append(frame)
    except CorruptFrame as exc:
        exc.frames = frames
        raise
    return frames


def replay(
    source: Source,
    *,
    speed: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[RecordFrame]:
    """Yield frames paced by their recorded timestamps.

    Gaps are divided by *speed*; ``speed <= 0`` yields as fast as possible.
    """
    previous_ms: int | None = None
    for frame in read_stream(source):
        if previous_ms is not None and speed > 0:
            gap_s = (frame.timestamp_ms - previous_ms) / 1000.0 / speed
            if gap_s > 0:
                sleep(gap_s)
        previous_ms = frame.timestamp_ms
        yield frame


# -- destinations and housekeeping ----------------------------------------------


def device_dirname(device: str) -> str:
    return device.replace(":", "_").replace("/", "_")


def timestamp_destination(
    directory: str | os.PathLike[str],
    prefix: str = "",
    now: datetime | None = None,
) -> Path:
    """Fresh ``[prefix_]YYYY-mm-dd-HH-MM-SS.dat`` path in *directory*."""
    base = Path(directory)
    base.mkdir(parents=True, exist_ok=True)
    stamp = (now or datetime.now()).strftime(TIMESTAMP_FORMAT)
    stem = f"{prefix}_{stamp}" if prefix else stamp
    candidate = base / f"{stem}{RECORD_SUFFIX}"
    counter = 1
    while candidate.exists():
        candidate = base / f"{stem}-{counter}{RECORD_SUFFIX}"
        counter += 1
    return candidate


def backup_file(path: str | os.PathLike[str], backup_dir: str | os.PathLike[str]) -> Path:
    """Copy a rotated record file to ``<backup_dir>/<device dir>/<name>``."""
    src = Path(path)
    dest = Path(backup_dir) / src.parent.name / src.name
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(src, dest)
    LOGGER.info("backup: %s -> %s", src, dest)
    return dest


def prune_old_records(
    directory: str | os.PathLike[str],
    max_age_hours: float,
    now: float | None = None,
) -> list[Path]:
    """Delete ``.dat`` files older than *max_age_hours* in *directory* and its subdirectories.

    Only one directory level is descended.  ``max_age_hours <= 0`` keeps
    everything.
    """
    base = Path(directory)
    if max_age_hours <= 0 or not base.is_dir():
        return []
    horizon = (time.time() if now is None else now) - max_age_hours * 3600.0
    candidates = list(base.glob(f"*{RECORD_SUFFIX}")) + list(base.glob(f"*/*{RECORD_SUFFIX}"))
    removed: list[Path] = []
    for path in candidates:
        if not path.is_file():
            continue
        try:
            if path.stat().st_mtime < horizon:
                path.unlink()
                removed.append(path)
        except OSError:
            LOGGER.warning("Could not prune %s", path, exc_info=True)
    if removed:
        LOGGER.info(
            "Pruned %d record file(s) older than %s h from %s", len(removed), max_age_hours, base
        )
    return removed


class DeviceRecorders:
    """One :class:`RecordStore` per device, each in its own subdirectory."""

    def __init__(self, record_dir: str | os.PathLike[str], *, fsync: bool = True) -> None:
        self.record_dir = Path(record_dir)
        self._fsync = fsync
        self._stores: dict[str, RecordStore] = {}
        self._lock = threading.Lock()

    def _device_dir(self, device: str) -> Path:
        return self.record_dir / device_dirname(device)

    def _new_destination(self, device: str) -> Path:
        return timestamp_destination(self._device_dir(device), prefix=device_dirname(device))

    def store_for(self, device: str) -> RecordStore:
        with self._lock:
            store = self._stores.get(device)
            if store is None:
                store = RecordStore(self._new_destination(device), fsync=self._fsync)
                self._stores[device] = store
                LOGGER.info("Recording %s to %s", device, store.path)
            return store

    def append(self, device: str, timestamp_ms: int, topic: str, payload: bytes) -> None:
        self.store_for(device).append(timestamp_ms, topic, payload)

    def devices(self) -> list[str]:
        with self._lock:
            return sorted(self._stores)

    def rotate_all(self) -> list[Path]:
        """Start a new file for every device; returns the paths just closed."""
        with self._lock:
            stores = list(self._stores.items())
        closed: list[Path] = []
        for device, store in stores:
            previous = store.rotate(self._new_destination(device))
            if previous is not None:
                closed.append(previous)
        return closed

    def close_all(self) -> None:
        with self._lock:
            stores = list(self._stores.values())
            self._stores.clear()
        for store in stores:
            store.close()
