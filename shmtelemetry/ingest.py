"""Per-message entry point between the message bus and the core.

The bus delivers ``(topic, payload, arrival time)``.  Every message is
archived raw first; accelerometer messages are then decoded and accumulated
per device, and each full window is turned into a spectrum and a JMA
intensity for the visualization layer.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import NamedTuple

from .config import AppConfig, config_from_dict
from .errors import InsufficientWindow, IntensityDomainError, ProtocolError, RecordStoreClosed
from .processing.buffers import AccelWindow
from .processing.fft import SpectrumBin, amplitude_rows, analyze, peak_bin
from .processing.intensity import IntensityValue, classify_intensity, compute_intensity
from .protocol import decode_acc_message, encode_float32_array, encode_spectrum
from .record_store import DeviceRecorders, backup_file, prune_old_records

LOGGER = logging.getLogger(__name__)


class TopicParts(NamedTuple):
    device: str
    sensor: str
    channel: str


def parse_topic(topic: str) -> TopicParts:
    """Split ``<device>/<sensor>/<channel>``; missing parts come back empty."""
    parts = topic.split("/")
    device = parts[0] if parts else ""
    sensor = parts[1] if len(parts) > 1 else ""
    channel = parts[2] if len(parts) > 2 else ""
    return TopicParts(device=device, sensor=sensor, channel=channel)


def topic_matches(pattern: str, topic: str) -> bool:
    """Match *topic* against a subscription filter with ``+`` and ``#`` wildcards."""
    pattern_levels = pattern.split("/")
    topic_levels = topic.split("/")
    for idx, level in enumerate(pattern_levels):
        if level == "#":
            return True
        if idx >= len(topic_levels):
            return False
        if level != "+" and level != topic_levels[idx]:
            return False
    return len(pattern_levels) == len(topic_levels)


@dataclass(slots=True)
class DeviceStats:
    messages: int = 0
    decoded: int = 0
    parse_errors: int = 0
    windows: int = 0
    last_error: str | None = None
    last_send_time_ms: int | None = None


@dataclass(slots=True)
class WindowReport:
    device: str
    start_ms: float
    end_ms: float
    sample_rate_hz: float
    spectrum: list[SpectrumBin]
    peak: SpectrumBin | None
    intensity: IntensityValue | None
    intensity_error: str | None = None

    def spectrum_payload(self) -> bytes:
        """Lower half of the amplitude spectrum in the archival float32 layout."""
        window_samples = 2 * (len(self.spectrum) - 1)
        return encode_spectrum(amplitude_rows(self.spectrum), window_samples, self.sample_rate_hz)

    def intensity_payload(self) -> bytes | None:
        if self.intensity is None:
            return None
        return encode_float32_array([self.intensity.value])


@dataclass(slots=True)
class IngestResult:
    topic: TopicParts
    accepted: bool = True
    recorded: bool = False
    decoded: bool = False
    error: str | None = None
    windows: list[WindowReport] = field(default_factory=list)


def now_ms() -> int:
    return time.time_ns() // 1_000_000


class TelemetryIngestor:
    """Routes bus messages to the recorder and the accelerometer pipeline.

    Safe to call from several bus callback threads; each device's window is
    guarded by the ingestor lock.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        recorders: DeviceRecorders | None = None,
        on_window: Callable[[WindowReport], None] | None = None,
    ) -> None:
        self.config = config or config_from_dict()
        self.recorders = recorders
        self.on_window = on_window
        self._lock = threading.Lock()
        self._windows: dict[str, AccelWindow] = {}
        self._stats: dict[str, DeviceStats] = {}

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        on_window: Callable[[WindowReport], None] | None = None,
    ) -> TelemetryIngestor:
        """Ingestor with per-device recorders wired up when ``recorder.enabled``."""
        recorders = None
        if config.recorder.enabled:
            recorders = DeviceRecorders(config.recorder.record_dir, fsync=config.recorder.fsync)
        return cls(config, recorders=recorders, on_window=on_window)

    def subscribed(self, topic: str) -> bool:
        return any(topic_matches(pattern, topic) for pattern in self.config.bus.topics)

    def _stats_for(self, device: str) -> DeviceStats:
        stats = self._stats.get(device)
        if stats is None:
            stats = DeviceStats()
            self._stats[device] = stats
        return stats

    def _window_for(self, device: str) -> AccelWindow:
        window = self._windows.get(device)
        if window is None:
            processing = self.config.processing
            window = AccelWindow(
                window_samples=processing.window_samples,
                sample_rate_hz=processing.sample_rate_hz,
                orientation=processing.orientation,
            )
            self._windows[device] = window
        return window

    def handle_message(
        self, topic: str, payload: bytes, arrival_ms: int | None = None
    ) -> IngestResult:
        parts = parse_topic(topic)
        result = IngestResult(topic=parts)
        if not self.subscribed(topic):
            result.accepted = False
            return result
        timestamp_ms = now_ms() if arrival_ms is None else int(arrival_ms)

        if self.recorders is not None:
            try:
                self.recorders.append(parts.device, timestamp_ms, topic, payload)
                result.recorded = True
            except (OSError, RecordStoreClosed):
                LOGGER.warning("Could not record message on %s", topic, exc_info=True)

        with self._lock:
            self._stats_for(parts.device).messages += 1

        if parts.channel != self.config.bus.acc_channel:
            return result

        try:
            message = decode_acc_message(payload)
        except ProtocolError as exc:
            LOGGER.debug(
                "acceleration decode error on %s (offset=%d declared=%s actual=%s): %s",
                topic,
                exc.offset,
                exc.declared,
                exc.actual,
                exc,
            )
            with self._lock:
                stats = self._stats_for(parts.device)
                stats.parse_errors += 1
                stats.last_error = str(exc)
            result.error = str(exc)
            return result

        result.decoded = True
        ready: list[tuple[AccelWindow, float, float]] = []
        with self._lock:
            stats = self._stats_for(parts.device)
            stats.decoded += 1
            stats.last_send_time_ms = message.send_time_ms
            window = self._window_for(parts.device)
            window.add_message(message)
            if window.is_full:
                times = window.timestamps()
                ready.append((window.snapshot(), float(times[0]), float(times[-1])))
                window.reset()
                stats.windows += 1

        # Analysis runs outside the lock so other devices keep ingesting.
        for snapshot, start_ms, end_ms in ready:
            report = self._analyze_window(parts.device, snapshot, start_ms, end_ms)
            result.windows.append(report)
            if self.on_window is not None:
                try:
                    self.on_window(report)
                except Exception:
                    LOGGER.warning(
                        "on_window callback failed for %s", parts.device, exc_info=True
                    )
        return result

    def _analyze_window(
        self, device: str, window: AccelWindow, start_ms: float, end_ms: float
    ) -> WindowReport:
        processing = self.config.processing
        sample_rate_hz = processing.sample_rate_hz
        ns, ew, ud = window.axes()
        spectrum = analyze(ns, ew, ud, sample_rate_hz, cepstrum_coeff=processing.cepstrum_coeff)
        intensity: IntensityValue | None = None
        intensity_error: str | None = None
        try:
            intensity = classify_intensity(compute_intensity(ns, ew, ud, sample_rate_hz))
        except (InsufficientWindow, IntensityDomainError) as exc:
            intensity_error = str(exc)
            LOGGER.info("No intensity for %s window: %s", device, exc)
        return WindowReport(
            device=device,
            start_ms=start_ms,
            end_ms=end_ms,
            sample_rate_hz=sample_rate_hz,
            spectrum=spectrum,
            peak=peak_bin(spectrum),
            intensity=intensity,
            intensity_error=intensity_error,
        )

    def flush_device(self, device: str) -> None:
        with self._lock:
            window = self._windows.get(device)
            if window is not None:
                window.reset()

    def stats(self) -> dict[str, DeviceStats]:
        with self._lock:
            return {
                device: DeviceStats(
                    messages=s.messages,
                    decoded=s.decoded,
                    parse_errors=s.parse_errors,
                    windows=s.windows,
                    last_error=s.last_error,
                    last_send_time_ms=s.last_send_time_ms,
                )
                for device, s in self._stats.items()
            }


class RecorderMaintenance:
    """Periodic rotation, backup and pruning of the device record files.

    Runs :meth:`run_once` every ``rotate_minutes`` on a daemon thread; call
    :meth:`run_once` directly to drive it from an existing scheduler.
    """

    def __init__(self, recorders: DeviceRecorders, config: AppConfig) -> None:
        self.recorders = recorders
        self.config = config
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self) -> list[Path]:
        recorder_cfg = self.config.recorder
        closed = self.recorders.rotate_all()
        if recorder_cfg.backup_dir is not None:
            for path in closed:
                try:
                    backup_file(path, recorder_cfg.backup_dir)
                except OSError:
                    LOGGER.warning("backup of %s failed", path, exc_info=True)
        if recorder_cfg.retention_hours > 0:
            prune_old_records(recorder_cfg.record_dir, recorder_cfg.retention_hours)
        return closed

    def _loop(self) -> None:
        interval_s = self.config.recorder.rotate_minutes * 60.0
        while not self._stop.wait(interval_s):
            try:
                self.run_once()
            except Exception:
                LOGGER.warning("Recorder maintenance failed", exc_info=True)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name="shmtelemetry-recorder-maintenance", daemon=True
        )
        self._thread.start()

    def stop(self, timeout_s: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout_s)
            self._thread = None
