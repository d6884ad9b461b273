from __future__ import annotations

import logging
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .constants import (
    ACC_CHANNEL,
    DEFAULT_CEPSTRUM_COEFF,
    DEFAULT_SAMPLE_RATE_HZ,
    DEFAULT_WINDOW_SAMPLES,
)
from .processing.buffers import Orientation

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG: dict[str, Any] = {
    "bus": {
        "topics": ["#"],
        "acc_channel": ACC_CHANNEL,
    },
    "processing": {
        "sample_rate_hz": DEFAULT_SAMPLE_RATE_HZ,
        "window_samples": DEFAULT_WINDOW_SAMPLES,
        "cepstrum_coeff": DEFAULT_CEPSTRUM_COEFF,
        "orientation": {"ns": 0, "ew": 1, "ud": 2},
    },
    "recorder": {
        "enabled": True,
        "record_dir": "data/recorder",
        "backup_dir": None,
        "rotate_minutes": 60,
        "retention_hours": 0,
        "fsync": True,
    },
}

# Largest power of two that fits the int16 spectrum archive header.
_MAX_WINDOW_SAMPLES = 16384


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _resolve_config_path(path_text: str, config_path: Path) -> Path:
    path = Path(path_text)
    if path.is_absolute():
        return path
    return config_path.resolve().parent / path


@dataclass(slots=True)
class BusConfig:
    topics: list[str]
    acc_channel: str

    def __post_init__(self) -> None:
        if not self.acc_channel.strip():
            raise ValueError("bus.acc_channel must not be empty")


@dataclass(slots=True)
class ProcessingConfig:
    sample_rate_hz: float
    window_samples: int
    cepstrum_coeff: int
    orientation: Orientation = field(default_factory=Orientation)

    def __post_init__(self) -> None:
        if self.sample_rate_hz <= 0:
            raise ValueError(
                f"processing.sample_rate_hz must be positive, got {self.sample_rate_hz!r}"
            )

        # --- window_samples must be >= 16 and a power of 2 -------------------------
        if self.window_samples < 16:
            LOGGER.warning(
                "processing.window_samples=%s is below minimum 16; clamped to 16",
                self.window_samples,
            )
            self.window_samples = 16
        elif self.window_samples & (self.window_samples - 1) != 0:
            next_pow2 = 1 << (self.window_samples - 1).bit_length()
            LOGGER.warning(
                "processing.window_samples=%s is not a power of 2; rounded up to %s",
                self.window_samples,
                next_pow2,
            )
            self.window_samples = next_pow2
        if self.window_samples > _MAX_WINDOW_SAMPLES:
            LOGGER.warning(
                "processing.window_samples=%s exceeds maximum %s; clamped",
                self.window_samples,
                _MAX_WINDOW_SAMPLES,
            )
            self.window_samples = _MAX_WINDOW_SAMPLES

        if self.cepstrum_coeff < 1:
            LOGGER.warning(
                "processing.cepstrum_coeff=%s is below minimum 1; clamped to 1",
                self.cepstrum_coeff,
            )
            self.cepstrum_coeff = 1
        max_coeff = self.window_samples // 2 - 1
        if self.cepstrum_coeff > max_coeff:
            LOGGER.warning(
                "processing.cepstrum_coeff=%s does not lifter a %s-sample window; clamped to %s",
                self.cepstrum_coeff,
                self.window_samples,
                max_coeff,
            )
            self.cepstrum_coeff = max_coeff


@dataclass(slots=True)
class RecorderConfig:
    enabled: bool
    record_dir: Path
    backup_dir: Path | None
    rotate_minutes: int
    retention_hours: float
    fsync: bool

    def __post_init__(self) -> None:
        if self.rotate_minutes < 1:
            LOGGER.warning(
                "recorder.rotate_minutes=%s is below minimum 1; clamped to 1",
                self.rotate_minutes,
            )
            self.rotate_minutes = 1
        if self.retention_hours < 0:
            self.retention_hours = 0.0


@dataclass(slots=True)
class AppConfig:
    bus: BusConfig
    processing: ProcessingConfig
    recorder: RecorderConfig
    config_path: Path | None = None


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path} must contain a YAML object at the top level.")
        return data


def config_from_dict(
    override: dict[str, Any] | None = None,
    config_path: Path | None = None,
) -> AppConfig:
    """Build an :class:`AppConfig` from *override* merged over :data:`DEFAULT_CONFIG`."""
    merged = _deep_merge(deepcopy(DEFAULT_CONFIG), override or {})
    anchor = config_path or (Path.cwd() / "config.yaml")

    bus_cfg = merged["bus"]
    topics_raw = bus_cfg.get("topics") or []
    if isinstance(topics_raw, str):
        topics_raw = [topics_raw]

    processing_cfg = merged["processing"]
    orientation_cfg = processing_cfg.get("orientation") or {}
    orientation = Orientation(
        ns=int(orientation_cfg.get("ns", 0)),
        ew=int(orientation_cfg.get("ew", 1)),
        ud=int(orientation_cfg.get("ud", 2)),
    )

    recorder_cfg = merged["recorder"]
    backup_raw = recorder_cfg.get("backup_dir")
    backup_dir = (
        _resolve_config_path(str(backup_raw), anchor)
        if isinstance(backup_raw, str) and backup_raw.strip()
        else None
    )

    return AppConfig(
        bus=BusConfig(
            topics=[str(t) for t in topics_raw],
            acc_channel=str(bus_cfg.get("acc_channel", ACC_CHANNEL)),
        ),
        processing=ProcessingConfig(
            sample_rate_hz=float(processing_cfg["sample_rate_hz"]),
            window_samples=int(processing_cfg["window_samples"]),
            cepstrum_coeff=int(processing_cfg["cepstrum_coeff"]),
            orientation=orientation,
        ),  # NOTE: ProcessingConfig.__post_init__ validates & clamps
        recorder=RecorderConfig(
            enabled=bool(recorder_cfg.get("enabled", True)),
            record_dir=_resolve_config_path(str(recorder_cfg["record_dir"]), anchor),
            backup_dir=backup_dir,
            rotate_minutes=int(recorder_cfg.get("rotate_minutes", 60)),
            retention_hours=float(recorder_cfg.get("retention_hours", 0) or 0),
            fsync=bool(recorder_cfg.get("fsync", True)),
        ),
        config_path=config_path,
    )


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load ``config.yaml`` (missing file means defaults)."""
    path = (config_path or Path("config.yaml")).resolve()
    app_config = config_from_dict(_read_config_file(path), config_path=path)
    LOGGER.info(
        "Loaded config=%s record_dir=%s window_samples=%s",
        app_config.config_path,
        app_config.recorder.record_dir,
        app_config.processing.window_samples,
    )
    return app_config
