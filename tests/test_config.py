from __future__ import annotations

import logging
from pathlib import Path

import pytest
import yaml

from shmtelemetry.config import DEFAULT_CONFIG, config_from_dict, load_config
from shmtelemetry.processing.buffers import Orientation


def _write_config(path: Path, payload: dict) -> None:
    path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")


def test_defaults() -> None:
    cfg = config_from_dict()
    assert cfg.bus.acc_channel == "acc02"
    assert cfg.bus.topics == ["#"]
    assert cfg.processing.sample_rate_hz == 62.5
    assert cfg.processing.window_samples == 256
    assert cfg.processing.cepstrum_coeff == 16
    assert cfg.processing.orientation == Orientation()
    assert cfg.recorder.backup_dir is None
    assert cfg.recorder.fsync is True


def test_default_config_is_not_mutated() -> None:
    config_from_dict({"processing": {"window_samples": 512}})
    assert DEFAULT_CONFIG["processing"]["window_samples"] == 256


def test_missing_file_means_defaults(tmp_path) -> None:
    cfg = load_config(tmp_path / "absent.yaml")
    assert cfg.processing.window_samples == 256
    assert cfg.config_path == (tmp_path / "absent.yaml").resolve()


def test_yaml_overrides_are_merged(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    _write_config(
        path,
        {
            "bus": {"acc_channel": "acc01"},
            "processing": {"sample_rate_hz": 100, "orientation": {"ns": 1, "ew": 2, "ud": 0}},
            "recorder": {"record_dir": "rec", "backup_dir": "/mnt/backup", "retention_hours": 48},
        },
    )
    cfg = load_config(path)
    assert cfg.bus.acc_channel == "acc01"
    assert cfg.bus.topics == ["#"]
    assert cfg.processing.sample_rate_hz == 100.0
    assert cfg.processing.window_samples == 256
    assert cfg.processing.orientation == Orientation(ns=1, ew=2, ud=0)
    assert cfg.recorder.record_dir == tmp_path.resolve() / "rec"
    assert cfg.recorder.backup_dir == Path("/mnt/backup")
    assert cfg.recorder.retention_hours == 48.0


def test_single_topic_string_becomes_list() -> None:
    assert config_from_dict({"bus": {"topics": "+/+/acc02"}}).bus.topics == ["+/+/acc02"]


def test_top_level_must_be_mapping(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(path)


class TestProcessingValidation:
    @pytest.mark.parametrize("rate", [0, -62.5])
    def test_non_positive_sample_rate_rejected(self, rate: float) -> None:
        with pytest.raises(ValueError):
            config_from_dict({"processing": {"sample_rate_hz": rate}})

    @pytest.mark.parametrize(
        ("requested", "expected"),
        [
            (8, 16),
            (16, 16),
            (100, 128),
            (256, 256),
            (1000, 1024),
            (32768, 16384),
            (100_000, 16384),
        ],
    )
    def test_window_samples_normalized(self, requested: int, expected: int) -> None:
        cfg = config_from_dict({"processing": {"window_samples": requested}})
        assert cfg.processing.window_samples == expected

    def test_window_adjustment_is_logged(self, caplog) -> None:
        with caplog.at_level(logging.WARNING, logger="shmtelemetry.config"):
            config_from_dict({"processing": {"window_samples": 100}})
        assert "window_samples" in caplog.text

    def test_cepstrum_coeff_clamped(self) -> None:
        cfg = config_from_dict({"processing": {"cepstrum_coeff": 0}})
        assert cfg.processing.cepstrum_coeff == 1

    def test_cepstrum_coeff_must_lifter_the_window(self, caplog) -> None:
        with caplog.at_level(logging.WARNING, logger="shmtelemetry.config"):
            cfg = config_from_dict({"processing": {"window_samples": 16, "cepstrum_coeff": 128}})
        assert cfg.processing.cepstrum_coeff == 7
        assert "cepstrum_coeff" in caplog.text

    def test_default_cepstrum_coeff_lifters_default_window(self) -> None:
        processing = config_from_dict().processing
        assert 2 * processing.cepstrum_coeff + 1 < processing.window_samples

    def test_bad_orientation_rejected(self) -> None:
        with pytest.raises(ValueError):
            config_from_dict({"processing": {"orientation": {"ns": 0, "ew": 0, "ud": 2}}})


class TestBusAndRecorderValidation:
    def test_empty_acc_channel_rejected(self) -> None:
        with pytest.raises(ValueError):
            config_from_dict({"bus": {"acc_channel": "  "}})

    def test_rotate_minutes_clamped(self) -> None:
        assert config_from_dict({"recorder": {"rotate_minutes": 0}}).recorder.rotate_minutes == 1

    def test_negative_retention_disables_pruning(self) -> None:
        cfg = config_from_dict({"recorder": {"retention_hours": -5}})
        assert cfg.recorder.retention_hours == 0.0

    def test_blank_backup_dir_disables_backup(self) -> None:
        assert config_from_dict({"recorder": {"backup_dir": ""}}).recorder.backup_dir is None
