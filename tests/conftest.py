"""Shared test helpers for the shmtelemetry test suite."""

from __future__ import annotations

import time

import pytest

from shmtelemetry.config import AppConfig, config_from_dict


def wait_until(predicate, timeout_s: float = 2.0, step_s: float = 0.02) -> bool:
    """Poll *predicate* until it returns truthy, or *timeout_s* expires."""
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(step_s)
    return False


@pytest.fixture
def small_config(tmp_path) -> AppConfig:
    """Config with a 16-triplet window and a recorder rooted in *tmp_path*."""
    return config_from_dict(
        {
            "processing": {"window_samples": 16, "cepstrum_coeff": 4},
            "recorder": {"record_dir": str(tmp_path / "records")},
        },
        config_path=tmp_path / "config.yaml",
    )
