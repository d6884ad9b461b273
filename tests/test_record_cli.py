from __future__ import annotations

from pathlib import Path

import yaml
from builders import acc_message_bytes, gal, sine_triplets

from shmtelemetry.protocol import pack_acc_message, pack_subpacket
from shmtelemetry.record_cli import main
from shmtelemetry.record_store import RecordStore, pack_frame

ACC_TOPIC = "dev1/adxl355/acc02"


def _write_records(path: Path, frames: list[tuple[int, str, bytes]]) -> Path:
    with RecordStore(path, fsync=False) as store:
        for timestamp_ms, topic, payload in frames:
            store.append(timestamp_ms, topic, payload)
    return path


def test_cat_lists_frames(tmp_path, capsys) -> None:
    path = _write_records(
        tmp_path / "a.dat",
        [(1, ACC_TOPIC, b"x" * 30), (2, "dev1/adxl355/status", b"ok")],
    )
    assert main(["cat", str(path)]) == 0
    out = capsys.readouterr().out.splitlines()
    assert out == [f"{ACC_TOPIC} 30", "dev1/adxl355/status 2"]


def test_cat_summary_counts_topics(tmp_path, capsys) -> None:
    path = _write_records(
        tmp_path / "a.dat",
        [(1, ACC_TOPIC, b""), (2, ACC_TOPIC, b""), (3, "dev2/adxl355/acc02", b"")],
    )
    assert main(["cat", "--summary", str(path)]) == 0
    out = capsys.readouterr().out.splitlines()
    assert out == [f"{ACC_TOPIC} 2", "dev2/adxl355/acc02 1"]


def test_play_prints_decoded_samples(tmp_path, capsys) -> None:
    payload = pack_acc_message(1_700_000_000_000, pack_subpacket(gal([1, 2, 3])))
    path = _write_records(
        tmp_path / "a.dat",
        [(1, "dev1/adxl355/status", b"ok"), (2, ACC_TOPIC, payload)],
    )
    assert main(["play", str(path)]) == 0
    out = capsys.readouterr().out.splitlines()
    assert len(out) == 1
    assert out[0].startswith(f"{ACC_TOPIC}, ")
    assert out[0].endswith("[0.0038, 0.0077, 0.0115]")


def test_play_stops_on_decode_error(tmp_path, capsys) -> None:
    path = _write_records(tmp_path / "a.dat", [(1, ACC_TOPIC, b"\x00" * 4)])
    assert main(["play", str(path)]) == 1
    assert "Error" in capsys.readouterr().err


def test_intensity_reports_windows(tmp_path, capsys) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        yaml.safe_dump({"processing": {"window_samples": 64}}), encoding="utf-8"
    )
    stream = sine_triplets(64, 62.5, 62.5 * 8 / 64, amplitude_gal=50.0)
    path = _write_records(
        tmp_path / "a.dat",
        [
            (1, ACC_TOPIC, acc_message_bytes(10_000, stream)),
            (2, "dev2/adxl355/acc02", acc_message_bytes(10_000, stream)),
        ],
    )
    assert main(["--config", str(config_path), "intensity", "--device", "dev1", str(path)]) == 0
    out = capsys.readouterr().out.splitlines()
    assert len(out) == 2
    assert "peak=7.812 Hz" in out[0]
    assert "jma=" in out[0]
    assert out[1] == "messages=1 decoded=1 parse_errors=0 windows=1"


def test_intensity_unknown_device(tmp_path, capsys) -> None:
    path = _write_records(tmp_path / "a.dat", [(1, ACC_TOPIC, b"")])
    argv = ["--config", str(tmp_path / "none.yaml"), "intensity", "--device", "devX", str(path)]
    assert main(argv) == 1
    assert "no frames" in capsys.readouterr().err


def test_missing_file(tmp_path, capsys) -> None:
    assert main(["cat", str(tmp_path / "absent.dat")]) == 1
    assert "not found" in capsys.readouterr().err


def test_corrupt_file(tmp_path, capsys) -> None:
    path = tmp_path / "bad.dat"
    path.write_bytes(pack_frame(1, ACC_TOPIC, b"abcdef")[:-3])
    assert main(["cat", str(path)]) == 1
    assert "Error" in capsys.readouterr().err
