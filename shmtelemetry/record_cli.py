from __future__ import annotations

import argparse
import logging
import sys
from collections import Counter
from datetime import datetime
from pathlib import Path

from .config import load_config
from .errors import CorruptFrame, ProtocolError
from .ingest import TelemetryIngestor, WindowReport, parse_topic
from .protocol import decode_acc_message
from .record_store import read_stream, replay


def _format_ms(timestamp_ms: int | float) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000.0).strftime("%H:%M:%S.%f")[:-3]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="shmtelemetry-records",
        description="Inspect and replay recorded sensor bus traffic (.dat files)",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to config.yaml")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    cat = sub.add_parser("cat", help="List topic and payload size of every frame")
    cat.add_argument("files", nargs="+", type=Path)
    cat.add_argument("--summary", action="store_true", help="Only print per-topic counts")

    play = sub.add_parser("play", help="Replay accelerometer frames with their decoded samples")
    play.add_argument("files", nargs="+", type=Path)
    play.add_argument(
        "--speed",
        type=float,
        default=0.0,
        help="Replay speed factor (0 = as fast as possible)",
    )

    intensity = sub.add_parser(
        "intensity", help="Spectrum peak and JMA intensity per window for one device"
    )
    intensity.add_argument("files", nargs="+", type=Path)
    intensity.add_argument("--device", required=True, help="Device id (topic prefix)")
    return parser.parse_args(argv)


def _cmd_cat(args: argparse.Namespace) -> int:
    counts: Counter[str] = Counter()
    for path in args.files:
        for frame in read_stream(path):
            if args.summary:
                counts[frame.topic] += 1
            else:
                print(frame.topic, len(frame.payload))
    for topic, count in sorted(counts.items()):
        print(topic, count)
    return 0


def _cmd_play(args: argparse.Namespace, acc_channel: str) -> int:
    for path in args.files:
        for frame in replay(path, speed=args.speed):
            if parse_topic(frame.topic).channel != acc_channel:
                continue
            try:
                message = decode_acc_message(frame.payload)
            except ProtocolError as exc:
                print(f"Error: {frame.topic}: {exc}", file=sys.stderr)
                return 1
            values = ", ".join(f"{v:.4f}" for v in message.aligned())
            print(f"{frame.topic}, {_format_ms(message.send_time_ms)}, [{values}]")
    return 0


def _print_window(report: WindowReport) -> None:
    peak = f"{report.peak.frequency_hz:.3f} Hz" if report.peak is not None else "-"
    if report.intensity is not None:
        level = f"{report.intensity.value:.2f} ({report.intensity.label})"
    else:
        level = f"n/a ({report.intensity_error})"
    print(f"{_format_ms(report.start_ms)} - {_format_ms(report.end_ms)}  peak={peak}  jma={level}")


def _cmd_intensity(args: argparse.Namespace, ingestor: TelemetryIngestor) -> int:
    ingestor.on_window = _print_window
    for path in args.files:
        for frame in read_stream(path):
            if parse_topic(frame.topic).device != args.device:
                continue
            ingestor.handle_message(frame.topic, frame.payload, frame.timestamp_ms)
    stats = ingestor.stats().get(args.device)
    if stats is None:
        print(f"Error: no frames for device {args.device}", file=sys.stderr)
        return 1
    print(
        f"messages={stats.messages} decoded={stats.decoded} "
        f"parse_errors={stats.parse_errors} windows={stats.windows}"
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for path in args.files:
        if not path.exists():
            print(f"Error: input file not found: {path}", file=sys.stderr)
            return 1
    config = load_config(args.config)
    try:
        if args.command == "cat":
            return _cmd_cat(args)
        if args.command == "play":
            return _cmd_play(args, config.bus.acc_channel)
        return _cmd_intensity(args, TelemetryIngestor(config))
    except CorruptFrame as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
