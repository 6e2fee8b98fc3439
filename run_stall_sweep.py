"""CLI utility to run one stall/health sweep against SQL storage."""

from __future__ import annotations

import argparse
import json
import logging

from chunkflow.config import Settings
from chunkflow.monitoring.alerts import AlertManager
from chunkflow.server.stall import StallDetector
from chunkflow.storage.sql_storage import SqlStorage


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reset stalled chunkflow units and check health")
    parser.add_argument(
        "--connection-url",
        required=True,
        help="SQLAlchemy connection URL (e.g., sqlite:///chunkflow.db)",
    )
    parser.add_argument(
        "--chunk-threshold-seconds",
        type=float,
        default=None,
        help="Reset chunks processing longer than this many seconds.",
    )
    parser.add_argument(
        "--task-threshold-seconds",
        type=float,
        default=None,
        help="Reset queue tasks processing longer than this many seconds.",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum number of units of each type to inspect.",
    )
    return parser


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    args = build_arg_parser().parse_args()
    settings = Settings()
    if args.chunk_threshold_seconds is not None:
        settings.chunk_stall_threshold = args.chunk_threshold_seconds
    if args.task_threshold_seconds is not None:
        settings.task_stall_threshold = args.task_threshold_seconds
    if args.limit is not None:
        settings.stall_sweep_limit = args.limit

    storage = SqlStorage(connection_url=args.connection_url)
    detector = StallDetector(storage, settings, AlertManager(storage, settings))
    report = detector.sweep()
    print(json.dumps(report.as_dict(), indent=2))


if __name__ == "__main__":
    main()
