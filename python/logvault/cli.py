"""
Command-line entry point.

Runs one maintenance cycle (or a loop with ``--loop``) and maps cycle-fatal
conditions to exit codes. Per-channel and per-file failures never change the
exit status; they are reported through the audit sink.
"""

from __future__ import annotations

import argparse
import json
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from logvault import __version__
from logvault.audit import build_audit_sink
from logvault.config import Config, set_config
from logvault.engine import RotationEngine
from logvault.exceptions import ConfigurationError
from logvault.logging import get_logger, setup_logging

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_INVALID_CONFIG = 2
EXIT_INVENTORY_FAILED = 3
EXIT_LOCK_STARVED = 4

PERSISTED_KEYS = frozenset({"archive_path", "source_path", "retention_days"})


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="logvault",
        description="Archive event logs nearing capacity and purge expired archives.",
    )
    parser.add_argument("--config", help="YAML configuration file (written on first run)")
    parser.add_argument("--archive-path", help="Root directory for archives")
    parser.add_argument("--source-path", help="OS log directory")
    parser.add_argument(
        "--retention-days",
        type=int,
        help="Days to keep archives; -1 keeps them forever",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=None,
        help="Rehearse: export and compress, but never clear logs or delete archives",
    )
    parser.add_argument("--backend", choices=["file", "wevtutil"], help="Log backend")
    parser.add_argument("--workers", type=int, help="Channels archived in parallel")
    parser.add_argument("--audit-file", help="Append audit events to this JSONL file")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--log-format", choices=["json", "plain"], help="Console log format")
    parser.add_argument("--log-file", help="Also write JSONL logs to this file")
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep running, one cycle every interval_minutes",
    )
    parser.add_argument("--report", action="store_true", help="Print the cycle report as JSON")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if args.archive_path is not None:
        overrides["archive_path"] = args.archive_path
    if args.source_path is not None:
        overrides["source_path"] = args.source_path
    if args.retention_days is not None:
        overrides["retention_days"] = args.retention_days
    if args.dry_run:
        overrides["dry_run"] = True
    if args.workers is not None:
        overrides["max_workers"] = args.workers
    return overrides


def load_config(args: argparse.Namespace) -> Config:
    """
    Build the effective configuration from file, environment and flags.

    On first run, when a config path is named but absent, the effective
    configuration is written there.

    Raises:
        ConfigurationError: If the configuration is invalid.
    """
    config_path = args.config or os.getenv("LOGVAULT_CONFIG")
    overrides = _overrides(args)
    try:
        base = Config.load(config_path)
        data = base.model_dump()
        data.update(overrides)
        if args.backend is not None:
            data["backend"]["kind"] = args.backend
        if args.audit_file is not None:
            data["logging"]["audit_file"] = args.audit_file
        if args.log_level is not None:
            data["logging"]["level"] = args.log_level
        if args.log_format is not None:
            data["logging"]["format"] = args.log_format
        if args.log_file is not None:
            data["logging"]["file"] = args.log_file
        config = Config(**data)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        field_name = ".".join(str(p) for p in first.get("loc", ())) or "config"
        raise ConfigurationError.validation_failed(
            field_name, first.get("input"), first.get("msg", str(e))
        ) from e
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ConfigurationError(message=f"Cannot load configuration: {e}", cause=e) from e

    if config_path:
        # Run flags such as --dry-run are never persisted.
        persisted = base.model_copy(
            update={k: v for k, v in overrides.items() if k in PERSISTED_KEYS}
        )
        if persisted.install(config_path):
            logger.info("config_installed", path=str(config_path))
    return config


def validate_paths(config: Config) -> None:
    """
    Check the paths a cycle depends on.

    Raises:
        ConfigurationError: If the source log directory is missing.
    """
    source = Path(config.source_path)
    if not source.exists():
        raise ConfigurationError.invalid_source_path(str(source), "does not exist")
    if not source.is_dir():
        raise ConfigurationError.invalid_source_path(str(source), "is not a directory")


def _run_loop(engine: RotationEngine, interval_seconds: float) -> None:
    stop_event = threading.Event()

    def signal_handler(_signum: int, _frame: object) -> None:
        logger.info("shutdown_signal_received")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
    engine.run_forever(interval_seconds, stop_event)


def main(argv: list[str] | None = None) -> int:
    """Entry point for the maintenance job."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args)
        set_config(config)
        setup_logging(config.logging)
        validate_paths(config)
    except ConfigurationError as e:
        logger.error("configuration_invalid", error=e.to_dict())
        print(f"logvault: {e}", file=sys.stderr)
        return EXIT_INVALID_CONFIG

    try:
        engine = RotationEngine(config, audit_sink=build_audit_sink(config.logging.audit_file))

        if args.loop:
            _run_loop(engine, config.interval_minutes * 60)
            return EXIT_OK

        report = engine.run_once()
    except Exception as e:
        logger.exception("logvault_failed", error=str(e))
        return EXIT_UNEXPECTED

    if args.report:
        print(json.dumps(report.to_dict(), indent=2))

    if report.skipped:
        if report.lock_contention is not None and report.lock_contention.starved:
            logger.error(
                "run_lock_starved",
                consecutive_skips=report.lock_contention.consecutive_skips,
            )
            return EXIT_LOCK_STARVED
        return EXIT_OK
    if report.aborted:
        return EXIT_INVENTORY_FAILED
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
