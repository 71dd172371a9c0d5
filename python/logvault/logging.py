"""
Structured logging for logvault.

Console output goes to stderr, leaving stdout to ``--report``. An optional
JSONL file keeps a machine-readable history of every maintenance cycle, one
JSON object per line, so a host's rotation history can be shipped through
the same pipelines as the logs it rotates.

Events carry the ``cycle_id`` bound by the engine, and any ``error`` payload
built with ``LogVaultError.to_dict()`` has its error code lifted to the top
level so failures can be filtered without parsing nested objects.
"""

from __future__ import annotations

import logging
import os
import socket
import sys
from collections.abc import Iterator, MutableMapping
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from logvault.config import get_config

if TYPE_CHECKING:
    from structlog.types import Processor

    from logvault.config import LoggingConfig

SERVICE_NAME = "logvault"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
DEFAULT_BACKUP_COUNT = 5

# Libraries whose INFO chatter would drown out cycle events
_QUIET_LOGGERS = ("asyncio", "concurrent")


def _add_service_info(
    _logger: logging.Logger, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    event_dict["service"] = SERVICE_NAME
    event_dict["hostname"] = os.environ.get("HOSTNAME") or socket.gethostname()
    event_dict["pid"] = os.getpid()
    return event_dict


def _lift_error_code(
    _logger: logging.Logger, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Copy ``error.error_code`` to a top-level ``error_code`` key."""
    error = event_dict.get("error")
    if isinstance(error, dict) and "error_code" in error:
        event_dict.setdefault("error_code", error["error_code"])
    return event_dict


def _shared_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        _lift_error_code,
        structlog.processors.UnicodeDecoder(),
    ]


def _file_handler(
    path: str | Path, level: int, max_bytes: int, backup_count: int
) -> logging.Handler:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        filename=str(path),
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_shared_processors(),
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _add_service_info,
                structlog.processors.dict_tracebacks,
                structlog.processors.JSONRenderer(),
            ],
        )
    )
    handler.setLevel(level)
    return handler


def _console_handler(format: str, level: int) -> logging.Handler:
    if format.lower() == "json":
        renderer: Processor = structlog.processors.JSONRenderer()
        final: list[Processor] = [structlog.processors.dict_tracebacks, renderer]
    else:
        final = [
            structlog.dev.ConsoleRenderer(
                colors=False,
                exception_formatter=structlog.dev.plain_traceback,
            )
        ]

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_shared_processors(),
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *final],
        )
    )
    handler.setLevel(level)
    return handler


def setup_logging(
    config: LoggingConfig | None = None,
    *,
    log_file: str | None = None,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    enable_console: bool = True,
) -> None:
    """
    Configure structured logging for a maintenance run.

    Args:
        config: Logging settings. Defaults to the process-wide config.
        log_file: JSONL file overriding ``config.file``; no file if both are unset.
        max_bytes: Size at which the JSONL file is rotated.
        backup_count: Rotated JSONL files to keep.
        enable_console: Whether to log to stderr.
    """
    config = config or get_config().logging
    log_level = getattr(logging, config.level.upper(), logging.INFO)
    log_file = log_file or config.file

    structlog.configure(
        processors=[
            *_shared_processors(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handlers: list[logging.Handler] = []
    if log_file:
        handlers.append(_file_handler(log_file, log_level, max_bytes, backup_count))
    if enable_console:
        handlers.append(_console_handler(config.format, log_level))

    root_logger = logging.getLogger()
    root_logger.handlers = handlers
    root_logger.setLevel(log_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> Any:
    """
    Get a structured logger instance.

    Example:
        logger = get_logger(__name__)
        logger.info("archive_completed", channel="System", archive_bytes=1024)
    """
    return structlog.get_logger(name)


@contextmanager
def with_context(**kwargs: Any) -> Iterator[None]:
    """
    Bind context variables for the duration of a block.

    Example:
        with with_context(cycle_id="c0ffee"):
            logger.info("cycle_started")
    """
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield
