"""
Audit/status sink for maintenance outcomes.

Every cycle start and end, archive, reconciliation, purge and error is
emitted as an AuditEvent. Sinks are append-only; a failing sink is logged
and never interrupts the cycle.
"""

from __future__ import annotations

import json
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from logvault.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = get_logger(__name__)


class AuditEventType(str, Enum):
    """Event identifiers used for classification by downstream tooling."""

    CYCLE_START = "CycleStart"
    CYCLE_END = "CycleEnd"
    CYCLE_SKIPPED = "CycleSkipped"
    CYCLE_ABORTED = "CycleAborted"
    ARCHIVE_SUCCEEDED = "ArchiveSucceeded"
    ARCHIVE_FAILED = "ArchiveFailed"
    WOULD_ARCHIVE = "WouldArchive"
    RECONCILIATION_SUCCEEDED = "ReconciliationSucceeded"
    RECONCILIATION_FAILED = "ReconciliationFailed"
    PURGE_SUCCEEDED = "PurgeSucceeded"
    PURGE_FAILED = "PurgeFailed"

    @property
    def is_failure(self) -> bool:
        return self in _FAILURE_EVENTS


_FAILURE_EVENTS = {
    AuditEventType.CYCLE_ABORTED,
    AuditEventType.ARCHIVE_FAILED,
    AuditEventType.RECONCILIATION_FAILED,
    AuditEventType.PURGE_FAILED,
}


@dataclass
class AuditEvent:
    """
    One audit record.

    Attributes:
        event_type: Classification of the event.
        message: Human-readable summary.
        channel: Channel the event concerns, if any.
        path: File the event concerns (archive, rotated file, purge target).
        size_bytes: Size associated with the event.
        error_kind: Exception class name for failure events.
        dry_run: Whether the cycle was a rehearsal.
        details: Additional structured data.
    """

    event_type: AuditEventType
    message: str = ""
    channel: str | None = None
    path: str | None = None
    size_bytes: int | None = None
    error_kind: str | None = None
    dry_run: bool = False
    details: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "message": self.message,
            "channel": self.channel,
            "path": self.path,
            "size_bytes": self.size_bytes,
            "error_kind": self.error_kind,
            "dry_run": self.dry_run,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class AuditSink(ABC):
    """Append-style destination for audit events."""

    def emit(self, event: AuditEvent) -> None:
        """Record an event, logging instead of raising on sink failure."""
        try:
            self._write(event)
        except Exception as e:
            logger.warning(
                "audit_sink_write_failed",
                sink=type(self).__name__,
                event_type=event.event_type.value,
                error=str(e),
            )

    @abstractmethod
    def _write(self, event: AuditEvent) -> None:
        """Persist a single event."""


class LoggingAuditSink(AuditSink):
    """Routes audit events through structlog under the ``audit`` logger."""

    def __init__(self) -> None:
        self._logger = get_logger("logvault.audit.trail")

    def _write(self, event: AuditEvent) -> None:
        record = event.to_dict()
        event_type = record.pop("event_type")
        if event.event_type.is_failure:
            self._logger.warning("audit_event", audit_type=event_type, **record)
        else:
            self._logger.info("audit_event", audit_type=event_type, **record)


class JsonlAuditSink(AuditSink):
    """Appends audit events to a JSON Lines file."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _write(self, event: AuditEvent) -> None:
        line = json.dumps(event.to_dict(), sort_keys=True)
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")


class MemoryAuditSink(AuditSink):
    """Keeps events in memory; used for rehearsals and tests."""

    def __init__(self) -> None:
        self.events: list[AuditEvent] = []
        self._lock = threading.Lock()

    def _write(self, event: AuditEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: AuditEventType) -> list[AuditEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def clear(self) -> None:
        with self._lock:
            self.events.clear()


class CompositeAuditSink(AuditSink):
    """Fans an event out to several sinks."""

    def __init__(self, sinks: Sequence[AuditSink]) -> None:
        self._sinks = list(sinks)

    def _write(self, event: AuditEvent) -> None:
        for sink in self._sinks:
            sink.emit(event)


def build_audit_sink(audit_file: str | None = None) -> AuditSink:
    """Create the default sink: structlog, plus a JSONL trail when configured."""
    sinks: list[AuditSink] = [LoggingAuditSink()]
    if audit_file:
        sinks.append(JsonlAuditSink(audit_file))
    if len(sinks) == 1:
        return sinks[0]
    return CompositeAuditSink(sinks)
