"""
Maintenance cycle orchestration.

One cycle walks ``IDLE -> INVENTORYING -> ARCHIVING -> RECONCILING -> PURGING
-> IDLE``. Only a failure to enumerate the host's logs aborts a cycle; every
per-channel, per-file failure is recorded and audited, and the cycle moves on.
"""

from __future__ import annotations

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from logvault.archive import ArchiveWriter
from logvault.audit import AuditEvent, AuditEventType, LoggingAuditSink
from logvault.backends import create_backend
from logvault.exceptions import (
    ArchiveIOError,
    EnumerationError,
    LockContention,
    LogVaultError,
)
from logvault.inventory import LogInventory
from logvault.lock import RunLock
from logvault.logging import get_logger, with_context
from logvault.models import RetentionWindow
from logvault.policy import ThresholdPolicy
from logvault.reconcile import ReconciliationOutcome, ReconciliationScanner
from logvault.retention import (
    PurgeResult,
    RetentionEvent,
    RetentionEventType,
    RetentionPurger,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from logvault.archive import ArchiveBackend
    from logvault.audit import AuditSink
    from logvault.backends import LogBackend
    from logvault.config import Config
    from logvault.models import ArchiveFile, LogChannel

logger = get_logger(__name__)


class EngineState(str, Enum):
    """States of a maintenance cycle."""

    IDLE = "idle"
    INVENTORYING = "inventorying"
    ARCHIVING = "archiving"
    RECONCILING = "reconciling"
    PURGING = "purging"
    ABORTED = "aborted"


@dataclass
class ArchiveOutcome:
    """Result of archiving one channel."""

    channel: LogChannel
    archive: ArchiveFile | None = None
    error: LogVaultError | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel.name,
            "source_bytes": self.channel.current_size_bytes,
            "archive": str(self.archive.path) if self.archive else None,
            "archive_bytes": self.archive.size_bytes if self.archive else None,
            "error": self.error.to_dict() if self.error else None,
            "success": self.success,
        }


@dataclass
class CycleReport:
    """Summary of one maintenance cycle."""

    cycle_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    dry_run: bool = False
    state: EngineState = EngineState.IDLE
    skipped: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    duration_seconds: float = 0.0
    channels_seen: int = 0
    channels_qualifying: int = 0
    archives: list[ArchiveOutcome] = field(default_factory=list)
    reconciliations: list[ReconciliationOutcome] = field(default_factory=list)
    purge: PurgeResult | None = None
    errors: list[LogVaultError] = field(default_factory=list)
    abort_error: LogVaultError | None = None
    lock_contention: LockContention | None = None

    @property
    def aborted(self) -> bool:
        return self.state == EngineState.ABORTED

    @property
    def archived_count(self) -> int:
        if self.dry_run:
            return 0
        return sum(1 for o in self.archives if o.success)

    @property
    def would_archive_count(self) -> int:
        """Channels a dry run exported and compressed but left uncleared."""
        if not self.dry_run:
            return 0
        return sum(1 for o in self.archives if o.success)

    @property
    def reconciled_count(self) -> int:
        return sum(1 for o in self.reconciliations if o.success)

    @property
    def purged_count(self) -> int:
        return self.purge.purged_count if self.purge else 0

    @property
    def success(self) -> bool:
        return not self.aborted and not self.errors

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "cycle_id": self.cycle_id,
            "dry_run": self.dry_run,
            "state": self.state.value,
            "skipped": self.skipped,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "channels_seen": self.channels_seen,
            "channels_qualifying": self.channels_qualifying,
            "archived": self.archived_count,
            "would_archive": self.would_archive_count,
            "reconciled": self.reconciled_count,
            "purged": self.purged_count,
            "error_count": len(self.errors),
            "aborted": self.aborted,
            "abort_error": self.abort_error.to_dict() if self.abort_error else None,
        }


class _PurgeAuditAdapter:
    """Forwards retention events to the audit sink."""

    def __init__(self, sink: AuditSink) -> None:
        self._sink = sink

    def on_retention_event(self, event: RetentionEvent) -> None:
        if event.event_type == RetentionEventType.FILE_PURGED:
            self._sink.emit(
                AuditEvent(
                    event_type=AuditEventType.PURGE_SUCCEEDED,
                    message="would purge archive" if event.dry_run else "archive purged",
                    path=str(event.path),
                    size_bytes=event.size_bytes,
                    dry_run=event.dry_run,
                    details={"age_days": round(event.age_days, 2)},
                )
            )
        elif event.event_type == RetentionEventType.PURGE_FAILED:
            self._sink.emit(
                AuditEvent(
                    event_type=AuditEventType.PURGE_FAILED,
                    message=event.message,
                    path=str(event.path) if event.path else None,
                    error_kind=event.error.kind if event.error else None,
                    dry_run=event.dry_run,
                    details=event.error.context if event.error else {},
                )
            )


class RotationEngine:
    """
    Runs maintenance cycles against one host.

    Collaborators are built from configuration unless injected, so tests can
    substitute in-memory backends and sinks.
    """

    def __init__(
        self,
        config: Config,
        log_backend: LogBackend | None = None,
        archive_backend: ArchiveBackend | None = None,
        audit_sink: AuditSink | None = None,
        policy: ThresholdPolicy | None = None,
        run_lock: RunLock | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._dry_run = config.dry_run
        self._archive_root = Path(config.archive_path)
        self._source_path = Path(config.source_path)
        self._window = RetentionWindow(days=config.retention_days)
        self._max_workers = config.max_workers

        self._backend = log_backend or create_backend(config.backend, config.source_path)
        self._audit = audit_sink or LoggingAuditSink()
        self._policy = policy or ThresholdPolicy()
        self._inventory = LogInventory(self._backend)
        self._writer = ArchiveWriter(
            self._backend,
            archive_root=self._archive_root,
            staging_dir=config.staging_dir,
            host=config.host,
            archive_backend=archive_backend,
            dry_run=self._dry_run,
            clock=clock,
        )
        self._scanner = ReconciliationScanner(self._writer)
        self._purger = RetentionPurger(
            exclude_dirs=[config.staging_dir],
            observers=[_PurgeAuditAdapter(self._audit)],
            dry_run=self._dry_run,
        )
        self._lock = run_lock or RunLock(
            config.lock_file,
            retries=config.lock.retries,
            retry_delay_seconds=config.lock.retry_delay_seconds,
            max_consecutive_skips=config.lock.max_consecutive_skips,
        )
        self._state = EngineState.IDLE

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def writer(self) -> ArchiveWriter:
        return self._writer

    def run_once(self) -> CycleReport:
        """
        Run one full maintenance cycle.

        Returns a skipped report, without side effects on logs or archives,
        if another cycle holds the run-lock.
        """
        report = CycleReport(dry_run=self._dry_run)

        try:
            self._lock.acquire()
        except LockContention as e:
            report.skipped = True
            report.lock_contention = e
            report.finished_at = datetime.now(timezone.utc)
            logger.info(
                "cycle_skipped",
                cycle_id=report.cycle_id,
                lock_path=str(self._lock.path),
                consecutive_skips=e.consecutive_skips,
                starved=e.starved,
            )
            self._emit(
                AuditEventType.CYCLE_SKIPPED,
                "another cycle holds the run-lock",
                details={"consecutive_skips": e.consecutive_skips, "starved": e.starved},
            )
            return report

        try:
            with with_context(cycle_id=report.cycle_id):
                self._run_locked(report)
        finally:
            self._lock.release()
        return report

    def run_forever(self, interval_seconds: float, stop_event: threading.Event | None = None) -> None:
        """Run cycles every ``interval_seconds`` until ``stop_event`` is set."""
        stop_event = stop_event or threading.Event()
        logger.info("engine_loop_started", interval_seconds=interval_seconds)
        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.exception("cycle_failed", error=str(e))
            stop_event.wait(interval_seconds)
        logger.info("engine_loop_stopped")

    def _transition(self, state: EngineState) -> None:
        logger.debug("engine_state_changed", previous=self._state.value, state=state.value)
        self._state = state

    def _run_locked(self, report: CycleReport) -> None:
        start_time = time.perf_counter()
        self._state = EngineState.IDLE
        logger.info(
            "cycle_started",
            dry_run=self._dry_run,
            archive_path=str(self._archive_root),
            source_path=str(self._source_path),
            retention_days=self._window.days,
        )
        self._emit(AuditEventType.CYCLE_START, "maintenance cycle started")

        if not self._dry_run:
            self._writer.clean_staging()

        self._transition(EngineState.INVENTORYING)
        try:
            channels = self._inventory.list()
        except EnumerationError as e:
            self._transition(EngineState.ABORTED)
            report.state = EngineState.ABORTED
            report.abort_error = e
            logger.error("cycle_aborted", error=e.to_dict())
            self._emit(
                AuditEventType.CYCLE_ABORTED,
                e.message,
                error_kind=e.kind,
                details=e.context,
            )
            self._finish(report, start_time)
            return

        qualifying = [c for c in channels if self._policy.should_archive(c)]
        report.channels_seen = len(channels)
        report.channels_qualifying = len(qualifying)
        logger.info("inventory_completed", channels=len(channels), qualifying=len(qualifying))

        self._transition(EngineState.ARCHIVING)
        report.archives = self._archive_all(qualifying)
        report.errors.extend(o.error for o in report.archives if o.error is not None)

        self._transition(EngineState.RECONCILING)
        report.reconciliations = self._reconcile(report)

        self._transition(EngineState.PURGING)
        report.purge = self._purger.purge(self._archive_root, self._window)
        report.errors.extend(report.purge.errors)

        self._transition(EngineState.IDLE)
        report.state = EngineState.IDLE
        self._finish(report, start_time)

    def _finish(self, report: CycleReport, start_time: float) -> None:
        report.finished_at = datetime.now(timezone.utc)
        report.duration_seconds = time.perf_counter() - start_time
        logger.info("cycle_completed", report=report.to_dict())
        self._emit(
            AuditEventType.CYCLE_END,
            "maintenance cycle aborted" if report.aborted else "maintenance cycle completed",
            details=report.to_dict(),
        )

    def _archive_all(self, channels: Sequence[LogChannel]) -> list[ArchiveOutcome]:
        if not channels:
            return []
        workers = min(self._max_workers, len(channels))
        if workers <= 1:
            return [self._archive_one(c) for c in channels]
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="logvault-archive") as pool:
            return list(pool.map(self._archive_one, channels))

    def _archive_one(self, channel: LogChannel) -> ArchiveOutcome:
        alarm = self._policy.alarm_size(channel)
        logger.info(
            "channel_over_threshold",
            channel=channel.name,
            current_bytes=channel.current_size_bytes,
            max_bytes=channel.max_size_bytes,
            alarm_bytes=int(alarm) if alarm is not None else None,
        )
        try:
            archive = self._writer.archive(channel)
        except Exception as e:
            # A crash in one channel never stops the others
            error = (
                e
                if isinstance(e, LogVaultError)
                else ArchiveIOError.failed(
                    channel.name, "archive channel", f"{type(e).__name__}: {e}"
                )
            )
            logger.warning("archive_failed", channel=channel.name, error=error.to_dict())
            self._emit(
                AuditEventType.ARCHIVE_FAILED,
                error.message,
                channel=channel.name,
                error_kind=error.kind,
                details=error.context,
            )
            return ArchiveOutcome(channel=channel, error=error)

        self._emit(
            AuditEventType.WOULD_ARCHIVE if self._dry_run else AuditEventType.ARCHIVE_SUCCEEDED,
            "would archive channel" if self._dry_run else "channel archived",
            channel=channel.name,
            path=str(archive.path),
            size_bytes=channel.current_size_bytes,
            details={"archive_bytes": archive.size_bytes},
        )
        return ArchiveOutcome(channel=channel, archive=archive)

    def _reconcile(self, report: CycleReport) -> list[ReconciliationOutcome]:
        try:
            outcomes = self._scanner.reconcile(self._source_path)
        except LogVaultError as e:
            report.errors.append(e)
            logger.warning("reconciliation_scan_failed", error=e.to_dict())
            self._emit(
                AuditEventType.RECONCILIATION_FAILED,
                e.message,
                path=str(self._source_path),
                error_kind=e.kind,
                details=e.context,
            )
            return []

        for outcome in outcomes:
            if outcome.error is not None:
                report.errors.append(outcome.error)
                self._emit(
                    AuditEventType.RECONCILIATION_FAILED,
                    outcome.error.message,
                    channel=outcome.rotated.channel_name,
                    path=str(outcome.rotated.path),
                    error_kind=outcome.error.kind,
                    details=outcome.error.context,
                )
            elif outcome.archive is not None:
                self._emit(
                    AuditEventType.RECONCILIATION_SUCCEEDED,
                    "would reconcile rotated file" if self._dry_run else "rotated file archived",
                    channel=outcome.rotated.channel_name,
                    path=str(outcome.archive.path),
                    size_bytes=outcome.archive.size_bytes,
                    details={"source": str(outcome.rotated.path)},
                )
        return outcomes

    def _emit(
        self,
        event_type: AuditEventType,
        message: str,
        *,
        channel: str | None = None,
        path: str | None = None,
        size_bytes: int | None = None,
        error_kind: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self._audit.emit(
            AuditEvent(
                event_type=event_type,
                message=message,
                channel=channel,
                path=path,
                size_bytes=size_bytes,
                error_kind=error_kind,
                dry_run=self._dry_run,
                details=details or {},
            )
        )
