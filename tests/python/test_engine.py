"""
Tests for the maintenance cycle.

Tests cover:
- Full cycles and the audit trail they produce
- Failure isolation between channels
- Enumeration failure aborting the cycle
- Dry-run rehearsal
- Reconciliation and purge through the engine
- Run-lock contention between concurrent cycles
"""

from __future__ import annotations

import os
import threading
import time
import zipfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from logvault.audit import AuditEventType, MemoryAuditSink
from logvault.engine import CycleReport, EngineState, RotationEngine
from logvault.exceptions import ClearError, CompressionError, EnumerationError
from logvault.lock import RunLock

KB = 1024


def _types(sink: MemoryAuditSink) -> list[AuditEventType]:
    return [e.event_type for e in sink.events]


def _zips(root: Path) -> list[Path]:
    return sorted(p for p in root.rglob("*.zip") if ".staging" not in p.parts)


@pytest.fixture
def engine_factory(
    make_config: Any, fake_backend: Any, audit_sink: MemoryAuditSink, fixed_clock: Any
) -> Any:
    def _make(**kwargs: Any) -> RotationEngine:
        config_overrides = kwargs.pop("config", {})
        params: dict[str, Any] = {
            "log_backend": fake_backend,
            "audit_sink": audit_sink,
            "clock": fixed_clock,
        }
        params.update(kwargs)
        return RotationEngine(make_config(**config_overrides), **params)

    return _make


class TestRotationEngine:
    """Tests for RotationEngine.run_once."""

    def test_full_cycle(
        self,
        engine_factory: Any,
        fake_backend: Any,
        audit_sink: MemoryAuditSink,
        archive_dir: Path,
    ) -> None:
        """A channel over the alarm is archived and cleared; others are left alone."""
        fake_backend.add("Application", b"a" * (800 * KB), max_size=1000 * KB)
        fake_backend.add("Security", b"s" * (100 * KB), max_size=1000 * KB)

        engine = engine_factory()
        report = engine.run_once()

        assert report.state == EngineState.IDLE
        assert engine.state == EngineState.IDLE
        assert report.success
        assert report.channels_seen == 2
        assert report.channels_qualifying == 1
        assert report.archived_count == 1

        archives = _zips(archive_dir)
        assert [p.name for p in archives] == ["testhost_Application_Archive_2026.10.18-1230.zip"]
        with zipfile.ZipFile(archives[0]) as zf:
            assert zf.testzip() is None
            assert len(zf.namelist()) == 1

        assert fake_backend.cleared == ["Application"]
        assert fake_backend.data["Security"] == b"s" * (100 * KB)

        assert _types(audit_sink) == [
            AuditEventType.CYCLE_START,
            AuditEventType.ARCHIVE_SUCCEEDED,
            AuditEventType.CYCLE_END,
        ]
        succeeded = audit_sink.of_type(AuditEventType.ARCHIVE_SUCCEEDED)[0]
        assert succeeded.channel == "Application"
        assert succeeded.size_bytes == 800 * KB
        assert succeeded.path == str(archives[0])

    def test_second_cycle_is_idempotent(
        self, engine_factory: Any, fake_backend: Any, audit_sink: MemoryAuditSink, archive_dir: Path
    ) -> None:
        """Running again right after a successful cycle changes nothing."""
        fake_backend.add("Application", b"a" * (800 * KB), max_size=1000 * KB)
        engine = engine_factory()
        engine.run_once()
        audit_sink.clear()

        report = engine.run_once()

        assert report.channels_qualifying == 0
        assert len(_zips(archive_dir)) == 1
        assert fake_backend.cleared == ["Application"]
        assert _types(audit_sink) == [AuditEventType.CYCLE_START, AuditEventType.CYCLE_END]

    def test_nothing_qualifies(
        self, engine_factory: Any, fake_backend: Any, audit_sink: MemoryAuditSink, archive_dir: Path
    ) -> None:
        fake_backend.add("System", b"x" * 10, max_size=1000)
        fake_backend.add("Unbounded", b"x" * 5000, max_size=0)

        report = engine_factory().run_once()

        assert report.success
        assert report.archives == []
        assert _zips(archive_dir) == []
        assert fake_backend.exported == []

    def test_channel_failure_does_not_block_others(
        self, engine_factory: Any, fake_backend: Any, audit_sink: MemoryAuditSink, archive_dir: Path
    ) -> None:
        """An export failure on one channel is audited and the rest still archive."""
        fake_backend.add("Application", b"a" * 900, max_size=1000)
        fake_backend.add("Security", b"s" * 900, max_size=1000)
        fake_backend.add("System", b"y" * 900, max_size=1000)
        fake_backend.fail_export.add("Security")

        report = engine_factory().run_once()

        assert report.state == EngineState.IDLE
        assert report.archived_count == 2
        assert not report.success
        assert sorted(fake_backend.cleared) == ["Application", "System"]
        assert fake_backend.data["Security"] == b"s" * 900

        failed = audit_sink.of_type(AuditEventType.ARCHIVE_FAILED)
        assert len(failed) == 1
        assert failed[0].channel == "Security"
        assert failed[0].error_kind == "ExportError"
        assert _types(audit_sink)[-1] == AuditEventType.CYCLE_END

    def test_unexpected_channel_crash_does_not_block_others(
        self, engine_factory: Any, fake_backend: Any, audit_sink: MemoryAuditSink
    ) -> None:
        """A non-logvault exception from one channel is wrapped and the others still archive."""
        fake_backend.add("Application", b"a" * 900, max_size=1000)
        fake_backend.add("Security", b"s" * 900, max_size=1000)
        fake_backend.crash_export.add("Application")

        report = engine_factory().run_once()

        assert report.state == EngineState.IDLE
        assert report.archived_count == 1
        assert fake_backend.cleared == ["Security"]
        assert fake_backend.data["Application"] == b"a" * 900
        failed = audit_sink.of_type(AuditEventType.ARCHIVE_FAILED)
        assert [e.channel for e in failed] == ["Application"]
        assert failed[0].error_kind == "ArchiveIOError"
        assert "RuntimeError: backend crashed" in failed[0].message
        assert _types(audit_sink)[-1] == AuditEventType.CYCLE_END

    def test_compression_failure_never_clears(
        self,
        engine_factory: Any,
        fake_backend: Any,
        failing_archive_backend: Any,
        audit_sink: MemoryAuditSink,
        archive_dir: Path,
    ) -> None:
        """Injected compression failures leave every live log intact."""
        fake_backend.add("Application", b"a" * 900, max_size=1000)
        fake_backend.add("System", b"y" * 900, max_size=1000)

        report = engine_factory(archive_backend=failing_archive_backend).run_once()

        assert report.archived_count == 0
        assert failing_archive_backend.calls == 2
        assert fake_backend.cleared == []
        assert fake_backend.data["Application"] == b"a" * 900
        assert _zips(archive_dir) == []
        assert all(isinstance(e, CompressionError) for e in report.errors)
        assert [e.error_kind for e in audit_sink.of_type(AuditEventType.ARCHIVE_FAILED)] == [
            "CompressionError",
            "CompressionError",
        ]

    def test_clear_failure_is_reported(
        self, engine_factory: Any, fake_backend: Any, audit_sink: MemoryAuditSink, archive_dir: Path
    ) -> None:
        fake_backend.add("Security", b"s" * 900, max_size=1000)
        fake_backend.fail_clear.add("Security")

        report = engine_factory().run_once()

        assert isinstance(report.errors[0], ClearError)
        assert len(_zips(archive_dir)) == 1
        assert audit_sink.of_type(AuditEventType.ARCHIVE_FAILED)[0].error_kind == "ClearError"

    def test_enumeration_failure_aborts(
        self, engine_factory: Any, fake_backend: Any, audit_sink: MemoryAuditSink, archive_dir: Path
    ) -> None:
        """A failed inventory aborts the cycle before anything is touched."""
        fake_backend.add("Application", b"a" * 900, max_size=1000)
        fake_backend.fail_list = True

        engine = engine_factory()
        report = engine.run_once()

        assert report.aborted
        assert engine.state == EngineState.ABORTED
        assert isinstance(report.abort_error, EnumerationError)
        assert fake_backend.exported == []
        assert fake_backend.cleared == []
        assert report.purge is None
        assert _types(audit_sink) == [
            AuditEventType.CYCLE_START,
            AuditEventType.CYCLE_ABORTED,
            AuditEventType.CYCLE_END,
        ]
        assert audit_sink.of_type(AuditEventType.CYCLE_ABORTED)[0].error_kind == "EnumerationError"

    def test_next_cycle_recovers_after_abort(self, engine_factory: Any, fake_backend: Any) -> None:
        fake_backend.add("Application", b"a" * 900, max_size=1000)
        fake_backend.fail_list = True
        engine = engine_factory()
        engine.run_once()

        fake_backend.fail_list = False
        report = engine.run_once()

        assert report.state == EngineState.IDLE
        assert report.archived_count == 1

    def test_dry_run(
        self, engine_factory: Any, fake_backend: Any, audit_sink: MemoryAuditSink, archive_dir: Path
    ) -> None:
        """Dry-run emits WouldArchive, writes no archive and clears nothing."""
        fake_backend.add("Application", b"a" * 900, max_size=1000)

        report = engine_factory(config={"dry_run": True}).run_once()

        assert report.dry_run is True
        assert report.archived_count == 0
        assert report.would_archive_count == 1
        assert report.to_dict()["would_archive"] == 1
        assert report.to_dict()["archived"] == 0
        assert fake_backend.cleared == []
        assert _zips(archive_dir) == []
        would = audit_sink.of_type(AuditEventType.WOULD_ARCHIVE)
        assert len(would) == 1
        assert would[0].dry_run is True
        assert would[0].channel == "Application"
        assert audit_sink.of_type(AuditEventType.ARCHIVE_SUCCEEDED) == []

    def test_reconciles_rotated_files(
        self,
        engine_factory: Any,
        audit_sink: MemoryAuditSink,
        source_dir: Path,
        archive_dir: Path,
    ) -> None:
        rotated = source_dir / "Archive-Security-2026-10-18-11-00-00-123.evtx"
        rotated.write_bytes(b"rotated" * 100)

        report = engine_factory().run_once()

        assert report.reconciled_count == 1
        assert not rotated.exists()
        assert len(list((archive_dir / "Security").glob("*.zip"))) == 1
        events = audit_sink.of_type(AuditEventType.RECONCILIATION_SUCCEEDED)
        assert len(events) == 1
        assert events[0].channel == "Security"

    def test_reconciliation_failure_is_audited(
        self,
        engine_factory: Any,
        failing_archive_backend: Any,
        audit_sink: MemoryAuditSink,
        source_dir: Path,
    ) -> None:
        rotated = source_dir / "Archive-Security-2026-10-18-11-00-00-123.evtx"
        rotated.write_bytes(b"rotated")

        report = engine_factory(archive_backend=failing_archive_backend).run_once()

        assert rotated.exists()
        assert report.state == EngineState.IDLE
        failed = audit_sink.of_type(AuditEventType.RECONCILIATION_FAILED)
        assert len(failed) == 1
        assert failed[0].path == str(rotated)

    def test_purges_expired_archives(
        self, engine_factory: Any, audit_sink: MemoryAuditSink, archive_dir: Path
    ) -> None:
        target = archive_dir / "System"
        target.mkdir(parents=True)
        expired = target / "testhost_System_Archive_2026.01.01-0000.zip"
        fresh = target / "testhost_System_Archive_2026.10.18-1200.zip"
        for path in (expired, fresh):
            path.write_bytes(b"PK" + b"\x00" * 20)
        old = (datetime.now(timezone.utc) - timedelta(days=40)).timestamp()
        os.utime(expired, (old, old))

        report = engine_factory(config={"retention_days": 30}).run_once()

        assert report.purged_count == 1
        assert not expired.exists()
        assert fresh.exists()
        purged = audit_sink.of_type(AuditEventType.PURGE_SUCCEEDED)
        assert [e.path for e in purged] == [str(expired)]

    def test_dry_run_purges_nothing(
        self, engine_factory: Any, audit_sink: MemoryAuditSink, archive_dir: Path
    ) -> None:
        target = archive_dir / "System"
        target.mkdir(parents=True)
        expired = target / "old.zip"
        expired.write_bytes(b"PK")
        old = (datetime.now(timezone.utc) - timedelta(days=40)).timestamp()
        os.utime(expired, (old, old))

        engine_factory(config={"retention_days": 30, "dry_run": True}).run_once()

        assert expired.exists()
        assert audit_sink.of_type(AuditEventType.PURGE_SUCCEEDED)[0].dry_run is True

    def test_cleans_staging_residue(self, engine_factory: Any, archive_dir: Path) -> None:
        residue = archive_dir / ".staging" / "System_20261018-000000_cafebabe"
        residue.mkdir(parents=True)
        (residue / "leftover.evtx").write_bytes(b"x")

        engine_factory().run_once()

        assert not residue.exists()

    def test_parallel_workers(
        self, engine_factory: Any, fake_backend: Any, audit_sink: MemoryAuditSink, archive_dir: Path
    ) -> None:
        """Several channels archived concurrently each get their own archive."""
        names = [f"Channel{i}" for i in range(6)]
        for name in names:
            fake_backend.add(name, name.encode() * 200, max_size=1000)

        report = engine_factory(config={"max_workers": 4}).run_once()

        assert report.archived_count == 6
        assert sorted(fake_backend.cleared) == names
        assert sorted(p.parent.name for p in _zips(archive_dir)) == names
        assert not any((archive_dir / ".staging").iterdir())

    def test_report_to_dict(self, engine_factory: Any, fake_backend: Any) -> None:
        fake_backend.add("Application", b"a" * 900, max_size=1000)
        data = engine_factory().run_once().to_dict()
        assert data["state"] == "idle"
        assert data["archived"] == 1
        assert data["would_archive"] == 0
        assert data["aborted"] is False


class TestRunLockContention:
    """Tests for overlapping cycles."""

    def test_skips_when_lock_held(
        self,
        engine_factory: Any,
        make_config: Any,
        fake_backend: Any,
        audit_sink: MemoryAuditSink,
        archive_dir: Path,
    ) -> None:
        """A cycle that cannot take the lock does nothing but audit the skip."""
        fake_backend.add("Application", b"a" * 900, max_size=1000)
        holder = RunLock(make_config().lock_file)
        holder.acquire()
        try:
            report = engine_factory().run_once()
        finally:
            holder.release()

        assert isinstance(report, CycleReport)
        assert report.skipped
        assert report.lock_contention is not None
        assert not report.lock_contention.starved
        assert fake_backend.exported == []
        assert _types(audit_sink) == [AuditEventType.CYCLE_SKIPPED]

    def test_concurrent_cycles_archive_once(
        self, engine_factory: Any, fake_backend: Any, archive_dir: Path
    ) -> None:
        """Two cycles started together produce exactly one archive per channel."""
        fake_backend.add("Application", b"a" * 900, max_size=1000)
        fake_backend.export_gate = threading.Event()
        first = engine_factory()
        second = engine_factory()
        reports: list[CycleReport] = []

        worker = threading.Thread(target=lambda: reports.append(first.run_once()))
        worker.start()
        try:
            assert fake_backend.export_started.wait(timeout=10)
            contended = second.run_once()
        finally:
            fake_backend.export_gate.set()
            worker.join(timeout=10)

        assert contended.skipped
        assert reports[0].archived_count == 1
        assert len(_zips(archive_dir)) == 1
        assert fake_backend.cleared == ["Application"]


class TestRunForever:
    """Tests for the scheduling loop."""

    def test_stops_on_event(self, engine_factory: Any, audit_sink: MemoryAuditSink) -> None:
        engine = engine_factory()
        stop = threading.Event()
        worker = threading.Thread(target=engine.run_forever, args=(0.01, stop))
        worker.start()
        deadline = time.monotonic() + 10
        while not audit_sink.of_type(AuditEventType.CYCLE_END) and time.monotonic() < deadline:
            time.sleep(0.01)
        stop.set()
        worker.join(timeout=10)

        assert not worker.is_alive()
        assert audit_sink.of_type(AuditEventType.CYCLE_END)

    def test_survives_failed_cycle(self, engine_factory: Any, audit_sink: MemoryAuditSink) -> None:
        """An exception escaping one cycle is logged and the next cycle still runs."""
        engine = engine_factory()
        original = engine.run_once
        calls: list[int] = []

        def flaky_run_once() -> CycleReport:
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("disk vanished")
            return original()

        engine.run_once = flaky_run_once  # type: ignore[method-assign]
        stop = threading.Event()
        worker = threading.Thread(target=engine.run_forever, args=(0.01, stop))
        worker.start()
        deadline = time.monotonic() + 10
        while not audit_sink.of_type(AuditEventType.CYCLE_END) and time.monotonic() < deadline:
            time.sleep(0.01)
        stop.set()
        worker.join(timeout=10)

        assert not worker.is_alive()
        assert len(calls) >= 2
        assert audit_sink.of_type(AuditEventType.CYCLE_END)
