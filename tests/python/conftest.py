"""Pytest configuration and shared fixtures for logvault tests."""

from __future__ import annotations

import threading
from datetime import datetime
from pathlib import Path
from typing import Any, ClassVar

import pytest

from logvault.archive import ZipArchiveBackend
from logvault.audit import MemoryAuditSink
from logvault.backends import LogBackend
from logvault.config import Config, LockConfig
from logvault.exceptions import (
    ClearError,
    CompressionError,
    EnumerationError,
    ExportError,
)
from logvault.models import LogChannel

FIXED_NOW = datetime(2026, 10, 18, 12, 30, 5).astimezone()


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")


class FakeLogBackend(LogBackend):
    """In-memory log subsystem with switchable failures."""

    name: ClassVar[str] = "fake"
    export_suffix: ClassVar[str] = ".evtx"

    def __init__(self) -> None:
        self.data: dict[str, bytes] = {}
        self.max_sizes: dict[str, int] = {}
        self.exported: list[str] = []
        self.cleared: list[str] = []
        self.fail_list = False
        self.fail_export: set[str] = set()
        self.crash_export: set[str] = set()
        self.fail_clear: set[str] = set()
        self.export_gate: threading.Event | None = None
        self.export_started = threading.Event()
        self._lock = threading.Lock()

    def add(self, name: str, data: bytes, max_size: int) -> None:
        self.data[name] = data
        self.max_sizes[name] = max_size

    def list_channels(self) -> list[LogChannel]:
        if self.fail_list:
            raise EnumerationError.backend_unavailable(self.name, "event log service stopped")
        return [
            LogChannel(name=name, current_size_bytes=len(data), max_size_bytes=self.max_sizes[name])
            for name, data in self.data.items()
        ]

    def export(self, channel: LogChannel, destination: Path) -> None:
        self.export_started.set()
        if self.export_gate is not None:
            self.export_gate.wait(timeout=10)
        if channel.name in self.fail_export:
            raise ExportError.failed(channel.name, str(destination), "access denied")
        if channel.name in self.crash_export:
            raise RuntimeError("backend crashed")
        destination.write_bytes(self.data[channel.name])
        with self._lock:
            self.exported.append(channel.name)

    def clear(self, channel: LogChannel) -> None:
        if channel.name in self.fail_clear:
            raise ClearError.failed(channel.name, "access denied")
        with self._lock:
            self.data[channel.name] = b""
            self.cleared.append(channel.name)


class FailingArchiveBackend(ZipArchiveBackend):
    """Zip backend whose compression always fails."""

    def __init__(self) -> None:
        super().__init__()
        self.calls = 0

    def compress(self, src_dir: Path, dest_file: Path) -> None:
        self.calls += 1
        raise CompressionError.failed(str(src_dir), str(dest_file), "disk full")


@pytest.fixture
def fake_backend() -> FakeLogBackend:
    return FakeLogBackend()


@pytest.fixture
def failing_archive_backend() -> FailingArchiveBackend:
    return FailingArchiveBackend()


@pytest.fixture
def audit_sink() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
def fixed_clock() -> Any:
    return lambda: FIXED_NOW


@pytest.fixture
def source_dir(tmp_path: Path) -> Path:
    path = tmp_path / "source"
    path.mkdir()
    return path


@pytest.fixture
def archive_dir(tmp_path: Path) -> Path:
    return tmp_path / "archive"


@pytest.fixture
def make_config(source_dir: Path, archive_dir: Path) -> Any:
    """Factory for configs rooted in the test's temporary directory."""

    def _make(**overrides: Any) -> Config:
        values: dict[str, Any] = {
            "archive_path": str(archive_dir),
            "source_path": str(source_dir),
            "retention_days": -1,
            "host": "testhost",
            "max_workers": 1,
            "lock": LockConfig(retries=1, retry_delay_seconds=0.0),
        }
        values.update(overrides)
        return Config(**values)

    return _make
