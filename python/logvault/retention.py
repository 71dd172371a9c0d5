"""
Retention purge of expired archives.

Archives older than the retention window are deleted. A failure to delete
one file is recorded and the scan moves on to the next candidate.

Design Patterns:
- Observer Pattern: Notify on purge events
- Template Method: Common scan/delete workflow
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from logvault.exceptions import PurgeError
from logvault.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from logvault.models import RetentionWindow

logger = get_logger(__name__)


class RetentionEventType(str, Enum):
    """Types of retention events."""

    FILE_PURGED = "file_purged"
    PURGE_FAILED = "purge_failed"
    RETENTION_STARTED = "retention_started"
    RETENTION_COMPLETED = "retention_completed"


@dataclass
class RetentionEvent:
    """Event emitted during retention operations."""

    event_type: RetentionEventType
    path: Path | None = None
    size_bytes: int = 0
    age_days: float = 0.0
    message: str = ""
    dry_run: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error: PurgeError | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "event_type": self.event_type.value,
            "path": str(self.path) if self.path else None,
            "size_bytes": self.size_bytes,
            "age_days": round(self.age_days, 2),
            "message": self.message,
            "dry_run": self.dry_run,
            "timestamp": self.timestamp.isoformat(),
            "error": self.error.to_dict() if self.error else None,
        }


class RetentionObserver(Protocol):
    """Protocol for retention event observers."""

    def on_retention_event(self, event: RetentionEvent) -> None:
        """Handle a retention event."""
        ...


@dataclass
class PurgeCandidate:
    """An archive old enough to be purged."""

    path: Path
    created_at: datetime
    size_bytes: int
    age_days: float


@dataclass
class PurgeResult:
    """Result of a purge pass."""

    purged_count: int = 0
    bytes_freed: int = 0
    errors: list[PurgeError] = field(default_factory=list)
    purged: list[Path] = field(default_factory=list)
    dry_run: bool = False
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        """Check if the purge completed without errors."""
        return len(self.errors) == 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "purged_count": self.purged_count,
            "bytes_freed": self.bytes_freed,
            "bytes_freed_mb": round(self.bytes_freed / (1024 * 1024), 2),
            "error_count": len(self.errors),
            "errors": [str(e) for e in self.errors],
            "dry_run": self.dry_run,
            "duration_seconds": round(self.duration_seconds, 3),
            "success": self.success,
        }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RetentionPurger:
    """
    Age-based purge of archive files under an archive root.

    Only files with the archive extension are considered; the staging area
    and in-flight ``.partial`` files are never touched.
    """

    def __init__(
        self,
        file_pattern: str = "*.zip",
        exclude_dirs: Sequence[Path] = (),
        observers: Sequence[RetentionObserver] | None = None,
        dry_run: bool = False,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._pattern = file_pattern
        self._exclude_dirs = [Path(d) for d in exclude_dirs]
        self._observers: list[RetentionObserver] = list(observers) if observers else []
        self._dry_run = dry_run
        self._clock = clock or _utc_now

    def add_observer(self, observer: RetentionObserver) -> None:
        """Add an event observer."""
        self._observers.append(observer)

    def _notify_observers(self, event: RetentionEvent) -> None:
        for observer in self._observers:
            try:
                observer.on_retention_event(event)
            except Exception as e:
                logger.warning(
                    "observer_notification_failed",
                    observer=type(observer).__name__,
                    error=str(e),
                )

    def _is_excluded(self, path: Path) -> bool:
        return any(d == path or d in path.parents for d in self._exclude_dirs)

    def candidates(
        self, root: str | Path, window: RetentionWindow, now: datetime | None = None
    ) -> list[PurgeCandidate]:
        """
        Archives under ``root`` created strictly before ``now - window``.

        Returns:
            Candidates sorted oldest first; empty for an infinite window.

        Raises:
            PurgeError: If the archive tree cannot be scanned.
        """
        now = now or self._clock()
        cutoff = window.cutoff(now)
        root = Path(root)
        if cutoff is None or not root.exists():
            return []

        try:
            paths = list(root.rglob(self._pattern))
        except OSError as e:
            raise PurgeError.scan_failed(str(root), str(e)) from e

        found: list[PurgeCandidate] = []
        for path in paths:
            if self._is_excluded(path):
                continue
            try:
                if not path.is_file():
                    continue
                stat = path.stat()
            except OSError as e:
                logger.warning("archive_stat_failed", path=str(path), error=str(e))
                continue

            created_at = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
            if created_at < cutoff:
                found.append(
                    PurgeCandidate(
                        path=path,
                        created_at=created_at,
                        size_bytes=stat.st_size,
                        age_days=(now - created_at).total_seconds() / 86400,
                    )
                )

        found.sort(key=lambda c: c.created_at)
        return found

    def preview(self, root: str | Path, window: RetentionWindow) -> list[dict[str, Any]]:
        """Describe what a purge would delete without deleting anything."""
        return [
            {
                "path": str(c.path),
                "name": c.path.name,
                "size_bytes": c.size_bytes,
                "age_days": round(c.age_days, 2),
                "created_at": c.created_at.isoformat(),
            }
            for c in self.candidates(root, window)
        ]

    def purge(self, root: str | Path, window: RetentionWindow) -> PurgeResult:
        """
        Delete archives older than the retention window.

        Args:
            root: Archive root to scan recursively.
            window: Retention window; infinite means nothing is purged.

        Returns:
            Purged count, bytes freed and the per-file errors.
        """
        start_time = time.perf_counter()
        result = PurgeResult(dry_run=self._dry_run)
        root = Path(root)

        if window.is_infinite:
            logger.debug("retention_infinite", root=str(root))
            return result

        self._notify_observers(
            RetentionEvent(
                event_type=RetentionEventType.RETENTION_STARTED,
                path=root,
                dry_run=self._dry_run,
                message=f"Starting purge of {root} (retention {window.days} days)",
            )
        )

        try:
            candidates = self.candidates(root, window)
        except PurgeError as e:
            result.errors.append(e)
            self._notify_observers(
                RetentionEvent(
                    event_type=RetentionEventType.PURGE_FAILED,
                    path=root,
                    dry_run=self._dry_run,
                    message=e.message,
                    error=e,
                )
            )
            logger.warning("purge_scan_failed", root=str(root), error=e.to_dict())
            candidates = []

        for candidate in candidates:
            try:
                if not self._dry_run:
                    candidate.path.unlink()
            except OSError as e:
                error = PurgeError.delete_failed(str(candidate.path), str(e))
                result.errors.append(error)
                self._notify_observers(
                    RetentionEvent(
                        event_type=RetentionEventType.PURGE_FAILED,
                        path=candidate.path,
                        size_bytes=candidate.size_bytes,
                        age_days=candidate.age_days,
                        dry_run=self._dry_run,
                        message=error.message,
                        error=error,
                    )
                )
                logger.warning("archive_purge_failed", path=str(candidate.path), error=str(e))
                continue

            result.purged_count += 1
            result.bytes_freed += candidate.size_bytes
            result.purged.append(candidate.path)

            self._notify_observers(
                RetentionEvent(
                    event_type=RetentionEventType.FILE_PURGED,
                    path=candidate.path,
                    size_bytes=candidate.size_bytes,
                    age_days=candidate.age_days,
                    dry_run=self._dry_run,
                    message=f"Purged archive: {candidate.path.name}",
                )
            )
            logger.debug(
                "archive_purged",
                path=str(candidate.path),
                size_bytes=candidate.size_bytes,
                age_days=round(candidate.age_days, 2),
                dry_run=self._dry_run,
            )

        result.duration_seconds = time.perf_counter() - start_time

        self._notify_observers(
            RetentionEvent(
                event_type=RetentionEventType.RETENTION_COMPLETED,
                path=root,
                size_bytes=result.bytes_freed,
                dry_run=self._dry_run,
                message=f"Purge completed: {result.purged_count} archives removed",
            )
        )
        logger.info("retention_completed", root=str(root), result=result.to_dict())
        return result
