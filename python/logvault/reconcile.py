"""
Pickup of logs the OS rotated on its own.

When a channel reaches full capacity with auto-backup enabled, Windows
writes it out as ``Archive-<Channel>-YYYY-MM-DD-HH-MM-SS-mmm.evtx`` next to
the live logs. Those files are compressed into the channel's archive target
and then removed from the log directory.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from logvault.exceptions import LogVaultError, ReconciliationError
from logvault.logging import get_logger
from logvault.models import AutoRotatedFile

if TYPE_CHECKING:
    from logvault.archive import ArchiveWriter
    from logvault.models import ArchiveFile

logger = get_logger(__name__)

AUTO_ROTATED_PATTERN = re.compile(
    r"^Archive-(?P<channel>.+)-"
    r"(?P<stamp>\d{4}-\d{2}-\d{2}-\d{2}-\d{2}-\d{2})-(?P<millis>\d{3})\.evtx$",
    re.IGNORECASE,
)

# Path separators in channel names are escaped in rotated filenames.
_CHANNEL_ESCAPES = {"%4": "/"}


def is_auto_rotated(filename: str, pattern: re.Pattern[str] = AUTO_ROTATED_PATTERN) -> bool:
    """Whether a bare filename follows the OS auto-rotation naming convention."""
    return pattern.match(filename) is not None


def channel_from_filename(
    filename: str, pattern: re.Pattern[str] = AUTO_ROTATED_PATTERN
) -> str | None:
    """Owning channel of an auto-rotated file, or None if the name does not match."""
    match = pattern.match(filename)
    if match is None:
        return None
    channel = match.group("channel")
    for escaped, original in _CHANNEL_ESCAPES.items():
        channel = channel.replace(escaped, original)
    return channel


def rotated_at_from_filename(
    filename: str, pattern: re.Pattern[str] = AUTO_ROTATED_PATTERN
) -> datetime | None:
    match = pattern.match(filename)
    if match is None or "stamp" not in pattern.groupindex:
        return None
    try:
        stamp = datetime.strptime(match.group("stamp"), "%Y-%m-%d-%H-%M-%S")
    except ValueError:
        return None
    if "millis" in pattern.groupindex:
        stamp = stamp.replace(microsecond=int(match.group("millis")) * 1000)
    return stamp


@dataclass
class ReconciliationOutcome:
    """Result of handling one auto-rotated file."""

    rotated: AutoRotatedFile
    archive: ArchiveFile | None = None
    error: LogVaultError | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": str(self.rotated.path),
            "channel": self.rotated.channel_name,
            "archive": str(self.archive.path) if self.archive else None,
            "error": self.error.to_dict() if self.error else None,
            "success": self.success,
        }


class ReconciliationScanner:
    """Finds auto-rotated files and routes them through the archive pipeline."""

    def __init__(
        self,
        writer: ArchiveWriter,
        pattern: re.Pattern[str] = AUTO_ROTATED_PATTERN,
    ) -> None:
        self._writer = writer
        self._pattern = pattern

    def scan(self, os_log_directory: str | Path) -> list[AutoRotatedFile]:
        """
        List auto-rotated files in the OS log directory.

        Raises:
            ReconciliationError: If the directory cannot be read.
        """
        directory = Path(os_log_directory)
        if not directory.is_dir():
            raise ReconciliationError.failed(str(directory), "not a directory")

        try:
            entries = sorted(directory.iterdir())
        except OSError as e:
            raise ReconciliationError.failed(str(directory), str(e)) from e

        found: list[AutoRotatedFile] = []
        for path in entries:
            channel = channel_from_filename(path.name, self._pattern)
            if channel is None or not path.is_file():
                continue
            found.append(
                AutoRotatedFile(
                    path=path,
                    channel_name=channel,
                    rotated_at=rotated_at_from_filename(path.name, self._pattern),
                )
            )

        logger.debug("rotated_files_scanned", directory=str(directory), found=len(found))
        return found

    def reconcile(self, os_log_directory: str | Path) -> list[ReconciliationOutcome]:
        """
        Archive every auto-rotated file found in the OS log directory.

        A failure for one file is recorded and the remaining files are still
        processed; a failed file is left where it is.

        Raises:
            ReconciliationError: If the directory cannot be scanned.
        """
        outcomes: list[ReconciliationOutcome] = []
        for rotated in self.scan(os_log_directory):
            try:
                archive = self._writer.archive_rotated(rotated)
            except Exception as e:
                error = (
                    e
                    if isinstance(e, LogVaultError)
                    else ReconciliationError.failed(str(rotated.path), f"{type(e).__name__}: {e}")
                )
                logger.warning(
                    "reconciliation_failed",
                    source=str(rotated.path),
                    channel=rotated.channel_name,
                    error=error.to_dict(),
                )
                outcomes.append(ReconciliationOutcome(rotated=rotated, error=error))
                continue
            outcomes.append(ReconciliationOutcome(rotated=rotated, archive=archive))
        return outcomes
