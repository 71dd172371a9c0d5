"""
Core data models for logvault.

Channels are re-read from the host every cycle and never persisted; archive
files are owned by logvault once written.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from logvault.config import INFINITE_RETENTION

_UNSAFE_NAME_CHARS = re.compile(r'[\\/:*?"<>|\s]+')


def safe_name(name: str) -> str:
    """Turn a channel name into a string usable as a file or directory name."""
    cleaned = _UNSAFE_NAME_CHARS.sub("-", name.strip()).strip("-.")
    return cleaned or "unnamed"


class LogChannel(BaseModel):
    """One event-log stream on the host."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Channel identifier, unique per host")
    current_size_bytes: int = Field(default=0, ge=0, description="Current size on disk")
    max_size_bytes: int = Field(default=0, description="Configured capacity (0 = unbounded/disabled)")
    log_path: Path | None = Field(default=None, description="Backing file, when known")

    @property
    def target_name(self) -> str:
        """Directory name of this channel's archive target."""
        return safe_name(self.name)

    @property
    def fill_ratio(self) -> float:
        """Fraction of capacity in use, 0.0 for channels without a capacity."""
        if self.max_size_bytes <= 0:
            return 0.0
        return self.current_size_bytes / self.max_size_bytes


class ArchiveFile(BaseModel):
    """A compressed artifact inside a channel's archive target."""

    model_config = ConfigDict(frozen=True)

    source_channel: str = Field(..., description="Channel the archive was produced from")
    created_at: datetime = Field(..., description="When the archive was written")
    path: Path = Field(..., description="Location inside the archive target")
    size_bytes: int = Field(default=0, ge=0, description="Compressed size")

    @classmethod
    def from_path(cls, path: Path, source_channel: str | None = None) -> ArchiveFile:
        """Build an ArchiveFile from an existing file on disk."""
        stat = path.stat()
        return cls(
            source_channel=source_channel or path.parent.name,
            created_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            path=path,
            size_bytes=stat.st_size,
        )


class AutoRotatedFile(BaseModel):
    """A log file the OS rotated on its own and left in the live log directory."""

    model_config = ConfigDict(frozen=True)

    path: Path = Field(..., description="Location in the OS log directory")
    channel_name: str = Field(..., description="Owning channel derived from the filename")
    rotated_at: datetime | None = Field(default=None, description="Rotation time from the filename")


class RetentionWindow(BaseModel):
    """How long archives are kept; ``days == -1`` keeps them forever."""

    model_config = ConfigDict(frozen=True)

    days: int = Field(default=INFINITE_RETENTION, ge=INFINITE_RETENTION)

    @classmethod
    def infinite(cls) -> RetentionWindow:
        return cls(days=INFINITE_RETENTION)

    @property
    def is_infinite(self) -> bool:
        return self.days == INFINITE_RETENTION

    @property
    def duration(self) -> timedelta | None:
        if self.is_infinite:
            return None
        return timedelta(days=self.days)

    def cutoff(self, now: datetime) -> datetime | None:
        """Archives created strictly before the cutoff are expired."""
        duration = self.duration
        if duration is None:
            return None
        return now - duration
