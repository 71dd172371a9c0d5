"""
Capability interfaces to the host log subsystem.

A LogBackend is the only code that touches live logs. It can list channels,
export a channel into a file and clear a channel. Two implementations are
provided:
- FileLogBackend: plain log files in a directory (copytruncate semantics)
- WevtutilLogBackend: Windows event log via the ``wevtutil`` tool
"""

from __future__ import annotations

import shutil
import subprocess
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, ClassVar

from logvault.exceptions import ClearError, EnumerationError, ExportError
from logvault.logging import get_logger
from logvault.models import LogChannel

if TYPE_CHECKING:
    from collections.abc import Mapping

    from logvault.config import BackendConfig

logger = get_logger(__name__)


class LogBackend(ABC):
    """Narrow interface to the OS log subsystem."""

    name: ClassVar[str] = "base"
    export_suffix: ClassVar[str] = ".log"

    @abstractmethod
    def list_channels(self) -> list[LogChannel]:
        """
        Enumerate every channel with its current and maximum size.

        Raises:
            EnumerationError: If the log subsystem cannot be queried at all.
        """

    @abstractmethod
    def export(self, channel: LogChannel, destination: Path) -> None:
        """
        Write the channel's current contents to ``destination``.

        Raises:
            ExportError: If the export fails.
        """

    @abstractmethod
    def clear(self, channel: LogChannel) -> None:
        """
        Empty the live channel.

        Raises:
            ClearError: If the channel cannot be cleared.
        """


class FileLogBackend(LogBackend):
    """
    Treats each matching file in a directory as a channel.

    ``export`` copies the file and remembers how many bytes were copied;
    ``clear`` keeps any bytes appended after the export so nothing written
    in between is dropped.
    """

    name: ClassVar[str] = "file"
    export_suffix: ClassVar[str] = ".log"

    def __init__(
        self,
        directory: str | Path,
        pattern: str = "*.log",
        default_max_size_bytes: int = 20 * 1024 * 1024,
        max_size_overrides: Mapping[str, int] | None = None,
    ) -> None:
        self._directory = Path(directory)
        self._pattern = pattern
        self._default_max = default_max_size_bytes
        self._overrides = dict(max_size_overrides or {})
        self._exported: dict[str, int] = {}
        self._lock = threading.Lock()

    @property
    def directory(self) -> Path:
        return self._directory

    def list_channels(self) -> list[LogChannel]:
        if not self._directory.is_dir():
            raise EnumerationError.backend_unavailable(
                self.name, f"{self._directory} is not a directory"
            )

        try:
            paths = sorted(self._directory.glob(self._pattern))
        except OSError as e:
            raise EnumerationError.backend_unavailable(self.name, str(e)) from e

        channels: list[LogChannel] = []
        for path in paths:
            if not path.is_file():
                continue
            try:
                size = path.stat().st_size
            except OSError as e:
                logger.warning("channel_stat_failed", path=str(path), error=str(e))
                continue
            name = path.stem
            channels.append(
                LogChannel(
                    name=name,
                    current_size_bytes=size,
                    max_size_bytes=self._overrides.get(name, self._default_max),
                    log_path=path,
                )
            )
        return channels

    def _path_for(self, channel: LogChannel) -> Path:
        if channel.log_path is not None:
            return channel.log_path
        return self._directory / f"{channel.name}{self.export_suffix}"

    def export(self, channel: LogChannel, destination: Path) -> None:
        source = self._path_for(channel)
        try:
            with source.open("rb") as src, destination.open("wb") as dst:
                shutil.copyfileobj(src, dst)
                copied = src.tell()
        except OSError as e:
            raise ExportError.failed(channel.name, str(destination), _reason(e)) from e

        with self._lock:
            self._exported[channel.name] = copied

    def clear(self, channel: LogChannel) -> None:
        source = self._path_for(channel)
        with self._lock:
            exported = self._exported.pop(channel.name, None)

        if exported is None:
            raise ClearError.failed(channel.name, "channel was not exported in this run")

        try:
            with source.open("r+b") as f:
                f.seek(exported)
                tail = f.read()
                f.seek(0)
                f.truncate(0)
                if tail:
                    f.write(tail)
        except OSError as e:
            raise ClearError.failed(channel.name, str(e)) from e

        if tail:
            logger.debug("channel_tail_preserved", channel=channel.name, tail_bytes=len(tail))


def _reason(error: Exception) -> str:
    output = getattr(error, "output", None)
    return str(output) if output else str(error)


def _parse_key_values(output: str) -> dict[str, str]:
    """Parse ``key: value`` lines as printed by ``wevtutil gl`` and ``gli``."""
    values: dict[str, str] = {}
    for line in output.splitlines():
        key, sep, value = line.partition(":")
        key = key.strip()
        if sep and key and key not in values:
            values[key] = value.strip()
    return values


class WevtutilLogBackend(LogBackend):
    """Windows event log channels, driven through ``wevtutil``."""

    name: ClassVar[str] = "wevtutil"
    export_suffix: ClassVar[str] = ".evtx"

    def __init__(self, executable: str = "wevtutil", timeout: float = 300.0) -> None:
        self._executable = executable
        self._timeout = timeout

    def _run(self, *args: str) -> str:
        result = subprocess.run(  # noqa: S603
            [self._executable, *args],
            capture_output=True,
            text=True,
            timeout=self._timeout,
            check=False,
        )
        if result.returncode != 0:
            reason = (result.stderr or result.stdout).strip() or f"exit code {result.returncode}"
            raise subprocess.CalledProcessError(
                result.returncode, [self._executable, *args], output=reason
            )
        return result.stdout

    def list_channels(self) -> list[LogChannel]:
        try:
            names = [line.strip() for line in self._run("el").splitlines() if line.strip()]
        except subprocess.TimeoutExpired as e:
            raise EnumerationError.timeout(self.name, self._timeout) from e
        except (OSError, subprocess.CalledProcessError) as e:
            raise EnumerationError.backend_unavailable(self.name, _reason(e)) from e

        channels: list[LogChannel] = []
        for name in names:
            try:
                settings = _parse_key_values(self._run("gl", name))
                info = _parse_key_values(self._run("gli", name))
                channels.append(
                    LogChannel(
                        name=name,
                        current_size_bytes=int(info.get("fileSize", "0") or 0),
                        max_size_bytes=int(settings.get("maxSize", "0") or 0),
                    )
                )
            except (OSError, ValueError, subprocess.SubprocessError) as e:
                logger.debug("channel_query_skipped", channel=name, error=str(e))
        return channels

    def export(self, channel: LogChannel, destination: Path) -> None:
        try:
            self._run("epl", channel.name, str(destination), "/ow:true")
        except (OSError, subprocess.SubprocessError) as e:
            raise ExportError.failed(channel.name, str(destination), _reason(e)) from e

    def clear(self, channel: LogChannel) -> None:
        try:
            self._run("cl", channel.name)
        except (OSError, subprocess.SubprocessError) as e:
            raise ClearError.failed(channel.name, _reason(e)) from e


def create_backend(config: BackendConfig, source_path: str | Path) -> LogBackend:
    """Build the backend named in configuration."""
    if config.kind == "wevtutil":
        return WevtutilLogBackend(timeout=config.command_timeout)
    return FileLogBackend(
        source_path,
        pattern=config.channel_glob,
        default_max_size_bytes=config.default_max_size_bytes,
        max_size_overrides=config.max_size_overrides,
    )
