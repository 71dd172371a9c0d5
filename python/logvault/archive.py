"""
Backup, compression and clearing of log channels.

ArchiveWriter owns the per-channel pipeline:

1. ensure the channel's archive target directory exists
2. export the live channel into a private staging sub-directory
3. compress the staged export into the archive target
4. verify the archive, and only then clear the live channel
5. remove the staging sub-directory

A failure at any step stops the pipeline before the next one runs, so the
live log is never cleared unless a verified archive exists. The same
compress/verify/cleanup steps are reused for files the OS rotated on its own.
"""

from __future__ import annotations

import os
import secrets
import shutil
import threading
import zipfile
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, ClassVar

from logvault.exceptions import (
    ArchiveIOError,
    ClearError,
    CompressionError,
    ExportError,
    LogVaultError,
)
from logvault.logging import get_logger
from logvault.models import ArchiveFile, safe_name

if TYPE_CHECKING:
    from collections.abc import Callable

    from logvault.backends import LogBackend
    from logvault.models import AutoRotatedFile, LogChannel

logger = get_logger(__name__)

ARCHIVE_TIMESTAMP_FORMAT = "%Y.%m.%d-%H%M"
PARTIAL_SUFFIX = ".partial"


def _local_now() -> datetime:
    return datetime.now().astimezone()


class ArchiveBackend(ABC):
    """Compresses a directory into a single archive file."""

    extension: ClassVar[str] = ".zip"

    @abstractmethod
    def compress(self, src_dir: Path, dest_file: Path) -> None:
        """
        Write every file under ``src_dir`` into ``dest_file``.

        Raises:
            CompressionError: If the archive cannot be written.
        """

    @abstractmethod
    def verify(self, dest_file: Path) -> None:
        """
        Check that ``dest_file`` is a complete, readable, non-empty archive.

        Raises:
            CompressionError: If verification fails.
        """


class ZipArchiveBackend(ArchiveBackend):
    """Deflate-compressed zip archives, fsynced before they are considered written."""

    extension: ClassVar[str] = ".zip"

    def __init__(self, compresslevel: int = 9) -> None:
        self._compresslevel = compresslevel

    def compress(self, src_dir: Path, dest_file: Path) -> None:
        files = sorted(p for p in src_dir.rglob("*") if p.is_file())
        if not files:
            raise CompressionError.failed(str(src_dir), str(dest_file), "nothing to compress")

        try:
            with dest_file.open("wb") as fh:
                with zipfile.ZipFile(
                    fh,
                    "w",
                    compression=zipfile.ZIP_DEFLATED,
                    compresslevel=self._compresslevel,
                ) as zf:
                    for path in files:
                        zf.write(path, arcname=path.relative_to(src_dir).as_posix())
                fh.flush()
                os.fsync(fh.fileno())
        except (OSError, zipfile.BadZipFile, ValueError) as e:
            raise CompressionError.failed(str(src_dir), str(dest_file), str(e)) from e

    def verify(self, dest_file: Path) -> None:
        try:
            if dest_file.stat().st_size == 0:
                raise CompressionError.verification_failed(str(dest_file), "archive is empty")
            with zipfile.ZipFile(dest_file) as zf:
                if not zf.namelist():
                    raise CompressionError.verification_failed(
                        str(dest_file), "archive has no members"
                    )
                bad_member = zf.testzip()
        except (OSError, zipfile.BadZipFile) as e:
            raise CompressionError.verification_failed(str(dest_file), str(e)) from e

        if bad_member is not None:
            raise CompressionError.verification_failed(
                str(dest_file), f"corrupt member {bad_member}"
            )


def unique_path(directory: Path, base_name: str, extension: str) -> Path:
    """First of ``base.ext``, ``base_1.ext``, ``base_2.ext``... that does not exist."""
    candidate = directory / f"{base_name}{extension}"
    counter = 1
    while candidate.exists():
        candidate = directory / f"{base_name}_{counter}{extension}"
        counter += 1
    return candidate


class ArchiveWriter:
    """
    Produces compressed archives of log channels and clears them afterwards.

    Every operation works in its own staging sub-directory, so several
    operations may run at the same time without seeing each other's exports.
    In dry-run mode the export and compression still run, but the artifact
    stays in staging and is discarded; nothing is cleared or moved.
    """

    def __init__(
        self,
        log_backend: LogBackend,
        archive_root: str | Path,
        staging_dir: str | Path,
        host: str,
        archive_backend: ArchiveBackend | None = None,
        dry_run: bool = False,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._log_backend = log_backend
        self._archive_backend = archive_backend or ZipArchiveBackend()
        self._archive_root = Path(archive_root)
        self._staging_dir = Path(staging_dir)
        self._host = safe_name(host)
        self._dry_run = dry_run
        self._clock = clock or _local_now
        self._publish_lock = threading.Lock()

    @property
    def archive_root(self) -> Path:
        return self._archive_root

    @property
    def staging_dir(self) -> Path:
        return self._staging_dir

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    def target_dir(self, channel_name: str) -> Path:
        """Archive target directory for a channel (not created)."""
        return self._archive_root / safe_name(channel_name)

    def ensure_target(self, channel_name: str) -> Path:
        """Create the channel's archive target if needed; idempotent."""
        target = self.target_dir(channel_name)
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ArchiveIOError.failed(str(target), "create archive target", str(e)) from e
        return target

    def archive(self, channel: LogChannel) -> ArchiveFile:
        """
        Export, compress and clear a live channel.

        Returns:
            The archive written (in dry-run mode, the archive that would be written).

        Raises:
            ExportError, CompressionError, ClearError, ArchiveIOError
        """
        started = self._clock()
        stamp = started.strftime(ARCHIVE_TIMESTAMP_FORMAT)
        base_name = f"{self._host}_{channel.target_name}_Archive_{stamp}"
        log = logger.bind(channel=channel.name, dry_run=self._dry_run)

        target = self.target_dir(channel.name) if self._dry_run else self.ensure_target(channel.name)
        op_dir = self._new_operation_dir(channel.target_name, started)
        try:
            export_dir = op_dir / "export"
            export_file = export_dir / (
                f"{channel.target_name}_{started:%Y%m%d-%H%M%S}{self._log_backend.export_suffix}"
            )
            self._mkdir(export_dir)

            try:
                self._log_backend.export(channel, export_file)
            except LogVaultError:
                raise
            except OSError as e:
                raise ExportError.failed(channel.name, str(export_file), str(e)) from e
            if not export_file.is_file():
                raise ExportError.failed(channel.name, str(export_file), "export produced no file")
            log.debug("channel_exported", export_file=str(export_file))

            archive_path, size_bytes = self._write_archive(export_dir, target, base_name, op_dir)
            archive = ArchiveFile(
                source_channel=channel.name,
                created_at=started,
                path=archive_path,
                size_bytes=size_bytes,
            )

            if self._dry_run:
                log.info("archive_rehearsed", destination=str(archive_path))
                return archive

            try:
                self._log_backend.clear(channel)
            except LogVaultError:
                raise
            except OSError as e:
                raise ClearError.failed(channel.name, str(e)) from e
            log.info(
                "archive_completed",
                destination=str(archive_path),
                source_bytes=channel.current_size_bytes,
                archive_bytes=archive.size_bytes,
            )
            return archive
        finally:
            self._discard(op_dir)

    def archive_rotated(self, rotated: AutoRotatedFile) -> ArchiveFile:
        """
        Compress a file the OS already rotated and remove the original.

        The original is only removed once the archive is verified; any failure
        leaves it in place for the next cycle.

        Raises:
            CompressionError, ArchiveIOError
        """
        started = self._clock()
        base_name = f"{self._host}_{safe_name(rotated.path.stem)}"
        log = logger.bind(channel=rotated.channel_name, source=str(rotated.path), dry_run=self._dry_run)

        target = (
            self.target_dir(rotated.channel_name)
            if self._dry_run
            else self.ensure_target(rotated.channel_name)
        )
        op_dir = self._new_operation_dir(safe_name(rotated.channel_name), started)
        try:
            export_dir = op_dir / "export"
            self._mkdir(export_dir)
            staged = export_dir / rotated.path.name
            try:
                shutil.copy2(rotated.path, staged)
            except OSError as e:
                raise ArchiveIOError.failed(str(rotated.path), "stage rotated file", str(e)) from e

            archive_path, size_bytes = self._write_archive(export_dir, target, base_name, op_dir)
            archive = ArchiveFile(
                source_channel=rotated.channel_name,
                created_at=started,
                path=archive_path,
                size_bytes=size_bytes,
            )

            if self._dry_run:
                log.info("reconciliation_rehearsed", destination=str(archive_path))
                return archive

            try:
                rotated.path.unlink()
            except OSError as e:
                raise ArchiveIOError.failed(str(rotated.path), "remove rotated file", str(e)) from e

            log.info("rotated_file_archived", destination=str(archive_path), archive_bytes=archive.size_bytes)
            return archive
        finally:
            self._discard(op_dir)

    def clean_staging(self) -> int:
        """
        Remove residue left by interrupted operations.

        Must only be called while holding the run-lock. Returns the number of
        entries removed.
        """
        removed = 0
        if self._staging_dir.is_dir():
            for entry in self._staging_dir.iterdir():
                try:
                    if entry.is_dir() and not entry.is_symlink():
                        shutil.rmtree(entry)
                    else:
                        entry.unlink()
                    removed += 1
                except OSError as e:
                    logger.warning("staging_residue_remove_failed", path=str(entry), error=str(e))

        if self._archive_root.is_dir():
            for partial in self._archive_root.rglob(f"*{PARTIAL_SUFFIX}"):
                if self._staging_dir in partial.parents:
                    continue
                try:
                    partial.unlink()
                    removed += 1
                except OSError as e:
                    logger.warning("partial_archive_remove_failed", path=str(partial), error=str(e))

        if removed:
            logger.info("staging_residue_cleaned", removed=removed, staging_dir=str(self._staging_dir))
        return removed

    def _new_operation_dir(self, label: str, started: datetime) -> Path:
        op_dir = self._staging_dir / f"{label}_{started:%Y%m%d-%H%M%S}_{secrets.token_hex(4)}"
        try:
            op_dir.mkdir(parents=True, exist_ok=False)
        except OSError as e:
            raise ArchiveIOError.failed(str(op_dir), "create staging directory", str(e)) from e
        return op_dir

    @staticmethod
    def _mkdir(path: Path) -> None:
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ArchiveIOError.failed(str(path), "create directory", str(e)) from e

    def _write_archive(
        self, src_dir: Path, target: Path, base_name: str, op_dir: Path
    ) -> tuple[Path, int]:
        """
        Compress, verify and publish an archive.

        The archive is built under a ``.partial`` name and renamed only after
        verification. In dry-run mode it is built inside ``op_dir`` and the
        returned path is where it would have been published.

        Returns:
            Final archive path and its size in bytes.
        """
        extension = self._archive_backend.extension
        partial_dir = op_dir if self._dry_run else target
        partial = partial_dir / f".{base_name}_{secrets.token_hex(4)}{extension}{PARTIAL_SUFFIX}"

        try:
            self._archive_backend.compress(src_dir, partial)
            self._archive_backend.verify(partial)
            size_bytes = partial.stat().st_size
        except Exception as e:
            self._remove_quietly(partial)
            if isinstance(e, LogVaultError):
                raise
            raise CompressionError.failed(str(src_dir), str(partial), str(e)) from e

        with self._publish_lock:
            final = unique_path(target, base_name, extension)
            if self._dry_run:
                return final, size_bytes
            try:
                os.replace(partial, final)
            except OSError as e:
                self._remove_quietly(partial)
                raise ArchiveIOError.failed(str(final), "publish archive", str(e)) from e
        return final, size_bytes

    @staticmethod
    def _remove_quietly(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("partial_archive_remove_failed", path=str(path), error=str(e))

    @staticmethod
    def _discard(op_dir: Path) -> None:
        try:
            shutil.rmtree(op_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("staging_cleanup_failed", path=str(op_dir), error=str(e))
