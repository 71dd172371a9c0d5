"""
Single-instance run-lock.

An advisory, non-blocking exclusive lock on a file under the archive root
keeps two maintenance cycles from running at the same time. Contention is
normal backpressure: the losing invocation skips its cycle. Consecutive
skips are counted in a sidecar file so a lock that is never released can be
reported once the skip budget is exhausted.
"""

from __future__ import annotations

import os
import sys
import time
from pathlib import Path
from typing import IO, TYPE_CHECKING

from logvault.exceptions import ArchiveIOError, ErrorCode, LockContention
from logvault.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType

logger = get_logger(__name__)

if sys.platform == "win32":
    import msvcrt

    def _try_lock(fh: IO[str]) -> None:
        fh.seek(0)
        msvcrt.locking(fh.fileno(), msvcrt.LK_NBLCK, 1)

    def _unlock(fh: IO[str]) -> None:
        fh.seek(0)
        msvcrt.locking(fh.fileno(), msvcrt.LK_UNLCK, 1)

else:
    import fcntl

    def _try_lock(fh: IO[str]) -> None:
        fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)

    def _unlock(fh: IO[str]) -> None:
        fcntl.flock(fh.fileno(), fcntl.LOCK_UN)


class RunLock:
    """
    Advisory lock preventing overlapping maintenance cycles.

    Usage:
        with RunLock(path):
            engine_cycle()
    """

    def __init__(
        self,
        path: str | Path,
        retries: int = 1,
        retry_delay_seconds: float = 2.0,
        max_consecutive_skips: int = 12,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._path = Path(path)
        self._skips_path = self._path.with_name(self._path.name + ".skips")
        self._retries = max(1, retries)
        self._retry_delay = retry_delay_seconds
        self._max_skips = max_consecutive_skips
        self._sleep = sleep
        self._fh: IO[str] | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._fh is not None

    def consecutive_skips(self) -> int:
        """Number of invocations skipped since the lock was last acquired."""
        try:
            return int(self._skips_path.read_text().strip() or 0)
        except (OSError, ValueError):
            return 0

    def acquire(self) -> None:
        """
        Take the lock, retrying up to the configured number of attempts.

        Raises:
            LockContention: If another cycle holds the lock; its error code is
                LOCK_STARVED once consecutive skips exceed the budget.
            ArchiveIOError: If the lock file cannot be created.
        """
        if self._fh is not None:
            return

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ArchiveIOError.failed(str(self._path.parent), "create lock directory", str(e)) from e

        for attempt in range(1, self._retries + 1):
            try:
                fh = open(self._path, "a+")
            except OSError as e:
                raise ArchiveIOError.failed(str(self._path), "open lock file", str(e)) from e

            try:
                _try_lock(fh)
            except OSError:
                fh.close()
                logger.debug("run_lock_busy", path=str(self._path), attempt=attempt)
                if attempt < self._retries:
                    self._sleep(self._retry_delay)
                continue

            self._fh = fh
            self._write_owner()
            self._reset_skips()
            logger.debug("run_lock_acquired", path=str(self._path), attempt=attempt)
            return

        skips = self._record_skip()
        contention = LockContention.held(str(self._path), self._retries, consecutive_skips=skips)
        if skips > self._max_skips:
            contention.error_code = ErrorCode.LOCK_STARVED
            contention.is_retryable = False
        raise contention

    def release(self) -> None:
        """Release the lock if held."""
        if self._fh is None:
            return
        fh, self._fh = self._fh, None
        try:
            _unlock(fh)
        except OSError as e:
            logger.warning("run_lock_release_failed", path=str(self._path), error=str(e))
        finally:
            fh.close()
        logger.debug("run_lock_released", path=str(self._path))

    def __enter__(self) -> RunLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()

    def _write_owner(self) -> None:
        if self._fh is None:
            return
        try:
            self._fh.seek(0)
            self._fh.truncate()
            self._fh.write(f"{os.getpid()}\n")
            self._fh.flush()
        except OSError as e:
            logger.debug("run_lock_owner_write_failed", path=str(self._path), error=str(e))

    def _record_skip(self) -> int:
        skips = self.consecutive_skips() + 1
        try:
            self._skips_path.write_text(f"{skips}\n")
        except OSError as e:
            logger.warning("run_lock_skip_record_failed", path=str(self._skips_path), error=str(e))
        return skips

    def _reset_skips(self) -> None:
        try:
            self._skips_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("run_lock_skip_reset_failed", path=str(self._skips_path), error=str(e))
