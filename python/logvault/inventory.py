"""Enumeration of the host's log channels."""

from __future__ import annotations

from typing import TYPE_CHECKING

from logvault.exceptions import EnumerationError
from logvault.logging import get_logger

if TYPE_CHECKING:
    from logvault.backends import LogBackend
    from logvault.models import LogChannel

logger = get_logger(__name__)


class LogInventory:
    """Read-only view of the channels a backend exposes."""

    def __init__(self, backend: LogBackend) -> None:
        self._backend = backend

    def list(self) -> list[LogChannel]:
        """
        List every channel with its current and maximum size.

        Returns:
            Channels sorted by name; empty when the host has none.

        Raises:
            EnumerationError: If the log subsystem cannot be queried.
        """
        try:
            channels = self._backend.list_channels()
        except EnumerationError:
            raise
        except Exception as e:
            raise EnumerationError.backend_unavailable(self._backend.name, str(e)) from e

        channels = sorted(channels, key=lambda c: c.name)
        logger.debug(
            "inventory_listed",
            backend=self._backend.name,
            channel_count=len(channels),
            total_bytes=sum(c.current_size_bytes for c in channels),
        )
        return channels
