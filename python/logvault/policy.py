"""Threshold decision for archiving a channel."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from logvault.models import LogChannel

MARGIN_FRACTION = 0.25


class ThresholdPolicy:
    """
    Archive a channel once it reaches ``max_size * (1 - margin)``.

    The threshold is closed: a channel exactly at the alarm size qualifies.
    Channels without a capacity (``max_size_bytes <= 0``) never qualify.
    """

    def __init__(self, margin_fraction: float = MARGIN_FRACTION) -> None:
        if not 0.0 <= margin_fraction < 1.0:
            raise ValueError("margin_fraction must be in [0, 1)")
        self._margin = margin_fraction

    @property
    def margin_fraction(self) -> float:
        return self._margin

    def alarm_size(self, channel: LogChannel) -> float | None:
        """Size at which the channel qualifies, or None if it never does."""
        if channel.max_size_bytes <= 0:
            return None
        return channel.max_size_bytes * (1.0 - self._margin)

    def should_archive(self, channel: LogChannel) -> bool:
        alarm = self.alarm_size(channel)
        if alarm is None:
            return False
        return channel.current_size_bytes >= alarm
