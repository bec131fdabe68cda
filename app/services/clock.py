"""
Trusted Clock
=============

Entitlement decisions compare ``expires_at`` against "now". Device clocks
drift (or are changed on purpose), so the clock prefers server-reported
time: every verification response carries ``serverTime`` and the offset
between it and the local clock is applied to subsequent readings.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

logger = logging.getLogger(__name__)

# Offsets smaller than this are treated as network jitter
_MIN_OFFSET = timedelta(seconds=2)


def _system_now() -> datetime:
    return datetime.now(timezone.utc)


class TrustedClock:
    """UTC clock corrected by the last observed server time."""

    def __init__(self, source: Callable[[], datetime] = _system_now):
        self._source = source
        self._offset = timedelta(0)

    @property
    def offset(self) -> timedelta:
        return self._offset

    def now(self) -> datetime:
        return self._source() + self._offset

    def observe_server_time(self, server_time: Optional[datetime]) -> None:
        """Record the skew between the server's time and the local clock."""
        if server_time is None:
            return
        if server_time.tzinfo is None:
            server_time = server_time.replace(tzinfo=timezone.utc)
        offset = server_time - self._source()
        if abs(offset) < _MIN_OFFSET:
            offset = timedelta(0)
        if offset != self._offset:
            logger.info("Clock offset updated: %.1fs", offset.total_seconds())
        self._offset = offset
