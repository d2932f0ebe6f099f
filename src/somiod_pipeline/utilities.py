"""Utility functions used by somiod-pipeline."""

from __future__ import annotations
from datetime import datetime
from threading import Lock
import time


class UniqueStamp:
    """Generate strictly increasing nanosecond timestamps.

    Wall-clock time may stand still between two calls (or even go backwards),
    so the clock is only used as a starting point: each stamp is at least one
    greater than the last one returned by the same instance. This makes
    stamps usable in names that must not collide, however rapidly they are
    requested.
    """

    def __init__(self) -> None:
        """Create a generator, starting from the current time."""
        self._lock = Lock()
        self._last = 0

    def next(self) -> int:
        """Return a stamp greater than any previously returned.

        :return: an integer number of nanoseconds since the epoch, bumped
            forward if necessary.
        """
        with self._lock:
            stamp = max(time.time_ns(), self._last + 1)
            self._last = stamp
            return stamp

    def label(self) -> str:
        """Return a human-readable, unique suffix for a name.

        The suffix has a readable date and time (to the microsecond) followed
        by the full nanosecond stamp, which guarantees uniqueness, e.g.
        ``2024-01-01_00-00-00-000000_1704067200000000123``.

        :return: the suffix.
        """
        stamp = self.next()
        readable = datetime.fromtimestamp(stamp / 1e9).strftime("%Y-%m-%d_%H-%M-%S-%f")
        return f"{readable}_{stamp}"


def is_single_segment(name: str) -> bool:
    """Check a name can be used safely as one component of a path.

    :param name: the name to check.

    :return: ``True`` if the name is non-empty and contains no path
        separators, and is not ``.`` or ``..``.
    """
    return (
        bool(name)
        and "/" not in name
        and "\\" not in name
        and name not in (".", "..")
    )
