"""Microsecond-resolution timestamps used for pacing, timeouts and jitter."""

from __future__ import annotations

import time
from dataclasses import dataclass

_USECS_PER_SEC = 1_000_000
_U32 = 0xFFFFFFFF


@dataclass(frozen=True, order=True)
class IperfTime:
    """A timestamp split into whole seconds and microseconds (32-bit fields)."""

    secs: int = 0
    usecs: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "secs", self.secs & _U32)
        object.__setattr__(self, "usecs", self.usecs & _U32)

    @classmethod
    def _from_ns(cls, ns: int) -> IperfTime:
        secs, rem = divmod(ns, 1_000_000_000)
        return cls(secs, rem // 1000)

    def add_usecs(self, usecs: int) -> IperfTime:
        """Return a new timestamp ``usecs`` microseconds later."""
        total = self.usecs + usecs
        return IperfTime(self.secs + total // _USECS_PER_SEC, total % _USECS_PER_SEC)

    def in_usecs(self) -> int:
        """Total microseconds represented by this timestamp."""
        return self.secs * _USECS_PER_SEC + self.usecs

    def in_secs(self) -> float:
        """Seconds as a float with microsecond granularity."""
        return self.secs + self.usecs / 1_000_000.0

    def compare(self, other: IperfTime) -> int:
        """Return -1 if self is earlier, 1 if later, 0 if equal."""
        mine = (self.secs, self.usecs)
        theirs = (other.secs, other.usecs)
        if mine < theirs:
            return -1
        if mine > theirs:
            return 1
        return 0

    def diff(self, other: IperfTime) -> tuple[IperfTime, bool]:
        """Return the absolute distance to ``other`` and whether self <= other.

        The distance is always non-negative; the flag tells whether self was
        not later than ``other``.
        """
        cmp = self.compare(other)
        if cmp == 0:
            return IperfTime(0, 0), True
        later, earlier = (self, other) if cmp == 1 else (other, self)
        secs = later.secs - earlier.secs
        usecs = later.usecs
        if usecs < earlier.usecs:
            secs -= 1
            usecs += _USECS_PER_SEC
        return IperfTime(secs, usecs - earlier.usecs), cmp != 1


def now() -> IperfTime:
    """Current time from a monotonic clock."""
    return IperfTime._from_ns(time.monotonic_ns())


def now_wallclock() -> IperfTime:
    """Current wall-clock time; may jump if the system clock changes."""
    return IperfTime._from_ns(time.time_ns())