"""
Clock -- Injectable time source.

Responsibility:
    Gives instances and services a single place to read the current time so
    history timestamps, revert stamps and ``updated_at`` values are
    reproducible in tests.

Architecture position:
    Kernel > Domain -- pure, zero I/O except SystemClock.

Failure modes:
    - None.  ``now()`` never raises.
"""

from abc import ABC, abstractmethod
from datetime import UTC, datetime, timedelta


class Clock(ABC):
    """
    Abstract clock interface.

    Contract:
        ``now()`` returns a timezone-aware UTC ``datetime``.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get the current UTC time."""
        ...


class SystemClock(Clock):
    """Production clock backed by the system time."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    ``now()`` returns the same value until ``advance()``, ``tick()`` or
    ``set_time()`` is called.  Pass ``auto_advance_seconds`` to move the
    clock forward after every read, which keeps history timestamps strictly
    increasing without manual ticking.
    """

    def __init__(
        self,
        fixed_time: datetime | None = None,
        *,
        auto_advance_seconds: float = 0,
    ):
        self._fixed_time = fixed_time or datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)
        self._advance_seconds: float = 0
        self._auto_advance_seconds = auto_advance_seconds

    def now(self) -> datetime:
        current = self._fixed_time + timedelta(seconds=self._advance_seconds)
        self._advance_seconds += self._auto_advance_seconds
        return current

    def set_time(self, time: datetime) -> None:
        """Set the clock to a specific time."""
        self._fixed_time = time
        self._advance_seconds = 0

    def advance(self, seconds: float = 1) -> None:
        """Advance the clock by the specified seconds."""
        self._advance_seconds += seconds

    def tick(self) -> datetime:
        """Advance by 1 second and return new time."""
        self.advance(1)
        return self._fixed_time + timedelta(seconds=self._advance_seconds)
