"""
Injectable time source.

Services read the current instant from a Clock handed to their
constructor and never call ``datetime.now()`` themselves.  Permit numbers
take their month from it, and ``approved_at``, ``closed_at`` and history
timestamps are stamped with it, so a test or a back-dated sweep can pin
all of them to one known instant.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

DEFAULT_TEST_INSTANT = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class Clock(ABC):
    """Source of timezone-aware instants."""

    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Clock that only moves when told to.

    ``now()`` keeps returning the same instant until ``set_time``,
    ``advance`` or ``tick`` changes it.
    """

    def __init__(self, instant: datetime | None = None):
        self._instant = instant or DEFAULT_TEST_INSTANT
        if self._instant.tzinfo is None:
            raise ValueError("DeterministicClock needs a timezone-aware instant")

    def now(self) -> datetime:
        return self._instant

    def set_time(self, instant: datetime) -> None:
        if instant.tzinfo is None:
            raise ValueError("DeterministicClock needs a timezone-aware instant")
        self._instant = instant

    def advance(self, seconds: float = 1) -> datetime:
        self._instant += timedelta(seconds=seconds)
        return self._instant

    def tick(self) -> datetime:
        return self.advance(1)
