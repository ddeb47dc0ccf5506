"""Recurrence calculator — pure scheduling logic for recurring transactions.

A RecurrencePattern pins a recurring obligation to a concrete schedule:
a frequency, an interval and the single anchor field relevant to that
frequency (weekday, day of month or month).

Anchor conventions match what the reasoning engine is told:
    day_of_week   0 = Sunday ... 6 = Saturday
    day_of_month  1 ... 31
    month_of_year 0 = January ... 11 = December

Short months clamp instead of rolling over: a monthly pattern anchored on
the 31st falls on Feb 28 (or 29), then back on Mar 31.

No I/O: this module only transforms data.
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum

from valora.errors import RecurrenceError

logger = logging.getLogger(__name__)

_DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
_MONTH_NAMES = [
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
]


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


# ---------------------------------------------------------------------------
# Date helpers
# ---------------------------------------------------------------------------


def weekday_index(day: date) -> int:
    """Return the weekday of *day* with 0 = Sunday."""
    return (day.weekday() + 1) % 7


def days_in_month(year: int, month: int) -> int:
    """Number of days in *month* (1-12) of *year*."""
    return calendar.monthrange(year, month)[1]


def _add_months(day: date, months: int, anchor_day: int) -> date:
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    return date(year, month, min(anchor_day, days_in_month(year, month)))


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _ordinal(n: int) -> str:
    if 10 <= n % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


# ---------------------------------------------------------------------------
# Value object
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RecurrencePattern:
    """Immutable recurrence pattern. Build it with `create()`."""

    frequency: Frequency
    interval: int = 1
    day_of_week: int | None = None
    day_of_month: int | None = None
    month_of_year: int | None = None

    @classmethod
    def create(
        cls,
        frequency: str | Frequency,
        reference: date,
        interval: int | None = None,
        day_of_week: int | None = None,
        day_of_month: int | None = None,
        month_of_year: int | None = None,
    ) -> RecurrencePattern:
        """Validate the fields and default the relevant anchor from *reference*.

        Anchors that do not belong to the frequency are discarded.

        Raises:
            RecurrenceError: invalid frequency, interval or anchor.
        """
        try:
            freq = Frequency(frequency)
        except ValueError:
            raise RecurrenceError(
                "Invalid frequency. Must be one of: daily, weekly, monthly, yearly"
            ) from None

        if interval is None:
            interval = 1
        if not _is_int(interval) or interval < 1:
            raise RecurrenceError("Interval must be a whole number of at least 1")

        if freq is Frequency.WEEKLY:
            if day_of_week is None:
                day_of_week = weekday_index(reference)
                logger.info(
                    "day_of_week not provided for weekly frequency, defaulting to %d (%s)",
                    day_of_week, _DAY_NAMES[day_of_week],
                )
            if not _is_int(day_of_week) or not 0 <= day_of_week <= 6:
                raise RecurrenceError("day_of_week must be between 0 (Sunday) and 6 (Saturday)")
            return cls(freq, interval, day_of_week=day_of_week)

        if freq is Frequency.MONTHLY:
            if day_of_month is None:
                day_of_month = reference.day
                logger.info(
                    "day_of_month not provided for monthly frequency, defaulting to %d",
                    day_of_month,
                )
            if not _is_int(day_of_month) or not 1 <= day_of_month <= 31:
                raise RecurrenceError("day_of_month must be between 1 and 31")
            return cls(freq, interval, day_of_month=day_of_month)

        if freq is Frequency.YEARLY:
            if month_of_year is None:
                month_of_year = reference.month - 1
                logger.info(
                    "month_of_year not provided for yearly frequency, defaulting to %d (%s)",
                    month_of_year, _MONTH_NAMES[month_of_year],
                )
            if not _is_int(month_of_year) or not 0 <= month_of_year <= 11:
                raise RecurrenceError("month_of_year must be between 0 (January) and 11 (December)")
            return cls(freq, interval, month_of_year=month_of_year)

        return cls(freq, interval)

    def revise(self, reference: date, **changes: object) -> RecurrencePattern:
        """Return a new validated pattern with *changes* applied.

        Accepts frequency, interval, day_of_week, day_of_month, month_of_year.
        Anchors missing after the change default from *reference*.
        """
        unknown = set(changes) - {"frequency", "interval", "day_of_week", "day_of_month", "month_of_year"}
        if unknown:
            raise RecurrenceError(f"Unknown recurrence fields: {', '.join(sorted(unknown))}")

        fields = self.to_dict()
        fields.update({k: v for k, v in changes.items() if v is not None})
        return RecurrencePattern.create(
            fields["frequency"],
            reference,
            interval=fields["interval"],
            day_of_week=fields["day_of_week"],
            day_of_month=fields["day_of_month"],
            month_of_year=fields["month_of_year"],
        )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def next_occurrence(self, reference: date) -> date:
        """Return the first occurrence strictly after *reference*."""
        if self.frequency is Frequency.DAILY:
            return reference + timedelta(days=self.interval)

        if self.frequency is Frequency.WEEKLY:
            if self.day_of_week is None:
                raise RecurrenceError("day_of_week is required for weekly frequency")
            days_ahead = (self.day_of_week - weekday_index(reference)) % 7 or 7
            return reference + timedelta(days=days_ahead, weeks=self.interval - 1)

        if self.frequency is Frequency.MONTHLY:
            if self.day_of_month is None:
                raise RecurrenceError("day_of_month is required for monthly frequency")
            return _add_months(reference, self.interval, self.day_of_month)

        year = reference.year + self.interval
        if self.month_of_year is None:
            month = reference.month
        else:
            month = self.month_of_year + 1
        return date(year, month, min(reference.day, days_in_month(year, month)))

    def occurrences(self, reference: date, count: int) -> list[date]:
        """Return the next *count* occurrences after *reference*, in order."""
        result: list[date] = []
        current = reference
        for _ in range(count):
            current = self.next_occurrence(current)
            result.append(current)
        return result

    # ------------------------------------------------------------------
    # Presentation & storage
    # ------------------------------------------------------------------

    def describe(self) -> str:
        """Human-readable description, e.g. "every 2 weeks on Monday"."""
        n = self.interval
        if self.frequency is Frequency.DAILY:
            return "every day" if n == 1 else f"every {n} days"
        if self.frequency is Frequency.WEEKLY:
            day = _DAY_NAMES[self.day_of_week] if self.day_of_week is not None else "?"
            return f"every {day}" if n == 1 else f"every {n} weeks on {day}"
        if self.frequency is Frequency.MONTHLY:
            nth = _ordinal(self.day_of_month or 1)
            return f"monthly on the {nth}" if n == 1 else f"every {n} months on the {nth}"
        if self.month_of_year is not None:
            month = _MONTH_NAMES[self.month_of_year]
            return f"yearly in {month}" if n == 1 else f"every {n} years in {month}"
        return "yearly" if n == 1 else f"every {n} years"

    def to_dict(self) -> dict:
        return {
            "frequency": self.frequency.value,
            "interval": self.interval,
            "day_of_week": self.day_of_week,
            "day_of_month": self.day_of_month,
            "month_of_year": self.month_of_year,
        }

    @classmethod
    def from_dict(cls, data: dict) -> RecurrencePattern:
        """Rebuild a stored pattern without re-defaulting anchors."""
        try:
            freq = Frequency(data["frequency"])
        except (KeyError, ValueError):
            raise RecurrenceError(f"Invalid frequency in data: {data.get('frequency')!r}") from None
        return cls(
            freq,
            data.get("interval") or 1,
            day_of_week=data.get("day_of_week"),
            day_of_month=data.get("day_of_month"),
            month_of_year=data.get("month_of_year"),
        )
