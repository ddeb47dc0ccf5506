"""
Valora — Data Models.

One-time and recurring transactions as stored in SQLite. Column names in
the database are camelCase because the reasoning engine writes SQL
against them; the Python side uses snake_case.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass

from valora.core.recurrence import RecurrencePattern


@dataclass
class Transaction:
    """A single income or expense entry."""

    id: int
    user_id: str
    date: str                        # ISO date YYYY-MM-DD
    amount: float
    category: str
    type: str                        # "expense" | "income"
    description: str | None = None
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("user_id")
        return data


@dataclass
class RecurringTransaction:
    """A recurring obligation (rent, salary, subscriptions...).

    `next_due` is derived from the recurrence pattern and `start_date`
    and is recomputed whenever the pattern changes.
    """

    id: int
    user_id: str
    amount: float
    category: str
    type: str
    frequency: str
    interval: int
    start_date: str                  # ISO date YYYY-MM-DD
    next_due: str                    # ISO date YYYY-MM-DD
    description: str | None = None
    day_of_week: int | None = None   # 0 = Sunday
    day_of_month: int | None = None
    month_of_year: int | None = None  # 0 = January
    is_active: bool = True
    created_at: str = ""
    updated_at: str = ""

    @property
    def pattern(self) -> RecurrencePattern:
        return RecurrencePattern.from_dict({
            "frequency": self.frequency,
            "interval": self.interval,
            "day_of_week": self.day_of_week,
            "day_of_month": self.day_of_month,
            "month_of_year": self.month_of_year,
        })

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("user_id")
        data["schedule"] = self.pattern.describe()
        return data
