"""Transaction types and the fixed category lists."""

from __future__ import annotations

import logging
from enum import Enum

logger = logging.getLogger(__name__)

FALLBACK_CATEGORY = "Other"

EXPENSE_CATEGORIES = (
    "Food & Dining",
    "Transportation",
    "Shopping",
    "Entertainment",
    "Bills & Utilities",
    "Healthcare",
    "Personal Care",
    "Travel",
    "Education",
    "Groceries",
    "Housing",
    "Insurance",
    "Savings & Investments",
    "Gifts & Donations",
    "Fitness & Sports",
    "Pet Care",
    "Childcare",
    "Home Maintenance",
    "Car Maintenance",
    "Subscriptions",
    "Taxes",
    "Legal & Professional",
    "Charity",
    FALLBACK_CATEGORY,
)

INCOME_CATEGORIES = (
    "Salary",
    "Freelance",
    "Investment Returns",
    "Business Income",
    "Rental Income",
    "Gifts Received",
    "Refunds",
    "Bonuses",
    "Side Hustle",
    "Dividends",
    "Interest",
    "Pension",
    "Government Benefits",
    "Commission",
    "Royalties",
    FALLBACK_CATEGORY,
)


class TransactionType(str, Enum):
    EXPENSE = "expense"
    INCOME = "income"


def categories_for(transaction_type: TransactionType | str) -> tuple[str, ...]:
    if TransactionType(transaction_type) is TransactionType.INCOME:
        return INCOME_CATEGORIES
    return EXPENSE_CATEGORIES


def normalize_category(
    category: str | None, transaction_type: TransactionType | str,
) -> tuple[str, str | None]:
    """Return (category, warning). Unknown categories become "Other".

    No fuzzy matching: the category must be spelled exactly as listed.
    """
    allowed = categories_for(transaction_type)
    cleaned = (category or "").strip()
    if cleaned in allowed:
        return cleaned, None

    logger.warning(
        "Category %r is not a valid %s category, using %r",
        category, TransactionType(transaction_type).value, FALLBACK_CATEGORY,
    )
    return FALLBACK_CATEGORY, (
        f"Category '{category}' is not recognised, so '{FALLBACK_CATEGORY}' was used instead"
    )
