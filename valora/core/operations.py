"""
Valora — Operations exposed to the reasoning engine.

Each operation has a pydantic argument model (which doubles as the JSON
schema the engine sees) and a thin async handler that calls the ledger
services. `build_registry()` wires them into a frozen DispatchRegistry.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, field_validator

from valora.core.categories import EXPENSE_CATEGORIES, INCOME_CATEGORIES, TransactionType
from valora.core.recurrence import Frequency
from valora.core.registry import DispatchRegistry, OperationContext
from valora.core.results import OperationResult

if TYPE_CHECKING:
    from valora.core.ledger import QueryService, RecurringTransactionService, TransactionService

logger = logging.getLogger(__name__)


def normalize_date(value: str | None) -> str | None:
    """Accept YYYY-MM-DD or YYYY-MM-DDTHH:MM[:SS]; return the canonical form."""
    if value is None:
        return None
    text = value.strip()
    try:
        if "T" in text or " " in text:
            parsed = dt.datetime.fromisoformat(text.replace("Z", "+00:00"))
            return parsed.replace(tzinfo=None).isoformat(timespec="seconds")
        return dt.date.fromisoformat(text).isoformat()
    except ValueError:
        raise ValueError(
            f"'{value}' is not an ISO date (YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS)"
        ) from None


_CATEGORY_HELP = (
    f"Expense categories: {', '.join(EXPENSE_CATEGORIES)}. "
    f"Income categories: {', '.join(INCOME_CATEGORIES)}."
)
_DATE_HELP = "ISO date, optionally with time: '2025-11-10' or '2025-11-10T20:00:00'"


# ---------------------------------------------------------------------------
# Argument models
# ---------------------------------------------------------------------------


class NoArgs(BaseModel):
    pass


class AddTransactionArgs(BaseModel):
    """{"amount": 45.5, "category": "Groceries", "type": "expense", "date": "2025-11-10"}"""

    amount: float = Field(gt=0, description="Amount of the transaction, must be positive")
    category: str = Field(description=_CATEGORY_HELP)
    type: TransactionType = Field(
        description="'expense' for money spent or 'income' for money received",
    )
    description: str | None = Field(None, description="Optional free-text description")
    date: str | None = Field(None, description=f"{_DATE_HELP}. Defaults to today")

    @field_validator("date")
    @classmethod
    def parse_date(cls, v: str | None) -> str | None:
        return normalize_date(v)


class TransactionUpdates(BaseModel):
    """Only the fields the user wants to change."""

    amount: float | None = Field(None, gt=0, description="New positive amount")
    category: str | None = Field(None, description=_CATEGORY_HELP)
    type: TransactionType | None = Field(None, description="'expense' or 'income'")
    description: str | None = Field(None, description="New description")
    date: str | None = Field(None, description=_DATE_HELP)

    @field_validator("date")
    @classmethod
    def parse_date(cls, v: str | None) -> str | None:
        return normalize_date(v)


class RecurrenceFields(BaseModel):
    interval: int | None = Field(
        None, description="Repeat every N periods, e.g. 2 for 'every 2 weeks'. At least 1",
    )
    day_of_week: int | None = Field(
        None, description="Weekly only: 0=Sunday, 1=Monday ... 6=Saturday",
    )
    day_of_month: int | None = Field(None, description="Monthly only: day of the month, 1-31")
    month_of_year: int | None = Field(
        None, description="Yearly only: 0=January, 1=February ... 11=December",
    )


class CreateRecurringArgs(RecurrenceFields):
    """{"amount": 1200, "category": "Housing", "type": "expense", "frequency": "monthly", "day_of_month": 1}"""

    amount: float = Field(gt=0, description="Amount of each occurrence, must be positive")
    category: str = Field(description=_CATEGORY_HELP)
    type: TransactionType = Field(description="'expense' or 'income'")
    frequency: Frequency = Field(description="How often the transaction recurs")
    description: str | None = Field(None, description="Optional free-text description")
    start_date: str | None = Field(None, description=f"{_DATE_HELP}. Defaults to today")

    @field_validator("start_date")
    @classmethod
    def parse_start_date(cls, v: str | None) -> str | None:
        return normalize_date(v)


class RecurringUpdates(RecurrenceFields):
    """Only the fields the user wants to change."""

    amount: float | None = Field(None, gt=0, description="New positive amount")
    category: str | None = Field(None, description=_CATEGORY_HELP)
    type: TransactionType | None = Field(None, description="'expense' or 'income'")
    description: str | None = Field(None, description="New description")
    frequency: Frequency | None = Field(None, description="New frequency")
    start_date: str | None = Field(None, description=_DATE_HELP)

    @field_validator("start_date")
    @classmethod
    def parse_start_date(cls, v: str | None) -> str | None:
        return normalize_date(v)


class EditLastTransactionArgs(BaseModel):
    updates: TransactionUpdates
    transaction_type: TransactionType | None = Field(
        None, description="Only when the user says 'last expense' or 'last income'",
    )


class EditLastRecurringArgs(BaseModel):
    updates: RecurringUpdates
    transaction_type: TransactionType | None = Field(
        None, description="Only when the user says 'last recurring expense' or 'income'",
    )


class EditTransactionArgs(BaseModel):
    id: int = Field(description="Transaction id, taken from query_transactions results")
    updates: TransactionUpdates


class EditRecurringArgs(BaseModel):
    id: int = Field(description="RecurringTransaction id, taken from query_transactions results")
    updates: RecurringUpdates


class QueryArgs(BaseModel):
    sql_query: str = Field(
        description=(
            "SQLite SELECT against \"Transaction\" or \"RecurringTransaction\". MUST include "
            "WHERE userId = '{USER_ID_PLACEHOLDER}'. Select the id column when the rows "
            "will be edited or deleted"
        ),
    )
    query_description: str = Field(description="Short human-readable purpose of the query")


class IdsArgs(BaseModel):
    ids: list[int] = Field(min_length=1, description="One or more ids, e.g. [123] or [123, 456]")


class GetByIdsArgs(BaseModel):
    ids: list[int] = Field(default_factory=list, description="One-time transaction ids")
    recurring_ids: list[int] = Field(
        default_factory=list, description="Recurring transaction ids",
    )


class SearchArgs(BaseModel):
    query: str = Field(min_length=1, description="Natural-language description to look for")


def _updates(model: BaseModel) -> dict:
    return model.model_dump(mode="json", exclude_none=True)


# ---------------------------------------------------------------------------
# Registry wiring
# ---------------------------------------------------------------------------


def build_registry(
    transactions: TransactionService,
    recurring: RecurringTransactionService,
    queries: QueryService,
    search_enabled: bool = False,
) -> DispatchRegistry:
    """Register every operation and freeze the registry."""

    async def get_current_date(_: NoArgs, ctx: OperationContext) -> OperationResult:
        now = ctx.now
        return OperationResult.ok(
            "get_current_date",
            f"Today is {now:%A, %B %d, %Y}",
            payload={
                "date": now.date().isoformat(),
                "weekday": now.strftime("%A"),
                "iso": now.isoformat(timespec="seconds"),
            },
        )

    async def add_transaction(args: AddTransactionArgs, ctx: OperationContext) -> OperationResult:
        return await transactions.add(
            ctx.tenant_id,
            args.amount,
            args.category,
            args.type,
            args.date or ctx.now.date().isoformat(),
            args.description,
        )

    async def create_recurring_transaction(
        args: CreateRecurringArgs, ctx: OperationContext,
    ) -> OperationResult:
        start = dt.date.fromisoformat(args.start_date[:10]) if args.start_date else ctx.now.date()
        return await recurring.create(
            ctx.tenant_id,
            args.amount,
            args.category,
            args.type,
            start,
            args.frequency.value,
            interval=args.interval,
            day_of_week=args.day_of_week,
            day_of_month=args.day_of_month,
            month_of_year=args.month_of_year,
            description=args.description,
        )

    async def edit_last_transaction(
        args: EditLastTransactionArgs, ctx: OperationContext,
    ) -> OperationResult:
        return await transactions.edit(
            ctx.tenant_id, _updates(args.updates), transaction_type=args.transaction_type,
        )

    async def edit_last_recurring_transaction(
        args: EditLastRecurringArgs, ctx: OperationContext,
    ) -> OperationResult:
        return await recurring.edit(
            ctx.tenant_id, _updates(args.updates), ctx.now.date(),
            transaction_type=args.transaction_type,
        )

    async def edit_transaction(args: EditTransactionArgs, ctx: OperationContext) -> OperationResult:
        return await transactions.edit(ctx.tenant_id, _updates(args.updates), transaction_id=args.id)

    async def edit_recurring_transaction(
        args: EditRecurringArgs, ctx: OperationContext,
    ) -> OperationResult:
        return await recurring.edit(
            ctx.tenant_id, _updates(args.updates), ctx.now.date(), recurring_id=args.id,
        )

    async def query_transactions(args: QueryArgs, ctx: OperationContext) -> OperationResult:
        return await queries.query(ctx.tenant_id, args.sql_query, args.query_description)

    async def delete_transactions(args: IdsArgs, ctx: OperationContext) -> OperationResult:
        return await transactions.delete(ctx.tenant_id, args.ids)

    async def delete_recurring_transactions(args: IdsArgs, ctx: OperationContext) -> OperationResult:
        return await recurring.delete(ctx.tenant_id, args.ids)

    async def get_transactions_by_ids(args: GetByIdsArgs, ctx: OperationContext) -> OperationResult:
        return await transactions.get_by_ids(ctx.tenant_id, args.ids, args.recurring_ids)

    async def search_transactions(args: SearchArgs, ctx: OperationContext) -> OperationResult:
        return await queries.search(ctx.tenant_id, args.query)

    registry = DispatchRegistry()
    registry.register(
        "get_current_date", get_current_date, NoArgs,
        "Get today's date and weekday. Use it to resolve relative dates such as "
        "'yesterday' or 'last week'.",
    )
    registry.register(
        "add_transaction", add_transaction, AddTransactionArgs,
        "Add a one-time expense or income. Check 'success' in the result; on failure "
        "explain the validation errors and ask for the missing information.",
    )
    registry.register(
        "create_recurring_transaction", create_recurring_transaction, CreateRecurringArgs,
        "Create an expense or income that repeats daily, weekly, monthly or yearly. "
        "The result includes when the next occurrence is due.",
    )
    registry.register(
        "edit_last_transaction", edit_last_transaction, EditLastTransactionArgs,
        "Edit the most recently added one-time transaction. Include only the fields "
        "that change.",
    )
    registry.register(
        "edit_last_recurring_transaction", edit_last_recurring_transaction,
        EditLastRecurringArgs,
        "Edit the most recently added active recurring transaction. Include only the "
        "fields that change.",
    )
    registry.register(
        "edit_transaction", edit_transaction, EditTransactionArgs,
        "Edit a one-time transaction by id. Find the id with query_transactions first.",
    )
    registry.register(
        "edit_recurring_transaction", edit_recurring_transaction, EditRecurringArgs,
        "Edit a recurring transaction by id. Schedule changes recalculate the next "
        "due date.",
    )
    registry.register(
        "query_transactions", query_transactions, QueryArgs,
        "Run a read-only SQL SELECT for reports, or to find ids to edit or delete. "
        "Returns rows, row_count and the SQL that was executed.",
    )
    registry.register(
        "delete_transactions", delete_transactions, IdsArgs,
        "Permanently delete one-time transactions by id. All-or-nothing: if any id is "
        "missing nothing is deleted.",
    )
    registry.register(
        "delete_recurring_transactions", delete_recurring_transactions, IdsArgs,
        "Stop recurring transactions by id. History is kept. All-or-nothing.",
    )
    registry.register(
        "get_transactions_by_ids", get_transactions_by_ids, GetByIdsArgs,
        "Fetch full details of transactions by id, e.g. after a semantic search.",
    )
    if search_enabled:
        registry.register(
            "search_transactions", search_transactions, SearchArgs,
            "Find transactions whose description means something similar to the query. "
            "Results are ranked by relevance score.",
        )
    registry.freeze()
    return registry
