"""
Valora — Ledger services.

Business logic behind the transaction operations. Every public method
takes already-validated arguments and returns an OperationResult; errors
the engine should see (bad input, missing records) are raised as
ValidationError / NotFoundError and turned into results by the registry.

Blocking sqlite calls run in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import date
from typing import TYPE_CHECKING, Sequence

from valora.core.categories import TransactionType, normalize_category
from valora.core.recurrence import RecurrencePattern
from valora.core.results import OperationResult
from valora.core.sandbox import QuerySandbox, ValidationFailure
from valora.errors import DATABASE_ERROR, NotFoundError, ValidationError
from valora.ports.search_port import RECURRING, TRANSACTION

if TYPE_CHECKING:
    from valora.data.db import LedgerDB
    from valora.data.models import RecurringTransaction, Transaction
    from valora.ports.search_port import SearchPort

logger = logging.getLogger(__name__)

RECURRENCE_FIELDS = ("frequency", "interval", "day_of_week", "day_of_month", "month_of_year")


def _money(amount: float) -> str:
    return f"{amount:,.2f}"


def search_text(
    amount: float, transaction_type: str, category: str, on: str, description: str | None,
) -> str:
    """Text indexed for semantic search: the description, or a synthetic one."""
    if description:
        return description
    day = date.fromisoformat(on[:10])
    return f"${amount:.2f} {transaction_type} in {category} on {day.strftime('%b %d, %Y')}"


class _IndexingMixin:
    _search: SearchPort | None

    async def _index(
        self, tenant_id: str, kind: str, record_id: int, text: str,
    ) -> None:
        """Best effort: search indexing never fails the operation."""
        if self._search is None:
            return
        try:
            await self._search.index(tenant_id, kind, record_id, text)
        except Exception:
            logger.exception("Failed to index %s #%d for search", kind, record_id)


# ---------------------------------------------------------------------------
# One-time transactions
# ---------------------------------------------------------------------------


class TransactionService(_IndexingMixin):
    def __init__(self, db: LedgerDB, search: SearchPort | None = None) -> None:
        self._db = db
        self._search = search

    async def add(
        self,
        tenant_id: str,
        amount: float,
        category: str,
        transaction_type: TransactionType,
        on: str,
        description: str | None = None,
    ) -> OperationResult:
        category, warning = normalize_category(category, transaction_type)
        transaction = await asyncio.to_thread(
            self._db.add_transaction,
            tenant_id, amount, category, transaction_type.value, on, description,
        )
        await self._index(
            tenant_id, TRANSACTION, transaction.id,
            search_text(amount, transaction_type.value, category, on, description),
        )
        return OperationResult.ok(
            "add_transaction",
            f"Added {transaction_type.value} of {_money(amount)} in {category} on {on}",
            payload=transaction.to_dict(),
            warnings=[warning] if warning else [],
        )

    async def edit(
        self,
        tenant_id: str,
        updates: dict,
        transaction_id: int | None = None,
        transaction_type: TransactionType | None = None,
    ) -> OperationResult:
        """Edit one transaction, or the most recent one when no id is given."""
        if not updates:
            raise ValidationError("No fields to update were provided")

        if transaction_id is None:
            existing = await asyncio.to_thread(
                self._db.get_last_transaction,
                tenant_id, transaction_type.value if transaction_type else None,
            )
            if existing is None:
                kind = transaction_type.value if transaction_type else "transaction"
                raise NotFoundError(f"No {kind} found to edit. Add one first.")
        else:
            existing = await asyncio.to_thread(self._db.get_transaction, tenant_id, transaction_id)
            if existing is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")

        fields = dict(updates)
        warnings = []
        if "type" in fields or "category" in fields:
            fields["category"], warning = normalize_category(
                fields.get("category", existing.category), fields.get("type", existing.type),
            )
            if warning:
                warnings.append(warning)

        updated = await asyncio.to_thread(
            self._db.update_transaction, tenant_id, existing.id, fields,
        )
        if {"description", "amount", "category", "type", "date"} & set(fields):
            await self._index(
                tenant_id, TRANSACTION, updated.id,
                search_text(updated.amount, updated.type, updated.category, updated.date,
                            updated.description),
            )
        return OperationResult.ok(
            "edit_transaction",
            f"Updated transaction {updated.id}: {', '.join(sorted(updates))}",
            payload={"before": existing.to_dict(), "after": updated.to_dict()},
            warnings=warnings,
        )

    async def delete(self, tenant_id: str, ids: Sequence[int]) -> OperationResult:
        deleted = await asyncio.to_thread(self._db.delete_transactions, tenant_id, ids)
        return OperationResult.ok(
            "delete_transactions",
            f"Deleted {deleted} transaction(s)",
            payload={"deleted_count": deleted, "ids": list(dict.fromkeys(ids))},
        )

    async def get_by_ids(
        self, tenant_id: str, ids: Sequence[int], recurring_ids: Sequence[int] = (),
    ) -> OperationResult:
        transactions = await asyncio.to_thread(self._db.get_transactions, tenant_id, ids)
        recurring = await asyncio.to_thread(self._db.get_recurring_many, tenant_id, recurring_ids)

        warnings = []
        missing = sorted(set(ids) - {t.id for t in transactions})
        if missing:
            warnings.append(f"Transactions not found: {', '.join(map(str, missing))}")
        missing_recurring = sorted(set(recurring_ids) - {r.id for r in recurring})
        if missing_recurring:
            warnings.append(
                f"Recurring transactions not found: {', '.join(map(str, missing_recurring))}"
            )

        return OperationResult.ok(
            "get_transactions_by_ids",
            f"Found {len(transactions) + len(recurring)} transaction(s)",
            payload={
                "transactions": [t.to_dict() for t in transactions],
                "recurring_transactions": [r.to_dict() for r in recurring],
            },
            warnings=warnings,
        )


# ---------------------------------------------------------------------------
# Recurring transactions
# ---------------------------------------------------------------------------


class RecurringTransactionService(_IndexingMixin):
    def __init__(self, db: LedgerDB, search: SearchPort | None = None) -> None:
        self._db = db
        self._search = search

    async def create(
        self,
        tenant_id: str,
        amount: float,
        category: str,
        transaction_type: TransactionType,
        start_date: date,
        frequency: str,
        interval: int | None = None,
        day_of_week: int | None = None,
        day_of_month: int | None = None,
        month_of_year: int | None = None,
        description: str | None = None,
    ) -> OperationResult:
        pattern = RecurrencePattern.create(
            frequency,
            start_date,
            interval=interval,
            day_of_week=day_of_week,
            day_of_month=day_of_month,
            month_of_year=month_of_year,
        )
        category, warning = normalize_category(category, transaction_type)
        next_due = pattern.next_occurrence(start_date)

        recurring = await asyncio.to_thread(
            self._db.add_recurring,
            tenant_id, amount, category, transaction_type.value, pattern,
            start_date.isoformat(), next_due.isoformat(), description,
        )
        await self._index(
            tenant_id, RECURRING, recurring.id,
            search_text(amount, transaction_type.value, category, recurring.start_date, description),
        )
        return OperationResult.ok(
            "create_recurring_transaction",
            f"Created recurring {transaction_type.value} of {_money(amount)} in {category}, "
            f"{pattern.describe()}. Next due {next_due.isoformat()}",
            payload=recurring.to_dict(),
            warnings=[warning] if warning else [],
        )

    async def edit(
        self,
        tenant_id: str,
        updates: dict,
        today: date,
        recurring_id: int | None = None,
        transaction_type: TransactionType | None = None,
    ) -> OperationResult:
        """Edit one recurring transaction, or the most recent active one.

        Recurrence changes build a new pattern (anchors default from the
        start date) and recompute the next due date from *today*.
        """
        if not updates:
            raise ValidationError("No fields to update were provided")

        if recurring_id is None:
            existing = await asyncio.to_thread(
                self._db.get_last_recurring,
                tenant_id, transaction_type.value if transaction_type else None,
            )
            if existing is None:
                raise NotFoundError("No recurring transaction found to edit. Create one first.")
        else:
            existing = await asyncio.to_thread(self._db.get_recurring, tenant_id, recurring_id)
            if existing is None:
                raise NotFoundError(f"Recurring transaction {recurring_id} not found")

        fields = dict(updates)
        warnings = []
        if "type" in fields or "category" in fields:
            fields["category"], warning = normalize_category(
                fields.get("category", existing.category), fields.get("type", existing.type),
            )
            if warning:
                warnings.append(warning)

        changes = {k: fields.pop(k) for k in RECURRENCE_FIELDS if k in fields}
        if changes or "start_date" in fields:
            start = date.fromisoformat(fields.get("start_date", existing.start_date)[:10])
            pattern = existing.pattern.revise(start, **changes)
            fields.update(pattern.to_dict())
            fields["next_due"] = pattern.next_occurrence(max(start, today)).isoformat()
            logger.info(
                "Recurring #%d rescheduled: %s, next due %s",
                existing.id, pattern.describe(), fields["next_due"],
            )

        updated = await asyncio.to_thread(
            self._db.update_recurring, tenant_id, existing.id, fields,
        )
        if {"description", "amount", "category", "type"} & set(fields):
            await self._index(
                tenant_id, RECURRING, updated.id,
                search_text(updated.amount, updated.type, updated.category, updated.start_date,
                            updated.description),
            )
        return OperationResult.ok(
            "edit_recurring_transaction",
            f"Updated recurring transaction {updated.id}: {', '.join(sorted(updates))}",
            payload={"before": existing.to_dict(), "after": updated.to_dict()},
            warnings=warnings,
        )

    async def delete(self, tenant_id: str, ids: Sequence[int]) -> OperationResult:
        deactivated = await asyncio.to_thread(self._db.deactivate_recurring, tenant_id, ids)
        return OperationResult.ok(
            "delete_recurring_transactions",
            f"Stopped {deactivated} recurring transaction(s)",
            payload={"deactivated_count": deactivated, "ids": list(dict.fromkeys(ids))},
        )


# ---------------------------------------------------------------------------
# Reports & search
# ---------------------------------------------------------------------------


class QueryService:
    """Runs engine-authored SELECTs through the sandbox, and semantic search."""

    def __init__(
        self,
        db: LedgerDB,
        sandbox: QuerySandbox,
        search: SearchPort | None = None,
        score_threshold: float = 0.5,
    ) -> None:
        self._db = db
        self._sandbox = sandbox
        self._search = search
        self._threshold = score_threshold

    async def query(self, tenant_id: str, sql: str, description: str) -> OperationResult:
        name = "query_transactions"
        logger.info("Query for %s: %s", tenant_id, description)

        checked = self._sandbox.validate_and_rewrite(sql, tenant_id)
        if isinstance(checked, ValidationFailure):
            logger.warning("Rejected query for %s: %s", tenant_id, checked.reason)
            return OperationResult.failure(
                name, checked.reason, checked.code, validation_errors=[checked.reason],
            )

        try:
            rows = await asyncio.to_thread(self._db.run_readonly_query, checked.rewritten)
        except sqlite3.Error as exc:
            logger.warning("Query failed for %s: %s | %s", tenant_id, exc, checked.rewritten)
            return OperationResult.failure(
                name, f"The query could not be executed: {exc}", DATABASE_ERROR,
                details=checked.rewritten,
            )

        return OperationResult.ok(
            name,
            f"Query returned {len(rows)} row(s)",
            payload={
                "rows": rows,
                "row_count": len(rows),
                "sql_executed": checked.rewritten,
                "table": checked.target_entity,
            },
        )

    async def search(self, tenant_id: str, query: str) -> OperationResult:
        if self._search is None:
            raise ValidationError("Semantic search is not configured")

        hits = await self._search.search(tenant_id, query, limit=20)
        relevant = [h for h in hits if h.score >= self._threshold]
        logger.info(
            "Search for %s returned %d hit(s), %d above threshold %.2f",
            tenant_id, len(hits), len(relevant), self._threshold,
        )

        scores = {(h.kind, h.record_id): h.score for h in relevant}
        transactions: list[Transaction] = await asyncio.to_thread(
            self._db.get_transactions, tenant_id,
            [h.record_id for h in relevant if h.kind == TRANSACTION],
        )
        recurring: list[RecurringTransaction] = await asyncio.to_thread(
            self._db.get_recurring_many, tenant_id,
            [h.record_id for h in relevant if h.kind == RECURRING],
        )

        matches = [
            {"kind": TRANSACTION, "score": scores[(TRANSACTION, t.id)], "transaction": t.to_dict()}
            for t in transactions
        ] + [
            {"kind": RECURRING, "score": scores[(RECURRING, r.id)], "transaction": r.to_dict()}
            for r in recurring
        ]
        matches.sort(key=lambda m: m["score"], reverse=True)

        return OperationResult.ok(
            "search_transactions",
            f"Found {len(matches)} matching transaction(s)",
            payload=matches,
        )
