"""
Valora — Ledger and Conversation Databases.

The ledger keeps one-time and recurring transactions per tenant in SQLite.
Table and column names match what the reasoning engine is told, so the
engine's sandboxed SELECTs run against these tables directly.

The conversation store keeps each tenant's transcript between messages.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Sequence

from valora.core.recurrence import RecurrencePattern
from valora.core.transcript import Role, Turn
from valora.data.models import RecurringTransaction, Transaction
from valora.errors import NotFoundError

logger = logging.getLogger(__name__)

# snake_case field -> column, for the fields callers may update
_TRANSACTION_COLUMNS = {
    "amount": "amount",
    "category": "category",
    "description": "description",
    "date": "date",
    "type": "type",
}
_RECURRING_COLUMNS = {
    "amount": "amount",
    "category": "category",
    "description": "description",
    "type": "type",
    "frequency": "frequency",
    "interval": "interval",
    "day_of_week": "dayOfWeek",
    "day_of_month": "dayOfMonth",
    "month_of_year": "monthOfYear",
    "start_date": "startDate",
    "next_due": "nextDue",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _placeholders(values: Sequence) -> str:
    return ", ".join("?" for _ in values)


def _unique(ids: Iterable[int]) -> list[int]:
    return list(dict.fromkeys(ids))


def _set_clause(fields: dict, columns: dict[str, str]) -> tuple[str, list]:
    unknown = set(fields) - set(columns)
    if unknown:
        raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
    assignments = [f'"{columns[name]}" = ?' for name in fields]
    assignments.append('"updatedAt" = ?')
    return ", ".join(assignments), [*fields.values(), _now()]


class _SQLiteStore(ABC):
    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    @abstractmethod
    def _init_db(self) -> None:
        """Create the tables this store owns."""


class LedgerDB(_SQLiteStore):
    """SQLite-backed storage for transactions and recurring transactions."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS "Transaction" (
                    "id"          INTEGER PRIMARY KEY AUTOINCREMENT,
                    "userId"      TEXT    NOT NULL,
                    "date"        TEXT    NOT NULL,
                    "amount"      REAL    NOT NULL,
                    "category"    TEXT    NOT NULL,
                    "description" TEXT,
                    "type"        TEXT    NOT NULL DEFAULT 'expense',
                    "createdAt"   TEXT    NOT NULL,
                    "updatedAt"   TEXT    NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS "RecurringTransaction" (
                    "id"          INTEGER PRIMARY KEY AUTOINCREMENT,
                    "userId"      TEXT    NOT NULL,
                    "amount"      REAL    NOT NULL,
                    "category"    TEXT    NOT NULL,
                    "description" TEXT,
                    "type"        TEXT    NOT NULL DEFAULT 'expense',
                    "frequency"   TEXT    NOT NULL,
                    "interval"    INTEGER NOT NULL DEFAULT 1,
                    "dayOfWeek"   INTEGER,
                    "dayOfMonth"  INTEGER,
                    "monthOfYear" INTEGER,
                    "startDate"   TEXT    NOT NULL,
                    "nextDue"     TEXT    NOT NULL,
                    "isActive"    INTEGER NOT NULL DEFAULT 1,
                    "createdAt"   TEXT    NOT NULL,
                    "updatedAt"   TEXT    NOT NULL
                )
            """)
            conn.execute(
                'CREATE INDEX IF NOT EXISTS "Transaction_userId_idx" ON "Transaction"("userId")'
            )
            conn.execute(
                'CREATE INDEX IF NOT EXISTS "RecurringTransaction_userId_idx" '
                'ON "RecurringTransaction"("userId")'
            )
            conn.execute(
                'CREATE INDEX IF NOT EXISTS "RecurringTransaction_nextDue_idx" '
                'ON "RecurringTransaction"("nextDue")'
            )
        logger.debug("Ledger tables initialized at %s", self._db_path)

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> Transaction:
        return Transaction(
            id=row["id"],
            user_id=row["userId"],
            date=row["date"],
            amount=row["amount"],
            category=row["category"],
            type=row["type"],
            description=row["description"],
            created_at=row["createdAt"],
            updated_at=row["updatedAt"],
        )

    @staticmethod
    def _row_to_recurring(row: sqlite3.Row) -> RecurringTransaction:
        return RecurringTransaction(
            id=row["id"],
            user_id=row["userId"],
            amount=row["amount"],
            category=row["category"],
            type=row["type"],
            frequency=row["frequency"],
            interval=row["interval"],
            start_date=row["startDate"],
            next_due=row["nextDue"],
            description=row["description"],
            day_of_week=row["dayOfWeek"],
            day_of_month=row["dayOfMonth"],
            month_of_year=row["monthOfYear"],
            is_active=bool(row["isActive"]),
            created_at=row["createdAt"],
            updated_at=row["updatedAt"],
        )

    # ------------------------------------------------------------------
    # One-time transactions
    # ------------------------------------------------------------------

    def add_transaction(
        self,
        user_id: str,
        amount: float,
        category: str,
        transaction_type: str,
        date: str,
        description: str | None = None,
    ) -> Transaction:
        now = _now()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO "Transaction"
                    ("userId", "date", "amount", "category", "description",
                     "type", "createdAt", "updatedAt")
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (user_id, date, amount, category, description, transaction_type, now, now),
            )
            transaction_id = cursor.lastrowid

        logger.info(
            "Transaction added: #%d %s %.2f '%s' for %s",
            transaction_id, transaction_type, amount, category, user_id,
        )
        return Transaction(
            id=transaction_id,
            user_id=user_id,
            date=date,
            amount=amount,
            category=category,
            type=transaction_type,
            description=description,
            created_at=now,
            updated_at=now,
        )

    def get_transaction(self, user_id: str, transaction_id: int) -> Transaction | None:
        with self._connect() as conn:
            row = conn.execute(
                'SELECT * FROM "Transaction" WHERE "id" = ? AND "userId" = ?',
                (transaction_id, user_id),
            ).fetchone()
        return self._row_to_transaction(row) if row else None

    def get_last_transaction(
        self, user_id: str, transaction_type: str | None = None,
    ) -> Transaction | None:
        """Most recently created transaction, optionally of one type."""
        query = 'SELECT * FROM "Transaction" WHERE "userId" = ?'
        params: list = [user_id]
        if transaction_type:
            query += ' AND "type" = ?'
            params.append(transaction_type)
        query += ' ORDER BY "createdAt" DESC, "id" DESC LIMIT 1'
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._row_to_transaction(row) if row else None

    def get_transactions(self, user_id: str, ids: Sequence[int]) -> list[Transaction]:
        """Tenant-owned transactions among *ids*, in the order requested."""
        ids = _unique(ids)
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                f'SELECT * FROM "Transaction" WHERE "userId" = ? AND "id" IN ({_placeholders(ids)})',
                (user_id, *ids),
            ).fetchall()
        by_id = {row["id"]: self._row_to_transaction(row) for row in rows}
        return [by_id[i] for i in ids if i in by_id]

    def update_transaction(
        self, user_id: str, transaction_id: int, fields: dict,
    ) -> Transaction:
        """Apply *fields* to a tenant-owned transaction.

        Raises:
            NotFoundError: no such transaction for this tenant.
        """
        if fields:
            assignments, params = _set_clause(fields, _TRANSACTION_COLUMNS)
            with self._connect() as conn:
                cursor = conn.execute(
                    f'UPDATE "Transaction" SET {assignments} WHERE "id" = ? AND "userId" = ?',
                    (*params, transaction_id, user_id),
                )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            logger.info("Transaction #%d updated: %s", transaction_id, ", ".join(fields))

        transaction = self.get_transaction(user_id, transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    def delete_transactions(self, user_id: str, ids: Sequence[int]) -> int:
        """Delete every id or none of them.

        Raises:
            NotFoundError: at least one id does not belong to this tenant.
        """
        ids = _unique(ids)
        if not ids:
            return 0
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            found = {
                row["id"] for row in conn.execute(
                    f'SELECT "id" FROM "Transaction" WHERE "userId" = ? AND "id" IN ({_placeholders(ids)})',
                    (user_id, *ids),
                )
            }
            missing = [i for i in ids if i not in found]
            if missing:
                raise NotFoundError(
                    f"Transactions not found: {', '.join(map(str, missing))}. Nothing was deleted."
                )
            cursor = conn.execute(
                f'DELETE FROM "Transaction" WHERE "userId" = ? AND "id" IN ({_placeholders(ids)})',
                (user_id, *ids),
            )
        logger.info("Deleted %d transaction(s) for %s", cursor.rowcount, user_id)
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Recurring transactions
    # ------------------------------------------------------------------

    def add_recurring(
        self,
        user_id: str,
        amount: float,
        category: str,
        transaction_type: str,
        pattern: RecurrencePattern,
        start_date: str,
        next_due: str,
        description: str | None = None,
    ) -> RecurringTransaction:
        now = _now()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO "RecurringTransaction"
                    ("userId", "amount", "category", "description", "type",
                     "frequency", "interval", "dayOfWeek", "dayOfMonth", "monthOfYear",
                     "startDate", "nextDue", "isActive", "createdAt", "updatedAt")
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
                """,
                (
                    user_id, amount, category, description, transaction_type,
                    pattern.frequency.value, pattern.interval, pattern.day_of_week,
                    pattern.day_of_month, pattern.month_of_year,
                    start_date, next_due, now, now,
                ),
            )
            recurring_id = cursor.lastrowid

        logger.info(
            "Recurring transaction added: #%d %s %.2f '%s' %s",
            recurring_id, transaction_type, amount, category, pattern.describe(),
        )
        return RecurringTransaction(
            id=recurring_id,
            user_id=user_id,
            amount=amount,
            category=category,
            type=transaction_type,
            frequency=pattern.frequency.value,
            interval=pattern.interval,
            start_date=start_date,
            next_due=next_due,
            description=description,
            day_of_week=pattern.day_of_week,
            day_of_month=pattern.day_of_month,
            month_of_year=pattern.month_of_year,
            is_active=True,
            created_at=now,
            updated_at=now,
        )

    def get_recurring(self, user_id: str, recurring_id: int) -> RecurringTransaction | None:
        """Active recurring transaction owned by *user_id*."""
        with self._connect() as conn:
            row = conn.execute(
                'SELECT * FROM "RecurringTransaction" '
                'WHERE "id" = ? AND "userId" = ? AND "isActive" = 1',
                (recurring_id, user_id),
            ).fetchone()
        return self._row_to_recurring(row) if row else None

    def get_last_recurring(
        self, user_id: str, transaction_type: str | None = None,
    ) -> RecurringTransaction | None:
        query = 'SELECT * FROM "RecurringTransaction" WHERE "userId" = ? AND "isActive" = 1'
        params: list = [user_id]
        if transaction_type:
            query += ' AND "type" = ?'
            params.append(transaction_type)
        query += ' ORDER BY "createdAt" DESC, "id" DESC LIMIT 1'
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._row_to_recurring(row) if row else None

    def get_recurring_many(self, user_id: str, ids: Sequence[int]) -> list[RecurringTransaction]:
        ids = _unique(ids)
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                f'SELECT * FROM "RecurringTransaction" '
                f'WHERE "userId" = ? AND "isActive" = 1 AND "id" IN ({_placeholders(ids)})',
                (user_id, *ids),
            ).fetchall()
        by_id = {row["id"]: self._row_to_recurring(row) for row in rows}
        return [by_id[i] for i in ids if i in by_id]

    def update_recurring(
        self, user_id: str, recurring_id: int, fields: dict,
    ) -> RecurringTransaction:
        """Apply *fields* to an active, tenant-owned recurring transaction.

        Raises:
            NotFoundError: no such active recurring transaction for this tenant.
        """
        if fields:
            assignments, params = _set_clause(fields, _RECURRING_COLUMNS)
            with self._connect() as conn:
                cursor = conn.execute(
                    f'UPDATE "RecurringTransaction" SET {assignments} '
                    f'WHERE "id" = ? AND "userId" = ? AND "isActive" = 1',
                    (*params, recurring_id, user_id),
                )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Recurring transaction {recurring_id} not found")
            logger.info("Recurring transaction #%d updated: %s", recurring_id, ", ".join(fields))

        recurring = self.get_recurring(user_id, recurring_id)
        if recurring is None:
            raise NotFoundError(f"Recurring transaction {recurring_id} not found")
        return recurring

    def deactivate_recurring(self, user_id: str, ids: Sequence[int]) -> int:
        """Soft-delete every id or none of them (isActive = 0).

        Raises:
            NotFoundError: at least one id is not an active recurring
                transaction of this tenant.
        """
        ids = _unique(ids)
        if not ids:
            return 0
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            found = {
                row["id"] for row in conn.execute(
                    f'SELECT "id" FROM "RecurringTransaction" '
                    f'WHERE "userId" = ? AND "isActive" = 1 AND "id" IN ({_placeholders(ids)})',
                    (user_id, *ids),
                )
            }
            missing = [i for i in ids if i not in found]
            if missing:
                raise NotFoundError(
                    f"Recurring transactions not found: {', '.join(map(str, missing))}. "
                    "Nothing was deleted."
                )
            cursor = conn.execute(
                f'UPDATE "RecurringTransaction" SET "isActive" = 0, "updatedAt" = ? '
                f'WHERE "userId" = ? AND "id" IN ({_placeholders(ids)})',
                (_now(), user_id, *ids),
            )
        logger.info("Deactivated %d recurring transaction(s) for %s", cursor.rowcount, user_id)
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Sandboxed queries
    # ------------------------------------------------------------------

    def run_readonly_query(self, sql: str) -> list[dict]:
        """Run an already-sandboxed SELECT on a read-only connection."""
        conn = self._connect()
        try:
            conn.execute("PRAGMA query_only = ON")
            rows = conn.execute(sql).fetchall()
        finally:
            conn.close()
        return [dict(row) for row in rows]


class ConversationDB(_SQLiteStore):
    """Per-tenant transcript storage. Owned by the transport, not the core."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS conversation_turns (
                    id         INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id  TEXT NOT NULL,
                    role       TEXT NOT NULL,
                    payload    TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS conversation_turns_tenant_idx "
                "ON conversation_turns(tenant_id, id)"
            )
        logger.debug("Conversation table initialized at %s", self._db_path)

    def load(self, tenant_id: str, max_turns: int = 40) -> list[Turn]:
        """Return up to *max_turns* recent turns, starting at a user message.

        A window that begins with operation results or an assistant turn
        is trimmed forward so the engine never sees a dangling reply.
        """
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT payload FROM conversation_turns WHERE tenant_id = ? "
                "ORDER BY id DESC LIMIT ?",
                (tenant_id, max_turns),
            ).fetchall()

        turns = [Turn.from_dict(json.loads(row["payload"])) for row in reversed(rows)]
        start = 0
        while start < len(turns) and not (
            turns[start].role is Role.USER and turns[start].text and not turns[start].results
        ):
            start += 1
        return turns[start:]

    def append(self, tenant_id: str, turns: Sequence[Turn]) -> None:
        """Store *turns* in one transaction."""
        now = _now()
        with self._connect() as conn:
            conn.executemany(
                "INSERT INTO conversation_turns (tenant_id, role, payload, created_at) "
                "VALUES (?, ?, ?, ?)",
                [
                    (tenant_id, turn.role.value, json.dumps(turn.to_dict()), now)
                    for turn in turns
                ],
            )
        logger.debug("Stored %d turn(s) for %s", len(turns), tenant_id)

    def clear(self, tenant_id: str) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM conversation_turns WHERE tenant_id = ?", (tenant_id,),
            )
        logger.info("Cleared %d turn(s) for %s", cursor.rowcount, tenant_id)
        return cursor.rowcount
