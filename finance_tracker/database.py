"""SQLite persistence layer for the finance_tracker backend.

The repository implements a small collection-oriented contract (create, batch
create, update, delete, query) so the services never see SQL.  It relies on
the standard library :mod:`sqlite3` module; every row is scoped by
``user_id``.  Values are encoded per column kind so decimals and dates survive
the round trip exactly.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Iterator, Mapping, Optional, Protocol, Sequence

from .errors import PersistenceError, RecordNotFoundError, StateConflictError

logger = logging.getLogger(__name__)

# Column kinds drive both the DDL and the value codecs below.
COLLECTIONS: dict[str, dict[str, str]] = {
    "accounts": {
        "id": "text",
        "user_id": "text",
        "name": "text",
        "balance": "decimal",
        "color": "text",
        "type": "text",
    },
    "transactions": {
        "id": "text",
        "user_id": "text",
        "description": "text",
        "amount": "decimal",
        "date": "date",
        "type": "text",
        "account_id": "text",
        "status": "text",
        "category_id": "text",
        "to_account_id": "text",
        "payment_date": "date",
        "is_recurring": "bool",
        "recurring_type": "text",
        "installment_current": "int",
        "installment_total": "int",
        "group_id": "text",
        "parent_id": "text",
        "observation": "text",
    },
    "categories": {
        "id": "text",
        "user_id": "text",
        "name": "text",
        "type": "text",
        "color": "text",
        "parent_id": "text",
        "dre_category": "text",
        "budget_limit": "decimal",
    },
    "investment_assets": {
        "id": "text",
        "user_id": "text",
        "name": "text",
        "type": "text",
        "ticker": "text",
        "quantity": "decimal",
        "average_price": "decimal",
        "current_price": "decimal",
        "version": "int",
    },
    "investment_transactions": {
        "id": "text",
        "user_id": "text",
        "asset_id": "text",
        "type": "text",
        "quantity": "decimal",
        "price": "decimal",
        "fees": "decimal",
        "total_amount": "decimal",
        "date": "date",
    },
    "subscriptions": {
        "user_id": "text",
        "expiration_date": "date",
        "payment_status": "text",
        "billing_attempts": "int",
        "subscription_price": "decimal",
        "billing_interval": "text",
        "last_invoice_id": "text",
        "account_type": "text",
        "document": "text",
        "version": "int",
    },
    "invoices": {
        "id": "text",
        "user_id": "text",
        "amount": "decimal",
        "status": "text",
        "due_date": "date",
        "reference_month": "text",
        "paid_at": "datetime",
        "pdf_url": "text",
    },
}

# Subscriptions hold one row per user, so the user id is the key.
_KEYS: dict[str, str] = {"subscriptions": "user_id"}

_SQL_TYPES = {
    "text": "TEXT",
    "decimal": "TEXT",
    "date": "TEXT",
    "datetime": "TEXT",
    "int": "INTEGER",
    "bool": "INTEGER",
}

_INDEXES = (
    "CREATE INDEX IF NOT EXISTS ix_transactions_user ON transactions (user_id, date)",
    "CREATE INDEX IF NOT EXISTS ix_transactions_group ON transactions (user_id, group_id)",
    "CREATE INDEX IF NOT EXISTS ix_transactions_parent ON transactions (user_id, parent_id)",
    "CREATE INDEX IF NOT EXISTS ix_categories_user ON categories (user_id, type)",
    "CREATE INDEX IF NOT EXISTS ix_invoices_user ON invoices (user_id, due_date)",
)


class Repository(Protocol):
    """Persistence collaborator consumed by the services.

    ``supports_batch`` tells the ledger whether :meth:`create_batch` is
    all-or-nothing; collaborators that can only write row by row set it to
    ``False`` and the ledger tracks partial completion itself.
    """

    supports_batch: bool

    def create(self, collection: str, record: Mapping[str, object]) -> dict[str, object]: ...

    def create_batch(self, collection: str, records: Sequence[Mapping[str, object]]) -> None: ...

    def get(self, collection: str, user_id: str, record_id: str) -> dict[str, object]: ...

    def update(
        self,
        collection: str,
        user_id: str,
        record_id: str,
        patch: Mapping[str, object],
        expected_version: Optional[int] = None,
    ) -> None: ...

    def increment(self, collection: str, user_id: str, record_id: str, column: str, delta: Decimal) -> None: ...

    def delete(self, collection: str, user_id: str, record_id: str) -> None: ...

    def query(
        self,
        collection: str,
        user_id: str,
        filters: Optional[Mapping[str, object]] = None,
        order_by: Optional[str] = None,
    ) -> list[dict[str, object]]: ...

    def atomic(self): ...


class SQLiteRepository:
    """Encapsulates all SQLite access for the application."""

    supports_batch = True

    def __init__(self, database_path: Path | str) -> None:
        self._database_path = database_path
        # Autocommit mode: transactions are opened explicitly by atomic().
        self._connection = sqlite3.connect(
            database_path,
            isolation_level=None,
            check_same_thread=False,
        )
        self._connection.execute("PRAGMA foreign_keys = ON;")
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0

    def close(self) -> None:
        """Close the underlying SQLite connection."""

        with self._lock:
            self._connection.close()

    # ------------------------------------------------------------------
    # Schema management
    # ------------------------------------------------------------------
    def initialise_schema(self) -> None:
        """Create all tables required by the application if they do not exist."""

        statements = []
        for collection, columns in COLLECTIONS.items():
            key = _KEYS.get(collection, "id")
            definitions = []
            for column, kind in columns.items():
                definition = f"{column} {_SQL_TYPES[kind]}"
                if column == key:
                    definition += " PRIMARY KEY"
                elif column == "version":
                    definition += " NOT NULL DEFAULT 0"
                elif column == "user_id":
                    definition += " NOT NULL"
                definitions.append(definition)
            statements.append(
                f"CREATE TABLE IF NOT EXISTS {collection} ({', '.join(definitions)})"
            )
        statements.extend(_INDEXES)

        with self._translate("initialise_schema", "*"), self._lock:
            for statement in statements:
                self._connection.execute(statement)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------
    @contextmanager
    def atomic(self) -> Iterator["SQLiteRepository"]:
        """Group several calls into one all-or-nothing SQLite transaction.

        Nested blocks join the outermost transaction through savepoints, so an
        inner failure that the caller handles does not discard outer work.
        """

        with self._lock:
            depth = self._depth
            savepoint = f"sp_{depth}"
            with self._translate("begin", "*"):
                if depth == 0:
                    self._connection.execute("BEGIN IMMEDIATE")
                else:
                    self._connection.execute(f"SAVEPOINT {savepoint}")
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if depth == 0:
                    self._connection.execute("ROLLBACK")
                else:
                    self._connection.execute(f"ROLLBACK TO {savepoint}")
                    self._connection.execute(f"RELEASE {savepoint}")
                raise
            self._depth -= 1
            with self._translate("commit", "*"):
                if depth == 0:
                    self._connection.execute("COMMIT")
                else:
                    self._connection.execute(f"RELEASE {savepoint}")

    # ------------------------------------------------------------------
    # Collection contract
    # ------------------------------------------------------------------
    def create(self, collection: str, record: Mapping[str, object]) -> dict[str, object]:
        columns = self._columns(collection)
        row = _encode_row(columns, record)
        sql = _insert_sql(collection, row)
        with self._translate("create", collection), self.atomic():
            self._connection.execute(sql, row)
        return dict(record)

    def create_batch(self, collection: str, records: Sequence[Mapping[str, object]]) -> None:
        """Insert every record or none of them."""

        if not records:
            return
        columns = self._columns(collection)
        rows = [_encode_row(columns, record) for record in records]
        sql = _insert_sql(collection, rows[0])
        with self._translate("create_batch", collection), self.atomic():
            self._connection.executemany(sql, rows)
        logger.debug("Inserted %d row(s) into %s", len(rows), collection)

    def get(self, collection: str, user_id: str, record_id: str) -> dict[str, object]:
        columns = self._columns(collection)
        key = _KEYS.get(collection, "id")
        with self._translate("get", collection), self._lock:
            row = self._connection.execute(
                f"SELECT * FROM {collection} WHERE {key} = ? AND user_id = ?",
                (record_id, user_id),
            ).fetchone()
        if row is None:
            raise RecordNotFoundError(collection, record_id)
        return _decode_row(columns, row)

    def update(
        self,
        collection: str,
        user_id: str,
        record_id: str,
        patch: Mapping[str, object],
        expected_version: Optional[int] = None,
    ) -> None:
        """Apply ``patch`` to one row.

        With ``expected_version`` the write only lands when the stored version
        still matches, and the version is bumped; otherwise
        :class:`StateConflictError` is raised.
        """

        columns = self._columns(collection)
        key = _KEYS.get(collection, "id")
        protected = {key, "user_id", "version"}
        unknown = set(patch) - set(columns)
        if unknown:
            raise ValueError(f"Unknown column(s) for {collection}: {sorted(unknown)}")
        values = _encode_row(columns, {k: v for k, v in patch.items() if k not in protected})

        assignments = [f"{column} = :{column}" for column in values]
        where = f"{key} = :_key AND user_id = :_user_id"
        if expected_version is not None:
            assignments.append("version = version + 1")
            where += " AND version = :_version"
            values["_version"] = expected_version
        if not assignments:
            return
        values["_key"] = record_id
        values["_user_id"] = user_id

        with self._translate("update", collection), self.atomic():
            cursor = self._connection.execute(
                f"UPDATE {collection} SET {', '.join(assignments)} WHERE {where}",
                values,
            )
            if cursor.rowcount == 0:
                exists = self._connection.execute(
                    f"SELECT 1 FROM {collection} WHERE {key} = ? AND user_id = ?",
                    (record_id, user_id),
                ).fetchone()
                if exists is None:
                    raise RecordNotFoundError(collection, record_id)
                raise StateConflictError(collection, record_id, expected_version)

    def increment(self, collection: str, user_id: str, record_id: str, column: str, delta: Decimal) -> None:
        """Add ``delta`` to a decimal column under the write lock."""

        if self._columns(collection).get(column) != "decimal":
            raise ValueError(f"{collection}.{column} is not a decimal column")
        with self.atomic():
            current = self.get(collection, user_id, record_id)[column] or Decimal("0")
            self.update(collection, user_id, record_id, {column: current + delta})

    def delete(self, collection: str, user_id: str, record_id: str) -> None:
        self._columns(collection)
        key = _KEYS.get(collection, "id")
        with self._translate("delete", collection), self.atomic():
            cursor = self._connection.execute(
                f"DELETE FROM {collection} WHERE {key} = ? AND user_id = ?",
                (record_id, user_id),
            )
        if cursor.rowcount == 0:
            raise RecordNotFoundError(collection, record_id)

    def query(
        self,
        collection: str,
        user_id: str,
        filters: Optional[Mapping[str, object]] = None,
        order_by: Optional[str] = None,
    ) -> list[dict[str, object]]:
        """Return rows matching every equality filter.

        ``None`` filter values match SQL ``NULL``.  ``order_by`` names a
        column, prefixed with ``-`` for descending order.
        """

        columns = self._columns(collection)
        clauses = ["user_id = ?"]
        params: list[object] = [user_id]
        for column, value in (filters or {}).items():
            if column not in columns:
                raise ValueError(f"Unknown column for {collection}: {column}")
            if value is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = ?")
                params.append(_encode_value(columns[column], value))

        sql = f"SELECT * FROM {collection} WHERE {' AND '.join(clauses)}"
        if order_by:
            column = order_by.lstrip("-")
            if column not in columns:
                raise ValueError(f"Unknown column for {collection}: {column}")
            direction = "DESC" if order_by.startswith("-") else "ASC"
            sql += f" ORDER BY {column} {direction}"

        with self._translate("query", collection), self._lock:
            rows = self._connection.execute(sql, params).fetchall()
        return [_decode_row(columns, row) for row in rows]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _columns(collection: str) -> dict[str, str]:
        try:
            return COLLECTIONS[collection]
        except KeyError:
            raise ValueError(f"Unknown collection: {collection}") from None

    @staticmethod
    @contextmanager
    def _translate(operation: str, collection: str) -> Iterator[None]:
        try:
            yield
        except sqlite3.Error as exc:
            logger.error("SQLite %s on %s failed: %s", operation, collection, exc)
            raise PersistenceError(operation, collection, str(exc)) from exc


def _insert_sql(collection: str, row: Mapping[str, object]) -> str:
    names = ", ".join(row)
    placeholders = ", ".join(f":{name}" for name in row)
    return f"INSERT INTO {collection} ({names}) VALUES ({placeholders})"


def _encode_row(columns: Mapping[str, str], record: Mapping[str, object]) -> dict[str, object]:
    return {
        column: _encode_value(kind, record[column])
        for column, kind in columns.items()
        if column in record
    }


def _encode_value(kind: str, value: object) -> object:
    if value is None:
        return None
    if isinstance(value, Enum):
        value = value.value
    if kind == "decimal":
        return str(value if isinstance(value, Decimal) else Decimal(str(value)))
    if kind in ("date", "datetime"):
        if isinstance(value, (date, datetime)):
            return value.isoformat()
        return str(value)
    if kind == "bool":
        return int(bool(value))
    if kind == "int":
        return int(value)
    return str(value)


def _decode_row(columns: Mapping[str, str], row: sqlite3.Row) -> dict[str, object]:
    return {column: _decode_value(columns[column], row[column]) for column in row.keys()}


def _decode_value(kind: str, value: object) -> object:
    if value is None:
        return None
    if kind == "decimal":
        return Decimal(value)
    if kind == "date":
        return date.fromisoformat(value)
    if kind == "datetime":
        return datetime.fromisoformat(value)
    if kind == "bool":
        return bool(value)
    return value


__all__ = ["COLLECTIONS", "Repository", "SQLiteRepository"]
