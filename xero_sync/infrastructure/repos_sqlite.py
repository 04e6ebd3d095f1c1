from __future__ import annotations

import dataclasses
import sqlite3
from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Generic, TypeVar

from xero_sync.core.errors import PersistenceError
from xero_sync.domain.models import (
    InvoiceStatus,
    LocalCustomer,
    LocalInvoice,
    LocalPayment,
    LocalSupplier,
)
from xero_sync.domain.time_utils import to_iso, utc_now
from xero_sync.infrastructure.repos_sqlite_builders import (
    CONTACT_COLUMNS,
    INVOICE_COLUMNS,
    PAYMENT_COLUMNS,
    decimal_to_db,
    line_items_to_db,
    row_to_customer,
    row_to_invoice,
    row_to_payment,
    row_to_supplier,
)

_C = TypeVar("_C", LocalCustomer, LocalSupplier)


def _execute_with_validation(cursor: sqlite3.Cursor, sql: str, params: Iterable[object], context: str) -> None:
    expected = sql.count("?")
    params_list = list(params)
    actual = len(params_list)
    if expected != actual:
        raise ValueError(
            f"SQL param mismatch for {context}: expected {expected} placeholders, got {actual} parameters."
        )
    cursor.execute(sql, tuple(params_list))


def _to_db(value: Any) -> Any:
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, Decimal):
        return decimal_to_db(value)
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, Enum):
        return value.value
    return value


def _insert_sql(table: str, columns: tuple[str, ...]) -> str:
    placeholders = ", ".join("?" for _ in columns)
    return f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"


def _update_sql(table: str, columns: tuple[str, ...]) -> str:
    assignments = ", ".join(f"{column} = ?" for column in columns)
    return f"UPDATE {table} SET {assignments} WHERE id = ?"


def _wrap_integrity(context: str, operation: Callable[[], Any]) -> Any:
    try:
        return operation()
    except sqlite3.IntegrityError as exc:
        raise PersistenceError(f"{context}: {exc}") from exc


class _ContactRepositorySQLite(Generic[_C]):
    table: str
    number_column: str
    type_column: str
    row_builder: Callable[[sqlite3.Row], _C]

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection

    @property
    def _columns(self) -> tuple[str, ...]:
        return (self.number_column, self.type_column) + CONTACT_COLUMNS + ("created_at", "updated_at")

    def find_by_id(self, entity_id: int) -> _C | None:
        row = self._connection.execute(f"SELECT * FROM {self.table} WHERE id = ?", (entity_id,)).fetchone()
        return self.row_builder(row) if row else None

    def find_by_external_id(self, xero_contact_id: str) -> _C | None:
        row = self._connection.execute(
            f"SELECT * FROM {self.table} WHERE xero_contact_id = ?",
            (xero_contact_id,),
        ).fetchone()
        return self.row_builder(row) if row else None

    def list_numbers(self) -> list[str]:
        rows = self._connection.execute(f"SELECT {self.number_column} AS number FROM {self.table}").fetchall()
        return [row["number"] for row in rows]

    def list_all(self, include_inactive: bool = False) -> list[_C]:
        sql = f"SELECT * FROM {self.table}"
        if not include_inactive:
            sql += " WHERE is_active = 1"
        sql += " ORDER BY id"
        return [self.row_builder(row) for row in self._connection.execute(sql).fetchall()]

    def create(self, record: _C) -> _C:
        now = utc_now()
        stamped = dataclasses.replace(
            record,
            created_at=record.created_at or now,
            updated_at=record.updated_at or now,
        )
        cursor = self._connection.cursor()
        _wrap_integrity(
            f"create {self.table}",
            lambda: _execute_with_validation(
                cursor,
                _insert_sql(self.table, self._columns),
                [_to_db(getattr(stamped, column)) for column in self._columns],
                f"{self.table}.create",
            ),
        )
        return dataclasses.replace(stamped, id=int(cursor.lastrowid))

    def update(self, record: _C) -> _C:
        if record.id is None:
            raise ValueError(f"Cannot update {self.table} row without id")
        stamped = dataclasses.replace(record, updated_at=record.updated_at or utc_now())
        columns = tuple(column for column in self._columns if column != "created_at")
        cursor = self._connection.cursor()
        _wrap_integrity(
            f"update {self.table}",
            lambda: _execute_with_validation(
                cursor,
                _update_sql(self.table, columns),
                [_to_db(getattr(stamped, column)) for column in columns] + [record.id],
                f"{self.table}.update",
            ),
        )
        return stamped

    def create_many(self, records: Iterable[_C]) -> list[_C]:
        return [self.create(record) for record in records]


class SQLiteCustomerRepository(_ContactRepositorySQLite[LocalCustomer]):
    table = "customers"
    number_column = "customer_number"
    type_column = "customer_type"
    row_builder = staticmethod(row_to_customer)


class SQLiteSupplierRepository(_ContactRepositorySQLite[LocalSupplier]):
    table = "suppliers"
    number_column = "supplier_number"
    type_column = "supplier_type"
    row_builder = staticmethod(row_to_supplier)


class SQLiteInvoiceRepository:
    _columns = INVOICE_COLUMNS + ("created_at", "updated_at")

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection

    @staticmethod
    def _values(record: LocalInvoice, columns: tuple[str, ...]) -> list[Any]:
        return [
            line_items_to_db(record.line_items) if column == "line_items_json" else _to_db(getattr(record, column))
            for column in columns
        ]

    def find_by_id(self, invoice_id: int) -> LocalInvoice | None:
        row = self._connection.execute("SELECT * FROM invoices WHERE id = ?", (invoice_id,)).fetchone()
        return row_to_invoice(row) if row else None

    def find_by_external_id(self, xero_invoice_id: str) -> LocalInvoice | None:
        row = self._connection.execute(
            "SELECT * FROM invoices WHERE xero_invoice_id = ?",
            (xero_invoice_id,),
        ).fetchone()
        return row_to_invoice(row) if row else None

    def list_all(self) -> list[LocalInvoice]:
        rows = self._connection.execute("SELECT * FROM invoices ORDER BY id").fetchall()
        return [row_to_invoice(row) for row in rows]

    def create(self, record: LocalInvoice) -> LocalInvoice:
        now = utc_now()
        stamped = dataclasses.replace(record, created_at=record.created_at or now, updated_at=record.updated_at or now)
        cursor = self._connection.cursor()
        _wrap_integrity(
            "create invoices",
            lambda: _execute_with_validation(
                cursor,
                _insert_sql("invoices", self._columns),
                self._values(stamped, self._columns),
                "invoices.create",
            ),
        )
        return dataclasses.replace(stamped, id=int(cursor.lastrowid))

    def update(self, record: LocalInvoice) -> LocalInvoice:
        if record.id is None:
            raise ValueError("Cannot update invoice without id")
        stamped = dataclasses.replace(record, updated_at=record.updated_at or utc_now())
        columns = tuple(column for column in self._columns if column != "created_at")
        cursor = self._connection.cursor()
        _wrap_integrity(
            "update invoices",
            lambda: _execute_with_validation(
                cursor,
                _update_sql("invoices", columns),
                self._values(stamped, columns) + [record.id],
                "invoices.update",
            ),
        )
        return stamped

    def create_many(self, records: Iterable[LocalInvoice]) -> list[LocalInvoice]:
        return [self.create(record) for record in records]

    def update_payment_totals(
        self,
        invoice_id: int,
        amount_paid: Decimal,
        amount_due: Decimal,
        status: InvoiceStatus,
    ) -> None:
        self._connection.execute(
            """
            UPDATE invoices
            SET amount_paid = ?, amount_due = ?, status = ?, updated_at = ?
            WHERE id = ?
            """,
            (decimal_to_db(amount_paid), decimal_to_db(amount_due), status.value, to_iso(utc_now()), invoice_id),
        )


class SQLitePaymentRepository:
    _columns = PAYMENT_COLUMNS + ("created_at", "updated_at")

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection

    def find_by_id(self, payment_id: int) -> LocalPayment | None:
        row = self._connection.execute("SELECT * FROM payments WHERE id = ?", (payment_id,)).fetchone()
        return row_to_payment(row) if row else None

    def find_by_external_id(self, xero_payment_id: str) -> LocalPayment | None:
        row = self._connection.execute(
            "SELECT * FROM payments WHERE xero_payment_id = ?",
            (xero_payment_id,),
        ).fetchone()
        return row_to_payment(row) if row else None

    def list_for_invoice(self, invoice_id: int) -> list[LocalPayment]:
        rows = self._connection.execute(
            "SELECT * FROM payments WHERE invoice_id = ? ORDER BY id",
            (invoice_id,),
        ).fetchall()
        return [row_to_payment(row) for row in rows]

    def list_all(self) -> list[LocalPayment]:
        rows = self._connection.execute("SELECT * FROM payments ORDER BY id").fetchall()
        return [row_to_payment(row) for row in rows]

    def create(self, record: LocalPayment) -> LocalPayment:
        now = utc_now()
        stamped = dataclasses.replace(record, created_at=record.created_at or now, updated_at=record.updated_at or now)
        cursor = self._connection.cursor()
        _wrap_integrity(
            "create payments",
            lambda: _execute_with_validation(
                cursor,
                _insert_sql("payments", self._columns),
                [_to_db(getattr(stamped, column)) for column in self._columns],
                "payments.create",
            ),
        )
        return dataclasses.replace(stamped, id=int(cursor.lastrowid))

    def update(self, record: LocalPayment) -> LocalPayment:
        if record.id is None:
            raise ValueError("Cannot update payment without id")
        stamped = dataclasses.replace(record, updated_at=record.updated_at or utc_now())
        columns = tuple(column for column in self._columns if column != "created_at")
        cursor = self._connection.cursor()
        _wrap_integrity(
            "update payments",
            lambda: _execute_with_validation(
                cursor,
                _update_sql("payments", columns),
                [_to_db(getattr(stamped, column)) for column in columns] + [record.id],
                "payments.update",
            ),
        )
        return stamped

    def create_many(self, records: Iterable[LocalPayment]) -> list[LocalPayment]:
        return [self.create(record) for record in records]
