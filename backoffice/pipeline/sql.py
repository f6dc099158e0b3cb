"""
Statement builders for the load and transform paths.

Builders only accept ``QualifiedTable`` and ``SafeIdentifier`` instances for
anything that is interpolated into SQL text; values always travel as bound
parameters. Handing a builder a plain string is a programming error and
raises ``TypeError`` before any SQL is produced.
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from sqlalchemy import BigInteger, Date, Numeric, String, bindparam, text
from sqlalchemy.sql.elements import TextClause
from sqlalchemy.types import TypeEngine

from .definitions import ColumnType
from .identifiers import QualifiedTable, SafeIdentifier

POSTGRES_MAX_BIND_PARAMS = 65535
# Older SQLite builds cap host parameters at 999.
SQLITE_MAX_BIND_PARAMS = 999

_COLUMN_TYPES: dict[ColumnType, TypeEngine] = {
    ColumnType.STRING: String(),
    ColumnType.INT: BigInteger(),
    ColumnType.DECIMAL: Numeric(asdecimal=True),
    ColumnType.DATE: Date(),
}


def _require_table(table: Any) -> QualifiedTable:
    if not isinstance(table, QualifiedTable):
        raise TypeError(f"Expected QualifiedTable from safe_table_name(), got {type(table).__name__}.")
    return table


def _require_columns(columns: Any) -> tuple[SafeIdentifier, ...]:
    if isinstance(columns, (str, bytes)):
        raise TypeError("Expected a sequence of SafeIdentifier from quote_columns(), got a string.")
    resolved = tuple(columns)
    if not resolved:
        raise TypeError("At least one SafeIdentifier column is required.")
    for column in resolved:
        if not isinstance(column, SafeIdentifier):
            raise TypeError(f"Expected SafeIdentifier from quote_columns(), got {type(column).__name__}.")
    return resolved


def _column_list(columns: Sequence[SafeIdentifier]) -> str:
    return ", ".join(column.quoted for column in columns)


def sqlalchemy_type_for(column_type: ColumnType) -> TypeEngine:
    return _COLUMN_TYPES.get(column_type, String())


def bind_parameter_limit(dialect_name: str) -> int:
    if dialect_name == "postgresql":
        return POSTGRES_MAX_BIND_PARAMS
    return SQLITE_MAX_BIND_PARAMS


def rows_per_statement(column_count: int, batch_size: int, dialect_name: str) -> int:
    """Largest batch that stays under both the configured size and the driver's parameter cap."""

    if column_count < 1:
        raise ValueError("column_count must be positive.")
    return max(1, min(batch_size, bind_parameter_limit(dialect_name) // column_count))


def truncate_statement(table: QualifiedTable, *, dialect_name: str) -> TextClause:
    table = _require_table(table)
    if dialect_name == "postgresql":
        return text(f"TRUNCATE TABLE {table.quoted}")
    # SQLite has no TRUNCATE; an unqualified DELETE uses the truncate optimization.
    return text(f"DELETE FROM {table.quoted}")


def count_statement(table: QualifiedTable) -> TextClause:
    table = _require_table(table)
    return text(f"SELECT COUNT(*) FROM {table.quoted}")


def advisory_lock_statement(table: QualifiedTable, *, dialect_name: str) -> TextClause | None:
    """Transaction-scoped lock serializing writers of one target table; PostgreSQL only."""

    table = _require_table(table)
    if dialect_name != "postgresql":
        return None
    return text("SELECT pg_advisory_xact_lock(hashtext(:lock_schema), hashtext(:lock_table))").bindparams(
        lock_schema=table.schema.name,
        lock_table=table.table.name,
    )


def statement_timeout_statement(timeout_ms: int, *, dialect_name: str) -> TextClause | None:
    if dialect_name != "postgresql" or not timeout_ms:
        return None
    return text("SELECT set_config('statement_timeout', :timeout, true)").bindparams(timeout=f"{int(timeout_ms)}ms")


def build_insert(
    table: QualifiedTable,
    columns: Sequence[SafeIdentifier],
    rows: Sequence[Sequence[Any]],
    *,
    column_types: Sequence[TypeEngine] | None = None,
    conflict_key: Sequence[SafeIdentifier] = (),
) -> TextClause:
    """
    Build one multi-row ``INSERT ... VALUES`` statement with bound values.

    With ``conflict_key`` the statement becomes an upsert that overwrites every
    non-key column from ``EXCLUDED``; when every column is part of the key the
    conflicting row is left as is.
    """

    table = _require_table(table)
    columns = _require_columns(columns)
    if not rows:
        raise ValueError("build_insert requires at least one row.")
    if column_types is not None and len(column_types) != len(columns):
        raise ValueError("column_types must align with columns.")

    placeholders: list[str] = []
    params = []
    for row_number, row in enumerate(rows):
        if len(row) != len(columns):
            raise ValueError(f"Row {row_number} has {len(row)} values; expected {len(columns)}.")
        names = []
        for column_number, value in enumerate(row):
            key = f"r{row_number}_c{column_number}"
            names.append(f":{key}")
            type_ = column_types[column_number] if column_types is not None else None
            params.append(bindparam(key, value, type_=type_))
        placeholders.append(f"({', '.join(names)})")

    statement = f"INSERT INTO {table.quoted} ({_column_list(columns)}) VALUES {', '.join(placeholders)}"

    if conflict_key:
        key_columns = _require_columns(conflict_key)
        key_names = {column.name for column in key_columns}
        updates = [column for column in columns if column.name not in key_names]
        statement += f" ON CONFLICT ({_column_list(key_columns)})"
        if updates:
            assignments = ", ".join(f"{column.quoted} = EXCLUDED.{column.quoted}" for column in updates)
            statement += f" DO UPDATE SET {assignments}"
        else:
            statement += " DO NOTHING"

    return text(statement).bindparams(*params)


def insert_select_statement(table: QualifiedTable, select_sql: str) -> TextClause:
    """Wrap a parameter-free SELECT recipe as ``INSERT INTO <table> <select>``."""

    table = _require_table(table)
    return text(f"INSERT INTO {table.quoted} {select_sql.strip().rstrip(';')}")


def recipe_statement(sql: str) -> TextClause:
    return text(sql.strip().rstrip(";"))


def rows_as_tuples(rows: Sequence[Mapping[str, Any]], columns: Sequence[SafeIdentifier]) -> list[tuple[Any, ...]]:
    names = [column.name for column in _require_columns(columns)]
    return [tuple(row.get(name) for name in names) for row in rows]
