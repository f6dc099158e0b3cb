"""
Row validation engine for staging imports.

Each row is checked independently against the integration's column specs:
nullability, type coercion, string length, then the column's custom validator.
Passing rows are kept, failing rows are reported, and an
``ErrorThresholdPolicy`` decides whether the batch may be written at all.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Sequence

from flask import current_app, has_app_context

from .definitions import (
    ColumnSpec,
    ColumnType,
    ErrorThresholdPolicy,
    IntegrationDefinition,
    ValidationError,
    Validator,
)
from .errors import ValidationThresholdExceeded

EMPTY_INPUT_MESSAGE = "No rows found in input; nothing to import."


class CoercionError(ValueError):
    """Raised internally when a raw value cannot be converted to its column type."""


@dataclass(frozen=True)
class ValidationOutcome:
    """Rows that passed validation plus every error found along the way."""

    valid_rows: tuple[dict[str, Any], ...]
    errors: tuple[ValidationError, ...]
    rows_total: int
    rows_rejected: int
    errors_truncated: bool = False

    @property
    def rows_accepted(self) -> int:
        return len(self.valid_rows)

    @property
    def file_errors(self) -> tuple[ValidationError, ...]:
        return tuple(error for error in self.errors if error.row_index is None)


# ---------------------------------------------------------------------------
# Custom validator helpers
# ---------------------------------------------------------------------------


def matches(pattern: str, message: str | None = None) -> Validator:
    compiled = re.compile(pattern)

    def _validator(value: Any) -> str | None:
        if compiled.fullmatch(str(value)):
            return None
        return message or f"Value {value!r} does not match pattern {pattern}"

    return _validator


def exact_length(length: int, message: str | None = None) -> Validator:
    def _validator(value: Any) -> str | None:
        if len(str(value)) == length:
            return None
        return message or f"Value must be exactly {length} characters"

    return _validator


def one_of(choices: Iterable[Any], message: str | None = None) -> Validator:
    allowed = frozenset(choices)

    def _validator(value: Any) -> str | None:
        if value in allowed:
            return None
        return message or f"Value {value!r} is not one of: {', '.join(sorted(map(str, allowed)))}"

    return _validator


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _coerce_int(value: Any) -> int:
    if isinstance(value, bool):
        raise CoercionError("expected an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, (float, Decimal)):
        if not math.isfinite(value) or value != int(value):
            raise CoercionError("expected an integer")
        return int(value)
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        raise CoercionError(f"expected an integer, got {text!r}") from None


def _coerce_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise CoercionError("expected a decimal number")
    text = str(value).strip()
    try:
        number = Decimal(text)
    except (InvalidOperation, ValueError):
        raise CoercionError(f"expected a decimal number, got {text!r}") from None
    if not number.is_finite():
        raise CoercionError(f"expected a finite decimal number, got {text!r}")
    return number


def _coerce_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return date.fromisoformat(text)
    except ValueError:
        raise CoercionError(f"expected a date in YYYY-MM-DD format, got {text!r}") from None


def coerce_value(column: ColumnSpec, value: Any) -> Any:
    """Convert ``value`` to the column's type; blanks become ``None``."""

    if _is_blank(value):
        return None
    if column.type == ColumnType.INT:
        return _coerce_int(value)
    if column.type == ColumnType.DECIMAL:
        return _coerce_decimal(value)
    if column.type == ColumnType.DATE:
        return _coerce_date(value)
    return str(value).strip()


# ---------------------------------------------------------------------------
# Row and batch validation
# ---------------------------------------------------------------------------


def _row_values(columns: Sequence[ColumnSpec], row: Any) -> tuple[list[Any] | None, str | None]:
    if isinstance(row, Mapping):
        return [row.get(column.name) for column in columns], None
    if isinstance(row, (str, bytes)) or not isinstance(row, Sequence):
        return None, f"Row must be a mapping or a sequence, got {type(row).__name__}"
    if len(row) != len(columns):
        return None, f"Expected {len(columns)} values, got {len(row)}"
    return list(row), None


def validate_row(
    columns: Sequence[ColumnSpec], row: Any, row_index: int
) -> tuple[dict[str, Any] | None, list[ValidationError]]:
    """
    Validate a single row.

    Returns the coerced row keyed by column name (``None`` when rejected)
    together with every error found on the row.
    """

    values, row_error = _row_values(columns, row)
    if row_error is not None:
        return None, [ValidationError(message=row_error, row_index=row_index)]

    cleaned: dict[str, Any] = {}
    errors: list[ValidationError] = []
    for column, raw in zip(columns, values):
        try:
            value = coerce_value(column, raw)
        except CoercionError as exc:
            errors.append(ValidationError(message=f"{column.name}: {exc}", row_index=row_index, field=column.name))
            continue

        if value is None:
            if not column.nullable:
                errors.append(
                    ValidationError(message=f"{column.name} is required", row_index=row_index, field=column.name)
                )
            cleaned[column.name] = None
            continue

        if column.max_length is not None and isinstance(value, str) and len(value) > column.max_length:
            errors.append(
                ValidationError(
                    message=f"{column.name} exceeds {column.max_length} characters",
                    row_index=row_index,
                    field=column.name,
                )
            )
            continue

        if column.validator is not None:
            message = column.validator(value)
            if message:
                errors.append(ValidationError(message=message, row_index=row_index, field=column.name))
                continue

        cleaned[column.name] = value

    if errors:
        return None, errors
    return cleaned, []


def _default_policy() -> ErrorThresholdPolicy:
    if has_app_context():
        return ErrorThresholdPolicy.from_config(current_app.config)
    return ErrorThresholdPolicy()


def _default_recorded_errors() -> int | None:
    if has_app_context():
        return current_app.config.get("PIPELINE_MAX_RECORDED_ERRORS")
    return None


class ValidationEngine:
    """Validate row batches and apply an ``ErrorThresholdPolicy``."""

    def __init__(self, policy: ErrorThresholdPolicy | None = None, *, max_recorded_errors: int | None = None) -> None:
        self.policy = policy or _default_policy()
        self.max_recorded_errors = max_recorded_errors

    def validate(self, definition: IntegrationDefinition, rows: Iterable[Any]) -> ValidationOutcome:
        limit = definition.max_recorded_errors or self.max_recorded_errors or _default_recorded_errors()
        valid_rows: list[dict[str, Any]] = []
        errors: list[ValidationError] = []
        truncated = False
        rows_total = 0
        rows_rejected = 0

        for row_index, row in enumerate(rows, start=1):
            rows_total += 1
            cleaned, row_errors = validate_row(definition.columns, row, row_index)
            if cleaned is not None:
                valid_rows.append(cleaned)
                continue
            rows_rejected += 1
            if limit is not None and len(errors) + len(row_errors) > limit:
                errors.extend(row_errors[: max(limit - len(errors), 0)])
                truncated = True
            else:
                errors.extend(row_errors)

        if rows_total == 0 and not definition.allow_empty:
            errors.append(ValidationError(message=EMPTY_INPUT_MESSAGE))

        return ValidationOutcome(
            valid_rows=tuple(valid_rows),
            errors=tuple(errors),
            rows_total=rows_total,
            rows_rejected=rows_rejected,
            errors_truncated=truncated,
        )

    def is_acceptable(self, outcome: ValidationOutcome) -> bool:
        if outcome.file_errors:
            return False
        return not self.policy.is_exceeded(outcome.rows_rejected, outcome.rows_total)

    def enforce(self, outcome: ValidationOutcome) -> ValidationOutcome:
        """Return ``outcome`` unchanged, or raise when the batch must not be loaded."""

        if self.is_acceptable(outcome):
            return outcome
        if outcome.file_errors:
            message = outcome.file_errors[0].message
        else:
            message = (
                f"{outcome.rows_rejected} of {outcome.rows_total} rows failed validation "
                f"(max_error_count={self.policy.max_error_count}, max_error_ratio={self.policy.max_error_ratio})."
            )
        raise ValidationThresholdExceeded(
            message,
            errors=outcome.errors,
            rows_rejected=outcome.rows_rejected,
            rows_total=outcome.rows_total,
        )


def validate_rows(
    definition: IntegrationDefinition,
    rows: Iterable[Any],
    policy: ErrorThresholdPolicy | None = None,
) -> ValidationOutcome:
    """Validate ``rows`` and enforce ``policy`` in one call."""

    engine = ValidationEngine(policy)
    return engine.enforce(engine.validate(definition, rows))
