"""
Deployment-time definitions for integrations and transformations.

Definitions are code, not database rows, so they are versioned with the
application and reviewed like any other change. Every field that ends up in
SQL is still re-validated by the identifier layer at run time.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Tuple

from backoffice.models.pipeline.schema import RunStatus

Validator = Callable[[Any], Optional[str]]


class ColumnType(str, enum.Enum):
    """Coercion target for a parsed value."""

    STRING = "string"
    INT = "int"
    DECIMAL = "decimal"
    DATE = "date"


class SourceFormat(str, enum.Enum):
    CSV = "csv"
    PIPE = "pipe"


@dataclass(frozen=True)
class ColumnSpec:
    """One target column of an integration, in load order."""

    name: str
    type: ColumnType = ColumnType.STRING
    nullable: bool = True
    validator: Validator | None = field(default=None, compare=False, repr=False)
    max_length: int | None = None
    description: str | None = None


@dataclass(frozen=True)
class ErrorThresholdPolicy:
    """
    How many rejected rows a load tolerates before it is refused.

    ``max_error_count`` bounds the number of rejected rows and
    ``max_error_ratio`` bounds rejected/total. Either limit is exceeded only
    when strictly passed; ``None`` disables that limit.
    """

    max_error_ratio: float | None = None
    max_error_count: int | None = 0

    def __post_init__(self) -> None:
        if self.max_error_ratio is not None and not 0 <= self.max_error_ratio <= 1:
            raise ValueError("max_error_ratio must be between 0 and 1.")
        if self.max_error_count is not None and self.max_error_count < 0:
            raise ValueError("max_error_count must be zero or positive.")

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ErrorThresholdPolicy":
        return cls(
            max_error_ratio=config.get("PIPELINE_MAX_ERROR_RATIO"),
            max_error_count=config.get("PIPELINE_MAX_ERROR_COUNT", 0),
        )

    def is_exceeded(self, rows_rejected: int, rows_total: int) -> bool:
        if self.max_error_count is not None and rows_rejected > self.max_error_count:
            return True
        if self.max_error_ratio is not None and rows_total > 0:
            return rows_rejected / rows_total > self.max_error_ratio
        return False


@dataclass(frozen=True)
class IntegrationDefinition:
    """Static description of a staging-table import."""

    id: str
    name: str
    target_table: str
    columns: Tuple[ColumnSpec, ...]
    target_schema: str = "workspace"
    description: str = ""
    category: str = "general"
    source_format: SourceFormat = SourceFormat.CSV
    has_header: bool = True
    unique_key: Tuple[str, ...] = ()
    allow_empty: bool = False
    file_types: Tuple[str, ...] = ("csv",)
    max_recorded_errors: int | None = None

    @property
    def qualified_target(self) -> str:
        return f"{self.target_schema}.{self.target_table}"

    @property
    def column_names(self) -> Tuple[str, ...]:
        return tuple(column.name for column in self.columns)


@dataclass(frozen=True)
class TransformationDefinition:
    """Static description of a curated-table rebuild."""

    id: str
    name: str
    target_table: str
    sql: str
    target_schema: str = "reference"
    description: str = ""
    sources: Tuple[str, ...] = ()
    dependencies: Tuple[str, ...] = ()
    expected_min_rows: int | None = None

    @property
    def qualified_target(self) -> str:
        return f"{self.target_schema}.{self.target_table}"


@dataclass(frozen=True)
class ValidationError:
    """A single rejected value or row; ``row_index`` is 1-based."""

    message: str
    row_index: int | None = None
    field: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"row_index": self.row_index, "field": self.field, "message": self.message}


@dataclass(frozen=True)
class RunResult:
    """Outcome returned to callers of the import and transformation services."""

    status: RunStatus
    rows_processed: int = 0
    errors: Tuple[ValidationError, ...] = ()
    run_id: int | None = None
    failure_reason: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    def as_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "rows_processed": self.rows_processed,
            "error_count": len(self.errors),
            "errors": [error.as_dict() for error in self.errors],
            "failure_reason": self.failure_reason,
        }
