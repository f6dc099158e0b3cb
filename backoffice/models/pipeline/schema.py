"""
SQLAlchemy models for the pipeline run ledger.

Every import and transformation execution writes one ``pipeline_runs`` row.
Rows move through ``pending -> running -> succeeded|failed`` and are never
edited or deleted once terminal; the ledger service enforces that at flush
time.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, Index
from sqlalchemy.orm import Mapped, mapped_column

from ..base import BaseModel, db


class RunStatus(str, enum.Enum):
    """Lifecycle states for a pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED})

# There is no retry state; a failed run is re-invoked as a new run.
ALLOWED_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.FAILED}),
    RunStatus.RUNNING: frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED}),
    RunStatus.SUCCEEDED: frozenset(),
    RunStatus.FAILED: frozenset(),
}


class RunKind(str, enum.Enum):
    """Which service produced the run."""

    INTEGRATION = "integration"
    TRANSFORMATION = "transformation"


class PipelineRun(BaseModel):
    """Metadata describing a single import or transformation execution."""

    __tablename__ = "pipeline_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    kind: Mapped[RunKind] = mapped_column(
        Enum(RunKind, name="pipeline_run_kind_enum"),
        nullable=False,
        index=True,
    )
    definition_id: Mapped[str] = mapped_column(db.String(100), nullable=False, index=True)
    status: Mapped[RunStatus] = mapped_column(
        Enum(RunStatus, name="pipeline_run_status_enum"),
        nullable=False,
        default=RunStatus.PENDING,
        index=True,
        active_history=True,
    )
    target_table: Mapped[str | None] = mapped_column(db.String(130), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    rows_processed: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    errors_json: Mapped[list | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Validation errors as a JSON array of {row_index, field, message}.",
    )
    error_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    failure_reason: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    triggered_by: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    counts_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    __mapper_args__ = {"polymorphic_on": "kind"}
    __table_args__ = (Index("idx_pipeline_runs_definition_status", "definition_id", "status"),)

    @property
    def errors(self) -> list:
        return list(self.errors_json or [])

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def __repr__(self):
        status = self.status.value if isinstance(self.status, RunStatus) else self.status
        return f"<{type(self).__name__} {self.id} {self.definition_id} {status}>"


class IntegrationRun(PipelineRun):
    """Run of the import service loading one staging table."""

    __mapper_args__ = {"polymorphic_identity": RunKind.INTEGRATION}

    filename: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    rows_received: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    rows_rejected: Mapped[int | None] = mapped_column(db.Integer, nullable=True)


class TransformationRun(PipelineRun):
    """Run of the transformation service rebuilding one curated table."""

    __mapper_args__ = {"polymorphic_identity": RunKind.TRANSFORMATION}

    expected_min_rows: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
