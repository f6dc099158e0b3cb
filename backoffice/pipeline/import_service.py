"""
Import service: validate parsed rows and reload one staging table atomically.

A load is a single transaction on the data engine: advisory lock, truncate,
batched inserts, then a row count. Either the table ends up holding exactly
the validated rows of this run or it keeps its previous contents.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from flask import current_app
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backoffice.models.pipeline.schema import TERMINAL_STATUSES, RunKind, RunStatus

from . import metrics
from .adapters import missing_columns, read_rows
from .definitions import ErrorThresholdPolicy, IntegrationDefinition, RunResult
from .errors import IdentifierError, PipelineDatabaseError, ValidationThresholdExceeded, redact_credentials
from .identifiers import QualifiedTable, SafeIdentifier, quote_columns, safe_table_name
from .ledger import RunLedger, serialize_errors
from .sql import (
    advisory_lock_statement,
    build_insert,
    count_statement,
    rows_as_tuples,
    rows_per_statement,
    sqlalchemy_type_for,
    statement_timeout_statement,
    truncate_statement,
)
from .utils import get_data_engine
from .validation import ValidationEngine, ValidationOutcome


def collapse_duplicate_keys(
    rows: Sequence[Mapping[str, Any]], unique_key: Sequence[str]
) -> tuple[list[Mapping[str, Any]], int]:
    """
    Keep the last row for each unique-key value, in first-seen order.

    Returns the surviving rows and how many were dropped. Without a key the
    rows pass through untouched.
    """

    if not unique_key:
        return list(rows), 0
    latest: dict[tuple[Any, ...], Mapping[str, Any]] = {}
    for row in rows:
        latest[tuple(row.get(name) for name in unique_key)] = row
    return list(latest.values()), len(rows) - len(latest)


class ImportService:
    """Run integration definitions against the data database."""

    def __init__(
        self,
        *,
        ledger: RunLedger | None = None,
        engine: Engine | None = None,
        batch_size: int | None = None,
        statement_timeout_ms: int | None = None,
    ) -> None:
        config = current_app.config
        self.ledger = ledger or RunLedger()
        self.engine = engine or get_data_engine()
        self.batch_size = batch_size or config.get("PIPELINE_BATCH_SIZE", 1000)
        self.statement_timeout_ms = (
            statement_timeout_ms
            if statement_timeout_ms is not None
            else config.get("PIPELINE_STATEMENT_TIMEOUT_MS")
        )

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------

    def run_import(
        self,
        definition: IntegrationDefinition,
        rows: Iterable[Any],
        *,
        filename: str | None = None,
        triggered_by: str | None = None,
        policy: ErrorThresholdPolicy | None = None,
    ) -> RunResult:
        """
        Validate ``rows`` and truncate-and-reload the definition's target table.

        ``IdentifierError`` is recorded and re-raised before any data I/O.
        Threshold and database failures are recorded and returned as a failed
        ``RunResult``; in both cases the target table keeps its prior contents.
        """

        started = time.monotonic()
        run = self.ledger.start_integration_run(
            definition.id,
            target_table=definition.qualified_target,
            filename=filename,
            triggered_by=triggered_by,
        )
        run_id = run.id

        try:
            table, columns, conflict_key = self._resolve_identifiers(definition)
        except IdentifierError as exc:
            self.ledger.mark_failed(run, failure_reason=str(exc))
            metrics.record_identifier_rejection(RunKind.INTEGRATION.value)
            self._finish(definition, run_id, RunStatus.FAILED, started, failure_reason=str(exc))
            raise

        self.ledger.mark_running(run)

        try:
            engine = ValidationEngine(policy)
            outcome = engine.validate(definition, rows)
            metrics.record_rejections(definition.id, outcome.rows_rejected)
            try:
                engine.enforce(outcome)
            except ValidationThresholdExceeded as exc:
                self.ledger.mark_failed(
                    run,
                    failure_reason=str(exc),
                    errors=outcome.errors,
                    rows_received=outcome.rows_total,
                    rows_rejected=outcome.rows_rejected,
                )
                self._finish(definition, run_id, RunStatus.FAILED, started, failure_reason=str(exc))
                return RunResult(
                    status=RunStatus.FAILED,
                    rows_processed=0,
                    errors=outcome.errors,
                    run_id=run_id,
                    failure_reason=str(exc),
                )

            records, duplicates = collapse_duplicate_keys(outcome.valid_rows, definition.unique_key)
            column_types = [sqlalchemy_type_for(column.type) for column in definition.columns]
            try:
                rows_processed = self._load(table, columns, conflict_key, records, column_types)
            except SQLAlchemyError as exc:
                error = PipelineDatabaseError.from_exception(exc)
                self.ledger.mark_failed(
                    run,
                    failure_reason=str(error),
                    errors=outcome.errors,
                    rows_received=outcome.rows_total,
                    rows_rejected=outcome.rows_rejected,
                )
                self._finish(definition, run_id, RunStatus.FAILED, started, failure_reason=str(error))
                return RunResult(
                    status=RunStatus.FAILED,
                    rows_processed=0,
                    errors=outcome.errors,
                    run_id=run_id,
                    failure_reason=str(error),
                )

            self.ledger.mark_succeeded(
                run,
                rows_processed=rows_processed,
                errors_json=serialize_errors(outcome.errors),
                error_count=len(outcome.errors),
                rows_received=outcome.rows_total,
                rows_rejected=outcome.rows_rejected,
                counts_json=_counts_payload(outcome, records_written=len(records), duplicates=duplicates),
            )
        except Exception as exc:
            self.ledger.session.rollback()
            if RunStatus(run.status) not in TERMINAL_STATUSES:
                reason = redact_credentials(str(exc)) or type(exc).__name__
                self.ledger.mark_failed(run, failure_reason=reason)
                self._finish(definition, run_id, RunStatus.FAILED, started, failure_reason=reason)
            raise

        self._finish(definition, run_id, RunStatus.SUCCEEDED, started, rows_processed=rows_processed)
        return RunResult(
            status=RunStatus.SUCCEEDED,
            rows_processed=rows_processed,
            errors=outcome.errors,
            run_id=run_id,
        )

    def import_file(
        self,
        definition: IntegrationDefinition,
        path: Path,
        *,
        triggered_by: str | None = None,
        policy: ErrorThresholdPolicy | None = None,
        display_name: str | None = None,
    ) -> RunResult:
        """Parse ``path`` with the definition's reader and run the import."""

        with path.open("r", encoding="utf-8", newline="") as handle:
            absent = missing_columns(definition, handle)
            if absent:
                current_app.logger.warning(
                    "Pipeline upload is missing columns",
                    extra={"pipeline_definition": definition.id, "pipeline_missing_columns": list(absent)},
                )
            return self.run_import(
                definition,
                read_rows(definition, handle),
                filename=display_name or path.name,
                triggered_by=triggered_by,
                policy=policy,
            )

    # ---------------------------------------------------------------------
    # Internal helpers
    # ---------------------------------------------------------------------

    @staticmethod
    def _resolve_identifiers(
        definition: IntegrationDefinition,
    ) -> tuple[QualifiedTable, tuple[SafeIdentifier, ...], tuple[SafeIdentifier, ...]]:
        table = safe_table_name(definition.target_table, definition.target_schema)
        columns = quote_columns(definition.column_names)
        conflict_key: tuple[SafeIdentifier, ...] = ()
        if definition.unique_key:
            conflict_key = quote_columns(definition.unique_key)
            unknown = [name for name in definition.unique_key if name not in definition.column_names]
            if unknown:
                raise IdentifierError(
                    f"Unique key columns {unknown!r} are not part of {definition.id}'s column list.",
                    identifier=unknown[0],
                )
        return table, columns, conflict_key

    def _load(
        self,
        table: QualifiedTable,
        columns: tuple[SafeIdentifier, ...],
        conflict_key: tuple[SafeIdentifier, ...],
        records: Sequence[Mapping[str, Any]],
        column_types: Sequence[Any],
    ) -> int:
        dialect_name = self.engine.dialect.name
        values = rows_as_tuples(records, columns)
        per_statement = rows_per_statement(len(columns), self.batch_size, dialect_name)

        with self.engine.begin() as connection:
            timeout = statement_timeout_statement(self.statement_timeout_ms, dialect_name=dialect_name)
            if timeout is not None:
                connection.execute(timeout)
            lock = advisory_lock_statement(table, dialect_name=dialect_name)
            if lock is not None:
                connection.execute(lock)

            connection.execute(truncate_statement(table, dialect_name=dialect_name))
            for start in range(0, len(values), per_statement):
                connection.execute(
                    build_insert(
                        table,
                        columns,
                        values[start : start + per_statement],
                        column_types=column_types,
                        conflict_key=conflict_key,
                    )
                )
            return int(connection.execute(count_statement(table)).scalar_one())

    @staticmethod
    def _finish(
        definition: IntegrationDefinition,
        run_id: int,
        status: RunStatus,
        started: float,
        *,
        rows_processed: int = 0,
        failure_reason: str | None = None,
    ) -> None:
        duration = time.monotonic() - started
        metrics.record_run(
            kind=RunKind.INTEGRATION.value,
            status=status.value,
            duration_seconds=duration,
            definition_id=definition.id,
            rows_processed=rows_processed,
        )
        extra = {
            "pipeline_run_id": run_id,
            "pipeline_definition": definition.id,
            "pipeline_target": definition.qualified_target,
            "pipeline_status": status.value,
            "pipeline_rows_processed": rows_processed,
            "pipeline_duration_seconds": round(duration, 3),
        }
        if status == RunStatus.SUCCEEDED:
            current_app.logger.info("Pipeline import completed", extra=extra)
        else:
            extra["pipeline_failure_reason"] = failure_reason
            current_app.logger.warning("Pipeline import failed", extra=extra)


def _counts_payload(outcome: ValidationOutcome, *, records_written: int, duplicates: int) -> dict[str, int | bool]:
    return {
        "rows_received": outcome.rows_total,
        "rows_accepted": outcome.rows_accepted,
        "rows_rejected": outcome.rows_rejected,
        "rows_written": records_written,
        "duplicate_keys_collapsed": duplicates,
        "errors_truncated": outcome.errors_truncated,
    }


def run_import(definition: IntegrationDefinition, rows: Iterable[Any], **kwargs: Any) -> RunResult:
    """Module-level convenience wrapper around ``ImportService.run_import``."""

    return ImportService().run_import(definition, rows, **kwargs)
