"""
Transformation service: rebuild curated tables from staging data.

Each transformation truncates its target and re-executes its recipe inside
one transaction, then checks the resulting row count. A recipe may only read
from and write to whitelisted schemas, and it must be a single statement.
"""

from __future__ import annotations

import re
import time
from typing import Any, Iterable, Mapping, Sequence

from flask import current_app
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backoffice.models.pipeline.schema import TERMINAL_STATUSES, RunKind, RunStatus

from . import metrics
from .definitions import RunResult, TransformationDefinition
from .errors import (
    IdentifierError,
    PipelineDatabaseError,
    PipelineError,
    RowCountMismatchError,
    redact_credentials,
)
from .identifiers import QualifiedTable, is_allowed_schema, referenced_schemas, safe_table_name, scrub_sql
from .ledger import RunLedger
from .sql import (
    advisory_lock_statement,
    count_statement,
    insert_select_statement,
    recipe_statement,
    statement_timeout_statement,
    truncate_statement,
)
from .utils import get_data_engine

_INSERT_TARGET_RE = re.compile(
    r"\binsert\s+into\s+(\"?)([A-Za-z_][A-Za-z0-9_]*)\1\s*\.\s*(\"?)([A-Za-z_][A-Za-z0-9_]*)\3",
    re.IGNORECASE,
)
_LEADING_KEYWORD_RE = re.compile(r"^\s*(\w+)", re.IGNORECASE)

UNMET_DEPENDENCIES_PREFIX = "Unmet dependencies"


def prepare_recipe(definition: TransformationDefinition, table: QualifiedTable) -> tuple[str, bool]:
    """
    Check a recipe and return ``(sql, needs_wrapping)``.

    Rejects multi-statement recipes, references to schemas outside the
    whitelist, and INSERT recipes that write anywhere but the definition's
    target. A bare SELECT (optionally with a WITH prefix) is wrapped into
    ``INSERT INTO <target>`` by the caller.
    """

    sql = (definition.sql or "").strip()
    if not sql:
        raise IdentifierError(f"Transformation {definition.id} has an empty recipe.")

    scrubbed = scrub_sql(sql).strip()
    if ";" in scrubbed.rstrip(";"):
        raise IdentifierError(f"Transformation {definition.id} recipe must be a single statement.")

    for source in definition.sources:
        safe_table_name(source)

    schemas = referenced_schemas(sql)
    disallowed = sorted(schema for schema in schemas if not is_allowed_schema(schema))
    if disallowed:
        raise IdentifierError(
            f"Transformation {definition.id} references schemas outside the whitelist: {', '.join(disallowed)}",
            identifier=disallowed[0],
        )

    targets = _INSERT_TARGET_RE.findall(scrubbed)
    if re.search(r"\binsert\b", scrubbed, re.IGNORECASE):
        if len(targets) != 1:
            raise IdentifierError(
                f"Transformation {definition.id} recipe must insert into exactly one schema-qualified table."
            )
        _, schema, _, target = targets[0]
        if (schema, target) != (table.schema.name, table.table.name):
            raise IdentifierError(
                f"Transformation {definition.id} inserts into {schema}.{target}; "
                f"expected {table.qualified_name}.",
                identifier=f"{schema}.{target}",
            )
        return sql, False

    match = _LEADING_KEYWORD_RE.match(scrubbed)
    keyword = match.group(1).lower() if match else ""
    if keyword not in ("select", "with"):
        raise IdentifierError(f"Transformation {definition.id} recipe must be a SELECT or INSERT ... SELECT.")
    return sql, True


class TransformationService:
    """Run transformation definitions against the data database."""

    def __init__(
        self,
        *,
        ledger: RunLedger | None = None,
        engine: Engine | None = None,
        statement_timeout_ms: int | None = None,
    ) -> None:
        self.ledger = ledger or RunLedger()
        self.engine = engine or get_data_engine()
        self.statement_timeout_ms = (
            statement_timeout_ms
            if statement_timeout_ms is not None
            else current_app.config.get("PIPELINE_STATEMENT_TIMEOUT_MS")
        )

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------

    def run_transformation(
        self,
        definition: TransformationDefinition,
        *,
        triggered_by: str | None = None,
    ) -> RunResult:
        """
        Truncate the target and rebuild it from the recipe in one transaction.

        ``IdentifierError`` (bad target, schema, or recipe) and
        ``RowCountMismatchError`` are recorded and re-raised; database
        failures are rolled back, recorded, and returned as a failed result.
        """

        started = time.monotonic()
        run = self.ledger.start_transformation_run(
            definition.id,
            target_table=definition.qualified_target,
            expected_min_rows=definition.expected_min_rows,
            triggered_by=triggered_by,
        )
        run_id = run.id

        try:
            table = safe_table_name(definition.target_table, definition.target_schema)
            sql, needs_wrapping = prepare_recipe(definition, table)
        except IdentifierError as exc:
            self.ledger.mark_failed(run, failure_reason=str(exc))
            metrics.record_identifier_rejection(RunKind.TRANSFORMATION.value)
            self._finish(definition, run_id, RunStatus.FAILED, started, failure_reason=str(exc))
            raise

        self.ledger.mark_running(run)

        try:
            rows_processed = self._execute(definition, table, sql, needs_wrapping)
        except RowCountMismatchError as exc:
            self.ledger.mark_failed(
                run,
                failure_reason=str(exc),
                counts_json={"rows_observed": exc.actual_rows, "expected_min_rows": exc.expected_min_rows},
            )
            self._finish(definition, run_id, RunStatus.FAILED, started, failure_reason=str(exc))
            raise
        except SQLAlchemyError as exc:
            error = PipelineDatabaseError.from_exception(exc)
            self.ledger.mark_failed(run, failure_reason=str(error))
            self._finish(definition, run_id, RunStatus.FAILED, started, failure_reason=str(error))
            return RunResult(status=RunStatus.FAILED, run_id=run_id, failure_reason=str(error))
        except Exception as exc:
            self.ledger.session.rollback()
            if RunStatus(run.status) not in TERMINAL_STATUSES:
                reason = redact_credentials(str(exc)) or type(exc).__name__
                self.ledger.mark_failed(run, failure_reason=reason)
                self._finish(definition, run_id, RunStatus.FAILED, started, failure_reason=reason)
            raise

        self.ledger.mark_succeeded(run, rows_processed=rows_processed, counts_json={"rows_written": rows_processed})
        self._finish(definition, run_id, RunStatus.SUCCEEDED, started, rows_processed=rows_processed)
        return RunResult(status=RunStatus.SUCCEEDED, rows_processed=rows_processed, run_id=run_id)

    def run_transformations(
        self,
        definitions: Iterable[TransformationDefinition],
        *,
        triggered_by: str | None = None,
    ) -> dict[str, RunResult]:
        """
        Run ``definitions`` in dependency order.

        Dependencies are satisfied only by transformations that succeed within
        this call. Anything left waiting on a failed, missing, or circular
        dependency is recorded as a failed run without touching the data
        database.
        """

        results: dict[str, RunResult] = {}
        completed: set[str] = set()
        pending = list(definitions)

        while pending:
            ready_index = next(
                (
                    index
                    for index, definition in enumerate(pending)
                    if all(dependency in completed for dependency in definition.dependencies)
                ),
                None,
            )
            if ready_index is None:
                for definition in pending:
                    results[definition.id] = self._record_unmet(definition, completed, triggered_by=triggered_by)
                break

            definition = pending.pop(ready_index)
            try:
                result = self.run_transformation(definition, triggered_by=triggered_by)
            except PipelineError as exc:
                latest = self.ledger.latest_run(definition.id)
                result = RunResult(
                    status=RunStatus.FAILED,
                    run_id=latest.id if latest is not None else None,
                    failure_reason=str(exc),
                )
            results[definition.id] = result
            if result.succeeded:
                completed.add(definition.id)

        return results

    # ---------------------------------------------------------------------
    # Internal helpers
    # ---------------------------------------------------------------------

    def _execute(
        self,
        definition: TransformationDefinition,
        table: QualifiedTable,
        sql: str,
        needs_wrapping: bool,
    ) -> int:
        dialect_name = self.engine.dialect.name
        statement = insert_select_statement(table, sql) if needs_wrapping else recipe_statement(sql)

        with self.engine.begin() as connection:
            timeout = statement_timeout_statement(self.statement_timeout_ms, dialect_name=dialect_name)
            if timeout is not None:
                connection.execute(timeout)
            lock = advisory_lock_statement(table, dialect_name=dialect_name)
            if lock is not None:
                connection.execute(lock)

            connection.execute(truncate_statement(table, dialect_name=dialect_name))
            connection.execute(statement)
            rows = int(connection.execute(count_statement(table)).scalar_one())

            if definition.expected_min_rows is not None and rows < definition.expected_min_rows:
                # Raising inside the block rolls the truncate back as well.
                raise RowCountMismatchError(
                    table.qualified_name,
                    expected_min_rows=definition.expected_min_rows,
                    actual_rows=rows,
                )
            return rows

    def _record_unmet(
        self,
        definition: TransformationDefinition,
        completed: set[str],
        *,
        triggered_by: str | None,
    ) -> RunResult:
        unmet = [dependency for dependency in definition.dependencies if dependency not in completed]
        reason = f"{UNMET_DEPENDENCIES_PREFIX}: {', '.join(unmet)}"
        run = self.ledger.start_transformation_run(
            definition.id,
            target_table=definition.qualified_target,
            expected_min_rows=definition.expected_min_rows,
            triggered_by=triggered_by,
        )
        self.ledger.mark_failed(run, failure_reason=reason)
        current_app.logger.warning(
            "Pipeline transformation skipped",
            extra={"pipeline_run_id": run.id, "pipeline_definition": definition.id, "pipeline_unmet": unmet},
        )
        metrics.record_run(
            kind=RunKind.TRANSFORMATION.value,
            status=RunStatus.FAILED.value,
            duration_seconds=0.0,
            definition_id=definition.id,
        )
        return RunResult(status=RunStatus.FAILED, run_id=run.id, failure_reason=reason)

    @staticmethod
    def _finish(
        definition: TransformationDefinition,
        run_id: int,
        status: RunStatus,
        started: float,
        *,
        rows_processed: int = 0,
        failure_reason: str | None = None,
    ) -> None:
        duration = time.monotonic() - started
        metrics.record_run(
            kind=RunKind.TRANSFORMATION.value,
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
            current_app.logger.info("Pipeline transformation completed", extra=extra)
        else:
            extra["pipeline_failure_reason"] = failure_reason
            current_app.logger.warning("Pipeline transformation failed", extra=extra)


def run_transformation(definition: TransformationDefinition, **kwargs: Any) -> RunResult:
    """Module-level convenience wrapper around ``TransformationService.run_transformation``."""

    return TransformationService().run_transformation(definition, **kwargs)


def run_transformations(definitions: Iterable[TransformationDefinition], **kwargs: Any) -> Mapping[str, RunResult]:
    return TransformationService().run_transformations(definitions, **kwargs)


def order_by_dependencies(definitions: Sequence[TransformationDefinition]) -> list[TransformationDefinition]:
    """Definitions in an order where every dependency precedes its dependants; cycles are broken depth-first."""

    by_id = {definition.id: definition for definition in definitions}
    ordered: list[TransformationDefinition] = []
    visiting: set[str] = set()
    done: set[str] = set()

    def visit(definition: TransformationDefinition) -> None:
        if definition.id in done or definition.id in visiting:
            return
        visiting.add(definition.id)
        for dependency in definition.dependencies:
            if dependency in by_id:
                visit(by_id[dependency])
        visiting.discard(definition.id)
        done.add(definition.id)
        ordered.append(definition)

    for definition in definitions:
        visit(definition)
    return ordered
