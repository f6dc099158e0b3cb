"""
Run ledger: append-only history of import and transformation runs.

The ledger records what happened; it is not a lock. Runs move through
``pending -> running -> succeeded|failed`` and a run that has reached a
terminal status can no longer be edited or deleted. ``install_ledger_guard``
enforces that at flush time for every session, so code that bypasses
``RunLedger`` is held to the same rules.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import and_, event, func, inspect, or_
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session

from backoffice.models import db
from backoffice.models.pipeline.schema import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    IntegrationRun,
    PipelineRun,
    RunKind,
    RunStatus,
    TransformationRun,
)

from .definitions import ValidationError
from .errors import RunLedgerError

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100
DEFAULT_SORT = "-started_at"

VALID_SORT_FIELDS = {
    "id": PipelineRun.id,
    "run_id": PipelineRun.id,
    "definition_id": PipelineRun.definition_id,
    "status": PipelineRun.status,
    "started_at": PipelineRun.started_at,
    "finished_at": PipelineRun.finished_at,
    "created_at": PipelineRun.created_at,
}


# -------------------------------------------------------------------------
# Flush-time guard
# -------------------------------------------------------------------------


def _previous_status(run: PipelineRun) -> tuple[RunStatus | None, RunStatus | None]:
    history = inspect(run).attrs.status.load_history()
    if history.deleted:
        return history.deleted[0], history.added[0] if history.added else None
    if history.unchanged:
        return history.unchanged[0], None
    return None, history.added[0] if history.added else None


def _guard_run_mutations(session: Session, flush_context, instances) -> None:
    for obj in session.deleted:
        if isinstance(obj, PipelineRun):
            raise RunLedgerError(f"Pipeline run {obj.id} cannot be deleted; the run ledger is append-only.")

    for obj in session.dirty:
        if not isinstance(obj, PipelineRun):
            continue
        if not session.is_modified(obj, include_collections=False):
            continue
        previous, new = _previous_status(obj)
        if previous is None:
            continue
        previous = RunStatus(previous)
        if previous in TERMINAL_STATUSES:
            raise RunLedgerError(f"Pipeline run {obj.id} is {previous.value} and can no longer be modified.")
        if new is not None and RunStatus(new) != previous and RunStatus(new) not in ALLOWED_TRANSITIONS[previous]:
            raise RunLedgerError(
                f"Pipeline run {obj.id} cannot move from {previous.value} to {RunStatus(new).value}."
            )


def install_ledger_guard() -> None:
    """Register the append-only guard on every SQLAlchemy session (idempotent)."""

    if not event.contains(Session, "before_flush", _guard_run_mutations):
        event.listen(Session, "before_flush", _guard_run_mutations)


# -------------------------------------------------------------------------
# Filters and result shapes
# -------------------------------------------------------------------------


@dataclass(frozen=True)
class RunFilters:
    """Canonical set of filter options applied to pipeline run queries."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    sort: str = DEFAULT_SORT
    statuses: tuple[RunStatus, ...] = field(default_factory=tuple)
    kinds: tuple[RunKind, ...] = field(default_factory=tuple)
    definition_ids: tuple[str, ...] = field(default_factory=tuple)
    search: str | None = None
    started_from: datetime | None = None
    started_to: datetime | None = None

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        sort: str | None = None,
        statuses: Iterable[str] | None = None,
        kinds: Iterable[str] | None = None,
        definition_ids: Iterable[str] | None = None,
        search: str | None = None,
        started_from: str | datetime | None = None,
        started_to: str | datetime | None = None,
    ) -> "RunFilters":
        """
        Coerce mixed user input into a validated ``RunFilters`` instance.
        """

        resolved_page = _coerce_positive_int(page, fallback=DEFAULT_PAGE)
        resolved_size = min(_coerce_positive_int(page_size, fallback=DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE)

        resolved_sort = sort or DEFAULT_SORT
        sort_key = resolved_sort.lstrip("-")
        if sort_key not in VALID_SORT_FIELDS:
            raise ValueError(f"Unsupported sort field '{sort_key}'.")

        resolved_statuses = tuple(_coerce_enum(RunStatus, value, "status") for value in (statuses or ()) if value)
        resolved_kinds = tuple(_coerce_enum(RunKind, value, "kind") for value in (kinds or ()) if value)
        resolved_definitions = tuple(sorted({d.strip().lower() for d in (definition_ids or ()) if d and d.strip()}))

        resolved_search = search.strip() if isinstance(search, str) and search.strip() else None

        resolved_started_from = _coerce_datetime(started_from)
        resolved_started_to = _coerce_datetime(started_to, end_of_day=True)

        if resolved_started_from and resolved_started_to and resolved_started_from > resolved_started_to:
            raise ValueError("started_from must be before started_to.")

        return cls(
            page=resolved_page,
            page_size=resolved_size,
            sort=resolved_sort,
            statuses=resolved_statuses,
            kinds=resolved_kinds,
            definition_ids=resolved_definitions,
            search=resolved_search,
            started_from=resolved_started_from,
            started_to=resolved_started_to,
        )


@dataclass(slots=True)
class RunSummary:
    """Summarized representation of a pipeline run."""

    id: int
    kind: str
    definition_id: str
    status: str
    target_table: str | None
    started_at: datetime | None
    finished_at: datetime | None
    duration_seconds: float | None
    rows_processed: int
    error_count: int
    failure_reason: str | None
    triggered_by: str | None
    rows_received: int | None = None
    rows_rejected: int | None = None
    filename: str | None = None
    expected_min_rows: int | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "definition_id": self.definition_id,
            "status": self.status,
            "target_table": self.target_table,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
            "rows_processed": self.rows_processed,
            "error_count": self.error_count,
            "failure_reason": self.failure_reason,
            "triggered_by": self.triggered_by,
            "rows_received": self.rows_received,
            "rows_rejected": self.rows_rejected,
            "filename": self.filename,
            "expected_min_rows": self.expected_min_rows,
        }


@dataclass(slots=True)
class RunListResult:
    """Paginated result set for pipeline runs."""

    items: list[RunSummary]
    total: int
    page: int
    page_size: int
    total_pages: int


@dataclass(slots=True)
class RunStats:
    """Aggregate statistics for pipeline runs."""

    total: int
    statuses: Mapping[str, int]
    kinds: Mapping[str, int]
    definitions: Mapping[str, int]


# -------------------------------------------------------------------------
# Ledger service
# -------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def serialize_errors(errors: Sequence[ValidationError]) -> list[dict[str, Any]]:
    return [error.as_dict() for error in errors]


class RunLedger:
    """Create, advance, and query pipeline runs with consistent semantics."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    # ---------------------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------------------

    def start_integration_run(
        self,
        definition_id: str,
        *,
        target_table: str | None = None,
        filename: str | None = None,
        triggered_by: str | None = None,
    ) -> IntegrationRun:
        run = IntegrationRun(
            definition_id=definition_id,
            status=RunStatus.PENDING,
            target_table=target_table,
            filename=filename,
            triggered_by=triggered_by,
            rows_processed=0,
            error_count=0,
        )
        return self._persist_new(run)

    def start_transformation_run(
        self,
        definition_id: str,
        *,
        target_table: str | None = None,
        expected_min_rows: int | None = None,
        triggered_by: str | None = None,
    ) -> TransformationRun:
        run = TransformationRun(
            definition_id=definition_id,
            status=RunStatus.PENDING,
            target_table=target_table,
            expected_min_rows=expected_min_rows,
            triggered_by=triggered_by,
            rows_processed=0,
            error_count=0,
        )
        return self._persist_new(run)

    def transition(self, run: PipelineRun, status: RunStatus, **fields: Any) -> PipelineRun:
        """
        Move ``run`` to ``status`` and persist ``fields`` in the same commit.

        Raises ``RunLedgerError`` for transitions outside the state machine.
        """

        current = RunStatus(run.status)
        if status not in ALLOWED_TRANSITIONS[current]:
            raise RunLedgerError(f"Pipeline run {run.id} cannot move from {current.value} to {status.value}.")

        for name, value in fields.items():
            if not hasattr(type(run), name):
                raise AttributeError(f"{type(run).__name__} has no field '{name}'.")
            setattr(run, name, value)
        run.status = status
        if status == RunStatus.RUNNING and run.started_at is None:
            run.started_at = _utcnow()
        if status in TERMINAL_STATUSES:
            if run.started_at is None:
                run.started_at = _utcnow()
            run.finished_at = _utcnow()
        self.session.commit()
        return run

    def mark_running(self, run: PipelineRun) -> PipelineRun:
        return self.transition(run, RunStatus.RUNNING)

    def mark_succeeded(self, run: PipelineRun, *, rows_processed: int, **fields: Any) -> PipelineRun:
        return self.transition(run, RunStatus.SUCCEEDED, rows_processed=rows_processed, **fields)

    def mark_failed(
        self,
        run: PipelineRun,
        *,
        failure_reason: str | None,
        errors: Sequence[ValidationError] = (),
        **fields: Any,
    ) -> PipelineRun:
        payload: dict[str, Any] = {"failure_reason": failure_reason}
        if errors:
            payload["errors_json"] = serialize_errors(errors)
            payload["error_count"] = len(errors)
        payload.update(fields)
        return self.transition(run, RunStatus.FAILED, **payload)

    # ---------------------------------------------------------------------
    # Queries
    # ---------------------------------------------------------------------

    def list_runs(self, filters: RunFilters) -> RunListResult:
        query = self._apply_filters(self._base_query(), filters)

        total = query.count()
        if total == 0:
            return RunListResult(items=[], total=0, page=filters.page, page_size=filters.page_size, total_pages=0)

        paginated = query.offset((filters.page - 1) * filters.page_size).limit(filters.page_size).all()
        summaries = [self.summarize(run) for run in paginated]

        total_pages = (total + filters.page_size - 1) // filters.page_size
        return RunListResult(
            items=summaries, total=total, page=filters.page, page_size=filters.page_size, total_pages=total_pages
        )

    def get_run(self, run_id: int) -> PipelineRun:
        run = self._base_query().filter(PipelineRun.id == run_id).one_or_none()
        if run is None:
            raise NoResultFound(f"Pipeline run {run_id} not found.")
        return run

    def runs_for_definition(self, definition_id: str, *, limit: int = 20) -> list[PipelineRun]:
        return (
            self._base_query()
            .filter(PipelineRun.definition_id == definition_id)
            .order_by(PipelineRun.id.desc())
            .limit(limit)
            .all()
        )

    def latest_run(self, definition_id: str, *, status: RunStatus | None = None) -> PipelineRun | None:
        query = self._base_query().filter(PipelineRun.definition_id == definition_id)
        if status is not None:
            query = query.filter(PipelineRun.status == status)
        return query.order_by(PipelineRun.id.desc()).first()

    def get_stats(self, filters: RunFilters | None = None) -> RunStats:
        query = self._apply_filters(self._base_query(), filters or RunFilters(), include_sort=False)

        status_counts = {
            _enum_value(status): count
            for status, count in query.with_entities(PipelineRun.status, func.count()).group_by(PipelineRun.status)
        }
        kind_counts = {
            _enum_value(kind): count
            for kind, count in query.with_entities(PipelineRun.kind, func.count()).group_by(PipelineRun.kind)
        }
        definition_counts = {
            definition_id: count
            for definition_id, count in query.with_entities(PipelineRun.definition_id, func.count()).group_by(
                PipelineRun.definition_id
            )
        }
        total = sum(status_counts.values())
        return RunStats(total=total, statuses=status_counts, kinds=kind_counts, definitions=definition_counts)

    def summarize(self, run: PipelineRun) -> RunSummary:
        return RunSummary(
            id=run.id,
            kind=_enum_value(run.kind),
            definition_id=run.definition_id,
            status=_enum_value(run.status),
            target_table=run.target_table,
            started_at=run.started_at,
            finished_at=run.finished_at,
            duration_seconds=run.duration_seconds,
            rows_processed=run.rows_processed or 0,
            error_count=run.error_count or 0,
            failure_reason=run.failure_reason,
            triggered_by=run.triggered_by,
            rows_received=getattr(run, "rows_received", None),
            rows_rejected=getattr(run, "rows_rejected", None),
            filename=getattr(run, "filename", None),
            expected_min_rows=getattr(run, "expected_min_rows", None),
        )

    # ---------------------------------------------------------------------
    # Internal helpers
    # ---------------------------------------------------------------------

    def _persist_new(self, run: PipelineRun) -> PipelineRun:
        self.session.add(run)
        self.session.commit()
        return run

    def _base_query(self):
        return self.session.query(PipelineRun)

    def _apply_filters(self, query, filters: RunFilters, *, include_sort: bool = True):
        predicates = []

        if filters.statuses:
            predicates.append(PipelineRun.status.in_(filters.statuses))

        if filters.kinds:
            predicates.append(PipelineRun.kind.in_(filters.kinds))

        if filters.definition_ids:
            predicates.append(PipelineRun.definition_id.in_(filters.definition_ids))

        if filters.started_from:
            predicates.append(PipelineRun.started_at >= filters.started_from)

        if filters.started_to:
            predicates.append(PipelineRun.started_at <= filters.started_to)

        if filters.search:
            predicates.append(_build_search_predicate(filters.search))

        if predicates:
            query = query.filter(and_(*predicates))

        if include_sort:
            query = query.order_by(_resolve_sort_expression(filters.sort), PipelineRun.id.desc())

        return query


# -------------------------------------------------------------------------
# Helper functions
# -------------------------------------------------------------------------


def _enum_value(value: Any) -> str:
    return value.value if hasattr(value, "value") else str(value)


def _coerce_positive_int(candidate: int | str | None, *, fallback: int) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.isdigit():
        return max(1, int(candidate))
    raise ValueError(f"Expected positive integer for pagination, received '{candidate}'.")


def _coerce_enum(enum_cls, value, label: str):
    if isinstance(value, enum_cls):
        return value
    normalized = str(value).strip().lower()
    try:
        return enum_cls(normalized)
    except ValueError:
        raise ValueError(f"Unsupported {label} filter '{value}'.") from None


def _coerce_datetime(candidate: str | datetime | None, *, end_of_day: bool = False) -> datetime | None:
    if candidate in (None, ""):
        return None
    if isinstance(candidate, datetime):
        return candidate if candidate.tzinfo else candidate.replace(tzinfo=timezone.utc)
    text_value = str(candidate).strip()
    for fmt in ("%Y-%m-%d", "%Y-%m-%dT%H:%M", "%Y-%m-%dT%H:%M:%S"):
        try:
            parsed = datetime.strptime(text_value, fmt)
        except ValueError:
            continue
        if fmt == "%Y-%m-%d":
            parsed = datetime.combine(parsed.date(), time.max if end_of_day else time.min)
        return parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"Unable to parse datetime value '{candidate}'. Expected ISO-like formats.")


def _resolve_sort_expression(sort: str):
    descending = sort.startswith("-")
    sort_key = sort.lstrip("-")
    expression = VALID_SORT_FIELDS.get(sort_key)
    if expression is None:
        raise ValueError(f"Unsupported sort field '{sort}'.")
    return expression.desc() if descending else expression.asc()


def _build_search_predicate(term: str):
    """Search by run id exact match or definition/target partial match."""
    like_pattern = f"%{term.lower()}%"
    predicates = [
        func.lower(PipelineRun.definition_id).like(like_pattern),
        func.lower(PipelineRun.target_table).like(like_pattern),
    ]
    if term.isdigit():
        predicates.append(PipelineRun.id == int(term))
    return or_(*predicates)
