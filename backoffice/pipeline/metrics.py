"""Prometheus metrics helpers for the pipeline."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Histogram

_runs_counter = Counter(
    "pipeline_runs_total",
    "Pipeline runs by kind and terminal status.",
    ["kind", "status"],
)
_run_duration = Histogram(
    "pipeline_run_duration_seconds",
    "Duration of pipeline runs in seconds.",
    ["kind"],
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600),
)
_rows_loaded = Counter(
    "pipeline_rows_loaded_total",
    "Rows present in target tables after successful runs.",
    ["kind", "definition"],
)
_rows_rejected = Counter(
    "pipeline_rows_rejected_total",
    "Rows rejected by the validation engine.",
    ["definition"],
)
_identifier_rejections = Counter(
    "pipeline_identifier_rejections_total",
    "Runs refused because a table or column identifier failed validation.",
    ["kind"],
)


def record_run(
    *,
    kind: Literal["integration", "transformation"],
    status: Literal["succeeded", "failed"],
    duration_seconds: float,
    definition_id: str,
    rows_processed: int = 0,
) -> None:
    """Capture metrics for a finished run."""

    _runs_counter.labels(kind=kind, status=status).inc()
    _run_duration.labels(kind=kind).observe(max(duration_seconds, 0.0))
    if status == "succeeded" and rows_processed:
        _rows_loaded.labels(kind=kind, definition=definition_id).inc(rows_processed)


def record_rejections(definition_id: str, count: int) -> None:
    """Increment the validation rejection counter."""

    if count <= 0:
        return
    _rows_rejected.labels(definition=definition_id).inc(count)


def record_identifier_rejection(kind: Literal["integration", "transformation"]) -> None:
    _identifier_rejections.labels(kind=kind).inc()
