"""
Pipeline Celery tasks.

Each task executes exactly one import or transformation batch synchronously
inside the worker's application context; the services own ledger bookkeeping.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

from celery import shared_task
from flask import current_app

from .import_service import ImportService
from .registry import get_integration, get_transformation, resolve_transformations
from .transform_service import TransformationService
from .utils import cleanup_upload


@shared_task(name="pipeline.healthcheck", bind=True)
def pipeline_healthcheck(self) -> dict[str, Any]:
    """
    Simple heartbeat task used by worker health checks.
    """
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
        "app_version": getattr(self.app, "user_options", {}).get("version"),
    }


@shared_task(name="pipeline.run_import", bind=True)
def run_import_task(
    self,
    *,
    definition_id: str,
    file_path: str,
    keep_file: bool = False,
    triggered_by: str | None = None,
    display_name: str | None = None,
) -> dict[str, Any]:
    """
    Import a staged upload for ``definition_id`` through the import service.
    """

    definition = get_integration(definition_id)
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"Upload not found: {file_path}")

    cleanup_target: Path | None = None if keep_file else path
    try:
        result = ImportService().import_file(
            definition,
            path,
            triggered_by=triggered_by,
            display_name=display_name,
        )
    finally:
        if cleanup_target is not None:
            cleanup_upload(cleanup_target)

    current_app.logger.info(
        "Pipeline import task finished",
        extra={
            "pipeline_task_id": self.request.id,
            "pipeline_definition": definition_id,
            "pipeline_run_id": result.run_id,
            "pipeline_status": result.status.value,
        },
    )
    return result.as_dict()


@shared_task(name="pipeline.run_transformation", bind=True)
def run_transformation_task(self, *, definition_id: str, triggered_by: str | None = None) -> dict[str, Any]:
    """
    Rebuild one curated table. Identifier and row-count failures propagate so
    the task is marked failed; the ledger already holds the failed run.
    """

    definition = get_transformation(definition_id)
    result = TransformationService().run_transformation(definition, triggered_by=triggered_by)
    current_app.logger.info(
        "Pipeline transformation task finished",
        extra={
            "pipeline_task_id": self.request.id,
            "pipeline_definition": definition_id,
            "pipeline_run_id": result.run_id,
            "pipeline_status": result.status.value,
        },
    )
    return result.as_dict()


@shared_task(name="pipeline.run_all_transformations", bind=True)
def run_all_transformations_task(
    self,
    *,
    definition_ids: Sequence[str] | None = None,
    triggered_by: str | None = None,
) -> dict[str, Any]:
    """
    Run the requested transformations (all registered ones by default) in
    dependency order and report each outcome.
    """

    definitions = resolve_transformations(definition_ids)
    results = TransformationService().run_transformations(definitions, triggered_by=triggered_by)
    return {definition_id: result.as_dict() for definition_id, result in results.items()}
