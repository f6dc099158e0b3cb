"""
CLI commands for running imports and transformations and inspecting the run ledger.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Sequence

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo

from backoffice.pipeline.celery_app import DEFAULT_QUEUE_NAME, PIPELINE_EXTENSION_KEY, get_celery_app
from backoffice.pipeline.definitions import RunResult
from backoffice.pipeline.errors import PipelineError, UnknownDefinitionError
from backoffice.pipeline.import_service import ImportService
from backoffice.pipeline.ledger import RunFilters, RunLedger
from backoffice.pipeline.registry import (
    get_integration,
    get_integration_registry,
    get_transformation,
    get_transformation_registry,
    resolve_transformations,
)
from backoffice.pipeline.transform_service import TransformationService, order_by_dependencies
from backoffice.pipeline.utils import cleanup_upload, resolve_upload_directory, stage_upload
from backoffice.utils.pipeline import get_allowed_schemas, is_pipeline_enabled

CLI_TRIGGER = "cli"


@click.group(name="pipeline", invoke_without_command=True)
@click.pass_context
def pipeline_cli(ctx):
    """
    Reference-data pipeline commands.

    Displays the allowed schemas and registered definitions when invoked
    without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_pipeline_enabled(app):
        raise click.ClickException(
            "Pipeline is disabled via PIPELINE_ENABLED=false. Enable it to run pipeline CLI commands."
        )
    if ctx.invoked_subcommand is None:
        click.echo(f"Allowed schemas: {', '.join(get_allowed_schemas(app))}")
        click.echo(f"Integrations    : {len(get_integration_registry())}")
        click.echo(f"Transformations : {len(get_transformation_registry())}")


def get_disabled_pipeline_group() -> click.Group:
    """
    Return a minimal command group that informs the operator the pipeline is disabled.
    """

    @click.group(name="pipeline", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Pipeline commands are unavailable because PIPELINE_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Celery:
    """
    Retrieve the registered Celery instance, raising a helpful error if missing.
    """
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Pipeline Celery app is unavailable. Ensure PIPELINE_ENABLED=true and the "
            "pipeline package initialises before running worker commands."
        )
    return celery_app


def _echo_result(result: RunResult, *, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(result.as_dict(), indent=2, sort_keys=True))
        return
    click.echo(f"Run {result.run_id} finished with status {result.status.value}.")
    click.echo(f"  rows_processed: {result.rows_processed}")
    click.echo(f"  errors        : {len(result.errors)}")
    if result.failure_reason:
        click.echo(f"  failure       : {result.failure_reason}")
    for error in result.errors[:10]:
        location = f"row {error.row_index}" if error.row_index is not None else "file"
        field = f" [{error.field}]" if error.field else ""
        click.echo(f"    - {location}{field}: {error.message}")


def _enqueue(app, task_name: str, kwargs: dict, *, description: str) -> str:
    celery_app = _resolve_celery(app)
    try:
        async_result = celery_app.send_task(task_name, kwargs=kwargs)
    except Exception as exc:  # pragma: no cover - broker failures vary
        raise click.ClickException(f"Failed to enqueue {description}: {exc}") from exc
    app.logger.info(
        "Pipeline task queued via CLI",
        extra={"pipeline_task_name": task_name, "pipeline_task_id": async_result.id, "pipeline_task_kwargs": kwargs},
    )
    return async_result.id


@pipeline_cli.command("integrations")
def pipeline_integrations():
    """List registered integrations."""
    for definition in get_integration_registry().values():
        unique = ", ".join(definition.unique_key) or "-"
        click.echo(
            f"{definition.id:<12} {definition.qualified_target:<30} "
            f"format={definition.source_format.value} key={unique}"
        )


@pipeline_cli.command("transformations")
def pipeline_transformations():
    """List registered transformations in execution order."""
    for definition in order_by_dependencies(tuple(get_transformation_registry().values())):
        dependencies = ", ".join(definition.dependencies) or "-"
        minimum = definition.expected_min_rows if definition.expected_min_rows is not None else "-"
        click.echo(
            f"{definition.id:<16} {definition.qualified_target:<30} "
            f"depends_on={dependencies} expected_min_rows={minimum}"
        )


@pipeline_cli.command("import")
@click.argument("definition_id")
@click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="Path to the source file.",
)
@click.option(
    "--inline/--no-inline",
    default=False,
    help="Run inline within the CLI process instead of queueing via Celery.",
)
@click.option("--json", "as_json", is_flag=True, help="Emit the run result as JSON (inline runs only).")
@click.pass_context
def pipeline_import(ctx, definition_id: str, file_path: Path, inline: bool, as_json: bool):
    """Truncate-and-reload the target table of DEFINITION_ID from a file."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    try:
        definition = get_integration(definition_id)
    except UnknownDefinitionError as exc:
        raise click.ClickException(str(exc)) from exc

    source_path = file_path.resolve()
    if not inline:
        staged = stage_upload(source_path, app)
        try:
            task_id = _enqueue(
                app,
                "pipeline.run_import",
                {
                    "definition_id": definition.id,
                    "file_path": str(staged),
                    "keep_file": False,
                    "triggered_by": CLI_TRIGGER,
                    "display_name": source_path.name,
                },
                description=f"import for {definition.id}",
            )
        except click.ClickException:
            cleanup_upload(staged)
            raise
        click.echo(json.dumps({"definition_id": definition.id, "task_id": task_id, "status": "queued"}))
        return

    try:
        result = ImportService().import_file(definition, source_path, triggered_by=CLI_TRIGGER)
    except PipelineError as exc:
        raise click.ClickException(f"Import {definition.id} failed: {exc}") from exc

    _echo_result(result, as_json=as_json)
    if not result.succeeded:
        ctx.exit(1)


@pipeline_cli.command("transform")
@click.argument("definition_id")
@click.option(
    "--inline/--no-inline",
    default=False,
    help="Run inline within the CLI process instead of queueing via Celery.",
)
@click.option("--json", "as_json", is_flag=True, help="Emit the run result as JSON (inline runs only).")
@click.pass_context
def pipeline_transform(ctx, definition_id: str, inline: bool, as_json: bool):
    """Rebuild the target table of transformation DEFINITION_ID."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    try:
        definition = get_transformation(definition_id)
    except UnknownDefinitionError as exc:
        raise click.ClickException(str(exc)) from exc

    if not inline:
        task_id = _enqueue(
            app,
            "pipeline.run_transformation",
            {"definition_id": definition.id, "triggered_by": CLI_TRIGGER},
            description=f"transformation {definition.id}",
        )
        click.echo(json.dumps({"definition_id": definition.id, "task_id": task_id, "status": "queued"}))
        return

    try:
        result = TransformationService().run_transformation(definition, triggered_by=CLI_TRIGGER)
    except PipelineError as exc:
        raise click.ClickException(f"Transformation {definition.id} failed: {exc}") from exc

    _echo_result(result, as_json=as_json)
    if not result.succeeded:
        ctx.exit(1)


@pipeline_cli.command("transform-all")
@click.argument("definition_ids", nargs=-1)
@click.option(
    "--inline/--no-inline",
    default=False,
    help="Run inline within the CLI process instead of queueing via Celery.",
)
@click.pass_context
def pipeline_transform_all(ctx, definition_ids: Sequence[str], inline: bool):
    """
    Run transformations in dependency order (all of them when no ids are given).
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    try:
        definitions = resolve_transformations(list(definition_ids))
    except UnknownDefinitionError as exc:
        raise click.ClickException(str(exc)) from exc

    if not inline:
        task_id = _enqueue(
            app,
            "pipeline.run_all_transformations",
            {"definition_ids": [definition.id for definition in definitions], "triggered_by": CLI_TRIGGER},
            description="transformation batch",
        )
        click.echo(json.dumps({"task_id": task_id, "status": "queued"}))
        return

    results = TransformationService().run_transformations(definitions, triggered_by=CLI_TRIGGER)
    click.echo(json.dumps({key: value.as_dict() for key, value in results.items()}, indent=2, sort_keys=True))
    if not all(result.succeeded for result in results.values()):
        ctx.exit(1)


@pipeline_cli.command("runs")
@click.option("--status", "statuses", multiple=True, help="Filter by run status (repeatable).")
@click.option("--kind", "kinds", multiple=True, help="Filter by run kind: integration or transformation.")
@click.option("--definition", "definition_ids", multiple=True, help="Filter by definition id (repeatable).")
@click.option("--search", help="Match run id, definition, target table or failure reason.")
@click.option("--page", default=1, show_default=True, type=int)
@click.option("--page-size", default=None, type=int, help="Rows per page.")
@click.option("--sort", default="-started_at", show_default=True)
@click.option("--stats", "show_stats", is_flag=True, help="Print aggregate counts instead of rows.")
@click.pass_context
def pipeline_runs(
    ctx,
    statuses: Sequence[str],
    kinds: Sequence[str],
    definition_ids: Sequence[str],
    search: Optional[str],
    page: int,
    page_size: Optional[int],
    sort: str,
    show_stats: bool,
):
    """Show pipeline runs from the ledger as JSON."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    try:
        filters = RunFilters.coerce(
            page=page,
            page_size=page_size or app.config.get("PIPELINE_RUNS_PAGE_SIZE_DEFAULT"),
            sort=sort,
            statuses=statuses,
            kinds=kinds,
            definition_ids=definition_ids,
            search=search,
        )
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    ledger = RunLedger()
    if show_stats:
        stats = ledger.get_stats(filters)
        payload = {
            "total": stats.total,
            "statuses": dict(stats.statuses),
            "kinds": dict(stats.kinds),
            "definitions": dict(stats.definitions),
        }
    else:
        listing = ledger.list_runs(filters)
        payload = {
            "total": listing.total,
            "page": listing.page,
            "page_size": listing.page_size,
            "total_pages": listing.total_pages,
            "items": [summary.as_dict() for summary in listing.items],
        }
    click.echo(json.dumps(payload, indent=2, sort_keys=True))


@pipeline_cli.command("cleanup-uploads")
@click.option(
    "--max-age-hours",
    default=72,
    show_default=True,
    type=int,
    help="Remove staged uploads older than the specified number of hours.",
)
@click.pass_context
def pipeline_cleanup_uploads(ctx, max_age_hours: int):
    """
    Delete stale staged upload files left behind by queued imports.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    uploads_dir = resolve_upload_directory(app)

    cutoff = datetime.now(timezone.utc) - timedelta(hours=max_age_hours)
    removed = 0
    for path in uploads_dir.iterdir():
        if not path.is_file():
            continue
        try:
            modified = datetime.fromtimestamp(path.stat().st_mtime, timezone.utc)
        except FileNotFoundError:  # pragma: no cover - race condition
            continue
        if modified < cutoff:
            cleanup_upload(path)
            removed += 1

    click.echo(f"Removed {removed} upload file(s) older than {max_age_hours} hours from {uploads_dir}.")


@pipeline_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the pipeline background worker."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    state = app.extensions.get(PIPELINE_EXTENSION_KEY, {})
    if not state.get("worker_enabled") and not app.config.get("PIPELINE_WORKER_ENABLED"):
        click.echo(
            "Warning: PIPELINE_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option(
    "--pool",
    type=str,
    help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').",
)
@click.option(
    "--queues",
    default=DEFAULT_QUEUE_NAME,
    show_default=True,
    help="Comma-separated queue list to consume.",
)
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """
    Start the Celery worker in the current process.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)

    state = app.extensions.get(PIPELINE_EXTENSION_KEY)
    if state is not None:
        state["worker_enabled"] = True

    argv = [
        "worker",
        "--loglevel",
        loglevel,
        "-Q",
        queues,
    ]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting pipeline worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """
    Validate worker connectivity by executing the heartbeat task.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("pipeline.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'pipeline.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    except Exception as exc:  # pragma: no cover - surfacing unexpected errors
        raise click.ClickException(f"Worker ping failed: {exc}") from exc

    click.echo(json.dumps(payload, indent=2))
