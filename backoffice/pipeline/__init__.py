"""
Reference-data pipeline package.

Provides conditional CLI registration and worker wiring while staying inert
when the pipeline is disabled.
"""

from __future__ import annotations

from flask import Flask

from backoffice.utils.pipeline import get_allowed_schemas, is_pipeline_enabled

from .celery_app import PIPELINE_EXTENSION_KEY, ensure_celery_app, get_celery_app
from .cli import get_disabled_pipeline_group, pipeline_cli
from .definitions import ErrorThresholdPolicy, IntegrationDefinition, RunResult, TransformationDefinition
from .import_service import ImportService, run_import
from .ledger import RunFilters, RunLedger, install_ledger_guard
from .transform_service import TransformationService, run_transformation, run_transformations

__all__ = [
    "init_pipeline",
    "PIPELINE_EXTENSION_KEY",
    "get_celery_app",
    "ErrorThresholdPolicy",
    "IntegrationDefinition",
    "TransformationDefinition",
    "RunResult",
    "ImportService",
    "TransformationService",
    "RunLedger",
    "RunFilters",
    "run_import",
    "run_transformation",
    "run_transformations",
]


def _ensure_extension_state(app: Flask) -> dict:
    return app.extensions.setdefault(
        PIPELINE_EXTENSION_KEY,
        {
            "enabled": False,
            "allowed_schemas": (),
            "worker_enabled": False,
            "celery_app": None,
        },
    )


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    # Avoid duplicate registrations when running tests
    command_name = pipeline_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(pipeline_cli)
    else:
        app.cli.add_command(get_disabled_pipeline_group())


def init_pipeline(app: Flask) -> None:
    """
    Wire the pipeline into ``app`` based on ``PIPELINE_ENABLED``.

    Records state inside ``app.extensions['pipeline']`` and installs the run
    ledger guard that keeps terminal runs immutable.
    """
    enabled = is_pipeline_enabled(app)
    state = _ensure_extension_state(app)
    state.update(
        {
            "enabled": enabled,
            "allowed_schemas": get_allowed_schemas(app),
            "worker_enabled": bool(app.config.get("PIPELINE_WORKER_ENABLED", False)),
        }
    )

    if not enabled:
        _set_cli(app, enabled=False)
        app.logger.info("Pipeline disabled via PIPELINE_ENABLED flag; skipping registration.")
        return

    install_ledger_guard()
    ensure_celery_app(app, state)
    _set_cli(app, enabled=True)
    app.logger.info(
        "Pipeline enabled for schemas: %s",
        ", ".join(state["allowed_schemas"]) or "none",
    )
