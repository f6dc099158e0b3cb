"""
Celery wiring for the pipeline worker.

Imports and transformations are queued on a single ``pipeline`` queue, one
task per worker process at a time, acknowledged only after they finish.
Without ``CELERY_BROKER_URL``/``CELERY_RESULT_BACKEND`` the broker and result
backend share a SQLite file in the instance folder.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Mapping

from celery import Celery
from flask import Flask
from kombu import Queue

DEFAULT_QUEUE_NAME = "pipeline"
DEFAULT_SQLITE_FILENAME = "celery.sqlite"
PIPELINE_EXTENSION_KEY = "pipeline"


def _transport_urls(app: Flask) -> tuple[str, str]:
    broker_url = app.config.get("CELERY_BROKER_URL")
    result_backend = app.config.get("CELERY_RESULT_BACKEND")
    if broker_url and result_backend:
        return broker_url, result_backend

    sqlite_path = Path(app.config.get("CELERY_SQLITE_PATH") or DEFAULT_SQLITE_FILENAME)
    if not sqlite_path.is_absolute():
        sqlite_path = Path(app.instance_path) / sqlite_path
    sqlite_path.parent.mkdir(parents=True, exist_ok=True)

    # Celery expects forward slashes even on Windows.
    location = sqlite_path.as_posix()
    return broker_url or f"sqla+sqlite:///{location}", result_backend or f"db+sqlite:///{location}"


def _config_overrides(app: Flask) -> Mapping[str, Any]:
    """``CELERY_CONFIG`` as a mapping; environment values arrive as JSON text."""
    overrides = app.config.get("CELERY_CONFIG")
    if isinstance(overrides, str):
        try:
            overrides = json.loads(overrides)
        except json.JSONDecodeError:
            app.logger.warning("CELERY_CONFIG is not valid JSON; ignoring value.")
            return {}
    return overrides or {}


def create_celery_app(app: Flask) -> Celery:
    broker_url, result_backend = _transport_urls(app)
    celery_app = Celery(
        app.import_name,
        broker=broker_url,
        backend=result_backend,
        include=("backoffice.pipeline.tasks",),
    )
    celery_app.conf.update(
        task_default_queue=DEFAULT_QUEUE_NAME,
        task_queues=[Queue(DEFAULT_QUEUE_NAME)],
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        task_track_started=True,
        broker_connection_retry_on_startup=True,
        task_time_limit=app.config.get("PIPELINE_TASK_TIME_LIMIT", 30 * 60),
        task_soft_time_limit=app.config.get("PIPELINE_TASK_SOFT_TIME_LIMIT", 25 * 60),
        worker_hijack_root_logger=False,
    )
    celery_app.conf.update(_config_overrides(app))

    class AppContextTask(celery_app.Task):  # type: ignore[misc]
        """Runs every pipeline task inside the Flask application context."""

        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = AppContextTask  # type: ignore[assignment]
    celery_app.loader.import_default_modules()
    return celery_app


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    """Return the Celery instance cached in the pipeline extension state, creating it once."""
    if state.get("celery_app") is None:
        state["celery_app"] = create_celery_app(app)
    return state["celery_app"]


def get_celery_app(app: Flask) -> Celery | None:
    """Celery instance for ``app``; ``None`` when the pipeline is not registered or disabled."""
    state: dict[str, Any] | None = app.extensions.get(PIPELINE_EXTENSION_KEY)  # type: ignore[arg-type]
    if not state:
        return None
    if state.get("enabled"):
        return ensure_celery_app(app, state)
    return state.get("celery_app")
