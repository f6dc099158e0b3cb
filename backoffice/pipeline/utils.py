"""
Pipeline utilities for engine resolution and staged upload files.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from uuid import uuid4

from flask import current_app
from sqlalchemy.engine import Engine

from backoffice.models import db

DATA_BIND_KEY = "data"
DEFAULT_UPLOAD_SUBDIR = "pipeline_uploads"


def get_data_engine() -> Engine:
    """
    Engine holding the staging and curated schemas.

    Uses the ``data`` bind when one is configured and the primary engine
    otherwise. Run ledger rows always go through ``db.session``.
    """

    binds = current_app.config.get("SQLALCHEMY_BINDS") or {}
    if DATA_BIND_KEY in binds:
        return db.engines[DATA_BIND_KEY]
    return db.engine


def _normalize_upload_dir(configured_path: str | None, instance_path: str) -> Path:
    if not configured_path:
        return Path(instance_path) / DEFAULT_UPLOAD_SUBDIR

    candidate = Path(configured_path)
    if candidate.is_absolute():
        return candidate

    return Path(instance_path) / candidate


def resolve_upload_directory(app) -> Path:
    """
    Determine and create (if necessary) the pipeline upload directory.
    """

    upload_dir = _normalize_upload_dir(app.config.get("PIPELINE_UPLOAD_DIR"), app.instance_path)
    upload_dir.mkdir(parents=True, exist_ok=True)
    return upload_dir


def stage_upload(source: Path, app) -> Path:
    """
    Copy ``source`` into the upload directory under a collision-free name.

    Queued runs read the staged copy so the operator's file can change or
    disappear without affecting the worker.
    """

    upload_dir = resolve_upload_directory(app)
    target_path = upload_dir / f"{uuid4().hex}{source.suffix or '.csv'}"
    shutil.copyfile(source, target_path)
    app.logger.debug("Pipeline upload staged at %s", target_path)
    return target_path


def cleanup_upload(path: Path) -> None:
    """
    Remove a staged upload, logging but ignoring filesystem errors.
    """

    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        current_app.logger.warning("Failed to remove pipeline upload %s: %s", path, exc)
