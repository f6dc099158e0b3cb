"""
Utility helpers for pipeline feature flag checks.
"""

from __future__ import annotations

from typing import Tuple

from flask import current_app


def _get_config(app=None):
    if app is not None:
        return app.config
    return current_app.config


def is_pipeline_enabled(app=None) -> bool:
    """Return True when the pipeline feature flag is enabled."""
    config = _get_config(app)
    return bool(config.get("PIPELINE_ENABLED", False))


def get_allowed_schemas(app=None) -> Tuple[str, ...]:
    """Return the configured schema whitelist."""
    config = _get_config(app)
    # Normalize to tuple for immutability, matching config default
    return tuple(config.get("PIPELINE_ALLOWED_SCHEMAS", ()))
