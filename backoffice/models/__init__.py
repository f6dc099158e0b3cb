# backoffice/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .pipeline import (
    TERMINAL_STATUSES,
    IntegrationRun,
    PipelineRun,
    RunKind,
    RunStatus,
    TransformationRun,
)

__all__ = [
    "db",
    "BaseModel",
    "PipelineRun",
    "IntegrationRun",
    "TransformationRun",
    "RunKind",
    "RunStatus",
    "TERMINAL_STATUSES",
]
