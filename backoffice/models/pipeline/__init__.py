"""
Pipeline run ledger models.

One table backs both integration (import) runs and transformation runs.
"""

from .schema import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    IntegrationRun,
    PipelineRun,
    RunKind,
    RunStatus,
    TransformationRun,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATUSES",
    "IntegrationRun",
    "PipelineRun",
    "RunKind",
    "RunStatus",
    "TransformationRun",
]
