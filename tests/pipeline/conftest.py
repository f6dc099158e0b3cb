from __future__ import annotations

import pytest

from backoffice.pipeline.definitions import (
    ColumnSpec,
    ColumnType,
    IntegrationDefinition,
    TransformationDefinition,
)
from backoffice.pipeline.import_service import ImportService
from backoffice.pipeline.transform_service import TransformationService

ZIP3_COLUMNS = (
    ColumnSpec("zip3", ColumnType.STRING, nullable=False),
    ColumnSpec("pop", ColumnType.INT),
)

ZIP3_KEYED = IntegrationDefinition(
    id="zip3-population-keyed",
    name="ZIP3 population (keyed)",
    target_table="zip3_population_keyed",
    columns=ZIP3_COLUMNS,
    unique_key=("zip3",),
)

ZIP3_UNKEYED = IntegrationDefinition(
    id="zip3-population",
    name="ZIP3 population",
    target_table="zip3_population",
    columns=ZIP3_COLUMNS,
)

STOCK_LEVELS = IntegrationDefinition(
    id="stock-levels",
    name="Stock levels",
    target_table="stock_levels",
    columns=(
        ColumnSpec("sku", ColumnType.STRING, nullable=False),
        ColumnSpec("qty", ColumnType.INT),
    ),
)

ZIP3_ROLLUP = TransformationDefinition(
    id="zip3-rollup",
    name="ZIP3 rollup",
    target_table="zip3_rollup",
    sources=("workspace.zip3_population",),
    sql="SELECT zip3, SUM(pop) FROM workspace.zip3_population GROUP BY zip3",
)


@pytest.fixture
def import_service(app):
    return ImportService()


@pytest.fixture
def transform_service(app):
    return TransformationService()


@pytest.fixture
def seed_population(import_service):
    """Load three distinct ZIP3 rows into workspace.zip3_population."""

    def _seed(rows=None):
        rows = rows or [
            {"zip3": "100", "pop": "100"},
            {"zip3": "101", "pop": "250"},
            {"zip3": "102", "pop": "75"},
        ]
        result = import_service.run_import(ZIP3_UNKEYED, rows)
        assert result.succeeded, result.failure_reason
        return result

    return _seed


@pytest.fixture
def zip3_keyed():
    return ZIP3_KEYED


@pytest.fixture
def zip3_unkeyed():
    return ZIP3_UNKEYED


@pytest.fixture
def stock_levels():
    return STOCK_LEVELS


@pytest.fixture
def zip3_rollup():
    return ZIP3_ROLLUP
