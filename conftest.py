# conftest.py

import os

import pytest
from sqlalchemy import text

# Set testing environment BEFORE importing app so TestingConfig is selected
os.environ["FLASK_ENV"] = "testing"

# Now import app and other modules after environment is set
from app import create_app  # noqa: E402
from backoffice.models import db  # noqa: E402
from backoffice.pipeline.utils import get_data_engine  # noqa: E402

# Target tables are owned by migrations in deployed environments; tests build
# the same shapes directly in the attached SQLite schemas.
DATA_TABLE_DDL = (
    """
    CREATE TABLE workspace.us_zips (
        zip TEXT PRIMARY KEY,
        city TEXT,
        state_id TEXT,
        state_name TEXT,
        county_name TEXT,
        lat NUMERIC,
        lng NUMERIC,
        population INTEGER,
        density NUMERIC,
        timezone TEXT
    )
    """,
    """
    CREATE TABLE workspace.gaz_zcta_national (
        geoid TEXT PRIMARY KEY,
        aland INTEGER,
        awater INTEGER,
        aland_sqmi NUMERIC,
        awater_sqmi NUMERIC,
        intptlat NUMERIC,
        intptlong NUMERIC
    )
    """,
    """
    CREATE TABLE workspace.ups_zones (
        origin_zip TEXT NOT NULL,
        dest_zip TEXT NOT NULL,
        ground_zone TEXT,
        three_day_zone TEXT,
        two_day_zone TEXT,
        two_day_am_zone TEXT,
        nda_saver_zone TEXT,
        next_day_zone TEXT,
        PRIMARY KEY (origin_zip, dest_zip)
    )
    """,
    """
    CREATE TABLE workspace.ups_ground_service_zip5 (
        origin_zip TEXT NOT NULL,
        dest_zip TEXT NOT NULL,
        dest_state TEXT,
        transit_days INTEGER,
        PRIMARY KEY (origin_zip, dest_zip)
    )
    """,
    """
    CREATE TABLE workspace.usps_3d_base_service (
        origin_zip_code TEXT NOT NULL,
        destination_zip_code TEXT NOT NULL,
        pri_service_standard INTEGER,
        gal_service_standard INTEGER,
        mkt_service_standard INTEGER,
        per_service_standard INTEGER,
        pkg_service_standard INTEGER,
        fcm_service_standard INTEGER,
        gah_service_standard INTEGER,
        pfc_service_standard INTEGER,
        PRIMARY KEY (origin_zip_code, destination_zip_code)
    )
    """,
    """
    CREATE TABLE workspace.zip3_population_keyed (
        zip3 TEXT PRIMARY KEY,
        pop INTEGER
    )
    """,
    """
    CREATE TABLE workspace.zip3_population (
        zip3 TEXT,
        pop INTEGER
    )
    """,
    """
    CREATE TABLE workspace.stock_levels (
        sku TEXT NOT NULL,
        qty INTEGER CHECK (qty >= 0)
    )
    """,
    """
    CREATE TABLE reference.zip3_reference (
        zip3 TEXT PRIMARY KEY,
        total_population INTEGER,
        zip_count INTEGER,
        primary_state TEXT,
        primary_city TEXT,
        pop_weighted_lat NUMERIC,
        pop_weighted_lng NUMERIC,
        geo_centroid_lat NUMERIC,
        geo_centroid_lng NUMERIC,
        total_land_sqmi NUMERIC,
        total_water_sqmi NUMERIC
    )
    """,
    """
    CREATE TABLE reference.delivery_matrix (
        origin_zip3 TEXT NOT NULL,
        dest_zip3 TEXT NOT NULL,
        carrier_code TEXT NOT NULL,
        service_code TEXT NOT NULL,
        transit_days INTEGER,
        delivery_score INTEGER,
        zone TEXT,
        PRIMARY KEY (origin_zip3, dest_zip3, carrier_code, service_code)
    )
    """,
    """
    CREATE TABLE reference.zip3_rollup (
        zip3 TEXT,
        pop INTEGER
    )
    """,
)


def build_test_app(tmp_path, **overrides):
    """Create an isolated app whose databases live under ``tmp_path``."""
    instance_dir = tmp_path / "instance"
    instance_dir.mkdir(exist_ok=True)
    config = {
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{(tmp_path / 'backoffice.db').as_posix()}",
        "SQLALCHEMY_ECHO": False,
        "SECRET_KEY": "test-secret-key-for-testing-only",
        "PIPELINE_ENABLED": True,
        "PIPELINE_UPLOAD_DIR": str(tmp_path / "uploads"),
        "CELERY_SQLITE_PATH": str(instance_dir / "celery.sqlite"),
        "CELERY_CONFIG": {"task_always_eager": True, "task_eager_propagates": True},
        "ENABLE_FILE_LOGGING": False,
        "ENABLE_CONSOLE_LOGGING": False,
    }
    config.update(overrides)
    return create_app(overrides=config)


@pytest.fixture(scope="function")
def app(tmp_path):
    """Create and configure a test Flask application with empty target tables."""
    flask_app = build_test_app(tmp_path)
    with flask_app.app_context():
        db.create_all()
        with get_data_engine().begin() as connection:
            for statement in DATA_TABLE_DDL:
                connection.execute(text(statement))
        yield flask_app
        db.session.remove()
        db.drop_all()
        for engine in db.engines.values():
            engine.dispose()


@pytest.fixture
def make_app(tmp_path):
    """Build an additional isolated app, e.g. one with the pipeline disabled."""

    def _make(name="extra", **overrides):
        directory = tmp_path / name
        directory.mkdir(exist_ok=True)
        return build_test_app(directory, **overrides)

    return _make


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


@pytest.fixture
def data_engine(app):
    """Engine holding the workspace and reference schemas."""
    return get_data_engine()


@pytest.fixture
def fetch_rows(data_engine):
    """Return every row of a schema-qualified table, ordered by all columns."""

    def _fetch(qualified_table: str):
        with data_engine.connect() as connection:
            result = connection.execute(text(f"SELECT * FROM {qualified_table}"))
            return sorted((tuple(row) for row in result), key=repr)

    return _fetch


@pytest.fixture
def count_rows(data_engine):
    def _count(qualified_table: str) -> int:
        with data_engine.connect() as connection:
            return int(connection.execute(text(f"SELECT COUNT(*) FROM {qualified_table}")).scalar_one())

    return _count


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers and ensure testing environment"""
    os.environ["FLASK_ENV"] = "testing"

    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "unit: marks tests as unit tests")
