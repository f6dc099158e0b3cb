# app.py

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from flask import Flask
from sqlalchemy import event

# Load environment variables from .env file first
load_dotenv()

# Module imports after load_dotenv() - E402 is intentional
from config import DevelopmentConfig, ProductionConfig, TestingConfig  # noqa: E402
from config.monitoring import (  # noqa: E402
    DevelopmentMonitoringConfig,
    ProductionMonitoringConfig,
    TestingMonitoringConfig,
)
from config.validation import validate_and_exit  # noqa: E402
from backoffice.models import db  # noqa: E402
from backoffice.pipeline import init_pipeline  # noqa: E402
from backoffice.pipeline.identifiers import quote_identifier  # noqa: E402
from backoffice.utils.logging_config import setup_logging  # noqa: E402

logger = logging.getLogger(__name__)

_CONFIGS = {
    "production": (ProductionConfig, ProductionMonitoringConfig),
    "testing": (TestingConfig, TestingMonitoringConfig),
    "development": (DevelopmentConfig, DevelopmentMonitoringConfig),
}


def attached_database_path(main_database: str | None, schema: str) -> str:
    """
    Location of the SQLite file standing in for ``schema``.

    ``instance/app.db`` keeps the workspace schema in ``instance/app.workspace.db``;
    in-memory databases attach in-memory schemas.
    """
    if not main_database or main_database == ":memory:":
        return ":memory:"
    path = Path(main_database)
    return str(path.with_name(f"{path.stem}.{schema}{path.suffix or '.db'}"))


def _configure_sqlite_connection_factory(*, enable_foreign_keys: bool, main_database: str | None, schemas):
    """Return a connection hook applying concurrency-friendly pragmas and attaching schemas."""

    attachments = [(quote_identifier(schema).quoted, attached_database_path(main_database, schema)) for schema in schemas]

    def _configure_sqlite_connection(dbapi_connection, connection_record):  # pragma: no cover - instrumentation
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            if enable_foreign_keys:
                cursor.execute("PRAGMA foreign_keys=ON")
        except Exception as exc:
            logger.warning("Failed to apply SQLite PRAGMAs: %s", exc)
        # Schema-qualified statements cannot run without these, so failures propagate.
        for quoted_schema, path in attachments:
            cursor.execute(f"ATTACH DATABASE ? AS {quoted_schema}", (path,))
        cursor.close()

    return _configure_sqlite_connection


def _configure_sqlite_engines(app: Flask) -> None:
    schemas = tuple(app.config.get("PIPELINE_ALLOWED_SCHEMAS", ()))
    for engine in db.engines.values():
        if not engine.url.drivername.startswith("sqlite"):
            continue
        if getattr(engine, "_sqlite_pragmas_configured", False):
            continue
        pragma_hook = _configure_sqlite_connection_factory(
            enable_foreign_keys=not app.config.get("TESTING", False),
            main_database=engine.url.database,
            schemas=schemas,
        )
        event.listen(engine, "connect", pragma_hook)
        engine._sqlite_pragmas_configured = True  # type: ignore[attr-defined]


def create_app(config_object=None, overrides=None) -> Flask:
    """
    Build the backoffice application.

    ``config_object`` defaults to the class matching FLASK_ENV; ``overrides``
    is applied last so tests can point at isolated databases.
    """
    flask_env = os.environ.get("FLASK_ENV", "development")
    # Validate environment variables (only in production)
    if flask_env == "production":
        validate_and_exit(flask_env)

    base_config, monitoring_config = _CONFIGS.get(flask_env, _CONFIGS["development"])

    app = Flask(__name__)
    app.config.from_object(config_object or base_config)
    app.config.from_object(monitoring_config)
    if overrides:
        app.config.update(overrides)

    db.init_app(app)
    setup_logging(app)

    with app.app_context():
        _configure_sqlite_engines(app)
        # Create the run ledger tables only if not in testing mode
        if not app.config.get("TESTING", False):
            db.create_all()

    init_pipeline(app)
    return app


app = create_app()

