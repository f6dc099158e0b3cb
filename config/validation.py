# config/validation.py

"""
Environment variable validation for the backoffice application.
Validates required environment variables at startup.
"""

import os
import re
import sys
from typing import List, Tuple

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_FORBIDDEN_SCHEMAS = {"config", "customer", "public", "pg_catalog", "information_schema"}


def validate_environment(flask_env: str = None) -> Tuple[bool, List[str]]:
    """
    Validate required environment variables.

    Args:
        flask_env: Flask environment (development, production, testing)
                  If None, reads from FLASK_ENV environment variable

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    if flask_env is None:
        flask_env = os.environ.get("FLASK_ENV", "development")

    errors = []

    # Schema whitelist is validated everywhere; it is a security boundary.
    raw_schemas = os.environ.get("PIPELINE_ALLOWED_SCHEMAS", "")
    for schema in (item.strip() for item in raw_schemas.split(",")):
        if not schema:
            continue
        if not _IDENTIFIER_RE.match(schema) or len(schema) > 63:
            errors.append(f"PIPELINE_ALLOWED_SCHEMAS contains an invalid schema name: {schema!r}")
        elif schema.lower() in _FORBIDDEN_SCHEMAS:
            errors.append(f"PIPELINE_ALLOWED_SCHEMAS must not include the '{schema}' schema")

    if flask_env != "production":
        return len(errors) == 0, errors

    secret_key = os.environ.get("SECRET_KEY", "")
    if not secret_key or secret_key == "your-secret-key" or secret_key == "your_secret_key":
        errors.append(
            "SECRET_KEY is required in production and must not be the default value. "
            'Generate a secure key: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        errors.append(
            "DATABASE_URL is required in production. "
            "Set it to your PostgreSQL connection string."
        )

    data_database_url = os.environ.get("DATA_DATABASE_URL")
    if data_database_url and not data_database_url.startswith(("postgres://", "postgresql")):
        errors.append("DATA_DATABASE_URL must point at PostgreSQL in production")

    if os.environ.get("PIPELINE_WORKER_ENABLED", "false").lower() == "true":
        if not os.environ.get("CELERY_BROKER_URL"):
            errors.append("CELERY_BROKER_URL is required when PIPELINE_WORKER_ENABLED=true")

    is_valid = len(errors) == 0
    return is_valid, errors


def validate_and_exit(flask_env: str = None) -> None:
    """
    Validate environment variables and exit with error if validation fails.
    Intended to be called at application startup.

    Args:
        flask_env: Flask environment (development, production, testing)
    """
    is_valid, errors = validate_environment(flask_env)

    if not is_valid:
        print("=" * 80, file=sys.stderr)
        print("ENVIRONMENT VALIDATION FAILED", file=sys.stderr)
        print("=" * 80, file=sys.stderr)
        print("\nThe following environment variables are missing or invalid:\n", file=sys.stderr)

        for i, error in enumerate(errors, 1):
            print(f"{i}. {error}", file=sys.stderr)

        print("\n" + "=" * 80, file=sys.stderr)
        print("Please check your .env file or environment variables.", file=sys.stderr)
        print("=" * 80, file=sys.stderr)

        sys.exit(1)
