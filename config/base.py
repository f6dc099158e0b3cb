# config/base.py
import os

DEFAULT_ALLOWED_SCHEMAS = ("workspace", "reference")


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_name_list(value, default=()):
    """
    Parse a comma-separated name list while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Normalized lower-case names, or ``default`` when empty.
    """
    if not value:
        return tuple(default)

    seen = set()
    names = []
    for raw_item in value.split(","):
        item = raw_item.strip().lower()
        if not item or item in seen:
            continue
        seen.add(item)
        names.append(item)
    return tuple(names) or tuple(default)


def _parse_int(value, *, default, minimum=None):
    if value in (None, ""):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    if minimum is not None and number < minimum:
        return default
    return number


def _parse_ratio(value):
    """Parse a ratio in ``[0, 1]``; anything else disables the ratio threshold."""
    if value in (None, ""):
        return None
    try:
        ratio = float(value)
    except (TypeError, ValueError):
        return None
    if ratio < 0 or ratio > 1:
        return None
    return ratio


class Config:
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Only require SECRET_KEY in production mode
    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "Set SECRET_KEY environment variable before deploying.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # The data bind holds the workspace/reference schemas. When unset, the
    # pipeline writes through the primary engine.
    DATA_DATABASE_URL = os.environ.get("DATA_DATABASE_URL")
    SQLALCHEMY_BINDS = {"data": DATA_DATABASE_URL} if DATA_DATABASE_URL else {}

    # Pipeline configuration
    PIPELINE_ENABLED = _coerce_bool(os.environ.get("PIPELINE_ENABLED"), default=True)
    PIPELINE_ALLOWED_SCHEMAS = _parse_name_list(
        os.environ.get("PIPELINE_ALLOWED_SCHEMAS", ""),
        default=DEFAULT_ALLOWED_SCHEMAS,
    )
    PIPELINE_BATCH_SIZE = _parse_int(os.environ.get("PIPELINE_BATCH_SIZE"), default=1000, minimum=1)
    PIPELINE_MAX_ERROR_COUNT = _parse_int(os.environ.get("PIPELINE_MAX_ERROR_COUNT"), default=0, minimum=0)
    PIPELINE_MAX_ERROR_RATIO = _parse_ratio(os.environ.get("PIPELINE_MAX_ERROR_RATIO"))
    PIPELINE_MAX_RECORDED_ERRORS = _parse_int(
        os.environ.get("PIPELINE_MAX_RECORDED_ERRORS"), default=None, minimum=1
    )
    PIPELINE_STATEMENT_TIMEOUT_MS = _parse_int(
        os.environ.get("PIPELINE_STATEMENT_TIMEOUT_MS"), default=300000, minimum=0
    )
    PIPELINE_UPLOAD_DIR = os.environ.get("PIPELINE_UPLOAD_DIR")

    PIPELINE_WORKER_ENABLED = _coerce_bool(os.environ.get("PIPELINE_WORKER_ENABLED"), default=False)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")
    PIPELINE_TASK_TIME_LIMIT = _parse_int(os.environ.get("PIPELINE_TASK_TIME_LIMIT"), default=30 * 60, minimum=1)
    PIPELINE_TASK_SOFT_TIME_LIMIT = _parse_int(
        os.environ.get("PIPELINE_TASK_SOFT_TIME_LIMIT"), default=25 * 60, minimum=1
    )

    try:
        PIPELINE_RUNS_PAGE_SIZE_DEFAULT = max(5, int(os.environ.get("PIPELINE_RUNS_PAGE_SIZE_DEFAULT", "25")))
    except ValueError:
        PIPELINE_RUNS_PAGE_SIZE_DEFAULT = 25


class DevelopmentConfig(Config):
    DEBUG = True
    # Get the project root directory (parent of config directory)
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URI format: sqlite:///absolute/path (3 slashes for absolute path)
    db_path = os.path.join(instance_path, "backoffice_dev.db").replace("\\", "/")
    db_uri = f"sqlite:///{db_path}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_BINDS = {}
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    PIPELINE_ENABLED = True
    PIPELINE_WORKER_ENABLED = False
    PIPELINE_MAX_ERROR_COUNT = 0
    PIPELINE_MAX_ERROR_RATIO = None


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
    if Config.DATA_DATABASE_URL and Config.DATA_DATABASE_URL.startswith("postgres://"):
        SQLALCHEMY_BINDS = {"data": Config.DATA_DATABASE_URL.replace("postgres://", "postgresql://", 1)}
