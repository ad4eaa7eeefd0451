# config/base.py
import os


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


def _coerce_int(value, default, *, minimum=None):
    """Parse an integer setting, falling back to ``default`` on bad input."""
    if value is None or str(value).strip() == "":
        return default
    try:
        number = int(str(value).strip())
    except ValueError:
        return default
    if minimum is not None and number < minimum:
        return default
    return number


def _coerce_float(value, default, *, minimum=None):
    """Parse a float setting, falling back to ``default`` on bad input."""
    if value is None or str(value).strip() == "":
        return default
    try:
        number = float(str(value).strip())
    except ValueError:
        return default
    if minimum is not None and number < minimum:
        return default
    return number


class Config:
    # SECRET_KEY must be set via environment variable in production
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

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

    # Remote record store
    STORE_API_URL = os.environ.get("STORE_API_URL", "https://api.airtable.com/v0")
    STORE_BASE_ID = os.environ.get("STORE_BASE_ID")
    STORE_API_TOKEN = os.environ.get("STORE_API_TOKEN")
    STORE_TIMEOUT_SECONDS = _coerce_float(os.environ.get("STORE_TIMEOUT_SECONDS"), 10.0, minimum=0.1)
    STORE_RATE_LIMIT_PER_SECOND = _coerce_float(
        os.environ.get("STORE_RATE_LIMIT_PER_SECOND"), 5.0, minimum=0.1
    )
    STORE_MAX_RETRIES = _coerce_int(os.environ.get("STORE_MAX_RETRIES"), 3, minimum=0)
    STORE_BACKOFF_BASE_SECONDS = _coerce_float(os.environ.get("STORE_BACKOFF_BASE_SECONDS"), 1.0, minimum=0)
    STORE_BACKOFF_MAX_SECONDS = _coerce_float(os.environ.get("STORE_BACKOFF_MAX_SECONDS"), 10.0, minimum=0)
    STORE_BACKOFF_JITTER_SECONDS = _coerce_float(
        os.environ.get("STORE_BACKOFF_JITTER_SECONDS"), 1.0, minimum=0
    )

    # Follow-up assignment
    VOLUNTEER_CAPACITY = _coerce_int(os.environ.get("VOLUNTEER_CAPACITY"), 20, minimum=1)
    FOLLOW_UP_DUE_DAYS = _coerce_int(os.environ.get("FOLLOW_UP_DUE_DAYS"), 3, minimum=0)
    FOLLOW_UP_ROLE = os.environ.get("FOLLOW_UP_ROLE", "Follow-up")
    NEW_BELIEVERS_PROGRAM_NAME = os.environ.get("NEW_BELIEVERS_PROGRAM_NAME", "New Believers")
    MERGE_POLICY_PATH = os.environ.get("MERGE_POLICY_PATH")

    # Identity locking and deadlines
    LOCK_LEASE_SECONDS = _coerce_float(os.environ.get("LOCK_LEASE_SECONDS"), 60.0, minimum=1)
    LOCK_WAIT_SECONDS = _coerce_float(os.environ.get("LOCK_WAIT_SECONDS"), 30.0, minimum=0)
    LOCK_POLL_SECONDS = _coerce_float(os.environ.get("LOCK_POLL_SECONDS"), 0.1, minimum=0.01)
    RECONCILE_DEADLINE_SECONDS = _coerce_float(
        os.environ.get("RECONCILE_DEADLINE_SECONDS"), 45.0, minimum=1
    )

    # Intake
    INTAKE_WEBHOOK_SECRET = os.environ.get("INTAKE_WEBHOOK_SECRET")

    # Worker
    ENGINE_WORKER_ENABLED = _coerce_bool(os.environ.get("ENGINE_WORKER_ENABLED"), default=False)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")
    # Unset means twice RECONCILE_DEADLINE_SECONDS.
    ENGINE_TASK_TIME_LIMIT = _coerce_int(os.environ.get("ENGINE_TASK_TIME_LIMIT"), None, minimum=1)


class DevelopmentConfig(Config):
    DEBUG = True
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URI needs forward slashes even on Windows
    db_path = os.path.join(instance_path, "outreach_dev.db").replace("\\", "/")
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
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    STORE_BASE_ID = "appTestBase"
    STORE_API_TOKEN = "test-token"
    STORE_BACKOFF_BASE_SECONDS = 0.0
    STORE_BACKOFF_JITTER_SECONDS = 0.0
    LOCK_POLL_SECONDS = 0.01


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
