# conftest.py

import os
import tempfile
import uuid

import pytest

# Set testing environment BEFORE importing app to prevent database corruption
# This ensures app.py uses TestingConfig when imported
os.environ["FLASK_ENV"] = "testing"

# Identity leases are written through their own sessions and contended from
# several threads, so tests need a real database file rather than :memory:.
# Flask-SQLAlchemy builds its engine in init_app, so the URL is fixed here.
_db_fd, _temp_db = tempfile.mkstemp(suffix=f"_{uuid.uuid4().hex[:8]}.db")
os.environ["TEST_DATABASE_URL"] = f"sqlite:///{_temp_db}"

# Now import app and other modules after environment is set
from app import app as flask_app  # noqa: E402
from outreach_app.engine import ENGINE_EXTENSION_KEY  # noqa: E402
from outreach_app.engine.celery_app import ensure_celery_app  # noqa: E402
from outreach_app.models import db  # noqa: E402
from tests.fakes import FakeRecordStore  # noqa: E402


@pytest.fixture
def fake_store():
    """In-memory record store shared by the app under test"""
    return FakeRecordStore()


@pytest.fixture(scope="function")
def app(fake_store, tmp_path):
    """Create and configure a test Flask application"""
    flask_app.config.update(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "MONITORING_ENABLED": False,
            "ENABLE_FILE_LOGGING": False,
            "ENABLE_CONSOLE_LOGGING": False,
            "ENABLE_EMAIL_ALERTS": False,
            "ENABLE_SLACK_ALERTS": False,
            "LOG_LEVEL": "DEBUG",
            "INTAKE_WEBHOOK_SECRET": None,
            "ENGINE_WORKER_ENABLED": False,
            "CELERY_SQLITE_PATH": str(tmp_path / "celery.sqlite"),
            "CELERY_CONFIG": {"task_always_eager": True, "task_eager_propagates": True},
            "LOCK_WAIT_SECONDS": 5.0,
            "LOCK_POLL_SECONDS": 0.01,
        }
    )

    # Re-initialize logging with updated config to pick up LOG_LEVEL=DEBUG
    from outreach_app.utils.logging_config import setup_logging

    setup_logging(flask_app)

    # Engine state is rebuilt per test: fresh fake store, eager Celery
    state = flask_app.extensions[ENGINE_EXTENSION_KEY]
    state["store"] = fake_store
    state["celery_app"] = None
    state["worker_enabled"] = False
    ensure_celery_app(flask_app, state)

    with flask_app.app_context():
        # Drop any existing tables to ensure clean state
        db.drop_all()
        db.create_all()
        yield flask_app
        # Clean up: remove all data and drop tables
        db.session.remove()
        db.drop_all()


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers and ensure testing environment"""
    os.environ["FLASK_ENV"] = "testing"

    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "unit: marks tests as unit tests")


def pytest_unconfigure(config):
    """Remove the session database file"""
    try:
        os.close(_db_fd)
    except OSError:
        pass
    try:
        if os.path.exists(_temp_db):
            os.unlink(_temp_db)
    except OSError:
        pass
