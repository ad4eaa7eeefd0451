"""
Celery configuration helpers for the reconciliation worker.

Defaults to the SQLite transport so a single-host deployment (and local
development) needs no Redis; set ``CELERY_BROKER_URL``/``CELERY_RESULT_BACKEND``
to move to a real broker.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Mapping

from celery import Celery
from flask import Flask
from kombu import Queue

DEFAULT_QUEUE_NAME = "reconcile"
DEFAULT_SQLITE_FILENAME = "celery.sqlite"
ENGINE_EXTENSION_KEY = "engine"


def _normalize_sqlite_path(app: Flask) -> Path:
    """
    Determine the path backing the SQLite transport/result backend.

    ``CELERY_SQLITE_PATH`` overrides the default under the Flask instance
    folder; relative paths resolve against the instance folder too.
    """
    configured = app.config.get("CELERY_SQLITE_PATH")
    if configured:
        sqlite_path = Path(configured)
        if not sqlite_path.is_absolute():
            sqlite_path = Path(app.instance_path) / sqlite_path
    else:
        sqlite_path = Path(app.instance_path) / DEFAULT_SQLITE_FILENAME

    sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    return sqlite_path


def _determine_connection_urls(app: Flask) -> tuple[str, str]:
    """
    Resolve broker/result backend URLs, defaulting to SQLite transports.

    Returns:
        tuple[str, str]: (broker_url, result_backend)
    """
    broker_url = app.config.get("CELERY_BROKER_URL")
    result_backend = app.config.get("CELERY_RESULT_BACKEND")

    if broker_url and result_backend:
        return broker_url, result_backend

    normalized = _normalize_sqlite_path(app).as_posix()
    default_broker = f"sqla+sqlite:///{normalized}"
    default_backend = f"db+sqlite:///{normalized}"

    return broker_url or default_broker, result_backend or default_backend


def _load_extra_conf(app: Flask) -> Mapping[str, Any] | None:
    extra_conf: Mapping[str, Any] | str | None = app.config.get("CELERY_CONFIG")
    if isinstance(extra_conf, str):
        try:
            extra_conf = json.loads(extra_conf)
        except json.JSONDecodeError:
            app.logger.warning("CELERY_CONFIG is not valid JSON; ignoring value.", exc_info=True)
            return None
    return extra_conf or None


def create_celery_app(app: Flask) -> Celery:
    """
    Create a Celery instance bound to the given Flask app.

    Tasks run inside the Flask application context, so they can use
    ``db.session`` and ``current_app`` directly. Run state lives in
    ``reconciliation_runs``; the result backend only serves ``worker ping``.
    """
    broker_url, result_backend = _determine_connection_urls(app)
    celery_app = Celery(
        app.import_name,
        broker=broker_url,
        backend=result_backend,
        include=("outreach_app.engine.tasks",),
    )

    # A task outliving twice the reconcile deadline is stuck, not slow.
    deadline = float(app.config.get("RECONCILE_DEADLINE_SECONDS", 45.0))
    celery_app.conf.update(
        task_default_queue=DEFAULT_QUEUE_NAME,
        task_queues=[Queue(DEFAULT_QUEUE_NAME)],
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        broker_connection_retry_on_startup=True,
        task_time_limit=int(app.config.get("ENGINE_TASK_TIME_LIMIT") or deadline * 2),
        worker_hijack_root_logger=False,
    )

    extra_conf = _load_extra_conf(app)
    if extra_conf:
        app.logger.debug("Applying CELERY_CONFIG overrides", extra={"engine_celery_extra_conf": dict(extra_conf)})
        celery_app.conf.update(extra_conf)

    class FlaskContextTask(celery_app.Task):  # type: ignore[misc]
        """Run Celery tasks inside a Flask application context automatically."""

        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = FlaskContextTask  # type: ignore[assignment]
    celery_app.loader.import_default_modules()
    return celery_app


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    """Return (and cache) the Celery instance inside the engine extension state."""
    celery_app: Celery | None = state.get("celery_app")
    if celery_app is None:
        celery_app = create_celery_app(app)
        state["celery_app"] = celery_app
    return celery_app


def get_celery_app(app: Flask) -> Celery | None:
    state: dict[str, Any] | None = app.extensions.get(ENGINE_EXTENSION_KEY)  # type: ignore[arg-type]
    if not state:
        return None
    return ensure_celery_app(app, state)
