"""
Reconciliation engine package.

``init_engine`` records engine state in ``app.extensions['engine']`` (the
record store client, the Celery app, the worker flag) and registers the CLI
group. Everything that needs a wired :class:`Reconciler` goes through
:func:`build_reconciler`.
"""

from __future__ import annotations

from typing import Any

from flask import Flask

from config.merge_policy import load_merge_profile
from outreach_app.store import RecordStoreClient

from .assignment import AssignmentBalancer
from .celery_app import ENGINE_EXTENSION_KEY, ensure_celery_app, get_celery_app
from .cli import engine_cli
from .contracts import IntakeChannel, IntakeEvent, IntakeValidationError, parse_intake_payload
from .locks import IdentityLockManager, LockTimeout
from .merge_policy import MergePolicy
from .person_merge import PersonMergeError, PersonMerger
from .reconciler import ReconciliationOutcome, Reconciler
from .review_service import ReviewQueueService
from .run_service import ReconciliationRunService
from .side_effects import ProgramCompletionWriter

__all__ = [
    "ENGINE_EXTENSION_KEY",
    "IntakeChannel",
    "IntakeEvent",
    "IntakeValidationError",
    "LockTimeout",
    "PersonMergeError",
    "PersonMerger",
    "ReconciliationOutcome",
    "ReconciliationRunService",
    "Reconciler",
    "ReviewQueueService",
    "build_person_merger",
    "build_reconciler",
    "get_celery_app",
    "get_store",
    "init_engine",
    "parse_intake_payload",
]


def _ensure_extension_state(app: Flask) -> dict[str, Any]:
    return app.extensions.setdefault(
        ENGINE_EXTENSION_KEY,
        {
            "store": None,
            "celery_app": None,
            "merge_profile": None,
            "worker_enabled": False,
        },
    )


def _set_cli(app: Flask) -> None:
    # Avoid duplicate registrations when app.py is re-imported in tests
    if engine_cli.name in app.cli.commands:
        app.cli.commands.pop(engine_cli.name)
    app.cli.add_command(engine_cli)


def init_engine(app: Flask) -> None:
    """Initialise engine state, the Celery app, and the ``engine`` CLI group."""

    state = _ensure_extension_state(app)
    worker_enabled = bool(app.config.get("ENGINE_WORKER_ENABLED", False))
    state.update(
        {
            "worker_enabled": worker_enabled,
            "merge_profile": load_merge_profile(app.config),
        }
    )
    ensure_celery_app(app, state)
    _set_cli(app)

    if not app.config.get("STORE_BASE_ID") or not app.config.get("STORE_API_TOKEN"):
        app.logger.warning("Record store is not configured; intake events will fail until STORE_* is set.")
    app.logger.info(
        "Reconciliation engine initialised (worker %s)",
        "enabled" if worker_enabled else "disabled, reconciling inline",
    )


def get_store(app: Flask) -> RecordStoreClient:
    """Return (and cache) the record store client for ``app``."""

    state = _ensure_extension_state(app)
    store = state.get("store")
    if store is None:
        store = RecordStoreClient.from_config(app.config)
        state["store"] = store
    return store


def build_reconciler(app: Flask) -> Reconciler:
    """Wire a :class:`Reconciler` from app config and the cached store client."""

    state = _ensure_extension_state(app)
    store = get_store(app)
    profile = state.get("merge_profile") or load_merge_profile(app.config)
    return Reconciler(
        store,
        locks=IdentityLockManager.from_config(app.config),
        balancer=AssignmentBalancer.from_config(store, app.config),
        policy=MergePolicy(profile),
        programs=ProgramCompletionWriter(
            store,
            program_name=app.config.get("NEW_BELIEVERS_PROGRAM_NAME", "New Believers"),
        ),
        review_queue=ReviewQueueService(),
        deadline_seconds=float(app.config.get("RECONCILE_DEADLINE_SECONDS", 45.0)),
    )


def build_person_merger(app: Flask) -> PersonMerger:
    """Wire a :class:`PersonMerger` for manual duplicate resolution."""

    state = _ensure_extension_state(app)
    return PersonMerger(
        get_store(app),
        locks=IdentityLockManager.from_config(app.config),
        policy=MergePolicy(state.get("merge_profile") or load_merge_profile(app.config)),
    )
