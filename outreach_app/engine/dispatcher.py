"""
Intake dispatch: validate, record, and hand an event to the worker.

The run row is committed before the task is queued so the payload survives a
broker outage; a run left ``pending`` can be replayed from the CLI.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from flask import Flask
from kombu.exceptions import OperationalError

from outreach_app.models import ReconciliationRun

from .celery_app import get_celery_app
from .contracts import IntakeChannel, parse_intake_payload
from .run_service import ReconciliationRunService
from .tasks import execute_run

RECONCILE_TASK_NAME = "engine.reconcile_event"


@dataclass(frozen=True)
class DispatchResult:
    run: ReconciliationRun
    task_id: str | None
    queued: bool
    outcome: Mapping[str, Any] | None = None


def enqueue_run(app: Flask, run: ReconciliationRun, runs: ReconciliationRunService | None = None) -> str | None:
    """Queue an existing run; returns the Celery task id, or None if the broker is unreachable."""

    runs = runs or ReconciliationRunService()
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise RuntimeError("Engine Celery app is not configured.")
    task = celery_app.tasks[RECONCILE_TASK_NAME]
    try:
        async_result = task.apply_async(kwargs={"run_id": run.id})
    except OperationalError:
        app.logger.error(
            "Failed to enqueue reconciliation run; it stays pending for replay",
            exc_info=True,
            extra={"engine_run_id": run.id, "engine_channel": run.channel},
        )
        return None
    runs.mark_queued(run, async_result.id)
    return async_result.id


def dispatch_intake(app: Flask, channel: IntakeChannel | str, payload: Mapping[str, Any]) -> DispatchResult:
    """
    Validate ``payload`` for ``channel`` and start its reconciliation.

    Raises:
        IntakeValidationError: the payload is malformed; nothing is recorded.
    """

    channel = IntakeChannel(channel)
    event = parse_intake_payload(channel, payload)

    runs = ReconciliationRunService()
    run = runs.create_run(channel=channel.value, source_record_id=event.source_record_id, payload=payload)
    app.logger.info(
        "Intake event accepted",
        extra={"engine_run_id": run.id, "engine_channel": channel.value, "engine_source_record_id": event.source_record_id},
    )

    if not app.config.get("ENGINE_WORKER_ENABLED", False):
        outcome = execute_run(run.id)
        return DispatchResult(run=run, task_id=None, queued=False, outcome=outcome)

    task_id = enqueue_run(app, run, runs)
    return DispatchResult(run=run, task_id=task_id, queued=task_id is not None)
