"""
Reconciliation Celery tasks.

``engine.reconcile_event`` never raises back into Celery for an event that
cannot be processed: the run row records the failure instead, so one bad
event never stalls the queue.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from outreach_app.models import ReconciliationRunStatus

from .contracts import IntakeValidationError, parse_intake_payload
from .run_service import ReconciliationRunService


@shared_task(name="engine.healthcheck", bind=True)
def engine_healthcheck(self) -> dict[str, Any]:
    """Simple heartbeat task used by worker health checks."""
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
    }


def execute_run(run_id: int) -> dict[str, Any]:
    """Reconcile the event stored on a run row and record its outcome."""
    from outreach_app.engine import build_reconciler

    runs = ReconciliationRunService()
    run = runs.get_run(run_id)
    if run is None:
        raise ValueError(f"Reconciliation run {run_id} not found.")
    if run.status.is_terminal and run.status is not ReconciliationRunStatus.FAILED:
        # Duplicate delivery of an already-finished run; the outcome stands.
        return dict(run.outcome_json or {"status": run.status.value})

    runs.mark_running(run)
    try:
        event = parse_intake_payload(run.channel, run.payload_json)
        outcome = build_reconciler(current_app).reconcile(event).as_dict()
    except IntakeValidationError as exc:
        runs.mark_failed(run, str(exc))
        current_app.logger.warning(
            "Stored payload failed validation",
            extra={"engine_run_id": run_id, "engine_errors": exc.details},
        )
        return {"status": ReconciliationRunStatus.FAILED.value, "error": str(exc)}
    except Exception as exc:
        runs.session.rollback()
        runs.mark_failed(run, f"{type(exc).__name__}: {exc}")
        current_app.logger.exception(
            "Reconciliation run crashed",
            extra={"engine_run_id": run_id, "engine_channel": run.channel},
        )
        return {"status": ReconciliationRunStatus.FAILED.value, "error": str(exc)}

    runs.record_outcome(run, outcome)
    current_app.logger.info(
        "Reconciliation run completed",
        extra={
            "engine_run_id": run_id,
            "engine_channel": run.channel,
            "engine_status": outcome["status"],
            "engine_person_id": outcome.get("person_id"),
        },
    )
    return outcome


@shared_task(name="engine.reconcile_event", bind=True)
def reconcile_event(self, *, run_id: int) -> dict[str, Any]:
    """Worker entrypoint for one queued intake event."""
    return execute_run(run_id)
