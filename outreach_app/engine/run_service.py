"""
Service layer for reconciliation run bookkeeping.

Every accepted webhook becomes a ``ReconciliationRun`` row before it is
queued, so the raw payload survives worker restarts and failed runs can be
replayed from the CLI.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

from sqlalchemy.orm import Session

from outreach_app.models import ReconciliationRun, ReconciliationRunStatus, db


class ReconciliationRunService:
    """Facade for creating, updating and querying reconciliation runs."""

    def __init__(self, session: Session | None = None):
        self.session: Session = session or db.session

    def create_run(self, *, channel: str, source_record_id: str, payload: Mapping[str, Any]) -> ReconciliationRun:
        run = ReconciliationRun(
            channel=channel,
            source_record_id=source_record_id,
            status=ReconciliationRunStatus.PENDING,
            payload_json=dict(payload),
        )
        self.session.add(run)
        self.session.commit()
        return run

    def get_run(self, run_id: int) -> ReconciliationRun | None:
        return self.session.get(ReconciliationRun, run_id)

    def list_runs(
        self,
        *,
        status: ReconciliationRunStatus | None = None,
        channel: str | None = None,
        limit: int = 50,
    ) -> Sequence[ReconciliationRun]:
        query = self.session.query(ReconciliationRun)
        if status is not None:
            query = query.filter(ReconciliationRun.status == status)
        if channel:
            query = query.filter(ReconciliationRun.channel == channel)
        return query.order_by(ReconciliationRun.id.desc()).limit(limit).all()

    def mark_queued(self, run: ReconciliationRun, task_id: str | None) -> None:
        run.task_id = task_id
        self.session.commit()

    def mark_running(self, run: ReconciliationRun) -> None:
        run.status = ReconciliationRunStatus.RUNNING
        run.started_at = datetime.now(timezone.utc)
        run.finished_at = None
        run.attempts = (run.attempts or 0) + 1
        self.session.commit()

    def record_outcome(self, run: ReconciliationRun, outcome: Mapping[str, Any]) -> None:
        run.status = ReconciliationRunStatus(outcome["status"])
        run.outcome_json = dict(outcome)
        run.person_id = outcome.get("person_id")
        run.error_summary = outcome.get("error")
        run.finished_at = datetime.now(timezone.utc)
        self.session.commit()

    def mark_failed(self, run: ReconciliationRun, error: str) -> None:
        run.status = ReconciliationRunStatus.FAILED
        run.error_summary = error
        run.finished_at = datetime.now(timezone.utc)
        self.session.commit()

    def reset_for_replay(self, run: ReconciliationRun) -> None:
        run.status = ReconciliationRunStatus.PENDING
        run.error_summary = None
        run.outcome_json = None
        self.session.commit()
