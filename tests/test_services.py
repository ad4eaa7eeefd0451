import pytest
from kombu.exceptions import OperationalError
from sqlalchemy.orm.exc import NoResultFound

from outreach_app.engine import tasks
from outreach_app.engine.celery_app import get_celery_app
from outreach_app.engine.dispatcher import RECONCILE_TASK_NAME, dispatch_intake, enqueue_run
from outreach_app.engine.review_service import ReviewQueueService
from outreach_app.engine.run_service import ReconciliationRunService
from outreach_app.models import ReconciliationRunStatus, ReviewFlag, ReviewFlagReason, ReviewFlagStatus, db


def _payload(record_id="recFt1"):
    return {"record": {"id": record_id, "fields": {"First Name": "Kwame", "Phone": "0201112222"}}}


class TestReviewQueueService:
    def test_flag_is_idempotent_per_source_and_reason(self, app):
        service = ReviewQueueService()

        first, created = service.flag(
            channel="returner",
            source_record_id="recRt1",
            reason=ReviewFlagReason.RETURNER_WITHOUT_MATCH,
        )
        again, created_again = service.flag(
            channel="returner",
            source_record_id="recRt1",
            reason=ReviewFlagReason.RETURNER_WITHOUT_MATCH,
        )
        other, created_other = service.flag(
            channel="returner",
            source_record_id="recRt1",
            reason=ReviewFlagReason.AMBIGUOUS_MATCH,
            candidate_ids=["recA", "recB"],
        )

        assert created is True
        assert created_again is False
        assert again.id == first.id
        assert created_other is True
        assert other.candidate_ids_json == ["recA", "recB"]
        assert ReviewFlag.query.count() == 2
        assert service.pending_count() == 2

    def test_resolve_and_dismiss(self, app):
        service = ReviewQueueService()
        keep, _ = service.flag(channel="first_timer", source_record_id="recA", reason=ReviewFlagReason.AMBIGUOUS_MATCH)
        drop, _ = service.flag(channel="first_timer", source_record_id="recB", reason=ReviewFlagReason.AMBIGUOUS_MATCH)

        resolved = service.resolve(keep.id, note="merged recA into recB")
        dismissed = service.resolve(drop.id, dismiss=True)

        assert resolved.status is ReviewFlagStatus.RESOLVED
        assert resolved.resolution_note == "merged recA into recB"
        assert resolved.resolved_at is not None
        assert dismissed.status is ReviewFlagStatus.DISMISSED
        assert service.list_flags() == []
        assert len(service.list_flags(status=None)) == 2

    def test_resolve_unknown_flag_raises(self, app):
        with pytest.raises(NoResultFound):
            ReviewQueueService().resolve(12345)


class TestReconciliationRunService:
    def test_lifecycle(self, app):
        service = ReconciliationRunService()
        run = service.create_run(channel="first_timer", source_record_id="recFt1", payload=_payload())
        assert run.status is ReconciliationRunStatus.PENDING
        assert run.attempts == 0

        service.mark_running(run)
        assert run.status is ReconciliationRunStatus.RUNNING
        assert run.attempts == 1
        assert run.started_at is not None

        service.record_outcome(run, {"status": "updated", "person_id": "recP1", "error": None})
        assert run.status is ReconciliationRunStatus.UPDATED
        assert run.person_id == "recP1"
        assert run.outcome_json["status"] == "updated"
        assert run.finished_at is not None

    def test_failed_run_reset_for_replay(self, app):
        service = ReconciliationRunService()
        run = service.create_run(channel="returner", source_record_id="recRt1", payload=_payload("recRt1"))
        service.mark_failed(run, "DeadlineExceeded")

        service.reset_for_replay(run)

        assert run.status is ReconciliationRunStatus.PENDING
        assert run.error_summary is None
        assert run.outcome_json is None

    def test_list_runs_newest_first(self, app):
        service = ReconciliationRunService()
        older = service.create_run(channel="first_timer", source_record_id="recA", payload=_payload("recA"))
        newer = service.create_run(channel="evangelism", source_record_id="recB", payload=_payload("recB"))

        assert [run.id for run in service.list_runs()] == [newer.id, older.id]
        assert [run.id for run in service.list_runs(channel="first_timer")] == [older.id]


class TestExecuteRun:
    def test_duplicate_delivery_returns_stored_outcome(self, app, fake_store):
        service = ReconciliationRunService()
        run = service.create_run(channel="first_timer", source_record_id="recFt1", payload=_payload())
        service.record_outcome(run, {"status": "created", "person_id": "recP1"})

        outcome = tasks.execute_run(run.id)

        assert outcome == {"status": "created", "person_id": "recP1"}
        assert fake_store.calls["list"] == 0
        assert run.attempts == 0

    def test_stored_payload_that_fails_validation(self, app):
        service = ReconciliationRunService()
        run = service.create_run(channel="evangelism", source_record_id="recEv1", payload={"record": {"id": "recEv1", "fields": {}}})

        outcome = tasks.execute_run(run.id)

        assert outcome["status"] == "failed"
        db.session.expire_all()
        stored = service.get_run(run.id)
        assert stored.status is ReconciliationRunStatus.FAILED
        assert "Phone or Email" in stored.error_summary

    def test_unexpected_error_marks_run_failed(self, app, monkeypatch):
        service = ReconciliationRunService()
        run = service.create_run(channel="first_timer", source_record_id="recFt1", payload=_payload())

        def explode(_app):
            raise RuntimeError("wiring broke")

        monkeypatch.setattr("outreach_app.engine.build_reconciler", explode)

        outcome = tasks.execute_run(run.id)

        assert outcome == {"status": "failed", "error": "wiring broke"}
        db.session.expire_all()
        stored = service.get_run(run.id)
        assert stored.status is ReconciliationRunStatus.FAILED
        assert stored.error_summary == "RuntimeError: wiring broke"

    def test_unknown_run_raises(self, app):
        with pytest.raises(ValueError):
            tasks.execute_run(424242)


class TestDispatch:
    def test_broker_outage_leaves_run_pending(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "ENGINE_WORKER_ENABLED", True)
        task = get_celery_app(app).tasks[RECONCILE_TASK_NAME]

        def refuse(*args, **kwargs):
            raise OperationalError("broker down")

        monkeypatch.setattr(task, "apply_async", refuse)

        result = dispatch_intake(app, "first_timer", _payload())

        assert result.queued is False
        assert result.task_id is None
        db.session.expire_all()
        assert result.run.status is ReconciliationRunStatus.PENDING

    def test_enqueue_records_task_id(self, app, fake_store):
        service = ReconciliationRunService()
        run = service.create_run(channel="first_timer", source_record_id="recFt9", payload=_payload("recFt9"))

        task_id = enqueue_run(app, run, service)

        assert task_id
        db.session.expire_all()
        stored = service.get_run(run.id)
        assert stored.task_id == task_id
        assert stored.status is ReconciliationRunStatus.CREATED
