import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import pytest
from flask import Flask

from outreach_app.engine import ENGINE_EXTENSION_KEY, get_celery_app, init_engine
from outreach_app.engine.celery_app import DEFAULT_QUEUE_NAME
from outreach_app.engine.review_service import ReviewQueueService
from outreach_app.engine.run_service import ReconciliationRunService
from outreach_app.models import (
    IdentityLease,
    ReconciliationRunStatus,
    ReviewFlagReason,
    db,
)
from outreach_app.store.tables import MEMBERS


def build_engine_app(**overrides) -> Flask:
    """
    Construct a minimal Flask app with the engine initialised for worker tests.
    """
    instance_path_override = overrides.pop("INSTANCE_PATH", None)
    if instance_path_override:
        app = Flask(__name__, instance_path=instance_path_override)
    else:
        app = Flask(__name__)
    app.config.update(SECRET_KEY="test-secret", TESTING=True)
    app.config.update(overrides)
    init_engine(app)
    return app


@pytest.fixture
def worker_enabled(app, monkeypatch):
    monkeypatch.setitem(app.extensions[ENGINE_EXTENSION_KEY], "worker_enabled", True)


def _first_timer_payload(record_id="recFt1"):
    return {"record": {"id": record_id, "fields": {"First Name": "Kwame", "Phone": "0201112222"}}}


def test_celery_defaults_to_sqlite_transport(tmp_path):
    instance_dir = tmp_path / "instance"
    instance_dir.mkdir()
    sqlite_path = instance_dir / "custom.sqlite"

    app = build_engine_app(
        CELERY_SQLITE_PATH=str(sqlite_path),
        CELERY_CONFIG={"task_always_eager": True, "task_eager_propagates": True},
        INSTANCE_PATH=str(instance_dir),
    )

    celery_app = get_celery_app(app)
    assert celery_app is not None
    assert celery_app.conf.broker_url.startswith("sqla+sqlite:///")
    assert sqlite_path.name in celery_app.conf.broker_url
    assert celery_app.conf.result_backend.startswith("db+sqlite:///")
    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert celery_app.conf.worker_prefetch_multiplier == 1
    assert "engine.reconcile_event" in celery_app.tasks


def test_celery_config_json_string_is_applied(tmp_path):
    app = build_engine_app(
        CELERY_SQLITE_PATH=str(tmp_path / "celery.sqlite"),
        CELERY_CONFIG='{"task_soft_time_limit": 42}',
    )
    assert get_celery_app(app).conf.task_soft_time_limit == 42


def test_task_time_limit_follows_reconcile_deadline(tmp_path):
    app = build_engine_app(CELERY_SQLITE_PATH=str(tmp_path / "celery.sqlite"), RECONCILE_DEADLINE_SECONDS=30)
    assert get_celery_app(app).conf.task_time_limit == 60

    pinned = build_engine_app(
        CELERY_SQLITE_PATH=str(tmp_path / "pinned.sqlite"),
        RECONCILE_DEADLINE_SECONDS=30,
        ENGINE_TASK_TIME_LIMIT=300,
    )
    assert get_celery_app(pinned).conf.task_time_limit == 300


def test_explicit_broker_urls_win(tmp_path):
    app = build_engine_app(
        CELERY_BROKER_URL="redis://localhost:6379/0",
        CELERY_RESULT_BACKEND="redis://localhost:6379/1",
        CELERY_SQLITE_PATH=str(tmp_path / "unused.sqlite"),
    )
    celery_app = get_celery_app(app)
    assert celery_app.conf.broker_url == "redis://localhost:6379/0"
    assert celery_app.conf.result_backend == "redis://localhost:6379/1"


def test_worker_ping_cli(runner, worker_enabled):
    result = runner.invoke(args=["engine", "worker", "ping"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "ok"
    assert "timestamp" in payload
    assert "worker_hostname" in payload


def test_worker_run_invokes_celery(app, runner, worker_enabled, monkeypatch):
    celery_app = get_celery_app(app)
    calls: Dict[str, Any] = {}

    def fake_worker_main(argv=None):
        calls["argv"] = argv

    monkeypatch.setattr(celery_app, "worker_main", fake_worker_main)

    result = runner.invoke(args=["engine", "worker", "run", "--concurrency", "2"])

    assert result.exit_code == 0, result.output
    assert calls["argv"] == ["worker", "--loglevel", "info", "-Q", DEFAULT_QUEUE_NAME, "--pool", "threads", "--concurrency", "2"]


def test_worker_group_warns_when_disabled(runner, monkeypatch):
    monkeypatch.setattr("celery.Celery.worker_main", lambda self, argv=None: None)

    result = runner.invoke(args=["engine", "worker", "run"])

    assert result.exit_code == 0
    assert "ENGINE_WORKER_ENABLED is false" in result.output


def test_review_list_and_resolve(runner):
    service = ReviewQueueService()
    flag, _ = service.flag(
        channel="returner",
        source_record_id="recRt1",
        reason=ReviewFlagReason.RETURNER_WITHOUT_MATCH,
        contact={"phone": "0261234567"},
    )

    listed = runner.invoke(args=["engine", "review", "list"])
    assert listed.exit_code == 0, listed.output
    rows = [json.loads(line) for line in listed.output.strip().splitlines()]
    assert [row["id"] for row in rows] == [flag.id]
    assert rows[0]["reason"] == "returner_without_match"
    assert rows[0]["contact"] == {"phone": "0261234567"}

    resolved = runner.invoke(args=["engine", "review", "resolve", str(flag.id), "--note", "merged by hand"])
    assert resolved.exit_code == 0, resolved.output
    assert json.loads(resolved.output) == {"id": flag.id, "status": "resolved"}

    db.session.expire_all()
    assert service.pending_count() == 0
    empty = runner.invoke(args=["engine", "review", "list"])
    assert "No review flags." in empty.output


def test_review_resolve_unknown_flag(runner):
    result = runner.invoke(args=["engine", "review", "resolve", "404"])
    assert result.exit_code != 0
    assert "Review flag 404 not found." in result.output


def test_review_resolve_merges_duplicates(runner, fake_store):
    fake_store.seed(MEMBERS, {"First Name": "Ama", "Phone": "0244000111", "Status": "First Timer"}, record_id="recKeep")
    fake_store.seed(
        MEMBERS,
        {"First Name": "Ama", "Email": "ama@example.com", "Status": "Evangelism Contact"},
        record_id="recDup",
    )
    fake_store.seed("Evangelism", {"First Name": "Ama", "Linked Member": ["recDup"]}, record_id="recEv1")
    flag, _ = ReviewQueueService().flag(
        channel="first_timer",
        source_record_id="recFt3",
        reason=ReviewFlagReason.AMBIGUOUS_MATCH,
        candidate_ids=["recDup", "recKeep"],
    )

    result = runner.invoke(args=["engine", "review", "resolve", str(flag.id), "--merge", "recDup", "--into", "recKeep"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "resolved"
    assert payload["merge"]["source_id"] == "recDup"
    assert payload["merge"]["fields"] == ["Email"]
    assert payload["merge"]["relinked"] == {"Evangelism": ["recEv1"]}
    assert [record.id for record in fake_store.records(MEMBERS)] == ["recKeep"]
    assert fake_store.fields_of("Evangelism", "recEv1")["Linked Member"] == ["recKeep"]
    db.session.expire_all()
    assert ReviewQueueService().get_flag(flag.id).resolution_note == "merged recDup into recKeep"


def test_review_resolve_merge_needs_both_persons(runner, fake_store):
    flag, _ = ReviewQueueService().flag(
        channel="first_timer",
        source_record_id="recFt3",
        reason=ReviewFlagReason.AMBIGUOUS_MATCH,
    )

    half = runner.invoke(args=["engine", "review", "resolve", str(flag.id), "--merge", "recDup"])
    assert half.exit_code == 2
    assert "--merge and --into must be given together." in half.output

    missing = runner.invoke(args=["engine", "review", "resolve", str(flag.id), "--merge", "recDup", "--into", "recKeep"])
    assert missing.exit_code == 1
    assert "Person recDup not found." in missing.output

    db.session.expire_all()
    assert ReviewQueueService().pending_count() == 1


def test_runs_replay_inline_recovers_failed_run(runner, fake_store):
    service = ReconciliationRunService()
    run = service.create_run(channel="first_timer", source_record_id="recFt1", payload=_first_timer_payload())
    service.mark_failed(run, "TerminalStoreError: list Members failed after 4 attempt(s)")

    result = runner.invoke(args=["engine", "runs", "replay", str(run.id), "--inline"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["run_id"] == run.id
    assert payload["outcome"]["status"] == "created"
    db.session.expire_all()
    assert service.get_run(run.id).status is ReconciliationRunStatus.CREATED
    assert len(fake_store.records(MEMBERS)) == 1


def test_runs_replay_queues_through_celery(runner, fake_store):
    service = ReconciliationRunService()
    run = service.create_run(channel="first_timer", source_record_id="recFt2", payload=_first_timer_payload("recFt2"))

    result = runner.invoke(args=["engine", "runs", "replay", str(run.id)])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "queued"
    assert payload["task_id"]
    db.session.expire_all()
    assert service.get_run(run.id).status is ReconciliationRunStatus.CREATED


def test_runs_replay_refuses_finished_run(runner):
    service = ReconciliationRunService()
    run = service.create_run(channel="first_timer", source_record_id="recFt3", payload=_first_timer_payload("recFt3"))
    service.record_outcome(run, {"status": "created", "person_id": "recP"})

    result = runner.invoke(args=["engine", "runs", "replay", str(run.id)])

    assert result.exit_code != 0
    assert "only failed or stuck runs can be replayed" in result.output


def test_runs_list_filters_by_status(runner):
    service = ReconciliationRunService()
    ok = service.create_run(channel="first_timer", source_record_id="recA", payload=_first_timer_payload("recA"))
    service.record_outcome(ok, {"status": "updated", "person_id": "recP"})
    failed = service.create_run(channel="returner", source_record_id="recB", payload={"record": {}})
    service.mark_failed(failed, "boom")

    result = runner.invoke(args=["engine", "runs", "list", "--status", "failed"])

    assert result.exit_code == 0, result.output
    rows = [json.loads(line) for line in result.output.strip().splitlines()]
    assert [row["id"] for row in rows] == [failed.id]
    assert rows[0]["error"] == "boom"


def test_leases_purge_removes_expired(runner):
    now = datetime.now(timezone.utc)
    db.session.add_all(
        [
            IdentityLease(key="phone:1", owner_token="a", acquired_at=now - timedelta(hours=2), expires_at=now - timedelta(hours=1)),
            IdentityLease(key="phone:2", owner_token="b", acquired_at=now, expires_at=now + timedelta(hours=1)),
        ]
    )
    db.session.commit()

    result = runner.invoke(args=["engine", "leases", "purge"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output) == {"purged": 1}
    db.session.expire_all()
    assert [lease.key for lease in IdentityLease.query.all()] == ["phone:2"]
