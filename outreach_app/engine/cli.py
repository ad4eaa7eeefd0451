"""
CLI commands for the reconciliation engine: worker management, the manual
review queue (including duplicate merges), run replay and lease housekeeping.
"""

from __future__ import annotations

import json
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import AppGroup, ScriptInfo

from outreach_app.models import ReconciliationRunStatus, ReviewFlagStatus
from outreach_app.store import StoreError

from .celery_app import DEFAULT_QUEUE_NAME, ENGINE_EXTENSION_KEY, get_celery_app
from .dispatcher import enqueue_run
from .locks import IdentityLockManager, LockTimeout
from .review_service import ReviewQueueService
from .run_service import ReconciliationRunService
from .tasks import execute_run


@click.group(name="engine", cls=AppGroup)
def engine_cli():
    """Reconciliation engine management commands."""


def _load_app(ctx):
    info = ctx.ensure_object(ScriptInfo)
    return info.load_app()


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException("Engine Celery app is unavailable. Ensure the engine initialises before running worker commands.")
    return celery_app


# Worker -------------------------------------------------------------------------


@engine_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the reconciliation background worker."""
    app = _load_app(ctx)
    state = app.extensions.get(ENGINE_EXTENSION_KEY, {})
    if not state.get("worker_enabled") and not app.config.get("ENGINE_WORKER_ENABLED"):
        click.echo(
            "Warning: ENGINE_WORKER_ENABLED is false. Intake endpoints reconcile inline "
            "and will not enqueue work for this worker.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker threads.")
@click.option(
    "--pool",
    default="threads",
    show_default=True,
    help="Celery pool implementation (e.g., 'threads', 'prefork', 'solo').",
)
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list to consume.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: str, queues: str):
    """Start the Celery worker in the current process."""
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)

    argv = ["worker", "--loglevel", loglevel, "-Q", queues, "--pool", pool]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])

    click.echo(f"Starting reconciliation worker (queues: {queues}, loglevel: {loglevel}, pool: {pool})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """Validate worker connectivity by executing the heartbeat task."""
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("engine.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'engine.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc

    click.echo(json.dumps(payload, indent=2))


# Review queue -------------------------------------------------------------------


@engine_cli.group(name="review")
def review_group():
    """Inspect and resolve events flagged for manual review."""


@review_group.command("list")
@click.option(
    "--status",
    type=click.Choice([status.value for status in ReviewFlagStatus] + ["all"]),
    default=ReviewFlagStatus.PENDING.value,
    show_default=True,
)
@click.option("--limit", default=50, show_default=True, type=int)
@click.pass_context
def review_list(ctx, status: str, limit: int):
    """List review flags as JSON lines."""
    _load_app(ctx)
    service = ReviewQueueService()
    status_filter = None if status == "all" else ReviewFlagStatus(status)
    flags = service.list_flags(status=status_filter, limit=limit)
    if not flags:
        click.echo("No review flags.")
        return
    for flag in flags:
        click.echo(
            json.dumps(
                {
                    "id": flag.id,
                    "channel": flag.channel,
                    "source_record_id": flag.source_record_id,
                    "reason": flag.reason.value,
                    "status": flag.status.value,
                    "candidate_ids": flag.candidate_ids_json or [],
                    "contact": flag.contact_json or {},
                    "created_at": flag.created_at.isoformat() if flag.created_at else None,
                }
            )
        )


@review_group.command("resolve")
@click.argument("flag_id", type=int)
@click.option("--note", help="Resolution note recorded on the flag.")
@click.option("--dismiss", is_flag=True, help="Mark the flag dismissed instead of resolved.")
@click.option("--merge", "merge_source", help="Duplicate Person record id to fold away.")
@click.option("--into", "merge_target", help="Canonical Person record id that survives the merge.")
@click.pass_context
def review_resolve(
    ctx,
    flag_id: int,
    note: Optional[str],
    dismiss: bool,
    merge_source: Optional[str],
    merge_target: Optional[str],
):
    """Close a review flag, optionally merging two duplicate Persons first."""
    app = _load_app(ctx)
    if bool(merge_source) != bool(merge_target):
        raise click.UsageError("--merge and --into must be given together.")
    if merge_source and dismiss:
        raise click.UsageError("--merge cannot be combined with --dismiss.")

    service = ReviewQueueService()
    flag = service.get_flag(flag_id)
    if flag is None:
        raise click.ClickException(f"Review flag {flag_id} not found.")

    merged = None
    if merge_source:
        from outreach_app.engine import PersonMergeError, build_person_merger

        try:
            merged = build_person_merger(app).merge(merge_source, merge_target)
        except PersonMergeError as exc:
            raise click.ClickException(str(exc)) from exc
        except (StoreError, LockTimeout) as exc:
            raise click.ClickException(f"Merge did not finish; re-run the command to complete it. {exc}") from exc
        if note is None:
            note = f"merged {merge_source} into {merge_target}"

    flag = service.resolve(flag_id, note=note, dismiss=dismiss)
    payload = {"id": flag.id, "status": flag.status.value}
    if merged is not None:
        payload["merge"] = merged.as_dict()
    click.echo(json.dumps(payload))


# Runs ---------------------------------------------------------------------------


@engine_cli.group(name="runs")
def runs_group():
    """Inspect and replay reconciliation runs."""


@runs_group.command("list")
@click.option(
    "--status",
    type=click.Choice([status.value for status in ReconciliationRunStatus]),
    help="Only show runs in this status.",
)
@click.option("--limit", default=20, show_default=True, type=int)
@click.pass_context
def runs_list(ctx, status: Optional[str], limit: int):
    """List recent runs, newest first."""
    _load_app(ctx)
    runs = ReconciliationRunService().list_runs(
        status=ReconciliationRunStatus(status) if status else None,
        limit=limit,
    )
    for run in runs:
        click.echo(
            json.dumps(
                {
                    "id": run.id,
                    "channel": run.channel,
                    "source_record_id": run.source_record_id,
                    "status": run.status.value,
                    "person_id": run.person_id,
                    "attempts": run.attempts,
                    "error": run.error_summary,
                }
            )
        )


@runs_group.command("replay")
@click.argument("run_id", type=int)
@click.option("--inline", is_flag=True, help="Reconcile in this process instead of queueing.")
@click.pass_context
def runs_replay(ctx, run_id: int, inline: bool):
    """Re-run a failed or stuck run from its stored payload."""
    app = _load_app(ctx)
    service = ReconciliationRunService()
    run = service.get_run(run_id)
    if run is None:
        raise click.ClickException(f"Reconciliation run {run_id} not found.")
    if run.status not in (ReconciliationRunStatus.FAILED, ReconciliationRunStatus.PENDING, ReconciliationRunStatus.RUNNING):
        raise click.ClickException(f"Run {run_id} finished with status '{run.status.value}'; only failed or stuck runs can be replayed.")

    service.reset_for_replay(run)
    app.logger.info("Reconciliation run replayed via CLI", extra={"engine_run_id": run_id, "engine_inline": inline})

    if inline:
        outcome = execute_run(run_id)
        click.echo(json.dumps({"run_id": run_id, "outcome": outcome}))
        return

    task_id = enqueue_run(app, run, service)
    if task_id is None:
        raise click.ClickException("Broker unavailable; run left pending.")
    click.echo(json.dumps({"run_id": run_id, "task_id": task_id, "status": "queued"}))


# Leases -------------------------------------------------------------------------


@engine_cli.group(name="leases")
def leases_group():
    """Identity lease housekeeping."""


@leases_group.command("purge")
@click.pass_context
def leases_purge(ctx):
    """Delete identity leases whose expiry has passed."""
    app = _load_app(ctx)
    removed = IdentityLockManager.from_config(app.config).purge_expired()
    click.echo(json.dumps({"purged": removed}))
