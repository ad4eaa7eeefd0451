"""
Intake webhook endpoints, one per channel, plus run status lookup.
"""

from __future__ import annotations

import hmac
from http import HTTPStatus

from flask import Blueprint, current_app, jsonify, request

from outreach_app.engine.contracts import IntakeChannel, IntakeValidationError
from outreach_app.engine.dispatcher import dispatch_intake
from outreach_app.engine.run_service import ReconciliationRunService

intake_blueprint = Blueprint("intake", __name__, url_prefix="/webhooks")

WEBHOOK_SECRET_HEADER = "X-Webhook-Secret"

CHANNEL_PATHS = {
    "evangelism": IntakeChannel.EVANGELISM,
    "first-timers": IntakeChannel.FIRST_TIMER,
    "returners": IntakeChannel.RETURNER,
    "programs": IntakeChannel.PROGRAM_SESSION,
}


def _json_error(message: str, status: HTTPStatus, **extra):
    return jsonify({"error": message, **extra}), status


def _check_secret():
    expected = current_app.config.get("INTAKE_WEBHOOK_SECRET")
    if not expected:
        return None
    provided = request.headers.get(WEBHOOK_SECRET_HEADER, "")
    if not hmac.compare_digest(provided.encode("utf-8"), str(expected).encode("utf-8")):
        current_app.logger.warning(
            "Rejected webhook with bad secret",
            extra={"intake_path": request.path, "intake_remote_addr": request.remote_addr},
        )
        return _json_error("Invalid webhook secret.", HTTPStatus.UNAUTHORIZED)
    return None


def _serialize_run(run) -> dict:
    return {
        "id": run.id,
        "run_id": run.id,
        "channel": run.channel,
        "source_record_id": run.source_record_id,
        "status": run.status.value,
        "person_id": run.person_id,
        "task_id": run.task_id,
        "attempts": run.attempts,
        "outcome": run.outcome_json or {},
        "error_summary": run.error_summary,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
    }


@intake_blueprint.post("/<channel_path>")
def receive_webhook(channel_path: str):
    channel = CHANNEL_PATHS.get(channel_path)
    if channel is None:
        return _json_error(f"Unknown intake channel '{channel_path}'.", HTTPStatus.NOT_FOUND)

    secret_response = _check_secret()
    if secret_response:
        return secret_response

    payload = request.get_json(silent=True)
    if payload is None:
        return _json_error("Request body must be JSON.", HTTPStatus.BAD_REQUEST, details=["Body is not valid JSON."])

    try:
        result = dispatch_intake(current_app, channel, payload)
    except IntakeValidationError as exc:
        current_app.logger.info(
            "Rejected invalid intake payload",
            extra={"intake_channel": channel.value, "intake_errors": exc.details},
        )
        return _json_error("Invalid intake payload.", HTTPStatus.BAD_REQUEST, details=exc.details)

    body = {
        "status": "accepted",
        "run_id": result.run.id,
        "task_id": result.task_id,
        "queued": result.queued,
    }
    if result.outcome is not None:
        body["outcome"] = dict(result.outcome)
    return jsonify(body), HTTPStatus.OK


@intake_blueprint.get("/runs/<int:run_id>")
def run_status(run_id: int):
    run = ReconciliationRunService().get_run(run_id)
    if run is None:
        return _json_error(f"Reconciliation run {run_id} not found.", HTTPStatus.NOT_FOUND)
    return jsonify(_serialize_run(run)), HTTPStatus.OK
