"""
Liveness, readiness and Prometheus metrics endpoints.
"""

from __future__ import annotations

from http import HTTPStatus

from flask import Blueprint, Response, current_app, jsonify
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from outreach_app.engine.celery_app import DEFAULT_QUEUE_NAME, ENGINE_EXTENSION_KEY
from outreach_app.engine.review_service import ReviewQueueService
from outreach_app.models import db

health_blueprint = Blueprint("health", __name__)


@health_blueprint.get("/health")
def health():
    return jsonify({"status": "ok", "version": current_app.config.get("APP_VERSION")}), HTTPStatus.OK


@health_blueprint.get("/ready")
def ready():
    """Report whether the database answers and the store and worker are configured."""
    state = current_app.extensions.get(ENGINE_EXTENSION_KEY, {})
    checks = {
        "database": "ok",
        "store_configured": bool(current_app.config.get("STORE_BASE_ID") and current_app.config.get("STORE_API_TOKEN")),
        "worker_enabled": bool(state.get("worker_enabled")),
        "queue": DEFAULT_QUEUE_NAME,
    }
    try:
        db.session.execute(text("SELECT 1"))
        checks["pending_reviews"] = ReviewQueueService().pending_count()
    except SQLAlchemyError as exc:
        current_app.logger.error("Readiness check failed: database unavailable", exc_info=exc)
        checks["database"] = "error"

    ready_flag = checks["database"] == "ok" and checks["store_configured"]
    checks["status"] = "ready" if ready_flag else "not_ready"
    return jsonify(checks), HTTPStatus.OK if ready_flag else HTTPStatus.SERVICE_UNAVAILABLE


@health_blueprint.get("/metrics")
def metrics():
    if not current_app.config.get("MONITORING_ENABLED", False):
        return jsonify({"error": "Metrics are disabled."}), HTTPStatus.NOT_FOUND
    return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)
