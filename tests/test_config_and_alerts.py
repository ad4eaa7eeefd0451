"""Tests for configuration helpers, environment validation, alerting and log formatting"""

import json
import logging
import smtplib
from unittest.mock import MagicMock, patch

import pytest
import requests

from config.base import _coerce_bool, _coerce_float, _coerce_int
from config.validation import validate_environment
from outreach_app.utils.logging_config import JSONFormatter
from outreach_app.utils.notifications import send_admin_alert


class TestCoercion:
    """Environment-style value parsing"""

    @pytest.mark.parametrize(
        "value,expected",
        [("1", True), ("TRUE", True), (" yes ", True), ("off", False), ("0", False), (True, True)],
    )
    def test_coerce_bool(self, value, expected):
        assert _coerce_bool(value) is expected

    def test_coerce_bool_falls_back_to_default(self):
        assert _coerce_bool(None, default=True) is True
        assert _coerce_bool("maybe", default=False) is False

    def test_coerce_int(self):
        assert _coerce_int("25", 20) == 25
        assert _coerce_int("", 20) == 20
        assert _coerce_int("lots", 20) == 20
        assert _coerce_int("0", 20, minimum=1) == 20

    def test_coerce_float(self):
        assert _coerce_float("2.5", 5.0) == 2.5
        assert _coerce_float(None, 5.0) == 5.0
        assert _coerce_float("-1", 5.0, minimum=0) == 5.0


class TestEnvironmentValidation:
    """Startup validation only applies to production"""

    def test_non_production_is_always_valid(self, monkeypatch):
        monkeypatch.delenv("STORE_BASE_ID", raising=False)
        assert validate_environment("development") == (True, [])

    def test_production_requires_store_and_database(self, monkeypatch):
        for name in ("SECRET_KEY", "DATABASE_URL", "STORE_BASE_ID", "STORE_API_TOKEN"):
            monkeypatch.delenv(name, raising=False)
        monkeypatch.setenv("ENABLE_EMAIL_ALERTS", "false")

        is_valid, errors = validate_environment("production")

        assert is_valid is False
        joined = "\n".join(errors)
        for name in ("SECRET_KEY", "DATABASE_URL", "STORE_BASE_ID", "STORE_API_TOKEN"):
            assert name in joined

    def test_email_alerts_need_mail_settings(self, monkeypatch):
        monkeypatch.setenv("SECRET_KEY", "a" * 64)
        monkeypatch.setenv("DATABASE_URL", "postgresql://db/outreach")
        monkeypatch.setenv("STORE_BASE_ID", "appX")
        monkeypatch.setenv("STORE_API_TOKEN", "tok")
        monkeypatch.setenv("ENABLE_EMAIL_ALERTS", "true")
        monkeypatch.delenv("MAIL_SERVER", raising=False)
        monkeypatch.delenv("ADMIN_EMAILS", raising=False)
        monkeypatch.delenv("ENABLE_SLACK_ALERTS", raising=False)

        is_valid, errors = validate_environment("production")

        assert is_valid is False
        assert len(errors) == 2

    def test_slack_alerts_need_webhook_url(self, monkeypatch):
        monkeypatch.setenv("SECRET_KEY", "a" * 64)
        monkeypatch.setenv("DATABASE_URL", "postgresql://db/outreach")
        monkeypatch.setenv("STORE_BASE_ID", "appX")
        monkeypatch.setenv("STORE_API_TOKEN", "tok")
        monkeypatch.setenv("ENABLE_EMAIL_ALERTS", "false")
        monkeypatch.setenv("ENABLE_SLACK_ALERTS", "true")
        monkeypatch.delenv("SLACK_WEBHOOK_URL", raising=False)

        is_valid, errors = validate_environment("production")

        assert is_valid is False
        assert errors == ["SLACK_WEBHOOK_URL is required when ENABLE_SLACK_ALERTS=true"]


class TestAdminAlerts:
    """Alerts never raise into reconciliation"""

    def test_disabled_alerts_only_log(self, app):
        with patch("outreach_app.utils.notifications.send_email") as mock_send:
            assert send_admin_alert("Manual review needed", {"source_record_id": "recRt1"}) is False
        mock_send.assert_not_called()

    def test_enabled_alerts_send_email(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "ENABLE_EMAIL_ALERTS", True)
        monkeypatch.setitem(app.config, "MAIL_SERVER", "smtp.test")
        monkeypatch.setitem(app.config, "ADMIN_EMAILS", ["admin@example.com", " "])

        with patch("outreach_app.utils.notifications.send_email") as mock_send:
            assert send_admin_alert("Reconciliation failed: TerminalStoreError", {"b": 2, "a": 1}) is True

        subject, body, recipients = mock_send.call_args.args
        assert subject == "[Outreach Engine] Reconciliation failed: TerminalStoreError"
        assert body == "a: 1\nb: 2"
        assert recipients == ["admin@example.com"]

    def test_smtp_failure_is_logged_not_raised(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "ENABLE_EMAIL_ALERTS", True)
        monkeypatch.setitem(app.config, "MAIL_SERVER", "smtp.test")
        monkeypatch.setitem(app.config, "ADMIN_EMAILS", ["admin@example.com"])

        with patch("outreach_app.utils.notifications.send_email", side_effect=smtplib.SMTPException("refused")):
            assert send_admin_alert("Manual review needed", {}) is False

    def test_slack_webhook_receives_alert(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "ENABLE_SLACK_ALERTS", True)
        monkeypatch.setitem(app.config, "SLACK_WEBHOOK_URL", "https://hooks.slack.com/services/T000/B000/XXX")

        with patch("outreach_app.utils.notifications.requests.post") as mock_post, patch(
            "outreach_app.utils.notifications.send_email"
        ) as mock_send:
            assert send_admin_alert("Manual review needed: ambiguous_match", {"source_record_id": "recFt3"}) is True

        mock_send.assert_not_called()
        url = mock_post.call_args.args[0]
        assert url == "https://hooks.slack.com/services/T000/B000/XXX"
        text = mock_post.call_args.kwargs["json"]["text"]
        assert "[Outreach Engine] Manual review needed: ambiguous_match" in text
        assert "source_record_id: recFt3" in text

    def test_slack_without_webhook_url_only_logs(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "ENABLE_SLACK_ALERTS", True)
        monkeypatch.setitem(app.config, "SLACK_WEBHOOK_URL", None)

        with patch("outreach_app.utils.notifications.requests.post") as mock_post:
            assert send_admin_alert("Manual review needed", {}) is False
        mock_post.assert_not_called()

    def test_slack_http_error_is_logged_not_raised(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "ENABLE_SLACK_ALERTS", True)
        monkeypatch.setitem(app.config, "SLACK_WEBHOOK_URL", "https://hooks.slack.com/test")

        with patch("outreach_app.utils.notifications.requests.post") as mock_post:
            mock_response = MagicMock()
            mock_response.raise_for_status.side_effect = requests.HTTPError("400 Bad Request")
            mock_post.return_value = mock_response
            assert send_admin_alert("Reconciliation failed: LockTimeout", {}) is False

    def test_email_still_counts_when_slack_fails(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "ENABLE_EMAIL_ALERTS", True)
        monkeypatch.setitem(app.config, "MAIL_SERVER", "smtp.test")
        monkeypatch.setitem(app.config, "ADMIN_EMAILS", ["admin@example.com"])
        monkeypatch.setitem(app.config, "ENABLE_SLACK_ALERTS", True)
        monkeypatch.setitem(app.config, "SLACK_WEBHOOK_URL", "https://hooks.slack.com/test")

        with patch("outreach_app.utils.notifications.send_email") as mock_send, patch(
            "outreach_app.utils.notifications.requests.post", side_effect=requests.ConnectionError("down")
        ):
            assert send_admin_alert("Manual review needed", {}) is True
        mock_send.assert_called_once()


class TestJSONFormatter:
    def test_extra_fields_are_rendered(self):
        record = logging.LogRecord("outreach_app.engine", logging.INFO, __file__, 10, "Reconciliation finished: %s", ("created",), None)
        record.reconcile_person_id = "recP1"

        payload = json.loads(JSONFormatter().format(record))

        assert payload["message"] == "Reconciliation finished: created"
        assert payload["level"] == "INFO"
        assert payload["reconcile_person_id"] == "recP1"
        assert "args" not in payload
