# outreach_app/utils/notifications.py

"""
Admin alerting for reconciliations that need a human: flagged conflicts and
terminal failures. Alerts go to email (SMTP) and, when configured, a Slack
incoming webhook. Alert delivery must never interfere with event processing,
so delivery failures are logged and swallowed here rather than raised.
"""

import smtplib
from email.message import EmailMessage

import requests
from flask import current_app


def send_email(subject, body, recipients):
    """Deliver a plain-text email using the MAIL_* settings."""
    config = current_app.config
    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = config.get("MAIL_FROM", "noreply@example.com")
    message["To"] = ", ".join(recipients)
    message.set_content(body)

    with smtplib.SMTP(config["MAIL_SERVER"], config.get("MAIL_PORT", 587), timeout=10) as smtp:
        if config.get("MAIL_USE_TLS", True):
            smtp.starttls()
        if config.get("MAIL_USERNAME"):
            smtp.login(config["MAIL_USERNAME"], config.get("MAIL_PASSWORD") or "")
        smtp.send_message(message)


def send_slack_message(text):
    """Post ``text`` to SLACK_WEBHOOK_URL."""
    response = requests.post(current_app.config["SLACK_WEBHOOK_URL"], json={"text": text}, timeout=10)
    response.raise_for_status()


def _format_context(context):
    return "\n".join(f"{key}: {value}" for key, value in sorted(context.items()))


def _email_recipients(config):
    return [address.strip() for address in config.get("ADMIN_EMAILS", []) if address and address.strip()]


def _deliver_email(subject, context, recipients):
    try:
        send_email(subject, _format_context(context), recipients)
    except (smtplib.SMTPException, OSError) as exc:
        current_app.logger.error(
            "Failed to deliver admin alert email: %s",
            exc,
            extra={"alert_subject": subject, "alert_context": context},
        )
        return False
    current_app.logger.info("Admin alert sent", extra={"alert_subject": subject, "alert_recipients": recipients})
    return True


def _deliver_slack(subject, context):
    try:
        send_slack_message(f"*{subject}*\n```{_format_context(context)}```")
    except requests.RequestException as exc:
        current_app.logger.error(
            "Failed to deliver admin alert to Slack: %s",
            exc,
            extra={"alert_subject": subject, "alert_context": context},
        )
        return False
    current_app.logger.info("Admin alert posted to Slack", extra={"alert_subject": subject})
    return True


def send_admin_alert(subject, context):
    """
    Notify administrators about a reconciliation requiring attention.

    Returns True when at least one channel delivered the alert. When every
    channel is disabled the alert is only written to the log.
    """
    config = current_app.config
    recipients = _email_recipients(config)
    app_name = config.get("APP_NAME", "Outreach Engine")
    full_subject = f"[{app_name}] {subject}"

    email_enabled = bool(config.get("ENABLE_EMAIL_ALERTS", False) and recipients and config.get("MAIL_SERVER"))
    slack_enabled = bool(config.get("ENABLE_SLACK_ALERTS", False) and config.get("SLACK_WEBHOOK_URL"))

    if not email_enabled and not slack_enabled:
        current_app.logger.warning(
            "Admin alert (delivery disabled): %s",
            subject,
            extra={"alert_subject": subject, "alert_context": context},
        )
        return False

    delivered = False
    if email_enabled:
        delivered = _deliver_email(full_subject, context, recipients) or delivered
    if slack_enabled:
        delivered = _deliver_slack(full_subject, context) or delivered
    return delivered
