"""
Catering Quote Workflow
Customer notification email.

Sends change-request outcome emails. When SMTP is not configured, emails
are logged but not sent (dev/test mode). Every attempt is recorded in
EmailLog.

The saga treats this as a non-blocking boundary: ``send_change_request_response``
never raises, it returns ``NotificationResult(success, error)``.

Configuration (env vars):
    MAIL_SERVER     SMTP host (default: None → log-only mode)
    MAIL_PORT       SMTP port (default: 587)
    MAIL_USE_TLS    Use TLS (default: true)
    MAIL_USERNAME   SMTP username
    MAIL_PASSWORD   SMTP password
    MAIL_DEFAULT_SENDER  Default from address
"""

from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from catering.models import db
from catering.models.notification import EmailLog

logger = logging.getLogger(__name__)

ACTIONS = ("approved", "rejected", "request_more_info")

_SUBJECTS = {
    "approved": "Change Request Approved - Review Updated Estimate - {event_name}",
    "rejected": "Change Request Update on Your Request - {event_name}",
    "request_more_info": "Change Request More Information Needed - {event_name}",
}

_BODIES = {
    "approved": """
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
            <h2 style="color: #166534;">Your change request was approved</h2>
            <p>Hi {customer_name},</p>
            <p>We have updated the estimate for <strong>{event_name}</strong> with the changes you asked for.</p>
            {cost_change_block}
            {admin_response_block}
            <p>Please review and approve the updated estimate:</p>
            <p><a href="{estimate_link}">{estimate_link}</a></p>
            <p style="color: #64748b; font-size: 12px;">Links sent with earlier versions of this estimate no longer work.</p>
        </div>
    """,
    "rejected": """
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
            <h2>An update on your change request</h2>
            <p>Hi {customer_name},</p>
            <p>We were not able to make the requested changes to <strong>{event_name}</strong>.</p>
            {admin_response_block}
            <p>Your current estimate remains unchanged.</p>
        </div>
    """,
    "request_more_info": """
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
            <h2>We need a little more information</h2>
            <p>Hi {customer_name},</p>
            <p>Before we can update the estimate for <strong>{event_name}</strong> we need a few details.</p>
            {admin_response_block}
            <p>Simply reply to this email and we will take it from there.</p>
        </div>
    """,
}


@dataclass
class NotificationResult:
    success: bool
    error: str | None = None
    email_log_id: int | None = None


def format_cents(cents: int) -> str:
    sign = "-" if cents < 0 else "+"
    return f"{sign}${abs(cents) / 100:,.2f}"


class EmailNotificationService:
    """
    Customer notification boundary.

    In development/test mode (no MAIL_SERVER configured), emails are
    logged to the database but not actually sent via SMTP.
    """

    @staticmethod
    def is_configured() -> bool:
        return bool(current_app.config.get("MAIL_SERVER"))

    @staticmethod
    def render(
        *,
        action: str,
        customer_name: str,
        event_name: str,
        admin_response: str | None = None,
        cost_change: int | None = None,
        estimate_link: str | None = None,
    ) -> tuple[str, str]:
        """Return ``(subject, html_body)`` for an action."""
        if action not in ACTIONS:
            raise ValueError(f"Unknown notification action: {action}")
        context = _SafeDict(
            customer_name=customer_name or "there",
            event_name=event_name or "your event",
            estimate_link=estimate_link or "",
            admin_response_block=(
                f"<p><strong>Note from our team:</strong> {admin_response}</p>" if admin_response else ""
            ),
            cost_change_block=(
                f"<p>Estimated cost change: <strong>{format_cents(cost_change)}</strong></p>"
                if cost_change else ""
            ),
        )
        return _SUBJECTS[action].format_map(context), _BODIES[action].format_map(context)

    @classmethod
    def send_change_request_response(
        cls,
        *,
        to: str,
        customer_name: str,
        event_name: str,
        action: str,
        admin_response: str | None = None,
        cost_change: int | None = None,
        estimate_link: str | None = None,
        change_request_id: int | None = None,
    ) -> NotificationResult:
        """
        Render, send and log one change-request notification.

        Never raises: any failure (rendering, SMTP, email log write) is
        reported through the returned NotificationResult.
        """
        try:
            subject, html_body = cls.render(
                action=action, customer_name=customer_name, event_name=event_name,
                admin_response=admin_response, cost_change=cost_change,
                estimate_link=estimate_link,
            )
        except ValueError as exc:
            logger.error("Email render failed: %s", exc, extra={"change_request_id": change_request_id})
            return NotificationResult(success=False, error=str(exc))

        try:
            log = EmailLog(
                recipient_email=to,
                recipient_name=customer_name,
                subject=subject,
                template_name=f"change_request_{action}",
                status="queued",
                change_request_id=change_request_id,
            )
            db.session.add(log)
            db.session.flush()
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error("Email log write failed: to=%s error=%s", to, exc,
                         extra={"change_request_id": change_request_id})
            return NotificationResult(success=False, error=str(exc))

        if not cls.is_configured():
            # Dev/test mode: log only
            log.status = "logged"
            log.sent_at = datetime.now(timezone.utc)
            logger.info("Email (dev mode): to=%s subject='%s'", to, subject,
                        extra={"change_request_id": change_request_id})
            return cls._finish(log, NotificationResult(success=True, email_log_id=log.id))

        try:
            cls._send_smtp(to_email=to, to_name=customer_name, subject=subject, html_body=html_body)
            log.status = "sent"
            log.sent_at = datetime.now(timezone.utc)
            logger.info("Email sent: to=%s subject='%s'", to, subject,
                        extra={"change_request_id": change_request_id})
            result = NotificationResult(success=True, email_log_id=log.id)
        except (smtplib.SMTPException, OSError) as exc:
            log.status = "failed"
            log.error_message = str(exc)[:1000]
            logger.error("Email failed: to=%s error=%s", to, exc,
                         extra={"change_request_id": change_request_id})
            result = NotificationResult(success=False, error=str(exc), email_log_id=log.id)
        return cls._finish(log, result)

    @staticmethod
    def _finish(log: EmailLog, result: NotificationResult) -> NotificationResult:
        try:
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.warning("Email log commit failed: %s", exc)
        return result

    @staticmethod
    def _send_smtp(*, to_email: str, to_name: str | None,
                   subject: str, html_body: str) -> None:
        """Actually send via SMTP."""
        cfg = current_app.config
        server = cfg.get("MAIL_SERVER")
        port = cfg.get("MAIL_PORT", 587)
        use_tls = cfg.get("MAIL_USE_TLS", True)
        username = cfg.get("MAIL_USERNAME")
        password = cfg.get("MAIL_PASSWORD")
        sender = cfg.get("MAIL_DEFAULT_SENDER", f"noreply@{server}")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = sender
        msg["To"] = f"{to_name} <{to_email}>" if to_name else to_email
        msg.attach(MIMEText(html_body, "html"))

        with smtplib.SMTP(server, port, timeout=30) as smtp:
            if use_tls:
                smtp.starttls()
            if username and password:
                smtp.login(username, password)
            smtp.send_message(msg)


class _SafeDict(dict):
    """Dict that returns {key} for missing keys instead of raising."""

    def __missing__(self, key):
        return f"{{{key}}}"
