"""Customer access tokens and change-request notification emails."""

import smtplib
from datetime import timedelta

from catering.models import db
from catering.models.notification import EmailLog
from catering.services.access_token_service import (
    build_estimate_link,
    is_token_valid,
    issue_access_token,
    resolve_invoice_by_token,
)
from catering.services.email_service import EmailNotificationService, format_cents
from catering.utils.helpers import utcnow


# ── Access tokens ────────────────────────────────────────────────────────


class TestAccessTokens:
    def test_issue_sets_90_day_expiry(self, invoice):
        now = utcnow()
        token = issue_access_token(invoice, now=now)
        assert invoice.customer_access_token == token
        assert invoice.token_expires_at == now + timedelta(days=90)
        assert len(token) >= 40

    def test_rotation_invalidates_previous_token(self, invoice):
        old = invoice.customer_access_token
        new = issue_access_token(invoice)
        db.session.commit()
        assert new != old
        assert resolve_invoice_by_token(old) is None
        assert resolve_invoice_by_token(new).id == invoice.id

    def test_expired_token_does_not_resolve(self, invoice):
        token = invoice.customer_access_token
        later = utcnow() + timedelta(days=91)
        assert is_token_valid(invoice, now=later) is False
        assert resolve_invoice_by_token(token, now=later) is None

    def test_missing_token(self):
        assert resolve_invoice_by_token(None) is None
        assert resolve_invoice_by_token("nope") is None

    def test_estimate_link_uses_portal_url(self):
        assert build_estimate_link("abc") == "https://portal.test/estimate?token=abc"
        assert build_estimate_link("abc", "https://x.example/") == "https://x.example/estimate?token=abc"


# ── Email ────────────────────────────────────────────────────────────────


class TestRender:
    def test_approved_subject_and_body(self):
        subject, body = EmailNotificationService.render(
            action="approved", customer_name="Jane", event_name="Doe Wedding",
            admin_response="Swapped to catfish", cost_change=21600,
            estimate_link="https://portal.test/estimate?token=t",
        )
        assert subject == "Change Request Approved - Review Updated Estimate - Doe Wedding"
        assert "+$216.00" in body
        assert "Swapped to catfish" in body
        assert "https://portal.test/estimate?token=t" in body

    def test_rejected_subject(self):
        subject, body = EmailNotificationService.render(
            action="rejected", customer_name="Jane", event_name="Doe Wedding",
        )
        assert subject == "Change Request Update on Your Request - Doe Wedding"
        assert "remains unchanged" in body

    def test_format_cents(self):
        assert format_cents(-1250) == "-$12.50"
        assert format_cents(123456) == "+$1,234.56"


class TestSend:
    def _send(self, action="approved"):
        return EmailNotificationService.send_change_request_response(
            to="jane@gmail.com", customer_name="Jane", event_name="Doe Wedding",
            action=action, admin_response="ok",
        )

    def test_log_only_mode_without_mail_server(self):
        result = self._send()
        assert result.success is True
        log = db.session.get(EmailLog, result.email_log_id)
        assert log.status == "logged"
        assert log.template_name == "change_request_approved"

    def test_smtp_failure_is_reported_not_raised(self, monkeypatch):
        def _refuse(**kwargs):
            raise smtplib.SMTPException("connection refused")

        monkeypatch.setattr(EmailNotificationService, "is_configured", staticmethod(lambda: True))
        monkeypatch.setattr(EmailNotificationService, "_send_smtp", staticmethod(_refuse))

        result = self._send()

        assert result.success is False
        assert "connection refused" in result.error
        log = db.session.get(EmailLog, result.email_log_id)
        assert log.status == "failed"
        assert "connection refused" in log.error_message

    def test_smtp_success(self, monkeypatch):
        sent = []
        monkeypatch.setattr(EmailNotificationService, "is_configured", staticmethod(lambda: True))
        monkeypatch.setattr(EmailNotificationService, "_send_smtp", staticmethod(lambda **kw: sent.append(kw)))

        result = self._send(action="request_more_info")

        assert result.success is True
        assert sent[0]["subject"] == "Change Request More Information Needed - Doe Wedding"
        assert db.session.get(EmailLog, result.email_log_id).status == "sent"

    def test_unknown_action(self):
        result = self._send(action="shrug")
        assert result.success is False
        assert EmailLog.query.count() == 0
