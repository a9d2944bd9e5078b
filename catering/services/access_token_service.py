"""
Customer portal access tokens.

A token is an opaque ``secrets.token_urlsafe(32)`` value stored on the
invoice with an expiry. Issuing a new token replaces the old one, so every
previously sent link stops resolving.
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone

from flask import current_app, has_app_context

from catering.models.invoice import Invoice
from catering.utils.helpers import utcnow

logger = logging.getLogger(__name__)

DEFAULT_TTL_DAYS = 90
DEFAULT_PORTAL_BASE_URL = "http://localhost:5173"


def _config(key, default):
    if has_app_context():
        return current_app.config.get(key, default)
    return default


def _as_aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on read; stored values are always UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def generate_token() -> str:
    return secrets.token_urlsafe(32)


def issue_access_token(invoice: Invoice, *, ttl_days: int | None = None, now: datetime | None = None) -> str:
    """Rotate the invoice's token and expiry in place (no flush, no commit)."""
    ttl = ttl_days if ttl_days is not None else _config("ACCESS_TOKEN_TTL_DAYS", DEFAULT_TTL_DAYS)
    now = now or utcnow()
    token = generate_token()
    invoice.customer_access_token = token
    invoice.token_expires_at = now + timedelta(days=int(ttl))
    logger.info("Access token rotated for invoice %s (expires %s)",
                invoice.id, invoice.token_expires_at.date().isoformat(),
                extra={"invoice_id": invoice.id})
    return token


def is_token_valid(invoice: Invoice, *, now: datetime | None = None) -> bool:
    expires = _as_aware(invoice.token_expires_at)
    if not invoice.customer_access_token or expires is None:
        return False
    return expires > (now or utcnow())


def resolve_invoice_by_token(token: str | None, *, now: datetime | None = None) -> Invoice | None:
    """The invoice a token grants access to, or None if unknown or expired."""
    if not token:
        return None
    invoice = Invoice.query.filter_by(customer_access_token=token).first()
    if invoice is None or not is_token_valid(invoice, now=now):
        return None
    return invoice


def build_estimate_link(token: str, base_url: str | None = None) -> str:
    base = (base_url or _config("CUSTOMER_PORTAL_BASE_URL", DEFAULT_PORTAL_BASE_URL)).rstrip("/")
    return f"{base}/estimate?token={token}"
