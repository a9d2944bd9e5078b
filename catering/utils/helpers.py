"""Shared utility functions for services and blueprints.

get_or_404:     tuple-return lookup for blueprints
parse_date:     lenient date parsing (returns None on bad input)
utcnow:         timezone-aware "now" used for every persisted timestamp
"""
import logging
from datetime import date, datetime, timezone

from flask import jsonify

from catering.models import db

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def get_or_404(model, pk, label=None):
    """Fetch a model instance by primary key or return a 404 error tuple.

    - Success: (obj, None)
    - Failure: (None, (jsonify_response, 404))

        obj, err = get_or_404(Invoice, invoice_id)
        if err:
            return err
    """
    label = label or model.__name__
    obj = db.session.get(model, pk)
    if not obj:
        return None, (jsonify({"error": f"{label} not found", "code": "ERR_NOT_FOUND"}), 404)
    return obj, None


def parse_date(value):
    """Parse a date string (ISO date or ISO datetime) to a date object.

    Returns None for empty/invalid input. ``date`` and ``datetime`` instances
    pass through (datetimes are reduced to their date).
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        return None
