"""
Change request, quote and invoice endpoints.

Thin HTTP adapter over the services: parse input, call a service, map the
result or exception to the standard error envelope.

Endpoints (/api/v1):
    GET   /change-requests/<id>
    POST  /change-requests/<id>/approve
    POST  /change-requests/<id>/reject
    POST  /change-requests/<id>/request-info
    PATCH /quotes/<id>                         version-checked quote edit
    GET   /quotes/<id>/progress                per-phase workflow progress
    GET   /invoices/<id>/versions
    GET   /invoices/<id>/versions/compare?from=&to=
    GET   /invoices/<id>/payment-schedule?approval_date=&amount_paid=
"""

import logging
from datetime import date

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

from catering.core.exceptions import (
    ConflictError,
    NotFoundError,
    OptimisticLockConflict,
    ValidationError,
)
from catering.models import db
from catering.models.change_request import ChangeRequest
from catering.models.invoice import Invoice
from catering.models.quote import QuoteRequest
from catering.services.change_request_processor import ChangeRequestProcessor
from catering.services.estimate_version_service import EstimateVersionService
from catering.services.payment_schedule import (
    apply_payments,
    invoice_payment_status,
    materialize_milestones,
    schedule_for_invoice,
)
from catering.services.quote_update_service import (
    apply_changes,
    regenerate_line_items,
    update_quote,
    validate_patch,
)
from catering.services.workflow_state import allowed_next, workflow_progress
from catering.utils.errors import E, api_error
from catering.utils.helpers import get_or_404, parse_date

logger = logging.getLogger(__name__)

change_request_bp = Blueprint("change_request_bp", __name__, url_prefix="/api/v1")


# ── Error handlers ───────────────────────────────────────────────────────────

@change_request_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@change_request_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_INVALID, str(error), details=error.details)


@change_request_bp.errorhandler(OptimisticLockConflict)
def _handle_lock_conflict(error: OptimisticLockConflict):
    return api_error(E.OPTIMISTIC_LOCK_CONFLICT, error.user_message,
                     details={"resource": error.resource, "id": error.resource_id,
                              "expected_version": error.expected_version})


@change_request_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(error.code, str(error), status=409)


@change_request_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return api_error(E.VALIDATION_INVALID, error.description or error.name, status=error.code)
    db.session.rollback()
    logger.exception("Unexpected error in change_request_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


def _saga_response(result):
    if result.success:
        return jsonify(result.to_dict()), 200
    return api_error(
        result.error_code or E.INTERNAL,
        result.error or "Change request could not be processed",
        details={
            "failed_step": result.failed_step,
            "fields": result.details,
            "steps": [s.to_dict() for s in result.steps],
        },
    )


# ═════════════════════════════════════════════════════════════════════════
# Change requests
# ═════════════════════════════════════════════════════════════════════════

@change_request_bp.route("/change-requests/<int:cr_id>", methods=["GET"])
def get_change_request(cr_id):
    cr, err = get_or_404(ChangeRequest, cr_id, "Change request")
    if err:
        return err
    return jsonify(cr.to_dict()), 200


def _admin_input():
    data = request.get_json(silent=True) or {}
    response = data.get("admin_response")
    if response is not None and not isinstance(response, str):
        raise ValidationError("admin_response must be text", {"admin_response": "must be text"})
    return (response or "").strip() or None, str(data.get("reviewed_by") or "admin")


@change_request_bp.route("/change-requests/<int:cr_id>/approve", methods=["POST"])
def approve_change_request(cr_id):
    cr, err = get_or_404(ChangeRequest, cr_id, "Change request")
    if err:
        return err
    admin_response, reviewed_by = _admin_input()
    result = ChangeRequestProcessor().approve_change_request(
        cr, admin_response=admin_response, reviewed_by=reviewed_by,
    )
    return _saga_response(result)


@change_request_bp.route("/change-requests/<int:cr_id>/reject", methods=["POST"])
def reject_change_request(cr_id):
    cr, err = get_or_404(ChangeRequest, cr_id, "Change request")
    if err:
        return err
    admin_response, reviewed_by = _admin_input()
    result = ChangeRequestProcessor().reject_change_request(cr, admin_response, reviewed_by=reviewed_by)
    return _saga_response(result)


@change_request_bp.route("/change-requests/<int:cr_id>/request-info", methods=["POST"])
def request_more_info(cr_id):
    cr, err = get_or_404(ChangeRequest, cr_id, "Change request")
    if err:
        return err
    admin_response, reviewed_by = _admin_input()
    if not admin_response:
        return api_error(E.VALIDATION_REQUIRED, "admin_response is required when asking for more information")
    result = ChangeRequestProcessor().request_more_info(cr, admin_response, reviewed_by=reviewed_by)
    return _saga_response(result)


# ═════════════════════════════════════════════════════════════════════════
# Quotes
# ═════════════════════════════════════════════════════════════════════════

@change_request_bp.route("/quotes/<int:quote_id>", methods=["PATCH"])
def patch_quote(quote_id):
    """
    Version-checked quote edit. Body: ``{"version": 3, ...changes}``.
    A stale version returns 409 OPTIMISTIC_LOCK_CONFLICT.
    """
    quote, err = get_or_404(QuoteRequest, quote_id, "Quote")
    if err:
        return err

    data = request.get_json(silent=True) or {}
    if "version" not in data:
        return api_error(E.VALIDATION_REQUIRED, "version is required")
    try:
        expected_version = int(data.pop("version"))
    except (TypeError, ValueError):
        return api_error(E.VALIDATION_INVALID, "version must be an integer")

    validate_patch(data)
    updates = apply_changes(quote, data, stamp_status=False)
    if not updates:
        return api_error(E.VALIDATION_REQUIRED, "No changes supplied")

    quote = update_quote(quote_id, updates, expected_version=expected_version)
    regenerate_line_items(quote_id)
    db.session.commit()
    return jsonify(quote.to_dict()), 200


def _invoice_for_quote(quote_id):
    return (
        Invoice.query
        .filter_by(quote_request_id=quote_id)
        .order_by(Invoice.id.desc())
        .first()
    )


@change_request_bp.route("/quotes/<int:quote_id>/progress", methods=["GET"])
def quote_progress(quote_id):
    quote, err = get_or_404(QuoteRequest, quote_id, "Quote")
    if err:
        return err
    invoice = _invoice_for_quote(quote_id)
    progress = workflow_progress(quote.workflow_status, invoice.workflow_status if invoice else None)
    progress["quote"]["allowed_next"] = allowed_next("quote", quote.workflow_status)
    if invoice is not None:
        progress["invoice"]["invoice_id"] = invoice.id
        progress["invoice"]["allowed_next"] = allowed_next("invoice", invoice.workflow_status)
    return jsonify(progress), 200


# ═════════════════════════════════════════════════════════════════════════
# Invoices
# ═════════════════════════════════════════════════════════════════════════

@change_request_bp.route("/invoices/<int:invoice_id>/versions", methods=["GET"])
def list_versions(invoice_id):
    _, err = get_or_404(Invoice, invoice_id, "Invoice")
    if err:
        return err
    versions = EstimateVersionService.list_versions(invoice_id)
    return jsonify({"items": [v.to_dict() for v in versions], "total": len(versions)}), 200


@change_request_bp.route("/invoices/<int:invoice_id>/versions/compare", methods=["GET"])
def compare_versions(invoice_id):
    _, err = get_or_404(Invoice, invoice_id, "Invoice")
    if err:
        return err
    from_version = request.args.get("from", type=int)
    to_version = request.args.get("to", type=int)
    if from_version is None:
        return api_error(E.VALIDATION_REQUIRED, "'from' version is required")
    return jsonify(EstimateVersionService.compare_versions(invoice_id, from_version, to_version)), 200


@change_request_bp.route("/invoices/<int:invoice_id>/payment-schedule", methods=["GET"])
def payment_schedule(invoice_id):
    invoice, err = get_or_404(Invoice, invoice_id, "Invoice")
    if err:
        return err
    if invoice.quote_request is None:
        return api_error(E.CONFLICT_STATE, "Invoice has no quote; event date unknown", status=409)

    raw_date = request.args.get("approval_date")
    approval_date = parse_date(raw_date) if raw_date else date.today()
    if approval_date is None:
        return api_error(E.VALIDATION_INVALID, "approval_date must be an ISO date")
    amount_paid = request.args.get("amount_paid", default=0, type=int)

    schedule = schedule_for_invoice(invoice, approval_date)
    milestones = apply_payments(materialize_milestones(schedule), amount_paid, today=date.today())
    return jsonify({
        "invoice_id": invoice.id,
        "schedule": schedule.to_dict(),
        "milestones": [m.to_dict() for m in milestones],
        "payment_status": invoice_payment_status(milestones),
        "amount_paid": amount_paid,
    }), 200
