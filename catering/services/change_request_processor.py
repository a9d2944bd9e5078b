"""
Change request approval saga.

approve_change_request runs these steps in order:

     1. load        invoice + quote, patch validation, claim as 'processing'
     2. snapshot    estimate version (best-effort: failure is logged, saga continues)
     3. apply_changes          patch → quote field updates
     4. update_quote           optimistic-locked write with the version read in step 1
     5. regenerate_line_items  quote-level planning items
     6. refresh_invoice        authoritative total before reconciliation
     7. reconcile_line_items   invoice items + totals
     8. history     field-level deltas (best-effort)
     9. mark_approved          processing → approved, record cost change
    10. rotate_token           new customer access token, 90-day expiry
    11. force_invoice_sent     forced transition back to 'sent'
    12. log_transition         workflow_state_log rows
    13. notify      customer email (never fails the saga)

The claim in step 1 is committed before any other write, so a reject or
second approval arriving mid-saga gets ERR_CONFLICT_STATE. Steps 3-7 and
9-12 abort on failure, hand the request back to the status it was claimed
from and return a typed failure result. Work committed by an earlier step
(snapshot, quote write) stays in place. Steps 9-12 commit together and are
the point of no return.

Usage:
    from catering.services.change_request_processor import ChangeRequestProcessor

    result = ChangeRequestProcessor().approve_change_request(cr, admin_response="Done!")
    if not result.success:
        return api_error(result.error_code, result.error)
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime

from sqlalchemy.exc import SQLAlchemyError

from catering.core.exceptions import (
    ChangeRequestAlreadyResolved,
    ConflictError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from catering.models import db
from catering.models.change_request import ChangeRequest
from catering.models.invoice import Invoice
from catering.models.quote import QuoteRequest
from catering.services import workflow_state
from catering.services.access_token_service import build_estimate_link, issue_access_token
from catering.services.email_service import EmailNotificationService
from catering.services.estimate_version_service import EstimateVersionService
from catering.services.history_logger import diff_line_items, log_line_item_changes, log_quote_changes
from catering.services.quote_update_service import (
    apply_changes,
    regenerate_line_items,
    update_invoice_line_items,
    update_quote,
    validate_patch,
)
from catering.services.workflow_state import (
    CHANGE_REQUEST,
    INVOICE,
    QUOTE,
    ChangeRequestStatus,
    TransitionCause,
)
from catering.utils.helpers import utcnow

logger = logging.getLogger(__name__)

OPEN_STATUSES = (ChangeRequestStatus.PENDING.value, ChangeRequestStatus.REVIEWING.value)
_EXPECTED_FAILURES = (NotFoundError, ConflictError, ValidationError)


@dataclass
class SagaStep:
    name: str
    status: str = "ok"
    detail: str | None = None

    def to_dict(self) -> dict:
        return {"name": self.name, "status": self.status, "detail": self.detail}


@dataclass
class SagaResult:
    change_request_id: int
    action: str
    success: bool = False
    error_code: str | None = None
    error: str | None = None
    details: dict | None = None
    failed_step: str | None = None
    previous_total: int | None = None
    new_total: int | None = None
    cost_change: int | None = None
    applied_changes: dict = field(default_factory=dict)
    reconciliation: dict = field(default_factory=dict)
    snapshot_version: int | None = None
    access_token: str | None = None
    estimate_link: str | None = None
    notification_sent: bool = False
    notification_error: str | None = None
    steps: list[SagaStep] = field(default_factory=list)

    def step(self, name: str, status: str = "ok", detail: str | None = None) -> None:
        self.steps.append(SagaStep(name, status, detail))

    def to_dict(self) -> dict:
        return {
            "change_request_id": self.change_request_id,
            "action": self.action,
            "success": self.success,
            "error_code": self.error_code,
            "error": self.error,
            "details": self.details,
            "failed_step": self.failed_step,
            "previous_total": self.previous_total,
            "new_total": self.new_total,
            "cost_change": self.cost_change,
            "applied_changes": self.applied_changes,
            "reconciliation": self.reconciliation,
            "snapshot_version": self.snapshot_version,
            "estimate_link": self.estimate_link,
            "notification_sent": self.notification_sent,
            "notification_error": self.notification_error,
            "steps": [s.to_dict() for s in self.steps],
        }


def _jsonable(updates: dict) -> dict:
    return {
        k: v.isoformat() if isinstance(v, (date, datetime)) else v
        for k, v in updates.items()
    }


class ChangeRequestProcessor:
    """Approve, reject or ask for more information on a change request."""

    def __init__(self, notifier=EmailNotificationService):
        self.notifier = notifier

    # ── helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _check_open(change_request: ChangeRequest) -> None:
        if change_request.status not in OPEN_STATUSES:
            raise ChangeRequestAlreadyResolved(change_request.id, change_request.status)

    @staticmethod
    def _load(change_request: ChangeRequest) -> tuple[Invoice, QuoteRequest]:
        invoice = db.session.get(Invoice, change_request.invoice_id)
        if invoice is None:
            raise NotFoundError(resource="Invoice", resource_id=change_request.invoice_id)
        if invoice.quote_request_id is None:
            raise NotFoundError(resource="QuoteRequest", resource_id=None)
        quote = db.session.get(QuoteRequest, invoice.quote_request_id)
        if quote is None:
            raise NotFoundError(resource="QuoteRequest", resource_id=invoice.quote_request_id)
        return invoice, quote

    @staticmethod
    def _claim(change_request: ChangeRequest, target: str, from_statuses=OPEN_STATUSES) -> str:
        """
        Conditional status write so two concurrent resolutions cannot both win.

        Returns the status held before the claim. The in-memory status is left
        at that value so the following transition logs it as previous.
        """
        previous = change_request.status
        claimed = (
            ChangeRequest.query
            .filter(ChangeRequest.id == change_request.id, ChangeRequest.status.in_(from_statuses))
            .update({"status": target}, synchronize_session=False)
        )
        if claimed == 0:
            db.session.refresh(change_request)
            raise ChangeRequestAlreadyResolved(change_request.id, change_request.status)
        return previous

    @staticmethod
    def _release(change_request_id: int, prior_status: str) -> None:
        """Hand a ``processing`` request back after an aborted approval."""
        try:
            (
                ChangeRequest.query
                .filter(ChangeRequest.id == change_request_id,
                        ChangeRequest.status == ChangeRequestStatus.PROCESSING.value)
                .update({"status": prior_status}, synchronize_session=False)
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Change request %s left in processing after abort", change_request_id,
                             extra={"change_request_id": change_request_id, "saga_step": "release"})

    def _abort(self, result: SagaResult, step: str, exc: Exception, prior_status: str) -> SagaResult:
        self._fail(result, step, exc)
        self._release(result.change_request_id, prior_status)
        return result

    @staticmethod
    def _fail(result: SagaResult, step: str, exc: Exception) -> SagaResult:
        db.session.rollback()
        result.success = False
        result.failed_step = step
        result.error_code = getattr(exc, "code", "ERR_INTERNAL")
        result.error = getattr(exc, "user_message", None) or str(exc)
        result.details = getattr(exc, "details", None) or None
        result.step(step, "failed", str(exc))
        extra = {"change_request_id": result.change_request_id, "saga_step": step}
        if isinstance(exc, PersistenceError):
            logger.error("Change request %s %s aborted at %s: %s", result.change_request_id,
                         result.action, step, exc, exc_info=exc.cause, extra=extra)
        else:
            logger.error("Change request %s %s aborted at %s: %s", result.change_request_id,
                         result.action, step, exc, extra=extra)
        return result

    def _notify(self, result: SagaResult, change_request: ChangeRequest, quote: QuoteRequest | None,
                *, action: str, admin_response: str | None, cost_change: int | None = None,
                estimate_link: str | None = None) -> None:
        extra = {"change_request_id": change_request.id, "saga_step": "notify"}
        try:
            outcome = self.notifier.send_change_request_response(
                to=change_request.customer_email or (quote.email if quote else None),
                customer_name=quote.contact_name if quote else "",
                event_name=quote.event_name if quote else "",
                action=action,
                admin_response=admin_response,
                cost_change=cost_change,
                estimate_link=estimate_link,
                change_request_id=change_request.id,
            )
        except Exception as exc:
            # Never let a notification problem surface past committed state.
            logger.warning("Notification for change request %s raised: %s", change_request.id, exc,
                           extra=extra)
            result.notification_error = str(exc)
            result.step("notify", "warning", str(exc))
            return

        result.notification_sent = bool(outcome.success)
        if outcome.success:
            result.step("notify")
        else:
            result.notification_error = outcome.error
            logger.warning("Notification for change request %s failed: %s", change_request.id,
                           outcome.error, extra=extra)
            result.step("notify", "warning", outcome.error)

    # ── approve ──────────────────────────────────────────────────────────

    def approve_change_request(
        self,
        change_request: ChangeRequest,
        *,
        admin_response: str | None = None,
        reviewed_by: str = "admin",
    ) -> SagaResult:
        cr_id = change_request.id
        result = SagaResult(change_request_id=cr_id, action="approve")
        patch = change_request.requested_changes or {}
        cause = TransitionCause.CHANGE_REQUEST_APPROVED

        # 1. load, gate, validate, then hold the request in 'processing' so
        #    no other resolution can land while quote and invoice change
        try:
            self._check_open(change_request)
            invoice, quote = self._load(change_request)
            workflow_state.validate_transition(INVOICE, invoice.workflow_status, "sent", cause=cause)
            workflow_state.validate_transition(QUOTE, quote.workflow_status, "estimated", cause=cause)
            validate_patch(patch)
            loaded_version = quote.version
            quote_id, invoice_id = quote.id, invoice.id
            quote_before = quote.to_dict()
            prior_status = self._claim(change_request, ChangeRequestStatus.PROCESSING.value)
            db.session.commit()
        except _EXPECTED_FAILURES as exc:
            return self._fail(result, "load", exc)
        except SQLAlchemyError as exc:
            return self._fail(result, "load", PersistenceError("load", exc))
        result.step("load", detail=f"quote v{loaded_version}")
        logger.info("Approving change request %s (invoice %s, quote %s v%s)",
                    cr_id, invoice_id, quote_id, loaded_version,
                    extra={"change_request_id": cr_id, "invoice_id": invoice_id,
                           "quote_id": quote_id, "saga_step": "load"})

        # 2. snapshot (best-effort)
        try:
            version = EstimateVersionService.create_snapshot(
                invoice_id, change_request_id=cr_id, created_by=reviewed_by,
                notes=f"Before change request #{cr_id}",
            )
            db.session.commit()
            result.snapshot_version = version.version_number
            result.step("snapshot", detail=f"v{version.version_number}")
        except (SQLAlchemyError, NotFoundError) as exc:
            db.session.rollback()
            logger.warning("Snapshot skipped for invoice %s: %s", invoice_id, exc,
                           extra={"change_request_id": cr_id, "saga_step": "snapshot"})
            result.step("snapshot", "warning", str(exc))

        # 3-7. quote + line items; any failure aborts
        step = "apply_changes"
        try:
            updates = apply_changes(quote, patch)
            result.applied_changes = _jsonable(updates)
            result.step(step)

            step = "update_quote"
            quote = update_quote(quote_id, updates, expected_version=loaded_version, cause=cause)
            db.session.commit()
            result.step(step, detail=f"v{loaded_version} → v{quote.version}")

            step = "regenerate_line_items"
            regenerate_line_items(quote_id)
            db.session.commit()
            result.step(step)

            step = "refresh_invoice"
            invoice = db.session.get(Invoice, invoice_id)
            if invoice is None:
                raise NotFoundError(resource="Invoice", resource_id=invoice_id)
            db.session.refresh(invoice)
            previous_total = invoice.total_amount
            result.step(step)

            step = "reconcile_line_items"
            recon = update_invoice_line_items(invoice_id, quote_id, patch)
            db.session.commit()
            result.reconciliation = recon.summary()
            result.step(step)
        except _EXPECTED_FAILURES as exc:
            return self._abort(result, step, exc, prior_status)
        except SQLAlchemyError as exc:
            return self._abort(result, step, PersistenceError(step, exc), prior_status)

        result.previous_total = previous_total
        result.new_total = recon.total_amount
        result.cost_change = recon.total_amount - previous_total

        # 8. history (best-effort)
        try:
            reason = f"Change request #{cr_id} approved"
            log_quote_changes(quote_id, quote_before, quote.to_dict(), change_request_id=cr_id,
                              changed_by=reviewed_by, reason=reason)
            log_line_item_changes(quote_id, diff_line_items(recon.before_items, recon.after_items),
                                  change_request_id=cr_id, changed_by=reviewed_by, reason=reason)
            db.session.commit()
            result.step("history")
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.warning("History not recorded for quote %s: %s", quote_id, exc,
                           extra={"change_request_id": cr_id, "saga_step": "history"})
            result.step("history", "warning", str(exc))

        # 9-12. point of no return, one commit
        step = "mark_approved"
        try:
            now = utcnow()
            self._claim(change_request, ChangeRequestStatus.APPROVED.value,
                        from_statuses=(ChangeRequestStatus.PROCESSING.value,))
            change_request.status = ChangeRequestStatus.APPROVED.value
            workflow_state.log_transition(
                entity_type=CHANGE_REQUEST, entity_id=cr_id,
                previous_status=prior_status, new_status=ChangeRequestStatus.APPROVED.value,
                changed_by=reviewed_by, reason=admin_response,
                metadata={"invoice_id": invoice_id, "cost_change": result.cost_change},
            )
            change_request.admin_response = admin_response
            change_request.estimated_cost_change = result.cost_change
            change_request.reviewed_by = reviewed_by
            change_request.reviewed_at = now
            change_request.completed_at = now
            result.step(step)

            step = "rotate_token"
            invoice = db.session.get(Invoice, invoice_id)
            token = issue_access_token(invoice, now=now)
            result.step(step)

            step = "force_invoice_sent"
            workflow_state.apply_transition(
                INVOICE, invoice, "sent", cause=cause, changed_by=reviewed_by,
                reason=f"Change request #{cr_id} approved; customer re-approval required",
                metadata={
                    "change_request_id": cr_id,
                    "previous_total": result.previous_total,
                    "new_total": result.new_total,
                    "cost_change": result.cost_change,
                },
            )
            result.step(step)

            step = "log_transition"
            if quote_before["workflow_status"] != quote.workflow_status:
                workflow_state.log_transition(
                    entity_type=QUOTE, entity_id=quote_id,
                    previous_status=quote_before["workflow_status"],
                    new_status=quote.workflow_status, changed_by=reviewed_by,
                    reason=f"Change request #{cr_id} approved",
                    metadata={"cause": cause.value, "change_request_id": cr_id},
                )
            db.session.commit()
            result.step(step)
        except _EXPECTED_FAILURES as exc:
            return self._abort(result, step, exc, prior_status)
        except SQLAlchemyError as exc:
            return self._abort(result, step, PersistenceError(step, exc), prior_status)

        result.success = True
        result.access_token = token
        result.estimate_link = build_estimate_link(token)
        logger.info("Change request %s approved: total %d → %d (%+d)",
                    cr_id, result.previous_total, result.new_total, result.cost_change,
                    extra={"change_request_id": cr_id, "invoice_id": invoice_id,
                           "quote_id": quote_id, "saga_step": "log_transition"})

        # 13. notify (never fails the saga)
        self._notify(result, change_request, quote, action="approved",
                     admin_response=admin_response, cost_change=result.cost_change,
                     estimate_link=result.estimate_link)
        return result

    # ── reject / request more info ───────────────────────────────────────

    def _resolve_without_changes(
        self,
        change_request: ChangeRequest,
        *,
        target: ChangeRequestStatus,
        action: str,
        notification_action: str,
        admin_response: str | None,
        reviewed_by: str,
    ) -> SagaResult:
        result = SagaResult(change_request_id=change_request.id, action=action)
        step = "load"
        try:
            self._check_open(change_request)
            workflow_state.validate_transition(CHANGE_REQUEST, change_request.status, target)
            invoice = db.session.get(Invoice, change_request.invoice_id)
            quote = invoice.quote_request if invoice is not None else None
            result.step(step)

            step = "mark_" + target.value
            now = utcnow()
            self._claim(change_request, target.value)
            if target == ChangeRequestStatus.REJECTED:
                change_request.completed_at = now
            workflow_state.apply_transition(
                CHANGE_REQUEST, change_request, target,
                changed_by=reviewed_by, reason=admin_response,
                metadata={"invoice_id": change_request.invoice_id},
            )
            change_request.admin_response = admin_response
            change_request.reviewed_by = reviewed_by
            change_request.reviewed_at = now
            db.session.commit()
            result.step(step)
        except _EXPECTED_FAILURES as exc:
            return self._fail(result, step, exc)
        except SQLAlchemyError as exc:
            return self._fail(result, step, PersistenceError(step, exc))

        result.success = True
        logger.info("Change request %s → %s", change_request.id, target.value,
                    extra={"change_request_id": change_request.id, "saga_step": step})
        self._notify(result, change_request, quote, action=notification_action,
                     admin_response=admin_response)
        return result

    def reject_change_request(
        self,
        change_request: ChangeRequest,
        admin_response: str | None = None,
        *,
        reviewed_by: str = "admin",
    ) -> SagaResult:
        """Terminal rejection. Quote, invoice and line items are never touched."""
        return self._resolve_without_changes(
            change_request,
            target=ChangeRequestStatus.REJECTED,
            action="reject",
            notification_action="rejected",
            admin_response=admin_response,
            reviewed_by=reviewed_by,
        )

    def request_more_info(
        self,
        change_request: ChangeRequest,
        admin_response: str | None = None,
        *,
        reviewed_by: str = "admin",
    ) -> SagaResult:
        """``pending → reviewing``; the request can still be approved or rejected later."""
        return self._resolve_without_changes(
            change_request,
            target=ChangeRequestStatus.REVIEWING,
            action="request_more_info",
            notification_action="request_more_info",
            admin_response=admin_response,
            reviewed_by=reviewed_by,
        )
