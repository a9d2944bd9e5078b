"""
Change request saga: approve, reject, request more info.

Fixture invoice: Fried Chicken, Mac And Cheese, Collard Greens, Drop-Off
Delivery and a Custom Cake override; total 243000. Swapping Fried Chicken
for Catfish moves the total to 264600.
"""

import pytest
from sqlalchemy.exc import OperationalError

from catering.models import db
from catering.models.audit import QuoteRequestHistory, WorkflowStateLogEntry
from catering.models.change_request import ChangeRequest
from catering.models.invoice import EstimateVersion, Invoice
from catering.models.notification import EmailLog
from catering.models.quote import QuoteRequest
from catering.services import change_request_processor as crp
from catering.services.access_token_service import resolve_invoice_by_token
from catering.services.estimate_version_service import EstimateVersionService
from catering.services.change_request_processor import ChangeRequestProcessor

SWAP = {"menu_changes": {"proteins": {"add": ["Catfish"], "remove": ["Fried Chicken"]}}}


@pytest.fixture()
def swap_request(invoice, make_change_request):
    return make_change_request(invoice, SWAP)


def _invoice(invoice_id):
    return db.session.get(Invoice, invoice_id)


class TestApprove:
    def test_full_saga(self, quote, invoice, swap_request):
        old_token = invoice.customer_access_token

        result = ChangeRequestProcessor().approve_change_request(
            swap_request, admin_response="Catfish it is", reviewed_by="chef",
        )

        assert result.success, result.to_dict()
        assert result.previous_total == 243000
        assert result.new_total == 264600
        assert result.cost_change == 21600
        assert result.snapshot_version == 1
        assert result.reconciliation["removed"] == ["Fried Chicken"]
        assert result.reconciliation["inserted"] == ["Catfish"]
        assert result.reconciliation["untouched"] == ["Custom Cake"]
        assert [s.name for s in result.steps] == [
            "load", "snapshot", "apply_changes", "update_quote", "regenerate_line_items",
            "refresh_invoice", "reconcile_line_items", "history", "mark_approved",
            "rotate_token", "force_invoice_sent", "log_transition", "notify",
        ]

        cr = db.session.get(ChangeRequest, swap_request.id)
        assert cr.status == "approved"
        assert cr.admin_response == "Catfish it is"
        assert cr.estimated_cost_change == 21600
        assert cr.reviewed_by == "chef"
        assert cr.completed_at is not None

        q = db.session.get(QuoteRequest, quote.id)
        assert q.proteins == ["catfish"]
        assert q.version == 2
        assert q.workflow_status == "estimated"
        assert q.status == "quoted"

        inv = _invoice(invoice.id)
        assert inv.total_amount == 264600
        assert inv.workflow_status == "sent"
        assert resolve_invoice_by_token(old_token) is None
        assert resolve_invoice_by_token(result.access_token).id == invoice.id
        assert result.estimate_link == f"https://portal.test/estimate?token={result.access_token}"

        assert EstimateVersion.query.filter_by(invoice_id=invoice.id).one().total_amount == 243000
        fields = {h.field_name for h in QuoteRequestHistory.query.filter_by(quote_request_id=quote.id)}
        assert {"menu.proteins", "line_item:Fried Chicken", "line_item:Catfish"} <= fields

        assert result.notification_sent is True
        assert EmailLog.query.filter_by(change_request_id=swap_request.id).one().status == "logged"

    def test_paid_invoice_is_forced_back_to_sent(self, quote, make_invoice, make_change_request):
        invoice = make_invoice(quote, workflow_status="paid")
        cr = make_change_request(invoice, {"guest_count": 120})

        result = ChangeRequestProcessor().approve_change_request(cr)

        assert result.success
        inv = _invoice(invoice.id)
        assert inv.workflow_status == inv.status == "sent"
        entry = WorkflowStateLogEntry.query.filter_by(entity_type="invoice").one()
        assert entry.previous_status == "paid"
        assert entry.meta["cause"] == "change_request_approved"
        assert entry.meta["cost_change"] == result.cost_change

    def test_approved_quote_is_reopened(self, make_quote, make_invoice, make_change_request):
        quote = make_quote(workflow_status="approved")
        invoice = make_invoice(quote, workflow_status="approved")
        cr = make_change_request(invoice, {"location": "Barn"})

        assert ChangeRequestProcessor().approve_change_request(cr).success
        assert db.session.get(QuoteRequest, quote.id).workflow_status == "estimated"
        quote_log = WorkflowStateLogEntry.query.filter_by(entity_type="quote").one()
        assert (quote_log.previous_status, quote_log.new_status) == ("approved", "estimated")

    def test_already_resolved_is_refused(self, invoice, swap_request):
        assert ChangeRequestProcessor().approve_change_request(swap_request).success

        again = ChangeRequestProcessor().approve_change_request(swap_request)

        assert again.success is False
        assert again.failed_step == "load"
        assert again.error_code == "ERR_CONFLICT_STATE"
        assert EstimateVersion.query.count() == 1

    def test_invalid_patch_writes_nothing(self, quote, invoice, make_change_request):
        cr = make_change_request(invoice, {"guest_count": 0, "colour": "teal"})

        result = ChangeRequestProcessor().approve_change_request(cr)

        assert result.success is False
        assert result.error_code == "ERR_VALIDATION_INVALID"
        assert set(result.details) == {"guest_count", "colour"}
        assert EstimateVersion.query.count() == 0
        assert db.session.get(QuoteRequest, quote.id).version == 1
        assert db.session.get(ChangeRequest, cr.id).status == "pending"

    def test_cancelled_invoice_is_refused(self, quote, make_invoice, make_change_request):
        invoice = make_invoice(quote, workflow_status="cancelled")
        cr = make_change_request(invoice, SWAP)

        result = ChangeRequestProcessor().approve_change_request(cr)

        assert result.success is False
        assert result.error_code == "ERR_INVALID_TRANSITION"
        assert EstimateVersion.query.count() == 0

    def test_invoice_without_quote(self, make_change_request):
        orphan = Invoice(status="sent", workflow_status="sent")
        db.session.add(orphan)
        db.session.commit()
        cr = make_change_request(orphan, SWAP)

        result = ChangeRequestProcessor().approve_change_request(cr)

        assert result.success is False
        assert result.error_code == "ERR_NOT_FOUND"
        assert result.failed_step == "load"

    def test_lost_optimistic_lock_aborts(self, quote, invoice, swap_request, monkeypatch):
        real_apply = crp.apply_changes

        def _racing_apply(current_quote, patch, **kwargs):
            # another admin saves the quote between load and write
            QuoteRequest.query.filter_by(id=current_quote.id).update(
                {"version": QuoteRequest.version + 1}, synchronize_session=False,
            )
            return real_apply(current_quote, patch, **kwargs)

        monkeypatch.setattr(crp, "apply_changes", _racing_apply)

        result = ChangeRequestProcessor().approve_change_request(swap_request)

        assert result.success is False
        assert result.failed_step == "update_quote"
        assert result.error_code == "OPTIMISTIC_LOCK_CONFLICT"
        assert result.error == "This record changed, please refresh."
        # snapshot was committed before the conflict and stays
        assert EstimateVersion.query.count() == 1
        assert db.session.get(ChangeRequest, swap_request.id).status == "pending"
        assert _invoice(invoice.id).total_amount == 243000

    def test_reject_during_approval_is_refused(self, quote, invoice, swap_request, monkeypatch):
        real_log = crp.log_quote_changes
        seen = {}

        def _reject_midway(*args, **kwargs):
            # quote and line items are already rewritten at this point
            seen["status"] = db.session.execute(
                db.select(ChangeRequest.status).filter_by(id=swap_request.id)
            ).scalar_one()
            seen["reject"] = ChangeRequestProcessor().reject_change_request(
                db.session.get(ChangeRequest, swap_request.id), "Changed our minds",
            )
            return real_log(*args, **kwargs)

        monkeypatch.setattr(crp, "log_quote_changes", _reject_midway)

        result = ChangeRequestProcessor().approve_change_request(swap_request)

        assert seen["status"] == "processing"
        assert seen["reject"].success is False
        assert seen["reject"].error_code == "ERR_CONFLICT_STATE"
        assert result.success, result.to_dict()
        assert db.session.get(ChangeRequest, swap_request.id).status == "approved"
        assert _invoice(invoice.id).total_amount == 264600
        assert EmailLog.query.filter_by(template_name="change_request_rejected").count() == 0
        entry = WorkflowStateLogEntry.query.filter_by(entity_type="change_request").one()
        assert (entry.previous_status, entry.new_status) == ("pending", "approved")

    def test_stale_reject_cannot_claim_processing_request(self, invoice, swap_request, monkeypatch):
        real_apply = crp.apply_changes
        claimed = {}

        def _stale_reject(current_quote, patch, **kwargs):
            # a second admin still holding the request as 'pending'
            claimed["rows"] = (
                ChangeRequest.query
                .filter(ChangeRequest.id == swap_request.id,
                        ChangeRequest.status.in_(crp.OPEN_STATUSES))
                .update({"status": "rejected"}, synchronize_session=False)
            )
            return real_apply(current_quote, patch, **kwargs)

        monkeypatch.setattr(crp, "apply_changes", _stale_reject)

        result = ChangeRequestProcessor().approve_change_request(swap_request)

        assert claimed["rows"] == 0
        assert result.success
        assert db.session.get(ChangeRequest, swap_request.id).status == "approved"

    def test_aborted_approval_returns_request_to_reviewing(self, invoice, swap_request, monkeypatch):
        ChangeRequestProcessor().request_more_info(swap_request, "Which day?")

        def _boom(*args, **kwargs):
            raise OperationalError("UPDATE", {}, Exception("database is locked"))

        monkeypatch.setattr(crp, "update_invoice_line_items", _boom)

        result = ChangeRequestProcessor().approve_change_request(swap_request)

        assert result.success is False
        cr = db.session.get(ChangeRequest, swap_request.id)
        assert cr.status == "reviewing"
        # released, so the next attempt can claim it again
        monkeypatch.undo()
        assert ChangeRequestProcessor().approve_change_request(cr).success

    def test_snapshot_failure_is_not_fatal(self, invoice, swap_request, monkeypatch):
        def _boom(*args, **kwargs):
            raise OperationalError("INSERT", {}, Exception("disk full"))

        monkeypatch.setattr(EstimateVersionService, "create_snapshot", staticmethod(_boom))

        result = ChangeRequestProcessor().approve_change_request(swap_request)

        assert result.success
        assert result.snapshot_version is None
        assert ("snapshot", "warning") in [(s.name, s.status) for s in result.steps]
        assert _invoice(invoice.id).total_amount == 264600

    def test_reconcile_persistence_failure_surfaces(self, quote, invoice, swap_request, monkeypatch):
        def _boom(*args, **kwargs):
            raise OperationalError("UPDATE", {}, Exception("database is locked"))

        monkeypatch.setattr(crp, "update_invoice_line_items", _boom)

        result = ChangeRequestProcessor().approve_change_request(swap_request)

        assert result.success is False
        assert result.failed_step == "reconcile_line_items"
        assert result.error_code == "ERR_DATABASE"
        # the quote write committed in an earlier step is left in place
        assert db.session.get(QuoteRequest, quote.id).version == 2
        assert db.session.get(ChangeRequest, swap_request.id).status == "pending"

    def test_email_failure_does_not_fail_saga(self, invoice, swap_request):
        class _BrokenNotifier:
            @staticmethod
            def send_change_request_response(**kwargs):
                raise RuntimeError("SMTP exploded")

        result = ChangeRequestProcessor(notifier=_BrokenNotifier).approve_change_request(swap_request)

        assert result.success is True
        assert result.notification_sent is False
        assert "SMTP exploded" in result.notification_error
        assert db.session.get(ChangeRequest, swap_request.id).status == "approved"


class TestRejectAndMoreInfo:
    def test_reject_changes_nothing_else(self, quote, invoice, swap_request):
        token = invoice.customer_access_token

        result = ChangeRequestProcessor().reject_change_request(swap_request, "Catfish is sold out")

        assert result.success
        cr = db.session.get(ChangeRequest, swap_request.id)
        assert cr.status == "rejected"
        assert cr.admin_response == "Catfish is sold out"
        assert cr.completed_at is not None

        inv = _invoice(invoice.id)
        assert inv.total_amount == 243000
        assert inv.customer_access_token == token
        assert len(inv.line_items) == 5
        assert db.session.get(QuoteRequest, quote.id).version == 1
        assert EstimateVersion.query.count() == 0
        assert EmailLog.query.one().template_name == "change_request_rejected"

    def test_rejected_request_cannot_be_approved(self, invoice, swap_request):
        ChangeRequestProcessor().reject_change_request(swap_request)
        result = ChangeRequestProcessor().approve_change_request(swap_request)
        assert result.success is False
        assert result.error_code == "ERR_CONFLICT_STATE"

    def test_more_info_keeps_request_open(self, invoice, swap_request):
        result = ChangeRequestProcessor().request_more_info(swap_request, "Which day?")

        assert result.success
        cr = db.session.get(ChangeRequest, swap_request.id)
        assert cr.status == "reviewing"
        assert cr.completed_at is None

        assert ChangeRequestProcessor().approve_change_request(cr).success
        assert db.session.get(ChangeRequest, cr.id).status == "approved"
