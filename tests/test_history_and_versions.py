"""Quote field history and estimate version snapshots."""

import pytest

from catering.core.exceptions import NotFoundError, ValidationError
from catering.models import db
from catering.models.audit import QuoteRequestHistory
from catering.models.invoice import EstimateVersion
from catering.services.estimate_version_service import EstimateVersionService
from catering.services.history_logger import (
    diff_line_items,
    get_quote_history,
    log_line_item_changes,
    log_quote_changes,
)
from catering.services.quote_update_service import apply_changes, update_invoice_line_items, update_quote


# ── History ──────────────────────────────────────────────────────────────


class TestQuoteHistory:
    def test_logs_field_and_menu_deltas(self, quote):
        before = quote.to_dict()
        update_quote(quote.id, apply_changes(quote, {
            "guest_count": 120,
            "menu_changes": {"proteins": {"add": ["Catfish"], "remove": ["Fried Chicken"]}},
        }))
        log_quote_changes(quote.id, before, quote.to_dict(), changed_by="admin", reason="CR #1")
        db.session.commit()

        rows = {(r["field_name"], r["change_type"]): r for r in get_quote_history(quote.id)}
        assert rows[("guest_count", "modified")]["old_value"] == 100
        assert rows[("guest_count", "modified")]["new_value"] == 120
        assert rows[("menu.proteins", "added")]["new_value"] == "catfish"
        assert rows[("menu.proteins", "removed")]["old_value"] == "fried_chicken"
        assert all(r["changed_by"] == "admin" for r in rows.values())

    def test_no_changes_no_rows(self, quote):
        snapshot = quote.to_dict()
        assert log_quote_changes(quote.id, snapshot, dict(snapshot)) == []
        assert QuoteRequestHistory.query.count() == 0


class TestLineItemDiff:
    def test_diff_keys_by_source_key_then_title(self):
        before = [
            {"source_key": "proteins:fried_chicken", "title": "Fried Chicken", "quantity": 100,
             "unit_price": 1400, "total_price": 140000},
            {"source_key": None, "title": "Custom Cake", "quantity": 1,
             "unit_price": 15000, "total_price": 15000},
        ]
        after = [
            {"source_key": "proteins:catfish", "title": "Catfish", "quantity": 100,
             "unit_price": 1600, "total_price": 160000},
            {"source_key": None, "title": "custom cake", "quantity": 2,
             "unit_price": 15000, "total_price": 30000},
        ]
        diff = diff_line_items(before, after)
        assert [i["title"] for i in diff["added"]] == ["Catfish"]
        assert [i["title"] for i in diff["removed"]] == ["Fried Chicken"]
        assert diff["modified"][0]["key"] == "title:custom cake"
        assert diff["modified"][0]["changes"]["quantity"] == {"old": 1, "new": 2}

    def test_row_that_adopted_a_source_key_is_modified(self):
        before = [{"source_key": None, "title": "Collard Greens", "quantity": 100,
                   "unit_price": 450, "total_price": 45000}]
        after = [{"source_key": "sides:collard_greens", "title": "Collard Greens", "quantity": 80,
                  "unit_price": 450, "total_price": 36000}]
        diff = diff_line_items(before, after)
        assert diff["added"] == [] and diff["removed"] == []
        assert diff["modified"][0]["key"] == "sides:collard_greens"
        assert diff["modified"][0]["changes"]["quantity"] == {"old": 100, "new": 80}

    def test_logged_as_history_rows(self, quote, invoice):
        recon = update_invoice_line_items(invoice.id, quote.id)
        before = recon.before_items
        after = [dict(i) for i in before if i["title"] != "Custom Cake"]
        rows = log_line_item_changes(quote.id, diff_line_items(before, after), changed_by="admin")
        db.session.commit()
        assert [(r.field_name, r.change_type) for r in rows] == [("line_item:Custom Cake", "removed")]


# ── Estimate versions ────────────────────────────────────────────────────


class TestEstimateVersions:
    def test_snapshot_copies_items_and_totals(self, invoice):
        version = EstimateVersionService.create_snapshot(invoice.id, created_by="admin", notes="before edit")
        db.session.commit()
        assert version.version_number == 1
        assert version.status == "archived"
        assert version.total_amount == 243000
        assert version.invoice_status == "sent"
        assert len(version.line_items) == 5

    def test_version_numbers_increase(self, invoice):
        numbers = [EstimateVersionService.create_snapshot(invoice.id).version_number for _ in range(3)]
        db.session.commit()
        assert numbers == [1, 2, 3]
        assert [v.version_number for v in EstimateVersionService.list_versions(invoice.id)] == [3, 2, 1]

    def test_snapshot_of_missing_invoice(self):
        with pytest.raises(NotFoundError):
            EstimateVersionService.create_snapshot(9999)

    def test_compare_with_current(self, quote, invoice):
        EstimateVersionService.create_snapshot(invoice.id)
        patch = {"menu_changes": {"proteins": {"add": ["Catfish"], "remove": ["Fried Chicken"]}}}
        update_quote(quote.id, apply_changes(quote, patch))
        update_invoice_line_items(invoice.id, quote.id, patch)
        db.session.commit()

        diff = EstimateVersionService.compare_versions(invoice.id, 1)
        assert diff["to_version"] == "current"
        assert [i["title"] for i in diff["added"]] == ["Catfish"]
        assert [i["title"] for i in diff["removed"]] == ["Fried Chicken"]
        assert diff["total_change"] == 21600

    def test_compare_two_snapshots(self, invoice):
        EstimateVersionService.create_snapshot(invoice.id)
        EstimateVersionService.create_snapshot(invoice.id)
        db.session.commit()
        diff = EstimateVersionService.compare_versions(invoice.id, 1, 2)
        assert diff["added"] == diff["removed"] == diff["modified"] == []
        assert diff["total_change"] == 0

    def test_compare_same_version_rejected(self, invoice):
        with pytest.raises(ValidationError):
            EstimateVersionService.compare_versions(invoice.id, 1, 1)

    def test_unknown_version(self, invoice):
        with pytest.raises(NotFoundError):
            EstimateVersionService.get_version(invoice.id, 7)

    def test_snapshots_are_separate_rows(self, invoice):
        EstimateVersionService.create_snapshot(invoice.id)
        db.session.commit()
        assert EstimateVersion.query.filter_by(invoice_id=invoice.id).count() == 1
