"""
Invoice line-item reconciliation.

The invoice fixture holds the canonical items for a 100-guest drop-off
quote (Fried Chicken, Mac And Cheese, Collard Greens, Drop-Off Delivery)
plus a hand-added Custom Cake at a $150 override: subtotal 225000,
total 243000.
"""

from catering.models import db
from catering.models.invoice import Invoice, InvoiceLineItem
from catering.services.history_logger import diff_line_items
from catering.services.quote_update_service import (
    apply_changes,
    update_invoice_line_items,
    update_quote,
)


def _apply(quote, invoice, patch):
    update_quote(quote.id, apply_changes(quote, patch))
    result = update_invoice_line_items(invoice.id, quote.id, patch)
    db.session.commit()
    return result


def _items(invoice):
    return {li.title: li for li in db.session.get(Invoice, invoice.id).line_items}


def test_swap_protein_keeps_custom_item(quote, invoice):
    assert invoice.total_amount == 243000
    patch = {"menu_changes": {"proteins": {"add": ["Catfish"], "remove": ["Fried Chicken"]}}}

    result = _apply(quote, invoice, patch)

    assert result.removed == ["Fried Chicken"]
    assert result.inserted == ["Catfish"]
    assert result.untouched == ["Custom Cake"]
    assert result.updated == []

    items = _items(invoice)
    assert "Fried Chicken" not in items
    assert items["Catfish"].quantity == 100
    assert items["Catfish"].unit_price == 1600
    assert items["Catfish"].source_key == "proteins:catfish"
    assert items["Custom Cake"].unit_price == 15000
    assert items["Custom Cake"].total_price == 15000

    fresh = db.session.get(Invoice, invoice.id)
    assert fresh.subtotal == 245000
    assert fresh.tax_amount == 19600
    assert fresh.total_amount == 264600
    assert result.total_amount == 264600


def test_subtotal_equals_sum_of_items(quote, invoice):
    _apply(quote, invoice, {"guest_count": 137, "menu_changes": {"sides": {"add": ["coleslaw"]}}})
    fresh = db.session.get(Invoice, invoice.id)
    assert fresh.subtotal == sum(li.total_price for li in fresh.line_items)
    for li in fresh.line_items:
        assert li.total_price == li.quantity * li.unit_price


def test_manual_price_survives_unrelated_change(quote, invoice):
    mac = _items(invoice)["Mac And Cheese"]
    mac.unit_price = 300  # edited by hand; is_override never set
    mac.recompute_total()
    db.session.commit()

    result = _apply(quote, invoice, {"location": "Lakeside Pavilion"})

    mac = _items(invoice)["Mac And Cheese"]
    assert mac.unit_price == 300
    assert mac.is_override is True
    assert "Mac And Cheese" in result.preserved_overrides


def test_override_keeps_price_but_follows_quantity(quote, invoice):
    mac = _items(invoice)["Mac And Cheese"]
    mac.unit_price = 300
    mac.is_override = True
    mac.recompute_total()
    db.session.commit()

    _apply(quote, invoice, {"guest_count": 120})

    items = _items(invoice)
    assert items["Mac And Cheese"].quantity == 120
    assert items["Mac And Cheese"].unit_price == 300
    assert items["Mac And Cheese"].total_price == 36000
    assert items["Fried Chicken"].quantity == 120
    assert items["Fried Chicken"].total_price == 120 * 1400


def test_reconciliation_is_idempotent(quote, invoice):
    first = update_invoice_line_items(invoice.id, quote.id)
    db.session.commit()
    second = update_invoice_line_items(invoice.id, quote.id)
    db.session.commit()

    assert second.removed == second.inserted == second.updated == []
    assert first.total_amount == second.total_amount == 243000
    assert len(_items(invoice)) == 5


def test_keyless_row_matched_by_exact_title(quote, invoice):
    legacy = _items(invoice)["Collard Greens"]
    legacy.source_key = None
    legacy.title = "collard greens"
    db.session.commit()

    result = update_invoice_line_items(invoice.id, quote.id, {"guest_count": 100})
    db.session.commit()

    assert result.inserted == []
    row = db.session.get(InvoiceLineItem, legacy.id)
    assert row.source_key == "sides:collard_greens"
    diff = diff_line_items(result.before_items, result.after_items)
    assert diff["added"] == [] and diff["removed"] == []


def test_similar_title_is_not_matched(quote, invoice):
    fresh = db.session.get(Invoice, invoice.id)
    fresh.line_items.append(InvoiceLineItem(
        title="Fried Chicken Wings Platter", category="Appetizer",
        quantity=1, unit_price=4500, total_price=4500, is_override=True,
    ))
    db.session.commit()

    result = _apply(quote, invoice, {"menu_changes": {"proteins": {"remove": ["fried chicken"]}}})

    assert result.removed == ["Fried Chicken"]
    assert "Fried Chicken Wings Platter" in result.untouched
    assert _items(invoice)["Fried Chicken Wings Platter"].unit_price == 4500


def test_service_type_change_swaps_service_item(quote, invoice):
    result = _apply(quote, invoice, {"service_options": {"service_type": "full-service"}})
    items = _items(invoice)
    assert "Drop-Off Delivery" not in items
    assert items["Full-Service Catering"].unit_price == 35000
    assert result.removed == ["Drop-Off Delivery"]


def test_addon_switched_off_is_removed(make_quote, make_invoice):
    quote = make_quote(plates_requested=True, ice_requested=True)
    invoice = make_invoice(quote)
    assert {"Disposable Supplies", "Ice Service"} <= set(_items(invoice))

    result = _apply(quote, invoice, {"service_options": {"ice_requested": False}})

    items = _items(invoice)
    assert "Ice Service" not in items
    assert "Disposable Supplies" in items
    assert result.removed == ["Ice Service"]


def test_added_addons_are_inserted(quote, invoice):
    result = _apply(quote, invoice, {"service_options": {"wait_staff_requested": True,
                                                         "chafers_requested": True}})
    items = _items(invoice)
    # 100 guests -> 4 staff x 4 hours; two sides -> one chafer
    assert items["Wait Staff Service"].quantity == 16
    assert items["Chafer Rental"].quantity == 1
    assert sorted(result.inserted) == ["Chafer Rental", "Wait Staff Service"]
