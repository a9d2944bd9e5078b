"""
Quote update and invoice line-item reconciliation.

    validate_patch()             reject malformed change patches before any write
    apply_changes()              patch → partial update dict (pure)
    update_quote()               optimistic-locked write (id AND version)
    regenerate_line_items()      replace quote-level planning items wholesale
    update_invoice_line_items()  reconcile invoice items against the canonical set

Reconciliation rules (invoice items may carry manual price overrides):

    1. Items explicitly removed by the patch are deleted. Matching is by
       ``source_key``, or exact case-insensitive title for rows without one.
       Substring matching is never used.
    2. The canonical set is regenerated from the updated quote.
    3. Matched items always take the new quantity. Price and total are only
       overwritten when the row was never manually priced; an overridden row
       keeps its price and its total is recomputed from it.
    4. Canonical items without a persisted match are inserted.
    5. Persisted items with no canonical match and not removed are untouched.
    6. Invoice subtotal / discount / tax / total are recomputed from the rows.

Running the reconciliation twice without a quote change is a no-op.

All functions flush; committing is up to the caller.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from email_validator import EmailNotValidError, validate_email

from catering.core.exceptions import NotFoundError, OptimisticLockConflict, ValidationError
from catering.models import db
from catering.models.invoice import Invoice, InvoiceLineItem
from catering.models.quote import (
    ADDON_FLAGS,
    EVENT_FIELDS,
    MENU_CATEGORIES,
    SERVICE_TYPES,
    QuoteLineItem,
    QuoteRequest,
)
from catering.services import workflow_state
from catering.services.line_item_generator import (
    ADDON_KEYS,
    ADDON_TITLES,
    SERVICE_TYPE_LABELS,
    format_menu_item,
    generate_line_items,
    menu_source_key,
    service_source_key,
    slugify,
)
from catering.services.tax_service import apply_to_invoice
from catering.utils.helpers import parse_date, utcnow

logger = logging.getLogger(__name__)

PATCH_KEYS = set(EVENT_FIELDS) | {
    "service_type", "menu_changes", "service_options", "custom_requests",
}
SERVICE_OPTION_KEYS = set(ADDON_FLAGS) | {"service_type", "both_proteins_available"}
CUSTOM_REQUEST_PREFIX = "ADDITIONAL REQUEST:"


@dataclass
class ReconciliationResult:
    invoice_id: int
    removed: list[str] = field(default_factory=list)
    inserted: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    preserved_overrides: list[str] = field(default_factory=list)
    untouched: list[str] = field(default_factory=list)
    before_items: list[dict] = field(default_factory=list)
    after_items: list[dict] = field(default_factory=list)
    subtotal: int = 0
    tax_amount: int = 0
    total_amount: int = 0

    def summary(self) -> dict:
        return {
            "removed": self.removed,
            "inserted": self.inserted,
            "updated": self.updated,
            "preserved_overrides": self.preserved_overrides,
            "untouched": self.untouched,
            "subtotal": self.subtotal,
            "tax_amount": self.tax_amount,
            "total_amount": self.total_amount,
        }


# ── Patch validation ─────────────────────────────────────────────────────────

def validate_patch(patch) -> None:
    """Raise ValidationError describing every problem found in ``patch``."""
    if not isinstance(patch, dict):
        raise ValidationError("Requested changes must be an object")

    errors: dict[str, str] = {}
    for key in sorted(set(patch) - PATCH_KEYS):
        errors[key] = "unknown field"

    if "event_date" in patch and parse_date(patch["event_date"]) is None:
        errors["event_date"] = "must be an ISO date"

    if "guest_count" in patch:
        try:
            if int(patch["guest_count"]) < 1:
                errors["guest_count"] = "must be at least 1"
        except (TypeError, ValueError):
            errors["guest_count"] = "must be an integer"

    for name in ("contact_name", "event_name", "email"):
        if name in patch and not str(patch[name] or "").strip():
            errors[name] = "cannot be blank"
    if "email" in patch and "email" not in errors:
        try:
            validate_email(str(patch["email"]).strip(), check_deliverability=False)
        except EmailNotValidError as e:
            errors["email"] = f"invalid email: {e}"

    if "service_type" in patch and patch["service_type"] not in SERVICE_TYPES:
        errors["service_type"] = f"must be one of {sorted(SERVICE_TYPES)}"

    menu = patch.get("menu_changes")
    if menu is not None:
        if not isinstance(menu, dict):
            errors["menu_changes"] = "must be an object"
        else:
            for category, ops in menu.items():
                path = f"menu_changes.{category}"
                if category not in MENU_CATEGORIES:
                    errors[path] = "unknown menu category"
                    continue
                if not isinstance(ops, dict) or set(ops) - {"add", "remove"}:
                    errors[path] = "must be {add: [...], remove: [...]}"
                    continue
                for op, values in ops.items():
                    if not isinstance(values, list) or not all(
                        isinstance(v, str) and v.strip() for v in values
                    ):
                        errors[f"{path}.{op}"] = "must be a list of names"

    options = patch.get("service_options")
    if options is not None:
        if not isinstance(options, dict):
            errors["service_options"] = "must be an object"
        else:
            for key, value in options.items():
                path = f"service_options.{key}"
                if key not in SERVICE_OPTION_KEYS:
                    errors[path] = "unknown option"
                elif key == "service_type":
                    if value not in SERVICE_TYPES:
                        errors[path] = f"must be one of {sorted(SERVICE_TYPES)}"
                elif not isinstance(value, bool):
                    errors[path] = "must be true or false"

    if "custom_requests" in patch and not isinstance(patch["custom_requests"], (str, type(None))):
        errors["custom_requests"] = "must be text"

    if errors:
        raise ValidationError("Invalid change request", details=errors)


# ── Apply changes ────────────────────────────────────────────────────────────

def _normalise_event_field(name: str, value):
    if name == "event_date":
        return parse_date(value)
    if name == "guest_count":
        return int(value)
    if name == "contact_name":
        return " ".join(w.capitalize() for w in str(value).split())
    if name == "email":
        return str(value).strip().lower()
    if value is None:
        return None
    return str(value).strip()


def _merge_selection(current: list, add: list, remove: list) -> list:
    """Set-difference then set-union on slugs; order of existing picks is kept."""
    removed = {slugify(r) for r in remove}
    result = [slugify(s) for s in current if slugify(s) not in removed]
    for item in add:
        slug = slugify(item)
        if slug not in result:
            result.append(slug)
    return result


def requested_service_type(patch: dict) -> str | None:
    options = patch.get("service_options") or {}
    return options.get("service_type") or patch.get("service_type")


def apply_changes(current_quote: QuoteRequest, patch: dict, *, stamp_status: bool = True,
                  now: datetime | None = None) -> dict:
    """
    Build the partial update for ``current_quote`` from ``patch``.

    Only fields present in the patch appear in the result. With
    ``stamp_status`` the result also moves the quote back to
    ``status='quoted'`` / ``workflow_status='estimated'``.
    """
    updates: dict = {}

    for name in EVENT_FIELDS:
        if name in patch:
            updates[name] = _normalise_event_field(name, patch[name])

    service_type = requested_service_type(patch)
    if service_type:
        updates["service_type"] = service_type

    for category, ops in (patch.get("menu_changes") or {}).items():
        updates[category] = _merge_selection(
            getattr(current_quote, category) or [],
            ops.get("add") or [],
            ops.get("remove") or [],
        )

    for key, value in (patch.get("service_options") or {}).items():
        if key != "service_type":
            updates[key] = bool(value)

    custom = (patch.get("custom_requests") or "").strip()
    if custom:
        addition = f"{CUSTOM_REQUEST_PREFIX} {custom}"
        existing = (current_quote.custom_menu_requests or "").strip()
        updates["custom_menu_requests"] = f"{existing}\n\n{addition}" if existing else addition

    if stamp_status:
        updates["status"] = "quoted"
        updates["workflow_status"] = workflow_state.QuoteWorkflowStatus.ESTIMATED.value
        updates["last_status_change"] = now or utcnow()

    return updates


# ── Versioned write ──────────────────────────────────────────────────────────

def update_quote(quote_id: int, updates: dict, *, expected_version: int | None = None,
                 cause=None) -> QuoteRequest:
    """
    Version-checked write. The UPDATE is filtered by ``id AND version``;
    zero affected rows raises OptimisticLockConflict and nothing changes.

    ``expected_version`` defaults to the version currently loaded in the
    session. A ``workflow_status`` change in ``updates`` is validated
    against the quote transition table (``cause`` allows forced moves).
    """
    quote = db.session.get(QuoteRequest, quote_id)
    if quote is None:
        raise NotFoundError(resource="QuoteRequest", resource_id=quote_id)

    version = quote.version if expected_version is None else int(expected_version)

    target = updates.get("workflow_status")
    if target is not None:
        workflow_state.validate_transition(workflow_state.QUOTE, quote.workflow_status, target, cause=cause)

    values = dict(updates)
    values["version"] = version + 1
    values["updated_at"] = utcnow()

    rows = (
        QuoteRequest.query
        .filter_by(id=quote_id, version=version)
        .update(values, synchronize_session=False)
    )
    if rows == 0:
        logger.warning("Optimistic lock lost on quote %s (expected v%s)", quote_id, version,
                       extra={"quote_id": quote_id})
        raise OptimisticLockConflict(resource="QuoteRequest", resource_id=quote_id,
                                     expected_version=version)

    db.session.refresh(quote)
    logger.info("Quote %s updated to v%s (%s)", quote_id, quote.version,
                ", ".join(sorted(updates)), extra={"quote_id": quote_id})
    return quote


# ── Quote line items ─────────────────────────────────────────────────────────

def regenerate_line_items(quote_id: int) -> list[QuoteLineItem]:
    """Discard and rebuild the quote-level planning items."""
    quote = db.session.get(QuoteRequest, quote_id)
    if quote is None:
        raise NotFoundError(resource="QuoteRequest", resource_id=quote_id)

    QuoteLineItem.query.filter_by(quote_request_id=quote_id).delete(synchronize_session=False)
    db.session.expire(quote, ["line_items"])

    items = [
        QuoteLineItem(
            quote_request_id=quote_id,
            source_key=c.source_key,
            title=c.title,
            description=c.description,
            category=c.category,
            quantity=c.quantity,
            unit_price=c.unit_price,
            total_price=c.total_price,
        )
        for c in generate_line_items(quote)
    ]
    db.session.add_all(items)
    db.session.flush()
    logger.debug("Regenerated %d quote line items for quote %s", len(items), quote_id,
                 extra={"quote_id": quote_id})
    return items


# ── Invoice reconciliation ───────────────────────────────────────────────────

def removal_targets(quote: QuoteRequest, changes: dict, canonical_keys: set[str]) -> tuple[set[str], set[str]]:
    """
    ``(source_keys, lowercase_titles)`` explicitly removed by ``changes``.

    Covers menu ``remove`` entries, the previous service-type item when the
    service type changed and add-ons switched off. Anything still present in
    the regenerated canonical set is never a removal target.
    """
    keys: set[str] = set()
    titles: set[str] = set()

    for category, ops in (changes.get("menu_changes") or {}).items():
        for name in ops.get("remove") or []:
            keys.add(menu_source_key(category, name))
            titles.add(format_menu_item(name).lower())

    if requested_service_type(changes):
        for service_type, label in SERVICE_TYPE_LABELS.items():
            if service_type != quote.service_type:
                keys.add(service_source_key(service_type))
                titles.add(label.lower())

    for flag, value in (changes.get("service_options") or {}).items():
        if flag in ADDON_KEYS and value is False:
            key = ADDON_KEYS[flag]
            keys.add(key)
            titles.add(ADDON_TITLES[key].lower())

    return keys - canonical_keys, titles


def _is_overridden(item: InvoiceLineItem, canonical_price: int) -> bool:
    if item.is_override:
        return True
    reference = item.generated_unit_price if item.generated_unit_price is not None else canonical_price
    return item.unit_price != reference


def update_invoice_line_items(invoice_id: int, quote_id: int, changes: dict | None = None) -> ReconciliationResult:
    invoice = db.session.get(Invoice, invoice_id)
    if invoice is None:
        raise NotFoundError(resource="Invoice", resource_id=invoice_id)
    quote = db.session.get(QuoteRequest, quote_id)
    if quote is None:
        raise NotFoundError(resource="QuoteRequest", resource_id=quote_id)

    changes = changes or {}
    canonical = generate_line_items(quote)
    canonical_keys = {c.source_key for c in canonical}
    canonical_titles = {c.title.lower() for c in canonical}
    remove_keys, remove_titles = removal_targets(quote, changes, canonical_keys)
    remove_titles -= canonical_titles

    result = ReconciliationResult(
        invoice_id=invoice.id,
        before_items=[li.to_dict() for li in invoice.line_items],
    )

    # 1. explicit removals
    for item in list(invoice.line_items):
        if item.source_key:
            doomed = item.source_key in remove_keys
        else:
            doomed = item.title.strip().lower() in remove_titles
        if doomed:
            invoice.line_items.remove(item)
            result.removed.append(item.title)
    db.session.flush()

    # 2-3. match remaining rows: source_key first, then exact title on keyless rows
    by_key = {li.source_key: li for li in invoice.line_items if li.source_key}
    keyless = {}
    for li in invoice.line_items:
        if not li.source_key:
            keyless.setdefault(li.title.strip().lower(), li)
    matched_ids = set()

    for position, c in enumerate(canonical):
        item = by_key.get(c.source_key)
        if item is None:
            item = keyless.pop(c.title.lower(), None)
            if item is not None:
                item.source_key = c.source_key

        if item is None:
            # 4. insert
            invoice.line_items.append(InvoiceLineItem(
                source_key=c.source_key,
                title=c.title,
                description=c.description,
                category=c.category,
                quantity=c.quantity,
                unit_price=c.unit_price,
                total_price=c.total_price,
                generated_unit_price=c.unit_price,
                is_override=False,
                sort_order=position,
            ))
            result.inserted.append(c.title)
            continue

        matched_ids.add(id(item))
        before = (item.quantity, item.unit_price, item.total_price)
        if _is_overridden(item, c.unit_price):
            item.quantity = c.quantity
            item.is_override = True
            item.generated_unit_price = c.unit_price
            item.recompute_total()
            result.preserved_overrides.append(item.title)
        else:
            item.quantity = c.quantity
            item.unit_price = c.unit_price
            item.generated_unit_price = c.unit_price
            item.description = c.description
            item.category = c.category
            item.sort_order = position
            item.recompute_total()
        if (item.quantity, item.unit_price, item.total_price) != before:
            result.updated.append(item.title)

    # 5. leave unmatched rows alone
    result.untouched = [li.title for li in invoice.line_items
                        if id(li) not in matched_ids and li.source_key not in canonical_keys]

    db.session.flush()

    # 6. totals
    subtotal = sum(li.total_price for li in invoice.line_items)
    tax = apply_to_invoice(invoice, subtotal)
    db.session.flush()

    result.after_items = [li.to_dict() for li in invoice.line_items]
    result.subtotal = tax.subtotal
    result.tax_amount = tax.tax_amount
    result.total_amount = tax.total_amount
    logger.info(
        "Reconciled invoice %s: -%d +%d ~%d kept=%d total=%d",
        invoice.id, len(result.removed), len(result.inserted), len(result.updated),
        len(result.untouched), result.total_amount,
        extra={"invoice_id": invoice.id, "quote_id": quote.id},
    )
    return result
