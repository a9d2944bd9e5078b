"""
Field-level quote history.

Appends immutable ``quote_request_history`` rows describing what changed:
event/contact fields, menu selections added or removed, and invoice line
items added, removed or modified. Only history rows are written; domain
state is never touched. Writes use ``flush`` so callers keep transaction
control.
"""

import json
import logging

from catering.models import db
from catering.models.audit import QuoteRequestHistory
from catering.models.quote import ADDON_FLAGS, EVENT_FIELDS, MENU_CATEGORIES

logger = logging.getLogger(__name__)

TRACKED_FIELDS = EVENT_FIELDS + ("service_type", "both_proteins_available",
                                 "custom_menu_requests") + ADDON_FLAGS

LINE_ITEM_FIELDS = ("quantity", "unit_price", "total_price", "title")


def _dump(value):
    return None if value is None else json.dumps(value, default=str)


def _item_title(item: dict) -> str:
    return (item.get("title") or "").strip().lower()


def _item_key(item: dict) -> str:
    return item.get("source_key") or f"title:{_item_title(item)}"


def log_field_change(
    quote_id: int,
    field_name: str,
    old_value,
    new_value,
    *,
    change_type: str = "modified",
    change_request_id: int | None = None,
    changed_by: str = "system",
    reason: str | None = None,
) -> QuoteRequestHistory:
    row = QuoteRequestHistory(
        quote_request_id=quote_id,
        change_request_id=change_request_id,
        field_name=field_name,
        change_type=change_type,
        old_value=_dump(old_value),
        new_value=_dump(new_value),
        changed_by=changed_by,
        change_reason=reason,
    )
    db.session.add(row)
    return row


def log_quote_changes(
    quote_id: int,
    before: dict,
    after: dict,
    *,
    change_request_id: int | None = None,
    changed_by: str = "system",
    reason: str | None = None,
) -> list[QuoteRequestHistory]:
    """Diff two ``QuoteRequest.to_dict()`` snapshots and log every delta."""
    rows = []
    common = {"change_request_id": change_request_id, "changed_by": changed_by, "reason": reason}

    for name in TRACKED_FIELDS:
        if before.get(name) != after.get(name):
            rows.append(log_field_change(quote_id, name, before.get(name), after.get(name), **common))

    for category in MENU_CATEGORIES:
        old = before.get(category) or []
        new = after.get(category) or []
        for added in [x for x in new if x not in old]:
            rows.append(log_field_change(quote_id, f"menu.{category}", None, added,
                                         change_type="added", **common))
        for removed in [x for x in old if x not in new]:
            rows.append(log_field_change(quote_id, f"menu.{category}", removed, None,
                                         change_type="removed", **common))

    db.session.flush()
    return rows


def diff_line_items(before: list[dict], after: list[dict]) -> dict:
    """
    Compare two line-item lists (``to_dict()`` form).

    Items are keyed by ``source_key`` with a title fallback. A keyless row
    that picked up a ``source_key`` in between is paired with it by exact
    title. Returns
    ``{"added": [...], "removed": [...], "modified": [{"key", "title", "changes"}]}``
    where ``changes`` maps field → {"old", "new"}.
    """
    old_by_key = {_item_key(i): i for i in before}
    new_by_key = {_item_key(i): i for i in after}

    unmatched_new = {_item_title(i): k for k, i in new_by_key.items() if k not in old_by_key}
    for key in [k for k in old_by_key if k.startswith("title:") and k not in new_by_key]:
        new_key = unmatched_new.pop(_item_title(old_by_key[key]), None)
        if new_key is not None:
            old_by_key[new_key] = old_by_key.pop(key)

    added = [new_by_key[k] for k in new_by_key if k not in old_by_key]
    removed = [old_by_key[k] for k in old_by_key if k not in new_by_key]
    modified = []
    for key in new_by_key.keys() & old_by_key.keys():
        old, new = old_by_key[key], new_by_key[key]
        changes = {
            f: {"old": old.get(f), "new": new.get(f)}
            for f in LINE_ITEM_FIELDS if old.get(f) != new.get(f)
        }
        if changes:
            modified.append({"key": key, "title": new.get("title"), "changes": changes})
    modified.sort(key=lambda m: m["key"])
    return {"added": added, "removed": removed, "modified": modified}


def log_line_item_changes(
    quote_id: int,
    diff: dict,
    *,
    change_request_id: int | None = None,
    changed_by: str = "system",
    reason: str | None = None,
) -> list[QuoteRequestHistory]:
    rows = []
    common = {"change_request_id": change_request_id, "changed_by": changed_by, "reason": reason}

    for item in diff.get("added", []):
        rows.append(log_field_change(
            quote_id, f"line_item:{item.get('title')}", None,
            {"quantity": item.get("quantity"), "unit_price": item.get("unit_price")},
            change_type="added", **common))
    for item in diff.get("removed", []):
        rows.append(log_field_change(
            quote_id, f"line_item:{item.get('title')}",
            {"quantity": item.get("quantity"), "unit_price": item.get("unit_price")}, None,
            change_type="removed", **common))
    for mod in diff.get("modified", []):
        changes = mod["changes"]
        rows.append(log_field_change(
            quote_id, f"line_item:{mod['title']}",
            {f: c["old"] for f, c in changes.items()},
            {f: c["new"] for f, c in changes.items()},
            **common))

    db.session.flush()
    logger.debug("Logged %d line-item history rows for quote %s", len(rows), quote_id,
                 extra={"quote_id": quote_id, "change_request_id": change_request_id})
    return rows


def get_quote_history(quote_id: int) -> list[dict]:
    rows = (
        QuoteRequestHistory.query
        .filter_by(quote_request_id=quote_id)
        .order_by(QuoteRequestHistory.id)
        .all()
    )
    return [r.to_dict() for r in rows]
