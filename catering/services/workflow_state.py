"""
Workflow state model for quotes, invoices and change requests.

Every status write goes through ``validate_transition`` against an
explicit allowed-next table. Moves that deliberately break monotonic
advancement (a change-request approval pushing a paid invoice back to
``sent``, a quote approval skipping the invoice's ``draft`` step) are
declared in ``FORCED_TRANSITIONS`` keyed by their cause; they are never
inferred from step order.

Progress is computed per phase: the quote phase and the invoice phase
each report their own current / completed / upcoming steps.

Usage:
    from catering.services.workflow_state import apply_transition, TransitionCause

    apply_transition("invoice", invoice, "sent",
                     cause=TransitionCause.CHANGE_REQUEST_APPROVED,
                     changed_by="admin", reason="Change request #4 approved")
"""

import json
import logging
from enum import Enum

from catering.core.exceptions import InvalidTransitionError
from catering.models import db
from catering.models.audit import WorkflowStateLogEntry
from catering.utils.helpers import utcnow

logger = logging.getLogger(__name__)


class QuoteWorkflowStatus(str, Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    ESTIMATED = "estimated"
    SENT = "sent"
    APPROVED = "approved"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class InvoiceWorkflowStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    APPROVED = "approved"
    PAYMENT_PENDING = "payment_pending"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ChangeRequestStatus(str, Enum):
    PENDING = "pending"
    REVIEWING = "reviewing"
    PROCESSING = "processing"
    APPROVED = "approved"
    REJECTED = "rejected"


class TransitionCause(str, Enum):
    """Domain events that are allowed to override the normal transition table."""

    CHANGE_REQUEST_APPROVED = "change_request_approved"
    QUOTE_APPROVED = "quote_approved"


QUOTE = "quote"
INVOICE = "invoice"
CHANGE_REQUEST = "change_request"

Q = QuoteWorkflowStatus
I = InvoiceWorkflowStatus
C = ChangeRequestStatus

QUOTE_TRANSITIONS = {
    Q.PENDING: {Q.UNDER_REVIEW, Q.ESTIMATED, Q.CANCELLED},
    Q.UNDER_REVIEW: {Q.ESTIMATED, Q.CANCELLED},
    Q.ESTIMATED: {Q.SENT, Q.UNDER_REVIEW, Q.CANCELLED},
    Q.SENT: {Q.APPROVED, Q.ESTIMATED, Q.CANCELLED},
    Q.APPROVED: {Q.CONFIRMED, Q.CANCELLED},
    Q.CONFIRMED: {Q.IN_PROGRESS, Q.CANCELLED},
    Q.IN_PROGRESS: {Q.COMPLETED},
    Q.COMPLETED: set(),
    Q.CANCELLED: set(),
}

INVOICE_TRANSITIONS = {
    I.DRAFT: {I.SENT, I.CANCELLED},
    I.SENT: {I.VIEWED, I.APPROVED, I.OVERDUE, I.CANCELLED},
    I.VIEWED: {I.APPROVED, I.SENT, I.OVERDUE, I.CANCELLED},
    I.APPROVED: {I.PAYMENT_PENDING, I.PARTIALLY_PAID, I.PAID, I.CANCELLED},
    I.PAYMENT_PENDING: {I.PARTIALLY_PAID, I.PAID, I.OVERDUE, I.CANCELLED},
    I.PARTIALLY_PAID: {I.PAID, I.OVERDUE},
    I.OVERDUE: {I.PARTIALLY_PAID, I.PAID, I.CANCELLED},
    I.PAID: {I.IN_PROGRESS, I.COMPLETED},
    I.IN_PROGRESS: {I.COMPLETED},
    I.COMPLETED: set(),
    I.CANCELLED: set(),
}

# processing is held by a running approval; it ends approved or falls back
# to the status the approval claimed it from
CHANGE_REQUEST_TRANSITIONS = {
    C.PENDING: {C.REVIEWING, C.PROCESSING, C.APPROVED, C.REJECTED},
    C.REVIEWING: {C.PROCESSING, C.APPROVED, C.REJECTED},
    C.PROCESSING: {C.APPROVED, C.PENDING, C.REVIEWING},
    C.APPROVED: set(),
    C.REJECTED: set(),
}

_TABLES = {
    QUOTE: (QuoteWorkflowStatus, QUOTE_TRANSITIONS),
    INVOICE: (InvoiceWorkflowStatus, INVOICE_TRANSITIONS),
    CHANGE_REQUEST: (ChangeRequestStatus, CHANGE_REQUEST_TRANSITIONS),
}

# cause -> entity -> (target, allowed source states)
FORCED_TRANSITIONS = {
    TransitionCause.CHANGE_REQUEST_APPROVED: {
        INVOICE: (I.SENT, set(I) - {I.CANCELLED}),
        QUOTE: (Q.ESTIMATED, set(Q) - {Q.CANCELLED}),
    },
    TransitionCause.QUOTE_APPROVED: {
        INVOICE: (I.APPROVED, {I.DRAFT, I.SENT, I.VIEWED}),
    },
}

# Canonical display order per phase; sub-states fold into a parent step
QUOTE_STEPS = [Q.PENDING, Q.UNDER_REVIEW, Q.ESTIMATED, Q.SENT,
               Q.APPROVED, Q.CONFIRMED, Q.IN_PROGRESS, Q.COMPLETED]
INVOICE_STEPS = [I.DRAFT, I.SENT, I.VIEWED, I.APPROVED,
                 I.PAID, I.IN_PROGRESS, I.COMPLETED]
_INVOICE_STEP_ALIASES = {
    I.PAYMENT_PENDING: I.PAID,
    I.PARTIALLY_PAID: I.PAID,
    I.OVERDUE: I.PAID,
}


def _coerce(entity_type: str, value):
    enum_cls, _ = _TABLES[entity_type]
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidTransitionError(entity_type, str(value), "?", f"unknown status '{value}'") from None


def is_valid_transition(entity_type: str, current, target, *, cause=None) -> bool:
    """Non-raising variant of ``validate_transition``."""
    try:
        validate_transition(entity_type, current, target, cause=cause)
    except InvalidTransitionError:
        return False
    return True


def validate_transition(entity_type: str, current, target, *, cause=None):
    """
    Raise InvalidTransitionError unless ``current → target`` is legal.

    Staying in the same status is always legal (idempotent re-application).
    With a ``cause``, the forced rule for that cause is consulted first;
    if the cause has no rule for this entity the normal table applies.
    """
    if entity_type not in _TABLES:
        raise InvalidTransitionError(entity_type, str(current), str(target), "unknown entity type")
    cur = _coerce(entity_type, current)
    try:
        tgt = _TABLES[entity_type][0](target)
    except ValueError:
        raise InvalidTransitionError(entity_type, cur.value, str(target), f"unknown status '{target}'") from None

    if cur == tgt:
        return

    if cause is not None:
        rule = FORCED_TRANSITIONS.get(TransitionCause(cause), {}).get(entity_type)
        if rule is not None:
            forced_target, sources = rule
            if tgt == forced_target and cur in sources:
                return
            if tgt == forced_target:
                raise InvalidTransitionError(
                    entity_type, cur.value, tgt.value,
                    f"'{TransitionCause(cause).value}' cannot move a {entity_type} out of '{cur.value}'",
                )

    allowed = _TABLES[entity_type][1][cur]
    if tgt not in allowed:
        reason = "terminal status" if not allowed else \
            "allowed: " + ", ".join(sorted(s.value for s in allowed))
        raise InvalidTransitionError(entity_type, cur.value, tgt.value, reason)


def allowed_next(entity_type: str, current) -> list[str]:
    cur = _coerce(entity_type, current)
    return sorted(s.value for s in _TABLES[entity_type][1][cur])


# ── Progress ─────────────────────────────────────────────────────────────────

def _phase_progress(steps, status, aliases=None):
    if status is None:
        return None
    step = (aliases or {}).get(status, status)
    if step not in steps:
        # cancelled or unknown: nothing completed, nothing upcoming
        return {
            "status": status.value,
            "current": step.value,
            "current_index": None,
            "completed": [],
            "upcoming": [],
            "percent": 0,
        }
    idx = steps.index(step)
    return {
        "status": status.value,
        "current": step.value,
        "current_index": idx,
        "completed": [s.value for s in steps[:idx]],
        "upcoming": [s.value for s in steps[idx + 1:]],
        "percent": round(100 * idx / (len(steps) - 1)),
    }


def workflow_progress(quote_status, invoice_status=None) -> dict:
    """
    Per-phase progress. The two phases are independent: an approved quote
    next to a draft invoice is a valid combination and is reported as-is.
    """
    quote = _phase_progress(QUOTE_STEPS, _coerce(QUOTE, quote_status))
    invoice = None
    if invoice_status is not None:
        invoice = _phase_progress(INVOICE_STEPS, _coerce(INVOICE, invoice_status),
                                  _INVOICE_STEP_ALIASES)
    return {"quote": quote, "invoice": invoice}


# ── Persistence ──────────────────────────────────────────────────────────────

def log_transition(
    *,
    entity_type: str,
    entity_id,
    previous_status: str | None,
    new_status: str,
    changed_by: str = "system",
    reason: str | None = None,
    metadata: dict | None = None,
) -> WorkflowStateLogEntry:
    """
    Append a single workflow_state_log row. Uses ``flush`` so callers keep
    transaction control.
    """
    entry = WorkflowStateLogEntry(
        entity_type=entity_type,
        entity_id=str(entity_id),
        previous_status=previous_status,
        new_status=new_status,
        changed_by=changed_by,
        change_reason=reason,
        metadata_json=json.dumps(metadata or {}, default=str),
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def apply_transition(
    entity_type: str,
    obj,
    target,
    *,
    cause=None,
    changed_by: str = "system",
    reason: str | None = None,
    metadata: dict | None = None,
) -> WorkflowStateLogEntry | None:
    """
    Validate and apply a status move on a model instance, then log it.

    Quotes and invoices carry both ``status`` and ``workflow_status``; the
    fine-grained one is validated and both are written. Change requests only
    have ``status``. Returns the log entry, or None for a same-status no-op.
    """
    field = "status" if entity_type == CHANGE_REQUEST else "workflow_status"
    previous = getattr(obj, field)
    target = _TABLES[entity_type][0](target).value
    validate_transition(entity_type, previous, target, cause=cause)
    if previous == target and cause is None:
        return None

    setattr(obj, field, target)
    if entity_type == INVOICE:
        obj.status = target
    if hasattr(obj, "last_status_change"):
        obj.last_status_change = utcnow()

    meta = dict(metadata or {})
    if cause is not None:
        meta.setdefault("cause", TransitionCause(cause).value)
    logger.info(
        "%s %s: %s → %s", entity_type, obj.id, previous, target,
        extra={f"{entity_type}_id": obj.id},
    )
    return log_transition(
        entity_type=entity_type,
        entity_id=obj.id,
        previous_status=previous,
        new_status=target,
        changed_by=changed_by,
        reason=reason,
        metadata=meta,
    )
