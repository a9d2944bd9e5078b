"""
Catering Quote Workflow
Change request model.

A customer-submitted patch against an estimate that was already sent.
``status`` doubles as the single-consumer gate for the approval saga:
only ``pending`` / ``reviewing`` requests may be claimed, and an approval
holds ``processing`` from load until it commits or backs out.
"""

from datetime import datetime, timezone

from catering.models import db

CHANGE_REQUEST_TYPES = {"modification", "cancellation", "addition"}
CHANGE_REQUEST_PRIORITIES = {"low", "medium", "high"}


class ChangeRequest(db.Model):
    """
    Change request against one invoice.

    ``requested_changes`` shape::

        {
            "event_date": "2026-06-01", "guest_count": 120, "location": "...",
            "menu_changes": {"proteins": {"add": [...], "remove": [...]}, ...},
            "service_options": {"wait_staff_requested": true, ...},
            "custom_requests": "gluten free cake"
        }

    Once resolved the row is immutable except for ``admin_response``.
    """

    __tablename__ = "change_requests"

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(
        db.Integer, db.ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    customer_email = db.Column(db.String(255), nullable=False)
    request_type = db.Column(db.String(30), nullable=False, default="modification")
    priority = db.Column(db.String(10), nullable=False, default="medium")
    status = db.Column(
        db.String(20), nullable=False, default="pending",
        comment="pending | reviewing | processing | approved | rejected",
    )
    customer_comments = db.Column(db.Text, nullable=True)
    requested_changes = db.Column(db.JSON, nullable=False, default=dict)
    original_details = db.Column(db.JSON, nullable=True,
                                 comment="Quote fields as they were when the request was filed")

    # Resolution
    admin_response = db.Column(db.Text, nullable=True)
    estimated_cost_change = db.Column(db.Integer, nullable=True, comment="cents, new - previous")
    reviewed_by = db.Column(db.String(150), nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    invoice = db.relationship("Invoice")

    @property
    def is_resolved(self) -> bool:
        return self.status in ("approved", "rejected")

    def to_dict(self):
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "customer_email": self.customer_email,
            "request_type": self.request_type,
            "priority": self.priority,
            "status": self.status,
            "customer_comments": self.customer_comments,
            "requested_changes": dict(self.requested_changes or {}),
            "admin_response": self.admin_response,
            "estimated_cost_change": self.estimated_cost_change,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ChangeRequest {self.id} invoice={self.invoice_id} [{self.status}]>"
