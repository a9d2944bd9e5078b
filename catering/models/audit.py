"""
Catering Quote Workflow
Audit models.

Models:
    - WorkflowStateLogEntry: append-only status transition log (workflow_state_log)
    - QuoteRequestHistory:   append-only field-level before/after deltas

Neither table is ever updated or deleted from.
"""

import json
from datetime import datetime, timezone

from catering.models import db

AUDIT_ENTITY_TYPES = {"quote", "invoice", "change_request"}


class WorkflowStateLogEntry(db.Model):
    """One row per status transition of a quote, invoice or change request."""

    __tablename__ = "workflow_state_log"
    __table_args__ = (
        db.Index("idx_wsl_entity", "entity_type", "entity_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="quote | invoice | change_request",
    )
    entity_id = db.Column(
        db.String(36), nullable=False,
        comment="PK of the referenced entity (int-as-string)",
    )
    previous_status = db.Column(db.String(30), nullable=True)
    new_status = db.Column(db.String(30), nullable=False)
    changed_by = db.Column(db.String(150), nullable=False, default="system")
    change_reason = db.Column(db.Text, nullable=True)
    metadata_json = db.Column(
        "metadata", db.Text, default="{}",
        comment="JSON: cost delta, change_request_id, forced-transition cause",
    )
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def meta(self) -> dict:
        """Deserialise *metadata_json* to a Python dict."""
        try:
            return json.loads(self.metadata_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "changed_by": self.changed_by,
            "change_reason": self.change_reason,
            "metadata": self.meta,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return (f"<WorkflowStateLogEntry {self.entity_type}/{self.entity_id}: "
                f"{self.previous_status} → {self.new_status}>")


class QuoteRequestHistory(db.Model):
    """
    Field-level delta on a quote.

    ``field_name`` is either a quote column ("guest_count"), a menu marker
    ("menu.proteins") or a line-item marker ("line_item:Catfish").
    Values are stored as JSON text so lists and numbers round-trip.
    """

    __tablename__ = "quote_request_history"

    id = db.Column(db.Integer, primary_key=True)
    quote_request_id = db.Column(
        db.Integer, db.ForeignKey("quote_requests.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    change_request_id = db.Column(
        db.Integer, db.ForeignKey("change_requests.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    field_name = db.Column(db.String(120), nullable=False)
    change_type = db.Column(
        db.String(20), nullable=False, default="modified",
        comment="modified | added | removed",
    )
    old_value = db.Column(db.Text, nullable=True)
    new_value = db.Column(db.Text, nullable=True)
    changed_by = db.Column(db.String(150), nullable=False, default="system")
    change_reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    @staticmethod
    def _load(raw):
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return raw

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "quote_request_id": self.quote_request_id,
            "change_request_id": self.change_request_id,
            "field_name": self.field_name,
            "change_type": self.change_type,
            "old_value": self._load(self.old_value),
            "new_value": self._load(self.new_value),
            "changed_by": self.changed_by,
            "change_reason": self.change_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<QuoteRequestHistory {self.quote_request_id}.{self.field_name} [{self.change_type}]>"
