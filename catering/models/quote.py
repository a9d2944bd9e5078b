"""
Catering Quote Workflow
Quote domain models.

Models:
    - QuoteRequest:   customer catering request; source of truth for event and menu facts
    - QuoteLineItem:  quote-level planning items, regenerated wholesale from quote data

QuoteRequest carries an integer ``version`` column used for optimistic
locking: every successful update increments it, and writes are filtered
by ``id AND version`` (see quote_update_service.update_quote).
"""

from datetime import datetime, timezone

from catering.models import db

# ── Constants ────────────────────────────────────────────────────────────────

# Menu selection categories stored as JSON lists of slugs ("fried_chicken")
MENU_CATEGORIES = ("proteins", "appetizers", "sides", "desserts", "drinks")

SERVICE_TYPES = {"drop-off", "delivery-only", "delivery-setup", "full-service"}

# Boolean add-on flags that each drive one canonical line item
ADDON_FLAGS = (
    "wait_staff_requested",
    "ceremony_included",
    "cocktail_hour",
    "plates_requested",
    "cups_requested",
    "napkins_requested",
    "serving_utensils_requested",
    "chafers_requested",
    "ice_requested",
)

# Event/contact fields a change request may touch directly
EVENT_FIELDS = (
    "event_date", "guest_count", "location", "start_time",
    "contact_name", "event_name", "phone", "email",
)

COMPLIANCE_LEVELS = {"standard", "government"}


def _utcnow():
    return datetime.now(timezone.utc)


class QuoteRequest(db.Model):
    """
    Customer catering request.

    Never deleted, only status-advanced. ``status`` is the coarse label
    shown to customers; ``workflow_status`` is the fine-grained state
    validated against QUOTE_TRANSITIONS.
    """

    __tablename__ = "quote_requests"

    id = db.Column(db.Integer, primary_key=True)

    # Contact
    contact_name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(255), nullable=False, index=True)
    phone = db.Column(db.String(50), nullable=True)

    # Event
    event_name = db.Column(db.String(255), nullable=False)
    event_type = db.Column(db.String(50), nullable=True)
    event_date = db.Column(db.Date, nullable=False)
    start_time = db.Column(db.String(20), nullable=True)
    guest_count = db.Column(db.Integer, nullable=False, default=1)
    location = db.Column(db.String(500), nullable=True)
    service_type = db.Column(
        db.String(30), nullable=False, default="drop-off",
        comment="drop-off | delivery-only | delivery-setup | full-service",
    )
    compliance_level = db.Column(
        db.String(20), nullable=False, default="standard",
        comment="standard | government",
    )

    # Menu selections (JSON lists of slugs)
    proteins = db.Column(db.JSON, nullable=False, default=list)
    appetizers = db.Column(db.JSON, nullable=False, default=list)
    sides = db.Column(db.JSON, nullable=False, default=list)
    desserts = db.Column(db.JSON, nullable=False, default=list)
    drinks = db.Column(db.JSON, nullable=False, default=list)
    both_proteins_available = db.Column(db.Boolean, nullable=False, default=False)
    custom_menu_requests = db.Column(db.Text, nullable=True)

    # Add-ons
    wait_staff_requested = db.Column(db.Boolean, nullable=False, default=False)
    ceremony_included = db.Column(db.Boolean, nullable=False, default=False)
    cocktail_hour = db.Column(db.Boolean, nullable=False, default=False)
    plates_requested = db.Column(db.Boolean, nullable=False, default=False)
    cups_requested = db.Column(db.Boolean, nullable=False, default=False)
    napkins_requested = db.Column(db.Boolean, nullable=False, default=False)
    serving_utensils_requested = db.Column(db.Boolean, nullable=False, default=False)
    chafers_requested = db.Column(db.Boolean, nullable=False, default=False)
    ice_requested = db.Column(db.Boolean, nullable=False, default=False)

    # Workflow
    status = db.Column(db.String(30), nullable=False, default="pending")
    workflow_status = db.Column(db.String(30), nullable=False, default="pending")
    last_status_change = db.Column(db.DateTime(timezone=True), nullable=True)
    version = db.Column(
        db.Integer, nullable=False, default=1,
        comment="Optimistic lock counter; incremented on every successful update",
    )
    estimated_total = db.Column(db.Integer, nullable=False, default=0, comment="cents")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    # ── Relationships ────────────────────────────────────────────────────
    line_items = db.relationship(
        "QuoteLineItem", back_populates="quote_request",
        cascade="all, delete-orphan", lazy="select",
        order_by="QuoteLineItem.id",
    )

    @property
    def is_government(self) -> bool:
        return self.compliance_level == "government"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "contact_name": self.contact_name,
            "email": self.email,
            "phone": self.phone,
            "event_name": self.event_name,
            "event_type": self.event_type,
            "event_date": self.event_date.isoformat() if self.event_date else None,
            "start_time": self.start_time,
            "guest_count": self.guest_count,
            "location": self.location,
            "service_type": self.service_type,
            "compliance_level": self.compliance_level,
            "proteins": list(self.proteins or []),
            "appetizers": list(self.appetizers or []),
            "sides": list(self.sides or []),
            "desserts": list(self.desserts or []),
            "drinks": list(self.drinks or []),
            "both_proteins_available": self.both_proteins_available,
            "custom_menu_requests": self.custom_menu_requests,
            **{flag: getattr(self, flag) for flag in ADDON_FLAGS},
            "status": self.status,
            "workflow_status": self.workflow_status,
            "last_status_change": self.last_status_change.isoformat() if self.last_status_change else None,
            "version": self.version,
            "estimated_total": self.estimated_total,
        }

    def __repr__(self):
        return f"<QuoteRequest {self.id} v{self.version} [{self.workflow_status}]>"


class QuoteLineItem(db.Model):
    """Planning/estimate item owned by a quote. Safe to discard and regenerate."""

    __tablename__ = "quote_line_items"

    id = db.Column(db.Integer, primary_key=True)
    quote_request_id = db.Column(
        db.Integer, db.ForeignKey("quote_requests.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    source_key = db.Column(db.String(120), nullable=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(50), nullable=False, default="other")
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price = db.Column(db.Integer, nullable=False, default=0, comment="cents")
    total_price = db.Column(db.Integer, nullable=False, default=0, comment="cents")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    quote_request = db.relationship("QuoteRequest", back_populates="line_items")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "quote_request_id": self.quote_request_id,
            "source_key": self.source_key,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "total_price": self.total_price,
        }

    def __repr__(self):
        return f"<QuoteLineItem {self.id}: {self.title} x{self.quantity}>"
