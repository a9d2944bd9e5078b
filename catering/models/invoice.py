"""
Catering Quote Workflow
Invoice domain models.

Models:
    - Invoice:          billable artifact for a quote; source of truth for money
    - InvoiceLineItem:  one billable row; may carry a manual price override
    - EstimateVersion:  immutable snapshot of an invoice + its line items

Architecture:
    QuoteRequest ──1:1──▶ Invoice ──1:N──▶ InvoiceLineItem
    Invoice ──1:N──▶ EstimateVersion  (append-only, version_number strictly increasing)

Invariants:
    InvoiceLineItem.total_price == quantity * unit_price
    Invoice.subtotal == Σ line_item.total_price (after every reconciliation)
"""

from datetime import datetime, timezone

from catering.models import db

INVOICE_DISCOUNT_TYPES = {"percentage", "fixed"}


def _utcnow():
    return datetime.now(timezone.utc)


class Invoice(db.Model):
    """
    Invoice generated from a quote.

    ``customer_access_token`` + ``token_expires_at`` gate the customer
    portal; both rotate whenever content changes after the invoice was sent.
    ``manual_overrides`` holds ``{is_government_contract, deposit_required}``.
    """

    __tablename__ = "invoices"

    id = db.Column(db.Integer, primary_key=True)
    quote_request_id = db.Column(
        db.Integer, db.ForeignKey("quote_requests.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    invoice_number = db.Column(db.String(40), nullable=True, unique=True)

    status = db.Column(db.String(30), nullable=False, default="draft")
    workflow_status = db.Column(db.String(30), nullable=False, default="draft")
    last_status_change = db.Column(db.DateTime(timezone=True), nullable=True)

    # Money (cents)
    subtotal = db.Column(db.Integer, nullable=False, default=0)
    discount_type = db.Column(db.String(20), nullable=True, comment="percentage | fixed")
    discount_value = db.Column(
        db.Integer, nullable=True,
        comment="percentage points for 'percentage', cents for 'fixed'",
    )
    discount_amount = db.Column(db.Integer, nullable=False, default=0)
    hospitality_tax = db.Column(db.Integer, nullable=False, default=0)
    service_tax = db.Column(db.Integer, nullable=False, default=0)
    tax_amount = db.Column(db.Integer, nullable=False, default=0)
    total_amount = db.Column(db.Integer, nullable=False, default=0)

    # Customer portal access
    customer_access_token = db.Column(db.String(128), nullable=True, unique=True, index=True)
    token_expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    manual_overrides = db.Column(db.JSON, nullable=False, default=dict)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    # ── Relationships ────────────────────────────────────────────────────
    quote_request = db.relationship("QuoteRequest", uselist=False)
    line_items = db.relationship(
        "InvoiceLineItem", back_populates="invoice",
        cascade="all, delete-orphan", lazy="select",
        order_by=lambda: (InvoiceLineItem.sort_order, InvoiceLineItem.id),
    )

    @property
    def is_government_contract(self) -> bool:
        """Explicit override wins; otherwise fall back to the quote's compliance level."""
        overrides = self.manual_overrides or {}
        if overrides.get("is_government_contract") is not None:
            return bool(overrides["is_government_contract"])
        return bool(self.quote_request and self.quote_request.is_government)

    def to_dict(self, include_items: bool = False) -> dict:
        d = {
            "id": self.id,
            "quote_request_id": self.quote_request_id,
            "invoice_number": self.invoice_number,
            "status": self.status,
            "workflow_status": self.workflow_status,
            "subtotal": self.subtotal,
            "discount_type": self.discount_type,
            "discount_value": self.discount_value,
            "discount_amount": self.discount_amount,
            "hospitality_tax": self.hospitality_tax,
            "service_tax": self.service_tax,
            "tax_amount": self.tax_amount,
            "total_amount": self.total_amount,
            "token_expires_at": self.token_expires_at.isoformat() if self.token_expires_at else None,
            "manual_overrides": dict(self.manual_overrides or {}),
            "is_government_contract": self.is_government_contract,
        }
        if include_items:
            d["line_items"] = [li.to_dict() for li in self.line_items]
        return d

    def __repr__(self):
        return f"<Invoice {self.id} [{self.workflow_status}] total={self.total_amount}>"


class InvoiceLineItem(db.Model):
    """
    One billable row on an invoice.

    ``source_key`` (``category:slug``) is attached at generation time and is
    the primary reconciliation key; ``title`` is the fallback key for legacy
    and hand-added rows. ``generated_unit_price`` remembers what the canonical
    generator last produced, so a manual price edit is detectable even when
    ``is_override`` was never set.
    """

    __tablename__ = "invoice_line_items"

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(
        db.Integer, db.ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    source_key = db.Column(db.String(120), nullable=True, index=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(50), nullable=False, default="other")
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price = db.Column(db.Integer, nullable=False, default=0, comment="cents")
    total_price = db.Column(db.Integer, nullable=False, default=0, comment="cents")
    generated_unit_price = db.Column(db.Integer, nullable=True, comment="cents")
    is_override = db.Column(db.Boolean, nullable=False, default=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    invoice = db.relationship("Invoice", back_populates="line_items")

    def recompute_total(self) -> int:
        self.total_price = (self.quantity or 0) * (self.unit_price or 0)
        return self.total_price

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "source_key": self.source_key,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "total_price": self.total_price,
            "is_override": self.is_override,
            "sort_order": self.sort_order,
        }

    def __repr__(self):
        return f"<InvoiceLineItem {self.id}: {self.title} {self.quantity}x{self.unit_price}>"


class EstimateVersion(db.Model):
    """
    Immutable snapshot of an invoice and its line items.

    Created only before a destructive update; never mutated or deleted.
    """

    __tablename__ = "estimate_versions"
    __table_args__ = (
        db.UniqueConstraint("invoice_id", "version_number", name="uq_estimate_version_number"),
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(
        db.Integer, db.ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    change_request_id = db.Column(
        db.Integer, db.ForeignKey("change_requests.id", ondelete="SET NULL"),
        nullable=True,
    )
    version_number = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="archived")
    line_items = db.Column(db.JSON, nullable=False, default=list)
    subtotal = db.Column(db.Integer, nullable=False, default=0)
    tax_amount = db.Column(db.Integer, nullable=False, default=0)
    total_amount = db.Column(db.Integer, nullable=False, default=0)
    invoice_status = db.Column(db.String(30), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.String(150), nullable=False, default="system")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "change_request_id": self.change_request_id,
            "version_number": self.version_number,
            "status": self.status,
            "line_items": list(self.line_items or []),
            "subtotal": self.subtotal,
            "tax_amount": self.tax_amount,
            "total_amount": self.total_amount,
            "invoice_status": self.invoice_status,
            "notes": self.notes,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<EstimateVersion invoice={self.invoice_id} v{self.version_number}>"
