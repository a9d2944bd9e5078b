"""
Estimate version snapshots.

A snapshot copies an invoice's totals and all its line items into an
immutable ``estimate_versions`` row at ``max(version_number) + 1``.
Snapshots are only taken before a destructive update and are never
mutated afterwards.

Usage:
    from catering.services.estimate_version_service import EstimateVersionService

    version = EstimateVersionService.create_snapshot(invoice.id, change_request_id=cr.id,
                                                     created_by="admin")
    diff = EstimateVersionService.compare_versions(invoice.id, 1, 2)
"""

import logging

from sqlalchemy import func

from catering.core.exceptions import NotFoundError, ValidationError
from catering.models import db
from catering.models.invoice import EstimateVersion, Invoice
from catering.services.history_logger import diff_line_items

logger = logging.getLogger(__name__)


class EstimateVersionService:

    @staticmethod
    def next_version_number(invoice_id: int) -> int:
        current = (
            db.session.query(func.max(EstimateVersion.version_number))
            .filter(EstimateVersion.invoice_id == invoice_id)
            .scalar()
        )
        return (current or 0) + 1

    @classmethod
    def create_snapshot(
        cls,
        invoice_id: int,
        change_request_id: int | None = None,
        created_by: str = "system",
        notes: str | None = None,
    ) -> EstimateVersion:
        """
        Insert an archived snapshot of the invoice and its current line items.

        Flushes but does not commit. Raises NotFoundError if the invoice is gone.
        """
        invoice = db.session.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFoundError(resource="Invoice", resource_id=invoice_id)

        version = EstimateVersion(
            invoice_id=invoice.id,
            change_request_id=change_request_id,
            version_number=cls.next_version_number(invoice.id),
            status="archived",
            line_items=[li.to_dict() for li in invoice.line_items],
            subtotal=invoice.subtotal,
            tax_amount=invoice.tax_amount,
            total_amount=invoice.total_amount,
            invoice_status=invoice.workflow_status,
            notes=notes,
            created_by=created_by,
        )
        db.session.add(version)
        db.session.flush()
        logger.info(
            "Snapshot v%d of invoice %s (%d items, total=%d)",
            version.version_number, invoice.id, len(version.line_items), version.total_amount,
            extra={"invoice_id": invoice.id, "change_request_id": change_request_id},
        )
        return version

    @staticmethod
    def list_versions(invoice_id: int) -> list[EstimateVersion]:
        return (
            EstimateVersion.query
            .filter_by(invoice_id=invoice_id)
            .order_by(EstimateVersion.version_number.desc())
            .all()
        )

    @staticmethod
    def get_version(invoice_id: int, version_number: int) -> EstimateVersion:
        version = EstimateVersion.query.filter_by(
            invoice_id=invoice_id, version_number=version_number,
        ).first()
        if version is None:
            raise NotFoundError(resource="EstimateVersion", resource_id=f"{invoice_id}/v{version_number}")
        return version

    @classmethod
    def compare_versions(cls, invoice_id: int, from_version: int, to_version: int | None = None) -> dict:
        """
        Line-item and total differences between two snapshots.

        ``to_version=None`` compares against the invoice as it is now.
        """
        if to_version is not None and from_version == to_version:
            raise ValidationError("Cannot compare a version with itself",
                                  {"from": from_version, "to": to_version})

        old = cls.get_version(invoice_id, from_version)
        if to_version is None:
            invoice = db.session.get(Invoice, invoice_id)
            if invoice is None:
                raise NotFoundError(resource="Invoice", resource_id=invoice_id)
            new_items = [li.to_dict() for li in invoice.line_items]
            new_total, new_subtotal, new_label = invoice.total_amount, invoice.subtotal, "current"
        else:
            new = cls.get_version(invoice_id, to_version)
            new_items = new.line_items or []
            new_total, new_subtotal, new_label = new.total_amount, new.subtotal, to_version

        diff = diff_line_items(old.line_items or [], new_items)
        return {
            "invoice_id": invoice_id,
            "from_version": from_version,
            "to_version": new_label,
            "added": diff["added"],
            "removed": diff["removed"],
            "modified": diff["modified"],
            "subtotal_change": new_subtotal - old.subtotal,
            "total_change": new_total - old.total_amount,
        }
