"""
Tax calculation.

Pure function over integer cents:

    taxable = subtotal - discount
    tax     = round_half_up(taxable × (hospitality_rate + service_rate))
    total   = taxable + tax

Government contracts are fully exempt: tax is 0 whatever the rates are.
Components are reported separately for display; the service component
absorbs the rounding difference so that hospitality + service == tax.
"""

from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal

from flask import current_app, has_app_context

DEFAULT_HOSPITALITY_TAX_RATE = 0.02
DEFAULT_SERVICE_TAX_RATE = 0.06


@dataclass(frozen=True)
class TaxRates:
    hospitality: float = DEFAULT_HOSPITALITY_TAX_RATE
    service: float = DEFAULT_SERVICE_TAX_RATE

    @property
    def combined(self) -> Decimal:
        return Decimal(str(self.hospitality)) + Decimal(str(self.service))


@dataclass(frozen=True)
class TaxResult:
    subtotal: int
    discount_amount: int
    taxable_amount: int
    hospitality_tax: int
    service_tax: int
    tax_amount: int
    total_amount: int
    is_exempt: bool

    def to_dict(self) -> dict:
        return asdict(self)


def round_half_up(value) -> int:
    """Round a Decimal/float/int to the nearest integer, halves away from zero."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def configured_rates() -> TaxRates:
    """Rates from the Flask config, or module defaults outside an app context."""
    if not has_app_context():
        return TaxRates()
    cfg = current_app.config
    return TaxRates(
        hospitality=cfg.get("HOSPITALITY_TAX_RATE", DEFAULT_HOSPITALITY_TAX_RATE),
        service=cfg.get("SERVICE_TAX_RATE", DEFAULT_SERVICE_TAX_RATE),
    )


def calculate_discount(subtotal: int, discount_type: str | None, discount_value) -> int:
    """
    Discount in cents.

    ``percentage``: ``discount_value`` is percentage points of the subtotal.
    ``fixed``: ``discount_value`` is cents, capped at the subtotal.
    Anything else (or a non-positive value) means no discount.
    """
    if not discount_type or not discount_value or subtotal <= 0:
        return 0
    value = Decimal(str(discount_value))
    if value <= 0:
        return 0
    if discount_type == "percentage":
        amount = round_half_up(Decimal(subtotal) * value / Decimal(100))
    elif discount_type == "fixed":
        amount = round_half_up(value)
    else:
        return 0
    return max(0, min(amount, subtotal))


def calculate_tax(
    subtotal: int,
    *,
    discount_type: str | None = None,
    discount_value=0,
    is_government: bool = False,
    rates: TaxRates | None = None,
) -> TaxResult:
    subtotal = max(0, int(subtotal or 0))
    discount = calculate_discount(subtotal, discount_type, discount_value)
    taxable = max(0, subtotal - discount)

    if is_government:
        return TaxResult(
            subtotal=subtotal,
            discount_amount=discount,
            taxable_amount=taxable,
            hospitality_tax=0,
            service_tax=0,
            tax_amount=0,
            total_amount=taxable,
            is_exempt=True,
        )

    rates = rates or configured_rates()
    tax = round_half_up(Decimal(taxable) * rates.combined)
    hospitality = min(tax, round_half_up(Decimal(taxable) * Decimal(str(rates.hospitality))))
    return TaxResult(
        subtotal=subtotal,
        discount_amount=discount,
        taxable_amount=taxable,
        hospitality_tax=hospitality,
        service_tax=tax - hospitality,
        tax_amount=tax,
        total_amount=taxable + tax,
        is_exempt=False,
    )


def apply_to_invoice(invoice, subtotal: int) -> TaxResult:
    """Write subtotal, discount and tax fields derived from ``subtotal`` onto an invoice."""
    result = calculate_tax(
        subtotal,
        discount_type=invoice.discount_type,
        discount_value=invoice.discount_value,
        is_government=invoice.is_government_contract,
    )
    invoice.subtotal = result.subtotal
    invoice.discount_amount = result.discount_amount
    invoice.hospitality_tax = result.hospitality_tax
    invoice.service_tax = result.service_tax
    invoice.tax_amount = result.tax_amount
    invoice.total_amount = result.total_amount
    return result
