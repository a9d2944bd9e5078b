"""
Payment milestone scheduling.

    determine_customer_type()   PERSON | COMPANY | GOV from email domain,
                                an explicit government flag always wins
    build_payment_schedule()    ordered milestone rules (type, %, due policy)
    calculate_payment_amounts() percentages → cents, last milestone absorbs
                                the rounding remainder so Σ == total exactly
    materialize_milestones()    rules + amounts → concrete due dates
    apply_payments()            waterfall a paid amount across milestones
    invoice_payment_status()    payment_pending | partially_paid | paid

Schedule rules (lead = days between approval and event):

    GOV                      final 100%  NET_30_AFTER_EVENT
    lead <= 14               full 100%   NOW
    lead <= 30               deposit 60% NOW, final 40% event-7
    lead <= 44               deposit 60% NOW, final 40% event-14
    PERSON                   deposit 30% NOW, balance 70% event-14
    COMPANY                  deposit 10% NOW, milestone 50% event-30,
                             final 40% event-14

No computed due date is ever earlier than the approval date.
"""

import logging
from dataclasses import asdict, dataclass, field, replace
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum

from catering.services.tax_service import round_half_up

logger = logging.getLogger(__name__)


class CustomerType(str, Enum):
    PERSON = "PERSON"
    COMPANY = "COMPANY"
    GOV = "GOV"


class MilestoneType(str, Enum):
    DEPOSIT = "deposit"
    COMBINED = "combined"
    MILESTONE = "milestone"
    BALANCE = "balance"
    FULL = "full"
    FINAL = "final"


DUE_NOW = "NOW"
DUE_NET_30_AFTER_EVENT = "NET_30_AFTER_EVENT"

RUSH_LEAD_DAYS = 14
SHORT_LEAD_DAYS = 30
MID_LEAD_DAYS = 44

GOVERNMENT_DOMAIN_SUFFIXES = (".gov", ".mil", ".gov.us")
PERSONAL_EMAIL_DOMAINS = frozenset({
    "gmail.com", "yahoo.com", "hotmail.com", "outlook.com", "aol.com",
    "icloud.com", "me.com", "live.com", "msn.com", "comcast.net",
    "att.net", "verizon.net", "protonmail.com", "mail.com", "ymail.com",
})


@dataclass(frozen=True)
class MilestoneRule:
    type: MilestoneType
    percentage: int
    due_date: object  # date | DUE_NOW | DUE_NET_30_AFTER_EVENT
    description: str

    @property
    def due_policy(self) -> str:
        return self.due_date if isinstance(self.due_date, str) else "DATE"

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "percentage": self.percentage,
            "due_date": self.due_date if isinstance(self.due_date, str) else self.due_date.isoformat(),
            "description": self.description,
        }


@dataclass
class PaymentSchedule:
    customer_type: CustomerType
    approval_date: date
    event_date: date
    lead_days: int
    total_amount: int
    rules: list[MilestoneRule] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "customer_type": self.customer_type.value,
            "approval_date": self.approval_date.isoformat(),
            "event_date": self.event_date.isoformat(),
            "lead_days": self.lead_days,
            "total_amount": self.total_amount,
            "rules": [r.to_dict() for r in self.rules],
        }


@dataclass
class Milestone:
    type: MilestoneType
    percentage: int
    amount: int
    due_date: date
    due_policy: str
    description: str
    status: str = "pending"
    paid_amount: int = 0

    @property
    def is_due_now(self) -> bool:
        return self.due_policy == DUE_NOW

    @property
    def is_net30(self) -> bool:
        return self.due_policy == DUE_NET_30_AFTER_EVENT

    @property
    def remaining(self) -> int:
        return self.amount - self.paid_amount

    def to_dict(self) -> dict:
        d = asdict(self)
        d["type"] = self.type.value
        d["due_date"] = self.due_date.isoformat()
        d["is_due_now"] = self.is_due_now
        d["is_net30"] = self.is_net30
        return d


# ── Classification ───────────────────────────────────────────────────────────

def determine_customer_type(email: str | None, is_government_contract: bool | None = None) -> CustomerType:
    """
    Classify a customer.

    ``is_government_contract`` True/False is authoritative; None falls back
    to the email heuristic (.gov/.mil → GOV, free-mail → PERSON, else COMPANY).
    """
    if is_government_contract is True:
        return CustomerType.GOV

    domain = (email or "").rsplit("@", 1)[-1].strip().lower()
    if is_government_contract is None and domain.endswith(GOVERNMENT_DOMAIN_SUFFIXES):
        return CustomerType.GOV
    if not domain or domain in PERSONAL_EMAIL_DOMAINS:
        return CustomerType.PERSON
    return CustomerType.COMPANY


# ── Schedule rules ───────────────────────────────────────────────────────────

def _before_event(event_date: date, days: int, approval_date: date) -> date:
    return max(event_date - timedelta(days=days), approval_date)


def build_payment_schedule(
    event_date: date,
    customer_type: CustomerType,
    approval_date: date,
    total_amount: int,
) -> PaymentSchedule:
    customer_type = CustomerType(customer_type)
    lead = (event_date - approval_date).days
    schedule = PaymentSchedule(
        customer_type=customer_type,
        approval_date=approval_date,
        event_date=event_date,
        lead_days=lead,
        total_amount=int(total_amount),
    )

    if customer_type == CustomerType.GOV:
        rules = [MilestoneRule(MilestoneType.FINAL, 100, DUE_NET_30_AFTER_EVENT,
                               "Full payment due net 30 after event")]
    elif lead <= RUSH_LEAD_DAYS:
        rules = [MilestoneRule(MilestoneType.FULL, 100, DUE_NOW,
                               "Full payment due upon approval")]
    elif lead <= SHORT_LEAD_DAYS:
        rules = [
            MilestoneRule(MilestoneType.DEPOSIT, 60, DUE_NOW, "60% deposit due now"),
            MilestoneRule(MilestoneType.FINAL, 40, _before_event(event_date, 7, approval_date),
                          "Final 40% due 7 days before event"),
        ]
    elif lead <= MID_LEAD_DAYS:
        rules = [
            MilestoneRule(MilestoneType.DEPOSIT, 60, DUE_NOW, "60% deposit due now"),
            MilestoneRule(MilestoneType.FINAL, 40, _before_event(event_date, 14, approval_date),
                          "Final 40% due 14 days before event"),
        ]
    elif customer_type == CustomerType.PERSON:
        rules = [
            MilestoneRule(MilestoneType.DEPOSIT, 30, DUE_NOW, "30% deposit to secure your date"),
            MilestoneRule(MilestoneType.BALANCE, 70, _before_event(event_date, 14, approval_date),
                          "Remaining balance due 14 days before event"),
        ]
    else:
        rules = [
            MilestoneRule(MilestoneType.DEPOSIT, 10, DUE_NOW, "10% booking deposit due now"),
            MilestoneRule(MilestoneType.MILESTONE, 50, _before_event(event_date, 30, approval_date),
                          "50% payment due 30 days before event"),
            MilestoneRule(MilestoneType.FINAL, 40, _before_event(event_date, 14, approval_date),
                          "Final 40% due 14 days before event"),
        ]

    schedule.rules = rules
    logger.debug("Payment schedule: %s lead=%dd → %s", customer_type.value, lead,
                 [f"{r.type.value}:{r.percentage}" for r in rules])
    return schedule


def calculate_payment_amounts(rules: list[MilestoneRule], total_amount: int) -> list[int]:
    """
    Cents per milestone. Each is rounded independently except the last,
    which is ``total - Σ others`` so the schedule sums to the total exactly.
    """
    if not rules:
        return []
    total_amount = int(total_amount)
    amounts = [round_half_up(Decimal(total_amount) * r.percentage / 100) for r in rules[:-1]]
    amounts.append(total_amount - sum(amounts))
    return amounts


def materialize_milestones(schedule: PaymentSchedule) -> list[Milestone]:
    """Resolve due policies to dates and attach amounts."""
    amounts = calculate_payment_amounts(schedule.rules, schedule.total_amount)
    milestones = []
    for rule, amount in zip(schedule.rules, amounts):
        if rule.due_date == DUE_NOW:
            due = schedule.approval_date
        elif rule.due_date == DUE_NET_30_AFTER_EVENT:
            due = schedule.event_date + timedelta(days=30)
        else:
            due = rule.due_date
        milestones.append(Milestone(
            type=rule.type,
            percentage=rule.percentage,
            amount=amount,
            due_date=due,
            due_policy=rule.due_policy,
            description=rule.description,
        ))
    return milestones


def apply_payments(milestones: list[Milestone], amount_paid: int, *, today: date | None = None) -> list[Milestone]:
    """
    Waterfall ``amount_paid`` across milestones in order. Returns new
    Milestone objects; unpaid milestones past their due date are ``overdue``.
    """
    remaining = max(0, int(amount_paid or 0))
    out = []
    for m in milestones:
        paid = min(remaining, m.amount)
        remaining -= paid
        if paid >= m.amount:
            status = "paid"
        elif paid > 0:
            status = "partially_paid"
        elif today is not None and m.due_date < today:
            status = "overdue"
        else:
            status = "pending"
        out.append(replace(m, paid_amount=paid, status=status))
    return out


def invoice_payment_status(milestones: list[Milestone]) -> str:
    """Invoice-level status derived from milestone payment state."""
    if milestones and all(m.status == "paid" for m in milestones):
        return "paid"
    if any(m.paid_amount > 0 for m in milestones):
        return "partially_paid"
    return "payment_pending"


def explicit_government_flag(invoice) -> bool | None:
    """
    The explicit government-contract signal for an invoice, or None when
    only the email heuristic should decide.
    """
    overrides = invoice.manual_overrides or {}
    if overrides.get("is_government_contract") is not None:
        return bool(overrides["is_government_contract"])
    quote = invoice.quote_request
    if quote is not None and quote.is_government:
        return True
    return None


def schedule_for_invoice(invoice, approval_date: date) -> PaymentSchedule:
    quote = invoice.quote_request
    customer_type = determine_customer_type(quote.email, explicit_government_flag(invoice))
    return build_payment_schedule(quote.event_date, customer_type, approval_date, invoice.total_amount)
