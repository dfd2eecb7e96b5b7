"""
Installment State Machine

A schedule line and the pure transitions that move it through
PENDING -> PARTIAL -> PAID, with OVERDUE raised by the daily arrears job.
Every transition returns a new Installment instead of mutating its input,
together with a description of what changed.
"""

from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple
from enum import Enum

from .currency import Currency, Money
from .storage import StorageRecord, restore_fields


class InstallmentStatus(Enum):
    """Payment status of a schedule line"""
    PENDING = "pending"    # Nothing paid, not yet flagged overdue
    PARTIAL = "partial"    # Some principal/interest paid
    PAID = "paid"          # Fully paid (terminal)
    OVERDUE = "overdue"    # Nothing paid and past due


UNPAID_STATUSES = (InstallmentStatus.PENDING, InstallmentStatus.PARTIAL, InstallmentStatus.OVERDUE)


@dataclass
class Installment(StorageRecord):
    """One line of a loan's repayment schedule"""
    loan_id: str
    installment_number: int
    due_date: date
    currency: Currency
    due_principal: Money
    due_interest: Money
    due_total: Money
    outstanding_principal: Money           # Loan principal left after this line
    paid_principal: Money = None
    paid_interest: Money = None
    paid_total: Money = None
    penalty_amount: Money = None
    delayed_days: int = 0
    status: InstallmentStatus = InstallmentStatus.PENDING
    organization_id: Optional[str] = None
    actual_payment_date: Optional[date] = None
    last_payment_attempt: Optional[datetime] = None
    payment_attempt_count: int = 0
    last_delayed_days_update: Optional[date] = None
    notes: Optional[str] = None

    def __post_init__(self):
        zero = Money.zero(self.currency)
        if self.paid_principal is None:
            self.paid_principal = zero
        if self.paid_interest is None:
            self.paid_interest = zero
        if self.paid_total is None:
            self.paid_total = zero
        if self.penalty_amount is None:
            self.penalty_amount = zero

    @property
    def is_paid(self) -> bool:
        return self.paid_total >= self.due_total

    @property
    def remaining_principal(self) -> Money:
        return (self.due_principal - self.paid_principal).floor_zero()

    @property
    def remaining_interest(self) -> Money:
        return (self.due_interest - self.paid_interest).floor_zero()

    @property
    def remaining_due(self) -> Money:
        return (self.due_total - self.paid_total).floor_zero()

    def is_overdue(self, as_of: date) -> bool:
        """Unpaid and past its due date"""
        return not self.is_paid and self.due_date < as_of

    def days_past_due(self, as_of: date) -> int:
        """Calendar days past due as of a date, 0 when paid or not yet due"""
        if self.is_paid or self.due_date >= as_of:
            return 0
        return (as_of - self.due_date).days

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        currency = Currency.from_code(data['currency'])
        data = restore_fields(
            data,
            currency=currency,
            money=('due_principal', 'due_interest', 'due_total', 'outstanding_principal',
                   'paid_principal', 'paid_interest', 'paid_total', 'penalty_amount'),
            dates=('due_date', 'actual_payment_date', 'last_delayed_days_update'),
            datetimes=('last_payment_attempt',),
            enums={'status': InstallmentStatus}
        )
        data['currency'] = currency
        return cls(**data)


@dataclass(frozen=True)
class PaymentApplication:
    """Outcome of applying cash to one installment"""
    installment: Installment
    principal_paid: Money
    interest_paid: Money
    excess_amount: Money
    delayed_days: int = 0
    was_blocked: bool = False
    block_reason: Optional[str] = None

    @property
    def amount_applied(self) -> Money:
        return self.principal_paid + self.interest_paid


def derive_status(installment: Installment, as_of: date) -> InstallmentStatus:
    """Status implied by paid totals and the due date"""
    if installment.is_paid:
        return InstallmentStatus.PAID
    if installment.paid_total.is_positive():
        return InstallmentStatus.PARTIAL
    if installment.due_date < as_of:
        return InstallmentStatus.OVERDUE
    return InstallmentStatus.PENDING


def can_accept_payment(
    installment: Installment,
    now: datetime,
    attempt_window_seconds: int = 60
) -> Tuple[bool, Optional[str]]:
    """
    Check the idempotency guard for a line.

    Returns (accepted, reason). A line refuses payment when it is fully paid
    or when another payment attempt was registered within the window.
    """
    if installment.status == InstallmentStatus.PAID or installment.is_paid:
        return False, "Installment already fully paid"
    if installment.last_payment_attempt is not None and attempt_window_seconds > 0:
        elapsed = now - installment.last_payment_attempt
        if timedelta(0) <= elapsed < timedelta(seconds=attempt_window_seconds):
            return False, (
                f"Payment attempt already registered {int(elapsed.total_seconds())}s ago; "
                f"retry after {attempt_window_seconds}s"
            )
    return True, None


def apply_payment(
    installment: Installment,
    amount: Money,
    payment_date: date,
    now: datetime,
    attempt_window_seconds: int = 60
) -> PaymentApplication:
    """
    Apply cash to an installment, principal first then interest.

    A blocked line is returned unchanged with the whole amount as excess.
    Delayed days are the gap between due date and payment date; while the
    line stays unpaid the larger of the stored and computed values is kept.
    """
    accepted, reason = can_accept_payment(installment, now, attempt_window_seconds)
    if not accepted:
        return PaymentApplication(
            installment=installment,
            principal_paid=Money.zero(amount.currency),
            interest_paid=Money.zero(amount.currency),
            excess_amount=amount,
            delayed_days=installment.delayed_days,
            was_blocked=True,
            block_reason=reason
        )

    gap = max(0, (payment_date - installment.due_date).days)

    principal_part = min(amount, installment.remaining_principal)
    interest_part = min(amount - principal_part, installment.remaining_interest)
    excess = amount - principal_part - interest_part

    updated = replace(
        installment,
        paid_principal=installment.paid_principal + principal_part,
        paid_interest=installment.paid_interest + interest_part,
        paid_total=installment.paid_total + principal_part + interest_part,
        actual_payment_date=payment_date,
        last_payment_attempt=now,
        payment_attempt_count=installment.payment_attempt_count + 1,
        updated_at=now
    )
    if updated.is_paid:
        updated.delayed_days = gap
    else:
        updated.delayed_days = max(installment.delayed_days, gap)
    updated.status = derive_status(updated, payment_date)

    return PaymentApplication(
        installment=updated,
        principal_paid=principal_part,
        interest_paid=interest_part,
        excess_amount=excess,
        delayed_days=updated.delayed_days
    )


def add_penalty(installment: Installment, penalty: Money, now: datetime) -> Installment:
    """Accumulate a late penalty on the line"""
    if not penalty.is_positive():
        return installment
    return replace(installment, penalty_amount=installment.penalty_amount + penalty, updated_at=now)


def increment_delayed_days(
    installment: Installment,
    today: date,
    now: Optional[datetime] = None
) -> Tuple[Installment, int]:
    """
    Daily arrears tick: one more delayed day for an unpaid, past-due line.

    Runs at most once per calendar day per line. PENDING lines become
    OVERDUE; PARTIAL lines keep their status. Returns the line and the
    number of days added (0 or 1).
    """
    if installment.is_paid or installment.status not in UNPAID_STATUSES:
        return installment, 0
    if installment.due_date >= today:
        return installment, 0
    if installment.last_delayed_days_update is not None and installment.last_delayed_days_update >= today:
        return installment, 0

    status = installment.status
    if status == InstallmentStatus.PENDING:
        status = InstallmentStatus.OVERDUE

    updated = replace(
        installment,
        delayed_days=installment.delayed_days + 1,
        status=status,
        last_delayed_days_update=today,
        updated_at=now or installment.updated_at
    )
    return updated, 1


def reverse_application(
    installment: Installment,
    principal: Money,
    interest: Money,
    penalty: Money,
    as_of: date,
    now: datetime
) -> Installment:
    """
    Undo a previously applied payment on this line.

    Paid totals and penalty are reduced (never below zero), the payment date
    is cleared and delayed days are recomputed from the due-date gap as of
    the reversal date.
    """
    zero = Money.zero(installment.currency)
    updated = replace(
        installment,
        paid_principal=max(installment.paid_principal - principal, zero),
        paid_interest=max(installment.paid_interest - interest, zero),
        penalty_amount=max(installment.penalty_amount - penalty, zero),
        actual_payment_date=None,
        updated_at=now
    )
    updated.paid_total = updated.paid_principal + updated.paid_interest
    updated.delayed_days = updated.days_past_due(as_of)
    updated.status = derive_status(updated, as_of)
    return updated


def schedule_totals(installments) -> Dict[str, Decimal]:
    """Sum due and paid amounts across a schedule"""
    totals = {
        'due_principal': Decimal('0'),
        'due_interest': Decimal('0'),
        'due_total': Decimal('0'),
        'paid_principal': Decimal('0'),
        'paid_interest': Decimal('0'),
        'paid_total': Decimal('0'),
        'penalty_amount': Decimal('0'),
    }
    for line in installments:
        for key in totals:
            totals[key] += getattr(line, key).amount
    return totals
