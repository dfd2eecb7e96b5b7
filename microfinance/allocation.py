"""
Payment Allocator

Spreads a payment across a loan's unpaid installments in three passes:
overdue lines (penalty first), the line due on the payment date, then
future lines as prepayment. Produces the updated lines and a detailed,
conserving allocation result; persistence is left to the caller.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional
import logging

from .amortization import late_penalty
from .currency import Money
from .installments import Installment, add_penalty, apply_payment

logger = logging.getLogger(__name__)


@dataclass
class DelayedDaysInfo:
    installment_number: int
    scheduled_due_date: date
    actual_payment_date: date
    delayed_days: int
    was_early_payment: bool = False


@dataclass
class BlockedPayment:
    installment_number: int
    reason: str


@dataclass
class AllocationLine:
    """Cash applied to one installment by one payment"""
    installment_id: str
    installment_number: int
    principal: Money
    interest: Money
    penalty: Money

    @property
    def total(self) -> Money:
        return self.principal + self.interest + self.penalty


@dataclass
class AllocationResult:
    principal_paid: Money
    interest_paid: Money
    penalty_paid: Money
    total_allocated: Money
    remaining_amount: Money
    delayed_days_info: List[DelayedDaysInfo] = field(default_factory=list)
    blocked_payments: List[BlockedPayment] = field(default_factory=list)
    lines: List[AllocationLine] = field(default_factory=list)
    updated_installments: List[Installment] = field(default_factory=list)
    primary_installment_id: Optional[str] = None

    @property
    def max_delayed_days(self) -> int:
        return max((info.delayed_days for info in self.delayed_days_info), default=0)


class PaymentAllocator:
    """
    Allocates cash across installments.

    Penalty on an overdue line is remaining due * annual penalty rate / 365 *
    delayed days, capped at the cash still available.
    """

    def __init__(self, penalty_rate: Decimal = Decimal('0.05'), attempt_window_seconds: int = 60):
        self.penalty_rate = Decimal(str(penalty_rate))
        self.attempt_window_seconds = attempt_window_seconds

    def allocate(
        self,
        installments: List[Installment],
        amount: Money,
        payment_date: date,
        now: datetime
    ) -> AllocationResult:
        """Allocate a payment; the input lines are not modified"""
        currency = amount.currency
        zero = Money.zero(currency)
        state = _AllocationState(remaining=amount, zero=zero)

        unpaid = sorted(
            (line for line in installments if not line.is_paid),
            key=lambda line: (line.due_date, line.installment_number)
        )
        overdue = [line for line in unpaid if line.due_date < payment_date]
        current = [line for line in unpaid if line.due_date == payment_date]
        future = [line for line in unpaid if line.due_date > payment_date]

        for line in overdue:
            if not state.remaining.is_positive():
                break
            self._apply(state, line, payment_date, now, charge_penalty=True)

        for line in current:
            if not state.remaining.is_positive():
                break
            self._apply(state, line, payment_date, now)

        for line in future:
            if not state.remaining.is_positive():
                break
            self._apply(state, line, payment_date, now, early=True)

        result = AllocationResult(
            principal_paid=state.principal,
            interest_paid=state.interest,
            penalty_paid=state.penalty,
            total_allocated=amount - state.remaining,
            remaining_amount=state.remaining,
            delayed_days_info=state.delayed_days_info,
            blocked_payments=state.blocked,
            lines=state.lines,
            updated_installments=list(state.updated.values()),
            primary_installment_id=state.lines[0].installment_id if state.lines else None
        )
        logger.debug(
            "Allocated %s: principal %s, interest %s, penalty %s, unapplied %s",
            amount.to_string(), result.principal_paid.amount, result.interest_paid.amount,
            result.penalty_paid.amount, result.remaining_amount.amount
        )
        return result

    def _apply(
        self,
        state: '_AllocationState',
        line: Installment,
        payment_date: date,
        now: datetime,
        charge_penalty: bool = False,
        early: bool = False
    ) -> None:
        zero = state.zero
        penalty = zero
        working = line

        if charge_penalty:
            gap = max(0, (payment_date - line.due_date).days)
            delayed = max(line.delayed_days, gap)
            penalty = late_penalty(line.remaining_due, delayed, self.penalty_rate, cap=state.remaining)

        cash = min(state.remaining - penalty, line.remaining_due)
        application = apply_payment(working, cash, payment_date, now, self.attempt_window_seconds)
        if application.was_blocked:
            state.blocked.append(BlockedPayment(
                installment_number=line.installment_number,
                reason=application.block_reason or "Installment cannot accept payment"
            ))
            return

        working = application.installment
        if penalty.is_positive():
            working = add_penalty(working, penalty, now)

        state.remaining = state.remaining - penalty - application.amount_applied
        state.penalty = state.penalty + penalty
        state.principal = state.principal + application.principal_paid
        state.interest = state.interest + application.interest_paid
        state.updated[working.id] = working
        state.lines.append(AllocationLine(
            installment_id=working.id,
            installment_number=working.installment_number,
            principal=application.principal_paid,
            interest=application.interest_paid,
            penalty=penalty
        ))
        state.delayed_days_info.append(DelayedDaysInfo(
            installment_number=working.installment_number,
            scheduled_due_date=working.due_date,
            actual_payment_date=payment_date,
            delayed_days=0 if early else working.delayed_days,
            was_early_payment=early
        ))


@dataclass
class _AllocationState:
    remaining: Money
    zero: Money
    principal: Money = None
    interest: Money = None
    penalty: Money = None
    delayed_days_info: List[DelayedDaysInfo] = field(default_factory=list)
    blocked: List[BlockedPayment] = field(default_factory=list)
    lines: List[AllocationLine] = field(default_factory=list)
    updated: Dict[str, Installment] = field(default_factory=dict)

    def __post_init__(self):
        self.principal = self.zero
        self.interest = self.zero
        self.penalty = self.zero
