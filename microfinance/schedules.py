"""
Schedule Generator

Builds a loan's ordered installment lines for one of four repayment
modalities. Each modality is a ScheduleStrategy; ScheduleGenerator
dispatches on the RepaymentModality enum and runs post-generation
reconciliation checks.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Dict, List, Optional
from enum import Enum
import logging

from .amortization import (
    InterestMethod, LoanAmounts, add_months, annuity_payment, calculate_loan_amounts,
    first_payment_date, flat_total_interest, installment_due_date, periodic_rate,
    total_installments, validate_terms
)
from .clock import Clock, SystemClock
from .currency import Money
from .errors import ReconciliationWarning, ValidationError
from .installments import Installment, InstallmentStatus

if TYPE_CHECKING:
    from .loans import Loan

logger = logging.getLogger(__name__)


class RepaymentModality(Enum):
    """Repayment structure of a loan"""
    STANDARD = "standard"              # Amortizing, flat or reducing balance
    INTEREST_ONLY = "interest_only"    # Interest each period, principal at the end
    SINGLE_PAYMENT = "single_payment"  # One bullet payment
    CUSTOMIZED = "customized"          # Caller-supplied lines


@dataclass
class CustomInstallment:
    """A caller-supplied schedule line for the customized modality"""
    installment_number: int
    amount: Money
    due_date: Optional[date] = None
    principal: Optional[Money] = None
    interest: Optional[Money] = None
    notes: Optional[str] = None


@dataclass
class ScheduleParams:
    """Inputs that vary per disbursement rather than per loan"""
    disbursement_date: date
    single_payment_months: Optional[int] = None
    custom_installments: List[CustomInstallment] = field(default_factory=list)
    reconciliation_tolerance: Decimal = Decimal('100')
    generated_at: Optional[datetime] = None  # Stamped on every line; set from the clock


@dataclass
class ScheduleResult:
    """Generated lines plus any non-fatal reconciliation warnings"""
    modality: RepaymentModality
    installments: List[Installment]
    warnings: List[ReconciliationWarning] = field(default_factory=list)

    @property
    def total_principal(self) -> Money:
        return sum((line.due_principal for line in self.installments[1:]), self.installments[0].due_principal)

    @property
    def total_interest(self) -> Money:
        return sum((line.due_interest for line in self.installments[1:]), self.installments[0].due_interest)

    @property
    def total_repayable(self) -> Money:
        return self.total_principal + self.total_interest

    @property
    def first_due_date(self) -> date:
        return self.installments[0].due_date

    @property
    def maturity_date(self) -> date:
        return self.installments[-1].due_date


def _build_line(
    loan: 'Loan',
    number: int,
    due: date,
    principal: Money,
    interest: Money,
    outstanding: Money,
    now: datetime,
    notes: Optional[str] = None
) -> Installment:
    return Installment(
        id=f"{loan.id}_{number}",
        created_at=now,
        updated_at=now,
        loan_id=loan.id,
        organization_id=loan.organization_id,
        installment_number=number,
        due_date=due,
        currency=loan.currency,
        due_principal=principal,
        due_interest=interest,
        due_total=principal + interest,
        outstanding_principal=outstanding,
        status=InstallmentStatus.PENDING,
        notes=notes
    )


class ScheduleStrategy(ABC):
    """Generates installment lines for one repayment modality"""

    modality: RepaymentModality

    @abstractmethod
    def generate(self, loan: 'Loan', params: ScheduleParams) -> List[Installment]:
        """Produce the ordered schedule lines for a loan"""
        pass

    def check(
        self,
        loan: 'Loan',
        params: ScheduleParams,
        lines: List[Installment]
    ) -> List[ReconciliationWarning]:
        """Post-generation reconciliation; advisory only"""
        return []



class StandardScheduleStrategy(ScheduleStrategy):
    """
    Amortizing schedule.

    Flat: identical principal share P/N and interest share I/N per line.
    Reducing balance: constant installment, interest on the remaining balance.
    The final line absorbs rounding so principal sums exactly to P.
    """

    modality = RepaymentModality.STANDARD

    def generate(self, loan: 'Loan', params: ScheduleParams) -> List[Installment]:
        amounts = calculate_loan_amounts(
            loan.principal, loan.annual_interest_rate, loan.term_months,
            loan.repayment_frequency, loan.interest_method
        )
        if loan.interest_method == InterestMethod.FLAT:
            return self._flat(loan, params, amounts)
        return self._reducing(loan, params, amounts)

    def _flat(self, loan: 'Loan', params: ScheduleParams, amounts: LoanAmounts) -> List[Installment]:
        now = params.generated_at
        count = amounts.total_installments
        first_due = first_payment_date(params.disbursement_date, loan.repayment_frequency)
        principal_share = loan.principal / count
        interest_share = amounts.total_interest / count

        lines = []
        remaining = loan.principal
        interest_charged = Money.zero(loan.currency)
        for number in range(1, count + 1):
            if number == count:
                principal = remaining
                interest = (amounts.total_interest - interest_charged).floor_zero()
            else:
                principal = min(principal_share, remaining)
                interest = interest_share
            remaining = (remaining - principal).floor_zero()
            interest_charged = interest_charged + interest
            due = installment_due_date(first_due, loan.repayment_frequency, number)
            lines.append(_build_line(loan, number, due, principal, interest, remaining, now))
        return lines

    def _reducing(self, loan: 'Loan', params: ScheduleParams, amounts: LoanAmounts) -> List[Installment]:
        now = params.generated_at
        count = amounts.total_installments
        rate = amounts.periodic_rate
        installment = amounts.installment_amount
        first_due = first_payment_date(params.disbursement_date, loan.repayment_frequency)
        zero = Money.zero(loan.currency)

        lines = []
        remaining = loan.principal
        for number in range(1, count + 1):
            interest = Money(remaining.amount * rate, loan.currency)
            if number == count:
                principal = remaining
            else:
                principal = max(min(installment - interest, remaining), zero)
            remaining = (remaining - principal).floor_zero()
            due = installment_due_date(first_due, loan.repayment_frequency, number)
            lines.append(_build_line(loan, number, due, principal, interest, remaining, now))
        return lines


class InterestOnlyScheduleStrategy(ScheduleStrategy):
    """N-1 interest-only lines, then principal plus a final interest period"""

    modality = RepaymentModality.INTEREST_ONLY

    def generate(self, loan: 'Loan', params: ScheduleParams) -> List[Installment]:
        validate_terms(loan.principal, loan.annual_interest_rate, loan.term_months)
        now = params.generated_at
        count = total_installments(loan.term_months, loan.repayment_frequency)
        rate = periodic_rate(loan.annual_interest_rate, loan.repayment_frequency)
        interest = loan.principal * rate
        zero = Money.zero(loan.currency)
        first_due = first_payment_date(params.disbursement_date, loan.repayment_frequency)

        lines = []
        for number in range(1, count):
            due = installment_due_date(first_due, loan.repayment_frequency, number)
            lines.append(_build_line(loan, number, due, zero, interest, loan.principal, now))

        due = installment_due_date(first_due, loan.repayment_frequency, count)
        lines.append(_build_line(
            loan, count, due, loan.principal, interest, zero, now,
            notes="Final installment: principal repayment plus interest"
        ))
        return lines


class SinglePaymentScheduleStrategy(ScheduleStrategy):
    """One bullet line due K months after disbursement with simple interest"""

    modality = RepaymentModality.SINGLE_PAYMENT

    def generate(self, loan: 'Loan', params: ScheduleParams) -> List[Installment]:
        validate_terms(loan.principal, loan.annual_interest_rate, loan.term_months)
        months = params.single_payment_months or loan.single_payment_months or loan.term_months
        if months <= 0:
            raise ValidationError("Single payment term must be at least one month", months=months)

        interest = flat_total_interest(loan.principal, loan.annual_interest_rate, months)
        due = add_months(params.disbursement_date, months)
        return [_build_line(
            loan, 1, due, loan.principal, interest, Money.zero(loan.currency), params.generated_at,
            notes=f"Single payment after {months} months"
        )]


class CustomizedScheduleStrategy(ScheduleStrategy):
    """
    Caller-supplied lines.

    Lines without an explicit principal/interest split receive a share of the
    unclaimed principal proportional to their amount; the last such line
    absorbs the remainder so principal reconciles to the loan principal.
    """

    modality = RepaymentModality.CUSTOMIZED

    def generate(self, loan: 'Loan', params: ScheduleParams) -> List[Installment]:
        items = self._validated_items(loan, params)
        now = params.generated_at
        zero = Money.zero(loan.currency)
        first_due = first_payment_date(params.disbursement_date, loan.repayment_frequency)

        claimed = zero
        for item in items:
            if item.principal is not None:
                claimed = claimed + item.principal
        unclaimed = (loan.principal - claimed).floor_zero()
        unsplit = [item for item in items if item.principal is None]
        unsplit_total = sum((item.amount.amount for item in unsplit), Decimal('0'))

        shares: Dict[int, Money] = {}
        allocated = zero
        for position, item in enumerate(unsplit):
            if position == len(unsplit) - 1:
                share = (unclaimed - allocated).floor_zero()
            else:
                share = Money(unclaimed.amount * item.amount.amount / unsplit_total, loan.currency)
                share = min(share, item.amount, (unclaimed - allocated).floor_zero())
            shares[item.installment_number] = share
            allocated = allocated + share

        lines = []
        remaining = loan.principal
        for item in items:
            if item.principal is not None:
                principal = item.principal
                interest = item.interest if item.interest is not None else (item.amount - principal).floor_zero()
            else:
                principal = shares[item.installment_number]
                interest = (item.amount - principal).floor_zero()
            remaining = (remaining - principal).floor_zero()
            due = item.due_date or installment_due_date(first_due, loan.repayment_frequency, item.installment_number)
            lines.append(_build_line(
                loan, item.installment_number, due, principal, interest, remaining, now, notes=item.notes
            ))
        return lines

    def _validated_items(self, loan: 'Loan', params: ScheduleParams) -> List[CustomInstallment]:
        if loan.principal is None or not loan.principal.is_positive():
            raise ValidationError("Principal must be greater than zero")
        items = sorted(params.custom_installments, key=lambda item: item.installment_number)
        if not items:
            raise ValidationError("Customized schedule requires at least one installment")

        seen = set()
        for item in items:
            if item.installment_number < 1:
                raise ValidationError("Installment numbers start at 1", installment_number=item.installment_number)
            if item.installment_number in seen:
                raise ValidationError(
                    f"Duplicate installment number {item.installment_number}",
                    installment_number=item.installment_number
                )
            seen.add(item.installment_number)
            if not item.amount.is_positive():
                raise ValidationError(
                    f"Installment {item.installment_number} amount must be greater than zero",
                    installment_number=item.installment_number
                )
            if item.amount.currency != loan.currency:
                raise ValidationError(f"Installment {item.installment_number} currency does not match loan")
        return items

    def check(
        self,
        loan: 'Loan',
        params: ScheduleParams,
        lines: List[Installment]
    ) -> List[ReconciliationWarning]:
        warnings = []
        custom_total = sum((item.amount.amount for item in params.custom_installments), Decimal('0'))
        minimum_total = (
            loan.principal + flat_total_interest(loan.principal, loan.annual_interest_rate, loan.term_months)
        ).amount
        difference = abs(custom_total - minimum_total)
        if difference > params.reconciliation_tolerance:
            message = (
                f"Customized schedule total {custom_total} differs from calculated "
                f"minimum {minimum_total} by {difference}"
            )
            logger.warning(message, extra={'extra': {'loan_id': loan.id}})
            warnings.append(ReconciliationWarning(message, minimum_total, custom_total))

        principal_total = sum((line.due_principal.amount for line in lines), Decimal('0'))
        if abs(principal_total - loan.principal.amount) > Decimal('0.01'):
            message = (
                f"Customized schedule principal {principal_total} does not reconcile "
                f"to loan principal {loan.principal.amount}"
            )
            logger.warning(message, extra={'extra': {'loan_id': loan.id}})
            warnings.append(ReconciliationWarning(message, loan.principal.amount, principal_total))
        return warnings


class ScheduleGenerator:
    """Dispatches schedule generation to the strategy for a modality"""

    def __init__(self, strategies: Optional[List[ScheduleStrategy]] = None, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        strategies = strategies or [
            StandardScheduleStrategy(),
            InterestOnlyScheduleStrategy(),
            SinglePaymentScheduleStrategy(),
            CustomizedScheduleStrategy(),
        ]
        self._strategies: Dict[RepaymentModality, ScheduleStrategy] = {
            strategy.modality: strategy for strategy in strategies
        }

    def strategy_for(self, modality: RepaymentModality) -> ScheduleStrategy:
        try:
            return self._strategies[modality]
        except KeyError:
            raise ValidationError(f"No schedule strategy registered for {modality.value}")

    def generate(
        self,
        loan: 'Loan',
        modality: RepaymentModality,
        params: ScheduleParams
    ) -> ScheduleResult:
        """Generate a full schedule and collect reconciliation warnings"""
        if params.disbursement_date is None:
            raise ValidationError("Disbursement date is required to generate a schedule")

        if params.generated_at is None:
            params = replace(params, generated_at=self.clock.now())

        strategy = self.strategy_for(modality)
        lines = strategy.generate(loan, params)
        warnings = strategy.check(loan, params, lines)

        logger.info(
            "Generated %d installments for loan %s (%s)",
            len(lines), loan.id, modality.value
        )
        return ScheduleResult(modality=modality, installments=lines, warnings=warnings)
