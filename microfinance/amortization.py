"""
Amortization Calculator

Pure functions computing installment counts, periodic rates, total interest
and installment amounts for flat and reducing-balance loans, plus the
calendar arithmetic used to place due dates. No I/O.
"""

from decimal import Decimal, ROUND_CEILING
from datetime import date, timedelta
from dataclasses import dataclass
from typing import Optional, Union
from enum import Enum
import calendar
import logging

from .currency import Money, round_amount
from .errors import ValidationError

logger = logging.getLogger(__name__)


class RepaymentFrequency(Enum):
    """How often installments fall due"""
    DAILY = "daily"            # 365 periods per year
    WEEKLY = "weekly"          # 52 periods per year
    BIWEEKLY = "biweekly"      # 26 periods per year
    MONTHLY = "monthly"        # 12 periods per year
    QUARTERLY = "quarterly"    # 4 periods per year
    SEMIANNUAL = "semiannual"  # 2 periods per year
    ANNUAL = "annual"          # 1 period per year


class InterestMethod(Enum):
    """How interest is charged over the term"""
    FLAT = "flat"                          # Interest on original principal
    REDUCING_BALANCE = "reducing_balance"  # Interest on outstanding principal


PERIODS_PER_YEAR = {
    RepaymentFrequency.DAILY: 365,
    RepaymentFrequency.WEEKLY: 52,
    RepaymentFrequency.BIWEEKLY: 26,
    RepaymentFrequency.MONTHLY: 12,
    RepaymentFrequency.QUARTERLY: 4,
    RepaymentFrequency.SEMIANNUAL: 2,
    RepaymentFrequency.ANNUAL: 1,
}

# Calendar step per period: (days, months)
_PERIOD_STEP = {
    RepaymentFrequency.DAILY: (1, 0),
    RepaymentFrequency.WEEKLY: (7, 0),
    RepaymentFrequency.BIWEEKLY: (14, 0),
    RepaymentFrequency.MONTHLY: (0, 1),
    RepaymentFrequency.QUARTERLY: (0, 3),
    RepaymentFrequency.SEMIANNUAL: (0, 6),
    RepaymentFrequency.ANNUAL: (0, 12),
}

_FREQUENCY_ALIASES = {
    "daily": RepaymentFrequency.DAILY,
    "day": RepaymentFrequency.DAILY,
    "weekly": RepaymentFrequency.WEEKLY,
    "week": RepaymentFrequency.WEEKLY,
    "biweekly": RepaymentFrequency.BIWEEKLY,
    "bi_weekly": RepaymentFrequency.BIWEEKLY,
    "bi-weekly": RepaymentFrequency.BIWEEKLY,
    "fortnightly": RepaymentFrequency.BIWEEKLY,
    "monthly": RepaymentFrequency.MONTHLY,
    "month": RepaymentFrequency.MONTHLY,
    "quarterly": RepaymentFrequency.QUARTERLY,
    "quarter": RepaymentFrequency.QUARTERLY,
    "semiannual": RepaymentFrequency.SEMIANNUAL,
    "semi_annual": RepaymentFrequency.SEMIANNUAL,
    "semi-annual": RepaymentFrequency.SEMIANNUAL,
    "semi_annually": RepaymentFrequency.SEMIANNUAL,
    "semi-annually": RepaymentFrequency.SEMIANNUAL,
    "annual": RepaymentFrequency.ANNUAL,
    "annually": RepaymentFrequency.ANNUAL,
    "yearly": RepaymentFrequency.ANNUAL,
}


@dataclass(frozen=True)
class LoanAmounts:
    """Headline figures for a loan's terms"""
    total_installments: int
    periodic_rate: Decimal
    total_interest: Money
    total_amount_repayable: Money
    installment_amount: Money


def normalize_frequency(
    value: Union[str, RepaymentFrequency, None],
    strict: bool = False
) -> RepaymentFrequency:
    """
    Resolve a frequency name to RepaymentFrequency.

    Unknown values fall back to MONTHLY with a logged warning unless strict,
    in which case a ValidationError is raised.
    """
    if isinstance(value, RepaymentFrequency):
        return value
    key = (value or "").strip().lower().replace(" ", "_")
    frequency = _FREQUENCY_ALIASES.get(key)
    if frequency is None:
        if strict:
            raise ValidationError(f"Unrecognized repayment frequency: {value!r}")
        logger.warning("Unrecognized repayment frequency %r, defaulting to monthly", value)
        return RepaymentFrequency.MONTHLY
    return frequency


def normalize_interest_method(
    value: Union[str, InterestMethod, None],
    strict: bool = False
) -> InterestMethod:
    """
    Resolve an interest method name to InterestMethod.

    Anything mentioning "flat" is FLAT; "reducing" or "balance" is
    REDUCING_BALANCE. Unknown values fall back to FLAT with a warning unless
    strict.
    """
    if isinstance(value, InterestMethod):
        return value
    key = (value or "").strip().lower()
    if "flat" in key:
        return InterestMethod.FLAT
    if "reducing" in key or "balance" in key or "declining" in key:
        return InterestMethod.REDUCING_BALANCE
    if strict:
        raise ValidationError(f"Unrecognized interest method: {value!r}")
    logger.warning("Unrecognized interest method %r, defaulting to flat", value)
    return InterestMethod.FLAT


def validate_terms(principal: Money, annual_rate: Decimal, term_months: int) -> None:
    """Reject non-positive principal, rate or term"""
    if not principal.is_positive():
        raise ValidationError("Principal must be greater than zero", principal=str(principal.amount))
    if annual_rate is None or Decimal(str(annual_rate)) <= 0:
        raise ValidationError("Annual interest rate must be greater than zero", annual_rate=str(annual_rate))
    if term_months is None or int(term_months) <= 0:
        raise ValidationError("Term in months must be greater than zero", term_months=term_months)


def _ceil(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_CEILING))


def total_installments(term_months: int, frequency: RepaymentFrequency) -> int:
    """Number of installments for a term in months at the given frequency"""
    term = Decimal(term_months)
    if frequency == RepaymentFrequency.DAILY:
        return term_months * 30
    if frequency == RepaymentFrequency.WEEKLY:
        return _ceil(term * Decimal('4.345'))
    if frequency == RepaymentFrequency.BIWEEKLY:
        return _ceil(term * Decimal('2.173'))
    if frequency == RepaymentFrequency.MONTHLY:
        return term_months
    if frequency == RepaymentFrequency.QUARTERLY:
        return _ceil(term / 3)
    if frequency == RepaymentFrequency.SEMIANNUAL:
        return _ceil(term / 6)
    return _ceil(term / 12)


def periodic_rate(annual_rate: Decimal, frequency: RepaymentFrequency) -> Decimal:
    """Annual percentage rate converted to a per-period fraction"""
    return Decimal(str(annual_rate)) / Decimal('100') / Decimal(PERIODS_PER_YEAR[frequency])


def flat_total_interest(principal: Money, annual_rate: Decimal, months: int) -> Money:
    """Simple interest on the original principal over a number of months"""
    rate = Decimal(str(annual_rate)) / Decimal('100')
    return principal * (rate * Decimal(months) / Decimal('12'))


def annuity_payment(principal: Money, rate: Decimal, periods: int) -> Money:
    """Constant installment for a fully amortizing loan: P*r(1+r)^n / ((1+r)^n - 1)"""
    if rate == 0:
        return principal / periods
    factor = (Decimal('1') + rate) ** periods
    return Money(principal.amount * rate * factor / (factor - Decimal('1')), principal.currency)


def calculate_loan_amounts(
    principal: Money,
    annual_rate: Decimal,
    term_months: int,
    frequency: RepaymentFrequency,
    method: InterestMethod
) -> LoanAmounts:
    """
    Compute installment count, periodic rate, total interest, total repayable
    and installment amount for a loan.

    Flat: interest = P * rate/100 * term/12, spread evenly.
    Reducing balance: constant annuity installment on the periodic rate;
    total interest is what the installments pay above principal.
    """
    validate_terms(principal, annual_rate, term_months)

    count = total_installments(term_months, frequency)
    rate = periodic_rate(annual_rate, frequency)

    if method == InterestMethod.FLAT:
        total_interest = flat_total_interest(principal, annual_rate, term_months)
        total_repayable = principal + total_interest
        installment = total_repayable / count
    else:
        installment = annuity_payment(principal, rate, count)
        total_repayable = installment * count
        total_interest = total_repayable - principal

    return LoanAmounts(
        total_installments=count,
        periodic_rate=rate,
        total_interest=total_interest,
        total_amount_repayable=total_repayable,
        installment_amount=installment
    )


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def advance_periods(start_date: date, frequency: RepaymentFrequency, periods: int) -> date:
    """Move a date forward by whole repayment periods using calendar arithmetic"""
    days, months = _PERIOD_STEP[frequency]
    if months:
        return add_months(start_date, months * periods)
    return start_date + timedelta(days=days * periods)


def first_payment_date(disbursement_date: date, frequency: RepaymentFrequency) -> date:
    """First installment falls one period after disbursement"""
    return advance_periods(disbursement_date, frequency, 1)


def installment_due_date(
    first_due: date,
    frequency: RepaymentFrequency,
    installment_number: int
) -> date:
    """
    Due date of installment N: the first payment date advanced by N-1 periods.

    Always offset from the first due date, so a first due date clamped to a
    month end (disbursed Jan 31, first due Feb 28) keeps day 28 thereafter.
    """
    if installment_number < 1:
        raise ValidationError("Installment numbers start at 1", installment_number=installment_number)
    return advance_periods(first_due, frequency, installment_number - 1)


def days_between(start: date, end: date) -> int:
    """Whole days from start to end (negative when end is earlier)"""
    return (end - start).days


def late_penalty(
    overdue_amount: Money,
    delayed_days: int,
    annual_penalty_rate: Decimal,
    cap: Optional[Money] = None
) -> Money:
    """Penalty on an overdue amount: amount * rate/365 * days, optionally capped"""
    if delayed_days <= 0 or not overdue_amount.is_positive():
        return Money.zero(overdue_amount.currency)
    raw = overdue_amount.amount * Decimal(str(annual_penalty_rate)) * Decimal(delayed_days) / Decimal('365')
    penalty = Money(round_amount(raw), overdue_amount.currency)
    if cap is not None and penalty > cap:
        penalty = cap
    return penalty.floor_zero()
