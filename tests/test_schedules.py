"""
Tests for schedule generation across repayment modalities
"""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal

from microfinance.amortization import InterestMethod, RepaymentFrequency
from microfinance.clock import FixedClock
from microfinance.currency import Currency, Money
from microfinance.errors import ValidationError
from microfinance.loans import Loan
from microfinance.schedules import (
    CustomInstallment, RepaymentModality, ScheduleGenerator, ScheduleParams
)


def rwf(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.RWF)


def make_loan(principal=1200000, rate='12', term=12, method=InterestMethod.FLAT,
              frequency=RepaymentFrequency.MONTHLY, modality=RepaymentModality.STANDARD,
              single_payment_months=None) -> Loan:
    now = datetime(2024, 1, 15, tzinfo=timezone.utc)
    return Loan(
        id="loan-1",
        created_at=now,
        updated_at=now,
        organization_id="org-1",
        borrower_id="borrower-1",
        currency=Currency.RWF,
        principal=rwf(principal),
        annual_interest_rate=Decimal(rate),
        term_months=term,
        interest_method=method,
        repayment_frequency=frequency,
        repayment_modality=modality,
        single_payment_months=single_payment_months
    )


PARAMS = ScheduleParams(disbursement_date=date(2024, 1, 15))


class TestStandardSchedule:
    """Amortizing schedules"""

    def setup_method(self):
        self.generator = ScheduleGenerator()

    def test_flat_schedule(self):
        result = self.generator.generate(make_loan(), RepaymentModality.STANDARD, PARAMS)
        lines = result.installments

        assert len(lines) == 12
        assert all(line.due_principal == rwf(100000) for line in lines)
        assert all(line.due_interest == rwf(12000) for line in lines)
        assert lines[0].due_date == date(2024, 2, 15)
        assert lines[-1].due_date == date(2025, 1, 15)
        assert lines[0].outstanding_principal == rwf(1100000)
        assert lines[-1].outstanding_principal.is_zero()
        assert result.total_repayable == rwf(1344000)
        assert result.warnings == []

    def test_flat_schedule_absorbs_rounding_in_last_line(self):
        loan = make_loan(principal=100000, term=3)
        lines = self.generator.generate(loan, RepaymentModality.STANDARD, PARAMS).installments
        assert [line.due_principal for line in lines] == [rwf('33333.33'), rwf('33333.33'), rwf('33333.34')]
        assert sum(line.due_principal.amount for line in lines) == Decimal('100000')

    def test_reducing_balance_schedule(self):
        loan = make_loan(principal=100000, method=InterestMethod.REDUCING_BALANCE)
        result = self.generator.generate(loan, RepaymentModality.STANDARD, PARAMS)
        lines = result.installments

        assert lines[0].due_interest == rwf(1000)
        assert lines[0].due_principal == rwf('7884.88')
        assert lines[1].due_interest < lines[0].due_interest
        assert result.total_principal == rwf(100000)
        assert lines[-1].outstanding_principal.is_zero()

    def test_weekly_schedule(self):
        loan = make_loan(principal=53000, term=12, frequency=RepaymentFrequency.WEEKLY)
        lines = self.generator.generate(loan, RepaymentModality.STANDARD, PARAMS).installments
        assert len(lines) == 53
        assert lines[1].due_date == date(2024, 1, 29)


class TestOtherModalities:
    """Interest-only, single payment and customized schedules"""

    def setup_method(self):
        self.generator = ScheduleGenerator()

    def test_interest_only(self):
        loan = make_loan(principal=120000, term=6, modality=RepaymentModality.INTEREST_ONLY)
        lines = self.generator.generate(loan, RepaymentModality.INTEREST_ONLY, PARAMS).installments

        assert len(lines) == 6
        for line in lines[:-1]:
            assert line.due_principal.is_zero()
            assert line.due_interest == rwf(1200)
            assert line.outstanding_principal == rwf(120000)
        assert lines[-1].due_principal == rwf(120000)
        assert lines[-1].due_total == rwf(121200)

    def test_single_payment(self):
        loan = make_loan(principal=100000, term=12, modality=RepaymentModality.SINGLE_PAYMENT,
                         single_payment_months=6)
        lines = self.generator.generate(loan, RepaymentModality.SINGLE_PAYMENT, PARAMS).installments

        assert len(lines) == 1
        assert lines[0].due_date == date(2024, 7, 15)
        assert lines[0].due_interest == rwf(6000)
        assert lines[0].due_total == rwf(106000)

    def test_customized_splits_principal_proportionally(self):
        loan = make_loan(principal=100000, term=3, modality=RepaymentModality.CUSTOMIZED)
        params = ScheduleParams(
            disbursement_date=date(2024, 1, 15),
            custom_installments=[
                CustomInstallment(1, rwf(40000)),
                CustomInstallment(2, rwf(40000)),
                CustomInstallment(3, rwf(23000), due_date=date(2024, 5, 1)),
            ]
        )
        result = self.generator.generate(loan, RepaymentModality.CUSTOMIZED, params)
        lines = result.installments

        assert result.warnings == []
        assert lines[0].due_principal == rwf('38834.95')
        assert lines[0].due_interest == rwf('1165.05')
        assert lines[2].due_principal == rwf('22330.10')
        assert lines[2].due_date == date(2024, 5, 1)
        assert lines[1].due_date == date(2024, 3, 15)
        assert result.total_principal == rwf(100000)

    def test_customized_total_mismatch_warns(self):
        loan = make_loan(principal=100000, term=3, modality=RepaymentModality.CUSTOMIZED)
        params = ScheduleParams(
            disbursement_date=date(2024, 1, 15),
            custom_installments=[CustomInstallment(1, rwf(50000)), CustomInstallment(2, rwf(50000))]
        )
        result = self.generator.generate(loan, RepaymentModality.CUSTOMIZED, params)

        assert len(result.warnings) == 1
        assert result.warnings[0].expected_total == Decimal('103000.00')
        assert result.warnings[0].actual_total == Decimal('100000.00')

    @pytest.mark.parametrize("items", [
        [],
        [CustomInstallment(1, rwf(1000)), CustomInstallment(1, rwf(1000))],
        [CustomInstallment(0, rwf(1000))],
        [CustomInstallment(1, rwf(0))],
    ])
    def test_customized_rejects_invalid_lines(self, items):
        loan = make_loan(principal=100000, term=3, modality=RepaymentModality.CUSTOMIZED)
        params = ScheduleParams(disbursement_date=date(2024, 1, 15), custom_installments=items)
        with pytest.raises(ValidationError):
            self.generator.generate(loan, RepaymentModality.CUSTOMIZED, params)

    def test_disbursement_date_required(self):
        with pytest.raises(ValidationError):
            self.generator.generate(make_loan(), RepaymentModality.STANDARD, ScheduleParams(disbursement_date=None))

    def test_lines_are_stamped_from_the_clock(self):
        clock = FixedClock(datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc))
        generator = ScheduleGenerator(clock=clock)

        for modality in (RepaymentModality.STANDARD, RepaymentModality.INTEREST_ONLY):
            lines = generator.generate(make_loan(), modality, PARAMS).installments
            assert {line.created_at for line in lines} == {clock.now()}
            assert {line.updated_at for line in lines} == {clock.now()}
