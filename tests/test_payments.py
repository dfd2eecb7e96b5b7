"""
Tests for repayment processing, reversal and the daily delayed days update
"""

import pytest
import threading
from datetime import date
from decimal import Decimal

from microfinance.audit import AuditEventType
from microfinance.currency import Currency, Money
from microfinance.errors import (
    DuplicatePaymentError, InsufficientDataError, InvalidAmountError, ValidationError
)
from microfinance.installments import InstallmentStatus
from microfinance.loans import LoanStatus
from microfinance.payments import PaymentMethod, PaymentRequest, RepaymentTransaction

from conftest import ORG, rwf


def pay(service, loan, amount, payment_date=None, **kwargs):
    request = PaymentRequest(amount=rwf(amount), payment_date=payment_date, organization_id=ORG, **kwargs)
    return service.repayment_service.process_payment(loan.id, request)


class TestProcessPayment:
    """Applying repayments to a loan"""

    def test_on_time_payment(self, service, make_loan, clock):
        loan = make_loan()
        clock.set_date(date(2024, 2, 15))

        outcome = pay(service, loan, 112000)

        assert outcome.allocation.principal_paid == rwf(100000)
        assert outcome.allocation.interest_paid == rwf(12000)
        assert outcome.allocation.penalty_paid.is_zero()
        assert outcome.updated_loan_status == LoanStatus.PERFORMING
        assert outcome.classification_change is not None
        assert outcome.receipt.receipt_number == f"RCP-{outcome.transaction.transaction_ref}"

        line = service.loan_manager.get_schedule(loan.id)[0]
        assert line.status == InstallmentStatus.PAID
        assert line.delayed_days == 0

        loan = service.loan_manager.get_loan(loan.id)
        assert loan.outstanding_principal == rwf(1100000)
        assert loan.status == LoanStatus.PERFORMING
        assert loan.accrued_interest == rwf(400)

        transaction = outcome.transaction
        assert transaction.transaction_ref.startswith("TXN-20240215")
        assert transaction.notes == "Installment 1: 0 delayed days"
        assert service.repayment_service.get_transaction(transaction.id) == transaction

    def test_late_payment_charges_penalty(self, service, make_loan, clock):
        loan = make_loan()
        clock.set_date(date(2024, 3, 31))

        outcome = pay(service, loan, 112000)
        allocation = outcome.allocation

        assert allocation.penalty_paid == rwf('690.41')
        assert allocation.principal_paid == rwf(100000)
        assert allocation.interest_paid == rwf('11309.59')
        assert allocation.remaining_amount.is_zero()
        assert allocation.max_delayed_days == 45

        schedule = service.loan_manager.get_schedule(loan.id)
        assert schedule[0].status == InstallmentStatus.PARTIAL
        assert schedule[0].delayed_days == 45
        assert schedule[0].penalty_amount == rwf('690.41')
        assert schedule[1].paid_total.is_zero()

        loan = service.loan_manager.get_loan(loan.id)
        assert loan.status == LoanStatus.WATCH
        assert loan.days_in_arrears == 45

    def test_duplicate_payment_rejected(self, service, make_loan, clock):
        loan = make_loan()
        clock.set_date(date(2024, 3, 31))
        pay(service, loan, 112000)

        with pytest.raises(DuplicatePaymentError):
            pay(service, loan, 110000)
        assert len(service.repayment_service.get_loan_transactions(loan.id)) == 1

    def test_duplicate_rejected_through_service(self, service, make_loan, clock):
        loan = make_loan()
        clock.set_date(date(2024, 3, 31))
        request = PaymentRequest(amount=rwf(112000), organization_id=ORG)
        assert service.process_payment(loan.id, request).success

        result = service.process_payment(loan.id, request)
        assert not result.success
        assert result.error_code == "duplicate_payment"
        assert result.detail is not None
        rejected = service.audit_trail.get_events_by_type(AuditEventType.PAYMENT_REJECTED)
        assert rejected[0].metadata["reason"] == "duplicate_payment"

    def test_blocked_line_sends_cash_forward(self, service, make_loan, clock):
        loan = make_loan()
        clock.set_date(date(2024, 2, 15))
        pay(service, loan, 50000)
        clock.advance(seconds=30)

        outcome = pay(service, loan, 60000)
        allocation = outcome.allocation

        assert [b.installment_number for b in allocation.blocked_payments] == [1]
        assert allocation.lines[0].installment_number == 2
        assert allocation.delayed_days_info[0].was_early_payment
        assert "(Early)" in outcome.transaction.notes

        schedule = service.loan_manager.get_schedule(loan.id)
        assert schedule[0].paid_total == rwf(50000)
        assert schedule[1].paid_principal == rwf(60000)
        assert schedule[1].status == InstallmentStatus.PARTIAL

    def test_amount_above_limit_rejected(self, service, make_loan, clock):
        loan = make_loan()
        clock.set_date(date(2024, 2, 15))
        with pytest.raises(InvalidAmountError):
            pay(service, loan, 224001)

    @pytest.mark.parametrize("amount", [0, -100])
    def test_non_positive_amount_rejected(self, service, make_loan, amount):
        loan = make_loan()
        with pytest.raises(ValidationError):
            pay(service, loan, amount)

    def test_currency_mismatch_rejected(self, service, make_loan):
        loan = make_loan()
        request = PaymentRequest(amount=Money(Decimal('100'), Currency.KES), organization_id=ORG)
        with pytest.raises(ValidationError, match="does not match"):
            service.repayment_service.process_payment(loan.id, request)

    def test_undisbursed_loan_rejected(self, service):
        loan = service.loan_manager.create_loan(ORG, "borrower-1", rwf(100000), "12", 6)
        with pytest.raises(ValidationError, match="has not been disbursed"):
            pay(service, loan, 1000)

    def test_missing_schedule(self, service, make_loan):
        loan = make_loan()
        for line in service.loan_manager.get_schedule(loan.id):
            service.storage.delete("installments", line.id)
        with pytest.raises(InsufficientDataError):
            pay(service, loan, 1000)

    def test_full_repayment_closes_loan(self, service, make_loan, clock):
        loan = make_loan(principal=100000, term=1)
        clock.set_date(date(2024, 2, 15))

        outcome = pay(service, loan, 101000)

        assert outcome.updated_loan_status == LoanStatus.CLOSED
        loan = service.loan_manager.get_loan(loan.id)
        assert loan.outstanding_principal.is_zero()
        assert loan.closed_date == date(2024, 2, 15)
        assert service.audit_trail.get_events_by_type(AuditEventType.LOAN_CLOSED)

        with pytest.raises(ValidationError, match="closed"):
            pay(service, loan, 1000, payment_date=date(2024, 3, 20))

    def test_proof_upload(self, service, make_loan, clock):
        loan = make_loan()
        clock.set_date(date(2024, 2, 15))
        outcome = pay(service, loan, 112000, proof_filename="receipt.pdf", proof_content=b"%PDF",
                      payment_method=PaymentMethod.MOBILE_MONEY)

        assert outcome.transaction.repayment_proof_url.startswith("file://")
        assert outcome.transaction.repayment_proof_url.endswith("_receipt.pdf")
        assert outcome.transaction.payment_method == PaymentMethod.MOBILE_MONEY

    def test_failure_rolls_back_everything(self, service, make_loan, clock, monkeypatch):
        loan = make_loan()
        clock.set_date(date(2024, 2, 15))

        def fail(*args, **kwargs):
            raise RuntimeError("classification store unavailable")

        monkeypatch.setattr(service.classification_engine, "record_status_change", fail)
        result = service.process_payment(loan.id, PaymentRequest(amount=rwf(112000), organization_id=ORG))

        assert not result.success
        assert result.error_code == "persistence_error"
        assert service.repayment_service.get_loan_transactions(loan.id, include_reversed=True) == []
        assert service.loan_manager.get_schedule(loan.id)[0].paid_total.is_zero()
        stored = service.loan_manager.get_loan(loan.id)
        assert stored.outstanding_principal == rwf(1200000)
        assert stored.status == LoanStatus.DISBURSED


class TestReversal:
    """Reversing repayments"""

    def test_reverse_restores_schedule_and_balance(self, service, make_loan, clock):
        loan = make_loan()
        clock.set_date(date(2024, 2, 15))
        outcome = pay(service, loan, 112000)

        reversal = service.repayment_service.reverse_transaction(
            outcome.transaction.id, "Bounced transfer", "supervisor-1", ORG
        )

        assert reversal.is_reversal
        assert reversal.reversal_of == outcome.transaction.id
        assert reversal.amount_paid == rwf(-112000)
        assert reversal.transaction_ref == f"REV-{outcome.transaction.transaction_ref}"

        line = service.loan_manager.get_schedule(loan.id)[0]
        assert line.paid_total.is_zero()
        assert line.status == InstallmentStatus.PENDING
        assert service.loan_manager.get_loan(loan.id).outstanding_principal == rwf(1200000)

        assert service.repayment_service.get_loan_transactions(loan.id) == []
        history = service.repayment_service.get_loan_transactions(loan.id, include_reversed=True)
        assert len(history) == 2
        original = service.repayment_service.get_transaction(outcome.transaction.id)
        assert not original.is_active
        assert original.reversal_reason == "Bounced transfer"

    def test_cannot_reverse_twice(self, service, make_loan, clock):
        loan = make_loan()
        clock.set_date(date(2024, 2, 15))
        outcome = pay(service, loan, 112000)
        reversal = service.repayment_service.reverse_transaction(outcome.transaction.id, "Bounced")

        result = service.reverse_transaction(outcome.transaction.id, "Again")
        assert not result.success
        assert result.error_code == "validation_error"
        with pytest.raises(ValidationError):
            service.repayment_service.reverse_transaction(reversal.id, "Reverse the reversal")

    def test_reversed_payment_can_be_made_again(self, service, make_loan, clock):
        loan = make_loan()
        clock.set_date(date(2024, 2, 15))
        outcome = pay(service, loan, 112000)
        service.repayment_service.reverse_transaction(outcome.transaction.id, "Wrong loan")
        clock.advance(seconds=120)

        again = pay(service, loan, 112000)
        assert again.allocation.principal_paid == rwf(100000)

    def test_reversal_reopens_closed_loan(self, service, make_loan, clock):
        loan = make_loan(principal=100000, term=1)
        clock.set_date(date(2024, 2, 15))
        outcome = pay(service, loan, 101000)

        service.repayment_service.reverse_transaction(outcome.transaction.id, "Bounced")
        loan = service.loan_manager.get_loan(loan.id)
        assert loan.status == LoanStatus.PERFORMING
        assert loan.closed_date is None
        assert loan.outstanding_principal == rwf(100000)

    def test_reversal_keeps_written_off_loan_written_off(self, service, make_loan, clock):
        loan = make_loan()
        clock.set_date(date(2024, 2, 15))
        outcome = pay(service, loan, 112000)
        service.loan_manager.write_off_loan(loan.id, "Borrower absconded", "supervisor-1")

        service.repayment_service.reverse_transaction(outcome.transaction.id, "Bounced")
        stored = service.loan_manager.get_loan(loan.id)
        assert stored.status == LoanStatus.WRITTEN_OFF
        assert stored.closed_date == date(2024, 2, 15)
        assert stored.outstanding_principal == rwf(1200000)
        assert service.loan_manager.get_schedule(loan.id)[0].paid_total.is_zero()

    def test_transaction_round_trip(self, service, make_loan, clock):
        loan = make_loan()
        clock.set_date(date(2024, 3, 31))
        transaction = pay(service, loan, 112000).transaction
        restored = RepaymentTransaction.from_dict(transaction.to_dict())
        assert restored == transaction
        assert restored.allocation_lines()[0].penalty == rwf('690.41')


class TestDailyDelayedDaysUpdate:
    """Daily arrears tick"""

    def test_tick_once_per_day(self, service, make_loan, clock):
        loan = make_loan()
        clock.set_date(date(2024, 2, 20))

        result = service.repayment_service.daily_delayed_days_update(ORG)
        assert result.loans_processed == 1
        assert result.updated_schedules == 1
        assert result.total_delayed_days_added == 1

        line = service.loan_manager.get_schedule(loan.id)[0]
        assert line.status == InstallmentStatus.OVERDUE
        assert line.delayed_days == 1

        again = service.repayment_service.daily_delayed_days_update(ORG)
        assert again.total_delayed_days_added == 0

        clock.set_date(date(2024, 2, 21))
        service.repayment_service.daily_delayed_days_update(ORG)
        assert service.loan_manager.get_schedule(loan.id)[0].delayed_days == 2

        stored = service.loan_manager.get_loan(loan.id)
        assert stored.days_in_arrears == 2
        assert stored.status == LoanStatus.PERFORMING

    def test_partial_payment_keeps_larger_delay(self, service, make_loan, clock):
        loan = make_loan()
        clock.set_date(date(2024, 2, 20))
        service.repayment_service.daily_delayed_days_update(ORG)
        clock.set_date(date(2024, 2, 21))
        service.repayment_service.daily_delayed_days_update(ORG)

        pay(service, loan, 50000)
        line = service.loan_manager.get_schedule(loan.id)[0]
        assert line.status == InstallmentStatus.PARTIAL
        assert line.delayed_days == 6

    def test_errors_are_collected(self, service, make_loan, clock, monkeypatch):
        broken = make_loan()
        healthy = make_loan(principal=600000)
        clock.set_date(date(2024, 2, 20))

        original = service.loan_manager.get_schedule

        def get_schedule(loan_id):
            if loan_id == broken.id:
                raise RuntimeError("corrupt schedule")
            return original(loan_id)

        monkeypatch.setattr(service.loan_manager, "get_schedule", get_schedule)
        result = service.repayment_service.daily_delayed_days_update(ORG)

        assert result.loans_processed == 2
        assert result.errors == [{'loan_id': broken.id, 'error': 'corrupt schedule'}]
        assert original(healthy.id)[0].delayed_days == 1

    def test_tick_refreshes_accrued_interest(self, service, make_loan, clock):
        loan = make_loan()
        clock.set_date(date(2024, 2, 20))
        service.repayment_service.daily_delayed_days_update(ORG)

        # 144,000 flat interest over 360 days, 36 days since disbursement
        stored = service.loan_manager.get_loan(loan.id)
        assert stored.accrued_interest == rwf("14400.00")

    def test_tick_does_not_undo_payment_made_after_page_was_read(self, service, make_loan, clock, monkeypatch):
        loan = make_loan()
        clock.set_date(date(2024, 2, 20))
        original = service.loan_manager.iter_loans

        def iter_loans(*args, **kwargs):
            page = list(original(*args, **kwargs))
            pay(service, loan, 112000)
            yield from page

        monkeypatch.setattr(service.loan_manager, "iter_loans", iter_loans)
        result = service.repayment_service.daily_delayed_days_update(ORG)

        assert result.errors == []
        stored = service.loan_manager.get_loan(loan.id)
        assert stored.outstanding_principal == rwf(1100000)
        assert len(service.repayment_service.get_loan_transactions(loan.id)) == 1


class TestPaymentSummary:
    """Repayment history figures"""

    def test_summary(self, service, make_loan, clock):
        loan = make_loan()
        clock.set_date(date(2024, 3, 31))
        pay(service, loan, 112000)

        summary = service.repayment_service.get_payment_summary(loan.id, ORG)
        assert summary.total_transactions == 1
        assert summary.principal_paid_to_date == rwf(100000)
        assert summary.penalties_paid == rwf('690.41')
        assert summary.outstanding_principal == rwf(1100000)
        assert summary.next_payment_date == date(2024, 2, 15)
        assert summary.next_payment_amount == rwf('690.41')
        assert summary.installments_paid == 0
        assert summary.max_delayed_days == 45
        assert summary.penalties_accrued.is_positive()


class TestConcurrentPayments:
    """Payments racing each other and the batch jobs"""

    def run_together(self, *targets):
        barrier = threading.Barrier(len(targets))
        errors = []

        def run(target):
            barrier.wait()
            try:
                target()
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=run, args=(target,)) for target in targets]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)
        return errors

    def test_same_payment_from_two_threads_applies_once(self, service, make_loan, clock):
        loan = make_loan()
        clock.set_date(date(2024, 2, 15))

        errors = self.run_together(lambda: pay(service, loan, 112000), lambda: pay(service, loan, 112000))

        assert len(errors) == 1
        assert isinstance(errors[0], DuplicatePaymentError)
        assert len(service.repayment_service.get_loan_transactions(loan.id)) == 1
        assert service.loan_manager.get_loan(loan.id).outstanding_principal == rwf(1100000)

    def test_payments_alongside_batch_jobs(self, service, make_loan, clock):
        loans = [make_loan() for _ in range(5)]
        clock.set_date(date(2024, 2, 20))

        def pay_all():
            for loan in loans:
                pay(service, loan, 112000)

        errors = self.run_together(
            pay_all,
            lambda: service.repayment_service.daily_delayed_days_update(ORG),
            lambda: service.classification_engine.batch_classify(ORG)
        )

        assert errors == []
        for loan in loans:
            stored = service.loan_manager.get_loan(loan.id)
            assert stored.outstanding_principal == rwf(1100000)
            assert service.loan_manager.get_schedule(loan.id)[0].paid_principal == rwf(100000)
