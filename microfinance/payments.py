"""
Repayment Module

Processes repayments against a loan's schedule, reverses them, runs the
daily delayed-days update and reports repayment history. Each payment is
one unit of work: schedule lines, the loan aggregate, the transaction
record and any reclassification commit or roll back together. Payments on
the same loan are serialized with a per-loan lock.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional
from enum import Enum
import logging
import uuid

from .allocation import AllocationLine, AllocationResult, DelayedDaysInfo, PaymentAllocator
from .amortization import InterestMethod, late_penalty
from .audit import AuditTrail, AuditEventType
from .classification import Classification, ClassificationEngine
from .clock import Clock, SystemClock
from .config import MicrofinanceConfig, get_config
from .currency import Currency, Money
from .errors import (
    DuplicatePaymentError, InsufficientDataError, InvalidAmountError, NotFoundError, ValidationError
)
from .installments import Installment, increment_delayed_days, reverse_application
from .loans import (
    ACTIVE_STATUSES, Loan, LoanManager, LoanStatus, status_for_days_in_arrears
)
from .storage import StorageInterface, StorageRecord, restore_fields
from .uploads import FileUploader

logger = logging.getLogger(__name__)


class PaymentMethod(Enum):
    """How the borrower paid"""
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    MOBILE_MONEY = "mobile_money"
    CHECK = "check"
    CARD = "card"


@dataclass
class RepaymentTransaction(StorageRecord):
    """Immutable repayment ledger entry; reversed by an offsetting entry"""
    transaction_ref: str
    loan_id: str
    organization_id: str
    currency: Currency
    payment_date: date
    payment_method: PaymentMethod
    amount_paid: Money
    principal_paid: Money
    interest_paid: Money
    penalty_paid: Money
    unapplied_amount: Money
    installment_id: Optional[str] = None      # Line the payment was primarily applied to
    allocations: List[Dict[str, Any]] = field(default_factory=list)
    delayed_days_info: List[Dict[str, Any]] = field(default_factory=list)
    repayment_proof_url: Optional[str] = None
    received_by: Optional[str] = None
    notes: Optional[str] = None
    is_active: bool = True
    is_reversal: bool = False
    reversal_of: Optional[str] = None
    reversed_at: Optional[datetime] = None
    reversal_reason: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RepaymentTransaction':
        currency = Currency.from_code(data['currency'])
        data = restore_fields(
            data,
            currency=currency,
            money=('amount_paid', 'principal_paid', 'interest_paid', 'penalty_paid', 'unapplied_amount'),
            dates=('payment_date',),
            datetimes=('reversed_at',),
            enums={'payment_method': PaymentMethod}
        )
        data['currency'] = currency
        return cls(**data)

    def allocation_lines(self) -> List[AllocationLine]:
        return [
            AllocationLine(
                installment_id=item['installment_id'],
                installment_number=int(item['installment_number']),
                principal=Money(Decimal(item['principal']), self.currency),
                interest=Money(Decimal(item['interest']), self.currency),
                penalty=Money(Decimal(item['penalty']), self.currency),
            )
            for item in self.allocations
        ]


@dataclass
class PaymentRequest:
    """Cash received against a loan"""
    amount: Money
    payment_date: Optional[date] = None
    payment_method: PaymentMethod = PaymentMethod.CASH
    repayment_proof_url: Optional[str] = None
    proof_filename: Optional[str] = None
    proof_content: Optional[bytes] = None
    notes: Optional[str] = None
    received_by: Optional[str] = None
    organization_id: Optional[str] = None


@dataclass
class PaymentReceipt:
    receipt_number: str
    transaction_ref: str
    loan_id: str
    loan_number: Optional[str]
    payment_date: date
    payment_method: PaymentMethod
    amount_paid: Money
    principal_paid: Money
    interest_paid: Money
    penalty_paid: Money
    outstanding_principal: Money
    delayed_days_breakdown: List[DelayedDaysInfo]
    received_by: Optional[str] = None


@dataclass
class PaymentOutcome:
    transaction: RepaymentTransaction
    allocation: AllocationResult
    updated_loan_status: LoanStatus
    classification_change: Optional[Classification]
    receipt: PaymentReceipt


@dataclass
class DelayedDaysUpdateResult:
    organization_id: Optional[str]
    loans_processed: int = 0
    updated_schedules: int = 0
    total_delayed_days_added: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class PaymentSummary:
    loan_id: str
    total_paid: Money
    principal_paid_to_date: Money
    interest_paid_to_date: Money
    penalties_paid: Money
    penalties_accrued: Money
    outstanding_principal: Money
    accrued_interest: Money
    last_payment_date: Optional[date]
    next_payment_date: Optional[date]
    next_payment_amount: Optional[Money]
    total_transactions: int
    installments_paid: int
    installments_total: int
    total_delayed_days: int
    average_delayed_days: Decimal
    max_delayed_days: int


class RepaymentService:
    """
    Applies and reverses repayments and maintains arrears counters
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        classification_engine: ClassificationEngine,
        audit_trail: AuditTrail,
        config: Optional[MicrofinanceConfig] = None,
        clock: Optional[Clock] = None,
        uploader: Optional[FileUploader] = None
    ):
        self.storage = storage
        self.loan_manager = loan_manager
        self.classification_engine = classification_engine
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.clock = clock or SystemClock()
        self.uploader = uploader
        self.allocator = PaymentAllocator(
            penalty_rate=Decimal(self.config.penalty_rate),
            attempt_window_seconds=self.config.payment_attempt_window_seconds
        )
        self.locks = loan_manager.locks

        self.transactions_table = "repayment_transactions"

    def process_payment(self, loan_id: str, request: PaymentRequest) -> PaymentOutcome:
        """
        Apply a repayment to a loan.

        Raises:
            ValidationError: amount not positive, wrong currency or loan not repayable
            NotFoundError: loan absent or owned by another organization
            InsufficientDataError: loan has no schedule
            DuplicatePaymentError: a matching active payment already exists
            InvalidAmountError: amount above the allowed multiple of the next installment
        """
        if request.amount is None or not request.amount.is_positive():
            raise ValidationError("Payment amount must be greater than zero")
        payment_date = request.payment_date or self.clock.today()

        with self.locks.lock_for(loan_id):
            with self.storage.atomic():
                loan = self.loan_manager.get_loan(loan_id, request.organization_id)
                self._check_repayable(loan, request)
                schedule = self.loan_manager.get_schedule(loan.id)
                if not schedule:
                    raise InsufficientDataError(
                        "No repayment schedules found; the loan must be disbursed first", loan_id=loan.id
                    )
                self._check_duplicate(loan, request.amount, payment_date)
                self._check_amount_limit(schedule, request.amount)

                now = self.clock.now()
                allocation = self.allocator.allocate(schedule, request.amount, payment_date, now)
                if not allocation.lines:
                    reasons = "; ".join(
                        f"installment {b.installment_number}: {b.reason}" for b in allocation.blocked_payments
                    )
                    raise ValidationError(f"Payment could not be applied ({reasons or 'nothing outstanding'})")

                self.loan_manager.save_installments(allocation.updated_installments)
                merged = self._merge(schedule, allocation.updated_installments)

                proof_url = self._store_proof(loan, request)
                transaction = self._record_transaction(loan, request, payment_date, allocation, proof_url, now)

                previous_status = loan.status
                self._refresh_loan(loan, merged, allocation.principal_paid, payment_date, now)
                classification = self.classification_engine.record_status_change(
                    loan, previous_status, f"Payment {transaction.transaction_ref}", schedule=merged
                )

                self.audit_trail.log_event(
                    event_type=AuditEventType.PAYMENT_PROCESSED,
                    entity_type="loan",
                    entity_id=loan.id,
                    organization_id=loan.organization_id,
                    performed_by=request.received_by,
                    metadata={
                        "transaction_id": transaction.id,
                        "transaction_ref": transaction.transaction_ref,
                        "amount": request.amount.to_string(),
                        "principal_paid": str(allocation.principal_paid.amount),
                        "interest_paid": str(allocation.interest_paid.amount),
                        "penalty_paid": str(allocation.penalty_paid.amount),
                        "unapplied": str(allocation.remaining_amount.amount),
                        "outstanding_principal": str(loan.outstanding_principal.amount),
                        "previous_status": previous_status,
                        "new_status": loan.status
                    }
                )
                if loan.status == LoanStatus.CLOSED and previous_status != LoanStatus.CLOSED:
                    self.audit_trail.log_event(
                        event_type=AuditEventType.LOAN_CLOSED,
                        entity_type="loan",
                        entity_id=loan.id,
                        organization_id=loan.organization_id,
                        metadata={"closed_date": loan.closed_date, "transaction_ref": transaction.transaction_ref}
                    )

        logger.info(
            "Processed payment %s of %s on loan %s (status %s)",
            transaction.transaction_ref, request.amount.to_string(), loan.id, loan.status.value
        )
        return PaymentOutcome(
            transaction=transaction,
            allocation=allocation,
            updated_loan_status=loan.status,
            classification_change=classification,
            receipt=self._build_receipt(loan, transaction, allocation)
        )

    def reverse_transaction(
        self,
        transaction_id: str,
        reason: str,
        reversed_by: Optional[str] = None,
        organization_id: Optional[str] = None
    ) -> RepaymentTransaction:
        """
        Reverse a repayment with an offsetting entry.

        Every installment the payment touched gets its paid amounts and
        penalty restored, and the principal is added back to the loan.
        """
        if not reason:
            raise ValidationError("A reversal reason is required")
        original = self.get_transaction(transaction_id, organization_id)

        with self.locks.lock_for(original.loan_id):
            with self.storage.atomic():
                original = self.get_transaction(transaction_id, organization_id)
                if original.is_reversal:
                    raise ValidationError("Reversal entries cannot themselves be reversed")
                if not original.is_active:
                    raise ValidationError(f"Transaction {original.transaction_ref} is already reversed")

                loan = self.loan_manager.get_loan(original.loan_id)
                now = self.clock.now()
                today = self.clock.today()

                schedule = {line.id: line for line in self.loan_manager.get_schedule(loan.id)}
                restored = []
                for line in original.allocation_lines():
                    installment = schedule.get(line.installment_id)
                    if installment is None:
                        raise InsufficientDataError(
                            f"Installment {line.installment_number} no longer exists; schedule was regenerated",
                            installment_id=line.installment_id
                        )
                    updated = reverse_application(installment, line.principal, line.interest, line.penalty, today, now)
                    schedule[updated.id] = updated
                    restored.append(updated)
                self.loan_manager.save_installments(restored)

                reversal = RepaymentTransaction(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    transaction_ref=f"REV-{original.transaction_ref}",
                    loan_id=original.loan_id,
                    organization_id=original.organization_id,
                    currency=original.currency,
                    payment_date=today,
                    payment_method=original.payment_method,
                    amount_paid=-original.amount_paid,
                    principal_paid=-original.principal_paid,
                    interest_paid=-original.interest_paid,
                    penalty_paid=-original.penalty_paid,
                    unapplied_amount=-original.unapplied_amount,
                    installment_id=original.installment_id,
                    allocations=original.allocations,
                    received_by=reversed_by,
                    notes=f"Reversal of {original.transaction_ref}: {reason}",
                    is_reversal=True,
                    reversal_of=original.id,
                    reversal_reason=reason
                )
                self.storage.save(self.transactions_table, reversal.id, reversal.to_dict())

                original.is_active = False
                original.reversed_at = now
                original.reversal_reason = reason
                original.notes = f"{original.notes or ''} [REVERSED: {reason}]".strip()
                original.updated_at = now
                self.storage.save(self.transactions_table, original.id, original.to_dict())

                previous_status = loan.status
                lines = sorted(schedule.values(), key=lambda l: l.installment_number)
                loan.outstanding_principal = loan.outstanding_principal + original.principal_paid
                if loan.status == LoanStatus.CLOSED and loan.outstanding_principal.is_positive():
                    loan.status = LoanStatus.PERFORMING
                    loan.closed_date = None
                self._refresh_loan(loan, lines, Money.zero(loan.currency), today, now)
                self.classification_engine.record_status_change(
                    loan, previous_status, f"Reversal of {original.transaction_ref}", schedule=lines
                )

                self.audit_trail.log_event(
                    event_type=AuditEventType.PAYMENT_REVERSED,
                    entity_type="transaction",
                    entity_id=original.id,
                    organization_id=original.organization_id,
                    performed_by=reversed_by,
                    metadata={
                        "loan_id": loan.id,
                        "reversal_id": reversal.id,
                        "reason": reason,
                        "amount": original.amount_paid.to_string(),
                        "restored_installments": [line.installment_number for line in restored],
                        "new_status": loan.status
                    }
                )

        logger.info("Reversed transaction %s on loan %s", original.transaction_ref, original.loan_id)
        return reversal

    def daily_delayed_days_update(self, organization_id: Optional[str] = None) -> DelayedDaysUpdateResult:
        """
        Add one delayed day to each unpaid, past-due installment and refresh
        each loan's days in arrears and status. Loans are processed one unit
        of work at a time; failures are collected and the run continues.
        """
        result = DelayedDaysUpdateResult(organization_id=organization_id)
        today = self.clock.today()

        for loan in self.loan_manager.iter_loans(organization_id, list(ACTIVE_STATUSES)):
            result.loans_processed += 1
            try:
                with self.locks.lock_for(loan.id):
                    with self.storage.atomic():
                        updated_lines, added = self._tick_loan(loan.id, today)
                result.updated_schedules += updated_lines
                result.total_delayed_days_added += added
            except Exception as e:
                logger.exception("Delayed days update failed for loan %s", loan.id)
                result.errors.append({'loan_id': loan.id, 'error': str(e)})

        if result.updated_schedules:
            self.audit_trail.log_event(
                event_type=AuditEventType.DELAYED_DAYS_UPDATED,
                entity_type="organization",
                entity_id=organization_id or "all",
                organization_id=organization_id,
                metadata={
                    "date": today,
                    "updated_schedules": result.updated_schedules,
                    "total_delayed_days_added": result.total_delayed_days_added,
                    "errors": len(result.errors)
                }
            )
        logger.info(
            "Delayed days update: %d loans, %d schedules updated, %d errors",
            result.loans_processed, result.updated_schedules, len(result.errors)
        )
        return result

    def calculate_accrued_interest(self, loan: Loan, as_of: Optional[date] = None) -> Money:
        """
        Interest earned since disbursement less interest already collected.

        Flat loans earn total interest / (term * 30) per day, capped at the
        total; reducing-balance loans earn outstanding * rate / 365 per day.
        """
        zero = Money.zero(loan.currency)
        if loan.disbursement_date is None or loan.status == LoanStatus.CLOSED:
            return zero
        as_of = as_of or self.clock.today()
        days = max(0, (as_of - loan.disbursement_date).days)

        if loan.interest_method == InterestMethod.FLAT:
            daily = loan.total_interest.amount / Decimal(loan.term_months * 30)
            earned = min(Money(daily * days, loan.currency), loan.total_interest)
        else:
            daily_rate = loan.annual_interest_rate / Decimal('100') / Decimal('365')
            earned = loan.outstanding_principal * (daily_rate * days)

        interest_paid = sum(
            (txn.interest_paid for txn in self.get_loan_transactions(loan.id)), zero
        )
        return (earned - interest_paid).floor_zero()

    def calculate_penalties_accrued(self, loan_id: str, as_of: Optional[date] = None) -> Money:
        """Penalty that overdue lines would attract if settled on as_of"""
        loan = self.loan_manager.get_loan(loan_id)
        as_of = as_of or self.clock.today()
        rate = Decimal(self.config.penalty_rate)
        total = Money.zero(loan.currency)
        for line in self.loan_manager.get_schedule(loan_id):
            if line.is_overdue(as_of):
                days = max(line.delayed_days, line.days_past_due(as_of))
                total = total + late_penalty(line.remaining_due, days, rate)
        return total

    def get_payment_summary(self, loan_id: str, organization_id: Optional[str] = None) -> PaymentSummary:
        loan = self.loan_manager.get_loan(loan_id, organization_id)
        schedule = self.loan_manager.get_schedule(loan.id)
        transactions = self.get_loan_transactions(loan.id)
        zero = Money.zero(loan.currency)
        today = self.clock.today()

        unpaid = [line for line in schedule if not line.is_paid]
        next_line = unpaid[0] if unpaid else None
        delayed = [line.delayed_days for line in schedule if line.delayed_days > 0]
        total_delayed = sum(delayed)

        return PaymentSummary(
            loan_id=loan.id,
            total_paid=sum((t.amount_paid - t.unapplied_amount for t in transactions), zero),
            principal_paid_to_date=sum((t.principal_paid for t in transactions), zero),
            interest_paid_to_date=sum((t.interest_paid for t in transactions), zero),
            penalties_paid=sum((t.penalty_paid for t in transactions), zero),
            penalties_accrued=self.calculate_penalties_accrued(loan.id, today),
            outstanding_principal=loan.outstanding_principal,
            accrued_interest=self.calculate_accrued_interest(loan, today),
            last_payment_date=max((t.payment_date for t in transactions), default=None),
            next_payment_date=next_line.due_date if next_line else None,
            next_payment_amount=next_line.remaining_due if next_line else None,
            total_transactions=len(transactions),
            installments_paid=sum(1 for line in schedule if line.is_paid),
            installments_total=len(schedule),
            total_delayed_days=total_delayed,
            average_delayed_days=(
                (Decimal(total_delayed) / Decimal(len(delayed))).quantize(Decimal('0.01')) if delayed else Decimal('0')
            ),
            max_delayed_days=max(delayed, default=0)
        )

    def get_transaction(self, transaction_id: str, organization_id: Optional[str] = None) -> RepaymentTransaction:
        data = self.storage.load(self.transactions_table, transaction_id)
        if data is None or (organization_id and data.get('organization_id') != organization_id):
            raise NotFoundError(f"Transaction {transaction_id} not found", transaction_id=transaction_id)
        return RepaymentTransaction.from_dict(data)

    def get_loan_transactions(self, loan_id: str, include_reversed: bool = False) -> List[RepaymentTransaction]:
        """Active payments for a loan (optionally including reversed ones and reversal entries)"""
        rows = self.storage.find(self.transactions_table, {'loan_id': loan_id})
        transactions = [RepaymentTransaction.from_dict(row) for row in rows]
        if not include_reversed:
            transactions = [t for t in transactions if t.is_active and not t.is_reversal]
        transactions.sort(key=lambda t: (t.payment_date, t.created_at))
        return transactions

    def _check_repayable(self, loan: Loan, request: PaymentRequest) -> None:
        if loan.status == LoanStatus.CLOSED:
            raise ValidationError(f"Loan {loan.id} is closed")
        if loan.status == LoanStatus.WRITTEN_OFF:
            raise ValidationError(f"Loan {loan.id} has been written off")
        if loan.status not in ACTIVE_STATUSES:
            raise ValidationError(f"Loan {loan.id} has not been disbursed (status {loan.status.value})")
        if request.amount.currency != loan.currency:
            raise ValidationError(
                f"Payment currency {request.amount.currency.code} does not match loan currency {loan.currency.code}"
            )

    def _check_duplicate(self, loan: Loan, amount: Money, payment_date: date) -> None:
        tolerance = Decimal(self.config.duplicate_amount_tolerance)
        window = timedelta(hours=self.config.duplicate_window_hours)
        low = amount.amount * (Decimal('1') - tolerance)
        high = amount.amount * (Decimal('1') + tolerance)

        for existing in self.get_loan_transactions(loan.id):
            gap = abs(existing.payment_date - payment_date)
            if gap < window and low <= existing.amount_paid.amount <= high:
                raise DuplicatePaymentError(
                    f"Duplicate payment: {existing.transaction_ref} for "
                    f"{existing.amount_paid.to_string()} on {existing.payment_date.isoformat()} already recorded",
                    existing_transaction_id=existing.id
                )

    def _check_amount_limit(self, schedule: List[Installment], amount: Money) -> None:
        next_line = next((line for line in schedule if not line.is_paid), None)
        if next_line is None:
            raise ValidationError("Loan has no outstanding installments")
        limit = next_line.due_total * Decimal(self.config.max_payment_multiple)
        if amount > limit:
            raise InvalidAmountError(
                f"Payment {amount.to_string()} exceeds the maximum of {limit.to_string()} "
                f"({self.config.max_payment_multiple}x installment {next_line.installment_number})",
                limit=str(limit.amount)
            )

    def _store_proof(self, loan: Loan, request: PaymentRequest) -> Optional[str]:
        if request.proof_content is None:
            return request.repayment_proof_url
        if self.uploader is None:
            raise ValidationError("No file uploader configured for payment proofs")
        return self.uploader.upload(
            request.proof_filename or "payment-proof", request.proof_content, folder=loan.organization_id
        )

    def _record_transaction(
        self,
        loan: Loan,
        request: PaymentRequest,
        payment_date: date,
        allocation: AllocationResult,
        proof_url: Optional[str],
        now: datetime
    ) -> RepaymentTransaction:
        notes = self._format_notes(request.notes, allocation.delayed_days_info)
        transaction = RepaymentTransaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            transaction_ref=f"TXN-{now:%Y%m%d%H%M%S}-{uuid.uuid4().hex[:6].upper()}",
            loan_id=loan.id,
            organization_id=loan.organization_id,
            currency=loan.currency,
            payment_date=payment_date,
            payment_method=request.payment_method,
            amount_paid=request.amount,
            principal_paid=allocation.principal_paid,
            interest_paid=allocation.interest_paid,
            penalty_paid=allocation.penalty_paid,
            unapplied_amount=allocation.remaining_amount,
            installment_id=allocation.primary_installment_id,
            allocations=[
                {
                    'installment_id': line.installment_id,
                    'installment_number': line.installment_number,
                    'principal': str(line.principal.amount),
                    'interest': str(line.interest.amount),
                    'penalty': str(line.penalty.amount),
                }
                for line in allocation.lines
            ],
            delayed_days_info=[
                {
                    'installment_number': info.installment_number,
                    'scheduled_due_date': info.scheduled_due_date.isoformat(),
                    'actual_payment_date': info.actual_payment_date.isoformat(),
                    'delayed_days': info.delayed_days,
                    'was_early_payment': info.was_early_payment,
                }
                for info in allocation.delayed_days_info
            ],
            repayment_proof_url=proof_url,
            received_by=request.received_by,
            notes=notes
        )
        self.storage.save(self.transactions_table, transaction.id, transaction.to_dict())
        return transaction

    @staticmethod
    def _format_notes(notes: Optional[str], delayed_days_info: List[DelayedDaysInfo]) -> Optional[str]:
        parts = [notes] if notes else []
        for info in delayed_days_info:
            entry = f"Installment {info.installment_number}: {info.delayed_days} delayed days"
            if info.was_early_payment:
                entry += " (Early)"
            parts.append(entry)
        return " | ".join(parts) if parts else None

    def _refresh_loan(
        self,
        loan: Loan,
        schedule: List[Installment],
        principal_paid: Money,
        as_of: date,
        now: datetime
    ) -> None:
        """Update outstanding principal, arrears and status after cash moved"""
        loan.outstanding_principal = (loan.outstanding_principal - principal_paid).floor_zero()
        max_delayed = max((line.delayed_days for line in schedule if not line.is_paid), default=0)
        if loan.status == LoanStatus.WRITTEN_OFF:
            # Write-off is final; only balances and arrears move
            loan.days_in_arrears = max_delayed
        elif not loan.outstanding_principal.is_positive():
            loan.status = LoanStatus.CLOSED
            loan.closed_date = as_of
            loan.days_in_arrears = 0
        else:
            loan.days_in_arrears = max_delayed
            loan.status = status_for_days_in_arrears(max_delayed, self.config)
        loan.updated_at = now
        loan.accrued_interest = self.calculate_accrued_interest(loan, as_of)
        self.loan_manager.save_loan(loan)

    def _tick_loan(self, loan_id: str, today: date):
        # Re-read under the lock; the batch page can be stale
        loan = self.loan_manager.get_loan(loan_id)
        if not loan.is_active:
            return 0, 0
        now = self.clock.now()
        schedule = self.loan_manager.get_schedule(loan.id)
        changed = []
        added = 0
        lines = []
        for line in schedule:
            updated, days = increment_delayed_days(line, today, now)
            if days:
                changed.append(updated)
                added += days
            lines.append(updated)
        if changed:
            self.loan_manager.save_installments(changed)

        previous_status = loan.status
        previous_accrued = loan.accrued_interest
        max_delayed = max((line.delayed_days for line in lines if not line.is_paid), default=0)
        loan.days_in_arrears = max_delayed
        loan.status = status_for_days_in_arrears(max_delayed, self.config)
        loan.accrued_interest = self.calculate_accrued_interest(loan, today)
        if changed or loan.status != previous_status or loan.accrued_interest != previous_accrued:
            loan.updated_at = now
            self.loan_manager.save_loan(loan)
            self.classification_engine.record_status_change(
                loan, previous_status, "Daily delayed days update", schedule=lines
            )
        return len(changed), added

    @staticmethod
    def _merge(schedule: List[Installment], updated: List[Installment]) -> List[Installment]:
        by_id = {line.id: line for line in updated}
        return [by_id.get(line.id, line) for line in schedule]

    def _build_receipt(
        self,
        loan: Loan,
        transaction: RepaymentTransaction,
        allocation: AllocationResult
    ) -> PaymentReceipt:
        return PaymentReceipt(
            receipt_number=f"RCP-{transaction.transaction_ref}",
            transaction_ref=transaction.transaction_ref,
            loan_id=loan.id,
            loan_number=loan.loan_number,
            payment_date=transaction.payment_date,
            payment_method=transaction.payment_method,
            amount_paid=transaction.amount_paid,
            principal_paid=allocation.principal_paid,
            interest_paid=allocation.interest_paid,
            penalty_paid=allocation.penalty_paid,
            outstanding_principal=loan.outstanding_principal,
            delayed_days_breakdown=allocation.delayed_days_info,
            received_by=transaction.received_by
        )
