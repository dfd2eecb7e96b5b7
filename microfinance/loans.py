"""
Loan Module

The loan aggregate and its lifecycle: creation, approval, disbursement with
schedule generation, write-off, and the status rules that tie a loan's
status to its days in arrears.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Union
from enum import Enum
import logging
import threading
import uuid

from .amortization import (
    InterestMethod, RepaymentFrequency, calculate_loan_amounts, normalize_frequency,
    normalize_interest_method, validate_terms
)
from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .config import MicrofinanceConfig, get_config
from .currency import Currency, Money
from .errors import NotFoundError, ValidationError
from .installments import Installment
from .schedules import (
    CustomInstallment, RepaymentModality, ScheduleGenerator, ScheduleParams, ScheduleResult
)
from .storage import StorageInterface, StorageRecord, restore_fields

logger = logging.getLogger(__name__)


class LoanStatus(Enum):
    """Loan lifecycle and arrears states"""
    PENDING = "pending"          # Application captured
    APPROVED = "approved"        # Approved, awaiting disbursement
    DISBURSED = "disbursed"      # Funds released, no arrears history yet
    PERFORMING = "performing"    # 0-30 days in arrears
    WATCH = "watch"              # 31-90 days
    SUBSTANDARD = "substandard"  # 91-180 days
    DOUBTFUL = "doubtful"        # 181-365 days
    LOSS = "loss"                # Over 365 days
    CLOSED = "closed"            # Fully repaid (terminal)
    WRITTEN_OFF = "written_off"  # Written off as uncollectible (terminal)


ACTIVE_STATUSES = (
    LoanStatus.DISBURSED,
    LoanStatus.PERFORMING,
    LoanStatus.WATCH,
    LoanStatus.SUBSTANDARD,
    LoanStatus.DOUBTFUL,
    LoanStatus.LOSS,
)

TERMINAL_STATUSES = (LoanStatus.CLOSED, LoanStatus.WRITTEN_OFF)


def status_for_days_in_arrears(days: int, config: Optional[MicrofinanceConfig] = None) -> LoanStatus:
    """Arrears status for a non-terminal loan"""
    config = config or get_config()
    if days <= config.normal_max_days:
        return LoanStatus.PERFORMING
    if days <= config.watch_max_days:
        return LoanStatus.WATCH
    if days <= config.substandard_max_days:
        return LoanStatus.SUBSTANDARD
    if days <= config.doubtful_max_days:
        return LoanStatus.DOUBTFUL
    return LoanStatus.LOSS


@dataclass
class Loan(StorageRecord):
    """Loan aggregate root; cached balances are kept in step with the schedule"""
    organization_id: str
    borrower_id: str
    currency: Currency
    principal: Money
    annual_interest_rate: Decimal       # Percent, e.g. 12 for 12%
    term_months: int
    interest_method: InterestMethod
    repayment_frequency: RepaymentFrequency
    repayment_modality: RepaymentModality = RepaymentModality.STANDARD
    status: LoanStatus = LoanStatus.PENDING
    loan_number: Optional[str] = None
    purpose: Optional[str] = None
    single_payment_months: Optional[int] = None

    # Figures fixed at disbursement
    total_installments: int = 0
    total_interest: Money = None
    total_repayable: Money = None
    installment_amount: Money = None
    disbursement_fee: Money = None
    net_disbursed_amount: Money = None

    # Running state
    outstanding_principal: Money = None
    accrued_interest: Money = None
    days_in_arrears: int = 0

    # Dates
    approved_date: Optional[date] = None
    disbursement_date: Optional[date] = None
    first_payment_date: Optional[date] = None
    maturity_date: Optional[date] = None
    closed_date: Optional[date] = None

    approved_by: Optional[str] = None
    disbursed_by: Optional[str] = None
    write_off_reason: Optional[str] = None

    def __post_init__(self):
        zero = Money.zero(self.currency)
        for name in ('total_interest', 'total_repayable', 'installment_amount', 'disbursement_fee',
                     'net_disbursed_amount', 'accrued_interest'):
            if getattr(self, name) is None:
                setattr(self, name, zero)
        if self.outstanding_principal is None:
            self.outstanding_principal = zero

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def outstanding_balance(self) -> Money:
        """Outstanding principal plus accrued interest"""
        return self.outstanding_principal + self.accrued_interest

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        currency = Currency.from_code(data['currency'])
        data = restore_fields(
            data,
            currency=currency,
            money=('principal', 'total_interest', 'total_repayable', 'installment_amount',
                   'disbursement_fee', 'net_disbursed_amount', 'outstanding_principal', 'accrued_interest'),
            dates=('approved_date', 'disbursement_date', 'first_payment_date', 'maturity_date', 'closed_date'),
            decimals=('annual_interest_rate',),
            enums={
                'interest_method': InterestMethod,
                'repayment_frequency': RepaymentFrequency,
                'repayment_modality': RepaymentModality,
                'status': LoanStatus,
            }
        )
        data['currency'] = currency
        return cls(**data)


class LockRegistry:
    """One re-entrant lock per key; every read-modify-write of a loan holds its loan id lock"""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock


@dataclass
class DisbursementResult:
    """Disbursed loan and the schedule generated for it"""
    loan: Loan
    schedule: ScheduleResult


class LoanManager:
    """
    Manages loans from application through disbursement and termination,
    and owns persistence of loans and their schedule lines.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        config: Optional[MicrofinanceConfig] = None,
        clock: Optional[Clock] = None,
        schedule_generator: Optional[ScheduleGenerator] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.clock = clock or SystemClock()
        self.schedule_generator = schedule_generator or ScheduleGenerator(clock=self.clock)
        self.locks = LockRegistry()

        self.loans_table = "loans"
        self.installments_table = "installments"

    def create_loan(
        self,
        organization_id: str,
        borrower_id: str,
        principal: Money,
        annual_interest_rate: Union[Decimal, str, int],
        term_months: int,
        interest_method: Union[InterestMethod, str] = InterestMethod.FLAT,
        repayment_frequency: Union[RepaymentFrequency, str] = RepaymentFrequency.MONTHLY,
        repayment_modality: RepaymentModality = RepaymentModality.STANDARD,
        single_payment_months: Optional[int] = None,
        loan_number: Optional[str] = None,
        purpose: Optional[str] = None
    ) -> Loan:
        """
        Capture a loan application in PENDING status.

        Unknown frequency or interest method names fall back to monthly/flat
        with a warning unless strict term validation is configured.
        """
        if not organization_id:
            raise ValidationError("Organization is required")
        if not borrower_id:
            raise ValidationError("Borrower is required")

        rate = Decimal(str(annual_interest_rate))
        validate_terms(principal, rate, term_months)
        strict = self.config.strict_term_validation
        frequency = normalize_frequency(repayment_frequency, strict=strict)
        method = normalize_interest_method(interest_method, strict=strict)
        if single_payment_months is not None and single_payment_months <= 0:
            raise ValidationError("Single payment term must be at least one month")

        now = self.clock.now()
        loan_id = str(uuid.uuid4())
        loan = Loan(
            id=loan_id,
            created_at=now,
            updated_at=now,
            organization_id=organization_id,
            borrower_id=borrower_id,
            currency=principal.currency,
            principal=principal,
            annual_interest_rate=rate,
            term_months=term_months,
            interest_method=method,
            repayment_frequency=frequency,
            repayment_modality=repayment_modality,
            single_payment_months=single_payment_months,
            loan_number=loan_number or f"LN-{now:%Y%m%d}-{loan_id[:8].upper()}",
            purpose=purpose
        )
        self.save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_CREATED,
            entity_type="loan",
            entity_id=loan.id,
            organization_id=organization_id,
            metadata={
                "borrower_id": borrower_id,
                "principal": principal.to_string(),
                "annual_interest_rate": str(rate),
                "term_months": term_months,
                "interest_method": method.value,
                "repayment_frequency": frequency.value,
                "repayment_modality": repayment_modality.value
            }
        )
        logger.info("Created loan %s for borrower %s", loan.id, borrower_id)
        return loan

    def approve_loan(
        self,
        loan_id: str,
        approved_by: Optional[str] = None,
        organization_id: Optional[str] = None
    ) -> Loan:
        """Move a PENDING loan to APPROVED"""
        loan = self.get_loan(loan_id, organization_id)
        if loan.status != LoanStatus.PENDING:
            raise ValidationError(f"Only pending loans can be approved, loan is {loan.status.value}")

        loan.status = LoanStatus.APPROVED
        loan.approved_date = self.clock.today()
        loan.approved_by = approved_by
        loan.updated_at = self.clock.now()
        self.save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_APPROVED,
            entity_type="loan",
            entity_id=loan.id,
            organization_id=loan.organization_id,
            performed_by=approved_by,
            metadata={"approved_date": loan.approved_date}
        )
        return loan

    def generate_schedule(
        self,
        loan: Loan,
        modality: Optional[RepaymentModality] = None,
        params: Optional[ScheduleParams] = None
    ) -> ScheduleResult:
        """Generate (without persisting) a schedule for a loan"""
        modality = modality or loan.repayment_modality
        if params is None:
            params = ScheduleParams(
                disbursement_date=loan.disbursement_date or self.clock.today(),
                single_payment_months=loan.single_payment_months
            )
        params.reconciliation_tolerance = Decimal(self.config.reconciliation_tolerance)
        return self.schedule_generator.generate(loan, modality, params)

    def disburse_loan(
        self,
        loan_id: str,
        disbursement_date: Optional[date] = None,
        custom_installments: Optional[List[CustomInstallment]] = None,
        disbursement_fee: Optional[Money] = None,
        disbursed_by: Optional[str] = None,
        organization_id: Optional[str] = None
    ) -> DisbursementResult:
        """
        Disburse an approved loan and generate its schedule.

        Re-disbursing a loan that has no payments replaces its schedule
        wholesale. The fee is a plain deduction from the amount released.
        """
        disbursement_date = disbursement_date or self.clock.today()

        with self.storage.atomic():
            loan = self.get_loan(loan_id, organization_id)
            existing = self.get_schedule(loan.id)
            if loan.status == LoanStatus.DISBURSED:
                if any(line.paid_total.is_positive() for line in existing):
                    raise ValidationError("Cannot re-disburse a loan that has received payments")
            elif loan.status != LoanStatus.APPROVED:
                raise ValidationError(f"Only approved loans can be disbursed, loan is {loan.status.value}")

            fee = disbursement_fee or Money.zero(loan.currency)
            if fee.is_negative() or fee >= loan.principal:
                raise ValidationError("Disbursement fee must be between zero and the principal")

            if loan.repayment_modality == RepaymentModality.CUSTOMIZED and not custom_installments:
                raise ValidationError("Customized loans require custom installments at disbursement")

            params = ScheduleParams(
                disbursement_date=disbursement_date,
                single_payment_months=loan.single_payment_months,
                custom_installments=list(custom_installments or [])
            )
            schedule = self.generate_schedule(loan, loan.repayment_modality, params)

            for line in existing:
                self.storage.delete(self.installments_table, line.id)
            self.save_installments(schedule.installments)

            loan.total_installments = len(schedule.installments)
            loan.total_interest = schedule.total_interest
            loan.total_repayable = schedule.total_repayable
            if loan.repayment_modality == RepaymentModality.STANDARD:
                loan.installment_amount = calculate_loan_amounts(
                    loan.principal, loan.annual_interest_rate, loan.term_months,
                    loan.repayment_frequency, loan.interest_method
                ).installment_amount
            else:
                loan.installment_amount = schedule.installments[0].due_total
            loan.disbursement_fee = fee
            loan.net_disbursed_amount = loan.principal - fee
            loan.outstanding_principal = loan.principal
            loan.accrued_interest = Money.zero(loan.currency)
            loan.days_in_arrears = 0
            loan.disbursement_date = disbursement_date
            loan.first_payment_date = schedule.first_due_date
            loan.maturity_date = schedule.maturity_date
            loan.disbursed_by = disbursed_by
            loan.status = LoanStatus.DISBURSED
            loan.updated_at = self.clock.now()
            self.save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_DISBURSED,
                entity_type="loan",
                entity_id=loan.id,
                organization_id=loan.organization_id,
                performed_by=disbursed_by,
                metadata={
                    "disbursement_date": disbursement_date,
                    "principal": loan.principal.to_string(),
                    "disbursement_fee": fee.to_string(),
                    "net_disbursed_amount": loan.net_disbursed_amount.to_string(),
                    "total_installments": loan.total_installments,
                    "regenerated": bool(existing)
                }
            )
            self.audit_trail.log_event(
                event_type=AuditEventType.SCHEDULE_GENERATED,
                entity_type="loan",
                entity_id=loan.id,
                organization_id=loan.organization_id,
                metadata={
                    "modality": schedule.modality.value,
                    "installments": len(schedule.installments),
                    "total_repayable": schedule.total_repayable.to_string(),
                    "warnings": [w.message for w in schedule.warnings]
                }
            )

        logger.info("Disbursed loan %s with %d installments", loan.id, loan.total_installments)
        return DisbursementResult(loan=loan, schedule=schedule)

    def write_off_loan(
        self,
        loan_id: str,
        reason: str,
        written_off_by: Optional[str] = None,
        organization_id: Optional[str] = None
    ) -> Loan:
        """Terminate an active loan as uncollectible"""
        if not reason:
            raise ValidationError("A write-off reason is required")
        with self.locks.lock_for(loan_id), self.storage.atomic():
            loan = self.get_loan(loan_id, organization_id)
            if not loan.is_active:
                raise ValidationError(f"Only active loans can be written off, loan is {loan.status.value}")

            previous = loan.status
            loan.status = LoanStatus.WRITTEN_OFF
            loan.write_off_reason = reason
            loan.closed_date = self.clock.today()
            loan.updated_at = self.clock.now()
            self.save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_WRITTEN_OFF,
                entity_type="loan",
                entity_id=loan.id,
                organization_id=loan.organization_id,
                performed_by=written_off_by,
                metadata={
                    "previous_status": previous,
                    "reason": reason,
                    "outstanding_principal": loan.outstanding_principal.to_string()
                }
            )
        return loan

    def find_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        return Loan.from_dict(data) if data else None

    def get_loan(self, loan_id: str, organization_id: Optional[str] = None) -> Loan:
        """Load a loan, treating another tenant's loan as absent"""
        loan = self.find_loan(loan_id)
        if loan is None or (organization_id and loan.organization_id != organization_id):
            raise NotFoundError(f"Loan {loan_id} not found", loan_id=loan_id)
        return loan

    def list_loans(
        self,
        organization_id: str,
        statuses: Optional[List[LoanStatus]] = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[Loan]:
        filters: Dict[str, Any] = {'organization_id': organization_id}
        if statuses:
            filters['status'] = [status.value for status in statuses]
        rows = self.storage.find_page(self.loans_table, filters, offset=offset, limit=limit)
        return [Loan.from_dict(row) for row in rows]

    def iter_loans(
        self,
        organization_id: Optional[str] = None,
        statuses: Optional[List[LoanStatus]] = None
    ) -> Iterator[Loan]:
        """
        Stream loans page by page.

        Pages are selected by organization only and statuses are filtered in
        memory, so updating a loan's status mid-iteration does not shift pages.
        """
        filters: Dict[str, Any] = {}
        if organization_id:
            filters['organization_id'] = organization_id
        wanted = {status.value for status in statuses} if statuses else None
        for page in self.storage.iter_pages(self.loans_table, filters, self.config.batch_processing_size):
            for row in page:
                if wanted is None or row.get('status') in wanted:
                    yield Loan.from_dict(row)

    def organization_ids(self) -> List[str]:
        """Organizations that own at least one loan"""
        seen: Dict[str, None] = {}
        for row in self.storage.load_all(self.loans_table):
            seen.setdefault(row['organization_id'], None)
        return list(seen)

    def get_schedule(self, loan_id: str) -> List[Installment]:
        """Schedule lines for a loan ordered by installment number"""
        rows = self.storage.find(self.installments_table, {'loan_id': loan_id})
        lines = [Installment.from_dict(row) for row in rows]
        lines.sort(key=lambda line: (line.installment_number, line.due_date))
        return lines

    def save_loan(self, loan: Loan) -> None:
        if loan.outstanding_principal.is_negative():
            loan.outstanding_principal = Money.zero(loan.currency)
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def save_installments(self, lines: List[Installment]) -> None:
        for line in lines:
            self.storage.save(self.installments_table, line.id, line.to_dict())
