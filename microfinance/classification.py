"""
Classification Engine

Derives a loan's days in arrears, arrears class, net exposure after
collateral and the provision it requires, and keeps an immutable history of
classification records per loan.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional
from enum import Enum
import logging
import uuid

from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .collateral import CollateralValuator
from .config import MicrofinanceConfig, get_config
from .currency import Currency, Money, round_amount
from .installments import Installment
from .loans import (
    ACTIVE_STATUSES, Loan, LoanManager, LoanStatus, status_for_days_in_arrears
)
from .storage import StorageInterface, StorageRecord, restore_fields

logger = logging.getLogger(__name__)


class LoanClass(Enum):
    """Regulatory arrears classes"""
    NORMAL = "normal"            # 0-30 days
    WATCH = "watch"              # 31-90 days
    SUBSTANDARD = "substandard"  # 91-180 days
    DOUBTFUL = "doubtful"        # 181-365 days
    LOSS = "loss"                # Over 365 days


STATUS_CLASS = {
    LoanStatus.PENDING: LoanClass.NORMAL,
    LoanStatus.APPROVED: LoanClass.NORMAL,
    LoanStatus.DISBURSED: LoanClass.NORMAL,
    LoanStatus.PERFORMING: LoanClass.NORMAL,
    LoanStatus.WATCH: LoanClass.WATCH,
    LoanStatus.SUBSTANDARD: LoanClass.SUBSTANDARD,
    LoanStatus.DOUBTFUL: LoanClass.DOUBTFUL,
    LoanStatus.LOSS: LoanClass.LOSS,
    LoanStatus.CLOSED: LoanClass.NORMAL,
    LoanStatus.WRITTEN_OFF: LoanClass.LOSS,
}

HIGH_RISK_CLASSES = (LoanClass.DOUBTFUL, LoanClass.LOSS)


@dataclass
class Classification(StorageRecord):
    """Point-in-time provisioning record for one loan (immutable)"""
    loan_id: str
    organization_id: str
    classification_date: date
    currency: Currency
    days_in_arrears: int
    loan_class: LoanClass
    loan_status: LoanStatus
    outstanding_balance: Money
    collateral_value: Money
    net_exposure: Money
    provisioning_rate: Decimal
    provision_required: Money
    previous_provisions_held: Money
    additional_provisions_this_period: Money
    notes: Optional[str] = None

    def is_provision_adequate(self) -> bool:
        return self.previous_provisions_held >= self.provision_required

    def provision_shortfall(self) -> Money:
        return (self.provision_required - self.previous_provisions_held).floor_zero()

    def provision_status(self) -> str:
        if self.additional_provisions_this_period.is_negative():
            return "IMPROVED"
        if self.is_provision_adequate():
            return "ADEQUATE"
        return "SHORTFALL"

    def provision_change_summary(self) -> Dict[str, Any]:
        change = self.additional_provisions_this_period
        if change.is_positive():
            direction = "INCREASE"
        elif change.is_negative():
            direction = "DECREASE"
        else:
            direction = "NO_CHANGE"

        if self.previous_provisions_held.is_zero():
            percentage = Decimal('100') if change.is_positive() else Decimal('0')
        else:
            percentage = round_amount(change.amount / self.previous_provisions_held.amount * Decimal('100'))

        return {
            'direction': direction,
            'change_amount': str(change.amount),
            'change_percentage': str(percentage),
            'previous_provisions_held': str(self.previous_provisions_held.amount),
            'provision_required': str(self.provision_required.amount),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Classification':
        currency = Currency.from_code(data['currency'])
        data = restore_fields(
            data,
            currency=currency,
            money=('outstanding_balance', 'collateral_value', 'net_exposure', 'provision_required',
                   'previous_provisions_held', 'additional_provisions_this_period'),
            dates=('classification_date',),
            decimals=('provisioning_rate',),
            enums={'loan_class': LoanClass, 'loan_status': LoanStatus}
        )
        data['currency'] = currency
        return cls(**data)


@dataclass
class BatchClassificationResult:
    """Outcome of classifying an organization's active loans"""
    organization_id: str
    total_loans: int = 0
    updated: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class ClassificationMovement:
    loan_id: str
    classification_date: date
    from_class: Optional[LoanClass]
    to_class: LoanClass


@dataclass
class ClassificationMovements:
    """Entries into and exits from each class over a period"""
    organization_id: str
    start_date: date
    end_date: date
    entered: Dict[str, int] = field(default_factory=dict)
    exited: Dict[str, int] = field(default_factory=dict)
    movements: List[ClassificationMovement] = field(default_factory=list)


class ClassificationEngine:
    """
    Classifies loans into arrears classes and computes provisions.

    Days in arrears come from the schedule as of the clock's date. Collateral
    is netted off the outstanding balance through the CollateralValuator.
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        audit_trail: AuditTrail,
        collateral_valuator: Optional[CollateralValuator] = None,
        config: Optional[MicrofinanceConfig] = None,
        clock: Optional[Clock] = None
    ):
        self.storage = storage
        self.loan_manager = loan_manager
        self.audit_trail = audit_trail
        self.collateral_valuator = collateral_valuator
        self.config = config or get_config()
        self.clock = clock or SystemClock()

        self.table_name = "loan_classifications"

    def days_in_arrears(self, loan: Loan, schedule: List[Installment], as_of: date) -> int:
        """Largest days-past-due across unpaid lines; 0 for closed loans"""
        if loan.status == LoanStatus.CLOSED or not loan.outstanding_principal.is_positive():
            return 0
        return max((line.days_past_due(as_of) for line in schedule), default=0)

    def class_for_days(self, days: int) -> LoanClass:
        config = self.config
        if days <= config.normal_max_days:
            return LoanClass.NORMAL
        if days <= config.watch_max_days:
            return LoanClass.WATCH
        if days <= config.substandard_max_days:
            return LoanClass.SUBSTANDARD
        if days <= config.doubtful_max_days:
            return LoanClass.DOUBTFUL
        return LoanClass.LOSS

    def provisioning_rate(self, loan_class: LoanClass, status: Optional[LoanStatus] = None) -> Decimal:
        if status == LoanStatus.CLOSED:
            return Decimal('0')
        if status == LoanStatus.WRITTEN_OFF:
            return Decimal('1')
        return {
            LoanClass.NORMAL: Decimal(self.config.provision_rate_normal),
            LoanClass.WATCH: Decimal(self.config.provision_rate_watch),
            LoanClass.SUBSTANDARD: Decimal(self.config.provision_rate_substandard),
            LoanClass.DOUBTFUL: Decimal(self.config.provision_rate_doubtful),
            LoanClass.LOSS: Decimal(self.config.provision_rate_loss),
        }[loan_class]

    def collateral_value(self, loan: Loan) -> Money:
        if self.collateral_valuator is None:
            return Money.zero(loan.currency)
        return self.collateral_valuator.effective_value(loan)

    def assess(
        self,
        loan: Loan,
        schedule: Optional[List[Installment]] = None,
        as_of: Optional[date] = None,
        notes: Optional[str] = None
    ) -> Classification:
        """Build (without persisting) a classification record for a loan"""
        as_of = as_of or self.clock.today()
        if schedule is None:
            schedule = self.loan_manager.get_schedule(loan.id)

        days = self.days_in_arrears(loan, schedule, as_of)
        if loan.status == LoanStatus.WRITTEN_OFF:
            loan_class = LoanClass.LOSS
        elif loan.status == LoanStatus.CLOSED:
            loan_class = LoanClass.NORMAL
        else:
            loan_class = self.class_for_days(days)

        status = loan.status
        if loan.is_active:
            status = status_for_days_in_arrears(days, self.config)

        rate = self.provisioning_rate(loan_class, loan.status)
        outstanding = loan.outstanding_balance
        collateral = self.collateral_value(loan)
        net_exposure = (outstanding - collateral).floor_zero()
        required = net_exposure * rate

        previous = self.get_latest_classification(loan.id)
        previous_held = previous.provision_required if previous else Money.zero(loan.currency)

        now = self.clock.now()
        return Classification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            organization_id=loan.organization_id,
            classification_date=as_of,
            currency=loan.currency,
            days_in_arrears=days,
            loan_class=loan_class,
            loan_status=status,
            outstanding_balance=outstanding,
            collateral_value=collateral,
            net_exposure=net_exposure,
            provisioning_rate=rate,
            provision_required=required,
            previous_provisions_held=previous_held,
            additional_provisions_this_period=required - previous_held,
            notes=notes
        )

    def classify_loan(
        self,
        loan_id: str,
        organization_id: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Classification:
        """
        Classify a loan, persist the record and bring the loan's status and
        days in arrears in line with it.
        """
        with self.loan_manager.locks.lock_for(loan_id), self.storage.atomic():
            loan = self.loan_manager.get_loan(loan_id, organization_id)
            previous_status = loan.status
            classification = self.assess(loan, notes=notes)
            self._apply_to_loan(loan, classification)
            self._persist(classification, previous_status)
        return classification

    def record_status_change(
        self,
        loan: Loan,
        previous_status: LoanStatus,
        reason: str,
        schedule: Optional[List[Installment]] = None
    ) -> Optional[Classification]:
        """
        Write a classification after a payment or reversal moved the loan
        between statuses. Runs inside the caller's unit of work and leaves the
        loan's own status untouched.
        """
        if previous_status == loan.status:
            return None
        classification = self.assess(loan, schedule=schedule, notes=reason)
        classification.loan_status = loan.status
        if loan.is_active:
            classification.loan_class = STATUS_CLASS[loan.status]
            classification.days_in_arrears = loan.days_in_arrears
            rate = self.provisioning_rate(classification.loan_class, loan.status)
            classification.provisioning_rate = rate
            classification.provision_required = classification.net_exposure * rate
            classification.additional_provisions_this_period = (
                classification.provision_required - classification.previous_provisions_held
            )
        self._persist(classification, previous_status)
        return classification

    def batch_classify(self, organization_id: str) -> BatchClassificationResult:
        """
        Classify every active loan in an organization.

        Status and days in arrears are always refreshed; a record is written
        only when the class differs from the one implied by the stored status.
        One loan's failure is logged and collected without stopping the batch.
        """
        result = BatchClassificationResult(organization_id=organization_id)
        for loan in self.loan_manager.iter_loans(organization_id, list(ACTIVE_STATUSES)):
            result.total_loans += 1
            try:
                if self._classify_in_batch(loan.id):
                    result.updated += 1
            except Exception as e:
                logger.exception("Classification failed for loan %s", loan.id)
                result.errors.append({'loan_id': loan.id, 'error': str(e)})

        self.audit_trail.log_event(
            event_type=AuditEventType.BATCH_CLASSIFICATION_RUN,
            entity_type="organization",
            entity_id=organization_id,
            organization_id=organization_id,
            metadata={
                'total_loans': result.total_loans,
                'updated': result.updated,
                'errors': len(result.errors)
            }
        )
        logger.info(
            "Batch classification for %s: %d loans, %d reclassified, %d errors",
            organization_id, result.total_loans, result.updated, len(result.errors)
        )
        return result

    def _classify_in_batch(self, loan_id: str) -> bool:
        with self.loan_manager.locks.lock_for(loan_id), self.storage.atomic():
            # Re-read under the lock; the batch page can be stale
            loan = self.loan_manager.get_loan(loan_id)
            if not loan.is_active:
                return False
            previous_status = loan.status
            classification = self.assess(loan)
            self._apply_to_loan(loan, classification)
            if classification.loan_class == STATUS_CLASS[previous_status]:
                return False
            self._persist(classification, previous_status)
            return True

    def get_classification_history(self, loan_id: str) -> List[Classification]:
        rows = self.storage.find(self.table_name, {'loan_id': loan_id})
        records = [Classification.from_dict(row) for row in rows]
        records.sort(key=lambda record: (record.classification_date, record.created_at))
        return records

    def get_latest_classification(self, loan_id: str) -> Optional[Classification]:
        history = self.get_classification_history(loan_id)
        return history[-1] if history else None

    def get_classification_movements(
        self,
        organization_id: str,
        start_date: date,
        end_date: date
    ) -> ClassificationMovements:
        """Count class entries and exits from consecutive records of each loan"""
        report = ClassificationMovements(
            organization_id=organization_id,
            start_date=start_date,
            end_date=end_date,
            entered={loan_class.value: 0 for loan_class in LoanClass},
            exited={loan_class.value: 0 for loan_class in LoanClass}
        )

        by_loan: Dict[str, List[Classification]] = {}
        for row in self.storage.find(self.table_name, {'organization_id': organization_id}):
            record = Classification.from_dict(row)
            by_loan.setdefault(record.loan_id, []).append(record)

        for loan_id, records in by_loan.items():
            records.sort(key=lambda record: (record.classification_date, record.created_at))
            previous: Optional[Classification] = None
            for record in records:
                in_period = start_date <= record.classification_date <= end_date
                changed = previous is None or previous.loan_class != record.loan_class
                if in_period and changed:
                    from_class = previous.loan_class if previous else None
                    if from_class is not None:
                        report.exited[from_class.value] += 1
                    report.entered[record.loan_class.value] += 1
                    report.movements.append(ClassificationMovement(
                        loan_id=loan_id,
                        classification_date=record.classification_date,
                        from_class=from_class,
                        to_class=record.loan_class
                    ))
                previous = record

        report.movements.sort(key=lambda movement: (movement.classification_date, movement.loan_id))
        return report

    def _apply_to_loan(self, loan: Loan, classification: Classification) -> None:
        if loan.is_active:
            loan.status = classification.loan_status
            loan.days_in_arrears = classification.days_in_arrears
            loan.updated_at = self.clock.now()
            self.loan_manager.save_loan(loan)

    def _persist(self, classification: Classification, previous_status: LoanStatus) -> None:
        self.storage.save(self.table_name, classification.id, classification.to_dict())
        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_RECLASSIFIED,
            entity_type="loan",
            entity_id=classification.loan_id,
            organization_id=classification.organization_id,
            metadata={
                'classification_id': classification.id,
                'previous_status': previous_status,
                'new_status': classification.loan_status,
                'loan_class': classification.loan_class,
                'days_in_arrears': classification.days_in_arrears,
                'provision_required': classification.provision_required.to_string(),
                'additional_provisions': classification.additional_provisions_this_period.to_string()
            }
        )
