"""
Portfolio Reporting Module

Daily point-in-time portfolio snapshots per organization (class distribution,
portfolio at risk, provision adequacy, collateral coverage) and the trend and
loan performance reports derived from them.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging

from .audit import AuditTrail, AuditEventType
from .classification import ClassificationEngine, HIGH_RISK_CLASSES, LoanClass
from .clock import Clock, SystemClock
from .config import MicrofinanceConfig, get_config
from .currency import Currency, Money, money_from_storage, round_amount
from .loans import ACTIVE_STATUSES, LockRegistry, LoanManager
from .storage import StorageInterface, StorageRecord, restore_fields

logger = logging.getLogger(__name__)

HUNDRED = Decimal('100')

PAR_BUCKETS = (
    ('1_30', 1, 30),
    ('31_90', 31, 90),
    ('91_plus', 91, None),
)


def percentage(part: Decimal, whole: Decimal, default: Decimal = Decimal('0')) -> Decimal:
    """part / whole as a percentage rounded to 2dp"""
    if whole == 0:
        return default
    return round_amount(part / whole * HUNDRED)


@dataclass
class PortfolioSnapshot(StorageRecord):
    """One organization's portfolio on one day (never updated once written)"""
    organization_id: str
    snapshot_date: date
    currency: Currency
    total_loans: int
    total_active_loans: int
    total_portfolio_value: Money
    loan_count_by_class: Dict[str, int]
    outstanding_by_class: Dict[str, Money]
    total_provisions_required: Money
    total_provisions_held: Money
    provision_adequacy_ratio: Decimal
    par_1_to_30: Money
    par_31_to_90: Money
    par_90_plus: Money
    total_par: Money
    total_par_ratio: Decimal
    total_collateral_value: Money
    collateral_coverage_ratio: Decimal
    loans_with_overdue_payments: int
    average_days_in_arrears: Decimal

    def classification_distribution(self) -> Dict[str, Decimal]:
        """Share of active loans in each class, as percentages"""
        total = Decimal(self.total_active_loans)
        return {
            loan_class: percentage(Decimal(count), total)
            for loan_class, count in self.loan_count_by_class.items()
        }

    def provision_shortfall(self) -> Money:
        return (self.total_provisions_required - self.total_provisions_held).floor_zero()

    def is_provision_adequate(self) -> bool:
        return self.provision_adequacy_ratio >= HUNDRED

    def risk_profile(self) -> Dict[str, Any]:
        concerns = []
        if self.total_par_ratio > Decimal('15'):
            concerns.append(f"High portfolio at risk: {self.total_par_ratio}%")
        elif self.total_par_ratio > Decimal('5'):
            concerns.append(f"Moderate portfolio at risk: {self.total_par_ratio}%")
        if self.provision_adequacy_ratio < Decimal('80'):
            concerns.append(f"Provision adequacy below 80%: {self.provision_adequacy_ratio}%")
        if self.collateral_coverage_ratio < Decimal('80'):
            concerns.append(f"Collateral coverage below 80%: {self.collateral_coverage_ratio}%")
        high_risk = sum(self.loan_count_by_class.get(c.value, 0) for c in HIGH_RISK_CLASSES)
        if self.total_active_loans and Decimal(high_risk) / Decimal(self.total_active_loans) > Decimal('0.10'):
            concerns.append(f"{high_risk} loans classified doubtful or loss")

        if len(concerns) >= 3:
            level = "CRITICAL"
        elif len(concerns) >= 2:
            level = "HIGH"
        elif concerns:
            level = "MEDIUM"
        else:
            level = "LOW"
        return {'risk_level': level, 'concerns': concerns}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PortfolioSnapshot':
        currency = Currency.from_code(data['currency'])
        by_class = data.get('outstanding_by_class') or {}
        data = restore_fields(
            data,
            currency=currency,
            money=('total_portfolio_value', 'total_provisions_required', 'total_provisions_held',
                   'par_1_to_30', 'par_31_to_90', 'par_90_plus', 'total_par', 'total_collateral_value'),
            dates=('snapshot_date',),
            decimals=('provision_adequacy_ratio', 'total_par_ratio', 'collateral_coverage_ratio',
                      'average_days_in_arrears')
        )
        data['currency'] = currency
        data['outstanding_by_class'] = {k: money_from_storage(v, currency) for k, v in by_class.items()}
        data['loan_count_by_class'] = {k: int(v) for k, v in data['loan_count_by_class'].items()}
        return cls(**data)


@dataclass
class PortfolioAtRisk:
    """Loans in arrears by bucket as of a date"""
    organization_id: str
    as_of: date
    currency: Currency
    total_portfolio_value: Money
    buckets: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    total_par: Money = None
    total_par_ratio: Decimal = Decimal('0')


@dataclass
class PortfolioTrend:
    organization_id: str
    start_date: date
    end_date: date
    snapshots: List[PortfolioSnapshot] = field(default_factory=list)
    changes: List[Dict[str, Any]] = field(default_factory=list)


class PortfolioReporter:
    """
    Builds daily portfolio snapshots and the reports derived from them.

    Days in arrears and provisions come from the classification engine so a
    snapshot agrees with the loan-level classification records.
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        classification_engine: ClassificationEngine,
        audit_trail: AuditTrail,
        config: Optional[MicrofinanceConfig] = None,
        clock: Optional[Clock] = None
    ):
        self.storage = storage
        self.loan_manager = loan_manager
        self.classification_engine = classification_engine
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.clock = clock or SystemClock()

        self.table_name = "portfolio_snapshots"
        # Keyed by snapshot id so a day is built once per organization
        self.locks = LockRegistry()

    @property
    def currency(self) -> Currency:
        return Currency.from_code(self.config.reporting_currency)

    @staticmethod
    def snapshot_id(organization_id: str, snapshot_date: date) -> str:
        return f"{organization_id}_{snapshot_date.isoformat()}"

    def get_snapshot(self, organization_id: str, snapshot_date: date) -> Optional[PortfolioSnapshot]:
        data = self.storage.load(self.table_name, self.snapshot_id(organization_id, snapshot_date))
        return PortfolioSnapshot.from_dict(data) if data else None

    def create_daily_snapshot(
        self,
        organization_id: str,
        snapshot_date: Optional[date] = None
    ) -> PortfolioSnapshot:
        """
        Aggregate an organization's active loans into the snapshot for a day.

        Returns the existing snapshot when one was already taken that day.
        """
        snapshot_date = snapshot_date or self.clock.today()
        snapshot_id = self.snapshot_id(organization_id, snapshot_date)

        with self.locks.lock_for(snapshot_id), self.storage.atomic():
            existing = self.get_snapshot(organization_id, snapshot_date)
            if existing is not None:
                logger.info("Snapshot for %s on %s already exists", organization_id, snapshot_date)
                return existing

            snapshot = self._build_snapshot(snapshot_id, organization_id, snapshot_date)
            self.storage.save(self.table_name, snapshot.id, snapshot.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.SNAPSHOT_CREATED,
                entity_type="organization",
                entity_id=organization_id,
                organization_id=organization_id,
                metadata={
                    "snapshot_id": snapshot.id,
                    "total_active_loans": snapshot.total_active_loans,
                    "total_portfolio_value": snapshot.total_portfolio_value.to_string(),
                    "total_par_ratio": snapshot.total_par_ratio
                }
            )

        logger.info(
            "Snapshot %s: %d active loans, portfolio %s, PAR %s%%",
            snapshot.id, snapshot.total_active_loans, snapshot.total_portfolio_value.to_string(),
            snapshot.total_par_ratio
        )
        return snapshot

    def _build_snapshot(self, snapshot_id: str, organization_id: str, snapshot_date: date) -> PortfolioSnapshot:
        currency = self.currency
        zero = Money.zero(currency)
        count_by_class = {loan_class.value: 0 for loan_class in LoanClass}
        outstanding_by_class = {loan_class.value: zero for loan_class in LoanClass}
        par = {name: zero for name, _, _ in PAR_BUCKETS}
        total_loans = 0
        active = 0
        portfolio = zero
        required = zero
        held = zero
        collateral = zero
        overdue_loans = 0
        arrears_days = 0

        for loan in self.loan_manager.iter_loans(organization_id):
            if loan.currency != currency:
                logger.warning(
                    "Loan %s in %s excluded from %s snapshot", loan.id, loan.currency.code, currency.code
                )
                continue
            total_loans += 1
            if loan.status not in ACTIVE_STATUSES:
                continue
            active += 1

            schedule = self.loan_manager.get_schedule(loan.id)
            assessment = self.classification_engine.assess(loan, schedule=schedule, as_of=snapshot_date)
            days = assessment.days_in_arrears
            balance = loan.outstanding_balance

            count_by_class[assessment.loan_class.value] += 1
            outstanding_by_class[assessment.loan_class.value] += balance
            portfolio = portfolio + balance
            required = required + assessment.provision_required
            held = held + assessment.previous_provisions_held
            collateral = collateral + assessment.collateral_value
            if days > 0:
                overdue_loans += 1
                arrears_days += days
                par[self._bucket_for(days)] += balance

        total_par = sum(par.values(), zero)
        now = self.clock.now()
        snapshot = PortfolioSnapshot(
            id=snapshot_id,
            created_at=now,
            updated_at=now,
            organization_id=organization_id,
            snapshot_date=snapshot_date,
            currency=currency,
            total_loans=total_loans,
            total_active_loans=active,
            total_portfolio_value=portfolio,
            loan_count_by_class=count_by_class,
            outstanding_by_class=outstanding_by_class,
            total_provisions_required=required,
            total_provisions_held=held,
            provision_adequacy_ratio=percentage(held.amount, required.amount, default=HUNDRED),
            par_1_to_30=par['1_30'],
            par_31_to_90=par['31_90'],
            par_90_plus=par['91_plus'],
            total_par=total_par,
            total_par_ratio=percentage(total_par.amount, portfolio.amount),
            total_collateral_value=collateral,
            collateral_coverage_ratio=percentage(collateral.amount, portfolio.amount),
            loans_with_overdue_payments=overdue_loans,
            average_days_in_arrears=(
                round_amount(Decimal(arrears_days) / Decimal(overdue_loans)) if overdue_loans else Decimal('0')
            )
        )
        return snapshot

    def calculate_portfolio_at_risk(self, organization_id: str, as_of: Optional[date] = None) -> PortfolioAtRisk:
        """Count, amount and share of the portfolio in each arrears bucket"""
        as_of = as_of or self.clock.today()
        currency = self.currency
        zero = Money.zero(currency)
        counts = {name: 0 for name, _, _ in PAR_BUCKETS}
        amounts = {name: zero for name, _, _ in PAR_BUCKETS}
        portfolio = zero

        for loan in self.loan_manager.iter_loans(organization_id, list(ACTIVE_STATUSES)):
            if loan.currency != currency:
                continue
            balance = loan.outstanding_balance
            portfolio = portfolio + balance
            schedule = self.loan_manager.get_schedule(loan.id)
            days = self.classification_engine.days_in_arrears(loan, schedule, as_of)
            if days > 0:
                bucket = self._bucket_for(days)
                counts[bucket] += 1
                amounts[bucket] = amounts[bucket] + balance

        total_par = sum(amounts.values(), zero)
        return PortfolioAtRisk(
            organization_id=organization_id,
            as_of=as_of,
            currency=currency,
            total_portfolio_value=portfolio,
            buckets={
                name: {
                    'count': counts[name],
                    'amount': amounts[name],
                    'percentage': percentage(amounts[name].amount, portfolio.amount),
                }
                for name, _, _ in PAR_BUCKETS
            },
            total_par=total_par,
            total_par_ratio=percentage(total_par.amount, portfolio.amount)
        )

    def get_portfolio_trends(self, organization_id: str, start_date: date, end_date: date) -> PortfolioTrend:
        """Snapshots in a date range with the change from each to the next"""
        rows = self.storage.find(self.table_name, {'organization_id': organization_id})
        snapshots = sorted(
            (PortfolioSnapshot.from_dict(row) for row in rows),
            key=lambda snapshot: snapshot.snapshot_date
        )
        snapshots = [s for s in snapshots if start_date <= s.snapshot_date <= end_date]

        changes = []
        for previous, current in zip(snapshots, snapshots[1:]):
            changes.append({
                'from_date': previous.snapshot_date,
                'to_date': current.snapshot_date,
                'portfolio_value_change': current.total_portfolio_value - previous.total_portfolio_value,
                'par_ratio_change': current.total_par_ratio - previous.total_par_ratio,
                'provisions_change': current.total_provisions_required - previous.total_provisions_required,
                'active_loans_change': current.total_active_loans - previous.total_active_loans,
            })
        return PortfolioTrend(
            organization_id=organization_id,
            start_date=start_date,
            end_date=end_date,
            snapshots=snapshots,
            changes=changes
        )

    def get_loan_performance(self, loan_id: str, organization_id: Optional[str] = None) -> Dict[str, Any]:
        loan = self.loan_manager.get_loan(loan_id, organization_id)
        schedule = self.loan_manager.get_schedule(loan.id)
        paid = [line for line in schedule if line.is_paid]
        zero = Money.zero(loan.currency)
        principal_repaid = sum((line.paid_principal for line in schedule), zero)
        collected = sum((line.paid_total for line in schedule), zero)
        due = sum((line.due_total for line in schedule if line.due_date <= self.clock.today()), zero)

        return {
            'loan_id': loan.id,
            'status': loan.status.value,
            'installments_total': len(schedule),
            'installments_paid': len(paid),
            'installments_outstanding': len(schedule) - len(paid),
            'principal_repaid': principal_repaid,
            'outstanding_principal': loan.outstanding_principal,
            'outstanding_balance': loan.outstanding_balance,
            'days_in_arrears': loan.days_in_arrears,
            'completion_rate': percentage(Decimal(len(paid)), Decimal(len(schedule))),
            'recovery_rate': percentage(collected.amount, due.amount, default=HUNDRED),
        }

    @staticmethod
    def _bucket_for(days: int) -> str:
        for name, low, high in PAR_BUCKETS:
            if days >= low and (high is None or days <= high):
                return name
        raise ValueError(f"No arrears bucket for {days} days")
