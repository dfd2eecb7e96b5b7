"""
Lending Service

Wires storage, audit, clock and collaborators into the lending engine and
exposes its operations as OperationResult values. Engine modules raise typed
errors; this is the boundary that turns them into failure results.
"""

from datetime import date
from pathlib import Path
from typing import Any, Callable, List, Optional
import logging
import traceback

from .amortization import InterestMethod, RepaymentFrequency
from .audit import AuditTrail, AuditEventType
from .classification import ClassificationEngine
from .clock import Clock, SystemClock
from .collateral import CollateralRegistry, CollateralType, CollateralValuator
from .config import MicrofinanceConfig, get_config
from .currency import Money
from .errors import (
    DuplicatePaymentError, InvalidAmountError, MicrofinanceError, OperationResult, PersistenceError
)
from .jobs import DailyUpdateJob
from .loans import Loan, LoanManager, LoanStatus
from .logging_config import log_action
from .payments import PaymentRequest, RepaymentService
from .reporting import PortfolioReporter
from .schedules import CustomInstallment, RepaymentModality, ScheduleGenerator, ScheduleParams
from .storage import InMemoryStorage, SQLiteStorage, StorageInterface
from .uploads import FileUploader, LocalFileUploader

logger = logging.getLogger(__name__)


class LendingService:
    """Lending engine with all components initialized"""

    def __init__(
        self,
        config: Optional[MicrofinanceConfig] = None,
        storage: Optional[StorageInterface] = None,
        clock: Optional[Clock] = None,
        uploader: Optional[FileUploader] = None,
        collateral_valuator: Optional[CollateralValuator] = None
    ):
        self.config = config or get_config()
        self.clock = clock or SystemClock()

        # Initialize storage
        if storage is not None:
            self.storage = storage
        elif self.config.use_sqlite:
            self.storage = SQLiteStorage(self.config.database_path)
        else:
            self.storage = InMemoryStorage()

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage)
        self.collateral_registry = CollateralRegistry(self.storage, self.audit_trail, self.clock)
        self.uploader = uploader or LocalFileUploader(Path(self.config.upload_directory))
        self.loan_manager = LoanManager(
            self.storage, self.audit_trail, self.config, self.clock, ScheduleGenerator(clock=self.clock)
        )
        self.classification_engine = ClassificationEngine(
            self.storage, self.loan_manager, self.audit_trail,
            collateral_valuator or self.collateral_registry, self.config, self.clock
        )
        self.repayment_service = RepaymentService(
            self.storage, self.loan_manager, self.classification_engine, self.audit_trail,
            self.config, self.clock, self.uploader
        )
        self.reporter = PortfolioReporter(
            self.storage, self.loan_manager, self.classification_engine, self.audit_trail,
            self.config, self.clock
        )
        self.daily_update_job = DailyUpdateJob(
            self.repayment_service, self.classification_engine, self.reporter,
            self.loan_manager, self.audit_trail, self.clock
        )

    def close(self) -> None:
        self.storage.close()

    def _run(self, action: str, operation: Callable[[], Any], message: str = "OK",
             organization_id: Optional[str] = None) -> OperationResult:
        """Run an engine operation and convert raised errors into a failure result"""
        try:
            return OperationResult.ok(operation(), message)
        except Exception as e:
            return self._failure(action, e, organization_id)

    def _failure(self, action: str, error: Exception, organization_id: Optional[str] = None) -> OperationResult:
        """Failure result for an error being handled; call from inside the except block"""
        if isinstance(error, MicrofinanceError):
            log_action(
                logger, "warning", error.message, action=action,
                organization_id=organization_id, extra={'error_code': error.code, **error.context}
            )
            return OperationResult.fail(error.code, error.message, self._detail())
        logger.exception("Unexpected failure in %s", action)
        return OperationResult.fail(PersistenceError.code, f"{action} failed: {error}", self._detail())

    def _detail(self) -> Optional[str]:
        if self.config.is_production:
            return None
        return traceback.format_exc()

    # Loan lifecycle

    def create_loan(
        self,
        organization_id: str,
        borrower_id: str,
        principal: Money,
        annual_interest_rate,
        term_months: int,
        interest_method=InterestMethod.FLAT,
        repayment_frequency=RepaymentFrequency.MONTHLY,
        repayment_modality: RepaymentModality = RepaymentModality.STANDARD,
        single_payment_months: Optional[int] = None,
        loan_number: Optional[str] = None,
        purpose: Optional[str] = None
    ) -> OperationResult:
        return self._run(
            "create_loan",
            lambda: self.loan_manager.create_loan(
                organization_id, borrower_id, principal, annual_interest_rate, term_months,
                interest_method, repayment_frequency, repayment_modality,
                single_payment_months, loan_number, purpose
            ),
            "Loan created",
            organization_id
        )

    def approve_loan(self, loan_id: str, approved_by: Optional[str] = None,
                     organization_id: Optional[str] = None) -> OperationResult:
        return self._run(
            "approve_loan",
            lambda: self.loan_manager.approve_loan(loan_id, approved_by, organization_id),
            "Loan approved",
            organization_id
        )

    def disburse_loan(
        self,
        loan_id: str,
        disbursement_date: Optional[date] = None,
        custom_installments: Optional[List[CustomInstallment]] = None,
        disbursement_fee: Optional[Money] = None,
        disbursed_by: Optional[str] = None,
        organization_id: Optional[str] = None
    ) -> OperationResult:
        return self._run(
            "disburse_loan",
            lambda: self.loan_manager.disburse_loan(
                loan_id, disbursement_date, custom_installments, disbursement_fee, disbursed_by, organization_id
            ),
            "Loan disbursed",
            organization_id
        )

    def write_off_loan(self, loan_id: str, reason: str, written_off_by: Optional[str] = None,
                       organization_id: Optional[str] = None) -> OperationResult:
        return self._run(
            "write_off_loan",
            lambda: self.loan_manager.write_off_loan(loan_id, reason, written_off_by, organization_id),
            "Loan written off",
            organization_id
        )

    def get_loan(self, loan_id: str, organization_id: Optional[str] = None) -> OperationResult:
        return self._run("get_loan", lambda: self.loan_manager.get_loan(loan_id, organization_id))

    def list_loans(self, organization_id: str, statuses: Optional[List[LoanStatus]] = None,
                   offset: int = 0, limit: int = 100) -> OperationResult:
        return self._run(
            "list_loans",
            lambda: self.loan_manager.list_loans(organization_id, statuses, offset, limit),
            organization_id=organization_id
        )

    def get_schedule(self, loan_id: str, organization_id: Optional[str] = None) -> OperationResult:
        def load():
            loan = self.loan_manager.get_loan(loan_id, organization_id)
            return self.loan_manager.get_schedule(loan.id)
        return self._run("get_schedule", load)

    def generate_schedule(
        self,
        loan: Loan,
        modality: Optional[RepaymentModality] = None,
        params: Optional[ScheduleParams] = None
    ) -> OperationResult:
        """Preview a schedule without persisting it"""
        return self._run(
            "generate_schedule",
            lambda: self.loan_manager.generate_schedule(loan, modality, params),
            "Schedule generated",
            loan.organization_id
        )

    def register_collateral(
        self,
        loan_id: str,
        collateral_type: CollateralType,
        collateral_value: Money,
        extended_value: Optional[Money] = None,
        haircut_rate=None,
        description: Optional[str] = None,
        organization_id: Optional[str] = None
    ) -> OperationResult:
        def register():
            loan = self.loan_manager.get_loan(loan_id, organization_id)
            return self.collateral_registry.register(
                loan, collateral_type, collateral_value, extended_value, haircut_rate, description
            )
        return self._run("register_collateral", register, "Collateral registered", organization_id)

    # Repayments

    def process_payment(self, loan_id: str, request: PaymentRequest) -> OperationResult:
        try:
            outcome = self.repayment_service.process_payment(loan_id, request)
        except (DuplicatePaymentError, InvalidAmountError) as e:
            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_REJECTED,
                entity_type="loan",
                entity_id=loan_id,
                organization_id=request.organization_id,
                performed_by=request.received_by,
                metadata={
                    "amount": request.amount.to_string(),
                    "reason": e.code,
                    "message": e.message
                }
            )
            return self._failure("process_payment", e, request.organization_id)
        except Exception as e:
            return self._failure("process_payment", e, request.organization_id)
        return OperationResult.ok(outcome, "Payment processed")

    def reverse_transaction(self, transaction_id: str, reason: str, reversed_by: Optional[str] = None,
                            organization_id: Optional[str] = None) -> OperationResult:
        return self._run(
            "reverse_transaction",
            lambda: self.repayment_service.reverse_transaction(transaction_id, reason, reversed_by, organization_id),
            "Transaction reversed",
            organization_id
        )

    def daily_delayed_days_update(self, organization_id: Optional[str] = None) -> OperationResult:
        return self._run(
            "daily_delayed_days_update",
            lambda: self.repayment_service.daily_delayed_days_update(organization_id),
            organization_id=organization_id
        )

    def get_payment_summary(self, loan_id: str, organization_id: Optional[str] = None) -> OperationResult:
        return self._run(
            "get_payment_summary",
            lambda: self.repayment_service.get_payment_summary(loan_id, organization_id)
        )

    def get_loan_transactions(self, loan_id: str, include_reversed: bool = False,
                              organization_id: Optional[str] = None) -> OperationResult:
        def load():
            loan = self.loan_manager.get_loan(loan_id, organization_id)
            return self.repayment_service.get_loan_transactions(loan.id, include_reversed)
        return self._run("get_loan_transactions", load)

    # Classification

    def classify_loan(self, loan_id: str, organization_id: Optional[str] = None,
                      notes: Optional[str] = None) -> OperationResult:
        return self._run(
            "classify_loan",
            lambda: self.classification_engine.classify_loan(loan_id, organization_id, notes),
            "Loan classified",
            organization_id
        )

    def batch_classify(self, organization_id: str) -> OperationResult:
        return self._run(
            "batch_classify",
            lambda: self.classification_engine.batch_classify(organization_id),
            organization_id=organization_id
        )

    def get_classification_history(self, loan_id: str, organization_id: Optional[str] = None) -> OperationResult:
        def load():
            loan = self.loan_manager.get_loan(loan_id, organization_id)
            return self.classification_engine.get_classification_history(loan.id)
        return self._run("get_classification_history", load)

    def get_classification_movements(self, organization_id: str, start_date: date,
                                     end_date: date) -> OperationResult:
        return self._run(
            "get_classification_movements",
            lambda: self.classification_engine.get_classification_movements(organization_id, start_date, end_date),
            organization_id=organization_id
        )

    # Reporting

    def create_daily_snapshot(self, organization_id: str, snapshot_date: Optional[date] = None) -> OperationResult:
        return self._run(
            "create_daily_snapshot",
            lambda: self.reporter.create_daily_snapshot(organization_id, snapshot_date),
            organization_id=organization_id
        )

    def calculate_portfolio_at_risk(self, organization_id: str, as_of: Optional[date] = None) -> OperationResult:
        return self._run(
            "calculate_portfolio_at_risk",
            lambda: self.reporter.calculate_portfolio_at_risk(organization_id, as_of),
            organization_id=organization_id
        )

    def get_portfolio_trends(self, organization_id: str, start_date: date, end_date: date) -> OperationResult:
        return self._run(
            "get_portfolio_trends",
            lambda: self.reporter.get_portfolio_trends(organization_id, start_date, end_date),
            organization_id=organization_id
        )

    def get_loan_performance(self, loan_id: str, organization_id: Optional[str] = None) -> OperationResult:
        return self._run(
            "get_loan_performance",
            lambda: self.reporter.get_loan_performance(loan_id, organization_id)
        )

    def run_daily_update(self, organization_ids: Optional[List[str]] = None) -> OperationResult:
        return self._run("run_daily_update", lambda: self.daily_update_job.run(organization_ids))

    def verify_audit_integrity(self) -> OperationResult:
        return self._run("verify_audit_integrity", self.audit_trail.verify_integrity)
