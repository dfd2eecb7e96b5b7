"""
Tests for the LendingService boundary, collateral register and file uploads
"""

import pytest
from datetime import date
from decimal import Decimal

from microfinance.collateral import Collateral, CollateralType
from microfinance.config import MicrofinanceConfig
from microfinance.errors import PersistenceError, ValidationError
from microfinance.schedules import RepaymentModality, ScheduleParams
from microfinance.service import LendingService
from microfinance.storage import InMemoryStorage, SQLiteStorage
from microfinance.uploads import LocalFileUploader

from conftest import ORG, rwf


class TestOperationResults:
    """Typed errors become failure results"""

    def test_success(self, service):
        result = service.create_loan(ORG, "borrower-1", rwf(100000), "12", 6)
        assert result.success
        assert result.message == "Loan created"
        assert result.data.status.value == "pending"

    def test_validation_failure(self, service):
        result = service.create_loan(ORG, "borrower-1", rwf(100000), "0", 6)
        assert not result.success
        assert result.error_code == "validation_error"
        assert "Traceback" in result.detail

    def test_not_found(self, service):
        result = service.get_loan("missing")
        assert result.error_code == "not_found"

    def test_no_traceback_in_production(self, clock):
        production = LendingService(
            config=MicrofinanceConfig(use_sqlite=False, environment="production"),
            storage=InMemoryStorage(),
            clock=clock
        )
        result = production.get_loan("missing")
        assert not result.success
        assert result.detail is None

    def test_generate_schedule_preview(self, service):
        loan = service.create_loan(ORG, "borrower-1", rwf(120000), "12", 6).data
        result = service.generate_schedule(
            loan, RepaymentModality.INTEREST_ONLY, ScheduleParams(disbursement_date=date(2024, 1, 15))
        )
        assert result.success
        assert len(result.data.installments) == 6
        assert service.loan_manager.get_schedule(loan.id) == []

    def test_audit_integrity(self, service, make_loan):
        make_loan()
        result = service.verify_audit_integrity()
        assert result.success
        assert result.data['valid']

    def test_sqlite_backend_from_config(self, tmp_path, clock):
        config = MicrofinanceConfig(use_sqlite=True, database_path=str(tmp_path / "lending.db"))
        sqlite_service = LendingService(config=config, clock=clock)
        try:
            assert isinstance(sqlite_service.storage, SQLiteStorage)
            loan = sqlite_service.create_loan(ORG, "borrower-1", rwf(100000), "12", 6).data
            assert sqlite_service.get_loan(loan.id).data == loan
        finally:
            sqlite_service.close()


class TestCollateralRegistry:
    """Collateral pledged against loans"""

    def test_type_haircut(self, service, make_loan):
        loan = make_loan()
        movable = service.collateral_registry.register(loan, CollateralType.MOVABLE, rwf(100000))
        assert movable.effective_value == rwf(60000)

    def test_extended_value_replaces_appraisal(self, service, make_loan):
        loan = make_loan()
        collateral = service.collateral_registry.register(
            loan, CollateralType.FINANCIAL, rwf(100000), extended_value=rwf(150000)
        )
        assert collateral.effective_value == rwf(150000)
        assert Collateral.from_dict(collateral.to_dict()) == collateral

    def test_effective_value_sums_items(self, service, make_loan):
        loan = make_loan()
        service.collateral_registry.register(loan, CollateralType.IMMOVABLE, rwf(100000))
        service.collateral_registry.register(loan, CollateralType.GUARANTEE, rwf(100000))
        assert service.collateral_registry.effective_value(loan) == rwf(100000)
        breakdown = service.collateral_registry.valuation_breakdown(loan)
        assert breakdown['total_effective_value'] == "100000.00"
        assert len(breakdown['items']) == 2

    def test_invalid_haircut(self, service, make_loan):
        loan = make_loan()
        result = service.register_collateral(
            loan.id, CollateralType.OTHER, rwf(1000), haircut_rate=Decimal('1.5'), organization_id=ORG
        )
        assert result.error_code == "validation_error"


class TestLocalFileUploader:
    """Payment proof storage"""

    def test_upload(self, tmp_path):
        uploader = LocalFileUploader(tmp_path)
        url = uploader.upload("../../etc/passwd slip.png", b"data", folder="org/1")
        assert url.startswith("file://")
        assert url.endswith("_passwd_slip.png")
        stored = list(tmp_path.rglob("*passwd_slip.png"))
        assert len(stored) == 1
        assert stored[0].read_bytes() == b"data"

    def test_empty_upload(self, tmp_path):
        with pytest.raises(ValidationError):
            LocalFileUploader(tmp_path).upload("slip.png", b"")

    def test_unwritable_directory(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        with pytest.raises(PersistenceError):
            LocalFileUploader(blocker).upload("slip.png", b"data")
