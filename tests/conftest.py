"""
Shared fixtures for the lending engine test suite
"""

import pytest
from datetime import date
from decimal import Decimal

from microfinance.clock import FixedClock
from microfinance.config import MicrofinanceConfig
from microfinance.currency import Currency, Money
from microfinance.storage import InMemoryStorage
from microfinance.service import LendingService
from microfinance.uploads import LocalFileUploader


ORG = "org-1"
DISBURSED_ON = date(2024, 1, 15)


def rwf(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.RWF)


@pytest.fixture
def clock():
    return FixedClock.at_date(date(2024, 1, 10))


@pytest.fixture
def config():
    return MicrofinanceConfig(use_sqlite=False, environment="test")


@pytest.fixture
def service(config, clock, tmp_path):
    """Lending service on in-memory storage with a controllable clock"""
    lending = LendingService(
        config=config,
        storage=InMemoryStorage(),
        clock=clock,
        uploader=LocalFileUploader(tmp_path / "uploads")
    )
    yield lending
    lending.close()


@pytest.fixture
def make_loan(service, clock):
    """Create, approve and disburse a loan; returns the disbursed Loan"""

    def _make_loan(principal=1200000, rate="12", term=12, method="flat", frequency="monthly",
                   disbursed_on=DISBURSED_ON, organization_id=ORG, currency=Currency.RWF, **kwargs):
        manager = service.loan_manager
        loan = manager.create_loan(
            organization_id=organization_id,
            borrower_id="borrower-1",
            principal=Money(Decimal(str(principal)), currency),
            annual_interest_rate=Decimal(rate),
            term_months=term,
            interest_method=method,
            repayment_frequency=frequency,
            **kwargs
        )
        manager.approve_loan(loan.id, approved_by="officer-1")
        return manager.disburse_loan(loan.id, disbursement_date=disbursed_on).loan

    return _make_loan
