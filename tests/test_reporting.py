"""
Tests for portfolio snapshots, portfolio at risk, trends and loan performance
"""

import pytest
import threading
from datetime import date
from decimal import Decimal

from microfinance.audit import AuditEventType
from microfinance.currency import Currency, Money
from microfinance.payments import PaymentRequest
from microfinance.reporting import PortfolioReporter, PortfolioSnapshot, percentage

from conftest import ORG, rwf


@pytest.fixture
def portfolio(make_loan, clock):
    """One loan 45 days overdue and one not yet due, as of 2024-03-31"""
    overdue = make_loan()
    current = make_loan(principal=600000, disbursed_on=date(2024, 3, 1))
    clock.set_date(date(2024, 3, 31))
    return overdue, current


class TestPercentage:

    def test_percentage(self):
        assert percentage(Decimal('1'), Decimal('3')) == Decimal('33.33')
        assert percentage(Decimal('5'), Decimal('0')) == Decimal('0')
        assert percentage(Decimal('5'), Decimal('0'), default=Decimal('100')) == Decimal('100')


class TestDailySnapshot:
    """Point-in-time portfolio aggregation"""

    def test_snapshot_figures(self, service, portfolio):
        snapshot = service.reporter.create_daily_snapshot(ORG)

        assert snapshot.id == "org-1_2024-03-31"
        assert snapshot.total_loans == 2
        assert snapshot.total_active_loans == 2
        assert snapshot.total_portfolio_value == rwf(1800000)
        assert snapshot.loan_count_by_class['watch'] == 1
        assert snapshot.loan_count_by_class['normal'] == 1
        assert snapshot.outstanding_by_class['watch'] == rwf(1200000)
        assert snapshot.par_1_to_30.is_zero()
        assert snapshot.par_31_to_90 == rwf(1200000)
        assert snapshot.total_par_ratio == Decimal('66.67')
        assert snapshot.total_provisions_required == rwf(66000)
        assert snapshot.total_provisions_held.is_zero()
        assert snapshot.provision_adequacy_ratio == Decimal('0.00')
        assert snapshot.loans_with_overdue_payments == 1
        assert snapshot.average_days_in_arrears == Decimal('45.00')

    def test_risk_profile(self, service, portfolio):
        snapshot = service.reporter.create_daily_snapshot(ORG)
        profile = snapshot.risk_profile()
        assert profile['risk_level'] == "CRITICAL"
        assert len(profile['concerns']) == 3
        assert snapshot.provision_shortfall() == rwf(66000)
        assert not snapshot.is_provision_adequate()
        assert snapshot.classification_distribution()['watch'] == Decimal('50.00')

    def test_snapshot_is_idempotent(self, service, portfolio):
        first = service.reporter.create_daily_snapshot(ORG)
        second = service.reporter.create_daily_snapshot(ORG)

        assert second == first
        assert len(service.audit_trail.get_events_by_type(AuditEventType.SNAPSHOT_CREATED)) == 1
        assert PortfolioSnapshot.from_dict(first.to_dict()) == first

    def test_concurrent_snapshots_build_the_day_once(self, service, portfolio):
        barrier = threading.Barrier(4)
        snapshots = []

        def take():
            barrier.wait()
            snapshots.append(service.reporter.create_daily_snapshot(ORG))

        threads = [threading.Thread(target=take) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert len(snapshots) == 4
        assert all(snapshot == snapshots[0] for snapshot in snapshots)
        assert len(service.audit_trail.get_events_by_type(AuditEventType.SNAPSHOT_CREATED)) == 1

    def test_closed_and_foreign_currency_loans(self, service, make_loan, clock):
        closed = make_loan(principal=100000, term=1)
        make_loan(principal=100000, currency=Currency.KES)
        clock.set_date(date(2024, 2, 15))
        service.repayment_service.process_payment(closed.id, PaymentRequest(amount=rwf(101000)))

        snapshot = service.reporter.create_daily_snapshot(ORG)
        assert snapshot.total_loans == 1
        assert snapshot.total_active_loans == 0
        assert snapshot.provision_adequacy_ratio == Decimal('100')

    def test_empty_organization(self, service):
        snapshot = service.reporter.create_daily_snapshot("org-empty", date(2024, 1, 31))
        assert snapshot.total_loans == 0
        assert snapshot.total_par_ratio == Decimal('0')
        assert snapshot.risk_profile()['risk_level'] == "MEDIUM"


class TestPortfolioAtRisk:
    """Arrears buckets"""

    def test_buckets(self, service, portfolio):
        par = service.reporter.calculate_portfolio_at_risk(ORG)

        assert par.total_portfolio_value == rwf(1800000)
        assert par.buckets['31_90']['count'] == 1
        assert par.buckets['31_90']['amount'] == rwf(1200000)
        assert par.buckets['1_30']['count'] == 0
        assert par.total_par_ratio == Decimal('66.67')

    @pytest.mark.parametrize("days,bucket", [(1, '1_30'), (30, '1_30'), (31, '31_90'), (90, '31_90'), (91, '91_plus')])
    def test_bucket_boundaries(self, days, bucket):
        assert PortfolioReporter._bucket_for(days) == bucket


class TestTrendsAndPerformance:
    """Derived reports"""

    def test_trends(self, service, portfolio, clock):
        service.reporter.create_daily_snapshot(ORG)
        clock.set_date(date(2024, 4, 1))
        service.reporter.create_daily_snapshot(ORG)

        trend = service.reporter.get_portfolio_trends(ORG, date(2024, 3, 1), date(2024, 4, 30))

        assert [s.snapshot_date for s in trend.snapshots] == [date(2024, 3, 31), date(2024, 4, 1)]
        assert len(trend.changes) == 1
        assert trend.changes[0]['active_loans_change'] == 0

    def test_loan_performance(self, service, make_loan, clock):
        loan = make_loan()
        clock.set_date(date(2024, 2, 15))
        service.repayment_service.process_payment(loan.id, PaymentRequest(amount=rwf(112000)))

        performance = service.reporter.get_loan_performance(loan.id, ORG)

        assert performance['installments_paid'] == 1
        assert performance['installments_outstanding'] == 11
        assert performance['principal_repaid'] == rwf(100000)
        assert performance['completion_rate'] == Decimal('8.33')
        assert performance['recovery_rate'] == Decimal('100.00')
