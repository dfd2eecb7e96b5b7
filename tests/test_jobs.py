"""
Tests for the end-of-day update pipeline
"""

import pytest
from datetime import date

from microfinance.audit import AuditEventType
from microfinance.jobs import STEPS, main
from microfinance.loans import LoanStatus

from conftest import ORG


class TestDailyUpdateJob:
    """Delayed days, classification and snapshot per organization"""

    def test_runs_every_step(self, service, make_loan, clock):
        loan = make_loan()
        make_loan(organization_id="org-2")
        clock.set_date(date(2024, 3, 31))

        report = service.daily_update_job.run()

        assert report.run_date == date(2024, 3, 31)
        assert {r.organization_id for r in report.organizations} == {ORG, "org-2"}
        assert report.failed_organizations == []
        org_report = next(r for r in report.organizations if r.organization_id == ORG)
        assert set(org_report.steps) == set(STEPS)
        assert org_report.steps["delayed_days"].total_delayed_days_added == 2

        assert service.loan_manager.get_loan(loan.id).status == LoanStatus.WATCH
        assert service.reporter.get_snapshot(ORG, date(2024, 3, 31)) is not None
        assert service.audit_trail.get_events_by_type(AuditEventType.DAILY_UPDATE_RUN)

    def test_failed_step_does_not_stop_pipeline(self, service, make_loan, clock, monkeypatch):
        make_loan()
        make_loan(organization_id="org-2")
        clock.set_date(date(2024, 3, 31))
        original = service.classification_engine.batch_classify

        def batch_classify(organization_id):
            if organization_id == ORG:
                raise RuntimeError("classification store unavailable")
            return original(organization_id)

        monkeypatch.setattr(service.classification_engine, "batch_classify", batch_classify)
        report = service.daily_update_job.run([ORG, "org-2"])

        assert report.failed_organizations == [ORG]
        failed = report.organizations[0]
        assert failed.errors == {"classification": "classification store unavailable"}
        assert "snapshot" in failed.steps
        assert report.organizations[1].succeeded

    def test_service_wrapper(self, service, make_loan, clock):
        make_loan()
        clock.set_date(date(2024, 2, 20))
        result = service.run_daily_update([ORG])
        assert result.success
        assert result.data.organizations[0].succeeded


class TestCommandLine:
    """microfinance-daily-update entry point"""

    def test_main_runs_against_database(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setattr("microfinance.logging_config.setup_logging", lambda **kwargs: None)

        exit_code = main(["--database", str(tmp_path / "lending.db"), "-o", ORG])

        assert exit_code == 0
        assert f"{ORG}: ok" in capsys.readouterr().out
