"""
Daily Update Job

Runs the end-of-day pipeline for each organization: delayed days, batch
classification, then the portfolio snapshot. A failing step is recorded and
the pipeline moves on to the next step and the next organization.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional
import argparse
import logging
import sys

from .audit import AuditEventType

logger = logging.getLogger(__name__)

STEPS = ("delayed_days", "classification", "snapshot")


@dataclass
class OrganizationRunReport:
    organization_id: str
    steps: Dict[str, Any] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return not self.errors


@dataclass
class DailyUpdateReport:
    run_date: date
    organizations: List[OrganizationRunReport] = field(default_factory=list)

    @property
    def failed_organizations(self) -> List[str]:
        return [report.organization_id for report in self.organizations if not report.succeeded]


class DailyUpdateJob:
    """End-of-day pipeline over the repayment, classification and reporting services"""

    def __init__(self, repayment_service, classification_engine, reporter, loan_manager, audit_trail, clock):
        self.repayment_service = repayment_service
        self.classification_engine = classification_engine
        self.reporter = reporter
        self.loan_manager = loan_manager
        self.audit_trail = audit_trail
        self.clock = clock

    def run(self, organization_ids: Optional[List[str]] = None) -> DailyUpdateReport:
        """Run every step for each organization (all organizations with loans by default)"""
        if organization_ids is None:
            organization_ids = self.loan_manager.organization_ids()
        report = DailyUpdateReport(run_date=self.clock.today())

        for organization_id in organization_ids:
            org_report = OrganizationRunReport(organization_id=organization_id)
            for step in STEPS:
                try:
                    org_report.steps[step] = self._run_step(step, organization_id)
                except Exception as e:
                    logger.exception("Daily update step %s failed for %s", step, organization_id)
                    org_report.errors[step] = str(e)
            report.organizations.append(org_report)

        self.audit_trail.log_event(
            event_type=AuditEventType.DAILY_UPDATE_RUN,
            entity_type="system",
            entity_id="daily_update",
            metadata={
                "run_date": report.run_date,
                "organizations": len(report.organizations),
                "failed_organizations": report.failed_organizations
            }
        )
        logger.info(
            "Daily update for %s: %d organizations, %d with failures",
            report.run_date, len(report.organizations), len(report.failed_organizations)
        )
        return report

    def _run_step(self, step: str, organization_id: str) -> Any:
        if step == "delayed_days":
            return self.repayment_service.daily_delayed_days_update(organization_id)
        if step == "classification":
            return self.classification_engine.batch_classify(organization_id)
        return self.reporter.create_daily_snapshot(organization_id)


def main(argv: Optional[List[str]] = None) -> int:
    """Command line entry point for the daily update"""
    from .config import get_config
    from .logging_config import setup_logging
    from .service import LendingService

    parser = argparse.ArgumentParser(description="Run the microfinance end-of-day update")
    parser.add_argument(
        "--organization", "-o", action="append", dest="organizations",
        help="Organization to process (repeatable, default: all)"
    )
    parser.add_argument("--database", help="SQLite database path (overrides configuration)")
    args = parser.parse_args(argv)

    config = get_config()
    setup_logging(level=config.log_level, log_format=config.log_format, log_file=config.log_file)
    if args.database:
        config = config.model_copy(update={'database_path': args.database, 'use_sqlite': True})

    service = LendingService(config=config)
    try:
        report = service.daily_update_job.run(args.organizations)
    finally:
        service.close()

    for org_report in report.organizations:
        status = "ok" if org_report.succeeded else "failed: " + ", ".join(org_report.errors)
        print(f"{org_report.organization_id}: {status}")
    return 1 if report.failed_organizations else 0


if __name__ == "__main__":
    sys.exit(main())
