"""
Portfolio reporting and batch endpoints
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from .deps import get_lending_service, unwrap
from .schemas import to_response
from ..service import LendingService


router = APIRouter()


@router.post("/{organization_id}/snapshots")
async def create_daily_snapshot(
    organization_id: str,
    snapshot_date: Optional[date] = None,
    service: LendingService = Depends(get_lending_service)
):
    """Take (or return the existing) snapshot for a day"""
    snapshot = unwrap(service.create_daily_snapshot(organization_id, snapshot_date))
    response = to_response(snapshot)
    response["classification_distribution"] = to_response(snapshot.classification_distribution())
    response["risk_profile"] = snapshot.risk_profile()
    return response


@router.get("/{organization_id}/portfolio-at-risk")
async def get_portfolio_at_risk(
    organization_id: str,
    as_of: Optional[date] = None,
    service: LendingService = Depends(get_lending_service)
):
    """Portfolio at risk by arrears bucket"""
    return to_response(unwrap(service.calculate_portfolio_at_risk(organization_id, as_of)))


@router.get("/{organization_id}/trends")
async def get_portfolio_trends(
    organization_id: str,
    start_date: date,
    end_date: date,
    service: LendingService = Depends(get_lending_service)
):
    """Snapshots in a period with period-over-period changes"""
    if start_date > end_date:
        raise HTTPException(status_code=400, detail="start_date must not be after end_date")
    return to_response(unwrap(service.get_portfolio_trends(organization_id, start_date, end_date)))


@router.get("/{organization_id}/classification-movements")
async def get_classification_movements(
    organization_id: str,
    start_date: date,
    end_date: date,
    service: LendingService = Depends(get_lending_service)
):
    """Loans entering and leaving each class in a period"""
    if start_date > end_date:
        raise HTTPException(status_code=400, detail="start_date must not be after end_date")
    return to_response(unwrap(service.get_classification_movements(organization_id, start_date, end_date)))


@router.post("/{organization_id}/delayed-days")
async def daily_delayed_days_update(
    organization_id: str,
    service: LendingService = Depends(get_lending_service)
):
    """Run the delayed days update for an organization"""
    return to_response(unwrap(service.daily_delayed_days_update(organization_id)))


@router.post("/{organization_id}/daily-update")
async def run_daily_update(
    organization_id: str,
    service: LendingService = Depends(get_lending_service)
):
    """Run delayed days, classification and snapshot for an organization"""
    report = unwrap(service.run_daily_update([organization_id]))
    org_report = report.organizations[0]
    return {
        "organization_id": organization_id,
        "run_date": report.run_date.isoformat(),
        "succeeded": org_report.succeeded,
        "steps": to_response(org_report.steps),
        "errors": org_report.errors
    }
