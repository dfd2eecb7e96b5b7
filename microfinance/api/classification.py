"""
Classification endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends

from .deps import get_lending_service, unwrap
from .schemas import to_response
from ..service import LendingService


router = APIRouter()


@router.post("/loans/{loan_id}/classify")
async def classify_loan(
    loan_id: str,
    notes: Optional[str] = None,
    organization_id: Optional[str] = None,
    service: LendingService = Depends(get_lending_service)
):
    """Classify a loan and record its provisioning"""
    classification = unwrap(service.classify_loan(loan_id, organization_id, notes))
    response = to_response(classification)
    response["provision_status"] = classification.provision_status()
    response["provision_change"] = classification.provision_change_summary()
    return response


@router.get("/loans/{loan_id}/classifications")
async def get_classification_history(
    loan_id: str,
    organization_id: Optional[str] = None,
    service: LendingService = Depends(get_lending_service)
):
    """Classification records for a loan, oldest first"""
    history = unwrap(service.get_classification_history(loan_id, organization_id))
    return {"loan_id": loan_id, "classifications": to_response(history)}


@router.post("/organizations/{organization_id}/classify")
async def batch_classify(
    organization_id: str,
    service: LendingService = Depends(get_lending_service)
):
    """Classify every active loan in an organization"""
    return to_response(unwrap(service.batch_classify(organization_id)))
