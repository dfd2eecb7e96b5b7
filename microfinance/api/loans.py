"""
Loan endpoints
"""

from decimal import Decimal, InvalidOperation
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from .deps import get_lending_service, http_error, unwrap
from .schemas import (
    ApproveLoanRequest, CollateralRequest, CreateLoanRequest, DisburseLoanRequest, WriteOffRequest,
    to_response
)
from ..errors import MicrofinanceError
from ..loans import LoanStatus
from ..service import LendingService


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    service: LendingService = Depends(get_lending_service)
):
    """Capture a loan application"""
    try:
        principal = request.principal.to_money()
        modality = request.to_modality()
    except MicrofinanceError as e:
        raise http_error(e)

    loan = unwrap(service.create_loan(
        organization_id=request.organization_id,
        borrower_id=request.borrower_id,
        principal=principal,
        annual_interest_rate=request.annual_interest_rate,
        term_months=request.term_months,
        interest_method=request.interest_method,
        repayment_frequency=request.repayment_frequency,
        repayment_modality=modality,
        single_payment_months=request.single_payment_months,
        loan_number=request.loan_number,
        purpose=request.purpose
    ))
    return {
        "loan_id": loan.id,
        "loan_number": loan.loan_number,
        "status": loan.status.value,
        "message": "Loan created successfully"
    }


@router.get("")
async def list_loans(
    organization_id: str,
    status_filter: Optional[List[str]] = Query(None, alias="status"),
    offset: int = 0,
    limit: int = 100,
    service: LendingService = Depends(get_lending_service)
):
    """List an organization's loans"""
    try:
        statuses = [LoanStatus(value) for value in status_filter] if status_filter else None
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    loans = unwrap(service.list_loans(organization_id, statuses, offset, limit))
    return {"loans": to_response(loans), "offset": offset, "limit": limit}


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    organization_id: Optional[str] = None,
    service: LendingService = Depends(get_lending_service)
):
    """Get loan details"""
    return to_response(unwrap(service.get_loan(loan_id, organization_id)))


@router.post("/{loan_id}/approve")
async def approve_loan(
    loan_id: str,
    request: ApproveLoanRequest,
    organization_id: Optional[str] = None,
    service: LendingService = Depends(get_lending_service)
):
    """Approve a pending loan"""
    loan = unwrap(service.approve_loan(loan_id, request.approved_by, organization_id))
    return {"loan_id": loan.id, "status": loan.status.value, "message": "Loan approved successfully"}


@router.post("/{loan_id}/disburse")
async def disburse_loan(
    loan_id: str,
    request: DisburseLoanRequest,
    organization_id: Optional[str] = None,
    service: LendingService = Depends(get_lending_service)
):
    """Disburse an approved loan and generate its schedule"""
    loan = unwrap(service.get_loan(loan_id, organization_id))
    try:
        fee = request.disbursement_fee.to_money() if request.disbursement_fee else None
        custom = [item.to_custom_installment(loan.currency) for item in request.custom_installments]
    except MicrofinanceError as e:
        raise http_error(e)
    except (ArithmeticError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))

    result = unwrap(service.disburse_loan(
        loan_id, request.disbursement_date, custom or None, fee, request.disbursed_by, organization_id
    ))
    schedule = result.schedule
    return {
        "loan": to_response(result.loan),
        "schedule": {
            "modality": schedule.modality.value,
            "installments": to_response(schedule.installments),
            "total_principal": to_response(schedule.total_principal),
            "total_interest": to_response(schedule.total_interest),
            "total_repayable": to_response(schedule.total_repayable),
            "warnings": to_response(schedule.warnings),
        },
        "message": "Loan disbursed successfully"
    }


@router.post("/{loan_id}/write-off")
async def write_off_loan(
    loan_id: str,
    request: WriteOffRequest,
    organization_id: Optional[str] = None,
    service: LendingService = Depends(get_lending_service)
):
    """Write off an active loan"""
    loan = unwrap(service.write_off_loan(loan_id, request.reason, request.written_off_by, organization_id))
    return {"loan_id": loan.id, "status": loan.status.value, "message": "Loan written off"}


@router.get("/{loan_id}/schedule")
async def get_loan_schedule(
    loan_id: str,
    organization_id: Optional[str] = None,
    service: LendingService = Depends(get_lending_service)
):
    """Get the repayment schedule"""
    lines = unwrap(service.get_schedule(loan_id, organization_id))
    return {"loan_id": loan_id, "installments": to_response(lines)}


@router.post("/{loan_id}/collateral", status_code=status.HTTP_201_CREATED)
async def register_collateral(
    loan_id: str,
    request: CollateralRequest,
    organization_id: Optional[str] = None,
    service: LendingService = Depends(get_lending_service)
):
    """Pledge collateral against a loan"""
    try:
        collateral_type = request.to_collateral_type()
        value = request.collateral_value.to_money()
        extended = request.extended_value.to_money() if request.extended_value else None
        haircut = Decimal(request.haircut_rate) if request.haircut_rate is not None else None
    except MicrofinanceError as e:
        raise http_error(e)
    except InvalidOperation:
        raise HTTPException(status_code=400, detail=f"Invalid haircut rate {request.haircut_rate!r}")

    collateral = unwrap(service.register_collateral(
        loan_id, collateral_type, value, extended, haircut, request.description, organization_id
    ))
    return to_response(collateral)


@router.get("/{loan_id}/performance")
async def get_loan_performance(
    loan_id: str,
    organization_id: Optional[str] = None,
    service: LendingService = Depends(get_lending_service)
):
    """Repayment progress for a loan"""
    return to_response(unwrap(service.get_loan_performance(loan_id, organization_id)))
