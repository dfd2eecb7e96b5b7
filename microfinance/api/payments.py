"""
Repayment and transaction endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .deps import get_lending_service, http_error, unwrap
from .schemas import PaymentRequestModel, ReversalRequest, to_response
from ..errors import MicrofinanceError
from ..service import LendingService


router = APIRouter()


@router.post("/loans/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
async def process_payment(
    loan_id: str,
    request: PaymentRequestModel,
    organization_id: Optional[str] = None,
    service: LendingService = Depends(get_lending_service)
):
    """Apply a repayment to a loan"""
    try:
        payment = request.to_request(organization_id)
    except MicrofinanceError as e:
        raise http_error(e)

    outcome = unwrap(service.process_payment(loan_id, payment))
    allocation = outcome.allocation
    return {
        "transaction_id": outcome.transaction.id,
        "transaction_ref": outcome.transaction.transaction_ref,
        "principal_paid": to_response(allocation.principal_paid),
        "interest_paid": to_response(allocation.interest_paid),
        "penalty_paid": to_response(allocation.penalty_paid),
        "unapplied_amount": to_response(allocation.remaining_amount),
        "delayed_days_info": to_response(allocation.delayed_days_info),
        "blocked_payments": to_response(allocation.blocked_payments),
        "loan_status": outcome.updated_loan_status.value,
        "classification_change": to_response(outcome.classification_change),
        "receipt": to_response(outcome.receipt),
        "message": "Payment processed successfully"
    }


@router.get("/loans/{loan_id}/transactions")
async def get_loan_transactions(
    loan_id: str,
    include_reversed: bool = False,
    organization_id: Optional[str] = None,
    service: LendingService = Depends(get_lending_service)
):
    """List a loan's repayment transactions"""
    transactions = unwrap(service.get_loan_transactions(loan_id, include_reversed, organization_id))
    return {"loan_id": loan_id, "transactions": to_response(transactions)}


@router.get("/loans/{loan_id}/payment-summary")
async def get_payment_summary(
    loan_id: str,
    organization_id: Optional[str] = None,
    service: LendingService = Depends(get_lending_service)
):
    """Totals paid, outstanding and delayed days for a loan"""
    return to_response(unwrap(service.get_payment_summary(loan_id, organization_id)))


@router.post("/transactions/{transaction_id}/reverse")
async def reverse_transaction(
    transaction_id: str,
    request: ReversalRequest,
    organization_id: Optional[str] = None,
    service: LendingService = Depends(get_lending_service)
):
    """Reverse a repayment with an offsetting entry"""
    reversal = unwrap(service.reverse_transaction(
        transaction_id, request.reason, request.reversed_by, organization_id
    ))
    return {
        "reversal_id": reversal.id,
        "transaction_ref": reversal.transaction_ref,
        "reversal_of": reversal.reversal_of,
        "amount": to_response(reversal.amount_paid),
        "message": "Transaction reversed successfully"
    }
