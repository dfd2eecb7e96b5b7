"""
Pydantic schemas for API requests and responses
"""

from dataclasses import fields, is_dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from ..collateral import CollateralType
from ..currency import Currency, Money
from ..errors import ReconciliationWarning, ValidationError
from ..payments import PaymentMethod, PaymentRequest
from ..schedules import CustomInstallment, RepaymentModality


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (RWF, KES, USD, etc.)")

    def to_money(self) -> Money:
        try:
            return Money(Decimal(self.amount), Currency.from_code(self.currency))
        except (ArithmeticError, ValueError) as e:
            raise ValidationError(f"Invalid money value {self.amount} {self.currency}: {e}")

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


def _enum(enum_cls, value: str, label: str):
    try:
        return enum_cls(value.lower())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Unknown {label} {value!r} (expected one of: {allowed})")


# Loan schemas
class CreateLoanRequest(BaseModel):
    organization_id: str
    borrower_id: str
    principal: MoneyModel
    annual_interest_rate: str = Field(..., description="Annual rate in percent, e.g. '12'")
    term_months: int
    interest_method: str = Field("flat", description="flat or reducing_balance")
    repayment_frequency: str = Field("monthly", description="daily, weekly, biweekly, monthly, ...")
    repayment_modality: str = Field("standard", description="standard, interest_only, single_payment, customized")
    single_payment_months: Optional[int] = None
    loan_number: Optional[str] = None
    purpose: Optional[str] = None

    def to_modality(self) -> RepaymentModality:
        return _enum(RepaymentModality, self.repayment_modality, "repayment modality")


class ApproveLoanRequest(BaseModel):
    approved_by: Optional[str] = None


class CustomInstallmentModel(BaseModel):
    installment_number: int
    amount: str
    due_date: Optional[date] = None
    principal: Optional[str] = None
    interest: Optional[str] = None
    notes: Optional[str] = None

    def to_custom_installment(self, currency: Currency) -> CustomInstallment:
        return CustomInstallment(
            installment_number=self.installment_number,
            amount=Money(Decimal(self.amount), currency),
            due_date=self.due_date,
            principal=Money(Decimal(self.principal), currency) if self.principal is not None else None,
            interest=Money(Decimal(self.interest), currency) if self.interest is not None else None,
            notes=self.notes
        )


class DisburseLoanRequest(BaseModel):
    disbursement_date: Optional[date] = None
    disbursement_fee: Optional[MoneyModel] = None
    custom_installments: List[CustomInstallmentModel] = Field(default_factory=list)
    disbursed_by: Optional[str] = None


class WriteOffRequest(BaseModel):
    reason: str
    written_off_by: Optional[str] = None


class CollateralRequest(BaseModel):
    collateral_type: str = Field(..., description="movable, immovable, financial, guarantee, other")
    collateral_value: MoneyModel
    extended_value: Optional[MoneyModel] = None
    haircut_rate: Optional[str] = Field(None, description="Overrides the type haircut, e.g. '0.20'")
    description: Optional[str] = None

    def to_collateral_type(self) -> CollateralType:
        return _enum(CollateralType, self.collateral_type, "collateral type")


# Repayment schemas
class PaymentRequestModel(BaseModel):
    amount: MoneyModel
    payment_date: Optional[date] = None
    payment_method: str = "cash"
    repayment_proof_url: Optional[str] = None
    notes: Optional[str] = None
    received_by: Optional[str] = None

    def to_request(self, organization_id: Optional[str] = None) -> PaymentRequest:
        return PaymentRequest(
            amount=self.amount.to_money(),
            payment_date=self.payment_date,
            payment_method=_enum(PaymentMethod, self.payment_method, "payment method"),
            repayment_proof_url=self.repayment_proof_url,
            notes=self.notes,
            received_by=self.received_by,
            organization_id=organization_id
        )


class ReversalRequest(BaseModel):
    reason: str
    reversed_by: Optional[str] = None


def to_response(value: Any) -> Any:
    """Convert engine values (dataclasses, Money, enums, dates) to JSON-ready data"""
    if isinstance(value, Money):
        return MoneyModel.from_money(value).model_dump()
    if isinstance(value, ReconciliationWarning):
        return {
            'message': value.message,
            'expected_total': to_response(value.expected_total),
            'actual_total': to_response(value.actual_total),
        }
    if isinstance(value, Currency):
        return value.code
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if is_dataclass(value):
        return {f.name: to_response(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, dict):
        return {str(k): to_response(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_response(v) for v in value]
    return value
