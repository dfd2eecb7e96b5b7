"""Exception hierarchy and operation results for the lending engine."""

from dataclasses import dataclass
from typing import Any, Optional


class MicrofinanceError(Exception):
    """Base exception for all lending engine errors."""

    code = "error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(MicrofinanceError):
    """Raised when input is malformed or out of range."""

    code = "validation_error"


class InvalidAmountError(ValidationError):
    """Raised when a payment amount falls outside the accepted range."""

    code = "invalid_amount"


class NotFoundError(MicrofinanceError):
    """Raised when a loan, transaction or organization is absent or belongs to another tenant."""

    code = "not_found"


class DuplicatePaymentError(MicrofinanceError):
    """Raised when a payment matches an active transaction already on the loan."""

    code = "duplicate_payment"


class InsufficientDataError(MicrofinanceError):
    """Raised when required derived data, such as a repayment schedule, does not exist yet."""

    code = "insufficient_data"


class PersistenceError(MicrofinanceError):
    """Raised when the storage backend fails."""

    code = "persistence_error"


class ReconciliationWarning(UserWarning):
    """Customized schedule totals differ from the calculated minimum beyond tolerance."""

    def __init__(self, message: str, expected_total: Any = None, actual_total: Any = None):
        super().__init__(message)
        self.message = message
        self.expected_total = expected_total
        self.actual_total = actual_total


@dataclass
class OperationResult:
    """Typed success/failure result returned at the service boundary"""
    success: bool
    message: str
    data: Any = None
    error_code: Optional[str] = None
    detail: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None, message: str = "OK") -> 'OperationResult':
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, error_code: str, message: str, detail: Optional[str] = None) -> 'OperationResult':
        return cls(success=False, message=message, error_code=error_code, detail=detail)
