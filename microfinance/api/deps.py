"""
Service dependencies and result-to-HTTP mapping
"""

from typing import Any, Optional

from fastapi import HTTPException

from ..config import get_config
from ..errors import MicrofinanceError, OperationResult
from ..service import LendingService

ERROR_STATUS = {
    "validation_error": 400,
    "invalid_amount": 400,
    "not_found": 404,
    "duplicate_payment": 409,
    "insufficient_data": 409,
    "persistence_error": 500,
}


# Global lending service instance, created on first use
lending_service: Optional[LendingService] = None


def get_lending_service() -> LendingService:
    global lending_service
    if lending_service is None:
        lending_service = LendingService(config=get_config())
    return lending_service


def unwrap(result: OperationResult) -> Any:
    """Return a successful result's data or raise the matching HTTP error"""
    if result.success:
        return result.data
    raise HTTPException(
        status_code=ERROR_STATUS.get(result.error_code, 400),
        detail={"error_code": result.error_code, "message": result.message}
    )


def http_error(error: MicrofinanceError) -> HTTPException:
    return HTTPException(
        status_code=ERROR_STATUS.get(error.code, 400),
        detail={"error_code": error.code, "message": error.message}
    )
