# settlement/core/errors.py

from typing import Dict, Optional

from fastapi import HTTPException, status

# Error categories surfaced to callers
VALIDATION = "VALIDATION"
CONFLICT = "CONFLICT"
INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
RATE_LIMITED = "RATE_LIMITED"
NOT_FOUND = "NOT_FOUND"
FORBIDDEN = "FORBIDDEN"
UNAVAILABLE = "EXTERNAL_DEPENDENCY_DEGRADED"


class SettlementError(HTTPException):
    """
    Per-request failure with a stable error code.

    Raised from services the same way an HTTPException would be, so routers
    need no translation layer. The response body is
    ``{"detail": {"code": ..., "category": ..., "message": ...}}``.
    """

    code: str = "SETTLEMENT_ERROR"
    category: str = VALIDATION
    status_code_default: int = status.HTTP_400_BAD_REQUEST

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        if code:
            self.code = code
        self.message = message
        super().__init__(
            status_code=status_code or self.status_code_default,
            detail={"code": self.code, "category": self.category, "message": message},
            headers=headers,
        )


class ValidationFailed(SettlementError):
    category = VALIDATION
    status_code_default = status.HTTP_400_BAD_REQUEST


class InvalidAmount(ValidationFailed):
    code = "INVALID_AMOUNT"
    status_code_default = status.HTTP_422_UNPROCESSABLE_ENTITY


class ConflictError(SettlementError):
    category = CONFLICT
    status_code_default = status.HTTP_409_CONFLICT


class InsufficientFunds(SettlementError):
    code = "INSUFFICIENT_BALANCE"
    category = INSUFFICIENT_FUNDS
    status_code_default = status.HTTP_402_PAYMENT_REQUIRED


class NotFound(SettlementError):
    category = NOT_FOUND
    status_code_default = status.HTTP_404_NOT_FOUND


class Forbidden(SettlementError):
    category = FORBIDDEN
    status_code_default = status.HTTP_403_FORBIDDEN


class RateLimited(SettlementError):
    code = "RATE_LIMITED"
    category = RATE_LIMITED
    status_code_default = status.HTTP_429_TOO_MANY_REQUESTS


class StoreContention(SettlementError):
    code = "STORE_CONTENTION"
    category = UNAVAILABLE
    status_code_default = status.HTTP_503_SERVICE_UNAVAILABLE
