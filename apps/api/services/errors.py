"""Billing error taxonomy.

Every error is an ``HTTPException`` so services can raise it directly and
FastAPI renders it as ``{"detail": {"error": CODE, "message": ..., **context}}``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import HTTPException


class BillingError(HTTPException):
    status_code_default = 500
    code = "SERVER_ERROR"

    def __init__(self, message: str, *, status_code: Optional[int] = None, **context: Any):
        self.message = message
        self.context: Dict[str, Any] = context
        detail: Dict[str, Any] = {"error": self.code, "message": message}
        detail.update(context)
        super().__init__(status_code=status_code or self.status_code_default, detail=detail)

    def __str__(self) -> str:
        return self.message


class ValidationError(BillingError):
    status_code_default = 400
    code = "VALIDATION_ERROR"


class InvalidTierDefinitionError(ValidationError):
    code = "INVALID_TIER_DEFINITION"


class InvalidAmountError(ValidationError):
    code = "INVALID_AMOUNT"


class AuthError(BillingError):
    status_code_default = 401
    code = "UNAUTHORIZED"


class NotFoundError(BillingError):
    status_code_default = 404
    code = "NOT_FOUND"


class ConflictError(BillingError):
    status_code_default = 409
    code = "CONFLICT"


class NoBillablePeriodError(ConflictError):
    code = "NO_BILLABLE_PERIOD"


class InsufficientCreditError(BillingError):
    status_code_default = 402
    code = "INSUFFICIENT_CREDITS"

    def __init__(self, balance: int, required: int):
        self.balance = balance
        self.required = required
        super().__init__(
            f"Insufficient credits. Required: {required}, available: {balance}.",
            balance=balance,
            required=required,
        )


class UpstreamError(BillingError):
    status_code_default = 502
    code = "UPSTREAM_ERROR"


class PersistenceError(BillingError):
    status_code_default = 500
    code = "PERSISTENCE_ERROR"


class RateLimitError(BillingError):
    status_code_default = 429
    code = "RATE_LIMITED"

    def __init__(self, scope: str, retry_after: int):
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded for {scope}. Retry in {retry_after}s.",
            scope=scope,
            retry_after=retry_after,
        )
        self.headers = {"Retry-After": str(retry_after)}
