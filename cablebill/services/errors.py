from __future__ import annotations

from typing import Any, Dict, Optional


class BillingError(RuntimeError):
    """Recoverable billing error. Nothing was committed when one is raised."""

    code = "billing_error"
    http_status = 400

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message}


class NotFound(BillingError):
    """Entity missing, soft-deleted, or not visible in the caller's tenant."""

    code = "not_found"
    http_status = 404


class Forbidden(BillingError):
    """Role or tenant mismatch."""

    code = "forbidden"
    http_status = 403


class ValidationError(BillingError):
    """Missing/invalid input or an illegal state transition."""

    code = "validation_error"
    http_status = 400


class ConflictError(BillingError):
    """Later ledger activity exists, or the result would be an illegal balance."""

    code = "conflict"
    http_status = 409


def require_positive(amount: Optional[float], field: str = "amount") -> float:
    if amount is None:
        raise ValidationError(f"{field} is required.", field=field)
    if amount <= 0:
        raise ValidationError(f"{field} must be a positive number.", field=field, value=amount)
    return float(amount)
