"""Error taxonomy for the cash ledger core.

Every error is recoverable: it carries a human message, a machine-readable
``code`` and, where relevant, a ``details`` snapshot (usage, capacity, alerts)
so callers can explain a denial without re-querying.
"""

from decimal import Decimal
from typing import Any, Optional


class CashLedgerError(Exception):
    default_code = "error"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "code": self.code, "details": _jsonable(self.details)}


class ValidationError(CashLedgerError):
    default_code = "validation_error"


class InvalidStateTransitionError(ValidationError):
    default_code = "invalid_state_transition"


class AccessDeniedError(CashLedgerError):
    default_code = "access_denied"


class NotFoundError(CashLedgerError):
    default_code = "not_found"


class DuplicatePendingError(CashLedgerError):
    default_code = "PENDING_TRANSACTION_EXISTS"


class ActiveQrCodeExistsError(CashLedgerError):
    default_code = "qr_code_active"


class LimitExceededError(CashLedgerError):
    default_code = "limit_exceeded"

    def __init__(self, message: str, code: Optional[str] = None, usage: Optional[dict] = None):
        super().__init__(message, code=code, details={"usage": usage} if usage else None)
        self.usage = usage


class CapacityExceededError(CashLedgerError):
    default_code = "capacity_exceeded"

    def __init__(self, message: str, capacity: Decimal, requested: Decimal, **breakdown: Decimal):
        super().__init__(message, details={"capacity": capacity, "requested": requested, **breakdown})
        self.capacity = capacity
        self.requested = requested


class AmlHoldError(CashLedgerError):
    default_code = "aml_hold"

    def __init__(self, message: str, alerts: Optional[list] = None):
        super().__init__(message, details={"alerts": alerts or []})
        self.alerts = alerts or []


class ExpiredError(CashLedgerError):
    default_code = "expired"

    def __init__(self, message: str, seconds_expired: Optional[int] = None):
        super().__init__(message, details={"seconds_expired": seconds_expired})
        self.seconds_expired = seconds_expired


class AlreadyUsedError(CashLedgerError):
    default_code = "already_used"


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    return value
