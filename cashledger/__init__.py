"""
Cash Ledger Core

This module provides:
- Per-user wallets with calendar-based daily resets
- Transaction lifecycle: pending → completed / rejected, one live pending per sender
- Time-boxed, single-use QR payment confirmation
- Organization limits and AML screening
- Settlement maker-checker workflow with capacity accounting
"""

from .container import CashLedger, build_ledger, get_container
from .errors import (
    AccessDeniedError,
    ActiveQrCodeExistsError,
    AlreadyUsedError,
    AmlHoldError,
    CapacityExceededError,
    CashLedgerError,
    DuplicatePendingError,
    ExpiredError,
    InvalidStateTransitionError,
    LimitExceededError,
    NotFoundError,
    ValidationError,
)
from .models import (
    Identity,
    Role,
    SettlementRequest,
    SettlementStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    Wallet,
)

__all__ = [
    "CashLedger",
    "build_ledger",
    "get_container",
    "AccessDeniedError",
    "ActiveQrCodeExistsError",
    "AlreadyUsedError",
    "AmlHoldError",
    "CapacityExceededError",
    "CashLedgerError",
    "DuplicatePendingError",
    "ExpiredError",
    "InvalidStateTransitionError",
    "LimitExceededError",
    "NotFoundError",
    "ValidationError",
    "Identity",
    "Role",
    "SettlementRequest",
    "SettlementStatus",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    "Wallet",
]
