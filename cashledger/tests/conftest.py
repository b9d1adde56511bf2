from datetime import datetime, timezone
from decimal import Decimal

import pytest

from cashledger.clock import FrozenClock
from cashledger.config import Settings
from cashledger.container import build_ledger
from cashledger.models import TransactionStatus, TransactionType
from cashledger.storage import InMemoryStorage

MERCHANT_ID = "merchant-001"
CASHIER_ID = "cashier-001"
FINANCE_ID = "finance-001"
ADMIN_ID = "admin-001"
ORG_ID = 1

# 10:00 in Lusaka (UTC+2)
START = datetime(2024, 6, 14, 8, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def storage():
    return InMemoryStorage(seed=True)


@pytest.fixture
def ledger(storage, settings, clock):
    return build_ledger(storage, settings, clock)


@pytest.fixture
def collect(ledger):
    """Complete a merchant collection through the cashier, returning the transaction."""

    def _collect(amount, merchant_id=MERCHANT_ID, cashier_id=CASHIER_ID, float_amount=Decimal("1000000")):
        cashier_wallet = ledger.wallets.get_or_create_wallet(cashier_id)
        if cashier_wallet.balance < Decimal(amount):
            ledger.wallets.set_cashier_allocation(cashier_id, float_amount)
        transaction = ledger.transactions.create_transaction(
            merchant_id, amount, TransactionType.CASH_DIGITIZATION, to_user_id=cashier_id,
        )
        return ledger.transactions.update_transaction_status(
            transaction.id, TransactionStatus.COMPLETED, processed_by=cashier_id,
        )

    return _collect
