"""Wallet Store: per-user balances, rolling daily counters and ledger postings."""

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from .clock import Clock, business_date, utcnow
from .config import Settings, get_settings
from .errors import LimitExceededError, NotFoundError
from .models import LedgerPosting, PostingLeg, Role, TransferLimitCheck, Wallet, truncate_amount
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def format_money(amount: Decimal, currency: str = "ZMW") -> str:
    return f"{currency} {truncate_amount(amount):,}"


class WalletStore:
    def __init__(self, storage: InMemoryStorage, settings: Optional[Settings] = None, clock: Optional[Clock] = None):
        self.storage = storage
        self.settings = settings or get_settings()
        self.clock = clock or utcnow

    def get_or_create_wallet(self, user_id: str) -> Wallet:
        row = self.storage.get_wallet(user_id)
        if row is None:
            now = self.clock()
            row = self.storage.insert_wallet({
                "user_id": user_id,
                "balance": ZERO,
                "daily_collected": ZERO,
                "daily_transferred": ZERO,
                "last_reset_date": now,
                "last_transaction_date": None,
                "is_active": True,
                "updated_at": now,
            })
            logger.info("Created wallet for user %s", user_id)
            return Wallet(**row)

        wallet = Wallet(**row)
        if self.check_and_reset_daily_spending(wallet):
            return Wallet(**self.storage.get_wallet(user_id))
        return wallet

    def check_and_reset_daily_spending(self, wallet: Wallet) -> bool:
        """Reset role counters when the business calendar date has moved on.

        Merchants start each day with a zero balance and zero collections;
        cashiers only lose their transferred counter.  Returns True if a
        reset was applied.
        """
        now = self.clock()
        today = business_date(now, self.settings.timezone)
        with self.storage.unit_of_work() as storage:
            current = storage.get_wallet(wallet.user_id)
            if current is None:
                return False
            if business_date(current["last_reset_date"], self.settings.timezone) == today:
                return False

            user = storage.get_user(wallet.user_id)
            role = user["role"] if user else None
            changes = {"last_reset_date": now, "updated_at": now}
            if role == Role.MERCHANT.value:
                changes.update(daily_collected=ZERO, balance=ZERO)
            elif role == Role.CASHIER.value:
                changes.update(daily_transferred=ZERO)
            storage.update_wallet(wallet.user_id, **changes)

        logger.info("Daily reset applied to %s wallet %s for %s", role or "unknown", wallet.user_id, today)
        return True

    def reset_all_wallets(self) -> int:
        reset_count = 0
        for row in self.storage.list_wallets():
            if self.check_and_reset_daily_spending(Wallet(**row)):
                reset_count += 1
        if reset_count:
            logger.info("Daily reset completed for %d wallets", reset_count)
        return reset_count

    def force_reset(self, user_id: str) -> Wallet:
        """Administrative reset that ignores the calendar check."""
        wallet = self.get_or_create_wallet(user_id)
        self.storage.update_wallet(wallet.user_id, last_reset_date=self.clock() - timedelta(days=1))
        self.check_and_reset_daily_spending(wallet)
        return Wallet(**self.storage.get_wallet(user_id))

    def check_transfer_limits(self, user_id: str, amount) -> TransferLimitCheck:
        amount = truncate_amount(amount)
        wallet = self.get_or_create_wallet(user_id)
        user = self.storage.get_user(user_id)
        currency = self.settings.currency

        if not wallet.is_active:
            return TransferLimitCheck(allowed=False, reason="Wallet is inactive", code="wallet_inactive", remaining=ZERO)

        role = user["role"] if user else None
        if role == Role.CASHIER.value:
            if amount > wallet.balance:
                return TransferLimitCheck(
                    allowed=False,
                    code="insufficient_balance",
                    reason=f"Insufficient wallet balance. Available: {format_money(wallet.balance, currency)}",
                    remaining=wallet.balance,
                )
            limit = self.settings.limits.cashier_daily_transfer_limit
            remaining = max(limit - wallet.daily_transferred, ZERO)
            if wallet.daily_transferred + amount > limit:
                return TransferLimitCheck(
                    allowed=False,
                    code="transfer",
                    reason=f"Daily transfer limit exceeded. Remaining: {format_money(remaining, currency)}",
                    remaining=remaining,
                )
            return TransferLimitCheck(allowed=True, remaining=min(remaining, wallet.balance) - amount)

        if role == Role.MERCHANT.value:
            limit = self.settings.limits.merchant_daily_collection_limit
            remaining = max(limit - wallet.daily_collected, ZERO)
            if wallet.daily_collected + amount > limit:
                return TransferLimitCheck(
                    allowed=False,
                    code="collection",
                    reason=f"Daily collection limit exceeded. Remaining: {format_money(remaining, currency)}",
                    remaining=remaining,
                )
            return TransferLimitCheck(allowed=True, remaining=remaining - amount)

        return TransferLimitCheck(allowed=True)

    def update_daily_transaction_amounts(
        self, user_id: str, amount, role: Role, transaction_id: int
    ) -> list[LedgerPosting]:
        """Post the wallet legs of a completed transaction for one party.

        A merchant credit fans in: the merchant leg and the organization leg
        (the finance officer's wallet) are posted as one unit of work.  Legs
        already posted for this transaction are skipped, so a repeated call
        changes nothing.
        """
        amount = truncate_amount(amount)
        role = Role(role)
        postings: list[LedgerPosting] = []

        with self.storage.unit_of_work() as storage:
            user = storage.get_user(user_id)
            organization_id = user.get("organization_id") if user else None

            if role == Role.MERCHANT:
                posting = self._post(
                    user_id, PostingLeg.MERCHANT, amount,
                    transaction_id=transaction_id, organization_id=organization_id,
                    counter="daily_collected",
                )
                if posting:
                    postings.append(posting)
                finance_user_id = self.finance_wallet_owner(organization_id) if organization_id else None
                if finance_user_id is None:
                    logger.warning(
                        "No finance officer for organization %s; organization leg of transaction %s skipped",
                        organization_id, transaction_id,
                    )
                else:
                    posting = self._post(
                        finance_user_id, PostingLeg.ORGANIZATION, amount,
                        transaction_id=transaction_id, organization_id=organization_id,
                    )
                    if posting:
                        postings.append(posting)

            elif role == Role.CASHIER:
                posting = self._post(
                    user_id, PostingLeg.CASHIER, -amount,
                    transaction_id=transaction_id, organization_id=organization_id,
                    counter="daily_transferred",
                )
                if posting:
                    postings.append(posting)

        return postings

    def debit_organization_wallet(self, organization_id: int, amount, settlement_id: int) -> Optional[LedgerPosting]:
        finance_user_id = self.finance_wallet_owner(organization_id)
        if finance_user_id is None:
            raise NotFoundError(f"Organization {organization_id} has no finance wallet")
        return self._post(
            finance_user_id, PostingLeg.SETTLEMENT, -truncate_amount(amount),
            settlement_id=settlement_id, organization_id=organization_id,
        )

    def _post(
        self,
        user_id: str,
        leg: PostingLeg,
        delta: Decimal,
        transaction_id: Optional[int] = None,
        settlement_id: Optional[int] = None,
        organization_id: Optional[int] = None,
        counter: Optional[str] = None,
    ) -> Optional[LedgerPosting]:
        source = ("transaction", transaction_id) if settlement_id is None else ("settlement", settlement_id)
        key = source + (user_id, leg.value)

        with self.storage.unit_of_work() as storage:
            if storage.has_posting(key):
                logger.warning("Posting %s already applied; skipping", key)
                return None

            wallet = self.get_or_create_wallet(user_id)
            new_balance = wallet.balance + delta
            if new_balance < ZERO:
                raise LimitExceededError(
                    f"Insufficient wallet balance. Available: {format_money(wallet.balance, self.settings.currency)}",
                    code="insufficient_balance",
                )

            now = self.clock()
            changes = {"balance": new_balance, "last_transaction_date": now, "updated_at": now}
            if counter:
                changes[counter] = getattr(wallet, counter) + abs(delta)
            storage.update_wallet(user_id, **changes)

            row = {
                "id": uuid4(),
                "transaction_id": transaction_id,
                "settlement_id": settlement_id,
                "user_id": user_id,
                "organization_id": organization_id,
                "leg": leg,
                "amount": delta,
                "balance_after": new_balance,
                "created_at": now,
            }
            storage.add_posting(row, key)

        logger.info("Posted %s leg %s to wallet %s (balance %s)", leg.value, delta, user_id, new_balance)
        return LedgerPosting(**row)

    def finance_wallet_owner(self, organization_id: int) -> Optional[str]:
        finance_users = sorted(
            self.storage.list_users(organization_id=organization_id, role=Role.FINANCE.value),
            key=lambda u: u["id"],
        )
        return finance_users[0]["id"] if finance_users else None

    def todays_collections(self, organization_id: int) -> Decimal:
        today = business_date(self.clock(), self.settings.timezone)
        postings = self.storage.list_postings(
            lambda p: p["organization_id"] == organization_id
            and p["leg"] == PostingLeg.MERCHANT
            and business_date(p["created_at"], self.settings.timezone) == today
        )
        return sum((p["amount"] for p in postings), ZERO)

    def set_cashier_allocation(self, user_id: str, amount) -> Wallet:
        amount = truncate_amount(amount)
        if amount < ZERO:
            raise LimitExceededError("Allocation cannot be negative", code="insufficient_balance")
        self.get_or_create_wallet(user_id)
        now = self.clock()
        row = self.storage.update_wallet(
            user_id, balance=amount, daily_transferred=ZERO, last_reset_date=now, updated_at=now,
        )
        logger.info("Cashier %s allocated %s for the day", user_id, amount)
        return Wallet(**row)

    def list_postings(self, user_id: str) -> list[LedgerPosting]:
        rows = self.storage.list_postings(lambda p: p["user_id"] == user_id)
        rows.sort(key=lambda p: p["created_at"], reverse=True)
        return [LedgerPosting(**p) for p in rows]
