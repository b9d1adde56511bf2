"""Transaction lifecycle: pending -> completed | rejected, single-flight per sender."""

import logging
import secrets
from datetime import timedelta
from typing import Optional

from .aml_monitor import AmlMonitor
from .clock import Clock, utcnow
from .config import Settings, get_settings
from .errors import (
    AccessDeniedError,
    AmlHoldError,
    DuplicatePendingError,
    ExpiredError,
    InvalidStateTransitionError,
    LimitExceededError,
    NotFoundError,
    ValidationError,
)
from .limits import OrganizationLimitValidator
from .models import (
    AmlAlert,
    AmlReviewItem,
    Document,
    Priority,
    Role,
    Transaction,
    TransactionStatus,
    TransactionType,
    truncate_amount,
)
from .storage import InMemoryStorage, UniqueViolation
from .wallets import WalletStore

logger = logging.getLogger(__name__)

TIMED_OUT = "timed out"
SYSTEM_ACCOUNT = "system"
REVIEWER_ROLES = {Role.ADMIN.value, Role.FINANCE.value}


class TransactionService:
    def __init__(
        self,
        storage: InMemoryStorage,
        wallets: WalletStore,
        limits: OrganizationLimitValidator,
        aml: AmlMonitor,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        self.storage = storage
        self.wallets = wallets
        self.limits = limits
        self.aml = aml
        self.settings = settings or get_settings()
        self.clock = clock or utcnow

    def create_transaction(
        self,
        from_user_id: str,
        amount,
        type: TransactionType,
        to_user_id: Optional[str] = None,
        description: Optional[str] = None,
        status: TransactionStatus = TransactionStatus.PENDING,
        priority: Priority = Priority.MEDIUM,
    ) -> Transaction:
        amount = truncate_amount(amount)
        if amount <= 0:
            raise ValidationError("Amount must be at least one whole currency unit", code="invalid_amount")
        type = TransactionType(type)
        status = TransactionStatus(status)
        if status == TransactionStatus.REJECTED:
            raise ValidationError("Transactions cannot be created as rejected", code="invalid_status")
        to_user_id = to_user_id or SYSTEM_ACCOUNT
        # QR payments only complete through a verified scan.
        if type == TransactionType.QR_CODE_PAYMENT and status != TransactionStatus.PENDING:
            logger.info("QR payment from %s forced to pending", from_user_id)
            status = TransactionStatus.PENDING

        self.limits.enforce(from_user_id, amount)

        screening = self.aml.check_transaction_for_aml_violations(from_user_id, amount, type.value)
        requires_review = False
        if screening.requires_manual_review:
            requires_review = True
            if status == TransactionStatus.COMPLETED:
                logger.warning(
                    "AML score %d holds transaction from %s for manual review",
                    screening.max_risk_score, from_user_id,
                )
                status = TransactionStatus.PENDING

        if status == TransactionStatus.COMPLETED:
            self._check_party_limits(from_user_id, to_user_id, amount)

        now = self.clock()
        existing = self.storage.live_pending_for_sender(from_user_id, now)
        if existing:
            raise self._duplicate_pending(from_user_id, existing["reference"])

        row = {
            "from_user_id": from_user_id,
            "to_user_id": to_user_id,
            "amount": amount,
            "type": type,
            "status": status,
            "priority": priority,
            "description": description,
            "rejection_reason": None,
            "processed_by": None,
            "requires_review": requires_review,
            "expires_at": now + timedelta(seconds=self.settings.transactions.pending_ttl_seconds)
            if status == TransactionStatus.PENDING else None,
            "created_at": now,
            "updated_at": now,
        }

        with self.storage.unit_of_work() as storage:
            row = self._insert_with_unique_reference(storage, row, now)
            if screening.alerts:
                storage.add_aml_alerts(row["id"], [a.model_dump() for a in screening.alerts])
            transaction = Transaction(**row)
            if status == TransactionStatus.COMPLETED:
                self._apply_completion(transaction)

        logger.info(
            "Created transaction %s (%s %s) from %s to %s as %s",
            transaction.reference, transaction.type.value, transaction.amount,
            from_user_id, to_user_id, transaction.status.value,
        )
        return transaction

    def _insert_with_unique_reference(self, storage: InMemoryStorage, row: dict, now) -> dict:
        config = self.settings.transactions
        for _ in range(config.reference_max_attempts):
            row["reference"] = self.generate_reference()
            if storage.reference_exists(row["reference"]):
                continue
            try:
                return storage.insert_transaction(dict(row), now)
            except UniqueViolation as e:
                if e.index == "pending_by_sender":
                    existing = storage.live_pending_for_sender(row["from_user_id"], now)
                    raise self._duplicate_pending(row["from_user_id"], existing["reference"] if existing else None)
                if e.index != "transaction_refs":
                    raise
        raise RuntimeError(f"Could not allocate a unique transaction reference in {config.reference_max_attempts} attempts")

    def generate_reference(self) -> str:
        config = self.settings.transactions
        digits = "".join(secrets.choice("0123456789") for _ in range(config.reference_digits))
        return f"{config.reference_prefix}-{digits}"

    @staticmethod
    def _duplicate_pending(user_id: str, reference: Optional[str]) -> DuplicatePendingError:
        logger.warning("Rejected second pending transaction for %s (live: %s)", user_id, reference)
        return DuplicatePendingError(
            "A pending transaction already exists. Please wait for it to be completed or expired "
            "before creating a new one.",
            details={"pending_reference": reference},
        )

    def update_transaction_status(
        self,
        transaction_id: int,
        status: TransactionStatus,
        reason: Optional[str] = None,
        processed_by: Optional[str] = None,
    ) -> Transaction:
        status = TransactionStatus(status)
        now = self.clock()

        with self.storage.unit_of_work() as storage:
            row = storage.get_transaction(transaction_id)
            if not row:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            transaction = Transaction(**row)
            if transaction.status != TransactionStatus.PENDING:
                raise InvalidStateTransitionError(
                    f"Cannot move transaction {transaction.reference} from {transaction.status.value} to {status.value}"
                )
            if status == TransactionStatus.PENDING:
                raise InvalidStateTransitionError(f"Transaction {transaction.reference} is already pending")

            if status == TransactionStatus.COMPLETED:
                # A supporting document keeps the row open past its window.
                if (
                    transaction.expires_at is not None
                    and transaction.expires_at <= now
                    and storage.count_documents(transaction.id) == 0
                ):
                    seconds = int((now - transaction.expires_at).total_seconds())
                    raise ExpiredError(
                        f"Transaction {transaction.reference} expired {seconds} seconds ago", seconds_expired=seconds,
                    )
                if transaction.requires_review:
                    self._require_reviewer(transaction, processed_by)
                self._check_party_limits(transaction.from_user_id, transaction.to_user_id, transaction.amount)

            row = storage.update_transaction(
                transaction_id,
                status=status,
                rejection_reason=reason if status == TransactionStatus.REJECTED else None,
                processed_by=processed_by,
                updated_at=now,
            )
            transaction = Transaction(**row)
            if status == TransactionStatus.COMPLETED:
                self._apply_completion(transaction)

        logger.info("Transaction %s moved to %s by %s", transaction.reference, status.value, processed_by or "system")
        return transaction

    def _require_reviewer(self, transaction: Transaction, processed_by: Optional[str]) -> None:
        reviewer = self.storage.get_user(processed_by) if processed_by else None
        if not reviewer or reviewer["role"] not in REVIEWER_ROLES:
            raise AmlHoldError(
                f"Transaction {transaction.reference} is held for AML review and needs an admin or finance officer",
                alerts=self.storage.get_aml_alerts(transaction.id),
            )

    def _check_party_limits(self, from_user_id: str, to_user_id: str, amount) -> None:
        # Cash flows out of the cashier's float and into the merchant's collections,
        # whichever side created the transaction.
        for user_id in dict.fromkeys((from_user_id, to_user_id)):
            user = self.storage.get_user(user_id)
            if not user:
                continue
            if user["role"] not in (Role.CASHIER.value, Role.MERCHANT.value):
                continue
            check = self.wallets.check_transfer_limits(user_id, amount)
            if not check.allowed:
                raise LimitExceededError(check.reason, code=check.code, usage={"remaining": check.remaining})

    def _apply_completion(self, transaction: Transaction) -> None:
        parties = [transaction.from_user_id]
        if transaction.to_user_id != transaction.from_user_id:
            parties.append(transaction.to_user_id)
        for user_id in parties:
            user = self.storage.get_user(user_id)
            if user:
                self.wallets.update_daily_transaction_amounts(user_id, transaction.amount, user["role"], transaction.id)

    def mark_expired_transactions(self) -> int:
        """Reject pending rows past their window that have no supporting document."""
        now = self.clock()
        with self.storage.unit_of_work() as storage:
            expired = storage.list_transactions(
                lambda t: t["status"] == TransactionStatus.PENDING
                and t.get("expires_at") is not None
                and t["expires_at"] <= now
            )
            rejected = 0
            for row in expired:
                if storage.count_documents(row["id"]) > 0:
                    continue
                storage.update_transaction(
                    row["id"], status=TransactionStatus.REJECTED, rejection_reason=TIMED_OUT, updated_at=now,
                )
                rejected += 1
        if rejected:
            logger.info("Timed out %d pending transactions", rejected)
        return rejected

    def attach_document(self, transaction_id: int, user_id: str, filename: str, document_type: str) -> Document:
        transaction = self.get_transaction(transaction_id)
        if user_id not in (transaction.from_user_id, transaction.to_user_id):
            user = self.storage.get_user(user_id)
            if not user or user["role"] != Role.CASHIER.value:
                raise AccessDeniedError("Only transaction parties or cashiers can attach documents")
        row = self.storage.add_document(
            transaction_id=transaction_id, user_id=user_id, filename=filename,
            document_type=document_type, created_at=self.clock(),
        )
        logger.info("Document %s attached to transaction %s", filename, transaction.reference)
        return Document(**row)

    def update_priority(self, transaction_id: int, priority, updated_by: str) -> Transaction:
        user = self.storage.get_user(updated_by)
        if not user or user["role"] != Role.ADMIN.value:
            raise AccessDeniedError("Access denied. Admin role required.")
        try:
            priority = Priority(priority)
        except ValueError as e:
            raise ValidationError(
                "Invalid priority. Must be low, medium, or high.", code="invalid_priority",
            ) from e

        with self.storage.unit_of_work() as storage:
            if not storage.get_transaction(transaction_id):
                raise NotFoundError(f"Transaction {transaction_id} not found")
            row = storage.update_transaction(transaction_id, priority=priority, updated_at=self.clock())

        transaction = Transaction(**row)
        logger.info("Transaction %s priority set to %s by %s", transaction.reference, priority.value, updated_by)
        return transaction

    def list_aml_alerts(self, reviewer_id: str, transaction_id: Optional[int] = None) -> list[AmlReviewItem]:
        """Alerts raised at creation, for admins and finance officers deciding on held transactions."""
        reviewer = self.storage.get_user(reviewer_id)
        if not reviewer or reviewer["role"] not in REVIEWER_ROLES:
            raise AccessDeniedError("Only admin or finance users can review AML alerts")

        if transaction_id is not None:
            rows = [self.get_transaction(transaction_id)]
        else:
            rows = [
                Transaction(**t) for t in self.storage.list_transactions(
                    lambda t: bool(self.storage.get_aml_alerts(t["id"]))
                )
            ]
        items = []
        for transaction in rows:
            alerts = [AmlAlert(**a) for a in self.storage.get_aml_alerts(transaction.id)]
            if alerts:
                items.append(AmlReviewItem(transaction=transaction, alerts=alerts))
        items.sort(key=lambda item: (not item.transaction.requires_review, item.transaction.created_at))
        return items

    def get_transaction(self, transaction_id: int) -> Transaction:
        row = self.storage.get_transaction(transaction_id)
        if not row:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return Transaction(**row)

    def get_by_reference(self, reference: str) -> Transaction:
        row = self.storage.get_transaction_by_reference(reference)
        if not row:
            raise NotFoundError(f"Transaction {reference} not found")
        return Transaction(**row)

    def list_for_user(self, user_id: str) -> list[Transaction]:
        """A user's transactions, newest first, hiding pending rows whose window has passed."""
        now = self.clock()
        rows = self.storage.list_transactions(
            lambda t: user_id in (t["from_user_id"], t["to_user_id"])
            and (t["status"] != TransactionStatus.PENDING or t.get("expires_at") is None or t["expires_at"] > now)
        )
        rows.sort(key=lambda t: t["created_at"], reverse=True)
        return [Transaction(**t) for t in rows]

    def list_pending(self, receiver_id: Optional[str] = None) -> list[Transaction]:
        rows = self.storage.list_transactions(
            lambda t: t["status"] == TransactionStatus.PENDING
            and (receiver_id is None or t["to_user_id"] == receiver_id)
        )
        rows.sort(key=lambda t: t["created_at"], reverse=True)
        return [Transaction(**t) for t in rows]
