"""QR payment confirmation: time-boxed, single-use codes bound to one pending transaction.

Two payload shapes reach ``verify``:

* ``SelfDescribingPayload`` -- built client-side, carries its own ``nonce`` and
  ``expiresAt``.  The embedded expiry is bounded by ``timestamp`` plus the
  validity window, but the binding guarantee is the cross-check against the
  live transaction (still pending, same amount).  The payload digest is
  recorded on first use so a replay fails.
* ``LegacyPayload`` -- the opaque string issued by ``generate``.  Its SHA-256
  digest is looked up in the QR table and consumed with a compare-and-set.
"""

import hashlib
import json
import logging
import math
import secrets
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

import pydantic
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictInt, StrictStr

from .clock import Clock, to_millis, utcnow
from .config import Settings, get_settings
from .errors import (
    AccessDeniedError,
    ActiveQrCodeExistsError,
    AlreadyUsedError,
    ExpiredError,
    NotFoundError,
    ValidationError,
)
from .models import (
    Identity,
    QrCode,
    QrIssue,
    Role,
    Transaction,
    TransactionStatus,
    TransactionType,
    VerifiedTransaction,
    truncate_amount,
)
from .storage import InMemoryStorage, UniqueViolation

logger = logging.getLogger(__name__)

QR_ISSUED = "issued"
QR_SCANNED = "scanned"


class SelfDescribingPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    transaction_ref: StrictStr = Field(validation_alias=AliasChoices("transactionRef", "transactionId"))
    amount: StrictStr
    type: StrictStr
    timestamp: StrictInt
    nonce: StrictStr = Field(min_length=1)
    expires_at: StrictInt = Field(validation_alias=AliasChoices("expiresAt", "expires_at"))
    currency: Optional[StrictStr] = None


class LegacyPayload(BaseModel):
    raw: str


QrPayload = Union[SelfDescribingPayload, LegacyPayload]


def canonical_json(data: dict) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def digest(payload: str) -> str:
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def load_payload(raw: str) -> Optional[dict]:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def is_self_describing(data: Optional[dict]) -> bool:
    return data is not None and "nonce" in data and ("expiresAt" in data or "expires_at" in data)


def parse_payload(raw: str, data: Optional[dict]) -> QrPayload:
    """Discriminate on the presence of both ``nonce`` and ``expiresAt``."""
    if is_self_describing(data):
        try:
            return SelfDescribingPayload.model_validate(data)
        except pydantic.ValidationError as e:
            raise ValidationError(
                "Invalid QR code format - missing required fields",
                code="invalid_qr_payload",
                details={"errors": [err["loc"] for err in e.errors()]},
            ) from e
    return LegacyPayload(raw=raw)


class QrPaymentProtocol:
    def __init__(self, storage: InMemoryStorage, settings: Optional[Settings] = None, clock: Optional[Clock] = None):
        self.storage = storage
        self.settings = settings or get_settings()
        self.clock = clock or utcnow

    @property
    def validity(self) -> timedelta:
        return timedelta(seconds=self.settings.qr.validity_seconds)

    def generate(self, transaction_id: int, caller_id: str) -> QrIssue:
        transaction = self._owned_pending_transaction(transaction_id, caller_id)
        now = self.clock()

        with self.storage.unit_of_work() as storage:
            if storage.find_active_qr_code(transaction.id, now):
                raise ActiveQrCodeExistsError(f"Active QR code already exists for transaction {transaction.reference}")

            payload = canonical_json({
                "transactionRef": transaction.reference,
                "amount": int(truncate_amount(transaction.amount)),
                "type": TransactionType.QR_CODE_PAYMENT.value,
                "timestamp": to_millis(now),
                "nonce": secrets.token_hex(16),
                "userId": caller_id,
            })
            row = storage.insert_qr_code({
                "transaction_id": transaction.id,
                "qr_code_hash": digest(payload),
                "qr_data": payload,
                "expires_at": now + self.validity,
                "is_used": False,
                "used_at": None,
                "created_at": now,
                "source": QR_ISSUED,
            })

        logger.info("Issued QR code %s for transaction %s", row["id"], transaction.reference)
        return QrIssue(
            qr_id=row["id"],
            transaction_reference=transaction.reference,
            payload=payload,
            qr_code_hash=row["qr_code_hash"],
            expires_at=row["expires_at"],
        )

    def build_self_describing_payload(self, transaction_id: int, caller_id: str) -> str:
        transaction = self._owned_pending_transaction(transaction_id, caller_id)
        now = self.clock()
        return canonical_json({
            "transactionRef": transaction.reference,
            "amount": str(truncate_amount(transaction.amount)),
            "currency": self.settings.currency,
            "type": TransactionType.QR_CODE_PAYMENT.value,
            "timestamp": to_millis(now),
            "nonce": secrets.token_hex(16),
            "expiresAt": to_millis(now + self.validity),
        })

    def _owned_pending_transaction(self, transaction_id: int, caller_id: str) -> Transaction:
        row = self.storage.get_transaction(transaction_id)
        if not row:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        transaction = Transaction(**row)
        if transaction.from_user_id != caller_id:
            raise AccessDeniedError("Access denied")
        if not transaction.is_live_pending(self.clock()):
            raise ValidationError(
                f"Transaction {transaction.reference} is not awaiting confirmation", code="transaction_not_pending",
            )
        return transaction

    def verify(self, payload: str, verifier: Identity) -> VerifiedTransaction:
        self._assert_verifier(verifier)
        if not payload:
            raise ValidationError("QR data is required", code="invalid_qr_payload")

        data = load_payload(payload)
        if is_self_describing(data) and isinstance(data.get("expiresAt"), int):
            self._reject_if_expired(data["expiresAt"])

        parsed = parse_payload(payload, data)
        if isinstance(parsed, SelfDescribingPayload):
            result = self._verify_self_describing(parsed, data)
        elif isinstance(parsed, LegacyPayload):
            result = self._verify_legacy(parsed)
        else:
            raise TypeError(f"Unhandled QR payload shape: {type(parsed).__name__}")

        logger.info("QR verified for transaction %s by %s", result.reference, verifier.user_id)
        return result

    def _assert_verifier(self, verifier: Identity) -> None:
        user = self.storage.get_user(verifier.user_id)
        if not user or user["role"] != verifier.role.value:
            raise AccessDeniedError("Caller identity could not be confirmed")
        if verifier.role != Role.CASHIER:
            raise AccessDeniedError("Only cashiers can verify QR codes")

    def _reject_if_expired(self, expires_at_ms: int) -> None:
        now_ms = to_millis(self.clock())
        if now_ms > expires_at_ms:
            seconds = math.floor((now_ms - expires_at_ms) / 1000)
            raise ExpiredError(
                f"QR code expired {seconds} seconds ago. Please generate a new QR code.", seconds_expired=seconds,
            )

    def _verify_self_describing(self, payload: SelfDescribingPayload, data: dict) -> VerifiedTransaction:
        self._reject_if_expired(payload.expires_at)
        max_expiry = payload.timestamp + int(self.validity.total_seconds() * 1000)
        if payload.expires_at > max_expiry:
            raise ValidationError("QR code validity window is longer than allowed", code="invalid_qr_payload")

        try:
            qr_amount = Decimal(payload.amount)
        except InvalidOperation as e:
            raise ValidationError("Invalid QR code amount", code="invalid_qr_payload") from e

        canonical = canonical_json(data)
        qr_code_hash = digest(canonical)
        now = self.clock()

        with self.storage.unit_of_work() as storage:
            transaction = self._pending_transaction(storage.get_transaction_by_reference(payload.transaction_ref))
            if abs(qr_amount - transaction.amount) > self.settings.qr.amount_tolerance:
                raise ValidationError("QR code amount does not match transaction", code="amount_mismatch")

            existing = storage.get_qr_code_by_hash(qr_code_hash)
            if existing and existing["is_used"]:
                raise AlreadyUsedError("QR code has already been used")
            try:
                storage.insert_qr_code({
                    "transaction_id": transaction.id,
                    "qr_code_hash": qr_code_hash,
                    "qr_data": canonical,
                    "expires_at": datetime.fromtimestamp(payload.expires_at / 1000, tz=timezone.utc),
                    "is_used": True,
                    "used_at": now,
                    "created_at": now,
                    "source": QR_SCANNED,
                })
            except UniqueViolation as e:
                raise AlreadyUsedError("QR code has already been used") from e

        return self._public_view(transaction)

    def _verify_legacy(self, payload: LegacyPayload) -> VerifiedTransaction:
        now = self.clock()
        with self.storage.unit_of_work() as storage:
            row = storage.get_qr_code_by_hash(digest(payload.raw))
            if not row:
                raise NotFoundError("QR code not found, expired, or already used")
            qr_code = QrCode(**row)
            if qr_code.is_used:
                raise AlreadyUsedError("QR code has already been used")
            if qr_code.expires_at <= now:
                seconds = math.floor((now - qr_code.expires_at).total_seconds())
                raise ExpiredError(
                    f"QR code expired {seconds} seconds ago. Please generate a new QR code.", seconds_expired=seconds,
                )

            transaction = self._pending_transaction(storage.get_transaction(qr_code.transaction_id))
            if not storage.mark_qr_code_used(qr_code.id, now):
                raise AlreadyUsedError("QR code has already been used")

        return self._public_view(transaction)

    def _pending_transaction(self, row: Optional[dict]) -> Transaction:
        if not row:
            raise NotFoundError("Transaction is no longer valid or not found")
        transaction = Transaction(**row)
        if transaction.status != TransactionStatus.PENDING:
            raise ValidationError("Transaction is no longer valid", code="transaction_not_pending")
        return transaction

    @staticmethod
    def _public_view(transaction: Transaction) -> VerifiedTransaction:
        return VerifiedTransaction(
            id=transaction.id, reference=transaction.reference, amount=transaction.amount, type=transaction.type,
        )

    def expunge_expired(self) -> int:
        now = self.clock()
        # Scanned rows are the replay guard for self-describing codes; they live until expiry.
        removed = self.storage.delete_qr_codes(
            lambda row: row["expires_at"] <= now or (row["is_used"] and row.get("source") == QR_ISSUED)
        )
        if removed:
            logger.info("Expunged %d used or expired QR codes", removed)
        return removed
