"""
Unit Tests for the QR Payment Protocol

Tests cover:
1. Issuing codes for the sender's own pending transaction
2. Verifying issued codes (lookup, expiry, single use)
3. Verifying self-describing payloads (window, amount binding, replay)
4. Expunging used and expired codes
"""

import json
from decimal import Decimal

import pytest

from cashledger.errors import (
    AccessDeniedError,
    ActiveQrCodeExistsError,
    AlreadyUsedError,
    ExpiredError,
    NotFoundError,
    ValidationError,
)
from cashledger.models import Identity, Role, TransactionStatus, TransactionType
from cashledger.qr import QR_ISSUED, QR_SCANNED, canonical_json


# Test constants
MERCHANT_ID = "merchant-001"
CASHIER_ID = "cashier-001"
CASHIER = Identity(user_id=CASHIER_ID, role=Role.CASHIER)


@pytest.fixture
def transaction(ledger):
    return ledger.transactions.create_transaction(MERCHANT_ID, Decimal("2500"), TransactionType.QR_CODE_PAYMENT)


def rewrite(payload, **changes):
    data = json.loads(payload)
    data.update(changes)
    return canonical_json(data)


class TestGenerate:
    """Tests for QrPaymentProtocol.generate."""

    def test_issues_code_bound_to_transaction(self, ledger, transaction, clock):
        issue = ledger.qr.generate(transaction.id, MERCHANT_ID)

        data = json.loads(issue.payload)
        assert data["transactionRef"] == transaction.reference
        assert data["amount"] == 2500
        assert data["type"] == "qr_code_payment"
        assert data["userId"] == MERCHANT_ID
        assert "expiresAt" not in data
        assert issue.expires_at == clock.now + ledger.qr.validity

    def test_second_active_code_is_refused(self, ledger, transaction):
        ledger.qr.generate(transaction.id, MERCHANT_ID)

        with pytest.raises(ActiveQrCodeExistsError):
            ledger.qr.generate(transaction.id, MERCHANT_ID)

    def test_only_the_sender_may_generate(self, ledger, transaction):
        with pytest.raises(AccessDeniedError):
            ledger.qr.generate(transaction.id, CASHIER_ID)

    def test_unknown_transaction(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.qr.generate(999, MERCHANT_ID)

    def test_settled_transaction_cannot_get_a_code(self, ledger, transaction):
        ledger.transactions.update_transaction_status(transaction.id, TransactionStatus.REJECTED)

        with pytest.raises(ValidationError) as exc:
            ledger.qr.generate(transaction.id, MERCHANT_ID)

        assert exc.value.code == "transaction_not_pending"


class TestVerifyIssuedCode:
    """Tests for verification of codes issued by generate."""

    def test_verify_reveals_limited_view(self, ledger, transaction):
        issue = ledger.qr.generate(transaction.id, MERCHANT_ID)

        verified = ledger.qr.verify(issue.payload, CASHIER)

        assert verified.reference == transaction.reference
        assert verified.amount == Decimal("2500")
        assert set(verified.model_dump()) == {"id", "reference", "amount", "type"}
        assert ledger.storage.get_qr_code_by_hash(issue.qr_code_hash)["is_used"] is True

    def test_code_is_single_use(self, ledger, transaction):
        issue = ledger.qr.generate(transaction.id, MERCHANT_ID)
        ledger.qr.verify(issue.payload, CASHIER)

        with pytest.raises(AlreadyUsedError):
            ledger.qr.verify(issue.payload, CASHIER)

    def test_expired_code_reports_age(self, ledger, transaction, clock):
        issue = ledger.qr.generate(transaction.id, MERCHANT_ID)
        clock.advance(seconds=121)

        with pytest.raises(ExpiredError) as exc:
            ledger.qr.verify(issue.payload, CASHIER)

        assert exc.value.seconds_expired == 1
        assert exc.value.message == "QR code expired 1 seconds ago. Please generate a new QR code."

    def test_unknown_payload(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.qr.verify('{"transactionRef": "LUS-000001", "amount": 5}', CASHIER)

    def test_empty_payload(self, ledger):
        with pytest.raises(ValidationError):
            ledger.qr.verify("", CASHIER)

    def test_rejected_transaction_fails_verification(self, ledger, transaction):
        issue = ledger.qr.generate(transaction.id, MERCHANT_ID)
        ledger.transactions.update_transaction_status(transaction.id, TransactionStatus.REJECTED)

        with pytest.raises(ValidationError):
            ledger.qr.verify(issue.payload, CASHIER)

        assert ledger.storage.get_qr_code_by_hash(issue.qr_code_hash)["is_used"] is False


class TestVerifierIdentity:
    """Tests for the verifier role check."""

    def test_merchant_cannot_verify(self, ledger, transaction):
        issue = ledger.qr.generate(transaction.id, MERCHANT_ID)

        with pytest.raises(AccessDeniedError):
            ledger.qr.verify(issue.payload, Identity(user_id=MERCHANT_ID, role=Role.MERCHANT))

    def test_claimed_role_must_match_user(self, ledger, transaction):
        issue = ledger.qr.generate(transaction.id, MERCHANT_ID)

        with pytest.raises(AccessDeniedError):
            ledger.qr.verify(issue.payload, Identity(user_id=MERCHANT_ID, role=Role.CASHIER))


class TestVerifySelfDescribing:
    """Tests for client-built payloads carrying nonce and expiresAt."""

    def test_valid_payload_verifies(self, ledger, transaction):
        payload = ledger.qr.build_self_describing_payload(transaction.id, MERCHANT_ID)

        verified = ledger.qr.verify(payload, CASHIER)

        assert verified.id == transaction.id
        scanned = list(ledger.storage.qr_codes.values())
        assert [row["source"] for row in scanned] == [QR_SCANNED]

    def test_replay_is_refused(self, ledger, transaction):
        payload = ledger.qr.build_self_describing_payload(transaction.id, MERCHANT_ID)
        ledger.qr.verify(payload, CASHIER)

        with pytest.raises(AlreadyUsedError):
            ledger.qr.verify(payload, CASHIER)

    def test_amount_must_match_transaction(self, ledger, transaction):
        payload = rewrite(ledger.qr.build_self_describing_payload(transaction.id, MERCHANT_ID), amount="25000")

        with pytest.raises(ValidationError) as exc:
            ledger.qr.verify(payload, CASHIER)

        assert exc.value.code == "amount_mismatch"

    def test_validity_window_is_bounded(self, ledger, transaction):
        payload = ledger.qr.build_self_describing_payload(transaction.id, MERCHANT_ID)
        data = json.loads(payload)
        payload = rewrite(payload, expiresAt=data["timestamp"] + 300000)

        with pytest.raises(ValidationError) as exc:
            ledger.qr.verify(payload, CASHIER)

        assert exc.value.code == "invalid_qr_payload"

    def test_expired_payload(self, ledger, transaction, clock):
        payload = ledger.qr.build_self_describing_payload(transaction.id, MERCHANT_ID)
        clock.advance(seconds=125)

        with pytest.raises(ExpiredError) as exc:
            ledger.qr.verify(payload, CASHIER)

        assert exc.value.seconds_expired == 5

    def test_missing_fields(self, ledger, transaction, clock):
        payload = canonical_json({"nonce": "abc", "expiresAt": int(clock.now.timestamp() * 1000) + 60000})

        with pytest.raises(ValidationError) as exc:
            ledger.qr.verify(payload, CASHIER)

        assert exc.value.code == "invalid_qr_payload"

    def test_unknown_reference(self, ledger, transaction):
        payload = rewrite(
            ledger.qr.build_self_describing_payload(transaction.id, MERCHANT_ID), transactionRef="LUS-999999",
        )

        with pytest.raises(NotFoundError):
            ledger.qr.verify(payload, CASHIER)


class TestExpunge:
    """Tests for QrPaymentProtocol.expunge_expired."""

    def test_used_issued_codes_go_scanned_rows_stay_until_expiry(self, ledger, transaction, clock):
        issue = ledger.qr.generate(transaction.id, MERCHANT_ID)
        ledger.qr.verify(issue.payload, CASHIER)
        ledger.qr.verify(ledger.qr.build_self_describing_payload(transaction.id, MERCHANT_ID), CASHIER)

        assert ledger.qr.expunge_expired() == 1
        assert [row["source"] for row in ledger.storage.qr_codes.values()] == [QR_SCANNED]

        clock.advance(seconds=121)
        assert ledger.qr.expunge_expired() == 1
        assert ledger.storage.qr_codes == {}

    def test_unused_live_code_is_kept(self, ledger, transaction):
        ledger.qr.generate(transaction.id, MERCHANT_ID)

        assert ledger.qr.expunge_expired() == 0
        assert [row["source"] for row in ledger.storage.qr_codes.values()] == [QR_ISSUED]
