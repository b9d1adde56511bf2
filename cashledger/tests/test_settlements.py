"""
Unit Tests for the Settlement Workflow

Tests cover:
1. Capacity from today's collections minus today's requests
2. Maker-checker review and the allowed transitions
3. Hold and reject reasons
4. One organization debit per request
5. Requester notifications
"""

from decimal import Decimal

import pytest

from cashledger.errors import (
    AccessDeniedError,
    CapacityExceededError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from cashledger.models import HoldReason, PostingLeg, RejectReason, SettlementStatus


# Test constants
FINANCE_ID = "finance-001"
ADMIN_ID = "admin-001"
MERCHANT_ID = "merchant-001"
ORG_ID = 1
BANK = "Zanaco"
ACCOUNT = "0012345678"


@pytest.fixture
def funded(collect):
    collect(Decimal("100000"))
    collect(Decimal("100000"))


@pytest.fixture
def request_id(ledger, funded):
    return ledger.settlements.create_settlement_request(FINANCE_ID, Decimal("50000"), BANK, ACCOUNT).id


class TestCapacity:
    """Tests for create_settlement_request and get_settlement_capacity."""

    def test_capacity_walkthrough(self, ledger, funded):
        settlements = ledger.settlements
        assert settlements.get_settlement_capacity(ORG_ID).capacity == Decimal("200000")

        settlements.create_settlement_request(FINANCE_ID, Decimal("50000"), BANK, ACCOUNT)
        capacity = settlements.get_settlement_capacity(ORG_ID)
        assert capacity.todays_collections == Decimal("200000")
        assert capacity.todays_usage == Decimal("50000")
        assert capacity.capacity == Decimal("150000")

        settlements.create_settlement_request(FINANCE_ID, Decimal("150000"), BANK, ACCOUNT)
        with pytest.raises(CapacityExceededError) as exc:
            settlements.create_settlement_request(FINANCE_ID, Decimal("1"), BANK, ACCOUNT)

        assert exc.value.capacity == Decimal("0")
        assert exc.value.requested == Decimal("1")

    def test_refused_request_leaves_no_trace(self, ledger, funded):
        with pytest.raises(CapacityExceededError):
            ledger.settlements.create_settlement_request(FINANCE_ID, Decimal("200001"), BANK, ACCOUNT)

        assert ledger.storage.settlement_requests == {}
        assert ledger.settlements.list_notifications(FINANCE_ID) == []

    def test_rejected_requests_free_capacity(self, ledger, request_id):
        ledger.settlements.reject(request_id, ADMIN_ID, RejectReason.DUPLICATE_REQUEST)

        assert ledger.settlements.get_settlement_capacity(ORG_ID).capacity == Decimal("200000")

    def test_yesterdays_collections_do_not_count(self, ledger, funded, clock):
        clock.advance(days=1)

        assert ledger.settlements.get_settlement_capacity(ORG_ID).capacity == Decimal("0")

    def test_amount_is_truncated(self, ledger, funded):
        request = ledger.settlements.create_settlement_request(FINANCE_ID, Decimal("1000.75"), BANK, ACCOUNT)

        assert request.amount == Decimal("1000")

    @pytest.mark.parametrize("amount,bank,account", [
        (Decimal("0"), BANK, ACCOUNT),
        (Decimal("0.5"), BANK, ACCOUNT),
        (Decimal("100"), "  ", ACCOUNT),
        (Decimal("100"), BANK, ""),
    ])
    def test_invalid_input(self, ledger, funded, amount, bank, account):
        with pytest.raises(ValidationError):
            ledger.settlements.create_settlement_request(FINANCE_ID, amount, bank, account)

    def test_only_finance_may_request(self, ledger, funded):
        with pytest.raises(AccessDeniedError):
            ledger.settlements.create_settlement_request(MERCHANT_ID, Decimal("100"), BANK, ACCOUNT)


class TestReview:
    """Tests for maker-checker transitions."""

    def test_approve_then_complete_debits_once(self, ledger, request_id):
        ledger.settlements.approve(request_id, ADMIN_ID)
        request = ledger.settlements.complete(request_id, ADMIN_ID)

        assert request.status == SettlementStatus.COMPLETED
        assert request.reviewed_by == ADMIN_ID
        debits = [p for p in ledger.wallets.list_postings(FINANCE_ID) if p.leg == PostingLeg.SETTLEMENT]
        assert [p.amount for p in debits] == [Decimal("-50000")]
        assert ledger.wallets.get_or_create_wallet(FINANCE_ID).balance == Decimal("150000")

    def test_direct_completion_debits(self, ledger, request_id):
        ledger.settlements.complete(request_id, ADMIN_ID)

        assert ledger.wallets.get_or_create_wallet(FINANCE_ID).balance == Decimal("150000")

    def test_hold_then_approve(self, ledger, request_id):
        held = ledger.settlements.hold(request_id, ADMIN_ID, HoldReason.PENDING_VERIFICATION)
        assert held.hold_reason == HoldReason.PENDING_VERIFICATION
        assert ledger.wallets.get_or_create_wallet(FINANCE_ID).balance == Decimal("200000")

        approved = ledger.settlements.approve(request_id, ADMIN_ID)

        assert approved.status == SettlementStatus.APPROVED
        assert approved.hold_reason is None

    def test_held_request_cannot_complete_directly(self, ledger, request_id):
        ledger.settlements.hold(request_id, ADMIN_ID, HoldReason.SETTLEMENT_COVER)

        with pytest.raises(InvalidStateTransitionError):
            ledger.settlements.complete(request_id, ADMIN_ID)

    def test_terminal_states_are_final(self, ledger, request_id):
        ledger.settlements.reject(request_id, ADMIN_ID, RejectReason.POLICY_VIOLATION)

        with pytest.raises(InvalidStateTransitionError):
            ledger.settlements.approve(request_id, ADMIN_ID)

    def test_requester_cannot_review(self, ledger, storage, funded):
        storage.add_user(id="admin-002", role="admin", organization_id=ORG_ID)
        storage.add_user(id="finance-002", role="finance", organization_id=ORG_ID)
        request = ledger.settlements.create_settlement_request("finance-002", Decimal("100"), BANK, ACCOUNT)
        storage.users["finance-002"]["role"] = "admin"

        with pytest.raises(AccessDeniedError):
            ledger.settlements.approve(request.id, "finance-002")
        assert ledger.settlements.approve(request.id, "admin-002").status == SettlementStatus.APPROVED

    def test_non_admin_cannot_review(self, ledger, request_id):
        with pytest.raises(AccessDeniedError):
            ledger.settlements.approve(request_id, FINANCE_ID)

    def test_unknown_request(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.settlements.approve(42, ADMIN_ID)

    def test_list_pending_includes_holds_oldest_first(self, ledger, funded, clock):
        first = ledger.settlements.create_settlement_request(FINANCE_ID, Decimal("100"), BANK, ACCOUNT)
        clock.advance(minutes=5)
        second = ledger.settlements.create_settlement_request(FINANCE_ID, Decimal("200"), BANK, ACCOUNT)
        clock.advance(minutes=5)
        third = ledger.settlements.create_settlement_request(FINANCE_ID, Decimal("300"), BANK, ACCOUNT)
        ledger.settlements.hold(first.id, ADMIN_ID, HoldReason.INSUFFICIENT_DOCUMENTATION)
        ledger.settlements.approve(second.id, ADMIN_ID)

        assert [r.id for r in ledger.settlements.list_pending()] == [first.id, third.id]
        assert [r.id for r in ledger.settlements.list_for_organization(ORG_ID)] == [third.id, second.id, first.id]


class TestReasons:
    """Tests for hold and reject reason validation."""

    def test_reason_is_required(self, ledger, request_id):
        with pytest.raises(ValidationError) as exc:
            ledger.settlements.hold(request_id, ADMIN_ID, None)

        assert exc.value.code == "reason_required"

    def test_reason_must_be_known(self, ledger, request_id):
        with pytest.raises(ValidationError) as exc:
            ledger.settlements.reject(request_id, ADMIN_ID, "bad_vibes")

        assert exc.value.code == "invalid_reason"

    def test_hold_reason_is_not_a_reject_reason(self, ledger, request_id):
        with pytest.raises(ValidationError):
            ledger.settlements.reject(request_id, ADMIN_ID, "insufficient_documentation")

    def test_other_needs_comment(self, ledger, request_id):
        with pytest.raises(ValidationError) as exc:
            ledger.settlements.hold(request_id, ADMIN_ID, "other", comment="   ")

        assert exc.value.code == "comment_required"

    def test_comment_length(self, ledger, request_id):
        with pytest.raises(ValidationError) as exc:
            ledger.settlements.reject(request_id, ADMIN_ID, "other", comment="x" * 126)

        assert exc.value.code == "comment_too_long"
        assert ledger.settlements.get_request(request_id).status == SettlementStatus.PENDING

    def test_comment_is_stored(self, ledger, request_id):
        request = ledger.settlements.reject(request_id, ADMIN_ID, "other", comment="x" * 125)

        assert request.reject_reason == RejectReason.OTHER
        assert request.reason_comment == "x" * 125


class TestNotifications:
    """Tests for requester notifications."""

    def test_every_transition_notifies_requester(self, ledger, request_id):
        ledger.settlements.hold(request_id, ADMIN_ID, "insufficient_documentation")
        ledger.settlements.approve(request_id, ADMIN_ID)

        types = [n.type for n in ledger.settlements.list_notifications(FINANCE_ID)]

        assert sorted(types) == ["settlement_approved", "settlement_hold", "settlement_pending"]

    def test_hold_message_names_reason(self, ledger, request_id):
        ledger.settlements.hold(request_id, ADMIN_ID, "insufficient_documentation")

        latest = ledger.settlements.list_notifications(FINANCE_ID)[0]

        assert latest.message == "Settlement request for ZMW 50,000 was placed on hold: Insufficient documentation"
        assert latest.related_entity_type == "settlement_request"
        assert latest.related_entity_id == request_id

    def test_other_reason_includes_comment(self, ledger, request_id):
        ledger.settlements.reject(request_id, ADMIN_ID, "other", comment="bank closed for audit")

        latest = ledger.settlements.list_notifications(FINANCE_ID)[0]

        assert latest.message.endswith("was rejected: Other: bank closed for audit")

    def test_mark_read(self, ledger, request_id):
        notification = ledger.settlements.list_notifications(FINANCE_ID)[0]

        with pytest.raises(AccessDeniedError):
            ledger.settlements.mark_notification_read(notification.id, ADMIN_ID)
        assert ledger.settlements.mark_notification_read(notification.id, FINANCE_ID).is_read is True
        assert ledger.settlements.list_notifications(FINANCE_ID, unread_only=True) == []

    def test_mark_read_unknown(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.settlements.mark_notification_read(99, FINANCE_ID)
