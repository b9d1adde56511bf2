"""
Unit Tests for the Organization Limit Validator
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from cashledger.errors import LimitExceededError, ValidationError
from cashledger.models import TransactionStatus, TransactionType


# Test constants
MERCHANT_ID = "merchant-001"
SECOND_MERCHANT_ID = "merchant-002"
ADMIN_ID = "admin-001"
ORG_ID = 1


class TestOrganizationGating:
    """Tests for organization status and KYC gating."""

    def test_valid_request_returns_usage(self, ledger):
        result = ledger.limits.validate_organization_limits(MERCHANT_ID, Decimal("1000"))

        assert result.is_valid is True
        assert result.organization_usage.daily_used == Decimal("0")
        assert result.organization_usage.daily_limit == Decimal("5000000")
        assert result.organization_usage.monthly_limit == Decimal("50000000")
        assert result.organization_usage.single_limit == Decimal("500000")

    def test_user_without_organization(self, ledger):
        result = ledger.limits.validate_organization_limits(ADMIN_ID, Decimal("1000"))

        assert result.is_valid is False
        assert result.code == "no_organization"
        assert result.organization_usage is None

    def test_unapproved_organization(self, ledger, storage):
        storage.update_organization(ORG_ID, status="pending")

        result = ledger.limits.validate_organization_limits(MERCHANT_ID, Decimal("1000"))

        assert result.code == "organization_not_approved"
        assert result.organization_usage is not None

    def test_inactive_organization(self, ledger, storage):
        storage.update_organization(ORG_ID, is_active=False)

        assert ledger.limits.validate_organization_limits(MERCHANT_ID, Decimal("1")).code == "organization_inactive"

    def test_unverified_kyc(self, ledger, storage):
        storage.update_organization(ORG_ID, kyc_status="pending")

        result = ledger.limits.validate_organization_limits(MERCHANT_ID, Decimal("1"))

        assert result.code == "kyc_not_verified"
        with pytest.raises(ValidationError):
            ledger.limits.enforce(MERCHANT_ID, Decimal("1"))


class TestCeilings:
    """Tests for single, daily and monthly ceilings."""

    def test_single_limit(self, ledger):
        result = ledger.limits.validate_organization_limits(MERCHANT_ID, Decimal("500001"))

        assert result.is_valid is False
        assert result.code == "single"

    def test_single_limit_is_inclusive(self, ledger):
        assert ledger.limits.validate_organization_limits(MERCHANT_ID, Decimal("500000")).is_valid is True

    def test_live_pending_counts_towards_daily(self, ledger, storage):
        storage.update_organization(ORG_ID, daily_transaction_limit=Decimal("100000"))
        ledger.transactions.create_transaction(MERCHANT_ID, Decimal("60000"), TransactionType.CASH_DIGITIZATION)

        result = ledger.limits.validate_organization_limits(MERCHANT_ID, Decimal("50000"))

        assert result.code == "daily"
        assert result.organization_usage.daily_used == Decimal("60000")

    def test_expired_pending_does_not_count(self, ledger, storage, clock):
        storage.update_organization(ORG_ID, daily_transaction_limit=Decimal("100000"))
        ledger.transactions.create_transaction(MERCHANT_ID, Decimal("60000"), TransactionType.CASH_DIGITIZATION)
        clock.advance(seconds=121)

        result = ledger.limits.validate_organization_limits(MERCHANT_ID, Decimal("50000"))

        assert result.is_valid is True
        assert result.organization_usage.daily_used == Decimal("0")

    def test_completed_volume_counts_across_members(self, ledger, storage, collect):
        storage.add_user(id=SECOND_MERCHANT_ID, role="merchant", organization_id=ORG_ID)
        storage.update_organization(ORG_ID, daily_transaction_limit=Decimal("30000"))
        collect(Decimal("20000"))

        result = ledger.limits.validate_organization_limits(SECOND_MERCHANT_ID, Decimal("15000"))

        assert result.code == "daily"

    def test_rejected_volume_is_ignored(self, ledger, storage):
        storage.update_organization(ORG_ID, daily_transaction_limit=Decimal("100000"))
        transaction = ledger.transactions.create_transaction(
            MERCHANT_ID, Decimal("60000"), TransactionType.CASH_DIGITIZATION,
        )
        ledger.transactions.update_transaction_status(transaction.id, TransactionStatus.REJECTED)

        assert ledger.limits.validate_organization_limits(MERCHANT_ID, Decimal("50000")).is_valid is True

    def test_yesterday_counts_for_month_not_day(self, ledger, storage, clock, collect):
        storage.update_organization(
            ORG_ID, daily_transaction_limit=Decimal("100000"), monthly_transaction_limit=Decimal("110000"),
        )
        collect(Decimal("40000"))
        clock.advance(days=1)

        result = ledger.limits.validate_organization_limits(MERCHANT_ID, Decimal("80000"))

        assert result.code == "monthly"
        assert result.organization_usage.daily_used == Decimal("0")
        assert result.organization_usage.monthly_used == Decimal("40000")

    def test_month_boundary_uses_business_timezone(self, ledger, storage, clock, collect):
        """22:30 UTC on 30 June is already 1 July in Lusaka."""
        storage.update_organization(ORG_ID, monthly_transaction_limit=Decimal("50000"))
        clock.now = datetime(2024, 6, 30, 20, 0, tzinfo=timezone.utc)
        collect(Decimal("40000"))
        clock.now = datetime(2024, 6, 30, 22, 30, tzinfo=timezone.utc)

        result = ledger.limits.validate_organization_limits(MERCHANT_ID, Decimal("40000"))

        assert result.is_valid is True
        assert result.organization_usage.monthly_used == Decimal("0")

    def test_zero_ceiling_blocks_all_volume(self, ledger, storage):
        storage.update_organization(ORG_ID, daily_transaction_limit=Decimal("0"))

        result = ledger.limits.validate_organization_limits(MERCHANT_ID, Decimal("1"))

        assert result.code == "daily"
        assert result.organization_usage.daily_limit == Decimal("0")

    def test_enforce_raises_with_usage(self, ledger):
        with pytest.raises(LimitExceededError) as exc:
            ledger.limits.enforce(MERCHANT_ID, Decimal("750000"))

        assert exc.value.code == "single"
        assert exc.value.usage["daily_used"] == Decimal("0")
        assert "exceeds organization single transaction limit" in exc.value.message
