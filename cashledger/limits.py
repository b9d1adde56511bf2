"""Organization-level gating: approval/KYC status plus single, daily and monthly ceilings."""

import logging
from decimal import Decimal
from typing import Optional

from .clock import Clock, start_of_day, start_of_month, utcnow
from .config import Settings, get_settings
from .errors import LimitExceededError, ValidationError
from .models import (
    KycStatus,
    Organization,
    OrganizationLimitsValidation,
    OrganizationStatus,
    OrganizationUsage,
    TransactionStatus,
    truncate_amount,
)
from .storage import InMemoryStorage
from .wallets import format_money

logger = logging.getLogger(__name__)

LIMIT_CODES = {"single", "daily", "monthly"}


def _configured(value: Optional[Decimal], default: Decimal) -> Decimal:
    # An explicit 0 ceiling blocks all volume; only a missing one falls back.
    return default if value is None else value


class OrganizationLimitValidator:
    def __init__(self, storage: InMemoryStorage, settings: Optional[Settings] = None, clock: Optional[Clock] = None):
        self.storage = storage
        self.settings = settings or get_settings()
        self.clock = clock or utcnow

    def validate_organization_limits(self, user_id: str, amount) -> OrganizationLimitsValidation:
        amount = truncate_amount(amount)
        user = self.storage.get_user(user_id)
        if not user or not user.get("organization_id"):
            return OrganizationLimitsValidation(
                is_valid=False, code="no_organization",
                reason="User must belong to an approved organization",
            )

        org_row = self.storage.get_organization(user["organization_id"])
        if not org_row:
            return OrganizationLimitsValidation(is_valid=False, code="no_organization", reason="Organization not found")
        organization = Organization(**org_row)
        usage = self.organization_usage(organization)

        def invalid(code: str, reason: str) -> OrganizationLimitsValidation:
            return OrganizationLimitsValidation(is_valid=False, code=code, reason=reason, organization_usage=usage)

        if organization.status != OrganizationStatus.APPROVED:
            return invalid(
                "organization_not_approved",
                f"Organization status is {organization.status.value}. "
                "Only approved organizations can process transactions.",
            )
        if not organization.is_active:
            return invalid("organization_inactive", "Organization is not active")
        if organization.kyc_status != KycStatus.VERIFIED:
            return invalid(
                "kyc_not_verified",
                f"Organization KYC status is {organization.kyc_status.value}. KYC must be verified for transactions.",
            )

        currency = self.settings.currency
        if amount > usage.single_limit:
            return invalid(
                "single",
                f"Transaction amount {format_money(amount, currency)} exceeds organization single "
                f"transaction limit of {format_money(usage.single_limit, currency)}",
            )
        if usage.daily_used + amount > usage.daily_limit:
            return invalid(
                "daily",
                f"Transaction would exceed organization daily limit. "
                f"Used: {format_money(usage.daily_used, currency)}, Limit: {format_money(usage.daily_limit, currency)}",
            )
        if usage.monthly_used + amount > usage.monthly_limit:
            return invalid(
                "monthly",
                f"Transaction would exceed organization monthly limit. "
                f"Used: {format_money(usage.monthly_used, currency)}, "
                f"Limit: {format_money(usage.monthly_limit, currency)}",
            )

        return OrganizationLimitsValidation(is_valid=True, organization_usage=usage)

    def enforce(self, user_id: str, amount) -> OrganizationLimitsValidation:
        validation = self.validate_organization_limits(user_id, amount)
        if validation.is_valid:
            return validation

        logger.warning("Organization limits denied %s for user %s: %s", amount, user_id, validation.reason)
        usage = validation.organization_usage.model_dump() if validation.organization_usage else None
        if validation.code in LIMIT_CODES:
            raise LimitExceededError(validation.reason, code=validation.code, usage=usage)
        raise ValidationError(validation.reason, code=validation.code, details={"usage": usage} if usage else None)

    def organization_usage(self, organization: Organization) -> OrganizationUsage:
        now = self.clock()
        limits = self.settings.limits
        return OrganizationUsage(
            daily_used=self.transaction_volume(organization.id, start_of_day(now, self.settings.timezone), now),
            monthly_used=self.transaction_volume(organization.id, start_of_month(now, self.settings.timezone), now),
            daily_limit=_configured(organization.daily_transaction_limit, limits.default_daily_transaction_limit),
            monthly_limit=_configured(organization.monthly_transaction_limit, limits.default_monthly_transaction_limit),
            single_limit=_configured(organization.single_transaction_limit, limits.default_single_transaction_limit),
        )

    def transaction_volume(self, organization_id: int, start, end) -> Decimal:
        """Completed plus still-live pending volume sent by members between ``start`` and ``end``."""
        members = {u["id"] for u in self.storage.list_users(organization_id=organization_id)}
        now = self.clock()

        def counts(row: dict) -> bool:
            if row["from_user_id"] not in members or not (start <= row["created_at"] <= end):
                return False
            if row["status"] == TransactionStatus.COMPLETED:
                return True
            return row["status"] == TransactionStatus.PENDING and (
                row.get("expires_at") is None or row["expires_at"] > now
            )

        return self.storage.sum_transaction_amounts(counts)
