"""Settlement maker-checker workflow.

A finance officer asks to move the organization's collected funds to a bank
account; an administrator other than the requester approves, holds, rejects
or completes the request.  Capacity is what the organization collected today
minus what today's open or settled requests already claim.

    pending -> approved -> completed
    pending -> hold -> approved | rejected
    pending -> rejected
    pending -> completed

The organization wallet is debited once, when a request first enters
``approved`` or ``completed``.
"""

import logging
from decimal import Decimal
from typing import Optional, Union

from .clock import Clock, business_date, utcnow
from .config import Settings, get_settings
from .errors import (
    AccessDeniedError,
    CapacityExceededError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from .models import (
    HoldReason,
    Notification,
    Priority,
    RejectReason,
    Role,
    SettlementCapacity,
    SettlementRequest,
    SettlementStatus,
    truncate_amount,
)
from .notifications import NotificationService
from .storage import InMemoryStorage
from .wallets import WalletStore, format_money

logger = logging.getLogger(__name__)

MAX_COMMENT_LENGTH = 125

ALLOWED_TRANSITIONS = {
    SettlementStatus.PENDING: {
        SettlementStatus.APPROVED, SettlementStatus.COMPLETED, SettlementStatus.HOLD, SettlementStatus.REJECTED,
    },
    SettlementStatus.HOLD: {SettlementStatus.APPROVED, SettlementStatus.REJECTED},
    SettlementStatus.APPROVED: {SettlementStatus.COMPLETED},
    SettlementStatus.REJECTED: set(),
    SettlementStatus.COMPLETED: set(),
}

# Requests in these states count against today's capacity.
USAGE_STATUSES = {
    SettlementStatus.PENDING, SettlementStatus.HOLD, SettlementStatus.APPROVED, SettlementStatus.COMPLETED,
}
DEBIT_STATUSES = {SettlementStatus.APPROVED, SettlementStatus.COMPLETED}


class SettlementWorkflow:
    def __init__(
        self,
        storage: InMemoryStorage,
        wallets: WalletStore,
        notifications: Optional[NotificationService] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        self.storage = storage
        self.wallets = wallets
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        self.notifications = notifications or NotificationService(storage, self.settings.currency, self.clock)

    def create_settlement_request(
        self,
        requested_by: str,
        amount,
        bank_name: str,
        account_number: str,
        priority: Priority = Priority.MEDIUM,
    ) -> SettlementRequest:
        amount = truncate_amount(amount)
        if amount <= 0:
            raise ValidationError("Settlement amount must be at least one whole currency unit", code="invalid_amount")
        if not bank_name or not bank_name.strip() or not account_number or not account_number.strip():
            raise ValidationError("Bank name and account number are required", code="missing_bank_details")

        requester = self.storage.get_user(requested_by)
        if not requester or requester["role"] != Role.FINANCE.value:
            raise AccessDeniedError("Only finance officers can request settlements")
        organization_id = requester.get("organization_id")
        if not organization_id:
            raise AccessDeniedError("Finance officer is not attached to an organization")

        now = self.clock()
        with self.storage.unit_of_work() as storage:
            capacity = self.get_settlement_capacity(organization_id)
            if amount > capacity.capacity:
                logger.warning(
                    "Settlement of %s for organization %s exceeds capacity %s",
                    amount, organization_id, capacity.capacity,
                )
                raise CapacityExceededError(
                    f"Settlement amount exceeds today's capacity. "
                    f"Available: {format_money(capacity.capacity, self.settings.currency)}",
                    capacity=capacity.capacity,
                    requested=amount,
                    todays_collections=capacity.todays_collections,
                    todays_usage=capacity.todays_usage,
                )

            row = storage.insert_settlement_request({
                "organization_id": organization_id,
                "requested_by": requested_by,
                "amount": amount,
                "bank_name": bank_name.strip(),
                "account_number": account_number.strip(),
                "status": SettlementStatus.PENDING,
                "priority": Priority(priority),
                "hold_reason": None,
                "reject_reason": None,
                "reason_comment": None,
                "reviewed_by": None,
                "reviewed_at": None,
                "created_at": now,
                "updated_at": now,
            })
            request = SettlementRequest(**row)
            self.notifications.settlement_status_changed(request)

        logger.info("Settlement request %s for %s created by %s", request.id, amount, requested_by)
        return request

    def get_settlement_capacity(self, organization_id: int) -> SettlementCapacity:
        now = self.clock()
        tz = self.settings.timezone
        today = business_date(now, tz)
        collections = self.wallets.todays_collections(organization_id)
        usage = sum(
            (
                r["amount"] for r in self.storage.list_settlement_requests(
                    lambda r: r["organization_id"] == organization_id
                    and SettlementStatus(r["status"]) in USAGE_STATUSES
                    and business_date(r["created_at"], tz) == today
                )
            ),
            Decimal("0"),
        )
        return SettlementCapacity(
            organization_id=organization_id,
            business_date=today,
            todays_collections=collections,
            todays_usage=usage,
            capacity=max(Decimal("0"), collections - usage),
        )

    def approve(self, request_id: int, reviewer_id: str) -> SettlementRequest:
        return self.update_status(request_id, SettlementStatus.APPROVED, reviewer_id)

    def complete(self, request_id: int, reviewer_id: str) -> SettlementRequest:
        return self.update_status(request_id, SettlementStatus.COMPLETED, reviewer_id)

    def hold(self, request_id: int, reviewer_id: str, reason, comment: Optional[str] = None) -> SettlementRequest:
        return self.update_status(request_id, SettlementStatus.HOLD, reviewer_id, reason=reason, comment=comment)

    def reject(self, request_id: int, reviewer_id: str, reason, comment: Optional[str] = None) -> SettlementRequest:
        return self.update_status(request_id, SettlementStatus.REJECTED, reviewer_id, reason=reason, comment=comment)

    def update_status(
        self,
        request_id: int,
        status: SettlementStatus,
        reviewer_id: str,
        reason: Union[HoldReason, RejectReason, str, None] = None,
        comment: Optional[str] = None,
    ) -> SettlementRequest:
        status = SettlementStatus(status)
        changes = self._reason_fields(status, reason, comment)
        now = self.clock()

        with self.storage.unit_of_work() as storage:
            row = storage.get_settlement_request(request_id)
            if not row:
                raise NotFoundError(f"Settlement request {request_id} not found")
            request = SettlementRequest(**row)
            self._assert_reviewer(request, reviewer_id)

            if status not in ALLOWED_TRANSITIONS[request.status]:
                raise InvalidStateTransitionError(
                    f"Cannot move settlement request {request_id} from {request.status.value} to {status.value}"
                )

            if status in DEBIT_STATUSES and request.status not in DEBIT_STATUSES:
                self.wallets.debit_organization_wallet(request.organization_id, request.amount, request.id)

            row = storage.update_settlement_request(
                request_id, status=status, reviewed_by=reviewer_id, reviewed_at=now, updated_at=now, **changes,
            )
            request = SettlementRequest(**row)
            self.notifications.settlement_status_changed(request)

        logger.info("Settlement request %s moved to %s by %s", request_id, status.value, reviewer_id)
        return request

    def _assert_reviewer(self, request: SettlementRequest, reviewer_id: str) -> None:
        reviewer = self.storage.get_user(reviewer_id)
        if not reviewer or reviewer["role"] != Role.ADMIN.value:
            raise AccessDeniedError("Only admin users can review settlements")
        if reviewer_id == request.requested_by:
            raise AccessDeniedError("Settlement requests must be reviewed by someone other than the requester")

    @staticmethod
    def _reason_fields(status: SettlementStatus, reason, comment: Optional[str]) -> dict:
        if status not in (SettlementStatus.HOLD, SettlementStatus.REJECTED):
            return {"hold_reason": None, "reject_reason": None, "reason_comment": None}

        label = "Hold" if status == SettlementStatus.HOLD else "Reject"
        if reason is None:
            raise ValidationError(f"{label} reason is required", code="reason_required")
        try:
            reason = HoldReason(reason) if status == SettlementStatus.HOLD else RejectReason(reason)
        except ValueError as e:
            raise ValidationError(f"Unknown {label.lower()} reason: {reason}", code="invalid_reason") from e

        comment = comment.strip() if comment else None
        if reason.value == "other" and not comment:
            raise ValidationError("Comment is required when selecting 'other' reason", code="comment_required")
        if comment and len(comment) > MAX_COMMENT_LENGTH:
            raise ValidationError(
                f"Comment must be {MAX_COMMENT_LENGTH} characters or less", code="comment_too_long",
            )

        if status == SettlementStatus.HOLD:
            return {"hold_reason": reason, "reject_reason": None, "reason_comment": comment}
        return {"reject_reason": reason, "reason_comment": comment}

    def get_request(self, request_id: int) -> SettlementRequest:
        row = self.storage.get_settlement_request(request_id)
        if not row:
            raise NotFoundError(f"Settlement request {request_id} not found")
        return SettlementRequest(**row)

    def list_for_organization(self, organization_id: int) -> list[SettlementRequest]:
        rows = self.storage.list_settlement_requests(lambda r: r["organization_id"] == organization_id)
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return [SettlementRequest(**r) for r in rows]

    def list_pending(self) -> list[SettlementRequest]:
        """Requests still waiting on an administrator: pending or on hold."""
        rows = self.storage.list_settlement_requests(
            lambda r: r["status"] in (SettlementStatus.PENDING, SettlementStatus.HOLD)
        )
        rows.sort(key=lambda r: r["created_at"])
        return [SettlementRequest(**r) for r in rows]

    def list_notifications(self, user_id: str, unread_only: bool = False) -> list[Notification]:
        return self.notifications.list_for_user(user_id, unread_only=unread_only)

    def mark_notification_read(self, notification_id: int, user_id: str) -> Notification:
        return self.notifications.mark_read(notification_id, user_id)
