"""Persisted in-app notifications.  Delivery over email or SMS happens elsewhere."""

import logging
from typing import Optional

from .clock import Clock, utcnow
from .errors import AccessDeniedError, NotFoundError
from .models import HoldReason, Notification, RejectReason, SettlementRequest, SettlementStatus
from .storage import InMemoryStorage
from .wallets import format_money

logger = logging.getLogger(__name__)

HOLD_REASON_LABELS = {
    HoldReason.INSUFFICIENT_DOCUMENTATION: "Insufficient documentation",
    HoldReason.SETTLEMENT_COVER: "Awaiting settlement cover",
    HoldReason.PENDING_VERIFICATION: "Pending verification",
    HoldReason.OTHER: "Other",
}

REJECT_REASON_LABELS = {
    RejectReason.INVALID_ACCOUNT_DETAILS: "Invalid account details",
    RejectReason.DUPLICATE_REQUEST: "Duplicate request",
    RejectReason.POLICY_VIOLATION: "Policy violation",
    RejectReason.OTHER: "Other",
}

SETTLEMENT_TEMPLATES = {
    SettlementStatus.PENDING: ("Settlement requested", "Settlement request for {amount} to {bank} was submitted"),
    SettlementStatus.APPROVED: ("Settlement approved", "Settlement request for {amount} to {bank} was approved"),
    SettlementStatus.COMPLETED: ("Settlement completed", "Settlement of {amount} to {bank} was completed"),
    SettlementStatus.HOLD: ("Settlement on hold", "Settlement request for {amount} was placed on hold: {reason}"),
    SettlementStatus.REJECTED: ("Settlement rejected", "Settlement request for {amount} was rejected: {reason}"),
}


def describe_reason(request: SettlementRequest) -> Optional[str]:
    if request.status == SettlementStatus.HOLD and request.hold_reason:
        label = HOLD_REASON_LABELS[request.hold_reason]
    elif request.status == SettlementStatus.REJECTED and request.reject_reason:
        label = REJECT_REASON_LABELS[request.reject_reason]
    else:
        return None
    if request.reason_comment:
        # "Other: bank closed for audit" rather than a bare "Other"
        return f"{label}: {request.reason_comment}" if label == "Other" else f"{label} ({request.reason_comment})"
    return label


class NotificationService:
    def __init__(self, storage: InMemoryStorage, currency: str = "ZMW", clock: Optional[Clock] = None):
        self.storage = storage
        self.currency = currency
        self.clock = clock or utcnow

    def notify(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        related_entity_type: Optional[str] = None,
        related_entity_id: Optional[int] = None,
    ) -> Notification:
        row = self.storage.add_notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            related_entity_type=related_entity_type,
            related_entity_id=related_entity_id,
            created_at=self.clock(),
        )
        logger.info("Notification for %s: %s", user_id, message)
        return Notification(**row)

    def settlement_status_changed(self, request: SettlementRequest) -> Notification:
        title, template = SETTLEMENT_TEMPLATES[request.status]
        message = template.format(
            amount=format_money(request.amount, self.currency),
            bank=request.bank_name,
            reason=describe_reason(request) or "no reason given",
        )
        return self.notify(
            request.requested_by,
            type=f"settlement_{request.status.value}",
            title=title,
            message=message,
            related_entity_type="settlement_request",
            related_entity_id=request.id,
        )

    def list_for_user(self, user_id: str, unread_only: bool = False) -> list[Notification]:
        rows = [n for n in self.storage.list_notifications(user_id) if not (unread_only and n["is_read"])]
        rows.sort(key=lambda n: (n["created_at"], n["id"]), reverse=True)
        return [Notification(**n) for n in rows]

    def mark_read(self, notification_id: int, user_id: str) -> Notification:
        row = self.storage.get_notification(notification_id)
        if not row:
            raise NotFoundError(f"Notification {notification_id} not found")
        if row["user_id"] != user_id:
            raise AccessDeniedError("Notification belongs to another user")
        return Notification(**self.storage.update_notification(notification_id, is_read=True))
