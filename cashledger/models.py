from datetime import date, datetime
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from enum import Enum
from typing import Annotated, Any, Optional
from uuid import UUID

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field


def truncate_amount(value: Any) -> Decimal:
    """Floor-truncate to whole currency units; 183.97 becomes 183, never 184."""
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            raise ValueError(f"Invalid amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return amount.to_integral_value(rounding=ROUND_FLOOR)


Amount = Annotated[Decimal, BeforeValidator(truncate_amount)]


class Role(str, Enum):
    MERCHANT = "merchant"
    CASHIER = "cashier"
    FINANCE = "finance"
    ADMIN = "admin"


class OrganizationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    SUSPENDED = "suspended"
    REJECTED = "rejected"


class KycStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class RiskRating(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TransactionType(str, Enum):
    CASH_DIGITIZATION = "cash_digitization"
    QR_CODE_PAYMENT = "qr_code_payment"
    TRANSFER = "transfer"
    SETTLEMENT = "settlement"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SettlementStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    HOLD = "hold"
    REJECTED = "rejected"
    COMPLETED = "completed"


class HoldReason(str, Enum):
    INSUFFICIENT_DOCUMENTATION = "insufficient_documentation"
    SETTLEMENT_COVER = "settlement_cover"
    PENDING_VERIFICATION = "pending_verification"
    OTHER = "other"


class RejectReason(str, Enum):
    INVALID_ACCOUNT_DETAILS = "invalid_account_details"
    DUPLICATE_REQUEST = "duplicate_request"
    POLICY_VIOLATION = "policy_violation"
    OTHER = "other"


class PostingLeg(str, Enum):
    MERCHANT = "merchant"
    ORGANIZATION = "organization"
    CASHIER = "cashier"
    SETTLEMENT = "settlement"


class Identity(BaseModel):
    """Already-authenticated caller handed over by the auth collaborator."""

    user_id: str
    role: Role


class User(BaseModel):
    id: str
    role: Role
    organization_id: Optional[int] = None
    email: Optional[str] = None
    name: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class Organization(BaseModel):
    id: int
    name: str
    status: OrganizationStatus = OrganizationStatus.PENDING
    is_active: bool = True
    kyc_status: KycStatus = KycStatus.PENDING
    aml_risk_rating: RiskRating = RiskRating.MEDIUM
    enabled_aml_checks: list[str] = Field(default_factory=lambda: ["velocity", "threshold", "pattern"])
    daily_transaction_limit: Optional[Amount] = None
    monthly_transaction_limit: Optional[Amount] = None
    single_transaction_limit: Optional[Amount] = None

    model_config = ConfigDict(from_attributes=True)


class Wallet(BaseModel):
    user_id: str
    balance: Amount = Decimal("0")
    daily_collected: Amount = Decimal("0")
    daily_transferred: Amount = Decimal("0")
    last_reset_date: datetime
    last_transaction_date: Optional[datetime] = None
    is_active: bool = True
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class Transaction(BaseModel):
    id: int
    reference: str
    from_user_id: str
    to_user_id: str
    amount: Amount
    type: TransactionType
    status: TransactionStatus
    priority: Priority = Priority.MEDIUM
    description: Optional[str] = None
    rejection_reason: Optional[str] = None
    processed_by: Optional[str] = None
    requires_review: bool = False
    expires_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def is_live_pending(self, now: datetime) -> bool:
        return self.status == TransactionStatus.PENDING and (self.expires_at is None or self.expires_at > now)


class Document(BaseModel):
    id: int
    transaction_id: int
    user_id: str
    filename: str
    document_type: str
    created_at: datetime


class QrCode(BaseModel):
    id: int
    transaction_id: int
    qr_code_hash: str
    qr_data: str
    expires_at: datetime
    is_used: bool = False
    used_at: Optional[datetime] = None
    created_at: datetime
    source: str = "issued"

    model_config = ConfigDict(from_attributes=True)


class QrIssue(BaseModel):
    qr_id: int
    transaction_reference: str
    payload: str
    qr_code_hash: str
    expires_at: datetime


class VerifiedTransaction(BaseModel):
    """The only transaction fields a QR scan is allowed to reveal."""

    id: int
    reference: str
    amount: Amount
    type: TransactionType


class SettlementRequest(BaseModel):
    id: int
    organization_id: int
    requested_by: str
    amount: Amount
    bank_name: str
    account_number: str
    status: SettlementStatus = SettlementStatus.PENDING
    priority: Priority = Priority.MEDIUM
    hold_reason: Optional[HoldReason] = None
    reject_reason: Optional[RejectReason] = None
    reason_comment: Optional[str] = Field(default=None, max_length=125)
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SettlementCapacity(BaseModel):
    organization_id: int
    business_date: date
    todays_collections: Amount
    todays_usage: Amount
    capacity: Amount


class Notification(BaseModel):
    id: int
    user_id: str
    type: str
    title: str
    message: str
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[int] = None
    is_read: bool = False
    created_at: datetime


class LedgerPosting(BaseModel):
    id: UUID
    transaction_id: Optional[int] = None
    settlement_id: Optional[int] = None
    user_id: str
    organization_id: Optional[int] = None
    leg: PostingLeg
    amount: Amount
    balance_after: Amount
    created_at: datetime


class TransferLimitCheck(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    code: Optional[str] = None
    remaining: Optional[Amount] = None


class OrganizationUsage(BaseModel):
    daily_used: Amount
    monthly_used: Amount
    daily_limit: Amount
    monthly_limit: Amount
    single_limit: Amount


class OrganizationLimitsValidation(BaseModel):
    is_valid: bool
    reason: Optional[str] = None
    code: Optional[str] = None
    organization_usage: Optional[OrganizationUsage] = None


class AmlAlert(BaseModel):
    rule_id: str
    alert_type: str
    severity: str
    description: str
    risk_score: int = Field(ge=0, le=100)
    triggered_rules: list[str] = Field(default_factory=list)


class AmlScreening(BaseModel):
    user_id: str
    amount: Amount
    alerts: list[AmlAlert] = Field(default_factory=list)
    requires_manual_review: bool = False

    @property
    def max_risk_score(self) -> int:
        return max((a.risk_score for a in self.alerts), default=0)


class AmlReviewItem(BaseModel):
    transaction: Transaction
    alerts: list[AmlAlert]


class CreateTransactionRequest(BaseModel):
    amount: Amount = Field(..., gt=0)
    type: TransactionType
    to_user_id: Optional[str] = None
    description: Optional[str] = None
    status: TransactionStatus = TransactionStatus.PENDING
    priority: Priority = Priority.MEDIUM


class UpdateTransactionStatusRequest(BaseModel):
    status: TransactionStatus
    reason: Optional[str] = None


class UpdatePriorityRequest(BaseModel):
    priority: str


class AttachDocumentRequest(BaseModel):
    filename: str
    document_type: str = "vmf_merchant"


class GenerateQrRequest(BaseModel):
    transaction_id: int


class VerifyQrRequest(BaseModel):
    qr_data: str


class CashierAllocationRequest(BaseModel):
    amount: Amount = Field(..., ge=0)


class CreateSettlementRequest(BaseModel):
    amount: Amount = Field(..., gt=0)
    bank_name: str = Field(..., min_length=1)
    account_number: str = Field(..., min_length=1)
    priority: Priority = Priority.MEDIUM


class SettlementReasonRequest(BaseModel):
    reason: str
    comment: Optional[str] = None
