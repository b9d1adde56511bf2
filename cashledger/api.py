import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from .container import CashLedger, get_container
from .errors import (
    AccessDeniedError,
    ActiveQrCodeExistsError,
    AlreadyUsedError,
    AmlHoldError,
    CapacityExceededError,
    CashLedgerError,
    DuplicatePendingError,
    ExpiredError,
    InvalidStateTransitionError,
    LimitExceededError,
    NotFoundError,
    ValidationError,
)
from .models import (
    AmlReviewItem,
    AttachDocumentRequest,
    CashierAllocationRequest,
    CreateSettlementRequest,
    CreateTransactionRequest,
    Document,
    GenerateQrRequest,
    Identity,
    Notification,
    OrganizationLimitsValidation,
    QrIssue,
    Role,
    SettlementCapacity,
    SettlementReasonRequest,
    SettlementRequest,
    Transaction,
    TransactionStatus,
    TransferLimitCheck,
    UpdatePriorityRequest,
    UpdateTransactionStatusRequest,
    VerifiedTransaction,
    VerifyQrRequest,
    Wallet,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    ledger = app.dependency_overrides.get(get_container, get_container)()
    ledger.scheduler.start()
    yield
    ledger.scheduler.shutdown()


app = FastAPI(
    title="Cash Ledger API",
    description="Wallets, time-boxed QR payment confirmation and settlement approvals for cash digitization",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Most specific first: InvalidStateTransitionError is a ValidationError.
ERROR_STATUS = [
    (InvalidStateTransitionError, status.HTTP_409_CONFLICT),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (AccessDeniedError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (DuplicatePendingError, status.HTTP_409_CONFLICT),
    (ActiveQrCodeExistsError, status.HTTP_409_CONFLICT),
    (AlreadyUsedError, status.HTTP_409_CONFLICT),
    (AmlHoldError, status.HTTP_409_CONFLICT),
    (ExpiredError, status.HTTP_410_GONE),
    (LimitExceededError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (CapacityExceededError, status.HTTP_422_UNPROCESSABLE_ENTITY),
]


def to_http_exception(error: CashLedgerError) -> HTTPException:
    logger.info("Request failed with %s: %s", error.code, error.message)
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=error.to_dict())
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=error.to_dict())


def get_identity(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
    ledger: CashLedger = Depends(get_container),
) -> Identity:
    """Trust the identity an upstream authenticator put in the request headers."""
    if not x_user_id or not x_user_role:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing caller identity")
    try:
        identity = Identity(user_id=x_user_id, role=x_user_role)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Unknown role {x_user_role}")
    user = ledger.storage.get_user(identity.user_id)
    if not user or user["role"] != identity.role.value:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Caller identity could not be confirmed")
    return identity


def require_role(identity: Identity, *roles: Role):
    if identity.role not in roles:
        allowed = ", ".join(r.value for r in roles)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Requires role: {allowed}")


def organization_of(ledger: CashLedger, identity: Identity) -> int:
    user = ledger.storage.get_user(identity.user_id)
    if not user or not user.get("organization_id"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Caller has no organization")
    return user["organization_id"]


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "cash-ledger"}


@app.post("/transactions", response_model=Transaction, status_code=status.HTTP_201_CREATED, tags=["Transactions"])
def create_transaction(
    request: CreateTransactionRequest,
    identity: Identity = Depends(get_identity),
    ledger: CashLedger = Depends(get_container),
) -> Transaction:
    try:
        return ledger.transactions.create_transaction(
            identity.user_id,
            request.amount,
            request.type,
            to_user_id=request.to_user_id,
            description=request.description,
            status=request.status,
            priority=request.priority,
        )
    except CashLedgerError as e:
        raise to_http_exception(e)


@app.get("/transactions", response_model=list[Transaction], tags=["Transactions"])
def list_my_transactions(
    identity: Identity = Depends(get_identity),
    ledger: CashLedger = Depends(get_container),
) -> list[Transaction]:
    return ledger.transactions.list_for_user(identity.user_id)


@app.get("/transactions/pending", response_model=list[Transaction], tags=["Transactions"])
def list_pending_transactions(
    identity: Identity = Depends(get_identity),
    ledger: CashLedger = Depends(get_container),
) -> list[Transaction]:
    if identity.role in (Role.ADMIN, Role.FINANCE, Role.CASHIER):
        return ledger.transactions.list_pending()
    return ledger.transactions.list_pending(receiver_id=identity.user_id)


@app.get("/transactions/{transaction_id}", response_model=Transaction, tags=["Transactions"])
def get_transaction(
    transaction_id: int,
    identity: Identity = Depends(get_identity),
    ledger: CashLedger = Depends(get_container),
) -> Transaction:
    try:
        transaction = ledger.transactions.get_transaction(transaction_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Transaction {transaction_id} not found")
    if identity.role == Role.MERCHANT and identity.user_id not in (transaction.from_user_id, transaction.to_user_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    return transaction


@app.patch("/transactions/{transaction_id}/status", response_model=Transaction, tags=["Transactions"])
def update_transaction_status(
    transaction_id: int,
    request: UpdateTransactionStatusRequest,
    identity: Identity = Depends(get_identity),
    ledger: CashLedger = Depends(get_container),
) -> Transaction:
    if request.status == TransactionStatus.COMPLETED:
        require_role(identity, Role.CASHIER, Role.FINANCE, Role.ADMIN)
    try:
        return ledger.transactions.update_transaction_status(
            transaction_id, request.status, reason=request.reason, processed_by=identity.user_id,
        )
    except CashLedgerError as e:
        raise to_http_exception(e)


@app.patch("/transactions/{transaction_id}/priority", response_model=Transaction, tags=["Transactions"])
def update_transaction_priority(
    transaction_id: int,
    request: UpdatePriorityRequest,
    identity: Identity = Depends(get_identity),
    ledger: CashLedger = Depends(get_container),
) -> Transaction:
    try:
        return ledger.transactions.update_priority(transaction_id, request.priority, identity.user_id)
    except CashLedgerError as e:
        raise to_http_exception(e)


@app.get("/aml/alerts", response_model=list[AmlReviewItem], tags=["AML"])
def list_aml_alerts(
    transaction_id: Optional[int] = None,
    identity: Identity = Depends(get_identity),
    ledger: CashLedger = Depends(get_container),
) -> list[AmlReviewItem]:
    try:
        return ledger.transactions.list_aml_alerts(identity.user_id, transaction_id=transaction_id)
    except CashLedgerError as e:
        raise to_http_exception(e)


@app.post(
    "/transactions/{transaction_id}/documents",
    response_model=Document,
    status_code=status.HTTP_201_CREATED,
    tags=["Transactions"],
)
def attach_document(
    transaction_id: int,
    request: AttachDocumentRequest,
    identity: Identity = Depends(get_identity),
    ledger: CashLedger = Depends(get_container),
) -> Document:
    try:
        return ledger.transactions.attach_document(
            transaction_id, identity.user_id, request.filename, request.document_type,
        )
    except CashLedgerError as e:
        raise to_http_exception(e)


@app.post("/qr/generate", response_model=QrIssue, status_code=status.HTTP_201_CREATED, tags=["QR"])
def generate_qr_code(
    request: GenerateQrRequest,
    identity: Identity = Depends(get_identity),
    ledger: CashLedger = Depends(get_container),
) -> QrIssue:
    try:
        return ledger.qr.generate(request.transaction_id, identity.user_id)
    except CashLedgerError as e:
        raise to_http_exception(e)


@app.post("/qr/verify", response_model=VerifiedTransaction, tags=["QR"])
def verify_qr_code(
    request: VerifyQrRequest,
    identity: Identity = Depends(get_identity),
    ledger: CashLedger = Depends(get_container),
) -> VerifiedTransaction:
    try:
        return ledger.qr.verify(request.qr_data, identity)
    except CashLedgerError as e:
        raise to_http_exception(e)


@app.get("/wallet", response_model=Wallet, tags=["Wallets"])
def get_my_wallet(
    identity: Identity = Depends(get_identity),
    ledger: CashLedger = Depends(get_container),
) -> Wallet:
    return ledger.wallets.get_or_create_wallet(identity.user_id)


@app.get("/wallet/limits", response_model=TransferLimitCheck, tags=["Wallets"])
def check_my_limits(
    amount: Decimal,
    identity: Identity = Depends(get_identity),
    ledger: CashLedger = Depends(get_container),
) -> TransferLimitCheck:
    return ledger.wallets.check_transfer_limits(identity.user_id, amount)


@app.put("/wallets/{user_id}/allocation", response_model=Wallet, tags=["Wallets"])
def allocate_cashier_float(
    user_id: str,
    request: CashierAllocationRequest,
    identity: Identity = Depends(get_identity),
    ledger: CashLedger = Depends(get_container),
) -> Wallet:
    require_role(identity, Role.ADMIN, Role.FINANCE)
    target = ledger.storage.get_user(user_id)
    if not target or target["role"] != Role.CASHIER.value:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Cashier {user_id} not found")
    try:
        return ledger.wallets.set_cashier_allocation(user_id, request.amount)
    except CashLedgerError as e:
        raise to_http_exception(e)


@app.get("/limits/check", response_model=OrganizationLimitsValidation, tags=["Limits"])
def check_organization_limits(
    amount: Decimal,
    identity: Identity = Depends(get_identity),
    ledger: CashLedger = Depends(get_container),
) -> OrganizationLimitsValidation:
    return ledger.limits.validate_organization_limits(identity.user_id, amount)


@app.post("/settlements", response_model=SettlementRequest, status_code=status.HTTP_201_CREATED, tags=["Settlements"])
def create_settlement_request(
    request: CreateSettlementRequest,
    identity: Identity = Depends(get_identity),
    ledger: CashLedger = Depends(get_container),
) -> SettlementRequest:
    try:
        return ledger.settlements.create_settlement_request(
            identity.user_id, request.amount, request.bank_name, request.account_number, request.priority,
        )
    except CashLedgerError as e:
        raise to_http_exception(e)


@app.get("/settlements/capacity", response_model=SettlementCapacity, tags=["Settlements"])
def get_settlement_capacity(
    identity: Identity = Depends(get_identity),
    ledger: CashLedger = Depends(get_container),
) -> SettlementCapacity:
    require_role(identity, Role.FINANCE)
    return ledger.settlements.get_settlement_capacity(organization_of(ledger, identity))


@app.get("/settlements", response_model=list[SettlementRequest], tags=["Settlements"])
def list_settlement_requests(
    identity: Identity = Depends(get_identity),
    ledger: CashLedger = Depends(get_container),
) -> list[SettlementRequest]:
    if identity.role == Role.ADMIN:
        return ledger.settlements.list_pending()
    require_role(identity, Role.FINANCE)
    return ledger.settlements.list_for_organization(organization_of(ledger, identity))


@app.patch("/settlements/{request_id}/approve", response_model=SettlementRequest, tags=["Settlements"])
def approve_settlement(
    request_id: int,
    identity: Identity = Depends(get_identity),
    ledger: CashLedger = Depends(get_container),
) -> SettlementRequest:
    try:
        return ledger.settlements.approve(request_id, identity.user_id)
    except CashLedgerError as e:
        raise to_http_exception(e)


@app.patch("/settlements/{request_id}/complete", response_model=SettlementRequest, tags=["Settlements"])
def complete_settlement(
    request_id: int,
    identity: Identity = Depends(get_identity),
    ledger: CashLedger = Depends(get_container),
) -> SettlementRequest:
    try:
        return ledger.settlements.complete(request_id, identity.user_id)
    except CashLedgerError as e:
        raise to_http_exception(e)


@app.patch("/settlements/{request_id}/hold", response_model=SettlementRequest, tags=["Settlements"])
def hold_settlement(
    request_id: int,
    request: SettlementReasonRequest,
    identity: Identity = Depends(get_identity),
    ledger: CashLedger = Depends(get_container),
) -> SettlementRequest:
    try:
        return ledger.settlements.hold(request_id, identity.user_id, request.reason, request.comment)
    except CashLedgerError as e:
        raise to_http_exception(e)


@app.patch("/settlements/{request_id}/reject", response_model=SettlementRequest, tags=["Settlements"])
def reject_settlement(
    request_id: int,
    request: SettlementReasonRequest,
    identity: Identity = Depends(get_identity),
    ledger: CashLedger = Depends(get_container),
) -> SettlementRequest:
    try:
        return ledger.settlements.reject(request_id, identity.user_id, request.reason, request.comment)
    except CashLedgerError as e:
        raise to_http_exception(e)


@app.get("/notifications", response_model=list[Notification], tags=["Notifications"])
def list_notifications(
    unread_only: bool = False,
    identity: Identity = Depends(get_identity),
    ledger: CashLedger = Depends(get_container),
) -> list[Notification]:
    return ledger.settlements.list_notifications(identity.user_id, unread_only=unread_only)


@app.patch("/notifications/{notification_id}/read", response_model=Notification, tags=["Notifications"])
def mark_notification_read(
    notification_id: int,
    identity: Identity = Depends(get_identity),
    ledger: CashLedger = Depends(get_container),
) -> Notification:
    try:
        return ledger.settlements.mark_notification_read(notification_id, identity.user_id)
    except CashLedgerError as e:
        raise to_http_exception(e)


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=8000)
