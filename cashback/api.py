from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import configure_logging, get_settings
from .errors import (
    ConflictRetryExhausted,
    DocumentNotFoundError,
    InsufficientTransactionsError,
    PartialSettlementError,
    StaleStateError,
    ValidationError,
)
from .models import (
    AdjustCashbackRequest,
    Page,
    PayoutRequest,
    PayoutResolutionResponse,
    PayoutResponse,
    PayoutStatus,
    RecordTransactionRequest,
    RequestPayoutRequest,
    ResolvePayoutRequest,
    Transaction,
    TransactionResponse,
    TransactionStatus,
    TransactionStatusChangeRequest,
    TransactionStatusChangeResponse,
    UserProfile,
)
from .payouts import PayoutService
from .store import InMemoryStorage
from .transactions import TransactionService

settings = get_settings()
configure_logging(settings.LOG_LEVEL)

app = FastAPI(
    title=settings.APP_NAME,
    description="Cashback ledger admin API: transaction status changes and payout settlement",
    version=settings.APP_VERSION,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

storage = InMemoryStorage()
transaction_service = TransactionService(storage)
payout_service = PayoutService(storage)


def get_transaction_service() -> TransactionService:
    return transaction_service


def get_payout_service() -> PayoutService:
    return payout_service


def _raise_http(e: Exception):
    if isinstance(e, DocumentNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, StaleStateError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, InsufficientTransactionsError):
        raise HTTPException(status_code=422, detail=str(e))
    if isinstance(e, ConflictRetryExhausted):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "cashback-ledger"}


@app.get("/transactions", response_model=Page[Transaction], tags=["Transactions"])
def list_transactions(
    status_filter: Optional[TransactionStatus] = Query(default=None, alias="status"),
    user_id: Optional[str] = None,
    limit: int = 20,
    cursor: Optional[str] = None,
    service: TransactionService = Depends(get_transaction_service),
) -> Page[Transaction]:
    try:
        return service.list_transactions(status_filter, user_id, limit, cursor)
    except ValidationError as e:
        _raise_http(e)


@app.post("/transactions", response_model=TransactionResponse, status_code=status.HTTP_201_CREATED, tags=["Transactions"])
def record_transaction(
    request: RecordTransactionRequest,
    service: TransactionService = Depends(get_transaction_service),
) -> TransactionResponse:
    try:
        return service.record_transaction(request)
    except (DocumentNotFoundError, ValidationError, ConflictRetryExhausted) as e:
        _raise_http(e)


@app.get("/transactions/{transaction_id}", response_model=Transaction, tags=["Transactions"])
def get_transaction(
    transaction_id: str,
    service: TransactionService = Depends(get_transaction_service),
) -> Transaction:
    try:
        return service.get_transaction(transaction_id)
    except DocumentNotFoundError as e:
        _raise_http(e)


@app.post("/transactions/{transaction_id}/status", response_model=TransactionStatusChangeResponse, tags=["Transactions"])
def change_transaction_status(
    transaction_id: str,
    request: TransactionStatusChangeRequest,
    service: TransactionService = Depends(get_transaction_service),
) -> TransactionStatusChangeResponse:
    try:
        return service.apply_status_change(transaction_id, request)
    except (DocumentNotFoundError, StaleStateError, ValidationError, ConflictRetryExhausted) as e:
        _raise_http(e)


@app.post("/transactions/{transaction_id}/cashback", response_model=TransactionResponse, tags=["Transactions"])
def adjust_cashback(
    transaction_id: str,
    request: AdjustCashbackRequest,
    service: TransactionService = Depends(get_transaction_service),
) -> TransactionResponse:
    try:
        return service.adjust_cashback(transaction_id, request)
    except (DocumentNotFoundError, StaleStateError, ValidationError, ConflictRetryExhausted) as e:
        _raise_http(e)


@app.get("/payouts", response_model=Page[PayoutRequest], tags=["Payouts"])
def list_payouts(
    status_filter: Optional[PayoutStatus] = Query(default=None, alias="status"),
    user_id: Optional[str] = None,
    limit: int = 20,
    cursor: Optional[str] = None,
    service: PayoutService = Depends(get_payout_service),
) -> Page[PayoutRequest]:
    try:
        return service.list_payouts(status_filter, user_id, limit, cursor)
    except ValidationError as e:
        _raise_http(e)


@app.post("/payouts", response_model=PayoutResponse, status_code=status.HTTP_201_CREATED, tags=["Payouts"])
def request_payout(
    request: RequestPayoutRequest,
    service: PayoutService = Depends(get_payout_service),
) -> PayoutResponse:
    try:
        return service.request_payout(request)
    except (DocumentNotFoundError, ValidationError, ConflictRetryExhausted) as e:
        _raise_http(e)


@app.get("/payouts/{payout_id}", response_model=PayoutRequest, tags=["Payouts"])
def get_payout(
    payout_id: str,
    service: PayoutService = Depends(get_payout_service),
) -> PayoutRequest:
    try:
        return service.get_payout(payout_id)
    except DocumentNotFoundError as e:
        _raise_http(e)


@app.post("/payouts/{payout_id}/resolve", response_model=PayoutResolutionResponse, tags=["Payouts"])
def resolve_payout(
    payout_id: str,
    request: ResolvePayoutRequest,
    service: PayoutService = Depends(get_payout_service),
):
    try:
        return service.resolve_payout(payout_id, request)
    except PartialSettlementError as e:
        return JSONResponse(
            status_code=status.HTTP_207_MULTI_STATUS,
            content={
                "detail": str(e),
                "payout": service.get_payout(payout_id).model_dump(mode="json"),
                "failed_transaction_ids": e.failed_ids,
                "synced_transaction_ids": e.synced_ids,
            },
        )
    except (DocumentNotFoundError, StaleStateError, ValidationError,
            InsufficientTransactionsError, ConflictRetryExhausted) as e:
        _raise_http(e)


@app.get("/users/{user_id}/wallet", response_model=UserProfile, tags=["Users"])
def get_user_wallet(
    user_id: str,
    service: TransactionService = Depends(get_transaction_service),
) -> UserProfile:
    try:
        return service.get_wallet(user_id)
    except DocumentNotFoundError as e:
        _raise_http(e)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
