from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Generic, Optional, TypeVar
from pydantic import BaseModel, Field, ConfigDict


ZERO = Decimal("0")

T = TypeVar("T")


class TransactionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    AWAITING_PAYOUT = "awaiting_payout"
    PAID = "paid"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_negative(self) -> bool:
        return self in (TransactionStatus.REJECTED, TransactionStatus.CANCELLED)


class PayoutStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    PAID = "paid"
    REJECTED = "rejected"
    FAILED = "failed"

    @property
    def is_in_flight(self) -> bool:
        return self in (PayoutStatus.PENDING, PayoutStatus.APPROVED, PayoutStatus.PROCESSING)

    @property
    def is_negative(self) -> bool:
        return self in (PayoutStatus.REJECTED, PayoutStatus.FAILED)


class PayoutMethod(str, Enum):
    PAYPAL = "paypal"
    BANK_TRANSFER = "bank_transfer"
    GIFT_CARD = "gift_card"


# Statuses an admin may set directly on a transaction.
ADMIN_TRANSACTION_STATUSES = frozenset({
    TransactionStatus.PENDING,
    TransactionStatus.CONFIRMED,
    TransactionStatus.REJECTED,
    TransactionStatus.CANCELLED,
    TransactionStatus.PAID,
})


class Transaction(BaseModel):
    id: str
    user_id: str
    store_id: Optional[str] = None
    store_name: Optional[str] = None
    order_id: Optional[str] = None
    click_id: Optional[str] = None
    conversion_id: Optional[str] = None
    product_details: Optional[str] = None
    transaction_date: datetime
    sale_amount: Decimal
    final_sale_amount: Optional[Decimal] = None
    initial_cashback_amount: Decimal
    final_cashback_amount: Optional[Decimal] = None
    currency: str = "INR"
    status: TransactionStatus
    payout_id: Optional[str] = None
    confirmation_date: Optional[datetime] = None
    paid_date: Optional[datetime] = None
    admin_notes: Optional[str] = None
    notes_to_user: Optional[str] = None
    rejection_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def cashback_amount(self) -> Decimal:
        """Amount actually honored: the admin-adjusted figure when set."""
        if self.final_cashback_amount is not None:
            return self.final_cashback_amount
        return self.initial_cashback_amount

    @property
    def effective_sale_amount(self) -> Decimal:
        if self.final_sale_amount is not None:
            return self.final_sale_amount
        return self.sale_amount


class UserProfile(BaseModel):
    id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    pending_cashback: Decimal = ZERO
    cashback_balance: Decimal = ZERO
    lifetime_cashback: Decimal = ZERO
    last_payout_request_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def wallet(self) -> "Wallet":
        return Wallet(
            pending_cashback=self.pending_cashback,
            cashback_balance=self.cashback_balance,
            lifetime_cashback=self.lifetime_cashback,
        )


class PaymentDetails(BaseModel):
    method: PayoutMethod
    detail: str


class PayoutRequest(BaseModel):
    id: str
    user_id: str
    amount: Decimal
    status: PayoutStatus
    requested_at: datetime
    processed_at: Optional[datetime] = None
    payment_method: PayoutMethod
    payment_details: PaymentDetails
    transaction_ids: list[str] = Field(default_factory=list)
    admin_notes: Optional[str] = None
    failure_reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class Wallet(BaseModel):
    pending_cashback: Decimal = ZERO
    cashback_balance: Decimal = ZERO
    lifetime_cashback: Decimal = ZERO


class WalletDelta(BaseModel):
    pending_cashback: Decimal = ZERO
    cashback_balance: Decimal = ZERO
    lifetime_cashback: Decimal = ZERO

    model_config = ConfigDict(frozen=True)

    def is_zero(self) -> bool:
        return not (self.pending_cashback or self.cashback_balance or self.lifetime_cashback)

    def __add__(self, other: "WalletDelta") -> "WalletDelta":
        return WalletDelta(
            pending_cashback=self.pending_cashback + other.pending_cashback,
            cashback_balance=self.cashback_balance + other.cashback_balance,
            lifetime_cashback=self.lifetime_cashback + other.lifetime_cashback,
        )


class TransactionStatusChangeRequest(BaseModel):
    expected_status: TransactionStatus = Field(..., description="Status the admin saw when opening the edit view")
    new_status: TransactionStatus
    admin_notes: Optional[str] = None
    notes_to_user: Optional[str] = None
    rejection_reason: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "expected_status": "pending",
            "new_status": "rejected",
            "rejection_reason": "duplicate order",
        }
    })


class RecordTransactionRequest(BaseModel):
    user_id: str
    store_id: Optional[str] = None
    store_name: Optional[str] = None
    order_id: Optional[str] = None
    click_id: Optional[str] = None
    conversion_id: Optional[str] = None
    product_details: Optional[str] = None
    transaction_date: Optional[datetime] = None
    sale_amount: Decimal = Field(..., ge=0)
    initial_cashback_amount: Decimal = Field(..., ge=0)
    currency: Optional[str] = None
    status: TransactionStatus = TransactionStatus.PENDING
    admin_notes: Optional[str] = None
    notes_to_user: Optional[str] = None
    rejection_reason: Optional[str] = None


class AdjustCashbackRequest(BaseModel):
    expected_status: TransactionStatus
    final_cashback_amount: Optional[Decimal] = Field(default=None, ge=0)
    final_sale_amount: Optional[Decimal] = Field(default=None, ge=0)
    admin_notes: Optional[str] = None


class RequestPayoutRequest(BaseModel):
    user_id: str
    payment_method: PayoutMethod
    payment_detail: str = Field(..., min_length=1)
    amount: Optional[Decimal] = Field(default=None, gt=0, description="Defaults to the whole available balance")
    link_transactions: bool = True


class ResolvePayoutRequest(BaseModel):
    new_status: PayoutStatus
    expected_status: Optional[PayoutStatus] = None
    admin_notes: Optional[str] = None
    failure_reason: Optional[str] = None


class TransactionStatusChangeResponse(BaseModel):
    transaction: Transaction
    delta: WalletDelta
    wallet: Wallet
    clamped_fields: list[str] = Field(default_factory=list)
    message: str


class TransactionResponse(BaseModel):
    transaction: Transaction
    delta: WalletDelta
    wallet: Wallet
    message: str


class PayoutResolutionResponse(BaseModel):
    payout: PayoutRequest
    settled_transaction_ids: list[str] = Field(default_factory=list)
    reverted_transaction_ids: list[str] = Field(default_factory=list)
    wallet: Wallet
    message: str


class PayoutResponse(BaseModel):
    payout: PayoutRequest
    wallet: Wallet
    message: str


class Page(BaseModel, Generic[T]):
    items: list[T]
    next_cursor: Optional[str] = None
