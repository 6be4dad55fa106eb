import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from .config import Settings, get_settings
from .errors import DocumentNotFoundError, StaleStateError, ValidationError
from .ledger import apply_delta, clamp_delta, opening_delta, wallet_delta
from .models import (
    ADMIN_TRANSACTION_STATUSES,
    AdjustCashbackRequest,
    Page,
    RecordTransactionRequest,
    Transaction,
    TransactionResponse,
    TransactionStatus,
    TransactionStatusChangeRequest,
    TransactionStatusChangeResponse,
    UserProfile,
    WalletDelta,
)
from .store import TRANSACTIONS, USERS, InMemoryStorage, Increment, StoreTransaction, paginate

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip() or None


def wallet_updates(delta: WalletDelta, now: datetime) -> dict:
    updates = {"updated_at": now}
    for name, value in delta.model_dump().items():
        if value:
            updates[name] = Increment(value)
    return updates


def page_size(settings: Settings, limit: Optional[int]) -> int:
    if not limit or limit <= 0:
        return settings.DEFAULT_PAGE_SIZE
    return min(limit, settings.MAX_PAGE_SIZE)


def load_user(tx: StoreTransaction, user_id: str) -> UserProfile:
    data = tx.get(USERS, user_id)
    if data is None:
        raise DocumentNotFoundError(USERS, user_id)
    return UserProfile.model_validate(data)


class TransactionService:
    def __init__(self, storage: Optional[InMemoryStorage] = None, settings: Optional[Settings] = None):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or get_settings()

    def apply_status_change(
        self, transaction_id: str, request: TransactionStatusChangeRequest
    ) -> TransactionStatusChangeResponse:
        """Move a transaction to a new status and book the wallet delta atomically.

        Fails with StaleStateError when the stored status no longer matches
        `request.expected_status`, so a repeated submit never double-books.
        """
        new_status = request.new_status
        if new_status not in ADMIN_TRANSACTION_STATUSES:
            raise ValidationError(f"Status {new_status.value} cannot be set on a transaction directly")
        reason = clean_text(request.rejection_reason)
        if new_status.is_negative and not reason:
            raise ValidationError("A rejection reason is required when rejecting or cancelling a transaction")

        def _change(tx: StoreTransaction):
            current = self._load(tx, transaction_id)
            if current.status != request.expected_status:
                raise StaleStateError(transaction_id, request.expected_status, current.status)
            if current.payout_id and new_status != current.status:
                raise ValidationError(
                    f"Transaction {transaction_id} is linked to payout {current.payout_id}; resolve the payout instead"
                )
            user = load_user(tx, current.user_id)

            delta = wallet_delta(current.status, new_status, current.cashback_amount)
            applied, clamped = clamp_delta(user.wallet, delta)

            now = utcnow()
            updates = {
                "status": new_status.value,
                "admin_notes": clean_text(request.admin_notes),
                "notes_to_user": clean_text(request.notes_to_user),
                "rejection_reason": reason if new_status.is_negative else None,
                "updated_at": now,
            }
            if new_status != current.status:
                if new_status == TransactionStatus.CONFIRMED:
                    if current.status != TransactionStatus.PAID or current.confirmation_date is None:
                        updates["confirmation_date"] = now
                elif current.status == TransactionStatus.CONFIRMED and new_status != TransactionStatus.PAID:
                    updates["confirmation_date"] = None
                if new_status == TransactionStatus.PAID:
                    updates["paid_date"] = now
                elif current.status == TransactionStatus.PAID:
                    updates["paid_date"] = None

            tx.update(TRANSACTIONS, transaction_id, updates)
            if not applied.is_zero():
                tx.update(USERS, user.id, wallet_updates(applied, now))
            return current, user, applied, clamped

        original, user, applied, clamped = self.storage.run_transaction(_change)

        if clamped:
            logger.warning(
                "Data-integrity warning: clamped %s to zero for user %s while moving transaction %s %s -> %s",
                ", ".join(clamped), user.id, transaction_id, original.status.value, new_status.value,
            )
        logger.info(
            "Transaction %s %s -> %s for user %s (delta %s)",
            transaction_id, original.status.value, new_status.value, user.id, applied.model_dump(),
        )

        return TransactionStatusChangeResponse(
            transaction=self.get_transaction(transaction_id),
            delta=applied,
            wallet=apply_delta(user.wallet, applied),
            clamped_fields=clamped,
            message=f"Transaction status set to {new_status.value}",
        )

    def record_transaction(self, request: RecordTransactionRequest) -> TransactionResponse:
        """Manually record a sale and book its opening wallet contribution."""
        status = request.status
        reason = clean_text(request.rejection_reason)
        if status.is_negative and not reason:
            raise ValidationError("A rejection reason is required when recording a rejected or cancelled transaction")
        delta = opening_delta(status, request.initial_cashback_amount)
        transaction_id = uuid4().hex

        def _record(tx: StoreTransaction):
            user = load_user(tx, request.user_id)
            now = utcnow()
            data = {
                "id": transaction_id,
                "user_id": request.user_id,
                "store_id": request.store_id,
                "store_name": request.store_name,
                "order_id": request.order_id,
                "click_id": request.click_id,
                "conversion_id": request.conversion_id,
                "product_details": request.product_details,
                "transaction_date": request.transaction_date or now,
                "sale_amount": request.sale_amount,
                "final_sale_amount": None,
                "initial_cashback_amount": request.initial_cashback_amount,
                "final_cashback_amount": None,
                "currency": request.currency or self.settings.DEFAULT_CURRENCY,
                "status": status.value,
                "payout_id": None,
                "confirmation_date": now if status == TransactionStatus.CONFIRMED else None,
                "paid_date": None,
                "admin_notes": clean_text(request.admin_notes),
                "notes_to_user": clean_text(request.notes_to_user),
                "rejection_reason": reason if status.is_negative else None,
                "created_at": now,
                "updated_at": now,
            }
            tx.set(TRANSACTIONS, transaction_id, data)
            if not delta.is_zero():
                tx.update(USERS, user.id, wallet_updates(delta, now))
            return user

        user = self.storage.run_transaction(_record)
        logger.info("Recorded %s transaction %s for user %s", status.value, transaction_id, user.id)

        return TransactionResponse(
            transaction=self.get_transaction(transaction_id),
            delta=delta,
            wallet=apply_delta(user.wallet, delta),
            message="Transaction recorded successfully",
        )

    def adjust_cashback(self, transaction_id: str, request: AdjustCashbackRequest) -> TransactionResponse:
        """Set the honored cashback (and sale) amount.

        Only pending transactions, or confirmed ones not yet claimed by a
        payout, can be adjusted. The wallet counter the status feeds moves by
        the difference immediately.
        """
        if request.final_cashback_amount is None and request.final_sale_amount is None:
            raise ValidationError("Nothing to adjust")

        def _adjust(tx: StoreTransaction):
            current = self._load(tx, transaction_id)
            if current.status != request.expected_status:
                raise StaleStateError(transaction_id, request.expected_status, current.status)
            if current.status not in (TransactionStatus.PENDING, TransactionStatus.CONFIRMED) or current.payout_id:
                raise ValidationError(
                    f"Cashback of a {current.status.value} transaction can no longer be adjusted"
                )
            user = load_user(tx, current.user_id)

            new_amount = request.final_cashback_amount
            if new_amount is None:
                new_amount = current.cashback_amount
            delta = opening_delta(current.status, new_amount - current.cashback_amount)
            applied, clamped = clamp_delta(user.wallet, delta)

            now = utcnow()
            updates: dict = {"final_cashback_amount": new_amount, "updated_at": now}
            if request.final_sale_amount is not None:
                updates["final_sale_amount"] = request.final_sale_amount
            if request.admin_notes is not None:
                updates["admin_notes"] = clean_text(request.admin_notes)
            tx.update(TRANSACTIONS, transaction_id, updates)
            if not applied.is_zero():
                tx.update(USERS, user.id, wallet_updates(applied, now))
            return user, applied, clamped

        user, applied, clamped = self.storage.run_transaction(_adjust)
        if clamped:
            logger.warning(
                "Data-integrity warning: clamped %s to zero for user %s while adjusting transaction %s",
                ", ".join(clamped), user.id, transaction_id,
            )

        return TransactionResponse(
            transaction=self.get_transaction(transaction_id),
            delta=applied,
            wallet=apply_delta(user.wallet, applied),
            message="Cashback adjusted successfully",
        )

    def get_transaction(self, transaction_id: str) -> Transaction:
        data = self.storage.get(TRANSACTIONS, transaction_id)
        if data is None:
            raise DocumentNotFoundError(TRANSACTIONS, transaction_id)
        return Transaction.model_validate(data)

    def get_wallet(self, user_id: str) -> UserProfile:
        data = self.storage.get(USERS, user_id)
        if data is None:
            raise DocumentNotFoundError(USERS, user_id)
        return UserProfile.model_validate(data)

    def list_transactions(
        self,
        status: Optional[TransactionStatus] = None,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> Page[Transaction]:
        where = {}
        if status is not None:
            where["status"] = status.value
        if user_id:
            where["user_id"] = user_id
        limit = page_size(self.settings, limit)
        rows, next_cursor = paginate(self.storage, TRANSACTIONS, where, "transaction_date", limit, cursor)
        return Page[Transaction](
            items=[Transaction.model_validate(r) for r in rows],
            next_cursor=next_cursor,
        )

    @staticmethod
    def _load(tx: StoreTransaction, transaction_id: str) -> Transaction:
        data = tx.get(TRANSACTIONS, transaction_id)
        if data is None:
            raise DocumentNotFoundError(TRANSACTIONS, transaction_id)
        return Transaction.model_validate(data)


def total_cashback(transactions: list[Transaction]) -> Decimal:
    return sum((t.cashback_amount for t in transactions), Decimal("0"))
