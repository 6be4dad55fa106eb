"""
Payout settlement.

Resolving a payout runs in two phases:
1. One atomic store transaction writes the payout, claims any transactions
   it picks, and, when money moves, updates the user's cashback balance.
   This phase is authoritative for money.
2. A follow-up batch marks the backing transactions paid, or reverts them to
   confirmed. Its failure does not undo phase 1 and is reported as
   PartialSettlementError so the operator can reconcile.
"""

import logging
from typing import Optional
from uuid import uuid4

from .config import Settings, get_settings
from .errors import (
    DocumentNotFoundError,
    InsufficientTransactionsError,
    LedgerServiceError,
    PartialSettlementError,
    StaleStateError,
    ValidationError,
)
from .ledger import covers, select_covering
from .models import (
    ZERO,
    Page,
    PayoutRequest,
    PayoutResolutionResponse,
    PayoutResponse,
    PayoutStatus,
    RequestPayoutRequest,
    ResolvePayoutRequest,
    Transaction,
    TransactionStatus,
    Wallet,
)
from .store import PAYOUTS, TRANSACTIONS, USERS, InMemoryStorage, Increment, StoreTransaction, Write, paginate
from .transactions import clean_text, load_user, page_size, total_cashback, utcnow

logger = logging.getLogger(__name__)


def _unlinked_confirmed(tx: StoreTransaction, user_id: str) -> list[Transaction]:
    rows = tx.query(
        TRANSACTIONS,
        where={"user_id": user_id, "status": TransactionStatus.CONFIRMED.value, "payout_id": None},
        order_by="transaction_date",
    )
    return [Transaction.model_validate(r) for r in rows]


class PayoutService:
    def __init__(self, storage: Optional[InMemoryStorage] = None, settings: Optional[Settings] = None):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or get_settings()

    def request_payout(self, request: RequestPayoutRequest) -> PayoutResponse:
        """Withdraw from the user's cashback balance into a pending payout.

        When the user's confirmed, unclaimed transactions add up to the
        amount they are linked to the payout right away and move to
        awaiting_payout; otherwise they are picked at settlement time.
        """
        threshold = self.settings.MIN_PAYOUT_THRESHOLD
        tolerance = self.settings.SETTLEMENT_TOLERANCE
        payout_id = uuid4().hex

        def _request(tx: StoreTransaction):
            user = load_user(tx, request.user_id)
            available = user.cashback_balance
            amount = request.amount if request.amount is not None else available
            if amount < threshold:
                raise ValidationError(f"At least {threshold} cashback is required to request a payout")
            if amount > available:
                raise ValidationError(f"Requested {amount} exceeds the available balance of {available}")

            linked: list[Transaction] = []
            if request.link_transactions:
                selected, total = select_covering(_unlinked_confirmed(tx, user.id), amount)
                if selected and covers(total, amount, tolerance):
                    linked = selected
                else:
                    logger.info(
                        "Confirmed transactions for user %s sum to %s, not %s; deferring selection to settlement",
                        user.id, total, amount,
                    )

            now = utcnow()
            tx.set(PAYOUTS, payout_id, {
                "id": payout_id,
                "user_id": user.id,
                "amount": amount,
                "status": PayoutStatus.PENDING.value,
                "requested_at": now,
                "processed_at": None,
                "payment_method": request.payment_method.value,
                "payment_details": {"method": request.payment_method.value, "detail": request.payment_detail},
                "transaction_ids": [t.id for t in linked],
                "admin_notes": None,
                "failure_reason": None,
            })
            tx.update(USERS, user.id, {
                "cashback_balance": Increment(-amount),
                "last_payout_request_at": now,
                "updated_at": now,
            })
            for t in linked:
                tx.update(TRANSACTIONS, t.id, {
                    "status": TransactionStatus.AWAITING_PAYOUT.value,
                    "payout_id": payout_id,
                    "updated_at": now,
                })
            return user, amount, linked

        user, amount, linked = self.storage.run_transaction(_request)
        logger.info(
            "Payout %s requested by user %s for %s (%d transactions linked, %s)",
            payout_id, user.id, amount, len(linked), total_cashback(linked),
        )
        return PayoutResponse(
            payout=self.get_payout(payout_id),
            wallet=Wallet(
                pending_cashback=user.pending_cashback,
                cashback_balance=user.cashback_balance - amount,
                lifetime_cashback=user.lifetime_cashback,
            ),
            message="Payout request submitted",
        )

    def resolve_payout(self, payout_id: str, request: ResolvePayoutRequest) -> PayoutResolutionResponse:
        """Move a payout to `request.new_status`.

        - to paid: settle against pre-linked transactions or pick confirmed
          ones oldest first; the pick must match the amount within tolerance.
        - to rejected/failed from an in-flight or paid state: credit the amount
          back and revert the linked transactions to confirmed.
        - reopening a rejected/failed payout debits the amount again.
        - anything else only updates status and notes.
        """
        new_status = request.new_status
        reason = clean_text(request.failure_reason)
        if new_status.is_negative and not reason:
            raise ValidationError("A failure reason is required when rejecting or failing a payout")
        tolerance = self.settings.SETTLEMENT_TOLERANCE

        def _resolve(tx: StoreTransaction):
            payout = self._load(tx, payout_id)
            original = payout.status
            if request.expected_status is not None and original != request.expected_status:
                raise StaleStateError(payout_id, request.expected_status, original)
            if original == PayoutStatus.PAID and new_status != PayoutStatus.PAID and not new_status.is_negative:
                raise ValidationError("A paid payout can only be rejected or marked failed")
            user = load_user(tx, payout.user_id)

            balance_change = ZERO
            claimed: list[str] = []
            to_settle: list[str] = []
            to_revert: list[str] = []
            updates: dict = {
                "status": new_status.value,
                "admin_notes": clean_text(request.admin_notes),
                "failure_reason": reason if new_status.is_negative else None,
            }

            if original.is_negative and not new_status.is_negative:
                if user.cashback_balance < payout.amount:
                    raise ValidationError(
                        f"Cannot reopen payout {payout_id}: balance {user.cashback_balance} is below {payout.amount}"
                    )
                balance_change -= payout.amount

            if new_status == PayoutStatus.PAID and original != PayoutStatus.PAID:
                to_settle = list(payout.transaction_ids)
                if not to_settle:
                    selected, total = select_covering(_unlinked_confirmed(tx, user.id), payout.amount)
                    if not selected or not covers(total, payout.amount, tolerance):
                        raise InsufficientTransactionsError(payout_id, payout.amount, total)
                    to_settle = [t.id for t in selected]
                    claimed = to_settle
                    updates["transaction_ids"] = to_settle
            elif new_status.is_negative and (original.is_in_flight or original == PayoutStatus.PAID):
                balance_change += payout.amount
                to_revert = list(payout.transaction_ids)
                updates["transaction_ids"] = []

            now = utcnow()
            updates["processed_at"] = now
            tx.update(PAYOUTS, payout_id, updates)
            if balance_change:
                tx.update(USERS, user.id, {"cashback_balance": Increment(balance_change), "updated_at": now})
            # Claim picked rows in this transaction; a concurrent pick of them fails its version check.
            for tid in claimed:
                tx.update(TRANSACTIONS, tid, {"payout_id": payout_id, "updated_at": now})
            return original, user, balance_change, to_settle, to_revert, now

        original, user, balance_change, to_settle, to_revert, now = self.storage.run_transaction(_resolve)
        logger.info(
            "Payout %s %s -> %s for user %s (balance change %s)",
            payout_id, original.value, new_status.value, user.id, balance_change,
        )

        synced: list[str] = []
        failed: list[str] = []
        if to_settle:
            synced, failed = self._sync_transactions(payout_id, to_settle, {
                "status": TransactionStatus.PAID.value,
                "payout_id": payout_id,
                "paid_date": now,
                "updated_at": now,
            })
        elif to_revert:
            synced, failed = self._sync_transactions(payout_id, to_revert, {
                "status": TransactionStatus.CONFIRMED.value,
                "payout_id": None,
                "paid_date": None,
                "updated_at": now,
            })
        if failed:
            raise PartialSettlementError(payout_id, failed, synced)

        return PayoutResolutionResponse(
            payout=self.get_payout(payout_id),
            settled_transaction_ids=synced if to_settle else [],
            reverted_transaction_ids=synced if to_revert else [],
            wallet=Wallet(
                pending_cashback=user.pending_cashback,
                cashback_balance=user.cashback_balance + balance_change,
                lifetime_cashback=user.lifetime_cashback,
            ),
            message=f"Payout status set to {new_status.value}",
        )

    def get_payout(self, payout_id: str) -> PayoutRequest:
        data = self.storage.get(PAYOUTS, payout_id)
        if data is None:
            raise DocumentNotFoundError(PAYOUTS, payout_id)
        return PayoutRequest.model_validate(data)

    def list_payouts(
        self,
        status: Optional[PayoutStatus] = None,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> Page[PayoutRequest]:
        where = {}
        if status is not None:
            where["status"] = status.value
        if user_id:
            where["user_id"] = user_id
        limit = page_size(self.settings, limit)
        rows, next_cursor = paginate(self.storage, PAYOUTS, where, "requested_at", limit, cursor)
        return Page[PayoutRequest](
            items=[PayoutRequest.model_validate(r) for r in rows],
            next_cursor=next_cursor,
        )

    def _sync_transactions(self, payout_id: str, transaction_ids: list[str], fields: dict) -> tuple[list[str], list[str]]:
        synced: list[str] = []
        failed: list[str] = []
        size = self.settings.BATCH_WRITE_LIMIT
        for start in range(0, len(transaction_ids), size):
            chunk = transaction_ids[start:start + size]
            try:
                self.storage.run_batch([Write(TRANSACTIONS, tid, fields) for tid in chunk])
            except LedgerServiceError as e:
                logger.error("Payout %s: failed to sync %d transactions: %s", payout_id, len(chunk), e)
                failed.extend(chunk)
            else:
                synced.extend(chunk)
        return synced, failed

    @staticmethod
    def _load(tx: StoreTransaction, payout_id: str) -> PayoutRequest:
        data = tx.get(PAYOUTS, payout_id)
        if data is None:
            raise DocumentNotFoundError(PAYOUTS, payout_id)
        return PayoutRequest.model_validate(data)
