"""
Cashback Ledger for an Affiliate Admin Back-Office

This module provides:
- Transaction status transitions with centralized wallet bookkeeping
- Payout settlement and reversal against confirmed transactions
- Wallet counters (pending, available, lifetime) kept non-negative
- Optimistic-concurrency document store with atomic transactions and batches
"""

from .errors import (
    ConflictRetryExhausted,
    DocumentNotFoundError,
    InsufficientTransactionsError,
    LedgerServiceError,
    PartialSettlementError,
    StaleStateError,
    UpdateFailedError,
    ValidationError,
)
from .models import (
    PayoutRequest,
    PayoutStatus,
    Transaction,
    TransactionStatus,
    UserProfile,
    WalletDelta,
)
from .payouts import PayoutService
from .store import InMemoryStorage
from .transactions import TransactionService

__all__ = [
    "ConflictRetryExhausted",
    "DocumentNotFoundError",
    "InsufficientTransactionsError",
    "LedgerServiceError",
    "PartialSettlementError",
    "StaleStateError",
    "UpdateFailedError",
    "ValidationError",
    "PayoutRequest",
    "PayoutStatus",
    "Transaction",
    "TransactionStatus",
    "UserProfile",
    "WalletDelta",
    "PayoutService",
    "InMemoryStorage",
    "TransactionService",
]
