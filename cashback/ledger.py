"""
Wallet bookkeeping rules.

Every movement of money between a transaction's status and the owning
user's wallet counters goes through this module:
- wallet_delta: status change of an existing transaction
- opening_delta: a newly recorded transaction, or an amount adjustment
- clamp_delta: zero floor on every wallet counter
- select_covering: oldest-first choice of transactions backing a payout
"""

from decimal import Decimal

from .errors import ValidationError
from .models import ZERO, Transaction, TransactionStatus, Wallet, WalletDelta

WALLET_FIELDS = ("pending_cashback", "cashback_balance", "lifetime_cashback")

_P = TransactionStatus.PENDING
_C = TransactionStatus.CONFIRMED
_PAID = TransactionStatus.PAID
_R = TransactionStatus.REJECTED
_X = TransactionStatus.CANCELLED

# (original, new) -> sign of (pending_cashback, cashback_balance, lifetime_cashback)
_TRANSITIONS: dict[tuple[TransactionStatus, TransactionStatus], tuple[int, int, int]] = {
    (_P, _C): (-1, 1, 1),
    (_P, _R): (-1, 0, 0),
    (_P, _X): (-1, 0, 0),
    (_C, _P): (1, -1, -1),
    (_C, _R): (0, -1, -1),
    (_C, _X): (0, -1, -1),
    # The balance moves when the payout is requested, not here.
    (_C, _PAID): (0, 0, 0),
    (_PAID, _C): (0, 0, 0),
    (_R, _P): (1, 0, 0),
    (_X, _P): (1, 0, 0),
    (_R, _C): (0, 1, 1),
    (_X, _C): (0, 1, 1),
    (_R, _X): (0, 0, 0),
    (_X, _R): (0, 0, 0),
}

_OPENING: dict[TransactionStatus, tuple[int, int, int]] = {
    _P: (1, 0, 0),
    _C: (0, 1, 1),
    _R: (0, 0, 0),
    _X: (0, 0, 0),
}


def _scaled(signs: tuple[int, int, int], amount: Decimal) -> WalletDelta:
    return WalletDelta(**{name: sign * amount for name, sign in zip(WALLET_FIELDS, signs)})


def wallet_delta(original: TransactionStatus, new: TransactionStatus, amount: Decimal) -> WalletDelta:
    if original == new:
        return WalletDelta()
    try:
        signs = _TRANSITIONS[(original, new)]
    except KeyError:
        raise ValidationError(f"Unsupported transition {original.value} -> {new.value}") from None
    return _scaled(signs, amount)


def opening_delta(status: TransactionStatus, amount: Decimal) -> WalletDelta:
    """Contribution of `amount` cashback held in `status` to the wallet."""
    try:
        signs = _OPENING[status]
    except KeyError:
        raise ValidationError(f"Transactions cannot be recorded as {status.value}") from None
    return _scaled(signs, amount)


def clamp_delta(wallet: Wallet, delta: WalletDelta) -> tuple[WalletDelta, list[str]]:
    """Floor each counter at zero. Returns the applied delta and the clamped field names.

    Only decreases are clamped; a zero or positive change is applied as is.
    """
    values = {}
    clamped = []
    for name in WALLET_FIELDS:
        current = getattr(wallet, name)
        change = getattr(delta, name)
        if change < ZERO and current + change < ZERO:
            change = min(ZERO, -current)
            clamped.append(name)
        values[name] = change
    return WalletDelta(**values), clamped


def apply_delta(wallet: Wallet, delta: WalletDelta) -> Wallet:
    return Wallet(**{name: getattr(wallet, name) + getattr(delta, name) for name in WALLET_FIELDS})


def select_covering(candidates: list[Transaction], amount: Decimal) -> tuple[list[Transaction], Decimal]:
    """Greedy oldest-first pick that never overshoots `amount`.

    Candidates must already be ordered oldest first.
    """
    selected = []
    total = ZERO
    for tx in candidates:
        value = tx.cashback_amount
        if total + value <= amount:
            selected.append(tx)
            total += value
        if total >= amount:
            break
    return selected, total


def covers(total: Decimal, amount: Decimal, tolerance: Decimal) -> bool:
    return abs(total - amount) <= tolerance
