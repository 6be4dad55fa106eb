"""
Unit Tests for the wallet bookkeeping rules

Tests cover:
1. Status transition deltas
2. Opening contributions of recorded transactions
3. Zero-floor clamping
4. Oldest-first payout coverage
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from cashback.errors import ValidationError
from cashback.ledger import (
    apply_delta,
    clamp_delta,
    covers,
    opening_delta,
    select_covering,
    wallet_delta,
)
from cashback.models import Transaction, TransactionStatus, Wallet, WalletDelta


P = TransactionStatus.PENDING
C = TransactionStatus.CONFIRMED
PAID = TransactionStatus.PAID
R = TransactionStatus.REJECTED
X = TransactionStatus.CANCELLED

AMOUNT = Decimal("100.00")


def _tx(cashback: str, day: int, final: str = None) -> Transaction:
    now = datetime.now(timezone.utc)
    return Transaction(
        id=f"tx-{day}",
        user_id="user-1",
        transaction_date=now + timedelta(days=day),
        sale_amount=Decimal("1000"),
        initial_cashback_amount=Decimal(cashback),
        final_cashback_amount=Decimal(final) if final else None,
        status=C,
        created_at=now,
        updated_at=now,
    )


class TestWalletDelta:
    """Tests for the status transition table."""

    @pytest.mark.parametrize("original,new,expected", [
        (P, C, ("-100.00", "100.00", "100.00")),
        (P, R, ("-100.00", "0", "0")),
        (P, X, ("-100.00", "0", "0")),
        (C, P, ("100.00", "-100.00", "-100.00")),
        (C, R, ("0", "-100.00", "-100.00")),
        (C, X, ("0", "-100.00", "-100.00")),
        (C, PAID, ("0", "0", "0")),
        (R, C, ("0", "100.00", "100.00")),
        (X, P, ("100.00", "0", "0")),
    ])
    def test_table(self, original, new, expected):
        """Test each supported transition books the documented delta."""
        delta = wallet_delta(original, new, AMOUNT)

        assert delta == WalletDelta(
            pending_cashback=Decimal(expected[0]),
            cashback_balance=Decimal(expected[1]),
            lifetime_cashback=Decimal(expected[2]),
        )

    @pytest.mark.parametrize("status", list(TransactionStatus))
    def test_same_status_is_zero(self, status):
        assert wallet_delta(status, status, AMOUNT).is_zero()

    def test_confirm_then_revert_cancels_out(self):
        """Test that pending -> confirmed -> pending nets to nothing."""
        total = wallet_delta(P, C, AMOUNT) + wallet_delta(C, P, AMOUNT)
        assert total.is_zero()

    @pytest.mark.parametrize("original,new", [
        (P, PAID),
        (PAID, P),
        (PAID, R),
        (TransactionStatus.AWAITING_PAYOUT, C),
    ])
    def test_unsupported_transition_fails(self, original, new):
        with pytest.raises(ValidationError):
            wallet_delta(original, new, AMOUNT)


class TestOpeningDelta:
    def test_pending_counts_towards_pending(self):
        delta = opening_delta(P, Decimal("40"))
        assert delta.pending_cashback == Decimal("40")
        assert delta.cashback_balance == 0

    def test_confirmed_counts_towards_balance_and_lifetime(self):
        delta = opening_delta(C, Decimal("40"))
        assert delta.cashback_balance == Decimal("40")
        assert delta.lifetime_cashback == Decimal("40")
        assert delta.pending_cashback == 0

    def test_rejected_contributes_nothing(self):
        assert opening_delta(R, Decimal("40")).is_zero()

    def test_cannot_open_as_paid(self):
        with pytest.raises(ValidationError):
            opening_delta(PAID, Decimal("40"))


class TestClampDelta:
    """Tests for the zero floor on wallet counters."""

    def test_no_clamp_when_covered(self):
        wallet = Wallet(pending_cashback=Decimal("100"))
        delta = wallet_delta(P, C, Decimal("100"))

        applied, clamped = clamp_delta(wallet, delta)

        assert applied == delta
        assert clamped == []

    def test_clamps_to_current_value(self):
        """Test that a negative delta larger than the counter drains it to zero."""
        wallet = Wallet(pending_cashback=Decimal("30"), cashback_balance=Decimal("5"))
        delta = WalletDelta(pending_cashback=Decimal("-100"), cashback_balance=Decimal("-10"))

        applied, clamped = clamp_delta(wallet, delta)

        assert applied.pending_cashback == Decimal("-30")
        assert applied.cashback_balance == Decimal("-5")
        assert clamped == ["pending_cashback", "cashback_balance"]

        result = apply_delta(wallet, applied)
        assert result.pending_cashback == 0
        assert result.cashback_balance == 0

    def test_increase_on_drifted_counter_not_clamped(self):
        """Test that only decreases are floored; a drifted counter keeps a zero or positive change."""
        wallet = Wallet(pending_cashback=Decimal("-5"), cashback_balance=Decimal("-3"))
        delta = WalletDelta(pending_cashback=Decimal("10"))

        applied, clamped = clamp_delta(wallet, delta)

        assert applied == delta
        assert clamped == []

    def test_decrease_on_drifted_counter_becomes_zero(self):
        wallet = Wallet(cashback_balance=Decimal("-3"))
        delta = WalletDelta(cashback_balance=Decimal("-10"))

        applied, clamped = clamp_delta(wallet, delta)

        assert applied.cashback_balance == Decimal("0")
        assert clamped == ["cashback_balance"]


class TestSelectCovering:
    """Tests for picking transactions that back a payout."""

    def test_takes_oldest_first(self):
        candidates = [_tx("50", 0), _tx("30", 1), _tx("40", 2)]

        selected, total = select_covering(candidates, Decimal("80"))

        assert [t.id for t in selected] == ["tx-0", "tx-1"]
        assert total == Decimal("80")

    def test_skips_candidates_that_overshoot(self):
        candidates = [_tx("50", 0), _tx("40", 1), _tx("30", 2)]

        selected, total = select_covering(candidates, Decimal("80"))

        assert [t.id for t in selected] == ["tx-0", "tx-2"]
        assert total == Decimal("80")

    def test_uses_final_amount_when_adjusted(self):
        candidates = [_tx("50", 0, final="20"), _tx("60", 1)]

        selected, total = select_covering(candidates, Decimal("80"))

        assert len(selected) == 2
        assert total == Decimal("80")

    def test_short_of_amount(self):
        candidates = [_tx("50", 0), _tx("30", 1), _tx("40", 2)]

        selected, total = select_covering(candidates, Decimal("125"))

        assert total == Decimal("120")
        assert not covers(total, Decimal("125"), Decimal("0.01"))

    def test_tolerance(self):
        assert covers(Decimal("79.995"), Decimal("80"), Decimal("0.01"))
        assert not covers(Decimal("79.98"), Decimal("80"), Decimal("0.01"))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
