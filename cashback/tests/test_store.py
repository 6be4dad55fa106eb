"""
Unit Tests for the document store

Tests cover:
1. Atomic transactions and optimistic-concurrency retries
2. Atomic batches
3. Field increments
4. Ordered queries and cursors
"""

import pytest
from decimal import Decimal

from cashback.errors import ConflictRetryExhausted, DocumentNotFoundError, ValidationError
from cashback.store import InMemoryStorage, Increment, Write


def _storage() -> InMemoryStorage:
    storage = InMemoryStorage(max_attempts=3)
    storage.insert("accounts", {"balance": Decimal("10"), "rank": 2}, doc_id="a")
    storage.insert("accounts", {"balance": Decimal("20"), "rank": 1}, doc_id="b")
    storage.insert("accounts", {"balance": Decimal("30"), "rank": 3}, doc_id="c")
    return storage


class TestTransactions:
    def test_commit_applies_all_writes(self):
        storage = _storage()

        def _move(tx):
            a = tx.get("accounts", "a")
            tx.update("accounts", "a", {"balance": a["balance"] - 5})
            tx.update("accounts", "b", {"balance": Increment(Decimal("5"))})
            return "ok"

        assert storage.run_transaction(_move) == "ok"
        assert storage.get("accounts", "a")["balance"] == Decimal("5")
        assert storage.get("accounts", "b")["balance"] == Decimal("25")

    def test_error_in_body_writes_nothing(self):
        storage = _storage()

        def _fail(tx):
            tx.get("accounts", "a")
            raise ValidationError("nope")

        with pytest.raises(ValidationError):
            storage.run_transaction(_fail)
        assert storage.get("accounts", "a")["balance"] == Decimal("10")

    def test_missing_document_aborts_commit(self):
        storage = _storage()

        def _write(tx):
            tx.update("accounts", "a", {"balance": Decimal("0")})
            tx.update("accounts", "missing", {"balance": Decimal("0")})

        with pytest.raises(DocumentNotFoundError):
            storage.run_transaction(_write)
        assert storage.get("accounts", "a")["balance"] == Decimal("10")

    def test_retries_after_concurrent_write(self):
        """Test that a conflicting write re-runs the body against fresh data."""
        storage = _storage()
        attempts = []

        def _double(tx):
            a = tx.get("accounts", "a")
            attempts.append(a["balance"])
            if len(attempts) == 1:
                # Another writer slips in between read and commit
                storage.update("accounts", "a", {"balance": Decimal("11")})
            tx.update("accounts", "a", {"balance": a["balance"] * 2})

        storage.run_transaction(_double)

        assert attempts == [Decimal("10"), Decimal("11")]
        assert storage.get("accounts", "a")["balance"] == Decimal("22")

    def test_gives_up_after_max_attempts(self):
        storage = _storage()
        calls = []

        def _always_contended(tx):
            tx.get("accounts", "a")
            calls.append(1)
            storage.update("accounts", "a", {"rank": len(calls)})
            tx.update("accounts", "a", {"balance": Decimal("0")})

        with pytest.raises(ConflictRetryExhausted):
            storage.run_transaction(_always_contended)
        assert len(calls) == 3
        assert storage.get("accounts", "a")["balance"] == Decimal("10")

    def test_reads_after_writes_rejected(self):
        storage = _storage()

        def _bad(tx):
            tx.update("accounts", "a", {"rank": 9})
            tx.get("accounts", "b")

        with pytest.raises(RuntimeError):
            storage.run_transaction(_bad)


class TestBatches:
    def test_batch_is_all_or_nothing(self):
        storage = _storage()

        with pytest.raises(DocumentNotFoundError):
            storage.run_batch([
                Write("accounts", "a", {"rank": 99}),
                Write("accounts", "nope", {"rank": 99}),
            ])

        assert storage.get("accounts", "a")["rank"] == 2

    def test_batch_can_create(self):
        storage = _storage()
        storage.run_batch([Write("accounts", "d", {"balance": Decimal("1")}, create=True)])
        assert storage.get("accounts", "d") == {"id": "d", "balance": Decimal("1")}

    def test_duplicate_insert_fails(self):
        storage = _storage()
        with pytest.raises(ValidationError):
            storage.insert("accounts", {"balance": Decimal("1")}, doc_id="a")


class TestQueries:
    def test_filter_and_order(self):
        storage = _storage()
        storage.insert("accounts", {"balance": Decimal("10"), "rank": 0}, doc_id="d")

        rows = storage.query("accounts", where={"balance": Decimal("10")}, order_by="rank")

        assert [r["id"] for r in rows] == ["d", "a"]

    def test_missing_field_matches_none(self):
        storage = _storage()
        storage.insert("accounts", {"balance": Decimal("1"), "owner": "x"}, doc_id="d")

        rows = storage.query("accounts", where={"owner": None})

        assert sorted(r["id"] for r in rows) == ["a", "b", "c"]

    def test_cursor_pagination(self):
        storage = _storage()

        first = storage.query("accounts", order_by="rank", limit=2)
        second = storage.query("accounts", order_by="rank", limit=2, start_after=first[-1]["id"])

        assert [r["id"] for r in first] == ["b", "a"]
        assert [r["id"] for r in second] == ["c"]

    def test_cursor_row_left_the_filter(self):
        """Test that paging resumes after a cursor row that no longer matches the filter."""
        storage = InMemoryStorage(max_attempts=3)
        for doc_id, rank in (("a", 1), ("b", 2), ("c", 3)):
            storage.insert("accounts", {"rank": rank, "state": "open"}, doc_id=doc_id)

        first = storage.query("accounts", where={"state": "open"}, order_by="rank", limit=2)
        storage.update("accounts", "b", {"state": "closed"})
        second = storage.query("accounts", where={"state": "open"}, order_by="rank", start_after=first[-1]["id"])

        assert [r["id"] for r in first] == ["a", "b"]
        assert [r["id"] for r in second] == ["c"]

    def test_unknown_cursor(self):
        storage = _storage()
        with pytest.raises(ValidationError):
            storage.query("accounts", order_by="rank", start_after="zzz")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
