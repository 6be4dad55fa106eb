"""
Document store for the cashback ledger.

Collections hold plain dict documents keyed by id. Every document carries a
version that is bumped on each write, which gives:
- atomic read-modify-write transactions with optimistic-concurrency retry
- atomic batches of blind writes (all or none, no conflict detection)
- per-field increments resolved at commit time
- equality queries with ordering and cursor pagination
"""

import copy
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, TypeVar
from uuid import uuid4

from .config import get_settings
from .errors import ConflictRetryExhausted, DocumentNotFoundError, ValidationError

logger = logging.getLogger(__name__)

USERS = "users"
TRANSACTIONS = "transactions"
PAYOUTS = "payoutRequests"

R = TypeVar("R")


@dataclass(frozen=True)
class Increment:
    amount: Any


@dataclass
class Write:
    collection: str
    doc_id: str
    fields: dict = field(default_factory=dict)
    create: bool = False


def _sort_key(order_by: Optional[str]) -> Callable[[dict], tuple]:
    if order_by:
        return lambda doc: (doc.get(order_by) is None, doc.get(order_by), doc["id"])
    return lambda doc: (doc["id"],)


class _Conflict(Exception):
    def __init__(self, key: tuple[str, str]):
        super().__init__(f"{key[0]}/{key[1]}")
        self.key = key


class StoreTransaction:
    """Read set and buffered writes of one attempt. Reads must precede writes."""

    def __init__(self, storage: "InMemoryStorage"):
        self._storage = storage
        self.reads: dict[tuple[str, str], int] = {}
        self.writes: list[Write] = []

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        self._check_no_writes()
        doc, version = self._storage._snapshot(collection, doc_id)
        self.reads[(collection, doc_id)] = version
        return doc

    def query(self, collection: str, **kwargs) -> list[dict]:
        self._check_no_writes()
        rows = self._storage.query(collection, **kwargs)
        for row in rows:
            self.reads[(collection, row["id"])] = row.pop("_version")
        return rows

    def set(self, collection: str, doc_id: str, data: dict) -> None:
        self.writes.append(Write(collection, doc_id, dict(data), create=True))

    def update(self, collection: str, doc_id: str, fields: dict) -> None:
        self.writes.append(Write(collection, doc_id, dict(fields)))

    def _check_no_writes(self) -> None:
        if self.writes:
            raise RuntimeError("All reads must be executed before any writes")


class InMemoryStorage:
    def __init__(self, max_attempts: Optional[int] = None):
        self._docs: dict[str, dict[str, dict]] = {}
        self._versions: dict[tuple[str, str], int] = {}
        self._lock = threading.RLock()
        self.max_attempts = max_attempts or get_settings().MAX_TRANSACTION_ATTEMPTS

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        doc, _ = self._snapshot(collection, doc_id)
        return doc

    def insert(self, collection: str, data: dict, doc_id: Optional[str] = None) -> str:
        doc_id = doc_id or data.get("id") or uuid4().hex
        with self._lock:
            if doc_id in self._docs.get(collection, {}):
                raise ValidationError(f"{collection}/{doc_id} already exists")
            self._apply([Write(collection, doc_id, dict(data), create=True)])
        return doc_id

    def update(self, collection: str, doc_id: str, fields: dict) -> None:
        self.run_batch([Write(collection, doc_id, fields)])

    def query(
        self,
        collection: str,
        where: Optional[dict] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        start_after: Optional[str] = None,
    ) -> list[dict]:
        """Equality-filtered, ordered snapshot. Rows carry a transient `_version`.

        `start_after` names any document of the collection; paging resumes
        after its sort position even if it no longer matches `where`.
        """
        where = where or {}
        with self._lock:
            docs = self._docs.get(collection, {})
            anchor = None
            if start_after is not None:
                if start_after not in docs:
                    raise ValidationError(f"Invalid cursor {start_after}")
                anchor = copy.deepcopy(docs[start_after])
            rows = []
            for doc_id, doc in docs.items():
                if all(doc.get(name) == value for name, value in where.items()):
                    row = copy.deepcopy(doc)
                    row["_version"] = self._versions[(collection, doc_id)]
                    rows.append(row)

        key = _sort_key(order_by)
        rows.sort(key=key, reverse=descending)

        if anchor is not None:
            mark = key(anchor)
            rows = [r for r in rows if (key(r) < mark if descending else key(r) > mark)]

        if limit is not None:
            rows = rows[:limit]
        return rows

    def run_transaction(self, fn: Callable[[StoreTransaction], R], max_attempts: Optional[int] = None) -> R:
        """Run `fn` against a fresh snapshot and commit its writes atomically.

        If any document in the read set changed before commit, the attempt is
        discarded and `fn` re-runs. Exceptions raised by `fn` abort without
        writing anything.
        """
        attempts = max_attempts or self.max_attempts
        for attempt in range(1, attempts + 1):
            tx = StoreTransaction(self)
            result = fn(tx)
            try:
                self._commit(tx)
            except _Conflict as e:
                logger.warning("Concurrent write on %s (attempt %d/%d), retrying", e, attempt, attempts)
                continue
            return result
        raise ConflictRetryExhausted(attempts)

    def run_batch(self, writes: list[Write]) -> None:
        with self._lock:
            self._apply(writes)

    def _snapshot(self, collection: str, doc_id: str) -> tuple[Optional[dict], int]:
        with self._lock:
            doc = self._docs.get(collection, {}).get(doc_id)
            version = self._versions.get((collection, doc_id), 0)
            return (copy.deepcopy(doc) if doc is not None else None), version

    def _commit(self, tx: StoreTransaction) -> None:
        with self._lock:
            for key, version in tx.reads.items():
                if self._versions.get(key, 0) != version:
                    raise _Conflict(key)
            self._apply(tx.writes)

    def _apply(self, writes: list[Write]) -> None:
        created = set()
        for write in writes:
            key = (write.collection, write.doc_id)
            if write.create:
                created.add(key)
            elif key not in created and write.doc_id not in self._docs.get(write.collection, {}):
                raise DocumentNotFoundError(write.collection, write.doc_id)

        for write in writes:
            docs = self._docs.setdefault(write.collection, {})
            if write.create:
                doc = {}
            else:
                doc = docs[write.doc_id]
            for name, value in write.fields.items():
                if isinstance(value, Increment):
                    doc[name] = (doc.get(name) or 0) + value.amount
                else:
                    doc[name] = copy.deepcopy(value)
            doc["id"] = write.doc_id
            docs[write.doc_id] = doc
            key = (write.collection, write.doc_id)
            self._versions[key] = self._versions.get(key, 0) + 1


def paginate(storage: InMemoryStorage, collection: str, where: dict, order_by: str,
             limit: int, cursor: Optional[str] = None) -> tuple[list[dict], Optional[str]]:
    """Newest-first page of `limit` rows plus the cursor for the next page."""
    rows = storage.query(collection, where=where, order_by=order_by, descending=True,
                         limit=limit + 1, start_after=cursor)
    for row in rows:
        row.pop("_version", None)
    if len(rows) > limit:
        rows = rows[:limit]
        return rows, rows[-1]["id"]
    return rows, None
