class LedgerServiceError(Exception):
    pass


class ValidationError(LedgerServiceError):
    """Caller input violates a precondition. Never retried."""


class DocumentNotFoundError(LedgerServiceError):
    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} not found")
        self.collection = collection
        self.doc_id = doc_id


class StaleStateError(LedgerServiceError):
    """The record changed since the admin last viewed it."""

    def __init__(self, doc_id: str, expected, actual):
        super().__init__(
            f"{doc_id} changed since last viewed (expected status {_value(expected)}, "
            f"found {_value(actual)}); refresh and retry"
        )
        self.doc_id = doc_id
        self.expected = expected
        self.actual = actual


class InsufficientTransactionsError(LedgerServiceError):
    def __init__(self, payout_id: str, required, available):
        super().__init__(
            f"Could not find confirmed transactions covering payout {payout_id}: "
            f"required {required}, matched {available}"
        )
        self.payout_id = payout_id
        self.required = required
        self.available = available


class ConflictRetryExhausted(LedgerServiceError):
    def __init__(self, attempts: int):
        super().__init__(f"Update failed after {attempts} attempts due to concurrent writes, retry")
        self.attempts = attempts


UpdateFailedError = ConflictRetryExhausted


class PartialSettlementError(LedgerServiceError):
    """The payout/wallet write committed but syncing its transactions did not."""

    def __init__(self, payout_id: str, failed_ids: list[str], synced_ids: list[str]):
        super().__init__(
            f"Payout {payout_id} updated but {len(failed_ids)} transactions failed to sync"
        )
        self.payout_id = payout_id
        self.failed_ids = failed_ids
        self.synced_ids = synced_ids


def _value(status) -> str:
    return getattr(status, "value", status)
