import pytest
from decimal import Decimal

from cashback.config import Settings
from cashback.payouts import PayoutService
from cashback.store import InMemoryStorage
from cashback.transactions import TransactionService

from cashback.tests.factories import Seed


@pytest.fixture
def settings() -> Settings:
    return Settings(MIN_PAYOUT_THRESHOLD=Decimal("50"))


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage(max_attempts=3)


@pytest.fixture
def seed(storage) -> Seed:
    return Seed(storage)


@pytest.fixture
def transaction_service(storage, settings) -> TransactionService:
    return TransactionService(storage, settings)


@pytest.fixture
def payout_service(storage, settings) -> PayoutService:
    return PayoutService(storage, settings)
