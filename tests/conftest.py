from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from bson import ObjectId
from mongomock_motor import AsyncMongoMockClient

from finledger.core.crypto import EnvelopeCipher
from finledger.models.credit import Credit
from finledger.models.deposit import Deposit
from finledger.models.income import Income
from finledger.models.recurring_income import RecurringIncomeTemplate
from finledger.repositories.credit_repo import CreditRepository
from finledger.repositories.deposit_repo import DepositRepository
from finledger.repositories.income_repo import IncomeRepository
from finledger.repositories.recurring_income_repo import RecurringIncomeRepository
from finledger.services.codec import MonetaryFieldCodec

# Test key material; the KDF runs far fewer rounds than in production
TEST_KEY = bytes(range(32))
OLD_KEY = bytes(range(32, 64))
TEST_ITERATIONS = 1_000


@pytest_asyncio.fixture
async def test_db():
    """In-memory MongoDB database, fresh per test."""
    client = AsyncMongoMockClient()
    yield client["finledger_test"]


@pytest.fixture
def cipher():
    return EnvelopeCipher(TEST_KEY, iterations=TEST_ITERATIONS)


@pytest.fixture
def old_cipher():
    """Cipher over a retired key."""
    return EnvelopeCipher(OLD_KEY, iterations=TEST_ITERATIONS)


@pytest.fixture
def rotating_cipher():
    """Current key for writes, retired key still accepted for reads."""
    return EnvelopeCipher(TEST_KEY, iterations=TEST_ITERATIONS, fallback_keys=[OLD_KEY])


@pytest.fixture
def codec(cipher):
    return MonetaryFieldCodec(cipher)


@pytest.fixture
def owner_id():
    return ObjectId()


@pytest.fixture
def other_owner_id():
    return ObjectId()


@pytest.fixture
def make_income(test_db, codec, owner_id):
    repo = IncomeRepository(test_db, codec)

    async def _make(amount=100.0, **kwargs):
        kwargs.setdefault("owner_id", owner_id)
        kwargs.setdefault("source", "Salary")
        return await repo.insert(Income(amount=amount, **kwargs))

    return _make


@pytest.fixture
def make_deposit(test_db, codec, owner_id):
    repo = DepositRepository(test_db, codec)

    async def _make(balance=0.0, **kwargs):
        now = datetime.now(timezone.utc)
        kwargs.setdefault("owner_id", owner_id)
        kwargs.setdefault("bank_name", "Kaspi")
        kwargs.setdefault("account_number", "KZ000123")
        kwargs.setdefault("amount", balance)
        kwargs.setdefault("start_date", now - timedelta(days=30))
        kwargs.setdefault("end_date", now + timedelta(days=335))
        return await repo.insert(Deposit(current_balance=balance, **kwargs))

    return _make


@pytest.fixture
def make_credit(test_db, codec, owner_id):
    repo = CreditRepository(test_db, codec)

    async def _make(balance=500.0, monthly_payment=100.0, **kwargs):
        now = datetime.now(timezone.utc)
        kwargs.setdefault("owner_id", owner_id)
        kwargs.setdefault("name", "Car loan")
        kwargs.setdefault("amount", max(balance, 1000.0))
        kwargs.setdefault("start_date", now - timedelta(days=60))
        kwargs.setdefault("end_date", now + timedelta(days=365))
        return await repo.insert(
            Credit(current_balance=balance, monthly_payment=monthly_payment, **kwargs)
        )

    return _make


@pytest.fixture
def make_template(test_db, codec, owner_id):
    repo = RecurringIncomeRepository(test_db, codec)

    async def _make(amount=2500.0, **kwargs):
        kwargs.setdefault("owner_id", owner_id)
        kwargs.setdefault("source", "Salary")
        kwargs.setdefault("recurring_day", 5)
        return await repo.insert(RecurringIncomeTemplate(amount=amount, **kwargs))

    return _make
