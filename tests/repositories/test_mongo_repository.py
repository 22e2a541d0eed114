"""Tests for MongoRepository: encryption at rest, ownership, version checks."""
import pytest
from bson import ObjectId

from finledger.core.crypto import looks_encrypted
from finledger.core.exceptions import ConcurrentModification, DecryptionError, Forbidden, NotFound
from finledger.models.income import Income
from finledger.repositories.income_repo import IncomeRepository
from finledger.services.codec import ENCRYPTED_FIELDS_KEY, MonetaryFieldCodec


@pytest.mark.asyncio
class TestIncomeRepository:
    async def test_amounts_are_encrypted_at_rest(self, test_db, codec, owner_id):
        repo = IncomeRepository(test_db, codec)
        income = await repo.insert(Income(owner_id=owner_id, source="Salary", amount=1200.0))

        raw = await test_db["incomes"].find_one({"_id": income.id})
        for field in ("amount", "available_amount", "used_amount"):
            assert looks_encrypted(raw[field])
        assert sorted(raw[ENCRYPTED_FIELDS_KEY]) == ["amount", "available_amount", "used_amount"]
        assert raw["source"] == "Salary"

        fetched = await repo.get(income.id)
        assert fetched.amount == 1200.0
        assert fetched.available_amount == 1200.0
        assert fetched.used_amount == 0.0

    async def test_get_owned_not_found(self, test_db, codec, owner_id):
        repo = IncomeRepository(test_db, codec)
        with pytest.raises(NotFound):
            await repo.get_owned(ObjectId(), owner_id)
        with pytest.raises(NotFound):
            await repo.get_owned("not-an-id", owner_id)

    async def test_get_owned_forbidden_for_other_owner(self, test_db, codec, make_income, other_owner_id):
        income = await make_income(100.0)
        with pytest.raises(Forbidden):
            await IncomeRepository(test_db, codec).get_owned(income.id, other_owner_id)

    async def test_update_bumps_version_and_reencrypts(self, test_db, codec, make_income):
        repo = IncomeRepository(test_db, codec)
        income = await make_income(100.0)

        updated = await repo.update(income, {"available_amount": 60.0, "used_amount": 40.0})

        assert updated.version == income.version + 1
        assert updated.available_amount == 60.0
        assert updated.used_amount == 40.0
        assert updated.amount == 100.0
        raw = await test_db["incomes"].find_one({"_id": income.id})
        assert looks_encrypted(raw["available_amount"])

    async def test_stale_version_is_rejected(self, test_db, codec, make_income):
        repo = IncomeRepository(test_db, codec)
        income = await make_income(100.0)
        await repo.update(income, {"description": "first writer"})

        with pytest.raises(ConcurrentModification):
            await repo.update(income, {"available_amount": 0.0, "used_amount": 100.0})

        current = await repo.get(income.id)
        assert current.description == "first writer"
        assert current.available_amount == 100.0

    async def test_update_of_missing_document_is_not_found(self, test_db, codec, make_income):
        repo = IncomeRepository(test_db, codec)
        income = await make_income(100.0)
        await repo.delete(income.id)
        with pytest.raises(NotFound):
            await repo.update(income, {"description": "gone"})

    async def test_legacy_plaintext_document(self, test_db, codec, owner_id):
        """Documents written before encryption have no tags and no version."""
        doc_id = ObjectId()
        await test_db["incomes"].insert_one(
            {"_id": doc_id, "owner_id": owner_id, "source": "Old salary", "amount": "900"}
        )
        repo = IncomeRepository(test_db, codec)

        legacy = await repo.get(doc_id)
        assert legacy.amount == 900.0
        assert legacy.available_amount == 900.0
        assert legacy.version == 0

        updated = await repo.update(legacy, {"description": "touched"})
        raw = await test_db["incomes"].find_one({"_id": doc_id})
        assert looks_encrypted(raw["amount"])
        assert "amount" in raw[ENCRYPTED_FIELDS_KEY]
        assert updated.amount == 900.0
        assert updated.version == 1


@pytest.mark.asyncio
class TestCorruptedListing:
    async def _seed(self, test_db, make_income):
        incomes = [await make_income(amount) for amount in (100.0, 200.0, 300.0)]
        await test_db["incomes"].update_one(
            {"_id": incomes[1].id}, {"$set": {"amount": "C" * 132}}
        )
        return incomes

    async def test_null_policy_yields_none_for_the_broken_field(self, test_db, codec, make_income, owner_id):
        incomes = await self._seed(test_db, make_income)

        listed = await IncomeRepository(test_db, codec).list_for_owner(owner_id)
        by_id = {income.id: income for income in listed}

        assert len(listed) == 3
        assert by_id[incomes[0].id].amount == 100.0
        assert by_id[incomes[1].id].amount is None
        assert by_id[incomes[1].id].available_amount == 200.0
        assert by_id[incomes[2].id].amount == 300.0

    async def test_raise_policy_fails_the_read(self, test_db, cipher, make_income, owner_id):
        await self._seed(test_db, make_income)
        strict = MonetaryFieldCodec(cipher, failure_policy="raise")

        with pytest.raises(DecryptionError):
            await IncomeRepository(test_db, strict).list_for_owner(owner_id)

    async def test_update_keeps_undecryptable_field_untouched(self, test_db, codec, make_income):
        incomes = await self._seed(test_db, make_income)
        repo = IncomeRepository(test_db, codec)
        broken = await repo.get(incomes[1].id)

        await repo.update(broken, {"description": "edited"})

        raw = await test_db["incomes"].find_one({"_id": broken.id})
        assert raw["amount"] == "C" * 132
