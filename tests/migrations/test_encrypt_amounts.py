from unittest.mock import MagicMock

import pytest
from bson import ObjectId

from finledger.migrations.encrypt_amounts import (
    MONETARY_COLLECTIONS,
    ON_CORRUPT_DELETE,
    ON_CORRUPT_QUARANTINE,
    ON_CORRUPT_SKIP,
    AmountMigration,
    build_parser,
    migrate_amounts,
)
from finledger.repositories.income_repo import IncomeRepository
from finledger.services.codec import ENCRYPTED_FIELDS_KEY


def _income_doc(owner_id, **fields):
    return {"_id": ObjectId(), "owner_id": owner_id, "source": "Salary", "version": 0, **fields}


@pytest.fixture
def legacy_incomes(test_db, cipher, owner_id):
    """One record per shape found in databases written before encryption."""

    async def _seed():
        docs = {
            "plaintext": _income_doc(owner_id, amount="1500"),
            "number": _income_doc(owner_id, amount=200, available_amount=150, used_amount=50),
            "blob": _income_doc(owner_id, amount=cipher.encrypt("300.0")),
            "bad_blob": _income_doc(owner_id, amount="D" * 132),
            "missing": _income_doc(owner_id),
            "garbage": _income_doc(owner_id, amount="abc"),
        }
        await test_db["incomes"].insert_many(list(docs.values()))
        return {name: doc["_id"] for name, doc in docs.items()}

    return _seed


async def _stored(test_db, doc_id):
    return await test_db["incomes"].find_one({"_id": doc_id})


@pytest.mark.asyncio
class TestAmountMigration:
    async def test_encrypts_plaintext_and_deletes_corrupt(self, test_db, cipher, codec, legacy_incomes):
        ids = await legacy_incomes()

        summaries = await migrate_amounts(test_db, cipher, collections=["incomes"])

        summary = summaries["incomes"]
        assert summary.total == 6
        assert summary.encrypted == 2
        assert summary.already_encrypted == 1
        assert summary.corrupt == 3
        assert summary.deleted == 3
        assert summary.errors == 0
        assert await test_db["incomes"].count_documents({}) == 3

        number = await _stored(test_db, ids["number"])
        assert sorted(number[ENCRYPTED_FIELDS_KEY]) == ["amount", "available_amount", "used_amount"]
        assert all(isinstance(number[field], str) for field in ("amount", "available_amount", "used_amount"))
        assert (await _stored(test_db, ids["plaintext"]))[ENCRYPTED_FIELDS_KEY] == ["amount"]

        incomes = {income.id: income for income in await IncomeRepository(test_db, codec).list()}
        assert incomes[ids["plaintext"]].amount == 1500.0
        assert incomes[ids["number"]].available_amount == 150.0
        assert incomes[ids["blob"]].amount == 300.0

    async def test_second_run_changes_nothing(self, test_db, cipher, legacy_incomes):
        ids = await legacy_incomes()
        await migrate_amounts(test_db, cipher, collections=["incomes"])
        blob_before = (await _stored(test_db, ids["number"]))["amount"]

        summary = (await migrate_amounts(test_db, cipher, collections=["incomes"]))["incomes"]

        assert summary.total == 3
        assert summary.already_encrypted == 3
        assert summary.encrypted == 0
        assert (await _stored(test_db, ids["number"]))["amount"] == blob_before

    async def test_quarantine_moves_corrupt_records(self, test_db, cipher, legacy_incomes):
        ids = await legacy_incomes()

        summary = (
            await migrate_amounts(test_db, cipher, on_corrupt=ON_CORRUPT_QUARANTINE, collections=["incomes"])
        )["incomes"]

        assert summary.quarantined == 3
        assert summary.deleted == 0
        quarantined = await test_db["incomes_quarantine"].find({}).to_list(None)
        assert {doc["_id"] for doc in quarantined} == {ids["bad_blob"], ids["missing"], ids["garbage"]}
        reasons = {doc["_id"]: doc["quarantine_reason"] for doc in quarantined}
        assert "missing" in reasons[ids["missing"]]
        assert "cannot be decrypted" in reasons[ids["bad_blob"]]
        assert await test_db["incomes"].count_documents({}) == 3

    async def test_skip_leaves_corrupt_records(self, test_db, cipher, legacy_incomes):
        ids = await legacy_incomes()

        summary = (
            await migrate_amounts(test_db, cipher, on_corrupt=ON_CORRUPT_SKIP, collections=["incomes"])
        )["incomes"]

        assert summary.skipped == 3
        assert await test_db["incomes"].count_documents({}) == 6
        assert (await _stored(test_db, ids["garbage"]))["amount"] == "abc"

    async def test_dry_run_writes_nothing(self, test_db, cipher, legacy_incomes):
        ids = await legacy_incomes()

        summary = (await migrate_amounts(test_db, cipher, dry_run=True, collections=["incomes"]))["incomes"]

        assert summary.encrypted == 2
        assert summary.deleted == 3
        assert await test_db["incomes"].count_documents({}) == 6
        plaintext = await _stored(test_db, ids["plaintext"])
        assert plaintext["amount"] == "1500"
        assert ENCRYPTED_FIELDS_KEY not in plaintext

    async def test_rotate_reencrypts_under_current_key(self, test_db, old_cipher, rotating_cipher, cipher, owner_id):
        doc = _income_doc(owner_id, amount=old_cipher.encrypt("420.5"))
        doc[ENCRYPTED_FIELDS_KEY] = ["amount"]
        await test_db["incomes"].insert_one(doc)

        summary = (
            await migrate_amounts(test_db, rotating_cipher, rotate=True, collections=["incomes"])
        )["incomes"]

        assert summary.rotated == 1
        stored = await _stored(test_db, doc["_id"])
        assert cipher.decrypt(stored["amount"]) == "420.5"

    async def test_other_key_without_fallback_is_corrupt(self, test_db, old_cipher, cipher, owner_id):
        await test_db["incomes"].insert_one(_income_doc(owner_id, amount=old_cipher.encrypt("10.0")))

        summary = (
            await migrate_amounts(test_db, cipher, on_corrupt=ON_CORRUPT_SKIP, collections=["incomes"])
        )["incomes"]

        assert summary.corrupt == 1
        assert summary.skipped == 1

    async def test_all_monetary_collections_by_default(self, test_db, cipher):
        summaries = await migrate_amounts(test_db, cipher)

        assert set(summaries) == set(MONETARY_COLLECTIONS)
        assert all(summary.total == 0 for summary in summaries.values())

    async def test_unknown_collection(self, test_db, cipher):
        with pytest.raises(ValueError):
            await migrate_amounts(test_db, cipher, collections=["users"])


class TestCli:
    def test_parser_defaults(self):
        args = build_parser().parse_args([])

        assert args.on_corrupt == ON_CORRUPT_DELETE
        assert args.dry_run is False
        assert args.rotate is False
        assert args.collection is None

    def test_parser_options(self):
        args = build_parser().parse_args(
            ["--on-corrupt", "quarantine", "--dry-run", "--collection", "incomes", "--collection", "expenses"]
        )

        assert args.on_corrupt == ON_CORRUPT_QUARANTINE
        assert args.dry_run is True
        assert args.collection == ["incomes", "expenses"]

    def test_unknown_policy_is_rejected(self, cipher):
        with pytest.raises(ValueError):
            AmountMigration(MagicMock(), cipher, on_corrupt="archive")
