"""
One-shot migration: encrypt plaintext amounts already in the database.

For every monetary collection, each stored amount is classified:
- plaintext number      -> encrypted in place and tagged
- readable blob         -> left alone (re-encrypted with --rotate) and tagged
- missing / non-numeric / undecryptable required amount -> corrupt record

Corrupt records are handled per --on-corrupt:
- delete     (default) remove the record
- quarantine move it to <collection>_quarantine with the reason
- skip       leave it as it is and report it

Run:
    python -m finledger.migrations.encrypt_amounts --dry-run
    finledger-migrate --on-corrupt quarantine
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pydantic import BaseModel

from finledger.core.config import settings
from finledger.core.crypto import Encrypted, EnvelopeCipher, classify
from finledger.core.exceptions import DecryptionError
from finledger.core.logging import setup_logging
from finledger.repositories.expense_repo import ExpenseRepository, MonthlyExpenseRepository
from finledger.repositories.income_repo import IncomeRepository
from finledger.repositories.recurring_income_repo import RecurringIncomeRepository
from finledger.services.codec import ENCRYPTED_FIELDS_KEY, format_amount, parse_amount

logger = logging.getLogger(__name__)

ON_CORRUPT_DELETE = "delete"
ON_CORRUPT_QUARANTINE = "quarantine"
ON_CORRUPT_SKIP = "skip"
ON_CORRUPT_CHOICES = (ON_CORRUPT_DELETE, ON_CORRUPT_QUARANTINE, ON_CORRUPT_SKIP)

# Collection -> amount fields; the first field is required on every record
MONETARY_COLLECTIONS: Dict[str, tuple] = {
    repo.collection_name: repo.model.amount_fields
    for repo in (IncomeRepository, ExpenseRepository, MonthlyExpenseRepository, RecurringIncomeRepository)
}


class CorruptRecord(Exception):
    """A record whose amounts cannot be migrated"""

    pass


class CollectionSummary(BaseModel):
    collection: str
    total: int = 0
    encrypted: int = 0
    already_encrypted: int = 0
    rotated: int = 0
    corrupt: int = 0
    deleted: int = 0
    quarantined: int = 0
    skipped: int = 0
    errors: int = 0


class AmountMigration:
    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        cipher: EnvelopeCipher,
        on_corrupt: str = ON_CORRUPT_DELETE,
        dry_run: bool = False,
        rotate: bool = False,
    ):
        if on_corrupt not in ON_CORRUPT_CHOICES:
            raise ValueError(f"on_corrupt must be one of {ON_CORRUPT_CHOICES}")
        self.db = db
        self.cipher = cipher
        self.on_corrupt = on_corrupt
        self.dry_run = dry_run
        self.rotate = rotate

    async def run(self, collections: Optional[Iterable[str]] = None) -> Dict[str, CollectionSummary]:
        names = list(collections) if collections else list(MONETARY_COLLECTIONS)
        summaries = {}
        for name in names:
            if name not in MONETARY_COLLECTIONS:
                raise ValueError(f"Unknown monetary collection: {name}")
            summaries[name] = await self.migrate_collection(name, MONETARY_COLLECTIONS[name])
        return summaries

    async def migrate_collection(self, name: str, fields: tuple) -> CollectionSummary:
        summary = CollectionSummary(collection=name)
        collection = self.db[name]
        docs = await collection.find({}).to_list(None)
        summary.total = len(docs)
        logger.info("Migrating collection", extra={"collection": name, "records": len(docs), "dry_run": self.dry_run})

        for doc in docs:
            try:
                changes, tags, state = self.plan_document(doc, fields)
            except CorruptRecord as exc:
                summary.corrupt += 1
                await self._handle_corrupt(name, doc, str(exc), summary)
                continue

            setattr(summary, state, getattr(summary, state) + 1)
            if not changes and set(tags) <= set(doc.get(ENCRYPTED_FIELDS_KEY) or ()):
                continue
            if self.dry_run:
                continue
            try:
                update: Dict[str, Any] = {"$addToSet": {ENCRYPTED_FIELDS_KEY: {"$each": tags}}}
                if changes:
                    update["$set"] = {**changes, "updated_at": datetime.now(timezone.utc)}
                await collection.update_one({"_id": doc["_id"]}, update)
            except Exception:
                summary.errors += 1
                logger.exception("Could not update record", extra={"collection": name, "document_id": str(doc["_id"])})

        logger.info("Collection migrated", extra=summary.model_dump())
        return summary

    def plan_document(self, doc: Dict[str, Any], fields: tuple):
        """
        Work out what to write for one record.

        Returns (changes, tags, state): the fields to $set, every field that
        will hold a blob afterwards, and which counter the record falls under.
        Raises CorruptRecord when the record cannot be kept.
        """
        existing_tags = doc.get(ENCRYPTED_FIELDS_KEY)
        changes: Dict[str, str] = {}
        tags: List[str] = []
        state = "already_encrypted"

        for index, field in enumerate(fields):
            raw = doc.get(field)
            if raw is None or raw == "":
                if index == 0:
                    raise CorruptRecord(f"{field} is missing")
                continue

            if isinstance(raw, bool):
                raise CorruptRecord(f"{field} is not a number")
            if isinstance(raw, (int, float)):
                changes[field] = self.cipher.encrypt(format_amount(raw))
                tags.append(field)
                state = "encrypted"
                continue
            if not isinstance(raw, str):
                raise CorruptRecord(f"{field} has unsupported type {type(raw).__name__}")

            tagged = None if existing_tags is None else field in existing_tags
            stored = classify(raw, tagged)
            if isinstance(stored, Encrypted):
                try:
                    plaintext = self.cipher.decrypt(stored.blob)
                    parse_amount(plaintext)
                except (DecryptionError, ValueError) as exc:
                    raise CorruptRecord(f"{field} cannot be decrypted: {exc}") from exc
                if self.rotate:
                    changes[field] = self.cipher.encrypt(plaintext)
                    if state == "already_encrypted":
                        state = "rotated"
                tags.append(field)
                continue

            try:
                value = parse_amount(stored.value)
            except ValueError as exc:
                raise CorruptRecord(f"{field} is not a number: {stored.value!r}") from exc
            changes[field] = self.cipher.encrypt(format_amount(value))
            tags.append(field)
            state = "encrypted"

        return changes, tags, state

    async def _handle_corrupt(self, name: str, doc: Dict[str, Any], reason: str, summary: CollectionSummary):
        extra = {"collection": name, "document_id": str(doc.get("_id")), "reason": reason, "policy": self.on_corrupt}
        logger.warning("Corrupt monetary record", extra=extra)
        if self.on_corrupt == ON_CORRUPT_SKIP:
            summary.skipped += 1
            return
        if self.dry_run:
            if self.on_corrupt == ON_CORRUPT_DELETE:
                summary.deleted += 1
            else:
                summary.quarantined += 1
            return

        try:
            if self.on_corrupt == ON_CORRUPT_QUARANTINE:
                await self.db[f"{name}_quarantine"].insert_one(
                    {**doc, "quarantine_reason": reason, "quarantined_at": datetime.now(timezone.utc)}
                )
                summary.quarantined += 1
            else:
                summary.deleted += 1
            await self.db[name].delete_one({"_id": doc["_id"]})
        except Exception:
            summary.errors += 1
            logger.exception("Could not remove corrupt record", extra=extra)


async def migrate_amounts(
    db: AsyncIOMotorDatabase,
    cipher: EnvelopeCipher,
    on_corrupt: str = ON_CORRUPT_DELETE,
    dry_run: bool = False,
    rotate: bool = False,
    collections: Optional[Iterable[str]] = None,
) -> Dict[str, CollectionSummary]:
    migration = AmountMigration(db, cipher, on_corrupt=on_corrupt, dry_run=dry_run, rotate=rotate)
    return await migration.run(collections)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Encrypt plaintext amounts stored in the ledger database")
    parser.add_argument(
        "--on-corrupt",
        choices=ON_CORRUPT_CHOICES,
        default=ON_CORRUPT_DELETE,
        help="What to do with records whose amount is missing, non-numeric or undecryptable",
    )
    parser.add_argument("--dry-run", action="store_true", help="Report what would change without writing")
    parser.add_argument("--rotate", action="store_true", help="Re-encrypt readable blobs with the current key")
    parser.add_argument(
        "--collection",
        action="append",
        choices=sorted(MONETARY_COLLECTIONS),
        help="Limit to a collection (repeatable)",
    )
    return parser


async def _run(args: argparse.Namespace) -> int:
    cipher = EnvelopeCipher.from_settings(settings)
    client = AsyncIOMotorClient(settings.MONGODB_URI)
    try:
        summaries = await migrate_amounts(
            client[settings.MONGODB_DB],
            cipher,
            on_corrupt=args.on_corrupt,
            dry_run=args.dry_run,
            rotate=args.rotate,
            collections=args.collection,
        )
    finally:
        client.close()

    for summary in summaries.values():
        print(
            f"{summary.collection}: total={summary.total} encrypted={summary.encrypted} "
            f"already_encrypted={summary.already_encrypted} rotated={summary.rotated} "
            f"corrupt={summary.corrupt} deleted={summary.deleted} quarantined={summary.quarantined} "
            f"skipped={summary.skipped} errors={summary.errors}"
        )
    return 1 if any(summary.errors for summary in summaries.values()) else 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
