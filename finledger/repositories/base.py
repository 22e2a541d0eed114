"""
MongoRepository - shared storage access for ledger documents.

Every read goes through the monetary codec before the document becomes a
model, and every write of an amount field goes through it on the way back.
Balance-bearing writes are compare-and-set on ``version``.
"""

import logging
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Iterable, List, Optional, Type

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from finledger.core.exceptions import ConcurrentModification, Forbidden, NotFound
from finledger.models.base import MongoModel
from finledger.services.codec import ENCRYPTED_FIELDS_KEY, MonetaryFieldCodec

logger = logging.getLogger(__name__)


def to_object_id(value: Any, what: str = "Document") -> ObjectId:
    """Parse an id; anything unparseable cannot exist."""
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    raise NotFound(f"{what} not found")


def session_kwargs(session) -> Dict[str, Any]:
    return {"session": session} if session is not None else {}


class MongoRepository:
    """Base repository over one collection of ``model`` documents."""

    collection_name: ClassVar[str] = ""
    model: ClassVar[Type[MongoModel]] = MongoModel
    label: ClassVar[str] = "Document"

    def __init__(self, db: AsyncIOMotorDatabase, codec: Optional[MonetaryFieldCodec] = None):
        self.db = db
        self.codec = codec
        self.collection = db[self.collection_name]

    # ===== CODEC =====

    @property
    def amount_fields(self):
        return self.model.amount_fields

    def _encode(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        if not self.amount_fields:
            return doc
        return self._require_codec().encode_document(doc, self.amount_fields)

    def _decode(self, doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if doc is None or not self.amount_fields:
            return doc
        return self._require_codec().decode_document(doc, self.amount_fields, self.collection_name)

    def _require_codec(self) -> MonetaryFieldCodec:
        if self.codec is None:
            raise RuntimeError(f"{type(self).__name__} stores encrypted amounts and needs a codec")
        return self.codec

    def _to_model(self, doc: Optional[Dict[str, Any]]):
        decoded = self._decode(doc)
        if decoded is None:
            return None
        decoded.pop(ENCRYPTED_FIELDS_KEY, None)
        return self.model.model_validate(decoded)

    # ===== READS =====

    async def get(self, doc_id, session=None):
        doc = await self.collection.find_one(
            {"_id": to_object_id(doc_id, self.label)}, **session_kwargs(session)
        )
        return self._to_model(doc)

    async def get_owned(self, doc_id, owner_id, session=None):
        """
        Fetch a document the owner may act on.

        Raises NotFound when it does not exist and Forbidden when it belongs
        to someone else.
        """
        entity = await self.get(doc_id, session=session)
        if entity is None:
            raise NotFound(f"{self.label} not found")
        if str(getattr(entity, "owner_id", "")) != str(owner_id):
            raise Forbidden(f"{self.label} belongs to another owner")
        return entity

    async def list(self, query: Optional[Dict[str, Any]] = None, sort=None, session=None) -> List[Any]:
        cursor = self.collection.find(query or {}, **session_kwargs(session))
        if sort:
            cursor = cursor.sort(sort)
        docs = await cursor.to_list(None)
        if self.amount_fields:
            docs = self._require_codec().decode_many(docs, self.amount_fields, self.collection_name)
        result = []
        for doc in docs:
            doc.pop(ENCRYPTED_FIELDS_KEY, None)
            result.append(self.model.model_validate(doc))
        return result

    async def list_for_owner(self, owner_id, query: Optional[Dict[str, Any]] = None, sort=None, session=None) -> List[Any]:
        scoped = dict(query or {})
        scoped["owner_id"] = to_object_id(owner_id, "Owner")
        return await self.list(scoped, sort=sort, session=session)

    # ===== WRITES =====

    async def insert(self, entity, session=None):
        doc = self._encode(entity.model_dump(by_alias=True))
        await self.collection.insert_one(doc, **session_kwargs(session))
        return entity

    async def insert_many(self, entities: Iterable, session=None) -> List[Any]:
        entities = list(entities)
        if entities:
            docs = [self._encode(entity.model_dump(by_alias=True)) for entity in entities]
            await self.collection.insert_many(docs, **session_kwargs(session))
        return entities

    async def update(self, current, changes: Dict[str, Any], session=None):
        """
        Apply ``changes`` to ``current`` if nobody wrote it since it was read.

        Amount fields are re-encrypted as a set: every readable amount of the
        merged state is written and tagged; an amount that could not be
        decrypted (None) is left untouched in storage.
        Raises ConcurrentModification when ``current.version`` is stale.
        """
        updates = dict(changes)
        updates["updated_at"] = datetime.now(timezone.utc)
        update_doc: Dict[str, Any] = {"$inc": {"version": 1}}

        if self.amount_fields:
            amounts = {
                field: updates[field] if field in updates else getattr(current, field)
                for field in self.amount_fields
            }
            for field in self.amount_fields:
                updates.pop(field, None)
            encoded, written = self._require_codec().encode_fields(
                {k: v for k, v in amounts.items() if v is not None}, self.amount_fields
            )
            updates.update(encoded)
            if written:
                update_doc["$addToSet"] = {ENCRYPTED_FIELDS_KEY: {"$each": written}}

        update_doc["$set"] = updates
        query: Dict[str, Any] = {"_id": current.id, "version": current.version}
        if current.version == 0:
            # Documents written before versioning have no counter yet
            query = {"_id": current.id, "$or": [{"version": 0}, {"version": {"$exists": False}}]}
        doc = await self.collection.find_one_and_update(
            query,
            update_doc,
            return_document=ReturnDocument.AFTER,
            **session_kwargs(session),
        )
        if doc is None:
            exists = await self.collection.count_documents({"_id": current.id}, **session_kwargs(session))
            if not exists:
                raise NotFound(f"{self.label} not found")
            logger.info(
                "Version conflict",
                extra={"collection": self.collection_name, "document_id": str(current.id)},
            )
            raise ConcurrentModification(f"{self.label} was modified concurrently, retry the action")
        return self._to_model(doc)

    async def delete(self, doc_id, session=None) -> bool:
        result = await self.collection.delete_one(
            {"_id": to_object_id(doc_id, self.label)}, **session_kwargs(session)
        )
        return result.deleted_count > 0

    async def delete_many(self, query: Dict[str, Any], session=None) -> int:
        result = await self.collection.delete_many(query, **session_kwargs(session))
        return result.deleted_count
