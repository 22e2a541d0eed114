from datetime import datetime, timezone
from typing import List, Optional

from pymongo import ReturnDocument

from finledger.models.recurring_income import CreatedIncome, LastCreated, RecurringIncomeTemplate
from finledger.repositories.base import MongoRepository, session_kwargs, to_object_id


class RecurringIncomeRepository(MongoRepository):
    """
    Recurring income templates.

    ``claim_period`` is the only way a template moves to generated-for-period:
    a conditional update that matches only while ``last_created`` is some
    other period, so two concurrent runs cannot both win the same month.
    """

    collection_name = "recurring_incomes"
    model = RecurringIncomeTemplate
    label = "Recurring income"

    async def list_auto_creating(self, owner_id=None, session=None) -> List[RecurringIncomeTemplate]:
        query = {"is_active": True, "auto_create": True}
        if owner_id is not None:
            return await self.list_for_owner(owner_id, query, sort=[("created_at", 1)], session=session)
        return await self.list(query, sort=[("created_at", 1)], session=session)

    async def claim_period(self, template_id, month: int, year: int, session=None) -> Optional[RecurringIncomeTemplate]:
        """Claim (month, year) for the template; None if it was already claimed."""
        doc = await self.collection.find_one_and_update(
            {
                "_id": to_object_id(template_id, self.label),
                "is_active": True,
                "auto_create": True,
                "$nor": [{"last_created.month": month, "last_created.year": year}],
            },
            {
                "$set": {
                    "last_created": {"month": month, "year": year},
                    "updated_at": datetime.now(timezone.utc),
                },
                "$inc": {"version": 1},
            },
            return_document=ReturnDocument.AFTER,
            **session_kwargs(session),
        )
        return self._to_model(doc)

    async def release_period(
        self,
        template_id,
        month: int,
        year: int,
        previous: Optional[LastCreated],
        session=None,
    ) -> bool:
        """Undo a claim whose income could not be created."""
        result = await self.collection.update_one(
            {
                "_id": to_object_id(template_id, self.label),
                "last_created.month": month,
                "last_created.year": year,
            },
            {
                "$set": {
                    "last_created": previous.model_dump() if previous else None,
                    "updated_at": datetime.now(timezone.utc),
                },
                "$inc": {"version": 1},
            },
            **session_kwargs(session),
        )
        return result.modified_count > 0

    async def append_created_income(self, template_id, created: CreatedIncome, session=None) -> bool:
        result = await self.collection.update_one(
            {"_id": to_object_id(template_id, self.label)},
            {
                "$push": {"created_incomes": created.model_dump()},
                "$inc": {"version": 1},
            },
            **session_kwargs(session),
        )
        return result.modified_count > 0
