from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from finledger.models.ledger_action import ActionStatus, LedgerAction
from finledger.repositories.base import MongoRepository, session_kwargs


class LedgerActionRepository(MongoRepository):
    """
    Intent log for multi-step ledger actions.

    Records are written outside any ledger transaction so the log survives
    an aborted one.
    """

    collection_name = "ledger_actions"
    model = LedgerAction
    label = "Ledger action"

    async def start(self, owner_id, action: str, payload: Optional[Dict[str, Any]] = None) -> LedgerAction:
        record = LedgerAction(owner_id=owner_id, action=action, payload=payload or {})
        return await self.insert(record)

    async def add_step(self, action_id, step: str) -> None:
        await self.collection.update_one(
            {"_id": action_id},
            {
                "$push": {"steps": step},
                "$set": {"updated_at": datetime.now(timezone.utc)},
            },
        )

    async def finish(self, action_id, status: ActionStatus, error: Optional[str] = None, session=None) -> None:
        await self.collection.update_one(
            {"_id": action_id},
            {
                "$set": {
                    "status": ActionStatus(status).value,
                    "error": error,
                    "updated_at": datetime.now(timezone.utc),
                },
                "$inc": {"version": 1},
            },
            **session_kwargs(session),
        )

    async def unfinished(self, owner_id=None) -> List[LedgerAction]:
        """Actions left pending or failed: candidates for reconciliation."""
        query: Dict[str, Any] = {
            "status": {"$in": [ActionStatus.PENDING.value, ActionStatus.FAILED.value]}
        }
        if owner_id is not None:
            return await self.list_for_owner(owner_id, query, sort=[("created_at", 1)])
        return await self.list(query, sort=[("created_at", 1)])
