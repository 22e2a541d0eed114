from typing import List

from finledger.models.deposit import Deposit, DepositStatus, DepositTransaction
from finledger.repositories.base import MongoRepository, to_object_id


class DepositRepository(MongoRepository):
    collection_name = "deposits"
    model = Deposit
    label = "Deposit"

    async def list_active(self, owner_id, session=None) -> List[Deposit]:
        return await self.list_for_owner(
            owner_id, {"status": DepositStatus.ACTIVE.value}, sort=[("created_at", -1)], session=session
        )


class DepositTransactionRepository(MongoRepository):
    collection_name = "deposit_transactions"
    model = DepositTransaction
    label = "Deposit transaction"

    async def for_deposit(self, deposit_id, session=None) -> List[DepositTransaction]:
        return await self.list(
            {"deposit_id": to_object_id(deposit_id, "Deposit")},
            sort=[("transaction_date", -1)],
            session=session,
        )

    async def delete_ids(self, transaction_ids, session=None) -> int:
        ids = list(transaction_ids)
        if not ids:
            return 0
        return await self.delete_many({"_id": {"$in": ids}}, session=session)
