from typing import Dict, Iterable, List

from finledger.models.income import Income, IncomeUsage
from finledger.repositories.base import MongoRepository, to_object_id


class IncomeRepository(MongoRepository):
    """Incomes; amount, available_amount and used_amount are encrypted at rest."""

    collection_name = "incomes"
    model = Income
    label = "Income"


class IncomeUsageRepository(MongoRepository):
    """Audit links from an income to where its reserved money went."""

    collection_name = "income_usages"
    model = IncomeUsage
    label = "Income usage"

    async def for_income(self, income_id, session=None) -> List[IncomeUsage]:
        return await self.list(
            {"income_id": to_object_id(income_id, "Income")},
            sort=[("usage_date", -1)],
            session=session,
        )

    async def for_transactions(self, transaction_ids: Iterable, session=None) -> List[IncomeUsage]:
        ids = [to_object_id(tx_id, "Transaction") for tx_id in transaction_ids]
        if not ids:
            return []
        return await self.list({"deposit_transaction_id": {"$in": ids}}, session=session)

    async def for_rent_payment(self, payment_id, session=None) -> List[IncomeUsage]:
        return await self.list(
            {"rent_payment_id": to_object_id(payment_id, "Rent payment")}, session=session
        )

    async def delete_ids(self, usage_ids: Iterable, session=None) -> int:
        ids = list(usage_ids)
        if not ids:
            return 0
        return await self.delete_many({"_id": {"$in": ids}}, session=session)

    async def totals_by_income(self, owner_id, session=None) -> Dict[str, float]:
        """Sum of used amounts per income id."""
        totals: Dict[str, float] = {}
        for usage in await self.list_for_owner(owner_id, session=session):
            key = str(usage.income_id)
            totals[key] = round(totals.get(key, 0.0) + usage.used_amount, 2)
        return totals
