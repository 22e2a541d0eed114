from typing import List

from finledger.models.credit import Credit, CreditPayment, CreditStatus
from finledger.repositories.base import MongoRepository, to_object_id


class CreditRepository(MongoRepository):
    collection_name = "credits"
    model = Credit
    label = "Credit"

    async def list_active(self, owner_id, session=None) -> List[Credit]:
        return await self.list_for_owner(
            owner_id, {"status": CreditStatus.ACTIVE.value}, sort=[("created_at", 1)], session=session
        )


class CreditPaymentRepository(MongoRepository):
    collection_name = "credit_payments"
    model = CreditPayment
    label = "Credit payment"

    async def for_credit(self, credit_id, session=None) -> List[CreditPayment]:
        return await self.list(
            {"credit_id": to_object_id(credit_id, "Credit")},
            sort=[("payment_date", -1)],
            session=session,
        )
