from typing import List

from finledger.models.rent import RentPayment, RentProperty
from finledger.repositories.base import MongoRepository, to_object_id


class RentPropertyRepository(MongoRepository):
    collection_name = "rent_properties"
    model = RentProperty
    label = "Rent property"


class RentPaymentRepository(MongoRepository):
    collection_name = "rent_payments"
    model = RentPayment
    label = "Rent payment"

    async def for_property(self, property_id, session=None) -> List[RentPayment]:
        return await self.list(
            {"property_id": to_object_id(property_id, "Rent property")},
            sort=[("payment_date", -1)],
            session=session,
        )
