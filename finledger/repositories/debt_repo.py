from finledger.models.debt import Debt
from finledger.repositories.base import MongoRepository


class DebtRepository(MongoRepository):
    """Debts with their payments embedded."""

    collection_name = "debts"
    model = Debt
    label = "Debt"
