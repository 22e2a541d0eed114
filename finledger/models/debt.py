from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from finledger.models.base import OwnedModel, PyObjectId, UtcDatetime, _utcnow


class DebtType(str, Enum):
    OWE = "owe"    # I owe someone
    OWED = "owed"  # someone owes me


class DebtStatus(str, Enum):
    ACTIVE = "active"
    PAID = "paid"


# Embedded documents don't need MongoModel (no separate collection)
class DebtPayment(BaseModel):
    payment_id: PyObjectId = Field(default_factory=PyObjectId)
    amount: float = Field(..., gt=0)
    payment_date: UtcDatetime = Field(default_factory=_utcnow)
    description: Optional[str] = None


class Debt(OwnedModel):
    type: DebtType
    person: str
    amount: float = Field(..., ge=0)
    current_balance: float = Field(..., ge=0)
    description: Optional[str] = None
    due_date: Optional[UtcDatetime] = None
    status: DebtStatus = DebtStatus.ACTIVE
    payments: List[DebtPayment] = []

    def find_payment(self, payment_id) -> Optional[DebtPayment]:
        for payment in self.payments:
            if str(payment.payment_id) == str(payment_id):
                return payment
        return None
