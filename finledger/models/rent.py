from enum import Enum
from typing import Optional

from pydantic import Field

from finledger.models.base import OwnedModel, PyObjectId, UtcDatetime, _utcnow


class RentStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RentProperty(OwnedModel):
    address: str
    landlord_name: str
    rent_amount: float = Field(..., ge=0)
    security_deposit: float = Field(0.0, ge=0)
    start_date: UtcDatetime
    end_date: Optional[UtcDatetime] = None
    status: RentStatus = RentStatus.ACTIVE
    utilities_amount: Optional[float] = Field(None, ge=0)


class RentPaymentType(str, Enum):
    RENT = "rent"
    UTILITIES = "utilities"
    DEPOSIT = "deposit"
    OTHER = "other"


class RentPayment(OwnedModel):
    property_id: PyObjectId
    amount: float = Field(..., gt=0)
    payment_date: UtcDatetime = Field(default_factory=_utcnow)
    payment_type: RentPaymentType = RentPaymentType.RENT
    status: str = "paid"
    notes: Optional[str] = None
    income_id: Optional[PyObjectId] = None
    action_id: Optional[PyObjectId] = None
