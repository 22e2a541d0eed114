"""
Income model - money that came in, and where it went.

Design principles:
- amount, available_amount and used_amount are encrypted at rest
- available_amount + used_amount == amount after every committed action
- IncomeUsage rows are append-only audit records; they are only ever
  created or deleted together with the transaction they justify
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

from finledger.models.base import OwnedModel, PyObjectId, UtcDatetime, _utcnow


class IncomePeriod(BaseModel):
    """Month (0-11) and year an auto-created income was generated for."""
    month: int = Field(..., ge=0, le=11)
    year: int


class Income(OwnedModel):
    amount_fields = ("amount", "available_amount", "used_amount")

    source: str
    amount: Optional[float] = None
    available_amount: Optional[float] = None
    used_amount: Optional[float] = None
    description: Optional[str] = None
    date: UtcDatetime = Field(default_factory=_utcnow)
    category_id: Optional[PyObjectId] = None

    # Set when generated from a recurring template
    recurring_income_id: Optional[PyObjectId] = None
    is_auto_created: bool = False
    period: Optional[IncomePeriod] = None

    @model_validator(mode="before")
    @classmethod
    def _start_unreserved(cls, data: Any) -> Any:
        # A new income has nothing reserved yet
        if isinstance(data, dict):
            if "available_amount" not in data:
                data = {**data, "available_amount": data.get("amount")}
            if "used_amount" not in data:
                data = {**data, "used_amount": 0.0}
        return data


class UsageType(str, Enum):
    DEPOSIT = "deposit"
    OTHER = "other"


class IncomeUsage(OwnedModel):
    income_id: PyObjectId
    used_amount: float = Field(..., gt=0)
    usage_type: UsageType = UsageType.DEPOSIT
    deposit_transaction_id: Optional[PyObjectId] = None
    rent_payment_id: Optional[PyObjectId] = None
    action_id: Optional[PyObjectId] = None
    description: Optional[str] = None
    usage_date: UtcDatetime = Field(default_factory=_utcnow)
