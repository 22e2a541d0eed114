from enum import Enum
from typing import List, Optional

from pydantic import Field

from finledger.models.base import OwnedModel, PyObjectId, UtcDatetime, _utcnow


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    TRANSFER = "transfer"
    OTHER = "other"


class Expense(OwnedModel):
    amount_fields = ("amount",)

    category: str
    amount: Optional[float] = None
    description: Optional[str] = None
    date: UtcDatetime = Field(default_factory=_utcnow)
    payment_method: PaymentMethod = PaymentMethod.CARD
    is_recurring: bool = False
    tags: List[str] = []


class MonthlyExpenseStatus(str, Enum):
    PLANNED = "planned"
    PAID = "paid"
    OVERDUE = "overdue"


class MonthlyExpense(OwnedModel):
    """A planned expense, optionally backed by money reserved from an income."""
    amount_fields = ("amount", "actual_amount")

    category_id: Optional[PyObjectId] = None
    name: str
    amount: Optional[float] = None
    actual_amount: Optional[float] = None
    due_date: UtcDatetime
    is_recurring: bool = False
    status: MonthlyExpenseStatus = MonthlyExpenseStatus.PLANNED
    description: Optional[str] = None
    source_income_id: Optional[PyObjectId] = None
    storage_deposit_id: Optional[PyObjectId] = None
