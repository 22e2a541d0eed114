"""
Credit model - a loan amortizing toward zero.

Invariants:
- principal_amount + interest_amount == amount on every payment (±0.01)
- status is "paid" exactly when current_balance reaches 0
- status is "overdue" when end_date has passed with a positive balance
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import Field

from finledger.models.base import OwnedModel, PyObjectId, UtcDatetime, _utcnow

AMOUNT_EPSILON = 0.01


class CreditType(str, Enum):
    CREDIT = "credit"
    LOAN = "loan"
    INSTALLMENT = "installment"


class CreditStatus(str, Enum):
    ACTIVE = "active"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class Credit(OwnedModel):
    name: str
    bank_id: Optional[PyObjectId] = None
    amount: float = Field(..., ge=0)
    current_balance: float = Field(..., ge=0)
    interest_rate: float = Field(0.0, ge=0, le=100)
    monthly_payment: float = Field(..., ge=0)
    monthly_payment_day: int = Field(1, ge=1, le=31)
    start_date: UtcDatetime
    end_date: UtcDatetime
    type: CreditType = CreditType.CREDIT
    status: CreditStatus = CreditStatus.ACTIVE
    description: Optional[str] = None

    def computed_status(self, now: datetime, epsilon: float = AMOUNT_EPSILON) -> str:
        """Status implied by the balance and the end date."""
        if self.status == CreditStatus.CANCELLED:
            return CreditStatus.CANCELLED.value
        if self.current_balance <= epsilon:
            return CreditStatus.PAID.value
        if now > self.end_date:
            return CreditStatus.OVERDUE.value
        return CreditStatus.ACTIVE.value

    def payment_progress(self) -> float:
        if self.amount == 0:
            return 0.0
        return (self.amount - self.current_balance) / self.amount * 100


class PaymentStatus(str, Enum):
    PAID = "paid"
    PENDING = "pending"
    CANCELLED = "cancelled"


class CreditPayment(OwnedModel):
    credit_id: PyObjectId
    amount: float = Field(..., gt=0)
    principal_amount: float = Field(0.0, ge=0)
    interest_amount: float = Field(0.0, ge=0)
    payment_date: UtcDatetime = Field(default_factory=_utcnow)
    status: PaymentStatus = PaymentStatus.PAID
    notes: Optional[str] = None
    action_id: Optional[PyObjectId] = None


def split_payment(
    amount: float,
    principal_amount: Optional[float] = None,
    interest_amount: Optional[float] = None,
    epsilon: float = AMOUNT_EPSILON,
) -> tuple:
    """
    Decompose a payment into (amount, principal, interest).

    Principal defaults to the whole amount when interest is not given, and to
    the remainder when only interest is. When both parts are given and do not
    add up to ``amount``, their sum wins.
    """
    if interest_amount is None and principal_amount is None:
        return amount, amount, 0.0
    if principal_amount is None:
        return amount, round(amount - interest_amount, 2), interest_amount
    if interest_amount is None:
        return amount, principal_amount, round(amount - principal_amount, 2)

    total = round(principal_amount + interest_amount, 2)
    if abs(total - amount) > epsilon:
        amount = total
    return amount, principal_amount, interest_amount
