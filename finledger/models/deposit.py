from enum import Enum
from typing import Optional

from pydantic import Field

from finledger.models.base import OwnedModel, PyObjectId, UtcDatetime, _utcnow


class DepositType(str, Enum):
    FIXED = "fixed"
    SAVINGS = "savings"
    INVESTMENT = "investment"
    SPENDING = "spending"


class DepositStatus(str, Enum):
    ACTIVE = "active"
    MATURED = "matured"
    CLOSED = "closed"


class Deposit(OwnedModel):
    bank_name: str
    account_number: str
    amount: float = Field(..., ge=0)
    current_balance: float = Field(..., ge=0)
    interest_rate: float = Field(0.0, ge=0, le=100)
    start_date: UtcDatetime
    end_date: UtcDatetime
    type: DepositType = DepositType.SAVINGS
    auto_renewal: bool = False
    status: DepositStatus = DepositStatus.ACTIVE
    description: Optional[str] = None
    last_interest_accrued: Optional[UtcDatetime] = None


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    INTEREST = "interest"


class DepositTransaction(OwnedModel):
    """One applied balance adjustment. Never edited except through the ledger."""
    deposit_id: PyObjectId
    type: TransactionType
    amount: float = Field(..., gt=0)
    transaction_date: UtcDatetime = Field(default_factory=_utcnow)
    description: Optional[str] = None
    income_id: Optional[PyObjectId] = None
    action_id: Optional[PyObjectId] = None

    def balance_effect(self) -> float:
        """Signed change this transaction applies to the deposit balance."""
        return balance_effect(self.type, self.amount)


def balance_effect(tx_type: str, amount: float) -> float:
    if tx_type == TransactionType.WITHDRAWAL:
        return -amount
    return amount
