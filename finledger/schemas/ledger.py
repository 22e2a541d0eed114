"""
Ledger action schemas.

Inputs the request layer hands to the services, and the result objects the
services return. Amounts are plain floats here; encryption happens below
the repositories.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from finledger.models.base import PyObjectId
from finledger.models.credit import Credit, CreditPayment
from finledger.models.debt import Debt
from finledger.models.deposit import Deposit, DepositTransaction, TransactionType
from finledger.models.expense import MonthlyExpense
from finledger.models.income import Income, IncomeUsage
from finledger.models.rent import RentPayment, RentPaymentType


class LedgerSchema(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, use_enum_values=True)


# ===== DEPOSITS =====

class ReserveRequest(LedgerSchema):
    """Move money from an income into a deposit"""
    income_id: PyObjectId
    deposit_id: PyObjectId
    amount: float = Field(..., gt=0)
    description: Optional[str] = None
    transaction_date: Optional[datetime] = None
    monthly_expense_id: Optional[PyObjectId] = None


class DepositTransactionCreate(LedgerSchema):
    deposit_id: PyObjectId
    type: TransactionType
    amount: float = Field(..., gt=0)
    description: Optional[str] = None
    transaction_date: Optional[datetime] = None
    income_id: Optional[PyObjectId] = None


class DepositTransactionUpdate(LedgerSchema):
    """Partial update; an explicit ``income_id=None`` unlinks the income"""
    type: Optional[TransactionType] = None
    amount: Optional[float] = Field(None, gt=0)
    description: Optional[str] = None
    transaction_date: Optional[datetime] = None
    income_id: Optional[PyObjectId] = None


class DepositTransactionResult(LedgerSchema):
    transaction: DepositTransaction
    deposit: Deposit
    incomes: List[Income] = []
    action_id: Optional[PyObjectId] = None


class ReserveResult(DepositTransactionResult):
    usage: IncomeUsage
    monthly_expense: Optional[MonthlyExpense] = None

    @property
    def income(self) -> Income:
        return self.incomes[0]


class DepositDeletionResult(LedgerSchema):
    deposit_id: PyObjectId
    deleted_transactions: int
    deleted_usages: int
    restored_incomes: List[Income] = []


class InterestAccrualResult(LedgerSchema):
    deposits: List[Deposit] = []
    interest_transactions: List[DepositTransaction] = []
    matured: List[PyObjectId] = []
    renewed: List[PyObjectId] = []


# ===== RENT =====

class RentPaymentCreate(LedgerSchema):
    property_id: PyObjectId
    amount: float = Field(..., gt=0)
    payment_date: Optional[datetime] = None
    payment_type: RentPaymentType = RentPaymentType.RENT
    notes: Optional[str] = None
    income_id: Optional[PyObjectId] = None


class RentPaymentResult(LedgerSchema):
    payment: RentPayment
    income: Optional[Income] = None
    usage: Optional[IncomeUsage] = None


# ===== CREDITS AND DEBTS =====

class CreditPaymentCreate(LedgerSchema):
    amount: float = Field(..., gt=0)
    principal_amount: Optional[float] = Field(None, ge=0)
    interest_amount: Optional[float] = Field(None, ge=0)
    payment_date: Optional[datetime] = None
    notes: Optional[str] = None


class CreditPaymentResult(LedgerSchema):
    credit: Credit
    payment: CreditPayment


class MonthlyPaymentOutcome(LedgerSchema):
    credit_id: PyObjectId
    name: str
    amount: float = 0.0
    payment_id: Optional[PyObjectId] = None
    status: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class MonthlyPaymentsResult(LedgerSchema):
    total_amount: float = 0.0
    payments_count: int = 0
    outcomes: List[MonthlyPaymentOutcome] = []

    @property
    def failures(self) -> List[MonthlyPaymentOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.ok]


class DebtPaymentCreate(LedgerSchema):
    amount: float = Field(..., gt=0)
    payment_date: Optional[datetime] = None
    description: Optional[str] = None


class DebtPaymentResult(LedgerSchema):
    debt: Debt
    payment_id: PyObjectId


# ===== RECURRING INCOMES =====

class TemplateOutcome(LedgerSchema):
    template_id: PyObjectId
    income_id: Optional[PyObjectId] = None
    skipped: Optional[str] = None
    error: Optional[str] = None


class RecurringRunResult(LedgerSchema):
    month: int
    year: int
    created: List[Income] = []
    outcomes: List[TemplateOutcome] = []

    @property
    def created_count(self) -> int:
        return len(self.created)


# ===== RECONCILIATION =====

class IncomeDrift(LedgerSchema):
    income_id: PyObjectId
    amount: Optional[float] = None
    available_amount: Optional[float] = None
    used_amount: Optional[float] = None
    usage_total: float = 0.0
    reason: str
