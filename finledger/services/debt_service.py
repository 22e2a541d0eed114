"""
DebtService - payments on debts, stored embedded in the debt document.

A single document holds both the payment list and the balance, so each
action is one version-checked write.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from finledger.core.exceptions import AlreadySettled, InsufficientFunds, InvalidInput, NotFound
from finledger.models.debt import Debt, DebtPayment, DebtStatus
from finledger.repositories.debt_repo import DebtRepository
from finledger.schemas.ledger import DebtPaymentCreate, DebtPaymentResult
from finledger.services.base import LedgerBaseService, round_amount

logger = logging.getLogger(__name__)


class DebtService(LedgerBaseService):
    def __init__(self, db, codec, use_transactions: Optional[bool] = None, epsilon: Optional[float] = None):
        super().__init__(db, codec, use_transactions=use_transactions, epsilon=epsilon)
        self.debts = DebtRepository(db, codec)

    async def add_payment(self, owner_id, debt_id, data: DebtPaymentCreate) -> DebtPaymentResult:
        debt = await self.debts.get_owned(debt_id, owner_id)
        if debt.status == DebtStatus.PAID:
            raise AlreadySettled(f"Debt with {debt.person} is already settled")

        amount = round_amount(data.amount)
        if amount <= 0:
            raise InvalidInput("Payment amount must be positive")
        if amount > debt.current_balance + self.epsilon:
            raise InsufficientFunds(
                f"Payment {amount} exceeds the remaining balance {debt.current_balance}"
            )

        payment = DebtPayment(
            amount=amount,
            payment_date=data.payment_date or datetime.now(timezone.utc),
            description=data.description,
        )
        new_balance = max(self.clamp(debt.current_balance - amount), 0.0)
        updated = await self.debts.update(
            debt,
            {
                "payments": _dump_payments(debt.payments + [payment]),
                "current_balance": new_balance,
                "status": _status_for(new_balance),
            },
        )
        logger.info("Debt payment added", extra={"debt_id": str(debt.id), "amount": amount})
        return DebtPaymentResult(debt=updated, payment_id=payment.payment_id)

    async def delete_payment(self, owner_id, debt_id, payment_id) -> Debt:
        """Remove an embedded payment and give its amount back to the balance."""
        debt = await self.debts.get_owned(debt_id, owner_id)
        payment = debt.find_payment(payment_id)
        if payment is None:
            raise NotFound("Debt payment not found")

        new_balance = round_amount(debt.current_balance + payment.amount)
        if new_balance > debt.amount + self.epsilon:
            raise InvalidInput("Restored balance would exceed the debt amount")

        remaining = [p for p in debt.payments if p.payment_id != payment.payment_id]
        return await self.debts.update(
            debt,
            {
                "payments": _dump_payments(remaining),
                "current_balance": new_balance,
                "status": _status_for(new_balance),
            },
        )


def _status_for(balance: float) -> str:
    if balance == 0:
        return DebtStatus.PAID.value
    return DebtStatus.ACTIVE.value


def _dump_payments(payments) -> list:
    return [payment.model_dump() for payment in payments]
