"""
CreditService - payments against credits.

Rules:
- A paid credit takes no more payments
- 0 < amount <= current_balance (±epsilon)
- principal_amount + interest_amount == amount on every stored payment
- Status becomes "paid" exactly when the balance reaches 0
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from finledger.core.exceptions import AlreadySettled, InsufficientFunds, InvalidInput, LedgerError, NotFound
from finledger.models.credit import Credit, CreditPayment, CreditStatus, PaymentStatus, split_payment
from finledger.repositories.credit_repo import CreditPaymentRepository, CreditRepository
from finledger.schemas.ledger import (
    CreditPaymentCreate,
    CreditPaymentResult,
    MonthlyPaymentOutcome,
    MonthlyPaymentsResult,
)
from finledger.services.base import LedgerBaseService, round_amount

logger = logging.getLogger(__name__)


class CreditService(LedgerBaseService):
    def __init__(self, db, codec, use_transactions: Optional[bool] = None, epsilon: Optional[float] = None):
        super().__init__(db, codec, use_transactions=use_transactions, epsilon=epsilon)
        self.credits = CreditRepository(db, codec)
        self.payments = CreditPaymentRepository(db, codec)

    async def add_payment(self, owner_id, credit_id, data: CreditPaymentCreate) -> CreditPaymentResult:
        credit = await self.credits.get_owned(credit_id, owner_id)
        return await self._pay(owner_id, credit, data)

    async def pay_monthly_payments(self, owner_id, payment_date: Optional[datetime] = None) -> MonthlyPaymentsResult:
        """
        Pay one monthly installment on every active credit.

        Best effort: each credit is paid in its own ledger action and a
        failure is recorded in the result without stopping the others. The
        last installment is capped at the remaining balance.
        """
        credits = await self.credits.list_active(owner_id)
        if not credits:
            raise NotFound("No active credits to pay")

        payment_date = payment_date or datetime.now(timezone.utc)
        result = MonthlyPaymentsResult()
        for credit in credits:
            amount = round_amount(min(credit.monthly_payment, credit.current_balance))
            outcome = MonthlyPaymentOutcome(credit_id=credit.id, name=credit.name, amount=amount)
            try:
                paid = await self._pay(
                    owner_id,
                    credit,
                    CreditPaymentCreate(amount=amount, payment_date=payment_date),
                )
            except (LedgerError, ValueError) as exc:
                outcome.error = str(exc)
                logger.warning(
                    "Monthly credit payment failed",
                    extra={"credit_id": str(credit.id), "error": str(exc)},
                )
            else:
                outcome.payment_id = paid.payment.id
                outcome.status = paid.credit.status
                result.total_amount = round_amount(result.total_amount + paid.payment.amount)
                result.payments_count += 1
            result.outcomes.append(outcome)

        logger.info(
            "Monthly credit payments processed",
            extra={
                "owner_id": str(owner_id),
                "payments_count": result.payments_count,
                "failures": len(result.failures),
            },
        )
        return result

    async def delete_payment(self, owner_id, payment_id) -> Credit:
        """Remove a payment, give its amount back to the balance and recompute status."""
        payment = await self.payments.get_owned(payment_id, owner_id)
        credit = await self.credits.get_owned(payment.credit_id, owner_id)

        new_balance = round_amount(credit.current_balance + payment.amount)
        if new_balance > credit.amount + self.epsilon:
            raise InvalidInput("Restored balance would exceed the credit amount")
        restored = credit.model_copy(update={"current_balance": new_balance})
        new_status = restored.computed_status(datetime.now(timezone.utc), self.epsilon)

        async with self.saga(
            owner_id, "delete_credit_payment", credit_id=str(credit.id), payment_id=str(payment.id)
        ) as saga:
            await saga.step(
                "delete_credit_payment",
                lambda: self.payments.delete(payment.id, session=saga.session),
                compensate=lambda _: self.payments.insert(payment),
            )
            updated = await saga.step(
                "restore_credit_balance",
                lambda: self.credits.update(
                    credit, {"current_balance": new_balance, "status": new_status}, session=saga.session
                ),
            )
        return updated

    async def list_payments(self, owner_id, credit_id) -> List[CreditPayment]:
        credit = await self.credits.get_owned(credit_id, owner_id)
        return await self.payments.for_credit(credit.id)

    async def _pay(self, owner_id, credit: Credit, data: CreditPaymentCreate) -> CreditPaymentResult:
        if credit.status == CreditStatus.PAID:
            raise AlreadySettled(f"Credit '{credit.name}' is already paid off")

        amount, principal, interest = split_payment(
            round_amount(data.amount), data.principal_amount, data.interest_amount, self.epsilon
        )
        if amount <= 0:
            raise InvalidInput("Payment amount must be positive")
        if principal < 0 or interest < 0:
            raise InvalidInput("Principal and interest cannot be negative")
        if amount > credit.current_balance + self.epsilon:
            raise InsufficientFunds(
                f"Payment {amount} exceeds the remaining balance {credit.current_balance}"
            )

        new_balance = max(self.clamp(credit.current_balance - amount), 0.0)
        paid_down = credit.model_copy(update={"current_balance": new_balance})
        now = datetime.now(timezone.utc)
        if new_balance == 0:
            new_status = CreditStatus.PAID.value
        else:
            # Cancelled stays cancelled; past end_date with money owed is overdue
            new_status = paid_down.computed_status(now, self.epsilon)

        async with self.saga(owner_id, "add_credit_payment", credit_id=str(credit.id), amount=amount) as saga:
            payment = CreditPayment(
                owner_id=credit.owner_id,
                credit_id=credit.id,
                amount=amount,
                principal_amount=principal,
                interest_amount=interest,
                payment_date=data.payment_date or now,
                status=PaymentStatus.PAID,
                notes=data.notes,
                action_id=saga.action_id,
            )
            await saga.step(
                "insert_credit_payment",
                lambda: self.payments.insert(payment, session=saga.session),
                compensate=lambda _: self.payments.delete(payment.id),
            )
            updated = await saga.step(
                "update_credit_balance",
                lambda: self.credits.update(
                    credit, {"current_balance": new_balance, "status": new_status}, session=saga.session
                ),
            )

        return CreditPaymentResult(credit=updated, payment=payment)
