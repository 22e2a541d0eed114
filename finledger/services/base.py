from typing import Any, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from finledger.core.config import settings
from finledger.core.exceptions import DecryptionError, InsufficientFunds
from finledger.models.income import Income
from finledger.repositories.ledger_action_repo import LedgerActionRepository
from finledger.services.codec import MonetaryFieldCodec
from finledger.services.saga import LedgerSaga


def round_amount(value: float) -> float:
    return round(value, 2)


class LedgerBaseService:
    """Shared wiring for services that run multi-step ledger actions."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        codec: MonetaryFieldCodec,
        use_transactions: Optional[bool] = None,
        epsilon: Optional[float] = None,
    ):
        self.db = db
        self.codec = codec
        self.use_transactions = settings.USE_TRANSACTIONS if use_transactions is None else use_transactions
        self.epsilon = settings.BALANCE_EPSILON if epsilon is None else epsilon
        self.actions = LedgerActionRepository(db)

    def saga(self, owner_id, action: str, **payload: Any) -> LedgerSaga:
        return LedgerSaga(
            self.db,
            self.actions,
            owner_id,
            action,
            payload=payload,
            use_transactions=self.use_transactions,
        )

    def clamp(self, value: float) -> float:
        """Snap values within epsilon of zero to zero."""
        value = round_amount(value)
        return 0.0 if abs(value) <= self.epsilon else value

    def next_balance(self, balance: float, effect: float) -> float:
        """Balance after ``effect``; InsufficientFunds if it would go negative."""
        new_balance = round_amount(balance + effect)
        if new_balance < -self.epsilon:
            raise InsufficientFunds(
                f"Insufficient funds: balance {round_amount(balance)}, change {round_amount(effect)}"
            )
        return max(self.clamp(new_balance), 0.0)

    def income_shift(self, income: Income, amount: float) -> dict:
        """
        Changes that move ``amount`` from available to used.

        A negative amount moves money back. Raises InsufficientFunds when the
        income does not have that much available.
        """
        self.require_readable(income)
        available = round_amount(income.available_amount - amount)
        if available < -self.epsilon:
            raise InsufficientFunds(
                f"Insufficient income funds: available {income.available_amount}, requested {amount}"
            )
        used = round_amount(income.used_amount + amount)
        return {
            "available_amount": max(self.clamp(available), 0.0),
            "used_amount": max(self.clamp(used), 0.0),
        }

    @staticmethod
    def require_readable(income: Income) -> None:
        if income.amount is None or income.available_amount is None or income.used_amount is None:
            raise DecryptionError(f"Income {income.id} has amounts that cannot be decrypted")
