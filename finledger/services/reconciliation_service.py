"""
ReconciliationService - finds drift left behind by ledger actions that
stopped halfway and could not be fully compensated.

Income usages are the audit trail: an income's used_amount should equal the
sum of its usages, and available + used should equal amount.
"""

import logging
from typing import List, Optional

from finledger.core.exceptions import BalanceExceeded
from finledger.models.income import Income
from finledger.models.ledger_action import LedgerAction
from finledger.repositories.income_repo import IncomeRepository, IncomeUsageRepository
from finledger.schemas.ledger import IncomeDrift
from finledger.services.base import LedgerBaseService, round_amount

logger = logging.getLogger(__name__)


class ReconciliationService(LedgerBaseService):
    def __init__(self, db, codec, use_transactions: Optional[bool] = None, epsilon: Optional[float] = None):
        super().__init__(db, codec, use_transactions=use_transactions, epsilon=epsilon)
        self.incomes = IncomeRepository(db, codec)
        self.usages = IncomeUsageRepository(db, codec)

    async def unfinished_actions(self, owner_id=None) -> List[LedgerAction]:
        return await self.actions.unfinished(owner_id)

    async def income_drift(self, owner_id) -> List[IncomeDrift]:
        totals = await self.usages.totals_by_income(owner_id)
        drift = []
        for income in await self.incomes.list_for_owner(owner_id):
            reason = self._drift_reason(income, totals.get(str(income.id), 0.0))
            if reason is None:
                continue
            drift.append(
                IncomeDrift(
                    income_id=income.id,
                    amount=income.amount,
                    available_amount=income.available_amount,
                    used_amount=income.used_amount,
                    usage_total=totals.get(str(income.id), 0.0),
                    reason=reason,
                )
            )
        if drift:
            logger.warning("Income drift found", extra={"owner_id": str(owner_id), "incomes": len(drift)})
        return drift

    async def repair_income(self, owner_id, income_id) -> Income:
        """Recompute used and available amounts from the income's usages."""
        income = await self.incomes.get_owned(income_id, owner_id)
        if income.amount is None:
            self.require_readable(income)

        usages = await self.usages.for_income(income.id)
        used = round_amount(sum(usage.used_amount for usage in usages))
        available = round_amount(income.amount - used)
        if available < -self.epsilon:
            raise BalanceExceeded(f"Usages ({used}) exceed the income amount ({income.amount})")

        repaired = await self.incomes.update(
            income, {"used_amount": used, "available_amount": max(self.clamp(available), 0.0)}
        )
        logger.info("Income repaired from usages", extra={"income_id": str(income.id), "used_amount": used})
        return repaired

    def _drift_reason(self, income: Income, usage_total: float):
        if income.amount is None or income.available_amount is None or income.used_amount is None:
            return "unreadable amounts"
        if abs(income.available_amount + income.used_amount - income.amount) > self.epsilon:
            return "available + used does not equal amount"
        if abs(income.used_amount - usage_total) > self.epsilon:
            return "used amount does not match usages"
        return None
