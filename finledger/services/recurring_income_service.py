"""
RecurringIncomeService - generates incomes from recurring templates.

Per template and calendar month:
1. Claim the period with a conditional update (loses if already claimed)
2. Create the income (available = amount, nothing used)
3. Append it to the template's created_incomes

Running twice in the same month claims nothing the second time. If the
income cannot be created the claim is released so a later run can retry.
The scheduler that calls ``process_due_templates`` lives outside this package.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from pymongo.errors import DuplicateKeyError, PyMongoError

from finledger.core.exceptions import LedgerError
from finledger.models.base import as_utc
from finledger.models.income import Income, IncomePeriod
from finledger.models.recurring_income import CreatedIncome, RecurringIncomeTemplate, period_of
from finledger.repositories.income_repo import IncomeRepository
from finledger.repositories.recurring_income_repo import RecurringIncomeRepository
from finledger.schemas.ledger import RecurringRunResult, TemplateOutcome
from finledger.services.base import LedgerBaseService

logger = logging.getLogger(__name__)


class RecurringIncomeService(LedgerBaseService):
    def __init__(self, db, codec, use_transactions: Optional[bool] = None, epsilon: Optional[float] = None):
        super().__init__(db, codec, use_transactions=use_transactions, epsilon=epsilon)
        self.incomes = IncomeRepository(db, codec)
        self.templates = RecurringIncomeRepository(db, codec)

    async def create_template(self, template: RecurringIncomeTemplate) -> RecurringIncomeTemplate:
        return await self.templates.insert(template)

    async def process_due_templates(self, owner_id=None, today: Optional[datetime] = None) -> RecurringRunResult:
        """Create this month's income for every due template (all owners when owner_id is None)."""
        today = as_utc(today) if today else datetime.now(timezone.utc)
        month, year = period_of(today)
        result = RecurringRunResult(month=month, year=year)

        for template in await self.templates.list_auto_creating(owner_id):
            outcome = await self._process_template(template, today)
            result.outcomes.append(outcome)
            if outcome.income_id is not None and outcome.error is None:
                result.created.append(await self.incomes.get(outcome.income_id))

        logger.info(
            "Recurring incomes processed",
            extra={"month": month, "year": year, "created_count": result.created_count},
        )
        return result

    async def _process_template(self, template: RecurringIncomeTemplate, today: datetime) -> TemplateOutcome:
        outcome = TemplateOutcome(template_id=template.id)
        month, year = period_of(today)

        if not template.is_due(today):
            outcome.skipped = "not due"
            return outcome
        if template.amount is None or template.amount <= 0:
            outcome.skipped = "invalid amount"
            logger.warning(
                "Recurring income skipped, amount missing or not positive",
                extra={"template_id": str(template.id)},
            )
            return outcome

        claimed = await self.templates.claim_period(template.id, month, year)
        if claimed is None:
            outcome.skipped = "already generated"
            return outcome

        income = Income(
            owner_id=template.owner_id,
            source=template.source,
            amount=template.amount,
            available_amount=template.amount,
            used_amount=0.0,
            description=template.description or f"Auto-created from recurring income: {template.source}",
            date=today,
            category_id=template.category_id,
            recurring_income_id=template.id,
            is_auto_created=True,
            period=IncomePeriod(month=month, year=year),
        )
        try:
            await self.incomes.insert(income)
        except DuplicateKeyError:
            # Another run already created this period's income
            outcome.skipped = "already generated"
            return outcome
        except (PyMongoError, LedgerError) as exc:
            await self.templates.release_period(template.id, month, year, template.last_created)
            outcome.error = str(exc)
            logger.error(
                "Recurring income creation failed, period released",
                extra={"template_id": str(template.id), "error": str(exc)},
            )
            return outcome

        outcome.income_id = income.id
        try:
            await self.templates.append_created_income(
                template.id, CreatedIncome(income_id=income.id, month=month, year=year)
            )
        except PyMongoError as exc:
            # The income exists and the period stays claimed; only the history entry is missing
            logger.error(
                "Could not record created income on template",
                extra={"template_id": str(template.id), "income_id": str(income.id), "error": str(exc)},
            )
        return outcome

    async def toggle(self, owner_id, template_id) -> RecurringIncomeTemplate:
        template = await self.templates.get_owned(template_id, owner_id)
        return await self.templates.update(template, {"is_active": not template.is_active})

    async def history(self, owner_id, template_id) -> List[Income]:
        """Incomes the template generated, newest period first."""
        template = await self.templates.get_owned(template_id, owner_id)
        ids = [created.income_id for created in template.created_incomes]
        if not ids:
            return []
        incomes = await self.incomes.list({"_id": {"$in": ids}})
        return sorted(
            incomes,
            key=lambda income: (income.period.year, income.period.month) if income.period else (0, 0),
            reverse=True,
        )
