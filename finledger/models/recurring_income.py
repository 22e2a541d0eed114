"""
Recurring income template - generates at most one income per calendar month.

Per (template, month, year) the template is either idle-for-period or
generated-for-period; which one is derived from ``last_created``. Months
are stored as 0-11 indexes, the format existing template documents use.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field

from finledger.models.base import OwnedModel, PyObjectId, UtcDatetime, _utcnow


def period_of(today: datetime) -> Tuple[int, int]:
    """(month index 0-11, year) for a date."""
    return today.month - 1, today.year


class IncomeKind(str, Enum):
    SALARY = "salary"
    BONUS = "bonus"
    INVESTMENT = "investment"
    FREELANCE = "freelance"
    OTHER = "other"


class LastCreated(BaseModel):
    month: int = Field(..., ge=0, le=11)
    year: int


class CreatedIncome(BaseModel):
    income_id: PyObjectId
    month: int = Field(..., ge=0, le=11)
    year: int
    created_at: UtcDatetime = Field(default_factory=_utcnow)


class RecurringIncomeTemplate(OwnedModel):
    amount_fields = ("amount",)

    source: str
    amount: Optional[float] = None
    description: Optional[str] = None
    kind: IncomeKind = IncomeKind.SALARY
    category_id: Optional[PyObjectId] = None
    recurring_day: int = Field(..., ge=1, le=31)
    is_active: bool = True
    auto_create: bool = True
    start_date: Optional[UtcDatetime] = None
    end_date: Optional[UtcDatetime] = None
    last_created: Optional[LastCreated] = None
    created_incomes: List[CreatedIncome] = []

    def generated_for(self, month: int, year: int) -> bool:
        return (
            self.last_created is not None
            and self.last_created.month == month
            and self.last_created.year == year
        )

    def should_create_this_month(self, today: datetime) -> bool:
        """Active, auto-creating, and not yet generated for today's month."""
        if not self.is_active or not self.auto_create:
            return False
        month, year = period_of(today)
        return not self.generated_for(month, year)

    def is_due(self, today: datetime) -> bool:
        """should_create_this_month, plus the day of month and the date window."""
        if not self.should_create_this_month(today):
            return False
        if today.day < self.recurring_day:
            return False
        if self.start_date and today < self.start_date:
            return False
        if self.end_date and today > self.end_date:
            return False
        return True

    def mark_as_created(self, income_id, today: datetime) -> None:
        """Move to generated-for-period and record the income."""
        month, year = period_of(today)
        self.last_created = LastCreated(month=month, year=year)
        self.created_incomes.append(
            CreatedIncome(income_id=income_id, month=month, year=year)
        )
