from finledger.models.expense import Expense, MonthlyExpense
from finledger.repositories.base import MongoRepository


class ExpenseRepository(MongoRepository):
    collection_name = "expenses"
    model = Expense
    label = "Expense"


class MonthlyExpenseRepository(MongoRepository):
    collection_name = "monthly_expenses"
    model = MonthlyExpense
    label = "Monthly expense"
