"""
LedgerService - balance-changing actions across incomes, deposits and rent.

Every action follows the same shape:
1. Read current state and validate every precondition (no writes yet)
2. Open a LedgerSaga (intent log + compensations)
3. Write transaction/audit rows, then the balances they justify
4. Balance writes are version compare-and-set on the document

Invariants kept after every committed action:
- income.available_amount + income.used_amount == income.amount (±epsilon)
- deposit.current_balance >= 0
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from finledger.core.exceptions import BalanceExceeded, InvalidInput, NotFound
from finledger.models.base import as_utc
from finledger.models.deposit import (
    DepositStatus,
    DepositTransaction,
    TransactionType,
    balance_effect,
)
from finledger.models.income import Income, IncomeUsage, UsageType
from finledger.models.rent import RentPayment
from finledger.repositories.deposit_repo import DepositRepository, DepositTransactionRepository
from finledger.repositories.expense_repo import MonthlyExpenseRepository
from finledger.repositories.income_repo import IncomeRepository, IncomeUsageRepository
from finledger.repositories.rent_repo import RentPaymentRepository, RentPropertyRepository
from finledger.schemas.ledger import (
    DepositDeletionResult,
    DepositTransactionCreate,
    DepositTransactionResult,
    DepositTransactionUpdate,
    InterestAccrualResult,
    RentPaymentCreate,
    RentPaymentResult,
    ReserveRequest,
    ReserveResult,
)
from finledger.services.base import LedgerBaseService, round_amount
from finledger.utils.dates import add_years, first_of_next_month

logger = logging.getLogger(__name__)

INTEREST_DESCRIPTION = "Automatic interest accrual"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class LedgerService(LedgerBaseService):
    def __init__(self, db, codec, use_transactions: Optional[bool] = None, epsilon: Optional[float] = None):
        super().__init__(db, codec, use_transactions=use_transactions, epsilon=epsilon)
        self.incomes = IncomeRepository(db, codec)
        self.usages = IncomeUsageRepository(db, codec)
        self.deposits = DepositRepository(db, codec)
        self.transactions = DepositTransactionRepository(db, codec)
        self.monthly_expenses = MonthlyExpenseRepository(db, codec)
        self.rent_properties = RentPropertyRepository(db, codec)
        self.rent_payments = RentPaymentRepository(db, codec)

    # ===== RESERVE =====

    async def reserve_income(self, owner_id, request: ReserveRequest) -> ReserveResult:
        """
        Move ``request.amount`` from an income into a deposit.

        Writes a deposit transaction and an income usage referencing it,
        debits the income, credits the deposit and, when a monthly expense is
        given, links it to the income and deposit that back it.
        """
        amount = round_amount(request.amount)
        if amount <= 0:
            raise InvalidInput("Amount must be positive")

        income = await self.incomes.get_owned(request.income_id, owner_id)
        deposit = await self.deposits.get_owned(request.deposit_id, owner_id)
        expense = None
        if request.monthly_expense_id is not None:
            expense = await self.monthly_expenses.get_owned(request.monthly_expense_id, owner_id)

        if deposit.status == DepositStatus.CLOSED:
            raise InvalidInput("Deposit is closed")
        income_changes = self.income_shift(income, amount)
        new_balance = self.next_balance(deposit.current_balance, amount)
        when = request.transaction_date or _now()
        description = request.description or f"Reserved from income: {income.source}"

        async with self.saga(
            owner_id, "reserve_income",
            income_id=str(income.id), deposit_id=str(deposit.id), amount=amount,
        ) as saga:
            tx = DepositTransaction(
                owner_id=income.owner_id,
                deposit_id=deposit.id,
                type=TransactionType.DEPOSIT,
                amount=amount,
                transaction_date=when,
                description=description,
                income_id=income.id,
                action_id=saga.action_id,
            )
            usage = IncomeUsage(
                owner_id=income.owner_id,
                income_id=income.id,
                used_amount=amount,
                usage_type=UsageType.DEPOSIT,
                deposit_transaction_id=tx.id,
                action_id=saga.action_id,
                description=description,
                usage_date=when,
            )

            await saga.step(
                "insert_deposit_transaction",
                lambda: self.transactions.insert(tx, session=saga.session),
                compensate=lambda _: self.transactions.delete(tx.id),
            )
            await saga.step(
                "insert_income_usage",
                lambda: self.usages.insert(usage, session=saga.session),
                compensate=lambda _: self.usages.delete(usage.id),
            )
            updated_income = await saga.step(
                "debit_income",
                lambda: self.incomes.update(income, income_changes, session=saga.session),
                compensate=lambda after: self.incomes.update(after, _income_amounts(income)),
            )
            updated_deposit = await saga.step(
                "credit_deposit",
                lambda: self.deposits.update(deposit, {"current_balance": new_balance}, session=saga.session),
                compensate=lambda after: self.deposits.update(after, {"current_balance": deposit.current_balance}),
            )
            updated_expense = None
            if expense is not None:
                updated_expense = await saga.step(
                    "link_monthly_expense",
                    lambda: self.monthly_expenses.update(
                        expense,
                        {"source_income_id": income.id, "storage_deposit_id": deposit.id},
                        session=saga.session,
                    ),
                    compensate=lambda after: self.monthly_expenses.update(
                        after,
                        {
                            "source_income_id": expense.source_income_id,
                            "storage_deposit_id": expense.storage_deposit_id,
                        },
                    ),
                )

        return ReserveResult(
            transaction=tx,
            deposit=updated_deposit,
            incomes=[updated_income],
            usage=usage,
            monthly_expense=updated_expense,
            action_id=saga.action_id,
        )

    # ===== DEPOSIT TRANSACTIONS =====

    async def create_deposit_transaction(self, owner_id, data: DepositTransactionCreate) -> DepositTransactionResult:
        """Apply a deposit, withdrawal or interest transaction to a deposit."""
        if data.type == TransactionType.DEPOSIT and data.income_id is not None:
            return await self.reserve_income(
                owner_id,
                ReserveRequest(
                    income_id=data.income_id,
                    deposit_id=data.deposit_id,
                    amount=data.amount,
                    description=data.description,
                    transaction_date=data.transaction_date,
                ),
            )
        if data.income_id is not None:
            raise InvalidInput("Only deposit transactions can draw from an income")

        amount = round_amount(data.amount)
        if amount <= 0:
            raise InvalidInput("Amount must be positive")

        deposit = await self.deposits.get_owned(data.deposit_id, owner_id)
        new_balance = self.next_balance(deposit.current_balance, balance_effect(data.type, amount))

        async with self.saga(
            owner_id, "create_deposit_transaction",
            deposit_id=str(deposit.id), type=str(data.type), amount=amount,
        ) as saga:
            tx = DepositTransaction(
                owner_id=deposit.owner_id,
                deposit_id=deposit.id,
                type=data.type,
                amount=amount,
                transaction_date=data.transaction_date or _now(),
                description=data.description,
                action_id=saga.action_id,
            )
            await saga.step(
                "insert_deposit_transaction",
                lambda: self.transactions.insert(tx, session=saga.session),
                compensate=lambda _: self.transactions.delete(tx.id),
            )
            updated_deposit = await saga.step(
                "update_deposit_balance",
                lambda: self.deposits.update(deposit, {"current_balance": new_balance}, session=saga.session),
            )

        return DepositTransactionResult(transaction=tx, deposit=updated_deposit, action_id=saga.action_id)

    async def update_deposit_transaction(
        self, owner_id, transaction_id, data: DepositTransactionUpdate
    ) -> DepositTransactionResult:
        """
        Replace a transaction's effect with a new one.

        The old effect is reversed and the new one applied in memory first:
        the old linked income gets its money back, the new linked income must
        have enough available, and the resulting balance must stay >= 0.
        Nothing is written unless all of that holds.
        """
        tx = await self.transactions.get_owned(transaction_id, owner_id)
        deposit = await self.deposits.get_owned(tx.deposit_id, owner_id)
        provided = data.model_fields_set

        new_type = data.type if data.type is not None else tx.type
        new_amount = round_amount(data.amount) if data.amount is not None else tx.amount
        new_income_id = data.income_id if "income_id" in provided else tx.income_id
        if new_type != TransactionType.DEPOSIT:
            if "income_id" in provided and data.income_id is not None:
                raise InvalidInput("Only deposit transactions can draw from an income")
            new_income_id = None
        old_income_id = tx.income_id if tx.type == TransactionType.DEPOSIT else None

        new_balance = self.next_balance(
            deposit.current_balance - tx.balance_effect(),
            balance_effect(new_type, new_amount),
        )

        # Net amount to move from available to used, per income
        shifts: Dict[str, float] = {}
        if old_income_id is not None:
            shifts[str(old_income_id)] = -tx.amount
        if new_income_id is not None:
            key = str(new_income_id)
            shifts[key] = round_amount(shifts.get(key, 0.0) + new_amount)
        missing_ok = set()
        if old_income_id is not None and old_income_id != new_income_id:
            missing_ok.add(str(old_income_id))
        adjustments = await self._plan_income_shifts(owner_id, shifts, missing_ok=missing_ok)

        old_usages = await self.usages.for_transactions([tx.id])
        tx_changes = {
            "type": new_type,
            "amount": new_amount,
            "income_id": new_income_id,
            "description": data.description if "description" in provided else tx.description,
            "transaction_date": data.transaction_date or tx.transaction_date,
        }

        async with self.saga(
            owner_id, "update_deposit_transaction",
            transaction_id=str(tx.id), deposit_id=str(deposit.id), amount=new_amount,
        ) as saga:
            updated_tx = await saga.step(
                "update_deposit_transaction",
                lambda: self.transactions.update(tx, {**tx_changes, "action_id": saga.action_id}, session=saga.session),
                compensate=lambda after: self.transactions.update(after, _transaction_fields(tx)),
            )
            if old_usages:
                await saga.step(
                    "remove_income_usages",
                    lambda: self.usages.delete_ids([usage.id for usage in old_usages], session=saga.session),
                    compensate=lambda _: self.usages.insert_many(old_usages),
                )
            incomes = await self._apply_income_shifts(saga, adjustments)
            if new_income_id is not None:
                usage = IncomeUsage(
                    owner_id=deposit.owner_id,
                    income_id=new_income_id,
                    used_amount=new_amount,
                    usage_type=UsageType.DEPOSIT,
                    deposit_transaction_id=tx.id,
                    action_id=saga.action_id,
                    description=tx_changes["description"],
                    usage_date=tx_changes["transaction_date"],
                )
                await saga.step(
                    "insert_income_usage",
                    lambda: self.usages.insert(usage, session=saga.session),
                    compensate=lambda _: self.usages.delete(usage.id),
                )
            updated_deposit = deposit
            if new_balance != deposit.current_balance:
                updated_deposit = await saga.step(
                    "update_deposit_balance",
                    lambda: self.deposits.update(deposit, {"current_balance": new_balance}, session=saga.session),
                )

        return DepositTransactionResult(
            transaction=updated_tx, deposit=updated_deposit, incomes=incomes, action_id=saga.action_id
        )

    async def delete_deposit_transaction(self, owner_id, transaction_id) -> DepositTransactionResult:
        """
        Remove a transaction and reverse its effect.

        Refuses with InsufficientFunds when removing a deposit or interest
        would take the balance below zero. A linked income gets its money back.
        """
        tx = await self.transactions.get_owned(transaction_id, owner_id)
        deposit = await self.deposits.get_owned(tx.deposit_id, owner_id)
        new_balance = self.next_balance(deposit.current_balance, -tx.balance_effect())

        shifts: Dict[str, float] = {}
        if tx.type == TransactionType.DEPOSIT and tx.income_id is not None:
            shifts[str(tx.income_id)] = -tx.amount
        adjustments = await self._plan_income_shifts(owner_id, shifts, missing_ok=set(shifts))
        old_usages = await self.usages.for_transactions([tx.id])

        async with self.saga(
            owner_id, "delete_deposit_transaction",
            transaction_id=str(tx.id), deposit_id=str(deposit.id),
        ) as saga:
            if old_usages:
                await saga.step(
                    "remove_income_usages",
                    lambda: self.usages.delete_ids([usage.id for usage in old_usages], session=saga.session),
                    compensate=lambda _: self.usages.insert_many(old_usages),
                )
            await saga.step(
                "delete_deposit_transaction",
                lambda: self.transactions.delete(tx.id, session=saga.session),
                compensate=lambda _: self.transactions.insert(tx),
            )
            incomes = await self._apply_income_shifts(saga, adjustments)
            updated_deposit = await saga.step(
                "update_deposit_balance",
                lambda: self.deposits.update(deposit, {"current_balance": new_balance}, session=saga.session),
            )

        return DepositTransactionResult(
            transaction=tx, deposit=updated_deposit, incomes=incomes, action_id=saga.action_id
        )

    # ===== DEPOSITS =====

    async def delete_deposit(self, owner_id, deposit_id) -> DepositDeletionResult:
        """Delete a deposit with its transactions and usages, restoring every funding income."""
        deposit = await self.deposits.get_owned(deposit_id, owner_id)
        transactions = await self.transactions.for_deposit(deposit.id)
        usages = await self.usages.for_transactions([tx.id for tx in transactions])

        shifts: Dict[str, float] = {}
        for tx in transactions:
            if tx.type == TransactionType.DEPOSIT and tx.income_id is not None:
                key = str(tx.income_id)
                shifts[key] = round_amount(shifts.get(key, 0.0) - tx.amount)
        adjustments = await self._plan_income_shifts(owner_id, shifts, missing_ok=set(shifts))

        async with self.saga(owner_id, "delete_deposit", deposit_id=str(deposit.id)) as saga:
            incomes = await self._apply_income_shifts(saga, adjustments)
            if usages:
                await saga.step(
                    "remove_income_usages",
                    lambda: self.usages.delete_ids([usage.id for usage in usages], session=saga.session),
                    compensate=lambda _: self.usages.insert_many(usages),
                )
            if transactions:
                await saga.step(
                    "delete_deposit_transactions",
                    lambda: self.transactions.delete_ids([tx.id for tx in transactions], session=saga.session),
                    compensate=lambda _: self.transactions.insert_many(transactions),
                )
            await saga.step(
                "delete_deposit",
                lambda: self.deposits.delete(deposit.id, session=saga.session),
                compensate=lambda _: self.deposits.insert(deposit),
            )

        logger.info(
            "Deposit deleted",
            extra={"deposit_id": str(deposit.id), "transactions": len(transactions), "incomes_restored": len(incomes)},
        )
        return DepositDeletionResult(
            deposit_id=deposit.id,
            deleted_transactions=len(transactions),
            deleted_usages=len(usages),
            restored_incomes=incomes,
        )

    async def accrue_deposit_interest(self, owner_id, today: Optional[datetime] = None) -> InterestAccrualResult:
        """
        Credit monthly interest on active deposits and apply maturity.

        Interest is credited on the first day of each month elapsed since the
        last accrual (never before the deposit was recorded, never past its
        end date) at rate / 12 / 100 of the running balance, rounded to cents.
        A deposit past its end date is renewed for a year when
        ``auto_renewal`` is set and marked matured otherwise.
        """
        today = as_utc(today) if today else _now()
        result = InterestAccrualResult()

        for deposit in await self.deposits.list_active(owner_id):
            balance = deposit.current_balance
            last = deposit.last_interest_accrued or max(deposit.start_date, deposit.created_at)
            limit = min(today, deposit.end_date)
            accruals: List[DepositTransaction] = []

            accrual_date = first_of_next_month(last)
            while accrual_date <= limit:
                interest = round_amount(balance * deposit.interest_rate / 12 / 100)
                if interest <= 0:
                    break
                accruals.append(
                    DepositTransaction(
                        owner_id=deposit.owner_id,
                        deposit_id=deposit.id,
                        type=TransactionType.INTEREST,
                        amount=interest,
                        transaction_date=accrual_date,
                        description=INTEREST_DESCRIPTION,
                    )
                )
                balance = round_amount(balance + interest)
                last = accrual_date
                accrual_date = first_of_next_month(accrual_date)

            changes = {}
            if accruals:
                changes["current_balance"] = balance
                changes["last_interest_accrued"] = last
            if deposit.end_date <= today:
                if deposit.auto_renewal:
                    changes["end_date"] = add_years(deposit.end_date, 1)
                    result.renewed.append(deposit.id)
                else:
                    changes["status"] = DepositStatus.MATURED.value
                    result.matured.append(deposit.id)
            if not changes:
                result.deposits.append(deposit)
                continue

            async with self.saga(
                owner_id, "accrue_deposit_interest",
                deposit_id=str(deposit.id), months=len(accruals),
            ) as saga:
                for tx in accruals:
                    tx.action_id = saga.action_id
                if accruals:
                    await saga.step(
                        "insert_interest_transactions",
                        lambda: self.transactions.insert_many(accruals, session=saga.session),
                        compensate=lambda _: self.transactions.delete_ids([tx.id for tx in accruals]),
                    )
                updated = await saga.step(
                    "update_deposit",
                    lambda: self.deposits.update(deposit, changes, session=saga.session),
                )
            result.deposits.append(updated)
            result.interest_transactions.extend(accruals)

        return result

    # ===== INCOMES =====

    async def update_income_amount(self, owner_id, income_id, amount: float) -> Income:
        """Change an income's amount; what is already used stays used."""
        amount = round_amount(amount)
        if amount <= 0:
            raise InvalidInput("Amount must be positive")
        income = await self.incomes.get_owned(income_id, owner_id)
        self.require_readable(income)

        available = round_amount(amount - income.used_amount)
        if available < -self.epsilon:
            raise BalanceExceeded(
                f"New amount {amount} is below the {income.used_amount} already used"
            )
        return await self.incomes.update(
            income, {"amount": amount, "available_amount": max(self.clamp(available), 0.0)}
        )

    # ===== RENT =====

    async def record_rent_payment(self, owner_id, data: RentPaymentCreate) -> RentPaymentResult:
        """Record a rent payment, drawing from an income when one is given."""
        amount = round_amount(data.amount)
        if amount <= 0:
            raise InvalidInput("Amount must be positive")
        rent_property = await self.rent_properties.get_owned(data.property_id, owner_id)

        income = None
        income_changes = None
        if data.income_id is not None:
            income = await self.incomes.get_owned(data.income_id, owner_id)
            income_changes = self.income_shift(income, amount)

        async with self.saga(
            owner_id, "record_rent_payment", property_id=str(rent_property.id), amount=amount
        ) as saga:
            payment = RentPayment(
                owner_id=rent_property.owner_id,
                property_id=rent_property.id,
                amount=amount,
                payment_date=data.payment_date or _now(),
                payment_type=data.payment_type,
                notes=data.notes,
                income_id=data.income_id,
                action_id=saga.action_id,
            )
            await saga.step(
                "insert_rent_payment",
                lambda: self.rent_payments.insert(payment, session=saga.session),
                compensate=lambda _: self.rent_payments.delete(payment.id),
            )
            if income is None:
                return RentPaymentResult(payment=payment)

            usage = IncomeUsage(
                owner_id=income.owner_id,
                income_id=income.id,
                used_amount=amount,
                usage_type=UsageType.OTHER,
                rent_payment_id=payment.id,
                action_id=saga.action_id,
                description=f"Rent payment: {rent_property.address}",
                usage_date=payment.payment_date,
            )
            await saga.step(
                "insert_income_usage",
                lambda: self.usages.insert(usage, session=saga.session),
                compensate=lambda _: self.usages.delete(usage.id),
            )
            updated_income = await saga.step(
                "debit_income",
                lambda: self.incomes.update(income, income_changes, session=saga.session),
            )

        return RentPaymentResult(payment=payment, income=updated_income, usage=usage)

    async def delete_rent_payment(self, owner_id, payment_id) -> Optional[Income]:
        """Delete a rent payment; the income it drew from gets the money back."""
        payment = await self.rent_payments.get_owned(payment_id, owner_id)
        usages = await self.usages.for_rent_payment(payment.id)

        shifts: Dict[str, float] = {}
        for usage in usages:
            key = str(usage.income_id)
            shifts[key] = round_amount(shifts.get(key, 0.0) - usage.used_amount)
        adjustments = await self._plan_income_shifts(owner_id, shifts, missing_ok=set(shifts))

        async with self.saga(owner_id, "delete_rent_payment", payment_id=str(payment.id)) as saga:
            if usages:
                await saga.step(
                    "remove_income_usages",
                    lambda: self.usages.delete_ids([usage.id for usage in usages], session=saga.session),
                    compensate=lambda _: self.usages.insert_many(usages),
                )
            await saga.step(
                "delete_rent_payment",
                lambda: self.rent_payments.delete(payment.id, session=saga.session),
                compensate=lambda _: self.rent_payments.insert(payment),
            )
            incomes = await self._apply_income_shifts(saga, adjustments)

        return incomes[0] if incomes else None

    # ===== HELPERS =====

    async def _plan_income_shifts(self, owner_id, shifts: Dict[str, float], missing_ok=frozenset()) -> list:
        """
        Load each income and compute its changes without writing anything.

        Incomes listed in ``missing_ok`` may have been deleted since; they are
        skipped. Any other missing income raises NotFound.
        """
        plan = []
        for income_id, shift in shifts.items():
            if abs(shift) <= self.epsilon:
                continue
            try:
                income = await self.incomes.get_owned(income_id, owner_id)
            except NotFound:
                if income_id in missing_ok:
                    logger.warning("Linked income no longer exists", extra={"income_id": income_id})
                    continue
                raise
            plan.append((income, self.income_shift(income, shift)))
        return plan

    async def _apply_income_shifts(self, saga, plan) -> List[Income]:
        updated = []
        for income, changes in plan:
            updated.append(await self._adjust_income(saga, income, changes))
        return updated

    async def _adjust_income(self, saga, income: Income, changes: dict) -> Income:
        return await saga.step(
            f"adjust_income:{income.id}",
            lambda: self.incomes.update(income, changes, session=saga.session),
            compensate=lambda after: self.incomes.update(after, _income_amounts(income)),
        )


def _income_amounts(income: Income) -> dict:
    return {"available_amount": income.available_amount, "used_amount": income.used_amount}


def _transaction_fields(tx: DepositTransaction) -> dict:
    return {
        "type": tx.type,
        "amount": tx.amount,
        "income_id": tx.income_id,
        "description": tx.description,
        "transaction_date": tx.transaction_date,
        "action_id": tx.action_id,
    }
