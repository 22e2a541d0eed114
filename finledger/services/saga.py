"""
LedgerSaga - runs the steps of one multi-entity ledger action.

Protocol:
1. Caller validates every precondition before entering the saga
2. A "pending" ledger action is recorded (the intent log)
3. Each step runs and registers how to undo itself
4. On success the action is marked "committed"
5. On failure without a transaction, completed steps are undone in
   reverse order and PartialLedgerFailure is raised
6. With a transaction, the whole action is aborted by the database

Usage:
    async with LedgerSaga(db, actions, owner_id, "reserve_income") as saga:
        tx = await saga.step("insert_transaction", insert, compensate=delete)
"""

import logging
from contextlib import AsyncExitStack
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from finledger.core.exceptions import PartialLedgerFailure
from finledger.db.session import ledger_session
from finledger.models.ledger_action import ActionStatus
from finledger.repositories.ledger_action_repo import LedgerActionRepository

logger = logging.getLogger(__name__)

Compensation = Callable[[Any], Awaitable[Any]]


class LedgerSaga:
    def __init__(
        self,
        db,
        actions: LedgerActionRepository,
        owner_id,
        action: str,
        payload: Optional[Dict[str, Any]] = None,
        use_transactions: bool = False,
    ):
        self.db = db
        self.actions = actions
        self.owner_id = owner_id
        self.action = action
        self.payload = payload or {}
        self.use_transactions = use_transactions
        self.session = None
        self.record = None
        self._completed: List[Tuple[str, Any, Optional[Compensation]]] = []
        self._stack: Optional[AsyncExitStack] = None

    @property
    def action_id(self):
        return self.record.id if self.record is not None else None

    @property
    def completed_steps(self) -> List[str]:
        return [name for name, _, _ in self._completed]

    async def __aenter__(self) -> "LedgerSaga":
        self.record = await self.actions.start(self.owner_id, self.action, self.payload)
        self._stack = AsyncExitStack()
        try:
            self.session = await self._stack.enter_async_context(
                ledger_session(self.db, self.use_transactions)
            )
        except Exception as exc:
            await self.actions.finish(self.action_id, ActionStatus.ABORTED, str(exc))
            raise
        return self

    async def step(
        self,
        name: str,
        apply: Callable[[], Awaitable[Any]],
        compensate: Optional[Compensation] = None,
    ) -> Any:
        """Run one step; ``compensate`` receives the step's result when undoing it."""
        result = await apply()
        self._completed.append((name, result, compensate))
        await self.actions.add_step(self.action_id, name)
        return result

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc is None:
            try:
                await self._stack.__aexit__(None, None, None)
            except Exception as commit_exc:
                # Commit failed: the transaction applied nothing
                await self.actions.finish(self.action_id, ActionStatus.ABORTED, str(commit_exc))
                raise
            await self.actions.finish(self.action_id, ActionStatus.COMMITTED)
            logger.info(
                "Ledger action committed",
                extra={"action": self.action, "action_id": str(self.action_id), "steps": self.completed_steps},
            )
            return False

        # Aborts the transaction when there is one
        await self._stack.__aexit__(exc_type, exc, tb)

        if self.session is not None or not self._completed:
            await self.actions.finish(self.action_id, ActionStatus.ABORTED, str(exc))
            logger.info(
                "Ledger action aborted",
                extra={"action": self.action, "action_id": str(self.action_id), "error": str(exc)},
            )
            return False

        compensated = await self._compensate()
        status = ActionStatus.COMPENSATED if compensated else ActionStatus.FAILED
        await self.actions.finish(self.action_id, status, str(exc))
        logger.error(
            "Ledger action failed mid-sequence",
            extra={
                "action": self.action,
                "action_id": str(self.action_id),
                "steps": self.completed_steps,
                "compensated": compensated,
                "error": str(exc),
            },
        )
        raise PartialLedgerFailure(
            self.action,
            str(self.action_id),
            self.completed_steps,
            compensated,
            exc,
        ) from exc

    async def _compensate(self) -> bool:
        compensated = True
        for name, result, compensate in reversed(self._completed):
            if compensate is None:
                continue
            try:
                await compensate(result)
            except Exception:
                compensated = False
                logger.exception(
                    "Compensation failed",
                    extra={"action": self.action, "action_id": str(self.action_id), "step": name},
                )
        return compensated
