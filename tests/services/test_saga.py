"""Tests for LedgerSaga: intent log, compensation and the transaction path."""
from unittest.mock import AsyncMock, MagicMock

import pytest
from bson import ObjectId

from finledger.core.exceptions import InsufficientFunds, PartialLedgerFailure
from finledger.models.ledger_action import ActionStatus
from finledger.repositories.ledger_action_repo import LedgerActionRepository
from finledger.services.saga import LedgerSaga


def _async_value(value=None):
    return AsyncMock(return_value=value)


@pytest.fixture
def actions(test_db):
    return LedgerActionRepository(test_db)


@pytest.mark.asyncio
class TestSagaWithoutTransactions:
    async def test_success_commits_and_records_steps(self, test_db, actions, owner_id):
        async with LedgerSaga(test_db, actions, owner_id, "demo", {"amount": 5.0}) as saga:
            first = await saga.step("first", _async_value("a"))
            await saga.step("second", _async_value("b"))

        assert first == "a"
        record = await actions.get(saga.action_id)
        assert record.status == ActionStatus.COMMITTED.value
        assert record.steps == ["first", "second"]
        assert record.payload == {"amount": 5.0}

    async def test_failure_before_any_step_reraises_and_aborts(self, test_db, actions, owner_id):
        with pytest.raises(InsufficientFunds):
            async with LedgerSaga(test_db, actions, owner_id, "demo") as saga:
                raise InsufficientFunds("not enough")

        record = await actions.get(saga.action_id)
        assert record.status == ActionStatus.ABORTED.value
        assert record.error == "not enough"

    async def test_mid_sequence_failure_compensates_in_reverse(self, test_db, actions, owner_id):
        undone = []

        async def undo_first(result):
            undone.append(("first", result))

        async def undo_second(result):
            undone.append(("second", result))

        with pytest.raises(PartialLedgerFailure) as exc_info:
            async with LedgerSaga(test_db, actions, owner_id, "demo") as saga:
                await saga.step("first", _async_value(1), compensate=undo_first)
                await saga.step("second", _async_value(2), compensate=undo_second)
                await saga.step("third", AsyncMock(side_effect=RuntimeError("write failed")))

        failure = exc_info.value
        assert undone == [("second", 2), ("first", 1)]
        assert failure.compensated is True
        assert failure.completed_steps == ["first", "second"]
        assert failure.action_id == str(saga.action_id)
        assert isinstance(failure.cause, RuntimeError)

        record = await actions.get(saga.action_id)
        assert record.status == ActionStatus.COMPENSATED.value

    async def test_failed_compensation_leaves_action_for_reconciliation(self, test_db, actions, owner_id):
        with pytest.raises(PartialLedgerFailure) as exc_info:
            async with LedgerSaga(test_db, actions, owner_id, "demo") as saga:
                await saga.step(
                    "first",
                    _async_value(1),
                    compensate=AsyncMock(side_effect=RuntimeError("undo failed")),
                )
                raise RuntimeError("second step failed")

        assert exc_info.value.compensated is False
        unfinished = await actions.unfinished(owner_id)
        assert [action.id for action in unfinished] == [saga.action_id]
        assert unfinished[0].status == ActionStatus.FAILED.value


def _transactional_db():
    """Mock database whose client hands out a session with a transaction."""
    transaction = MagicMock()
    transaction.__aenter__ = AsyncMock(return_value=None)
    transaction.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.start_transaction = MagicMock(return_value=transaction)

    session_cm = MagicMock()
    session_cm.__aenter__ = AsyncMock(return_value=session)
    session_cm.__aexit__ = AsyncMock(return_value=False)

    db = MagicMock()
    db.client.start_session = AsyncMock(return_value=session_cm)
    return db, session, transaction


@pytest.mark.asyncio
class TestSagaWithTransactions:
    async def test_steps_see_the_session_and_commit(self, actions):
        db, session, transaction = _transactional_db()

        async with LedgerSaga(db, actions, ObjectId(), "demo", use_transactions=True) as saga:
            assert saga.session is session
            await saga.step("only", _async_value())

        transaction.__aexit__.assert_awaited_once_with(None, None, None)
        record = await actions.get(saga.action_id)
        assert record.status == ActionStatus.COMMITTED.value

    async def test_failure_aborts_transaction_without_compensating(self, actions):
        db, _, transaction = _transactional_db()
        compensate = AsyncMock()

        with pytest.raises(RuntimeError, match="boom"):
            async with LedgerSaga(db, actions, ObjectId(), "demo", use_transactions=True) as saga:
                await saga.step("first", _async_value(), compensate=compensate)
                raise RuntimeError("boom")

        compensate.assert_not_awaited()
        exc_type = transaction.__aexit__.await_args.args[0]
        assert exc_type is RuntimeError
        record = await actions.get(saga.action_id)
        assert record.status == ActionStatus.ABORTED.value
