from contextlib import asynccontextmanager


@asynccontextmanager
async def ledger_session(db, use_transactions: bool):
    """
    Yield a session bound to a multi-document transaction, or None.

    With None every write goes straight to the collection and the caller is
    responsible for compensating on failure.
    """
    if not use_transactions:
        yield None
        return

    async with await db.client.start_session() as session:
        async with session.start_transaction():
            yield session
