"""
Tests for the store's read and write scopes.
"""
import pytest
from sqlalchemy import func, select

from referral_ledger.tables import AccountRecord


class TestLedgerStoreScopes:

    @pytest.mark.asyncio
    async def test_read_scope_not_blocked_by_open_write(self, store):
        """Reads see committed data while a write transaction holds the write lock."""
        async with store.transaction() as tx:
            tx.add(AccountRecord(id="pending", referral_code="123ABC", credits=0))
            await tx.flush()

            async with store.session() as session:
                visible = await session.scalar(select(func.count()).select_from(AccountRecord))

            assert visible == 0

        async with store.session() as session:
            assert await session.get(AccountRecord, "pending") is not None

    @pytest.mark.asyncio
    async def test_transaction_rolls_back_on_error(self, store):
        with pytest.raises(RuntimeError):
            async with store.transaction() as tx:
                tx.add(AccountRecord(id="doomed", referral_code="123ABC", credits=0))
                await tx.flush()
                raise RuntimeError("boom")

        async with store.session() as session:
            assert await session.get(AccountRecord, "doomed") is None
