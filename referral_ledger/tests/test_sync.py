"""
Tests for the directory sync scheduler.
"""
import asyncio

import pytest

from referral_ledger.directory import InMemoryDirectory
from referral_ledger.service import ReferralLedger
from referral_ledger.sync import SyncScheduler


class FlakyDirectory(InMemoryDirectory):
    """Fails the first `failures` publishes, then behaves normally."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def publish(self, record):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConnectionError("directory offline")
        await super().publish(record)


class TestFlush:

    @pytest.mark.asyncio
    async def test_flush_publishes_current_snapshot(self, ledger, sync, directory):
        account = await ledger.create_or_get_account("alice")

        published = await sync.flush()

        assert published == 1
        assert directory.records["alice"].referral_code == account.referral_code
        assert directory.code_index[account.referral_code] == "alice"
        assert sync.status().pending == 0

    @pytest.mark.asyncio
    async def test_duplicate_ids_published_once(self, ledger, sync):
        await ledger.create_or_get_account("alice")
        sync.schedule("alice", "alice", "alice")

        assert await sync.flush() == 1

    @pytest.mark.asyncio
    async def test_unknown_account_is_skipped(self, sync, directory):
        sync.schedule("ghost")

        assert await sync.flush() == 0
        assert directory.records == {}

    @pytest.mark.asyncio
    async def test_snapshot_reflects_redemption(self, ledger, sync, directory, create_account, redeem_fresh):
        await create_account("owner", "123ABC")
        for _ in range(3):
            await redeem_fresh("123ABC")

        await sync.flush()

        assert directory.records["owner"].credits == 5
        assert directory.records["fresh-referee-1"].used_referral_code == "123ABC"

    @pytest.mark.asyncio
    async def test_nothing_pending(self, sync):
        assert await sync.flush() == 0


class TestRetry:

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, store, ledger):
        directory = FlakyDirectory(failures=2)
        sync = SyncScheduler(store, directory, debounce_seconds=0, max_attempts=3, backoff_seconds=0)
        await ledger.create_or_get_account("alice")
        sync.schedule("alice")

        assert await sync.flush() == 1
        assert directory.attempts == 3
        assert "alice" in directory.records

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, store, ledger):
        directory = FlakyDirectory(failures=10)
        sync = SyncScheduler(store, directory, debounce_seconds=0, max_attempts=3, backoff_seconds=0)
        await ledger.create_or_get_account("alice")
        sync.schedule("alice")

        assert await sync.flush() == 0
        assert directory.attempts == 3
        assert sync.status().pending == 0

    @pytest.mark.asyncio
    async def test_failed_sync_does_not_affect_ledger(self, store, create_account):
        """A directory outage never surfaces to the caller of a ledger operation."""
        directory = FlakyDirectory(failures=100)
        sync = SyncScheduler(store, directory, debounce_seconds=0, max_attempts=1, backoff_seconds=0)
        ledger = ReferralLedger(store, sync=sync)
        await create_account("owner", "123ABC")
        referee = await ledger.create_or_get_account("bob")

        result = await ledger.redeem_referral_code(referee.id, "123ABC")
        await sync.flush()

        assert result.success is True
        assert await ledger.get_credits("bob") == 1


class TestQueue:

    @pytest.mark.asyncio
    async def test_reset_clears_pending(self, sync):
        sync.schedule("a", "b", "c")
        assert sync.status().pending == 3

        sync.reset()

        assert sync.status().pending == 0
        assert sync.status().is_syncing is False

    @pytest.mark.asyncio
    async def test_full_queue_drops_without_raising(self, store, directory):
        sync = SyncScheduler(store, directory, queue_size=2)

        sync.schedule("a", "b", "c")

        assert sync.status().pending == 2


class TestWorker:

    @pytest.mark.asyncio
    async def test_worker_publishes_in_background(self, ledger, sync, directory):
        await sync.start()
        assert sync.status().is_running is True
        try:
            await ledger.create_or_get_account("alice")
            for _ in range(50):
                if "alice" in directory.records:
                    break
                await asyncio.sleep(0.02)
        finally:
            await sync.stop()

        assert "alice" in directory.records
        assert sync.status().is_running is False

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, sync):
        await sync.start()
        worker = sync._worker
        await sync.start()

        assert sync._worker is worker
        await sync.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self, sync):
        await sync.stop()

        assert sync.status().is_running is False
