"""
Test configuration and fixtures.
Each test gets a fresh file-backed SQLite ledger under tmp_path (file-backed so
concurrent sessions really use separate connections). The remote directory is
in-memory and sync runs without debounce or backoff.
"""
import pytest

from referral_ledger.database import LedgerStore
from referral_ledger.directory import InMemoryDirectory
from referral_ledger.service import ReferralLedger
from referral_ledger.sync import SyncScheduler


@pytest.fixture
async def store(tmp_path):
    store = LedgerStore(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await store.create_all()
    yield store
    await store.dispose()


@pytest.fixture
def directory():
    return InMemoryDirectory()


@pytest.fixture
def sync(store, directory):
    return SyncScheduler(store, directory, debounce_seconds=0, backoff_seconds=0)


@pytest.fixture
def ledger(store, directory, sync):
    return ReferralLedger(store, directory=directory, sync=sync)


@pytest.fixture
def create_account(store):
    """Create an account that owns a chosen referral code."""

    async def _create(account_id: str, code: str):
        pinned = ReferralLedger(store, code_factory=lambda: code)
        return await pinned.create_or_get_account(account_id)

    return _create


@pytest.fixture
def redeem_fresh(ledger):
    """Create a brand-new referee and redeem `code` with it."""
    counter = {"n": 0}

    async def _redeem(code: str):
        counter["n"] += 1
        referee = await ledger.create_or_get_account(f"fresh-referee-{counter['n']}")
        return await ledger.redeem_referral_code(referee.id, code)

    return _redeem
