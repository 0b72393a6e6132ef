"""
Tests for the remote directory and the cross-device lookup fallback.
"""
from datetime import datetime, timezone

import httpx
import pytest

from referral_ledger.directory import HttpCodeDirectory, InMemoryDirectory
from referral_ledger.errors import DirectoryUnavailableError
from referral_ledger.models import DirectoryRecord, LedgerErrorCode
from referral_ledger.service import ReferralLedger
from referral_ledger.tables import AccountRecord

REMOTE_OWNER_ID = "remote-owner"
REMOTE_CODE = "555XYZ"


def _record(account_id: str = REMOTE_OWNER_ID, code: str = REMOTE_CODE, credits: int = 7) -> DirectoryRecord:
    return DirectoryRecord(
        id=account_id,
        referral_code=code,
        credits=credits,
        created_at=datetime(2025, 1, 2, tzinfo=timezone.utc),
    )


def _http_directory(handler) -> HttpCodeDirectory:
    client = httpx.AsyncClient(base_url="https://directory.test", transport=httpx.MockTransport(handler))
    return HttpCodeDirectory("https://directory.test", client=client)


class TestInMemoryDirectory:

    @pytest.mark.asyncio
    async def test_publish_then_lookup(self):
        directory = InMemoryDirectory()
        await directory.publish(_record())

        entry = await directory.lookup(REMOTE_CODE)

        assert entry.id == REMOTE_OWNER_ID
        assert entry.data.referral_code == REMOTE_CODE
        assert entry.data.credits == 7

    @pytest.mark.asyncio
    async def test_unknown_code(self):
        assert await InMemoryDirectory().lookup("000AAA") is None


class TestHttpCodeDirectory:

    @pytest.mark.asyncio
    async def test_lookup_found(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == f"/referral-codes/{REMOTE_CODE}"
            return httpx.Response(200, json={
                "id": REMOTE_OWNER_ID,
                "data": {"referral_code": REMOTE_CODE, "credits": 3, "created_at": "2025-01-02T00:00:00Z"},
            })

        entry = await _http_directory(handler).lookup(REMOTE_CODE)

        assert entry.id == REMOTE_OWNER_ID
        assert entry.data.credits == 3

    @pytest.mark.asyncio
    async def test_lookup_not_found(self):
        entry = await _http_directory(lambda request: httpx.Response(404)).lookup(REMOTE_CODE)

        assert entry is None

    @pytest.mark.asyncio
    async def test_lookup_server_error_raises(self):
        directory = _http_directory(lambda request: httpx.Response(503))

        with pytest.raises(DirectoryUnavailableError):
            await directory.lookup(REMOTE_CODE)

    @pytest.mark.asyncio
    async def test_lookup_transport_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("offline", request=request)

        with pytest.raises(DirectoryUnavailableError):
            await _http_directory(handler).lookup(REMOTE_CODE)

    @pytest.mark.asyncio
    async def test_lookup_malformed_payload(self):
        entry = await _http_directory(lambda request: httpx.Response(200, json={"unexpected": True})).lookup(REMOTE_CODE)

        assert entry is None

    @pytest.mark.asyncio
    async def test_publish_puts_snapshot(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = request.read()
            return httpx.Response(204)

        await _http_directory(handler).publish(_record())

        assert seen["method"] == "PUT"
        assert seen["path"] == f"/accounts/{REMOTE_OWNER_ID}"
        assert b'"referral_code":"555XYZ"' in seen["body"].replace(b" ", b"")

    @pytest.mark.asyncio
    async def test_publish_error_propagates(self):
        with pytest.raises(httpx.HTTPStatusError):
            await _http_directory(lambda request: httpx.Response(500)).publish(_record())


class TestRemoteOwnerFallback:
    """Codes unknown locally are resolved through the directory and cached."""

    @pytest.mark.asyncio
    async def test_redeem_remote_code_materializes_owner(self, ledger, store, directory):
        await directory.publish(_record())
        referee = await ledger.create_or_get_account("local-referee")

        result = await ledger.redeem_referral_code(referee.id, REMOTE_CODE)

        assert result.success is True
        async with store.session() as session:
            owner = await session.get(AccountRecord, REMOTE_OWNER_ID)
        assert owner.referral_code == REMOTE_CODE
        assert owner.credits == 7
        assert (await ledger.get_referral_stats(REMOTE_OWNER_ID)).current_progress == 1

    @pytest.mark.asyncio
    async def test_remote_self_referral_rejected(self, store, directory):
        """The directory names the referee as owner even though its local row has another code."""
        await directory.publish(_record())
        ledger = ReferralLedger(store, directory=directory)
        local = await ledger.create_or_get_account(REMOTE_OWNER_ID)
        assert local.referral_code != REMOTE_CODE

        result = await ledger.redeem_referral_code(REMOTE_OWNER_ID, REMOTE_CODE)

        assert result.success is False
        assert result.error == LedgerErrorCode.SELF_REFERRAL
        assert await ledger.get_credits(REMOTE_OWNER_ID) == 0

    @pytest.mark.asyncio
    async def test_remote_owner_conflicting_with_local_account(self, store, directory):
        """A directory owner that already exists locally under another code is not cached."""
        await directory.publish(_record())
        ledger = ReferralLedger(store, directory=directory)
        await ledger.create_or_get_account(REMOTE_OWNER_ID)
        referee = await ledger.create_or_get_account("local-referee")

        result = await ledger.redeem_referral_code(referee.id, REMOTE_CODE)

        assert result.success is False
        assert result.error == LedgerErrorCode.CODE_NOT_FOUND

    @pytest.mark.asyncio
    async def test_directory_outage_is_code_not_found(self, store):
        directory = _http_directory(lambda request: httpx.Response(503))
        ledger = ReferralLedger(store, directory=directory)
        referee = await ledger.create_or_get_account("local-referee")

        result = await ledger.redeem_referral_code(referee.id, REMOTE_CODE)

        assert result.success is False
        assert result.error == LedgerErrorCode.CODE_NOT_FOUND

    @pytest.mark.asyncio
    async def test_no_directory_configured(self, store):
        ledger = ReferralLedger(store)
        referee = await ledger.create_or_get_account("local-referee")

        result = await ledger.redeem_referral_code(referee.id, REMOTE_CODE)

        assert result.error == LedgerErrorCode.CODE_NOT_FOUND
