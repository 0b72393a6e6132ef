"""
Remote referral-code directory.

The directory maps referral codes to owning accounts across devices. The
ledger consults it only when a code is missing from the local store, and
the sync scheduler pushes account snapshots to it after local commits.
"""
import logging
from typing import Optional, Protocol

import httpx
from pydantic import ValidationError

from .errors import DirectoryUnavailableError
from .models import DirectoryAccountData, DirectoryEntry, DirectoryRecord

logger = logging.getLogger(__name__)


class CodeDirectory(Protocol):
    async def lookup(self, code: str) -> Optional[DirectoryEntry]:
        ...

    async def publish(self, record: DirectoryRecord) -> None:
        ...


class InMemoryDirectory:
    def __init__(self):
        self.records: dict[str, DirectoryRecord] = {}
        self.code_index: dict[str, str] = {}

    async def lookup(self, code: str) -> Optional[DirectoryEntry]:
        account_id = self.code_index.get(code)
        if account_id is None:
            return None
        record = self.records[account_id]
        return DirectoryEntry(
            id=record.id,
            data=DirectoryAccountData(
                referral_code=record.referral_code,
                credits=record.credits,
                created_at=record.created_at,
            ),
        )

    async def publish(self, record: DirectoryRecord) -> None:
        self.records[record.id] = record
        self.code_index[record.referral_code] = record.id

    async def aclose(self) -> None:
        return None


class HttpCodeDirectory:
    """Directory service reached over HTTP.

    GET  {base_url}/referral-codes/{code}  -> {"id": ..., "data": {...}} or 404
    PUT  {base_url}/accounts/{id}          <- account snapshot
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), headers=headers, timeout=timeout
        )

    async def lookup(self, code: str) -> Optional[DirectoryEntry]:
        try:
            response = await self.client.get(f"/referral-codes/{code}")
        except httpx.HTTPError as e:
            raise DirectoryUnavailableError(f"Directory lookup failed: {e}") from e

        if response.status_code == 404:
            return None
        if response.is_error:
            raise DirectoryUnavailableError(
                f"Directory lookup returned HTTP {response.status_code}"
            )

        try:
            return DirectoryEntry.model_validate(response.json())
        except (ValueError, ValidationError):
            logger.warning("Malformed directory entry for code %s", code)
            return None

    async def publish(self, record: DirectoryRecord) -> None:
        response = await self.client.put(
            f"/accounts/{record.id}", json=record.model_dump(mode="json")
        )
        response.raise_for_status()

    async def aclose(self) -> None:
        await self.client.aclose()
