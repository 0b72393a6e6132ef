"""
Out-of-band account sync to the remote directory.

The ledger calls schedule() after a successful commit; it never awaits the
sync. A single worker task drains the queue:

1. wait for the first account id
2. wait the debounce window so bursts of changes go out as one batch
3. read each account's current snapshot and publish it, retrying with
   exponential backoff; give up after max_attempts and drop the item

Lost sync events are acceptable: the local ledger stays authoritative.
"""
import asyncio
import logging
from typing import Optional

from pydantic import BaseModel

from .database import LedgerStore
from .directory import CodeDirectory
from .models import DirectoryRecord
from .tables import AccountRecord

logger = logging.getLogger(__name__)


class SyncStatus(BaseModel):
    is_running: bool
    is_syncing: bool
    pending: int


class SyncScheduler:
    def __init__(
        self,
        store: LedgerStore,
        directory: CodeDirectory,
        debounce_seconds: float = 2.0,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        queue_size: int = 1000,
    ):
        self.store = store
        self.directory = directory
        self.debounce_seconds = debounce_seconds
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.queue_size = queue_size
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)
        self._worker: Optional[asyncio.Task] = None
        self._is_syncing = False
        self._lock = asyncio.Lock()

    def schedule(self, *account_ids: str) -> None:
        """Queue accounts for sync. Never blocks and never raises."""
        for account_id in account_ids:
            try:
                self._queue.put_nowait(account_id)
            except asyncio.QueueFull:
                logger.warning(
                    "Sync queue full, dropping account %s",
                    account_id,
                    extra={"account_id": account_id},
                )

    async def start(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        self._worker = asyncio.create_task(self._run(), name="directory-sync")
        logger.info("Directory sync worker started")

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("Directory sync worker stopped (%d pending)", self._queue.qsize())

    def reset(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()
        self._is_syncing = False

    def status(self) -> SyncStatus:
        return SyncStatus(
            is_running=self._worker is not None and not self._worker.done(),
            is_syncing=self._is_syncing,
            pending=self._queue.qsize(),
        )

    async def flush(self) -> int:
        """Sync everything pending right now. Returns the number of accounts published."""
        return await self._sync_batch(self._drain())

    async def _run(self) -> None:
        while True:
            first = await self._queue.get()
            if self.debounce_seconds > 0:
                await asyncio.sleep(self.debounce_seconds)
            try:
                await self._sync_batch([first, *self._drain()])
            except Exception:
                # The worker must outlive a bad batch (e.g. the store is briefly unavailable)
                logger.exception("Directory sync batch failed")

    def _drain(self) -> list[str]:
        account_ids = []
        while not self._queue.empty():
            account_ids.append(self._queue.get_nowait())
        return account_ids

    async def _sync_batch(self, account_ids: list[str]) -> int:
        # dict.fromkeys keeps first-seen order while de-duplicating
        unique_ids = list(dict.fromkeys(account_ids))
        if not unique_ids:
            return 0

        async with self._lock:
            self._is_syncing = True
            published = 0
            try:
                for account_id in unique_ids:
                    record = await self._snapshot(account_id)
                    if record is None:
                        continue
                    if await self._publish_with_retry(record):
                        published += 1
            finally:
                self._is_syncing = False

        logger.debug("Synced %d/%d accounts to directory", published, len(unique_ids))
        return published

    async def _snapshot(self, account_id: str) -> Optional[DirectoryRecord]:
        async with self.store.session() as session:
            account = await session.get(AccountRecord, account_id)
        if account is None:
            return None
        return DirectoryRecord.model_validate(account)

    async def _publish_with_retry(self, record: DirectoryRecord) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self.directory.publish(record)
                return True
            except Exception as e:
                logger.warning(
                    "Directory sync attempt %d/%d failed for %s: %s",
                    attempt,
                    self.max_attempts,
                    record.id,
                    str(e),
                    extra={"account_id": record.id},
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.backoff_seconds * 2 ** (attempt - 1))

        logger.error(
            "Directory sync dropped for %s after %d attempts",
            record.id,
            self.max_attempts,
            extra={"account_id": record.id},
        )
        return False
