import asyncio
import logging
from datetime import datetime
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from quickshare.core.config import settings
from quickshare.core.schemas.transfer import PurgeReport
from quickshare.repositories.blob_store import BlobStore
from quickshare.repositories.transfer_repository import TransferRepository
from quickshare.services.transfer_service import TransferService

logger = logging.getLogger(__name__)

class ExpiryWorker:
    """Фоновое удаление просроченных передач (аналог TTL-индекса)"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        interval_seconds: float = settings.expiry.INTERVAL_SECONDS,
        batch_size: int = settings.expiry.BATCH_SIZE,
        delete_blobs: bool = settings.expiry.DELETE_BLOBS,
        blob_store: Optional[BlobStore] = None,
    ):
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.delete_blobs = delete_blobs
        self.blob_store = blob_store or BlobStore(session_factory)
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self, now: Optional[datetime] = None) -> PurgeReport:
        """Один проход очистки"""
        async with self.session_factory() as session:
            service = TransferService(TransferRepository(session), self.blob_store)
            report = await service.purge_expired(
                now=now,
                batch_size=self.batch_size,
                delete_blobs=self.delete_blobs,
            )

        if report.records_deleted or report.blobs_deleted:
            logger.info(
                f"🧹 Expired {report.records_deleted} transfers, removed {report.blobs_deleted} blobs"
            )
        return report

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"⏱️ Expiry worker started (every {self.interval_seconds}s)")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Expiry worker stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                # Ошибка одного прохода не должна останавливать очистку
                logger.exception("Expiry sweep failed")
            await asyncio.sleep(self.interval_seconds)
