import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, TypeVar
from sqlalchemy.exc import SQLAlchemyError
from quickshare.core.config import settings
from quickshare.core.exceptions import (
    CodeSpaceExhaustedError,
    DuplicateKeyError,
    NotFoundError,
    StorageWriteFailedError,
)
from quickshare.core.schemas.transfer import PurgeReport, TransferResponse
from quickshare.core.utils import utc_now
from quickshare.models.transfer import Transfer
from quickshare.repositories.blob_store import BlobReadStream, BlobStore, parse_blob_id
from quickshare.repositories.transfer_repository import TransferRepository
from quickshare.services.code_generator import generate_code, normalize_code

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def insert_with_retry(
    insert: Callable[[str], Awaitable[T]],
    make_code: Callable[[], str],
    max_attempts: int,
) -> T:
    """Вставка с новым кодом при каждой коллизии, не больше max_attempts попыток"""
    for attempt in range(1, max_attempts + 1):
        code = make_code()
        try:
            return await insert(code)
        except DuplicateKeyError:
            logger.warning(f"Transfer code collision on {code} (attempt {attempt}/{max_attempts})")
    raise CodeSpaceExhaustedError(max_attempts)


class TransferService:
    def __init__(
        self,
        records: TransferRepository,
        blobs: BlobStore,
        code_generator: Callable[[], str] = generate_code,
        max_attempts: int = settings.transfer.CODE_MAX_ATTEMPTS,
        retention_seconds: int = settings.retention_seconds,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.records = records
        self.blobs = blobs
        self.code_generator = code_generator
        self.max_attempts = max_attempts
        self.retention = timedelta(seconds=retention_seconds)
        self.clock = clock

    async def create_transfer(
        self,
        text: Optional[str] = "",
        file=None,
        filename: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> str:
        """Сохранить текст и (опционально) файл, вернуть код передачи.

        `file` - любой объект с асинхронным `read(size)`, например UploadFile.
        Код возвращается только после того, как файл и запись зафиксированы.
        """
        blob_id = None
        if file is not None:
            blob_id = await self._store_file(file, filename, content_type)
        else:
            filename = None

        async def insert(code: str) -> Transfer:
            return await self.records.insert(Transfer(
                code=code,
                text=text or "",
                blob_id=blob_id,
                filename=filename,
                created_at=self.clock(),
            ))

        try:
            transfer = await insert_with_retry(insert, self.code_generator, self.max_attempts)
        except (CodeSpaceExhaustedError, StorageWriteFailedError):
            if blob_id is not None:
                await self._discard_blob(blob_id)
            raise

        logger.info(f"Created transfer {transfer.code} (file: {'yes' if blob_id else 'no'})")
        return transfer.code

    async def fetch_transfer(self, raw_code: str) -> TransferResponse:
        """Текст и данные о файле по коду; сам файл не читается"""
        code = normalize_code(raw_code)
        transfer = await self.records.get_by_code(code)
        if transfer is None:
            raise NotFoundError("Error: Transfer ID not found.")

        return TransferResponse(
            text=transfer.text or "",
            filename=transfer.filename,
            file_id=transfer.blob_id,
        )

    async def open_download(self, raw_blob_id: str) -> BlobReadStream:
        """Открыть поток скачивания файла"""
        blob_id = parse_blob_id(raw_blob_id)
        return await self.blobs.open_read(blob_id)

    async def purge_expired(
        self,
        now: Optional[datetime] = None,
        batch_size: int = settings.expiry.BATCH_SIZE,
        delete_blobs: bool = settings.expiry.DELETE_BLOBS,
    ) -> PurgeReport:
        """Удалить передачи старше срока хранения и их файлы"""
        cutoff = (now or self.clock()) - self.retention
        report = PurgeReport()

        while True:
            expired = await self.records.list_expired(cutoff, limit=batch_size)
            if not expired:
                break

            # Сначала записи, потом файлы: живая запись не должна ссылаться на удалённый файл
            report.records_deleted += await self.records.delete_by_codes(t.code for t in expired)
            if delete_blobs:
                for blob_id in {t.blob_id for t in expired if t.blob_id}:
                    if await self.blobs.delete(blob_id):
                        report.blobs_deleted += 1

            if len(expired) < batch_size:
                break

        if delete_blobs:
            report.blobs_deleted += await self._purge_orphans(cutoff, batch_size)

        return report

    async def _purge_orphans(self, cutoff: datetime, batch_size: int) -> int:
        """Старые файлы без записи (после неудачной вставки или отключённого удаления)"""
        deleted = 0
        while True:
            stale = await self.blobs.list_stale(cutoff, limit=batch_size)
            referenced = await self.records.referenced_blob_ids(stale)
            removed = 0
            for blob_id in stale:
                if blob_id not in referenced and await self.blobs.delete(blob_id):
                    removed += 1
            deleted += removed
            # Страница целиком из занятых файлов: дальше они будут возвращаться снова
            if removed == 0 or len(stale) < batch_size:
                return deleted

    async def _store_file(self, file, filename: Optional[str], content_type: Optional[str]) -> str:
        async with self.blobs.open_write(filename, content_type) as upload:
            while True:
                chunk = await file.read(self.blobs.chunk_size)
                if not chunk:
                    break
                await upload.write(chunk)
            return await upload.close()

    async def _discard_blob(self, blob_id: str) -> None:
        try:
            await self.blobs.delete(blob_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to remove orphan blob {blob_id}: {e}")
