import hashlib
import logging
import math
import uuid
from datetime import datetime
from typing import AsyncIterator, Callable, List, Optional
from sqlalchemy import select, insert, update, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from quickshare.core.config import settings
from quickshare.core.exceptions import (
    AppException,
    InvalidReferenceError,
    NotFoundError,
    StorageWriteFailedError,
    StreamClosedError,
)
from quickshare.core.utils import utc_now
from quickshare.models.blob import Blob, BlobChunk

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def parse_blob_id(raw: str) -> str:
    """Проверяет идентификатор файла и приводит его к виду 32 hex-символа"""
    try:
        return uuid.UUID(raw).hex
    except (TypeError, ValueError, AttributeError):
        raise InvalidReferenceError("Error: Invalid file ID format.") from None


class BlobUpload:
    """Поток записи одного файла.

    Чанки пишутся в одной транзакции, которая коммитится только в close(),
    поэтому оборванная загрузка не оставляет читаемого частичного файла.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        filename: Optional[str],
        content_type: Optional[str],
        chunk_size: int,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.blob_id = uuid.uuid4().hex
        self.filename = filename
        self.content_type = content_type
        self.chunk_size = chunk_size
        self._session_factory = session_factory
        self._clock = clock
        self._session: Optional[AsyncSession] = None
        self._buffer = bytearray()
        self._next_chunk = 0
        self._length = 0
        self._digest = hashlib.sha256()
        self._finished = False

    @property
    def length(self) -> int:
        return self._length

    async def __aenter__(self) -> "BlobUpload":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            if not self._finished:
                await self.close()
            return False

        await self.abort()
        if issubclass(exc_type, Exception) and not isinstance(exc, AppException):
            raise StorageWriteFailedError("Failed to upload file to storage.") from exc
        return False

    async def write(self, data: bytes) -> None:
        """Дописывает байты в конец файла"""
        if self._finished:
            raise StorageWriteFailedError("Upload stream is already closed")
        if not data:
            return

        try:
            await self._ensure_started()
            self._buffer.extend(data)
            self._length += len(data)
            self._digest.update(data)
            while len(self._buffer) >= self.chunk_size:
                await self._flush_chunk(bytes(self._buffer[:self.chunk_size]))
                del self._buffer[:self.chunk_size]
        except SQLAlchemyError as e:
            logger.error(f"Blob upload error for {self.blob_id}: {e}")
            await self.abort()
            raise StorageWriteFailedError("Failed to upload file to storage.") from e

    async def close(self) -> str:
        """Дописывает остаток, фиксирует файл и возвращает его идентификатор"""
        if self._finished:
            raise StorageWriteFailedError("Upload stream is already closed")

        try:
            await self._ensure_started()
            if self._buffer:
                await self._flush_chunk(bytes(self._buffer))
                self._buffer.clear()
            await self._session.execute(
                update(Blob)
                .where(Blob.id == self.blob_id)
                .values(length=self._length, sha256=self._digest.hexdigest())
            )
            await self._session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Blob finalize error for {self.blob_id}: {e}")
            await self.abort()
            raise StorageWriteFailedError("Failed to upload file to storage.") from e

        await self._release()
        self._finished = True
        logger.info(f"Stored blob {self.blob_id} ({self._length} bytes, {self._next_chunk} chunks)")
        return self.blob_id

    async def abort(self) -> None:
        """Отменяет загрузку, ничего не сохраняя"""
        if self._finished:
            return
        self._finished = True
        self._buffer.clear()
        if self._session is not None:
            try:
                await self._session.rollback()
            finally:
                await self._release()
        logger.warning(f"Blob upload {self.blob_id} aborted")

    async def _ensure_started(self) -> None:
        if self._session is not None:
            return
        self._session = self._session_factory()
        self._session.add(Blob(
            id=self.blob_id,
            filename=self.filename,
            content_type=self.content_type,
            length=0,
            chunk_size=self.chunk_size,
            uploaded_at=self._clock(),
        ))
        await self._session.flush()

    async def _flush_chunk(self, chunk: bytes) -> None:
        # Core insert, чтобы чанки не копились в identity map сессии
        await self._session.execute(
            insert(BlobChunk).values(blob_id=self.blob_id, n=self._next_chunk, data=chunk)
        )
        self._next_chunk += 1

    async def _release(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await session.close()


class BlobReadStream:
    """Поток чтения файла; метаданные доступны до первого байта"""

    def __init__(self, session: AsyncSession, blob: Blob):
        self._session: Optional[AsyncSession] = session
        self.blob_id = blob.id
        self.filename = blob.filename or "file"
        self.content_type = blob.content_type or DEFAULT_CONTENT_TYPE
        self.length = blob.length
        self.sha256 = blob.sha256
        self.chunk_count = math.ceil(blob.length / blob.chunk_size) if blob.length else 0

    @property
    def closed(self) -> bool:
        return self._session is None

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self.iter_chunks()

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        """Отдаёт чанки по порядку, по одному запросу на чанк"""
        if self._session is None:
            raise StreamClosedError(self.blob_id)
        try:
            for n in range(self.chunk_count):
                if self._session is None:
                    raise StreamClosedError(self.blob_id)
                result = await self._session.execute(
                    select(BlobChunk.data).where(BlobChunk.blob_id == self.blob_id, BlobChunk.n == n)
                )
                data = result.scalar_one_or_none()
                if data is None:
                    raise NotFoundError(f"Chunk {n} of file {self.blob_id} is missing")
                yield data
        except (SQLAlchemyError, NotFoundError, StreamClosedError) as e:
            logger.error(f"Download of blob {self.blob_id} interrupted: {e}")
            raise
        finally:
            await self.close()

    async def read(self) -> bytes:
        """Весь файл целиком (для тестов и маленьких файлов)"""
        return b"".join([chunk async for chunk in self.iter_chunks()])

    async def close(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await session.close()


class BlobStore:
    """Чанковое хранилище файлов поверх той же БД.

    Хранилище само открывает сессии: поток чтения живёт дольше запроса.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        chunk_size: int = settings.blob.CHUNK_SIZE,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.chunk_size = chunk_size
        self.clock = clock

    def open_write(self, filename: Optional[str], content_type: Optional[str]) -> BlobUpload:
        """Открыть поток записи нового файла"""
        return BlobUpload(
            self.session_factory,
            filename=filename,
            content_type=content_type,
            chunk_size=self.chunk_size,
            clock=self.clock,
        )

    async def open_read(self, blob_id: str) -> BlobReadStream:
        """Открыть поток чтения файла по идентификатору"""
        session = self.session_factory()
        try:
            blob = await session.get(Blob, blob_id)
        except BaseException:
            await session.close()
            raise
        if blob is None:
            await session.close()
            raise NotFoundError("File not found in storage.")
        return BlobReadStream(session, blob)

    async def delete(self, blob_id: str) -> bool:
        """Удалить файл вместе с чанками"""
        async with self.session_factory() as session:
            await session.execute(delete(BlobChunk).where(BlobChunk.blob_id == blob_id))
            result = await session.execute(delete(Blob).where(Blob.id == blob_id))
            await session.commit()
            return result.rowcount > 0

    async def list_stale(self, older_than: datetime, limit: int = 500) -> List[str]:
        """Идентификаторы файлов, загруженных раньше заданного момента"""
        async with self.session_factory() as session:
            stmt = (
                select(Blob.id)
                .where(Blob.uploaded_at < older_than)
                .order_by(Blob.uploaded_at)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())
