import logging
from datetime import datetime
from typing import Iterable, List, Optional, Set
from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from quickshare.core.exceptions import DuplicateKeyError, StorageWriteFailedError
from quickshare.models.transfer import Transfer

logger = logging.getLogger(__name__)

class TransferRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def insert(self, transfer: Transfer) -> Transfer:
        """Сохранить передачу; код должен быть свободен"""
        self.session.add(transfer)
        try:
            await self.session.commit()
        except IntegrityError:
            # Единственное ограничение таблицы - первичный ключ по коду
            await self.session.rollback()
            raise DuplicateKeyError(transfer.code)
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Failed to insert transfer {transfer.code}: {e}")
            raise StorageWriteFailedError("Failed to save transfer metadata. Try uploading again.") from e
        return transfer

    async def get_by_code(self, code: str) -> Optional[Transfer]:
        """Получить передачу по коду (код уже в верхнем регистре)"""
        stmt = select(Transfer).where(Transfer.code == code)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_expired(self, cutoff: datetime, limit: int = 500) -> List[Transfer]:
        """Передачи, созданные раньше cutoff, от самых старых"""
        stmt = (
            select(Transfer)
            .where(Transfer.created_at < cutoff)
            .order_by(Transfer.created_at)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def delete_by_codes(self, codes: Iterable[str]) -> int:
        """Удалить передачи по списку кодов"""
        codes = list(codes)
        if not codes:
            return 0
        result = await self.session.execute(delete(Transfer).where(Transfer.code.in_(codes)))
        await self.session.commit()
        return result.rowcount

    async def referenced_blob_ids(self, blob_ids: Iterable[str]) -> Set[str]:
        """Какие из файлов ещё привязаны к живым передачам"""
        blob_ids = list(blob_ids)
        if not blob_ids:
            return set()
        stmt = select(Transfer.blob_id).where(Transfer.blob_id.in_(blob_ids))
        result = await self.session.execute(stmt)
        return set(result.scalars().all())
