# quickshare/api/routes/transfers.py
from typing import Optional
from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession
from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.background import BackgroundTask
from quickshare.core.config import settings
from quickshare.core.database import db_helper
from quickshare.core.schemas.transfer import TransferResponse, UploadResponse
from quickshare.core.utils import content_disposition
from quickshare.repositories.blob_store import BlobStore
from quickshare.repositories.transfer_repository import TransferRepository
from quickshare.services.transfer_service import TransferService
import logging

# Настройка логгера
logger = logging.getLogger(__name__)

# Лимиты по IP: защищают в том числе от перебора 6-символьных кодов
limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit.ENABLED)

router = APIRouter(tags=["transfers"])


async def get_transfer_service(
    session: AsyncSession = Depends(db_helper.session_getter)
) -> TransferService:
    return TransferService(TransferRepository(session), BlobStore(db_helper.session_factory))


@router.post("/upload", response_model=UploadResponse)
@limiter.limit(settings.rate_limit.UPLOAD)
async def upload_transfer(
    request: Request,
    text: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
    service: TransferService = Depends(get_transfer_service),
):
    """Принимает текст и/или файл, возвращает короткий код"""
    # Пустое поле файла из браузерной формы
    if file is not None and not file.filename:
        file = None

    code = await service.create_transfer(
        text=text or "",
        file=file,
        filename=file.filename if file else None,
        content_type=file.content_type if file else None,
    )
    return UploadResponse(uniqueId=code)


@router.get("/retrieve/{transfer_id}", response_model=TransferResponse)
@limiter.limit(settings.rate_limit.RETRIEVE)
async def retrieve_transfer(
    request: Request,
    transfer_id: str,
    service: TransferService = Depends(get_transfer_service),
):
    """Текст и ссылка на файл по коду (регистр не важен)"""
    return await service.fetch_transfer(transfer_id)


@router.get("/download/{file_id}")
@limiter.limit(settings.rate_limit.DOWNLOAD)
async def download_file(
    request: Request,
    file_id: str,
    service: TransferService = Depends(get_transfer_service),
):
    """Отдаёт файл потоком из хранилища"""
    stream = await service.open_download(file_id)
    logger.info(f"Download of blob {stream.blob_id} ({stream.length} bytes) started")

    return StreamingResponse(
        stream.iter_chunks(),
        headers={
            # Content-Type задаём сами, иначе starlette допишет charset к text/*
            "Content-Type": stream.content_type,
            "Content-Disposition": content_disposition(stream.filename),
            "Content-Length": str(stream.length),
        },
        # Закрывает сессию, даже если тело так и не начали читать
        background=BackgroundTask(stream.close),
    )
