from fastapi import APIRouter
from .transfers import router as transfers_router


api_router = APIRouter()

api_router.include_router(transfers_router)
