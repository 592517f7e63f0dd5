from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from datetime import datetime, timezone
from contextlib import asynccontextmanager
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import OperationalError
import logging
from quickshare.api.routes import api_router
from quickshare.api.routes.transfers import limiter
from quickshare.core.config import settings
from quickshare.core.database import db_helper
from quickshare.core.exceptions import AppException, ConnectionUnavailableError
from quickshare.services.expiry_worker import ExpiryWorker

# Настройка логирования
logging.basicConfig(
    level=logging.INFO if settings.debug else logging.WARNING,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Контекстный менеджер для жизненного цикла приложения"""
    # Startup
    logger.info(f"🚀 Starting {settings.app_name} in {'DEBUG' if settings.debug else 'PRODUCTION'} mode")

    # Маскируем пароль в URL для логов
    masked_db_url = settings.db.DATABASE_URL
    db_password = settings.db.DB_PASSWORD.get_secret_value()
    if db_password:
        masked_db_url = masked_db_url.replace(db_password, "***")
    logger.info(f"📝 Database: {masked_db_url}")
    logger.info(f"⏳ Transfers expire after {settings.transfer.RETENTION_HOURS} hours")

    db_helper.init(
        url=settings.db.DATABASE_URL,
        echo=settings.db.DB_ECHO,
        pool_size=settings.db.DB_POOL_SIZE,
        max_overflow=settings.db.DB_MAX_OVERFLOW,
    )

    # Без базы сервис не запускается
    try:
        await db_helper.ping()
        logger.info("✅ Database connection successful")
    except Exception as e:
        logger.error(f"❌ Database connection failed: {e}")
        await db_helper.dispose()
        raise

    worker = None
    if settings.expiry.ENABLED:
        worker = ExpiryWorker(db_helper.session_factory)
        worker.start()
    app.state.expiry_worker = worker

    yield

    # Shutdown
    if worker is not None:
        await worker.stop()
    await db_helper.dispose()
    logger.info("👋 Application shutdown complete")

app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Настройка CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Подключение роутеров
app.include_router(api_router, prefix=settings.api_prefix)

@app.get("/", summary="Root endpoint", tags=["root"])
async def root():
    """Корневой эндпоинт API"""
    return {
        "message": f"Welcome to {settings.app_name} API",
        "docs": {
            "swagger": "/docs",
            "redoc": "/redoc"
        } if settings.debug else None,
        "environment": "development" if settings.debug else "production",
        "retention_hours": settings.transfer.RETENTION_HOURS,
        "timestamp": _timestamp()
    }

@app.get("/health", summary="Health check", tags=["health"])
async def health_check():
    """Проверка здоровья приложения"""
    try:
        db_value = await db_helper.ping()
        worker = getattr(app.state, "expiry_worker", None)

        return {
            "status": "healthy",
            "timestamp": _timestamp(),
            "environment": "development" if settings.debug else "production",
            "database": "connected",
            "database_ping": db_value,
            "expiry_worker": "running" if worker is not None and worker.running else "stopped",
            "app_name": settings.app_name,
        }
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return {
            "status": "unhealthy",
            "timestamp": _timestamp(),
            "database": "connection failed",
            "error": str(e) if settings.debug else "Database connection error"
        }

def _error_response(exc: AppException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.detail,
            "error": type(exc).__name__,
            "timestamp": _timestamp()
        }
    )

# Глобальный обработчик исключений
@app.exception_handler(AppException)
async def app_exception_handler(request, exc: AppException):
    """Глобальный обработчик кастомных исключений"""
    if exc.status_code >= 500:
        logger.error(f"AppException: {exc.detail} (type: {type(exc).__name__})")
    else:
        logger.info(f"AppException: {exc.detail} (type: {type(exc).__name__})")
    return _error_response(exc)

@app.exception_handler(OperationalError)
async def operational_error_handler(request, exc: OperationalError):
    """База недоступна во время запроса"""
    logger.error(f"Database unavailable: {exc}")
    return _error_response(ConnectionUnavailableError("Storage is temporarily unavailable"))

@app.exception_handler(Exception)
async def global_exception_handler(request, exc: Exception):
    """Глобальный обработчик всех исключений"""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "error": "InternalServerError",
            "timestamp": _timestamp(),
            "debug_info": str(exc) if settings.debug else None
        }
    )

# Обработчик для 404 ошибок
@app.exception_handler(404)
async def not_found_handler(request, exc):
    return JSONResponse(
        status_code=404,
        content={
            "detail": "Not Found",
            "error": "NotFoundError",
            "timestamp": _timestamp()
        }
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=5000,
        reload=settings.debug,
        log_level="info" if settings.debug else "warning",
        access_log=False  # Логи доступа лучше настраивать через Nginx или подобное
    )
