from pydantic_settings import BaseSettings
from pydantic import BaseModel, Field, SecretStr
from typing import List, Optional
from functools import lru_cache

class DataBaseConfig(BaseModel):
    DB_HOST: str = Field("localhost", description="Database host")
    DB_PORT: int = Field(5432, description="Database port")
    DB_NAME: str = Field("quick_share_db", description="Database name")
    DB_USER: str = Field("quickshare", description="Database user")
    DB_PASSWORD: SecretStr = Field(SecretStr(""), description="Database password")  # SecretStr скрывает значение в логах
    DB_ECHO: bool = Field(False, description="Enable SQL echo")
    DB_POOL_SIZE: int = Field(5, description="Database pool size")
    DB_MAX_OVERFLOW: int = Field(10, description="Database max overflow")
    # Полный URL имеет приоритет над отдельными полями (sqlite для локальной разработки и тестов)
    DB_URL: Optional[str] = Field(None, description="Full SQLAlchemy database URL override")

    @property
    def DATABASE_URL(self) -> str:
        if self.DB_URL:
            return self.DB_URL
        # SecretStr.get_secret_value() чтобы получить реальное значение
        return f"postgresql+asyncpg://{self.DB_USER}:{self.DB_PASSWORD.get_secret_value()}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    naming_convention: dict[str, str] = {
        "ix": "ix_%(column_0_label)s",
        "uq": "uq_%(table_name)s_%(column_0_N_name)s",
        "ck": "ck_%(table_name)s_%(constraint_name)s",
        "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
        "pk": "pk_%(table_name)s",
    }

class BlobConfig(BaseModel):
    # 255 KiB, как у GridFS
    CHUNK_SIZE: int = Field(255 * 1024, gt=0, description="Blob chunk size in bytes")

class TransferConfig(BaseModel):
    CODE_MAX_ATTEMPTS: int = Field(5, ge=1, description="Attempts to find a free transfer code")
    RETENTION_HOURS: int = Field(12, gt=0, description="Transfer lifetime in hours")

class ExpiryConfig(BaseModel):
    ENABLED: bool = Field(True, description="Run the background expiry worker")
    INTERVAL_SECONDS: float = Field(60, gt=0, description="Delay between expiry sweeps")
    BATCH_SIZE: int = Field(500, gt=0, description="Records removed per batch")
    DELETE_BLOBS: bool = Field(True, description="Delete blobs together with expired transfers")

class RateLimitConfig(BaseModel):
    ENABLED: bool = Field(True, description="Enable per-IP rate limiting")
    UPLOAD: str = Field("30/minute", description="Upload limit")
    RETRIEVE: str = Field("60/minute", description="Retrieve limit")
    DOWNLOAD: str = Field("120/minute", description="Download limit")

class Settings(BaseSettings):
    app_name: str = Field("QuickShare", description="Application name")
    debug: bool = Field(False, description="Debug mode")
    api_prefix: str = Field("/api", description="API routes prefix")
    cors_origins: List[str] = Field(
        default_factory=lambda: [
            "http://localhost:5173",
            "http://localhost:3000",
        ],
        description="CORS origins"
    )

    db: DataBaseConfig = Field(default_factory=DataBaseConfig)
    blob: BlobConfig = Field(default_factory=BlobConfig)
    transfer: TransferConfig = Field(default_factory=TransferConfig)
    expiry: ExpiryConfig = Field(default_factory=ExpiryConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)

    class Config:
        env_file = ".env"
        env_file_encoding = 'utf-8'
        case_sensitive = False
        env_nested_delimiter = '__'  # Для вложенных объектов

    @property
    def retention_seconds(self) -> int:
        return self.transfer.RETENTION_HOURS * 60 * 60

@lru_cache()
def get_settings() -> Settings:
    """Кэшированный экземпляр настроек"""
    return Settings()

settings = get_settings()
