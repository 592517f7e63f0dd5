"""
QuickShare - Test Configuration and Fixtures
"""
import os
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession
from faker import Faker

# Set testing environment
os.environ['RATE_LIMIT__ENABLED'] = 'false'
os.environ['EXPIRY__ENABLED'] = 'false'
os.environ['DEBUG'] = 'false'

from main import app
from quickshare.api.routes.transfers import limiter
from quickshare.core.database import DatabaseHelper, db_helper
from quickshare.models import Base
from quickshare.repositories.blob_store import BlobStore
from quickshare.repositories.transfer_repository import TransferRepository
from quickshare.services.transfer_service import TransferService

fake = Faker()

# Маленький чанк, чтобы даже короткие файлы резались на несколько частей
TEST_CHUNK_SIZE = 16


class FixedClock:
    """Управляемые часы для тестов срока хранения"""

    def __init__(self, now: datetime = None):
        self.now = now or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def shift(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class MemoryFile:
    """Минимальный асинхронный источник байтов, как UploadFile"""

    def __init__(self, data: bytes, fail_after: int = None):
        self.data = data
        self.position = 0
        self.fail_after = fail_after

    async def read(self, size: int = -1) -> bytes:
        if self.fail_after is not None and self.position >= self.fail_after:
            raise OSError("client disconnected")
        if size < 0:
            size = len(self.data) - self.position
        chunk = self.data[self.position:self.position + size]
        self.position += len(chunk)
        return chunk


@pytest.fixture(autouse=True)
def disable_rate_limits():
    limiter.enabled = False
    yield
    limiter.enabled = False


@pytest.fixture
async def database(tmp_path) -> AsyncGenerator[DatabaseHelper, None]:
    """Fresh SQLite database per test, wired into the global db_helper"""
    db_helper.init(url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with db_helper.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield db_helper

    await db_helper.dispose()


@pytest.fixture
async def db_session(database: DatabaseHelper) -> AsyncGenerator[AsyncSession, None]:
    async with database.session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def blob_store(database: DatabaseHelper, clock: FixedClock) -> BlobStore:
    return BlobStore(database.session_factory, chunk_size=TEST_CHUNK_SIZE, clock=clock)


@pytest.fixture
def make_file():
    return MemoryFile


@pytest.fixture
def transfer_service(db_session: AsyncSession, blob_store: BlobStore, clock: FixedClock) -> TransferService:
    return TransferService(TransferRepository(db_session), blob_store, clock=clock)


@pytest.fixture
async def client(database: DatabaseHelper) -> AsyncGenerator[AsyncClient, None]:
    """Test client against the app (lifespan is not run, the fixture owns the DB)"""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url='http://test') as ac:
        yield ac

    app.dependency_overrides.clear()
