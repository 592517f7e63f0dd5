"""
Tests for the transfer record store and the transfer service
"""
import asyncio
import itertools
import re
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from faker import Faker
from sqlalchemy import func, select

from quickshare.core.exceptions import (
    CodeSpaceExhaustedError,
    DuplicateKeyError,
    InvalidReferenceError,
    NotFoundError,
    StorageWriteFailedError,
)
from quickshare.models import Blob, Transfer
from quickshare.repositories.blob_store import BlobStore
from quickshare.repositories.transfer_repository import TransferRepository
from quickshare.services.transfer_service import TransferService, insert_with_retry

fake = Faker()

CODE_RE = re.compile(r"^[0-9A-F]{6}$")


def _transfer(code: str, created_at: datetime = None, blob_id: str = None) -> Transfer:
    return Transfer(
        code=code,
        text="",
        blob_id=blob_id,
        filename=None,
        created_at=created_at or datetime.now(timezone.utc),
    )


def _sequence(*codes):
    iterator = iter(codes)
    return lambda: next(iterator)


async def _count(session, model) -> int:
    return (await session.execute(select(func.count()).select_from(model))).scalar()


class TestTransferRepository:
    """Record store behaviour"""

    @pytest.mark.asyncio
    async def test_insert_and_get(self, db_session):
        repo = TransferRepository(db_session)
        await repo.insert(_transfer("ABC123"))

        found = await repo.get_by_code("ABC123")
        assert found is not None
        assert found.code == "ABC123"
        assert await repo.get_by_code("abc123") is None

    @pytest.mark.asyncio
    async def test_duplicate_code_rejected(self, database):
        async with database.session_factory() as first:
            await TransferRepository(first).insert(_transfer("ABC123"))

        async with database.session_factory() as second:
            repo = TransferRepository(second)
            with pytest.raises(DuplicateKeyError) as exc_info:
                await repo.insert(_transfer("ABC123"))
            assert exc_info.value.code == "ABC123"

            # Session stays usable after the rollback
            await repo.insert(_transfer("ABC124"))
            assert await _count(second, Transfer) == 2

    @pytest.mark.asyncio
    async def test_list_expired_and_delete(self, db_session):
        now = datetime.now(timezone.utc)
        repo = TransferRepository(db_session)
        await repo.insert(_transfer("000001", created_at=now - timedelta(hours=20)))
        await repo.insert(_transfer("000002", created_at=now - timedelta(hours=13)))
        await repo.insert(_transfer("000003", created_at=now - timedelta(hours=1)))

        expired = await repo.list_expired(now - timedelta(hours=12))
        assert [t.code for t in expired] == ["000001", "000002"]

        assert await repo.delete_by_codes(t.code for t in expired) == 2
        assert await repo.delete_by_codes([]) == 0
        assert await _count(db_session, Transfer) == 1

    @pytest.mark.asyncio
    async def test_referenced_blob_ids(self, db_session):
        repo = TransferRepository(db_session)
        await repo.insert(_transfer("000001", blob_id="a" * 32))

        assert await repo.referenced_blob_ids(["a" * 32, "b" * 32]) == {"a" * 32}
        assert await repo.referenced_blob_ids([]) == set()


class TestInsertWithRetry:
    """Bounded retry around insert"""

    @pytest.mark.asyncio
    async def test_retries_until_free_code(self):
        taken = {"AAAAAA", "BBBBBB"}

        async def insert(code):
            if code in taken:
                raise DuplicateKeyError(code)
            return code

        result = await insert_with_retry(insert, _sequence("AAAAAA", "BBBBBB", "CCCCCC"), max_attempts=3)
        assert result == "CCCCCC"

    @pytest.mark.asyncio
    async def test_exhaustion_is_typed(self):
        calls = []

        async def insert(code):
            calls.append(code)
            raise DuplicateKeyError(code)

        with pytest.raises(CodeSpaceExhaustedError) as exc_info:
            await insert_with_retry(insert, lambda: "AAAAAA", max_attempts=4)
        assert len(calls) == 4
        assert exc_info.value.attempts == 4
        assert exc_info.value.status_code == 500


class TestCreateAndFetch:
    """create_transfer / fetch_transfer / open_download"""

    @pytest.mark.asyncio
    async def test_text_only_round_trip(self, transfer_service: TransferService):
        text = fake.paragraph()
        code = await transfer_service.create_transfer(text=text)

        assert CODE_RE.match(code)
        result = await transfer_service.fetch_transfer(code)
        assert result.text == text
        assert result.filename is None
        assert result.file_id is None

    @pytest.mark.asyncio
    async def test_empty_transfer_is_allowed(self, transfer_service: TransferService):
        code = await transfer_service.create_transfer(text=None)

        result = await transfer_service.fetch_transfer(code)
        assert result.text == ""
        assert result.file_id is None

    @pytest.mark.asyncio
    async def test_file_round_trip(self, transfer_service: TransferService, make_file):
        data = b"world" * 20
        code = await transfer_service.create_transfer(
            text="hello", file=make_file(data), filename="a.txt", content_type="text/plain"
        )

        result = await transfer_service.fetch_transfer(code)
        assert result.text == "hello"
        assert result.filename == "a.txt"
        assert result.file_id is not None

        stream = await transfer_service.open_download(result.file_id)
        assert stream.filename == "a.txt"
        assert stream.content_type == "text/plain"
        assert await stream.read() == data

    @pytest.mark.asyncio
    async def test_lowercase_code_finds_same_record(self, transfer_service: TransferService):
        code = await transfer_service.create_transfer(text="case")

        upper = await transfer_service.fetch_transfer(code)
        lower = await transfer_service.fetch_transfer(code.lower())
        assert upper == lower

    @pytest.mark.asyncio
    async def test_unknown_code(self, transfer_service: TransferService):
        with pytest.raises(NotFoundError):
            await transfer_service.fetch_transfer("ABCDEF")

    @pytest.mark.asyncio
    async def test_malformed_code(self, transfer_service: TransferService):
        with pytest.raises(InvalidReferenceError):
            await transfer_service.fetch_transfer("not-a-code")

    @pytest.mark.asyncio
    async def test_malformed_blob_id_skips_lookup(self, db_session, clock):
        class ExplodingStore(BlobStore):
            async def open_read(self, blob_id):
                raise AssertionError("lookup must not happen")

        service = TransferService(TransferRepository(db_session), ExplodingStore(None), clock=clock)
        with pytest.raises(InvalidReferenceError):
            await service.open_download("../../etc/passwd")

    @pytest.mark.asyncio
    async def test_missing_blob(self, transfer_service: TransferService):
        with pytest.raises(NotFoundError):
            await transfer_service.open_download(uuid.uuid4().hex)

    @pytest.mark.asyncio
    async def test_created_at_comes_from_clock(self, transfer_service: TransferService, db_session, clock):
        code = await transfer_service.create_transfer(text="t")

        transfer = await TransferRepository(db_session).get_by_code(code)
        assert transfer.created_at.replace(tzinfo=timezone.utc) == clock.now


class TestCollisions:
    """Code collisions are retried and never surfaced"""

    @pytest.mark.asyncio
    async def test_collision_gets_new_code(self, database, blob_store, clock):
        async with database.session_factory() as session:
            await TransferRepository(session).insert(_transfer("AAAAAA"))

        async with database.session_factory() as session:
            service = TransferService(
                TransferRepository(session), blob_store,
                code_generator=_sequence("AAAAAA", "BBBBBB"), clock=clock,
            )
            code = await service.create_transfer(text="second")

        assert code == "BBBBBB"

    @pytest.mark.asyncio
    async def test_exhaustion_removes_uploaded_blob(self, database, blob_store, clock, make_file):
        async with database.session_factory() as session:
            await TransferRepository(session).insert(_transfer("AAAAAA"))

        async with database.session_factory() as session:
            service = TransferService(
                TransferRepository(session), blob_store,
                code_generator=lambda: "AAAAAA", max_attempts=3, clock=clock,
            )
            with pytest.raises(CodeSpaceExhaustedError):
                await service.create_transfer(text="x", file=make_file(b"payload"), filename="p.bin")

            assert await _count(session, Transfer) == 1
            assert await _count(session, Blob) == 0

    @pytest.mark.asyncio
    async def test_concurrent_creates_get_distinct_codes(self, database, blob_store):
        async def create(i):
            async with database.session_factory() as session:
                service = TransferService(TransferRepository(session), blob_store)
                return await service.create_transfer(text=f"transfer {i}")

        codes = await asyncio.gather(*(create(i) for i in range(10)))
        assert len(set(codes)) == 10

    @pytest.mark.asyncio
    async def test_concurrent_collisions_resolve(self, database, blob_store):
        # The first draws all hit the same code; the primary key decides who keeps it
        counter = itertools.count()

        def generator():
            n = next(counter)
            return "AAAAAA" if n < 5 else f"{n:06X}"

        async def create(i):
            async with database.session_factory() as session:
                service = TransferService(TransferRepository(session), blob_store, code_generator=generator)
                return await service.create_transfer(text=f"transfer {i}")

        codes = await asyncio.gather(*(create(i) for i in range(5)))
        assert len(set(codes)) == 5
        assert "AAAAAA" in codes


class TestFailedCreate:
    """Storage failures abort the transfer"""

    @pytest.mark.asyncio
    async def test_file_read_error(self, transfer_service: TransferService, db_session, make_file):
        with pytest.raises(StorageWriteFailedError):
            await transfer_service.create_transfer(
                text="x", file=make_file(b"0123456789" * 10, fail_after=32), filename="f.bin"
            )

        assert await _count(db_session, Transfer) == 0
        assert await _count(db_session, Blob) == 0

    @pytest.mark.asyncio
    async def test_record_failure_removes_blob(self, database, blob_store, clock, make_file):
        class BrokenRepository(TransferRepository):
            async def insert(self, transfer):
                raise StorageWriteFailedError()

        async with database.session_factory() as session:
            service = TransferService(BrokenRepository(session), blob_store, clock=clock)
            with pytest.raises(StorageWriteFailedError):
                await service.create_transfer(text="x", file=make_file(b"data"), filename="d.bin")

            assert await _count(session, Blob) == 0


class TestPurgeExpired:
    """Retention window enforcement"""

    @pytest.mark.asyncio
    async def test_expired_transfer_and_blob_removed(self, transfer_service: TransferService, clock, make_file):
        old_code = await transfer_service.create_transfer(text="old", file=make_file(b"old data"), filename="o.txt")
        old_blob = (await transfer_service.fetch_transfer(old_code)).file_id

        clock.shift(hours=11)
        fresh_code = await transfer_service.create_transfer(text="fresh")

        clock.shift(hours=2)
        report = await transfer_service.purge_expired()

        assert report.records_deleted == 1
        assert report.blobs_deleted == 1
        with pytest.raises(NotFoundError):
            await transfer_service.fetch_transfer(old_code)
        with pytest.raises(NotFoundError):
            await transfer_service.open_download(old_blob)
        assert (await transfer_service.fetch_transfer(fresh_code)).text == "fresh"

    @pytest.mark.asyncio
    async def test_nothing_to_purge(self, transfer_service: TransferService):
        await transfer_service.create_transfer(text="fresh")

        report = await transfer_service.purge_expired()
        assert report.records_deleted == 0
        assert report.blobs_deleted == 0

    @pytest.mark.asyncio
    async def test_purge_in_batches(self, transfer_service: TransferService, clock):
        for _ in range(7):
            await transfer_service.create_transfer(text="batch")

        clock.shift(hours=13)
        report = await transfer_service.purge_expired(batch_size=3)
        assert report.records_deleted == 7

    @pytest.mark.asyncio
    async def test_keep_blobs_when_disabled(self, transfer_service: TransferService, clock, make_file):
        code = await transfer_service.create_transfer(text="x", file=make_file(b"kept"), filename="k.txt")
        blob_id = (await transfer_service.fetch_transfer(code)).file_id

        clock.shift(hours=13)
        report = await transfer_service.purge_expired(delete_blobs=False)

        assert report.records_deleted == 1
        assert report.blobs_deleted == 0
        stream = await transfer_service.open_download(blob_id)
        assert await stream.read() == b"kept"

    @pytest.mark.asyncio
    async def test_stale_orphan_blobs_swept(self, database, transfer_service: TransferService, clock):
        old_store = BlobStore(database.session_factory, chunk_size=16, clock=lambda: clock.now - timedelta(hours=13))
        async with old_store.open_write("orphan.bin", None) as upload:
            await upload.write(b"nobody owns me")
        fresh_orphan = transfer_service.blobs.open_write("new.bin", None)
        await fresh_orphan.write(b"too young")
        await fresh_orphan.close()

        report = await transfer_service.purge_expired()

        assert report.blobs_deleted == 1
        with pytest.raises(NotFoundError):
            await transfer_service.open_download(upload.blob_id)
        stream = await transfer_service.open_download(fresh_orphan.blob_id)
        await stream.close()

    @pytest.mark.asyncio
    async def test_orphan_backlog_drained_in_batches(self, database, transfer_service: TransferService, clock):
        old_store = BlobStore(database.session_factory, chunk_size=16, clock=lambda: clock.now - timedelta(hours=13))
        for i in range(5):
            async with old_store.open_write(f"orphan-{i}.bin", None) as upload:
                await upload.write(b"left behind")

        report = await transfer_service.purge_expired(batch_size=2)

        assert report.blobs_deleted == 5
        assert await old_store.list_stale(clock.now) == []

    @pytest.mark.asyncio
    async def test_referenced_stale_blob_stops_sweep(self, database, transfer_service: TransferService, clock, make_file):
        # Файл загружен давно, но запись ещё живая: его не трогаем и не зацикливаемся
        transfer_service.blobs.clock = lambda: clock.now - timedelta(hours=13)
        code = await transfer_service.create_transfer(text="x", file=make_file(b"still mine"), filename="m.txt")
        blob_id = (await transfer_service.fetch_transfer(code)).file_id

        report = await transfer_service.purge_expired(batch_size=1)

        assert report.records_deleted == 0
        assert report.blobs_deleted == 0
        stream = await transfer_service.open_download(blob_id)
        assert await stream.read() == b"still mine"
