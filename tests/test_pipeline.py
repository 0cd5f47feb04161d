"""Tests for the upload pipeline."""

import hashlib
import io
import re

import pytest
from bson import ObjectId

import gridstore.storage as storage_module
from gridstore.backends import connect, memory
from gridstore.errors import (
    BackendConnectionError,
    FileNotFound,
    InvalidSettingsType,
    StreamError,
)
from gridstore.models import UploadSettings
from gridstore.pipeline import content_type_of, iter_chunks, pump, release
from gridstore.storage import GridStorage, LifecycleState
from gridstore.writers import UploadWriter

from conftest import make_file


class _Source:
    """Async byte source that can fail after some chunks."""

    def __init__(self, chunks, error=None):
        self._chunks = list(chunks)
        self._error = error
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error

    async def aclose(self):
        self.closed = True


class _RecordingWriter(UploadWriter):
    def __init__(self):
        super().__init__(UploadSettings(filename="x", id=1))
        self.chunks = []
        self.aborted = False

    async def _write(self, chunk):
        self.chunks.append(chunk)

    async def finish(self):
        raise NotImplementedError

    async def abort(self):
        self.aborted = True


async def _collect(source):
    return [chunk async for chunk in iter_chunks(source, read_size=3)]


class TestIterChunks:
    """Tests for iter_chunks()."""

    async def test_bytes(self):
        assert await _collect(b"abc") == [b"abc"]
        assert await _collect(b"") == []

    async def test_sync_reader(self):
        assert await _collect(io.BytesIO(b"abcdefg")) == [b"abc", b"def", b"g"]

    async def test_async_reader(self):
        class Reader:
            def __init__(self):
                self._buf = io.BytesIO(b"abcd")

            async def read(self, size):
                return self._buf.read(size)

        assert await _collect(Reader()) == [b"abc", b"d"]

    async def test_async_iterable(self):
        assert await _collect(_Source([b"a", b"b"])) == [b"a", b"b"]

    async def test_iterable(self):
        assert await _collect([b"a", b"b"]) == [b"a", b"b"]

    async def test_unsupported(self):
        with pytest.raises(TypeError):
            await _collect(42)


class TestPump:
    """Tests for pump()."""

    async def test_copies_every_chunk(self):
        writer = _RecordingWriter()
        assert await pump([b"ab", b"cd"], writer) == 4
        assert writer.chunks == [b"ab", b"cd"]
        assert not writer.aborted

    async def test_source_failure_aborts_and_closes(self):
        writer = _RecordingWriter()
        source = _Source([b"ab"], error=OSError("client went away"))
        with pytest.raises(OSError, match="client went away"):
            await pump(source, writer)
        assert writer.aborted
        assert source.closed

    async def test_release_sync_close(self):
        buf = io.BytesIO(b"x")
        await release(buf)
        assert buf.closed


def test_content_type_of():
    assert content_type_of(None) is None
    assert content_type_of({"mimetype": "image/png"}) == "image/png"
    assert content_type_of(make_file("text/csv")) == "text/csv"


class TestRun:
    """Tests for storing uploads through the engine pipeline."""

    async def test_stores_file_and_emits(self, storage):
        files = []
        storage.on("file", files.append)
        result = await storage.from_stream([b"hello ", b"world"], file=make_file("text/plain"))

        assert files == [result]
        assert result.size == 11
        assert result.bucket_name == "fs"
        assert result.chunk_size == 261120
        assert result.content_type == "text/plain"
        assert result.checksum == hashlib.md5(b"hello world").hexdigest()
        assert await storage.db.read(result.id) == b"hello world"

    async def test_defaults_without_naming_function(self, storage):
        result = await storage.from_stream(b"x" * 10)
        assert re.fullmatch(r"[0-9a-f]{32}", result.filename)
        assert isinstance(result.id, ObjectId)
        assert result.size == 10
        assert result.bucket_name == "fs"
        assert result.metadata is None

    async def test_string_result_becomes_filename(self, memory_url, cache):
        engine = GridStorage(memory_url, file=lambda request, file: "abc", cache_registry=cache)
        result = await engine.from_stream(b"data")
        assert result.filename == "abc"
        assert result.chunk_size == 261120
        assert result.bucket_name == "fs"

    async def test_id_only_result_generates_filename(self, memory_url, cache):
        engine = GridStorage(
            memory_url, file=lambda request, file: {"id": "custom-id"}, cache_registry=cache
        )
        result = await engine.from_stream(b"data")
        assert result.id == "custom-id"
        assert re.fullmatch(r"[0-9a-f]{32}", result.filename)

    async def test_invalid_result_type_fails_upload(self, memory_url, cache):
        engine = GridStorage(memory_url, file=lambda request, file: ["a"], cache_registry=cache)
        with pytest.raises(InvalidSettingsType):
            await engine.from_stream(b"data")
        assert engine.state is LifecycleState.CONNECTED

    async def test_naming_settings_apply(self, memory_url, cache):
        def naming(request, file):
            return {"filename": "report.csv", "bucket_name": "reports", "metadata": {"a": 1}}

        engine = GridStorage(memory_url, file=naming, cache_registry=cache)
        result = await engine.from_stream(b"1,2,3", file=make_file("text/csv"))
        assert result.filename == "report.csv"
        assert result.bucket_name == "reports"
        assert result.metadata == {"a": 1}
        assert await engine.db.exists(result.id, "reports")

    async def test_write_failure_emits_stream_error_once(self, storage, store_name):
        errors = []
        files = []
        storage.on("stream_error", lambda err, settings: errors.append((err, settings)))
        storage.on("file", files.append)
        failure = StreamError("disk full")
        memory.get_store(store_name).fail_next_write(failure)

        with pytest.raises(StreamError) as exc_info:
            await storage.from_stream([b"abc"], file=make_file())

        assert exc_info.value is failure
        assert len(errors) == 1
        assert errors[0][0] is failure
        assert isinstance(errors[0][1], UploadSettings)
        assert files == []
        assert memory.get_store(store_name).files == {}

    async def test_source_failure_emits_stream_error(self, storage):
        errors = []
        storage.on("stream_error", lambda err, settings: errors.append(err))
        with pytest.raises(OSError):
            await storage.from_stream(_Source([b"a"], error=OSError("reset")))
        assert len(errors) == 1

    async def test_naming_failure_is_not_a_stream_error(self, memory_url, cache):
        def naming(request, file):
            raise PermissionError("nope")

        engine = GridStorage(memory_url, file=naming, cache_registry=cache)
        errors = []
        engine.on("stream_error", errors.append)
        with pytest.raises(PermissionError):
            await engine.from_stream(b"data")
        assert errors == []

    async def test_remove(self, storage):
        result = await storage.from_stream(b"bye")
        await storage.pipeline.remove(result)
        assert not await storage.db.exists(result.id)
        with pytest.raises(FileNotFound):
            await storage.pipeline.remove({"id": result.id, "bucket_name": "fs"})


class _RecordingGridStore:
    """Grid store wrapper that logs calls and fails on request."""

    def __init__(self, inner, calls, fail_on):
        self._inner = inner
        self._calls = calls
        self._fail_on = fail_on
        self._writes = 0

    async def open(self):
        self._calls.append("open")
        await self._inner.open()
        self._calls.append("opened")

    async def write(self, chunk):
        self._calls.append("write")
        self._writes += 1
        if self._fail_on == "write" and self._writes > 1:
            raise StreamError("write failed")
        await self._inner.write(chunk)

    async def close(self):
        self._calls.append("close")
        if self._fail_on == "close":
            raise StreamError("close failed")
        return await self._inner.close()

    async def abort(self):
        self._calls.append("abort")
        await self._inner.abort()


class _RecordingDatabase:
    """SQLite database whose grid stores are recorded."""

    def __init__(self, db, fail_on=None):
        self._db = db
        self.client = db.client
        self.fail_on = fail_on
        self.calls = []
        self.stores = []

    def grid_store(self, file_id, filename, options):
        self.stores.append((file_id, filename))
        inner = self._db.grid_store(file_id, filename, options)
        return _RecordingGridStore(inner, self.calls, self.fail_on)

    async def delete(self, file_id, bucket_name="fs"):
        await self._db.delete(file_id, bucket_name)

    async def exists(self, file_id, bucket_name="fs"):
        return await self._db.exists(file_id, bucket_name)

    async def read(self, file_id, bucket_name="fs"):
        return await self._db.read(file_id, bucket_name)


async def _row_counts(client):
    counts = []
    for table in ("files", "chunks"):
        async with client.cursor(f"SELECT COUNT(*) FROM {table}") as cursor:
            (count,) = await cursor.fetchone()
        counts.append(count)
    return counts


@pytest.fixture
async def sqlite_client(tmp_path):
    client = await connect(f"sqlite:///{tmp_path / 'files.db'}")
    yield client
    await client.close()


class TestLegacyRun:
    """Tests for uploads through the grid store lifecycle."""

    def _engine(self, sqlite_client, cache, fail_on=None):
        def naming(request, file):
            return {"filename": "data.bin", "chunk_size": 2}

        db = _RecordingDatabase(sqlite_client.get_default_database(), fail_on)
        return GridStorage(db=db, file=naming, cache_registry=cache), db

    @staticmethod
    def _listen(engine):
        errors, files = [], []
        engine.on("stream_error", lambda err, settings: errors.append((err, settings)))
        engine.on("file", files.append)
        return errors, files

    async def test_open_completes_before_first_write(self, sqlite_client, cache):
        engine, db = self._engine(sqlite_client, cache)
        result = await engine.from_stream([b"ab", b"cd"])

        assert db.calls == ["open", "opened", "write", "write", "close"]
        assert await db.read(result.id) == b"abcd"

    async def test_duplicate_id_fails_on_open(self, sqlite_client, cache):
        def naming(request, file):
            return {"id": "dup", "filename": "a.txt"}

        engine = GridStorage(db=sqlite_client.get_default_database(), file=naming, cache_registry=cache)
        await engine.from_stream(b"first")
        errors, files = self._listen(engine)

        with pytest.raises(StreamError, match="already exists"):
            await engine.from_stream(b"second")

        assert len(errors) == 1
        assert errors[0][1].id == "dup"
        assert errors[0][1].filename == "a.txt"
        assert files == []
        assert await engine.db.read("dup") == b"first"

    async def test_write_failure_aborts_and_leaves_no_rows(self, sqlite_client, cache):
        engine, db = self._engine(sqlite_client, cache, fail_on="write")
        errors, files = self._listen(engine)

        with pytest.raises(StreamError, match="write failed"):
            await engine.from_stream([b"ab", b"cd", b"ef"])

        assert db.calls[-1] == "abort"
        assert "close" not in db.calls
        assert len(errors) == 1
        file_id, filename = db.stores[0]
        assert errors[0][1].id == file_id
        assert errors[0][1].filename == filename
        assert files == []
        assert await _row_counts(sqlite_client) == [0, 0]

    async def test_finish_failure_aborts(self, sqlite_client, cache):
        engine, db = self._engine(sqlite_client, cache, fail_on="close")
        errors, files = self._listen(engine)

        with pytest.raises(StreamError, match="close failed"):
            await engine.from_stream([b"ab"])

        assert db.calls[-2:] == ["close", "abort"]
        assert len(errors) == 1
        assert errors[0][1].id == db.stores[0][0]
        assert files == []
        assert await _row_counts(sqlite_client) == [0, 0]


class TestConnectionGate:
    """Tests for uploads and deletions on engines without a usable connection."""

    async def test_failed_connection_raises_its_error(self, memory_url, cache, monkeypatch):
        async def refuse(url, options=None):
            raise OSError("connection refused")

        monkeypatch.setattr(storage_module, "connect", refuse)
        named = []
        engine = GridStorage(
            memory_url, file=lambda request, file: named.append(file), cache_registry=cache
        )
        with pytest.raises(BackendConnectionError):
            await engine.ready()
        errors = []
        engine.on("stream_error", errors.append)

        with pytest.raises(BackendConnectionError) as exc_info:
            await engine.from_stream(b"abc")

        assert exc_info.value is engine.error
        assert named == []
        assert errors == []

    async def test_remove_waits_while_connecting(self, storage, memory_url, cache):
        result = await storage.from_stream(b"bye")
        engine = GridStorage(memory_url, cache_registry=cache)
        assert engine.connecting

        await engine.remove_upload(None, result)

        assert not await storage.db.exists(result.id)

    async def test_remove_after_failed_connection(self, memory_url, cache, monkeypatch):
        async def refuse(url, options=None):
            raise OSError("connection refused")

        monkeypatch.setattr(storage_module, "connect", refuse)
        engine = GridStorage(memory_url, cache_registry=cache)
        with pytest.raises(BackendConnectionError):
            await engine.ready()

        with pytest.raises(BackendConnectionError) as exc_info:
            await engine.remove_upload(None, {"id": "x", "bucket_name": "fs"})
        assert exc_info.value is engine.error
