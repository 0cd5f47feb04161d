"""In-memory blob store backend for gridstore.

Files are held in process memory, split into chunks exactly like a GridFS
bucket would store them. Stores are registered by name so that several
clients connecting to ``memory://<name>`` see the same files, the way several
connections see the same database server.

The database hands out bucket style upload streams: a stream is usable as
soon as it is created and is finalized with ``finish()``.
"""

import asyncio
import hashlib
import logging
from datetime import datetime, timezone
from typing import Any

from gridstore.errors import FileNotFound, StreamError
from gridstore.models import StoredFile
from gridstore.signals import SignalEmitter

logger = logging.getLogger(__name__)


class MemoryStore:
    """Named container of files and chunks shared by memory clients.

    Attributes:
        name: The store name taken from the connection URL.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        # (bucket, file id) -> file record
        self.files: dict[tuple[str, Any], StoredFile] = {}
        # (bucket, file id) -> ordered chunks
        self.chunks: dict[tuple[str, Any], list[bytes]] = {}
        self._fail_next_write: BaseException | None = None

    def fail_next_write(self, error: BaseException | None = None) -> None:
        """Make the next chunk write on this store raise ``error``."""
        self._fail_next_write = error or StreamError("Simulated write failure")

    def take_write_failure(self) -> BaseException | None:
        error, self._fail_next_write = self._fail_next_write, None
        return error


_stores: dict[str, MemoryStore] = {}


def get_store(name: str) -> MemoryStore:
    """Return the store registered under ``name``, creating it if needed."""
    store = _stores.get(name)
    if store is None:
        store = MemoryStore(name)
        _stores[name] = store
    return store


def drop_store(name: str) -> None:
    _stores.pop(name, None)


class MemoryUploadStream:
    """Bucket style writer buffering one file in memory."""

    def __init__(self, store: MemoryStore, filename: str, options: dict[str, Any]) -> None:
        self._store = store
        self.filename = filename
        self.file_id = options["id"]
        self.bucket_name = options.get("bucket_name") or "fs"
        self.chunk_size = options.get("chunk_size") or 261120
        self.content_type = options.get("content_type")
        self.metadata = options.get("metadata")
        self.aliases = options.get("aliases")
        self._md5 = None if options.get("disable_md5") else hashlib.md5()
        self._buffer = bytearray()
        self._closed = False

    async def write(self, chunk: bytes) -> None:
        if self._closed:
            raise StreamError("Cannot write to a finished upload stream")
        error = self._store.take_write_failure()
        if error is not None:
            raise error
        self._buffer.extend(chunk)
        if self._md5 is not None:
            self._md5.update(chunk)
        # Give other uploads a turn, as a network write would
        await asyncio.sleep(0)

    async def finish(self) -> StoredFile:
        if self._closed:
            raise StreamError("Upload stream already finished")
        self._closed = True

        data = bytes(self._buffer)
        chunks = [
            data[pos : pos + self.chunk_size] for pos in range(0, len(data), self.chunk_size)
        ]
        stored = StoredFile(
            id=self.file_id,
            filename=self.filename,
            length=len(data),
            chunk_size=self.chunk_size,
            upload_date=datetime.now(timezone.utc),
            content_type=self.content_type,
            metadata=self.metadata,
            md5=self._md5.hexdigest() if self._md5 is not None else None,
        )
        key = (self.bucket_name, self.file_id)
        self._store.chunks[key] = chunks
        self._store.files[key] = stored
        return stored

    async def abort(self) -> None:
        self._closed = True
        self._buffer.clear()


class MemoryDatabase:
    """Database handle over a memory store."""

    def __init__(self, client: "MemoryClient") -> None:
        self.client = client
        self.store = client.store

    def open_upload_stream(self, filename: str, options: dict[str, Any]) -> MemoryUploadStream:
        return MemoryUploadStream(self.store, filename, options)

    async def delete(self, file_id: Any, bucket_name: str = "fs") -> None:
        key = (bucket_name, file_id)
        if key not in self.store.files:
            raise FileNotFound(file_id, bucket_name)
        del self.store.files[key]
        self.store.chunks.pop(key, None)

    async def exists(self, file_id: Any, bucket_name: str = "fs") -> bool:
        return (bucket_name, file_id) in self.store.files

    async def read(self, file_id: Any, bucket_name: str = "fs") -> bytes:
        key = (bucket_name, file_id)
        if key not in self.store.files:
            raise FileNotFound(file_id, bucket_name)
        return b"".join(self.store.chunks.get(key, []))


class MemoryClient(SignalEmitter):
    """Client connected to a named memory store."""

    def __init__(self, store: MemoryStore) -> None:
        super().__init__()
        self.store = store
        self._connected = True

    def is_connected(self) -> bool:
        return self._connected

    def get_default_database(self) -> MemoryDatabase:
        return MemoryDatabase(self)

    async def close(self) -> None:
        if not self._connected:
            return
        self._connected = False
        self.emit("close", None)


async def connect(name: str, options: dict[str, Any] | None = None) -> MemoryClient:
    """Connect to the memory store registered under ``name``."""
    client = MemoryClient(get_store(name or "default"))
    logger.debug("Connected to memory store %s", client.store.name)
    return client
