"""SQLite blob store backend for gridstore.

Stores files GridFS style in a SQLite database: one row per file and one row
per fixed size chunk.

Tables:
    files(bucket, id, filename, length, chunk_size, ...) - file records
    chunks(bucket, files_id, n, data) - file contents split into chunks

The database hands out grid stores: a store must be opened before any chunk
is written, and closing it finalizes the file record. Opening inserts an
incomplete file record, so a failed upload leaves nothing visible once it
is aborted.
"""

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from gridstore.errors import FileNotFound, StreamError
from gridstore.models import StoredFile
from gridstore.signals import SignalEmitter

logger = logging.getLogger(__name__)

_CREATE_FILES = """
CREATE TABLE IF NOT EXISTS files (
    bucket TEXT NOT NULL,
    id TEXT NOT NULL,
    filename TEXT NOT NULL,
    length INTEGER NOT NULL DEFAULT 0,
    chunk_size INTEGER NOT NULL,
    upload_date TEXT,
    content_type TEXT,
    metadata TEXT,
    aliases TEXT,
    md5 TEXT,
    complete INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (bucket, id)
)
"""

_CREATE_CHUNKS = """
CREATE TABLE IF NOT EXISTS chunks (
    bucket TEXT NOT NULL,
    files_id TEXT NOT NULL,
    n INTEGER NOT NULL,
    data BLOB NOT NULL,
    PRIMARY KEY (bucket, files_id, n)
)
"""


def parse_path(url: str) -> str:
    """Extract the database path from a ``sqlite://`` URL.

    ``sqlite:///data/files.db`` is relative, ``sqlite:////var/files.db`` is
    absolute, and ``sqlite://`` or ``sqlite://:memory:`` is in-memory.
    """
    rest = url[len("sqlite://") :]
    if rest in ("", "/", ":memory:", "/:memory:"):
        return ":memory:"
    if rest.startswith("/"):
        rest = rest[1:]
    return rest


class SQLiteGridStore:
    """Writer for one file that must be opened before writing."""

    def __init__(
        self, client: "SQLiteClient", file_id: Any, filename: str, options: dict[str, Any]
    ) -> None:
        self._client = client
        self.file_id = file_id
        self.filename = filename
        self.bucket_name = options.get("bucket_name") or "fs"
        self.chunk_size = options.get("chunk_size") or 261120
        self.content_type = options.get("content_type")
        self.metadata = options.get("metadata")
        self.aliases = options.get("aliases")
        self._md5 = None if options.get("disable_md5") else hashlib.md5()
        self._buffer = bytearray()
        self._chunk_number = 0
        self._length = 0
        self._opened = False
        self._closed = False

    @property
    def _key(self) -> str:
        return str(self.file_id)

    async def open(self) -> None:
        """Insert the incomplete file record.

        Raises:
            StreamError: If the store is already open or the id is taken.
        """
        if self._opened:
            raise StreamError("Grid store is already open")
        try:
            await self._client.execute(
                "INSERT INTO files (bucket, id, filename, chunk_size, content_type, metadata, aliases) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    self.bucket_name,
                    self._key,
                    self.filename,
                    self.chunk_size,
                    self.content_type,
                    json.dumps(self.metadata, default=str),
                    json.dumps(self.aliases),
                ),
            )
        except aiosqlite.IntegrityError as exc:
            raise StreamError(f"A file with id {self.file_id} already exists") from exc
        await self._client.commit()
        self._opened = True

    async def write(self, chunk: bytes) -> None:
        if not self._opened:
            raise StreamError("Grid store is not open")
        if self._closed:
            raise StreamError("Grid store is closed")
        self._buffer.extend(chunk)
        self._length += len(chunk)
        if self._md5 is not None:
            self._md5.update(chunk)
        while len(self._buffer) >= self.chunk_size:
            await self._flush_chunk(bytes(self._buffer[: self.chunk_size]))
            del self._buffer[: self.chunk_size]

    async def _flush_chunk(self, data: bytes) -> None:
        await self._client.execute(
            "INSERT INTO chunks (bucket, files_id, n, data) VALUES (?, ?, ?, ?)",
            (self.bucket_name, self._key, self._chunk_number, data),
        )
        self._chunk_number += 1

    async def close(self) -> StoredFile:
        """Flush the last chunk and complete the file record."""
        if not self._opened:
            raise StreamError("Grid store is not open")
        if self._closed:
            raise StreamError("Grid store is closed")
        self._closed = True

        if self._buffer:
            await self._flush_chunk(bytes(self._buffer))
            self._buffer.clear()

        upload_date = datetime.now(timezone.utc)
        md5 = self._md5.hexdigest() if self._md5 is not None else None
        await self._client.execute(
            "UPDATE files SET length = ?, upload_date = ?, md5 = ?, complete = 1 "
            "WHERE bucket = ? AND id = ?",
            (self._length, upload_date.isoformat(), md5, self.bucket_name, self._key),
        )
        await self._client.commit()
        return StoredFile(
            id=self.file_id,
            filename=self.filename,
            length=self._length,
            chunk_size=self.chunk_size,
            upload_date=upload_date,
            content_type=self.content_type,
            metadata=self.metadata,
            md5=md5,
        )

    async def abort(self) -> None:
        """Remove every row written for this file."""
        self._closed = True
        self._buffer.clear()
        if not self._opened or not self._client.is_connected():
            return
        await self._client.execute(
            "DELETE FROM chunks WHERE bucket = ? AND files_id = ?",
            (self.bucket_name, self._key),
        )
        await self._client.execute(
            "DELETE FROM files WHERE bucket = ? AND id = ?",
            (self.bucket_name, self._key),
        )
        await self._client.commit()


class SQLiteDatabase:
    """Database handle over a SQLite client."""

    def __init__(self, client: "SQLiteClient") -> None:
        self.client = client

    def grid_store(self, file_id: Any, filename: str, options: dict[str, Any]) -> SQLiteGridStore:
        return SQLiteGridStore(self.client, file_id, filename, options)

    async def exists(self, file_id: Any, bucket_name: str = "fs") -> bool:
        async with self.client.cursor(
            "SELECT 1 FROM files WHERE bucket = ? AND id = ? AND complete = 1",
            (bucket_name, str(file_id)),
        ) as cursor:
            row = await cursor.fetchone()
        return row is not None

    async def delete(self, file_id: Any, bucket_name: str = "fs") -> None:
        if not await self.exists(file_id, bucket_name):
            raise FileNotFound(file_id, bucket_name)
        await self.client.execute(
            "DELETE FROM chunks WHERE bucket = ? AND files_id = ?",
            (bucket_name, str(file_id)),
        )
        await self.client.execute(
            "DELETE FROM files WHERE bucket = ? AND id = ?",
            (bucket_name, str(file_id)),
        )
        await self.client.commit()

    async def read(self, file_id: Any, bucket_name: str = "fs") -> bytes:
        if not await self.exists(file_id, bucket_name):
            raise FileNotFound(file_id, bucket_name)
        async with self.client.cursor(
            "SELECT data FROM chunks WHERE bucket = ? AND files_id = ? ORDER BY n",
            (bucket_name, str(file_id)),
        ) as cursor:
            rows = await cursor.fetchall()
        return b"".join(row[0] for row in rows)


class SQLiteClient(SignalEmitter):
    """Client owning one aiosqlite connection.

    Statement failures are emitted as ``error`` notifications before being
    raised to the caller; closing emits ``close``.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str, options: dict[str, Any] | None = None) -> None:
        super().__init__()
        self.db_path = db_path
        self._options = options or {}
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        """Open the connection and create tables if they do not exist."""
        db = await aiosqlite.connect(self.db_path, **self._options)
        self._db = db
        if self.db_path != ":memory:":
            await db.execute("PRAGMA journal_mode=WAL")
        await db.execute("PRAGMA busy_timeout=5000")
        await db.execute(_CREATE_FILES)
        await db.execute(_CREATE_CHUNKS)
        await db.commit()
        logger.info("SQLite blob store opened at %s", self.db_path)

    def _ensure_db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StreamError("SQLite blob store connection is closed")
        return self._db

    def is_connected(self) -> bool:
        return self._db is not None

    def get_default_database(self) -> SQLiteDatabase:
        return SQLiteDatabase(self)

    async def execute(self, sql: str, params: tuple[Any, ...] = ()) -> None:
        db = self._ensure_db()
        try:
            await db.execute(sql, params)
        except aiosqlite.IntegrityError:
            raise
        except aiosqlite.Error as exc:
            self.emit("error", exc)
            raise

    def cursor(self, sql: str, params: tuple[Any, ...] = ()) -> Any:
        return self._ensure_db().execute(sql, params)

    async def commit(self) -> None:
        await self._ensure_db().commit()

    async def close(self) -> None:
        if self._db is None:
            return
        await self._db.close()
        self._db = None
        self.emit("close", None)


async def connect(url: str, options: dict[str, Any] | None = None) -> SQLiteClient:
    """Open a SQLite blob store from a ``sqlite://`` URL.

    Args:
        url: The connection URL.
        options: Keyword arguments for ``aiosqlite.connect`` (e.g. timeout).
    """
    client = SQLiteClient(parse_path(url), options)
    await client.open()
    return client
