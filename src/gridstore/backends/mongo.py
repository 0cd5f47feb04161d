"""MongoDB GridFS backend for gridstore.

Writes files into GridFS buckets through the pymongo async API. Server
monitoring events are turned into transport notifications on the client:

    heartbeat failure (network timeout) -> ``timeout``
    heartbeat failure (other)           -> ``error``
    server closed                       -> ``close``

pymongo no longer computes an MD5 for GridFS files, so the upload stream
computes it client side unless disabled.
"""

import asyncio
import hashlib
import logging
from datetime import datetime, timezone
from typing import Any

from gridfs import AsyncGridFSBucket, AsyncGridIn
from gridfs.errors import NoFile
from pymongo import AsyncMongoClient, monitoring
from pymongo.errors import NetworkTimeout

from gridstore.errors import FileNotFound
from gridstore.models import StoredFile
from gridstore.signals import SignalEmitter

logger = logging.getLogger(__name__)


class TransportListener(monitoring.ServerHeartbeatListener, monitoring.ServerListener):
    """Forwards pymongo server monitoring events to a client as notifications."""

    def __init__(self) -> None:
        self._client: "MongoBlobClient | None" = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def bind(self, client: "MongoBlobClient", loop: asyncio.AbstractEventLoop) -> None:
        self._client = client
        self._loop = loop

    def _notify(self, signal: str, error: BaseException | None) -> None:
        if self._client is None or self._loop is None or self._loop.is_closed():
            return
        # Monitors may run outside the event loop thread
        self._loop.call_soon_threadsafe(self._client.notify, signal, error)

    def started(self, event: monitoring.ServerHeartbeatStartedEvent) -> None:
        pass

    def succeeded(self, event: monitoring.ServerHeartbeatSucceededEvent) -> None:
        if self._client is not None:
            self._client.link_up = True

    def failed(self, event: monitoring.ServerHeartbeatFailedEvent) -> None:
        if self._client is not None:
            self._client.link_up = False
        signal = "timeout" if isinstance(event.reply, NetworkTimeout) else "error"
        self._notify(signal, event.reply)

    def opened(self, event: monitoring.ServerOpeningEvent) -> None:
        pass

    def description_changed(self, event: monitoring.ServerDescriptionChangedEvent) -> None:
        pass

    def closed(self, event: monitoring.ServerClosedEvent) -> None:
        self._notify("close", None)


class MongoUploadStream:
    """Bucket style writer over an ``AsyncGridIn``."""

    def __init__(self, root_collection: Any, filename: str, options: dict[str, Any]) -> None:
        self.file_id = options["id"]
        self.filename = filename
        self.chunk_size = options.get("chunk_size") or 261120
        self.content_type = options.get("content_type")
        self.metadata = options.get("metadata")
        fields: dict[str, Any] = {
            "_id": self.file_id,
            "filename": filename,
            "chunkSize": self.chunk_size,
        }
        if self.content_type is not None:
            fields["contentType"] = self.content_type
        if self.metadata is not None:
            fields["metadata"] = self.metadata
        if options.get("aliases") is not None:
            fields["aliases"] = options["aliases"]
        self._grid_in = AsyncGridIn(root_collection, **fields)
        self._md5 = None if options.get("disable_md5") else hashlib.md5()
        self._length = 0

    async def write(self, chunk: bytes) -> None:
        await self._grid_in.write(chunk)
        self._length += len(chunk)
        if self._md5 is not None:
            self._md5.update(chunk)

    async def finish(self) -> StoredFile:
        await self._grid_in.close()
        upload_date = self._grid_in.upload_date or datetime.now(timezone.utc)
        return StoredFile(
            id=self.file_id,
            filename=self.filename,
            length=self._length,
            chunk_size=self.chunk_size,
            upload_date=upload_date,
            content_type=self.content_type,
            metadata=self.metadata,
            md5=self._md5.hexdigest() if self._md5 is not None else None,
        )

    async def abort(self) -> None:
        await self._grid_in.abort()


class MongoBlobDatabase:
    """Database handle wrapping a pymongo ``AsyncDatabase``."""

    def __init__(self, client: "MongoBlobClient", database: Any) -> None:
        self.client = client
        self.database = database

    def open_upload_stream(self, filename: str, options: dict[str, Any]) -> MongoUploadStream:
        bucket_name = options.get("bucket_name") or "fs"
        return MongoUploadStream(self.database[bucket_name], filename, options)

    def _bucket(self, bucket_name: str) -> AsyncGridFSBucket:
        return AsyncGridFSBucket(self.database, bucket_name=bucket_name)

    async def delete(self, file_id: Any, bucket_name: str = "fs") -> None:
        try:
            await self._bucket(bucket_name).delete(file_id)
        except NoFile as exc:
            raise FileNotFound(file_id, bucket_name) from exc

    async def exists(self, file_id: Any, bucket_name: str = "fs") -> bool:
        found = await self.database[f"{bucket_name}.files"].find_one({"_id": file_id})
        return found is not None

    async def read(self, file_id: Any, bucket_name: str = "fs") -> bytes:
        try:
            grid_out = await self._bucket(bucket_name).open_download_stream(file_id)
        except NoFile as exc:
            raise FileNotFound(file_id, bucket_name) from exc
        return await grid_out.read()


class MongoBlobClient(SignalEmitter):
    """Client wrapping a pymongo ``AsyncMongoClient``.

    Attributes:
        link_up: Last known server reachability from heartbeats.
    """

    def __init__(self, mongo_client: Any) -> None:
        super().__init__()
        self.mongo_client = mongo_client
        self.link_up = True
        self._closed = False

    @classmethod
    def create(cls, url: str, options: dict[str, Any] | None = None) -> "MongoBlobClient":
        """Build an ``AsyncMongoClient`` with transport monitoring attached."""
        listener = TransportListener()
        mongo_client = AsyncMongoClient(url, event_listeners=[listener], **(options or {}))
        client = cls(mongo_client)
        listener.bind(client, asyncio.get_running_loop())
        return client

    def notify(self, signal: str, error: BaseException | None) -> None:
        if self._closed and signal == "close":
            return
        logger.debug("MongoDB transport notification: %s", signal)
        self.emit(signal, error)

    def is_connected(self) -> bool:
        return not self._closed and self.link_up

    def get_default_database(self) -> MongoBlobDatabase:
        return MongoBlobDatabase(self, self.mongo_client.get_default_database(default="test"))

    async def ping(self) -> None:
        await self.mongo_client.admin.command("ping")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.mongo_client.close()
        self.emit("close", None)


def wrap_database(database: Any) -> MongoBlobDatabase:
    """Wrap an existing pymongo ``AsyncDatabase`` provided by the caller."""
    return MongoBlobDatabase(MongoBlobClient(database.client), database)


def wrap_client(mongo_client: Any) -> MongoBlobClient:
    """Wrap an existing pymongo ``AsyncMongoClient`` provided by the caller."""
    return MongoBlobClient(mongo_client)


async def connect(url: str, options: dict[str, Any] | None = None) -> MongoBlobClient:
    """Connect to MongoDB and verify the server answers.

    Args:
        url: A ``mongodb://`` or ``mongodb+srv://`` connection string.
        options: Keyword arguments for ``AsyncMongoClient``.
    """
    client = MongoBlobClient.create(url, options)
    try:
        await client.ping()
    except Exception:
        await client.close()
        raise
    logger.info("Connected to MongoDB")
    return client
