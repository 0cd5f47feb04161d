"""Upload writers bridging the two backend writing lifecycles.

``GridStoreUploadWriter`` drives a grid store: it must be opened before any
byte is written, and closing it returns the stored file record. Opening late
or while writes are already flowing can leave the store's chunk index in an
inconsistent state, so the upload pipeline always awaits ``open()`` first.

``BucketUploadWriter`` drives a bucket upload stream: opening is implicit and
``finish()`` completes the file.

The upload pipeline only depends on ``UploadWriter``.
"""

from abc import ABC, abstractmethod
from typing import Any

from gridstore.backends import BucketDatabase, GridStoreDatabase
from gridstore.errors import ConfigurationError
from gridstore.models import StoredFile, UploadSettings


class UploadWriter(ABC):
    """Common contract of a backend writer for one upload."""

    #: Whether the writer needs an explicit ``open()`` before writing.
    requires_open: bool = False

    def __init__(self, settings: UploadSettings) -> None:
        self.settings = settings
        self.bytes_written = 0

    async def open(self) -> None:
        """Prepare the backend for writes. No-op unless ``requires_open``."""

    @abstractmethod
    async def _write(self, chunk: bytes) -> None:
        ...

    async def write(self, chunk: bytes) -> None:
        await self._write(chunk)
        self.bytes_written += len(chunk)

    @abstractmethod
    async def finish(self) -> StoredFile:
        """Finalize the file and return what the backend stored."""

    @abstractmethod
    async def abort(self) -> None:
        """Discard whatever was written so far."""


class GridStoreUploadWriter(UploadWriter):
    requires_open = True

    def __init__(self, db: Any, settings: UploadSettings) -> None:
        super().__init__(settings)
        self._store = db.grid_store(settings.id, settings.filename, writer_options(settings))

    async def open(self) -> None:
        await self._store.open()

    async def _write(self, chunk: bytes) -> None:
        await self._store.write(chunk)

    async def finish(self) -> StoredFile:
        return await self._store.close()

    async def abort(self) -> None:
        await self._store.abort()


class BucketUploadWriter(UploadWriter):
    def __init__(self, db: Any, settings: UploadSettings) -> None:
        super().__init__(settings)
        self._stream = db.open_upload_stream(settings.filename, writer_options(settings))

    async def _write(self, chunk: bytes) -> None:
        await self._stream.write(chunk)

    async def finish(self) -> StoredFile:
        return await self._stream.finish()

    async def abort(self) -> None:
        await self._stream.abort()


def writer_options(settings: UploadSettings) -> dict[str, Any]:
    """Backend writer options derived from upload settings."""
    return {
        "id": settings.id,
        "bucket_name": settings.bucket_name,
        "chunk_size": settings.chunk_size,
        "metadata": settings.metadata,
        "aliases": settings.aliases,
        "content_type": settings.content_type,
        "disable_md5": settings.disable_md5,
    }


def is_legacy(db: Any) -> bool:
    """Detect whether ``db`` only offers the grid store lifecycle.

    Raises:
        ConfigurationError: If ``db`` offers neither writer lifecycle.
    """
    if isinstance(db, BucketDatabase):
        return False
    if isinstance(db, GridStoreDatabase):
        return True
    raise ConfigurationError(
        f"Database handle {type(db).__name__} supports neither upload streams nor grid stores"
    )


def create_writer(db: Any, settings: UploadSettings, legacy: bool) -> UploadWriter:
    if legacy:
        return GridStoreUploadWriter(db, settings)
    return BucketUploadWriter(db, settings)
