"""Abstract blob store backend protocols for gridstore.

A backend exposes a client (which emits transport notifications) and a
database handle. Databases come in two flavours that differ in how a file is
written:

- bucket databases hand out an upload stream that is usable immediately and
  finalized with ``finish()``;
- grid store databases hand out a store that must be explicitly opened before
  any write and finalized with ``close()``.
"""

from typing import Any, Protocol, runtime_checkable

from gridstore.models import StoredFile

# Transport notifications forwarded by the storage engine as db_error
TRANSPORT_SIGNALS = ("error", "parse_error", "timeout", "close")


class BlobClient(Protocol):
    """Connection to a blob store, able to emit transport notifications."""

    def on(self, signal: str, listener: Any) -> Any:
        ...

    def is_connected(self) -> bool:
        ...

    def get_default_database(self) -> Any:
        ...

    async def close(self) -> None:
        ...


class UploadStream(Protocol):
    """Writer returned by a bucket database. Open is implicit."""

    async def write(self, chunk: bytes) -> None:
        ...

    async def finish(self) -> StoredFile:
        ...

    async def abort(self) -> None:
        ...


class GridStore(Protocol):
    """Writer returned by a grid store database. Requires ``open()`` first."""

    async def open(self) -> None:
        ...

    async def write(self, chunk: bytes) -> None:
        ...

    async def close(self) -> StoredFile:
        ...

    async def abort(self) -> None:
        ...


class BlobDatabase(Protocol):
    """Operations shared by both database flavours."""

    async def delete(self, file_id: Any, bucket_name: str = "fs") -> None:
        """Delete a stored file and its chunks.

        Raises:
            FileNotFound: If no such file exists.
        """
        ...

    async def exists(self, file_id: Any, bucket_name: str = "fs") -> bool:
        ...

    async def read(self, file_id: Any, bucket_name: str = "fs") -> bytes:
        ...


@runtime_checkable
class BucketDatabase(Protocol):
    def open_upload_stream(self, filename: str, options: dict[str, Any]) -> UploadStream:
        ...


@runtime_checkable
class GridStoreDatabase(Protocol):
    def grid_store(self, file_id: Any, filename: str, options: dict[str, Any]) -> GridStore:
        ...
