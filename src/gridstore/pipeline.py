"""Upload pipeline: streams one upload into the blob store.

For every upload the pipeline resolves the file settings, creates the backend
writer, pumps the source bytes into it and finalizes the file. Writer
failures are reported once through the ``stream_error`` signal and raised to
the caller; successes are reported through the ``file`` signal.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

import gridstore.metrics as _metrics
from gridstore.models import UploadResult, UploadSettings
from gridstore.naming import merge_settings, normalize
from gridstore.writers import UploadWriter

if TYPE_CHECKING:
    from gridstore.storage import GridStorage

logger = logging.getLogger(__name__)

# Read size used for sources exposing read(): 64 KB
_READ_SIZE = 64 * 1024


async def iter_chunks(source: Any, read_size: int = _READ_SIZE) -> AsyncIterator[bytes]:
    """Yield byte chunks from an upload source.

    Accepts async iterables of bytes, objects with a sync or async
    ``read(size)`` method (e.g. Starlette's ``UploadFile``), bytes, and
    plain iterables of bytes.

    Raises:
        TypeError: If the source cannot be read.
    """
    if isinstance(source, (bytes, bytearray, memoryview)):
        if source:
            yield bytes(source)
        return

    if hasattr(source, "__aiter__"):
        async for chunk in source:
            yield chunk
        return

    if hasattr(source, "read"):
        while True:
            chunk = source.read(read_size)
            if inspect.isawaitable(chunk):
                chunk = await chunk
            if not chunk:
                return
            yield chunk

    if hasattr(source, "__iter__"):
        for chunk in source:
            yield chunk
        return

    raise TypeError(f"Cannot stream upload source of type {type(source).__name__}")


async def release(source: Any) -> None:
    """Close an upload source, awaiting the close if it is asynchronous."""
    for name in ("aclose", "close"):
        closer = getattr(source, name, None)
        if callable(closer):
            result = closer()
            if inspect.isawaitable(result):
                await result
            return


async def pump(source: Any, writer: UploadWriter) -> int:
    """Copy every chunk of ``source`` into ``writer``.

    When either side fails, the source is closed and the writer aborted
    before the original error is raised.

    Returns:
        The number of bytes written.
    """
    chunks = iter_chunks(source)
    try:
        async for chunk in chunks:
            await writer.write(chunk)
    except BaseException:
        await _destroy(source, writer)
        raise
    finally:
        await chunks.aclose()
    return writer.bytes_written


async def _destroy(source: Any, writer: UploadWriter) -> None:
    try:
        await release(source)
    except Exception:
        logger.warning("Failed to close upload source", exc_info=True)
    await _abort(writer)


async def _abort(writer: UploadWriter) -> None:
    try:
        await writer.abort()
    except Exception:
        logger.warning("Failed to abort upload writer for %s", writer.settings.id, exc_info=True)


def content_type_of(file: Any) -> str | None:
    """Content type announced by the upload middleware, if any."""
    if file is None:
        return None
    if isinstance(file, dict):
        return file.get("content_type") or file.get("mimetype")
    return getattr(file, "content_type", None) or getattr(file, "mimetype", None)


def _field(stored: Any, name: str) -> Any:
    if isinstance(stored, dict):
        return stored[name]
    return getattr(stored, name)


class UploadPipeline:
    """Drives uploads and deletions for one storage engine."""

    def __init__(self, storage: "GridStorage") -> None:
        self._storage = storage

    async def resolve_settings(self, request: Any, file: Any) -> UploadSettings:
        """Run the naming function and merge its output with defaults."""
        value = await self._storage.resolver.resolve(request, file)
        file_settings = normalize(value)
        return merge_settings({"content_type": content_type_of(file)}, file_settings)

    async def run(self, source: Any, request: Any = None, file: Any = None) -> UploadResult:
        """Store one upload.

        Args:
            source: The upload bytes (see ``iter_chunks``).
            request: The request the upload belongs to, for the naming function.
            file: The file descriptor from the upload middleware.

        Returns:
            The stored file metadata.
        """
        storage = self._storage
        # Connection problems surface before naming, never as stream errors
        await storage.require_connection()

        settings = await self.resolve_settings(request, file)

        writer: UploadWriter | None = None
        try:
            writer = storage.create_writer(settings)
            if writer.requires_open:
                # Writes must not start before the store is open
                await writer.open()
            await pump(source, writer)
            try:
                stored = await writer.finish()
            except Exception:
                await _abort(writer)
                raise
        except Exception as exc:
            logger.warning(
                "Upload of %s to bucket %s failed: %s",
                settings.filename,
                settings.bucket_name,
                exc,
            )
            if _metrics.uploads_total is not None:
                _metrics.uploads_total.labels(status="error").inc()
            storage.emit("stream_error", exc, settings)
            raise

        result = UploadResult.build(settings, stored)
        logger.info(
            "Stored %s (%d bytes) in bucket %s",
            result.filename,
            result.size,
            result.bucket_name,
            extra={"file_id": str(result.id), "bucket_name": result.bucket_name},
        )
        if _metrics.uploads_total is not None:
            _metrics.uploads_total.labels(status="success").inc()
        if _metrics.upload_bytes_total is not None:
            _metrics.upload_bytes_total.inc(result.size)
        storage.emit("file", result)
        return result

    async def remove(self, stored: Any) -> None:
        """Delete a previously stored upload.

        Args:
            stored: An ``UploadResult`` (or mapping) with ``id`` and
                ``bucket_name``.
        """
        file_id = _field(stored, "id")
        bucket_name = _field(stored, "bucket_name")
        connection = await self._storage.require_connection()
        await connection.db.delete(file_id, bucket_name)
        logger.info("Removed file %s from bucket %s", file_id, bucket_name)
