"""Storage engine persisting uploaded files into a blob store.

A ``GridStorage`` is handed to an upload middleware. It owns one connection
to the blob store, obtained in one of three ways:

- an already open database handle passed as ``db`` (connected immediately);
- an awaitable resolving to the handle (connected once it resolves);
- a connection URL, optionally shared through the connection cache so that
  engines with the same signature reuse one connection.

Lifecycle signals:
    connection(Connection)            - the blob store is ready
    connection_failed(error)          - connecting failed; the engine is unusable
    file(UploadResult)                - an upload was stored
    stream_error(error, settings)     - writing an upload failed
    db_error(error)                   - the blob store reported a transport problem

``connection`` and ``connection_failed`` are dispatched on a later event loop
turn than the one that produced them, so listeners attached right after
construction never miss them.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import urllib.parse
from enum import Enum
from typing import TYPE_CHECKING, Any

import gridstore.metrics as _metrics
from gridstore.backends import TRANSPORT_SIGNALS, connect, get_database
from gridstore.cache import DEFAULT_CACHE_NAME, ConnectionCache
from gridstore.errors import (
    BackendConnectionError,
    ConfigurationError,
    GridStoreError,
    NotConnectedError,
)
from gridstore.models import Connection, UploadResult, UploadSettings
from gridstore.naming import NamingResolver
from gridstore.pipeline import UploadPipeline
from gridstore.signals import SignalEmitter
from gridstore.writers import UploadWriter, create_writer, is_legacy

if TYPE_CHECKING:
    from gridstore.config import StorageConfig

logger = logging.getLogger(__name__)


class LifecycleState(Enum):
    """Connection lifecycle of one engine. CONNECTED and FAILED are final."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (LifecycleState.CONNECTED, LifecycleState.FAILED)


def redact_url(url: str) -> str:
    """Hide the password of a connection URL for logging."""
    try:
        parts = urllib.parse.urlsplit(url)
    except ValueError:
        return url
    if not parts.password:
        return url
    netloc = parts.netloc.replace(f":{parts.password}@", ":***@", 1)
    return urllib.parse.urlunsplit(parts._replace(netloc=netloc))


async def _resolved(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class GridStorage(SignalEmitter):
    """Storage engine writing uploads into a chunked blob store.

    Args:
        url: Blob store connection URL (``memory://``, ``sqlite://``,
            ``mongodb://``).
        options: Options passed to the backend connect call.
        db: An open database handle, or an awaitable resolving to one.
        client: The client owning ``db``, or an awaitable resolving to it.
        cache: ``True`` to share the connection through the default cache,
            or a cache name. Only applies to ``url`` connections.
        file: Naming function producing per-upload settings.
        cache_registry: Connection cache to use instead of the process-wide
            ``GridStorage.cache``.

    Raises:
        ConfigurationError: If neither ``url`` nor ``db`` is given.
    """

    #: Process-wide connection cache shared by engines with ``cache`` enabled.
    cache: ConnectionCache = ConnectionCache()

    def __init__(
        self,
        url: str | None = None,
        *,
        options: dict[str, Any] | None = None,
        db: Any = None,
        client: Any = None,
        cache: bool | str = False,
        file: Any = None,
        cache_registry: ConnectionCache | None = None,
    ) -> None:
        super().__init__()

        if not url and db is None:
            raise ConfigurationError(
                "Error creating storage engine. At least one of url or db option must be provided."
            )

        self.url = url
        self.options = dict(options or {})
        self.db: Any = None
        self.client: Any = None
        self.connected = False
        self.connecting = False
        self.error: BaseException | None = None
        self.state = LifecycleState.IDLE

        self.caching = False
        self.cache_name: str | None = None
        self.cache_index = None
        if cache_registry is not None:
            self.cache = cache_registry

        self.resolver = NamingResolver(file)
        self.pipeline = UploadPipeline(self)

        self._db_option = db
        self._client_option = client
        self._legacy: bool | None = None
        self._owns_client = False
        self._task: asyncio.Task[None] | None = None
        self._transport_listeners: list[tuple[str, Any]] = []

        if url and db is None:
            self.caching = bool(cache)

        if self.caching:
            self.cache_name = cache if isinstance(cache, str) else DEFAULT_CACHE_NAME
            self.cache_index = self.cache.initialize(url, self.options, self.cache_name)

        self._connect()

    @classmethod
    def from_config(
        cls,
        config: "StorageConfig",
        file: Any = None,
        cache_registry: ConnectionCache | None = None,
    ) -> "GridStorage":
        """Create an engine from the ``storage`` configuration section."""
        return cls(
            config.url,
            options=config.options,
            cache=config.cache,
            file=file,
            cache_registry=cache_registry,
        )

    # -- Connection lifecycle -------------------------------------------------

    def _connect(self) -> None:
        """Use a ready handle directly, or start obtaining one."""
        db, client = self._db_option, self._client_option
        if db is not None and not inspect.isawaitable(db) and not inspect.isawaitable(client):
            self._set_db(db, client)
            return

        self.connecting = True
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, connecting on first use")
            return
        self._ensure_started()

    def _ensure_started(self) -> None:
        """Release held signals and start connecting if still idle.

        Must be called from a running event loop.
        """
        self.release_held()
        if self.state is LifecycleState.IDLE and self.connecting:
            self.state = LifecycleState.CONNECTING
            self._task = asyncio.get_running_loop().create_task(self._open())

    async def _open(self) -> None:
        try:
            db, client = await self._resolve_connection()
        except Exception as exc:
            self._fail(exc)
            return
        self._set_db(db, client)

    async def _resolve_connection(self) -> Connection:
        """Obtain the connection from the given handle, the cache, or a new connect."""
        if self._db_option is not None:
            db = await _resolved(self._db_option)
            client = await _resolved(self._client_option)
            return Connection(db, client)

        if not self.caching:
            return await self._create_connection()

        cache = self.cache
        if not cache.is_opening(self.cache_index) and cache.is_pending(self.cache_index):
            cache.mark_opening(self.cache_index)
            return await self._create_connection()

        return await cache.wait_for(self.cache_index)

    async def _create_connection(self) -> Connection:
        """Connect to the blob store, settling the cache entry when caching."""
        assert self.url is not None
        client = None
        try:
            client = await connect(self.url, self.options)
            db = client.get_default_database()
        except GridStoreError as exc:
            await self._abandon(client, exc)
            raise
        except Exception as exc:
            error = BackendConnectionError(f"Failed to connect to {redact_url(self.url)}: {exc}")
            await self._abandon(client, error)
            raise error from exc

        if _metrics.connections_total is not None:
            _metrics.connections_total.labels(outcome="success").inc()
        if self.caching:
            self.cache.resolve(self.cache_index, db, client)
        else:
            self._owns_client = True
        return Connection(db, client)

    async def _abandon(self, client: Any, error: BaseException) -> None:
        """Close a half-opened client and settle the cache entry with ``error``."""
        if client is not None:
            try:
                await client.close()
            except Exception:
                logger.warning("Failed to close abandoned blob store client", exc_info=True)
        if _metrics.connections_total is not None:
            _metrics.connections_total.labels(outcome="failure").inc()
        if self.caching:
            self.cache.reject(self.cache_index, error)

    def _set_db(self, db: Any, client: Any) -> None:
        """Store the open connection and announce it on the next loop turn."""
        self.connecting = False
        self.state = LifecycleState.CONNECTED
        self.db = get_database(db)
        self.client = client if client is not None else getattr(self.db, "client", None)

        if self.client is not None and callable(getattr(self.client, "on", None)):
            for signal in TRANSPORT_SIGNALS:
                listener = functools.partial(self._on_transport, signal)
                self.client.on(signal, listener)
                self._transport_listeners.append((signal, listener))

        self.update_connection_status()
        logger.info("Blob store connection ready%s", f" ({redact_url(self.url)})" if self.url else "")

        self.emit_soon("connection", Connection(self.db, self.client))

    def _fail(self, error: BaseException) -> None:
        """Record a connect failure and announce it on the next loop turn."""
        self.connecting = False
        self.state = LifecycleState.FAILED
        self.db = None
        self.client = None
        self.error = error
        self.update_connection_status()
        logger.error("Blob store connection failed: %s", error)

        self.emit_soon("connection_failed", error)

    def _on_transport(self, signal: str, error: BaseException | None = None, *_: Any) -> None:
        # Status is only re-derived; a transport problem never ends the lifecycle
        self.update_connection_status()
        if error is None:
            error = BackendConnectionError(f"Blob store reported {signal}")
        logger.warning("Blob store %s notification: %s", signal, error)
        if _metrics.db_errors_total is not None:
            _metrics.db_errors_total.inc()
        self.emit("db_error", error)

    def update_connection_status(self) -> None:
        """Derive ``connected`` from the backend's own link status."""
        if self.db is None:
            self.connected = False
            self.connecting = False
            return

        link = self.client if self.client is not None else self.db
        is_connected = getattr(link, "is_connected", None)
        self.connected = bool(is_connected()) if callable(is_connected) else True

    async def ready(self) -> Connection:
        """Wait until the connection succeeds or fails.

        Returns:
            The open connection.

        Raises:
            The connect error, on every call once connecting has failed.
        """
        self._ensure_started()
        if self.state is LifecycleState.FAILED:
            assert self.error is not None
            raise self.error
        if self.state is LifecycleState.CONNECTED:
            return Connection(self.db, self.client)

        future: asyncio.Future[Connection] = asyncio.get_running_loop().create_future()

        def done(connection: Connection) -> None:
            self.off("connection_failed", fail)
            if not future.done():
                future.set_result(connection)

        def fail(error: BaseException) -> None:
            self.off("connection", done)
            if not future.done():
                future.set_exception(error)

        self.once("connection", done)
        self.once("connection_failed", fail)
        return await future

    async def close(self) -> None:
        """Close the connection if this engine opened it on its own.

        Cached connections and caller supplied handles are left open, but this
        engine stops listening to their transport notifications.
        """
        if self._owns_client and self.client is not None:
            await self.client.close()
            self._owns_client = False
        off = getattr(self.client, "off", None)
        while self._transport_listeners:
            signal, listener = self._transport_listeners.pop()
            if callable(off):
                off(signal, listener)

    async def require_connection(self) -> Connection:
        """Wait for the connection to settle and return it.

        Raises:
            The connect error, if connecting failed.
            NotConnectedError: If there is no database handle.
        """
        self._ensure_started()
        if self.connecting or self.state is LifecycleState.FAILED:
            return await self.ready()
        if self.db is None:
            raise NotConnectedError()
        return Connection(self.db, self.client)

    # -- Uploads --------------------------------------------------------------

    def create_writer(self, settings: UploadSettings) -> UploadWriter:
        """Create the backend writer for one upload.

        The writer lifecycle is detected from the database once and reused.
        """
        if self._legacy is None:
            self._legacy = is_legacy(self.db)
        return create_writer(self.db, settings, self._legacy)

    async def handle_upload(self, request: Any, file: Any) -> UploadResult:
        """Store a file received by the upload middleware.

        Raises:
            NotConnectedError: If the connection is neither open nor opening.
        """
        self._ensure_started()
        if self.connecting:
            await self.ready()
            return await self.from_file(request, file)

        self.update_connection_status()
        if self.connected:
            return await self.from_file(request, file)

        raise NotConnectedError()

    async def remove_upload(self, request: Any, file: Any) -> None:
        """Delete a stored file after the middleware rejected the request.

        Waits for a pending connection. A failed connection raises its error.
        """
        await self.pipeline.remove(file)

    async def from_file(self, request: Any, file: Any) -> UploadResult:
        """Store a middleware file descriptor.

        The bytes are read from ``file.stream`` when present, otherwise from
        the descriptor itself (e.g. Starlette's ``UploadFile``).
        """
        source = getattr(file, "stream", None)
        if source is None:
            source = file
        return await self.from_stream(source, request, file)

    async def from_stream(self, source: Any, request: Any = None, file: Any = None) -> UploadResult:
        """Store bytes from any supported source.

        ``request`` and ``file`` are optional and only passed to the naming
        function and used to infer the content type.
        """
        self._ensure_started()
        return await self.pipeline.run(source, request, file)
