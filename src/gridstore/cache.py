"""Connection cache shared by storage engine instances.

Each distinct (cache name, url, options) signature owns one entry. The first
engine to find an entry pending marks it as opening and performs the real
connect; every other engine waits on the same entry and observes the same
outcome. Entries settle exactly once and never change afterwards.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from gridstore.models import Connection

logger = logging.getLogger(__name__)

DEFAULT_CACHE_NAME = "default"


class CacheStatus(Enum):
    """Lifecycle of a cache entry."""

    PENDING = "pending"
    OPENING = "opening"
    RESOLVED = "resolved"
    REJECTED = "rejected"

    @property
    def is_settled(self) -> bool:
        return self in (CacheStatus.RESOLVED, CacheStatus.REJECTED)


@dataclass(frozen=True)
class CacheIndex:
    """Handle identifying one entry of the cache."""

    name: str
    url: str
    options_key: str


@dataclass
class CacheEntry:
    """A cached connection attempt and its subscribers."""

    index: CacheIndex
    status: CacheStatus = CacheStatus.PENDING
    db: Any = None
    client: Any = None
    error: BaseException | None = None
    waiters: list[asyncio.Future[Connection]] = field(default_factory=list)


def _options_key(options: dict[str, Any] | None) -> str:
    """Serialize connect options into a stable signature component."""
    if not options:
        return "{}"
    return json.dumps(options, sort_keys=True, default=str)


class ConnectionCache:
    """Registry deduplicating connection attempts by signature.

    Instances are independent; the storage engine uses one process-wide
    instance by default and accepts another for isolation.
    """

    def __init__(self) -> None:
        # cache name -> (url, options key) -> entry
        self._connections: dict[str, dict[tuple[str, str], CacheEntry]] = {}

    def initialize(
        self,
        url: str,
        options: dict[str, Any] | None = None,
        cache_name: str = DEFAULT_CACHE_NAME,
    ) -> CacheIndex:
        """Register a signature, reusing an existing entry when present.

        Args:
            url: The backend connection string.
            options: Options passed to the backend connect call.
            cache_name: Name of the independent cache to use.

        Returns:
            The index of the entry for this signature.
        """
        index = CacheIndex(name=cache_name, url=url, options_key=_options_key(options))
        entries = self._connections.setdefault(cache_name, {})
        key = (index.url, index.options_key)
        if key not in entries:
            entries[key] = CacheEntry(index=index)
            logger.debug("Registered connection cache entry %s for %s", cache_name, url)
        return index

    def get(self, index: CacheIndex) -> CacheEntry:
        """Return the entry for ``index``.

        Raises:
            KeyError: If the index was never initialized in this cache.
        """
        return self._connections[index.name][(index.url, index.options_key)]

    def has(self, index: CacheIndex) -> bool:
        entries = self._connections.get(index.name, {})
        return (index.url, index.options_key) in entries

    def is_pending(self, index: CacheIndex) -> bool:
        """True while the entry has neither resolved nor rejected."""
        return not self.get(index).status.is_settled

    def is_opening(self, index: CacheIndex) -> bool:
        """True once an engine has taken responsibility for connecting."""
        return self.get(index).status is CacheStatus.OPENING

    def mark_opening(self, index: CacheIndex) -> None:
        entry = self.get(index)
        if entry.status is not CacheStatus.PENDING:
            raise RuntimeError(f"Cache entry is already {entry.status.value}")
        entry.status = CacheStatus.OPENING

    async def wait_for(self, index: CacheIndex) -> Connection:
        """Wait until the entry settles.

        Returns:
            The cached connection.

        Raises:
            The error the entry was rejected with.
        """
        entry = self.get(index)
        if entry.status is CacheStatus.RESOLVED:
            return Connection(entry.db, entry.client)
        if entry.status is CacheStatus.REJECTED:
            assert entry.error is not None
            raise entry.error

        future: asyncio.Future[Connection] = asyncio.get_running_loop().create_future()
        entry.waiters.append(future)
        return await future

    def resolve(self, index: CacheIndex, db: Any, client: Any) -> None:
        """Settle the entry with an open connection and wake its waiters."""
        entry = self.get(index)
        if entry.status.is_settled:
            raise RuntimeError(f"Cache entry is already {entry.status.value}")
        entry.status = CacheStatus.RESOLVED
        entry.db = db
        entry.client = client

        waiters, entry.waiters = entry.waiters, []
        for future in waiters:
            if not future.done():
                future.set_result(Connection(db, client))
        logger.debug("Connection cache entry %s resolved (%d waiters)", index.name, len(waiters))

    def reject(self, index: CacheIndex, error: BaseException) -> None:
        """Settle the entry with a connect failure and wake its waiters."""
        entry = self.get(index)
        if entry.status.is_settled:
            raise RuntimeError(f"Cache entry is already {entry.status.value}")
        entry.status = CacheStatus.REJECTED
        entry.error = error

        waiters, entry.waiters = entry.waiters, []
        for future in waiters:
            if not future.done():
                future.set_exception(error)
        logger.debug("Connection cache entry %s rejected (%d waiters)", index.name, len(waiters))

    def clear(self) -> None:
        """Forget every entry."""
        self._connections.clear()
