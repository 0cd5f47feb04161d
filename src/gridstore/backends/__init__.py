"""Blob store backends for gridstore."""

from typing import Any

from gridstore.backends.backend import (
    TRANSPORT_SIGNALS,
    BlobClient,
    BlobDatabase,
    BucketDatabase,
    GridStore,
    GridStoreDatabase,
    UploadStream,
)
from gridstore.errors import ConfigurationError

__all__ = [
    "BlobClient",
    "BlobDatabase",
    "BucketDatabase",
    "connect",
    "get_database",
    "GridStore",
    "GridStoreDatabase",
    "TRANSPORT_SIGNALS",
    "UploadStream",
]


async def connect(url: str, options: dict[str, Any] | None = None) -> BlobClient:
    """Open a client for the blob store named by ``url``.

    Supported schemes: ``memory://<name>``, ``sqlite://<path>``,
    ``mongodb://`` and ``mongodb+srv://``.

    Raises:
        ConfigurationError: If the URL scheme is not supported.
    """
    scheme = url.split("://", 1)[0].lower() if "://" in url else ""

    if scheme == "memory":
        from gridstore.backends.memory import connect as connect_memory

        return await connect_memory(url[len("memory://") :], options)

    elif scheme == "sqlite":
        from gridstore.backends.sqlite import connect as connect_sqlite

        return await connect_sqlite(url, options)

    elif scheme in ("mongodb", "mongodb+srv"):
        from gridstore.backends.mongo import connect as connect_mongo

        return await connect_mongo(url, options)

    else:
        raise ConfigurationError(f"Unsupported blob store URL scheme: {scheme or url!r}")


def get_database(handle: Any) -> Any:
    """Normalize a database handle supplied by the caller.

    pymongo databases and clients are wrapped so that they expose the
    bucket interface; clients are resolved to their default database. Any
    other handle is returned unchanged.
    """
    from pymongo import AsyncMongoClient
    from pymongo.asynchronous.database import AsyncDatabase

    if isinstance(handle, AsyncDatabase):
        from gridstore.backends.mongo import wrap_database

        return wrap_database(handle)
    if isinstance(handle, AsyncMongoClient):
        from gridstore.backends.mongo import wrap_client

        return wrap_client(handle).get_default_database()
    get_default = getattr(handle, "get_default_database", None)
    if callable(get_default) and not isinstance(handle, (BucketDatabase, GridStoreDatabase)):
        return get_default()
    return handle
