"""Shared pytest fixtures for gridstore tests.

A single FastAPI app is created per test session to avoid duplicate
Prometheus metric registration errors (the instrumentator registers
collectors in the global prometheus_client registry).

The storage engine is attached to the app per test rather than through the
lifespan, which does not run with ASGITransport.
"""

import uuid
from types import SimpleNamespace

import pytest
from httpx import ASGITransport, AsyncClient

from gridstore.backends import memory
from gridstore.cache import ConnectionCache
from gridstore.config import GridStoreConfig, ServerConfig, StorageConfig
from gridstore.server import create_app, default_naming
from gridstore.storage import GridStorage


def make_file(content_type="text/plain", **extra):
    """File descriptor as an upload middleware would hand it over."""
    return SimpleNamespace(content_type=content_type, **extra)


@pytest.fixture
def cache() -> ConnectionCache:
    """An isolated connection cache."""
    return ConnectionCache()


@pytest.fixture
def store_name():
    """A unique memory store name, dropped after the test."""
    name = f"test-{uuid.uuid4().hex}"
    yield name
    memory.drop_store(name)


@pytest.fixture
def memory_url(store_name) -> str:
    return f"memory://{store_name}"


@pytest.fixture
async def storage(memory_url, cache) -> GridStorage:
    """A connected engine over a fresh memory store."""
    engine = GridStorage(memory_url, cache_registry=cache)
    await engine.ready()
    yield engine
    await engine.close()


@pytest.fixture(scope="session")
def config() -> GridStoreConfig:
    return GridStoreConfig(
        server=ServerConfig(host="127.0.0.1", port=8010),
        storage=StorageConfig(url="memory://app", bucket_name="uploads", chunk_size=4),
    )


@pytest.fixture(scope="session")
def app(config: GridStoreConfig):
    """Create a single test FastAPI application for the whole session."""
    return create_app(config)


@pytest.fixture
async def client(app, config, memory_url, cache) -> AsyncClient:
    """Async test client with a fresh storage engine attached to the app."""
    engine = GridStorage(
        memory_url,
        file=default_naming(config.storage),
        cache_registry=cache,
    )
    await engine.ready()
    app.state.storage = engine

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.state.storage = None
    await engine.close()
