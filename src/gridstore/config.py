"""Configuration loading and Pydantic models for gridstore."""

from pathlib import Path
from typing import Any, Union

import yaml
from pydantic import BaseModel, Field


class ServerConfig(BaseModel):
    """Server binding and logging configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    log_format: str = "text"


class StorageConfig(BaseModel):
    """Blob store connection and default file layout."""

    url: str = "memory://default"
    options: dict[str, Any] = Field(default_factory=dict)
    cache: Union[bool, str] = False
    bucket_name: str = "fs"
    chunk_size: int = 261120


class ObservabilityConfig(BaseModel):
    """Metrics and health endpoint toggles."""

    metrics: bool = True
    health_check: bool = True


class GridStoreConfig(BaseModel):
    """Top-level gridstore configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


def _parse_server(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the server section from YAML data into a dict for Pydantic."""
    if data is None:
        return {}
    return {
        "host": data.get("host", "0.0.0.0"),
        "port": data.get("port", 8000),
        "log_level": data.get("log_level", "INFO"),
        "log_format": data.get("log_format", "text"),
    }


def _parse_storage(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the storage section from YAML data.

    Handles the nested structure: storage.connection.url -> url, and
    storage.connection.options -> options. A flat ``url`` key wins.
    """
    if data is None:
        return {}

    result: dict[str, Any] = {}
    connection = data.get("connection")
    if isinstance(connection, dict):
        if "url" in connection:
            result["url"] = connection["url"]
        result["options"] = connection.get("options") or {}

    if "url" in data:
        result["url"] = data["url"]
    if "options" in data:
        result["options"] = data["options"] or {}

    for key in ("cache", "bucket_name", "chunk_size"):
        if key in data:
            result[key] = data[key]
    return result


def _parse_observability(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the observability section from YAML data."""
    if data is None:
        return {}
    return {
        "metrics": data.get("metrics", True),
        "health_check": data.get("health_check", True),
    }


def load_config(path: Path) -> GridStoreConfig:
    """Load a GridStoreConfig from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        A fully populated GridStoreConfig validated by Pydantic.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    with open(path, "r") as fh:
        raw: dict[str, Any] = yaml.safe_load(fh) or {}

    return GridStoreConfig(
        server=ServerConfig(**_parse_server(raw.get("server"))),
        storage=StorageConfig(**_parse_storage(raw.get("storage"))),
        observability=ObservabilityConfig(**_parse_observability(raw.get("observability"))),
    )
