"""gridstore - upload storage engine writing files into chunked blob stores."""

from gridstore.cache import ConnectionCache
from gridstore.errors import (
    BackendConnectionError,
    ConfigurationError,
    FileNotFound,
    GeneratorExhausted,
    GridStoreError,
    InvalidSettingsType,
    NamingResolutionError,
    NotConnectedError,
    StreamError,
)
from gridstore.models import Connection, StoredFile, UploadResult, UploadSettings
from gridstore.naming import generate_filename
from gridstore.storage import GridStorage, LifecycleState

__version__ = "0.1.0"

__all__ = [
    "BackendConnectionError",
    "ConfigurationError",
    "Connection",
    "ConnectionCache",
    "FileNotFound",
    "generate_filename",
    "GeneratorExhausted",
    "GridStorage",
    "GridStoreError",
    "InvalidSettingsType",
    "LifecycleState",
    "NamingResolutionError",
    "NotConnectedError",
    "StoredFile",
    "StreamError",
    "UploadResult",
    "UploadSettings",
]
