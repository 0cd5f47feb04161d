"""Resolution of per-upload settings from the user file naming function.

The naming function receives the request and the file descriptor and may be:

- a plain function returning settings (or an awaitable of them),
- a coroutine function,
- a generator function (or generator) yielding settings once per upload.
  The generator is created on the first upload and lives as long as the
  storage engine; every later upload resumes it with ``(request, file)``.
  Async generators are supported the same way.

Accepted settings are ``None``, a number, a string, or a mapping. Numbers and
strings become the filename.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import secrets
from collections.abc import Mapping
from dataclasses import fields
from enum import Enum
from typing import Any, Callable

from bson import ObjectId

from gridstore.errors import ConfigurationError, GeneratorExhausted, InvalidSettingsType
from gridstore.models import DEFAULTS, UploadSettings

logger = logging.getLogger(__name__)

_SETTINGS_FIELDS = frozenset(f.name for f in fields(UploadSettings))


class ResolverKind(Enum):
    """How a naming function produces its value."""

    NONE = "none"
    DIRECT = "direct"
    DEFERRED = "deferred"
    RESUMABLE = "resumable"
    RESUMABLE_ASYNC = "resumable_async"


def classify(file: Any) -> ResolverKind:
    """Pick the resolution strategy for a naming function.

    Raises:
        ConfigurationError: If ``file`` is neither callable nor a generator.
    """
    if file is None:
        return ResolverKind.NONE
    if inspect.isgeneratorfunction(file) or inspect.isgenerator(file):
        return ResolverKind.RESUMABLE
    if inspect.isasyncgenfunction(file) or inspect.isasyncgen(file):
        return ResolverKind.RESUMABLE_ASYNC
    if inspect.iscoroutinefunction(file):
        return ResolverKind.DEFERRED
    if callable(file):
        return ResolverKind.DIRECT
    raise ConfigurationError(
        f"The file option must be a function or a generator, got {type(file).__name__}"
    )


class NamingResolver:
    """Produces the raw settings value for each upload."""

    def __init__(self, file: Any = None) -> None:
        self.kind = classify(file)
        self._file = file
        self._lock: asyncio.Lock | None = None
        self._started = False
        # Generator functions are called lazily with the first upload's arguments
        self._generator: Any = None
        if inspect.isgenerator(file) or inspect.isasyncgen(file):
            self._generator = file

    async def resolve(self, request: Any, file: Any) -> Any:
        """Run the naming function for one upload.

        Returns:
            The value produced by the naming function, awaited if needed.

        Raises:
            GeneratorExhausted: If a generator stops instead of yielding.
        """
        if self.kind is ResolverKind.NONE:
            return None

        if self.kind is ResolverKind.RESUMABLE:
            value = self._advance(request, file)
        elif self.kind is ResolverKind.RESUMABLE_ASYNC:
            value = await self._advance_async(request, file)
        else:
            value = self._file(request, file)

        if inspect.isawaitable(value):
            value = await value
        return value

    def _advance(self, request: Any, file: Any) -> Any:
        if self._generator is None:
            self._generator = self._file(request, file)
        try:
            if not self._started:
                self._started = True
                return next(self._generator)
            return self._generator.send((request, file))
        except StopIteration:
            raise GeneratorExhausted() from None

    async def _advance_async(self, request: Any, file: Any) -> Any:
        # An async generator cannot be resumed while it is already running
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if self._generator is None:
                self._generator = self._file(request, file)
            try:
                if not self._started:
                    self._started = True
                    return await self._generator.__anext__()
                return await self._generator.asend((request, file))
            except StopAsyncIteration:
                raise GeneratorExhausted() from None


def normalize(value: Any) -> dict[str, Any]:
    """Convert a naming function result into a settings mapping.

    Raises:
        InvalidSettingsType: If the value type is not supported.
    """
    if value is None:
        return {}
    # bool is an int subclass but never a valid filename
    if isinstance(value, bool):
        raise InvalidSettingsType(type(value).__name__)
    if isinstance(value, (int, float, str)):
        return {"filename": str(value)}
    if isinstance(value, Mapping):
        return dict(value)
    raise InvalidSettingsType(type(value).__name__)


def generate_filename() -> str:
    """Return a random filename of 32 hexadecimal characters."""
    return secrets.token_hex(16)


def merge_settings(extra: dict[str, Any], file_settings: Mapping[str, Any]) -> UploadSettings:
    """Merge naming function output with defaults and inferred values.

    Precedence, lowest first: generated filename and id, ``DEFAULTS``,
    ``extra`` (values inferred from the file descriptor), ``file_settings``.
    """
    # An empty filename or id counts as missing
    settings = {
        k: v for k, v in file_settings.items() if not (k in ("filename", "id") and not v)
    }

    previous: dict[str, Any] = {}
    if "filename" not in settings:
        previous["filename"] = generate_filename()
    if "id" not in settings:
        previous["id"] = ObjectId()

    merged = {**previous, **DEFAULTS, **extra, **settings}

    unknown = set(merged) - _SETTINGS_FIELDS
    if unknown:
        logger.debug("Ignoring unknown file settings: %s", ", ".join(sorted(unknown)))
    return UploadSettings(**{k: v for k, v in merged.items() if k in _SETTINGS_FIELDS})
