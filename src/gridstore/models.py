"""Data model types for gridstore.

These dataclasses describe the settings used to write an upload, the record
reported back by a backend writer, and the result handed to the upload
middleware.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime
from typing import Any, NamedTuple

# Default file information merged beneath the naming function output
DEFAULTS: dict[str, Any] = {
    "metadata": None,
    "chunk_size": 261120,
    "bucket_name": "fs",
    "aliases": None,
}


class Connection(NamedTuple):
    """An open database handle and the client that owns it."""

    db: Any
    client: Any


@dataclass
class UploadSettings:
    """Settings used to create the writer for one upload.

    Attributes:
        filename: Name stored with the file.
        id: Identifier of the stored file.
        metadata: Arbitrary user metadata stored with the file.
        bucket_name: Name of the bucket (collection prefix) to write to.
        chunk_size: Size in bytes of each stored chunk.
        aliases: Optional list of alternative names.
        content_type: MIME type of the file.
        disable_md5: Skip computing the checksum of the stored bytes.
    """

    filename: str
    id: Any
    metadata: Any = None
    bucket_name: str = "fs"
    chunk_size: int = 261120
    aliases: list[str] | None = None
    content_type: str | None = None
    disable_md5: bool = False

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class StoredFile:
    """File record reported by a backend once a write is finalized.

    Attributes:
        id: Identifier of the stored file.
        filename: Stored file name.
        length: Total number of bytes stored.
        chunk_size: Size in bytes of each stored chunk.
        upload_date: When the write was finalized.
        content_type: MIME type recorded by the backend, if any.
        metadata: User metadata recorded by the backend, if any.
        md5: Hex MD5 digest of the bytes, or None when disabled.
    """

    id: Any
    filename: str
    length: int
    chunk_size: int
    upload_date: datetime
    content_type: str | None = None
    metadata: Any = None
    md5: str | None = None


@dataclass(frozen=True)
class UploadResult:
    """Metadata of a successfully stored upload.

    Identity fields come from the settings the upload was written with; the
    remaining fields are the ones the backend reported.
    """

    id: Any
    filename: str
    metadata: Any
    bucket_name: str
    chunk_size: int
    size: int
    checksum: str | None
    upload_date: datetime
    content_type: str | None

    @classmethod
    def build(cls, settings: UploadSettings, stored: StoredFile) -> "UploadResult":
        return cls(
            id=settings.id,
            filename=settings.filename,
            metadata=settings.metadata,
            bucket_name=settings.bucket_name,
            chunk_size=stored.chunk_size,
            size=stored.length,
            checksum=stored.md5,
            upload_date=stored.upload_date,
            content_type=stored.content_type,
        )

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)
