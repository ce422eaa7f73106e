"""Base protocol and data classes for remote object stores."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from pathlib import Path


@dataclass(frozen=True)
class StoredObject:
    """An object fetched from the store."""

    key: str
    body: bytes
    etag: str | None = None

    @property
    def size(self) -> int:
        return len(self.body)


@dataclass(frozen=True)
class ObjectSummary:
    """One entry of a bucket listing."""

    key: str
    size: int
    etag: str | None = None


@runtime_checkable
class ObjectStore(Protocol):
    """Protocol for the bucket operations the uploader needs."""

    async def get_object(self, key: str) -> StoredObject:
        """Fetch an object. Raises ObjectNotFoundError when the key is absent."""
        ...

    async def put_object(
        self,
        key: str,
        body: bytes,
        *,
        content_type: str,
        cache_control: str,
        if_match: str | None = None,
        if_none_match: str | None = None,
    ) -> str | None:
        """Write an in-memory body and return the new ETag."""
        ...

    async def upload_file(
        self,
        key: str,
        path: Path,
        *,
        content_type: str,
        cache_control: str,
    ) -> None:
        """Stream a local file to the given key."""
        ...

    async def copy_object(
        self, source_key: str, dest_key: str, *, content_type: str, cache_control: str
    ) -> None:
        """Copy an object server-side."""
        ...

    async def list_objects(self, prefix: str) -> list[ObjectSummary]:
        """List every object under a key prefix."""
        ...

