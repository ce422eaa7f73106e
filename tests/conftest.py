"""Shared test fixtures for cossync."""

from __future__ import annotations

import os
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import pytest

from cossync.config import DEFAULT_SCAN_ROOTS
from cossync.exceptions import ObjectNotFoundError, PreconditionFailedError, StoreError
from cossync.services.reconcile_service import ReconcileOptions
from cossync.storage.base import ObjectSummary, StoredObject

if TYPE_CHECKING:
    from pathlib import Path

# A fixed mtime so size+mtime comparisons are deterministic across runs.
FIXED_MTIME = 1_700_000_000.0


@dataclass
class StoreCall:
    """One recorded call against the in-memory store."""

    method: str
    key: str
    headers: dict[str, str | None] = field(default_factory=dict)


class MemoryObjectStore:
    """In-memory ObjectStore with ETag versioning and injectable failures.

    ETags are ``"v<n>"`` and change on every write, so conditional writes
    behave like the real store: ``if_match`` must equal the current ETag and
    ``if_none_match="*"`` only succeeds while the key is absent.
    """

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.etags: dict[str, str] = {}
        self.headers: dict[str, dict[str, str]] = {}
        self.calls: list[StoreCall] = []
        self._failures: dict[str, list[StoreError]] = defaultdict(list)
        self._always_fail: dict[str, StoreError] = {}
        self._version = 0
        self.closed = False

    # -- test helpers -------------------------------------------------

    def fail_next(self, key: str, *errors: StoreError) -> None:
        """Queue errors raised by the next writes/reads of ``key``, in order."""
        self._failures[key].extend(errors)

    def fail_always(self, key: str, error: StoreError) -> None:
        self._always_fail[key] = error

    def seed(self, key: str, body: bytes) -> str:
        """Store an object directly, bypassing the call log."""
        return self._write(key, body, {})

    def calls_for(self, method: str) -> list[StoreCall]:
        return [call for call in self.calls if call.method == method]

    def uploaded_keys(self) -> list[str]:
        return [call.key for call in self.calls_for("upload_file")]

    def close(self) -> None:
        self.closed = True

    def _maybe_fail(self, key: str) -> None:
        if key in self._always_fail:
            raise self._always_fail[key]
        queued = self._failures.get(key)
        if queued:
            raise queued.pop(0)

    def _write(self, key: str, body: bytes, headers: dict[str, str]) -> str:
        self._version += 1
        etag = f'"v{self._version}"'
        self.objects[key] = body
        self.etags[key] = etag
        self.headers[key] = headers
        return etag

    # -- ObjectStore --------------------------------------------------

    async def get_object(self, key: str) -> StoredObject:
        self.calls.append(StoreCall("get_object", key))
        self._maybe_fail(key)
        if key not in self.objects:
            raise ObjectNotFoundError(key)
        return StoredObject(key=key, body=self.objects[key], etag=self.etags[key])

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
        self.calls.append(
            StoreCall(
                "put_object",
                key,
                {"if_match": if_match, "if_none_match": if_none_match},
            )
        )
        self._maybe_fail(key)
        if if_match is not None and self.etags.get(key) != if_match:
            raise PreconditionFailedError(f"ETag mismatch for {key}")
        if if_none_match == "*" and key in self.objects:
            raise PreconditionFailedError(f"{key} already exists")
        return self._write(
            key, body, {"content_type": content_type, "cache_control": cache_control}
        )

    async def upload_file(
        self,
        key: str,
        path: Path,
        *,
        content_type: str,
        cache_control: str,
    ) -> None:
        self.calls.append(StoreCall("upload_file", key))
        self._maybe_fail(key)
        self._write(
            key,
            path.read_bytes(),
            {"content_type": content_type, "cache_control": cache_control},
        )

    async def copy_object(
        self, source_key: str, dest_key: str, *, content_type: str, cache_control: str
    ) -> None:
        self.calls.append(StoreCall("copy_object", dest_key, {"source": source_key}))
        self._maybe_fail(dest_key)
        if source_key not in self.objects:
            raise ObjectNotFoundError(source_key)
        self._write(
            dest_key,
            self.objects[source_key],
            {"content_type": content_type, "cache_control": cache_control},
        )

    async def list_objects(self, prefix: str) -> list[ObjectSummary]:
        self.calls.append(StoreCall("list_objects", prefix))
        self._maybe_fail(prefix)
        return [
            ObjectSummary(key=key, size=len(body), etag=self.etags[key])
            for key, body in sorted(self.objects.items())
            if key.startswith(prefix)
        ]


def write_file(base: Path, relative: str, content: bytes | str) -> Path:
    """Write a file under base with a fixed mtime."""
    path = base / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, str):
        content = content.encode("utf-8")
    path.write_bytes(content)
    os.utime(path, (FIXED_MTIME, FIXED_MTIME))
    return path


@pytest.fixture
def store() -> MemoryObjectStore:
    return MemoryObjectStore()


@pytest.fixture
def dist_dir(tmp_path: Path) -> Path:
    """A server-mode build: assets under dist/client, plus excluded files."""
    dist = tmp_path / "dist"
    write_file(dist, "client/assets/app.js", "console.log('app');")
    write_file(dist, "client/assets/app.js.map", '{"version":3}')
    write_file(dist, "client/assets/style.css", "body { margin: 0; }")
    write_file(dist, "client/fonts/inter.woff2", b"\x00woff2-font-data")
    write_file(dist, "client/_astro/hero.abc123.png", b"\x89PNG-hero")
    write_file(dist, "client/images/logo.svg", "<svg></svg>")
    write_file(dist, "client/images/README.md", "# images")
    return dist


@pytest.fixture
def options(dist_dir: Path) -> ReconcileOptions:
    return ReconcileOptions(
        dist_dir=dist_dir,
        roots=DEFAULT_SCAN_ROOTS,
        retry_delay=0.0,
    )
