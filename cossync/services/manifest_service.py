"""Remote manifest: load, parse, serialize, and save with optimistic concurrency."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any

from cossync.exceptions import (
    ManifestConflictError,
    ObjectNotFoundError,
    PreconditionFailedError,
    StoreError,
)
from cossync.services.datetime_service import format_iso, parse_datetime, parse_epoch

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

    from cossync.storage.base import ObjectStore

logger = logging.getLogger(__name__)

DEFAULT_MANIFEST_KEY = ".upload-manifest.json"
MANIFEST_CONTENT_TYPE = "application/json"
MANIFEST_CACHE_CONTROL = "no-cache"


@dataclass(frozen=True)
class ManifestEntry:
    """The uploader's belief about one remote object."""

    key: str
    size: int | None = None
    digest: str | None = None
    mtime: float | None = None
    uploaded_at: datetime | None = None
    mapped_from: str | None = None
    legacy: bool = field(default=False, compare=False)


@dataclass(frozen=True)
class Manifest:
    """A versioned snapshot of the remote manifest.

    ``etag`` is the version token observed on load (or returned by the last
    save); ``exists`` records whether the remote object existed at all.
    """

    entries: Mapping[str, ManifestEntry] = field(default_factory=dict)
    etag: str | None = None
    exists: bool = False

    def get(self, key: str) -> ManifestEntry | None:
        return self.entries.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self.entries)

    def with_entries(self, updates: Mapping[str, ManifestEntry]) -> Manifest:
        """Return a new manifest with the given entries added or replaced."""
        if not updates:
            return self
        merged = dict(self.entries)
        merged.update(updates)
        return replace(self, entries=merged)


def _parse_size(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int) and value >= 0:
        return value
    if isinstance(value, float) and value.is_integer() and value >= 0:
        return int(value)
    return None


def _parse_mtime(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return parse_epoch(float(value))
    if isinstance(value, str):
        try:
            return parse_datetime(value).timestamp()
        except ValueError:
            return None
    return None


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return parse_datetime(value)
    except ValueError:
        return None


def parse_entry(key: str, raw: Any) -> ManifestEntry | None:
    """Parse one manifest value.

    Accepts the legacy bare digest string and the structured object form.
    Structured entries may use the older ``hash``/``uploadTime`` field names.
    Returns None for values of any other shape.
    """
    if isinstance(raw, str):
        return ManifestEntry(key=key, digest=raw or None, legacy=True)
    if not isinstance(raw, dict):
        return None

    digest = raw.get("digest", raw.get("hash"))
    mapped_from = raw.get("mappedFrom")
    return ManifestEntry(
        key=key,
        size=_parse_size(raw.get("size")),
        digest=digest if isinstance(digest, str) and digest else None,
        mtime=_parse_mtime(raw.get("mtime")),
        uploaded_at=_parse_timestamp(raw.get("uploadedAt", raw.get("uploadTime"))),
        mapped_from=mapped_from if isinstance(mapped_from, str) else None,
    )


def parse_manifest(data: Any) -> dict[str, ManifestEntry]:
    """Parse a decoded manifest document into entries.

    Raises ValueError when the top level is not a JSON object. Malformed
    individual entries are dropped with a warning.
    """
    if not isinstance(data, dict):
        raise ValueError(f"Manifest must be a JSON object, got {type(data).__name__}")
    entries: dict[str, ManifestEntry] = {}
    for key, raw in data.items():
        entry = parse_entry(key, raw)
        if entry is None:
            logger.warning("Dropping malformed manifest entry for %s", key)
            continue
        entries[key] = entry
    return entries


def entry_to_dict(entry: ManifestEntry) -> dict[str, Any]:
    """Serialize an entry in the structured shape, omitting unknown fields."""
    data: dict[str, Any] = {
        "size": entry.size,
        "digest": entry.digest,
        "mtime": entry.mtime,
        "uploadedAt": format_iso(entry.uploaded_at) if entry.uploaded_at else None,
        "mappedFrom": entry.mapped_from,
    }
    return {k: v for k, v in data.items() if v is not None}


def dumps(manifest: Manifest) -> str:
    """Serialize a manifest deterministically (sorted keys, 2-space indent)."""
    data = {key: entry_to_dict(entry) for key, entry in manifest.entries.items()}
    return json.dumps(data, indent=2, sort_keys=True)


class ManifestStore:
    """Reads and writes the manifest object in the bucket."""

    def __init__(
        self,
        store: ObjectStore,
        key: str = DEFAULT_MANIFEST_KEY,
        *,
        conditional_writes: bool = True,
    ) -> None:
        self._store = store
        self.key = key
        self.conditional_writes = conditional_writes

    async def load(self) -> Manifest:
        """Load the manifest. Never raises; any failure yields an empty manifest."""
        try:
            obj = await self._store.get_object(self.key)
        except ObjectNotFoundError:
            logger.info("No manifest at %s, starting from an empty manifest", self.key)
            return Manifest()
        except StoreError as exc:
            logger.warning("Could not load manifest %s, using an empty one: %s", self.key, exc)
            return Manifest()

        try:
            entries = parse_manifest(json.loads(obj.body))
        except ValueError as exc:
            # json.JSONDecodeError and UnicodeDecodeError are ValueErrors
            logger.warning("Manifest %s is malformed, using an empty one: %s", self.key, exc)
            return Manifest(etag=obj.etag, exists=True)

        logger.info("Loaded manifest with %d entries", len(entries))
        return Manifest(entries=entries, etag=obj.etag, exists=True)

    async def save(self, manifest: Manifest) -> Manifest:
        """Write the manifest and return it carrying the new version token.

        Raises ManifestConflictError when another writer changed the manifest
        since it was loaded, StoreError for other write failures.
        """
        if_match: str | None = None
        if_none_match: str | None = None
        if self.conditional_writes:
            if manifest.etag:
                if_match = manifest.etag
            elif not manifest.exists:
                if_none_match = "*"

        try:
            etag = await self._store.put_object(
                self.key,
                dumps(manifest).encode("utf-8"),
                content_type=MANIFEST_CONTENT_TYPE,
                cache_control=MANIFEST_CACHE_CONTROL,
                if_match=if_match,
                if_none_match=if_none_match,
            )
        except PreconditionFailedError as exc:
            msg = f"Manifest {self.key} was modified by another run"
            raise ManifestConflictError(msg) from exc
        return replace(manifest, etag=etag, exists=True)


class ManifestWriter:
    """Persists successive manifest values; repeated identical writes are skipped.

    Save failures are logged, never raised: a manifest that lags behind the
    bucket only costs redundant uploads on the next run.
    """

    def __init__(self, manifest_store: ManifestStore, manifest: Manifest) -> None:
        self._store = manifest_store
        self.manifest = manifest
        self._saved_body = dumps(manifest)
        self.saves = 0
        self.conflicted = False
        self.last_error: str | None = None

    def update(self, manifest: Manifest) -> None:
        """Adopt new entries while keeping the writer's version token."""
        self.manifest = replace(self.manifest, entries=dict(manifest.entries))

    async def flush(self, manifest: Manifest | None = None) -> bool:
        """Save the current manifest if it changed. Returns True if a write happened."""
        if manifest is not None:
            self.update(manifest)
        body = dumps(self.manifest)
        if body == self._saved_body:
            return False
        if self.conflicted:
            logger.warning("Skipping manifest save after an earlier conflict")
            return False

        try:
            self.manifest = await self._store.save(self.manifest)
        except ManifestConflictError as exc:
            self.conflicted = True
            self.last_error = str(exc)
            logger.error("%s; not overwriting it. Re-run the deployment to reconcile.", exc)
            return False
        except StoreError as exc:
            self.last_error = str(exc)
            logger.error("Failed to save manifest: %s", exc)
            logger.warning("The next deployment may re-upload files from this run")
            return False

        self._saved_body = body
        self.saves += 1
        self.last_error = None
        logger.info("Manifest saved (%d entries)", len(self.manifest))
        return True


def describe_manifest(manifest: Manifest, limit: int = 10) -> list[str]:
    """Render a short human-readable listing of a manifest."""
    if not manifest.exists:
        return ["No manifest found"]
    lines = [f"Manifest contains {len(manifest)} file record(s)"]
    for key in list(manifest)[:limit]:
        entry = manifest.entries[key]
        if entry.legacy:
            lines.append(f"  {key} (legacy digest: {entry.digest})")
            continue
        size = f"{entry.size} bytes" if entry.size is not None else "size unknown"
        when = format_iso(entry.uploaded_at) if entry.uploaded_at else "upload time unknown"
        suffix = f", alias of {entry.mapped_from}" if entry.mapped_from else ""
        lines.append(f"  {key} ({size}, {when}{suffix})")
    if len(manifest) > limit:
        lines.append(f"  ... and {len(manifest) - limit} more")
    return lines
