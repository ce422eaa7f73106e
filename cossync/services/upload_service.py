"""Batch uploader: bounded-parallel uploads with per-file retry."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from cossync.exceptions import StoreError, TransientStoreError
from cossync.services.datetime_service import now_utc
from cossync.services.diff_service import with_digest
from cossync.services.manifest_service import ManifestEntry

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from cossync.services.diff_service import Classification
    from cossync.services.manifest_service import Manifest
    from cossync.services.scan_service import FileRecord
    from cossync.storage.base import ObjectStore

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"
LONG_CACHE_CONTROL = "max-age=31536000"


def guess_content_type(key: str) -> str:
    """Guess a Content-Type from the key's extension."""
    content_type, _encoding = mimetypes.guess_type(key)
    return content_type or DEFAULT_CONTENT_TYPE


@dataclass
class UploadResult:
    """Outcome of one upload run."""

    uploaded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    manifest: Manifest | None = None
    batches: int = 0


@dataclass(frozen=True)
class _FileOutcome:
    record: FileRecord
    entry: ManifestEntry | None
    error: str | None = None


class BatchUploader:
    """Uploads NEW/CHANGED files in sequential batches of concurrent transfers.

    Every success is recorded in a new manifest value as soon as its batch
    completes, so an interrupted run loses at most the in-flight batch.
    """

    def __init__(
        self,
        store: ObjectStore,
        *,
        batch_size: int = 20,
        max_retries: int = 2,
        retry_delay: float = 0.3,
        cache_control: str = LONG_CACHE_CONTROL,
        on_batch: Callable[[Manifest], Awaitable[object]] | None = None,
    ) -> None:
        if batch_size < 1:
            msg = f"batch_size must be >= 1, got {batch_size}"
            raise ValueError(msg)
        if max_retries < 0:
            msg = f"max_retries must be >= 0, got {max_retries}"
            raise ValueError(msg)
        self._store = store
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.cache_control = cache_control
        self.on_batch = on_batch

    async def _put_with_retry(self, record: FileRecord) -> None:
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                await self._store.upload_file(
                    record.key,
                    record.path,
                    content_type=guess_content_type(record.key),
                    cache_control=self.cache_control,
                )
                return
            except TransientStoreError as exc:
                logger.warning(
                    "Upload failed (attempt %d/%d): %s - %s", attempt, attempts, record.key, exc
                )
                if attempt == attempts:
                    raise
                await asyncio.sleep(self.retry_delay * attempt)

    async def _upload_one(self, record: FileRecord) -> _FileOutcome:
        try:
            digested = await asyncio.to_thread(with_digest, record)
            await self._put_with_retry(digested)
        except StoreError as exc:
            logger.error("Giving up on %s: %s", record.key, exc)
            return _FileOutcome(record, None, str(exc))
        except OSError as exc:
            logger.error("Cannot read %s: %s", record.path, exc)
            return _FileOutcome(record, None, str(exc))

        logger.info("Uploaded %s (%.1fKB)", record.key, record.size / 1024)
        entry = ManifestEntry(
            key=record.key,
            size=record.size,
            digest=digested.digest,
            mtime=record.modified_at,
            uploaded_at=now_utc(),
        )
        return _FileOutcome(digested, entry)

    async def upload(
        self, classifications: Iterable[Classification], manifest: Manifest
    ) -> UploadResult:
        """Upload every NEW/CHANGED file and return the updated manifest value."""
        result = UploadResult(manifest=manifest)
        pending: list[FileRecord] = []
        for classification in classifications:
            if classification.needs_upload:
                pending.append(classification.record)
            else:
                result.skipped.append(classification.record.key)

        # Small files first
        pending.sort(key=lambda record: record.size)
        total_batches = (len(pending) + self.batch_size - 1) // self.batch_size
        current = manifest

        for start in range(0, len(pending), self.batch_size):
            batch = pending[start : start + self.batch_size]
            result.batches += 1
            logger.info(
                "Batch %d/%d (%d file(s))", result.batches, total_batches, len(batch)
            )
            outcomes = await asyncio.gather(*(self._upload_one(record) for record in batch))

            updates: dict[str, ManifestEntry] = {}
            for outcome in outcomes:
                if outcome.entry is None:
                    result.failed.append(outcome.record.key)
                else:
                    result.uploaded.append(outcome.record.key)
                    updates[outcome.record.key] = outcome.entry
            current = current.with_entries(updates)
            result.manifest = current

            if self.on_batch is not None:
                await self.on_batch(current)

        return result
