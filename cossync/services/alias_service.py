"""Compatibility aliases: hashed ``_astro`` images mirrored under ``assets/``.

Older pages reference build images as ``assets/<name>.<hash>.<ext>``; the
current build emits them under ``_astro/``. The alias is a server-side copy,
so the hashed filename stays intact and cache-safe.
"""

from __future__ import annotations

import logging
import posixpath
import re
from typing import TYPE_CHECKING

from cossync.exceptions import StoreError
from cossync.services.datetime_service import now_utc
from cossync.services.manifest_service import ManifestEntry
from cossync.services.upload_service import LONG_CACHE_CONTROL, guess_content_type

if TYPE_CHECKING:
    from collections.abc import Collection, Iterable

    from cossync.services.manifest_service import Manifest
    from cossync.services.scan_service import FileRecord
    from cossync.storage.base import ObjectStore

logger = logging.getLogger(__name__)

SOURCE_PREFIX = "_astro/"
ALIAS_PREFIX = "assets/"
_IMAGE_PATTERN = re.compile(r"\.(jpe?g|png|gif|webp|svg)$", re.IGNORECASE)


def alias_key(key: str) -> str | None:
    """Return the ``assets/`` alias for an ``_astro`` image key, else None."""
    if not key.startswith(SOURCE_PREFIX) or not _IMAGE_PATTERN.search(key):
        return None
    return ALIAS_PREFIX + posixpath.basename(key)


def plan_aliases(
    records: Iterable[FileRecord],
    manifest: Manifest,
    exclude: Collection[str] = (),
) -> list[tuple[FileRecord, str]]:
    """Return (source record, alias key) pairs whose alias is not yet in the manifest.

    Sources listed in ``exclude`` (e.g. keys that failed to upload) are left out.
    """
    planned: list[tuple[FileRecord, str]] = []
    seen: set[str] = set()
    for record in records:
        target = alias_key(record.key)
        if target is None or record.key in exclude:
            continue
        if target in manifest or target in seen:
            continue
        seen.add(target)
        planned.append((record, target))
    return planned


async def create_aliases(
    store: ObjectStore,
    records: Iterable[FileRecord],
    manifest: Manifest,
    *,
    exclude: Collection[str] = (),
    cache_control: str = LONG_CACHE_CONTROL,
) -> tuple[Manifest, list[str]]:
    """Copy missing aliases and return the updated manifest and the created keys."""
    updates: dict[str, ManifestEntry] = {}
    for record, target in plan_aliases(records, manifest, exclude):
        try:
            await store.copy_object(
                record.key,
                target,
                content_type=guess_content_type(target),
                cache_control=cache_control,
            )
        except StoreError as exc:
            logger.warning("Failed to alias %s -> %s: %s", record.key, target, exc)
            continue
        source = manifest.get(record.key)
        updates[target] = ManifestEntry(
            key=target,
            size=record.size,
            digest=source.digest if source else record.digest,
            mtime=record.modified_at,
            uploaded_at=now_utc(),
            mapped_from=record.key,
        )
        logger.info("Alias %s -> %s", record.key, target)

    if updates:
        logger.info("Created %d alias(es)", len(updates))
    return manifest.with_entries(updates), list(updates)
