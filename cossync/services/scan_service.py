"""Local file scanner: build output -> storage keys."""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

DIGEST_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class FileRecord:
    """One on-disk asset eligible for upload."""

    key: str
    path: Path
    size: int
    modified_at: float
    digest: str | None = None


def compute_digest(path: Path) -> str:
    """Compute the MD5 hex digest of a file, streaming in 64 KiB chunks."""
    md5 = hashlib.md5()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(DIGEST_CHUNK_SIZE), b""):
            md5.update(chunk)
    return md5.hexdigest()


def is_excluded(name: str, excluded_extensions: Iterable[str]) -> bool:
    """Return True when the file extension is in the exclusion list (case-insensitive)."""
    ext = os.path.splitext(name)[1].lower()
    return ext in {e.lower() for e in excluded_extensions}


def to_storage_key(relative: str, strip_prefixes: Iterable[str] = ()) -> str:
    """Normalize a relative path into a storage key.

    Backslashes become forward slashes and the first matching build-layout
    prefix (e.g. ``client/``) is removed so both layouts map to one key.
    """
    key = relative.replace("\\", "/").lstrip("/")
    for prefix in strip_prefixes:
        if prefix and key.startswith(prefix):
            return key[len(prefix) :]
    return key


def _log_walk_error(error: OSError) -> None:
    logger.warning("Skipping unreadable directory %s: %s", error.filename, error.strerror)


def scan_root(
    base_dir: Path,
    root: Path,
    *,
    excluded_extensions: Iterable[str] = (),
    strip_prefixes: Iterable[str] = (),
) -> list[FileRecord]:
    """Scan one directory tree; keys are relative to base_dir."""
    excluded = tuple(excluded_extensions)
    prefixes = tuple(strip_prefixes)
    records: list[FileRecord] = []
    for dirpath, _dirs, files in os.walk(root, onerror=_log_walk_error):
        for filename in files:
            if is_excluded(filename, excluded):
                continue
            full = Path(dirpath) / filename
            try:
                stat = full.stat()
            except OSError as exc:
                logger.warning("Skipping unreadable file %s: %s", full, exc)
                continue
            if not full.is_file():
                continue
            rel = full.relative_to(base_dir).as_posix()
            records.append(
                FileRecord(
                    key=to_storage_key(rel, prefixes),
                    path=full,
                    size=stat.st_size,
                    modified_at=stat.st_mtime,
                )
            )
    return records


def scan_roots(
    base_dir: Path,
    roots: Iterable[str],
    *,
    excluded_extensions: Iterable[str] = (),
    strip_prefixes: Iterable[str] = (),
) -> list[FileRecord]:
    """Scan several roots under base_dir into a deduplicated record list.

    When two roots produce the same key the first root wins, so list the
    preferred build layout first.
    """
    excluded = tuple(excluded_extensions)
    prefixes = tuple(strip_prefixes)
    by_key: dict[str, FileRecord] = {}
    for root in roots:
        root_path = base_dir / root
        if not root_path.is_dir():
            logger.info("Scan root not found, skipping: %s", root_path)
            continue
        found = scan_root(
            base_dir, root_path, excluded_extensions=excluded, strip_prefixes=prefixes
        )
        logger.info("Scanned %s: %d file(s)", root, len(found))
        for record in found:
            if record.key in by_key:
                logger.debug("Duplicate key %s from %s ignored", record.key, record.path)
                continue
            by_key[record.key] = record
    return list(by_key.values())
