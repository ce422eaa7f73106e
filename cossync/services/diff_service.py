"""Diff engine: classify scanned files against the manifest."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from cossync.services.scan_service import compute_digest, is_excluded

if TYPE_CHECKING:
    from collections.abc import Iterable

    from cossync.services.manifest_service import Manifest, ManifestEntry
    from cossync.services.scan_service import FileRecord

logger = logging.getLogger(__name__)


class UploadDecision(StrEnum):
    """What to do with one scanned file."""

    NEW = "new"
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    SKIP = "skip"


UPLOAD_DECISIONS = frozenset({UploadDecision.NEW, UploadDecision.CHANGED})


@dataclass(frozen=True)
class Classification:
    """A scanned file paired with its decision."""

    record: FileRecord
    decision: UploadDecision
    reason: str = ""

    @property
    def needs_upload(self) -> bool:
        return self.decision in UPLOAD_DECISIONS


def with_digest(record: FileRecord) -> FileRecord:
    """Return the record with its content digest filled in."""
    if record.digest is not None:
        return record
    return replace(record, digest=compute_digest(record.path))


@runtime_checkable
class ComparisonStrategy(Protocol):
    """Decides NEW/CHANGED/UNCHANGED for a file that is not excluded."""

    name: str

    def decide(self, local: FileRecord, entry: ManifestEntry | None) -> Classification:
        """Classify one file against its manifest entry (None when absent)."""
        ...


def _new(local: FileRecord) -> Classification:
    return Classification(local, UploadDecision.NEW, "not in manifest")


def _size_changed(local: FileRecord, entry: ManifestEntry) -> Classification | None:
    if entry.size is not None and entry.size != local.size:
        return Classification(
            local, UploadDecision.CHANGED, f"size {entry.size} -> {local.size}"
        )
    return None


class SizeOnlyStrategy:
    """Fast comparison: equal sizes are treated as unchanged without hashing."""

    name = "size"

    def decide(self, local: FileRecord, entry: ManifestEntry | None) -> Classification:
        if entry is None:
            return _new(local)
        if entry.size is None:
            return Classification(local, UploadDecision.CHANGED, "no recorded size")
        changed = _size_changed(local, entry)
        if changed is not None:
            return changed
        return Classification(local, UploadDecision.UNCHANGED, "same size")


class SizeDigestStrategy:
    """Thorough comparison: size first, then content digest."""

    name = "digest"

    def decide(self, local: FileRecord, entry: ManifestEntry | None) -> Classification:
        if entry is None:
            return _new(local)
        changed = _size_changed(local, entry)
        if changed is not None:
            return changed
        return self._compare_digest(local, entry)

    def _compare_digest(self, local: FileRecord, entry: ManifestEntry) -> Classification:
        digested = with_digest(local)
        if entry.digest is None:
            return Classification(digested, UploadDecision.CHANGED, "no recorded digest")
        if entry.digest != digested.digest:
            return Classification(digested, UploadDecision.CHANGED, "digest mismatch")
        return Classification(digested, UploadDecision.UNCHANGED, "same digest")


class MtimeHintStrategy(SizeDigestStrategy):
    """Size + digest, skipping the digest when size and mtime both match the record.

    A differing mtime alone never marks a file changed; it only means the
    digest has to be computed.
    """

    name = "mtime-hint"

    def decide(self, local: FileRecord, entry: ManifestEntry | None) -> Classification:
        if entry is None:
            return _new(local)
        changed = _size_changed(local, entry)
        if changed is not None:
            return changed
        if entry.size is not None and entry.mtime is not None and entry.mtime == local.modified_at:
            return Classification(local, UploadDecision.UNCHANGED, "same size and mtime")
        return self._compare_digest(local, entry)


STRATEGIES: dict[str, type[ComparisonStrategy]] = {
    SizeOnlyStrategy.name: SizeOnlyStrategy,
    SizeDigestStrategy.name: SizeDigestStrategy,
    MtimeHintStrategy.name: MtimeHintStrategy,
}


def get_strategy(name: str) -> ComparisonStrategy:
    """Return a strategy instance by configuration name."""
    try:
        strategy_cls = STRATEGIES[name]
    except KeyError:
        choices = ", ".join(sorted(STRATEGIES))
        raise ValueError(f"Unknown comparison strategy {name!r} (choose from {choices})") from None
    return strategy_cls()


class DiffEngine:
    """Classifies scanned files; manifest keys with no local file are never touched."""

    def __init__(
        self,
        strategy: ComparisonStrategy | None = None,
        excluded_extensions: Iterable[str] = (),
    ) -> None:
        self.strategy: ComparisonStrategy = strategy or SizeDigestStrategy()
        self.excluded_extensions = tuple(excluded_extensions)

    def classify(self, local: FileRecord, manifest: Manifest) -> Classification:
        if is_excluded(local.key, self.excluded_extensions):
            return Classification(local, UploadDecision.SKIP, "excluded extension")
        return self.strategy.decide(local, manifest.get(local.key))

    def classify_all(
        self, records: Iterable[FileRecord], manifest: Manifest
    ) -> list[Classification]:
        """Classify every record. Files that cannot be read for hashing are skipped."""
        results: list[Classification] = []
        for record in records:
            try:
                result = self.classify(record, manifest)
            except OSError as exc:
                logger.warning("Cannot read %s, skipping: %s", record.path, exc)
                result = Classification(record, UploadDecision.SKIP, f"unreadable: {exc}")
            logger.debug("%s: %s (%s)", record.key, result.decision, result.reason)
            results.append(result)
        return results


def summarize(classifications: Iterable[Classification]) -> dict[UploadDecision, int]:
    """Count classifications per decision (every decision present, zero if unseen)."""
    counts = Counter(c.decision for c in classifications)
    return {decision: counts.get(decision, 0) for decision in UploadDecision}
