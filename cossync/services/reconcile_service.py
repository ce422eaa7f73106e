"""Reconciliation run: scan -> load manifest -> diff -> upload batches -> save manifest."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Literal

from cossync.services.alias_service import create_aliases
from cossync.services.diff_service import DiffEngine, UploadDecision, get_strategy, summarize
from cossync.services.manifest_service import ManifestStore, ManifestWriter
from cossync.services.scan_service import scan_roots
from cossync.services.upload_service import BatchUploader
from cossync.services.verify_service import cdn_url

if TYPE_CHECKING:
    from pathlib import Path

    from cossync.config import Settings
    from cossync.services.diff_service import Classification, ComparisonStrategy
    from cossync.services.manifest_service import Manifest
    from cossync.services.scan_service import FileRecord
    from cossync.storage.base import ObjectStore

logger = logging.getLogger(__name__)


class ReconcilePhase(StrEnum):
    """Phases of one reconciliation run, in order."""

    SCAN = "scan"
    LOAD_MANIFEST = "load_manifest"
    DIFF = "diff"
    UPLOAD_BATCHES = "upload_batches"
    SAVE_MANIFEST = "save_manifest"
    DONE = "done"


@dataclass(frozen=True)
class ReconcileOptions:
    """Tunables for one run; see ``Settings`` for the defaults."""

    dist_dir: Path
    roots: tuple[str, ...]
    manifest_key: str = ".upload-manifest.json"
    strip_prefixes: tuple[str, ...] = ("client/",)
    excluded_extensions: tuple[str, ...] = (".map", ".txt", ".md")
    batch_size: int = 20
    max_retries: int = 2
    retry_delay: float = 0.3
    cache_control: str = "max-age=31536000"
    save_mode: Literal["batch", "end"] = "batch"
    conditional_writes: bool = True
    asset_aliases: bool = False
    cdn_domain: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: object) -> ReconcileOptions:
        values: dict[str, object] = {
            "dist_dir": settings.dist_dir,
            "roots": tuple(settings.scan_roots),
            "manifest_key": settings.manifest_key,
            "strip_prefixes": tuple(settings.strip_prefixes),
            "excluded_extensions": tuple(settings.excluded_extensions),
            "batch_size": settings.batch_size,
            "max_retries": settings.max_retries,
            "retry_delay": settings.retry_delay,
            "cache_control": settings.cache_control,
            "save_mode": settings.manifest_save_mode,
            "conditional_writes": settings.conditional_manifest_writes,
            "asset_aliases": settings.asset_aliases,
            "cdn_domain": settings.cdn_domain,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)  # type: ignore[arg-type]


@dataclass
class ReconcileReport:
    """What a run did; rendered as the final summary."""

    total: int = 0
    uploaded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    unchanged: int = 0
    skipped: int = 0
    aliased: list[str] = field(default_factory=list)
    to_upload: list[Classification] = field(default_factory=list)
    purge_hints: list[str] = field(default_factory=list)
    phases: list[ReconcilePhase] = field(default_factory=list)
    manifest_saved: bool = False
    manifest_error: str | None = None
    dry_run: bool = False
    elapsed: float = 0.0

    def format_summary(self) -> str:
        lines = [
            "Upload summary:" if not self.dry_run else "Upload plan (dry run):",
            f"  Elapsed:    {self.elapsed:.1f}s",
            f"  Scanned:    {self.total}",
        ]
        if self.dry_run:
            lines.append(f"  To upload:  {len(self.to_upload)}")
        else:
            lines.append(f"  Uploaded:   {len(self.uploaded)}")
        lines.append(f"  Unchanged:  {self.unchanged}")
        lines.append(f"  Skipped:    {self.skipped}")
        if not self.dry_run:
            lines.append(f"  Failed:     {len(self.failed)}")
        if self.aliased:
            lines.append(f"  Aliased:    {len(self.aliased)}")
        if self.uploaded and self.elapsed > 0:
            lines.append(f"  Rate:       {len(self.uploaded) / self.elapsed:.1f} file(s)/s")
        for key in self.failed:
            lines.append(f"    ! {key} (failed)")
        if self.manifest_error:
            lines.append(f"  Manifest not saved: {self.manifest_error}")
        if self.purge_hints:
            lines.append("  Purge from CDN cache:")
            lines.extend(f"    {url}" for url in self.purge_hints)
        return "\n".join(lines)


class Reconciler:
    """Runs one reconciliation pass for a bucket."""

    def __init__(
        self,
        store: ObjectStore,
        options: ReconcileOptions,
        strategy: ComparisonStrategy | str = "digest",
    ) -> None:
        self._store = store
        self.options = options
        if isinstance(strategy, str):
            strategy = get_strategy(strategy)
        self.engine = DiffEngine(strategy, options.excluded_extensions)
        self.manifest_store = ManifestStore(
            store, options.manifest_key, conditional_writes=options.conditional_writes
        )

    def _enter(self, report: ReconcileReport, phase: ReconcilePhase) -> None:
        logger.debug("Phase: %s", phase)
        report.phases.append(phase)

    def scan(self) -> list[FileRecord]:
        return scan_roots(
            self.options.dist_dir,
            self.options.roots,
            excluded_extensions=self.options.excluded_extensions,
            strip_prefixes=self.options.strip_prefixes,
        )

    async def run(self, *, dry_run: bool = False) -> ReconcileReport:
        started = time.monotonic()
        report = ReconcileReport(dry_run=dry_run)

        self._enter(report, ReconcilePhase.SCAN)
        records = await asyncio.to_thread(self.scan)
        report.total = len(records)

        self._enter(report, ReconcilePhase.LOAD_MANIFEST)
        manifest = await self.manifest_store.load()

        self._enter(report, ReconcilePhase.DIFF)
        classifications = await asyncio.to_thread(self.engine.classify_all, records, manifest)
        counts = summarize(classifications)
        report.unchanged = counts[UploadDecision.UNCHANGED]
        report.skipped = counts[UploadDecision.SKIP]
        report.to_upload = [c for c in classifications if c.needs_upload]
        logger.info(
            "Diff: %d new, %d changed, %d unchanged, %d skipped",
            counts[UploadDecision.NEW],
            counts[UploadDecision.CHANGED],
            report.unchanged,
            report.skipped,
        )

        if dry_run:
            report.elapsed = time.monotonic() - started
            return report

        writer = ManifestWriter(self.manifest_store, manifest)
        if report.to_upload or self.options.asset_aliases:
            self._enter(report, ReconcilePhase.UPLOAD_BATCHES)
            manifest = await self._upload(report, records, classifications, manifest, writer)

            self._enter(report, ReconcilePhase.SAVE_MANIFEST)
            await writer.flush(manifest)
            report.manifest_saved = writer.saves > 0
            report.manifest_error = writer.last_error
        else:
            logger.info("Nothing to upload, manifest left as is")

        changed = {c.record.key for c in report.to_upload if c.decision == UploadDecision.CHANGED}
        if self.options.cdn_domain:
            report.purge_hints = [
                cdn_url(self.options.cdn_domain, key) for key in report.uploaded if key in changed
            ]

        self._enter(report, ReconcilePhase.DONE)
        report.elapsed = time.monotonic() - started
        return report

    async def _upload(
        self,
        report: ReconcileReport,
        records: list[FileRecord],
        classifications: list[Classification],
        manifest: Manifest,
        writer: ManifestWriter,
    ) -> Manifest:
        on_batch = writer.flush if self.options.save_mode == "batch" else None
        uploader = BatchUploader(
            self._store,
            batch_size=self.options.batch_size,
            max_retries=self.options.max_retries,
            retry_delay=self.options.retry_delay,
            cache_control=self.options.cache_control,
            on_batch=on_batch,
        )
        result = await uploader.upload(classifications, manifest)
        report.uploaded = result.uploaded
        report.failed = result.failed
        if result.manifest is not None:
            manifest = result.manifest

        if self.options.asset_aliases:
            manifest, report.aliased = await create_aliases(
                self._store,
                records,
                manifest,
                exclude=set(result.failed),
                cache_control=self.options.cache_control,
            )
        return manifest
