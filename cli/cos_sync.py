"""CLI for incremental uploads of build output to the COS bucket behind the CDN."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

from cossync.config import Settings
from cossync.exceptions import StoreError
from cossync.services.diff_service import STRATEGIES
from cossync.services.manifest_service import ManifestStore, describe_manifest
from cossync.services.reconcile_service import ReconcileOptions, Reconciler
from cossync.services.verify_service import probe_assets, verify_remote
from cossync.storage.s3 import S3ObjectStore

if TYPE_CHECKING:
    from cossync.storage.base import ObjectStore

logger = logging.getLogger(__name__)

_NOISY_LOGGERS = ("boto3", "botocore", "s3transfer", "urllib3", "httpx", "httpcore")


def _configure_logging(verbose: bool) -> None:
    """Configure CLI logging."""
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stdout,
        force=True,
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _fail(message: str) -> None:
    print(f"Error: {message}")
    sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cossync",
        description="Upload changed build assets to the COS bucket behind the CDN",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--dist", "-d", help="Build output directory (default: ./dist)")
    parser.add_argument("--bucket", help="Bucket name, name-appid (env: TENCENT_COS_BUCKET)")
    parser.add_argument("--region", help="Bucket region (env: TENCENT_COS_REGION)")

    subparsers = parser.add_subparsers(dest="command")

    upload = subparsers.add_parser("upload", help="Upload new and changed files")
    status = subparsers.add_parser("status", help="Show what would be uploaded")
    for sub in (upload, status):
        sub.add_argument(
            "--root",
            action="append",
            dest="roots",
            help="Directory under --dist to scan (repeatable; default: build asset dirs)",
        )
        sub.add_argument(
            "--strategy",
            choices=sorted(STRATEGIES),
            help="How unchanged files are recognized (default: digest)",
        )
    upload.add_argument("--batch-size", type=int, help="Concurrent uploads per batch")
    upload.add_argument("--max-retries", type=int, help="Retries per file on transient errors")
    upload.add_argument("--dry-run", action="store_true", help="Plan only, upload nothing")
    upload.add_argument(
        "--asset-aliases",
        action="store_true",
        default=None,
        help="Mirror hashed _astro images under assets/",
    )

    manifest = subparsers.add_parser("manifest", help="Show the remote upload manifest")
    manifest.add_argument("--limit", type=int, default=10, help="Entries to list")

    subparsers.add_parser("verify", help="Compare the manifest with the bucket contents")

    probe = subparsers.add_parser("probe", help="HEAD-check assets on the CDN domain")
    probe.add_argument("keys", nargs="*", help="Keys to check (default: first manifest keys)")
    probe.add_argument("--limit", type=int, default=10, help="Manifest keys to check")
    probe.add_argument("--origin", help="Origin header to test CORS rules with")
    return parser


def load_settings(args: argparse.Namespace) -> Settings:
    """Build settings from the environment plus command-line overrides."""
    overrides: dict[str, Any] = {}
    if args.dist:
        overrides["dist_dir"] = Path(args.dist)
    if args.bucket:
        overrides["bucket"] = args.bucket
    if args.region:
        overrides["region"] = args.region
    for option in ("batch_size", "max_retries"):
        value = getattr(args, option, None)
        if value is not None:
            overrides[option] = value
    if getattr(args, "strategy", None):
        overrides["comparison_strategy"] = args.strategy
    if getattr(args, "roots", None):
        overrides["scan_roots"] = args.roots
    if getattr(args, "asset_aliases", None):
        overrides["asset_aliases"] = True

    # Keyword arguments take precedence over environment values
    return Settings(**overrides)


def _print_plan(report_lines: list[str]) -> None:
    for line in report_lines:
        print(line)


async def run_upload(settings: Settings, store: ObjectStore, *, dry_run: bool) -> None:
    reconciler = Reconciler(
        store,
        ReconcileOptions.from_settings(settings),
        settings.comparison_strategy,
    )
    report = await reconciler.run(dry_run=dry_run)
    if dry_run:
        _print_plan(
            [f"    + {c.record.key} ({c.decision}: {c.reason})" for c in report.to_upload]
        )
    print(report.format_summary())


async def run_manifest(settings: Settings, store: ObjectStore, limit: int) -> None:
    manifest = await ManifestStore(store, settings.manifest_key).load()
    _print_plan(describe_manifest(manifest, limit))


async def run_verify(settings: Settings, store: ObjectStore) -> None:
    reconciler = Reconciler(store, ReconcileOptions.from_settings(settings))
    records = await asyncio.to_thread(reconciler.scan)
    prefixes = sorted(
        {record.key.split("/", 1)[0] + "/" for record in records if "/" in record.key}
    )
    manifest = await reconciler.manifest_store.load()
    try:
        drift = await verify_remote(store, manifest, prefixes)
    except StoreError as exc:
        logger.error("Bucket listing failed: %s", exc)
        print(f"Verify failed: {exc}")
        return

    print("Drift report:")
    print(f"  Missing in bucket: {len(drift.missing_remote)}")
    print(f"  Size mismatch:     {len(drift.size_mismatch)}")
    print(f"  Not in manifest:   {len(drift.untracked)}")
    for key in drift.missing_remote:
        print(f"    - {key} (missing)")
    for key in drift.size_mismatch:
        print(f"    ~ {key} (size differs)")
    if drift.clean:
        print("Manifest matches bucket contents.")
    else:
        print("Re-run upload to repair; entries self-heal on the next size/digest mismatch.")


async def run_probe(
    settings: Settings,
    store: ObjectStore,
    cdn_domain: str,
    keys: list[str],
    limit: int,
    origin: str | None,
) -> None:
    if not keys:
        manifest = await ManifestStore(store, settings.manifest_key).load()
        keys = list(manifest)[:limit]
    results = await probe_assets(cdn_domain, keys, origin=origin)
    for result in results:
        if result.error:
            print(f"  ! {result.url} ({result.error})")
            continue
        mark = "ok" if result.ok else "FAIL"
        print(
            f"  {mark} {result.status} {result.url} "
            f"type={result.content_type} cache={result.cache_control} "
            f"cors={result.allow_origin}"
        )
    failures = sum(1 for result in results if not result.ok)
    print(f"Probe complete. {len(results) - failures} ok, {failures} failing.")


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return

    _configure_logging(args.verbose)
    try:
        settings = load_settings(args)
        settings.validate_runtime()
    except ValueError as exc:
        _fail(str(exc))
        return

    if args.command in {"upload", "status", "verify"} and not settings.dist_dir.is_dir():
        _fail(f"Build directory does not exist: {settings.dist_dir}")
        return

    cdn_domain = settings.cdn_domain or ""
    if args.command == "probe" and not cdn_domain:
        _fail("CDN_DOMAIN must be set to probe assets")
        return

    store = S3ObjectStore.from_settings(settings)
    logger.info(
        "Bucket %s (%s) via %s", settings.bucket, settings.region, settings.resolved_endpoint_url
    )

    try:
        if args.command == "upload":
            asyncio.run(run_upload(settings, store, dry_run=args.dry_run))
        elif args.command == "status":
            asyncio.run(run_upload(settings, store, dry_run=True))
        elif args.command == "manifest":
            asyncio.run(run_manifest(settings, store, args.limit))
        elif args.command == "verify":
            asyncio.run(run_verify(settings, store))
        elif args.command == "probe":
            asyncio.run(
                run_probe(settings, store, cdn_domain, args.keys, args.limit, args.origin)
            )
    finally:
        store.close()


if __name__ == "__main__":
    main()
