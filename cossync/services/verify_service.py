"""Drift detection against a bucket listing and CDN reachability probes."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import httpx

if TYPE_CHECKING:
    from collections.abc import Iterable

    from cossync.services.manifest_service import Manifest
    from cossync.storage.base import ObjectStore, ObjectSummary

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 15.0
PROBE_CONCURRENCY = 10


@dataclass
class DriftReport:
    """Differences between the manifest and what the bucket actually holds."""

    missing_remote: list[str] = field(default_factory=list)
    size_mismatch: list[str] = field(default_factory=list)
    untracked: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.missing_remote and not self.size_mismatch


def find_drift(
    manifest: Manifest,
    remote_objects: Iterable[ObjectSummary],
    prefixes: Iterable[str] = ("",),
) -> DriftReport:
    """Compare manifest entries under the given prefixes with a bucket listing."""
    prefix_list = tuple(prefixes)
    remote = {obj.key: obj for obj in remote_objects}
    report = DriftReport()

    for key in sorted(manifest):
        if not key.startswith(prefix_list):
            continue
        entry = manifest.get(key)
        obj = remote.get(key)
        if obj is None:
            report.missing_remote.append(key)
        elif entry is not None and entry.size is not None and entry.size != obj.size:
            report.size_mismatch.append(key)

    report.untracked = sorted(key for key in remote if key not in manifest)
    return report


async def verify_remote(
    store: ObjectStore, manifest: Manifest, prefixes: Iterable[str]
) -> DriftReport:
    """List each prefix in the bucket and report drift from the manifest."""
    prefix_list = sorted(set(prefixes))
    listings = await asyncio.gather(*(store.list_objects(prefix) for prefix in prefix_list))
    objects = [obj for listing in listings for obj in listing]
    logger.info("Listed %d remote object(s) under %d prefix(es)", len(objects), len(prefix_list))
    return find_drift(manifest, objects, prefix_list)


@dataclass(frozen=True)
class ProbeResult:
    """Response details for one CDN URL."""

    url: str
    status: int | None
    content_type: str | None = None
    cache_control: str | None = None
    allow_origin: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is not None and 200 <= self.status < 300


def cdn_url(cdn_domain: str, key: str) -> str:
    """Build the public URL of a key on the CDN domain."""
    domain = cdn_domain.strip().removeprefix("https://").removeprefix("http://").rstrip("/")
    return f"https://{domain}/{key.lstrip('/')}"


async def probe_assets(
    cdn_domain: str,
    keys: Iterable[str],
    *,
    origin: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> list[ProbeResult]:
    """Send HEAD requests for each key and collect status and caching headers.

    Pass ``origin`` to have the CDN evaluate its CORS rules for that site.
    """
    urls = [cdn_url(cdn_domain, key) for key in keys]
    headers = {"Origin": origin} if origin else {}
    semaphore = asyncio.Semaphore(PROBE_CONCURRENCY)

    async def probe(http_client: httpx.AsyncClient, url: str) -> ProbeResult:
        async with semaphore:
            try:
                resp = await http_client.head(url, headers=headers)
            except httpx.HTTPError as exc:
                logger.warning("Probe failed for %s: %s", url, exc)
                return ProbeResult(url=url, status=None, error=str(exc))
        return ProbeResult(
            url=url,
            status=resp.status_code,
            content_type=resp.headers.get("content-type"),
            cache_control=resp.headers.get("cache-control"),
            allow_origin=resp.headers.get("access-control-allow-origin"),
        )

    if client is not None:
        return list(await asyncio.gather(*(probe(client, url) for url in urls)))
    async with httpx.AsyncClient(timeout=PROBE_TIMEOUT, follow_redirects=True) as http_client:
        return list(await asyncio.gather(*(probe(http_client, url) for url in urls)))
