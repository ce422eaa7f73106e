"""Uploader configuration loaded from environment variables."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Build layouts: server-mode output lives under dist/client, static output at the top.
DEFAULT_SCAN_ROOTS: tuple[str, ...] = (
    "client/assets",
    "client/fonts",
    "client/images",
    "client/_astro",
    "assets",
    "fonts",
    "images",
    "_astro",
)

_BUCKET_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*-\d+$")


class Settings(BaseSettings):
    """cossync settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Credentials (primary and legacy variable names)
    secret_id: str = Field(
        default="",
        validation_alias=AliasChoices("secret_id", "COS_SECRET_ID", "TENCENT_SECRET_ID"),
    )
    secret_key: str = Field(
        default="",
        validation_alias=AliasChoices("secret_key", "COS_SECRET_KEY", "TENCENT_SECRET_KEY"),
    )

    # Bucket
    bucket: str = Field(
        default="",
        validation_alias=AliasChoices("bucket", "TENCENT_COS_BUCKET", "COS_BUCKET"),
    )
    region: str = Field(
        default="ap-guangzhou",
        validation_alias=AliasChoices("region", "TENCENT_COS_REGION", "COS_REGION"),
    )
    endpoint_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("endpoint_url", "COS_ENDPOINT_URL"),
    )
    cdn_domain: str | None = Field(
        default=None,
        validation_alias=AliasChoices("cdn_domain", "CDN_DOMAIN"),
    )

    # Manifest
    manifest_key: str = ".upload-manifest.json"
    manifest_save_mode: Literal["batch", "end"] = "batch"
    conditional_manifest_writes: bool = True

    # Scanning
    dist_dir: Path = Path("./dist")
    scan_roots: list[str] = Field(default_factory=lambda: list(DEFAULT_SCAN_ROOTS))
    strip_prefixes: list[str] = Field(default_factory=lambda: ["client/"])
    excluded_extensions: list[str] = Field(default_factory=lambda: [".map", ".txt", ".md"])

    # Upload
    comparison_strategy: Literal["size", "digest", "mtime-hint"] = "digest"
    batch_size: int = Field(default=20, ge=1, le=100)
    max_retries: int = Field(default=2, ge=0, le=10)
    retry_delay: float = Field(default=0.3, ge=0)
    request_timeout: float = Field(default=60.0, gt=0)
    multipart_threshold: int = Field(default=10 * 1024 * 1024, ge=5 * 1024 * 1024)
    cache_control: str = "max-age=31536000"
    asset_aliases: bool = False

    @property
    def resolved_endpoint_url(self) -> str:
        """Return the configured endpoint, defaulting to the regional COS endpoint."""
        if self.endpoint_url:
            return self.endpoint_url.rstrip("/")
        return f"https://cos.{self.region}.myqcloud.com"

    def validate_runtime(self) -> None:
        """Validate settings required to talk to the bucket."""
        violations: list[str] = []
        if not self.secret_id or not self.secret_key:
            violations.append(
                "credentials missing: set COS_SECRET_ID/TENCENT_SECRET_ID "
                "and COS_SECRET_KEY/TENCENT_SECRET_KEY"
            )
        if not self.bucket:
            violations.append("bucket missing: set TENCENT_COS_BUCKET")
        elif not _BUCKET_PATTERN.match(self.bucket):
            violations.append(
                f"bucket {self.bucket!r} must look like name-appid (e.g. my-bucket-1234567890)"
            )

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Invalid configuration: {joined}")
