"""S3-compatible object store (Tencent COS) backed by boto3."""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any, TypeVar

import boto3
from boto3.exceptions import S3UploadFailedError
from boto3.s3.transfer import TransferConfig
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from cossync.exceptions import (
    ObjectNotFoundError,
    PreconditionFailedError,
    StoreError,
    TransientStoreError,
)
from cossync.storage.base import ObjectSummary, StoredObject

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from cossync.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

_NOT_FOUND_CODES = frozenset({"NoSuchKey", "NotFound", "404"})
_PRECONDITION_CODES = frozenset({"PreconditionFailed", "412"})
_TRANSIENT_CODES = frozenset(
    {
        "RequestTimeout",
        "RequestTimeoutException",
        "SlowDown",
        "Throttling",
        "ThrottlingException",
        "TooManyRequests",
        "ServiceUnavailable",
        "InternalError",
    }
)
_TRANSPORT_ERRORS = (
    ConnectTimeoutError,
    ReadTimeoutError,
    EndpointConnectionError,
    ConnectionClosedError,
)


def translate_client_error(exc: ClientError, key: str) -> StoreError:
    """Map a botocore ClientError onto the store exception taxonomy."""
    error = exc.response.get("Error", {})
    code = str(error.get("Code", ""))
    status = int(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0)
    message = error.get("Message") or str(exc)

    if code in _NOT_FOUND_CODES:
        return ObjectNotFoundError(key)
    if code in _PRECONDITION_CODES or status == 412:
        return PreconditionFailedError(f"Conditional write rejected for {key}: {message}")
    if code in _TRANSIENT_CODES or status == 429 or status >= 500:
        return TransientStoreError(f"{code or status} for {key}: {message}")
    return StoreError(f"{code or status} for {key}: {message}")


def create_client(settings: Settings) -> Any:
    """Create a boto3 S3 client pointed at the configured COS endpoint.

    SDK-level retries are disabled; the batch uploader owns the retry policy.
    The connection pool holds one connection per concurrent upload in a batch.
    Checksums are only sent when an operation requires them, since COS rejects
    aws-chunked bodies.
    """
    config = BotoConfig(
        connect_timeout=settings.request_timeout,
        read_timeout=settings.request_timeout,
        retries={"max_attempts": 1, "mode": "standard"},
        max_pool_connections=settings.batch_size,
        request_checksum_calculation="when_required",
        response_checksum_validation="when_required",
        s3={"addressing_style": "virtual"},
    )
    return boto3.client(
        "s3",
        region_name=settings.region,
        endpoint_url=settings.resolved_endpoint_url,
        aws_access_key_id=settings.secret_id,
        aws_secret_access_key=settings.secret_key,
        config=config,
    )


class S3ObjectStore:
    """Object store for one bucket on an S3-compatible endpoint.

    boto3 is synchronous; every call runs on the store's own thread pool so a
    batch of uploads proceeds concurrently on the event loop. Size the pool to
    the batch size, the loop's default executor is smaller on small machines.
    """

    def __init__(
        self,
        client: Any,
        bucket: str,
        *,
        multipart_threshold: int = 10 * 1024 * 1024,
        max_workers: int = 20,
    ) -> None:
        self._client = client
        self.bucket = bucket
        self.multipart_threshold = multipart_threshold
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="cossync-s3"
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> S3ObjectStore:
        return cls(
            create_client(settings),
            settings.bucket,
            multipart_threshold=settings.multipart_threshold,
            max_workers=settings.batch_size,
        )

    def close(self) -> None:
        """Shut down the worker threads."""
        self._executor.shutdown(wait=True)

    async def _run(self, key: str, call: Callable[[], T]) -> T:
        def invoke() -> T:
            try:
                return call()
            except ClientError as exc:
                raise translate_client_error(exc, key) from exc
            except _TRANSPORT_ERRORS as exc:
                raise TransientStoreError(f"Transport error for {key}: {exc}") from exc
            except S3UploadFailedError as exc:
                raise TransientStoreError(f"Multipart upload failed for {key}: {exc}") from exc
            except BotoCoreError as exc:
                raise StoreError(f"SDK error for {key}: {exc}") from exc

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, invoke)

    async def get_object(self, key: str) -> StoredObject:
        def call() -> StoredObject:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
            body: bytes = response["Body"].read()
            return StoredObject(key=key, body=body, etag=response.get("ETag"))

        return await self._run(key, call)

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
        params: dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": body,
            "ContentType": content_type,
            "CacheControl": cache_control,
        }
        if if_match is not None:
            params["IfMatch"] = if_match
        if if_none_match is not None:
            params["IfNoneMatch"] = if_none_match

        def call() -> str | None:
            response = self._client.put_object(**params)
            etag: str | None = response.get("ETag")
            return etag

        return await self._run(key, call)

    async def upload_file(
        self,
        key: str,
        path: Path,
        *,
        content_type: str,
        cache_control: str,
    ) -> None:
        def call() -> None:
            size = path.stat().st_size
            if size < self.multipart_threshold:
                with open(path, "rb") as f:
                    self._client.put_object(
                        Bucket=self.bucket,
                        Key=key,
                        Body=f,
                        ContentLength=size,
                        ContentType=content_type,
                        CacheControl=cache_control,
                    )
                return
            logger.debug("Multipart upload for %s (%d bytes)", key, size)
            self._client.upload_file(
                str(path),
                self.bucket,
                key,
                ExtraArgs={"ContentType": content_type, "CacheControl": cache_control},
                Config=TransferConfig(multipart_threshold=self.multipart_threshold),
            )

        await self._run(key, call)

    async def copy_object(
        self, source_key: str, dest_key: str, *, content_type: str, cache_control: str
    ) -> None:
        def call() -> None:
            self._client.copy_object(
                Bucket=self.bucket,
                Key=dest_key,
                CopySource={"Bucket": self.bucket, "Key": source_key},
                MetadataDirective="REPLACE",
                ContentType=content_type,
                CacheControl=cache_control,
            )

        await self._run(dest_key, call)

    async def list_objects(self, prefix: str) -> list[ObjectSummary]:
        def call() -> list[ObjectSummary]:
            paginator = self._client.get_paginator("list_objects")
            summaries: list[ObjectSummary] = []
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for item in page.get("Contents", []):
                    summaries.append(
                        ObjectSummary(key=item["Key"], size=item["Size"], etag=item.get("ETag"))
                    )
            return summaries

        return await self._run(prefix, call)
