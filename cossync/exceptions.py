"""Object-store and manifest exception types.

Convention:
- ``ObjectNotFoundError``: the key does not exist. Not a failure for the
  manifest (a missing manifest is a cold start).
- ``TransientStoreError``: timeouts, connection resets, 5xx and throttling.
  The batch uploader retries these with linear backoff.
- ``PreconditionFailedError``: a conditional write (``If-Match`` /
  ``If-None-Match``) lost a race with another writer.
- ``StoreError``: everything else the remote store rejects (bad credentials,
  access denied, malformed request). Never retried.
"""

from __future__ import annotations


class StoreError(Exception):
    """Raised when a remote object-store operation fails."""


class ObjectNotFoundError(StoreError):
    """Raised when the requested key does not exist in the bucket."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Object not found: {key}")
        self.key = key


class TransientStoreError(StoreError):
    """Raised for failures that may succeed when retried."""


class PreconditionFailedError(StoreError):
    """Raised when a conditional write is rejected by the store."""


class ManifestConflictError(Exception):
    """Raised when the remote manifest changed since it was loaded.

    Another deployment wrote the manifest concurrently; saving would drop its
    entries, so the write is refused instead.
    """
