"""Remote object stores."""

from cossync.storage.base import ObjectStore, ObjectSummary, StoredObject
from cossync.storage.s3 import S3ObjectStore

__all__ = [
    "ObjectStore",
    "ObjectSummary",
    "S3ObjectStore",
    "StoredObject",
]
