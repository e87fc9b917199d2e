"""Object store module.

BlobStore interface plus the S3 and in-memory adapters.
"""

from dataset_gate.providers.storage.base import (
    JSON_CONTENT_TYPE,
    OCTET_STREAM_CONTENT_TYPE,
    BlobStore,
    ObjectHead,
    VersionedBody,
)
from dataset_gate.providers.storage.memory_adapter import InMemoryBlobStore
from dataset_gate.providers.storage.s3_adapter import S3BlobStore

__all__ = [
    "JSON_CONTENT_TYPE",
    "OCTET_STREAM_CONTENT_TYPE",
    "BlobStore",
    "ObjectHead",
    "VersionedBody",
    "InMemoryBlobStore",
    "S3BlobStore",
]
