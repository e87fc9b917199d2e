"""In-memory object store for local development and tests.

Behaves like the S3 adapter at the interface level: ETag-style version tags
that change on every write, 412-style precondition failures, and a yield to
the event loop on every call so concurrent coroutines interleave the way
concurrent requests do against a real store.

WHY IN PACKAGE (not only in tests):
- STORE_BACKEND=memory runs the whole service without cloud credentials
- Tests can inject race windows and one-shot faults deterministically
"""

import asyncio
import secrets
import uuid
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from urllib.parse import quote, urlencode

from dataset_gate.providers.errors import (
    ObjectNotFoundError,
    PreconditionFailedError,
)
from dataset_gate.providers.storage.base import (
    OCTET_STREAM_CONTENT_TYPE,
    BlobStore,
    ObjectHead,
    VersionedBody,
)

RaceWindow = Callable[[str], Awaitable[None]]


@dataclass
class _StoredObject:
    body: bytes
    content_type: str
    version_tag: str
    metadata: dict[str, str] = field(default_factory=dict)


def _new_version_tag() -> str:
    return uuid.uuid4().hex


class InMemoryBlobStore(BlobStore):
    """Process-local BlobStore.

    Attributes:
        calls: Record of (operation, key) pairs for test assertions.
        race_window: Optional coroutine awaited inside every conditional
            write after the caller's request "arrives" but before the
            precondition check, so a test can let a competing writer slip in.
    """

    def __init__(self, race_window: RaceWindow | None = None) -> None:
        self._objects: dict[str, _StoredObject] = {}
        self._faults: defaultdict[str, deque[Exception]] = defaultdict(deque)
        self.calls: list[tuple[str, str]] = []
        self.race_window = race_window

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    def inject_failure(self, operation: str, exc: Exception) -> None:
        """Raise exc from the next call to the named operation (one-shot).

        Args:
            operation: "get", "get_versioned", "put", "head",
                "replace_metadata" or "presign_get".
            exc: Exception instance to raise.
        """
        self._faults[operation].append(exc)

    def keys(self) -> list[str]:
        """Return all stored keys, sorted."""
        return sorted(self._objects)

    def clear(self) -> None:
        """Drop all objects, faults and recorded calls."""
        self._objects.clear()
        self._faults.clear()
        self.calls.clear()

    async def _enter(self, operation: str, key: str) -> None:
        self.calls.append((operation, key))
        # Every store call is a suspension point
        await asyncio.sleep(0)
        if self._faults[operation]:
            raise self._faults[operation].popleft()

    def _require(self, key: str) -> _StoredObject:
        stored = self._objects.get(key)
        if stored is None:
            raise ObjectNotFoundError(f"No such key: {key}", key=key)
        return stored

    def _check_version(self, key: str, expected_version_tag: str) -> _StoredObject:
        stored = self._require(key)
        if stored.version_tag != expected_version_tag:
            raise PreconditionFailedError(f"Version tag mismatch for {key}", key=key)
        return stored

    # ------------------------------------------------------------------
    # BlobStore
    # ------------------------------------------------------------------

    async def get(self, key: str) -> bytes:
        """Read an object's body."""
        await self._enter("get", key)
        return self._require(key).body

    async def get_versioned(self, key: str) -> VersionedBody:
        """Read an object's body and version tag."""
        await self._enter("get_versioned", key)
        stored = self._require(key)
        return VersionedBody(body=stored.body, version_tag=stored.version_tag)

    async def put(
        self,
        key: str,
        body: bytes,
        *,
        metadata: dict[str, str] | None = None,
        content_type: str = OCTET_STREAM_CONTENT_TYPE,
        if_match: str | None = None,
        if_none_match: bool = False,
    ) -> str:
        """Create or overwrite an object with a fresh version tag."""
        await self._enter("put", key)
        if if_match is not None or if_none_match:
            if self.race_window is not None:
                await self.race_window(key)
            # Check-and-set without a suspension point in between
            if if_match is not None:
                self._check_version(key, if_match)
            if if_none_match and key in self._objects:
                raise PreconditionFailedError(f"Key already exists: {key}", key=key)

        stored = _StoredObject(
            body=bytes(body),
            content_type=content_type,
            version_tag=_new_version_tag(),
            metadata=dict(metadata or {}),
        )
        self._objects[key] = stored
        return stored.version_tag

    async def head(self, key: str) -> ObjectHead:
        """Return a copy of the object's version tag and metadata."""
        await self._enter("head", key)
        stored = self._require(key)
        return ObjectHead(version_tag=stored.version_tag, metadata=dict(stored.metadata))

    async def replace_metadata(
        self,
        key: str,
        metadata: dict[str, str],
        *,
        expected_version_tag: str,
    ) -> str:
        """Replace metadata if the version tag still matches."""
        await self._enter("replace_metadata", key)
        if self.race_window is not None:
            await self.race_window(key)

        stored = self._check_version(key, expected_version_tag)
        stored.metadata = dict(metadata)
        stored.version_tag = _new_version_tag()
        return stored.version_tag

    async def presign_get(
        self,
        key: str,
        *,
        expires_in: int,
        filename: str,
        content_type: str,
    ) -> str:
        """Return a fake signed URL (the object need not exist, like S3)."""
        await self._enter("presign_get", key)
        query = urlencode(
            {
                "expires_in": expires_in,
                "filename": filename,
                "content_type": content_type,
                "signature": secrets.token_hex(16),
            }
        )
        return f"https://blobstore.invalid/{quote(key)}?{query}"
