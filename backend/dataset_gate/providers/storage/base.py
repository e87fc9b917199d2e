"""Abstract base class and types for object store adapters.

Uniform get/put/head/conditional-write over keys holding either JSON
bodies or small state objects whose user metadata carries the state, plus
presigned download URLs.

WHY THE VERSION TAG MUST MOVE ON EVERY WRITE:
- It is the only guard against lost updates between concurrent writers
- S3 ETags are a digest of the body, so a write that leaves the body
  unchanged leaves the ETag unchanged; adapters must account for that
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

JSON_CONTENT_TYPE = "application/json; charset=utf-8"
OCTET_STREAM_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class ObjectHead:
    """Metadata-only view of a stored object.

    Attributes:
        version_tag: Opaque concurrency token (the ETag, without quotes).
            Every successful write changes it.
        metadata: User metadata as stored (string values).
    """

    version_tag: str
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class VersionedBody:
    """An object's body together with the version tag it was read at."""

    body: bytes
    version_tag: str


class BlobStore(ABC):
    """Object store interface.

    All methods may raise ObjectNotFoundError, AccessDeniedError or
    StoreUnavailableError; conditional writes may also raise
    PreconditionFailedError. Callers decide what is retryable.
    """

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Read an object's body.

        Raises:
            ObjectNotFoundError: If the key does not exist.
        """

    @abstractmethod
    async def get_versioned(self, key: str) -> VersionedBody:
        """Read an object's body and version tag in one request.

        Raises:
            ObjectNotFoundError: If the key does not exist.
        """

    @abstractmethod
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
        """Create or overwrite an object.

        Unconditional unless a precondition is given.

        Args:
            key: Object key.
            body: Complete new body.
            metadata: Complete new user metadata.
            content_type: Stored Content-Type.
            if_match: Only overwrite if the current version tag equals this.
            if_none_match: Only create; fail if the key already exists.

        Returns:
            The object's new version tag.

        Raises:
            PreconditionFailedError: A precondition did not hold.
            ObjectNotFoundError: if_match was given and the key is gone.
        """

    @abstractmethod
    async def head(self, key: str) -> ObjectHead:
        """Read version tag and user metadata without the body.

        Raises:
            ObjectNotFoundError: If the key does not exist.
        """

    @abstractmethod
    async def replace_metadata(
        self,
        key: str,
        metadata: dict[str, str],
        *,
        expected_version_tag: str,
    ) -> str:
        """Replace an object's metadata only if its version tag still matches.

        Args:
            key: Object key.
            metadata: Complete new metadata (replaces, does not merge).
            expected_version_tag: Tag observed by the caller's last head().

        Returns:
            The object's new version tag, which differs from every earlier
            tag of the object even when the metadata is unchanged.

        Raises:
            PreconditionFailedError: Another writer changed the object first.
            ObjectNotFoundError: The object no longer exists.
        """

    @abstractmethod
    async def presign_get(
        self,
        key: str,
        *,
        expires_in: int,
        filename: str,
        content_type: str,
    ) -> str:
        """Create a time-limited signed URL that downloads the object.

        The response is forced to an attachment with the given filename.
        """
