"""S3-compatible object store adapter (boto3).

Conditional writes use PutObject preconditions: IfMatch for replace and
IfNoneMatch="*" for create-only. S3 answers 412 PreconditionFailed when the
ETag moved, which is the compare-and-swap primitive the token state and
purchase records rely on.

The ETag of a single-part object is a digest of its body, so a
metadata-only rewrite would keep the old ETag and a stale writer would
still match. replace_metadata therefore rewrites the body as well, with a
fresh revision id in it.

boto3 is blocking, so each call runs in a worker thread. Every call carries
the connect/read timeouts from botocore's Config.
"""

import asyncio
import json
import uuid
from collections.abc import Callable
from typing import Any, TypeVar

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from dataset_gate.providers.errors import (
    AccessDeniedError,
    ObjectNotFoundError,
    PreconditionFailedError,
    StoreError,
    StoreUnavailableError,
)
from dataset_gate.providers.storage.base import (
    JSON_CONTENT_TYPE,
    OCTET_STREAM_CONTENT_TYPE,
    BlobStore,
    ObjectHead,
    VersionedBody,
)

logger = structlog.get_logger()

T = TypeVar("T")

_NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound"})
# 409 ConditionalRequestConflict: a concurrent conditional write to the same key
_PRECONDITION_CODES = frozenset({"412", "PreconditionFailed", "ConditionalRequestConflict"})
_ACCESS_DENIED_CODES = frozenset({"403", "AccessDenied", "Forbidden"})


def _strip_etag(etag: str | None) -> str:
    """S3 returns ETags wrapped in double quotes."""
    return (etag or "").replace('"', "")


def _quote_etag(version_tag: str) -> str:
    return f'"{_strip_etag(version_tag)}"'


def revision_body(metadata: dict[str, str]) -> bytes:
    """Body written alongside replaced metadata; unique per write."""
    return json.dumps(
        {**metadata, "revision": uuid.uuid4().hex},
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")


def _translate_client_error(exc: ClientError, key: str) -> StoreError:
    """Map a botocore ClientError onto the provider error taxonomy."""
    error = exc.response.get("Error", {})
    code = str(error.get("Code", ""))
    status = str(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", ""))
    message = str(error.get("Message") or code or exc)

    if code in _PRECONDITION_CODES or status == "412":
        return PreconditionFailedError(message, key=key)
    if code in _NOT_FOUND_CODES or status == "404":
        return ObjectNotFoundError(message, key=key)
    if code in _ACCESS_DENIED_CODES or status == "403":
        return AccessDeniedError(message, key=key)
    return StoreUnavailableError(message, key=key)


class S3BlobStore(BlobStore):
    """BlobStore backed by one S3 (or R2 / MinIO) bucket.

    Args:
        bucket: Bucket holding token JSON, token state, orders and the file.
        region: Bucket region.
        endpoint_url: Custom endpoint for S3-compatible services.
        force_path_style: Use path-style addressing (R2 / MinIO).
        access_key_id: Explicit credentials; falls back to the default
            credential chain when empty.
        secret_access_key: Secret paired with access_key_id.
        timeout_seconds: Connect and read timeout for every call.
        max_attempts: botocore attempts per call (its own retry layer).
        server_side_encryption: SSE algorithm for JSON writes ("" disables).
        client: Pre-built boto3 client (tests).
    """

    def __init__(
        self,
        bucket: str,
        *,
        region: str = "us-east-1",
        endpoint_url: str | None = None,
        force_path_style: bool = False,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        timeout_seconds: float = 5.0,
        max_attempts: int = 2,
        server_side_encryption: str = "AES256",
        client: Any | None = None,
    ) -> None:
        self._bucket = bucket
        self._sse = server_side_encryption
        if client is not None:
            self._client = client
            return

        credentials: dict[str, str] = {}
        if access_key_id and secret_access_key:
            credentials = {
                "aws_access_key_id": access_key_id,
                "aws_secret_access_key": secret_access_key,
            }

        self._client = boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url or None,
            config=Config(
                signature_version="s3v4",
                connect_timeout=timeout_seconds,
                read_timeout=timeout_seconds,
                retries={"max_attempts": max_attempts, "mode": "standard"},
                s3={"addressing_style": "path" if force_path_style else "auto"},
            ),
            **credentials,
        )

    @property
    def bucket(self) -> str:
        """Name of the backing bucket."""
        return self._bucket

    async def _call(self, key: str, func: Callable[..., T], **kwargs: Any) -> T:
        """Run a blocking boto3 call off the event loop with error mapping."""
        try:
            return await asyncio.to_thread(func, **kwargs)
        except ClientError as exc:
            raise _translate_client_error(exc, key) from exc
        except NoCredentialsError as exc:
            raise AccessDeniedError("No S3 credentials available", key=key) from exc
        except BotoCoreError as exc:
            # Connection errors and timeouts: outcome of a write is unknown
            raise StoreUnavailableError(str(exc), key=key) from exc

    async def get(self, key: str) -> bytes:
        """Read an object's body."""
        return (await self.get_versioned(key)).body

    async def get_versioned(self, key: str) -> VersionedBody:
        """Read an object's body and ETag from one GetObject."""

        def _read() -> VersionedBody:
            response = self._client.get_object(Bucket=self._bucket, Key=key)
            body: bytes = response["Body"].read()
            return VersionedBody(body=body, version_tag=_strip_etag(response.get("ETag")))

        return await self._call(key, _read)

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
        """PutObject, optionally guarded by IfMatch / IfNoneMatch."""
        params: dict[str, Any] = {
            "Bucket": self._bucket,
            "Key": key,
            "Body": body,
            "ContentType": content_type,
        }
        if metadata:
            params["Metadata"] = metadata
        if self._sse:
            params["ServerSideEncryption"] = self._sse
        if if_match is not None:
            params["IfMatch"] = _quote_etag(if_match)
        if if_none_match:
            params["IfNoneMatch"] = "*"
        response = await self._call(key, self._client.put_object, **params)
        return _strip_etag(response.get("ETag"))

    async def head(self, key: str) -> ObjectHead:
        """Read the ETag and user metadata."""
        response = await self._call(
            key, self._client.head_object, Bucket=self._bucket, Key=key
        )
        return ObjectHead(
            version_tag=_strip_etag(response.get("ETag")),
            metadata=dict(response.get("Metadata") or {}),
        )

    async def replace_metadata(
        self,
        key: str,
        metadata: dict[str, str],
        *,
        expected_version_tag: str,
    ) -> str:
        """Rewrite the object with new metadata and a fresh body, If-Match guarded."""
        return await self.put(
            key,
            revision_body(metadata),
            metadata=metadata,
            content_type=JSON_CONTENT_TYPE,
            if_match=expected_version_tag,
        )

    async def presign_get(
        self,
        key: str,
        *,
        expires_in: int,
        filename: str,
        content_type: str,
    ) -> str:
        """Presign a GetObject request that forces a download."""
        url: str = await self._call(
            key,
            self._client.generate_presigned_url,
            ClientMethod="get_object",
            Params={
                "Bucket": self._bucket,
                "Key": key,
                "ResponseContentDisposition": f'attachment; filename="{filename}"',
                "ResponseContentType": content_type,
                "ResponseCacheControl": "no-store",
            },
            ExpiresIn=expires_in,
        )
        logger.debug("download_url_presigned", key=key, expires_in=expires_in)
        return url
