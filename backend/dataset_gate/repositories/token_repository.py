"""Repository for token records and usage state in the object store.

Token record: tokens/<token_id>.json (JSON body).
Usage state: tokens-state/<token_id> (state in user metadata; empty body at creation).
"""

import json

from pydantic import ValidationError as PydanticValidationError

from dataset_gate.core.config import settings
from dataset_gate.providers.errors import ObjectNotFoundError
from dataset_gate.providers.storage.base import JSON_CONTENT_TYPE, BlobStore
from dataset_gate.schemas.tokens import TokenRecord, UsageState


def token_record_key(token_id: str) -> str:
    """Object key of a token record."""
    return f"{settings.tokens_json_prefix}{token_id}.json"


def usage_state_key(token_id: str) -> str:
    """Object key of a usage-state object."""
    return f"{settings.tokens_state_prefix}{token_id}"


class TokenRepository:
    """Stateless repository for token objects.

    All methods are static; no instance state.
    """

    @staticmethod
    async def get_token(store: BlobStore, token_id: str) -> TokenRecord | None:
        """Load a token record.

        Args:
            store: Object store.
            token_id: Canonical token id.

        Returns:
            TokenRecord, or None if missing or unreadable.

        Raises:
            StoreError: For failures other than a missing key.
        """
        try:
            body = await store.get(token_record_key(token_id))
        except ObjectNotFoundError:
            return None
        try:
            return TokenRecord.model_validate(json.loads(body))
        except (ValueError, PydanticValidationError):
            return None

    @staticmethod
    async def put_token(store: BlobStore, record: TokenRecord) -> None:
        """Write a token record (unconditional)."""
        await store.put(
            token_record_key(record.token_id),
            record.to_json_bytes(),
            content_type=JSON_CONTENT_TYPE,
        )

    @staticmethod
    async def get_state(store: BlobStore, token_id: str) -> UsageState | None:
        """Load usage state with its version tag.

        Returns:
            UsageState, or None if missing or its metadata does not parse.
        """
        try:
            head = await store.head(usage_state_key(token_id))
        except ObjectNotFoundError:
            return None
        return UsageState.from_head(head)

    @staticmethod
    async def put_state(store: BlobStore, token_id: str, state: UsageState) -> None:
        """Create the usage-state object (unconditional, empty body)."""
        await store.put(
            usage_state_key(token_id),
            b"",
            metadata=state.to_metadata(),
        )

    @staticmethod
    async def replace_state(
        store: BlobStore,
        token_id: str,
        state: UsageState,
        *,
        expected_version_tag: str,
    ) -> str:
        """Conditionally replace usage state.

        Returns:
            The new version tag.

        Raises:
            PreconditionFailedError: The state changed since it was read.
        """
        return await store.replace_metadata(
            usage_state_key(token_id),
            state.to_metadata(),
            expected_version_tag=expected_version_tag,
        )
