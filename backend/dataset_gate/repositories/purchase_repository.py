"""Repository for purchase records (orders/<order_id>.json).

A capture, its webhooks and admin re-issues all write the same record, so
production writes go through update(): read with the version tag, apply the
change to what is stored now, write with If-Match (or create-only), and
start again from a fresh read when another writer got there first.
"""

import json
import time
from collections.abc import Callable
from dataclasses import dataclass

from pydantic import ValidationError as PydanticValidationError

from dataset_gate.core.config import settings
from dataset_gate.providers.errors import ObjectNotFoundError
from dataset_gate.providers.storage.base import JSON_CONTENT_TYPE, BlobStore
from dataset_gate.schemas.orders import PurchaseRecord
from dataset_gate.services.optimistic_update import RetryPolicy, update_with_retry


def purchase_key(order_id: str) -> str:
    """Object key of a purchase record."""
    return f"{settings.orders_prefix}{order_id}.json"


def now_ms() -> int:
    return int(time.time() * 1000)


def _parse(body: bytes) -> PurchaseRecord | None:
    try:
        return PurchaseRecord.model_validate(json.loads(body))
    except (ValueError, PydanticValidationError):
        return None


@dataclass(frozen=True)
class VersionedPurchase:
    """A purchase record as read, with the version tag to write against.

    Attributes:
        record: Parsed record; None if missing or unreadable.
        version_tag: Tag of the stored object; None if the key is missing.
    """

    record: PurchaseRecord | None
    version_tag: str | None


class PurchaseRepository:
    """Stateless repository for purchase records.

    All methods are static; no instance state.
    """

    @staticmethod
    async def get(store: BlobStore, order_id: str) -> PurchaseRecord | None:
        """Load a purchase record, or None if missing or unreadable."""
        try:
            body = await store.get(purchase_key(order_id))
        except ObjectNotFoundError:
            return None
        return _parse(body)

    @staticmethod
    async def load(store: BlobStore, order_id: str) -> VersionedPurchase:
        """Load a purchase record together with its version tag."""
        try:
            stored = await store.get_versioned(purchase_key(order_id))
        except ObjectNotFoundError:
            return VersionedPurchase(record=None, version_tag=None)
        return VersionedPurchase(record=_parse(stored.body), version_tag=stored.version_tag)

    @staticmethod
    async def _write(
        store: BlobStore,
        record: PurchaseRecord,
        *,
        if_match: str | None = None,
        if_none_match: bool = False,
    ) -> None:
        await store.put(
            purchase_key(record.order_id),
            record.to_json_bytes(),
            content_type=JSON_CONTENT_TYPE,
            if_match=if_match,
            if_none_match=if_none_match,
        )

    @staticmethod
    async def put(store: BlobStore, record: PurchaseRecord) -> PurchaseRecord:
        """Unconditionally write a purchase record, stamping updatedAt."""
        record = record.model_copy(update={"updated_at": now_ms()})
        await PurchaseRepository._write(store, record)
        return record

    @staticmethod
    async def update(
        store: BlobStore,
        order_id: str,
        mutate: Callable[[PurchaseRecord | None], PurchaseRecord | None],
        policy: RetryPolicy,
    ) -> PurchaseRecord | None:
        """Apply mutate to the stored record with a conditional write.

        Args:
            store: Object store.
            order_id: Order whose record to change.
            mutate: Receives the current record (None if there is none) and
                returns the record to store, or None to leave it unchanged.
                Called again with fresh state after a lost race, so it must
                derive everything it writes from its argument.
            policy: Attempt budget and backoff bounds.

        Returns:
            The record as stored after the update.

        Raises:
            UpdateConflictError: Every attempt lost the race or timed out.
            StoreError: Other store failures.
        """

        async def load() -> VersionedPurchase:
            return await PurchaseRepository.load(store, order_id)

        def apply(current: VersionedPurchase) -> VersionedPurchase:
            updated = mutate(current.record)
            if updated is None:
                return current
            return VersionedPurchase(
                record=updated.model_copy(update={"updated_at": now_ms()}),
                version_tag=current.version_tag,
            )

        async def write(current: VersionedPurchase, proposed: VersionedPurchase) -> None:
            if proposed is current or proposed.record is None:
                return
            await PurchaseRepository._write(
                store,
                proposed.record,
                if_match=current.version_tag,
                if_none_match=current.version_tag is None,
            )

        result = await update_with_retry(
            load,
            apply,
            write,
            policy,
            log_context={"order_id": order_id},
        )
        return result.record
