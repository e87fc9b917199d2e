"""Resolve which object a token downloads.

Priority: the token's own key -> configured CSV_OBJECT_KEY -> "latest" in
the export manifest.
"""

import json

import structlog

from dataset_gate.providers.errors import StoreError
from dataset_gate.providers.storage.base import BlobStore

logger = structlog.get_logger()


class ResourceResolver:
    """Resolves the artifact key with configuration and manifest fallbacks.

    Args:
        store: Object store holding the manifest.
        default_key: Configured key (CSV_OBJECT_KEY); empty disables it.
        manifest_key: Key of the export manifest JSON.
    """

    def __init__(self, store: BlobStore, *, default_key: str, manifest_key: str) -> None:
        self._store = store
        self._default_key = default_key
        self._manifest_key = manifest_key

    async def resolve(self, preferred: str | None = None) -> str | None:
        """Return the first available key, or None when nothing is configured."""
        if preferred:
            return preferred
        if self._default_key:
            return self._default_key
        return await self._manifest_latest()

    async def _manifest_latest(self) -> str | None:
        if not self._manifest_key:
            return None
        try:
            manifest = json.loads(await self._store.get(self._manifest_key))
        except (StoreError, ValueError) as e:
            logger.warning(
                "manifest_unreadable",
                manifest_key=self._manifest_key,
                error=type(e).__name__,
            )
            return None
        latest = manifest.get("latest") if isinstance(manifest, dict) else None
        if isinstance(latest, str) and latest:
            return latest
        return None
