"""
Local implementation of the synchronized metadata store.

Behaves like a browser's synced storage area: small values only,
quotas on total size, per-item size and item count, and a change
notification for every write whether it was made on this device or
delivered by sync from another one. Values are kept as JSON and can
optionally be persisted to a snapshot file.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..exceptions import QuotaExceededError, StorageIOError
from .base import ChangeListener, MetadataStore, StorageChange
from .file_ops import read_json, write_json_atomic

if TYPE_CHECKING:
    from ..config import SetAsideConfig

logger = logging.getLogger(__name__)

# Limits of the synced storage area
QUOTA_BYTES = 102400
QUOTA_BYTES_PER_ITEM = 8192
MAX_ITEMS = 512


def _item_size(key: str, encoded: str) -> int:
    return len(key.encode("utf-8")) + len(encoded.encode("utf-8"))


class LocalMetadataStore(MetadataStore):
    """Quota-enforcing key-value store with change notifications.

    Writes made through set()/remove() are local changes. Changes that
    sync delivers from another device enter through apply_remote_changes();
    they bypass quota checks because the originating device already
    accepted them. Listeners see both kinds identically.
    """

    def __init__(
        self,
        path: str | Path | None = None,
        area: str = "sync",
        quota_bytes: int = QUOTA_BYTES,
        quota_bytes_per_item: int = QUOTA_BYTES_PER_ITEM,
        max_items: int = MAX_ITEMS,
    ) -> None:
        """Initialize the store.

        Args:
            path: Optional JSON snapshot file; None keeps values in memory only
            area: Storage area name reported with each change
            quota_bytes: Maximum total size of all keys and values
            quota_bytes_per_item: Maximum size of a single key and value
            max_items: Maximum number of keys
        """
        self.path = Path(path) if path is not None else None
        self.area = area
        self.quota_bytes = quota_bytes
        self.quota_bytes_per_item = quota_bytes_per_item
        self.max_items = max_items

        self._data: dict[str, Any] = {}
        self._sizes: dict[str, int] = {}
        self._listeners: list[ChangeListener] = []
        self._lock = asyncio.Lock()
        self._loaded = self.path is None

    @classmethod
    def from_config(cls, config: SetAsideConfig) -> LocalMetadataStore:
        """Create a store from configuration."""
        return cls(
            path=config.metadata_path,
            area=config.metadata_area,
            quota_bytes=config.quota_bytes,
            quota_bytes_per_item=config.quota_bytes_per_item,
            max_items=config.max_items,
        )

    @property
    def bytes_in_use(self) -> int:
        return sum(self._sizes.values())

    async def _ensure_loaded(self) -> None:
        if self._loaded or self.path is None:
            return
        snapshot = await read_json(self.path) or {}
        for key, value in snapshot.items():
            self._data[key] = value
            self._sizes[key] = _item_size(key, json.dumps(value))
        self._loaded = True
        logger.info(f"Loaded {len(self._data)} metadata keys from {self.path}")

    async def _persist(self) -> None:
        if self.path is not None:
            await write_json_atomic(self.path, self._data)

    async def get_all(self) -> dict[str, Any]:
        async with self._lock:
            await self._ensure_loaded()
            return copy.deepcopy(self._data)

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            await self._ensure_loaded()
            return copy.deepcopy(self._data.get(key))

    def _check_quota(self, key: str, size: int) -> None:
        if size > self.quota_bytes_per_item:
            raise QuotaExceededError(key, size, self.quota_bytes_per_item, "QUOTA_BYTES_PER_ITEM")

        if key not in self._data and len(self._data) + 1 > self.max_items:
            raise QuotaExceededError(key, len(self._data) + 1, self.max_items, "MAX_ITEMS")

        total = self.bytes_in_use - self._sizes.get(key, 0) + size
        if total > self.quota_bytes:
            raise QuotaExceededError(key, total, self.quota_bytes, "QUOTA_BYTES")

    async def set(self, key: str, value: Any) -> None:
        try:
            encoded = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageIOError("encode_value", key, e) from e

        async with self._lock:
            await self._ensure_loaded()
            size = _item_size(key, encoded)
            self._check_quota(key, size)

            old_value = self._data.get(key)
            old_size = self._sizes.get(key)
            self._data[key] = json.loads(encoded)
            self._sizes[key] = size
            try:
                await self._persist()
            except StorageIOError:
                self._restore(key, old_value, old_size)
                raise

        self._notify(StorageChange(key, old_value, json.loads(encoded), self.area))

    async def remove(self, key: str) -> None:
        async with self._lock:
            await self._ensure_loaded()
            if key not in self._data:
                return
            old_value = self._data.pop(key)
            old_size = self._sizes.pop(key)
            try:
                await self._persist()
            except StorageIOError:
                self._restore(key, old_value, old_size)
                raise

        self._notify(StorageChange(key, old_value, None, self.area))

    async def apply_remote_changes(self, changes: Mapping[str, Any | None]) -> None:
        """Apply values delivered by sync from another device.

        Args:
            changes: New value per key; None removes the key
        """
        notifications: list[StorageChange] = []
        async with self._lock:
            await self._ensure_loaded()
            for key, value in changes.items():
                old_value = self._data.get(key)
                if value is None:
                    if key not in self._data:
                        continue
                    del self._data[key]
                    del self._sizes[key]
                    notifications.append(StorageChange(key, old_value, None, self.area))
                else:
                    encoded = json.dumps(value)
                    self._data[key] = json.loads(encoded)
                    self._sizes[key] = _item_size(key, encoded)
                    notifications.append(
                        StorageChange(key, old_value, json.loads(encoded), self.area)
                    )
            await self._persist()

        logger.debug(f"Applied {len(notifications)} remote changes")
        for change in notifications:
            self._notify(change)

    def _restore(self, key: str, old_value: Any | None, old_size: int | None) -> None:
        if old_value is None:
            self._data.pop(key, None)
            self._sizes.pop(key, None)
        else:
            self._data[key] = old_value
            self._sizes[key] = old_size or 0

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, change: StorageChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception(f"Change listener failed for {change.key}")

    async def close(self) -> None:
        self._listeners.clear()
