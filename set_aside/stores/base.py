"""
Abstract store interfaces.

Defines the contracts of the two stores behind a set of collections:
a small, synchronized metadata store and a device-local blob store.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..models import ItemAttachments

# Blob-store value: attachments of one collection keyed by item ID
BlobRecord = dict[str, ItemAttachments]


@dataclass(frozen=True)
class StorageChange:
    """A single change to the metadata store.

    Attributes:
        key: Changed key
        old_value: Value before the change, None if the key was absent
        new_value: Value after the change, None if the key was removed
        area: Name of the storage area that changed
    """

    key: str
    old_value: Any = None
    new_value: Any = None
    area: str = "sync"


# Listener invoked for each change; must not block
ChangeListener = Callable[[StorageChange], None]


class MetadataStore(ABC):
    """Quota-constrained, eventually consistent key-value store.

    Listeners are notified of every change, whether it was written
    locally or delivered from another device. Delivery is at least once
    and ordering across different keys is not guaranteed.
    """

    @abstractmethod
    async def get_all(self) -> dict[str, Any]:
        """Return a snapshot of every key and value."""
        ...

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the value stored under key, or None."""
        ...

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Store a value.

        Raises:
            QuotaExceededError: If the write exceeds the store's capacity
        """
        ...

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Remove a key; removing an absent key is a no-op."""
        ...

    @abstractmethod
    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a change listener.

        Returns:
            A callable that unregisters the listener
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release resources held by the store."""
        ...


class BlobStore(ABC):
    """Device-local store for collection attachments.

    Every operation may fail with StorageIOError.
    """

    @abstractmethod
    async def get(self, key: str) -> BlobRecord | None:
        """Return the record stored under key, or None if absent."""
        ...

    @abstractmethod
    async def get_all(self) -> dict[str, BlobRecord]:
        """Return every record keyed by collection ID."""
        ...

    @abstractmethod
    async def keys(self) -> list[str]:
        """Return every stored key."""
        ...

    @abstractmethod
    async def set(self, key: str, value: BlobRecord) -> None:
        """Store or replace a record."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete a record; deleting an absent key is a no-op."""
        ...

    @abstractmethod
    async def clear(self) -> None:
        """Delete every record."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the underlying handle."""
        ...
