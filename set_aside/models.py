"""
Domain model for set-aside collections.

A Collection groups the tabs of one window that were set aside together.
Each Item keeps the URL and title of one tab plus optional favicon and
thumbnail attachments. Attachments never appear in the metadata-store
form of a collection; they live in memory and in the blob store only.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from .exceptions import ItemNotFoundError, MalformedRecordError
from .id_utils import generate_id


def _format_timestamp(value: datetime) -> str:
    """Format a timestamp as ISO-8601 UTC with millisecond precision."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


@dataclass
class ItemAttachments:
    """Binary attachments of one item, as kept in the blob store."""

    favicon: bytes | None = None
    thumbnail: bytes | None = None

    @property
    def is_empty(self) -> bool:
        return self.favicon is None and self.thumbnail is None


@dataclass
class Item:
    """One saved tab.

    Attributes:
        url: Address of the tab
        title: Title of the tab when it was set aside
        id: Immutable item ID, a random UUID-v4 unless supplied
        favicon: Optional favicon image bytes
        thumbnail: Optional thumbnail image bytes
    """

    url: str
    title: str = ""
    id: str = field(default_factory=generate_id)
    favicon: bytes | None = None
    thumbnail: bytes | None = None

    def serialize(self) -> dict[str, Any]:
        """Serialize for the metadata store (attachments omitted)."""
        return {"id": self.id, "url": self.url, "title": self.title}

    @classmethod
    def deserialize(cls, data: Any, key: str = "item") -> Item:
        """Deserialize a metadata-store item record."""
        if not isinstance(data, dict):
            raise MalformedRecordError(key, "item is not an object")
        item_id = data.get("id")
        url = data.get("url")
        title = data.get("title", "")
        if not isinstance(item_id, str) or not item_id:
            raise MalformedRecordError(key, "item id missing")
        if not isinstance(url, str):
            raise MalformedRecordError(key, f"item {item_id} has no url")
        if not isinstance(title, str):
            raise MalformedRecordError(key, f"item {item_id} has a non-string title")
        return cls(url=url, title=title, id=item_id)

    @property
    def attachments(self) -> ItemAttachments:
        return ItemAttachments(favicon=self.favicon, thumbnail=self.thumbnail)


@dataclass
class Collection:
    """A timestamped group of saved tabs.

    Items are kept in insertion order, which is the display order.
    A collection without items is never persisted; removing its last
    item removes the collection instead.

    Attributes:
        items: Items keyed by item ID
        id: Collection ID, stable for the collection's lifetime
        created_at: When the tabs were set aside (UTC)
    """

    items: dict[str, Item] = field(default_factory=dict)
    id: str = field(default_factory=generate_id)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_items(
        cls,
        items: Iterable[Item],
        collection_id: str | None = None,
        created_at: datetime | None = None,
    ) -> Collection:
        """Build a collection from items, keeping their order."""
        collection = cls(
            items={item.id: item for item in items},
            id=collection_id or generate_id(),
        )
        if created_at is not None:
            collection.created_at = created_at
        return collection

    def __len__(self) -> int:
        return len(self.items)

    @property
    def is_empty(self) -> bool:
        return not self.items

    def serialize(self) -> dict[str, Any]:
        """Serialize for the metadata store (attachments omitted)."""
        return {
            "id": self.id,
            "createdAt": _format_timestamp(self.created_at),
            "items": [item.serialize() for item in self.items.values()],
        }

    @classmethod
    def deserialize(cls, data: Any, key: str = "collection") -> Collection:
        """Deserialize a metadata-store record.

        Raises:
            MalformedRecordError: If the record does not have the expected
                shape, e.g. because it was written by a newer schema.
        """
        if not isinstance(data, dict):
            raise MalformedRecordError(key, "record is not an object")

        collection_id = data.get("id")
        if not isinstance(collection_id, str) or not collection_id:
            raise MalformedRecordError(key, "collection id missing")

        raw_created = data.get("createdAt")
        if not isinstance(raw_created, str):
            raise MalformedRecordError(key, "createdAt missing")
        try:
            created_at = _parse_timestamp(raw_created)
        except ValueError as e:
            raise MalformedRecordError(key, f"invalid createdAt {raw_created!r}") from e

        raw_items = data.get("items")
        if not isinstance(raw_items, list):
            raise MalformedRecordError(key, "items is not a list")
        if not raw_items:
            raise MalformedRecordError(key, "collection has no items")

        items = [Item.deserialize(raw, key) for raw in raw_items]
        return cls.from_items(items, collection_id=collection_id, created_at=created_at)

    def copy(self) -> Collection:
        """Return a copy with copied items (attachments are shared bytes)."""
        return Collection(
            items={item_id: replace(item) for item_id, item in self.items.items()},
            id=self.id,
            created_at=self.created_at,
        )

    def without_item(self, item_id: str) -> Collection:
        """Return a copy of the collection with one item removed.

        Raises:
            ItemNotFoundError: If the item is not in the collection
        """
        if item_id not in self.items:
            raise ItemNotFoundError(item_id, self.id)
        clone = self.copy()
        del clone.items[item_id]
        return clone

    def attachments(self) -> dict[str, ItemAttachments]:
        """Extract the blob-store record for this collection."""
        return {item_id: item.attachments for item_id, item in self.items.items()}

    def merge_attachments(self, attachments: Mapping[str, ItemAttachments]) -> None:
        """Fill in favicon and thumbnail of items present in the blob record."""
        for item_id, item in self.items.items():
            data = attachments.get(item_id)
            if data is None:
                continue
            item.favicon = data.favicon
            item.thumbnail = data.thumbnail
