"""
Tests for the Collection and Item domain model.
"""

from datetime import UTC, datetime

import pytest

from set_aside.exceptions import ItemNotFoundError, MalformedRecordError
from set_aside.models import Collection, Item, ItemAttachments

CREATED = datetime(2024, 3, 1, 12, 30, 45, 123000, tzinfo=UTC)


def sample_collection() -> Collection:
    return Collection.from_items(
        [
            Item(url="https://a.example", title="A", id="item-a", favicon=b"fa", thumbnail=b"ta"),
            Item(url="https://b.example", title="B", id="item-b"),
        ],
        collection_id="col-1",
        created_at=CREATED,
    )


class TestItem:
    def test_serialize_omits_attachments(self):
        item = Item(url="https://a.example", title="A", id="x", favicon=b"f", thumbnail=b"t")
        assert item.serialize() == {"id": "x", "url": "https://a.example", "title": "A"}

    def test_default_id_generated(self):
        assert Item(url="https://a").id != Item(url="https://a").id

    def test_deserialize(self):
        item = Item.deserialize({"id": "x", "url": "https://a", "title": "A"})
        assert item == Item(url="https://a", title="A", id="x")

    def test_deserialize_missing_title_defaults(self):
        assert Item.deserialize({"id": "x", "url": "https://a"}).title == ""

    @pytest.mark.parametrize(
        "data",
        [
            None,
            "https://a",
            {"url": "https://a"},
            {"id": "x"},
            {"id": "x", "url": "https://a", "title": 3},
        ],
    )
    def test_deserialize_malformed(self, data):
        with pytest.raises(MalformedRecordError):
            Item.deserialize(data, "collection:k")

    def test_attachments(self):
        item = Item(url="https://a", favicon=b"f")
        assert item.attachments == ItemAttachments(favicon=b"f", thumbnail=None)
        assert not item.attachments.is_empty
        assert Item(url="https://a").attachments.is_empty


class TestCollectionSerialization:
    def test_serialize_layout(self):
        data = sample_collection().serialize()
        assert data == {
            "id": "col-1",
            "createdAt": "2024-03-01T12:30:45.123Z",
            "items": [
                {"id": "item-a", "url": "https://a.example", "title": "A"},
                {"id": "item-b", "url": "https://b.example", "title": "B"},
            ],
        }

    def test_round_trip_is_stable(self):
        data = sample_collection().serialize()
        assert Collection.deserialize(data).serialize() == data

    def test_deserialize_keeps_item_order(self):
        restored = Collection.deserialize(sample_collection().serialize())
        assert list(restored.items) == ["item-a", "item-b"]
        assert restored.created_at == CREATED

    def test_deserialize_accepts_offset_timestamp(self):
        data = sample_collection().serialize()
        data["createdAt"] = "2024-03-01T14:30:45.123+02:00"
        assert Collection.deserialize(data).created_at == CREATED

    def test_naive_timestamp_treated_as_utc(self):
        collection = Collection.from_items(
            [Item(url="https://a", id="i")], collection_id="c", created_at=datetime(2024, 1, 1)
        )
        assert collection.serialize()["createdAt"] == "2024-01-01T00:00:00.000Z"

    @pytest.mark.parametrize(
        "mutate",
        [
            lambda d: d.pop("id"),
            lambda d: d.pop("createdAt"),
            lambda d: d.update(createdAt="yesterday"),
            lambda d: d.update(items={}),
            lambda d: d.update(items=[]),
            lambda d: d["items"].append({"url": "https://c"}),
        ],
    )
    def test_deserialize_malformed(self, mutate):
        data = sample_collection().serialize()
        mutate(data)
        with pytest.raises(MalformedRecordError):
            Collection.deserialize(data, "collection:col-1")

    def test_deserialize_non_dict(self):
        with pytest.raises(MalformedRecordError):
            Collection.deserialize(["not", "a", "record"])


class TestCollectionOperations:
    def test_len_and_empty(self):
        collection = sample_collection()
        assert len(collection) == 2
        assert not collection.is_empty
        assert Collection().is_empty

    def test_without_item_returns_copy(self):
        collection = sample_collection()
        updated = collection.without_item("item-a")

        assert list(updated.items) == ["item-b"]
        assert list(collection.items) == ["item-a", "item-b"]
        assert updated.id == collection.id
        assert updated.created_at == collection.created_at

    def test_without_unknown_item_raises(self):
        with pytest.raises(ItemNotFoundError):
            sample_collection().without_item("missing")

    def test_copy_is_independent(self):
        collection = sample_collection()
        clone = collection.copy()
        clone.items["item-a"].title = "changed"
        assert collection.items["item-a"].title == "A"

    def test_attachments_extracts_every_item(self):
        attachments = sample_collection().attachments()
        assert attachments == {
            "item-a": ItemAttachments(b"fa", b"ta"),
            "item-b": ItemAttachments(None, None),
        }

    def test_merge_attachments_fills_known_items(self):
        collection = Collection.deserialize(sample_collection().serialize())
        collection.merge_attachments(
            {
                "item-b": ItemAttachments(b"fb", None),
                "item-z": ItemAttachments(b"fz", b"tz"),
            }
        )
        assert collection.items["item-a"].favicon is None
        assert collection.items["item-b"].favicon == b"fb"
        assert "item-z" not in collection.items
