"""
Tests for the local synced metadata store.

Covers quotas, change notifications for local and remote writes, and
persistence to a JSON snapshot.
"""

import json
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from set_aside.exceptions import QuotaExceededError, StorageIOError
from set_aside.stores.base import StorageChange
from set_aside.stores.metadata import QUOTA_BYTES, LocalMetadataStore


class TestBasicOperations:
    @pytest.mark.asyncio
    async def test_set_and_get(self, metadata_store):
        await metadata_store.set("a", {"x": 1})
        assert await metadata_store.get("a") == {"x": 1}

    @pytest.mark.asyncio
    async def test_get_missing(self, metadata_store):
        assert await metadata_store.get("missing") is None

    @pytest.mark.asyncio
    async def test_get_all_returns_copy(self, metadata_store):
        await metadata_store.set("a", {"x": 1})
        snapshot = await metadata_store.get_all()
        snapshot["a"]["x"] = 2
        assert await metadata_store.get("a") == {"x": 1}

    @pytest.mark.asyncio
    async def test_remove(self, metadata_store):
        await metadata_store.set("a", 1)
        await metadata_store.remove("a")
        assert await metadata_store.get_all() == {}
        assert metadata_store.bytes_in_use == 0

    @pytest.mark.asyncio
    async def test_remove_missing_is_noop(self, metadata_store):
        await metadata_store.remove("missing")

    @pytest.mark.asyncio
    async def test_unserializable_value(self, metadata_store):
        with pytest.raises(StorageIOError):
            await metadata_store.set("a", {"bytes": b"raw"})


class TestQuotas:
    @pytest.mark.asyncio
    async def test_default_total_quota(self):
        assert LocalMetadataStore().quota_bytes == QUOTA_BYTES == 102400

    @pytest.mark.asyncio
    async def test_per_item_quota(self):
        store = LocalMetadataStore(quota_bytes_per_item=20)
        with pytest.raises(QuotaExceededError) as exc_info:
            await store.set("key", "x" * 30)
        assert exc_info.value.quota == "QUOTA_BYTES_PER_ITEM"
        assert await store.get_all() == {}

    @pytest.mark.asyncio
    async def test_max_items(self):
        store = LocalMetadataStore(max_items=2)
        await store.set("a", 1)
        await store.set("b", 2)
        with pytest.raises(QuotaExceededError) as exc_info:
            await store.set("c", 3)
        assert exc_info.value.quota == "MAX_ITEMS"

        # Overwriting an existing key does not add an item
        await store.set("a", 10)
        assert await store.get("a") == 10

    @pytest.mark.asyncio
    async def test_total_quota(self):
        store = LocalMetadataStore(quota_bytes=20)
        await store.set("a", "x" * 10)
        with pytest.raises(QuotaExceededError) as exc_info:
            await store.set("b", "y" * 10)
        assert exc_info.value.quota == "QUOTA_BYTES"
        assert await store.get("b") is None

    @pytest.mark.asyncio
    async def test_overwrite_counts_replacement_size_only(self):
        store = LocalMetadataStore(quota_bytes=20)
        await store.set("a", "x" * 10)
        await store.set("a", "y" * 12)
        assert await store.get("a") == "y" * 12

    @pytest.mark.asyncio
    async def test_remote_changes_bypass_quota(self):
        store = LocalMetadataStore(quota_bytes=10)
        await store.apply_remote_changes({"a": "x" * 50})
        assert await store.get("a") == "x" * 50


class TestChangeNotifications:
    @pytest.mark.asyncio
    async def test_local_set_notifies(self, metadata_store):
        changes: list[StorageChange] = []
        metadata_store.subscribe(changes.append)

        await metadata_store.set("a", 1)
        await metadata_store.set("a", 2)
        await metadata_store.remove("a")

        assert changes == [
            StorageChange("a", None, 1, "sync"),
            StorageChange("a", 1, 2, "sync"),
            StorageChange("a", 2, None, "sync"),
        ]

    @pytest.mark.asyncio
    async def test_remote_changes_notify(self, metadata_store):
        await metadata_store.set("gone", 1)
        changes: list[StorageChange] = []
        metadata_store.subscribe(changes.append)

        await metadata_store.apply_remote_changes({"new": {"v": 1}, "gone": None, "absent": None})

        assert StorageChange("new", None, {"v": 1}, "sync") in changes
        assert StorageChange("gone", 1, None, "sync") in changes
        assert len(changes) == 2

    @pytest.mark.asyncio
    async def test_failed_write_does_not_notify(self):
        store = LocalMetadataStore(quota_bytes_per_item=5)
        changes = []
        store.subscribe(changes.append)
        with pytest.raises(QuotaExceededError):
            await store.set("key", "too large")
        assert changes == []

    @pytest.mark.asyncio
    async def test_unsubscribe(self, metadata_store):
        changes = []
        unsubscribe = metadata_store.subscribe(changes.append)
        unsubscribe()
        await metadata_store.set("a", 1)
        assert changes == []

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_others(self, metadata_store):
        def broken(change):
            raise RuntimeError("listener bug")

        changes = []
        metadata_store.subscribe(broken)
        metadata_store.subscribe(changes.append)

        await metadata_store.set("a", 1)
        assert len(changes) == 1

    @pytest.mark.asyncio
    async def test_area_reported(self):
        store = LocalMetadataStore(area="local")
        changes = []
        store.subscribe(changes.append)
        await store.set("a", 1)
        assert changes[0].area == "local"


class TestPersistence:
    @pytest.mark.asyncio
    async def test_snapshot_survives_reopen(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "nested" / "metadata.json"

            store = LocalMetadataStore(path=path)
            await store.set("a", {"x": 1})
            await store.set("b", [1, 2])
            await store.remove("b")

            assert json.loads(path.read_text()) == {"a": {"x": 1}}

            reopened = LocalMetadataStore(path=path)
            assert await reopened.get_all() == {"a": {"x": 1}}
            assert reopened.bytes_in_use == store.bytes_in_use

    @pytest.mark.asyncio
    async def test_missing_snapshot_starts_empty(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = LocalMetadataStore(path=Path(tmpdir) / "metadata.json")
            assert await store.get_all() == {}

    @pytest.mark.asyncio
    async def test_snapshot_read_only_when_path_given(self):
        with patch("set_aside.stores.metadata.read_json", return_value={"a": 1}) as read:
            in_memory = LocalMetadataStore()
            assert await in_memory.get_all() == {}
            read.assert_not_called()

            with tempfile.TemporaryDirectory() as tmpdir:
                persisted = LocalMetadataStore(path=Path(tmpdir) / "metadata.json")
                assert await persisted.get("a") == 1
                assert await persisted.get_all() == {"a": 1}
            read.assert_called_once()

    @pytest.mark.asyncio
    async def test_failed_persist_rolls_back(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = LocalMetadataStore(path=Path(tmpdir) / "metadata.json")
            await store.set("a", 1)

            changes = []
            store.subscribe(changes.append)
            with patch(
                "set_aside.stores.metadata.write_json_atomic",
                side_effect=StorageIOError("write_json"),
            ):
                with pytest.raises(StorageIOError):
                    await store.set("a", 2)
                with pytest.raises(StorageIOError):
                    await store.set("b", 3)

            assert await store.get_all() == {"a": 1}
            assert changes == []
