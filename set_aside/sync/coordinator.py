"""
Synchronization coordinator for set-aside collections.

Keeps the synced metadata store, the device-local blob store and an
in-memory map of collections coherent, and serves that map to
subscribers:

- Hydration: on start, rebuild the map from both stores
- Stale-blob GC: delete blob records whose collection no longer exists
- Change translation: turn metadata-store changes, local or from other
  devices, into collectionCreated/Removed/Changed broadcasts
- Serialized mutation: one read-modify-write at a time per collection
- Request handling: subscriber requests queued until hydration completes

Neither store offers transactions spanning both, so writes are ordered
instead: blobs before metadata on create, metadata before blobs on
delete. Anything left behind by a crash is removed by the next GC pass.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..capture import BrowserTab, CaptureService, TabService, capture_items, select_capturable_tabs
from ..config import SetAsideConfig
from ..exceptions import (
    CollectionNotFoundError,
    MalformedRecordError,
    QuotaExceededError,
    StorageIOError,
    TabOpenError,
)
from ..id_utils import collection_key, generate_id, is_collection_key, parse_collection_key
from ..logging_utils import CollectionLoggerAdapter, configure_logging
from ..models import Collection, Item
from ..stores.base import BlobRecord, BlobStore, MetadataStore, StorageChange
from ..stores.blobs import SQLiteBlobStore
from ..stores.metadata import LocalMetadataStore
from .protocol import (
    RequestType,
    collection_changed,
    collection_created,
    collection_removed,
    collections_message,
    operation_failed,
    parse_request,
)
from .subscribers import SubscriberChannel, SubscriberRegistry
from .work_queue import KeyedWorkQueue

logger = logging.getLogger(__name__)


class CoordinatorState(Enum):
    """Lifecycle of the coordinator; READY is terminal."""

    UNINITIALIZED = "uninitialized"
    HYDRATING = "hydrating"
    READY = "ready"


@dataclass
class HydrationResult:
    """Result of the startup hydration pass."""

    loaded: int = 0
    skipped: int = 0
    stale_blobs_removed: int = 0
    replayed_requests: int = 0


@dataclass(eq=False)
class _PendingWrite:
    """A local metadata write whose change notification has not arrived yet."""

    value: dict[str, Any] | None
    collection: Collection | None


class SyncCoordinator:
    """Owns the authoritative in-memory map of collections.

    Every mutation of a collection, whether requested locally or caused
    by a change notification, runs through a per-collection work queue,
    so mutations of the same collection never interleave.

    The metadata store notifies about local writes too. Each local write
    is recorded as pending until its notification arrives; that
    notification is broadcast but not applied again, since the map
    already holds the same or a newer state.

    Example:
        >>> coordinator = await SyncCoordinator.create(config, tab_service, capture_service)
        >>> channel = QueueChannel()
        >>> coordinator.registry.connect(channel)
        >>> await coordinator.registry.receive(channel, {"type": "listCollections"})
    """

    def __init__(
        self,
        metadata: MetadataStore,
        blobs: BlobStore,
        tab_service: TabService | None = None,
        capture_service: CaptureService | None = None,
        registry: SubscriberRegistry | None = None,
        config: SetAsideConfig | None = None,
        id_factory: Callable[[], str] = generate_id,
    ) -> None:
        """Initialize the coordinator; call init() before use.

        Args:
            metadata: Synced metadata store
            blobs: Local attachment store
            tab_service: Opens restored items and closes set-aside tabs
            capture_service: Produces favicons and thumbnails
            registry: Subscriber registry (a new one by default)
            config: Configuration (defaults if omitted)
            id_factory: Source of new collection IDs
        """
        self.metadata = metadata
        self.blobs = blobs
        self.tab_service = tab_service
        self.capture_service = capture_service
        self.config = config or SetAsideConfig()
        self.registry = registry or SubscriberRegistry()
        self.registry.set_handler(self.handle_request)
        self._id_factory = id_factory

        self._state = CoordinatorState.UNINITIALIZED
        self._ready = asyncio.Event()
        self._collections: dict[str, Collection] = {}
        self._queue = KeyedWorkQueue()
        self._pending_writes: dict[str, list[_PendingWrite]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._unsubscribe: Callable[[], None] | None = None

    @classmethod
    async def create(
        cls,
        config: SetAsideConfig | None = None,
        tab_service: TabService | None = None,
        capture_service: CaptureService | None = None,
        registry: SubscriberRegistry | None = None,
        id_factory: Callable[[], str] = generate_id,
    ) -> SyncCoordinator:
        """Create stores from configuration and hydrate a coordinator."""
        if config is None:
            config = SetAsideConfig.from_env()
        configure_logging(config.log_level, config.json_logs)

        coordinator = cls(
            LocalMetadataStore.from_config(config),
            SQLiteBlobStore.from_config(config),
            tab_service=tab_service,
            capture_service=capture_service,
            registry=registry,
            config=config,
            id_factory=id_factory,
        )
        await coordinator.init()
        return coordinator

    async def __aenter__(self) -> SyncCoordinator:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is CoordinatorState.READY

    def get_collection(self, collection_id: str) -> Collection | None:
        return self._collections.get(collection_id)

    def require_collection(self, collection_id: str) -> Collection:
        """Return a collection or raise CollectionNotFoundError."""
        collection = self._collections.get(collection_id)
        if collection is None:
            raise CollectionNotFoundError(collection_id)
        return collection

    def list_collections(self) -> list[Collection]:
        """Return all collections, newest first."""
        return sorted(self._collections.values(), key=lambda c: c.created_at, reverse=True)

    # =========================================================================
    # Hydration
    # =========================================================================

    async def init(self) -> HydrationResult:
        """Hydrate the map from both stores, collect stale blobs, then go ready.

        Requests queued in the registry meanwhile are replayed afterwards
        in arrival order.
        """
        if self._state is not CoordinatorState.UNINITIALIZED:
            raise RuntimeError(f"Coordinator already {self._state.value}")

        self._state = CoordinatorState.HYDRATING
        result = HydrationResult()

        # Changes arriving from now on wait for READY, then apply in order
        self._unsubscribe = self.metadata.subscribe(self._on_storage_changed)

        records = await self.metadata.get_all()
        for key, value in records.items():
            if not is_collection_key(key):
                continue
            try:
                collection = self._deserialize(key, value)
            except MalformedRecordError as e:
                logger.error(f"Skipping malformed collection record: {e.message}")
                result.skipped += 1
                continue
            self._collections[collection.id] = collection
        result.loaded = len(self._collections)
        logger.info(f"Loaded {result.loaded} collections from metadata store")

        await asyncio.gather(
            *(self._load_attachments(collection) for collection in self._collections.values())
        )

        result.stale_blobs_removed = await self._collect_stale_blobs()

        self._state = CoordinatorState.READY
        self._ready.set()
        logger.info("Coordinator ready")

        # Let changes and calls that waited for hydration claim their queue slots first
        await asyncio.sleep(0)

        result.replayed_requests = await self.registry.open()
        return result

    @staticmethod
    def _deserialize(key: str, value: Any) -> Collection:
        collection = Collection.deserialize(value, key)
        if collection_key(collection.id) != key:
            raise MalformedRecordError(key, f"record holds collection {collection.id}")
        return collection

    async def _fetch_attachments(self, collection_id: str) -> BlobRecord | None:
        try:
            return await self.blobs.get(collection_id)
        except (StorageIOError, MalformedRecordError) as e:
            logger.warning(f"Attachments of {collection_id} unavailable: {e.message}")
            return None

    async def _load_attachments(self, collection: Collection) -> None:
        record = await self._fetch_attachments(collection.id)
        if record is None:
            logger.debug(f"No attachments stored for collection {collection.id}")
            return
        collection.merge_attachments(record)

    async def _collect_stale_blobs(self) -> int:
        """Delete blob records that belong to no known collection."""
        try:
            keys = await self.blobs.keys()
        except StorageIOError as e:
            logger.warning(f"Skipping stale attachment cleanup: {e.message}")
            return 0

        removed = 0
        for key in keys:
            if key in self._collections:
                continue
            logger.info(f"Removing attachments of stale collection {key}")
            if await self._delete_blobs(key):
                removed += 1
        return removed

    # =========================================================================
    # Store writes
    # =========================================================================

    async def _store_blobs(self, collection: Collection) -> bool:
        try:
            await self.blobs.set(collection.id, collection.attachments())
        except StorageIOError as e:
            logger.warning(f"Could not store attachments of {collection.id}: {e.message}")
            return False
        return True

    async def _delete_blobs(self, collection_id: str) -> bool:
        """Best-effort delete; leftovers are collected on next start."""
        try:
            await self.blobs.delete(collection_id)
        except StorageIOError as e:
            logger.warning(f"Could not delete attachments of {collection_id}: {e.message}")
            return False
        return True

    def _expect_echo(
        self, collection_id: str, value: dict[str, Any] | None, collection: Collection | None
    ) -> _PendingWrite:
        write = _PendingWrite(value, collection)
        self._pending_writes.setdefault(collection_id, []).append(write)
        return write

    def _forget_echo(self, collection_id: str, write: _PendingWrite) -> None:
        pending = self._pending_writes.get(collection_id, [])
        if write in pending:
            pending.remove(write)
        if not pending:
            self._pending_writes.pop(collection_id, None)

    def _take_echo(self, collection_id: str, new_value: Any) -> _PendingWrite | None:
        """Match a change against pending local writes.

        Older pending writes before the match were coalesced by the store.
        """
        pending = self._pending_writes.get(collection_id)
        if not pending:
            return None
        for index, write in enumerate(pending):
            if write.value == new_value:
                del pending[: index + 1]
                if not pending:
                    del self._pending_writes[collection_id]
                return write
        return None

    async def _write_collection(self, collection: Collection) -> None:
        value = collection.serialize()
        write = self._expect_echo(collection.id, value, collection)
        try:
            await self.metadata.set(collection_key(collection.id), value)
        except Exception:
            self._forget_echo(collection.id, write)
            raise
        self._collections[collection.id] = collection

    async def _erase_collection(self, collection_id: str) -> None:
        write = self._expect_echo(collection_id, None, None)
        try:
            await self.metadata.remove(collection_key(collection_id))
        except Exception:
            self._forget_echo(collection_id, write)
            raise
        self._collections.pop(collection_id, None)
        await self._delete_blobs(collection_id)

    # =========================================================================
    # Mutations
    # =========================================================================

    async def create_collection(self, items: Iterable[Item]) -> Collection | None:
        """Persist a new collection from items carrying their attachments.

        Returns:
            The new collection, or None if items is empty

        Raises:
            QuotaExceededError: If the metadata store is full; the
                attachments written beforehand are deleted again
        """
        items = list(items)
        if not items:
            logger.info("Not creating a collection without items")
            return None

        await self._ready.wait()
        collection = Collection.from_items(items, collection_id=self._id_factory())
        return await self._queue.run(collection.id, lambda: self._create_locked(collection))

    async def _create_locked(self, collection: Collection) -> Collection:
        log = CollectionLoggerAdapter(logger, {"collection_id": collection.id})

        # Blobs first: metadata without blobs is tolerable, the reverse is garbage
        stored_blobs = await self._store_blobs(collection)
        try:
            await self._write_collection(collection)
        except QuotaExceededError as e:
            log.error(f"Could not store collection {collection.id}: {e.message}")
            if stored_blobs:
                await self._delete_blobs(collection.id)
            raise

        log.info(f"Created collection {collection.id} with {len(collection)} items")
        return collection

    async def remove_item(self, collection_id: str, item_id: str) -> bool:
        """Remove an item; removing the last item removes the collection.

        Returns:
            False if the collection or item is unknown
        """
        await self._ready.wait()
        return await self._queue.run(
            collection_id, lambda: self._remove_item_locked(collection_id, item_id)
        )

    async def _remove_item_locked(self, collection_id: str, item_id: str) -> bool:
        log = CollectionLoggerAdapter(logger, {"collection_id": collection_id})
        collection = self._collections.get(collection_id)
        if collection is None:
            log.warning(f"Cannot remove item {item_id}: collection {collection_id} not found")
            return False
        if item_id not in collection.items:
            log.warning(f"Cannot remove item {item_id}: not in collection {collection_id}")
            return False

        updated = collection.without_item(item_id)
        if updated.is_empty:
            return await self._remove_collection_locked(collection_id)

        await self._write_collection(updated)
        log.info(f"Removed item {item_id} from collection {collection_id}")
        return True

    async def restore_item(self, collection_id: str, item_id: str, destination: Any) -> bool:
        """Reopen an item as a tab, then remove it from its collection.

        Raises:
            TabOpenError: If the tab could not be opened; the item is kept
        """
        await self._ready.wait()
        return await self._queue.run(
            collection_id,
            lambda: self._restore_item_locked(collection_id, item_id, destination),
        )

    async def _restore_item_locked(self, collection_id: str, item_id: str, destination: Any) -> bool:
        collection = self._collections.get(collection_id)
        item = collection.items.get(item_id) if collection is not None else None
        if item is None:
            logger.warning(f"Cannot restore item {item_id} of collection {collection_id}: not found")
            return False

        logger.info(f"Restoring item {item_id} of collection {collection_id} in {destination}")
        await self._open_tab(item.url, destination)
        return await self._remove_item_locked(collection_id, item_id)

    async def remove_collection(self, collection_id: str) -> bool:
        """Remove a collection from both stores.

        Returns:
            False if the collection is unknown
        """
        await self._ready.wait()
        return await self._queue.run(
            collection_id, lambda: self._remove_collection_locked(collection_id)
        )

    async def _remove_collection_locked(self, collection_id: str) -> bool:
        if collection_id not in self._collections:
            logger.warning(f"Cannot remove collection {collection_id}: not found")
            return False

        await self._erase_collection(collection_id)
        logger.info(f"Removed collection {collection_id}")
        return True

    async def restore_collection(self, collection_id: str, destination: Any) -> bool:
        """Reopen every item of a collection, then remove the collection.

        If some tabs fail to open, only the reopened items are removed and
        the first failure is raised.
        """
        await self._ready.wait()
        return await self._queue.run(
            collection_id,
            lambda: self._restore_collection_locked(collection_id, destination),
        )

    async def _restore_collection_locked(self, collection_id: str, destination: Any) -> bool:
        collection = self._collections.get(collection_id)
        if collection is None:
            logger.warning(f"Cannot restore collection {collection_id}: not found")
            return False

        logger.info(f"Restoring collection {collection_id} in {destination}")
        items = list(collection.items.values())
        results = await asyncio.gather(
            *(self._open_tab(item.url, destination) for item in items),
            return_exceptions=True,
        )
        failures = [result for result in results if isinstance(result, BaseException)]
        if not failures:
            await self._erase_collection(collection_id)
            return True

        remaining = collection.copy()
        for item, result in zip(items, results, strict=True):
            if not isinstance(result, BaseException):
                del remaining.items[item.id]
        if len(remaining) < len(collection):
            await self._write_collection(remaining)
        logger.warning(
            f"Restored {len(collection) - len(remaining)} of {len(collection)} "
            f"items of collection {collection_id}"
        )
        raise failures[0]

    async def _open_tab(self, url: str, destination: Any) -> None:
        if self.tab_service is None:
            raise TabOpenError(url, RuntimeError("no tab service configured"))
        try:
            opened = await self.tab_service.open_tab(url, destination)
        except TabOpenError:
            raise
        except Exception as e:
            raise TabOpenError(url, e) from e
        if not opened:
            raise TabOpenError(url)

    async def set_aside_tabs(self, tabs: Iterable[BrowserTab]) -> Collection | None:
        """Capture a window's tabs into a new collection and close them.

        Returns:
            The new collection, or None if no tab could be set aside
        """
        selected = select_capturable_tabs(tabs, self.config.supported_schemes)
        if not selected:
            logger.info("No tabs to set aside")
            return None

        if self.capture_service is not None:
            items = await capture_items(selected, self.capture_service)
        else:
            items = [Item(url=tab.url, title=tab.title) for tab in selected]

        collection = await self.create_collection(items)
        if collection is not None and self.tab_service is not None:
            await self.tab_service.close_tabs(selected)
        return collection

    # =========================================================================
    # Change notifications
    # =========================================================================

    def _on_storage_changed(self, change: StorageChange) -> None:
        if not self._is_relevant(change.key, change.old_value, change.new_value, change.area):
            return
        if self.is_ready:
            # Claim the queue slot now so later local mutations run after this change
            self._track(self._submit_change(change.key, change.old_value, change.new_value))
        else:
            self._spawn(
                self.handle_external_change(
                    change.key, change.old_value, change.new_value, change.area
                )
            )

    def _is_relevant(
        self, key: str, old_value: Any | None, new_value: Any | None, area: str | None
    ) -> bool:
        if area is not None and area != self.config.metadata_area:
            return False
        return is_collection_key(key) and not (old_value is None and new_value is None)

    def _submit_change(
        self, key: str, old_value: Any | None, new_value: Any | None
    ) -> asyncio.Task[dict[str, Any] | None]:
        collection_id = parse_collection_key(key)
        return self._queue.submit(
            collection_id, lambda: self._apply_change(collection_id, key, old_value, new_value)
        )

    async def handle_external_change(
        self,
        key: str,
        old_value: Any | None,
        new_value: Any | None,
        area: str | None = None,
    ) -> dict[str, Any] | None:
        """Translate a metadata-store change into one broadcast event.

        Changes arriving before hydration completes are applied afterwards,
        in arrival order.

        Args:
            key: Changed key
            old_value: Previous value, None if the key was created
            new_value: New value, None if the key was removed
            area: Storage area of the change (defaults to the configured one)

        Returns:
            The broadcast event, or None if the change was ignored
        """
        if not self._is_relevant(key, old_value, new_value, area):
            return None

        await self._ready.wait()
        return await self._submit_change(key, old_value, new_value)

    async def _apply_change(
        self,
        collection_id: str,
        key: str,
        old_value: Any | None,
        new_value: Any | None,
    ) -> dict[str, Any] | None:
        echo = self._take_echo(collection_id, new_value)
        # With no newer local write pending, the echoed value is what the store holds
        latest_echo = echo is not None and collection_id not in self._pending_writes

        if new_value is None:
            if echo is None or latest_echo:
                self._collections.pop(collection_id, None)
            if echo is None:
                logger.info(f"Collection {collection_id} removed remotely")
                await self._delete_blobs(collection_id)
            event = collection_removed(collection_id)
        else:
            if echo is not None and echo.collection is not None:
                collection = echo.collection
                if latest_echo:
                    self._collections[collection_id] = collection
            else:
                try:
                    collection = self._deserialize(key, new_value)
                except MalformedRecordError as e:
                    logger.error(f"Ignoring malformed change: {e.message}")
                    return None
                await self._merge_known_attachments(collection)
                self._collections[collection_id] = collection
                logger.info(f"Collection {collection_id} changed remotely")

            if old_value is None:
                event = collection_created(collection)
            else:
                event = collection_changed(collection)

        await self.registry.broadcast(event)
        return event

    async def _merge_known_attachments(self, collection: Collection) -> None:
        record = await self._fetch_attachments(collection.id)
        if record is None:
            existing = self._collections.get(collection.id)
            if existing is None:
                return
            record = existing.attachments()
        collection.merge_attachments(record)

    # =========================================================================
    # Subscriber requests
    # =========================================================================

    async def handle_request(self, channel: SubscriberChannel, message: dict[str, Any]) -> None:
        """Process one request from a subscriber.

        Requests from one channel are handled one at a time, so a
        listCollections after a removal reflects that removal. A failed
        mutation is answered with operationFailed.
        """
        request_type = parse_request(message)
        if request_type is None:
            logger.warning(f"Ignoring malformed request from {channel.channel_id}: {message!r}")
            return

        logger.debug(f"Received {request_type.value} from {channel.channel_id}")
        if request_type is RequestType.LIST_COLLECTIONS:
            await self.registry.reply(channel, collections_message(self.list_collections()))
            return

        await self._perform(channel, request_type, message)

    async def _perform(
        self, channel: SubscriberChannel, request_type: RequestType, message: dict[str, Any]
    ) -> None:
        try:
            if request_type is RequestType.REMOVE_ITEM:
                await self.remove_item(message["collectionId"], message["itemId"])
            elif request_type is RequestType.RESTORE_ITEM:
                await self.restore_item(
                    message["collectionId"], message["itemId"], message["destination"]
                )
            elif request_type is RequestType.REMOVE_COLLECTION:
                await self.remove_collection(message["collectionId"])
            elif request_type is RequestType.RESTORE_COLLECTION:
                await self.restore_collection(message["collectionId"], message["destination"])
        except (QuotaExceededError, StorageIOError, TabOpenError) as e:
            logger.error(f"{request_type.value} from {channel.channel_id} failed: {e.message}")
            await self.registry.reply(channel, operation_failed(message, e.message))

    # =========================================================================
    # Background work and shutdown
    # =========================================================================

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        return self._track(asyncio.get_running_loop().create_task(coro))

    def _track(self, task: asyncio.Task[Any]) -> asyncio.Task[Any]:
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background operation failed", exc_info=exc)

    async def wait_idle(self) -> None:
        """Wait until all background work, including work it spawns, is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Stop listening for changes, finish pending work and close both stores."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        if self.is_ready:
            await self.wait_idle()
        else:
            for task in list(self._tasks):
                task.cancel()
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

        await self.metadata.close()
        await self.blobs.close()
        logger.info("Coordinator closed")
