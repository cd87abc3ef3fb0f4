"""
Set Aside

Sets the tabs of a browser window aside as a collection and restores
them later.

Provides:
- Two-store persistence: synced metadata (URLs, titles, timestamps)
  and device-local attachments (favicons, thumbnails)
- A sync coordinator that hydrates, serializes mutations per collection
  and broadcasts changes from this and other devices
- A subscriber protocol for UI consumers

Usage:

    >>> from set_aside import SetAsideConfig, SyncCoordinator, QueueChannel
    >>> config = SetAsideConfig.from_file("~/.set-aside/settings.yaml")
    >>> async with await SyncCoordinator.create(config, tab_service, capture_service) as coordinator:
    ...     await coordinator.set_aside_tabs(window_tabs)
    ...
    ...     channel = QueueChannel()
    ...     coordinator.registry.connect(channel)
    ...     await coordinator.registry.receive(channel, {"type": "listCollections"})
    ...     reply = await channel.receive()
"""

# Domain model
from .capture import BrowserTab, CaptureService, TabService

# Configuration
from .config import SetAsideConfig

# Exceptions
from .exceptions import (
    CaptureFailedError,
    CollectionNotFoundError,
    ConfigurationError,
    ItemNotFoundError,
    MalformedRecordError,
    QuotaExceededError,
    SetAsideError,
    StorageConnectionError,
    StorageIOError,
    TabOpenError,
)
from .logging_utils import configure_logging, configure_structured_logging
from .models import Collection, Item, ItemAttachments

# Stores
from .stores import BlobStore, LocalMetadataStore, MetadataStore, SQLiteBlobStore, StorageChange

# Sync
from .sync import (
    CoordinatorState,
    QueueChannel,
    SubscriberChannel,
    SubscriberRegistry,
    SyncCoordinator,
)

__all__ = [
    # Model
    "Collection",
    "Item",
    "ItemAttachments",
    "BrowserTab",
    "TabService",
    "CaptureService",
    # Stores
    "MetadataStore",
    "BlobStore",
    "StorageChange",
    "LocalMetadataStore",
    "SQLiteBlobStore",
    # Sync
    "SyncCoordinator",
    "CoordinatorState",
    "SubscriberRegistry",
    "SubscriberChannel",
    "QueueChannel",
    # Configuration
    "SetAsideConfig",
    "configure_logging",
    "configure_structured_logging",
    # Exceptions
    "SetAsideError",
    "QuotaExceededError",
    "StorageIOError",
    "StorageConnectionError",
    "CollectionNotFoundError",
    "ItemNotFoundError",
    "MalformedRecordError",
    "CaptureFailedError",
    "TabOpenError",
    "ConfigurationError",
]

__version__ = "0.1.0"
