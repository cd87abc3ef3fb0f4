"""
Store wrappers.

Two physically different stores back a set of collections:

- a small, synchronized metadata store holding URLs, titles and
  timestamps (LocalMetadataStore)
- an unlimited, device-local blob store holding favicons and
  thumbnails (SQLiteBlobStore)

Example:
    >>> from set_aside.stores import LocalMetadataStore, SQLiteBlobStore
    >>> metadata = LocalMetadataStore(path="~/.set-aside/metadata.json")
    >>> blobs = SQLiteBlobStore("~/.set-aside/attachments.db")
"""

from .base import BlobRecord, BlobStore, ChangeListener, MetadataStore, StorageChange
from .blobs import SQLiteBlobStore
from .metadata import MAX_ITEMS, QUOTA_BYTES, QUOTA_BYTES_PER_ITEM, LocalMetadataStore

__all__ = [
    # Interfaces
    "MetadataStore",
    "BlobStore",
    "BlobRecord",
    "StorageChange",
    "ChangeListener",
    # Implementations
    "LocalMetadataStore",
    "SQLiteBlobStore",
    # Limits
    "QUOTA_BYTES",
    "QUOTA_BYTES_PER_ITEM",
    "MAX_ITEMS",
]
