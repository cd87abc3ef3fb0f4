"""
Custom exceptions for set-aside collections.

Store wrappers and the sync coordinator raise these exceptions
so callers can handle failures consistently across both stores.
"""


class SetAsideError(Exception):
    """Base exception for all set-aside errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class QuotaExceededError(SetAsideError):
    """Raised when a metadata write would exceed the store's capacity."""

    def __init__(self, key: str, size_bytes: int, limit_bytes: int, quota: str):
        details = {
            "key": key,
            "size_bytes": size_bytes,
            "limit_bytes": limit_bytes,
            "quota": quota,
        }
        super().__init__(
            f"Quota {quota} exceeded writing {key}: {size_bytes} > {limit_bytes}",
            details,
        )
        self.key = key
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes
        self.quota = quota


class StorageIOError(SetAsideError):
    """Raised when a storage I/O operation fails."""

    def __init__(self, operation: str, key: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if key:
            details["key"] = key
        if cause:
            details["cause"] = str(cause)
        message = f"Storage I/O error during {operation}"
        if key:
            message += f": {key}"
        super().__init__(message, details)
        self.operation = operation
        self.key = key
        self.cause = cause


class StorageConnectionError(SetAsideError):
    """Raised when the underlying store cannot be opened."""

    def __init__(self, target: str, cause: Exception | None = None):
        details = {"target": target}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Could not open storage at {target}", details)
        self.target = target
        self.cause = cause


class CollectionNotFoundError(SetAsideError):
    """Raised when a collection is not in the in-memory map."""

    def __init__(self, collection_id: str):
        super().__init__(
            f"Collection not found: {collection_id}", {"collection_id": collection_id}
        )
        self.collection_id = collection_id


class ItemNotFoundError(SetAsideError):
    """Raised when an item is not part of a collection."""

    def __init__(self, item_id: str, collection_id: str | None = None):
        details = {"item_id": item_id}
        if collection_id:
            details["collection_id"] = collection_id
        super().__init__(f"Item not found: {item_id}", details)
        self.item_id = item_id
        self.collection_id = collection_id


class MalformedRecordError(SetAsideError):
    """Raised when a stored record cannot be deserialized."""

    def __init__(self, key: str, reason: str):
        super().__init__(f"Malformed record {key}: {reason}", {"key": key, "reason": reason})
        self.key = key
        self.reason = reason


class CaptureFailedError(SetAsideError):
    """Raised by a capture service when an attachment cannot be produced."""

    def __init__(self, tab_id: str | int, attachment: str, cause: Exception | None = None):
        details: dict = {"tab_id": tab_id, "attachment": attachment}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Could not capture {attachment} for tab {tab_id}", details)
        self.tab_id = tab_id
        self.attachment = attachment
        self.cause = cause


class TabOpenError(SetAsideError):
    """Raised when a saved item could not be reopened as a tab."""

    def __init__(self, url: str, cause: Exception | None = None):
        details = {"url": url}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Could not open tab for {url}", details)
        self.url = url
        self.cause = cause


class ConfigurationError(SetAsideError):
    """Raised when configuration values are invalid."""

    def __init__(self, field: str, reason: str):
        super().__init__(f"Invalid configuration for {field}: {reason}", {"field": field})
        self.field = field
        self.reason = reason
