"""
Subscriber message protocol.

Messages are plain dicts with a "type" field. In-process subscribers
receive Collection objects as-is; transports that need JSON encode
messages with encode_message(), which base64-encodes attachments.
"""

from __future__ import annotations

import base64
from enum import Enum
from typing import Any

from ..models import Collection


class RequestType(Enum):
    """Requests a subscriber can send."""

    LIST_COLLECTIONS = "listCollections"
    REMOVE_ITEM = "removeItem"
    RESTORE_ITEM = "restoreItem"
    REMOVE_COLLECTION = "removeCollection"
    RESTORE_COLLECTION = "restoreCollection"


class EventType(Enum):
    """Replies and broadcast events sent to subscribers."""

    COLLECTIONS = "collections"
    COLLECTION_CREATED = "collectionCreated"
    COLLECTION_REMOVED = "collectionRemoved"
    COLLECTION_CHANGED = "collectionChanged"
    OPERATION_FAILED = "operationFailed"


# Fields each request must carry besides "type"
REQUIRED_FIELDS: dict[RequestType, tuple[str, ...]] = {
    RequestType.LIST_COLLECTIONS: (),
    RequestType.REMOVE_ITEM: ("collectionId", "itemId"),
    RequestType.RESTORE_ITEM: ("collectionId", "itemId", "destination"),
    RequestType.REMOVE_COLLECTION: ("collectionId",),
    RequestType.RESTORE_COLLECTION: ("collectionId", "destination"),
}


def parse_request(message: Any) -> RequestType | None:
    """Return the request type of a well-formed request, else None."""
    if not isinstance(message, dict):
        return None
    try:
        request_type = RequestType(message.get("type"))
    except ValueError:
        return None
    if any(message.get(name) is None for name in REQUIRED_FIELDS[request_type]):
        return None
    return request_type


def collections_message(collections: list[Collection]) -> dict[str, Any]:
    return {"type": EventType.COLLECTIONS.value, "collections": collections}


def collection_created(collection: Collection) -> dict[str, Any]:
    return {"type": EventType.COLLECTION_CREATED.value, "collection": collection}


def collection_removed(collection_id: str) -> dict[str, Any]:
    return {"type": EventType.COLLECTION_REMOVED.value, "collectionId": collection_id}


def collection_changed(collection: Collection) -> dict[str, Any]:
    return {"type": EventType.COLLECTION_CHANGED.value, "collection": collection}


def operation_failed(request: dict[str, Any], reason: str) -> dict[str, Any]:
    return {"type": EventType.OPERATION_FAILED.value, "request": request, "reason": reason}


def _encode_bytes(value: bytes | None) -> str | None:
    return base64.b64encode(value).decode("ascii") if value is not None else None


def collection_to_wire(collection: Collection) -> dict[str, Any]:
    """Encode a collection, attachments included, as JSON-compatible data."""
    data = collection.serialize()
    for item_data, item in zip(data["items"], collection.items.values(), strict=True):
        item_data["favicon"] = _encode_bytes(item.favicon)
        item_data["thumbnail"] = _encode_bytes(item.thumbnail)
    return data


def encode_message(message: dict[str, Any]) -> dict[str, Any]:
    """Replace Collection objects in a message with their wire form."""
    encoded = dict(message)
    if isinstance(encoded.get("collection"), Collection):
        encoded["collection"] = collection_to_wire(encoded["collection"])
    if "collections" in encoded:
        encoded["collections"] = [collection_to_wire(c) for c in encoded["collections"]]
    return encoded
