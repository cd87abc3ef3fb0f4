"""ID generation and key utilities for set-aside collections.

Centralizes the key format knowledge so callers never need to
construct or parse metadata-store keys directly.

Collection keys: collection:{uuid4}

Keys under the same namespace that do not match the pattern
(for example written by a future version) are not ours and are ignored.
"""

from __future__ import annotations

import re
import uuid

COLLECTION_KEY_PREFIX = "collection:"

COLLECTION_KEY_RE = re.compile(
    r"^collection:[0-9a-f]{8}-(?:[0-9a-f]{4}-){3}[0-9a-f]{12}$"
)


def generate_id() -> str:
    """Generate a random UUID-v4 string."""
    return str(uuid.uuid4())


def collection_key(collection_id: str) -> str:
    """Build the metadata-store key for a collection."""
    return f"{COLLECTION_KEY_PREFIX}{collection_id}"


def is_collection_key(key: str) -> bool:
    """Return True if the key names a collection record."""
    return COLLECTION_KEY_RE.match(key) is not None


def parse_collection_key(key: str) -> str:
    """Extract the collection ID from a metadata-store key.

    Raises ValueError on keys not matching the collection pattern.
    """
    if not is_collection_key(key):
        raise ValueError(f"Malformed collection key: {key}")
    return key[len(COLLECTION_KEY_PREFIX):]
