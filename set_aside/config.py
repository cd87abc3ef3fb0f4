"""
Configuration for set-aside collections.

Values can be provided directly, read from environment variables, or
loaded from a YAML settings file:

```yaml
set_aside:
  metadata_path: ~/.set-aside/metadata.json
  blob_db_path: ~/.set-aside/attachments.db
  quota_bytes: 102400
  log_level: DEBUG
```

Environment Variables:
    SET_ASIDE_METADATA_PATH: Metadata snapshot file (default: memory only)
    SET_ASIDE_BLOB_DB_PATH: SQLite attachment database (default: :memory:)
    SET_ASIDE_METADATA_AREA: Storage area name (default: sync)
    SET_ASIDE_QUOTA_BYTES: Total metadata quota (default: 102400)
    SET_ASIDE_QUOTA_BYTES_PER_ITEM: Per-record quota (default: 8192)
    SET_ASIDE_MAX_ITEMS: Maximum metadata records (default: 512)
    SET_ASIDE_SUPPORTED_SCHEMES: Comma separated URL schemes (default: https,http,ftp)
    SET_ASIDE_LOG_LEVEL: Log level (default: INFO)
    SET_ASIDE_JSON_LOGS: Emit JSON logs when "true"
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError
from .stores.metadata import MAX_ITEMS, QUOTA_BYTES, QUOTA_BYTES_PER_ITEM

_INT_FIELDS = ("quota_bytes", "quota_bytes_per_item", "max_items")


def _parse_int(field_name: str, value: Any) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(field_name, f"expected an integer, got {value!r}") from None
    if parsed <= 0:
        raise ConfigurationError(field_name, "must be positive")
    return parsed


def _parse_schemes(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        value = value.split(",")
    schemes = tuple(str(scheme).strip().lower().rstrip(":") for scheme in value)
    return tuple(scheme for scheme in schemes if scheme)


@dataclass
class SetAsideConfig:
    """Configuration for the stores and the sync coordinator."""

    metadata_path: str | None = None
    blob_db_path: str = ":memory:"
    metadata_area: str = "sync"

    # Synced storage area limits
    quota_bytes: int = QUOTA_BYTES
    quota_bytes_per_item: int = QUOTA_BYTES_PER_ITEM
    max_items: int = MAX_ITEMS

    # Only tabs with these URL schemes can be set aside and restored
    supported_schemes: tuple[str, ...] = ("https", "http", "ftp")

    log_level: str = "INFO"
    json_logs: bool = False

    def __post_init__(self) -> None:
        for name in _INT_FIELDS:
            setattr(self, name, _parse_int(name, getattr(self, name)))
        self.supported_schemes = _parse_schemes(self.supported_schemes)
        if self.metadata_path:
            self.metadata_path = str(Path(self.metadata_path).expanduser())
        if self.blob_db_path != ":memory:":
            self.blob_db_path = str(Path(self.blob_db_path).expanduser())

    @classmethod
    def from_env(cls) -> SetAsideConfig:
        """Create config from environment variables."""
        values: dict[str, Any] = {}
        for field_info in fields(cls):
            raw = os.environ.get(f"SET_ASIDE_{field_info.name.upper()}")
            if raw is None:
                continue
            if field_info.name == "json_logs":
                values["json_logs"] = raw.lower() == "true"
            else:
                values[field_info.name] = raw
        return cls(**values)

    @classmethod
    def from_file(cls, path: str | Path) -> SetAsideConfig:
        """Create config from the set_aside section of a YAML file.

        A missing file yields the defaults.
        """
        config_path = Path(path).expanduser()
        if not config_path.exists():
            return cls()

        try:
            content = yaml.safe_load(config_path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(str(config_path), f"invalid YAML: {e}") from e

        section = content.get("set_aside", {}) if isinstance(content, dict) else {}
        if not isinstance(section, dict):
            raise ConfigurationError("set_aside", "expected a mapping")

        known = {field_info.name for field_info in fields(cls)}
        unknown = set(section) - known
        if unknown:
            raise ConfigurationError("set_aside", f"unknown keys: {', '.join(sorted(unknown))}")
        return cls(**section)
