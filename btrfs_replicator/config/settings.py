"""Settings storage for replication defaults."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "BTRFS_REPLICATOR_SETTINGS_PATH",
        "/etc/btrfs-replicator/settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_BTRFS_COMMAND = "btrfs"
DEFAULT_FSTAB_PATH = "/etc/fstab"
DEFAULT_SNAPSHOT_NAME_FORMAT = "replica-%Y%m%d-%H%M%S"

DEFAULT_SETTINGS: dict[str, Any] = {
    "btrfs_command": DEFAULT_BTRFS_COMMAND,
    "fstab_path": DEFAULT_FSTAB_PATH,
    "snapshot_name_format": DEFAULT_SNAPSHOT_NAME_FORMAT,
    "fstab_backup": True,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_SETTINGS))


settings_store = SettingsStore()


def load_settings(path: Path | None = None) -> None:
    """Reset to defaults and overlay the JSON settings file, if readable."""
    path = path or SETTINGS_PATH
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not path.exists():
        return
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def get_setting(key: str, default: Any | None = None) -> Any:
    if default is None:
        default = DEFAULT_SETTINGS.get(key)
    return settings_store.values.get(key, default)


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))
