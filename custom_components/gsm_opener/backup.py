"""
Backup serializer.

Snapshots every key of the key/value storage into one versioned JSON
document without interpreting the values:

    {"version": "1.0", "timestamp": <ISO-8601>, "data": {key: value, ...}}

Values that are valid JSON are embedded decoded; anything else is kept as
the raw string.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from homeassistant.core import HomeAssistant
from homeassistant.util import dt as dt_util

from .const import (
    BACKUP_DIRECTORY,
    BACKUP_FILE_EXTENSION,
    BACKUP_FILE_PREFIX,
    BACKUP_VERSION,
)
from .storage import KeyValueStorage, async_safe_get_all_keys, async_safe_get_item

_LOGGER = logging.getLogger(__name__)


def _decode(value: str) -> Any:
    try:
        return json.loads(value)
    except ValueError:
        return value


async def async_create_backup(storage: KeyValueStorage) -> str:
    """Return the backup document for everything currently in storage."""
    keys = await async_safe_get_all_keys(storage)
    _LOGGER.debug("Creating backup for keys: %s", keys)

    data: dict[str, Any] = {}
    for key in keys:
        value = await async_safe_get_item(storage, key)
        if value:
            data[key] = _decode(value)

    document = {
        "version": BACKUP_VERSION,
        "timestamp": dt_util.utcnow().isoformat(),
        "data": data,
    }
    return json.dumps(document)


def backup_filename(when: datetime | None = None) -> str:
    """File name for a backup taken on the given day, e.g. gsm-opener-backup-2024-05-01.json."""
    when = when or dt_util.now()
    return f"{BACKUP_FILE_PREFIX}{when.date().isoformat()}{BACKUP_FILE_EXTENSION}"


def _write_file(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _read_file(path: Path) -> str:
    return path.read_text(encoding="utf-8")


async def async_save_backup_to_file(
    hass: HomeAssistant, storage: KeyValueStorage
) -> tuple[Path, str]:
    """Write a fresh backup under <config>/gsm_opener_backups/ and return (path, document)."""
    content = await async_create_backup(storage)
    path = Path(hass.config.path(BACKUP_DIRECTORY)) / backup_filename()
    await hass.async_add_executor_job(_write_file, path, content)
    _LOGGER.debug("Backup written to %s", path)
    return path, content


async def async_read_backup_file(hass: HomeAssistant, path: str | Path) -> str:
    """Read a backup file; relative paths resolve against the config directory."""
    file_path = Path(path)
    if not file_path.is_absolute():
        file_path = Path(hass.config.path(str(file_path)))
    return await hass.async_add_executor_job(_read_file, file_path)
