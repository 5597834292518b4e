"""
Key/value storage used by the data store and by backup/restore.

The integration only ever talks to a KeyValueStorage: an asynchronous,
string-keyed, string-valued store. HassKeyValueStorage implements it on top
of a single Home Assistant Store per config entry. The async_safe_* helpers
wrap every call so that storage failures are logged and turned into a safe
default instead of propagating.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Iterable, Protocol

from homeassistant.core import HomeAssistant
from homeassistant.helpers.storage import Store

from .const import STORAGE_KEY_PREFIX, STORAGE_VERSION

_LOGGER = logging.getLogger(__name__)


class KeyValueStorage(Protocol):
    """Interface of the durable key/value service."""

    async def async_get_item(self, key: str) -> str | None:
        ...

    async def async_set_item(self, key: str, value: str) -> None:
        ...

    async def async_remove_item(self, key: str) -> None:
        ...

    async def async_get_all_keys(self) -> list[str]:
        ...

    async def async_multi_remove(self, keys: Iterable[str]) -> None:
        ...


class HassKeyValueStorage:
    """
    KeyValueStorage backed by homeassistant.helpers.storage.Store.

    All pairs of one config entry live in a single Store file as
    {"values": {key: value}}. The file is loaded lazily on first access and
    rewritten on every mutation.
    """

    def __init__(self, hass: HomeAssistant, entry_id: str) -> None:
        self._store: Store = Store(hass, STORAGE_VERSION, f"{STORAGE_KEY_PREFIX}{entry_id}")
        self._values: dict[str, str] | None = None
        self._load_lock = asyncio.Lock()
        # Mutations copy, save, then swap the cache; one at a time
        self._write_lock = asyncio.Lock()

    async def _async_values(self) -> dict[str, str]:
        if self._values is None:
            async with self._load_lock:
                if self._values is None:
                    raw = await self._store.async_load()
                    values = raw.get("values") if isinstance(raw, dict) else None
                    if isinstance(values, dict):
                        self._values = {str(k): str(v) for k, v in values.items() if v is not None}
                    else:
                        self._values = {}
        return self._values

    async def _async_commit(self, values: dict[str, str]) -> None:
        """Persist values, then make them the cached view. A failed save leaves the cache as it was."""
        await self._store.async_save({"values": dict(values)})
        self._values = values

    async def async_get_item(self, key: str) -> str | None:
        values = await self._async_values()
        return values.get(key)

    async def async_set_item(self, key: str, value: str) -> None:
        async with self._write_lock:
            values = dict(await self._async_values())
            values[key] = value
            await self._async_commit(values)

    async def async_remove_item(self, key: str) -> None:
        async with self._write_lock:
            values = dict(await self._async_values())
            if values.pop(key, None) is not None:
                await self._async_commit(values)

    async def async_get_all_keys(self) -> list[str]:
        values = await self._async_values()
        return list(values)

    async def async_multi_remove(self, keys: Iterable[str]) -> None:
        async with self._write_lock:
            values = dict(await self._async_values())
            removed = [key for key in list(keys) if values.pop(key, None) is not None]
            if removed:
                await self._async_commit(values)

    async def async_remove_store(self) -> None:
        """Delete the underlying Store file (config entry removal)."""
        self._values = {}
        await self._store.async_remove()


# ---------------------------------------------------------------------------
# Safe helpers: never raise, log and return a default instead
# ---------------------------------------------------------------------------

def validate_key(key: Any) -> str | None:
    """Return key when it is a non-blank string, otherwise None."""
    if isinstance(key, str) and key.strip():
        return key
    _LOGGER.error("Invalid storage key: %r", key)
    return None


async def async_safe_get_item(
    storage: KeyValueStorage, key: str, default: str | None = None
) -> str | None:
    """Read one value; a missing key returns default, a failed read returns None."""
    valid_key = validate_key(key)
    if valid_key is None:
        return None
    try:
        value = await storage.async_get_item(valid_key)
    except Exception as exc:  # noqa: BLE001
        _LOGGER.error("Error reading storage key %s: %s", key, exc)
        return None
    return value if value is not None else default


async def async_safe_set_item(storage: KeyValueStorage, key: str, value: Any) -> bool:
    """Write one value, JSON-encoding anything that is not already a string."""
    valid_key = validate_key(key)
    if valid_key is None:
        return False
    try:
        payload = value if isinstance(value, str) else json.dumps(value)
        await storage.async_set_item(valid_key, payload)
    except Exception as exc:  # noqa: BLE001
        _LOGGER.error("Error writing storage key %s: %s", key, exc)
        return False
    return True


async def async_safe_remove_item(storage: KeyValueStorage, key: str) -> bool:
    valid_key = validate_key(key)
    if valid_key is None:
        return False
    try:
        await storage.async_remove_item(valid_key)
    except Exception as exc:  # noqa: BLE001
        _LOGGER.error("Error removing storage key %s: %s", key, exc)
        return False
    return True


async def async_safe_multi_remove(storage: KeyValueStorage, keys: Iterable[str]) -> bool:
    valid_keys = [key for key in keys if isinstance(key, str)]
    if not valid_keys:
        return False
    try:
        await storage.async_multi_remove(valid_keys)
    except Exception as exc:  # noqa: BLE001
        _LOGGER.error("Error removing %s storage keys: %s", len(valid_keys), exc)
        return False
    return True


async def async_safe_get_all_keys(storage: KeyValueStorage) -> list[str]:
    try:
        return list(await storage.async_get_all_keys())
    except Exception as exc:  # noqa: BLE001
        _LOGGER.error("Error listing storage keys: %s", exc)
        return []
