"""
Restore/merge engine for backup documents.

A backup arrives from outside (a file picked by the user, text pasted from a
messaging app) and may be wrapped in noise, slightly malformed, or produced
by an older release. The pipeline below recovers as much as it can, merges
the canonical document with what is already on this installation instead of
overwriting it, and only then touches storage:

    validate -> isolate object -> parse (strict, repaired, key extraction)
    -> normalize shape -> cache logs -> merge canonical document
    -> clear + write -> reload the DataStore

Nothing is written unless parsing and merging succeeded in memory.
"""
from __future__ import annotations

import copy
import dataclasses
import json
import logging
import re
from pathlib import Path
from typing import Any

from homeassistant.core import HomeAssistant

from .backup import async_read_backup_file
from .const import (
    DEVICE_LOGS_KEY_PREFIX,
    JSON_START_MARKERS,
    LEGACY_ARRAY_KEY,
    LEGACY_LOGS_KEY,
    LEGACY_SMS_LOGS_KEY,
    STORE_KEY,
    SYSTEM_LOGS_KEY,
)
from .data_store import DataStore
from .errors import BackupFormatError, RestoreError
from .storage import (
    KeyValueStorage,
    async_safe_get_all_keys,
    async_safe_get_item,
    async_safe_multi_remove,
    async_safe_set_item,
)

_LOGGER = logging.getLogger(__name__)

_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_KEY_VALUE_RE = re.compile(
    r'"([^"]+)"\s*:\s*'
    r'("(?:\\.|[^"\\])*"|-?[0-9]+(?:\.[0-9]+)?|true|false|null|\{[^}]*\}|\[[^\]]*\])'
)


@dataclasses.dataclass
class RestoreResult:
    written_keys: list[str] = dataclasses.field(default_factory=list)
    failed_keys: list[str] = dataclasses.field(default_factory=list)
    merged: bool = False


# ---------------------------------------------------------------------------
# Boundary recovery
# ---------------------------------------------------------------------------

def _first_object_end(content: str) -> int:
    """Index just past the first top-level object, or 0 when it never closes."""
    if not content.startswith("{"):
        return 0
    depth = 0
    in_string = False
    escaped = False
    for index, char in enumerate(content):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index + 1
    return 0


def _is_bare_array(content: str) -> bool:
    """True when content is a whole JSON array, as written by the oldest backups."""
    if not content.startswith("["):
        return False
    for candidate in (content, _TRAILING_COMMA_RE.sub(r"\1", content)):
        try:
            return isinstance(json.loads(candidate), list)
        except ValueError:
            continue
    return False


def isolate_json_object(text: str) -> str:
    """Trim leading and trailing noise around the first JSON object in text."""
    content = text.strip()
    # The first element of a bare array would otherwise match a marker
    if _is_bare_array(content):
        return content

    starts = [pos for pos in (content.find(marker) for marker in JSON_START_MARKERS) if pos >= 0]
    if starts:
        start = min(starts)
        if start > 0:
            _LOGGER.debug("Restore: dropped %s leading characters", start)
            content = content[start:]

    end = _first_object_end(content)
    if 0 < end < len(content):
        _LOGGER.debug("Restore: trimmed to balanced object ending at %s", end)
        content = content[:end]
    return content


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def extract_key_values(text: str) -> dict[str, Any]:
    """Last resort: rebuild a flat object from every readable "key": value pair."""
    extracted: dict[str, Any] = {}
    for match in _KEY_VALUE_RE.finditer(text):
        key, raw_value = match.groups()
        try:
            extracted[key] = json.loads(raw_value)
        except ValueError:
            continue
    return extracted


def parse_backup_text(text: str) -> Any:
    """Parse with escalating fallbacks; raise BackupFormatError when all fail."""
    try:
        return json.loads(text)
    except ValueError as exc:
        _LOGGER.debug("Restore: strict parse failed: %s", exc)

    try:
        return json.loads(_TRAILING_COMMA_RE.sub(r"\1", text))
    except ValueError as exc:
        _LOGGER.debug("Restore: repaired parse failed: %s", exc)

    extracted = extract_key_values(text)
    if extracted:
        _LOGGER.warning("Restore: recovered %s key/value pairs by extraction", len(extracted))
        return extracted

    raise BackupFormatError("Could not parse backup file - invalid JSON format")


def normalize_backup_shape(parsed: Any) -> dict[str, Any]:
    """Flatten any supported backup layout into storage key -> value."""
    if isinstance(parsed, dict):
        data = parsed.get("data")
        if isinstance(data, dict):
            return dict(data)
        # Direct key/value dump from older releases
        return dict(parsed)
    if isinstance(parsed, list):
        return {LEGACY_ARRAY_KEY: parsed}
    raise BackupFormatError("Unsupported backup format")


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

def is_log_key(key: str) -> bool:
    """Keys written by the standalone logger, or any key naming logs."""
    return (
        key in (LEGACY_SMS_LOGS_KEY, SYSTEM_LOGS_KEY)
        or key.startswith(DEVICE_LOGS_KEY_PREFIX)
        or "logs" in key
    )


def collect_log_keys(data_to_store: dict[str, Any]) -> dict[str, Any]:
    """Cache every log-carrying value before anything is merged or cleared."""
    cached: dict[str, Any] = {}
    for key, value in data_to_store.items():
        if key == STORE_KEY:
            if isinstance(value, dict) and value.get("logs"):
                cached[LEGACY_LOGS_KEY] = copy.deepcopy(value["logs"])
        elif is_log_key(key):
            cached[key] = copy.deepcopy(value)
    return cached


def _records(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _union_by_id(on_device: list[dict], incoming: list[dict]) -> list[dict]:
    """On-device records first; incoming records only when their id is new."""
    merged = copy.deepcopy(on_device)
    known = {record.get("id") for record in on_device}
    for record in incoming:
        if record.get("id") in known:
            continue
        merged.append(copy.deepcopy(record))
        known.add(record.get("id"))
    return merged


def _merge_log_bucket(on_device: list[Any], incoming: list[Any]) -> list[Any]:
    """Backup entries not already on the device, followed by every on-device entry."""
    known = {
        entry.get("id")
        for entry in on_device
        if isinstance(entry, dict) and entry.get("id") is not None
    }
    new_entries = [
        entry
        for entry in incoming
        if not (isinstance(entry, dict) and entry.get("id") in known)
    ]
    return copy.deepcopy(new_entries) + copy.deepcopy(on_device)


def merge_app_data(on_device: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    """
    Merge the backup's canonical document into the one already stored.

    Devices and users are unioned by id with the on-device version winning on
    collision. Log buckets are unioned per device and merged by entry id.
    Every other field (global settings) is taken from the backup as is.
    """
    merged = copy.deepcopy(incoming)
    merged["devices"] = _union_by_id(_records(on_device.get("devices")), _records(incoming.get("devices")))
    merged["users"] = _union_by_id(_records(on_device.get("users")), _records(incoming.get("users")))

    incoming_logs = incoming.get("logs") if isinstance(incoming.get("logs"), dict) else {}
    on_device_logs = on_device.get("logs") if isinstance(on_device.get("logs"), dict) else {}
    logs = copy.deepcopy(incoming_logs)
    for device_id, entries in on_device_logs.items():
        if not isinstance(entries, list):
            continue
        backup_entries = logs.get(device_id)
        if isinstance(backup_entries, list):
            logs[device_id] = _merge_log_bucket(entries, backup_entries)
            _LOGGER.debug("Restore: merged log bucket %s", device_id)
        else:
            logs[device_id] = copy.deepcopy(entries)
            _LOGGER.debug("Restore: preserved log bucket %s", device_id)
    merged["logs"] = logs
    return merged


async def _async_load_on_device_app_data(storage: KeyValueStorage) -> dict[str, Any] | None:
    raw = await async_safe_get_item(storage, STORE_KEY)
    if not raw:
        return None
    try:
        document = json.loads(raw)
    except ValueError as exc:
        _LOGGER.warning("Restore: existing app data is unreadable, it will be replaced: %s", exc)
        return None
    return document if isinstance(document, dict) else None


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

async def async_restore_from_backup(
    storage: KeyValueStorage, data_store: DataStore, backup_text: str
) -> RestoreResult:
    """
    Restore a backup document into storage and reload data_store.

    Raises BackupFormatError when the text cannot be understood and
    RestoreError when nothing could be written. Storage is untouched in both
    cases unless every write failed.
    """
    if not backup_text or not backup_text.strip():
        raise BackupFormatError("Backup file appears to be empty")
    _LOGGER.debug("Restore: content length=%s", len(backup_text))

    content = isolate_json_object(backup_text)
    parsed = parse_backup_text(content)
    data_to_store = normalize_backup_shape(parsed)

    cached_logs = collect_log_keys(data_to_store)

    result = RestoreResult()
    on_device = await _async_load_on_device_app_data(storage)
    if STORE_KEY in data_to_store and on_device is not None:
        incoming = data_to_store[STORE_KEY]
        if isinstance(incoming, str):
            try:
                incoming = json.loads(incoming)
            except ValueError:
                incoming = None
        if isinstance(incoming, dict):
            data_to_store[STORE_KEY] = merge_app_data(on_device, incoming)
            result.merged = True
        else:
            _LOGGER.warning("Restore: backup app data is not an object, replacing without merge")

    to_write = {key: value for key, value in data_to_store.items() if value is not None}
    pending_logs = {
        key: value
        for key, value in cached_logs.items()
        if value is not None and not data_to_store.get(key)
    }
    if not to_write and not pending_logs:
        raise RestoreError("Backup contains no data to restore")

    existing_keys = await async_safe_get_all_keys(storage)
    keys_to_remove = [key for key in existing_keys if not (result.merged and key == STORE_KEY)]
    if keys_to_remove:
        await async_safe_multi_remove(storage, keys_to_remove)
        _LOGGER.debug("Restore: cleared %s existing keys", len(keys_to_remove))

    for key, value in [*to_write.items(), *pending_logs.items()]:
        if await async_safe_set_item(storage, key, value):
            result.written_keys.append(key)
        else:
            result.failed_keys.append(key)

    if not result.written_keys:
        raise RestoreError("Failed to restore any items")

    try:
        await data_store.async_force_reinitialization()
    except Exception as exc:  # noqa: BLE001
        _LOGGER.error("Restore: store reload failed, data will load on next start: %s", exc)

    _LOGGER.debug(
        "Restore: wrote %s/%s keys (merged=%s)",
        len(result.written_keys),
        len(result.written_keys) + len(result.failed_keys),
        result.merged,
    )
    return result


async def async_restore_from_file(
    hass: HomeAssistant, data_store: DataStore, path: str | Path
) -> RestoreResult:
    """Read a backup file and restore it into data_store's storage."""
    try:
        content = await async_read_backup_file(hass, path)
    except OSError as exc:
        raise BackupFormatError(f"Could not read backup file {path}: {exc}") from exc
    return await async_restore_from_backup(data_store.storage, data_store, content)
