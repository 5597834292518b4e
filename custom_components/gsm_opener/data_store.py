"""
DataStore: single source of truth for devices, users, logs and settings.

Responsibilities:
- Own the in-memory AppData for one config entry.
- Persist the whole document under the canonical key after every mutation,
  coalescing concurrent saves onto one in-flight write.
- Import data left behind under the legacy single-purpose keys the first
  time the store starts without a canonical document.

One instance per config entry, created in async_setup_entry and handed to
entities and services through entry.runtime_data.
"""
from __future__ import annotations

import asyncio
import copy
import dataclasses
import json
import logging
import uuid
from datetime import timedelta
from typing import Any

from homeassistant.util import dt as dt_util

from .commands import describe_command
from .const import (
    DEFAULT_DEVICE_NAME,
    DEFAULT_DEVICE_TYPE,
    DEFAULT_PASSWORD,
    DEFAULT_USER_NAME,
    LEGACY_ADMIN_NUMBER_KEY,
    LEGACY_COMPLETED_STEPS_KEY,
    LEGACY_LOGS_KEY,
    LEGACY_PASSWORD_KEY,
    LEGACY_UNIT_NUMBER_KEY,
    LEGACY_USERS_KEY,
    LOG_CATEGORIES,
    MAX_DEVICE_LOGS,
    STORE_KEY,
    SYSTEM_LOG_BUCKET,
)
from .models import AppData, Device, GlobalSettings, LogEntry, RelaySettings, User
from .storage import KeyValueStorage, async_safe_get_item, async_safe_set_item

_LOGGER = logging.getLogger(__name__)

# Fields callers may never overwrite through an update
_IMMUTABLE_DEVICE_FIELDS = ("id", "created_at")
_IMMUTABLE_USER_FIELDS = ("id",)


@dataclasses.dataclass
class MigrationResult:
    """Outcome of the one-time legacy import."""

    migrated: bool = False
    device_id: str | None = None
    errors: list[str] = dataclasses.field(default_factory=list)


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> str:
    return dt_util.utcnow().isoformat()


def _timestamp_after(previous: str) -> str:
    """Return the current time, nudged forward so it sorts after previous."""
    now = dt_util.utcnow()
    last = dt_util.parse_datetime(previous) if previous else None
    if last is not None:
        if last.tzinfo is None:
            last = last.replace(tzinfo=dt_util.UTC)
        if now <= last:
            now = last + timedelta(microseconds=1)
    return now.isoformat()


def _valid_bucket(device_id: Any) -> bool:
    return isinstance(device_id, str) and bool(device_id.strip())


class DataStore:
    """Asynchronous store of the AppData document."""

    def __init__(self, storage: KeyValueStorage) -> None:
        self._storage = storage
        self._data = AppData()
        self._initialized = False
        self._init_lock = asyncio.Lock()
        # Single-slot guard: the write currently in flight, if any
        self._save_task: asyncio.Task | None = None
        self._save_again = False
        self.last_migration: MigrationResult | None = None

    @property
    def storage(self) -> KeyValueStorage:
        return self._storage

    @property
    def initialized(self) -> bool:
        return self._initialized

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def async_initialize(self) -> None:
        """Load the canonical document, or import legacy keys when there is none."""
        async with self._init_lock:
            if self._initialized:
                return

            stored = await async_safe_get_item(self._storage, STORE_KEY)
            if stored:
                try:
                    self._data = AppData.from_dict(json.loads(stored))
                    _LOGGER.debug(
                        "Store loaded: %s devices, %s users",
                        len(self._data.devices), len(self._data.users),
                    )
                except (ValueError, TypeError) as exc:
                    _LOGGER.warning("Stored app data is unreadable, starting empty: %s", exc)
                    self._data = AppData()
            else:
                self._data = AppData()
                self.last_migration = await self.async_migrate_legacy_data()

            self._initialized = True

    async def async_force_reinitialization(self) -> None:
        """Drop the in-memory state and reload it from storage."""
        self._initialized = False
        await self.async_initialize()
        _LOGGER.debug("Store reinitialized from storage")

    async def async_migrate_legacy_data(self) -> MigrationResult:
        """
        Build AppData from the keys written by releases before the canonical document.

        Best effort: a sub-part that cannot be parsed is skipped and reported in
        the returned MigrationResult. Never raises.
        """
        result = MigrationResult()
        try:
            unit_number = await async_safe_get_item(self._storage, LEGACY_UNIT_NUMBER_KEY)
            if not unit_number:
                return result

            password = await async_safe_get_item(self._storage, LEGACY_PASSWORD_KEY)
            admin_number = await async_safe_get_item(self._storage, LEGACY_ADMIN_NUMBER_KEY)

            now = _now()
            device = Device(
                id=_new_id(),
                name=DEFAULT_DEVICE_NAME,
                unit_number=unit_number,
                password=password or DEFAULT_PASSWORD,
                created_at=now,
                updated_at=now,
                type=DEFAULT_DEVICE_TYPE,
            )
            data = AppData(
                devices=[device],
                global_settings=GlobalSettings(active_device_id=device.id),
            )

            await self._async_migrate_legacy_users(data, device, result)
            await self._async_migrate_legacy_logs(data, device, result)

            if admin_number:
                data.global_settings.admin_number = admin_number

            steps_json = await async_safe_get_item(self._storage, LEGACY_COMPLETED_STEPS_KEY)
            if steps_json:
                try:
                    steps = json.loads(steps_json)
                    if not isinstance(steps, list):
                        raise ValueError("completed steps are not a list")
                    data.global_settings.completed_steps = [str(s) for s in steps]
                except (ValueError, TypeError) as exc:
                    _LOGGER.warning("Could not parse legacy completed steps: %s", exc)
                    result.errors.append(f"completed steps: {exc}")

            self._data = data
            await self._async_save()
            result.migrated = True
            result.device_id = device.id
            _LOGGER.debug(
                "Migrated legacy data: device %s with %s users",
                device.id, len(data.users),
            )
        except Exception as exc:  # noqa: BLE001
            _LOGGER.error("Failed to migrate legacy data: %s", exc)
            result.errors.append(str(exc))
        return result

    async def _async_migrate_legacy_users(
        self, data: AppData, device: Device, result: MigrationResult
    ) -> None:
        users_json = await async_safe_get_item(self._storage, LEGACY_USERS_KEY)
        if not users_json:
            return
        try:
            legacy_users = json.loads(users_json)
        except ValueError as exc:
            _LOGGER.warning("Could not parse legacy authorized users: %s", exc)
            result.errors.append(f"authorized users: {exc}")
            return
        if not isinstance(legacy_users, list):
            result.errors.append("authorized users: not a list")
            return

        for legacy in legacy_users:
            if not isinstance(legacy, dict):
                continue
            # A user needs both a phone and a table position to exist on the device
            if not legacy.get("phone") or not legacy.get("serial"):
                continue
            user = User(
                id=_new_id(),
                name=str(legacy.get("name") or DEFAULT_USER_NAME),
                phone_number=str(legacy["phone"]),
                serial_number=str(legacy["serial"]),
                start_time=legacy.get("startTime") or None,
                end_time=legacy.get("endTime") or None,
            )
            data.users.append(user)
            device.authorized_users.append(user.id)

    async def _async_migrate_legacy_logs(
        self, data: AppData, device: Device, result: MigrationResult
    ) -> None:
        logs_json = await async_safe_get_item(self._storage, LEGACY_LOGS_KEY)
        if not logs_json:
            return
        try:
            legacy_logs = json.loads(logs_json)
            if not isinstance(legacy_logs, list):
                raise ValueError("legacy logs are not a list")
            entries = [
                LogEntry.from_dict({"id": _new_id(), **log, "deviceId": device.id})
                for log in legacy_logs
                if isinstance(log, dict)
            ]
        except (ValueError, TypeError) as exc:
            _LOGGER.warning("Could not parse legacy logs: %s", exc)
            result.errors.append(f"logs: {exc}")
            return
        data.logs[device.id] = entries[:MAX_DEVICE_LOGS]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _async_save(self) -> bool:
        """
        Write the whole document under the canonical key.

        A call made while a write is in flight joins that write instead of
        starting another one; the in-flight write serializes again before
        finishing if the document changed after it took its snapshot.
        """
        if self._save_task is not None:
            self._save_again = True
            return await asyncio.shield(self._save_task)
        self._save_task = asyncio.ensure_future(self._async_write())
        return await asyncio.shield(self._save_task)

    async def _async_write(self) -> bool:
        try:
            while True:
                self._save_again = False
                payload = json.dumps(self._data.to_dict())
                saved = await async_safe_set_item(self._storage, STORE_KEY, payload)
                if not saved:
                    _LOGGER.error("Failed to save app data, keeping changes in memory")
                if not self._save_again:
                    return saved
        finally:
            self._save_task = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_store(self) -> AppData:
        """Return an independent deep copy of the whole document."""
        return copy.deepcopy(self._data)

    def get_devices(self) -> list[Device]:
        return copy.deepcopy(self._data.devices)

    def get_device_by_id(self, device_id: str) -> Device | None:
        device = self._find_device(device_id)
        return copy.deepcopy(device) if device is not None else None

    def get_active_device(self) -> Device | None:
        active_id = self._data.global_settings.active_device_id
        return self.get_device_by_id(active_id) if active_id else None

    def get_users(self) -> list[User]:
        return copy.deepcopy(self._data.users)

    def get_user_by_id(self, user_id: str) -> User | None:
        user = self._find_user(user_id)
        return copy.deepcopy(user) if user is not None else None

    def get_device_users(self, device_id: str) -> list[User]:
        """Users authorized on a device, in authorization order. Broken references are skipped."""
        device = self._find_device(device_id)
        if device is None:
            return []
        users = {user.id: user for user in self._data.users}
        return [copy.deepcopy(users[uid]) for uid in device.authorized_users if uid in users]

    def get_global_settings(self) -> GlobalSettings:
        return copy.deepcopy(self._data.global_settings)

    def _find_device(self, device_id: str) -> Device | None:
        return next((d for d in self._data.devices if d.id == device_id), None)

    def _find_user(self, user_id: str) -> User | None:
        return next((u for u in self._data.users if u.id == user_id), None)

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    async def async_add_device(
        self,
        *,
        name: str,
        unit_number: str,
        password: str = DEFAULT_PASSWORD,
        device_type: str = DEFAULT_DEVICE_TYPE,
        authorized_users: list[str] | None = None,
        relay_settings: RelaySettings | None = None,
    ) -> Device:
        existing = {d.id for d in self._data.devices}
        device_id = _new_id()
        while device_id in existing:
            device_id = _new_id()

        now = _now()
        device = Device(
            id=device_id,
            name=name,
            unit_number=unit_number,
            password=password,
            authorized_users=list(authorized_users or []),
            created_at=now,
            updated_at=now,
            type=device_type,
            relay_settings=relay_settings,
        )
        self._data.devices.append(device)
        await self._async_save()
        _LOGGER.debug("Device added: %s (%s)", device.name, device.id)
        return copy.deepcopy(device)

    async def async_update_device(self, device_id: str, **changes: Any) -> Device | None:
        """Merge changes onto a device. Returns None when the device does not exist."""
        index = next((i for i, d in enumerate(self._data.devices) if d.id == device_id), None)
        if index is None:
            return None
        for field in _IMMUTABLE_DEVICE_FIELDS:
            changes.pop(field, None)
        current = self._data.devices[index]
        changes["updated_at"] = _timestamp_after(current.updated_at or current.created_at)
        self._data.devices[index] = dataclasses.replace(current, **changes)
        await self._async_save()
        return copy.deepcopy(self._data.devices[index])

    async def async_delete_device(self, device_id: str) -> bool:
        """Remove a device and its log bucket, moving the active device if needed."""
        if not _valid_bucket(device_id):
            _LOGGER.error("Invalid device id for deletion: %r", device_id)
            return False
        device = self._find_device(device_id)
        if device is None:
            _LOGGER.debug("Device %s not found for deletion", device_id)
            return False

        self._data.devices = [d for d in self._data.devices if d.id != device_id]
        self._data.logs.pop(device_id, None)

        settings = self._data.global_settings
        if settings.active_device_id == device_id:
            settings.active_device_id = self._data.devices[0].id if self._data.devices else None

        await self._async_save()
        _LOGGER.debug("Device deleted: %s (%s)", device.name, device_id)
        return True

    async def async_set_active_device(self, device_id: str) -> bool:
        if self._find_device(device_id) is None:
            return False
        self._data.global_settings.active_device_id = device_id
        await self._async_save()
        return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def async_add_user(
        self,
        *,
        name: str,
        phone_number: str,
        serial_number: str,
        start_time: str | None = None,
        end_time: str | None = None,
    ) -> User:
        user = User(
            id=_new_id(),
            name=name,
            phone_number=phone_number,
            serial_number=serial_number,
            start_time=start_time,
            end_time=end_time,
        )
        self._data.users.append(user)
        await self._async_save()
        return copy.deepcopy(user)

    async def async_update_user(self, user_id: str, **changes: Any) -> User | None:
        index = next((i for i, u in enumerate(self._data.users) if u.id == user_id), None)
        if index is None:
            return None
        for field in _IMMUTABLE_USER_FIELDS:
            changes.pop(field, None)
        self._data.users[index] = dataclasses.replace(self._data.users[index], **changes)
        await self._async_save()
        return copy.deepcopy(self._data.users[index])

    async def async_delete_user(self, user_id: str) -> bool:
        """Remove a user and every authorization that references it."""
        remaining = [u for u in self._data.users if u.id != user_id]
        if len(remaining) == len(self._data.users):
            return False
        self._data.users = remaining
        for device in self._data.devices:
            device.authorized_users = [uid for uid in device.authorized_users if uid != user_id]
        await self._async_save()
        return True

    async def async_authorize_user_for_device(self, device_id: str, user_id: str) -> bool:
        """Add user_id to the device. False when nothing changed."""
        device = self._find_device(device_id)
        if device is None or self._find_user(user_id) is None:
            return False
        if user_id in device.authorized_users:
            return False
        device.authorized_users.append(user_id)
        await self._async_save()
        return True

    async def async_deauthorize_user_for_device(self, device_id: str, user_id: str) -> bool:
        device = self._find_device(device_id)
        if device is None or user_id not in device.authorized_users:
            return False
        device.authorized_users = [uid for uid in device.authorized_users if uid != user_id]
        await self._async_save()
        return True

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    async def async_add_device_log(
        self,
        device_id: str | None,
        action: str,
        details: str,
        success: bool = True,
        category: str = "system",
    ) -> LogEntry:
        """Prepend an entry to a device's bucket, keeping the newest MAX_DEVICE_LOGS."""
        if not _valid_bucket(device_id):
            _LOGGER.warning("Invalid device id %r for log entry, using system bucket", device_id)
            device_id = SYSTEM_LOG_BUCKET
        if category not in LOG_CATEGORIES:
            _LOGGER.warning("Unknown log category %r, using system", category)
            category = "system"

        entry = LogEntry(
            id=_new_id(),
            timestamp=_now(),
            action=action,
            details=details,
            success=success,
            category=category,
            device_id=None if device_id == SYSTEM_LOG_BUCKET else device_id,
        )
        bucket = self._data.logs.get(device_id, [])
        self._data.logs[device_id] = [entry, *bucket[: MAX_DEVICE_LOGS - 1]]
        await self._async_save()
        return entry

    async def async_log_sms_operation(
        self, device_id: str, command: str, success: bool = True
    ) -> LogEntry:
        """Record a sent command with the password redacted."""
        action, details = describe_command(command)
        return await self.async_add_device_log(device_id, action, details, success, "relay")

    def get_device_logs(self, device_id: str | None) -> list[LogEntry]:
        if not _valid_bucket(device_id):
            device_id = SYSTEM_LOG_BUCKET
        return list(self._data.logs.get(device_id, []))

    async def async_clear_device_logs(self, device_id: str) -> bool:
        if not _valid_bucket(device_id):
            _LOGGER.error("Invalid device id for clearing logs: %r", device_id)
            return False
        if device_id not in self._data.logs:
            return False
        del self._data.logs[device_id]
        await self._async_save()
        return True

    # ------------------------------------------------------------------
    # Global settings
    # ------------------------------------------------------------------

    async def async_update_global_settings(self, **changes: Any) -> GlobalSettings:
        self._data.global_settings = dataclasses.replace(self._data.global_settings, **changes)
        await self._async_save()
        return copy.deepcopy(self._data.global_settings)
