"""
Services of the GSM Opener integration.

Registered once from async_setup. Every service resolves its config entry
from the optional entry_id field (or the only loaded entry) and works on that
entry's DataStore. Services that add or remove devices reload the entry so
the button and sensor entities follow the store.
"""
from __future__ import annotations

import logging
from typing import Any

import homeassistant.helpers.config_validation as cv
import voluptuous as vol
from homeassistant.core import HomeAssistant, ServiceCall, ServiceResponse, SupportsResponse

from .backup import async_save_backup_to_file
from .commands import (
    COMMAND_TYPES,
    validate_access_window,
    validate_device_fields,
    validate_password,
    validate_phone_number,
    validate_serial,
)
from .const import DEFAULT_DEVICE_TYPE, DEFAULT_PASSWORD, DEVICE_TYPES, DOMAIN, SYSTEM_LOG_BUCKET
from .errors import GsmOpenerError
from .restore import async_restore_from_backup, async_restore_from_file
from .runtime import GsmOpenerConfigEntry, GsmOpenerRuntimeData
from .storage import async_safe_get_all_keys, async_safe_get_item

_LOGGER = logging.getLogger(__name__)

ATTR_ENTRY_ID = "entry_id"
ATTR_DEVICE_ID = "device_id"
ATTR_USER_ID = "user_id"
ATTR_COMMAND = "command"
ATTR_NAME = "name"
ATTR_UNIT_NUMBER = "unit_number"
ATTR_PASSWORD = "password"
ATTR_TYPE = "type"
ATTR_PHONE_NUMBER = "phone_number"
ATTR_SERIAL_NUMBER = "serial_number"
ATTR_START_TIME = "start_time"
ATTR_END_TIME = "end_time"
ATTR_PATH = "path"
ATTR_CONTENT = "content"

SERVICE_SEND_COMMAND = "send_command"
SERVICE_ADD_DEVICE = "add_device"
SERVICE_UPDATE_DEVICE = "update_device"
SERVICE_DELETE_DEVICE = "delete_device"
SERVICE_SET_ACTIVE_DEVICE = "set_active_device"
SERVICE_ADD_USER = "add_user"
SERVICE_UPDATE_USER = "update_user"
SERVICE_DELETE_USER = "delete_user"
SERVICE_AUTHORIZE_USER = "authorize_user"
SERVICE_DEAUTHORIZE_USER = "deauthorize_user"
SERVICE_CLEAR_LOGS = "clear_logs"
SERVICE_CREATE_BACKUP = "create_backup"
SERVICE_RESTORE_BACKUP = "restore_backup"
SERVICE_DUMP_STORAGE = "dump_storage"

# Options passed through to commands.format_command
COMMAND_OPTIONS = (
    "serial",
    "phone",
    "start_time",
    "end_time",
    "access_control",
    "latch_time",
    "admin_number",
    "new_password",
)

_ENTRY = {vol.Optional(ATTR_ENTRY_ID): cv.string}

SEND_COMMAND_SCHEMA = vol.Schema(
    {
        **_ENTRY,
        vol.Optional(ATTR_DEVICE_ID): cv.string,
        vol.Required(ATTR_COMMAND): vol.All(cv.string, vol.Lower, vol.In(COMMAND_TYPES)),
        **{vol.Optional(option): cv.string for option in COMMAND_OPTIONS},
    }
)
ADD_DEVICE_SCHEMA = vol.Schema(
    {
        **_ENTRY,
        vol.Required(ATTR_NAME): cv.string,
        vol.Required(ATTR_UNIT_NUMBER): cv.string,
        vol.Optional(ATTR_PASSWORD, default=DEFAULT_PASSWORD): cv.string,
        vol.Optional(ATTR_TYPE, default=DEFAULT_DEVICE_TYPE): vol.In(DEVICE_TYPES),
    }
)
UPDATE_DEVICE_SCHEMA = vol.Schema(
    {
        **_ENTRY,
        vol.Required(ATTR_DEVICE_ID): cv.string,
        vol.Optional(ATTR_NAME): cv.string,
        vol.Optional(ATTR_UNIT_NUMBER): cv.string,
        vol.Optional(ATTR_PASSWORD): cv.string,
        vol.Optional(ATTR_TYPE): vol.In(DEVICE_TYPES),
    }
)
DEVICE_SCHEMA = vol.Schema({**_ENTRY, vol.Required(ATTR_DEVICE_ID): cv.string})
ADD_USER_SCHEMA = vol.Schema(
    {
        **_ENTRY,
        vol.Required(ATTR_NAME): cv.string,
        vol.Required(ATTR_PHONE_NUMBER): cv.string,
        vol.Required(ATTR_SERIAL_NUMBER): cv.string,
        vol.Optional(ATTR_START_TIME): cv.string,
        vol.Optional(ATTR_END_TIME): cv.string,
        vol.Optional(ATTR_DEVICE_ID): cv.string,
    }
)
UPDATE_USER_SCHEMA = vol.Schema(
    {
        **_ENTRY,
        vol.Required(ATTR_USER_ID): cv.string,
        vol.Optional(ATTR_NAME): cv.string,
        vol.Optional(ATTR_PHONE_NUMBER): cv.string,
        vol.Optional(ATTR_SERIAL_NUMBER): cv.string,
        vol.Optional(ATTR_START_TIME): cv.string,
        vol.Optional(ATTR_END_TIME): cv.string,
    }
)
USER_SCHEMA = vol.Schema({**_ENTRY, vol.Required(ATTR_USER_ID): cv.string})
AUTHORIZATION_SCHEMA = vol.Schema(
    {
        **_ENTRY,
        vol.Required(ATTR_DEVICE_ID): cv.string,
        vol.Required(ATTR_USER_ID): cv.string,
    }
)
CLEAR_LOGS_SCHEMA = vol.Schema(
    {**_ENTRY, vol.Optional(ATTR_DEVICE_ID, default=SYSTEM_LOG_BUCKET): cv.string}
)
ENTRY_SCHEMA = vol.Schema(_ENTRY)
RESTORE_BACKUP_SCHEMA = vol.All(
    vol.Schema(
        {
            **_ENTRY,
            vol.Exclusive(ATTR_PATH, "source"): cv.string,
            vol.Exclusive(ATTR_CONTENT, "source"): cv.string,
        }
    ),
    cv.has_at_least_one_key(ATTR_PATH, ATTR_CONTENT),
)


def _resolve_entry(hass: HomeAssistant, call: ServiceCall) -> tuple[GsmOpenerConfigEntry, GsmOpenerRuntimeData]:
    """Find the loaded entry a call targets."""
    entry_id = call.data.get(ATTR_ENTRY_ID)
    loaded = [
        entry
        for entry in hass.config_entries.async_entries(DOMAIN)
        if isinstance(getattr(entry, "runtime_data", None), GsmOpenerRuntimeData)
    ]
    if entry_id:
        loaded = [entry for entry in loaded if entry.entry_id == entry_id]
        if not loaded:
            raise GsmOpenerError(f"GSM Opener entry {entry_id} is not loaded")
    if not loaded:
        raise GsmOpenerError("No GSM Opener entry is loaded")
    if len(loaded) > 1:
        raise GsmOpenerError("Several GSM Opener entries are loaded, entry_id is required")
    return loaded[0], loaded[0].runtime_data


def _require(value: Any, message: str) -> Any:
    if not value:
        raise GsmOpenerError(message)
    return value


def _user_fields(data: dict[str, Any]) -> dict[str, Any]:
    """Validated user fields present in a service call."""
    fields: dict[str, Any] = {}
    if ATTR_NAME in data:
        fields["name"] = data[ATTR_NAME].strip()
    if ATTR_PHONE_NUMBER in data:
        fields["phone_number"] = validate_phone_number(data[ATTR_PHONE_NUMBER])
    if ATTR_SERIAL_NUMBER in data:
        fields["serial_number"] = validate_serial(data[ATTR_SERIAL_NUMBER])
    if ATTR_START_TIME in data:
        fields["start_time"] = validate_access_window(data[ATTR_START_TIME])
    if ATTR_END_TIME in data:
        fields["end_time"] = validate_access_window(data[ATTR_END_TIME])
    return fields


def async_setup_services(hass: HomeAssistant) -> None:
    """Register every GSM Opener service."""

    async def svc_send_command(call: ServiceCall) -> None:
        _, runtime = _resolve_entry(hass, call)
        device_id = call.data.get(ATTR_DEVICE_ID)
        if not device_id:
            active = _require(runtime.data_store.get_active_device(), "No active device, device_id is required")
            device_id = active.id
        options = {key: call.data[key] for key in COMMAND_OPTIONS if key in call.data}
        sent = await runtime.sender.async_send_command(device_id, call.data[ATTR_COMMAND], **options)
        if not sent:
            raise GsmOpenerError(f"Could not send {call.data[ATTR_COMMAND]} command via {runtime.sender.notify_service}")

    async def svc_add_device(call: ServiceCall) -> ServiceResponse:
        entry, runtime = _resolve_entry(hass, call)
        fields = {
            "name": call.data[ATTR_NAME].strip(),
            "unit_number": validate_phone_number(call.data[ATTR_UNIT_NUMBER], ATTR_UNIT_NUMBER),
            "password": call.data[ATTR_PASSWORD],
        }
        validate_device_fields(fields)
        device = await runtime.data_store.async_add_device(device_type=call.data[ATTR_TYPE], **fields)
        if runtime.data_store.get_global_settings().active_device_id is None:
            await runtime.data_store.async_set_active_device(device.id)
        hass.config_entries.async_schedule_reload(entry.entry_id)
        return {"device_id": device.id}

    async def svc_update_device(call: ServiceCall) -> None:
        entry, runtime = _resolve_entry(hass, call)
        changes: dict[str, Any] = {}
        if ATTR_NAME in call.data:
            changes["name"] = _require(call.data[ATTR_NAME].strip(), "Device name cannot be empty")
        if ATTR_UNIT_NUMBER in call.data:
            changes["unit_number"] = validate_phone_number(call.data[ATTR_UNIT_NUMBER], ATTR_UNIT_NUMBER)
        if ATTR_PASSWORD in call.data:
            changes["password"] = validate_password(call.data[ATTR_PASSWORD])
        if ATTR_TYPE in call.data:
            changes["type"] = call.data[ATTR_TYPE]
        device = await runtime.data_store.async_update_device(call.data[ATTR_DEVICE_ID], **changes)
        _require(device, f"Device {call.data[ATTR_DEVICE_ID]} not found")
        if ATTR_NAME in changes:
            hass.config_entries.async_schedule_reload(entry.entry_id)

    async def svc_delete_device(call: ServiceCall) -> None:
        entry, runtime = _resolve_entry(hass, call)
        deleted = await runtime.data_store.async_delete_device(call.data[ATTR_DEVICE_ID])
        _require(deleted, f"Device {call.data[ATTR_DEVICE_ID]} not found")
        hass.config_entries.async_schedule_reload(entry.entry_id)

    async def svc_set_active_device(call: ServiceCall) -> None:
        _, runtime = _resolve_entry(hass, call)
        changed = await runtime.data_store.async_set_active_device(call.data[ATTR_DEVICE_ID])
        _require(changed, f"Device {call.data[ATTR_DEVICE_ID]} not found")

    async def svc_add_user(call: ServiceCall) -> ServiceResponse:
        _, runtime = _resolve_entry(hass, call)
        fields = _user_fields(call.data)
        fields["name"] = _require(fields["name"], "User name cannot be empty")
        device_id = call.data.get(ATTR_DEVICE_ID)
        if device_id:
            _require(runtime.data_store.get_device_by_id(device_id), f"Device {device_id} not found")
        user = await runtime.data_store.async_add_user(**fields)
        if device_id:
            await runtime.data_store.async_authorize_user_for_device(device_id, user.id)
        return {"user_id": user.id}

    async def svc_update_user(call: ServiceCall) -> None:
        _, runtime = _resolve_entry(hass, call)
        user = await runtime.data_store.async_update_user(call.data[ATTR_USER_ID], **_user_fields(call.data))
        _require(user, f"User {call.data[ATTR_USER_ID]} not found")

    async def svc_delete_user(call: ServiceCall) -> None:
        _, runtime = _resolve_entry(hass, call)
        deleted = await runtime.data_store.async_delete_user(call.data[ATTR_USER_ID])
        _require(deleted, f"User {call.data[ATTR_USER_ID]} not found")

    async def svc_authorize_user(call: ServiceCall) -> None:
        _, runtime = _resolve_entry(hass, call)
        changed = await runtime.data_store.async_authorize_user_for_device(
            call.data[ATTR_DEVICE_ID], call.data[ATTR_USER_ID]
        )
        if not changed:
            _LOGGER.debug("User %s already authorized or unknown", call.data[ATTR_USER_ID])

    async def svc_deauthorize_user(call: ServiceCall) -> None:
        _, runtime = _resolve_entry(hass, call)
        changed = await runtime.data_store.async_deauthorize_user_for_device(
            call.data[ATTR_DEVICE_ID], call.data[ATTR_USER_ID]
        )
        if not changed:
            _LOGGER.debug("User %s was not authorized on %s", call.data[ATTR_USER_ID], call.data[ATTR_DEVICE_ID])

    async def svc_clear_logs(call: ServiceCall) -> None:
        _, runtime = _resolve_entry(hass, call)
        await runtime.data_store.async_clear_device_logs(call.data[ATTR_DEVICE_ID])

    async def svc_create_backup(call: ServiceCall) -> ServiceResponse:
        _, runtime = _resolve_entry(hass, call)
        path, content = await async_save_backup_to_file(hass, runtime.storage)
        return {"path": str(path), "backup": content}

    async def svc_restore_backup(call: ServiceCall) -> ServiceResponse:
        entry, runtime = _resolve_entry(hass, call)
        if ATTR_PATH in call.data:
            result = await async_restore_from_file(hass, runtime.data_store, call.data[ATTR_PATH])
        else:
            result = await async_restore_from_backup(
                runtime.storage, runtime.data_store, call.data[ATTR_CONTENT]
            )
        hass.config_entries.async_schedule_reload(entry.entry_id)
        return {
            "written_keys": result.written_keys,
            "failed_keys": result.failed_keys,
            "merged": result.merged,
        }

    async def svc_dump_storage(call: ServiceCall) -> ServiceResponse:
        _, runtime = _resolve_entry(hass, call)
        raw: dict[str, Any] = {}
        for key in await async_safe_get_all_keys(runtime.storage):
            raw[key] = await async_safe_get_item(runtime.storage, key)
        return {"store": runtime.data_store.get_store().to_dict(), "storage": raw}

    register = hass.services.async_register
    register(DOMAIN, SERVICE_SEND_COMMAND, svc_send_command, schema=SEND_COMMAND_SCHEMA)
    register(DOMAIN, SERVICE_ADD_DEVICE, svc_add_device, schema=ADD_DEVICE_SCHEMA,
             supports_response=SupportsResponse.OPTIONAL)
    register(DOMAIN, SERVICE_UPDATE_DEVICE, svc_update_device, schema=UPDATE_DEVICE_SCHEMA)
    register(DOMAIN, SERVICE_DELETE_DEVICE, svc_delete_device, schema=DEVICE_SCHEMA)
    register(DOMAIN, SERVICE_SET_ACTIVE_DEVICE, svc_set_active_device, schema=DEVICE_SCHEMA)
    register(DOMAIN, SERVICE_ADD_USER, svc_add_user, schema=ADD_USER_SCHEMA,
             supports_response=SupportsResponse.OPTIONAL)
    register(DOMAIN, SERVICE_UPDATE_USER, svc_update_user, schema=UPDATE_USER_SCHEMA)
    register(DOMAIN, SERVICE_DELETE_USER, svc_delete_user, schema=USER_SCHEMA)
    register(DOMAIN, SERVICE_AUTHORIZE_USER, svc_authorize_user, schema=AUTHORIZATION_SCHEMA)
    register(DOMAIN, SERVICE_DEAUTHORIZE_USER, svc_deauthorize_user, schema=AUTHORIZATION_SCHEMA)
    register(DOMAIN, SERVICE_CLEAR_LOGS, svc_clear_logs, schema=CLEAR_LOGS_SCHEMA)
    register(DOMAIN, SERVICE_CREATE_BACKUP, svc_create_backup, schema=ENTRY_SCHEMA,
             supports_response=SupportsResponse.OPTIONAL)
    register(DOMAIN, SERVICE_RESTORE_BACKUP, svc_restore_backup, schema=RESTORE_BACKUP_SCHEMA,
             supports_response=SupportsResponse.OPTIONAL)
    register(DOMAIN, SERVICE_DUMP_STORAGE, svc_dump_storage, schema=ENTRY_SCHEMA,
             supports_response=SupportsResponse.ONLY)
