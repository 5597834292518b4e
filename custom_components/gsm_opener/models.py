"""
Domain models for the GSM Opener integration.

Plain dataclasses mirroring the persisted AppData document. Every class
converts to and from the camelCase JSON layout stored under the canonical
key, so documents written by older releases (and by backups) load unchanged.

No Home Assistant imports here.
"""
from __future__ import annotations

import dataclasses
import logging
from typing import Any

from .const import (
    ACCESS_ALLOW_ALL,
    ACCESS_AUTHORIZED_ONLY,
    DEFAULT_DEVICE_TYPE,
    DEFAULT_PASSWORD,
)

_LOGGER = logging.getLogger(__name__)

# Older documents stored the raw SMS codes instead of the descriptive values
_LEGACY_ACCESS_CONTROL = {"AUT": ACCESS_AUTHORIZED_ONLY, "ALL": ACCESS_ALLOW_ALL}


def _str_or_none(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _as_bool(value: Any, default: bool) -> bool:
    """Real booleans and "true"/"false" strings; anything else is default."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return default


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


@dataclasses.dataclass
class RelaySettings:
    """Relay behaviour last pushed to the device."""

    access_control: str = ACCESS_AUTHORIZED_ONLY
    latch_time: str = "000"

    @classmethod
    def from_dict(cls, raw: Any) -> RelaySettings | None:
        if not isinstance(raw, dict):
            return None
        access = raw.get("accessControl", ACCESS_AUTHORIZED_ONLY)
        access = _LEGACY_ACCESS_CONTROL.get(access, access)
        return cls(
            access_control=str(access),
            latch_time=str(raw.get("latchTime", "000")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"accessControl": self.access_control, "latchTime": self.latch_time}


@dataclasses.dataclass
class Device:
    """A GSM relay gate opener controlled by SMS."""

    id: str
    name: str
    unit_number: str
    password: str = DEFAULT_PASSWORD
    # User ids, insertion order kept for display only
    authorized_users: list[str] = dataclasses.field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""
    type: str = DEFAULT_DEVICE_TYPE
    relay_settings: RelaySettings | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Device:
        users = _as_list(raw.get("authorizedUsers"))
        return cls(
            id=str(raw["id"]),
            name=str(raw.get("name", "")),
            unit_number=str(raw.get("unitNumber", "")),
            password=str(raw.get("password", DEFAULT_PASSWORD)),
            authorized_users=[str(u) for u in users if isinstance(u, (str, int))],
            created_at=str(raw.get("createdAt", "")),
            updated_at=str(raw.get("updatedAt", "")),
            type=str(raw.get("type", DEFAULT_DEVICE_TYPE)),
            relay_settings=RelaySettings.from_dict(raw.get("relaySettings")),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "unitNumber": self.unit_number,
            "password": self.password,
            "authorizedUsers": list(self.authorized_users),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "type": self.type,
        }
        if self.relay_settings is not None:
            data["relaySettings"] = self.relay_settings.to_dict()
        return data


@dataclasses.dataclass
class User:
    """A phone number allowed to operate one or more devices."""

    id: str
    name: str
    phone_number: str
    # Position in the device's internal table, "001".."200"
    serial_number: str
    start_time: str | None = None
    end_time: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> User:
        return cls(
            id=str(raw["id"]),
            name=str(raw.get("name", "")),
            phone_number=str(raw.get("phoneNumber", "")),
            serial_number=str(raw.get("serialNumber", "")),
            start_time=_str_or_none(raw.get("startTime")),
            end_time=_str_or_none(raw.get("endTime")),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "phoneNumber": self.phone_number,
            "serialNumber": self.serial_number,
        }
        if self.start_time is not None:
            data["startTime"] = self.start_time
        if self.end_time is not None:
            data["endTime"] = self.end_time
        return data


@dataclasses.dataclass(frozen=True)
class LogEntry:
    """Audit record of one action. Never modified after creation."""

    id: str
    timestamp: str
    action: str
    details: str
    success: bool = True
    category: str = "system"
    device_id: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> LogEntry:
        return cls(
            id=str(raw["id"]),
            timestamp=str(raw.get("timestamp", "")),
            action=str(raw.get("action", "")),
            details=str(raw.get("details", "")),
            success=_as_bool(raw.get("success"), True),
            category=str(raw.get("category", "system")),
            device_id=_str_or_none(raw.get("deviceId")),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp,
            "action": self.action,
            "details": self.details,
            "success": self.success,
            "category": self.category,
        }
        if self.device_id is not None:
            data["deviceId"] = self.device_id
        return data


@dataclasses.dataclass
class GlobalSettings:
    admin_number: str = ""
    active_device_id: str | None = None
    # Onboarding steps already completed, only used for UI gating
    completed_steps: list[str] = dataclasses.field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Any) -> GlobalSettings:
        if not isinstance(raw, dict):
            return cls()
        steps = _as_list(raw.get("completedSteps"))
        return cls(
            admin_number=str(raw.get("adminNumber") or ""),
            active_device_id=_str_or_none(raw.get("activeDeviceId")),
            completed_steps=[str(s) for s in steps],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "adminNumber": self.admin_number,
            "activeDeviceId": self.active_device_id,
            "completedSteps": list(self.completed_steps),
        }


def _load_items(raw: Any, factory, label: str) -> list:
    """Convert a list of raw dicts, skipping records that cannot be read."""
    items = []
    if not isinstance(raw, list):
        return items
    for record in raw:
        if not isinstance(record, dict):
            continue
        try:
            items.append(factory(record))
        except (KeyError, TypeError, ValueError) as exc:
            _LOGGER.warning("Skipping unreadable %s record: %s", label, exc)
    return items


@dataclasses.dataclass
class AppData:
    """
    Root aggregate persisted as one JSON document under the canonical key.

    logs maps a device id (or the reserved "system" bucket) to its entries,
    newest first.
    """

    devices: list[Device] = dataclasses.field(default_factory=list)
    users: list[User] = dataclasses.field(default_factory=list)
    logs: dict[str, list[LogEntry]] = dataclasses.field(default_factory=dict)
    global_settings: GlobalSettings = dataclasses.field(default_factory=GlobalSettings)

    @classmethod
    def from_dict(cls, raw: Any) -> AppData:
        if not isinstance(raw, dict):
            raise ValueError(f"AppData document must be an object, got {type(raw).__name__}")
        logs: dict[str, list[LogEntry]] = {}
        raw_logs = raw.get("logs")
        if isinstance(raw_logs, dict):
            for bucket, entries in raw_logs.items():
                logs[str(bucket)] = _load_items(entries, LogEntry.from_dict, "log")
        return cls(
            devices=_load_items(raw.get("devices"), Device.from_dict, "device"),
            users=_load_items(raw.get("users"), User.from_dict, "user"),
            logs=logs,
            global_settings=GlobalSettings.from_dict(raw.get("globalSettings")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "devices": [d.to_dict() for d in self.devices],
            "users": [u.to_dict() for u in self.users],
            "logs": {
                bucket: [entry.to_dict() for entry in entries]
                for bucket, entries in self.logs.items()
            },
            "globalSettings": self.global_settings.to_dict(),
        }
