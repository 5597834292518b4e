"""
Sends relay commands through a Home Assistant notify service.

The relay has no return channel: a command counts as sent once the notify
service accepted it. Every attempt, failed or not, lands in the device's log
bucket with the password redacted.
"""
from __future__ import annotations

import dataclasses
import logging
from typing import Any

from homeassistant.core import HomeAssistant
from homeassistant.exceptions import HomeAssistantError

from .commands import (
    CMD_ACCESS_CONTROL,
    CMD_CHANGE_PASSWORD,
    CMD_LATCH_TIME,
    CMD_REGISTER_ADMIN,
    format_command,
    validate_access_control,
    validate_latch_time,
    validate_password,
    validate_phone_number,
)
from .data_store import DataStore
from .errors import ValidationError
from .models import Device, RelaySettings

_LOGGER = logging.getLogger(__name__)


def split_notify_service(notify_service: str) -> tuple[str, str]:
    """'notify.sms_gateway' -> ('notify', 'sms_gateway'); a bare name defaults to the notify domain."""
    if "." in notify_service:
        domain, service = notify_service.split(".", 1)
        return domain, service
    return "notify", notify_service


class GsmCommandSender:
    """Formats, sends and logs commands for the devices of one DataStore."""

    def __init__(self, hass: HomeAssistant, data_store: DataStore, notify_service: str) -> None:
        self._hass = hass
        self._data_store = data_store
        self._notify_service = notify_service

    @property
    def notify_service(self) -> str:
        return self._notify_service

    async def async_send_command(self, device_id: str, command_type: str, **options: Any) -> bool:
        """
        Send command_type to a device and apply its store side effect on success.

        Raises ValidationError for an unknown device or malformed options.
        Returns False when the notify service rejected the message.
        """
        device = self._data_store.get_device_by_id(device_id)
        if device is None:
            raise ValidationError("device_id", f"unknown device {device_id}")

        command = format_command(device.password, command_type, **options)
        sent = await self.async_send_raw(device, command)
        if sent:
            await self._async_apply_side_effect(device, command_type.lower(), options)
        return sent

    async def async_send_raw(self, device: Device, command: str) -> bool:
        domain, service = split_notify_service(self._notify_service)
        try:
            await self._hass.services.async_call(
                domain,
                service,
                {"message": command, "target": [device.unit_number]},
                blocking=True,
            )
        except HomeAssistantError as exc:
            _LOGGER.error("Failed to send command to %s via %s: %s", device.name, self._notify_service, exc)
            await self._data_store.async_log_sms_operation(device.id, command, success=False)
            return False

        _LOGGER.debug("Command sent to %s (%s)", device.name, device.id)
        await self._data_store.async_log_sms_operation(device.id, command, success=True)
        return True

    async def _async_apply_side_effect(self, device: Device, command_type: str, options: dict[str, Any]) -> None:
        relay = device.relay_settings or RelaySettings()
        if command_type == CMD_ACCESS_CONTROL:
            access = validate_access_control(options.get("access_control"))
            await self._data_store.async_update_device(
                device.id, relay_settings=dataclasses.replace(relay, access_control=access)
            )
        elif command_type == CMD_LATCH_TIME:
            latch = validate_latch_time(options.get("latch_time"))
            await self._data_store.async_update_device(
                device.id, relay_settings=dataclasses.replace(relay, latch_time=latch)
            )
        elif command_type == CMD_REGISTER_ADMIN:
            admin = validate_phone_number(options.get("admin_number"), "admin_number")
            await self._data_store.async_update_global_settings(admin_number=admin)
        elif command_type == CMD_CHANGE_PASSWORD:
            await self._data_store.async_update_device(
                device.id, password=validate_password(options.get("new_password"))
            )
