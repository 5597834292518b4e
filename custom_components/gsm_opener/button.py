"""
Platform for GSM Opener buttons.
This module sets up the Open gate, Close gate and Check status buttons of
every stored device. Pressing a button sends the matching SMS command through
the entry's GsmCommandSender, which also logs it.
"""
from __future__ import annotations

import logging

from homeassistant.components.button import ButtonEntity
from homeassistant.core import HomeAssistant
from homeassistant import config_entries
from homeassistant.helpers.entity import DeviceInfo

from custom_components.gsm_opener.commands import CMD_CLOSE, CMD_OPEN, CMD_STATUS
from custom_components.gsm_opener.errors import GsmOpenerError
from custom_components.gsm_opener.runtime import GsmOpenerRuntimeData

_LOGGER = logging.getLogger(__name__)

# command -> (name suffix, icon)
BUTTON_COMMANDS = {
    CMD_OPEN: ("Open Gate", "mdi:gate-open"),
    CMD_CLOSE: ("Close Gate", "mdi:gate"),
    CMD_STATUS: ("Check Status", "mdi:information-outline"),
}


class GsmOpenerCommandButton(ButtonEntity):
    """
    Representation of one relay command of a GSM Opener device.
    Takes the data from the runtime data created in async_setup_entry.
    """

    def __init__(self, runtime: GsmOpenerRuntimeData, device_id: str, command: str) -> None:
        """Initialize the button."""
        self._runtime = runtime
        self._device_id = device_id
        self._command = command
        name, icon = BUTTON_COMMANDS[command]
        device = runtime.data_store.get_device_by_id(device_id)
        self._device_name = device.name if device is not None else device_id
        self._attr_unique_id = f"gsm_opener_{runtime.guid}_{device_id}_{command}"
        self._attr_name = f"{self._device_name} {name}"
        self._attr_icon = icon

    @property
    def device_info(self) -> DeviceInfo | None:
        """Return the device info."""
        return self._runtime.get_device_info(self._device_id)

    @property
    def available(self) -> bool:
        return self._runtime.data_store.get_device_by_id(self._device_id) is not None

    async def async_press(self) -> None:
        """Send the command to the device."""
        sent = await self._runtime.sender.async_send_command(self._device_id, self._command)
        if not sent:
            raise GsmOpenerError(f"Could not send {self._command} command to {self._device_name}")


async def async_setup_entry(
    hass: HomeAssistant,
    config_entry: config_entries.ConfigEntry,
    async_add_entities,
):
    """Add buttons for passed config_entry in HA."""
    runtime: GsmOpenerRuntimeData = config_entry.runtime_data
    devices = runtime.data_store.get_devices()
    _LOGGER.debug("Setting up buttons for %s devices", len(devices))

    entities = [
        GsmOpenerCommandButton(runtime, device.id, command)
        for device in devices
        for command in BUTTON_COMMANDS
    ]
    if entities and async_add_entities:
        async_add_entities(entities)
