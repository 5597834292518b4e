"""
Platform for GSM Opener sensors.
This module sets up one "last action" sensor per stored device, showing the
newest entry of the device's log bucket.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from homeassistant.components.sensor import SensorEntity
from homeassistant.core import HomeAssistant
from homeassistant import config_entries
from homeassistant.helpers.entity import DeviceInfo

from custom_components.gsm_opener.const import SCAN_INTERVAL_SECONDS
from custom_components.gsm_opener.models import LogEntry
from custom_components.gsm_opener.runtime import GsmOpenerRuntimeData

_LOGGER = logging.getLogger(__name__)
SCAN_INTERVAL = timedelta(seconds=SCAN_INTERVAL_SECONDS)


class GsmOpenerLastActionSensor(SensorEntity):
    """
    Representation of the last logged action of a GSM Opener device.
    Reads the in-memory DataStore, so polling is cheap.
    """
    _latest: LogEntry | None = None

    def __init__(self, runtime: GsmOpenerRuntimeData, device_id: str) -> None:
        """Initialize the sensor."""
        self._runtime = runtime
        self._device_id = device_id
        device = runtime.data_store.get_device_by_id(device_id)
        self._device_name = device.name if device is not None else device_id
        self._attr_unique_id = f"gsm_opener_{runtime.guid}_{device_id}_last_action"
        self._attr_name = f"{self._device_name} Last Action"
        self._attr_icon = "mdi:message-text-clock"

    async def async_update(self) -> None:
        """Update the sensor state."""
        logs = self._runtime.data_store.get_device_logs(self._device_id)
        self._latest = logs[0] if logs else None

    @property
    def device_info(self) -> DeviceInfo | None:
        """Return the device info."""
        return self._runtime.get_device_info(self._device_id)

    @property
    def should_poll(self) -> bool:
        return True

    @property
    def native_value(self) -> str | None:
        if self._latest is None:
            return None
        return self._latest.action

    @property
    def extra_state_attributes(self) -> dict[str, Any] | None:
        if self._latest is None:
            return None
        return {
            "details": self._latest.details,
            "success": self._latest.success,
            "category": self._latest.category,
            "timestamp": self._latest.timestamp,
        }


async def async_setup_entry(
    hass: HomeAssistant,
    config_entry: config_entries.ConfigEntry,
    async_add_entities,
):
    """Add sensors for passed config_entry in HA."""
    runtime: GsmOpenerRuntimeData = config_entry.runtime_data
    devices = runtime.data_store.get_devices()
    _LOGGER.debug("Setting up sensors for %s devices", len(devices))

    entities = [GsmOpenerLastActionSensor(runtime, device.id) for device in devices]
    if entities and async_add_entities:
        async_add_entities(entities, update_before_add=True)
