"""Objects shared by the platforms and services of one config entry."""
from __future__ import annotations

from dataclasses import dataclass

from homeassistant.config_entries import ConfigEntry

from .const import DOMAIN, VERSION
from .data_store import DataStore
from .sms import GsmCommandSender
from .storage import HassKeyValueStorage


@dataclass
class GsmOpenerRuntimeData:
    guid: str
    storage: HassKeyValueStorage
    data_store: DataStore
    sender: GsmCommandSender

    def get_device_info(self, device_id: str) -> dict | None:
        """Return the HA DeviceInfo dict for the given device_id."""
        device = self.data_store.get_device_by_id(device_id)
        if device is None:
            return None
        return {
            "identifiers": {(DOMAIN, f"{self.guid}_{device.id}")},
            "name": device.name or f"GSM Opener {device.unit_number}",
            "manufacturer": "GSM Opener",
            "model": device.type,
            "sw_version": VERSION,
        }


GsmOpenerConfigEntry = ConfigEntry[GsmOpenerRuntimeData]
