import logging

from homeassistant import config_entries, core
from homeassistant.const import Platform
from homeassistant.core import HomeAssistant
import homeassistant.helpers.config_validation as cv

from .const import CONF_GUID, CONF_NOTIFY_SERVICE, DOMAIN
from .data_store import DataStore
from .runtime import GsmOpenerRuntimeData
from .services import async_setup_services
from .sms import GsmCommandSender
from .storage import HassKeyValueStorage

PLATFORMS: list[Platform] = [Platform.BUTTON, Platform.SENSOR]
CONFIG_SCHEMA = cv.config_entry_only_config_schema(DOMAIN)
_LOGGER = logging.getLogger(__name__)


async def async_setup(hass: core.HomeAssistant, config: dict) -> bool:
    """Set up the integration and register its services once."""
    async_setup_services(hass)
    return True


async def async_setup_entry(
    hass: core.HomeAssistant, entry: config_entries.ConfigEntry
) -> bool:
    """Set up platform from a ConfigEntry."""
    entry.async_on_unload(
        entry.add_update_listener(_async_update_listener)
    )

    storage = HassKeyValueStorage(hass, entry.entry_id)
    data_store = DataStore(storage)
    await data_store.async_initialize()

    migration = data_store.last_migration
    if migration is not None and migration.migrated:
        _LOGGER.debug("Imported legacy data into device %s", migration.device_id)
    if migration is not None and migration.errors:
        _LOGGER.warning("Legacy import skipped some data: %s", "; ".join(migration.errors))

    notify_service = entry.options.get(CONF_NOTIFY_SERVICE, entry.data.get(CONF_NOTIFY_SERVICE, ""))
    sender = GsmCommandSender(hass, data_store, notify_service)

    entry.runtime_data = GsmOpenerRuntimeData(
        guid=entry.data.get(CONF_GUID, entry.entry_id),
        storage=storage,
        data_store=data_store,
        sender=sender,
    )

    await hass.config_entries.async_forward_entry_setups(entry, PLATFORMS)

    return True


async def _async_update_listener(hass: HomeAssistant, config_entry):
    """Handle config options update."""
    # Reload the integration when the options change.
    await hass.config_entries.async_reload(config_entry.entry_id)


async def async_unload_entry(
    hass: core.HomeAssistant, entry: config_entries.ConfigEntry
) -> bool:
    """Unload a config entry."""
    return await hass.config_entries.async_unload_platforms(entry, PLATFORMS)


async def async_remove_entry(
    hass: core.HomeAssistant, entry: config_entries.ConfigEntry
) -> None:
    """Delete the stored data of a removed entry."""
    await HassKeyValueStorage(hass, entry.entry_id).async_remove_store()
