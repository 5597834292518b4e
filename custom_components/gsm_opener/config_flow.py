"""Config flow for GSM Opener integration."""
from __future__ import annotations
import logging
import re
import uuid
from typing import Any, Dict, Optional
import homeassistant.helpers.config_validation as cv
import voluptuous as vol

from homeassistant import config_entries
from homeassistant.core import callback

from .const import CONF_ENTRY_NAME, CONF_GUID, CONF_NOTIFY_SERVICE, DOMAIN

_LOGGER = logging.getLogger(__name__)

# notify.<service> or a bare <service>
_NOTIFY_SERVICE_RE = re.compile(r"^[a-z0-9_]+(\.[a-z0-9_]+)?$")

CONFIG_SCHEMA = vol.Schema(
            {
                vol.Required(CONF_ENTRY_NAME, default='My GSM Opener'): cv.string,
                vol.Required(CONF_NOTIFY_SERVICE, default=''): cv.string,
            }
        )


def _validate_input(user_input: Dict[str, Any]) -> Optional[str]:
    """Return an error key for the form, or None when the input is usable."""
    if not user_input.get(CONF_ENTRY_NAME, '').strip():
        return 'entry_name_required'
    notify_service = user_input.get(CONF_NOTIFY_SERVICE, '').strip()
    if not notify_service:
        return 'notify_service_required'
    if not _NOTIFY_SERVICE_RE.match(notify_service):
        return 'invalid_notify_service'
    return None


class CustomFlow(config_entries.ConfigFlow, domain=DOMAIN):
    data: Optional[Dict[str, Any]]

    async def async_step_user(self, user_input: Optional[Dict[str, Any]] = None):
        errors: Dict[str, str] = {}
        if user_input is not None:
            error = _validate_input(user_input)
            if error:
                errors['base'] = error
            else:
                self._async_abort_entries_match({CONF_ENTRY_NAME: user_input[CONF_ENTRY_NAME]})
                self.data = {
                    CONF_GUID: str(uuid.uuid4()),
                    CONF_ENTRY_NAME: user_input[CONF_ENTRY_NAME].strip(),
                    CONF_NOTIFY_SERVICE: user_input[CONF_NOTIFY_SERVICE].strip(),
                }
                return self.async_create_entry(title=self.data[CONF_ENTRY_NAME], data=self.data)

        return self.async_show_form(step_id="user", data_schema=CONFIG_SCHEMA, errors=errors)

    @staticmethod
    @callback
    def async_get_options_flow(config_entry):
        """Get the options flow for this handler."""
        return OptionsFlowHandler(config_entry)


class OptionsFlowHandler(config_entries.OptionsFlow):
    """Handles options flow for the component."""

    def __init__(self, config_entry: config_entries.ConfigEntry) -> None:
        self._entry = config_entry

    def _default(self, key: str, fallback: str = '') -> str:
        if key in self._entry.options:
            return self._entry.options[key]
        return self._entry.data.get(key, fallback)

    async def async_step_init(
        self, user_input: Dict[str, Any] = None
    ) -> Dict[str, Any]:
        errors: Dict[str, str] = {}

        if user_input is not None:
            error = _validate_input(user_input)
            if error:
                errors['base'] = error
            else:
                new_data = {
                    CONF_GUID: self._entry.data[CONF_GUID],
                    CONF_ENTRY_NAME: user_input[CONF_ENTRY_NAME].strip(),
                    CONF_NOTIFY_SERVICE: user_input[CONF_NOTIFY_SERVICE].strip(),
                }
                # Rename the entry in the UI
                self.hass.config_entries.async_update_entry(
                    self._entry,
                    data=new_data,
                    title=new_data[CONF_ENTRY_NAME],
                )
                return self.async_create_entry(title=new_data[CONF_ENTRY_NAME], data=new_data)

        options_schema = vol.Schema(
            {
                vol.Required(CONF_ENTRY_NAME, default=self._default(CONF_ENTRY_NAME)): cv.string,
                vol.Required(CONF_NOTIFY_SERVICE, default=self._default(CONF_NOTIFY_SERVICE)): cv.string,
            }
        )
        return self.async_show_form(step_id="init", data_schema=options_schema, errors=errors)
