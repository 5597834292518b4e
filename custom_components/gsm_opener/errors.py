"""Exceptions raised by the GSM Opener integration."""
from homeassistant.exceptions import HomeAssistantError


class GsmOpenerError(HomeAssistantError):
    """Base class for every error surfaced to the caller."""


class ValidationError(GsmOpenerError):
    """Raised when input is rejected before any mutation happens."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")


class BackupFormatError(GsmOpenerError):
    """Raised when a backup document cannot be parsed into key/value pairs."""


class RestoreError(GsmOpenerError):
    """Raised when a restore could not commit anything to storage."""
