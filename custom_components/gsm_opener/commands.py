"""
SMS command strings understood by the GSM relay.

Every command is the device's 4-digit password followed by an operation
code and optional '#'-delimited fields. This module formats those strings,
turns a sent command back into a human-readable log line (never exposing the
password), and validates the individual fields before anything is sent or
stored.

No HA imports beyond the shared exception types.
"""
from __future__ import annotations

import re
from typing import Any

from .const import (
    ACCESS_ALLOW_ALL,
    ACCESS_AUTHORIZED_ONLY,
    ACCESS_CONTROL_CODES,
    MAX_SERIAL,
    MIN_SERIAL,
)
from .errors import ValidationError

CMD_OPEN = "open"
CMD_CLOSE = "close"
CMD_STATUS = "status"
CMD_ADD_USER = "add_user"
CMD_DELETE_USER = "delete_user"
CMD_ACCESS_CONTROL = "access_control"
CMD_LATCH_TIME = "latch_time"
CMD_REGISTER_ADMIN = "register_admin"
CMD_CHANGE_PASSWORD = "change_password"

COMMAND_TYPES = (
    CMD_OPEN,
    CMD_CLOSE,
    CMD_STATUS,
    CMD_ADD_USER,
    CMD_DELETE_USER,
    CMD_ACCESS_CONTROL,
    CMD_LATCH_TIME,
    CMD_REGISTER_ADMIN,
    CMD_CHANGE_PASSWORD,
)

_PASSWORD_RE = re.compile(r"\d{4}")
_WINDOW_RE = re.compile(r"\d{10}")
_PHONE_RE = re.compile(r"\+?\d{3,20}")

_ADD_USER_RE = re.compile(r"A(\d{3})#([^#]+)#")
_DELETE_USER_RE = re.compile(r"A(\d{3})##")
_PASSWORD_CHANGE_RE = re.compile(r"P\d{4}")
_LATCH_RE = re.compile(r"GOT(\d{3})#?")


# ---------------------------------------------------------------------------
# Field validation
# ---------------------------------------------------------------------------

def validate_password(value: Any) -> str:
    password = str(value if value is not None else "").strip()
    if not _PASSWORD_RE.fullmatch(password):
        raise ValidationError("password", "must be exactly 4 digits")
    return password


def validate_serial(value: Any) -> str:
    """Return the serial as a zero-padded 3-digit position."""
    text = str(value if value is not None else "").strip()
    if not text.isdigit():
        raise ValidationError("serial_number", "must be a number between 001 and 200")
    number = int(text)
    if not MIN_SERIAL <= number <= MAX_SERIAL:
        raise ValidationError("serial_number", "must be between 001 and 200")
    return f"{number:03d}"


def validate_latch_time(value: Any) -> str:
    text = str(value if value is not None else "").strip()
    if not text.isdigit() or int(text) > 999:
        raise ValidationError("latch_time", "must be between 000 and 999 seconds")
    return f"{int(text):03d}"


def validate_access_window(value: Any) -> str | None:
    """Validate an optional YYMMDDHHMM start/end time."""
    if value is None or str(value).strip() == "":
        return None
    text = str(value).strip()
    if not _WINDOW_RE.fullmatch(text):
        raise ValidationError("access_window", "must be 10 digits in YYMMDDHHMM format")
    return text


def validate_access_control(value: Any) -> str:
    text = str(value if value is not None else "").strip()
    for access, code in ACCESS_CONTROL_CODES.items():
        if text in (access, code):
            return access
    raise ValidationError("access_control", f"must be one of {', '.join(ACCESS_CONTROL_CODES)}")


def validate_phone_number(value: Any, field: str = "phone_number") -> str:
    text = re.sub(r"[\s\-()]", "", str(value if value is not None else ""))
    if not _PHONE_RE.fullmatch(text):
        raise ValidationError(field, "must be a phone number")
    return text


def validate_device_fields(fields: dict[str, Any]) -> None:
    """Reject a new device that is missing its name or unit number."""
    for field in ("name", "unit_number"):
        if not str(fields.get(field) or "").strip():
            raise ValidationError(field, "is required")
    if fields.get("password") is not None:
        validate_password(fields["password"])


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def format_command(password: str, command_type: str, **options: Any) -> str:
    """Build the SMS body for command_type on a device with the given password."""
    password = validate_password(password)
    command = (command_type or "").lower()

    if command == CMD_OPEN:
        return f"{password}CC"
    if command == CMD_CLOSE:
        return f"{password}DD"
    if command == CMD_STATUS:
        return f"{password}EE"
    if command == CMD_ADD_USER:
        serial = validate_serial(options.get("serial"))
        phone = validate_phone_number(options.get("phone"))
        start = validate_access_window(options.get("start_time")) or ""
        end = validate_access_window(options.get("end_time")) or ""
        return f"{password}A{serial}#{phone}#{start}#{end}#"
    if command == CMD_DELETE_USER:
        serial = validate_serial(options.get("serial"))
        return f"{password}A{serial}##"
    if command == CMD_ACCESS_CONTROL:
        access = validate_access_control(options.get("access_control"))
        return f"{password}{ACCESS_CONTROL_CODES[access]}#"
    if command == CMD_LATCH_TIME:
        latch = validate_latch_time(options.get("latch_time"))
        return f"{password}GOT{latch}#"
    if command == CMD_REGISTER_ADMIN:
        admin = validate_phone_number(options.get("admin_number"), "admin_number")
        return f"{password}TEL{admin}#"
    if command == CMD_CHANGE_PASSWORD:
        new_password = validate_password(options.get("new_password"))
        return f"{password}P{new_password}"

    raise ValidationError("command", f"unknown command type {command_type!r}")


# ---------------------------------------------------------------------------
# Description (log lines)
# ---------------------------------------------------------------------------

def describe_command(command: str) -> tuple[str, str]:
    """
    Classify a raw command string into an (action, details) pair for the log.

    The 4-digit password prefix never appears in the result.
    """
    text = (command or "").strip()
    has_password = len(text) >= 4 and text[:4].isdigit()
    body = text[4:] if has_password else text

    if body == "CC":
        return "Gate Open", "Opened gate/activated relay (ON)"
    if body == "DD":
        return "Gate Close", "Closed gate/deactivated relay (OFF)"
    if body == "EE":
        return "Status Check", "Requested device status"
    if _PASSWORD_CHANGE_RE.fullmatch(body):
        return "Password Change", "Changed device password"
    if body.startswith("TEL"):
        return "Admin Registration", "Registered admin phone number"
    if body.rstrip("#") == ACCESS_CONTROL_CODES[ACCESS_AUTHORIZED_ONLY]:
        return "Access Control", "Set to authorized users only"
    if body.rstrip("#") == ACCESS_CONTROL_CODES[ACCESS_ALLOW_ALL]:
        return "Access Control", "Set to allow all callers"

    match = _DELETE_USER_RE.fullmatch(body)
    if match:
        return "User Management", f"Removed authorized user from position {match.group(1)}"
    match = _ADD_USER_RE.match(body)
    if match:
        serial, phone = match.groups()
        return "User Management", f"Added user {phone} at position {serial}"

    match = _LATCH_RE.fullmatch(body)
    if match:
        seconds = match.group(1)
        if seconds == "000":
            return "Relay Timing", "Set relay to momentary mode (pulse)"
        if seconds == "999":
            return "Relay Timing", "Set relay to toggle mode (stays ON until next call)"
        return "Relay Timing", f"Set relay to close for {int(seconds)} seconds"

    return "GSM Command", f"****{body}" if has_password else text
