DOMAIN = "gsm_opener"
VERSION = "1.2.0"

# Config entry fields
CONF_ENTRY_NAME = "entry_name"
CONF_NOTIFY_SERVICE = "notify_service"
CONF_GUID = "guid"

# Home Assistant Store holding every key/value pair of one config entry
STORAGE_VERSION = 1
STORAGE_KEY_PREFIX = f"{DOMAIN}."

# Canonical AppData document
STORE_KEY = "app_data"

# Legacy single-purpose keys, read once by the migration
LEGACY_UNIT_NUMBER_KEY = "unitNumber"
LEGACY_PASSWORD_KEY = "password"
LEGACY_ADMIN_NUMBER_KEY = "adminNumber"
LEGACY_USERS_KEY = "authorizedUsers"
LEGACY_LOGS_KEY = "app_logs"
LEGACY_COMPLETED_STEPS_KEY = "completedSteps"

# Keys written by the older standalone logger
LEGACY_SMS_LOGS_KEY = "smsCommandLogs"
SYSTEM_LOGS_KEY = "systemLogs"
DEVICE_LOGS_KEY_PREFIX = "app_logs_"

# Log buckets
MAX_DEVICE_LOGS = 200
SYSTEM_LOG_BUCKET = "system"
LOG_CATEGORIES = ("relay", "settings", "user", "system")

# Device defaults
DEFAULT_DEVICE_NAME = "My GSM Opener"
DEFAULT_PASSWORD = "1234"
DEFAULT_USER_NAME = "Unnamed User"
DEVICE_TYPES = ("Connect4v", "Phonic4v")
DEFAULT_DEVICE_TYPE = "Connect4v"

# Relay access control: stored value -> SMS operation code
ACCESS_AUTHORIZED_ONLY = "authorized-only"
ACCESS_ALLOW_ALL = "allow-all"
ACCESS_CONTROL_CODES: dict[str, str] = {
    ACCESS_AUTHORIZED_ONLY: "AUT",
    ACCESS_ALLOW_ALL: "ALL",
}

# Position range of the device's internal user table
MIN_SERIAL = 1
MAX_SERIAL = 200

# Backup document
BACKUP_VERSION = "1.0"
BACKUP_FILE_PREFIX = "gsm-opener-backup-"
BACKUP_FILE_EXTENSION = ".json"
BACKUP_DIRECTORY = "gsm_opener_backups"
# Oldest backups were a bare JSON array of devices
LEGACY_ARRAY_KEY = "gsm_devices"
# Candidate markers for the start of a JSON object inside a noisy blob
JSON_START_MARKERS = ('{"', '{\n"', '{ "')

# Entity polling
SCAN_INTERVAL_SECONDS = 30
