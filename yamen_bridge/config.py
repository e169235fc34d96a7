# Yamen Bridge Configuration
#
# Deployment-specific values (secret, Supabase credentials, terminal id/name)
# are not stored here. They come from the environment and from the terminal
# config file, see settings.py.

# Environment variable holding the shared signature secret.
# Every card signed with one secret stops verifying if the secret changes.
SECRET_ENV = "YAMEN_SECRET"

# Secrets shorter than this are refused at startup.
MIN_SECRET_LENGTH = 32

# Supabase project credentials (environment variable names).
SUPABASE_URL_ENV = "SUPABASE_URL"
SUPABASE_KEY_ENV = "SUPABASE_KEY"

# Optional log level override (environment variable name).
LOG_LEVEL_ENV = "YAMEN_LOG_LEVEL"
LOG_LEVEL = "INFO"

# Terminal config files, looked up in the working directory in this order.
# The first one is written on first-run setup.
TERMINAL_CONFIG_FILES = ("TERMINAL_CONFIG.json", "terminal-config.json")
DEFAULT_TERMINAL_ID = 1
DEFAULT_TERMINAL_NAME = "New Scanner"

# Block that holds the 16-byte signature (sector 1, first data block on
# MIFARE Classic; pages 4-7 on Ultralight / NTAG).
SIGNATURE_BLOCK = 4
SIGNATURE_LENGTH = 16

# MIFARE Classic authentication key (6 bytes as hex string) and key type.
# Most cards ship with the default key "FFFFFFFFFFFF".
MIFARE_KEY = "FFFFFFFFFFFF"
KEY_TYPE_A = 0x60

# Page size used when a signature is written to Ultralight / NTAG tags.
ULTRALIGHT_PAGE_SIZE = 4

# A different UID seen within this many seconds of the last transition on the
# same reader is treated as read noise during a card swap.
NEW_CARD_WINDOW = 0.05

# Wall-clock budget for reading and verifying the signature of a new card.
VERIFY_TIMEOUT = 0.8

# Retry budgets for remote scan records: attempts, and base delay in seconds
# (attempt N waits N * delay before the next try).
SCAN_SYNC_ATTEMPTS = 3
SCAN_SYNC_DELAY = 1.0
UPDATE_SYNC_ATTEMPTS = 2
UPDATE_SYNC_DELAY = 0.5

# HTTP timeout for REST calls, in seconds.
HTTP_TIMEOUT = 10

# Seconds between liveness updates.
HEARTBEAT_INTERVAL = 10

# Upper bound for the final heartbeat on shutdown.
SHUTDOWN_HEARTBEAT_TIMEOUT = 5

# Reader backend: "pcsc" or "hid".
READER_BACKEND = "pcsc"

# HID reader (ACS ACR122U) vendor / product ids.
HID_VENDOR_ID = 0x072F
HID_PRODUCT_ID = 0x2200

# HID polling interval and the pause between sending a feature report and
# reading the answer, in seconds.
HID_POLL_INTERVAL = 0.5
HID_RESPONSE_DELAY = 0.05

# Seconds between HID enumerations (hotplug detection).
HID_RESCAN_INTERVAL = 2.0

# Feature report size requested from the HID reader.
HID_REPORT_SIZE = 64

# Realtime (push channel) settings.
REALTIME_HEARTBEAT_INTERVAL = 25
REALTIME_RECONNECT_DELAY = 5

# Local operator socket: broadcasts notifications and scans to local UIs.
# Disabled by default; binds to localhost only.
OPERATOR_WS_ENABLED = False
OPERATOR_WS_HOST = "localhost"
OPERATOR_WS_PORT = 8765

# Number of recent remote action ids remembered to ignore redelivered inserts.
HANDLED_ACTIONS_HISTORY = 1000
