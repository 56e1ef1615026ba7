# =============================================================================
# NATS Relay -- Defaults
# =============================================================================
#
# All durations are in seconds.
# =============================================================================

DEFAULT_SERVERS = ("ws://localhost:8080",)

# -- Reconnection -------------------------------------------------------------

RECONNECT_BASE_DELAY = 2.0
RECONNECT_MAX_DELAY = 30.0
RECONNECT_MAX_ATTEMPTS = 10
RECONNECT_FACTOR = 1.5
RECONNECT_JITTER = 0.2  # total spread, i.e. +/-10% of the delay

CONNECTION_TIMEOUT = 10.0

# -- Deduplication ------------------------------------------------------------

DEDUP_WINDOW = 2.0
DEDUP_CLEAR_INTERVAL = 10.0
UNSERIALIZABLE_PAYLOAD = "[unserializable]"

# -- Streams ------------------------------------------------------------------

STREAM_QUEUE_SIZE = 1000

# -- Bus status event types ---------------------------------------------------

STATUS_DISCONNECT = "disconnect"
STATUS_RECONNECT = "reconnect"
STATUS_ERROR = "error"
STATUS_CLOSE = "close"

# Status events that mean the connection is gone
CONNECTION_LOST_EVENTS = frozenset({STATUS_DISCONNECT, STATUS_ERROR})

# -- Environment --------------------------------------------------------------

ENV_PREFIX = "NATS_RELAY_"
