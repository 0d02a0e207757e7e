"""Constants for the agent supervisor.

Wire-level names shared with the supervised agent server and the on-disk
layout of the supervisor's local state.
"""

# Environment injected into the child
PORT_ENV = "PORT"
HOST_ENV = "HOST"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_API_SERVER_URL_ENV = "AGENT_API_URL"

# Agent HTTP endpoints
HEALTH_PATH = "/_agent/health"
CAPABILITIES_PATH = "/_agent/capabilities"

# Health probing
SUBPROCESS_HEALTH_BASE_DELAY_MS = 5
IN_PROCESS_HEALTH_DELAY_MS = 100
DEFAULT_HEALTH_MAX_ATTEMPTS = 100
DEFAULT_HEALTH_REQUEST_TIMEOUT_SECONDS = 1.0

# Locking
LOCK_SUFFIX = ".lock"
RECLAIM_GUARD_SUFFIX = ".reclaim"
DEFAULT_LOCK_RETRY_INTERVAL_MS = 100
FILE_STORE_LOCK_RETRIES = 5
STORE_INDEX_NAME = "index.json"
STORE_FORCE_LOCK_RETRIES = 10
STORE_FORCE_KILL_WAIT_MS = 100

# Process shutdown
DEFAULT_TERMINATE_GRACE_SECONDS = 2.0
# Output still buffered after the child exits; grandchildren may hold the pipes open
STREAM_DRAIN_TIMEOUT_SECONDS = 1.0

# Local data layout, relative to the project directory
DATA_DIR_NAME = "data"
DEVHOOK_ID_FILE = "devhook.txt"
DEVHOOK_LOCK_NAME = "devhook"
DEVHOOK_PID_FILE = "devhook.pid"
AGENT_LOCK_NAME = "agent"

# Output decoding
STREAM_CHUNK_SIZE = 65536
