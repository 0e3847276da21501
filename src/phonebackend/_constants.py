"""Internal constants shared across the package."""

DEFAULT_ROUTING_URL = "http://localhost:3001"
DEFAULT_CONFIG_DIR = "~/.phone-backend"
CREDENTIALS_FILENAME = "config.json"
DATA_DIRNAME = "data"
DATABASE_FILENAME = "database.json"
DEFAULT_USERNAME = "testuser"

HEARTBEAT_INTERVAL_SECONDS = 30.0

# ------------------------------------------------------------------
# Relay event names
# ------------------------------------------------------------------

EVENT_AUTHENTICATE = "authenticate"
EVENT_AUTHENTICATED = "authenticated"
EVENT_AUTH_ERROR = "auth_error"
EVENT_API_REQUEST = "api_request"
EVENT_API_RESPONSE = "api_response"
EVENT_GET_DATA_SNAPSHOT = "get_data_snapshot"
EVENT_DATA_SNAPSHOT = "data_snapshot"
EVENT_HEARTBEAT = "heartbeat"

# Events the agent subscribes to.
INBOUND_EVENTS = (
    EVENT_AUTHENTICATED,
    EVENT_AUTH_ERROR,
    EVENT_API_REQUEST,
    EVENT_GET_DATA_SNAPSHOT,
)

# ------------------------------------------------------------------
# Response status codes
# ------------------------------------------------------------------

STATUS_OK = 200
STATUS_CREATED = 201
STATUS_BAD_REQUEST = 400
STATUS_NOT_FOUND = 404
STATUS_METHOD_NOT_ALLOWED = 405
STATUS_INTERNAL_ERROR = 500

ERROR_NOT_FOUND = "Not found"
ERROR_METHOD_NOT_ALLOWED = "Method not allowed"
