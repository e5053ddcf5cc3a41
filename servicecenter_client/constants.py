# =============================================================================
# Service Center Client -- Protocol Constants
# =============================================================================

PROTOCOL_VERSION = 1
CLIENT_VERSION = "1.0.0"
CLIENT_LANGUAGE = "python"

# -- Defaults (seconds unless noted) ------------------------------------------

DEFAULT_SERVER_ADDRESS = "localhost:12004"
DEFAULT_NAMESPACE = "public"
DEFAULT_GROUP = "DEFAULT_GROUP"
DEFAULT_STREAM_PATH = "/stream"

HEARTBEAT_INTERVAL = 5.0
HEARTBEAT_TIMEOUT_FACTOR = 3  # idle for 3 intervals -> session lost
RECONNECT_INTERVAL = 3.0
RECONNECT_MAX_ATTEMPTS = 10  # -1 = unbounded
REQUEST_TIMEOUT = 30.0

KEEP_ALIVE_TIME = 30.0
KEEP_ALIVE_TIMEOUT = 10.0
KEEP_ALIVE_WITHOUT_CALLS = True

MAX_INBOUND_MESSAGE_SIZE = 16 * 1024 * 1024  # 16 MB

# -- Wire prefixes -------------------------------------------------------------

PREFIX_COMPRESSED = b"C:"
PREFIX_MSGPACK = b"M:"

# -- Zlib magic bytes ----------------------------------------------------------

ZLIB_MAGIC = 0x78
ZLIB_METHODS = (0x01, 0x5E, 0x9C, 0xDA)

# -- Client -> server message types --------------------------------------------

MSG_HANDSHAKE = "handshake"
MSG_PING = "ping"
MSG_SUBSCRIBE_SERVICE = "subscribe_service"
MSG_UNSUBSCRIBE_SERVICE = "unsubscribe_service"
MSG_WATCH_CONFIG = "watch_config"
MSG_UNWATCH_CONFIG = "unwatch_config"
MSG_REGISTER_NODE = "register_node"
MSG_DEREGISTER_NODE = "deregister_node"
MSG_GET_SERVICE = "get_service"
MSG_GET_CONFIG = "get_config"
MSG_SAVE_CONFIG = "save_config"
MSG_DELETE_CONFIG = "delete_config"
MSG_LIST_CONFIGS = "list_configs"
MSG_GET_CONFIG_HISTORY = "get_config_history"
MSG_ROLLBACK_CONFIG = "rollback_config"
MSG_REGISTER_SERVICE = "register_service"
MSG_UNREGISTER_SERVICE = "unregister_service"
MSG_DISCOVER_NODES = "discover_nodes"

# -- Server -> client message types --------------------------------------------

MSG_HANDSHAKE_ACK = "handshake_ack"
MSG_PONG = "pong"
MSG_RESPONSE = "response"
MSG_ERROR = "error"
MSG_SERVICE_SNAPSHOT = "service_snapshot"
MSG_CONFIG_PUSH = "config_push"
MSG_CONFIG_DELETED = "config_deleted"
MSG_SERVER_CLOSE = "server_close"
MSG_BATCH = "batch"

# -- Server error codes --------------------------------------------------------

ERR_AUTH_FAILED = "AUTH_FAILED"
ERR_UNAUTHENTICATED = "UNAUTHENTICATED"
ERR_PERMISSION_DENIED = "PERMISSION_DENIED"
ERR_MESSAGE_TOO_LARGE = "MESSAGE_TOO_LARGE"
ERR_TIMEOUT = "TIMEOUT"

AUTH_ERROR_CODES = frozenset({ERR_AUTH_FAILED, ERR_UNAUTHENTICATED, ERR_PERMISSION_DENIED})
