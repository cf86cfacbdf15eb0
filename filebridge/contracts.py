"""Versioned wire contract identifiers for bridge envelopes and configuration."""

MSG_TOOL_REQUEST = "tool_request"
MSG_TOOL_RESPONSE = "tool_response"
MSG_PING = "ping"
MSG_PONG = "pong"
MSG_ERROR = "error"

SUPPORTED_MESSAGE_TYPES = {
    MSG_TOOL_REQUEST,
    MSG_TOOL_RESPONSE,
    MSG_PING,
    MSG_PONG,
    MSG_ERROR,
}

EXECUTOR_CONFIG_SCHEMA_V1 = "executor_config.v1"

BRIDGE_VERSION = "0.1.0"
DEFAULT_BRIDGE_HOST = "127.0.0.1"
DEFAULT_BRIDGE_PORT = 8765
DEFAULT_BRIDGE_URL = f"ws://{DEFAULT_BRIDGE_HOST}:{DEFAULT_BRIDGE_PORT}/"
