"""Bridge exception hierarchy with stable error codes."""

from __future__ import annotations

from typing import Any

ACCESS_DENIED = "ACCESS_DENIED"
NOT_FOUND = "NOT_FOUND"
INVALID_REQUEST = "INVALID_REQUEST"
OPERATION_FAULT = "OPERATION_FAULT"
COMMAND_TIMEOUT = "COMMAND_TIMEOUT"
TIMEOUT = "TIMEOUT"
TRANSPORT_ERROR = "TRANSPORT_ERROR"
DUPLICATE_REQUEST_ID = "DUPLICATE_REQUEST_ID"
MALFORMED_FRAME = "MALFORMED_FRAME"


class BridgeError(Exception):
    """Base error type for all bridge failures."""

    error_code = OPERATION_FAULT

    def __init__(self, message: str, *, data: dict[str, Any] | None = None):
        super().__init__(message)
        self.data = data


class AccessDeniedError(BridgeError):
    """Path falls outside the configured allow-list."""

    error_code = ACCESS_DENIED

    def __init__(self, path: str):
        super().__init__(f"Access denied: {path}")
        self.path = path


class NotFoundError(BridgeError):
    """File or directory is missing, or an edit target substring is absent."""

    error_code = NOT_FOUND


class InvalidRequestError(BridgeError):
    """Unknown tool or parameters that fail validation."""

    error_code = INVALID_REQUEST


class OperationFaultError(BridgeError):
    """Any other executor-side failure."""

    error_code = OPERATION_FAULT


class CommandTimeoutError(OperationFaultError):
    """Command exceeded its timeout; partial output travels in ``data``."""

    error_code = COMMAND_TIMEOUT


class BridgeTimeoutError(BridgeError):
    """No response arrived before the call deadline. Outcome is unknown."""

    error_code = TIMEOUT


class BridgeConnectionLostError(BridgeTimeoutError):
    """Channel dropped while the call was outstanding. Outcome is unknown."""


class BridgeTransportError(BridgeError):
    """Channel could not carry the request."""

    error_code = TRANSPORT_ERROR


class BridgeNotConnectedError(BridgeTransportError):
    """Raised when a call is attempted without a live connection."""

    def __init__(self, message: str = "Not connected to local file service"):
        super().__init__(message)


class DuplicateRequestIdError(BridgeError):
    """Request id is already bound to a live pending call."""

    error_code = DUPLICATE_REQUEST_ID


class MalformedFrameError(BridgeError):
    """Incoming frame is not a valid envelope."""

    error_code = MALFORMED_FRAME


class ToolCallError(BridgeError):
    """Executor answered a call with ``success: false``."""

    def __init__(
        self,
        message: str,
        *,
        error_code: str | None = None,
        data: dict[str, Any] | None = None,
    ):
        super().__init__(message, data=data)
        self.error_code = error_code or OPERATION_FAULT
