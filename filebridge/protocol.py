"""Wire models for bridge envelopes, tool requests and tool responses.

Every channel message is a JSON envelope ``{"type": ..., "payload": ...}``.
Tool parameters travel as a loose mapping and are validated into a typed,
per-tool record (a discriminated union keyed by tool name) at the executor
boundary before anything touches the filesystem.
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import PurePath
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from filebridge.contracts import MSG_TOOL_REQUEST, MSG_TOOL_RESPONSE, SUPPORTED_MESSAGE_TYPES
from filebridge.errors import InvalidRequestError, MalformedFrameError


class ToolName(str, Enum):
    READ_FILE = "read_file"
    WRITE_FILE = "write_file"
    EDIT_FILE = "edit_file"
    LIST_FILES = "list_files"
    RUN_COMMAND = "run_command"


TOOL_NAMES = {tool.value for tool in ToolName}


class ReadFileParams(BaseModel):
    path: str = Field(min_length=1)
    encoding: str = "utf-8"


class WriteFileParams(BaseModel):
    path: str = Field(min_length=1)
    content: str
    encoding: str = "utf-8"


class EditFileParams(BaseModel):
    path: str = Field(min_length=1)
    old_string: str = Field(min_length=1)
    new_string: str
    replace_all: bool = False


class ListFilesParams(BaseModel):
    directory: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("directory", "cwd"),
    )
    pattern: str = Field(default="*", min_length=1)

    @field_validator("pattern")
    @classmethod
    def _relative_pattern(cls, value: str) -> str:
        if PurePath(value).is_absolute():
            raise ValueError("pattern must be relative to directory")
        return value


class RunCommandParams(BaseModel):
    command: str = Field(min_length=1)
    cwd: Optional[str] = None
    timeout: Optional[float] = Field(default=None, gt=0)


class ReadFileCall(BaseModel):
    tool: Literal["read_file"]
    parameters: ReadFileParams


class WriteFileCall(BaseModel):
    tool: Literal["write_file"]
    parameters: WriteFileParams


class EditFileCall(BaseModel):
    tool: Literal["edit_file"]
    parameters: EditFileParams


class ListFilesCall(BaseModel):
    tool: Literal["list_files"]
    parameters: ListFilesParams


class RunCommandCall(BaseModel):
    tool: Literal["run_command"]
    parameters: RunCommandParams


ToolCall = Annotated[
    Union[ReadFileCall, WriteFileCall, EditFileCall, ListFilesCall, RunCommandCall],
    Field(discriminator="tool"),
]
_TOOL_CALL_ADAPTER: TypeAdapter[ToolCall] = TypeAdapter(ToolCall)


class ToolRequest(BaseModel):
    """Caller-built request; immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    tool: str = Field(min_length=1)
    parameters: dict[str, Any] = Field(default_factory=dict)


class ToolResponse(BaseModel):
    """Executor answer correlated to exactly one request id."""

    id: str
    success: bool
    data: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, request_id: str, data: dict[str, Any] | None = None) -> "ToolResponse":
        return cls(id=request_id, success=True, data=data)

    @classmethod
    def failure(
        cls,
        request_id: str,
        error: str,
        *,
        error_code: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> "ToolResponse":
        return cls(id=request_id, success=False, error=error, error_code=error_code, data=data)

    def to_payload(self) -> dict[str, Any]:
        """Return wire payload with absent optional fields omitted."""
        payload: dict[str, Any] = {"id": self.id, "success": self.success}
        if self.data is not None:
            payload["data"] = self.data
        if self.error is not None:
            payload["error"] = self.error
        if self.error_code is not None:
            payload["error_code"] = self.error_code
        return payload


class Envelope(BaseModel):
    type: str
    payload: Optional[dict[str, Any]] = None

    @field_validator("type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        if value not in SUPPORTED_MESSAGE_TYPES:
            raise ValueError(f"unsupported message type: {value}")
        return value


def _format_validation_error(exc: ValidationError, tool: str) -> str:
    parts: list[str] = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in (tool, "parameters")]
        field = ".".join(loc) or "parameters"
        parts.append(f"{field}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


def parse_tool_call(request: ToolRequest) -> ToolCall:
    """Validate request parameters into the typed record for its tool."""
    if request.tool not in TOOL_NAMES:
        raise InvalidRequestError(f"Unknown tool: {request.tool}")
    try:
        return _TOOL_CALL_ADAPTER.validate_python(
            {"tool": request.tool, "parameters": request.parameters}
        )
    except ValidationError as exc:
        detail = _format_validation_error(exc, request.tool)
        raise InvalidRequestError(f"Invalid parameters for {request.tool}: {detail}") from exc


def encode_message(msg_type: str, payload: dict[str, Any] | None = None) -> str:
    """Serialize one envelope to a JSON text frame."""
    if msg_type not in SUPPORTED_MESSAGE_TYPES:
        raise ValueError(f"Unsupported message type: {msg_type}")
    message: dict[str, Any] = {"type": msg_type}
    if payload is not None:
        message["payload"] = payload
    return json.dumps(message)


def encode_request(request: ToolRequest) -> str:
    return encode_message(MSG_TOOL_REQUEST, request.model_dump())


def encode_response(response: ToolResponse) -> str:
    return encode_message(MSG_TOOL_RESPONSE, response.to_payload())


def decode_message(raw: str | bytes) -> Envelope:
    """Parse a text frame into an envelope or raise MalformedFrameError."""
    try:
        body = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedFrameError(f"Frame is not valid JSON: {exc}") from exc
    if not isinstance(body, dict):
        raise MalformedFrameError("Frame must be a JSON object")
    try:
        return Envelope.model_validate(body)
    except ValidationError as exc:
        raise MalformedFrameError(f"Invalid envelope: {exc.errors()[0].get('msg')}") from exc


def read_request_id(payload: dict[str, Any] | None) -> str | None:
    """Return the request id of a raw payload if it carries a usable one."""
    if not isinstance(payload, dict):
        return None
    request_id = payload.get("id")
    if isinstance(request_id, str) and request_id:
        return request_id
    return None


def decode_response(envelope: Envelope) -> ToolResponse:
    if envelope.type != MSG_TOOL_RESPONSE:
        raise MalformedFrameError(f"Expected {MSG_TOOL_RESPONSE}, got {envelope.type}")
    try:
        return ToolResponse.model_validate(envelope.payload or {})
    except ValidationError as exc:
        raise MalformedFrameError(f"Invalid tool response: {exc.errors()[0].get('msg')}") from exc
