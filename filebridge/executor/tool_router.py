"""Deterministic tool router: validate typed parameters, dispatch, build one response."""

import logging
from typing import Any, Dict

from filebridge.errors import OPERATION_FAULT, AccessDeniedError, BridgeError
from filebridge.executor.operations import OperationExecutor
from filebridge.protocol import (
    EditFileCall,
    ListFilesCall,
    ReadFileCall,
    RunCommandCall,
    ToolRequest,
    ToolResponse,
    WriteFileCall,
    parse_tool_call,
)

logger = logging.getLogger("filebridge.executor.tool_router")


class ToolRouter:
    """
    Turns one ToolRequest into exactly one ToolResponse.

    Executor failures never escape: known bridge errors keep their code and
    message, anything else is reported as an operation fault.
    """

    def __init__(self, executor: OperationExecutor):
        self._executor = executor

    @property
    def executor(self) -> OperationExecutor:
        return self._executor

    async def handle(self, request: ToolRequest) -> ToolResponse:
        logger.info("Tool request %s: %s", request.id, request.tool)
        try:
            data = await self.execute(request)
        except BridgeError as exc:
            level = logging.WARNING if isinstance(exc, AccessDeniedError) else logging.INFO
            logger.log(level, "Tool request %s failed (%s): %s", request.id, exc.error_code, exc)
            return ToolResponse.failure(
                request.id,
                str(exc),
                error_code=exc.error_code,
                data=exc.data,
            )
        except Exception as exc:
            logger.exception("Unexpected fault handling tool request %s", request.id)
            return ToolResponse.failure(
                request.id,
                str(exc) or exc.__class__.__name__,
                error_code=OPERATION_FAULT,
            )
        return ToolResponse.ok(request.id, data)

    async def execute(self, request: ToolRequest) -> Dict[str, Any]:
        """
        Execute a validated tool call.

        Raises:
            InvalidRequestError for unknown tools or bad parameters
            BridgeError subclasses for guarded operation failures
        """
        call = parse_tool_call(request)

        if isinstance(call, ReadFileCall):
            params = call.parameters
            return await self._executor.read_file(params.path, encoding=params.encoding)

        elif isinstance(call, WriteFileCall):
            params = call.parameters
            return await self._executor.write_file(
                params.path, params.content, encoding=params.encoding
            )

        elif isinstance(call, EditFileCall):
            params = call.parameters
            return await self._executor.edit_file(
                params.path,
                params.old_string,
                params.new_string,
                replace_all=params.replace_all,
            )

        elif isinstance(call, ListFilesCall):
            params = call.parameters
            return await self._executor.list_files(params.directory, pattern=params.pattern)

        elif isinstance(call, RunCommandCall):
            params = call.parameters
            return await self._executor.run_command(
                params.command, cwd=params.cwd, timeout_ms=params.timeout
            )

        else:
            raise ValueError(f"Unsupported tool call: {call!r}")
