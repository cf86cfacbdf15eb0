"""Caller-side bridge client: persistent channel, reconnect loop and correlated calls."""

from __future__ import annotations

import asyncio
import logging
import os
from enum import Enum
from typing import Any, Mapping

import aiohttp

from filebridge.client.correlator import DEFAULT_CALL_TIMEOUT_SECONDS, RequestCorrelator
from filebridge.contracts import DEFAULT_BRIDGE_URL, MSG_ERROR, MSG_PING, MSG_PONG, MSG_TOOL_RESPONSE
from filebridge.errors import (
    BridgeConnectionLostError,
    BridgeNotConnectedError,
    BridgeTransportError,
    MalformedFrameError,
    ToolCallError,
)
from filebridge.protocol import (
    ToolName,
    ToolRequest,
    ToolResponse,
    decode_message,
    decode_response,
    encode_message,
    encode_request,
)

logger = logging.getLogger("filebridge.client")

URL_ENV_VAR = "FILEBRIDGE_URL"
RECONNECT_DELAY_SECONDS = 5.0
CONNECT_TIMEOUT_SECONDS = 10.0
HEARTBEAT_SECONDS = 30.0
COMMAND_CALL_MARGIN_MS = 5_000


def default_bridge_url() -> str:
    return os.getenv(URL_ENV_VAR, DEFAULT_BRIDGE_URL)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class BridgeClient:
    """Proxy for the local executor over one WebSocket.

    After connect() the client keeps a reconnect loop running until close():
    every drop or failed attempt is followed by a fixed delay and a new
    attempt. Calls made while disconnected fail immediately; calls in flight
    when the channel drops fail with BridgeConnectionLostError.
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        call_timeout: float = DEFAULT_CALL_TIMEOUT_SECONDS,
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
        connect_timeout: float = CONNECT_TIMEOUT_SECONDS,
        heartbeat: float | None = HEARTBEAT_SECONDS,
    ) -> None:
        self.url = url or default_bridge_url()
        self.reconnect_delay = reconnect_delay
        self.connect_timeout = connect_timeout
        self.heartbeat = heartbeat
        self._correlator = RequestCorrelator(call_timeout)
        self._state = ConnectionState.DISCONNECTED
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._first_attempt: asyncio.Future[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._send_lock = asyncio.Lock()
        self._closing = False
        self._last_error: str | None = None

    async def __aenter__(self) -> "BridgeClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def correlator(self) -> RequestCorrelator:
        return self._correlator

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return (
            self._state == ConnectionState.CONNECTED
            and self._ws is not None
            and not self._ws.closed
        )

    def status(self) -> dict[str, Any]:
        return {
            "connected": self.connected,
            "state": self._state.value,
            "url": self.url,
            "pending": len(self._correlator),
            "last_error": self._last_error,
        }

    async def connect(self, url: str | None = None, *, wait: bool = True) -> None:
        """Start the reconnect loop; with wait, fail if the first attempt does."""
        if self._loop_task is not None and not self._loop_task.done():
            if wait and not self.connected:
                raise BridgeNotConnectedError(f"Not connected to {self.url}")
            return
        if url:
            self.url = url
        self._closing = False
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        self._first_attempt = asyncio.get_running_loop().create_future()
        self._loop_task = asyncio.create_task(self._run())
        if not wait:
            return
        await asyncio.shield(self._first_attempt)
        if not self.connected:
            reason = self._last_error or "client closed"
            raise BridgeNotConnectedError(f"Failed to connect to {self.url}: {reason}")

    async def close(self) -> None:
        """Stop reconnecting, fail outstanding calls and release the session."""
        self._closing = True
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        self._mark_attempted()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._correlator.fail_all(BridgeConnectionLostError("Client closed before response"))
        self._ws = None
        self._state = ConnectionState.DISCONNECTED
        if self._session is not None:
            await self._session.close()
            self._session = None
        logger.info("Bridge client closed")

    async def call(
        self,
        tool: str | ToolName,
        parameters: Mapping[str, Any] | None = None,
        timeout_ms: float | None = None,
    ) -> ToolResponse:
        """Send one tool request and wait for its response.

        Raises:
            ValueError for an unknown tool name
            BridgeNotConnectedError when no connection is live
            BridgeTimeoutError when no response arrives before the deadline
        """
        tool_name = ToolName(tool).value
        if not self.connected:
            raise BridgeNotConnectedError()
        if timeout_ms is None and tool_name == ToolName.RUN_COMMAND.value:
            timeout_ms = self._command_call_timeout_ms((parameters or {}).get("timeout"))
        timeout = timeout_ms / 1000.0 if timeout_ms is not None else None
        pending = self._correlator.issue(timeout=timeout)
        request = ToolRequest(id=pending.request_id, tool=tool_name, parameters=dict(parameters or {}))
        try:
            await self._send_text(encode_request(request))
        except BridgeTransportError:
            self._correlator.discard(pending.request_id)
            raise
        self._correlator.mark_in_flight(pending.request_id)
        try:
            return await pending.future
        finally:
            self._correlator.discard(pending.request_id)

    async def read_file(self, path: str, encoding: str = "utf-8") -> str:
        data = await self._call_data(ToolName.READ_FILE, {"path": path, "encoding": encoding})
        return str(data.get("content", ""))

    async def write_file(self, path: str, content: str, encoding: str = "utf-8") -> dict[str, Any]:
        return await self._call_data(
            ToolName.WRITE_FILE,
            {"path": path, "content": content, "encoding": encoding},
        )

    async def edit_file(
        self,
        path: str,
        old_string: str,
        new_string: str,
        *,
        replace_all: bool = False,
    ) -> int:
        data = await self._call_data(
            ToolName.EDIT_FILE,
            {
                "path": path,
                "old_string": old_string,
                "new_string": new_string,
                "replace_all": replace_all,
            },
        )
        return int(data.get("replacements", 0))

    async def list_files(self, directory: str | None = None, pattern: str = "*") -> list[str]:
        params: dict[str, Any] = {"pattern": pattern}
        if directory is not None:
            params["directory"] = directory
        data = await self._call_data(ToolName.LIST_FILES, params)
        return list(data.get("files", []))

    async def run_command(
        self,
        command: str,
        cwd: str | None = None,
        timeout_ms: float | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"command": command}
        if cwd is not None:
            params["cwd"] = cwd
        if timeout_ms is not None:
            params["timeout"] = timeout_ms
        return await self._call_data(ToolName.RUN_COMMAND, params)

    def _command_call_timeout_ms(self, command_timeout_ms: Any) -> float | None:
        """Call deadline that outlasts the command's own timeout, if one was given."""
        if command_timeout_ms is None or isinstance(command_timeout_ms, bool):
            return None
        try:
            requested = float(command_timeout_ms)
        except (TypeError, ValueError):
            return None
        return max(self._correlator.default_timeout * 1000.0, requested + COMMAND_CALL_MARGIN_MS)

    async def _call_data(
        self,
        tool: ToolName,
        parameters: dict[str, Any],
        timeout_ms: float | None = None,
    ) -> dict[str, Any]:
        response = await self.call(tool, parameters, timeout_ms)
        if not response.success:
            raise ToolCallError(
                response.error or "Unknown error",
                error_code=response.error_code,
                data=response.data,
            )
        return response.data or {}

    async def _run(self) -> None:
        try:
            await self._reconnect_loop()
        finally:
            # Wakes connect() when close() cancels the first attempt.
            self._mark_attempted()

    async def _reconnect_loop(self) -> None:
        assert self._session is not None
        while not self._closing:
            self._state = ConnectionState.CONNECTING
            logger.info("Connecting to local file service at %s", self.url)
            try:
                ws = await asyncio.wait_for(
                    self._session.ws_connect(self.url, heartbeat=self.heartbeat),
                    timeout=self.connect_timeout,
                )
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
                self._last_error = str(exc) or exc.__class__.__name__
                self._state = ConnectionState.DISCONNECTED
                logger.warning("Connection to %s failed: %s", self.url, self._last_error)
                self._mark_attempted()
            else:
                self._ws = ws
                self._state = ConnectionState.CONNECTED
                self._last_error = None
                logger.info("Connected to local file service")
                self._mark_attempted()
                try:
                    await self._read_loop(ws)
                finally:
                    self._ws = None
                    self._state = ConnectionState.DISCONNECTED
                    lost = self._correlator.fail_all(
                        BridgeConnectionLostError("Connection lost before response")
                    )
                    logger.info("Connection closed (%d pending calls failed)", lost)

            if self._closing:
                break
            logger.info("Reconnecting in %.1fs", self.reconnect_delay)
            await asyncio.sleep(self.reconnect_delay)

    def _mark_attempted(self) -> None:
        if self._first_attempt is not None and not self._first_attempt.done():
            self._first_attempt.set_result(None)

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                self._handle_frame(msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.error("WebSocket error: %s", ws.exception())
                break

    def _handle_frame(self, raw: str | bytes) -> None:
        try:
            envelope = decode_message(raw)
        except MalformedFrameError as exc:
            logger.warning("Failed to parse message: %s", exc)
            return

        if envelope.type == MSG_TOOL_RESPONSE:
            try:
                response = decode_response(envelope)
            except MalformedFrameError as exc:
                logger.warning("Failed to parse tool response: %s", exc)
                return
            self._correlator.resolve(response)
        elif envelope.type == MSG_PING:
            task = asyncio.create_task(self._reply_pong())
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        elif envelope.type == MSG_ERROR:
            logger.warning("Server reported error: %s", envelope.payload)

    async def _reply_pong(self) -> None:
        try:
            await self._send_text(encode_message(MSG_PONG))
        except BridgeTransportError as exc:
            logger.debug("Could not answer ping: %s", exc)

    async def _send_text(self, text: str) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise BridgeNotConnectedError()
        async with self._send_lock:
            try:
                await ws.send_str(text)
            except (ConnectionResetError, aiohttp.ClientError) as exc:
                raise BridgeTransportError(f"Failed to send frame: {exc}") from exc
