"""Local WebSocket bridge server executing tool requests for one trusted client."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

from aiohttp import WSCloseCode, WSMsgType, web
from pydantic import ValidationError

from filebridge.contracts import (
    BRIDGE_VERSION,
    DEFAULT_BRIDGE_HOST,
    DEFAULT_BRIDGE_PORT,
    MSG_PING,
    MSG_PONG,
    MSG_TOOL_REQUEST,
)
from filebridge.errors import INVALID_REQUEST, MalformedFrameError
from filebridge.executor.config import ExecutorConfig
from filebridge.executor.operations import OperationExecutor
from filebridge.executor.tool_router import ToolRouter
from filebridge.protocol import (
    ToolRequest,
    ToolResponse,
    decode_message,
    encode_message,
    encode_response,
    read_request_id,
)

logger = logging.getLogger("filebridge.executor.server")

HEARTBEAT_SECONDS = 30.0


class BridgeServer:
    """Aiohttp server that accepts one client connection and answers its tool requests.

    A newer connection replaces the current one. Each request runs on its own
    task, so responses may leave in a different order than requests arrived.
    """

    def __init__(
        self,
        router: ToolRouter,
        host: str = DEFAULT_BRIDGE_HOST,
        port: int = DEFAULT_BRIDGE_PORT,
        *,
        heartbeat: float | None = HEARTBEAT_SECONDS,
    ):
        self.router = router
        self.host = host
        self.port = port
        self.heartbeat = heartbeat
        self._ws: web.WebSocketResponse | None = None
        self._send_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        self._stop_event = asyncio.Event()

    @classmethod
    def from_config(cls, config: ExecutorConfig) -> "BridgeServer":
        router = ToolRouter(OperationExecutor.from_config(config))
        return cls(router, host=config.host, port=config.port)

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/", self._handle_socket)
        app.router.add_get("/health", self._handle_health)
        return app

    async def _handle_health(self, request: web.Request) -> web.Response:
        guard = self.router.executor.guard
        return web.json_response(
            {
                "status": "ok",
                "version": BRIDGE_VERSION,
                "connected": self.connected,
                "allowed_paths": [str(path) for path in guard.allowed_paths],
                "unrestricted": guard.unrestricted,
            }
        )

    async def _handle_socket(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=self.heartbeat)
        await ws.prepare(request)

        previous = self._ws
        self._ws = ws
        if previous is not None and not previous.closed:
            logger.warning("Replacing existing client connection with newer one")
            await previous.close(code=WSCloseCode.GOING_AWAY, message=b"replaced by newer connection")

        logger.info("Client connected from %s", request.remote)
        await self._send(ws, encode_message(MSG_PING, {"status": "connected"}))

        try:
            async for msg in ws:
                if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    self._dispatch(ws, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.error("WebSocket error: %s", ws.exception())
        finally:
            if self._ws is ws:
                self._ws = None
            logger.info("Client disconnected")
        return ws

    def _dispatch(self, ws: web.WebSocketResponse, raw: str | bytes) -> None:
        try:
            envelope = decode_message(raw)
        except MalformedFrameError as exc:
            logger.warning("Ignoring malformed frame: %s", exc)
            return

        if envelope.type == MSG_TOOL_REQUEST:
            request_id = read_request_id(envelope.payload)
            if request_id is None:
                logger.warning("Ignoring tool request without id")
                return
            self._spawn(self._handle_request(ws, request_id, envelope.payload or {}))
        elif envelope.type == MSG_PING:
            self._spawn(self._send(ws, encode_message(MSG_PONG)))
        else:
            logger.debug("Ignoring %s frame", envelope.type)

    async def _handle_request(
        self,
        ws: web.WebSocketResponse,
        request_id: str,
        payload: dict[str, Any],
    ) -> None:
        try:
            request = ToolRequest.model_validate(payload)
        except ValidationError as exc:
            detail = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
            )
            logger.warning("Rejecting invalid tool request %s: %s", request_id, detail)
            response = ToolResponse.failure(
                request_id,
                f"Invalid tool request: {detail}",
                error_code=INVALID_REQUEST,
            )
        else:
            response = await self.router.handle(request)
        await self._send(ws, encode_response(response))

    async def _send(self, ws: web.WebSocketResponse, text: str) -> bool:
        if ws.closed:
            logger.debug("Dropping frame for closed connection")
            return False
        async with self._send_lock:
            try:
                await ws.send_str(text)
            except ConnectionResetError as exc:
                logger.warning("Failed to send frame: %s", exc)
                return False
        return True

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def start(self) -> None:
        """Start aiohttp server."""
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, host=self.host, port=self.port)
        await self._site.start()
        logger.info("Bridge server listening on ws://%s:%s/", self.host, self.port)

    async def stop(self) -> None:
        """Cancel in-flight requests and stop aiohttp server."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._ws is not None and not self._ws.closed:
            await self._ws.close(code=WSCloseCode.GOING_AWAY, message=b"server shutdown")
        self._ws = None
        if self._site is not None:
            await self._site.stop()
            self._site = None
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        self._app = None
        logger.info("Bridge server stopped")

    def request_stop(self) -> None:
        self._stop_event.set()

    async def run_until_stopped(self) -> None:
        """Serve until request_stop() is called."""
        await self.start()
        try:
            await self._stop_event.wait()
        finally:
            await self.stop()
