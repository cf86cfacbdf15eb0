"""Caller-side table of pending calls keyed by request id, with deadlines."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum

from filebridge.errors import BridgeTimeoutError, DuplicateRequestIdError
from filebridge.protocol import ToolResponse

logger = logging.getLogger("filebridge.client.correlator")

DEFAULT_CALL_TIMEOUT_SECONDS = 30.0


class CallState(str, Enum):
    CREATED = "created"
    IN_FLIGHT = "in_flight"
    RESOLVED = "resolved"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


TERMINAL_STATES = {CallState.RESOLVED, CallState.TIMED_OUT, CallState.FAILED}


@dataclass
class PendingCall:
    request_id: str
    created_at: float
    deadline: float
    future: asyncio.Future[ToolResponse]
    state: CallState = CallState.CREATED
    _timer: asyncio.TimerHandle | None = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def _finish(self, state: CallState) -> None:
        self.state = state
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class RequestCorrelator:
    """Matches responses to pending calls by id and expires calls past their deadline.

    Every issued call completes exactly once: with its response, with a
    BridgeTimeoutError at the deadline, or with whatever fail_all() is given.
    All methods must be called from the event loop that owns the table.
    """

    def __init__(
        self,
        default_timeout: float = DEFAULT_CALL_TIMEOUT_SECONDS,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        if default_timeout <= 0:
            raise ValueError("default_timeout must be positive")
        self.default_timeout = default_timeout
        self._loop = loop
        self._pending: dict[str, PendingCall] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def get(self, request_id: str) -> PendingCall | None:
        return self._pending.get(request_id)

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def issue(self, timeout: float | None = None, request_id: str | None = None) -> PendingCall:
        """Register a new pending call and arm its deadline."""
        loop = self._get_loop()
        effective = self.default_timeout if timeout is None else timeout
        if effective <= 0:
            raise ValueError("timeout must be positive")
        if request_id is None:
            request_id = uuid.uuid4().hex
            while request_id in self._pending:
                request_id = uuid.uuid4().hex
        elif request_id in self._pending:
            raise DuplicateRequestIdError(f"Request id already pending: {request_id}")

        now = loop.time()
        pending = PendingCall(
            request_id=request_id,
            created_at=now,
            deadline=now + effective,
            future=loop.create_future(),
        )
        pending._timer = loop.call_at(pending.deadline, self._expire, request_id)
        self._pending[request_id] = pending
        return pending

    def mark_in_flight(self, request_id: str) -> None:
        pending = self._pending.get(request_id)
        if pending is not None and pending.state == CallState.CREATED:
            pending.state = CallState.IN_FLIGHT

    def resolve(self, response: ToolResponse) -> bool:
        """Complete the matching live call. Unknown or finished ids are ignored."""
        pending = self._pending.pop(response.id, None)
        if pending is None:
            logger.debug("Dropping response for unknown or expired request %s", response.id)
            return False
        pending._finish(CallState.RESOLVED)
        if not pending.future.done():
            pending.future.set_result(response)
        return True

    def expire_overdue(self, now: float | None = None) -> int:
        """Fail every call whose deadline has passed. Returns the number expired."""
        current = self._get_loop().time() if now is None else now
        overdue = [rid for rid, pending in self._pending.items() if pending.deadline <= current]
        for request_id in overdue:
            self._expire(request_id)
        return len(overdue)

    def _expire(self, request_id: str) -> None:
        # Timer handles may fire within clock resolution of the deadline.
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        pending._finish(CallState.TIMED_OUT)
        logger.warning("Request %s timed out", request_id)
        if not pending.future.done():
            timeout = pending.deadline - pending.created_at
            pending.future.set_exception(BridgeTimeoutError(f"Request timeout after {timeout:g}s"))

    def fail_all(self, exc: BaseException) -> int:
        """Fail every live call with exc, e.g. when the channel drops."""
        failed = list(self._pending.values())
        self._pending.clear()
        for pending in failed:
            pending._finish(CallState.FAILED)
            if not pending.future.done():
                pending.future.set_exception(exc)
        return len(failed)

    def discard(self, request_id: str) -> None:
        """Forget a call without completing it (send failure or abandoned caller)."""
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        pending._finish(CallState.FAILED)
        if not pending.future.done():
            pending.future.cancel()
