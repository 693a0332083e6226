"""Request/response correlation over a shared line transport.

Every outgoing request gets the next integer id and a pending entry
holding a future and a Deadline. The stdout pump hands each Response
to resolve(); the entry is removed and its future settled. Responses
for unknown ids (e.g. a request that already timed out) are ignored.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .deadline import Deadline
from .errors import InitializationTimeoutError, RpcError, RpcTimeoutError
from .protocol import Response, notification, request

logger = logging.getLogger(__name__)

# Writes one message to the subprocess.
WriteFn = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass
class PendingRequest:
    id: int
    method: str
    future: asyncio.Future
    deadline: Deadline


class RequestCorrelator:
    """Pending-request table keyed by request id."""

    def __init__(
        self,
        write: WriteFn,
        *,
        default_timeout_seconds: float = 10.0,
        diagnostics: Callable[[], str] | None = None,
    ) -> None:
        self._write = write
        self._default_timeout = default_timeout_seconds
        # Startup stderr, attached to initialize timeouts.
        self._diagnostics = diagnostics or (lambda: "")
        self._next_id = 1
        self._pending: dict[int, PendingRequest] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def send(
        self,
        method: str,
        params: dict[str, Any],
        timeout_seconds: float | None = None,
    ) -> dict[str, Any]:
        """Send a request and wait for its result."""
        timeout = self._default_timeout if timeout_seconds is None else timeout_seconds
        request_id = self._next_id
        self._next_id += 1

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        deadline = Deadline(timeout, lambda: self._expire(request_id))
        self._pending[request_id] = PendingRequest(
            request_id, method, future, deadline,
        )
        try:
            await self._write(request(method, request_id, params))
        except BaseException:
            entry = self._pending.pop(request_id, None)
            if entry is not None:
                entry.deadline.cancel()
            raise
        logger.debug("-> %s id=%d", method, request_id)
        return await future

    async def notify(self, method: str, params: dict[str, Any]) -> None:
        """Send a notification (no id, no reply)."""
        await self._write(notification(method, params))

    def resolve(self, response: Response) -> bool:
        """Settle the pending entry matching response.id.

        Returns False when no request with that id is pending.
        """
        entry = self._pending.pop(response.id, None)
        if entry is None:
            logger.debug("Ignoring response for unknown id=%d", response.id)
            return False
        entry.deadline.cancel()
        if entry.future.done():
            return True
        if response.is_error:
            entry.future.set_exception(RpcError(entry.method, response.error or ""))
        else:
            entry.future.set_result(response.result)
        return True

    def _expire(self, request_id: int) -> None:
        entry = self._pending.pop(request_id, None)
        if entry is None or entry.future.done():
            return
        timeout = entry.deadline.timeout_seconds
        if entry.method == "initialize":
            exc: RpcTimeoutError = InitializationTimeoutError(
                timeout, self._diagnostics().strip(),
            )
        else:
            exc = RpcTimeoutError(entry.method, timeout)
        logger.warning("Request %s id=%d timed out after %.3fs", entry.method, request_id, timeout)
        entry.future.set_exception(exc)

    def reject_all(self, make_error: Callable[[], BaseException]) -> None:
        """Fail every pending request (subprocess gone)."""
        pending = list(self._pending.values())
        self._pending.clear()
        for entry in pending:
            entry.deadline.cancel()
            if not entry.future.done():
                entry.future.set_exception(make_error())
