"""Notification routing for the Codex app-server.

Every message without a request id lands here. A login completion
goes to the login waiter when one is armed; everything else belongs to
the active turn or is discarded. Notifications tagged with a different
turn id than the active turn are stale and ignored. While the active
turn has no id yet, turn-tagged notifications are held and sorted out
once turn/start answers.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from .config import EventCallback, fire_event
from .deadline import Deadline
from .errors import LoginRejectedError, LoginTimeoutError, TurnInProgressError, TurnTimeoutError
from .protocol import (
    ItemEvent,
    LoginCompleted,
    Notification,
    TurnCompleted,
    summarize_notification,
)

logger = logging.getLogger(__name__)


@dataclass
class TurnResult:
    """Aggregated outcome of one completed turn."""
    output: str
    diagnostics: str = ""
    events: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stdout": self.output,
            "stderr": self.diagnostics,
            "events": list(self.events),
        }


@dataclass
class ActiveTurn:
    """The single turn currently awaiting completion."""
    future: asyncio.Future
    turn_id: str | None = None
    deadline: Deadline | None = None
    # Set once turn/start has answered, with or without an id.
    bound: bool = False
    # Turn-tagged notifications that arrived before binding.
    held: list[Notification] = field(default_factory=list)
    output: list[str] = field(default_factory=list)
    diagnostics: list[str] = field(default_factory=list)
    events: list[str] = field(default_factory=list)

    def result(self) -> TurnResult:
        return TurnResult(
            output="".join(self.output).strip(),
            diagnostics="".join(self.diagnostics).strip(),
            events=list(self.events),
        )


@dataclass
class LoginWaiter:
    future: asyncio.Future
    deadline: Deadline | None = None


class NotificationRouter:
    """Demultiplexes notifications to the login waiter or the active turn."""

    def __init__(
        self,
        *,
        debug: bool = False,
        event_callback: EventCallback | None = None,
    ) -> None:
        self._debug = debug
        self._event_callback = event_callback
        self._turn: ActiveTurn | None = None
        self._login: LoginWaiter | None = None

    @property
    def active_turn(self) -> ActiveTurn | None:
        return self._turn

    @property
    def login_pending(self) -> bool:
        return self._login is not None

    # ── Login ──

    def arm_login(self, timeout_seconds: float) -> asyncio.Future:
        """Register the login waiter. Must happen before login/start is sent."""
        if self._login is not None:
            raise LoginRejectedError("Codex login already in progress.")
        future = asyncio.get_running_loop().create_future()
        waiter = LoginWaiter(future)
        waiter.deadline = Deadline(
            timeout_seconds, lambda: self._expire_login(waiter),
        )
        self._login = waiter
        return future

    def cancel_login(self) -> None:
        """Drop the login waiter without settling it."""
        waiter, self._login = self._login, None
        if waiter is not None and waiter.deadline is not None:
            waiter.deadline.cancel()

    def _expire_login(self, waiter: LoginWaiter) -> None:
        if self._login is waiter:
            self._login = None
        if not waiter.future.done():
            waiter.future.set_exception(
                LoginTimeoutError(waiter.deadline.timeout_seconds)
            )

    # ── Turns ──

    def begin_turn(self, timeout_seconds: float) -> ActiveTurn:
        """Register the active turn and arm its timeout.

        Until bind_turn() records the id from the turn/start response,
        notifications tagged with any turn id are held back; untagged
        ones are taken by this turn.
        """
        if self._turn is not None:
            raise TurnInProgressError()
        future = asyncio.get_running_loop().create_future()
        turn = ActiveTurn(future=future)
        turn.deadline = Deadline(
            timeout_seconds, lambda: self._expire_turn(turn),
        )
        self._turn = turn
        return turn

    async def bind_turn(self, turn: ActiveTurn, turn_id: str | None) -> None:
        """Record the turn id and replay held notifications that belong to it.

        With no id every held notification is replayed; otherwise the
        ones tagged for another turn are dropped.
        """
        turn.turn_id = turn_id
        turn.bound = True
        held, turn.held = turn.held, []
        for message in held:
            if self._turn is not turn:
                return
            await self.route(message)

    def abandon_turn(self, turn: ActiveTurn) -> None:
        """Drop a turn whose turn/start request failed."""
        if self._turn is turn:
            self._turn = None
        if turn.deadline is not None:
            turn.deadline.cancel()
        if turn.future.done():
            if not turn.future.cancelled():
                turn.future.exception()
        else:
            turn.future.cancel()

    def _expire_turn(self, turn: ActiveTurn) -> None:
        if self._turn is turn:
            self._turn = None
        if not turn.future.done():
            logger.warning(
                "Codex turn %s timed out after %.1fs (%d events)",
                turn.turn_id or "<unnamed>",
                turn.deadline.timeout_seconds, len(turn.events),
            )
            turn.future.set_exception(
                TurnTimeoutError(turn.deadline.timeout_seconds, turn.events)
            )

    def _finish_turn(self) -> None:
        turn, self._turn = self._turn, None
        if turn is None:
            return
        if turn.deadline is not None:
            turn.deadline.cancel()
        if not turn.future.done():
            turn.future.set_result(turn.result())

    def append_diagnostics(self, text: str) -> None:
        """Attach subprocess stderr to the active turn, if any."""
        if self._turn is not None:
            self._turn.diagnostics.append(text)

    # ── Routing ──

    async def route(self, message: Notification) -> None:
        if isinstance(message, LoginCompleted) and self._login is not None:
            waiter, self._login = self._login, None
            if waiter.deadline is not None:
                waiter.deadline.cancel()
            if not waiter.future.done():
                if message.success:
                    waiter.future.set_result(message.params)
                else:
                    waiter.future.set_exception(LoginRejectedError(message.error))
            return

        turn = self._turn
        if turn is None:
            return

        turn_id = message.turn_id
        if turn_id and not turn.bound:
            turn.held.append(message)
            return
        if turn_id and turn.turn_id and turn_id != turn.turn_id:
            logger.debug(
                "Ignoring %s for turn %s (active turn %s)",
                message.method, turn_id, turn.turn_id,
            )
            return

        summary = summarize_notification(message)
        if summary:
            turn.events.append(summary)
            if self._debug:
                logger.info("[codex] %s", summary)
            await fire_event(self._event_callback, {
                "event": "codex_notification",
                "method": message.method,
                "turn_id": turn.turn_id,
                "summary": summary,
            })
            if self._turn is not turn:
                return

        if isinstance(message, TurnCompleted):
            self._finish_turn()
            return
        if isinstance(message, ItemEvent):
            text = message.text
            if text:
                turn.output.append(text)

    def reject_all(self, make_error) -> None:
        """Fail the active turn and the login waiter (subprocess gone)."""
        turn, self._turn = self._turn, None
        if turn is not None:
            if turn.deadline is not None:
                turn.deadline.cancel()
            if not turn.future.done():
                turn.future.set_exception(make_error())
        waiter, self._login = self._login, None
        if waiter is not None:
            if waiter.deadline is not None:
                waiter.deadline.cancel()
            if not waiter.future.done():
                waiter.future.set_exception(make_error())
