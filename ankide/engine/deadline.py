"""Cancellable deadlines for pending waiters.

Every waiter the bridge holds (pending request, login, active turn)
carries one Deadline. Expiry runs a callback on the event loop;
cancel() makes a settled waiter's deadline inert.
"""
from __future__ import annotations

import asyncio
from collections.abc import Callable


class Deadline:
    """A one-shot timer that fires a callback unless cancelled first."""

    def __init__(
        self,
        timeout_seconds: float,
        on_expire: Callable[[], None],
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self._on_expire = on_expire
        self._expired = False
        loop = asyncio.get_running_loop()
        self._handle: asyncio.TimerHandle | None = loop.call_later(
            max(0.0, timeout_seconds), self._fire,
        )

    @property
    def expired(self) -> bool:
        return self._expired

    @property
    def active(self) -> bool:
        return self._handle is not None

    def _fire(self) -> None:
        self._handle = None
        self._expired = True
        self._on_expire()

    def cancel(self) -> None:
        """Disarm the deadline. Safe to call more than once."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
