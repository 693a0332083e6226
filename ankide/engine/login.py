"""Account login handshake.

Runs once per subprocess start, right after initialize. Only logs in
when the app-server says authentication is required and no account is
present. The credential comes from the environment at call time.
"""
from __future__ import annotations

import logging
import os

from .correlator import RequestCorrelator
from .errors import MissingCredentialError
from .router import NotificationRouter

logger = logging.getLogger(__name__)


class LoginFlow:
    """account/read → account/login/start → account/login/completed."""

    def __init__(
        self,
        correlator: RequestCorrelator,
        router: NotificationRouter,
        *,
        timeout_seconds: float = 30.0,
        api_key_env: str = "OPENAI_API_KEY",
    ) -> None:
        self._correlator = correlator
        self._router = router
        self._timeout = timeout_seconds
        self._api_key_env = api_key_env

    async def run(self) -> None:
        auth_info = await self._correlator.send(
            "account/read", {"refreshToken": False}, self._timeout,
        )
        if not auth_info.get("requiresOpenaiAuth"):
            logger.debug("Codex app-server does not require auth")
            return
        if auth_info.get("account"):
            logger.debug("Codex app-server already has an account")
            return

        api_key = os.environ.get(self._api_key_env)
        if not api_key:
            raise MissingCredentialError(self._api_key_env)

        # Armed before login/start so a fast completion is not dropped.
        completed = self._router.arm_login(self._timeout)
        try:
            await self._correlator.send(
                "account/login/start",
                {"type": "apiKey", "apiKey": api_key},
                self._timeout,
            )
        except BaseException:
            self._router.cancel_login()
            if completed.done() and not completed.cancelled():
                completed.exception()
            else:
                completed.cancel()
            raise
        await completed
        logger.info("Codex app-server login completed")
