"""Bridge between callers and the Codex app-server subprocess.

Callers submit ``(prompt, cwd)`` and get back a TurnResult. Internally:

    run_turn → TurnScheduler (FIFO, one worker)
             → ProcessSupervisor.ensure_started (spawn, initialize, login)
             → ThreadManager.thread_for (one thread per cwd)
             → RequestCorrelator.send("turn/start")
             → NotificationRouter (accumulate until turn/completed)

All tables live on this instance and are dropped together when the
subprocess exits; the next call spawns a fresh process.
"""
from __future__ import annotations

import logging
from typing import Any

from .config import BridgeConfig, fire_event
from .correlator import RequestCorrelator
from .errors import ProcessExitedError, RpcTimeoutError, TurnTimeoutError
from .login import LoginFlow
from .protocol import Response, parse_line
from .router import NotificationRouter, TurnResult
from .scheduler import TurnScheduler
from .sessions import SeedContext, ThreadManager
from .supervisor import ProcessFactory, ProcessState, ProcessSupervisor

logger = logging.getLogger(__name__)


class CodexBridge:
    """Drives one long-running ``codex app-server`` for many callers."""

    def __init__(
        self,
        config: BridgeConfig | None = None,
        *,
        process_factory: ProcessFactory | None = None,
    ) -> None:
        self._config = config or BridgeConfig.from_env()
        cfg = self._config
        self._router = NotificationRouter(
            debug=cfg.debug, event_callback=cfg.event_callback,
        )
        self._supervisor = ProcessSupervisor(
            cfg,
            on_line=self._handle_line,
            on_stderr=self._router.append_diagnostics,
            on_exit=self._reset,
            bootstrap=self._bootstrap,
            process_factory=process_factory,
        )
        self._correlator = RequestCorrelator(
            self._supervisor.write,
            default_timeout_seconds=cfg.rpc_timeout_seconds,
            diagnostics=self._supervisor.startup_stderr,
        )
        self._login = LoginFlow(
            self._correlator,
            self._router,
            timeout_seconds=cfg.login_timeout_seconds,
            api_key_env=cfg.api_key_env,
        )
        self._threads = ThreadManager(
            self._correlator,
            SeedContext(
                cfg.system_message,
                context_text=cfg.context_text,
                context_path=cfg.context_path,
            ),
            approval_policy=cfg.approval_policy,
            sandbox=cfg.sandbox,
        )
        self._scheduler = TurnScheduler()

    @property
    def config(self) -> BridgeConfig:
        return self._config

    @property
    def state(self) -> str:
        """stopped / starting / ready / busy."""
        state = self._supervisor.state
        if state is ProcessState.READY and self._router.active_turn is not None:
            return "busy"
        return state.value

    @property
    def pid(self) -> int | None:
        return self._supervisor.pid

    @property
    def thread_bindings(self) -> dict[str, str]:
        return self._threads.bindings

    async def ensure_started(self) -> None:
        """Start and log in the app-server if it is not running."""
        await self._supervisor.ensure_started()

    async def run_turn(self, prompt: str, cwd: str) -> TurnResult:
        """Run one turn for ``cwd``, after every previously submitted turn."""
        return await self._scheduler.submit(
            lambda: self._execute_turn(prompt, cwd)
        )

    async def _execute_turn(self, prompt: str, cwd: str) -> TurnResult:
        await self.ensure_started()
        thread_id = await self._threads.thread_for(cwd)
        items = self._threads.build_turn_input(prompt, thread_id)

        # Registered before turn/start so events that precede its
        # response are not lost; turn-tagged ones wait for bind_turn().
        turn = self._router.begin_turn(self._config.turn_timeout_seconds)
        try:
            result = await self._correlator.send(
                "turn/start",
                {"threadId": thread_id, "input": items},
                self._config.turn_timeout_seconds,
            )
        except BaseException as exc:
            self._router.abandon_turn(turn)
            if isinstance(exc, RpcTimeoutError):
                # Turn budget ran out before turn/start answered.
                raise TurnTimeoutError(exc.timeout_seconds, turn.events) from exc
            raise
        turn_info = result.get("turn")
        turn_id = None
        if isinstance(turn_info, dict) and turn_info.get("id"):
            turn_id = str(turn_info["id"])
        await self._router.bind_turn(turn, turn_id)
        logger.info(
            "Codex turn started (thread=%s, turn=%s, cwd=%s)",
            thread_id, turn.turn_id or "<unnamed>", cwd,
        )
        outcome: TurnResult = await turn.future
        await fire_event(self._config.event_callback, {
            "event": "codex_turn_completed",
            "thread_id": thread_id,
            "turn_id": turn.turn_id,
            "cwd": cwd,
            "events": len(outcome.events),
        })
        return outcome

    async def _bootstrap(self) -> None:
        cfg = self._config
        await self._correlator.send(
            "initialize",
            {
                "clientInfo": {
                    "name": cfg.client_name,
                    "title": cfg.client_title,
                    "version": cfg.client_version,
                }
            },
            cfg.init_timeout_seconds,
        )
        await self._correlator.notify("initialized", {})
        await self._login.run()

    async def _handle_line(self, line: bytes) -> None:
        message = parse_line(line)
        if message is None:
            return
        if isinstance(message, Response):
            self._correlator.resolve(message)
            return
        await self._router.route(message)

    def _reset(self, returncode: int | None) -> None:
        """Fail everything outstanding and forget per-process state."""
        def make_error() -> ProcessExitedError:
            return ProcessExitedError(returncode)

        pending = self._correlator.pending_count
        self._correlator.reject_all(make_error)
        self._router.reject_all(make_error)
        self._threads.clear()
        if pending:
            logger.warning(
                "Codex app-server exit rejected %d pending request(s)", pending,
            )

    async def shutdown(self) -> None:
        """Stop accepting turns and terminate the subprocess."""
        await self._scheduler.close()
        await self._supervisor.stop()

    async def __aenter__(self) -> CodexBridge:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()
