"""Lifecycle of the single Codex app-server subprocess.

State Diagram:

    STOPPED ──> STARTING ──> READY ──> STOPPED   (exit / crash)
       ^            │
       └────────────┘  (spawn, initialize or login failed)

Concurrent ensure_started() callers share one in-flight start attempt.
The stdout pump hands every line to the owner; the stderr pump keeps a
diagnostics buffer for the current process. Exit notifications from a
process that has already been replaced are ignored.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from .config import BridgeConfig
from .errors import ProcessExitedError, SpawnError
from .protocol import encode_message

logger = logging.getLogger(__name__)

# StreamReader line limit; app-server items can carry whole files.
_STDOUT_LIMIT = 16 * 1024 * 1024
_STDERR_CHUNK = 4096

LineHandler = Callable[[bytes], Awaitable[None]]
StderrHandler = Callable[[str], None]
ExitHandler = Callable[[int | None], None]
Bootstrap = Callable[[], Awaitable[None]]
ProcessFactory = Callable[..., Awaitable[Any]]


class ProcessState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"


class ProcessSupervisor:
    """Owns the subprocess handle and its stdio pumps."""

    def __init__(
        self,
        config: BridgeConfig,
        *,
        on_line: LineHandler,
        on_stderr: StderrHandler,
        on_exit: ExitHandler,
        bootstrap: Bootstrap,
        process_factory: ProcessFactory | None = None,
    ) -> None:
        self._config = config
        self._on_line = on_line
        self._on_stderr = on_stderr
        self._on_exit = on_exit
        self._bootstrap = bootstrap
        self._process_factory = process_factory or asyncio.create_subprocess_exec
        self._process: Any = None
        self._state = ProcessState.STOPPED
        self._starting: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._stderr_buffer: list[str] = []
        self.spawn_count = 0

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def startup_stderr(self) -> str:
        return "".join(self._stderr_buffer)

    # ── Start ──

    async def ensure_started(self) -> None:
        """Spawn, initialize and log in once; later calls return at once."""
        if self._state is ProcessState.READY and self.is_running:
            return
        if self._starting is None:
            self._starting = asyncio.create_task(
                self._start(), name="codex-app-server-start",
            )
            self._starting.add_done_callback(self._clear_starting)
        # Shielded so one caller giving up does not abort the shared start.
        await asyncio.shield(self._starting)

    def _clear_starting(self, task: asyncio.Task) -> None:
        if self._starting is task:
            self._starting = None
        if not task.cancelled():
            # Marks the exception retrieved when every waiter went away.
            task.exception()

    async def _start(self) -> None:
        if self._process is not None:
            # Died but its exit has not been pumped yet.
            self._handle_exit(self._process, self._process.returncode)
        self._state = ProcessState.STARTING
        try:
            await self._spawn()
            await self._bootstrap()
        except BaseException as exc:
            logger.error("Codex app-server start failed: %s", exc)
            await self._abort()
            raise
        self._state = ProcessState.READY
        logger.info("Codex app-server ready (pid=%s)", self.pid)

    async def _spawn(self) -> None:
        cmd = [self._config.command, *self._config.command_args]
        self._stderr_buffer = []
        try:
            # Args passed as an array, no shell
            proc = await self._process_factory(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._config.build_env(),
                limit=_STDOUT_LIMIT,
            )
        except FileNotFoundError as exc:
            raise SpawnError(self._config.command, "executable not found on PATH") from exc
        except OSError as exc:
            raise SpawnError(self._config.command, str(exc)) from exc

        self._process = proc
        self.spawn_count += 1
        logger.info("Codex app-server started (pid=%s)", proc.pid)
        self._track(self._pump_stdout(proc), "codex-stdout")
        if proc.stderr is not None:
            self._track(self._pump_stderr(proc), "codex-stderr")

    def _track(self, coro: Awaitable[None], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _abort(self) -> None:
        """Tear down a half-started process and report it as exited."""
        proc, self._process = self._process, None
        self._state = ProcessState.STOPPED
        returncode = None
        if proc is not None:
            returncode = await self._terminate(proc)
        self._on_exit(returncode)

    # ── Pumps ──

    async def _pump_stdout(self, proc: Any) -> None:
        reader = proc.stdout
        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError:
                    # Oversized line; the reader already discarded it.
                    logger.warning("Dropping oversized line from app-server")
                    continue
                if not line:
                    break
                try:
                    await self._on_line(line)
                except Exception:
                    logger.exception("Error handling app-server line")
        finally:
            returncode = None
            try:
                returncode = await proc.wait()
            finally:
                self._handle_exit(proc, returncode)

    async def _pump_stderr(self, proc: Any) -> None:
        while True:
            chunk = await proc.stderr.read(_STDERR_CHUNK)
            if not chunk:
                return
            text = chunk.decode("utf-8", errors="replace")
            if proc is self._process:
                self._stderr_buffer.append(text)
                self._on_stderr(text)

    def _handle_exit(self, proc: Any, returncode: int | None) -> None:
        if proc is not self._process:
            return
        logger.info(
            "Codex app-server exited (pid=%s, rc=%s)", proc.pid, returncode,
        )
        self._process = None
        self._state = ProcessState.STOPPED
        self._on_exit(returncode)

    # ── Writing ──

    async def write(self, message: dict[str, Any]) -> None:
        proc = self._process
        if proc is None or proc.stdin is None:
            raise ProcessExitedError()
        try:
            proc.stdin.write(encode_message(message))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise ProcessExitedError(proc.returncode) from exc

    # ── Stop ──

    async def _terminate(self, proc: Any) -> int | None:
        if proc.returncode is not None:
            return proc.returncode
        try:
            proc.terminate()
            try:
                return await asyncio.wait_for(
                    proc.wait(), timeout=self._config.shutdown_grace_seconds,
                )
            except asyncio.TimeoutError:
                proc.kill()
                return await proc.wait()
        except ProcessLookupError:
            return proc.returncode

    async def stop(self) -> None:
        """Terminate the subprocess and report it as exited."""
        if self._starting is not None:
            self._starting.cancel()
        proc, self._process = self._process, None
        self._state = ProcessState.STOPPED
        if proc is None:
            return
        pid = proc.pid
        returncode = await self._terminate(proc)
        logger.info("Codex app-server stopped (pid=%s, rc=%s)", pid, returncode)
        self._on_exit(returncode)
        for task in list(self._tasks):
            task.cancel()
