"""Shared fakes: an in-memory stand-in for `codex app-server`."""
from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

import pytest


class _FakeStdin:
    def __init__(self, process: "FakeProcess") -> None:
        self._process = process
        self._buffer = b""

    def write(self, data: bytes) -> None:
        self._buffer += data
        while b"\n" in self._buffer:
            line, self._buffer = self._buffer.split(b"\n", 1)
            self._process.receive(json.loads(line.decode("utf-8")))

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        return None


class FakeProcess:
    """Subprocess double: stdin is parsed, stdout/stderr are real StreamReaders."""

    def __init__(self, server: "FakeAppServer", pid: int) -> None:
        self._server = server
        self.pid = pid
        self.returncode: int | None = None
        self.stdin = _FakeStdin(self)
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.received: list[dict[str, Any]] = []
        self._exited = asyncio.Event()

    def receive(self, message: dict[str, Any]) -> None:
        self.received.append(message)
        self._server.handle(self, message)

    def send(self, message: dict[str, Any]) -> None:
        if self.returncode is None:
            self.stdout.feed_data(json.dumps(message).encode("utf-8") + b"\n")

    def send_raw(self, data: bytes) -> None:
        self.stdout.feed_data(data)

    def reply(self, request_id: int, result: dict[str, Any]) -> None:
        self.send({"id": request_id, "result": result})

    def notify(self, method: str, params: dict[str, Any]) -> None:
        self.send({"method": method, "params": params})

    def write_stderr(self, text: str) -> None:
        self.stderr.feed_data(text.encode("utf-8"))

    def exit(self, code: int = 0) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.exit(-15)

    def kill(self) -> None:
        self.exit(-9)

    def requests(self, method: str | None = None) -> list[dict[str, Any]]:
        return [
            m for m in self.received
            if "id" in m and (method is None or m.get("method") == method)
        ]


class FakeAppServer:
    """Scripted app-server. Pass ``factory`` as the bridge's process_factory."""

    def __init__(self) -> None:
        self.processes: list[FakeProcess] = []
        self.spawn_calls: list[tuple[tuple[str, ...], dict[str, Any]]] = []
        self.spawn_error: BaseException | None = None
        self.startup_stderr = ""
        self.respond_initialize = True
        self.requires_auth = False
        self.account: dict[str, Any] | None = None
        self.login_success = True
        self.login_error: str | None = None
        self.auto_complete_turns = True
        # When False, turn/start requests are recorded in unanswered_turns.
        self.answer_turn_start = True
        self.unanswered_turns: list[tuple[FakeProcess, int, str]] = []
        self.turn_output: Callable[[str], str] = lambda prompt: f"echo: {prompt}"
        self._thread_seq = 0
        self._turn_seq = 0

    async def factory(self, *cmd: str, **kwargs: Any) -> FakeProcess:
        self.spawn_calls.append((cmd, kwargs))
        if self.spawn_error is not None:
            raise self.spawn_error
        process = FakeProcess(self, pid=4000 + len(self.processes))
        self.processes.append(process)
        if self.startup_stderr:
            process.write_stderr(self.startup_stderr)
        return process

    @property
    def process(self) -> FakeProcess:
        return self.processes[-1]

    def all_requests(self, method: str) -> list[dict[str, Any]]:
        return [
            m for p in self.processes for m in p.requests(method)
        ]

    def handle(self, process: FakeProcess, message: dict[str, Any]) -> None:
        request_id = message.get("id")
        if request_id is None:
            return
        method = message.get("method")
        params = message.get("params") or {}
        if method == "initialize":
            if self.respond_initialize:
                process.reply(request_id, {"userAgent": "fake-codex/0.0"})
        elif method == "account/read":
            process.reply(request_id, {
                "requiresOpenaiAuth": self.requires_auth,
                "account": self.account,
            })
        elif method == "account/login/start":
            process.reply(request_id, {})
            process.notify("account/login/completed", {
                "success": self.login_success,
                "error": self.login_error,
            })
        elif method == "thread/start":
            self._thread_seq += 1
            process.reply(request_id, {"thread": {"id": f"thr-{self._thread_seq}"}})
        elif method == "turn/start":
            self._turn_seq += 1
            turn_id = f"turn-{self._turn_seq}"
            if not self.answer_turn_start:
                self.unanswered_turns.append((process, request_id, turn_id))
                return
            process.reply(request_id, {"turn": {"id": turn_id}})
            if self.auto_complete_turns:
                prompt = params["input"][-1]["text"]
                self.complete_turn(process, turn_id, self.turn_output(prompt))
        else:
            process.send({"id": request_id, "error": {"message": f"unknown method {method}"}})

    @staticmethod
    def complete_turn(process: FakeProcess, turn_id: str, text: str = "") -> None:
        if text:
            process.notify("item/agentMessage/delta", {
                "turnId": turn_id, "delta": {"text": text},
            })
        process.notify("turn/completed", {"turn": {"id": turn_id}})


async def _eventually(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the loop until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def app_server() -> FakeAppServer:
    return FakeAppServer()


@pytest.fixture
def eventually():
    return _eventually
