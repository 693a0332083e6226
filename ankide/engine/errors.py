"""Exception hierarchy for the Codex app-server bridge.

One exception per failure mode. Every failure reaches the caller of
CodexBridge.run_turn() as a subclass of BridgeError.
"""
from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all bridge errors."""


class SpawnError(BridgeError):
    """The app-server executable could not be launched."""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to launch '{command}': {reason}")


class RpcTimeoutError(BridgeError):
    """A request was never answered."""
    def __init__(self, method: str, timeout_seconds: float):
        self.method = method
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Codex app-server timeout on {method} "
            f"after {timeout_seconds}s"
        )


class InitializationTimeoutError(RpcTimeoutError):
    """The initialize handshake did not complete.

    Carries whatever the subprocess wrote to stderr before the deadline.
    """
    def __init__(self, timeout_seconds: float, stderr: str = ""):
        super().__init__("initialize", timeout_seconds)
        self.stderr = stderr
        if stderr:
            self.args = (f"{self.args[0]}. Stderr: {stderr}",)


class RpcError(BridgeError):
    """The app-server answered a request with an error payload."""
    def __init__(self, method: str, message: str):
        self.method = method
        self.message = message
        super().__init__(message or "Codex error")


class MissingCredentialError(BridgeError):
    """Login is required but no credential is configured."""
    def __init__(self, env_var: str):
        self.env_var = env_var
        super().__init__(
            f"{env_var} is not set. Codex app-server requires authentication."
        )


class LoginTimeoutError(BridgeError):
    """No login completion notification arrived in time."""
    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Codex login timed out after {timeout_seconds}s")


class LoginRejectedError(BridgeError):
    """The app-server reported a failed login."""
    def __init__(self, reason: str | None = None):
        self.reason = reason
        super().__init__(reason or "Codex login failed.")


class ThreadCreationError(BridgeError):
    """thread/start returned no thread id."""
    def __init__(self, cwd: str):
        self.cwd = cwd
        super().__init__(
            f"Codex app-server did not return a thread id (cwd={cwd})"
        )


class TurnInProgressError(BridgeError):
    """A second turn was registered while one is still active."""
    def __init__(self) -> None:
        super().__init__("Codex turn already in progress.")


class TurnTimeoutError(BridgeError):
    """No turn completion notification arrived in time."""
    def __init__(self, timeout_seconds: float, events: list[str] | None = None):
        self.timeout_seconds = timeout_seconds
        self.events = list(events or [])
        super().__init__(
            f"Codex turn timed out after {timeout_seconds}s"
        )


class ProcessExitedError(BridgeError):
    """The app-server exited while work was outstanding."""
    def __init__(self, returncode: int | None = None):
        self.returncode = returncode
        suffix = f" (rc={returncode})" if returncode is not None else ""
        super().__init__(f"Codex app-server exited{suffix}.")


class BridgeClosedError(BridgeError):
    """The bridge was shut down before the request could run."""
    def __init__(self) -> None:
        super().__init__("Codex bridge is shut down.")
