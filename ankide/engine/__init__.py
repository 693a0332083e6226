"""Codex app-server bridge: drives one long-running coding agent over stdio JSON-RPC."""
from .config import BridgeConfig
from .errors import (
    BridgeClosedError,
    BridgeError,
    InitializationTimeoutError,
    LoginRejectedError,
    LoginTimeoutError,
    MissingCredentialError,
    ProcessExitedError,
    RpcError,
    RpcTimeoutError,
    SpawnError,
    ThreadCreationError,
    TurnInProgressError,
    TurnTimeoutError,
)
from .router import TurnResult

__all__ = [
    # Bridge (lazy import)
    "CodexBridge",
    # Config
    "BridgeConfig",
    "load_yaml_config",
    # Results
    "TurnResult",
    # Errors
    "BridgeClosedError",
    "BridgeError",
    "InitializationTimeoutError",
    "LoginRejectedError",
    "LoginTimeoutError",
    "MissingCredentialError",
    "ProcessExitedError",
    "RpcError",
    "RpcTimeoutError",
    "SpawnError",
    "ThreadCreationError",
    "TurnInProgressError",
    "TurnTimeoutError",
]


def __getattr__(name: str):
    if name == "CodexBridge":
        from .bridge import CodexBridge
        return CodexBridge
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
