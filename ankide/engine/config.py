"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via CODEX_* env vars.
Timeouts are given in milliseconds in the environment and stored in
seconds.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


# Optional async callback for real-time event observation.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]

# Appended to PATH so the executable is found from minimal environments
# (launchd, systemd units, IDE-spawned shells).
PATH_FALLBACK: tuple[str, ...] = (
    "/usr/local/bin",
    "/opt/homebrew/bin",
    "/usr/bin",
    "/bin",
    "/usr/sbin",
    "/sbin",
)

DEFAULT_SYSTEM_MESSAGE = "\n".join([
    "You are Codex running inside Anki IDE.",
    "Behave normally and answer user prompts.",
    "If the user asks about Anki, Anki cards, or AnkiConnect, follow the "
    "Anki Card Spec and include the connection steps:",
    "- Anki app running, AnkiConnect installed/enabled.",
    "- AnkiConnect uses http://127.0.0.1:8765 with JSON POST.",
    "- Use AnkiConnect API actions (e.g., deckNames, findNotes, notesInfo) "
    "rather than direct DB writes.",
])

DEFAULT_CONTEXT_PATH = os.path.join("~", ".ankide", "anki-card-spec.md")


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set, silently swallowing errors."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        pass  # Never let callback errors break the bridge


def _ms_env(name: str, default_seconds: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default_seconds
    return float(raw) / 1000.0


@dataclass
class BridgeConfig:
    """Codex app-server bridge configuration."""

    # Executable and arguments for the long-running agent process.
    command: str = "codex"
    command_args: list[str] = field(default_factory=lambda: ["app-server"])
    path_fallback: tuple[str, ...] = PATH_FALLBACK

    # Identity announced in the initialize handshake.
    client_name: str = "anki_ide"
    client_title: str = "Anki IDE"
    client_version: str = "0.1.0"

    # Wait bounds, in seconds.
    init_timeout_seconds: float = 30.0
    rpc_timeout_seconds: float = 10.0
    login_timeout_seconds: float = 30.0
    # A turn-start-and-run exchange can take a long time.
    turn_timeout_seconds: float = 1200.0
    # Grace period between terminate() and kill() on shutdown.
    shutdown_grace_seconds: float = 5.0

    # Passed verbatim into thread/start.
    approval_policy: str = "never"
    sandbox: str = "workspace-write"

    # Seed context prepended to the first turn on each thread.
    # context_text wins over context_path when non-blank.
    system_message: str = DEFAULT_SYSTEM_MESSAGE
    context_text: str = ""
    context_path: str | None = DEFAULT_CONTEXT_PATH

    # Env var holding the credential used when login is required.
    api_key_env: str = "OPENAI_API_KEY"

    # Log notification summaries (observability only).
    debug: bool = False
    log_level: str = "INFO"

    # Optional async callback for real-time event observation.
    # Receives dicts like {"event": "codex_notification", "summary": "..."}
    event_callback: EventCallback | None = field(default=None, repr=False)

    def build_env(self) -> dict[str, str]:
        """Subprocess environment with the fallback directories on PATH."""
        env = os.environ.copy()
        parts = [p for p in env.get("PATH", "").split(os.pathsep) if p]
        for directory in self.path_fallback:
            if directory not in parts:
                parts.append(directory)
        env["PATH"] = os.pathsep.join(parts)
        return env

    @classmethod
    def from_env(cls) -> BridgeConfig:
        """Load configuration from CODEX_* environment variables."""
        codex_vars = {
            k: v for k, v in os.environ.items()
            if k.startswith("CODEX_") and k != "CODEX_CONTEXT_TEXT"
        }
        if codex_vars:
            logger.info(
                "BridgeConfig.from_env: CODEX_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(codex_vars.items())),
            )
        else:
            logger.debug("BridgeConfig.from_env: no CODEX_* env vars set, using defaults")

        config = cls(
            command=os.getenv("CODEX_COMMAND", cls.command),
            init_timeout_seconds=_ms_env(
                "CODEX_INIT_TIMEOUT_MS", cls.init_timeout_seconds
            ),
            rpc_timeout_seconds=_ms_env(
                "CODEX_RPC_TIMEOUT_MS", cls.rpc_timeout_seconds
            ),
            login_timeout_seconds=_ms_env(
                "CODEX_LOGIN_TIMEOUT_MS", cls.login_timeout_seconds
            ),
            turn_timeout_seconds=_ms_env(
                "CODEX_TURN_TIMEOUT_MS", cls.turn_timeout_seconds
            ),
            approval_policy=os.getenv(
                "CODEX_APPROVAL_POLICY", cls.approval_policy
            ),
            sandbox=os.getenv("CODEX_SANDBOX", cls.sandbox),
            system_message=os.getenv(
                "CODEX_SYSTEM_MESSAGE", cls.system_message
            ),
            context_text=os.getenv("CODEX_CONTEXT_TEXT", ""),
            context_path=os.getenv(
                "CODEX_CONTEXT_PATH", cls.context_path or ""
            ) or None,
            debug=os.getenv("CODEX_DEBUG") == "1",
            log_level=os.getenv("ANKIDE_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "BridgeConfig.from_env: command=%s sandbox=%s approval=%s turn_timeout=%.0fs",
            config.command, config.sandbox, config.approval_policy,
            config.turn_timeout_seconds,
        )
        return config


@dataclass
class ServerConfig:
    """HTTP surface in front of the bridge."""

    host: str = "127.0.0.1"
    port: int = 5179
    # Default cwd for prompts; relative cwds resolve against it.
    workspace_root: str = field(default_factory=os.getcwd)
    # Accept cwds outside workspace_root.
    allow_outside_workspace: bool = False

    @classmethod
    def from_env(cls) -> ServerConfig:
        return cls(
            host=os.getenv("HOST", cls.host),
            port=int(os.getenv("PORT", str(cls.port))),
            workspace_root=os.getenv("WORKSPACE_ROOT") or os.getcwd(),
            allow_outside_workspace=(
                os.getenv("ALLOW_OUTSIDE_WORKSPACE", "").lower()
                in {"1", "true", "yes"}
            ),
        )
