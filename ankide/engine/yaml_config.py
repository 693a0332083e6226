"""YAML configuration loader.

Optional file layered on top of the environment: every key present in
the YAML wins over the corresponding env var, everything else keeps
its env/default value. Timeouts are given in seconds here.

Example YAML:
    codex:
      command: codex
      init_timeout_seconds: 30
      rpc_timeout_seconds: 10
      login_timeout_seconds: 30
      turn_timeout_seconds: 1200
      approval_policy: never
      sandbox: workspace-write
      context_path: ~/notes/anki-card-spec.md
      system_message: |
        You are Codex running inside Anki IDE.
      debug: false

    server:
      host: 127.0.0.1
      port: 5179
      workspace_root: ~/code
      allow_outside_workspace: false
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .config import BridgeConfig, ServerConfig

logger = logging.getLogger(__name__)

_FLOAT_KEYS = {
    "init_timeout_seconds",
    "rpc_timeout_seconds",
    "login_timeout_seconds",
    "turn_timeout_seconds",
    "shutdown_grace_seconds",
}
_BOOL_KEYS = {"debug", "allow_outside_workspace"}
_SKIP_KEYS = {"event_callback", "path_fallback"}


@dataclass
class AnkideConfig:
    """Complete parsed configuration."""
    bridge: BridgeConfig = field(default_factory=BridgeConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def _apply_section(target: Any, section: dict[str, Any], label: str) -> None:
    known = {f.name for f in fields(target)} - _SKIP_KEYS
    for key, value in section.items():
        if key not in known:
            logger.warning("load_yaml_config: ignoring unknown key %s.%s", label, key)
            continue
        if key in _FLOAT_KEYS:
            value = float(value)
        elif key in _BOOL_KEYS:
            value = bool(value)
        elif key == "port":
            value = int(value)
        elif key == "command_args":
            value = [str(v) for v in (value or [])]
        elif key in {"workspace_root", "context_path"} and value:
            value = os.path.expanduser(str(value))
        setattr(target, key, value)


def load_yaml_config(
    path: str | Path,
    *,
    base: AnkideConfig | None = None,
) -> AnkideConfig:
    """Load a YAML config file on top of ``base`` (env config by default)."""
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists()
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute()
        )
        raise
    except yaml.YAMLError as exc:
        logger.error(
            "load_yaml_config: YAML parse error in %s: %s",
            path, exc
        )
        raise
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    config = base or AnkideConfig(
        bridge=BridgeConfig.from_env(),
        server=ServerConfig.from_env(),
    )
    _apply_section(config.bridge, raw.get("codex") or {}, "codex")
    _apply_section(config.server, raw.get("server") or {}, "server")
    return config
