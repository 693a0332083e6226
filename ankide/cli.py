"""CLI entry point.

Usage:
    ankide "Summarize this repository"
    ankide --cwd ~/code/project --prompt-file prompt.md
    ankide --server [--port 5179] [--config ankide.yaml]
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .engine.bridge import CodexBridge
from .engine.config import BridgeConfig, ServerConfig
from .engine.errors import BridgeError
from .engine.yaml_config import AnkideConfig, load_yaml_config


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="ankide",
        description="Anki IDE bridge to a long-running Codex app-server",
    )
    parser.add_argument(
        "prompt",
        nargs="?",
        default=None,
        help="Prompt to send (inline string)",
    )
    parser.add_argument(
        "--prompt-file", "-f",
        default=None,
        help="Read the prompt from a file (.md, .txt, etc.)",
    )
    parser.add_argument(
        "--cwd",
        default=None,
        help="Working directory for the Codex thread (default: current dir)",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file (codex: / server: sections)",
    )
    parser.add_argument(
        "--server",
        action="store_true",
        help="Serve POST /api/codex instead of running one prompt",
    )
    parser.add_argument(
        "--host",
        default=None,
        help="Server bind address (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Server port (default: $PORT or 5179)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    # Logging goes to stderr; stdout carries the agent output.
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    config = _load_config(args.config)
    if not args.verbose:
        logging.getLogger("ankide").setLevel(config.bridge.log_level.upper())
    if args.host is not None:
        config.server.host = args.host
    if args.port is not None:
        config.server.port = args.port

    if args.server:
        _serve(config)
        return

    prompt = _resolve_prompt(args.prompt, args.prompt_file)
    cwd = str(Path(args.cwd or ".").expanduser().resolve())
    try:
        exit_code = asyncio.run(_run_once(config.bridge, prompt, cwd))
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(1)
    sys.exit(exit_code)


def _load_config(path: str | None) -> AnkideConfig:
    if path:
        return load_yaml_config(path)
    return AnkideConfig(
        bridge=BridgeConfig.from_env(),
        server=ServerConfig.from_env(),
    )


async def _run_once(config: BridgeConfig, prompt: str, cwd: str) -> int:
    async with CodexBridge(config) as bridge:
        try:
            result = await bridge.run_turn(prompt, cwd)
        except BridgeError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1
    print(result.output)
    if result.diagnostics:
        print(result.diagnostics, file=sys.stderr)
    return 0


def _serve(config: AnkideConfig) -> None:
    from .server import AnkideServer

    server = AnkideServer(CodexBridge(config.bridge), config.server)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        pass


def _resolve_prompt(inline: str | None, file_path: str | None) -> str:
    """Get the prompt from inline arg or file. Exactly one must be provided."""
    if inline and file_path:
        print("Error: Provide either a prompt string or --prompt-file, not both.")
        sys.exit(1)

    if file_path:
        p = Path(file_path)
        if not p.is_file():
            print(f"Error: Prompt file not found: {file_path}")
            sys.exit(1)
        return p.read_text(encoding="utf-8").strip()

    if inline:
        return inline

    print("Error: Provide a prompt string, --prompt-file, or --server.")
    sys.exit(1)


if __name__ == "__main__":
    main()
