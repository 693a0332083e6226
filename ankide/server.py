"""HTTP front for the Codex bridge.

Exposes the terminal panel's prompt endpoint. Every request goes
through the same CodexBridge, whose scheduler runs turns one at a time.

Endpoints:
    GET  /health      → {"status": "ok", "pid": ..., "codex": {...}}
    POST /api/codex   {"prompt": "...", "cwd": "..."}
                      → {"stdout", "stderr", "events", "code", "signal"}

Usage:
    ankide --server [--port PORT]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from pathlib import Path

from aiohttp import web

from ankide.engine.bridge import CodexBridge
from ankide.engine.config import ServerConfig
from ankide.engine.errors import BridgeError

logger = logging.getLogger(__name__)


class AnkideServer:
    """aiohttp application wrapping a single CodexBridge."""

    def __init__(
        self,
        bridge: CodexBridge,
        config: ServerConfig | None = None,
    ) -> None:
        self._bridge = bridge
        self._config = config or ServerConfig.from_env()
        self._started_at = time.time()
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.on_cleanup.append(self._on_cleanup)
        self._setup_routes()
        logger.info(
            "AnkideServer init host=%s port=%s workspace=%s pid=%s",
            self._config.host, self._config.port,
            self._config.workspace_root, os.getpid(),
        )

    @property
    def app(self) -> web.Application:
        return self._app

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-ankide-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_post("/api/codex", self._handle_codex)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Serve until cancelled, then shut the bridge down."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._config.host, self._config.port)
        await site.start()
        logger.info(
            "Anki IDE server listening on %s:%d",
            self._config.host, self._config.port,
        )
        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await runner.cleanup()

    async def _on_cleanup(self, app: web.Application) -> None:
        await self._bridge.shutdown()

    # ── Helpers ──

    def resolve_workspace_cwd(self, cwd: str | None) -> str:
        """Expand ~ and resolve against the workspace root.

        Raises ValueError when the result escapes the workspace root
        and outside paths are not allowed.
        """
        root = Path(self._config.workspace_root).resolve()
        target = (root / Path(cwd or str(root)).expanduser()).resolve()
        if self._config.allow_outside_workspace:
            return str(target)
        if target != root and root not in target.parents:
            raise ValueError("Path escapes workspace root")
        return str(target)

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "workspace_root": self._config.workspace_root,
            "codex": {
                "state": self._bridge.state,
                "pid": self._bridge.pid,
                "threads": len(self._bridge.thread_bindings),
            },
        })

    async def _handle_codex(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return web.json_response({"error": "Invalid JSON body"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"error": "Invalid JSON body"}, status=400)

        prompt = body.get("prompt")
        if not prompt:
            return web.json_response({"error": "prompt is required"}, status=400)
        try:
            cwd = self.resolve_workspace_cwd(body.get("cwd"))
        except ValueError as exc:
            return web.json_response({"error": str(exc)}, status=400)

        try:
            result = await self._bridge.run_turn(str(prompt), cwd)
            payload = result.to_dict()
        except BridgeError as exc:
            logger.warning(
                "Codex prompt failed req=%s: %s", request.get("req_id", "?"), exc,
            )
            payload = {
                "stdout": "",
                "stderr": str(exc),
                "events": list(getattr(exc, "events", None) or []),
            }
        payload["code"] = 0
        payload["signal"] = None
        return web.json_response(payload)
