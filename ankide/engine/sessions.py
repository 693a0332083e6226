"""Conversation threads per working directory.

One app-server thread per cwd string for the lifetime of the current
subprocess. The first turn on each thread is seeded with the system
guidance and, when available, the reference document.

thread_for() is only called from the turn scheduler's worker, so two
lookups for the same uncached cwd never interleave.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from .correlator import RequestCorrelator
from .errors import ThreadCreationError

logger = logging.getLogger(__name__)

REFERENCE_HEADER = "Anki Card Spec (follow strictly):"


class SeedContext:
    """System guidance plus the optional reference document."""

    def __init__(
        self,
        system_message: str,
        *,
        context_text: str = "",
        context_path: str | None = None,
    ) -> None:
        self.system_message = system_message
        self._context_text = context_text
        self._context_path = context_path
        self._missing_warned = False

    def reference_document(self) -> str:
        """Inline text wins; otherwise the file, re-read on each call."""
        if self._context_text.strip():
            return self._context_text.strip()
        if not self._context_path:
            return ""
        path = Path(self._context_path).expanduser()
        try:
            return path.read_text(encoding="utf-8").strip()
        except OSError:
            if not self._missing_warned:
                logger.warning("Codex context file not found: %s", path)
                self._missing_warned = True
            return ""

    def render(self) -> str:
        parts = [self.system_message.strip()]
        document = self.reference_document()
        if document:
            parts.append(f"{REFERENCE_HEADER}\n{document}")
        return "\n\n".join(parts)


class ThreadManager:
    """Maps cwd → thread id and tracks which threads were seeded."""

    def __init__(
        self,
        correlator: RequestCorrelator,
        seed: SeedContext,
        *,
        approval_policy: str = "never",
        sandbox: str = "workspace-write",
    ) -> None:
        self._correlator = correlator
        self._seed = seed
        self._approval_policy = approval_policy
        self._sandbox = sandbox
        self._threads: dict[str, str] = {}
        self._seeded: set[str] = set()

    @property
    def bindings(self) -> dict[str, str]:
        return dict(self._threads)

    def is_seeded(self, thread_id: str) -> bool:
        return thread_id in self._seeded

    async def thread_for(self, cwd: str) -> str:
        cached = self._threads.get(cwd)
        if cached:
            return cached
        result = await self._correlator.send("thread/start", {
            "cwd": cwd,
            "approvalPolicy": self._approval_policy,
            "sandbox": self._sandbox,
        })
        thread = result.get("thread")
        thread_id = thread.get("id") if isinstance(thread, dict) else None
        if not thread_id:
            raise ThreadCreationError(cwd)
        thread_id = str(thread_id)
        self._threads[cwd] = thread_id
        logger.info("Codex thread %s started for cwd=%s", thread_id, cwd)
        return thread_id

    def build_turn_input(self, prompt: str, thread_id: str) -> list[dict[str, Any]]:
        """Content items for turn/start; seeds the thread on first use."""
        items: list[dict[str, Any]] = []
        if thread_id not in self._seeded:
            items.append({"type": "text", "text": self._seed.render()})
            self._seeded.add(thread_id)
        items.append({"type": "text", "text": prompt})
        return items

    def clear(self) -> None:
        self._threads.clear()
        self._seeded.clear()
