"""Wire format for the Codex app-server.

Protocol: newline-delimited JSON over the subprocess's stdin/stdout.

Request:       {"method": "...", "id": N, "params": {...}}
Notification:  {"method": "...", "params": {...}}
Response:      {"id": N, "result": {...}}
Error:         {"id": N, "error": {"message": "..."}}

A server-initiated request (id and method) is parsed like a notification;
only id-without-method messages answer our requests.

parse_line() turns each stdout line into one of a closed set of
message variants. Anything that is not valid JSON, or is neither a
response nor a notification, parses to None and is dropped.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Union

logger = logging.getLogger(__name__)

LOGIN_COMPLETED = "account/login/completed"
TURN_COMPLETED = "turn/completed"
ITEM_PREFIX = "item/"

_SNIPPET_LIMIT = 120
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class Response:
    """Reply to a request we sent."""
    id: int
    result: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


@dataclass
class Notification:
    """Unsolicited message from the app-server."""
    method: str
    params: dict[str, Any] = field(default_factory=dict)

    @property
    def turn_id(self) -> str | None:
        return extract_turn_id(self.params)


@dataclass
class LoginCompleted(Notification):
    """account/login/completed"""

    @property
    def success(self) -> bool:
        return bool(self.params.get("success"))

    @property
    def error(self) -> str | None:
        error = self.params.get("error")
        return str(error) if error else None


@dataclass
class TurnCompleted(Notification):
    """turn/completed"""


@dataclass
class ItemEvent(Notification):
    """item/* events: produced items and streamed content deltas."""

    @property
    def text(self) -> str:
        return extract_text(self.params)


@dataclass
class GenericNotification(Notification):
    """Any other notification. Summarized at most, never acted on."""


Message = Union[Response, LoginCompleted, TurnCompleted, ItemEvent, GenericNotification]


def encode_message(message: dict[str, Any]) -> bytes:
    """Serialize one message to a single newline-terminated line."""
    return json.dumps(message, separators=(",", ":")).encode("utf-8") + b"\n"


def request(method: str, request_id: int, params: dict[str, Any]) -> dict[str, Any]:
    return {"method": method, "id": request_id, "params": params}


def notification(method: str, params: dict[str, Any]) -> dict[str, Any]:
    return {"method": method, "params": params}


def parse_line(line: bytes | str) -> Message | None:
    """Parse one stdout line. Returns None for protocol noise."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line:
        return None
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("Dropping non-JSON line from app-server: %r", line[:200])
        return None
    if not isinstance(data, dict):
        logger.debug("Dropping non-object message from app-server: %r", line[:200])
        return None

    msg_id = data.get("id")
    method = data.get("method")
    # bool is an int subclass; it is never a valid id. A message with a
    # method is server-initiated, never a reply to one of ours.
    if isinstance(msg_id, int) and not isinstance(msg_id, bool) and method is None:
        error = data.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            return Response(id=msg_id, error=message or "Codex error")
        result = data.get("result")
        return Response(id=msg_id, result=result if isinstance(result, dict) else {})

    if not isinstance(method, str) or not method:
        logger.debug("Dropping message with no id or method: %r", line[:200])
        return None
    params = data.get("params")
    if not isinstance(params, dict):
        params = {}
    if method == LOGIN_COMPLETED:
        return LoginCompleted(method, params)
    if method == TURN_COMPLETED:
        return TurnCompleted(method, params)
    if method.startswith(ITEM_PREFIX):
        return ItemEvent(method, params)
    return GenericNotification(method, params)


def extract_text(params: dict[str, Any] | None) -> str:
    """Pull the text payload out of an item/* notification."""
    if not params:
        return ""
    delta = params.get("delta")
    if isinstance(delta, dict) and isinstance(delta.get("text"), str):
        return delta["text"]
    item = params.get("item")
    if not isinstance(item, dict):
        return ""
    if isinstance(item.get("text"), str):
        return item["text"]
    content = item.get("content")
    if isinstance(content, list):
        return "".join(
            block.get("text") or ""
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        )
    return ""


def extract_turn_id(params: dict[str, Any] | None) -> str | None:
    """Turn id carried by a notification, in any of its spellings."""
    if not params:
        return None
    turn_id = params.get("turnId")
    if not turn_id:
        turn = params.get("turn")
        if isinstance(turn, dict):
            turn_id = turn.get("id")
    if not turn_id:
        turn_id = params.get("turn_id")
    return str(turn_id) if turn_id else None


def summarize_notification(message: Notification) -> str | None:
    """One-line summary for the turn event log, or None if uninteresting."""
    method = message.method
    if isinstance(message, TurnCompleted):
        return TURN_COMPLETED
    if isinstance(message, ItemEvent):
        text = message.text
        if not text:
            return "item: (non-text)"
        snippet = _WHITESPACE_RE.sub(" ", text).strip()
        if len(snippet) > _SNIPPET_LIMIT:
            snippet = snippet[:_SNIPPET_LIMIT - 3] + "…"
        return f"item: {snippet}"
    if method.startswith("tool/"):
        tool = message.params.get("tool")
        name = (
            (tool.get("name") if isinstance(tool, dict) else None)
            or message.params.get("name")
            or "tool"
        )
        return f"{method} {name}".strip()
    if method.startswith("thread/"):
        return method
    return None
