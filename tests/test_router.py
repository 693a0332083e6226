from __future__ import annotations

from typing import Any

import pytest

from ankide.engine.errors import (
    LoginRejectedError,
    LoginTimeoutError,
    ProcessExitedError,
    TurnInProgressError,
    TurnTimeoutError,
)
from ankide.engine.protocol import GenericNotification, ItemEvent, LoginCompleted, TurnCompleted
from ankide.engine.router import NotificationRouter


def _delta(text: str, turn_id: str | None = None) -> ItemEvent:
    params: dict[str, Any] = {"delta": {"text": text}}
    if turn_id:
        params["turnId"] = turn_id
    return ItemEvent("item/agentMessage/delta", params)


def _completed(turn_id: str | None = None) -> TurnCompleted:
    return TurnCompleted("turn/completed", {"turn": {"id": turn_id}} if turn_id else {})


@pytest.mark.asyncio
async def test_turn_accumulates_output_until_completed() -> None:
    router = NotificationRouter()
    turn = router.begin_turn(5.0)
    await router.bind_turn(turn, "turn-1")

    await router.route(_delta("Hello, ", "turn-1"))
    await router.route(_delta("world\n", "turn-1"))
    router.append_diagnostics("warn: slow disk\n")
    await router.route(_completed("turn-1"))

    result = await turn.future
    assert result.output == "Hello, world"
    assert result.diagnostics == "warn: slow disk"
    assert result.events == ["item: Hello,", "item: world", "turn/completed"]
    assert router.active_turn is None
    assert not turn.deadline.active


@pytest.mark.asyncio
async def test_other_turn_ids_are_ignored() -> None:
    router = NotificationRouter()
    turn = router.begin_turn(5.0)
    await router.bind_turn(turn, "turn-2")

    await router.route(_delta("stale", "turn-1"))
    await router.route(_completed("turn-1"))
    assert router.active_turn is turn
    assert turn.events == []

    # Untagged notifications belong to the active turn.
    await router.route(_delta("fresh"))
    await router.route(_completed("turn-2"))

    result = await turn.future
    assert result.output == "fresh"


@pytest.mark.asyncio
async def test_tagged_notifications_wait_for_turn_id() -> None:
    router = NotificationRouter()
    turn = router.begin_turn(5.0)

    # A previous turn keeps streaming while turn/start is unanswered.
    await router.route(_delta("STALE", "turn-1"))
    await router.route(_completed("turn-1"))
    await router.route(_delta("early ", "turn-2"))
    await router.route(_delta("untagged "))
    assert router.active_turn is turn
    assert turn.output == ["untagged "]

    await router.bind_turn(turn, "turn-2")
    assert router.active_turn is turn
    assert turn.held == []

    await router.route(_delta("late", "turn-2"))
    await router.route(_completed("turn-2"))
    result = await turn.future
    assert result.output == "untagged early late"
    assert "item: STALE" not in result.events


@pytest.mark.asyncio
async def test_bind_without_id_replays_everything_held() -> None:
    router = NotificationRouter()
    turn = router.begin_turn(5.0)

    await router.route(_delta("a", "turn-5"))
    await router.route(_completed("turn-5"))
    await router.route(_delta("ignored after completion", "turn-5"))
    await router.bind_turn(turn, None)

    result = await turn.future
    assert result.output == "a"
    assert router.active_turn is None


@pytest.mark.asyncio
async def test_notifications_without_turn_are_discarded() -> None:
    router = NotificationRouter()

    await router.route(_delta("orphan"))
    await router.route(_completed())
    router.append_diagnostics("noise")

    turn = router.begin_turn(5.0)
    await router.route(_completed())
    result = await turn.future
    assert result.output == ""
    assert result.diagnostics == ""


@pytest.mark.asyncio
async def test_second_turn_is_rejected_while_one_is_active() -> None:
    router = NotificationRouter()
    turn = router.begin_turn(5.0)

    with pytest.raises(TurnInProgressError):
        router.begin_turn(5.0)

    router.abandon_turn(turn)
    assert router.active_turn is None
    assert turn.future.cancelled()
    router.begin_turn(5.0)


@pytest.mark.asyncio
async def test_turn_timeout_carries_events() -> None:
    router = NotificationRouter()
    turn = router.begin_turn(0.05)

    await router.route(_delta("partial"))
    await router.route(GenericNotification("account/rateLimits/updated", {}))

    with pytest.raises(TurnTimeoutError) as exc_info:
        await turn.future
    assert exc_info.value.events == ["item: partial"]
    assert router.active_turn is None

    # A completion arriving after the timeout changes nothing.
    await router.route(_completed())
    assert router.active_turn is None


@pytest.mark.asyncio
async def test_login_completion_goes_to_waiter() -> None:
    router = NotificationRouter()
    turn = router.begin_turn(5.0)
    waiter = router.arm_login(5.0)
    assert router.login_pending

    await router.route(LoginCompleted("account/login/completed", {"success": True}))

    assert (await waiter) == {"success": True}
    assert not router.login_pending
    # Consumed by the waiter, not recorded on the turn.
    assert turn.events == []


@pytest.mark.asyncio
async def test_login_failure_and_timeout() -> None:
    router = NotificationRouter()

    waiter = router.arm_login(5.0)
    with pytest.raises(LoginRejectedError):
        router.arm_login(5.0)
    await router.route(LoginCompleted(
        "account/login/completed", {"success": False, "error": "invalid api key"},
    ))
    with pytest.raises(LoginRejectedError, match="invalid api key"):
        await waiter

    slow = router.arm_login(0.02)
    with pytest.raises(LoginTimeoutError):
        await slow
    assert not router.login_pending


@pytest.mark.asyncio
async def test_debug_summaries_reach_event_callback(caplog) -> None:
    seen: list[dict] = []

    async def callback(event: dict) -> None:
        seen.append(event)

    router = NotificationRouter(debug=True, event_callback=callback)
    turn = router.begin_turn(5.0)
    await router.bind_turn(turn, "turn-9")

    with caplog.at_level("INFO", logger="ankide.engine.router"):
        await router.route(GenericNotification("tool/call", {"name": "apply_patch"}))
        await router.route(_completed("turn-9"))
    await turn.future

    assert [e["summary"] for e in seen] == ["tool/call apply_patch", "turn/completed"]
    assert all(e["turn_id"] == "turn-9" for e in seen)
    assert "[codex] tool/call apply_patch" in caplog.text


@pytest.mark.asyncio
async def test_reject_all_fails_turn_and_login() -> None:
    router = NotificationRouter()
    turn = router.begin_turn(5.0)
    login = router.arm_login(5.0)

    router.reject_all(lambda: ProcessExitedError(137))

    with pytest.raises(ProcessExitedError):
        await turn.future
    with pytest.raises(ProcessExitedError, match="rc=137"):
        await login
    assert router.active_turn is None
    assert not router.login_pending
