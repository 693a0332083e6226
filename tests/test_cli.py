from __future__ import annotations

import pytest

from ankide import cli
from ankide.engine.config import BridgeConfig
from ankide.engine.errors import LoginTimeoutError
from ankide.engine.router import TurnResult


def test_resolve_prompt_from_file(tmp_path) -> None:
    prompt_file = tmp_path / "prompt.md"
    prompt_file.write_text("  Make five cards.\n", encoding="utf-8")

    assert cli._resolve_prompt(None, str(prompt_file)) == "Make five cards."
    assert cli._resolve_prompt("inline", None) == "inline"


def test_resolve_prompt_requires_exactly_one(tmp_path) -> None:
    with pytest.raises(SystemExit):
        cli._resolve_prompt(None, None)
    with pytest.raises(SystemExit):
        cli._resolve_prompt("inline", str(tmp_path / "p.md"))
    with pytest.raises(SystemExit):
        cli._resolve_prompt(None, str(tmp_path / "missing.md"))


class _FakeBridge:
    outcome: object = None

    def __init__(self, config) -> None:
        self.config = config

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None

    async def run_turn(self, prompt: str, cwd: str) -> TurnResult:
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


@pytest.mark.asyncio
async def test_run_once_prints_output(monkeypatch, capsys) -> None:
    _FakeBridge.outcome = TurnResult(output="Front: Q", diagnostics="warn")
    monkeypatch.setattr(cli, "CodexBridge", _FakeBridge)

    code = await cli._run_once(BridgeConfig(), "hi", "/tmp")

    captured = capsys.readouterr()
    assert code == 0
    assert captured.out == "Front: Q\n"
    assert captured.err == "warn\n"


@pytest.mark.asyncio
async def test_run_once_reports_bridge_errors(monkeypatch, capsys) -> None:
    _FakeBridge.outcome = LoginTimeoutError(30.0)
    monkeypatch.setattr(cli, "CodexBridge", _FakeBridge)

    code = await cli._run_once(BridgeConfig(), "hi", "/tmp")

    assert code == 1
    assert "login timed out" in capsys.readouterr().err
