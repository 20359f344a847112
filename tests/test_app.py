"""Tests for the console front end."""

from __future__ import annotations

import io
import json
import logging
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Iterator

import pytest

from promptrelay import app
from promptrelay.ai.client import ChatReply, ChatStreamEvent, ClientSettings
from promptrelay.chat.commands import CommandRouter
from promptrelay.chat.prompter import Choice
from promptrelay.services.settings import Settings, SettingsStore


class _EchoClient:
    def __init__(self, settings: ClientSettings) -> None:
        self.settings = settings
        self.prompts: list[str] = []

    async def stream_message(self, prompt: str, *, continuation: Any = None, cancel_token: Any = None):
        del continuation, cancel_token
        self.prompts.append(prompt)
        yield ChatStreamEvent(type="content.delta", text="Hi", delta="Hi")
        yield ChatStreamEvent(type="content.delta", text="Hi there", delta=" there")
        reply = ChatReply(text="Hi there", message_id="m", parent_message_id=None, conversation_id="c")
        yield ChatStreamEvent(type="message.done", text=reply.text, reply=reply)

    async def aclose(self) -> None:
        return None


def _lines(*values: str) -> Any:
    iterator: Iterator[str] = iter(values)

    def _read(prompt: str) -> str:
        del prompt
        try:
            return next(iterator)
        except StopIteration as exc:
            raise EOFError from exc

    return _read


def test_console_view_prints_only_new_text() -> None:
    out, err = io.StringIO(), io.StringIO()
    view = app.ConsoleView(out, err)

    view.post_message({"type": "addResponse", "value": "Hel", "id": "1", "done": False})
    view.post_message({"type": "addResponse", "value": "Hello", "id": "1", "done": False})
    view.post_message({"type": "addResponse", "value": "Hello!", "id": "1", "done": True})
    view.post_message({"type": "addError", "value": "boom"})
    view.post_message({"type": "showInProgress", "inProgress": False})

    assert out.getvalue() == "Hello!\n"
    assert err.getvalue() == "Error: boom\n"
    assert view.error_count == 1


def test_configure_logging_keeps_stdout_for_answers(tmp_path: Path) -> None:
    out, err = io.StringIO(), io.StringIO()
    log_path = app.configure_logging(stderr=err)
    view = app.ConsoleView(out, err)

    view.post_message({"type": "addResponse", "value": "Answer", "id": "1", "done": True})
    view.post_message({"type": "addError", "value": "boom"})
    logging.getLogger("promptrelay.app").warning("settings file unreadable")

    assert log_path == tmp_path / "logs" / "promptrelay.log"
    assert out.getvalue() == "Answer\n"
    assert err.getvalue() == "Error: boom\npromptrelay: WARNING: settings file unreadable\n"


def test_cli_override_coercion() -> None:
    overrides = app._coerce_cli_overrides(
        ["max_tokens=256", "temperature=0.5", "show_notification=yes", "organization=none", "model=gpt-4"]
    )

    assert overrides == {
        "max_tokens": 256,
        "temperature": 0.5,
        "show_notification": True,
        "organization": None,
        "model": "gpt-4",
    }


@pytest.mark.parametrize("entry", ["missing-equals", "=value", "unknown=1", "auto_scroll=maybe"])
def test_cli_override_errors(entry: str) -> None:
    with pytest.raises(ValueError):
        app._coerce_cli_overrides([entry])


def test_invalid_override_exits_with_status_two(tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        app.main(["--settings-path", str(tmp_path / "settings.json"), "--set", "bogus=1", "--dump-settings"])

    assert excinfo.value.code == 2


def test_dump_settings_redacts_api_key(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = tmp_path / "settings.json"
    SettingsStore(path).save(Settings(api_key="sk-abcdef123"))

    exit_code = app.main(["--settings-path", str(path), "--model", "gpt-4", "--dump-settings"])

    output = json.loads(capsys.readouterr().out)
    assert exit_code == 0
    assert output["settings"]["api_key"] == "sk********23"
    assert output["settings"]["model"] == "gpt-4"
    assert output["meta"]["cli_overrides"] == ["model"]
    assert output["meta"]["path"] == str(path)


@pytest.mark.asyncio
async def test_run_ask_streams_answer() -> None:
    out, err = io.StringIO(), io.StringIO()
    view = app.ConsoleView(out, err)
    clients: list[_EchoClient] = []

    def _factory(settings: ClientSettings) -> _EchoClient:
        clients.append(_EchoClient(settings))
        return clients[-1]

    session = app.build_session(Settings(api_key="k"), view=view, client_factory=_factory)

    exit_code = await app.run_ask(session, view, "Say hi", code="x", language="py")

    assert exit_code == 0
    assert out.getvalue() == "Hi there\n"
    assert clients[0].prompts[0].startswith("Say hi (The following code is in py programming language): x")


@pytest.mark.asyncio
async def test_run_ask_without_key_fails() -> None:
    view = app.ConsoleView(io.StringIO(), io.StringIO())
    session = app.build_session(Settings(api_key=""), view=view, client_factory=_EchoClient)

    assert await app.run_ask(session, view, "Say hi") == 1


@pytest.mark.asyncio
async def test_run_chat_routes_lines_until_quit() -> None:
    out = io.StringIO()
    view = app.ConsoleView(out, io.StringIO())
    session = app.build_session(Settings(api_key="k"), view=view, client_factory=_EchoClient)
    router = CommandRouter(session, app.ConsoleHost(io.StringIO()))

    exit_code = await app.run_chat(session, router, read_line=_lines("Hello", "", "/clear", "/quit", "never"))

    assert exit_code == 0
    assert out.getvalue() == "Hi there\n"
    assert session.continuation.is_empty


@pytest.mark.asyncio
async def test_console_prompter_resolves_choices() -> None:
    stream = io.StringIO()
    prompter = app.ConsolePrompter(read_line=_lines("2"), read_secret=_lines(" sk-1 "), stream=stream)

    choice = await prompter.show_error("No key", Choice.STORE_IN_SESSION, Choice.OPEN_SETTINGS)
    secret = await prompter.ask_secret("Title", "Enter key", placeholder="API Key")

    assert choice == Choice.OPEN_SETTINGS
    assert secret == "sk-1"
    assert "[1] Store in session (Recommended)" in stream.getvalue()


@pytest.mark.asyncio
async def test_console_prompter_dismissed_on_eof() -> None:
    prompter = app.ConsolePrompter(read_line=_lines(), stream=io.StringIO())

    assert await prompter.show_info("Done", Choice.OPEN_CONVERSATION) is None
    assert await prompter.show_info("No choices") is None


def test_resolve_choice_accepts_labels_case_insensitively() -> None:
    choices = (Choice.CONTINUE_AND_COMBINE,)

    assert app._resolve_choice("continue and combine answers", choices) == Choice.CONTINUE_AND_COMBINE
    assert app._resolve_choice("5", choices) is None
    assert app._resolve_choice("", choices) is None


def test_main_runs_ask_subcommand(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    captured: dict[str, Any] = {}

    def _fake_run(session: Any, coro: Any) -> int:
        captured["session"] = session
        coro.close()
        return 0

    monkeypatch.setattr(app, "_run", _fake_run)
    monkeypatch.setattr(app.sys, "stdin", SimpleNamespace(isatty=lambda: False))

    exit_code = app.main(["--settings-path", str(tmp_path / "s.json"), "--set", "api_key=k", "ask", "hello", "world"])

    assert exit_code == 0
    assert captured["session"].config.api_key == "k"
