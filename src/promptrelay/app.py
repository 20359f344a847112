"""Console front end for the promptrelay chat session."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import getpass
import json
import logging
import os
import signal
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.client import create_chat_client
from .chat.commands import CommandRouter
from .chat.prompter import NullPrompter, UserPrompter
from .chat.session import ClientFactory, ConversationSession
from .chat.view_bridge import ViewBridge
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils
from .utils.telemetry import TelemetryClient, telemetry_enabled

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_LOGGER = logging.getLogger(__name__)

# Chat loop shortcuts mapped to the view commands they stand for.
_CHAT_COMMANDS: Mapping[str, Dict[str, Any]] = {
    "/clear": {"type": "clearConversation"},
    "/login": {"type": "login"},
    "/settings": {"type": "openSettings"},
    "/stop": {"type": "stopGenerating"},
    "/new-client": {"type": "cleargpt3"},
}
_QUIT_COMMANDS = {"/quit", "/exit"}


class ConsoleView:
    """View sink that renders the transcript on a terminal.

    Partial answers repeat the whole text so far; only the new suffix is
    written.
    """

    def __init__(self, stream: TextIO | None = None, error_stream: TextIO | None = None) -> None:
        self._stream = stream or sys.stdout
        self._errors = error_stream or sys.stderr
        self._printed: Dict[Any, str] = {}
        self.error_count = 0

    def post_message(self, payload: Mapping[str, Any]) -> None:
        kind = payload.get("type")
        if kind == "addResponse":
            self._render_response(payload)
        elif kind == "addError":
            self.error_count += 1
            self._errors.write(f"Error: {payload.get('value', '')}\n")
            self._errors.flush()
        else:
            _LOGGER.debug("Console view ignoring %s", kind)

    def _render_response(self, payload: Mapping[str, Any]) -> None:
        key = payload.get("id")
        value = str(payload.get("value") or "")
        printed = self._printed.get(key, "")
        if value.startswith(printed):
            self._stream.write(value[len(printed):])
        else:
            self._stream.write("\n" + value)
        if payload.get("done"):
            self._stream.write("\n")
            self._printed.pop(key, None)
        else:
            self._printed[key] = value
        self._stream.flush()


class ConsolePrompter:
    """Prompter that asks on the terminal; blocking reads run in an executor."""

    def __init__(
        self,
        *,
        read_line: Callable[[str], str] = input,
        read_secret: Callable[[str], str] = getpass.getpass,
        stream: TextIO | None = None,
        settings_path: Path | None = None,
    ) -> None:
        self._read_line = read_line
        self._read_secret = read_secret
        self._stream = stream or sys.stderr
        self._settings_path = settings_path

    async def show_error(self, message: str, *choices: str) -> str | None:
        return await self._choose(f"Error: {message}", choices)

    async def show_info(self, message: str, *choices: str) -> str | None:
        return await self._choose(message, choices)

    async def ask_secret(self, title: str, prompt: str, *, placeholder: str = "", value: str = "") -> str | None:
        del value
        self._write(f"{title}\n{prompt}\n")
        answer = await _read_in_executor(self._read_secret, f"{placeholder or 'Value'}: ")
        return answer.strip() if answer else None

    async def open_settings(self, query: str) -> None:
        location = self._settings_path or "the settings file"
        self._write(f"Edit {location} (or use --set) to change '{query}'.\n")

    async def reveal_view(self) -> None:
        return None

    async def _choose(self, message: str, choices: Sequence[str]) -> str | None:
        self._write(f"{message}\n")
        if not choices:
            return None
        for index, choice in enumerate(choices, start=1):
            self._write(f"  [{index}] {choice}\n")
        answer = await _read_in_executor(self._read_line, "Select an option (Enter to dismiss): ")
        if answer is None:
            return None
        return _resolve_choice(answer.strip(), choices)

    def _write(self, text: str) -> None:
        self._stream.write(text)
        self._stream.flush()


class ConsoleHost:
    """Host actions for a terminal: code is printed instead of inserted."""

    def __init__(self, stream: TextIO | None = None, settings_path: Path | None = None) -> None:
        self._stream = stream or sys.stdout
        self._settings_path = settings_path

    async def insert_snippet(self, snippet: str) -> None:
        self._stream.write(f"{snippet}\n")

    async def open_document(self, content: str, language: str | None = None) -> None:
        header = f"--- {language} ---" if language else "---"
        self._stream.write(f"{header}\n{content}\n---\n")

    async def open_settings(self, query: str) -> None:
        location = self._settings_path or "the settings file"
        self._stream.write(f"Edit {location} (or use --set) to change '{query}'.\n")


def _resolve_choice(answer: str, choices: Sequence[str]) -> str | None:
    if not answer:
        return None
    if answer.isdigit():
        index = int(answer) - 1
        return choices[index] if 0 <= index < len(choices) else None
    for choice in choices:
        if choice.lower() == answer.lower():
            return choice
    return None


async def _read_in_executor(reader: Callable[[str], str], prompt: str) -> str | None:
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, reader, prompt)
    except EOFError:
        return None


def configure_logging(debug: bool = False, *, stderr: TextIO | None = None) -> Path:
    """Send diagnostics to the log file and stderr, leaving stdout to answers."""

    level = logging.DEBUG if debug else logging.INFO
    log_path = logging_utils.install_handlers(level, stderr=stderr)
    _LOGGER.debug("Logging to %s (level=%s)", log_path, logging.getLevelName(level))
    return log_path


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except Exception as exc:  # pragma: no cover - unreadable settings directory
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def build_session(
    settings: Settings,
    *,
    view: ConsoleView | None = None,
    prompter: UserPrompter | None = None,
    telemetry: TelemetryClient | None = None,
    client_factory: ClientFactory = create_chat_client,
) -> ConversationSession:
    """Wire a session to a console view."""

    return ConversationSession(
        settings.session_config(),
        bridge=ViewBridge(view or ConsoleView()),
        prompter=prompter or NullPrompter(),
        client_factory=client_factory,
        telemetry=telemetry or TelemetryClient(enabled=telemetry_enabled(settings)),
    )


async def run_ask(
    session: ConversationSession,
    view: ConsoleView,
    prompt: str,
    *,
    code: str | None = None,
    language: str | None = None,
) -> int:
    """Send one prompt and wait for the answer and any follow-ups."""

    if not await session.prepare_conversation():
        await session.wait_for_background()
        if not session.state.resolved_api_key():
            return 1
    await session.send_request(prompt, code=code, language=language, command="ask")
    await session.wait_for_background()
    return 1 if view.error_count else 0


async def run_chat(
    session: ConversationSession,
    router: CommandRouter,
    *,
    read_line: Callable[[str], str] = input,
) -> int:
    """Interactive loop; Ctrl-D or ``/quit`` leaves it."""

    await router.handle({"type": "login"})
    await session.wait_for_background()
    while True:
        line = await _read_in_executor(read_line, "you> ")
        if line is None:
            break
        text = line.strip()
        if not text:
            continue
        if text in _QUIT_COMMANDS:
            break
        if text == "/reset":
            session.reset_session()
            continue
        payload = _CHAT_COMMANDS.get(text) or {"type": "addFreeTextQuestion", "value": text}
        await router.handle(payload)
        await router.drain()
        await session.wait_for_background()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the `promptrelay` console script."""

    parser = _build_parser()
    args = parser.parse_args(argv)

    debug = _env_flag("PROMPTRELAY_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("PROMPTRELAY_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc
    if args.model:
        cli_overrides["model"] = args.model

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return 0

    if settings.debug_logging and not debug:
        configure_logging(True)

    view = ConsoleView()
    interactive = sys.stdin.isatty()
    prompter: UserPrompter = ConsolePrompter(settings_path=settings_store.path) if interactive else NullPrompter()
    session = build_session(settings, view=view, prompter=prompter)

    if (args.command or "chat") == "ask":
        code = _read_code(args.code_file)
        return _run(session, run_ask(session, view, " ".join(args.prompt), code=code, language=args.language))

    router = CommandRouter(session, ConsoleHost(settings_path=settings_store.path))
    return _run(session, run_chat(session, router))


def _run(session: ConversationSession, coro: Any) -> int:
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    _install_interrupt_handler(loop, session)
    try:
        return loop.run_until_complete(coro)
    except KeyboardInterrupt:  # pragma: no cover - platforms without signal handlers
        _LOGGER.info("Shutdown requested by user.")
        session.stop()
        return 130
    finally:
        with contextlib.suppress(RuntimeError):
            loop.run_until_complete(session.aclose())
        _drain_event_loop(loop)
        loop.close()


def _install_interrupt_handler(loop: asyncio.AbstractEventLoop, session: ConversationSession) -> None:
    def _on_interrupt() -> None:
        if session.in_progress:
            session.stop()
        else:
            print("\nPress Ctrl-D or type /quit to leave.", file=sys.stderr)

    with contextlib.suppress(NotImplementedError, RuntimeError):
        loop.add_signal_handler(signal.SIGINT, _on_interrupt)


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _drain_event_loop(loop: asyncio.AbstractEventLoop) -> None:
    """Cancel outstanding tasks and shutdown async machinery before closing."""

    if loop.is_closed():
        return

    async def _cleanup() -> None:
        current_task = asyncio.current_task(loop=loop)
        tasks = [task for task in asyncio.all_tasks(loop) if not task.done() and task is not current_task]
        if tasks:
            _LOGGER.debug("Canceling %s pending asyncio task(s) before shutdown.", len(tasks))
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        with contextlib.suppress(RuntimeError, NotImplementedError):
            await loop.shutdown_asyncgens()

    try:
        loop.run_until_complete(_cleanup())
    except RuntimeError as exc:  # pragma: no cover - loop already stopping
        _LOGGER.debug("Unable to drain asyncio loop: %s", exc)


def _read_code(path: str | None) -> str | None:
    if not path:
        return None
    return Path(path).expanduser().read_text(encoding="utf-8")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="promptrelay",
        description="Relay prompts to OpenAI models and stream the answers to the terminal.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.promptrelay/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
    )
    parser.add_argument("--model", help="Model to use for this run.")
    subparsers = parser.add_subparsers(dest="command")

    ask = subparsers.add_parser("ask", help="Send one prompt and print the answer.")
    ask.add_argument("prompt", nargs="+", help="Prompt text.")
    ask.add_argument("--code-file", metavar="PATH", help="Attach the contents of a file as code.")
    ask.add_argument("--language", help="Language of the attached code.")

    subparsers.add_parser("chat", help="Start an interactive conversation (default).")
    return parser


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        annotation = type_hints.get(key, fields[key].type)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    optional = type(None) in get_args(annotation)
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if optional and normalized.lower() in {"none", "null"}:
        return None
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    if get_origin(annotation) is None:
        return annotation
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    return args[0] if args else annotation


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = redact_secret(payload.get("api_key") or "")
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("PROMPTRELAY_"))


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
