"""Dispatch of inbound view commands to the session and the host."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Protocol

from .messages import ViewCommand, ViewCommandType, parse_view_message
from .session import ConversationSession

LOGGER = logging.getLogger(__name__)

_SETTINGS_QUERY = "promptrelay"
_PROMPT_SETTINGS_QUERY = "promptrelay.promptPrefix"


class HostActions(Protocol):
    """Editor-side actions the view can request."""

    async def insert_snippet(self, snippet: str) -> None:  # pragma: no cover - protocol stub
        ...

    async def open_document(self, content: str, language: str | None = None) -> None:  # pragma: no cover
        ...

    async def open_settings(self, query: str) -> None:  # pragma: no cover - protocol stub
        ...


class NullHost:
    """Host used when nothing can insert code or open documents."""

    async def insert_snippet(self, snippet: str) -> None:
        LOGGER.debug("No host to insert a %d character snippet", len(snippet))

    async def open_document(self, content: str, language: str | None = None) -> None:
        LOGGER.debug("No host to open a %s document (%d characters)", language or "plain", len(content))

    async def open_settings(self, query: str) -> None:
        LOGGER.debug("No host to open settings (%s)", query)


def escape_snippet(code: str) -> str:
    """Escape ``$`` so snippet placeholders in answers are inserted literally."""

    return code.replace("$", "\\$")


class CommandRouter:
    """Routes view commands; unknown or malformed payloads are ignored."""

    def __init__(self, session: ConversationSession, host: HostActions | None = None) -> None:
        self._session = session
        self._host: HostActions = host or NullHost()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._handlers: Dict[ViewCommandType, Callable[[ViewCommand], Awaitable[None]]] = {
            ViewCommandType.ADD_FREE_TEXT_QUESTION: self._on_free_text_question,
            ViewCommandType.EDIT_CODE: self._on_edit_code,
            ViewCommandType.OPEN_NEW: self._on_open_new,
            ViewCommandType.CLEAR_CONVERSATION: self._on_clear_conversation,
            ViewCommandType.CLEAR_CLIENT: self._on_clear_client,
            ViewCommandType.LOGIN: self._on_login,
            ViewCommandType.OPEN_SETTINGS: self._on_open_settings,
            ViewCommandType.OPEN_SETTINGS_PROMPT: self._on_open_settings_prompt,
            ViewCommandType.STOP_GENERATING: self._on_stop_generating,
        }

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def handle(self, payload: Mapping[str, Any] | ViewCommand) -> bool:
        """Handle one inbound message; returns ``False`` when it was ignored."""

        command = payload if isinstance(payload, ViewCommand) else parse_view_message(payload)
        if command is None:
            return False
        handler = self._handlers.get(command.type)
        if handler is None:
            LOGGER.debug("No handler registered for %s", command.type.value)
            return False
        await handler(command)
        return True

    async def drain(self) -> None:
        """Wait for questions dispatched by :meth:`handle` to finish."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _on_free_text_question(self, command: ViewCommand) -> None:
        prompt = str(command.value or "")
        task = asyncio.ensure_future(self._session.send_request(prompt, command="freeText"))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _on_edit_code(self, command: ViewCommand) -> None:
        await self._host.insert_snippet(escape_snippet(str(command.value or "")))
        self._session.log_event("code-inserted")

    async def _on_open_new(self, command: ViewCommand) -> None:
        await self._host.open_document(str(command.value or ""), command.language)
        self._session.log_event(
            "code-exported" if command.language == "markdown" else "code-opened",
            {"language": command.language or ""},
        )

    async def _on_clear_conversation(self, command: ViewCommand) -> None:
        del command
        self._session.clear_conversation()

    async def _on_clear_client(self, command: ViewCommand) -> None:
        del command
        self._session.clear_client()

    async def _on_login(self, command: ViewCommand) -> None:
        del command
        await self._session.prepare_conversation()

    async def _on_open_settings(self, command: ViewCommand) -> None:
        del command
        await self._host.open_settings(_SETTINGS_QUERY)
        self._session.log_event("settings-opened")

    async def _on_open_settings_prompt(self, command: ViewCommand) -> None:
        del command
        await self._host.open_settings(_PROMPT_SETTINGS_QUERY)
        self._session.log_event("settings-prompt-opened")

    async def _on_stop_generating(self, command: ViewCommand) -> None:
        del command
        self._session.stop()


__all__ = ["CommandRouter", "HostActions", "NullHost", "escape_snippet"]
