"""Interactive choices offered to the user outside the chat transcript."""

from __future__ import annotations

import logging
from typing import Protocol

LOGGER = logging.getLogger(__name__)


class Choice:
    """Button labels used by the session's recovery and follow-up offers."""

    STORE_IN_SESSION = "Store in session (Recommended)"
    OPEN_SETTINGS = "Open settings"
    CONTINUE_AND_COMBINE = "Continue and combine answers"
    CLEAR_AND_RETRY = "Clear conversation and retry"
    OPEN_CONVERSATION = "Open conversation"


class UserPrompter(Protocol):
    """Host-provided notification and input surface.

    Every method resolves to the chosen label (or entered value), or ``None``
    when the user dismissed it.
    """

    async def show_error(self, message: str, *choices: str) -> str | None:  # pragma: no cover - protocol stub
        ...

    async def show_info(self, message: str, *choices: str) -> str | None:  # pragma: no cover - protocol stub
        ...

    async def ask_secret(
        self,
        title: str,
        prompt: str,
        *,
        placeholder: str = "",
        value: str = "",
    ) -> str | None:  # pragma: no cover - protocol stub
        ...

    async def open_settings(self, query: str) -> None:  # pragma: no cover - protocol stub
        ...

    async def reveal_view(self) -> None:  # pragma: no cover - protocol stub
        ...


class NullPrompter:
    """Prompter that dismisses everything; used when no host UI is wired."""

    async def show_error(self, message: str, *choices: str) -> str | None:
        del message, choices
        return None

    async def show_info(self, message: str, *choices: str) -> str | None:
        del message, choices
        return None

    async def ask_secret(self, title: str, prompt: str, *, placeholder: str = "", value: str = "") -> str | None:
        del title, prompt, placeholder, value
        return None

    async def open_settings(self, query: str) -> None:
        LOGGER.debug("No host available to open settings (%s)", query)

    async def reveal_view(self) -> None:
        return None


__all__ = ["Choice", "NullPrompter", "UserPrompter"]
