"""Payloads exchanged with the UI surface.

Outbound messages are dataclasses rendered to the camelCase dictionaries the
view expects via ``to_payload()``. Inbound messages are parsed into
:class:`ViewCommand` instances by :func:`parse_view_message`.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict

LOGGER = logging.getLogger(__name__)


# =============================================================================
# Outbound (core -> view)
# =============================================================================


@dataclass(slots=True)
class ViewMessage:
    """Base class for every message posted to the view."""

    message_type: ClassVar[str] = ""

    def to_payload(self) -> Dict[str, Any]:  # pragma: no cover - overridden
        return {"type": self.message_type}


@dataclass(slots=True)
class ShowInProgress(ViewMessage):
    """Toggles the "thinking" indicator and the stop button."""

    message_type: ClassVar[str] = "showInProgress"

    in_progress: bool
    show_stop_button: bool | None = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.message_type, "inProgress": self.in_progress}
        if self.show_stop_button is not None:
            payload["showStopButton"] = self.show_stop_button
        return payload


@dataclass(slots=True)
class AddQuestion(ViewMessage):
    """Echoes the user's question (and any attached code) into the transcript."""

    message_type: ClassVar[str] = "addQuestion"

    value: str
    code: str | None = None
    auto_scroll: bool = True

    def to_payload(self) -> Dict[str, Any]:
        return {"type": self.message_type, "value": self.value, "code": self.code, "autoScroll": self.auto_scroll}


@dataclass(slots=True)
class AddResponse(ViewMessage):
    """Partial or final answer text.

    ``response_in_markdown`` is ``False`` for code-completion models so the
    view renders the text verbatim.
    """

    message_type: ClassVar[str] = "addResponse"

    value: str
    done: bool = False
    id: str | None = None
    auto_scroll: bool = True
    response_in_markdown: bool = True

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": self.message_type,
            "value": self.value,
            "done": self.done,
            "id": self.id,
            "autoScroll": self.auto_scroll,
            "responseInMarkdown": self.response_in_markdown,
        }


@dataclass(slots=True)
class AddError(ViewMessage):
    message_type: ClassVar[str] = "addError"

    value: str
    auto_scroll: bool = True

    def to_payload(self) -> Dict[str, Any]:
        return {"type": self.message_type, "value": self.value, "autoScroll": self.auto_scroll}


@dataclass(slots=True)
class LoginSuccessful(ViewMessage):
    message_type: ClassVar[str] = "loginSuccessful"

    show_conversations: bool = False

    def to_payload(self) -> Dict[str, Any]:
        return {"type": self.message_type, "showConversations": self.show_conversations}


# =============================================================================
# Inbound (view -> core)
# =============================================================================


class ViewCommandType(str, Enum):
    """Commands the view can send."""

    ADD_FREE_TEXT_QUESTION = "addFreeTextQuestion"
    EDIT_CODE = "editCode"
    OPEN_NEW = "openNew"
    CLEAR_CONVERSATION = "clearConversation"
    CLEAR_BROWSER = "clearBrowser"
    CLEAR_CLIENT = "cleargpt3"
    LOGIN = "login"
    OPEN_SETTINGS = "openSettings"
    OPEN_SETTINGS_PROMPT = "openSettingsPrompt"
    SHOW_CONVERSATION = "showConversation"
    STOP_GENERATING = "stopGenerating"


@dataclass(slots=True)
class ViewCommand:
    """Parsed representation of an inbound view message."""

    type: ViewCommandType
    value: Any = None
    language: str | None = None
    raw: Dict[str, Any] = field(default_factory=dict)


_COMMAND_TYPES = {member.value: member for member in ViewCommandType}


def parse_view_message(payload: Any) -> ViewCommand | None:
    """Parse ``payload`` into a :class:`ViewCommand`.

    Returns ``None`` (after logging) for non-mapping payloads and unknown
    command types; the view protocol is fire-and-forget.
    """

    if not isinstance(payload, Mapping):
        LOGGER.debug("Ignoring non-mapping view message of type %s", type(payload).__name__)
        return None
    raw_type = payload.get("type")
    command_type = _COMMAND_TYPES.get(str(raw_type)) if raw_type is not None else None
    if command_type is None:
        LOGGER.debug("Ignoring unknown view message type %r", raw_type)
        return None
    language = payload.get("language")
    return ViewCommand(
        type=command_type,
        value=payload.get("value"),
        language=str(language) if language else None,
        raw=dict(payload),
    )


__all__ = [
    "AddError",
    "AddQuestion",
    "AddResponse",
    "LoginSuccessful",
    "ShowInProgress",
    "ViewCommand",
    "ViewCommandType",
    "ViewMessage",
    "parse_view_message",
]
