"""Prompt text helpers shared by the session and its front ends."""

from __future__ import annotations

import secrets
import string

SYSTEM_CONTEXT = "You are ChatGPT, helping the user with programming questions."
CONTINUE_PROMPT = "Continue"
CODE_FENCE = "```"
FENCE_CLOSER = " \r\n ```\r\n"

_ID_ALPHABET = string.ascii_letters + string.digits
_ID_LENGTH = 32


def build_question(prompt: str, code: str | None = None, language: str | None = None) -> str:
    """Return the text actually sent to the model for ``prompt``.

    Selected code is appended after a colon, optionally preceded by a note
    naming its language.
    """

    question = prompt
    if code is not None:
        language_note = f" (The following code is in {language} programming language)" if language else ""
        question = f"{question}{language_note}: {code}"
    return question + "\r\n"


def count_fences(text: str) -> int:
    return text.count(CODE_FENCE)


def has_open_fence(text: str) -> bool:
    """``True`` when ``text`` stops inside a code block (odd fence count).

    Textual approximation: fences quoted inside strings count too.
    """

    return count_fences(text) % 2 == 1


def close_open_fence(text: str) -> str:
    return text + FENCE_CLOSER


def new_request_id() -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(_ID_LENGTH))


__all__ = [
    "CODE_FENCE",
    "CONTINUE_PROMPT",
    "FENCE_CLOSER",
    "SYSTEM_CONTEXT",
    "build_question",
    "close_open_fence",
    "count_fences",
    "has_open_fence",
    "new_request_id",
]
