"""Error taxonomy for chat requests and the user-facing message table.

Every failure a request can hit is normalized into a :class:`ChatError`
subclass by :func:`classify_error`. The session turns that error into a single
human-readable string via :func:`describe_error`; none of these errors are
retried automatically.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar

import httpx
from openai import APIConnectionError, APIStatusError

__all__ = [
    "ErrorCode",
    "ChatError",
    "ConfigError",
    "TransportError",
    "ClientIncompatibleError",
    "UnauthorizedError",
    "ForbiddenError",
    "RateLimitedError",
    "ServerError",
    "UnknownError",
    "RequestCancelledError",
    "MISSING_API_KEY",
    "classify_error",
    "describe_error",
    "offers_clear_and_retry",
]

MISSING_API_KEY = "MissingApiKey"
_ERROR_CODES_DOC = "https://platform.openai.com/docs/guides/error-codes"


class ErrorCode:
    """Constants for machine-readable error codes."""

    CONFIG = "config_error"
    TRANSPORT = "transport_error"
    CLIENT_INCOMPATIBLE = "client_incompatible"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    UNKNOWN = "unknown_error"
    CANCELLED = "request_cancelled"


@dataclass
class ChatError(Exception):
    """Base exception for every terminal request failure.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Short description used in logs.
        status: HTTP status code when the failure came from a response.
        api_message: Raw message reported by the provider, if any.
    """

    error_code: str = ErrorCode.UNKNOWN
    message: str = "Request failed"
    status: int | None = None
    api_message: str | None = None

    retryable_after_clear: ClassVar[bool] = False

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"error": self.error_code, "message": self.message}
        if self.status is not None:
            result["status"] = self.status
        if self.api_message:
            result["api_message"] = self.api_message
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


@dataclass
class ConfigError(ChatError):
    """The session cannot build a client from its configuration."""

    error_code: str = field(default=ErrorCode.CONFIG)
    message: str = field(default="No API key is configured")
    reason: str = field(default=MISSING_API_KEY)


@dataclass
class TransportError(ChatError):
    """HTTP failure whose status has no dedicated entry in the message table."""

    error_code: str = field(default=ErrorCode.TRANSPORT)
    message: str = field(default="The API returned an unexpected HTTP status")
    status_text: str = field(default="")

    retryable_after_clear: ClassVar[bool] = True


@dataclass
class ClientIncompatibleError(ChatError):
    """400 / 404: the model, method or parameters do not fit together."""

    error_code: str = field(default=ErrorCode.CLIENT_INCOMPATIBLE)
    message: str = field(default="Model and method may be incompatible")


@dataclass
class UnauthorizedError(ChatError):
    error_code: str = field(default=ErrorCode.UNAUTHORIZED)
    message: str = field(default="Unauthorized")
    status: int | None = field(default=401)


@dataclass
class ForbiddenError(ChatError):
    error_code: str = field(default=ErrorCode.FORBIDDEN)
    message: str = field(default="Forbidden")
    status: int | None = field(default=403)


@dataclass
class RateLimitedError(ChatError):
    error_code: str = field(default=ErrorCode.RATE_LIMITED)
    message: str = field(default="Too many requests")
    status: int | None = field(default=429)


@dataclass
class ServerError(ChatError):
    error_code: str = field(default=ErrorCode.SERVER_ERROR)
    message: str = field(default="Internal server error")
    status: int | None = field(default=500)


@dataclass
class UnknownError(ChatError):
    """Anything without a usable HTTP status (connection resets, bugs, ...)."""

    error_code: str = field(default=ErrorCode.UNKNOWN)
    message: str = field(default="Unknown error")


@dataclass
class RequestCancelledError(ChatError):
    """Raised by clients when the cancel token fired mid-stream.

    Not a failure from the user's point of view: the session publishes the
    partial answer instead of an error.
    """

    error_code: str = field(default=ErrorCode.CANCELLED)
    message: str = field(default="Request cancelled")


_STATUS_ERRORS: dict[int, type[ChatError]] = {
    400: ClientIncompatibleError,
    401: UnauthorizedError,
    403: ForbiddenError,
    404: ClientIncompatibleError,
    429: RateLimitedError,
    500: ServerError,
}


def classify_error(exc: BaseException) -> ChatError:
    """Normalize any exception raised during a request into a :class:`ChatError`."""

    if isinstance(exc, ChatError):
        return exc

    api_message = _extract_api_message(exc)
    status, status_text = _extract_status(exc)
    if status is None:
        return UnknownError(message=api_message or type(exc).__name__, api_message=api_message)

    error_type = _STATUS_ERRORS.get(status)
    if error_type is None:
        return TransportError(
            message=f"HTTP {status} {status_text}".strip(),
            status=status,
            status_text=status_text,
            api_message=api_message,
        )
    return error_type(status=status, api_message=api_message)


def describe_error(error: ChatError, *, method: str | None = None, model: str | None = None) -> str:
    """Return the text shown to the user for ``error``."""

    method_label = method or "unknown"
    model_label = model or "unknown"
    base: str | None
    if isinstance(error, ConfigError):
        base = (
            "Please add your API Key to use OpenAI official APIs. Storing the API Key in settings is "
            "discouraged due to security reasons, though you can still opt-in to persist it there. "
            "Instead you can also temporarily set the API Key for this session only."
        )
    elif isinstance(error, TransportError):
        base = f"{error.status or ''} {error.status_text or ''}".strip()
    elif isinstance(error, ClientIncompatibleError) and error.status == 404:
        base = (
            f"Your method: '{method_label}' and your model: '{model_label}' may be incompatible or you may "
            "have exhausted your ChatGPT subscription allowance. (HTTP 404 Not Found)"
        )
    elif isinstance(error, ClientIncompatibleError):
        base = (
            f"Your method: '{method_label}' and your model: '{model_label}' may be incompatible or one of "
            "your parameters is unknown. Reset your settings to default. (HTTP 400 Bad Request)"
        )
    elif isinstance(error, UnauthorizedError):
        base = (
            "Make sure you are properly signed in. If you stored your API key in settings, make sure it is "
            "accurate. If you stored the API key in session, you can reset it with the reset session "
            "command. (HTTP 401 Unauthorized) Potential reasons: \r\n- 1.Invalid Authentication\r\n"
            "- 2.Incorrect API key provided.\r\n- 3.Incorrect Organization provided. \r\n "
            f"See {_ERROR_CODES_DOC} for more details."
        )
    elif isinstance(error, ForbiddenError):
        base = "Your token has expired. Please try authenticating again. (HTTP 403 Forbidden)"
    elif isinstance(error, RateLimitedError):
        base = (
            "Too many requests try again later. (HTTP 429 Too Many Requests) Potential reasons: \r\n "
            "1. You exceeded your current quota, please check your plan and billing details\r\n "
            "2. You are sending requests too quickly \r\n "
            "3. The engine is currently overloaded, please try again later. \r\n "
            f"See {_ERROR_CODES_DOC} for more details."
        )
    elif isinstance(error, ServerError):
        base = (
            "The server had an error while processing your request, please try again. "
            f"(HTTP 500 Internal Server Error)\r\n See {_ERROR_CODES_DOC} for more details."
        )
    else:
        base = None

    if not error.api_message:
        return base or error.message
    prefix = f"{base} " if base else ""
    return f"{prefix}\n\n\t{error.api_message}\n"


def offers_clear_and_retry(error: ChatError) -> bool:
    """Whether the UI should offer "clear conversation and retry" for ``error``.

    Covers raw transport statuses and 400s, which is where an over-long
    conversation (context length exceeded) surfaces.
    """

    if error.retryable_after_clear:
        return True
    return isinstance(error, ClientIncompatibleError) and error.status == 400


def _extract_status(exc: BaseException) -> tuple[int | None, str]:
    if isinstance(exc, APIStatusError):
        response = getattr(exc, "response", None)
        return exc.status_code, _reason_phrase(response)
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code, _reason_phrase(exc.response)
    if isinstance(exc, (APIConnectionError, httpx.TransportError)):
        return None, ""
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status, ""
    return None, ""


def _reason_phrase(response: Any) -> str:
    phrase = getattr(response, "reason_phrase", None)
    return str(phrase) if phrase else ""


def _extract_api_message(exc: BaseException) -> str | None:
    body = getattr(exc, "body", None)
    if isinstance(body, Mapping):
        nested = body.get("error")
        if isinstance(nested, Mapping):
            body = nested
        message = body.get("message")
        if message:
            return str(message)
    text = str(exc).strip()
    if text:
        return text
    return type(exc).__name__
