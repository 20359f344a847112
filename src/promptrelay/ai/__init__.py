"""Chat clients, continuation tokens and the request error taxonomy."""

from .client import (
    CancelToken,
    ChatClient,
    ChatCompletionClient,
    ChatReply,
    ChatStreamEvent,
    ClientSettings,
    Continuation,
    LegacyCompletionClient,
    MessageStore,
    create_chat_client,
    is_chat_model,
    is_code_model,
)
from .errors import ChatError, ConfigError, RequestCancelledError, classify_error, describe_error
from .tokens import ApproxByteCounter, TokenCounterRegistry

__all__ = [
    "ApproxByteCounter",
    "CancelToken",
    "ChatClient",
    "ChatCompletionClient",
    "ChatError",
    "ChatReply",
    "ChatStreamEvent",
    "ClientSettings",
    "ConfigError",
    "Continuation",
    "LegacyCompletionClient",
    "MessageStore",
    "RequestCancelledError",
    "TokenCounterRegistry",
    "classify_error",
    "create_chat_client",
    "describe_error",
    "is_chat_model",
    "is_code_model",
]
