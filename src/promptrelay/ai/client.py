"""Async chat clients built around OpenAI-compatible endpoints.

Two client generations are supported. :class:`ChatCompletionClient` talks to
the chat completion endpoint and is used for ``gpt-*`` models;
:class:`LegacyCompletionClient` talks to the plain completion endpoint and is
used for every other model (``code-*``, ``text-davinci-*``). Both keep the
conversation in a local :class:`MessageStore` so that the opaque continuation
identifiers handed to callers can be resolved back into history.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import date
from typing import Any, AsyncIterator, Dict, List, Literal, Mapping

import httpx
from openai import AsyncOpenAI

from .errors import RequestCancelledError
from .tokens import TokenCounterRegistry

LOGGER = logging.getLogger(__name__)

CHAT_MODEL_PREFIX = "gpt-"
CODE_MODEL_PREFIX = "code-"
END_OF_TURN = "<|im_end|>"
USER_LABEL = "User"
ASSISTANT_LABEL = "ChatGPT"
DEFAULT_SYSTEM_MESSAGE = (
    "You are ChatGPT, a large language model trained by OpenAI. Answer as concisely as possible."
)

MessageRole = Literal["user", "assistant"]


def is_chat_model(model: str | None) -> bool:
    """Return ``True`` when ``model`` is served by the chat completion endpoint."""

    return bool(model) and str(model).startswith(CHAT_MODEL_PREFIX)


def is_code_model(model: str | None) -> bool:
    """Return ``True`` for code-completion models whose output is plain text."""

    return bool(model) and str(model).startswith(CODE_MODEL_PREFIX)


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure a chat client."""

    api_key: str
    model: str
    base_url: str | None = None
    organization: str | None = None
    max_tokens: int | None = 1024
    temperature: float | None = 1.0
    top_p: float | None = 1.0
    proxy: str | None = None
    request_timeout: float | None = 90.0
    system_message: str = DEFAULT_SYSTEM_MESSAGE
    max_model_tokens: int = 4096
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


@dataclass(frozen=True, slots=True)
class Continuation:
    """Opaque tokens that let the next request resume the same dialogue."""

    conversation_id: str | None = None
    message_id: str | None = None

    @classmethod
    def empty(cls) -> "Continuation":
        return cls()

    @property
    def is_empty(self) -> bool:
        return self.conversation_id is None and self.message_id is None


@dataclass(slots=True)
class ChatReply:
    """Final result of a streamed request."""

    text: str
    message_id: str
    parent_message_id: str | None
    conversation_id: str | None

    @property
    def continuation(self) -> Continuation:
        return Continuation(conversation_id=self.conversation_id, message_id=self.message_id)


@dataclass(slots=True)
class ChatStreamEvent:
    """Normalized streaming event.

    ``content.delta`` events carry the newly received ``delta`` and the
    accumulated ``text``; the single trailing ``message.done`` event carries
    the :class:`ChatReply`.
    """

    type: Literal["content.delta", "message.done"]
    text: str = ""
    delta: str | None = None
    reply: ChatReply | None = None


class CancelToken:
    """Cooperative cancellation signal shared between a session and a client."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestCancelledError(message=self._reason or "Request cancelled")

    async def wait(self) -> None:
        await self._event.wait()


async def _pull(deltas: AsyncIterator[str]) -> str:
    return await deltas.__anext__()


async def _next_delta(deltas: AsyncIterator[str], token: CancelToken) -> str:
    """Return the next delta, or raise as soon as ``token`` fires.

    A stalled read is cancelled when the token fires, which unwinds the
    endpoint stream and releases its connection.
    """

    step = asyncio.ensure_future(_pull(deltas))
    stopped = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({step, stopped}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stopped.cancel()
        if not step.done():
            step.cancel()
            await asyncio.gather(step, return_exceptions=True)
    if token.cancelled:
        if not step.cancelled():
            step.exception()
        token.raise_if_cancelled()
    return step.result()


@dataclass(slots=True)
class StoredMessage:
    id: str
    role: MessageRole
    text: str
    parent_message_id: str | None = None
    conversation_id: str | None = None


@dataclass(slots=True)
class MessageStore:
    """Bounded in-memory store of conversation turns keyed by message id."""

    capacity: int = 1_000
    _messages: "OrderedDict[str, StoredMessage]" = field(default_factory=OrderedDict, init=False, repr=False)

    def get(self, message_id: str | None) -> StoredMessage | None:
        if not message_id:
            return None
        return self._messages.get(message_id)

    def put(self, message: StoredMessage) -> None:
        self._messages[message.id] = message
        self._messages.move_to_end(message.id)
        while len(self._messages) > max(1, self.capacity):
            self._messages.popitem(last=False)

    def chain(self, message_id: str | None) -> List[StoredMessage]:
        """Return the ancestors of ``message_id`` (inclusive), newest first."""

        chain: List[StoredMessage] = []
        seen: set[str] = set()
        current = self.get(message_id)
        while current is not None and current.id not in seen:
            chain.append(current)
            seen.add(current.id)
            current = self.get(current.parent_message_id)
        return chain

    def clear(self) -> None:
        self._messages.clear()

    def __len__(self) -> int:
        return len(self._messages)


class ChatClient(ABC):
    """Streaming chat capability shared by both client generations."""

    endpoint: str = "unknown"

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AsyncOpenAI | None = None,
        store: MessageStore | None = None,
        token_registry: TokenCounterRegistry | None = None,
    ) -> None:
        if not settings.api_key:
            raise ValueError("api_key is required to build a chat client")
        self._settings = settings
        self._http_client: httpx.AsyncClient | None = None
        self._client = client or self._build_client(settings)
        self._store = store or MessageStore()
        self._token_registry = token_registry or TokenCounterRegistry.global_instance()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def store(self) -> MessageStore:
        return self._store

    @property
    def response_in_markdown(self) -> bool:
        return not is_code_model(self._settings.model)

    async def stream_message(
        self,
        prompt: str,
        *,
        continuation: Continuation | None = None,
        cancel_token: CancelToken | None = None,
    ) -> AsyncIterator[ChatStreamEvent]:
        """Stream the answer to ``prompt`` as a sequence of :class:`ChatStreamEvent`.

        Raises :class:`RequestCancelledError` as soon as ``cancel_token`` fires;
        no further events are produced after that.
        """

        token = cancel_token or CancelToken()
        resume = continuation or Continuation.empty()
        user_message = StoredMessage(
            id=str(uuid.uuid4()),
            role="user",
            text=prompt,
            parent_message_id=resume.message_id,
            conversation_id=resume.conversation_id or str(uuid.uuid4()),
        )
        history = self._history_for(user_message)
        LOGGER.debug(
            "Starting streamed %s request via %s with %s prior message(s)",
            self.endpoint,
            self._settings.model,
            len(history),
        )

        text = ""
        token.raise_if_cancelled()
        async with aclosing(self._stream_deltas(user_message, history, token)) as deltas:
            while True:
                try:
                    delta = await _next_delta(deltas, token)
                except StopAsyncIteration:
                    break
                if not delta:
                    continue
                text += delta
                yield ChatStreamEvent(type="content.delta", text=text, delta=delta)

        token.raise_if_cancelled()
        reply = self._record_turn(user_message, text.strip())
        yield ChatStreamEvent(type="message.done", text=reply.text, reply=reply)

    @abstractmethod
    def _stream_deltas(
        self,
        user_message: StoredMessage,
        history: List[StoredMessage],
        token: CancelToken,
    ) -> AsyncIterator[str]:
        """Yield raw text deltas from the endpoint."""

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        for target in (self._client, self._http_client):
            close = getattr(target, "close", None) if target is not None else None
            if close is None:
                continue
            result = close()
            if inspect.isawaitable(result):
                await result

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        if settings.proxy:
            self._http_client = httpx.AsyncClient(proxy=settings.proxy, timeout=settings.request_timeout)
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=(settings.base_url or "").strip() or None,
            organization=settings.organization or None,
            timeout=settings.request_timeout,
            max_retries=0,
            default_headers=headers,
            http_client=self._http_client,
        )

    def _history_for(self, user_message: StoredMessage) -> List[StoredMessage]:
        """Return prior turns (oldest first) that fit in the prompt budget."""

        budget = self._settings.max_model_tokens - (self._settings.max_tokens or 0)
        used = self._count(self._settings.system_message) + self._count(user_message.text)
        selected: List[StoredMessage] = []
        for message in self._store.chain(user_message.parent_message_id):
            cost = self._count(message.text)
            if used + cost > budget:
                LOGGER.debug("History trimmed at %s message(s) to stay within %s tokens", len(selected), budget)
                break
            used += cost
            selected.append(message)
        selected.reverse()
        return selected

    def _count(self, text: str) -> int:
        return self._token_registry.count(self._settings.model, text)

    def _record_turn(self, user_message: StoredMessage, text: str) -> ChatReply:
        assistant = StoredMessage(
            id=str(uuid.uuid4()),
            role="assistant",
            text=text,
            parent_message_id=user_message.id,
            conversation_id=user_message.conversation_id,
        )
        self._store.put(user_message)
        self._store.put(assistant)
        return ChatReply(
            text=text,
            message_id=assistant.id,
            parent_message_id=user_message.id,
            conversation_id=assistant.conversation_id,
        )

    def _completion_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {"model": self._settings.model}
        if self._settings.max_tokens is not None:
            params["max_tokens"] = self._settings.max_tokens
        if self._settings.temperature is not None:
            params["temperature"] = self._settings.temperature
        if self._settings.top_p is not None:
            params["top_p"] = self._settings.top_p
        return params

    def _log_payload(self, payload: Mapping[str, Any]) -> None:
        if not self._settings.debug_logging:
            return
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("Chat payload (unserializable): %s", payload)
        else:
            LOGGER.debug("Chat payload:\n%s", serialized)


class ChatCompletionClient(ChatClient):
    """Client for the chat completion endpoint (``gpt-*`` models)."""

    endpoint = "chat.completions"

    def build_messages(self, user_message: StoredMessage, history: List[StoredMessage]) -> List[Dict[str, str]]:
        messages: List[Dict[str, str]] = []
        if self._settings.system_message:
            messages.append({"role": "system", "content": self._settings.system_message})
        for message in history:
            messages.append({"role": message.role, "content": message.text})
        messages.append({"role": "user", "content": user_message.text})
        return messages

    async def _stream_deltas(
        self,
        user_message: StoredMessage,
        history: List[StoredMessage],
        token: CancelToken,
    ) -> AsyncIterator[str]:
        payload = self._completion_params()
        payload["messages"] = self.build_messages(user_message, history)
        self._log_payload(payload)

        async with self._client.chat.completions.stream(**payload) as stream:
            async for event in stream:
                token.raise_if_cancelled()
                if getattr(event, "type", None) != "content.delta":
                    continue
                delta = getattr(event, "delta", None)
                if delta:
                    yield str(delta)


class LegacyCompletionClient(ChatClient):
    """Client for the plain completion endpoint (code and text models)."""

    endpoint = "completions"

    def build_prompt(self, user_message: StoredMessage, history: List[StoredMessage]) -> str:
        prefix = (
            f"Instructions:\n{self._settings.system_message}\n"
            f"Current date: {date.today().isoformat()}{END_OF_TURN}\n\n"
        )
        turns = []
        for message in [*history, user_message]:
            label = USER_LABEL if message.role == "user" else ASSISTANT_LABEL
            turns.append(f"{label}:\n\n{message.text}{END_OF_TURN}\n\n")
        return f"{prefix}{''.join(turns)}{ASSISTANT_LABEL}:\n"

    async def _stream_deltas(
        self,
        user_message: StoredMessage,
        history: List[StoredMessage],
        token: CancelToken,
    ) -> AsyncIterator[str]:
        payload = self._completion_params()
        payload["prompt"] = self.build_prompt(user_message, history)
        payload["stop"] = [END_OF_TURN]
        self._log_payload(payload)

        stream = await self._client.completions.create(stream=True, **payload)
        try:
            async for chunk in stream:
                token.raise_if_cancelled()
                choices = getattr(chunk, "choices", None) or []
                if not choices:
                    continue
                delta = getattr(choices[0], "text", None)
                if delta:
                    yield str(delta)
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                result = close()
                if inspect.isawaitable(result):
                    await result


def create_chat_client(
    settings: ClientSettings,
    *,
    client: AsyncOpenAI | None = None,
    store: MessageStore | None = None,
    token_registry: TokenCounterRegistry | None = None,
) -> ChatClient:
    """Pick the client generation for ``settings.model`` once, at construction time."""

    client_type: type[ChatClient] = ChatCompletionClient if is_chat_model(settings.model) else LegacyCompletionClient
    LOGGER.debug("Using %s for model %s", client_type.__name__, settings.model)
    return client_type(settings, client=client, store=store, token_registry=token_registry)


__all__ = [
    "CHAT_MODEL_PREFIX",
    "CODE_MODEL_PREFIX",
    "END_OF_TURN",
    "CancelToken",
    "ChatClient",
    "ChatCompletionClient",
    "ChatReply",
    "ChatStreamEvent",
    "ClientSettings",
    "Continuation",
    "LegacyCompletionClient",
    "MessageStore",
    "StoredMessage",
    "create_chat_client",
    "is_chat_model",
    "is_code_model",
]
