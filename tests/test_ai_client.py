"""Tests for the streaming chat clients."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from types import SimpleNamespace
from typing import Any, Iterable, cast

import pytest

from openai import AsyncOpenAI

from promptrelay.ai.client import (
    END_OF_TURN,
    CancelToken,
    ChatCompletionClient,
    ChatStreamEvent,
    ClientSettings,
    Continuation,
    LegacyCompletionClient,
    MessageStore,
    StoredMessage,
    create_chat_client,
    is_chat_model,
    is_code_model,
)
from promptrelay.ai.errors import RequestCancelledError
from promptrelay.ai import tokens
from promptrelay.ai.tokens import ApproxByteCounter, TokenCounterRegistry


@dataclass
class _FakeEvent:
    """Simple structure emulating the chat completion stream events."""

    type: str
    delta: str | None = None


class _FakeStream:
    def __init__(self, items: Iterable[Any]):
        self._iterator = iter(list(items))
        self.closed = False

    def __aiter__(self) -> "_FakeStream":
        return self

    async def __anext__(self) -> Any:
        try:
            return next(self._iterator)
        except StopIteration as exc:
            raise StopAsyncIteration from exc

    async def close(self) -> None:
        self.closed = True


class _FakeStreamContext:
    def __init__(self, events: Iterable[_FakeEvent]):
        self._events = list(events)

    async def __aenter__(self) -> _FakeStream:
        return _FakeStream(self._events)

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


class _FakeChatCompletions:
    def __init__(self, events: Iterable[_FakeEvent]):
        self._events = list(events)
        self.calls: list[dict[str, Any]] = []

    def stream(self, **kwargs: Any) -> _FakeStreamContext:
        self.calls.append(kwargs)
        return _FakeStreamContext(self._events)


class _FakeLegacyCompletions:
    def __init__(self, texts: Iterable[str]):
        self._texts = list(texts)
        self.calls: list[dict[str, Any]] = []
        self.streams: list[_FakeStream] = []

    async def create(self, **kwargs: Any) -> _FakeStream:
        self.calls.append(kwargs)
        chunks = [SimpleNamespace(choices=[SimpleNamespace(text=text)]) for text in self._texts]
        stream = _FakeStream(chunks)
        self.streams.append(stream)
        return stream


def _registry(model: str) -> TokenCounterRegistry:
    registry = TokenCounterRegistry()
    registry.register(model, ApproxByteCounter(model_name=model))
    return registry


def _chat_client(events: Iterable[_FakeEvent], **overrides: Any) -> tuple[ChatCompletionClient, _FakeChatCompletions]:
    completions = _FakeChatCompletions(events)
    fake = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    settings = ClientSettings(api_key="test", model=overrides.pop("model", "gpt-4"), **overrides)
    client = ChatCompletionClient(
        settings,
        client=cast(AsyncOpenAI, fake),
        token_registry=_registry(settings.model),
    )
    return client, completions


async def _collect(client: Any, prompt: str, **kwargs: Any) -> list[ChatStreamEvent]:
    return [event async for event in client.stream_message(prompt, **kwargs)]


def test_model_routing_helpers() -> None:
    assert is_chat_model("gpt-4")
    assert not is_chat_model("code-davinci-002")
    assert is_code_model("code-davinci-002")
    assert not is_code_model("text-davinci-003")
    assert not is_chat_model(None)


def test_create_chat_client_routes_by_model_prefix() -> None:
    fake = cast(AsyncOpenAI, SimpleNamespace())
    chat = create_chat_client(ClientSettings(api_key="k", model="gpt-4"), client=fake)
    legacy = create_chat_client(ClientSettings(api_key="k", model="code-davinci-002"), client=fake)

    assert isinstance(chat, ChatCompletionClient)
    assert chat.response_in_markdown is True
    assert isinstance(legacy, LegacyCompletionClient)
    assert legacy.response_in_markdown is False


def test_client_requires_api_key() -> None:
    with pytest.raises(ValueError):
        ChatCompletionClient(ClientSettings(api_key="", model="gpt-4"), client=cast(AsyncOpenAI, SimpleNamespace()))


@pytest.mark.asyncio
async def test_stream_message_accumulates_deltas_and_returns_continuation() -> None:
    events = [
        _FakeEvent(type="content.delta", delta="Hel"),
        _FakeEvent(type="chunk"),
        _FakeEvent(type="content.delta", delta="lo "),
        _FakeEvent(type="content.done"),
    ]
    client, completions = _chat_client(events, temperature=0.5, top_p=None)

    collected = await _collect(client, "Hi")

    assert [event.type for event in collected] == ["content.delta", "content.delta", "message.done"]
    assert [event.text for event in collected[:2]] == ["Hel", "Hello "]
    final = collected[-1]
    assert final.reply is not None
    assert final.reply.text == "Hello"
    assert final.reply.continuation.message_id == final.reply.message_id
    assert final.reply.conversation_id
    payload = completions.calls[0]
    assert payload["model"] == "gpt-4"
    assert payload["temperature"] == 0.5
    assert "top_p" not in payload
    assert payload["messages"][-1] == {"role": "user", "content": "Hi"}
    assert payload["messages"][0]["role"] == "system"


@pytest.mark.asyncio
async def test_continuation_replays_previous_turns() -> None:
    client, completions = _chat_client([_FakeEvent(type="content.delta", delta="Answer")])

    first = await _collect(client, "First question")
    reply = first[-1].reply
    assert reply is not None

    await _collect(client, "Second question", continuation=reply.continuation)

    second_messages = completions.calls[1]["messages"]
    assert [message["role"] for message in second_messages] == ["system", "user", "assistant", "user"]
    assert second_messages[1]["content"] == "First question"
    assert second_messages[2]["content"] == "Answer"


@pytest.mark.asyncio
async def test_empty_continuation_starts_new_conversation() -> None:
    client, completions = _chat_client([_FakeEvent(type="content.delta", delta="A")])

    first = (await _collect(client, "One"))[-1].reply
    second = (await _collect(client, "Two", continuation=Continuation.empty()))[-1].reply

    assert first is not None and second is not None
    assert first.conversation_id != second.conversation_id
    assert len(completions.calls[1]["messages"]) == 2


@pytest.mark.asyncio
async def test_history_is_trimmed_to_token_budget() -> None:
    client, completions = _chat_client(
        [_FakeEvent(type="content.delta", delta="x" * 120)],
        max_tokens=10,
        max_model_tokens=60,
        system_message="",
    )
    reply = (await _collect(client, "q" * 120))[-1].reply
    assert reply is not None

    await _collect(client, "next", continuation=reply.continuation)

    # Only the newest prior message fits in the remaining budget.
    messages = completions.calls[1]["messages"]
    assert [message["role"] for message in messages] == ["assistant", "user"]


@pytest.mark.asyncio
async def test_cancel_token_stops_the_stream() -> None:
    token = CancelToken()
    client, _ = _chat_client(
        [_FakeEvent(type="content.delta", delta="one"), _FakeEvent(type="content.delta", delta="two")]
    )
    received: list[str] = []

    with pytest.raises(RequestCancelledError):
        async for event in client.stream_message("Hi", cancel_token=token):
            received.append(event.text)
            token.cancel("stop")

    assert received == ["one"]
    assert len(client.store) == 0


@pytest.mark.asyncio
async def test_legacy_client_builds_prompt_and_closes_stream() -> None:
    completions = _FakeLegacyCompletions(["def ", "add(a, b):", ""])
    fake = SimpleNamespace(completions=completions)
    client = LegacyCompletionClient(
        ClientSettings(api_key="k", model="code-davinci-002", system_message="Be brief."),
        client=cast(AsyncOpenAI, fake),
        token_registry=_registry("code-davinci-002"),
    )

    collected = await _collect(client, "Write add")

    assert collected[-1].text == "def add(a, b):"
    payload = completions.calls[0]
    assert payload["stream"] is True
    assert payload["stop"] == [END_OF_TURN]
    assert payload["prompt"].startswith("Instructions:\nBe brief.\n")
    assert f"User:\n\nWrite add{END_OF_TURN}" in payload["prompt"]
    assert payload["prompt"].endswith("ChatGPT:\n")
    assert completions.streams[0].closed is True


def test_message_store_chain_and_capacity() -> None:
    store = MessageStore(capacity=2)
    store.put(StoredMessage(id="a", role="user", text="1"))
    store.put(StoredMessage(id="b", role="assistant", text="2", parent_message_id="a"))
    store.put(StoredMessage(id="c", role="user", text="3", parent_message_id="b"))

    assert len(store) == 2
    assert store.get("a") is None
    assert [message.id for message in store.chain("c")] == ["c", "b"]
    assert store.chain(None) == []


@pytest.mark.asyncio
async def test_aclose_closes_underlying_client() -> None:
    class _StubAsyncOpenAI:
        def __init__(self) -> None:
            self.closed = False

        async def close(self) -> None:
            self.closed = True

    stub = _StubAsyncOpenAI()
    client = ChatCompletionClient(ClientSettings(api_key="k", model="gpt-4"), client=cast(AsyncOpenAI, stub))

    await client.aclose()

    assert stub.closed is True


@pytest.mark.asyncio
async def test_debug_logging_captures_payload(caplog: pytest.LogCaptureFixture) -> None:
    client, _ = _chat_client([_FakeEvent(type="content.delta", delta="ok")], debug_logging=True)

    with caplog.at_level("DEBUG", logger="promptrelay.ai.client"):
        await _collect(client, "Hello")

    assert any("Chat payload" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
async def test_stream_falls_back_to_estimates_when_tiktoken_is_unavailable(monkeypatch: pytest.MonkeyPatch) -> None:
    def _offline(*args: Any, **kwargs: Any) -> Any:
        raise OSError("could not fetch cl100k_base.tiktoken")

    monkeypatch.setattr(tokens.tiktoken, "get_encoding", _offline)
    monkeypatch.setattr(tokens.tiktoken, "encoding_for_model", _offline)
    completions = _FakeChatCompletions([_FakeEvent(type="content.delta", delta="ok")])
    registry = TokenCounterRegistry()
    client = ChatCompletionClient(
        ClientSettings(api_key="k", model="gpt-4"),
        client=cast(AsyncOpenAI, SimpleNamespace(chat=SimpleNamespace(completions=completions))),
        token_registry=registry,
    )

    collected = await _collect(client, "hi")

    assert collected[-1].type == "message.done"
    assert collected[-1].text == "ok"
    assert isinstance(registry.get("gpt-4"), ApproxByteCounter)
    assert registry.count("gpt-4", "abcdefgh") == 2


class _StalledStream(_FakeStream):
    """Yields its items, then blocks until cancelled."""

    async def __anext__(self) -> Any:
        try:
            return next(self._iterator)
        except StopIteration:
            await asyncio.Event().wait()
            raise StopAsyncIteration


class _StalledStreamContext:
    def __init__(self, events: Iterable[_FakeEvent]):
        self._events = list(events)
        self.exited = False

    async def __aenter__(self) -> _StalledStream:
        return _StalledStream(self._events)

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self.exited = True
        return False


@pytest.mark.asyncio
async def test_cancel_interrupts_a_stalled_stream() -> None:
    context = _StalledStreamContext([_FakeEvent(type="content.delta", delta="one")])
    completions = SimpleNamespace(stream=lambda **kwargs: context)
    client = ChatCompletionClient(
        ClientSettings(api_key="k", model="gpt-4"),
        client=cast(AsyncOpenAI, SimpleNamespace(chat=SimpleNamespace(completions=completions))),
        token_registry=_registry("gpt-4"),
    )
    token = CancelToken()
    received: list[str] = []

    async def _consume() -> None:
        async for event in client.stream_message("Hi", cancel_token=token):
            received.append(event.text)

    task = asyncio.ensure_future(_consume())
    for _ in range(100):
        if received:
            break
        await asyncio.sleep(0)
    token.cancel("stop")

    with pytest.raises(RequestCancelledError):
        await asyncio.wait_for(task, timeout=1)
    assert received == ["one"]
    assert context.exited is True
