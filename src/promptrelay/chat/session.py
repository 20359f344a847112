"""Conversation session coordinating one view, one chat client and one request at a time."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping

from ..ai.client import (
    CancelToken,
    ChatClient,
    ChatReply,
    ClientSettings,
    Continuation,
    create_chat_client,
    is_code_model,
)
from ..ai.errors import (
    ChatError,
    ConfigError,
    RequestCancelledError,
    UnknownError,
    classify_error,
    describe_error,
    offers_clear_and_retry,
)
from ..services.settings import SessionConfig
from ..utils.telemetry import TelemetryClient
from .messages import AddError, AddQuestion, AddResponse, LoginSuccessful, ShowInProgress, ViewMessage
from .prompter import Choice, NullPrompter, UserPrompter
from .prompts import (
    CONTINUE_PROMPT,
    SYSTEM_CONTEXT,
    build_question,
    close_open_fence,
    has_open_fence,
    new_request_id,
)
from .view_bridge import ViewBridge

LOGGER = logging.getLogger(__name__)

ClientFactory = Callable[[ClientSettings], ChatClient]

_API_KEY_SETTINGS_QUERY = "promptrelay.apiKey"
_CLEAR_AND_RETRY_DELAY = 0.25


class RequestStatus(Enum):
    """Lifecycle of a single request: IDLE -> IN_FLIGHT -> terminal -> IDLE."""

    IDLE = "idle"
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(slots=True)
class InFlightRequest:
    """State that only exists while a request is being served."""

    request_id: str
    prompt: str
    cancel_token: CancelToken = field(default_factory=CancelToken)
    accumulated_text: str = ""
    status: RequestStatus = RequestStatus.IN_FLIGHT


@dataclass(frozen=True, slots=True)
class SessionState:
    """Everything a session knows between requests.

    Operations produce a new value instead of mutating the old one.
    """

    config: SessionConfig
    client: ChatClient | None = None
    continuation: Continuation = field(default_factory=Continuation.empty)
    session_api_key: str | None = None
    question_counter: int = 0

    def resolved_api_key(self) -> str:
        return (self.config.api_key or self.session_api_key or "").strip()


class ConversationSession:
    """Relays prompts to a chat client and streams answers to a view.

    At most one request is in flight; a prompt arriving while one is active
    is dropped. Every request ends with exactly one terminal ``addResponse``
    (``done=True``) or ``addError`` and always returns the session to idle.
    """

    def __init__(
        self,
        config: SessionConfig,
        *,
        bridge: ViewBridge | None = None,
        prompter: UserPrompter | None = None,
        client_factory: ClientFactory = create_chat_client,
        telemetry: TelemetryClient | None = None,
        system_message: str = SYSTEM_CONTEXT,
        retry_delay: float = _CLEAR_AND_RETRY_DELAY,
    ) -> None:
        self._state = SessionState(config=config)
        self._bridge = bridge or ViewBridge()
        self._prompter: UserPrompter = prompter or NullPrompter()
        self._client_factory = client_factory
        self._telemetry = telemetry or TelemetryClient()
        self._system_message = system_message
        self._retry_delay = max(0.0, retry_delay)
        self._request: InFlightRequest | None = None
        self._last_request_id = ""
        self._last_response = ""
        self._retired_clients: list[ChatClient] = []
        self._background: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def config(self) -> SessionConfig:
        return self._state.config

    @property
    def continuation(self) -> Continuation:
        return self._state.continuation

    @property
    def bridge(self) -> ViewBridge:
        return self._bridge

    @property
    def in_progress(self) -> bool:
        return self._request is not None

    @property
    def current_request(self) -> InFlightRequest | None:
        return self._request

    @property
    def last_response(self) -> str:
        return self._last_response

    @property
    def response_in_markdown(self) -> bool:
        return not is_code_model(self._state.config.model)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def reconfigure(self, config: SessionConfig) -> None:
        """Replace the configuration and reset the conversation.

        The cached client is dropped when a field it was built from changed;
        the next request recreates it lazily.
        """

        previous = self._state.config
        if self._state.client is not None and previous.client_identity() != config.client_identity():
            LOGGER.debug("Client configuration changed (model %s -> %s); discarding client", previous.model, config.model)
            self._discard_client()
        self._state = replace(self._state, config=config, continuation=Continuation.empty())
        self.log_event("session-reconfigured")

    def set_session_api_key(self, api_key: str | None) -> None:
        """Store (or forget) a key that lives only as long as this session."""

        key = (api_key or "").strip() or None
        if key != self._state.session_api_key:
            self._discard_client()
        self._state = replace(self._state, session_api_key=key)

    def ensure_client(self) -> ChatClient:
        """Return the cached client, building it from the configuration when needed.

        Raises:
            ConfigError: no API key is available from the configuration or
                the session-scoped override.
        """

        if self._state.client is not None:
            return self._state.client
        api_key = self._state.resolved_api_key()
        if not api_key:
            raise ConfigError()
        client = self._client_factory(self._client_settings(api_key))
        self._state = replace(self._state, client=client)
        LOGGER.debug("Created %s for model %s", type(client).__name__, self._state.config.model)
        return client

    async def prepare_conversation(self) -> bool:
        """Login handshake: make sure a client exists and tell the view."""

        ready = self._prepare()
        if ready:
            self.log_event("logged-in")
        return ready

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def send_request(
        self,
        prompt: str,
        *,
        code: str | None = None,
        language: str | None = None,
        previous_answer: str | None = None,
        command: str = "freeText",
    ) -> None:
        """Send ``prompt`` and stream the answer to the view.

        ``previous_answer`` is only used when replaying a continuation: it is
        prepended verbatim to the new answer.
        """

        if self._request is not None:
            LOGGER.debug("Request %s still in flight; dropping prompt", self._request.request_id)
            return

        self._state = replace(self._state, question_counter=self._state.question_counter + 1)
        self.log_event(
            "api-request-sent",
            {
                "command": command,
                "hasCode": str(code is not None),
                "hasPreviousAnswer": str(previous_answer is not None),
            },
        )
        if not self._prepare():
            return

        client = self.ensure_client()
        request = InFlightRequest(request_id=new_request_id(), prompt=prompt)
        self._request = request
        self._last_request_id = request.request_id
        self._last_response = ""
        question = build_question(prompt, code, language)
        auto_scroll = self._state.config.auto_scroll
        in_markdown = self.response_in_markdown

        self._spawn(self._prompter.reveal_view())
        self._post(ShowInProgress(in_progress=True, show_stop_button=True))
        self._post(AddQuestion(value=prompt, code=code, auto_scroll=auto_scroll))

        try:
            reply = await self._stream_reply(client, question, request, auto_scroll, in_markdown)
            if reply is None:
                return
            if self._state.client is client:
                self._state = replace(self._state, continuation=reply.continuation)

            text = reply.text
            if previous_answer is not None:
                text = previous_answer + text
            if has_open_fence(text):
                text = close_open_fence(text)
                self._spawn(self._offer_continuation(text, command))

            request.accumulated_text = text
            request.status = RequestStatus.COMPLETED
            self._last_response = text
            self._post(
                AddResponse(
                    value=text,
                    done=True,
                    id=request.request_id,
                    auto_scroll=auto_scroll,
                    response_in_markdown=in_markdown,
                )
            )
            if self._state.config.show_notification:
                self._spawn(self._notify_answered())
        except RequestCancelledError:
            request.status = RequestStatus.CANCELLED
            LOGGER.debug("Request %s cancelled", request.request_id)
        except Exception as exc:
            if request.cancel_token.cancelled:
                # The transport noticed the stop before the stream did.
                request.status = RequestStatus.CANCELLED
                LOGGER.debug("Request %s ended with %s after cancellation", request.request_id, type(exc).__name__)
            else:
                request.status = RequestStatus.FAILED
                self._report_failure(classify_error(exc), prompt=prompt, code=code, language=language, command=command)
        finally:
            if self._request is request:
                self._request = None
                self._post(ShowInProgress(in_progress=False))
            await self._close_retired_clients()

    async def _stream_reply(
        self,
        client: ChatClient,
        question: str,
        request: InFlightRequest,
        auto_scroll: bool,
        in_markdown: bool,
    ) -> ChatReply | None:
        reply: ChatReply | None = None
        token = request.cancel_token
        async for event in client.stream_message(question, continuation=self._state.continuation, cancel_token=token):
            if token.cancelled:
                return None
            if event.type == "content.delta":
                request.accumulated_text = event.text
                self._last_response = event.text
                self._post(
                    AddResponse(
                        value=event.text,
                        id=request.request_id,
                        auto_scroll=auto_scroll,
                        response_in_markdown=in_markdown,
                    )
                )
            elif event.type == "message.done":
                reply = event.reply
        if token.cancelled:
            return None
        if reply is None:
            raise UnknownError(message="The response stream ended without a final message")
        return reply

    def stop(self) -> None:
        """Cancel the active request and publish what has arrived so far as the final answer."""

        request = self._request
        if request is not None:
            request.cancel_token.cancel("stopped by user")
            request.status = RequestStatus.CANCELLED
            self._request = None
        self._post(ShowInProgress(in_progress=False))
        self._post(
            AddResponse(
                value=self._last_response,
                done=True,
                id=self._last_request_id,
                auto_scroll=self._state.config.auto_scroll,
                response_in_markdown=self.response_in_markdown,
            )
        )
        self.log_event("stopped-generating")

    def clear_conversation(self) -> None:
        self._state = replace(self._state, continuation=Continuation.empty())
        self.log_event("conversation-cleared")

    def clear_client(self) -> None:
        self._discard_client()
        self.log_event("client-cleared")

    def clear_session(self) -> None:
        """Stop any request and forget the client and the continuation tokens."""

        self.stop()
        self._discard_client()
        self._state = replace(self._state, continuation=Continuation.empty())
        self.log_event("cleared-session")

    def reset_session(self) -> None:
        """:meth:`clear_session` that also forgets the session-scoped API key."""

        self.clear_session()
        self._state = replace(self._state, session_api_key=None)

    async def wait_for_background(self) -> None:
        """Wait for follow-up offers and the requests they trigger to settle."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel outstanding work and close every client this session built."""

        if self._request is not None:
            self._request.cancel_token.cancel("session closed")
            self._request = None
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        self._discard_client()
        await self._close_retired_clients()
        self._telemetry.flush()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _prepare(self) -> bool:
        try:
            self.ensure_client()
        except ConfigError as exc:
            LOGGER.info("No API key configured; asking the user how to provide one")
            self._spawn(self._recover_missing_key(exc))
            return False
        self._post(LoginSuccessful(show_conversations=False), ignore_if_detached=True)
        return True

    def _client_settings(self, api_key: str) -> ClientSettings:
        config = self._state.config
        return ClientSettings(
            api_key=api_key,
            model=config.model,
            base_url=config.base_url or None,
            organization=config.organization,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
            top_p=config.top_p,
            proxy=config.proxy,
            request_timeout=config.request_timeout,
            system_message=self._system_message,
            max_model_tokens=config.max_model_tokens,
            debug_logging=config.debug_logging,
        )

    def _report_failure(
        self,
        error: ChatError,
        *,
        prompt: str,
        code: str | None,
        language: str | None,
        command: str,
    ) -> None:
        config = self._state.config
        self._log_error("api-request-failed", {"error": error.error_code, "status": str(error.status or "")})
        LOGGER.warning("Request failed: %s", error)
        self._post(
            AddError(
                value=describe_error(error, method=config.login_method, model=config.model),
                auto_scroll=config.auto_scroll,
            )
        )
        if offers_clear_and_retry(error):
            self._spawn(self._offer_clear_and_retry(prompt, code, language, command))

    async def _recover_missing_key(self, error: ConfigError) -> None:
        config = self._state.config
        choice = await self._prompter.show_error(
            describe_error(error, method=config.login_method, model=config.model),
            Choice.STORE_IN_SESSION,
            Choice.OPEN_SETTINGS,
        )
        if choice == Choice.OPEN_SETTINGS:
            await self._prompter.open_settings(_API_KEY_SETTINGS_QUERY)
            return
        if choice != Choice.STORE_IN_SESSION:
            return
        value = await self._prompter.ask_secret(
            "Store OpenAI API Key in session",
            "Please enter your OpenAI API Key to store in your session only. This option won't persist the "
            "key in your settings file. You may need to re-enter it after restarting.",
            placeholder="API Key",
            value=self._state.session_api_key or "",
        )
        if value and value.strip():
            self.set_session_api_key(value)
            self._post(LoginSuccessful(show_conversations=False), ignore_if_detached=True)
            self.log_event("session-key-stored")

    async def _offer_continuation(self, text: str, command: str) -> None:
        choice = await self._prompter.show_info(
            "It looks like the answer stopped inside a code block. I can continue the answer and combine both parts.",
            Choice.CONTINUE_AND_COMBINE,
        )
        if choice == Choice.CONTINUE_AND_COMBINE:
            await self.send_request(CONTINUE_PROMPT, previous_answer=text, command=command)

    async def _offer_clear_and_retry(self, prompt: str, code: str | None, language: str | None, command: str) -> None:
        choice = await self._prompter.show_error(
            "Something went wrong. If the conversation exceeded the model's context length, clear the "
            "conversation and send the prompt again.",
            Choice.CLEAR_AND_RETRY,
        )
        if choice != Choice.CLEAR_AND_RETRY:
            return
        self.clear_conversation()
        await asyncio.sleep(self._retry_delay)
        await self.send_request(prompt, code=code, language=language, command=command)

    async def _notify_answered(self) -> None:
        choice = await self._prompter.show_info("ChatGPT responded to your question.", Choice.OPEN_CONVERSATION)
        if choice == Choice.OPEN_CONVERSATION:
            await self._prompter.reveal_view()

    def _post(self, message: ViewMessage, *, ignore_if_detached: bool = False) -> None:
        self._bridge.post(message, ignore_if_detached=ignore_if_detached)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.warning("Background session task failed: %s", exc, exc_info=exc)

    def _discard_client(self) -> None:
        client = self._state.client
        if client is None:
            return
        self._retired_clients.append(client)
        self._state = replace(self._state, client=None)

    async def _close_retired_clients(self) -> None:
        if self._request is not None:
            return
        retired, self._retired_clients = self._retired_clients, []
        for client in retired:
            try:
                await client.aclose()
            except Exception as exc:  # pragma: no cover - network teardown only
                LOGGER.debug("Closing %s failed: %s", type(client).__name__, exc)

    def _telemetry_properties(self, extra: Mapping[str, str] | None = None) -> Dict[str, Any]:
        config = self._state.config
        properties: Dict[str, Any] = {
            "loginMethod": config.login_method,
            "authType": config.auth_type,
            "model": config.model or "unknown",
        }
        if extra:
            properties.update(extra)
        return properties

    def log_event(self, name: str, properties: Mapping[str, str] | None = None) -> None:
        self._telemetry.track_event(
            name, self._telemetry_properties(properties), questionCounter=self._state.question_counter
        )

    def _log_error(self, name: str, properties: Mapping[str, str] | None = None) -> None:
        self._telemetry.track_error(
            name, self._telemetry_properties(properties), questionCounter=self._state.question_counter
        )


__all__ = [
    "ClientFactory",
    "ConversationSession",
    "InFlightRequest",
    "RequestStatus",
    "SessionState",
]
