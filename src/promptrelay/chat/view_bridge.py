"""Delivery of outbound messages to a view that may not be attached yet."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Protocol

from .messages import ViewMessage

LOGGER = logging.getLogger(__name__)


class ViewSink(Protocol):
    """Anything able to receive view payloads (a webview, a console, a test double)."""

    def post_message(self, payload: Mapping[str, Any]) -> None:  # pragma: no cover - protocol stub
        ...


class ViewBridge:
    """Posts messages to the attached view.

    While no view is attached only the most recent undelivered message is
    kept; it is flushed when a view attaches. Earlier undelivered messages
    are dropped.
    """

    def __init__(self, sink: ViewSink | None = None) -> None:
        self._sink: ViewSink | None = sink
        self._leftover: Dict[str, Any] | None = None

    @property
    def attached(self) -> bool:
        return self._sink is not None

    @property
    def leftover(self) -> Dict[str, Any] | None:
        return dict(self._leftover) if self._leftover is not None else None

    def attach(self, sink: ViewSink) -> None:
        self._sink = sink
        if self._leftover is not None:
            pending, self._leftover = self._leftover, None
            LOGGER.debug("Flushing undelivered %s message to newly attached view", pending.get("type"))
            self._deliver(pending)

    def detach(self) -> None:
        self._sink = None

    def post(self, message: ViewMessage | Mapping[str, Any], *, ignore_if_detached: bool = False) -> bool:
        """Send ``message``; returns ``True`` when it reached a view."""

        payload = message.to_payload() if isinstance(message, ViewMessage) else dict(message)
        if self._sink is None:
            if not ignore_if_detached:
                self._leftover = payload
            return False
        return self._deliver(payload)

    def _deliver(self, payload: Dict[str, Any]) -> bool:
        sink = self._sink
        if sink is None:
            return False
        try:
            sink.post_message(payload)
        except Exception:  # pragma: no cover - views must not break the session
            LOGGER.debug("View sink %s failed to accept %s", sink, payload.get("type"), exc_info=True)
            return False
        return True


__all__ = ["ViewBridge", "ViewSink"]
