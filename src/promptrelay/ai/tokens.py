"""Token counting used to keep replayed conversation history inside the model window."""

from __future__ import annotations

import logging
import math
from typing import Dict, Protocol

import tiktoken

LOGGER = logging.getLogger(__name__)
_DEFAULT_BYTES_PER_TOKEN = 4
_FALLBACK_ENCODING = "cl100k_base"


class TokenCounterProtocol(Protocol):
    """Minimal interface shared by precise and approximate counters."""

    model_name: str | None

    def count(self, text: str) -> int:  # pragma: no cover - protocol stub
        ...

    def estimate(self, text: str) -> int:  # pragma: no cover - protocol stub
        ...


class ApproxByteCounter:
    """Deterministic counter that estimates tokens via byte length."""

    def __init__(self, *, model_name: str | None = None, charset: str = "utf-8", bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN) -> None:
        self.model_name = model_name
        self._charset = charset
        self._bytes_per_token = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        data = text.encode(self._charset, errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))


class TiktokenCounter:
    """Token counter backed by OpenAI's tiktoken encodings."""

    def __init__(self, model_name: str, *, encoding_name: str | None = None) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        self.model_name = model_name
        self._encoding = self._load_encoding(model_name, encoding_name)
        self._fallback = ApproxByteCounter(model_name=model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._encoding.encode(text, disallowed_special=()))

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    @staticmethod
    def _load_encoding(model_name: str, encoding_name: str | None) -> tiktoken.Encoding:
        try:
            if encoding_name:
                return tiktoken.get_encoding(encoding_name)
            return tiktoken.encoding_for_model(model_name)
        except Exception:
            LOGGER.debug("No tiktoken encoding loaded for %s; using %s", model_name, _FALLBACK_ENCODING)
            return tiktoken.get_encoding(_FALLBACK_ENCODING)


class TokenCounterRegistry:
    """Registry maintaining tokenizer implementations per model."""

    _shared: TokenCounterRegistry | None = None

    def __init__(self, *, fallback: TokenCounterProtocol | None = None) -> None:
        self._fallback = fallback or ApproxByteCounter()
        self._counters: Dict[str, TokenCounterProtocol] = {}

    @classmethod
    def global_instance(cls) -> "TokenCounterRegistry":
        if cls._shared is None:
            cls._shared = TokenCounterRegistry()
        return cls._shared

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        key = self._normalize_key(model_name)
        if not key:
            raise ValueError("model_name is required for token counter registration")
        self._counters[key] = counter

    def has(self, model_name: str | None) -> bool:
        key = self._normalize_key(model_name)
        return bool(key and key in self._counters)

    def get(self, model_name: str | None = None) -> TokenCounterProtocol:
        key = self._normalize_key(model_name)
        if key and key in self._counters:
            return self._counters[key]
        return self._fallback

    def ensure(self, model_name: str | None) -> TokenCounterProtocol:
        """Return the counter for ``model_name``, registering a tiktoken one on first use."""

        key = self._normalize_key(model_name)
        if not key:
            return self._fallback
        if key not in self._counters:
            try:
                self._counters[key] = TiktokenCounter(key)
            except Exception as exc:
                LOGGER.warning("Unable to load a tiktoken encoding for %s, estimating tokens instead: %s", key, exc)
                self._counters[key] = ApproxByteCounter(model_name=key)
        return self._counters[key]

    def count(self, model_name: str | None, text: str) -> int:
        counter = self.ensure(model_name)
        try:
            return counter.count(text)
        except Exception:
            LOGGER.debug("Token counter failed; falling back to estimate", exc_info=True)
            return counter.estimate(text)

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    @staticmethod
    def _normalize_key(model_name: str | None) -> str:
        return (model_name or "").strip().lower()


__all__ = [
    "TokenCounterProtocol",
    "ApproxByteCounter",
    "TiktokenCounter",
    "TokenCounterRegistry",
]
