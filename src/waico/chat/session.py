"""Chat session: conversation history on top of a shared ChatModel."""

from __future__ import annotations

import logging
from typing import Iterator, Protocol

from waico.errors import MaxTokensExceededError

logger = logging.getLogger(__name__)

MAX_TOKEN_COUNT = 4096
# Left free so the reply still fits once the prompt is accepted
RESERVED_TOKEN_COUNT = 300


class ChatProvider(Protocol):
    def count_tokens(self, text: str) -> int: ...

    def stream(self, messages: list[dict[str, str]]) -> Iterator[str]: ...


class ChatSession:
    def __init__(
        self,
        model: ChatProvider,
        system_prompt: str | None = None,
        max_tokens: int = MAX_TOKEN_COUNT,
        reserved_tokens: int = RESERVED_TOKEN_COUNT,
    ):
        self._model = model
        self._system_prompt = system_prompt
        self._max_tokens = max_tokens
        self._reserved_tokens = reserved_tokens
        self._history: list[dict[str, str]] = []
        self._token_count = 0

    @property
    def history(self) -> list[dict[str, str]]:
        return list(self._history)

    @property
    def token_count(self) -> int:
        return self._token_count

    def reset(self) -> None:
        self._history = []
        self._token_count = 0

    def _messages(self) -> list[dict[str, str]]:
        if self._system_prompt:
            return [{"role": "system", "content": self._system_prompt}, *self._history]
        return list(self._history)

    def send(self, prompt: str) -> Iterator[str]:
        """Stream the reply to *prompt*; both end up in the history.

        Raises MaxTokensExceededError before generating when the prompt
        would not leave ``reserved_tokens`` for the reply.
        """
        prompt_tokens = self._model.count_tokens(prompt)
        total = self._token_count + prompt_tokens
        if total >= self._max_tokens - self._reserved_tokens:
            raise MaxTokensExceededError(
                f"Maximum token count exceeded. Current: {total}, "
                f"Max: {self._max_tokens}, Reserved: {self._reserved_tokens}"
            )

        self._history.append({"role": "user", "content": prompt})
        self._token_count = total

        parts: list[str] = []
        try:
            for chunk in self._model.stream(self._messages()):
                parts.append(chunk)
                yield chunk
        except Exception:
            # Keep the history consistent: no user turn without its reply
            self._history.pop()
            self._token_count -= prompt_tokens
            raise

        reply = "".join(parts).strip()
        self._history.append({"role": "assistant", "content": reply})
        self._token_count += self._model.count_tokens(reply)
