"""Token estimation.

The gateway never needs tokenizer-exact counts, only counts that are
consistent within a process: the same text always costs the same.

Methods:
- "chars":     ceil(len(text) / 4), the fast default
- "heuristic": character estimate blended with a word count in which long,
               non-ASCII or punctuation-bearing words count 1.5 words
- "tiktoken":  cl100k_base encoding (GPT-4 family); model-specific
               encodings are used when tiktoken knows the model id
"""

from __future__ import annotations

import math
import re
from collections.abc import Sequence
from functools import lru_cache
from typing import Literal

import structlog
import tiktoken

log = structlog.get_logger(__name__)

_CHARS_PER_TOKEN = 4
_TOKENIZER_NAME = "cl100k_base"

# Role markers and formatting tokens added per chat message
MESSAGE_OVERHEAD: dict[str, int] = {
    "system": 5,
    "user": 4,
    "assistant": 4,
    "tool": 5,
}
CONVERSATION_OVERHEAD = 3

_NON_ASCII = re.compile(r"[^\x00-\x7F]")
_PUNCTUATION = re.compile(r"[^a-zA-Z0-9\s]")

EstimatorMethod = Literal["chars", "heuristic", "tiktoken"]


@lru_cache(maxsize=32)
def _encoding_for(model_id: str | None) -> tiktoken.Encoding:
    if model_id:
        # LiteLLM ids carry a provider prefix ("openai/gpt-4o")
        bare = model_id.rsplit("/", 1)[-1]
        try:
            return tiktoken.encoding_for_model(bare)
        except KeyError:
            pass
    return tiktoken.get_encoding(_TOKENIZER_NAME)


def estimate_tokens(text: str) -> int:
    """Fast character-based estimate: 0 for empty text, else at least 1."""
    if not text:
        return 0
    return max(1, math.ceil(len(text) / _CHARS_PER_TOKEN))


def _estimate_heuristic(text: str) -> int:
    if not text:
        return 0
    char_estimate = math.ceil(len(text) / _CHARS_PER_TOKEN)
    words = text.split()
    complex_words = sum(
        1
        for w in words
        if len(w) > 10 or _NON_ASCII.search(w) or _PUNCTUATION.search(w)
    )
    word_estimate = len(words) + math.ceil(complex_words * 0.5)
    # Longer text leans more on the word count
    weight = min(len(text) / 500, 1.0)
    estimate = math.ceil(char_estimate * (1 - weight * 0.3) + word_estimate * (weight * 0.3))
    return max(1, estimate)


class TokenEstimator:
    """Synchronous token estimator shared by every gateway component."""

    def __init__(self, method: EstimatorMethod = "chars") -> None:
        self._method = method

    @property
    def method(self) -> EstimatorMethod:
        return self._method

    def estimate(self, text: str, model_id: str | None = None) -> int:
        if not text:
            return 0
        if self._method == "tiktoken":
            return len(_encoding_for(model_id).encode(text, disallowed_special=()))
        if self._method == "heuristic":
            return _estimate_heuristic(text)
        return estimate_tokens(text)

    def estimate_message(self, message: dict[str, str], model_id: str | None = None) -> int:
        """Content tokens plus the role's formatting overhead."""
        overhead = MESSAGE_OVERHEAD.get(message.get("role", ""), 4)
        name = message.get("name")
        name_overhead = math.ceil(len(name) / _CHARS_PER_TOKEN) + 1 if name else 0
        return self.estimate(message.get("content", ""), model_id) + overhead + name_overhead

    def estimate_messages(
        self, messages: Sequence[dict[str, str]], model_id: str | None = None
    ) -> int:
        if not messages:
            return 0
        return CONVERSATION_OVERHEAD + sum(
            self.estimate_message(m, model_id) for m in messages
        )

    def truncate_to_fit(
        self,
        messages: Sequence[dict[str, str]],
        budget: int,
        *,
        keep_first: int = 1,
        model_id: str | None = None,
    ) -> list[dict[str, str]]:
        """Drop middle messages until the list fits budget.

        The first keep_first messages (usually the system prompt) and the
        last message are always kept. Middle messages are admitted newest
        first while they fit; the result stays in chronological order.
        """
        if not messages:
            return []
        if len(messages) <= keep_first + 1 or self.estimate_messages(messages, model_id) <= budget:
            return list(messages)

        head = list(messages[:keep_first])
        last = messages[-1]
        middle = messages[keep_first:-1]

        used = self.estimate_messages(head, model_id)
        available = budget - self.estimate_messages([last], model_id)
        kept: list[dict[str, str]] = []
        for message in reversed(middle):
            cost = self.estimate_message(message, model_id)
            if used + cost <= available:
                kept.append(message)
                used += cost

        result = head + list(reversed(kept)) + [last]
        log.debug(
            "token_estimator.truncated",
            original=len(messages),
            truncated=len(result),
            budget=budget,
        )
        return result
