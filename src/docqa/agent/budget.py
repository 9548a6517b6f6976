"""Token estimation and context pruning for the reasoning loop."""

from __future__ import annotations

import math
import re
from collections.abc import Callable

from docqa.config import TokenBudgetConfig

_CJK_RE = re.compile(r"[一-鿿]")
PRUNE_MARKER = "\n\n...[earlier context omitted to fit the token budget]...\n\n"
_HEAD_SHARE = 0.3
_TAIL_SHARE = 0.5


class TokenBudgetManager:
    """Estimates token usage and bounds accumulated context to its allocation."""

    def __init__(self, config: TokenBudgetConfig | None = None) -> None:
        self.config = config or TokenBudgetConfig()

    @property
    def allocation(self) -> dict[str, int]:
        return {
            "system": self.config.system_tokens,
            "history": self.config.history_tokens,
            "context": self.config.context_tokens,
            "response": self.config.response_tokens,
        }

    @staticmethod
    def estimate(text: str) -> int:
        """CJK characters count 1.5 tokens, everything else 0.25."""
        if not text:
            return 0
        cjk = len(_CJK_RE.findall(text))
        return math.ceil(cjk * 1.5 + (len(text) - cjk) * 0.25)

    def is_over_budget(self, sections: dict[str, str]) -> bool:
        used = sum(
            min(self.allocation.get(name, 0), self.estimate(text)) for name, text in sections.items()
        )
        return used > self.config.total_tokens

    def context_exceeds(self, context: str) -> bool:
        return self.estimate(context) > self.config.context_tokens

    def remaining_context_budget(self, system_prompt: str, history: str) -> int:
        used = self.estimate(system_prompt) + self.estimate(history)
        return max(0, self.config.context_tokens - used)

    def prune(self, context: str, max_tokens: int | None = None) -> str:
        """Keep a head slice (30%) and the newest tail (50%) around a marker.

        The character target starts at 2.5 characters per token and shrinks
        until the estimate fits, so the result never exceeds `max_tokens`.
        """
        limit = self.config.context_tokens if max_tokens is None else max_tokens
        if self.estimate(context) <= limit:
            return context
        if limit <= self.estimate(PRUNE_MARKER):
            return _fit_prefix(context, limit, self.estimate)

        target_chars = int(limit * 2.5)
        while target_chars > 0:
            head = context[: int(target_chars * _HEAD_SHARE)]
            tail_len = int(target_chars * _TAIL_SHARE)
            tail = context[len(context) - tail_len :] if tail_len else ""
            pruned = head + PRUNE_MARKER + tail
            if self.estimate(pruned) <= limit:
                return pruned
            target_chars = int(target_chars * 0.8)
        return _fit_prefix(PRUNE_MARKER, limit, self.estimate)


def _fit_prefix(text: str, limit: int, estimate: Callable[[str], int]) -> str:
    # Worst case is 1.5 tokens per character.
    size = min(len(text), int(limit / 1.5))
    while size > 0 and estimate(text[:size]) > limit:
        size -= 1
    return text[:size]
