"""Token counting and truncation matched to the model family."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import structlog

log = structlog.get_logger()

# Remote models tokenize server-side; budget input by characters instead.
REMOTE_CHARS_PER_TOKEN = 4


@dataclass(frozen=True, slots=True)
class TokenFit:
    """Text cut to fit a token budget."""

    text: str
    token_count: int
    truncated: bool


class TokenCounter(Protocol):
    def fit(self, text: str, max_tokens: int) -> TokenFit:
        """Count tokens and cut ``text`` so it fits ``max_tokens``."""
        ...


class HuggingFaceTokenizer:
    """Exact tokenization with the model's own tokenizer.

    The reported token count includes special tokens, so a truncated input
    always reports exactly ``max_tokens``.
    """

    def __init__(self, tokenizer: object, name: str = "") -> None:
        self._tok = tokenizer
        self.name = name

    @classmethod
    def from_pretrained(cls, name: str) -> HuggingFaceTokenizer:
        from tokenizers import Tokenizer

        tok = Tokenizer.from_pretrained(name)
        # tokenizer.json may ship with truncation/padding baked in; we count raw length
        tok.no_truncation()
        tok.no_padding()
        log.debug("tokenizer.loaded", name=name)
        return cls(tok, name)

    def fit(self, text: str, max_tokens: int) -> TokenFit:
        enc = self._tok.encode(text)  # type: ignore[attr-defined]
        total = len(enc.ids)
        if total <= max_tokens:
            return TokenFit(text=text, token_count=total, truncated=False)

        special = sum(enc.special_tokens_mask)
        budget = max(max_tokens - special, 0)
        content_offsets = [
            off for off, is_special in zip(enc.offsets, enc.special_tokens_mask) if not is_special
        ]
        cut = content_offsets[budget - 1][1] if budget > 0 else 0
        return TokenFit(text=text[:cut], token_count=max_tokens, truncated=True)


class CharBudgetTokenizer:
    """Character-budget estimate for backends that tokenize remotely.

    Cuts at the last line boundary inside the budget when there is one.
    """

    def __init__(self, chars_per_token: int = REMOTE_CHARS_PER_TOKEN) -> None:
        self.chars_per_token = chars_per_token

    def fit(self, text: str, max_tokens: int) -> TokenFit:
        estimated = -(-len(text) // self.chars_per_token)
        if estimated <= max_tokens:
            return TokenFit(text=text, token_count=estimated, truncated=False)

        max_chars = max_tokens * self.chars_per_token
        head = text[:max_chars]
        newline = head.rfind("\n")
        if newline > max_chars // 2:
            head = head[:newline]
        return TokenFit(text=head, token_count=max_tokens, truncated=True)
