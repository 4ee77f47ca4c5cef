"""Token counting for budget management."""

from __future__ import annotations

import json
from typing import Any, Iterable, Protocol

import tiktoken
from loguru import logger

from .exceptions import TokenizerUnavailableError
from .models import TextPart, Turn

FALLBACK_ENCODING = "o200k_base"


class Encoder(Protocol):
    def encode(self, text: str) -> Any: ...


class TokenCounter:
    """Counts tokens with one fixed tokenizer for its whole lifetime.

    There is no character-based estimation: if the tokenizer cannot be
    loaded the budget could not be verified, so construction fails.
    Owned by a single engine and released with :meth:`close`.
    """

    def __init__(self, model: str = "gpt-4o", encoder: Encoder | None = None):
        self._model = model
        if encoder is None:
            encoder = self._load_encoder(model)
        self._encoder: Encoder | None = encoder

    @staticmethod
    def _load_encoder(model: str) -> Encoder:
        try:
            try:
                return tiktoken.encoding_for_model(model)
            except KeyError:
                logger.debug(
                    f"No tiktoken mapping for model {model!r}, "
                    f"using {FALLBACK_ENCODING}"
                )
                return tiktoken.get_encoding(FALLBACK_ENCODING)
        except Exception as e:
            raise TokenizerUnavailableError(
                f"Failed to load tokenizer for model {model!r}: {e}"
            ) from e

    @property
    def model(self) -> str:
        return self._model

    @property
    def closed(self) -> bool:
        return self._encoder is None

    def count(self, text: str) -> int:
        """Count tokens in a text string."""
        if self._encoder is None:
            raise TokenizerUnavailableError("TokenCounter has been closed")
        if not text:
            return 0
        try:
            return len(self._encoder.encode(text))
        except Exception as e:
            raise TokenizerUnavailableError(f"Tokenization failed: {e}") from e

    def count_turn(self, turn: Turn) -> int:
        """Count tokens of one turn.

        Text parts count as text; tool-call and tool-result parts count over
        their canonical JSON form so the result is reproducible.
        """
        if isinstance(turn.content, str):
            return self.count(turn.content)

        total = 0
        for part in turn.content:
            if isinstance(part, TextPart):
                total += self.count(part.text)
            else:
                serialized = json.dumps(
                    part.model_dump(mode="json"),
                    sort_keys=True,
                    separators=(",", ":"),
                    ensure_ascii=False,
                )
                total += self.count(serialized)
        return total

    def count_turns(self, turns: Iterable[Turn]) -> int:
        """Count total tokens over a sequence of turns."""
        return sum(self.count_turn(turn) for turn in turns)

    def close(self) -> None:
        """Release the encoder."""
        self._encoder = None

    def __enter__(self) -> "TokenCounter":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
