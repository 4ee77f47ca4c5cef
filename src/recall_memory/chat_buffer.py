"""Token-budgeted chat buffer with summarizing compaction.

The buffer holds the ordered turns of one conversation thread. Index 0, when
present, is the system turn carrying the rendered core memory. After every
append (and every budget change) the buffer is compacted until it fits:

- the first and last turns are kept
- everything in between is summarized into one system turn
- the loop repeats while still over budget

Compaction works on a copy and only replaces the live buffer after the new
sequence has been persisted, so a failed or cancelled summarization leaves
the buffer and its stored copy untouched.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Iterable, Sequence

from loguru import logger

from .interfaces import Summarize
from .models import Role, Turn
from .token_counter import TokenCounter

PersistTurns = Callable[[list[Turn]], Awaitable[None]]


class ChatBuffer:
    """Ordered, token-budgeted sequence of conversation turns.

    Attributes:
        token_limit: Maximum total tokens held after any mutation completes
        token_counter: Token counter used for every budget check
    """

    def __init__(
        self,
        token_limit: int,
        token_counter: TokenCounter,
        summarize: Summarize,
        persist: PersistTurns,
    ) -> None:
        """Initialize the buffer.

        Args:
            token_limit: Maximum token budget for the buffer
            token_counter: Token counter instance
            summarize: Async callable ``(turns, previous_summary) -> str``
            persist: Async callable storing the full turn list
        """
        if token_limit <= 0:
            raise ValueError(f"token_limit must be positive, got {token_limit}")
        self._token_limit = token_limit
        self.token_counter = token_counter
        self._summarize = summarize
        self._persist = persist
        self._turns: list[Turn] = []

        logger.debug(f"ChatBuffer initialized with token_limit={token_limit}")

    @property
    def token_limit(self) -> int:
        return self._token_limit

    @property
    def turns(self) -> list[Turn]:
        """Copy of the current turns."""
        return self._turns.copy()

    def __len__(self) -> int:
        return len(self._turns)

    def total_tokens(self) -> int:
        return self.token_counter.count_turns(self._turns)

    def load(self, turns: Sequence[Turn]) -> None:
        """Adopt a stored turn sequence verbatim, without compaction."""
        self._turns = list(turns)
        logger.debug(f"Loaded {len(self._turns)} turns into chat buffer")

    async def reset(self, system_text: str) -> None:
        """Replace the buffer with a single system turn and persist it."""
        turns = [Turn.system(system_text)]
        await self._persist(turns)
        self._turns = turns

    async def set_system_text(self, system_text: str) -> bool:
        """Re-render turn 0 if it is a system turn.

        Returns:
            True if the turn was replaced and persisted
        """
        if not self._turns or self._turns[0].role != Role.SYSTEM:
            return False
        turns = [Turn.system(system_text), *self._turns[1:]]
        await self._persist(turns)
        self._turns = turns
        return True

    async def append(self, turns: Turn | Iterable[Turn]) -> None:
        """Append turns in order, compact to budget, then persist."""
        new_turns = [turns] if isinstance(turns, Turn) else list(turns)
        if not new_turns:
            return

        working = [*self._turns, *new_turns]
        logger.debug(
            f"Appending {len(new_turns)} turns "
            f"(buffer={len(working)} turns, limit={self._token_limit})"
        )
        working = await self._compact(working)
        await self._persist(working)
        self._turns = working

    async def set_token_limit(self, token_limit: int) -> None:
        """Change the budget and compact immediately if now over it."""
        if token_limit <= 0:
            raise ValueError(f"token_limit must be positive, got {token_limit}")
        previous = self._token_limit
        self._token_limit = token_limit
        try:
            working = await self._compact(self._turns)
            if working is not self._turns:
                await self._persist(working)
                self._turns = working
        except BaseException:
            self._token_limit = previous
            raise

    async def _compact(self, turns: list[Turn]) -> list[Turn]:
        """Summarize the middle of ``turns`` until they fit the budget.

        Returns the input list itself when no compaction was needed.
        """
        working = turns
        while self.token_counter.count_turns(working) > self._token_limit:
            middle = working[1:-1]
            if not middle:
                logger.warning(
                    "Chat buffer over budget but nothing left to compact "
                    f"({len(working)} turns)"
                )
                break

            previous_summary = None
            to_summarize: list[Turn] = []
            for turn in middle:
                if turn.is_summary:
                    previous_summary = turn.summary_text()
                else:
                    to_summarize.append(turn)

            first, last = working[0], working[-1]
            if not to_summarize:
                # Only an earlier summary sits between the endpoints.
                logger.warning(
                    "Dropping conversation summary: endpoints alone exceed "
                    f"the {self._token_limit} token budget"
                )
                working = [first, last]
                break

            summary = await self._summarize(to_summarize, previous_summary)
            working = [first, Turn.summary(summary), last]
            logger.info(
                f"Compacted {len(middle)} turns into a summary "
                f"(tokens={self.token_counter.count_turns(working)}"
                f"/{self._token_limit})"
            )
        return working
