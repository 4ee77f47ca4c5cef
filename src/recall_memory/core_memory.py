"""Validated, token-budgeted core memory blocks."""

from __future__ import annotations

from typing import Awaitable, Callable, Iterable

from loguru import logger

from .config import CoreBlockConfig
from .exceptions import BudgetExceededError
from .models import CoreBlock, CoreMemorySnapshot
from .token_counter import TokenCounter

AGENT_PROMPT = """\
You are an AI assistant with a persistent, self-managed memory.

Your memory has three layers:
- Core memory: the blocks below are always visible to you. Keep them \
accurate and concise with the core memory tools.
- Chat history: recent messages. Older messages are replaced by a summary \
when the conversation grows too long.
- Archival memory: an unbounded store outside your context. Insert facts \
worth keeping and search it when you need to recall something.
"""

EMPTY_CORE_MEMORY = "No core memory available"
BLOCK_DELIMITER = "\n---\n"

PersistSnapshot = Callable[[CoreMemorySnapshot], Awaitable[None]]


class CoreMemoryStore:
    """Key to :class:`CoreBlock` store with a per-block token budget.

    Updates are all-or-nothing: an oversized write raises
    :class:`BudgetExceededError` before anything changes, and the new
    snapshot replaces the live one only after it has been persisted.
    Rendering follows block insertion order.
    """

    def __init__(
        self,
        token_counter: TokenCounter,
        block_token_limit: int,
        persist: PersistSnapshot,
        preamble: str = AGENT_PROMPT,
    ):
        self._token_counter = token_counter
        self.block_token_limit = block_token_limit
        self._persist = persist
        self._preamble = preamble
        self._blocks: CoreMemorySnapshot = {}

    def load(self, snapshot: CoreMemorySnapshot | None) -> None:
        self._blocks = {
            key: block.model_copy(deep=True)
            for key, block in (snapshot or {}).items()
        }

    def get(self) -> CoreMemorySnapshot:
        return {key: block.model_copy(deep=True) for key, block in self._blocks.items()}

    def __contains__(self, key: str) -> bool:
        return key in self._blocks

    def __len__(self) -> int:
        return len(self._blocks)

    async def update(
        self, key: str, content: str, description: str | None = None
    ) -> CoreBlock:
        """Upsert a block after checking its token budget.

        Args:
            key: Block name
            content: New block content
            description: New description; the previous one is kept if None

        Returns:
            The stored block

        Raises:
            BudgetExceededError: If content exceeds the block token limit
        """
        tokens = self._token_counter.count(content)
        if tokens > self.block_token_limit:
            raise BudgetExceededError(key, tokens, self.block_token_limit)

        existing = self._blocks.get(key)
        if description is None:
            description = existing.description if existing else ""
        block = CoreBlock(
            key=key,
            description=description,
            content=content,
            read_only=existing.read_only if existing else False,
        )

        snapshot = {**self._blocks, key: block}
        await self._persist(snapshot)
        self._blocks = snapshot

        logger.debug(f"Core block updated: key={key}, tokens={tokens}")
        return block.model_copy(deep=True)

    async def apply_defaults(self, configs: Iterable[CoreBlockConfig]) -> list[str]:
        """Create configured blocks that do not exist yet.

        Existing blocks are never overwritten. Defaults are stored as declared;
        the block token limit only applies to later updates.

        Returns:
            Keys of the blocks that were created
        """
        created = []
        for config in configs:
            if config.key in self._blocks:
                continue
            block = CoreBlock(
                key=config.key,
                description=config.description,
                content=config.default_content,
                read_only=config.read_only,
            )
            snapshot = {**self._blocks, config.key: block}
            await self._persist(snapshot)
            self._blocks = snapshot
            created.append(config.key)

        if created:
            logger.info(f"Created default core blocks: {created}")
        return created

    def render(self) -> str:
        """Render the preamble and all blocks as system turn text."""
        if self._blocks:
            entries = BLOCK_DELIMITER.join(
                f"Name: {key}\n"
                f"Description: {block.description}\n"
                f"Content: {block.content}"
                for key, block in self._blocks.items()
            )
        else:
            entries = EMPTY_CORE_MEMORY
        return f"{self._preamble}\n\nCore Memory:\n{entries}\n\n"
