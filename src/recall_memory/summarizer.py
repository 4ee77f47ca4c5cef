"""Conversation summarization used by chat buffer compaction."""

from __future__ import annotations

from typing import Any

from loguru import logger

from .exceptions import SummarizationError
from .interfaces import ChatLLM
from .models import Role, Turn

CONVERSATION_SYSTEM_PROMPT = (
    "You are a professional conversation summarizer. "
    "You write clear, concise, and accurate summaries that capture the key "
    "points and context of conversations. "
    "Focus on the main themes, important details, and any decisions or "
    "actions discussed."
)

DOCUMENT_SYSTEM_PROMPT = (
    "You are a professional summarizer. "
    "You write clear, concise, and accurate summaries."
)


class ConversationSummarizer:
    """Summarizes runs of chat turns through a streaming chat LLM.

    Instances are callable as ``await summarizer(turns, previous_summary)``
    so they can be handed to :class:`~recall_memory.chat_buffer.ChatBuffer`
    directly.
    """

    def __init__(self, llm: ChatLLM):
        self._llm = llm

    async def __call__(
        self, turns: list[Turn], previous_summary: str | None = None
    ) -> str:
        return await self.summarize(turns, previous_summary)

    @staticmethod
    def format_turns(turns: list[Turn]) -> str:
        """Render turns as ``role: text`` lines.

        Tool turns are skipped and only text parts are kept, since tool
        payloads do not summarize as prose.
        """
        lines = []
        for turn in turns:
            if turn.role == Role.TOOL:
                continue
            text = turn.text()
            if not text:
                continue
            lines.append(f"{turn.role.value}: {text}")
        return "\n".join(lines)

    async def summarize(
        self, turns: list[Turn], previous_summary: str | None = None
    ) -> str:
        """Summarize turns, folding in an earlier summary when given."""
        messages_text = self.format_turns(turns)
        if previous_summary:
            context = (
                f"Previous Summary: {previous_summary}\n\n"
                f"New Messages:\n{messages_text}"
            )
        else:
            context = f"Messages:\n{messages_text}"

        prompt = (
            "Given the following conversation, provide a comprehensive summary "
            "that captures the main themes and important points:\n\n"
            f"{context}"
        )
        summary = await self._complete(prompt, CONVERSATION_SYSTEM_PROMPT)
        logger.debug(
            f"Summarized {len(turns)} turns into {len(summary)} characters "
            f"(seeded={previous_summary is not None})"
        )
        return summary

    async def summarize_text(self, context: str) -> str:
        """Summarize the main themes of retrieved documents."""
        prompt = (
            "Summarize the main themes in these retrieved docs in a clear "
            f"and concise way: {context}"
        )
        return await self._complete(prompt, DOCUMENT_SYSTEM_PROMPT)

    async def _complete(self, prompt: str, system: str) -> str:
        messages: list[dict[str, Any]] = [{"role": "user", "content": prompt}]
        response_parts: list[str] = []
        try:
            stream = self._llm.chat_completion(messages=messages, system=system)
            async for chunk in stream:
                if isinstance(chunk, str):
                    response_parts.append(chunk)
                elif isinstance(chunk, dict) and chunk.get("type") == "text_delta":
                    response_parts.append(chunk.get("text", ""))
        except Exception as e:
            logger.error(f"Summarization call failed: {e}")
            raise SummarizationError(f"Summarization call failed: {e}") from e

        return "".join(response_parts).strip()
