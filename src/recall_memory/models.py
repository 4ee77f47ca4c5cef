"""Core data models for chat turns, core memory and the archive."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

SUMMARY_PREFIX = "Previous conversation summary: "


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolCallPart(BaseModel):
    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)


class ToolResultPart(BaseModel):
    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str
    result: Any = None
    is_error: bool = False


ContentPart = Annotated[
    Union[TextPart, ToolCallPart, ToolResultPart],
    Field(discriminator="type"),
]


class Turn(BaseModel):
    """A single conversation message.

    Content is either plain text or an ordered list of typed parts. Turns
    are frozen; the leading system turn is replaced, never edited.
    """

    model_config = ConfigDict(frozen=True)

    role: Role
    content: Union[str, list[ContentPart]]
    metadata: dict[str, Any] | None = None

    @classmethod
    def system(cls, text: str, **metadata: Any) -> "Turn":
        return cls(role=Role.SYSTEM, content=text, metadata=metadata or None)

    @classmethod
    def user(cls, text: str) -> "Turn":
        return cls(role=Role.USER, content=text)

    @classmethod
    def assistant(cls, text: str) -> "Turn":
        return cls(role=Role.ASSISTANT, content=text)

    @classmethod
    def summary(cls, summary_text: str) -> "Turn":
        """Build the system turn that replaces a compacted run of turns."""
        return cls(
            role=Role.SYSTEM,
            content=f"{SUMMARY_PREFIX}{summary_text}",
            metadata={"summary": True},
        )

    def text(self) -> str:
        """Plain text of the turn; non-text parts are ignored."""
        if isinstance(self.content, str):
            return self.content
        return " ".join(
            part.text
            for part in self.content
            if isinstance(part, TextPart) and part.text
        )

    @property
    def is_summary(self) -> bool:
        return (
            self.role == Role.SYSTEM
            and bool(self.metadata and self.metadata.get("summary"))
            and isinstance(self.content, str)
            and self.content.startswith(SUMMARY_PREFIX)
        )

    def summary_text(self) -> str:
        """Summary body without the fixed prefix."""
        return self.text()[len(SUMMARY_PREFIX):] if self.is_summary else ""


class CoreBlock(BaseModel):
    """A named, size-bounded fact kept in the active context."""

    key: str
    description: str = ""
    content: str = ""
    read_only: bool = False  # advisory only, never enforced


CoreMemorySnapshot = dict[str, CoreBlock]


class ArchiveEntry(BaseModel):
    """An archival memory entry owned by the search backend."""

    id: str | None = None
    name: str
    content: str
    timestamp: datetime = Field(default_factory=_utcnow)
    metadata: dict[str, Any] | None = None
    embedding: list[float] | None = None


class SearchMatches(BaseModel):
    exact_phrase: bool = False
    terms: list[str] = Field(default_factory=list)


class SearchResult(BaseModel):
    """A ranked archive hit with a score in [0, 100]."""

    entry: ArchiveEntry
    score: float = 0.0
    matches: SearchMatches | None = None


class LexicalHit(BaseModel):
    """Raw lexical hit as returned by a search backend."""

    entry: ArchiveEntry


class VectorHit(BaseModel):
    """Raw vector hit; lower distance means more similar."""

    entry: ArchiveEntry
    distance: float


class SearchMode(str, Enum):
    LEXICAL = "lexical"
    VECTOR = "vector"
    HYBRID = "hybrid"


class SearchOptions(BaseModel):
    mode: SearchMode = SearchMode.HYBRID
    limit: int = Field(default=20, gt=0)
    offset: int = Field(default=0, ge=0)
    vector_weight: float = 0.7
    text_weight: float = 0.3
    min_score: float | None = None


class SessionState(BaseModel):
    """The externally persisted unit of a session."""

    chat_history: list[Turn] = Field(default_factory=list)
    core_memory: CoreMemorySnapshot | None = None


class SessionStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    CLOSED = "closed"
