"""
recall-memory - tiered working memory for conversational agents

Keeps a token-budgeted chat history that compacts itself by summarization,
a small set of core memory blocks rendered into the system turn, and an
archival store searchable by lexical, vector or hybrid ranking.
"""

from .config import CoreBlockConfig, MemoryConfig, RetrievalConfig, load_memory_config
from .embedding import EmbeddingService
from .engine import MemoryEngine, create_engine
from .exceptions import (
    BackendUnavailableError,
    BudgetExceededError,
    EmbeddingFailureError,
    EntryNotFoundError,
    MemoryEngineError,
    NotReadyError,
    StateNotFoundError,
    SummarizationError,
    TokenizerUnavailableError,
)
from .models import (
    ArchiveEntry,
    CoreBlock,
    SearchMode,
    SearchOptions,
    SearchResult,
    SessionState,
    SessionStatus,
    Turn,
)
from .ranking import ArchiveRanker
from .storage import InMemoryStorage, SQLiteArchive, SQLiteStorage
from .summarizer import ConversationSummarizer
from .token_counter import TokenCounter
from .tools import MemoryTools

__all__ = [
    "ArchiveEntry",
    "ArchiveRanker",
    "BackendUnavailableError",
    "BudgetExceededError",
    "ConversationSummarizer",
    "CoreBlock",
    "CoreBlockConfig",
    "EmbeddingFailureError",
    "EmbeddingService",
    "EntryNotFoundError",
    "InMemoryStorage",
    "MemoryConfig",
    "MemoryEngine",
    "MemoryEngineError",
    "MemoryTools",
    "NotReadyError",
    "RetrievalConfig",
    "SQLiteArchive",
    "SQLiteStorage",
    "SearchMode",
    "SearchOptions",
    "SearchResult",
    "SessionState",
    "SessionStatus",
    "StateNotFoundError",
    "SummarizationError",
    "TokenCounter",
    "TokenizerUnavailableError",
    "Turn",
    "create_engine",
    "load_memory_config",
]
