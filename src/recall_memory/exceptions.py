"""Exception types raised by the memory engine and its bundled backends."""


class MemoryEngineError(Exception):
    """Base class for memory engine errors."""

    pass


class BudgetExceededError(MemoryEngineError):
    """A core memory write exceeds the per-block token limit."""

    def __init__(self, key: str, tokens: int, limit: int):
        self.key = key
        self.tokens = tokens
        self.limit = limit
        super().__init__(
            f"Core memory block '{key}' exceeds token limit of {limit} tokens. "
            f"Current: {tokens} tokens."
        )


class NotReadyError(MemoryEngineError):
    """An operation was invoked before the session finished initializing."""

    def __init__(self, status: str):
        self.status = status
        super().__init__(f"Memory session is not ready (status={status})")


class EmbeddingFailureError(MemoryEngineError):
    """Embedding generation failed."""

    pass


class BackendUnavailableError(MemoryEngineError):
    """A storage or search backend call failed."""

    pass


class TokenizerUnavailableError(MemoryEngineError):
    """The tokenizer could not be loaded or has been released."""

    pass


class SummarizationError(MemoryEngineError):
    """The language model failed to produce a conversation summary."""

    pass


class EntryNotFoundError(MemoryEngineError):
    """No archive entry exists under the given id."""

    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Archive entry not found: {entry_id}")


class StateNotFoundError(MemoryEngineError):
    """No persisted session state exists for the given key."""

    def __init__(self, memory_key: str, thread_id: str):
        self.memory_key = memory_key
        self.thread_id = thread_id
        super().__init__(f"Memory state not found: {memory_key}/{thread_id}")
