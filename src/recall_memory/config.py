"""Memory engine configuration models and YAML loading."""

from __future__ import annotations

import os
import re
from typing import Any, Literal

import chardet
import yaml
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, model_validator

from .models import SearchMode


class CoreBlockConfig(BaseModel):
    """Declaration of a core memory block created on first initialization."""

    key: str
    description: str
    default_content: str = ""
    read_only: bool = False


DEFAULT_CORE_BLOCKS: list[CoreBlockConfig] = [
    CoreBlockConfig(
        key="user",
        description=(
            "Everything about the user who chats with AI "
            "(preferences, background, goals)"
        ),
        default_content="No information available",
    ),
    CoreBlockConfig(
        key="ai",
        description="Everything about the AI (identity, capabilities, constraints)",
        default_content=(
            "I am an AI assistant focused on helping users while maintaining "
            "a professional and friendly demeanor.\n"
            "I can assist with coding tasks, answer questions, provide "
            "explanations, and help manage information through my memory "
            "system.\n"
            "I must respect user privacy, maintain professional boundaries, "
            "and operate within ethical guidelines."
        ),
        read_only=True,
    ),
]


class StorageConfig(BaseModel):
    """Session state storage configuration."""

    backend: Literal["memory", "sqlite"] = "sqlite"
    sqlite_db_path: str = "./memory/recall.db"

    @model_validator(mode="after")
    def _validate_paths(self) -> "StorageConfig":
        normalized = os.path.normpath(self.sqlite_db_path)
        parts = normalized.replace("\\", "/").split("/")
        if ".." in parts:
            raise ValueError(
                f"sqlite_db_path must not contain '..' components: "
                f"{self.sqlite_db_path!r}"
            )
        self.sqlite_db_path = normalized
        return self


class EmbeddingConfig(BaseModel):
    """Embedding model configuration."""

    provider: str = "local"
    model: str = "nomic-ai/nomic-embed-text-v2-moe"
    dimension: int = 768
    trust_remote_code: bool = False


class RetrievalConfig(BaseModel):
    """Archive search defaults."""

    mode: SearchMode = SearchMode.HYBRID
    limit: int = Field(default=20, gt=0)
    vector_weight: float = 0.7
    text_weight: float = 0.3
    min_score: float | None = None


class MemoryConfig(BaseModel):
    """Top-level memory engine configuration."""

    chat_token_limit: int = Field(default=10000, gt=0)
    max_context_size: int = Field(default=20000, gt=0)  # informational ceiling
    core_block_token_limit: int = Field(default=2000, gt=0)
    tokenizer_model: str = "gpt-4o"
    core_blocks: list[CoreBlockConfig] = Field(
        default_factory=lambda: [b.model_copy() for b in DEFAULT_CORE_BLOCKS]
    )
    storage: StorageConfig = Field(default_factory=StorageConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)

    @model_validator(mode="after")
    def _validate_core_blocks(self) -> "MemoryConfig":
        keys = [block.key for block in self.core_blocks]
        duplicates = sorted({k for k in keys if keys.count(k) > 1})
        if duplicates:
            raise ValueError(f"Duplicate core block keys: {duplicates}")
        return self


def load_text_file_with_guess_encoding(file_path: str) -> str | None:
    """Load a text file, guessing its encoding when it is not UTF-8."""
    for encoding in ("utf-8", "utf-8-sig"):
        try:
            with open(file_path, "r", encoding=encoding) as file:
                return file.read()
        except UnicodeDecodeError:
            continue

    with open(file_path, "rb") as file:
        raw_data = file.read()
    detected = chardet.detect(raw_data)
    if detected["encoding"]:
        return raw_data.decode(detected["encoding"])
    logger.error(f"Could not detect encoding for config file {file_path}")
    return None


def read_yaml(config_path: str) -> dict[str, Any]:
    """Read a YAML file, replacing ``${VAR}`` with environment values.

    Unset variables are left as-is.

    Raises:
        FileNotFoundError: If the configuration file does not exist.
        IOError: If the file could not be decoded.
    """
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    content = load_text_file_with_guess_encoding(config_path)
    if content is None:
        raise IOError(f"Failed to read configuration file: {config_path}")

    pattern = re.compile(r"\$\{(\w+)\}")

    def replacer(match: re.Match) -> str:
        return os.getenv(match.group(1), match.group(0))

    content = pattern.sub(replacer, content)

    try:
        return yaml.safe_load(content) or {}
    except yaml.YAMLError as e:
        logger.critical(f"Error parsing YAML file: {e}")
        raise


def _format_validation_error(error: ValidationError) -> str:
    lines = []
    for err in error.errors():
        location = " -> ".join(str(loc) for loc in err["loc"]) or "<root>"
        lines.append(f"  - '{location}': {err['msg']} (type: {err['type']})")
    return "\n".join(lines)


def load_memory_config(config_path: str, section: str | None = None) -> MemoryConfig:
    """Load and validate a :class:`MemoryConfig` from a YAML file.

    Args:
        config_path: Path to the YAML file
        section: Optional top-level key holding the memory settings

    Returns:
        Validated configuration
    """
    data = read_yaml(config_path)
    if section is not None:
        data = data.get(section) or {}

    try:
        return MemoryConfig(**data)
    except ValidationError as e:
        logger.critical(
            f"Memory configuration validation failed ({config_path}):\n"
            f"{_format_validation_error(e)}"
        )
        raise
