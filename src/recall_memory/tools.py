"""Memory operations exposed to the model as function tools."""

from __future__ import annotations

from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from .engine import MemoryEngine
from .exceptions import MemoryEngineError


class CoreMemoryAppendArgs(BaseModel):
    block: str = Field(description="The core block to append to")
    content: str = Field(description="The content to append")


class CoreMemoryReplaceArgs(BaseModel):
    block: str = Field(description="The core block to update")
    content: str = Field(description="The new content for the block")


class ArchivalMemorySearchArgs(BaseModel):
    query: str = Field(description="The query to search archive memory")


class ArchivalMemoryInsertArgs(BaseModel):
    name: str = Field(description="The name of the memory")
    content: str = Field(description="The information to archive")


_TOOLS: dict[str, tuple[str, type[BaseModel]]] = {
    "core_memory_append": (
        "Append content to a specific core memory block",
        CoreMemoryAppendArgs,
    ),
    "core_memory_replace": (
        "Update the content of a specific core memory block",
        CoreMemoryReplaceArgs,
    ),
    "archival_memory_search": (
        "Search archive memory for relevant information",
        ArchivalMemorySearchArgs,
    ),
    "archival_memory_insert": (
        "Add new information to archive memory",
        ArchivalMemoryInsertArgs,
    ),
}


class MemoryTools:
    """Adapter between tool calls and a :class:`MemoryEngine`.

    Engine errors and invalid arguments are returned to the model as
    ``{"status": "error", ...}`` so it can correct itself; they never
    propagate out of :meth:`execute`.
    """

    def __init__(self, engine: MemoryEngine):
        self._engine = engine

    @staticmethod
    def names() -> list[str]:
        return list(_TOOLS)

    @staticmethod
    def definitions() -> list[dict[str, Any]]:
        """OpenAI-style function tool schemas."""
        return [
            {
                "type": "function",
                "function": {
                    "name": name,
                    "description": description,
                    "parameters": args_model.model_json_schema(),
                },
            }
            for name, (description, args_model) in _TOOLS.items()
        ]

    async def execute(self, name: str, arguments: dict[str, Any] | str) -> dict[str, Any]:
        """Run a tool call.

        Args:
            name: Tool name from :meth:`definitions`
            arguments: Parsed arguments or their JSON string

        Raises:
            ValueError: If the tool name is unknown
        """
        if name not in _TOOLS:
            raise ValueError(f"Unknown memory tool: {name}")
        _, args_model = _TOOLS[name]

        try:
            if isinstance(arguments, str):
                args = args_model.model_validate_json(arguments or "{}")
            else:
                args = args_model.model_validate(arguments)
            return await getattr(self, f"_{name}")(args)
        except ValidationError as e:
            logger.warning(f"Invalid arguments for tool {name}: {e}")
            return {"status": "error", "message": f"Invalid arguments: {e}"}
        except MemoryEngineError as e:
            logger.warning(f"Memory tool {name} failed: {e}")
            return {"status": "error", "message": str(e)}

    async def _core_memory_append(self, args: CoreMemoryAppendArgs) -> dict[str, Any]:
        await self._engine.append_core_block(args.block, args.content)
        return {
            "status": "success",
            "message": f"Updated {args.block} block with: {args.content}",
        }

    async def _core_memory_replace(self, args: CoreMemoryReplaceArgs) -> dict[str, Any]:
        await self._engine.update_core_block(args.block, args.content)
        return {
            "status": "success",
            "message": f"Updated {args.block} block with: {args.content}",
        }

    async def _archival_memory_search(
        self, args: ArchivalMemorySearchArgs
    ) -> dict[str, Any]:
        results = await self._engine.search_archive(args.query)
        return {
            "status": "success",
            "data": [
                result.model_dump(mode="json", exclude={"entry": {"embedding"}})
                for result in results
            ],
        }

    async def _archival_memory_insert(
        self, args: ArchivalMemoryInsertArgs
    ) -> dict[str, Any]:
        entry = await self._engine.insert_archive_entry(args.name, args.content)
        return {
            "status": "success",
            "data": entry.model_dump(mode="json", exclude={"embedding"}),
        }

