"""
The ``memory`` tool: search, store, list and forget long-term memories.

Stores go through the async memory queue when one is configured and return immediately; every
other operation calls the memory service synchronously.
"""

import json
import logging
from typing import (
    Any,
    Dict,
    Optional,
)

from pydantic import (
    BaseModel,
    Field,
)

from relay.core.schema import (
    ToolCallPart,
    ToolResponse,
)
from relay.core.scope import Scope
from relay.services import (
    Memory,
    MemoryCategory,
    MemoryQueue,
    MemoryService,
)
from relay.tools import (
    AgentTool,
    ToolContext,
    parse_params,
    pydantic_parameters,
    register_tool,
)

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
VALID_OPERATIONS = "search, store, list, forget"


class MemoryParams(BaseModel):
    """Input for the memory tool."""

    operation: str = Field(
        ..., description="The memory operation to perform: 'search', 'store', 'list', 'forget'"
    )
    query: str = Field("", description="For 'search': the semantic search query")
    content: str = Field("", description="For 'store': the memory content to store")
    category: str = Field(
        "",
        description=(
            "For 'store': the memory category (preference, fact, correction, pattern). "
            "Default: fact"
        ),
    )
    id: str = Field("", description="For 'forget': the memory ID (or prefix) to forget")
    limit: int = Field(
        0, description="For 'search' or 'list': maximum number of results. Default: 10"
    )


class MemoryTool(AgentTool):
    """Manage persistent memories across sessions."""

    name = "memory"
    description = (
        "Manage persistent memories that persist across sessions. Use 'search' to find relevant "
        "memories, 'store' to save new information, 'list' to see all memories, or 'forget' to "
        "remove memories."
    )

    def __init__(
        self,
        service: Optional[MemoryService] = None,
        queue: Optional[MemoryQueue] = None,
        agent_handle: str = "",
    ):
        self.service = service
        self.queue = queue
        self.agent_handle = agent_handle

    def parameters(self) -> Dict[str, Any]:
        schema = pydantic_parameters(MemoryParams)
        schema["required"] = ["operation"]
        return schema

    def run(self, scope: Scope, call: ToolCallPart) -> ToolResponse:
        params = parse_params(call, MemoryParams)
        if isinstance(params, ToolResponse):
            return params

        operation = params.operation
        limit = params.limit if params.limit > 0 else DEFAULT_LIMIT
        if operation == "store":
            if not params.content:
                return ToolResponse.error("content is required for store operation")
            if self.queue is not None:
                request_id = self.queue.enqueue(
                    params.content, MemoryCategory.parse(params.category), self.agent_handle
                )
                return ToolResponse.text(
                    json.dumps(
                        {
                            "queued": True,
                            "request_id": request_id,
                            "message": "Memory queued for storage",
                        }
                    )
                )
        elif operation == "search":
            if not params.query:
                return ToolResponse.error("query is required for search operation")
        elif operation == "forget":
            if not params.id:
                return ToolResponse.error("id is required for forget operation")
        elif operation != "list":
            return ToolResponse.error(
                f"unknown operation: {operation}. Valid operations: {VALID_OPERATIONS}"
            )

        if self.service is None:
            return ToolResponse.error("memory service is not available")

        try:
            return ToolResponse.text(self._run_sync(self.service, params, limit, scope))
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Memory %s failed", operation)
            return ToolResponse.error(f"memory operation failed: {exc}")

    def _run_sync(
        self, service: MemoryService, params: MemoryParams, limit: int, scope: Scope
    ) -> str:
        if params.operation == "search":
            results = service.search(params.query, self.agent_handle, limit=limit)
            return json.dumps(
                [
                    {**r.memory.model_dump(mode="json"), "similarity": round(r.similarity, 4)}
                    for r in results
                ]
            )
        if params.operation == "store":
            memory = service.create(
                Memory(
                    content=params.content,
                    category=MemoryCategory.parse(params.category),
                    agent_handle=self.agent_handle,
                    source_session_id=scope.session_id or "",
                )
            )
            return memory.model_dump_json()
        if params.operation == "list":
            memories = service.list(self.agent_handle, limit=limit)
            return json.dumps([m.model_dump(mode="json") for m in memories])
        service.forget(params.id)
        return json.dumps({"forgotten": params.id})


@register_tool("memory")
def _memory(context: ToolContext) -> AgentTool:
    return MemoryTool(
        context.memory_service,
        context.memory_queue,
        agent_handle=context.extras.get("agent_handle", ""),
    )
