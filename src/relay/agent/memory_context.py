"""Retrieved memories injected into the system prompt."""

import logging
from typing import (
    List,
    Optional,
)

from relay.core.schema import AgentDefinition
from relay.services import (
    MemorySearchResult,
    MemoryService,
)

logger = logging.getLogger(__name__)

RETRIEVAL_THRESHOLD = 0.5
DEFAULT_RETRIEVAL_LIMIT = 10


def format_memory_section(results: List[MemorySearchResult], agent_handle: str) -> str:
    """Render *results* as a ``<user_context>`` block; empty when there is nothing to show."""
    if not results:
        return ""
    lines = [
        "<user_context>\n",
        "The following memories were retrieved from previous interactions with this user.\n",
        "Use this context to provide more personalized and contextual responses.\n\n",
    ]
    for index, result in enumerate(results, start=1):
        memory = result.memory
        lines.append(f"{index}. [{memory.category.value}] {memory.content}\n")
        if memory.agent_handle and memory.agent_handle != agent_handle:
            lines.append(f"   (from: {memory.agent_handle})\n")
    lines.append("</user_context>\n")
    return "".join(lines)


def build_memory_section(
    service: Optional[MemoryService], agent: AgentDefinition, query: str
) -> str:
    """
    Search memories relevant to *query* for *agent*.

    Retrieval is best effort: a disabled agent, a missing service or a failed search all yield an
    empty section.
    """
    if service is None or not agent.memory.enabled or not agent.memory.auto_inject:
        return ""
    if not query.strip():
        return ""
    limit = agent.memory.retrieval_limit or DEFAULT_RETRIEVAL_LIMIT
    try:
        results = service.search(query, "", threshold=RETRIEVAL_THRESHOLD, limit=limit)
    except Exception:  # pylint: disable=broad-except
        logger.debug("Memory retrieval failed for %s", agent.handle, exc_info=True)
        return ""
    return format_memory_section(results, agent.handle)


def inject_memory_section(system_prompt: str, section: str) -> str:
    """Append *section* to the system prompt."""
    if not section:
        return system_prompt
    return f"{system_prompt}\n\n{section}"
