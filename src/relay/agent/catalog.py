"""
Agent discovery and loading.

An agent lives in a directory named after its handle (``@name``) holding:

* ``config.json``: model, provider, allowed tools, description, memory settings (all optional)
* ``system.md`` (or ``system_file`` from the config): the agent's system prompt
* ``input.jsonschema`` / ``output.jsonschema``: optional structured input / output contracts

Handles are looked up in the user agents directory first, then in installed plugins, then among
the built-in agents shipped with the package.
"""

import json
import logging
import os
import platform
from datetime import datetime
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
)

from pydantic import (
    BaseModel,
    Field,
    ValidationError,
)

from relay.config import settings
from relay.core.schema import (
    AgentDefinition,
    MemorySettings,
)
from relay.tools import DEFAULT_ALLOWED_TOOLS
from relay.tools.delegation import (
    AGENT_CALL_TOOL,
    is_reserved_namespace,
    normalize_handle,
)

logger = logging.getLogger(__name__)

BUILTIN_AGENTS_DIR = os.path.join(os.path.dirname(__file__), "builtin")


class AgentNotFoundError(LookupError):
    """Raised when no agent directory exists for a handle."""


class AgentLoadError(ValueError):
    """Raised when an agent directory exists but cannot be loaded."""


class AgentConfig(BaseModel):
    """Contents of an agent's ``config.json``."""

    model: str = ""
    provider: Optional[str] = None
    system_file: str = ""
    description: str = ""
    delegate_hint: str = ""
    allowed_tools: List[str] = Field(default_factory=list)
    memory: MemorySettings = Field(default_factory=MemorySettings)


class AgentInfo(BaseModel):
    """Summary of a delegatable agent for the tools prompt."""

    handle: str
    description: str = ""
    delegate_hint: str = ""
    plugin: str = ""


# ---------------------------------------------------------------------------
# Prompt building blocks
# ---------------------------------------------------------------------------
def build_environment_context() -> str:
    """``<environment>`` block placed at the top of every system prompt."""
    lines = [
        "<environment>",
        f"datetime: {datetime.now().astimezone().strftime('%Y-%m-%d %H:%M:%S %Z')}",
        f"os: {platform.system().lower()}",
        f"arch: {platform.machine()}",
        f"cwd: {os.getcwd()}",
    ]
    shell = os.environ.get("SHELL")
    if shell:
        lines.append(f"shell: {shell}")
    lines.append(f"home: {os.path.expanduser('~')}")
    lines.append("</environment>")
    return "\n".join(lines)


_BASH_SECTION = """\
<bash>
You have a bash tool for executing shell commands on the local system.

**ONLY** use bash when the user's request requires local system interaction (files, processes, \
installations, etc.).
**DO NOT** make gratuitous tool calls; run a command only when it directly serves the request.
**NEVER** call `date` or any time-checking command; the current datetime is in your system context.

When bash IS needed:
- Don't ask permission, just run the command
- Report results, not instructions

Required parameters:
- `command`: The shell command
- `description`: What you're doing (shown in UI)

Optional: `timeout_seconds`, `working_dir`
</bash>
"""

_MEMORY_SECTION = """\
<memory>
You have a memory tool for managing persistent memories across sessions.

Store a memory when the user expresses a preference, corrects you, shares a fact about themselves \
or their project, or asks you to remember something.  Search memories when you need context about \
the user or the project.

Operations:
- `search`: Find relevant memories semantically. Params: query (required), limit (optional)
- `store`: Save new information. Params: content (required), category (optional)
- `list`: Show all memories. Params: limit (optional)
- `forget`: Remove a memory. Params: id (required)

Categories: preference, fact, correction, pattern.
Distill memories to their essence ("User prefers TypeScript").  Search before storing to avoid \
duplicates.
</memory>
"""


def build_tools_prompt(allowed_tools: Sequence[str], agents: Sequence[AgentInfo] = ()) -> str:
    """
    Instructions for the tools an agent may use, wrapped in ``<tools>``.

    Returns an empty string when none of the tools with instructions is allowed.  The
    ``agent_call`` section is only written when there is at least one agent to call.
    """
    allowed = set(allowed_tools or DEFAULT_ALLOWED_TOOLS)
    sections: List[str] = []
    if "bash" in allowed:
        sections.append(_BASH_SECTION)
    if AGENT_CALL_TOOL in allowed and agents:
        lines = [
            "<agent_call>",
            "You have access to specialized agents via the agent_call tool.",
            "",
            "Available agents:",
            "",
        ]
        for info in agents:
            lines.append(f"### {info.handle}")
            if info.plugin:
                lines.append(f"(from plugin: {info.plugin})")
            if info.description:
                lines.append(info.description)
            if info.delegate_hint:
                lines.append(f"**When to use**: {info.delegate_hint}")
            lines.append("")
        lines.extend(
            [
                "The called agent runs on its own and returns its complete response.",
                "",
                "Required parameters:",
                "- `agent`: The agent handle (e.g., '@relay')",
                "- `prompt`: The prompt/question to send to the agent",
                "",
                "Optional: `model`, `timeout_seconds` (default 120, max 300)",
                "</agent_call>",
                "",
            ]
        )
        sections.append("\n".join(lines))
    if "memory" in allowed:
        sections.append(_MEMORY_SECTION)
    if not sections:
        return ""
    return "<tools>\n\n" + "\n".join(sections) + "\n</tools>"


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------
def _read_json(path: str, label: str) -> Optional[Any]:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as exc:
        raise AgentLoadError(f"load {label}: {exc}") from exc


def load_agent_config(directory: str) -> AgentConfig:
    """Read ``config.json`` from *directory*; a missing file yields the defaults."""
    data = _read_json(os.path.join(directory, "config.json"), "agent config")
    if data is None:
        return AgentConfig()
    try:
        return AgentConfig.model_validate(data)
    except ValidationError as exc:
        raise AgentLoadError(f"invalid agent config: {exc}") from exc


def load_agent_dir(
    directory: str,
    handle: str,
    *,
    built_in: bool = False,
    default_model: str = "",
    agents: Sequence[AgentInfo] = (),
) -> AgentDefinition:
    """
    Build an :class:`AgentDefinition` from an agent directory.

    Raises
    ------
    AgentNotFoundError
        If *directory* does not exist.
    AgentLoadError
        If the directory is not a usable agent.
    """
    if not os.path.exists(directory):
        raise AgentNotFoundError(f"agent not found: {handle}")
    if not os.path.isdir(directory):
        raise AgentLoadError("agent path is not a directory")

    config = load_agent_config(directory)
    system_path = config.system_file or "system.md"
    if not os.path.isabs(system_path):
        system_path = os.path.join(directory, system_path)
    try:
        with open(system_path, "r", encoding="utf-8") as fh:
            system = fh.read().strip()
    except OSError as exc:
        raise AgentLoadError(f"read system prompt: {exc}") from exc

    input_schema = _read_json(os.path.join(directory, "input.jsonschema"), "input schema")
    output_schema = _read_json(os.path.join(directory, "output.jsonschema"), "output schema")

    return AgentDefinition(
        handle=handle,
        model=config.model or default_model,
        provider=config.provider,
        system_prompt=f"{build_environment_context()}\n\n{system}".strip(),
        tools_prompt=build_tools_prompt(config.allowed_tools, agents),
        allowed_tools=config.allowed_tools,
        input_schema=input_schema,
        output_schema=output_schema,
        built_in=built_in,
        memory=config.memory,
    )


class AgentCatalog:
    """Finds agents by handle across the user directory, plugins and the built-ins."""

    def __init__(
        self,
        agents_dir: Optional[str] = None,
        plugins: Any = None,
        builtin_dir: str = BUILTIN_AGENTS_DIR,
        default_model: Optional[str] = None,
    ):
        root = agents_dir or settings.AGENTS_DIR or os.path.join(settings.DATA_DIR, "agents")
        self.agents_dir = os.path.expanduser(root)
        self.plugins = plugins
        self.builtin_dir = builtin_dir
        self.default_model = settings.DEFAULT_MODEL if default_model is None else default_model

    @staticmethod
    def _handles_in(directory: str) -> List[str]:
        if not os.path.isdir(directory):
            return []
        return sorted(
            entry
            for entry in os.listdir(directory)
            if entry.startswith("@") and os.path.isdir(os.path.join(directory, entry))
        )

    def builtin_handles(self) -> List[str]:
        """Handles of the built-in agents."""
        return self._handles_in(self.builtin_dir)

    def list_handles(self) -> List[str]:
        """Every loadable handle, sorted."""
        handles = set(self.builtin_handles()) | set(self._handles_in(self.agents_dir))
        if self.plugins is not None:
            for plugin in self.plugins.plugins():
                handles.update(plugin.manifest.agents)
        return sorted(handles)

    def is_builtin(self, handle: str) -> bool:
        """True if *handle* is a built-in agent."""
        return normalize_handle(handle) in self.builtin_handles()

    def is_plugin_agent(self, handle: str) -> bool:
        """True if an installed plugin provides *handle*."""
        return self.plugins is not None and self.plugins.is_plugin_agent(normalize_handle(handle))

    def delegatable_agents(self) -> List[AgentInfo]:
        """Agents ``agent_call`` may target: built-ins and plugin agents."""
        infos: List[AgentInfo] = []
        for handle in self.builtin_handles():
            try:
                config = load_agent_config(os.path.join(self.builtin_dir, handle))
            except AgentLoadError as exc:
                logger.warning("Skipping built-in agent %s: %s", handle, exc)
                continue
            infos.append(
                AgentInfo(
                    handle=handle,
                    description=config.description,
                    delegate_hint=config.delegate_hint,
                )
            )
        if self.plugins is not None:
            for plugin in self.plugins.plugins():
                for handle in plugin.manifest.agents:
                    infos.append(AgentInfo(handle=handle, plugin=plugin.manifest.name))
        return infos

    def _locate(self, handle: str) -> Tuple[str, bool]:
        user_dir = os.path.join(self.agents_dir, handle)
        if os.path.isdir(user_dir) and not is_reserved_namespace(handle):
            return user_dir, False
        if self.plugins is not None:
            plugin_dir = self.plugins.agent_dir(handle)
            if plugin_dir is not None:
                return plugin_dir, False
        return os.path.join(self.builtin_dir, handle), True

    def load(self, handle: str) -> AgentDefinition:
        """
        Load the agent *handle* (``@`` optional).

        Raises
        ------
        AgentNotFoundError
            If no directory provides the handle.
        AgentLoadError
            If the agent exists but is broken.
        """
        handle = normalize_handle(handle)
        directory, built_in = self._locate(handle)
        logger.debug("Loading agent %s from %s", handle, directory)
        return load_agent_dir(
            directory,
            handle,
            built_in=built_in,
            default_model=self.default_model,
            agents=[a for a in self.delegatable_agents() if a.handle != handle],
        )
