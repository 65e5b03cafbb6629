"""
The runner: drives agent turns.

One turn builds the conversation, assembles the agent's tools, streams model steps through a
:class:`StreamWriter`, dispatches tool calls until the model answers, optionally coerces the
answer into the agent's output schema, and persists the exchange.  Titles and memory formation
run afterwards on a :class:`TaskSupervisor`.
"""

from __future__ import annotations

import json
import logging
import os
import time
from typing import (
    Any,
    Callable,
    List,
    Optional,
    Sequence,
    Tuple,
)

from pydantic import BaseModel

from relay.agent.attachments import prepare_attachments
from relay.agent.catalog import (
    AgentCatalog,
    AgentLoadError,
    AgentNotFoundError,
)
from relay.agent.memory_context import (
    build_memory_section,
    inject_memory_section,
)
from relay.agent.providers import (
    BaseModelClient,
    ModelConfigError,
    StepResult,
    StreamHandler,
    load_model,
)
from relay.agent.sessions import (
    ChatSession,
    SessionStore,
)
from relay.agent.stream import (
    NullWriter,
    StreamWriter,
)
from relay.agent.structured import (
    StructuredOutputError,
    cast_to_structured_output,
)
from relay.agent.tasks import TaskSupervisor
from relay.agent.tool_executor import execute_tool
from relay.common import truncate_with_ellipsis
from relay.config import settings
from relay.core.schema import (
    AgentDefinition,
    Message,
    Role,
    TextPart,
    ToolCall,
    ToolCallPart,
    ToolResponse,
    ToolResult,
    ToolResultPart,
)
from relay.core.scope import (
    Scope,
    ScopeError,
)
from relay.services import (
    SUPERSEDE_THRESHOLD,
    ExistingMemory,
    FormationEvent,
    Memory,
    MemoryCategory,
    StoredMessage,
)
from relay.tools import (
    ToolContext,
    ToolSet,
    metadata_json,
)
from relay.tools.delegation import (
    AGENT_CALL_TOOL,
    AgentCallParams,
    AgentCallTool,
    clamp_timeout,
    format_timeout,
    is_reserved_namespace,
    normalize_handle,
    truncate_output,
)
from relay.tools.external import ProgressHook

logger = logging.getLogger(__name__)

TITLE_MAX_LEN = 60
TITLE_EXCERPT_LEN = 500
TITLE_PROMPT = (
    "Generate a short, descriptive title (max 50 chars) for this conversation. "
    "The title should capture the main topic or intent. "
    "Return ONLY the title, no quotes or explanation.\n\nUser: {user}\n\nAssistant: {assistant}"
)
MODEL_CONTEXT = (
    "<model_context>\nYou are running with model: {model}\n"
    "When delegating to external tools that accept a model parameter (like crush run --model), "
    "use this model.\n</model_context>"
)
DEDUP_SEARCH_LIMIT = 5

ModelFactory = Callable[[Optional[str], str], BaseModelClient]


class ToolLoopLimitError(RuntimeError):
    """Raised when the model keeps calling tools and never gives an answer."""


class TextResult(BaseModel):
    """Response of a stateless run plus the persisted session it was recorded in."""

    response: str
    session_id: str = ""


def generate_session_title(prompt: str) -> str:
    """Fallback title: the prompt with whitespace collapsed, cut to 60 characters."""
    return truncate_with_ellipsis(prompt, TITLE_MAX_LEN)


def _tool_call_record(call: ToolCallPart) -> ToolCall:
    record = ToolCall(id=call.id, name=call.name, input=call.input)
    if call.name == "bash":
        try:
            params = json.loads(call.input or "{}")
        except json.JSONDecodeError:
            params = {}
        if isinstance(params, dict):
            record.command = str(params.get("command", ""))
            record.description = str(params.get("description", ""))
    return record


class _StepPresenter(StreamHandler):
    """Translates model callbacks into writer events and accumulates streamed text."""

    def __init__(self, writer: StreamWriter):
        self.writer = writer
        self.content = ""
        self._step_text = ""
        self._reasoning = ""
        self._reasoning_started: Optional[float] = None

    def on_reasoning_delta(self, delta: str) -> None:
        if self._reasoning_started is None:
            self._reasoning_started = time.monotonic()
            self._reasoning = ""
        self._reasoning += delta
        self.writer.write_reasoning(delta)

    def on_text_delta(self, delta: str) -> None:
        self._end_reasoning()
        self._step_text += delta
        self.content += delta
        self.writer.write_text(delta)

    def on_tool_call(self, call: ToolCallPart) -> None:
        self._end_reasoning()

    def _end_reasoning(self) -> None:
        if self._reasoning_started is None:
            return
        duration = time.monotonic() - self._reasoning_started
        self._reasoning_started = None
        self.writer.write_reasoning_done(self._reasoning, duration)

    def finish_step(self) -> None:
        """Close any open reasoning or text block at the end of a model step."""
        self._end_reasoning()
        if self._step_text:
            self.writer.write_text_done(self._step_text)
            self._step_text = ""


class Runner:
    """Runs agents for one process (interactive chat or single prompts)."""

    def __init__(
        self,
        *,
        services: Any = None,
        memory_service: Any = None,
        formation_service: Any = None,
        small_model: Any = None,
        memory_queue: Any = None,
        catalog: Optional[AgentCatalog] = None,
        plugins: Any = None,
        base_dir: Optional[str] = None,
        depth: int = 0,
        model_factory: ModelFactory = load_model,
        supervisor: Optional[TaskSupervisor] = None,
        progress: Optional[ProgressHook] = None,
    ):
        self.services = services
        self.memory_service = memory_service
        self.formation_service = formation_service
        self.small_model = small_model
        self.memory_queue = memory_queue
        self.plugins = plugins
        self.catalog = catalog if catalog is not None else AgentCatalog(plugins=plugins)
        self.base_dir = os.path.abspath(base_dir or os.getcwd())
        self.depth = depth
        self.model_factory = model_factory
        self.supervisor = supervisor if supervisor is not None else TaskSupervisor()
        self.progress = progress
        self.sessions = SessionStore()

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def chat(
        self,
        scope: Scope,
        agent: AgentDefinition,
        text: str,
        writer: Optional[StreamWriter] = None,
    ) -> str:
        """
        Send *text* to *agent* in the interactive session for its handle.

        The session (system messages, persisted session record) is created on the first turn.  A
        failed turn leaves the history as it was before the turn.

        Raises
        ------
        SessionBusyError
            If a turn for the same handle is already running.
        """
        writer = writer or NullWriter()
        with self.sessions.turn(agent.handle):
            session = self.sessions.get(agent.handle)
            if session is None:
                session = ChatSession(agent=agent, messages=self._system_messages(agent, text))
                session.messages.extend(self._delegate_messages(agent))
                session.session_id = self._create_session(agent, text)
                self.sessions.put(session)

            session.messages.append(Message.user(text))
            self._persist(session.session_id, Role.USER, [TextPart(text=text)], agent.model)

            try:
                response, history = self._run(
                    self._tool_scope(scope, session.session_id), agent, session.messages, writer
                )
            except Exception as exc:
                session.messages.pop()
                writer.write_error(exc)
                raise

            session.messages = history
            self._persist(
                session.session_id, Role.ASSISTANT, list(history[-1].parts), agent.model
            )
            if session.session_id and not session.title_generated:
                session.title_generated = True
                self._generate_title_async(agent, session.session_id, text, response)
            self._form_memory_async(agent, text, session.session_id, writer)

        writer.write_done(response)
        return response

    def text(
        self,
        scope: Scope,
        agent: AgentDefinition,
        prompt: str,
        attachments: Optional[Sequence[str]] = None,
        writer: Optional[StreamWriter] = None,
    ) -> str:
        """Run a single prompt without keeping history; returns the response."""
        return self.text_with_session(scope, agent, prompt, attachments, writer).response

    def text_with_session(
        self,
        scope: Scope,
        agent: AgentDefinition,
        prompt: str,
        attachments: Optional[Sequence[str]] = None,
        writer: Optional[StreamWriter] = None,
    ) -> TextResult:
        """Run a single prompt and also return the id of the session it was persisted in."""
        writer = writer or NullWriter()
        messages = self._build_messages(agent, prompt, attachments or [])
        session_id = self._create_session(agent, prompt)
        self._persist(session_id, Role.USER, [TextPart(text=prompt)], agent.model)

        try:
            response, _ = self._run(self._tool_scope(scope, session_id), agent, messages, writer)
        except Exception as exc:
            writer.write_error(exc)
            raise

        if session_id:
            self._persist(session_id, Role.ASSISTANT, [TextPart(text=response)], agent.model)
            self._generate_title_async(agent, session_id, prompt, response)
        self._form_memory_async(agent, prompt, session_id, writer)

        writer.write_done(response)
        return TextResult(response=response, session_id=session_id or "")

    def resume_session(
        self,
        scope: Scope,  # pylint: disable=unused-argument
        agent: AgentDefinition,
        session_id: str,
        messages: Sequence[StoredMessage],
    ) -> ChatSession:
        """Rebuild the chat session for *agent* from persisted *messages*."""
        query = ""
        for stored in reversed(messages):
            if stored.role == Role.USER:
                query = next((p.text for p in stored.parts if isinstance(p, TextPart)), "")
                break

        history = self._system_messages(agent, query)
        for stored in messages:
            if stored.role == Role.SYSTEM:
                continue
            history.append(Message(role=stored.role, parts=list(stored.parts)))
        return self.sessions.put(
            ChatSession(agent=agent, messages=history, session_id=session_id)
        )

    def get_session_id(self, handle: str) -> str:
        """Persisted session id of the chat for *handle*, or an empty string."""
        session = self.sessions.get(handle)
        return (session.session_id or "") if session is not None else ""

    def get_session_messages(
        self, scope: Scope, handle: str  # pylint: disable=unused-argument
    ) -> List[StoredMessage]:
        """Persisted messages of the chat for *handle*; empty without services or a session."""
        session_id = self.get_session_id(handle)
        if self.services is None or not session_id:
            return []
        return self.services.messages.list(session_id)

    def wait_for_background(self, timeout: Optional[float] = None) -> None:
        """Give titles and memory formation up to *timeout* seconds to finish."""
        timeout = settings.BACKGROUND_DRAIN_TIMEOUT if timeout is None else timeout
        if not self.supervisor.drain(timeout):
            logger.info(
                "Leaving %d background task(s) unfinished after %.0fs",
                self.supervisor.pending(),
                timeout,
            )
        if self.formation_service is not None:
            self.formation_service.wait(timeout)

    def start_memory_queue(self) -> None:
        """Start the async memory queue worker, if one is configured."""
        if self.memory_queue is not None:
            self.memory_queue.start()

    def wait_for_memory_queue(self, timeout: float) -> None:
        """Flush and stop the async memory queue, if one is configured."""
        if self.memory_queue is not None:
            self.memory_queue.stop(timeout)

    # ------------------------------------------------------------------ #
    # Conversation building
    # ------------------------------------------------------------------ #
    def _system_messages(self, agent: AgentDefinition, query: str) -> List[Message]:
        system = inject_memory_section(
            agent.system_prompt, build_memory_section(self.memory_service, agent, query)
        )
        return [
            Message.system(text)
            for text in (system, agent.tools_prompt, agent.skills_prompt)
            if text.strip()
        ]

    @staticmethod
    def _delegate_messages(agent: AgentDefinition) -> List[Message]:
        if agent.delegate_context.strip():
            return [Message.system(agent.delegate_context)]
        return []

    def _build_messages(
        self, agent: AgentDefinition, prompt: str, attachments: Sequence[str]
    ) -> List[Message]:
        messages = self._system_messages(agent, prompt)
        if agent.model:
            messages.append(Message.system(MODEL_CONTEXT.format(model=agent.model)))
        prompt, files = prepare_attachments(prompt, attachments)
        messages.append(Message.user(prompt, files))
        return messages

    def _tool_scope(self, scope: Scope, session_id: Optional[str]) -> Scope:
        """Expose the persisted session to tools that need it (plan)."""
        if session_id and self.services is not None:
            return scope.with_session(session_id, self.services)
        return scope

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #
    def _create_session(self, agent: AgentDefinition, prompt: str) -> Optional[str]:
        if self.services is None:
            return None
        try:
            record = self.services.sessions.create(agent.handle, generate_session_title(prompt))
        except Exception:  # pylint: disable=broad-except
            logger.warning("Could not create session for %s", agent.handle, exc_info=True)
            return None
        return record.id

    def _persist(
        self, session_id: Optional[str], role: Role, parts: List[Any], model: str
    ) -> None:
        if self.services is None or not session_id:
            return
        try:
            self.services.messages.create(session_id, role, parts, model)
        except Exception:  # pylint: disable=broad-except
            logger.warning("Could not persist %s message", role.value, exc_info=True)

    # ------------------------------------------------------------------ #
    # The dispatch loop
    # ------------------------------------------------------------------ #
    def _build_toolset(self, agent: AgentDefinition, writer: StreamWriter) -> ToolSet:
        context = ToolContext(
            base_dir=self.base_dir,
            depth=self.depth,
            memory_service=self.memory_service,
            memory_queue=self.memory_queue,
            progress=self.progress,
            extras={"agent_handle": agent.handle},
        )
        default_tools = dict(self.plugins.default_tools()) if self.plugins is not None else {}
        default_tools.update(settings.DEFAULT_TOOLS)
        toolset = ToolSet.build(
            agent.allowed_tools, context, plugins=self.plugins, default_tools=default_tools
        )
        if toolset.has_tool(AGENT_CALL_TOOL) or not agent.built_in:

            def executor(
                scope: Scope, params: AgentCallParams, call: ToolCallPart
            ) -> ToolResponse:
                return self._agent_call(scope, params, call, agent.handle, writer)

            toolset.add(AgentCallTool(executor))
        return toolset

    def _run(
        self,
        scope: Scope,
        agent: AgentDefinition,
        messages: List[Message],
        writer: StreamWriter,
    ) -> Tuple[str, List[Message]]:
        """Run the model/tool loop over *messages*; returns the response and the new history."""
        if not agent.model.strip():
            raise ModelConfigError("model is required")
        model = self.model_factory(agent.provider, agent.model)
        toolset = self._build_toolset(agent, writer)

        conversation = list(messages)
        presenter = _StepPresenter(writer)
        last_step: Optional[StepResult] = None
        try:
            for _ in range(settings.MAX_TOOL_ITERATIONS):
                scope.check()
                last_step = model.stream(scope, conversation, toolset.schemas(), presenter)
                presenter.finish_step()
                conversation.append(last_step.message())
                if not last_step.tool_calls:
                    break
                conversation.append(self._dispatch(scope, toolset, last_step.tool_calls, writer))
            else:
                logger.warning(
                    "%s hit %d tool iterations; asking for a final answer without tools",
                    agent.handle,
                    settings.MAX_TOOL_ITERATIONS,
                )
                scope.check()
                last_step = model.stream(scope, conversation, [], presenter)
                presenter.finish_step()
                if not (presenter.content or last_step.text).strip():
                    raise ToolLoopLimitError(
                        f"no answer after {settings.MAX_TOOL_ITERATIONS} tool iterations"
                    )
        finally:
            toolset.close()

        content = presenter.content
        if not content and last_step is not None:
            content = last_step.text

        if agent.has_output_schema():
            try:
                content = cast_to_structured_output(scope, model, agent, content)
            except StructuredOutputError as exc:
                raise StructuredOutputError(f"structured output: {exc}") from exc

        content = content.strip()
        return content, list(messages) + [Message.assistant(content)]

    @staticmethod
    def _dispatch(
        scope: Scope, toolset: ToolSet, calls: List[ToolCallPart], writer: StreamWriter
    ) -> Message:
        parts: List[Any] = []
        for call in calls:
            writer.write_tool_start(_tool_call_record(call))
            started = time.monotonic()
            response = execute_tool(scope, toolset, call)
            result = ToolResult(
                id=call.id,
                name=call.name,
                output=response.content,
                error=response.content if response.is_error else "",
                duration=time.monotonic() - started,
                metadata=metadata_json(response.metadata),
            )
            # The sub-agent already reported its own progress
            if call.name != AGENT_CALL_TOOL:
                writer.write_tool_result(result)
            parts.append(
                ToolResultPart(
                    tool_call_id=call.id,
                    name=call.name,
                    content=response.content,
                    is_error=response.is_error,
                )
            )
        return Message(role=Role.TOOL, parts=parts)

    # ------------------------------------------------------------------ #
    # Delegation
    # ------------------------------------------------------------------ #
    def _sub_runner(self) -> "Runner":
        # Delegated agents share persistence only; memory stays with the top-level chat.
        return Runner(
            services=self.services,
            catalog=self.catalog,
            plugins=self.plugins,
            base_dir=self.base_dir,
            depth=self.depth + 1,
            model_factory=self.model_factory,
            supervisor=self.supervisor,
            progress=self.progress,
        )

    def _agent_call(
        self,
        scope: Scope,
        params: AgentCallParams,
        call: ToolCallPart,  # pylint: disable=unused-argument
        current_handle: str,
        writer: StreamWriter,
    ) -> ToolResponse:
        handle = normalize_handle(params.agent)
        if handle == current_handle:
            return ToolResponse.error(
                f"cannot delegate to self ({handle}) - use bash or other tools directly"
            )
        if not is_reserved_namespace(handle) and not self.catalog.is_plugin_agent(handle):
            return ToolResponse.error("agent_call can only invoke builtin or plugin agents")

        try:
            target = self.catalog.load(handle)
        except (AgentNotFoundError, AgentLoadError) as exc:
            return ToolResponse.error(f"failed to load agent {handle}: {exc}")
        if params.model:
            target = target.model_copy(update={"model": params.model})

        timeout = clamp_timeout(params.timeout_seconds)
        sub_scope = scope.with_timeout(timeout)
        writer.write_agent_start(handle, params.prompt)
        started = time.monotonic()
        error: Optional[Exception] = None
        response = ""
        try:
            response = self._sub_runner().text(sub_scope, target, params.prompt, writer=writer)
        except Exception as exc:  # pylint: disable=broad-except
            error = exc
        writer.write_agent_end(handle, time.monotonic() - started, error)

        if error is not None:
            if sub_scope.error() == ScopeError.DEADLINE_EXCEEDED:
                return ToolResponse.error(
                    f"agent {handle} timed out after {format_timeout(timeout)}"
                )
            return ToolResponse.error(f"agent {handle} error: {error}")
        return ToolResponse.text(truncate_output(response))

    # ------------------------------------------------------------------ #
    # Background work
    # ------------------------------------------------------------------ #
    def _generate_title_async(
        self, agent: AgentDefinition, session_id: str, user_message: str, response: str
    ) -> None:
        if self.services is None or not session_id:
            return
        self.supervisor.submit(
            "title", self.generate_title, agent, session_id, user_message, response
        )

    def generate_title(
        self, agent: AgentDefinition, session_id: str, user_message: str, response: str
    ) -> None:
        """Ask the agent's model for a short session title and store it."""
        scope = Scope.background().with_timeout(settings.TITLE_TIMEOUT)
        model = self.model_factory(agent.provider, agent.model)
        prompt = TITLE_PROMPT.format(
            user=truncate_with_ellipsis(user_message, TITLE_EXCERPT_LEN),
            assistant=truncate_with_ellipsis(response, TITLE_EXCERPT_LEN),
        )
        title = model.generate(scope, [Message.user(prompt)]).strip()
        if not title:
            return
        if len(title) > TITLE_MAX_LEN:
            title = title[: TITLE_MAX_LEN - 1] + "…"
        self.services.sessions.update_title(session_id, title)

    def _form_memory_async(
        self,
        agent: AgentDefinition,
        user_message: str,
        session_id: Optional[str],
        writer: StreamWriter,
    ) -> None:
        if self.formation_service is None or not agent.memory.enabled:
            return
        self.supervisor.submit(
            "memory", self.maybe_form_memory, agent, user_message, session_id or "", writer
        )

    def maybe_form_memory(
        self,
        agent: AgentDefinition,
        user_message: str,
        session_id: str,
        writer: Optional[StreamWriter] = None,
    ) -> Optional[FormationEvent]:
        """
        Extract something worth remembering from *user_message* and store it.

        Near-duplicates of existing memories are skipped or supersede the old memory, as decided
        by the small model.  Returns the outcome, or None when nothing was attempted.
        """
        service = self.memory_service
        if service is None or not service.has_embedder() or self.small_model is None:
            return None
        config = agent.memory
        if not config.enabled or config.explicit_only:
            return None

        extraction = self.small_model.extract_memory(user_message)
        if not extraction.should_remember or not extraction.content:
            return None
        wanted = {
            "correction": config.on_correction,
            "preference": config.on_preference,
            "fact": config.on_project_fact,
        }
        if not wanted.get(extraction.category, True):
            return None

        memory = Memory(
            content=extraction.content,
            category=MemoryCategory.parse(extraction.category),
            agent_handle=agent.handle,
            source_session_id=session_id,
        )
        try:
            similar = service.search(
                extraction.content,
                agent.handle,
                threshold=SUPERSEDE_THRESHOLD,
                limit=DEDUP_SEARCH_LIMIT,
            )
        except Exception:  # pylint: disable=broad-except
            logger.debug("Memory search failed", exc_info=True)
            similar = []

        event = self._store_memory(memory, similar)
        if writer is not None:
            writer.write_memory_event(event.value, 1)
        return event

    def _store_memory(self, memory: Memory, similar: List[Any]) -> FormationEvent:
        service = self.memory_service
        formation = self.formation_service
        if similar:
            existing = [ExistingMemory(id=r.memory.id, content=r.memory.content) for r in similar]
            try:
                decision = self.small_model.check_duplicate(memory.content, existing)
            except Exception:  # pylint: disable=broad-except
                logger.debug("Duplicate check failed", exc_info=True)
                decision = None
            if decision is not None and decision.action == "duplicate":
                if formation is not None:
                    formation.notify_skipped(memory.content, existing[0].id)
                return FormationEvent.SKIPPED
            if decision is not None and decision.action == "supersede":
                target_id = decision.target_id or existing[0].id
                try:
                    stored = service.supersede(target_id, memory, decision.reason)
                except Exception as exc:  # pylint: disable=broad-except
                    logger.debug("Memory supersede failed", exc_info=True)
                    if formation is not None:
                        formation.notify_failed(memory.content, exc)
                    return FormationEvent.FAILED
                if formation is not None:
                    formation.notify_superseded(stored, target_id)
                return FormationEvent.SUPERSEDED

        try:
            stored = service.create(memory)
        except Exception as exc:  # pylint: disable=broad-except
            logger.debug("Memory create failed", exc_info=True)
            if formation is not None:
                formation.notify_failed(memory.content, exc)
            return FormationEvent.FAILED
        if formation is not None:
            formation.notify_created(stored)
        return FormationEvent.CREATED
