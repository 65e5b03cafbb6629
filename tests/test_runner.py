"""End-to-end tests for the runner with a scripted model and in-memory services."""

import json

import pytest
from fakes import (
    FakeMemoryService,
    FakeSmallModel,
    RecordingFormation,
    ScriptedModel,
    drain,
    factory_for,
    tool_call,
    types_of,
)

from relay.agent.catalog import AgentCatalog
from relay.agent.providers import (
    ModelCallError,
    ModelConfigError,
    StepResult,
)
from relay.agent.runner import (
    Runner,
    ToolLoopLimitError,
    generate_session_title,
)
from relay.agent.sessions import SessionBusyError
from relay.agent.stream import (
    EventType,
    QueueWriter,
)
from relay.agent.structured import StructuredOutputError
from relay.config import settings
from relay.core.schema import (
    AgentDefinition,
    MemorySettings,
    Role,
    TextPart,
)
from relay.core.scope import Scope
from relay.services import (
    DedupDecision,
    FormationEvent,
    Memory,
    MemoryCategory,
    MemoryExtraction,
    MemorySearchResult,
    StoredMessage,
)
from relay.services.inmemory import InMemorySessionServices
from relay.services.plugins import PluginCatalog
from relay.tools import ToolExecutionError


@pytest.fixture
def catalog(tmp_path):
    agents = tmp_path / "agents"
    agents.mkdir()
    return AgentCatalog(
        agents_dir=str(agents),
        plugins=PluginCatalog(str(tmp_path / "plugins")),
        default_model="scripted",
    )


@pytest.fixture
def services():
    return InMemorySessionServices()


@pytest.fixture
def make_runner(tmp_path, catalog, services):
    def _make(model, **kwargs) -> Runner:
        kwargs.setdefault("services", services)
        kwargs.setdefault("model_factory", factory_for(model))
        return Runner(catalog=catalog, base_dir=str(tmp_path), **kwargs)

    return _make


def _agent(**extra) -> AgentDefinition:
    data = {
        "handle": "@tester",
        "model": "scripted",
        "system_prompt": "You test.",
        "allowed_tools": ["bash"],
    }
    data.update(extra)
    return AgentDefinition(**data)


def _tool_results(messages):
    return [part for part in messages[-1].parts if part.type == "tool_result"]


def _write_plugin(root, name: str, manifest, tools=None, agents=None) -> None:
    plugin_dir = root / name
    plugin_dir.mkdir(parents=True)
    (plugin_dir / "manifest.json").write_text(json.dumps(manifest))
    for tool_name, definition in (tools or {}).items():
        tool_dir = plugin_dir / "tools" / tool_name
        tool_dir.mkdir(parents=True)
        (tool_dir / "tool.json").write_text(json.dumps(definition))
    for handle, config in (agents or {}).items():
        agent_dir = plugin_dir / "agents" / handle
        agent_dir.mkdir(parents=True)
        (agent_dir / "config.json").write_text(json.dumps(config))
        (agent_dir / "system.md").write_text("You help.")


# ---------------------------------------------------------------------------
# Stateless runs
# ---------------------------------------------------------------------------
def test_text_streams_and_persists(make_runner, services) -> None:
    """A stateless run streams text, persists the exchange and titles the session."""

    model = ScriptedModel([StepResult(text="Hello there")], title="Greeting")
    runner = make_runner(model)
    writer = QueueWriter()

    result = runner.text_with_session(Scope.background(), _agent(), "Hi", writer=writer)
    assert result.response == "Hello there"
    assert types_of(drain(writer)) == [EventType.TEXT_DELTA, EventType.TEXT_DONE, EventType.DONE]

    seen = model.seen[0]
    assert [m.role for m in seen] == [Role.SYSTEM, Role.SYSTEM, Role.USER]
    assert seen[0].text() == "You test."
    assert "<model_context>" in seen[1].text()
    assert model.tool_names[0] == ["bash", "agent_call"]

    runner.wait_for_background(5)
    stored = services.messages.list(result.session_id)
    assert [m.role for m in stored] == [Role.USER, Role.ASSISTANT]
    assert services.sessions.get(result.session_id).title == "Greeting"


def test_fallback_title_kept_when_model_gives_none(make_runner, services) -> None:
    """Sessions start with a title derived from the prompt."""

    runner = make_runner(ScriptedModel([StepResult(text="ok")], title=""))
    result = runner.text_with_session(Scope.background(), _agent(), "Fix   the\nbuild please")
    runner.wait_for_background(5)
    assert services.sessions.get(result.session_id).title == "Fix the build please"
    assert generate_session_title("x" * 100) == "x" * 59 + "…"


def test_missing_model_fails_before_streaming(make_runner) -> None:
    """A blank model is a configuration error reported to the writer."""

    model = ScriptedModel()
    writer = QueueWriter()
    with pytest.raises(ModelConfigError, match="model is required"):
        make_runner(model).text(Scope.background(), _agent(model=""), "Hi", writer=writer)
    events = drain(writer)
    assert types_of(events) == [EventType.ERROR]
    assert events[0].error == "model is required"
    assert not model.seen


def test_tool_loop(make_runner) -> None:
    """Tool calls run between model steps and their results are fed back."""

    model = ScriptedModel(
        [
            StepResult(tool_calls=[tool_call("bash", command="echo hi", description="Say hi")]),
            StepResult(text="Said hi"),
        ]
    )
    writer = QueueWriter()
    response = make_runner(model).text(Scope.background(), _agent(), "Greet", writer=writer)
    assert response == "Said hi"

    events = drain(writer)
    assert types_of(events) == [
        EventType.TOOL_START,
        EventType.TOOL_RESULT,
        EventType.TEXT_DELTA,
        EventType.TEXT_DONE,
        EventType.DONE,
    ]
    assert events[0].call.command == "echo hi"
    assert events[0].call.description == "Say hi"
    assert json.loads(events[1].result.output)["stdout"] == "hi\n"

    second = model.seen[1]
    assert second[-2].role == Role.ASSISTANT
    assert second[-2].tool_calls()[0].name == "bash"
    results = _tool_results(second)
    assert results[0].tool_call_id == "call_1"
    assert not results[0].is_error


def test_unknown_tool_is_reported_to_model(make_runner) -> None:
    """Calls to tools the agent does not have come back as errors."""

    model = ScriptedModel([StepResult(tool_calls=[tool_call("nope")]), StepResult(text="ok")])
    writer = QueueWriter()
    make_runner(model).text(Scope.background(), _agent(), "Go", writer=writer)

    result = _tool_results(model.seen[1])[0]
    assert result.is_error
    assert result.content == "Tool 'nope' is not available."
    tool_result = [e for e in drain(writer) if e.type == EventType.TOOL_RESULT][0]
    assert tool_result.result.error == "Tool 'nope' is not available."


def test_long_tool_loops_run_to_the_answer(make_runner) -> None:
    """Many tool steps in a row still end with the model's answer."""

    looping = StepResult(tool_calls=[tool_call("nope")])
    model = ScriptedModel([looping] * 9 + [StepResult(text="final answer")])
    response = make_runner(model).text(Scope.background(), _agent(), "Loop")
    assert response == "final answer"
    assert len(model.seen) == 10


def test_tool_iteration_limit_asks_for_answer(make_runner, monkeypatch) -> None:
    """At the iteration limit the model answers in one more step without tools."""

    monkeypatch.setattr(settings, "MAX_TOOL_ITERATIONS", 2)
    looping = StepResult(tool_calls=[tool_call("nope")])
    model = ScriptedModel([looping, looping, StepResult(text="wrapping up")])
    response = make_runner(model).text(Scope.background(), _agent(), "Loop")
    assert response == "wrapping up"
    assert len(model.seen) == 3
    assert model.tool_names[2] == []
    assert _tool_results(model.seen[2])[0].name == "nope"


def test_tool_iteration_limit_without_answer_fails(make_runner, monkeypatch) -> None:
    """A turn that never produces text at the limit is an error, not an empty reply."""

    monkeypatch.setattr(settings, "MAX_TOOL_ITERATIONS", 2)
    looping = StepResult(tool_calls=[tool_call("nope")])
    model = ScriptedModel([looping, looping, looping])
    writer = QueueWriter()
    with pytest.raises(ToolLoopLimitError, match="no answer after 2 tool iterations"):
        make_runner(model).text(Scope.background(), _agent(), "Loop", writer=writer)
    assert drain(writer)[-1].type == EventType.ERROR


def test_external_tool_progress_reported_unless_quiet(make_runner, tmp_path) -> None:
    """Plugin tools report start and finish through the runner's hook unless marked quiet."""

    _write_plugin(
        tmp_path / "plugins",
        "kit",
        {"name": "kit", "tools": ["loud", "hushed"]},
        tools={
            "loud": {"name": "loud", "command": "echo"},
            "hushed": {"name": "hushed", "command": "echo", "quiet": True},
        },
    )
    calls = []
    model = ScriptedModel(
        [
            StepResult(tool_calls=[tool_call("loud", "c1"), tool_call("hushed", "c2")]),
            StepResult(text="done"),
        ]
    )
    runner = make_runner(
        model,
        plugins=PluginCatalog(str(tmp_path / "plugins")),
        progress=lambda name, depth, finished: calls.append((name, depth, finished)),
    )
    agent = _agent(allowed_tools=["loud", "hushed"])
    assert runner.text(Scope.background(), agent, "Run both") == "done"
    assert [part.is_error for part in _tool_results(model.seen[1])] == [False, False]
    assert calls == [("loud", 0, False), ("loud", 0, True)]


def test_attachments_are_inlined(make_runner, tmp_path) -> None:
    """Attached text files reach the model ahead of the prompt."""

    notes = tmp_path / "notes.txt"
    notes.write_text("the plan")
    model = ScriptedModel([StepResult(text="ok")])
    make_runner(model).text(Scope.background(), _agent(), "Summarize", [str(notes)])
    user = model.seen[0][-1]
    assert user.role == Role.USER
    assert user.text().startswith('<file path="notes.txt">\nthe plan\n</file>')
    assert user.text().endswith("Summarize")


def test_structured_output(make_runner) -> None:
    """Agents with an output schema answer with validated JSON."""

    schema = {
        "type": "object",
        "properties": {"answer": {"type": "integer"}},
        "required": ["answer"],
    }
    model = ScriptedModel([StepResult(text="The answer is 42")], objects=[{"answer": 42}])
    writer = QueueWriter()
    response = make_runner(model).text(
        Scope.background(), _agent(output_schema=schema), "Answer?", writer=writer
    )
    assert response == json.dumps({"answer": 42}, indent=2)
    assert drain(writer)[-1].response == response


def test_structured_output_failure(make_runner) -> None:
    """Exhausting the retries fails the turn."""

    schema = {"type": "object", "required": ["answer"]}
    model = ScriptedModel([StepResult(text="no idea")], objects=[{}, {}, {}])
    with pytest.raises(StructuredOutputError, match="^structured output: failed to produce"):
        make_runner(model).text(Scope.background(), _agent(output_schema=schema), "Answer?")


def test_plan_tool_uses_persisted_session(make_runner, services) -> None:
    """Tools that need the session see the one the run was persisted in."""

    plan = {"tasks": [{"content": "Do it", "status": "in_progress"}]}
    model = ScriptedModel(
        [StepResult(tool_calls=[tool_call("plan", **plan)]), StepResult(text="Planned")]
    )
    writer = QueueWriter()
    result = make_runner(model).text_with_session(
        Scope.background(), _agent(allowed_tools=["plan"]), "Plan it", writer=writer
    )
    assert services.sessions.get(result.session_id).plan.tasks[0].content == "Do it"
    tool_result = [e for e in drain(writer) if e.type == EventType.TOOL_RESULT][0]
    assert json.loads(tool_result.result.metadata)["is_new"] is True


def test_plan_tool_without_services_aborts_turn(make_runner) -> None:
    """Without persistence the plan tool cannot run and the turn fails."""

    model = ScriptedModel([StepResult(tool_calls=[tool_call("plan", tasks=[])])])
    runner = make_runner(model, services=None)
    with pytest.raises(ToolExecutionError, match="requires a session"):
        runner.text(Scope.background(), _agent(allowed_tools=["plan"]), "Plan it")


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------
def test_chat_keeps_history(make_runner, services) -> None:
    """Chat turns share one session and history."""

    model = ScriptedModel([StepResult(text="First"), StepResult(text="Second")], title="Chat")
    runner = make_runner(model)
    agent = _agent()
    scope = Scope.background()

    assert runner.chat(scope, agent, "one") == "First"
    assert runner.chat(scope, agent, "two") == "Second"

    second = model.seen[1]
    assert [m.role for m in second] == [Role.SYSTEM, Role.USER, Role.ASSISTANT, Role.USER]
    assert second[2].text() == "First"

    runner.wait_for_background(5)
    session_id = runner.get_session_id("@tester")
    assert session_id
    assert len(runner.get_session_messages(scope, "@tester")) == 4
    assert services.sessions.get(session_id).title == "Chat"
    assert runner.get_session_id("@nobody") == ""


def test_chat_failure_rolls_back_user_message(make_runner) -> None:
    """A failed turn leaves the in-memory history as it was."""

    def fail(scope):
        raise ModelCallError("provider down")

    model = ScriptedModel([fail, StepResult(text="Recovered")])
    runner = make_runner(model)
    writer = QueueWriter()
    agent = _agent()

    with pytest.raises(ModelCallError):
        runner.chat(Scope.background(), agent, "one", writer)
    assert drain(writer)[-1].type == EventType.ERROR
    assert [m.role for m in runner.sessions.get("@tester").messages] == [Role.SYSTEM]

    assert runner.chat(Scope.background(), agent, "two") == "Recovered"
    assert [m.text() for m in model.seen[1] if m.role == Role.USER] == ["two"]


def test_chat_rejects_concurrent_turn(make_runner) -> None:
    """A second turn for a busy handle is refused."""

    runner = make_runner(ScriptedModel())
    with runner.sessions.turn("@tester"):
        with pytest.raises(SessionBusyError):
            runner.chat(Scope.background(), _agent(), "hi")


def test_resume_session(make_runner) -> None:
    """A resumed session continues from the stored messages."""

    model = ScriptedModel([StepResult(text="Continuing")])
    runner = make_runner(model, services=None)
    agent = _agent()
    stored = [
        StoredMessage(id="1", session_id="sid", role=Role.USER, parts=[TextPart(text="earlier")]),
        StoredMessage(id="2", session_id="sid", role=Role.ASSISTANT, parts=[TextPart(text="ok")]),
    ]
    session = runner.resume_session(Scope.background(), agent, "sid", stored)
    assert session.session_id == "sid"

    runner.chat(Scope.background(), agent, "next")
    roles = [m.role for m in model.seen[0]]
    assert roles == [Role.SYSTEM, Role.USER, Role.ASSISTANT, Role.USER]
    assert runner.get_session_id("@tester") == "sid"


def test_memory_injected_into_system_prompt(make_runner) -> None:
    """Relevant memories are added to the system prompt of memory-enabled agents."""

    service = FakeMemoryService(
        [MemorySearchResult(memory=Memory(content="User prefers tabs"), similarity=0.9)]
    )
    model = ScriptedModel([StepResult(text="ok")])
    agent = _agent(memory=MemorySettings(enabled=True))
    make_runner(model, memory_service=service).text(Scope.background(), agent, "indent?")
    system = model.seen[0][0].text()
    assert system.startswith("You test.")
    assert "<user_context>" in system
    assert "User prefers tabs" in system


# ---------------------------------------------------------------------------
# Delegation
# ---------------------------------------------------------------------------
def test_agent_call_runs_sub_agent(make_runner, services) -> None:
    """Delegating runs the built-in agent nested in the same stream."""

    model = ScriptedModel(
        [
            StepResult(
                tool_calls=[
                    tool_call("agent_call", agent="relay", prompt="look around", model="override")
                ]
            ),
            StepResult(text="  sub answer  "),
            StepResult(text="final"),
        ]
    )
    requested = []

    def factory(provider, model_id):
        requested.append(model_id)
        return model

    writer = QueueWriter()
    runner = make_runner(model, model_factory=factory)
    response = runner.text(Scope.background(), _agent(), "Delegate", writer=writer)
    assert response == "final"

    events = drain(writer)
    assert types_of(events) == [
        EventType.TOOL_START,
        EventType.AGENT_START,
        EventType.TEXT_DELTA,
        EventType.TEXT_DONE,
        EventType.DONE,
        EventType.AGENT_END,
        EventType.TEXT_DELTA,
        EventType.TEXT_DONE,
        EventType.DONE,
    ]
    assert events[1].handle == "@relay"
    assert events[1].prompt == "look around"
    assert events[5].error is None

    assert _tool_results(model.seen[2])[0].content == "sub answer"
    assert model.tool_names[1] == ["bash", "plan", "agent_call"]
    assert "override" in requested
    runner.wait_for_background(5)
    assert len(services.sessions.all()) == 2


def test_agent_call_policy_errors(make_runner) -> None:
    """Self-calls, non-builtin targets and missing agents are refused."""

    model = ScriptedModel(
        [
            StepResult(
                tool_calls=[
                    tool_call("agent_call", "c1", agent="@tester", prompt="x"),
                    tool_call("agent_call", "c2", agent="@other", prompt="x"),
                    tool_call("agent_call", "c3", agent="@relay.missing", prompt="x"),
                ]
            ),
            StepResult(text="ok"),
        ]
    )
    make_runner(model).text(Scope.background(), _agent(), "Delegate")

    results = _tool_results(model.seen[1])
    assert all(r.is_error for r in results)
    assert results[0].content == (
        "cannot delegate to self (@tester) - use bash or other tools directly"
    )
    assert results[1].content == "agent_call can only invoke builtin or plugin agents"
    assert results[2].content.startswith("failed to load agent @relay.missing: ")


def test_agent_call_timeout(make_runner) -> None:
    """A sub-agent outliving its timeout is reported as timed out."""

    def slow(scope):
        scope.sleep(10)
        scope.check()
        return StepResult(text="too late")

    model = ScriptedModel(
        [
            StepResult(
                tool_calls=[
                    tool_call("agent_call", agent="@relay", prompt="slow", timeout_seconds=1)
                ]
            ),
            slow,
            StepResult(text="gave up"),
        ]
    )
    writer = QueueWriter()
    response = make_runner(model).text(Scope.background(), _agent(), "Delegate", writer=writer)
    assert response == "gave up"
    assert _tool_results(model.seen[2])[0].content == "agent @relay timed out after 1s"
    agent_end = [e for e in drain(writer) if e.type == EventType.AGENT_END][0]
    assert agent_end.error


def test_agent_call_sub_agent_skips_memory(make_runner, tmp_path) -> None:
    """Delegated agents get no injected memories and their prompts form none."""

    _write_plugin(
        tmp_path / "plugins",
        "kit",
        {"name": "kit", "agents": ["@helper"]},
        agents={"@helper": {"model": "scripted", "memory": {"enabled": True}}},
    )
    service = FakeMemoryService(
        [MemorySearchResult(memory=Memory(content="User prefers tabs"), similarity=0.9)]
    )
    formation = RecordingFormation()
    model = ScriptedModel(
        [
            StepResult(tool_calls=[tool_call("agent_call", agent="helper", prompt="I like tabs")]),
            StepResult(text="sub answer"),
            StepResult(text="final"),
        ]
    )
    runner = make_runner(
        model,
        memory_service=service,
        small_model=FakeSmallModel(_extraction()),
        formation_service=formation,
    )
    assert runner.text(Scope.background(), _agent(), "Delegate") == "final"
    runner.wait_for_background(5)

    assert "<user_context>" not in model.seen[1][0].text()
    assert _tool_results(model.seen[2])[0].content == "sub answer"
    assert not service.searches
    assert not service.created
    assert not formation.events


# ---------------------------------------------------------------------------
# Memory formation
# ---------------------------------------------------------------------------
def _formation_runner(make_runner, service, small, formation) -> Runner:
    return make_runner(
        ScriptedModel(),
        memory_service=service,
        small_model=small,
        formation_service=formation,
    )


def _extraction(category: str = "preference") -> MemoryExtraction:
    return MemoryExtraction(
        should_remember=True, content="User prefers tabs", category=category, confidence=0.9
    )


def test_memory_formation_creates(make_runner) -> None:
    """A new memory is stored and announced."""

    service = FakeMemoryService()
    formation = RecordingFormation()
    runner = _formation_runner(make_runner, service, FakeSmallModel(_extraction()), formation)
    agent = _agent(memory=MemorySettings(enabled=True))
    writer = QueueWriter()

    event = runner.maybe_form_memory(agent, "I like tabs", "s1", writer)
    assert event == FormationEvent.CREATED
    stored = service.created[0]
    assert stored.category == MemoryCategory.PREFERENCE
    assert stored.agent_handle == "@tester"
    assert stored.source_session_id == "s1"
    assert formation.events == [(FormationEvent.CREATED, "User prefers tabs")]
    assert drain(writer)[0].memory_event == "created"


def test_memory_formation_deduplicates(make_runner) -> None:
    """Near-duplicates are skipped or supersede the old memory as decided."""

    similar = [MemorySearchResult(memory=Memory(id="m1", content="Likes tabs"), similarity=0.95)]
    agent = _agent(memory=MemorySettings(enabled=True))

    service = FakeMemoryService(similar)
    formation = RecordingFormation()
    small = FakeSmallModel(_extraction(), DedupDecision(action="duplicate"))
    runner = _formation_runner(make_runner, service, small, formation)
    assert runner.maybe_form_memory(agent, "tabs", "s1") == FormationEvent.SKIPPED
    assert formation.events == [(FormationEvent.SKIPPED, "m1")]
    assert not service.created
    assert small.checked[0][0].id == "m1"

    service = FakeMemoryService(similar)
    formation = RecordingFormation()
    small = FakeSmallModel(_extraction(), DedupDecision(action="supersede", reason="updated"))
    runner = _formation_runner(make_runner, service, small, formation)
    assert runner.maybe_form_memory(agent, "tabs", "s1") == FormationEvent.SUPERSEDED
    assert service.superseded[0][0] == "m1"
    assert formation.events == [(FormationEvent.SUPERSEDED, "m1")]


def test_memory_formation_respects_settings(make_runner) -> None:
    """Disabled categories, explicit-only agents and missing embedders form nothing."""

    service = FakeMemoryService()
    runner = _formation_runner(
        make_runner, service, FakeSmallModel(_extraction("correction")), RecordingFormation()
    )
    no_corrections = _agent(memory=MemorySettings(enabled=True, on_correction=False))
    assert runner.maybe_form_memory(no_corrections, "no, tabs", "s1") is None

    explicit = _agent(memory=MemorySettings(enabled=True, explicit_only=True))
    assert runner.maybe_form_memory(explicit, "no, tabs", "s1") is None

    service.embedder = False
    enabled = _agent(memory=MemorySettings(enabled=True))
    assert runner.maybe_form_memory(enabled, "no, tabs", "s1") is None
    assert not service.created


def test_chat_forms_memory_in_background(make_runner) -> None:
    """Chat turns of memory-enabled agents form memories after responding."""

    service = FakeMemoryService()
    model = ScriptedModel([StepResult(text="Noted")])
    runner = make_runner(
        model,
        memory_service=service,
        small_model=FakeSmallModel(_extraction()),
        formation_service=RecordingFormation(),
    )
    agent = _agent(memory=MemorySettings(enabled=True))
    runner.chat(Scope.background(), agent, "I like tabs")
    runner.wait_for_background(5)
    assert [m.content for m in service.created] == ["User prefers tabs"]
