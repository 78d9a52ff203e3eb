"""Tests for the Agent loop: rounds, tool dispatch, exhaustion and cancellation."""

import pytest

from storage_doctor.agent import (
    PROGRESS_NOTE,
    Agent,
    LoopState,
    build_system_prompt,
)
from storage_doctor.context import SUMMARY_PREFIX, ContextManager
from storage_doctor.models import Message, Tool, ToolCall
from storage_doctor.report import (
    AgentError,
    CancelledError,
    EmptyResponseError,
    ProviderError,
    ReportCollector,
    ToolExecutionError,
)
from storage_doctor.skills import discover_skills
from storage_doctor.tools import TOOLS


class ScriptedProvider:
    """Replays one scripted round per stream_chat() call.

    Each entry is (text_chunks, tool_calls) or an exception to raise.
    """

    model = "scripted"
    display_name = "Scripted"

    def __init__(self, rounds, summaries=()):
        self.rounds = list(rounds)
        self.summaries = list(summaries)
        self.requests: list[list] = []

    def stream_chat(self, messages, tools, on_chunk, on_tool_call=None, *,
                    cancel=None, on_rate_limit=None):
        self.requests.append(list(messages))
        step = self.rounds.pop(0)
        if isinstance(step, BaseException):
            raise step
        chunks, calls = step
        for c in chunks:
            on_chunk(c)
        for tc in calls:
            if on_tool_call is not None:
                on_tool_call(tc)

    def chat(self, messages, *, cancel=None):
        return self.summaries.pop(0)


def _call(name="execute_command", call_id="call_1", **input):
    return ToolCall(id=call_id, name=name, input=input)


def _agent(rounds, *, tools=TOOLS, summaries=(), **kwargs):
    provider = ScriptedProvider(rounds, summaries)
    ctx_kwargs = {
        k: kwargs.pop(k)
        for k in ("summarize_threshold", "min_summarize_messages", "keep_recent")
        if k in kwargs
    }
    context = ContextManager(provider, **ctx_kwargs)
    return Agent(provider, context, tools, **kwargs), provider, context


def _never_called(call):
    raise AssertionError(f"tool should not run: {call.name}")


# ---------------------------------------------------------------------------
# System prompt
# ---------------------------------------------------------------------------


class TestBuildSystemPrompt:
    def test_lists_tools(self):
        prompt = build_system_prompt(TOOLS)
        assert "Available tools:" in prompt
        for tool in TOOLS:
            assert f"- {tool.name}: " in prompt

    def test_includes_skill_catalog(self, tmp_path):
        skills = discover_skills(tmp_path / "skills")
        prompt = build_system_prompt(TOOLS, skills)
        assert "<available-skills>" in prompt
        assert "storage_diagnosis" in prompt

    def test_no_catalog_without_skills(self):
        assert "<available-skills>" not in build_system_prompt(TOOLS)

    def test_active_skills_appended(self):
        prompt = build_system_prompt(TOOLS, None, ["[Skill: x activated]"])
        assert "[Skill: x activated]" in prompt


# ---------------------------------------------------------------------------
# stream_task
# ---------------------------------------------------------------------------


class TestStreamTask:
    def test_single_round_answer(self):
        agent, provider, context = _agent([(["Disk ", "is fine."], [])])
        chunks = []
        result = agent.stream_task("check /var", chunks.append, _never_called)

        assert result.answer == "Disk is fine."
        assert result.rounds == 1
        assert not result.exhausted
        assert result.state is LoopState.DONE
        assert agent.state is LoopState.DONE
        assert chunks == ["Disk ", "is fine."]

        messages = context.get_messages()
        assert messages[0].role == "system"
        assert messages[1] == Message("user", "check /var")
        assert messages[2] == Message("assistant", "Disk is fine.")

    def test_full_catalog_sent(self):
        agent, provider, _ = _agent([(["ok"], [])])
        seen = []
        provider_stream = provider.stream_chat

        def spy(messages, tools, *args, **kwargs):
            seen.append(list(tools))
            return provider_stream(messages, tools, *args, **kwargs)

        provider.stream_chat = spy
        agent.stream_task("t", lambda _: None, _never_called)
        assert [t.name for t in seen[0]] == [t.name for t in TOOLS]

    def test_tool_round_then_answer(self):
        tc = _call(command="df -h", description="usage")
        agent, provider, context = _agent([
            (["Checking disk usage."], [tc]),
            (["/ is 95% full."], []),
        ])
        executed = []

        def execute(call):
            executed.append(call)
            return "Filesystem Use%\n/dev/sda1 95%"

        chunks = []
        result = agent.stream_task("disk full?", chunks.append, execute)

        assert executed == [tc]
        assert result.answer == "/ is 95% full."
        assert result.rounds == 2
        assert PROGRESS_NOTE in chunks

        messages = context.get_messages()
        assert messages[2].role == "assistant"
        assert messages[2].content.startswith("Checking disk usage.\n<function_call>")
        assert messages[3] == Message(
            "user",
            '<tool_result name="execute_command" status="success">'
            "Filesystem Use%\n/dev/sda1 95%</tool_result>",
        )
        # The second request carries the tool results
        assert provider.requests[1][-1] == messages[3]

    def test_multiple_results_joined_with_blank_line(self):
        calls = [
            _call("read_file", "a", path="/etc/fstab"),
            _call("read_file", "b", path="/etc/hosts"),
        ]
        agent, _, context = _agent([([], calls), (["done"], [])])
        agent.stream_task("t", lambda _: None, lambda call: call.input["path"])
        results = context.get_messages()[3].content
        assert results == (
            '<tool_result name="read_file" status="success">/etc/fstab</tool_result>'
            "\n\n"
            '<tool_result name="read_file" status="success">/etc/hosts</tool_result>'
        )

    def test_tool_exception_recorded_as_failure(self):
        report = ReportCollector()
        agent, _, context = _agent(
            [([], [_call(command="rm -rf /")]), (["ok"], [])], report=report
        )

        def execute(call):
            raise ToolExecutionError("operator declined the request")

        result = agent.stream_task("t", lambda _: None, execute)
        assert result.state is LoopState.DONE
        assert context.get_messages()[3].content == (
            '<tool_result name="execute_command" status="failure">'
            "error: operator declined the request</tool_result>"
        )
        assert report.tool_stats["execute_command"] == {"succeeded": 0, "failed": 1}

    def test_unexpected_exception_recorded_as_failure(self):
        agent, _, context = _agent([([], [_call()]), (["ok"], [])])

        def execute(call):
            raise KeyError("command")

        agent.stream_task("t", lambda _: None, execute)
        assert 'status="failure"' in context.get_messages()[3].content

    def test_invalid_arguments_not_executed(self):
        bad = ToolCall(
            id="c", name="write_file", input={}, raw_arguments='{"path": ', arguments_valid=False
        )
        agent, _, context = _agent([([], [bad]), (["ok"], [])])
        agent.stream_task("t", lambda _: None, _never_called)
        result = context.get_messages()[3].content
        assert 'status="failure"' in result
        assert "invalid JSON in tool arguments" in result
        assert '{"path": ' in result

    def test_exhaustion(self):
        agent, _, _ = _agent(
            [(["step 1"], [_call()]), (["step 2"], [_call()])], max_iterations=2
        )
        chunks = []
        result = agent.stream_task("t", chunks.append, lambda call: "ok")
        assert result.exhausted
        assert result.rounds == 2
        assert result.state is LoopState.ABORTED
        assert result.answer == "step 2"
        assert chunks.count(PROGRESS_NOTE) == 2

    def test_empty_response(self):
        agent, _, context = _agent([([], [])])
        with pytest.raises(EmptyResponseError):
            agent.stream_task("t", lambda _: None, _never_called)
        assert agent.state is LoopState.ABORTED
        assert context.get_messages()[-1] == Message("user", "t")

    def test_provider_error_propagates(self):
        agent, _, _ = _agent([ProviderError("HTTP 500", 500, "oops")])
        with pytest.raises(ProviderError):
            agent.stream_task("t", lambda _: None, _never_called)
        assert agent.state is LoopState.ABORTED

    def test_cancellation_leaves_context_unchanged(self):
        agent, _, context = _agent([([], [_call()]), CancelledError("cancelled")])
        with pytest.raises(CancelledError):
            agent.stream_task("t", lambda _: None, lambda call: "ok")
        messages = context.get_messages()
        assert len(messages) == 4
        assert messages[-1].content.startswith("<tool_result")
        assert agent.state is LoopState.ABORTED

    def test_system_prompt_reset_each_task(self):
        agent, _, context = _agent([(["a"], []), (["b"], [])])
        agent.stream_task("first", lambda _: None, _never_called)
        agent.stream_task("second", lambda _: None, _never_called)
        roles = [m.role for m in context.get_messages()]
        assert roles.count("system") == 1
        assert roles[0] == "system"

    def test_report_records_llm_calls(self):
        report = ReportCollector()
        agent, _, _ = _agent([([], [_call()]), (["ok"], [])], report=report)
        agent.stream_task("t", lambda _: None, lambda call: "done")
        assert report.llm_calls == 2
        outcomes = [e["outcome"] for e in report.events if e["type"] == "llm_call"]
        assert outcomes == ["tool_calls", "answer"]


class TestSummarizationInLoop:
    def test_history_compressed_between_rounds(self):
        agent, provider, context = _agent(
            [([], [_call()]), (["done"], [])],
            summaries=["ran a command"],
            summarize_threshold=3,
            min_summarize_messages=3,
            keep_recent=2,
        )
        agent.stream_task("t", lambda _: None, lambda call: "ok")

        second = provider.requests[1]
        assert second[0].role == "system"
        assert "Available tools:" in second[0].content
        assert SUMMARY_PREFIX + "ran a command" in second[0].content
        assert [m.role for m in second] == ["system", "assistant", "user"]


# ---------------------------------------------------------------------------
# execute_task
# ---------------------------------------------------------------------------


class TestExecuteTask:
    def test_joins_round_texts(self):
        agent, _, context = _agent([(["Looking."], [_call()]), (["Done."], [])])
        answer = agent.execute_task("t", lambda call: "ok")
        assert answer == "Looking.\n\nDone."
        messages = context.get_messages()
        assert messages[-1] == Message("assistant", "Done.")
        assert sum(m.content.count("Looking.") for m in messages) == 1

    def test_no_progress_note_in_answer(self):
        agent, _, _ = _agent([(["a"], [_call()]), (["b"], [])])
        assert PROGRESS_NOTE.strip() not in agent.execute_task("t", lambda call: "ok")

    def test_exhausted_returns_accumulated_text(self):
        agent, _, context = _agent([(["a"], [_call()])], max_iterations=1)
        assert agent.execute_task("t", lambda call: "ok") == "a"
        assert agent.state is LoopState.ABORTED
        assert context.get_messages()[-1].role == "user"
        assert [m.role for m in context.get_messages()].count("assistant") == 1


# ---------------------------------------------------------------------------
# Skills
# ---------------------------------------------------------------------------


class TestActivateSkill:
    def test_unknown_skill(self):
        agent, _, _ = _agent([])
        with pytest.raises(AgentError, match="skill not found"):
            agent.activate_skill("nope")

    def test_adds_system_message_when_none(self, tmp_path):
        skills = discover_skills(tmp_path / "skills")
        agent, _, context = _agent([], skills=skills)
        agent.activate_skill("log_analysis")
        (msg,) = context.get_messages()
        assert msg.role == "system"
        assert "[Skill: log_analysis activated]" in msg.content

    def test_appends_to_existing_system_prompt(self, tmp_path):
        skills = discover_skills(tmp_path / "skills")
        agent, _, context = _agent([], skills=skills)
        context.set_system_prompt("base rules")
        agent.activate_skill("file_operations")
        content = context.get_messages()[0].content
        assert content.startswith("base rules\n\n[Skill: file_operations activated]")

    def test_active_skill_survives_task_prompt(self, tmp_path):
        skills = discover_skills(tmp_path / "skills")
        agent, provider, _ = _agent([(["ok"], [])], skills=skills)
        agent.activate_skill("storage_diagnosis")
        agent.stream_task("t", lambda _: None, _never_called)
        assert "<skill-instructions>" in provider.requests[0][0].content


def test_custom_tool_catalog():
    tool = Tool("noop", "does nothing", {"type": "object", "properties": {}})
    agent, _, context = _agent([(["ok"], [])], tools=[tool])
    agent.stream_task("t", lambda _: None, _never_called)
    assert "- noop: does nothing" in context.get_messages()[0].content
