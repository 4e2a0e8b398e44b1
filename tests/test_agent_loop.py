"""
Tests for the coding agent loop and its state machine.
"""

import asyncio
from typing import Any

import pytest
from unittest.mock import AsyncMock, MagicMock

from dgm.agent.loop import AgentLoop
from dgm.agent.state import AgentPhase, AgentState, TranscriptTurn, TranscriptWriter, read_transcript
from dgm.core.errors import ProviderError, SandboxError, ToolError, TransientServiceError
from dgm.evolution.repository import Repository
from dgm.llm.base import LLMProvider, LLMResponse, MessageRole, ToolCall
from dgm.llm.retry import RetryPolicy
from dgm.tools.base import Tool, ToolRegistry


class RecordingTool(Tool):
    """Tool that records its calls and optionally waits or fails."""

    name = "bash"
    description = "Run a command."
    input_schema = {
        "type": "object",
        "properties": {"command": {"type": "string"}},
        "required": ["command"],
    }

    def __init__(self, delay: float = 0.0, error: Exception | None = None):
        self.delay = delay
        self.error = error
        self.calls: list[str] = []
        self.finished: list[str] = []

    async def execute(self, **arguments: Any) -> str:
        self.calls.append(arguments["command"])
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.finished.append(arguments["command"])
        return f"ran {arguments['command']}"


def tool_response(command, call_id="call_1"):
    return LLMResponse(
        content="",
        tool_calls=[ToolCall(id=call_id, name="bash", arguments={"command": command})],
        finish_reason="tool_calls",
    )


def make_llm(responses, supports_tools=True):
    llm = MagicMock(spec=LLMProvider)
    llm.supports_tools = supports_tools
    llm.generate = AsyncMock(side_effect=responses)
    return llm


def make_repository(diffs):
    repository = MagicMock(spec=Repository)
    repository.diff = AsyncMock(side_effect=diffs)
    return repository


def make_loop(llm, repository, tool=None, tmp_path=None, **kwargs):
    kwargs.setdefault("retry", RetryPolicy(sleep=AsyncMock(), jitter=0.0))
    return AgentLoop(
        llm,
        ToolRegistry([tool or RecordingTool()]),
        repository,
        tmp_path or "/tmp/work",
        "base-sha",
        **kwargs,
    )


class TestAgentState:
    """Tests for AgentState transitions."""

    def test_transitions_return_new_state(self):
        state = AgentState(max_turns=2)
        advanced = state.increment_turn().set_phase(AgentPhase.AWAITING_TOOL)
        assert state.turn_count == 0
        assert advanced.turn_count == 1
        assert advanced.phase == AgentPhase.AWAITING_TOOL

    def test_record_patch_ignores_empty(self):
        state = AgentState().record_patch("diff 1").record_patch("   ")
        assert state.best_patch == "diff 1"

    def test_abort(self):
        state = AgentState().abort("stop requested")
        assert state.is_terminal
        assert state.abort_reason == "stop requested"

    def test_budget(self):
        state = AgentState(max_turns=1)
        assert not state.budget_exhausted
        assert state.increment_turn().budget_exhausted


class TestTranscriptWriter:
    """Tests for TranscriptWriter."""

    def test_write_and_read(self, tmp_path):
        path = tmp_path / "logs" / "transcript.jsonl"
        with TranscriptWriter(path) as writer:
            writer.write(TranscriptTurn(role=MessageRole.USER, content="hello"))
            writer.write(TranscriptTurn(role=MessageRole.ASSISTANT, content="hi", tool_calls=[{"name": "bash"}]))

        turns = read_transcript(path)
        assert [t["role"] for t in turns] == ["user", "assistant"]
        assert turns[1]["toolCalls"] == [{"name": "bash"}]

    def test_never_overwrites(self, tmp_path):
        path = tmp_path / "transcript.jsonl"
        path.write_text("existing\n")
        writer = TranscriptWriter(path)
        with pytest.raises(FileExistsError):
            writer.write(TranscriptTurn(role=MessageRole.USER, content="x"))
        assert path.read_text() == "existing\n"


class TestAgentLoop:
    """Tests for AgentLoop."""

    @pytest.mark.asyncio
    async def test_answer_without_tools_is_done(self, mock_llm):
        repository = make_repository(["final diff\n"])
        result = await make_loop(mock_llm, repository).run("Fix the bug")

        assert result.completed
        assert result.phase == AgentPhase.DONE
        assert result.patch == "final diff\n"
        assert result.turn_count == 1
        repository.diff.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_tool_call_round_trip(self, mock_llm_with_tool_call):
        tool = RecordingTool()
        repository = make_repository(["partial\n", "final\n"])

        result = await make_loop(mock_llm_with_tool_call, repository, tool).run("Fix it")

        assert result.completed
        assert tool.calls == ["echo hello"]
        assert result.patch == "final\n"
        assert [t.role for t in result.turns] == [
            MessageRole.SYSTEM,
            MessageRole.USER,
            MessageRole.ASSISTANT,
            MessageRole.TOOL,
            MessageRole.ASSISTANT,
        ]
        assert result.turns[3].content == "ran echo hello"

        # The conversation list is shared across calls, so look it up by role
        messages = mock_llm_with_tool_call.generate.await_args_list[1].args[0]
        tool_messages = [m for m in messages if m.role == MessageRole.TOOL]
        assert len(tool_messages) == 1
        assert tool_messages[0].tool_call_id == "call_123"

    @pytest.mark.asyncio
    async def test_budget_exhausted_keeps_last_nonempty_patch(self):
        llm = make_llm([tool_response(f"step {i}", f"c{i}") for i in range(3)])
        repository = make_repository(["first\n", "second\n", ""])

        result = await make_loop(llm, repository, max_turns=3).run("Fix it")

        assert result.phase == AgentPhase.ABORTED
        assert result.abort_reason == "turn budget exhausted"
        assert result.turn_count == 3
        assert result.patch == "second\n"
        assert llm.generate.await_count == 3

    @pytest.mark.asyncio
    async def test_stop_event_before_first_turn(self, mock_llm):
        stop = asyncio.Event()
        stop.set()

        result = await make_loop(mock_llm, make_repository([])).run("Fix it", stop_event=stop)

        assert result.phase == AgentPhase.ABORTED
        assert result.abort_reason == "stop requested"
        mock_llm.generate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_event_skips_pending_tools(self):
        stop = asyncio.Event()
        llm = make_llm([tool_response("ls")])
        tool = RecordingTool()

        async def generate(messages, tools=None, **kwargs):
            stop.set()
            return tool_response("ls")

        llm.generate = AsyncMock(side_effect=generate)
        result = await make_loop(llm, make_repository([]), tool).run("Fix it", stop_event=stop)

        assert result.phase == AgentPhase.ABORTED
        assert tool.calls == []

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self):
        llm = make_llm([TransientServiceError("overloaded"), LLMResponse(content="done")])
        result = await make_loop(llm, make_repository(["p\n"])).run("Fix it")

        assert result.completed
        assert llm.generate.await_count == 2
        assert result.turn_count == 1

    @pytest.mark.asyncio
    async def test_provider_error_propagates(self):
        llm = make_llm([ProviderError("invalid request")])
        loop = make_loop(llm, make_repository([]))

        with pytest.raises(ProviderError):
            await loop.run("Fix it")

    @pytest.mark.asyncio
    async def test_tool_errors_are_fed_back(self):
        tool = RecordingTool(error=ToolError("command not found"))
        llm = make_llm([tool_response("frobnicate"), LLMResponse(content="giving up")])

        result = await make_loop(llm, make_repository(["", ""]), tool).run("Fix it")

        assert result.completed
        assert result.patch == ""
        assert result.turns[3].content == "Error: command not found"

    @pytest.mark.asyncio
    async def test_malformed_call_is_fed_back(self):
        bad = LLMResponse(tool_calls=[ToolCall(id="x", name="bash", arguments={"__raw__": "{command: ls"})])
        llm = make_llm([bad, LLMResponse(content="done")])
        tool = RecordingTool()

        result = await make_loop(llm, make_repository(["", ""]), tool).run("Fix it")

        assert result.completed
        assert tool.calls == []
        assert result.turns[3].content.startswith("Error: Could not parse tool call")

    @pytest.mark.asyncio
    async def test_sandbox_error_aborts_run(self):
        tool = RecordingTool(error=SandboxError("cannot spawn"))
        loop = make_loop(make_llm([tool_response("ls")]), make_repository([]), tool)

        with pytest.raises(SandboxError):
            await loop.run("Fix it")
        assert loop.state.phase == AgentPhase.ABORTED
        assert "sandbox failure" in loop.state.abort_reason

    @pytest.mark.asyncio
    async def test_text_mode_tool_use(self):
        text_call = (
            "I will list the files.\n"
            '<tool_use>\n{"tool_name": "bash", "tool_input": {"command": "ls"}}\n</tool_use>'
        )
        llm = make_llm([LLMResponse(content=text_call), LLMResponse(content="done")], supports_tools=False)
        tool = RecordingTool()

        result = await make_loop(llm, make_repository(["", "p\n"]), tool).run("Fix it")

        assert result.completed
        assert tool.calls == ["ls"]
        first_call = llm.generate.await_args_list[0]
        assert first_call.kwargs["tools"] is None
        assert "<tool_use>" in first_call.args[0][1].content

        messages = llm.generate.await_args_list[1].args[0]
        assert not any(m.role == MessageRole.TOOL for m in messages)
        feedback = [m for m in messages if m.role == MessageRole.USER][-1]
        assert "Tool Used: bash" in feedback.content
        assert "Tool Result: ran ls" in feedback.content

    @pytest.mark.asyncio
    async def test_transcript_written(self, tmp_path, mock_llm_with_tool_call):
        path = tmp_path / "transcript.jsonl"
        loop = make_loop(
            mock_llm_with_tool_call,
            make_repository(["", "p\n"]),
            transcript_path=path,
        )

        await loop.run("Fix it")

        turns = read_transcript(path)
        assert [t["role"] for t in turns] == ["system", "user", "assistant", "tool", "assistant"]
        assert turns[2]["toolCalls"][0]["name"] == "bash"
        assert turns[3]["toolResults"][0]["tool_name"] == "bash"

    @pytest.mark.asyncio
    async def test_cancel_lets_running_tool_finish(self, tmp_path):
        tool = RecordingTool(delay=0.3)
        llm = make_llm([tool_response("slow")])
        path = tmp_path / "transcript.jsonl"
        loop = make_loop(llm, make_repository([]), tool, transcript_path=path)

        task = asyncio.create_task(loop.run("Fix it"))
        await asyncio.sleep(0.1)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert tool.finished == ["slow"]
        assert loop.state.phase == AgentPhase.ABORTED
        assert loop.state.abort_reason == "cancelled"
        assert loop.state.turns[-1].role == MessageRole.TOOL
        assert [t["role"] for t in read_transcript(path)][-1] == "tool"
