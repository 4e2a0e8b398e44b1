"""
Agent Loop

Drives one coding run as a small state machine:

    awaiting_model -> awaiting_tool -> awaiting_model -> ... -> done | aborted

The model sees the full conversation every turn. A reply without tool calls
ends the run and the patch is the diff of the working checkout against the
base revision. Running out of turns, a stop request or a cancellation ends
the run as aborted, keeping the last non-empty patch seen.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from dgm.agent.prompts import (
    CODING_SYSTEM_PROMPT,
    coding_instruction,
    tool_result_message,
    tools_prompt,
)
from dgm.agent.state import AgentPhase, AgentState, TranscriptTurn, TranscriptWriter
from dgm.core.errors import SandboxError
from dgm.evolution.repository import Repository
from dgm.llm.base import LLMMessage, LLMProvider, MessageRole, ToolCall, parse_tool_use_blocks
from dgm.llm.retry import RetryPolicy
from dgm.tools.base import ToolRegistry, ToolResult

logger = structlog.get_logger(__name__)


@dataclass
class AgentRunResult:
    """Outcome of one agent run."""

    phase: AgentPhase
    patch: str = ""
    turns: list[TranscriptTurn] = field(default_factory=list)
    turn_count: int = 0
    abort_reason: str | None = None

    @property
    def completed(self) -> bool:
        return self.phase == AgentPhase.DONE


class AgentLoop:
    """
    Coding agent working in one disposable checkout.

    Example:
        ```python
        async with repository.checkout(base) as workdir:
            loop = AgentLoop(llm, default_tools(sandbox, workdir), repository, workdir, base)
            result = await loop.run("Fix the failing date parser test")
        ```
    """

    def __init__(
        self,
        llm: LLMProvider,
        tools: ToolRegistry,
        repository: Repository,
        workdir: str | Path,
        base_revision: str,
        max_turns: int = 50,
        retry: RetryPolicy | None = None,
        transcript_path: str | Path | None = None,
        test_description: str | None = None,
    ):
        """
        Initialize the loop.

        Args:
            llm: Model driving the agent
            tools: Tools the model may call
            repository: Repository the checkout belongs to, used for diffs
            workdir: Working checkout the agent edits
            base_revision: Revision the patch is taken against
            max_turns: Maximum number of model round-trips
            retry: Backoff policy for transient provider failures
            transcript_path: Where to write the JSON-lines transcript
            test_description: Optional hint on how the work will be tested
        """
        self.llm = llm
        self.tools = tools
        self.repository = repository
        self.workdir = Path(workdir)
        self.base_revision = base_revision
        self.max_turns = max_turns
        self.retry = retry or RetryPolicy()
        self.transcript_path = Path(transcript_path) if transcript_path else None
        self.test_description = test_description

        # Last state reached, also available after a cancelled run
        self.state: AgentState | None = None
        self._interrupted: AgentState | None = None

    async def run(
        self,
        problem_statement: str,
        stop_event: asyncio.Event | None = None,
    ) -> AgentRunResult:
        """
        Run the agent until it answers, runs out of turns or is stopped.

        Raises:
            TransientServiceError: Provider still failing after retries
            ProviderError: Provider rejected the request
            SandboxError: Tool execution environment failed
        """
        state = AgentState(problem_statement=problem_statement, max_turns=self.max_turns)
        writer = TranscriptWriter(self.transcript_path) if self.transcript_path else None
        messages = self._initial_messages(problem_statement)
        final_patch = ""
        self._interrupted = None

        logger.info(
            "Agent run started",
            workdir=str(self.workdir),
            base_revision=self.base_revision,
            max_turns=self.max_turns,
        )

        try:
            for message in messages:
                state = self._record(state, writer, TranscriptTurn(role=message.role, content=message.content))

            while not state.is_terminal:
                if stop_event is not None and stop_event.is_set():
                    state = state.abort("stop requested")
                    break
                if state.budget_exhausted:
                    state = state.abort("turn budget exhausted")
                    break

                state, calls, native = await self._model_step(state, messages, writer)

                if not calls:
                    final_patch = await self._current_patch()
                    state = state.record_patch(final_patch).set_phase(AgentPhase.DONE)
                    break

                if stop_event is not None and stop_event.is_set():
                    state = state.abort("stop requested")
                    break

                state = state.set_phase(AgentPhase.AWAITING_TOOL)
                state = await self._tool_step(state, calls, native, messages, writer)
                state = state.record_patch(await self._current_patch())
                state = state.set_phase(AgentPhase.AWAITING_MODEL)

        except asyncio.CancelledError:
            state = (self._interrupted or state).abort("cancelled")
            logger.info("Agent run cancelled", turns=state.turn_count)
            raise
        except SandboxError as e:
            state = state.abort(f"sandbox failure: {e}")
            logger.warning("Agent run aborted by sandbox failure", error=str(e))
            raise
        finally:
            self.state = state
            if writer is not None:
                writer.close()

        patch = final_patch if state.phase == AgentPhase.DONE else state.best_patch

        logger.info(
            "Agent run finished",
            phase=state.phase.value,
            turns=state.turn_count,
            patch_size=len(patch),
            abort_reason=state.abort_reason,
        )

        return AgentRunResult(
            phase=state.phase,
            patch=patch,
            turns=list(state.turns),
            turn_count=state.turn_count,
            abort_reason=state.abort_reason,
        )

    def _initial_messages(self, problem_statement: str) -> list[LLMMessage]:
        instruction = coding_instruction(self.workdir, problem_statement, self.test_description)
        if not self.llm.supports_tools:
            instruction = f"{tools_prompt(self.tools)}\n{instruction}"
        return [LLMMessage.system(CODING_SYSTEM_PROMPT), LLMMessage.user(instruction)]

    async def _model_step(
        self,
        state: AgentState,
        messages: list[LLMMessage],
        writer: TranscriptWriter | None,
    ) -> tuple[AgentState, list[ToolCall], bool]:
        definitions = self.tools.definitions() if self.llm.supports_tools else None

        response = await self.retry.call(
            lambda: self.llm.generate(messages, tools=definitions),
            operation="agent_model_call",
        )
        state = state.increment_turn()

        native = response.has_tool_calls
        if native:
            calls = list(response.tool_calls)
            messages.append(response.to_message())
        else:
            calls = parse_tool_use_blocks(response.content)
            messages.append(LLMMessage.assistant(response.content))

        logger.debug("Model responded", turn=state.turn_count, tool_calls=len(calls))

        state = self._record(
            state,
            writer,
            TranscriptTurn(
                role=MessageRole.ASSISTANT,
                content=response.content,
                tool_calls=[call.to_dict() for call in calls],
            ),
        )
        return state, calls, native

    async def _tool_step(
        self,
        state: AgentState,
        calls: list[ToolCall],
        native: bool,
        messages: list[LLMMessage],
        writer: TranscriptWriter | None,
    ) -> AgentState:
        results: list[ToolResult] = []

        for call in calls:
            task = asyncio.ensure_future(self.tools.invoke(call))
            try:
                results.append(await asyncio.shield(task))
            except asyncio.CancelledError:
                # A tool call is never interrupted halfway
                if not task.done():
                    await asyncio.wait([task])
                if not task.cancelled() and task.exception() is None:
                    results.append(task.result())
                self._interrupted = self._record_results(state, writer, results)
                raise

            logger.debug(
                "Tool executed",
                tool=call.name,
                success=results[-1].success,
                duration_ms=round(results[-1].execution_time_ms, 1),
            )

        if native:
            for call, result in zip(calls, results):
                messages.append(LLMMessage.tool(result.content, name=call.name, tool_call_id=call.id))
        else:
            feedback = "\n\n".join(
                tool_result_message(call.name, call.arguments, result.content)
                for call, result in zip(calls, results)
            )
            messages.append(LLMMessage.user(feedback))

        return self._record_results(state, writer, results)

    def _record_results(
        self,
        state: AgentState,
        writer: TranscriptWriter | None,
        results: list[ToolResult],
    ) -> AgentState:
        turn = TranscriptTurn(
            role=MessageRole.TOOL,
            content="\n\n".join(result.content for result in results),
            tool_results=[result.model_dump(mode="json") for result in results],
        )
        return self._record(state, writer, turn)

    def _record(
        self,
        state: AgentState,
        writer: TranscriptWriter | None,
        turn: TranscriptTurn,
    ) -> AgentState:
        if writer is not None:
            writer.write(turn)
        return state.add_turn(turn)

    async def _current_patch(self) -> str:
        return await self.repository.diff(self.workdir, self.base_revision)
