"""
Agent State Management

State of one coding-agent run. State objects are immutable; every
transition returns a new instance.
"""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, TextIO

from pydantic import BaseModel, Field

from dgm.llm.base import MessageRole


class AgentPhase(str, Enum):
    """Current phase of the agent loop."""

    AWAITING_MODEL = "awaiting_model"
    AWAITING_TOOL = "awaiting_tool"
    DONE = "done"
    ABORTED = "aborted"


class TranscriptTurn(BaseModel):
    """One turn of an agent transcript."""

    role: MessageRole
    content: str = ""
    tool_calls: list[dict[str, Any]] = Field(default_factory=list)
    tool_results: list[dict[str, Any]] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        frozen = True

    def to_json(self) -> str:
        return json.dumps(
            {
                "role": self.role.value,
                "content": self.content,
                "toolCalls": self.tool_calls,
                "toolResults": self.tool_results,
                "timestamp": self.timestamp.isoformat(),
            },
            ensure_ascii=False,
        )


class AgentState(BaseModel):
    """Complete state of an agent run at any point in execution."""

    phase: AgentPhase = AgentPhase.AWAITING_MODEL
    problem_statement: str = ""

    turns: tuple[TranscriptTurn, ...] = Field(default_factory=tuple)
    turn_count: int = 0
    max_turns: int = 50

    # Last non-empty diff seen against the base revision
    best_patch: str = ""
    abort_reason: str | None = None

    start_time: datetime = Field(default_factory=datetime.utcnow)
    last_update: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        frozen = True

    def add_turn(self, turn: TranscriptTurn) -> AgentState:
        """Append a turn to the transcript."""
        return self.model_copy(
            update={
                "turns": (*self.turns, turn),
                "last_update": datetime.utcnow(),
            }
        )

    def set_phase(self, phase: AgentPhase) -> AgentState:
        """Transition to a new phase."""
        return self.model_copy(
            update={
                "phase": phase,
                "last_update": datetime.utcnow(),
            }
        )

    def increment_turn(self) -> AgentState:
        """Count one model round-trip."""
        return self.model_copy(
            update={
                "turn_count": self.turn_count + 1,
                "last_update": datetime.utcnow(),
            }
        )

    def record_patch(self, patch: str) -> AgentState:
        """Remember `patch` if it is non-empty."""
        if not patch.strip():
            return self
        return self.model_copy(update={"best_patch": patch, "last_update": datetime.utcnow()})

    def abort(self, reason: str) -> AgentState:
        """End the run without a final answer."""
        return self.model_copy(
            update={
                "phase": AgentPhase.ABORTED,
                "abort_reason": reason,
                "last_update": datetime.utcnow(),
            }
        )

    @property
    def is_terminal(self) -> bool:
        return self.phase in (AgentPhase.DONE, AgentPhase.ABORTED)

    @property
    def budget_exhausted(self) -> bool:
        return self.turn_count >= self.max_turns


class TranscriptWriter:
    """
    Write-once JSON-lines transcript.

    The file is created exclusively; an existing transcript is never
    overwritten. Each turn is flushed as soon as it is recorded so a
    cancelled run still leaves its partial transcript behind.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._file: TextIO | None = None

    def open(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.path, "x", encoding="utf-8")

    def write(self, turn: TranscriptTurn) -> None:
        if self._file is None:
            self.open()
        self._file.write(turn.to_json() + "\n")
        self._file.flush()

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self) -> TranscriptWriter:
        self.open()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def read_transcript(path: str | Path) -> list[dict[str, Any]]:
    """Load a transcript written by `TranscriptWriter`."""
    with open(path, encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]
