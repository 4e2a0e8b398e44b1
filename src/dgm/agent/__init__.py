"""
Agent Layer

The coding agent that candidates are made of:
- Tool-use loop as an explicit state machine
- Write-once JSON-lines transcripts
- Self-improvement diagnosis of a parent's failures
"""

from dgm.agent.diagnosis import SelfImproveDiagnoser, extract_json_block
from dgm.agent.loop import AgentLoop, AgentRunResult
from dgm.agent.state import (
    AgentPhase,
    AgentState,
    TranscriptTurn,
    TranscriptWriter,
    read_transcript,
)

__all__ = [
    # Loop
    "AgentLoop",
    "AgentRunResult",
    # State
    "AgentPhase",
    "AgentState",
    "TranscriptTurn",
    "TranscriptWriter",
    "read_transcript",
    # Diagnosis
    "SelfImproveDiagnoser",
    "extract_json_block",
]
