"""
Self-Improvement Worker

One attempt at improving one parent:

1. diagnose the entry into a problem statement
2. let the agent work on a fresh checkout of the parent
3. apply the resulting patch to a second fresh checkout and commit it
4. evaluate the new revision

The worker never touches the archive; it reports back a
`SelfImproveAttempt` and the run loop decides what to keep.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

import structlog

from dgm.agent.diagnosis import SelfImproveDiagnoser
from dgm.agent.loop import AgentLoop
from dgm.core.config import AgentConfig
from dgm.core.errors import AgentLogicError, DgmError
from dgm.evaluation.benchmark import Benchmark
from dgm.evaluation.evaluator import Evaluator
from dgm.evolution.archive import Candidate
from dgm.evolution.repository import Repository
from dgm.evolution.sandbox import Sandbox
from dgm.evolution.strategy import SelfImproveAssignment
from dgm.llm.base import LLMProvider
from dgm.llm.retry import RetryPolicy
from dgm.tools import default_tools

logger = structlog.get_logger(__name__)

EVAL_DIR = "eval"
METADATA_FILE = "metadata.json"
PATCH_FILE = "model_patch.diff"
TRANSCRIPT_FILE = "transcript.jsonl"


class AttemptStatus(str, Enum):
    """How a self-improvement attempt ended."""

    SUCCESS = "success"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


def new_attempt_id() -> str:
    """Sortable, collision-free attempt id."""
    return f"{datetime.utcnow():%Y%m%d%H%M%S}_{uuid4().hex[:8]}"


@dataclass
class SelfImproveAttempt:
    """Outcome of one self-improvement attempt."""

    attempt_id: str
    assignment: SelfImproveAssignment
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: datetime | None = None
    status: AttemptStatus = AttemptStatus.FAILED

    # Set on success
    candidate: Candidate | None = None

    # Set on failure
    reason: str | None = None

    problem_statement: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == AttemptStatus.SUCCESS

    def finish(self, status: AttemptStatus, reason: str | None = None) -> None:
        self.status = status
        self.reason = reason
        self.finished_at = datetime.utcnow()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "attemptId": self.attempt_id,
            "parentId": self.assignment.parent.id,
            "entry": self.assignment.entry,
            "status": self.status.value,
            "reason": self.reason,
            "problemStatement": self.problem_statement,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "candidate": self.candidate.to_dict() if self.candidate else None,
        }


class SelfImproveWorker:
    """
    Runs self-improvement attempts. One instance serves any number of
    concurrent attempts.
    """

    def __init__(
        self,
        repository: Repository,
        sandbox: Sandbox,
        evaluator: Evaluator,
        diagnoser: SelfImproveDiagnoser,
        llm: LLMProvider,
        benchmark: Benchmark,
        output_dir: str | Path,
        agent_config: AgentConfig | None = None,
        retry: RetryPolicy | None = None,
    ):
        self.repository = repository
        self.sandbox = sandbox
        self.evaluator = evaluator
        self.diagnoser = diagnoser
        self.llm = llm
        self.benchmark = benchmark
        self.output_dir = Path(output_dir)
        self.agent_config = agent_config or AgentConfig()
        self.retry = retry or RetryPolicy.from_agent_config(self.agent_config)

    async def run(
        self,
        assignment: SelfImproveAssignment,
        attempt_id: str | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> SelfImproveAttempt:
        """
        Run one attempt.

        Failures are reported in the returned attempt, never raised.
        Cancellation propagates after the attempt's metadata is written.
        Setting `stop_event` makes the agent submit its work at the next
        turn boundary.
        """
        attempt = SelfImproveAttempt(attempt_id=attempt_id or new_attempt_id(), assignment=assignment)
        attempt_dir = self.output_dir / attempt.attempt_id
        attempt_dir.mkdir(parents=True, exist_ok=True)

        log = logger.bind(
            attempt=attempt.attempt_id,
            parent=assignment.parent.id,
            entry=assignment.entry,
        )
        log.info("Self-improvement attempt started")

        try:
            attempt.candidate = await self._improve(attempt, attempt_dir, stop_event)
            attempt.finish(AttemptStatus.SUCCESS)
            log.info("Self-improvement attempt succeeded", accuracy=attempt.candidate.accuracy)
        except asyncio.CancelledError:
            attempt.finish(AttemptStatus.TIMED_OUT, "cancelled")
            log.warning("Self-improvement attempt cancelled")
            raise
        except DgmError as e:
            attempt.finish(AttemptStatus.FAILED, f"{type(e).__name__}: {e}")
            log.warning("Self-improvement attempt failed", reason=attempt.reason)
        except Exception as e:
            attempt.finish(AttemptStatus.FAILED, f"{type(e).__name__}: {e}")
            log.exception("Self-improvement attempt crashed")
        finally:
            self._write_metadata(attempt_dir, attempt)

        return attempt

    async def _improve(
        self,
        attempt: SelfImproveAttempt,
        attempt_dir: Path,
        stop_event: asyncio.Event | None = None,
    ) -> Candidate:
        parent = attempt.assignment.parent
        entry = attempt.assignment.entry

        problem_statement = await self.diagnoser.diagnose(
            parent,
            entry,
            self.benchmark,
            artifacts_dir=self.output_dir / parent.id / EVAL_DIR,
        )
        attempt.problem_statement = problem_statement

        async with self.repository.checkout(parent.code_revision, prefix="dgm_selfimprove_") as workdir:
            tools = default_tools(
                self.sandbox,
                workdir,
                timeout=self.agent_config.tool_timeout,
                max_output_length=self.agent_config.max_output_chars,
            )
            loop = AgentLoop(
                self.llm,
                tools,
                self.repository,
                workdir,
                parent.code_revision,
                max_turns=self.agent_config.max_turns,
                retry=self.retry,
                transcript_path=attempt_dir / TRANSCRIPT_FILE,
            )
            result = await loop.run(problem_statement, stop_event=stop_event)

        patch = result.patch
        (attempt_dir / PATCH_FILE).write_text(patch, encoding="utf-8")
        if not patch.strip():
            raise AgentLogicError(f"Agent produced an empty patch ({result.phase.value})")

        async with self.repository.checkout(parent.code_revision, prefix="dgm_apply_") as workdir:
            await self.repository.apply_patch(workdir, patch)
            revision = await self.repository.commit(
                workdir,
                f"Self-improvement {attempt.attempt_id} of {parent.id}: {entry}",
                ref_name=attempt.attempt_id,
            )

        metrics = await self.evaluator.evaluate_staged(
            revision, self.benchmark, artifacts_dir=attempt_dir / EVAL_DIR
        )

        return Candidate(
            id=attempt.attempt_id,
            code_revision=revision,
            parent_id=parent.id,
            generation=parent.generation + 1,
            metrics=metrics,
            entry=entry,
            problem_statement=problem_statement,
        )

    @staticmethod
    def _write_metadata(attempt_dir: Path, attempt: SelfImproveAttempt) -> None:
        try:
            (attempt_dir / METADATA_FILE).write_text(
                json.dumps(attempt.to_dict(), indent=2), encoding="utf-8"
            )
        except OSError as e:
            logger.warning("Failed to write attempt metadata", attempt=attempt.attempt_id, error=str(e))
