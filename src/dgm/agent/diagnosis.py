"""
Self-Improvement Diagnosis

Turns a self-improvement entry into the problem statement the agent will
work on in its own repository. Theme entries use fixed statements; an
instance entry asks the model to study how the parent failed that instance
and to phrase one improvement as an issue.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

import structlog

from dgm.agent.prompts import (
    DIAGNOSE_PROMPT,
    DIAGNOSE_SYSTEM_PROMPT,
    SOLVE_EMPTY_PATCHES_STATEMENT,
    SOLVE_STOCHASTICITY_STATEMENT,
    self_improve_statement,
)
from dgm.core.errors import DiagnosisError, ProviderError, TransientServiceError
from dgm.evaluation.benchmark import Benchmark
from dgm.evaluation.evaluator import AGENT_OUTPUT_FILE, CHAT_HISTORY_FILE, PATCH_FILE, TEST_OUTPUT_FILE
from dgm.evolution.archive import Candidate
from dgm.evolution.strategy import SOLVE_EMPTY_PATCHES, SOLVE_STOCHASTICITY
from dgm.llm.base import LLMMessage, LLMProvider
from dgm.llm.retry import RetryPolicy

logger = structlog.get_logger(__name__)

_JSON_BLOCK = re.compile(r"```json\s*(.*?)\s*```", re.DOTALL)

REQUIRED_FIELDS = ("implementation_suggestion", "problem_description")

# Keeps the diagnosis prompt within a reasonable context size
MAX_SECTION_CHARS = 20000

THEME_STATEMENTS = {
    SOLVE_EMPTY_PATCHES: SOLVE_EMPTY_PATCHES_STATEMENT,
    SOLVE_STOCHASTICITY: SOLVE_STOCHASTICITY_STATEMENT,
}


def extract_json_block(text: str) -> dict[str, Any] | None:
    """Parse the first ```json fenced block (or the whole text) as an object."""
    candidates = _JSON_BLOCK.findall(text) or [text.strip()]
    for raw in candidates:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def _read_clipped(path: Path) -> str:
    if not path.exists():
        return "(not available)"
    content = path.read_text(encoding="utf-8", errors="replace")
    if len(content) > MAX_SECTION_CHARS:
        half = MAX_SECTION_CHARS // 2
        content = content[:half] + "\n...<clipped>...\n" + content[-half:]
    return content


class SelfImproveDiagnoser:
    """
    Produces self-improvement problem statements.

    Example:
        ```python
        diagnoser = SelfImproveDiagnoser(llm)
        statement = await diagnoser.diagnose(parent, "django__django-11099", benchmark, artifacts)
        ```
    """

    def __init__(self, llm: LLMProvider, retry: RetryPolicy | None = None, max_attempts: int = 3):
        self.llm = llm
        self.retry = retry or RetryPolicy()
        self.max_attempts = max_attempts

    async def diagnose(
        self,
        parent: Candidate,
        entry: str,
        benchmark: Benchmark,
        artifacts_dir: str | Path | None = None,
    ) -> str:
        """
        Problem statement for improving `parent` on `entry`.

        Args:
            parent: Candidate being improved
            entry: Instance id or theme entry
            benchmark: Benchmark the entry belongs to
            artifacts_dir: Parent's per-instance evaluation artifacts

        Raises:
            DiagnosisError: The entry is unknown, the provider kept failing,
                or no usable diagnosis came back
        """
        if entry in THEME_STATEMENTS:
            logger.debug("Using theme statement", parent=parent.id, entry=entry)
            return THEME_STATEMENTS[entry]

        instance = benchmark.get(entry)
        if instance is None:
            raise DiagnosisError(f"Unknown entry {entry!r} for benchmark {benchmark.name}")

        instance_dir = Path(artifacts_dir) / entry if artifacts_dir is not None else None
        agent_log = "(not available)"
        predicted_patch = "(not available)"
        test_output = "(not available)"
        if instance_dir is not None:
            agent_log = _read_clipped(instance_dir / CHAT_HISTORY_FILE)
            if agent_log == "(not available)":
                agent_log = _read_clipped(instance_dir / AGENT_OUTPUT_FILE)
            predicted_patch = _read_clipped(instance_dir / PATCH_FILE)
            test_output = _read_clipped(instance_dir / TEST_OUTPUT_FILE)

        prompt = DIAGNOSE_PROMPT.format(
            agent_log=agent_log,
            problem_statement=instance.problem_statement,
            predicted_patch=predicted_patch,
            test_output=test_output,
            accuracy=parent.accuracy,
        )
        messages = [LLMMessage.system(DIAGNOSE_SYSTEM_PROMPT), LLMMessage.user(prompt)]

        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await self.retry.call(
                    lambda: self.llm.generate(messages), operation="diagnose"
                )
            except (TransientServiceError, ProviderError) as e:
                raise DiagnosisError(f"Diagnosis request failed: {e}") from e

            diagnosis = extract_json_block(response.content)
            if diagnosis and all(isinstance(diagnosis.get(k), str) and diagnosis[k].strip() for k in REQUIRED_FIELDS):
                logger.info(
                    "Diagnosis produced",
                    parent=parent.id,
                    entry=entry,
                    attempt=attempt,
                )
                return self_improve_statement(
                    diagnosis["problem_description"],
                    diagnosis["implementation_suggestion"],
                )

            logger.warning("Unusable diagnosis response", parent=parent.id, entry=entry, attempt=attempt)

        raise DiagnosisError(
            f"No usable diagnosis for {entry!r} after {self.max_attempts} attempts"
        )
