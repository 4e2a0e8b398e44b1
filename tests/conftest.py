"""
Pytest configuration and shared fixtures for DGM tests.
"""

import shutil
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from unittest.mock import AsyncMock, MagicMock

from dgm.evolution.archive import Candidate, InstanceOutcome, PerformanceMetrics
from dgm.evaluation.benchmark import Benchmark, BenchmarkInstance
from dgm.llm.base import LLMMessage, LLMProvider, LLMResponse, ToolCall

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git binary not available")

_BASE_TIME = datetime(2025, 1, 1, 12, 0, 0)


def make_metrics(outcomes=None, total=None, approximate=False):
    """PerformanceMetrics from a {id: "pass"|"fail"|"error"} mapping."""
    outcomes = {k: InstanceOutcome(v) for k, v in (outcomes or {}).items()}
    return PerformanceMetrics.from_outcomes(
        outcomes,
        total_instances=total if total is not None else len(outcomes),
        approximate=approximate,
    )


def make_candidate(
    candidate_id,
    parent=None,
    outcomes=None,
    total=None,
    approximate=False,
    active=True,
    order=0,
):
    """Candidate with metrics; `order` spaces out creation times."""
    return Candidate(
        id=candidate_id,
        code_revision=f"rev-{candidate_id}",
        parent_id=parent.id if parent else None,
        generation=parent.generation + 1 if parent else 0,
        metrics=make_metrics(outcomes, total, approximate) if outcomes is not None else None,
        active=active,
        created_at=_BASE_TIME + timedelta(seconds=order),
    )


def make_benchmark(count=5, name="unit", subsets=None, **instance_kwargs):
    """In-memory benchmark of self-evaluation instances t0..t{count-1}."""
    instances = {
        f"t{i}": BenchmarkInstance(
            instance_id=f"t{i}",
            problem_statement=f"Problem {i}",
            test_command="true",
            **instance_kwargs,
        )
        for i in range(count)
    }
    return Benchmark(name=name, instances=instances, subsets=subsets or {})


@pytest.fixture
def mock_llm():
    """Mock LLM provider that answers without calling tools."""
    llm = MagicMock(spec=LLMProvider)
    llm.provider_name = "mock"
    llm.model = "mock-model"
    llm.supports_tools = True

    async def mock_generate(messages, tools=None, **kwargs):
        return LLMResponse(
            content="Mock response",
            model="mock-model",
            provider="mock",
        )

    llm.generate = AsyncMock(side_effect=mock_generate)
    llm.close = AsyncMock()

    return llm


@pytest.fixture
def mock_llm_with_tool_call():
    """Mock LLM that calls the bash tool once, then answers."""
    llm = MagicMock(spec=LLMProvider)
    llm.provider_name = "mock"
    llm.model = "mock-model"
    llm.supports_tools = True

    responses = [
        LLMResponse(
            content="",
            tool_calls=[
                ToolCall(
                    id="call_123",
                    name="bash",
                    arguments={"command": "echo hello"},
                )
            ],
            finish_reason="tool_calls",
            model="mock-model",
            provider="mock",
        ),
        LLMResponse(content="Done", model="mock-model", provider="mock"),
    ]

    llm.generate = AsyncMock(side_effect=responses)
    llm.close = AsyncMock()

    return llm


@pytest.fixture
def sample_messages():
    """Sample conversation messages."""
    return [
        LLMMessage.system("You are a coding agent."),
        LLMMessage.user("Fix the bug."),
        LLMMessage.assistant("Looking at the repository now."),
    ]


@pytest.fixture
def git_repo(tmp_path):
    """A git repository with one commit containing `app.py`."""
    if shutil.which("git") is None:
        pytest.skip("git binary not available")

    import git

    path = tmp_path / "agent"
    path.mkdir()
    repo = git.Repo.init(path)
    with repo.config_writer() as writer:
        writer.set_value("user", "name", "Test")
        writer.set_value("user", "email", "test@localhost")

    (path / "app.py").write_text("def answer():\n    return 41\n")
    repo.index.add(["app.py"])
    repo.index.commit("initial")
    return path


@pytest.fixture
def benchmark():
    return make_benchmark()
