"""
Tests for the generation loop and self-improvement worker.
"""

import asyncio
import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from dgm.agent.diagnosis import SelfImproveDiagnoser
from dgm.core.config import DgmConfig, EvolutionConfig
from dgm.core.errors import ConfigurationError, DiagnosisError
from dgm.evaluation.evaluator import Evaluator
from dgm.evolution.archive import ROOT_ID, Archive, Candidate
from dgm.evolution.repository import Repository
from dgm.evolution.sandbox import Sandbox
from dgm.evolution.strategy import EvolutionStrategy, SelfImproveAssignment
from dgm.llm.base import LLMProvider, LLMResponse, ToolCall
from dgm.runner.runner import ARCHIVE_FILE, METADATA_LOG, DgmRunner, GenerationReport
from dgm.runner.worker import (
    METADATA_FILE,
    PATCH_FILE,
    TRANSCRIPT_FILE,
    AttemptStatus,
    SelfImproveAttempt,
    SelfImproveWorker,
    new_attempt_id,
)

from conftest import make_benchmark, make_candidate, make_metrics


class FakeWorker:
    """Stands in for SelfImproveWorker, producing a child per attempt."""

    def __init__(self, outcomes=None, delay=0.01, behaviour=None):
        self.outcomes = outcomes or {"t0": "pass", "t1": "fail"}
        self.delay = delay
        self.behaviour = behaviour or {}
        self.assignments: list[SelfImproveAssignment] = []
        self.stop_events: list[asyncio.Event | None] = []
        self.running = 0
        self.max_running = 0
        self.llm = MagicMock(spec=LLMProvider)
        self.llm.close = AsyncMock()
        self.diagnoser = MagicMock()
        self.diagnoser.llm = self.llm

    async def run(self, assignment, attempt_id=None, stop_event=None):
        index = len(self.assignments)
        self.assignments.append(assignment)
        self.stop_events.append(stop_event)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            behaviour = self.behaviour.get(index)
            if behaviour == "hang":
                await asyncio.sleep(60)
            if behaviour == "until_stopped":
                await stop_event.wait()
            if behaviour == "crash":
                raise RuntimeError("worker bug")
            await asyncio.sleep(self.delay)

            attempt = SelfImproveAttempt(attempt_id=attempt_id, assignment=assignment)
            if behaviour == "fail":
                attempt.finish(AttemptStatus.FAILED, "AgentLogicError: empty patch")
                return attempt
            parent = assignment.parent
            attempt.candidate = Candidate(
                id=attempt_id,
                code_revision=f"rev-{attempt_id}",
                parent_id=parent.id,
                generation=parent.generation + 1,
                metrics=make_metrics(self.outcomes),
                entry=assignment.entry,
            )
            attempt.finish(AttemptStatus.SUCCESS)
            return attempt
        finally:
            self.running -= 1


def make_runner(tmp_path, worker=None, continue_from=None, **evolution):
    evolution.setdefault("max_generation", 2)
    evolution.setdefault("selfimprove_size", 2)
    evolution.setdefault("selfimprove_workers", 1)
    output_dir = continue_from or tmp_path / "run"
    config = DgmConfig(
        evolution=EvolutionConfig(**evolution),
        output_root=tmp_path,
        continue_from=continue_from,
    )

    evaluator = MagicMock(spec=Evaluator)
    evaluator.evaluate_staged = AsyncMock(return_value=make_metrics({"t0": "pass", "t1": "fail"}))
    repository = MagicMock(spec=Repository)
    repository.resolve.return_value = "a" * 40

    return DgmRunner(
        config=config,
        archive=Archive(output_dir / ARCHIVE_FILE),
        strategy=EvolutionStrategy(seed=1),
        evaluator=evaluator,
        worker=worker or FakeWorker(),
        repository=repository,
        benchmark=make_benchmark(2),
        output_dir=output_dir,
    )


def read_metadata(runner):
    lines = (runner.output_dir / METADATA_LOG).read_text().splitlines()
    return [json.loads(line) for line in lines]


class TestDgmRunner:
    """Tests for DgmRunner."""

    @pytest.mark.asyncio
    async def test_initialize_evaluates_root(self, tmp_path):
        runner = make_runner(tmp_path)

        start = await runner.initialize()

        assert start == 1
        root = runner.archive.get(ROOT_ID)
        assert root.generation == 0
        assert root.code_revision == "a" * 40
        assert root.accuracy == 0.5
        assert (runner.output_dir / ARCHIVE_FILE).exists()
        runner.evaluator.evaluate_staged.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_two_generations_with_one_worker(self, tmp_path):
        worker = FakeWorker()
        runner = make_runner(tmp_path, worker)

        archive = await runner.run()

        assert worker.max_running == 1
        assert len(worker.assignments) == 4
        assert len(archive) == 5
        assert archive.generation == 2
        assert len(archive.by_generation(0)) == 1
        for child in archive:
            if not child.is_root:
                assert archive.get(child.parent_id).generation == child.generation - 1

        records = read_metadata(runner)
        assert [r["generation"] for r in records] == [1, 2]
        assert len(records[0]["children"]) == 2
        assert records[0]["childrenCompiled"] == records[0]["children"]
        assert set(records[1]["statuses"].values()) == {"success"}

    @pytest.mark.asyncio
    async def test_worker_limit_respected(self, tmp_path):
        worker = FakeWorker(delay=0.05)
        runner = make_runner(tmp_path, worker, max_generation=1, selfimprove_size=6, selfimprove_workers=3)

        await runner.run()

        assert worker.max_running == 3
        assert len(worker.assignments) == 6

    @pytest.mark.asyncio
    async def test_generation_timeout_cancels_stragglers(self, tmp_path):
        worker = FakeWorker(behaviour={1: "hang"})
        runner = make_runner(
            tmp_path,
            worker,
            max_generation=1,
            selfimprove_size=2,
            selfimprove_workers=2,
            generation_timeout=0.5,
        )

        archive = await asyncio.wait_for(runner.run(), timeout=10)

        report = runner.reports[0]
        statuses = sorted(a.status for a in report.attempts)
        assert statuses == sorted([AttemptStatus.SUCCESS, AttemptStatus.TIMED_OUT])
        assert len(archive) == 2
        assert archive.generation == 1

    @pytest.mark.asyncio
    async def test_failed_and_crashed_attempts(self, tmp_path):
        worker = FakeWorker(behaviour={0: "fail", 1: "crash"})
        runner = make_runner(tmp_path, worker, max_generation=1)

        archive = await runner.run()

        report = runner.reports[0]
        assert [a.status for a in report.attempts] == [AttemptStatus.FAILED, AttemptStatus.FAILED]
        assert "RuntimeError: worker bug" in report.attempts[1].reason
        assert report.children == []
        assert len(archive) == 1
        assert archive.generation == 1

    @pytest.mark.asyncio
    async def test_uncompiled_children_not_selectable(self, tmp_path):
        worker = FakeWorker(outcomes={"t0": "error", "t1": "error"})
        runner = make_runner(tmp_path, worker, max_generation=1)

        archive = await runner.run()

        assert len(archive) == 3
        assert [c.id for c in archive.parents_pool()] == [ROOT_ID]
        assert read_metadata(runner)[0]["childrenCompiled"] == []

    @pytest.mark.asyncio
    async def test_stop_request(self, tmp_path):
        worker = FakeWorker()
        runner = make_runner(tmp_path, worker)
        runner.request_stop()

        archive = await runner.run()

        assert runner.stop_requested
        assert worker.assignments == []
        assert archive.generation == 0

    @pytest.mark.asyncio
    async def test_repeated_stop_request_reaches_running_agents(self, tmp_path):
        worker = FakeWorker(behaviour={0: "until_stopped"})
        runner = make_runner(tmp_path, worker, max_generation=3, selfimprove_size=1)

        task = asyncio.create_task(runner.run())
        for _ in range(200):
            if worker.assignments:
                break
            await asyncio.sleep(0.01)

        runner.request_stop()
        await asyncio.sleep(0.05)
        assert not task.done()
        assert not worker.stop_events[0].is_set()

        runner.request_stop()
        archive = await asyncio.wait_for(task, timeout=5)

        assert worker.stop_events[0].is_set()
        assert len(worker.assignments) == 1
        assert archive.generation == 1

    @pytest.mark.asyncio
    async def test_resume(self, tmp_path):
        first = make_runner(tmp_path, max_generation=1)
        await first.run()
        output_dir = first.output_dir

        worker = FakeWorker()
        resumed = make_runner(tmp_path, worker, continue_from=output_dir, max_generation=2)
        archive = await resumed.run()

        resumed.evaluator.evaluate_staged.assert_not_awaited()
        assert archive.generation == 2
        assert len(archive) == 5
        assert len(worker.assignments) == 2
        assert [r["generation"] for r in read_metadata(resumed)] == [1, 2]

    @pytest.mark.asyncio
    async def test_resume_empty_archive(self, tmp_path):
        output_dir = tmp_path / "old"
        output_dir.mkdir()
        runner = make_runner(tmp_path, continue_from=output_dir)
        with pytest.raises(ConfigurationError):
            await runner.initialize()

    @pytest.mark.asyncio
    async def test_close_closes_llm_once(self, tmp_path):
        worker = FakeWorker()
        await make_runner(tmp_path, worker).close()
        worker.llm.close.assert_awaited_once()

    def test_report_to_dict(self):
        root = make_candidate(ROOT_ID, outcomes={"t0": "pass"})
        attempt = SelfImproveAttempt(attempt_id="c1", assignment=SelfImproveAssignment(root, "t1"))
        attempt.finish(AttemptStatus.FAILED, "boom")

        data = GenerationReport(generation=3, attempts=[attempt], active_ids=[ROOT_ID]).to_dict()

        assert data == {
            "generation": 3,
            "selfimproveEntries": [[ROOT_ID, "t1"]],
            "children": ["c1"],
            "childrenCompiled": [],
            "archive": [ROOT_ID],
            "statuses": {"c1": "failed"},
        }


class TestSelfImproveWorker:
    """Tests for SelfImproveWorker against a real git repository."""

    def _worker(self, git_repo, tmp_path, llm, diagnoser=None):
        repository = Repository(git_repo)
        evaluator = MagicMock(spec=Evaluator)
        evaluator.evaluate_staged = AsyncMock(return_value=make_metrics({"t0": "pass", "t1": "pass"}))
        if diagnoser is None:
            diagnoser = MagicMock(spec=SelfImproveDiagnoser)
            diagnoser.diagnose = AsyncMock(return_value="Make answer() return 42")
        return SelfImproveWorker(
            repository=repository,
            sandbox=Sandbox(),
            evaluator=evaluator,
            diagnoser=diagnoser,
            llm=llm,
            benchmark=make_benchmark(2),
            output_dir=tmp_path / "run",
        )

    def _root(self, git_repo):
        root = make_candidate(ROOT_ID, outcomes={"t0": "pass", "t1": "fail"})
        root.code_revision = Repository(git_repo).resolve("HEAD")
        return root

    def _editing_llm(self, git_repo_content):
        llm = MagicMock(spec=LLMProvider)
        llm.supports_tools = True
        llm.generate = AsyncMock(side_effect=[
            LLMResponse(tool_calls=[ToolCall(
                id="c1",
                name="editor",
                arguments={"command": "edit", "path": "app.py", "file_text": git_repo_content},
            )]),
            LLMResponse(content="Done."),
        ])
        return llm

    @pytest.mark.asyncio
    async def test_successful_attempt(self, git_repo, tmp_path):
        llm = self._editing_llm("def answer():\n    return 42\n")
        worker = self._worker(git_repo, tmp_path, llm)
        root = self._root(git_repo)

        attempt = await worker.run(SelfImproveAssignment(root, "t1"), attempt_id="child_a")

        assert attempt.succeeded
        child = attempt.candidate
        assert child.id == "child_a"
        assert child.parent_id == ROOT_ID
        assert child.generation == 1
        assert child.entry == "t1"
        assert child.problem_statement == "Make answer() return 42"
        assert child.accuracy == 1.0

        attempt_dir = tmp_path / "run" / "child_a"
        assert "+    return 42" in (attempt_dir / PATCH_FILE).read_text()
        assert (attempt_dir / TRANSCRIPT_FILE).exists()
        metadata = json.loads((attempt_dir / METADATA_FILE).read_text())
        assert metadata["status"] == "success"
        assert metadata["candidate"]["id"] == "child_a"

        repo = Repository(git_repo)
        assert repo.resolve("refs/dgm/child_a") == child.code_revision
        async with repo.checkout(child.code_revision) as workdir:
            assert "return 42" in (workdir / "app.py").read_text()
        assert (git_repo / "app.py").read_text() == "def answer():\n    return 41\n"

        evaluate_call = worker.evaluator.evaluate_staged.await_args
        assert evaluate_call.args[0] == child.code_revision
        assert evaluate_call.kwargs["artifacts_dir"] == attempt_dir / "eval"

    @pytest.mark.asyncio
    async def test_empty_patch_fails_attempt(self, git_repo, tmp_path):
        llm = MagicMock(spec=LLMProvider)
        llm.supports_tools = True
        llm.generate = AsyncMock(return_value=LLMResponse(content="Nothing to change."))
        worker = self._worker(git_repo, tmp_path, llm)

        attempt = await worker.run(SelfImproveAssignment(self._root(git_repo), "t1"), attempt_id="child_b")

        assert attempt.status == AttemptStatus.FAILED
        assert "empty patch" in attempt.reason
        assert attempt.candidate is None
        worker.evaluator.evaluate_staged.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_event_reaches_agent(self, git_repo, tmp_path):
        llm = self._editing_llm("def answer():\n    return 42\n")
        worker = self._worker(git_repo, tmp_path, llm)
        stop = asyncio.Event()
        stop.set()

        attempt = await worker.run(
            SelfImproveAssignment(self._root(git_repo), "t1"), attempt_id="child_s", stop_event=stop
        )

        assert attempt.status == AttemptStatus.FAILED
        assert "empty patch (aborted)" in attempt.reason
        llm.generate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_diagnosis_failure_fails_attempt(self, git_repo, tmp_path):
        diagnoser = MagicMock(spec=SelfImproveDiagnoser)
        diagnoser.diagnose = AsyncMock(side_effect=DiagnosisError("no usable diagnosis"))
        llm = MagicMock(spec=LLMProvider)
        worker = self._worker(git_repo, tmp_path, llm, diagnoser)

        attempt = await worker.run(SelfImproveAssignment(self._root(git_repo), "t1"))

        assert attempt.status == AttemptStatus.FAILED
        assert attempt.reason.startswith("DiagnosisError")
        metadata = json.loads((tmp_path / "run" / attempt.attempt_id / METADATA_FILE).read_text())
        assert metadata["status"] == "failed"

    def test_attempt_ids_are_unique(self):
        assert len({new_attempt_id() for _ in range(100)}) == 100
