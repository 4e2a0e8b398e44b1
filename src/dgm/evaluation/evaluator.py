"""
Candidate Evaluator

Scores one candidate revision on a benchmark. Every instance runs as its own
task in fresh disposable checkouts, at most `concurrency_limit` at a time.
A task that times out or fails is scored `error` for that instance only;
its siblings keep running.
"""

from __future__ import annotations

import asyncio
import re
import shlex
from pathlib import Path

import structlog

from dgm.core.config import EvaluationConfig
from dgm.core.errors import PatchApplyError
from dgm.evaluation.benchmark import Benchmark, BenchmarkInstance
from dgm.evolution.archive import InstanceOutcome, PerformanceMetrics
from dgm.evolution.repository import Repository
from dgm.evolution.sandbox import ExecutionResult, Sandbox

logger = structlog.get_logger(__name__)

AGENT_OUTPUT_FILE = "agent_output.txt"
TEST_OUTPUT_FILE = "test_output.txt"
PATCH_FILE = "model_patch.diff"
CHAT_HISTORY_FILE = "chat_history.jsonl"


class Evaluator:
    """
    Benchmark scoring for candidate revisions.

    Example:
        ```python
        evaluator = Evaluator(sandbox, Repository(agent_repo), config.evaluation)
        metrics = await evaluator.evaluate(revision, benchmark, shallow=True)
        print(metrics.accuracy, metrics.approximate)
        ```
    """

    def __init__(
        self,
        sandbox: Sandbox,
        agent_repository: Repository,
        config: EvaluationConfig | None = None,
        agent_env: dict[str, str] | None = None,
    ):
        """
        Initialize the evaluator.

        Args:
            sandbox: Executor for agent and test commands
            agent_repository: Repository holding candidate revisions
            config: Evaluation settings
            agent_env: Extra environment for the candidate agent command
        """
        self.sandbox = sandbox
        self.agent_repository = agent_repository
        self.config = config or EvaluationConfig()
        self.agent_env = agent_env or {}
        self._instance_repositories: dict[str, Repository] = {}

    async def evaluate(
        self,
        revision: str,
        benchmark: Benchmark,
        concurrency_limit: int | None = None,
        per_instance_timeout: float | None = None,
        shallow: bool = False,
        instance_ids: list[str] | None = None,
        artifacts_dir: str | Path | None = None,
    ) -> PerformanceMetrics:
        """
        Score `revision` on the selected instances.

        Args:
            revision: Candidate revision in the agent repository
            benchmark: Benchmark to score on
            concurrency_limit: Maximum concurrently running instances
            per_instance_timeout: Seconds before an instance is killed and scored `error`
            shallow: Score a fixed deterministic sample instead of everything
            instance_ids: Explicit instances to run (ignored when shallow)
            artifacts_dir: Per-instance outputs go to `<artifacts_dir>/<instance_id>/`

        Returns:
            Metrics over the selected instances
        """
        limit = concurrency_limit or self.config.concurrency_limit
        timeout = per_instance_timeout or self.config.per_instance_timeout

        if shallow:
            selected = benchmark.sample(self.config.shallow_sample_size, self.config.sample_seed)
        elif instance_ids is not None:
            selected = list(dict.fromkeys(instance_ids))
        else:
            selected = benchmark.instance_ids

        unknown = [i for i in selected if benchmark.get(i) is None]
        if unknown:
            raise ValueError(f"Unknown instances for benchmark {benchmark.name}: {unknown[:5]}")

        artifacts = Path(artifacts_dir) if artifacts_dir is not None else None
        semaphore = asyncio.Semaphore(limit)

        logger.info(
            "Evaluation started",
            revision=revision[:12],
            benchmark=benchmark.name,
            instances=len(selected),
            concurrency_limit=limit,
            shallow=shallow,
        )

        async def score(instance: BenchmarkInstance) -> tuple[str, InstanceOutcome]:
            async with semaphore:
                instance_dir = artifacts / instance.instance_id if artifacts else None
                try:
                    outcome = await asyncio.wait_for(
                        self._run_instance(revision, instance, instance_dir, timeout),
                        timeout=timeout,
                    )
                except asyncio.TimeoutError:
                    logger.warning(
                        "Instance timed out",
                        instance=instance.instance_id,
                        timeout=timeout,
                    )
                    outcome = InstanceOutcome.ERROR
                except Exception as e:
                    logger.warning(
                        "Instance evaluation failed",
                        instance=instance.instance_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    outcome = InstanceOutcome.ERROR
            return instance.instance_id, outcome

        tasks = [asyncio.create_task(score(benchmark.get(i))) for i in selected]
        outcomes: dict[str, InstanceOutcome] = {}
        try:
            for next_done in asyncio.as_completed(tasks):
                instance_id, outcome = await next_done
                outcomes[instance_id] = outcome
                logger.debug("Instance scored", instance=instance_id, outcome=outcome.value)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        metrics = PerformanceMetrics.from_outcomes(
            outcomes, total_instances=len(selected), approximate=shallow
        )

        logger.info(
            "Evaluation finished",
            revision=revision[:12],
            accuracy=round(metrics.accuracy, 4),
            resolved=len(metrics.resolved_ids),
            errors=len(metrics.error_ids),
            total=metrics.total_instances,
        )
        return metrics

    async def evaluate_staged(
        self,
        revision: str,
        benchmark: Benchmark,
        artifacts_dir: str | Path | None = None,
    ) -> PerformanceMetrics:
        """
        Score on the `small` subset first, then the rest if it looks promising.

        Shallow runs stop at the deterministic sample, and `no_full_eval`
        runs stop at the `small` subset; both are scored as approximate.
        Otherwise the remaining instances are only run when small-subset
        accuracy reaches `full_eval_threshold`; if they are skipped they
        count as failed. With `num_swe_evals` above one the whole procedure
        is repeated and the runs are merged.
        """
        runs = []
        for run in range(self.config.num_swe_evals):
            if run:
                logger.info("Repeating evaluation", revision=revision[:12], run=run + 1)
            runs.append(await self._evaluate_staged_once(revision, benchmark, artifacts_dir))
        return PerformanceMetrics.merge(runs)

    async def _evaluate_staged_once(
        self,
        revision: str,
        benchmark: Benchmark,
        artifacts_dir: str | Path | None,
    ) -> PerformanceMetrics:
        if self.config.shallow_eval:
            return await self.evaluate(revision, benchmark, shallow=True, artifacts_dir=artifacts_dir)

        small_ids = benchmark.subset("small")
        small = await self.evaluate(
            revision, benchmark, instance_ids=small_ids, artifacts_dir=artifacts_dir
        )
        if self.config.no_full_eval:
            return PerformanceMetrics.from_outcomes(
                small.per_instance, total_instances=len(small_ids), approximate=True
            )

        attempted = set(small_ids)
        remaining = [i for i in benchmark.instance_ids if i not in attempted]

        outcomes = dict(small.per_instance)
        if remaining and small.accuracy >= self.config.full_eval_threshold:
            rest = await self.evaluate(
                revision, benchmark, instance_ids=remaining, artifacts_dir=artifacts_dir
            )
            outcomes.update(rest.per_instance)
        elif remaining:
            logger.info(
                "Skipping full evaluation",
                revision=revision[:12],
                small_accuracy=round(small.accuracy, 4),
                threshold=self.config.full_eval_threshold,
            )

        return PerformanceMetrics.from_outcomes(outcomes, total_instances=len(benchmark))

    async def _run_instance(
        self,
        revision: str,
        instance: BenchmarkInstance,
        instance_dir: Path | None,
        timeout: float,
    ) -> InstanceOutcome:
        """Run one instance in fresh checkouts and classify it."""
        if instance_dir is not None:
            instance_dir.mkdir(parents=True, exist_ok=True)

        async with self.agent_repository.checkout(revision, prefix="dgm_eval_") as candidate_dir:
            if instance.is_self_eval:
                result = await self.sandbox.run(instance.test_command, candidate_dir, timeout=timeout)
                self._write_artifact(instance_dir, TEST_OUTPUT_FILE, result.output)
                return self._classify(result, instance)

            instance_repository = self._instance_repository(instance.repo_path)
            async with instance_repository.checkout(instance.base_revision, prefix="dgm_task_") as task_dir:
                patch = await self._run_agent(candidate_dir, task_dir, instance, instance_dir, timeout)
                if patch is None:
                    return InstanceOutcome.ERROR
                if not patch.strip():
                    return InstanceOutcome.FAIL

                await instance_repository.reset(task_dir, instance.base_revision)
                try:
                    await instance_repository.apply_patch(task_dir, patch)
                except PatchApplyError as e:
                    self._write_artifact(instance_dir, TEST_OUTPUT_FILE, str(e))
                    return InstanceOutcome.FAIL

                result = await self.sandbox.run(instance.test_command, task_dir, timeout=timeout)
                self._write_artifact(instance_dir, TEST_OUTPUT_FILE, result.output)
                return self._classify(result, instance)

    async def _run_agent(
        self,
        candidate_dir: Path,
        task_dir: Path,
        instance: BenchmarkInstance,
        instance_dir: Path | None,
        timeout: float,
    ) -> str | None:
        """
        Let the candidate's agent attempt an instance.

        Returns:
            The agent's patch, or None when the agent crashed or timed out
            without producing one
        """
        async with self.sandbox.scratch_dir(prefix="dgm_agent_out_") as outdir:
            problem_file = outdir / "problem_statement.md"
            problem_file.write_text(instance.problem_statement, encoding="utf-8")
            chat_history_file = outdir / CHAT_HISTORY_FILE

            command = self.config.agent_command.format(
                problem_file=shlex.quote(str(problem_file)),
                workdir=shlex.quote(str(task_dir)),
                base_revision=shlex.quote(instance.base_revision),
                chat_history_file=shlex.quote(str(chat_history_file)),
                outdir=shlex.quote(str(outdir)),
            )
            env = {**self.agent_env, "PYTHONPATH": str(candidate_dir / "src")}
            if instance.test_description:
                test_description_file = outdir / "test_description.md"
                test_description_file.write_text(instance.test_description, encoding="utf-8")
                command += f" --test-description-file {shlex.quote(str(test_description_file))}"

            result = await self.sandbox.run(
                command,
                candidate_dir,
                timeout=timeout,
                env=env,
                extra_paths=[
                    task_dir,
                    outdir,
                    self.agent_repository.path,
                    self._instance_repository(instance.repo_path).path,
                ],
            )
            self._write_artifact(instance_dir, AGENT_OUTPUT_FILE, result.output)

            if chat_history_file.exists():
                self._write_artifact(
                    instance_dir, CHAT_HISTORY_FILE, chat_history_file.read_text(encoding="utf-8")
                )

            patch_file = outdir / PATCH_FILE
            patch = patch_file.read_text(encoding="utf-8") if patch_file.exists() else ""
            self._write_artifact(instance_dir, PATCH_FILE, patch)

            if not patch.strip() and (result.timed_out or result.exit_code != 0):
                logger.debug(
                    "Candidate agent failed",
                    instance=instance.instance_id,
                    exit_code=result.exit_code,
                    timed_out=result.timed_out,
                )
                return None
            return patch

    def _instance_repository(self, repo_path: str) -> Repository:
        # One Repository per path so checkouts share its lock
        repository = self._instance_repositories.get(repo_path)
        if repository is None:
            repository = Repository(repo_path)
            self._instance_repositories[repo_path] = repository
        return repository

    @staticmethod
    def _classify(result: ExecutionResult, instance: BenchmarkInstance) -> InstanceOutcome:
        if result.timed_out:
            return InstanceOutcome.ERROR
        if result.exit_code != 0:
            return InstanceOutcome.FAIL
        if instance.pass_pattern and not re.search(instance.pass_pattern, result.output, re.MULTILINE):
            return InstanceOutcome.FAIL
        return InstanceOutcome.PASS

    @staticmethod
    def _write_artifact(instance_dir: Path | None, name: str, content: str) -> None:
        if instance_dir is None:
            return
        (instance_dir / name).write_text(content, encoding="utf-8")
