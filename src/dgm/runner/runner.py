"""
DGM Run Loop

Drives the open-ended loop: each generation selects parents, runs
self-improvement attempts with bounded concurrency, settles the archive and
persists it. The archive snapshot written at the end of a generation is the
crash-recovery boundary; a resumed run continues with the next generation.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog

from dgm.agent.diagnosis import SelfImproveDiagnoser
from dgm.core.config import ApiCredentials, DgmConfig
from dgm.core.errors import ConfigurationError
from dgm.evaluation.benchmark import Benchmark
from dgm.evaluation.evaluator import Evaluator
from dgm.evolution.archive import ROOT_ID, Archive, Candidate
from dgm.evolution.repository import Repository
from dgm.evolution.sandbox import Sandbox, SandboxConfig
from dgm.evolution.strategy import EvolutionStrategy
from dgm.llm.factory import create_llm, create_llm_from_config
from dgm.llm.retry import RetryPolicy
from dgm.runner.worker import (
    EVAL_DIR,
    AttemptStatus,
    SelfImproveAttempt,
    SelfImproveWorker,
    new_attempt_id,
)

logger = structlog.get_logger(__name__)

ARCHIVE_FILE = "archive.json"
METADATA_LOG = "dgm_metadata.jsonl"


@dataclass
class GenerationReport:
    """What happened in one generation."""

    generation: int
    attempts: list[SelfImproveAttempt] = field(default_factory=list)
    accepted: list[Candidate] = field(default_factory=list)
    active_ids: list[str] = field(default_factory=list)

    @property
    def children(self) -> list[Candidate]:
        return [a.candidate for a in self.attempts if a.candidate is not None]

    def to_dict(self) -> dict[str, Any]:
        """Generation record for the metadata log."""
        return {
            "generation": self.generation,
            "selfimproveEntries": [
                [a.assignment.parent.id, a.assignment.entry] for a in self.attempts
            ],
            "children": [a.attempt_id for a in self.attempts],
            "childrenCompiled": [
                c.id for c in self.children if c.metrics is not None and c.metrics.compiled
            ],
            "archive": self.active_ids,
            "statuses": {a.attempt_id: a.status.value for a in self.attempts},
        }


class DgmRunner:
    """
    Generation loop over an archive of agent variants.

    Example:
        ```python
        runner = DgmRunner.from_config(config, ApiCredentials())
        archive = await runner.run()
        print(archive.get_stats())
        ```
    """

    def __init__(
        self,
        config: DgmConfig,
        archive: Archive,
        strategy: EvolutionStrategy,
        evaluator: Evaluator,
        worker: SelfImproveWorker,
        repository: Repository,
        benchmark: Benchmark,
        output_dir: str | Path,
    ):
        self.config = config
        self.archive = archive
        self.strategy = strategy
        self.evaluator = evaluator
        self.worker = worker
        self.repository = repository
        self.benchmark = benchmark
        self.output_dir = Path(output_dir)

        self._stop = asyncio.Event()
        # Set on a repeated stop request; running agents submit what they have
        self._wrap_up = asyncio.Event()
        self.reports: list[GenerationReport] = []

    @classmethod
    def from_config(
        cls,
        config: DgmConfig,
        credentials: ApiCredentials,
        run_id: str | None = None,
    ) -> DgmRunner:
        """
        Wire up every component of a run.

        Raises:
            ConfigurationError: Bad repository, benchmark, model or credentials
            SandboxError: Docker requested but unavailable
        """
        if config.continue_from is not None:
            output_dir = Path(config.continue_from)
            if not (output_dir / ARCHIVE_FILE).exists():
                raise ConfigurationError(f"No {ARCHIVE_FILE} to continue from in {output_dir}")
        else:
            output_dir = config.output_root / (run_id or datetime.utcnow().strftime("%Y%m%d%H%M%S_%f"))

        repository = Repository(config.agent_repo)
        sandbox = Sandbox(SandboxConfig.from_settings(config.sandbox))
        benchmark = Benchmark.load(config.evaluation.benchmarks_dir, config.evaluation.benchmark.value)

        llm = create_llm_from_config(config.agent, credentials)
        if config.agent.diagnose_model:
            diagnose_llm = create_llm(
                config.agent.diagnose_model,
                credentials,
                temperature=config.agent.temperature,
                max_tokens=config.agent.max_tokens,
            )
        else:
            diagnose_llm = llm
        retry = RetryPolicy.from_agent_config(config.agent)

        evaluator = Evaluator(sandbox, repository, config.evaluation, agent_env=credentials.to_env())
        worker = SelfImproveWorker(
            repository=repository,
            sandbox=sandbox,
            evaluator=evaluator,
            diagnoser=SelfImproveDiagnoser(diagnose_llm, retry),
            llm=llm,
            benchmark=benchmark,
            output_dir=output_dir,
            agent_config=config.agent,
            retry=retry,
        )

        return cls(
            config=config,
            archive=Archive(output_dir / ARCHIVE_FILE),
            strategy=EvolutionStrategy.from_config(config.evolution, config.evaluation),
            evaluator=evaluator,
            worker=worker,
            repository=repository,
            benchmark=benchmark,
            output_dir=output_dir,
        )

    def request_stop(self) -> None:
        """
        Stop after the current generation has been committed.

        A second request also tells the running agents to stop at their next
        turn boundary, so the generation settles sooner.
        """
        if self._stop.is_set():
            if not self._wrap_up.is_set():
                logger.info("Stop requested again, running agents will wrap up")
            self._wrap_up.set()
            return
        logger.info("Stop requested, finishing current generation")
        self._stop.set()

    async def close(self) -> None:
        """Release provider connections."""
        llms = {id(llm): llm for llm in (self.worker.llm, self.worker.diagnoser.llm)}
        for llm in llms.values():
            await llm.close()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    async def initialize(self) -> int:
        """
        Prepare the archive.

        A resumed run loads the snapshot; a new run evaluates the root
        revision as candidate `initial`.

        Returns:
            The first generation to run

        Raises:
            ArchiveIntegrityError: The snapshot is corrupt
        """
        self.output_dir.mkdir(parents=True, exist_ok=True)

        if self.config.continue_from is not None:
            await self.archive.load()
            if len(self.archive) == 0:
                raise ConfigurationError(f"Archive to continue from is empty: {self.archive.storage_path}")
            logger.info(
                "Resuming run",
                output_dir=str(self.output_dir),
                generation=self.archive.generation,
                candidates=len(self.archive),
            )
            return self.archive.generation + 1

        revision = self.repository.resolve(self.config.root_revision)
        logger.info("Evaluating root revision", revision=revision[:12])
        metrics = await self.evaluator.evaluate_staged(
            revision,
            self.benchmark,
            artifacts_dir=self.output_dir / ROOT_ID / EVAL_DIR,
        )

        self.archive.append(Candidate(id=ROOT_ID, code_revision=revision, generation=0, metrics=metrics))
        self.archive.generation = 0
        await self.archive.save()

        logger.info(
            "Run initialized",
            output_dir=str(self.output_dir),
            root_accuracy=round(metrics.accuracy, 4),
        )
        return 1

    async def run(self) -> Archive:
        """Run generations until `max_generation` or a stop request."""
        start = await self.initialize()
        max_generation = self.config.evolution.max_generation

        for generation in range(start, max_generation + 1):
            if self._stop.is_set():
                logger.info("Run stopped", last_generation=self.archive.generation)
                break
            await self.run_generation(generation)
        else:
            logger.info("Run completed", generations=max_generation, stats=self.archive.get_stats())

        return self.archive

    async def run_generation(self, generation: int) -> GenerationReport:
        """
        Run and commit one generation.

        Raises:
            ArchiveIntegrityError: Committing the children broke the archive
        """
        evolution = self.config.evolution
        log = logger.bind(generation=generation)

        assignments = self.strategy.select_assignments(self.archive, evolution.selfimprove_size)
        if not assignments:
            log.warning("No eligible parents")

        semaphore = asyncio.Semaphore(evolution.selfimprove_workers)

        async def attempt(assignment, attempt_id: str) -> SelfImproveAttempt:
            async with semaphore:
                return await self.worker.run(assignment, attempt_id=attempt_id, stop_event=self._wrap_up)

        pending_attempts = [(new_attempt_id(), a) for a in assignments]
        tasks = {
            attempt_id: asyncio.create_task(attempt(assignment, attempt_id))
            for attempt_id, assignment in pending_attempts
        }

        try:
            if tasks:
                _, stragglers = await asyncio.wait(tasks.values(), timeout=evolution.generation_timeout)
            else:
                stragglers = set()
            for task in stragglers:
                task.cancel()
            if stragglers:
                await asyncio.gather(*stragglers, return_exceptions=True)
        except asyncio.CancelledError:
            for task in tasks.values():
                task.cancel()
            await asyncio.gather(*tasks.values(), return_exceptions=True)
            raise

        attempts: list[SelfImproveAttempt] = []
        for attempt_id, assignment in pending_attempts:
            task = tasks[attempt_id]
            if task in stragglers or task.cancelled():
                result = SelfImproveAttempt(attempt_id=attempt_id, assignment=assignment)
                result.finish(AttemptStatus.TIMED_OUT, "generation timeout")
                log.warning("Attempt timed out", attempt=attempt_id)
            elif task.exception() is not None:
                error = task.exception()
                result = SelfImproveAttempt(attempt_id=attempt_id, assignment=assignment)
                result.finish(AttemptStatus.FAILED, f"{type(error).__name__}: {error}")
                log.warning("Attempt crashed", attempt=attempt_id, error=str(error))
            else:
                result = task.result()
            attempts.append(result)

        children = [a.candidate for a in attempts if a.status == AttemptStatus.SUCCESS and a.candidate]
        accepted = self.strategy.update_archive(self.archive, children)
        self.archive.generation = generation
        await self.archive.save()

        report = GenerationReport(
            generation=generation,
            attempts=attempts,
            accepted=accepted,
            active_ids=[c.id for c in self.archive.parents_pool()],
        )
        self._append_metadata(report)
        self.reports.append(report)

        log.info(
            "Generation committed",
            attempts=len(attempts),
            succeeded=len(children),
            accepted=len(accepted),
            archive_size=len(self.archive),
            active=len(report.active_ids),
        )
        return report

    def _append_metadata(self, report: GenerationReport) -> None:
        with open(self.output_dir / METADATA_LOG, "a", encoding="utf-8") as f:
            f.write(json.dumps(report.to_dict()) + "\n")
