"""
Command line entry points.

    dgm run    evolve the agent in --agent-repo
    dgm solve  run the coding agent once against a git checkout
"""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path

import click
import structlog
from pydantic import ValidationError

from dgm.agent.loop import AgentLoop
from dgm.core.config import (
    AgentConfig,
    ApiCredentials,
    ArchiveUpdate,
    BenchmarkName,
    DgmConfig,
    EvaluationConfig,
    EvolutionConfig,
    ParentSelection,
    RunBaseline,
)
from dgm.core.errors import ArchiveIntegrityError, ConfigurationError, DgmError, SandboxError
from dgm.core.logging import configure_logging
from dgm.evolution.repository import Repository
from dgm.evolution.sandbox import Sandbox
from dgm.llm.factory import create_llm
from dgm.llm.retry import RetryPolicy
from dgm.runner.runner import DgmRunner
from dgm.tools import default_tools

logger = structlog.get_logger(__name__)

SELECTION_CHOICES = [m.value for m in ParentSelection] + ["random", "best"]


def _fail(message: str) -> None:
    click.echo(click.style(f"Error: {message}", fg="red"), err=True)
    raise SystemExit(1)


@click.group()
@click.version_option(package_name="dgm")
def main() -> None:
    """Darwin Gödel Machine: open-ended self-improvement of a coding agent."""


@main.command()
@click.option("--max-generation", type=int, default=80, show_default=True, help="Generations to run.")
@click.option("--selfimprove-size", type=int, default=2, show_default=True, help="Attempts per generation.")
@click.option("--selfimprove-workers", type=int, default=2, show_default=True, help="Concurrent attempts.")
@click.option(
    "--choose-selfimproves-method",
    type=click.Choice(SELECTION_CHOICES),
    default=ParentSelection.SCORE_CHILD_PROP.value,
    show_default=True,
    help="Parent selection method.",
)
@click.option(
    "--update-archive",
    type=click.Choice([m.value for m in ArchiveUpdate]),
    default=ArchiveUpdate.KEEP_ALL.value,
    show_default=True,
    help="Which children stay eligible as parents.",
)
@click.option(
    "--benchmark",
    type=click.Choice([b.value for b in BenchmarkName]),
    default=BenchmarkName.SWE_BENCH.value,
    show_default=True,
)
@click.option("--shallow-eval", is_flag=True, help="Score on a small deterministic sample only.")
@click.option("--eval-noise", type=float, default=0.1, show_default=True, help="Score tie leeway for sampled scores.")
@click.option("--no-full-eval", is_flag=True, help="Score candidates on the small subset only.")
@click.option("--num-swe-evals", type=int, default=1, show_default=True, help="Repeated evaluations per candidate.")
@click.option(
    "--run-baseline",
    type=click.Choice([b.value for b in RunBaseline]),
    default=None,
    help="Ablation replacing parent selection.",
)
@click.option(
    "--continue-from",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Output directory of a previous run to resume.",
)
@click.option(
    "--agent-repo",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
    help="Git repository holding the agent's source.",
)
@click.option("--root-revision", default="HEAD", show_default=True, help="Revision of the initial agent.")
@click.option(
    "--benchmarks-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("benchmarks"),
    show_default=True,
)
@click.option(
    "--output-root",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("output_dgm"),
    show_default=True,
)
@click.option("--seed", type=int, default=0, show_default=True, help="Seed for parent selection.")
@click.option("--concurrency-limit", type=int, default=5, show_default=True, help="Concurrent benchmark instances.")
@click.option("--model", default=AgentConfig().model, show_default=True, help="Model driving the agent.")
@click.option("--sandbox", "sandbox_type", type=click.Choice(["subprocess", "docker"]), default="subprocess", show_default=True)
@click.option("--log-level", default="INFO", show_default=True)
@click.option("--json-logs", is_flag=True, help="Emit console logs as JSON.")
def run(
    max_generation: int,
    selfimprove_size: int,
    selfimprove_workers: int,
    choose_selfimproves_method: str,
    update_archive: str,
    benchmark: str,
    shallow_eval: bool,
    eval_noise: float,
    no_full_eval: bool,
    num_swe_evals: int,
    run_baseline: str | None,
    continue_from: Path | None,
    agent_repo: Path,
    root_revision: str,
    benchmarks_dir: Path,
    output_root: Path,
    seed: int,
    concurrency_limit: int,
    model: str,
    sandbox_type: str,
    log_level: str,
    json_logs: bool,
) -> None:
    """Run the open-ended self-improvement loop."""
    configure_logging(log_level, json_logs)

    try:
        config = DgmConfig(
            agent=AgentConfig(model=model),
            evaluation=EvaluationConfig(
                benchmark=benchmark,
                benchmarks_dir=benchmarks_dir,
                concurrency_limit=concurrency_limit,
                shallow_eval=shallow_eval,
                eval_noise=eval_noise,
                no_full_eval=no_full_eval,
                num_swe_evals=num_swe_evals,
            ),
            evolution=EvolutionConfig(
                max_generation=max_generation,
                selfimprove_size=selfimprove_size,
                selfimprove_workers=selfimprove_workers,
                choose_selfimproves_method=choose_selfimproves_method,
                update_archive=update_archive,
                run_baseline=run_baseline,
                seed=seed,
            ),
            sandbox={"sandbox_type": sandbox_type},
            agent_repo=agent_repo,
            root_revision=root_revision,
            output_root=output_root,
            continue_from=continue_from,
        )
        runner = DgmRunner.from_config(config, ApiCredentials())
    except ValidationError as e:
        _fail(f"Invalid configuration: {e}")
    except (ConfigurationError, SandboxError) as e:
        _fail(str(e))

    configure_logging(log_level, json_logs, log_file=runner.output_dir / "dgm.log")
    click.echo(f"Output directory: {runner.output_dir}")

    try:
        archive = asyncio.run(_run(runner))
    except ArchiveIntegrityError as e:
        _fail(f"Archive integrity violated: {e}")
    except (ConfigurationError, SandboxError) as e:
        _fail(str(e))

    stats = archive.get_stats()
    click.echo(
        f"Finished at generation {stats['generation']}: {stats['total_candidates']} candidates, "
        f"best {stats['best_id']} ({stats['best_accuracy']:.1%})"
    )


async def _run(runner: DgmRunner):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, runner.request_stop)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass
    try:
        return await runner.run()
    finally:
        await runner.close()


@main.command()
@click.option(
    "--problem-statement-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
)
@click.option(
    "--git-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    required=True,
    help="Checkout the agent works in.",
)
@click.option("--base-commit", required=True, help="Revision the patch is taken against.")
@click.option("--chat-history-file", type=click.Path(dir_okay=False, path_type=Path), required=True)
@click.option(
    "--outdir",
    type=click.Path(file_okay=False, path_type=Path),
    required=True,
    help="Directory that receives model_patch.diff.",
)
@click.option("--test-description-file", type=click.Path(exists=True, dir_okay=False, path_type=Path), default=None)
@click.option("--model", default=AgentConfig().model, show_default=True)
@click.option("--max-turns", type=int, default=AgentConfig().max_turns, show_default=True)
@click.option("--log-level", default="INFO", show_default=True)
def solve(
    problem_statement_file: Path,
    git_dir: Path,
    base_commit: str,
    chat_history_file: Path,
    outdir: Path,
    test_description_file: Path | None,
    model: str,
    max_turns: int,
    log_level: str,
) -> None:
    """Run the coding agent once and write its patch."""
    configure_logging(log_level)

    problem_statement = problem_statement_file.read_text(encoding="utf-8")
    test_description = (
        test_description_file.read_text(encoding="utf-8") if test_description_file else None
    )

    try:
        agent_config = AgentConfig(model=model, max_turns=max_turns)
        llm = create_llm(model, ApiCredentials(), agent_config.temperature, agent_config.max_tokens)
        repository = Repository(git_dir)
    except (ValidationError, ConfigurationError) as e:
        _fail(str(e))

    try:
        patch = asyncio.run(
            _solve(llm, repository, agent_config, base_commit, problem_statement, test_description, chat_history_file)
        )
    except DgmError as e:
        _fail(f"{type(e).__name__}: {e}")

    outdir.mkdir(parents=True, exist_ok=True)
    (outdir / "model_patch.diff").write_text(patch, encoding="utf-8")
    click.echo(f"Patch written to {outdir / 'model_patch.diff'} ({len(patch)} bytes)")


async def _solve(
    llm,
    repository: Repository,
    agent_config: AgentConfig,
    base_commit: str,
    problem_statement: str,
    test_description: str | None,
    chat_history_file: Path,
) -> str:
    sandbox = Sandbox()
    tools = default_tools(
        sandbox,
        repository.path,
        timeout=agent_config.tool_timeout,
        max_output_length=agent_config.max_output_chars,
    )
    loop = AgentLoop(
        llm,
        tools,
        repository,
        repository.path,
        base_commit,
        max_turns=agent_config.max_turns,
        retry=RetryPolicy.from_agent_config(agent_config),
        transcript_path=chat_history_file,
        test_description=test_description,
    )
    try:
        result = await loop.run(problem_statement)
    finally:
        await llm.close()
    return result.patch


if __name__ == "__main__":
    main()
