"""
Run Configuration

Pydantic models for every tunable of a DGM run, grouped by layer.
Credentials are read from the environment (or a .env file) and passed
explicitly through component construction, never looked up ambiently.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from dgm.core.errors import ConfigurationError


class ParentSelection(str, Enum):
    """How parents are chosen for self-improvement attempts."""

    UNIFORM = "uniform"
    SCORE_PROP = "score_prop"
    SCORE_CHILD_PROP = "score_child_prop"
    BEST_ONLY = "best_only"

    @classmethod
    def _missing_(cls, value: object) -> ParentSelection | None:
        # Names used by earlier runs
        aliases = {"random": cls.UNIFORM, "best": cls.BEST_ONLY}
        return aliases.get(str(value))


class ArchiveUpdate(str, Enum):
    """Which evaluated children stay eligible as parents."""

    KEEP_ALL = "keep_all"
    KEEP_BETTER = "keep_better"


class RunBaseline(str, Enum):
    """Ablations of the open-ended loop."""

    # Always breed from the most recent candidate, with no archive search
    NO_DARWIN = "no_darwin"


class BenchmarkName(str, Enum):
    """Supported benchmarks."""

    SWE_BENCH = "swe_bench"
    POLYGLOT = "polyglot"


class AgentConfig(BaseModel):
    """Settings for the coding agent's tool-use loop."""

    model: str = "claude-3-5-sonnet-20241022"
    diagnose_model: str | None = None
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(4096, gt=0)

    # Round-trips with the model before the run is aborted
    max_turns: int = Field(50, gt=0)

    # Transient provider failures
    max_retries: int = Field(5, ge=0)
    retry_base_delay: float = Field(1.0, ge=0.0)
    retry_max_delay: float = Field(60.0, ge=0.0)

    # Tools
    tool_timeout: float = Field(120.0, gt=0.0)
    max_output_chars: int = Field(10000, gt=0)


class EvaluationConfig(BaseModel):
    """Settings for benchmark scoring."""

    benchmark: BenchmarkName = BenchmarkName.SWE_BENCH
    benchmarks_dir: Path = Path("benchmarks")

    concurrency_limit: int = Field(5, gt=0)
    per_instance_timeout: float = Field(1800.0, gt=0.0)

    shallow_eval: bool = False
    shallow_sample_size: int = Field(10, gt=0)
    sample_seed: int = 0

    # Scores within this distance count as tied when either is approximate
    eval_noise: float = Field(0.1, ge=0.0, le=1.0)

    # Small-subset accuracy needed before the remaining instances are run
    full_eval_threshold: float = Field(0.4, ge=0.0, le=1.0)

    # Score candidates on the `small` subset only
    no_full_eval: bool = False

    # Repeated evaluations per candidate, merged into one score
    num_swe_evals: int = Field(1, gt=0)

    # Run from the candidate checkout to let the candidate agent attempt an instance
    agent_command: str = (
        "python -m dgm.cli solve"
        " --problem-statement-file {problem_file}"
        " --git-dir {workdir}"
        " --base-commit {base_revision}"
        " --chat-history-file {chat_history_file}"
        " --outdir {outdir}"
    )


class EvolutionConfig(BaseModel):
    """Settings for the generation loop."""

    max_generation: int = Field(80, gt=0)
    selfimprove_size: int = Field(2, gt=0)
    selfimprove_workers: int = Field(2, gt=0)

    choose_selfimproves_method: ParentSelection = ParentSelection.SCORE_CHILD_PROP
    update_archive: ArchiveUpdate = ArchiveUpdate.KEEP_ALL
    run_baseline: RunBaseline | None = None

    seed: int = 0

    # Floor for a candidate's selection weight under score_child_prop
    score_floor: float = Field(1e-3, gt=0.0, le=1.0)

    # Stragglers still running after this many seconds are cancelled
    generation_timeout: float | None = Field(None, gt=0.0)


class SandboxSettings(BaseModel):
    """Settings for sandboxed execution."""

    sandbox_type: Literal["subprocess", "docker"] = "subprocess"
    docker_image: str = "dgm"
    max_memory_mb: int = Field(4096, gt=0)
    max_cpu_percent: int = Field(100, gt=0)
    allow_network: bool = False


class DgmConfig(BaseModel):
    """
    Complete configuration of a DGM run.

    Example:
        ```python
        config = DgmConfig()
        config.evolution.selfimprove_workers = 4
        config.evaluation.shallow_eval = True
        ```
    """

    agent: AgentConfig = Field(default_factory=AgentConfig)
    evaluation: EvaluationConfig = Field(default_factory=EvaluationConfig)
    evolution: EvolutionConfig = Field(default_factory=EvolutionConfig)
    sandbox: SandboxSettings = Field(default_factory=SandboxSettings)

    # Git repository holding the agent's own source
    agent_repo: Path = Path(".")
    root_revision: str = "HEAD"

    output_root: Path = Path("output_dgm")
    continue_from: Path | None = None

    class Config:
        validate_assignment = True


class ApiCredentials(BaseSettings):
    """Provider credentials, read from the environment or `.env`."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    anthropic_api_key: SecretStr | None = None
    openai_api_key: SecretStr | None = None
    openai_base_url: str | None = None

    def require_for(self, model: str) -> str:
        """
        Return the API key needed for a model.

        Raises:
            ConfigurationError: If the provider's key is not set
        """
        from dgm.llm.factory import detect_provider

        provider = detect_provider(model)
        secret = self.anthropic_api_key if provider == "anthropic" else self.openai_api_key
        if secret is None or not secret.get_secret_value():
            env_name = "ANTHROPIC_API_KEY" if provider == "anthropic" else "OPENAI_API_KEY"
            raise ConfigurationError(f"{env_name} must be set to use model {model!r}")
        return secret.get_secret_value()

    def to_env(self) -> dict[str, str]:
        """Environment variables that hand these credentials to a child process."""
        env: dict[str, str] = {}
        if self.anthropic_api_key is not None:
            env["ANTHROPIC_API_KEY"] = self.anthropic_api_key.get_secret_value()
        if self.openai_api_key is not None:
            env["OPENAI_API_KEY"] = self.openai_api_key.get_secret_value()
        if self.openai_base_url:
            env["OPENAI_BASE_URL"] = self.openai_base_url
        return env
