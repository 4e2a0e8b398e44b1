"""
Sandboxed Execution Environment

Runs a shell command in an isolated, disposable environment rooted at a
checkout directory. Two isolation levels are supported:

- subprocess: a fresh process group, killed as a whole on timeout or cancel
- docker: a throwaway `docker run --rm` container with the checkout mounted
  at the same path, killed by name on timeout or cancel

Sandboxes are single use. Nothing started here outlives the call that
started it.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import signal
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator
from uuid import uuid4

import structlog

from dgm.core.config import SandboxSettings
from dgm.core.errors import SandboxError

logger = structlog.get_logger(__name__)


class SandboxType(str, Enum):
    """Type of sandbox isolation."""
    DOCKER = "docker"
    SUBPROCESS = "subprocess"


@dataclass
class SandboxConfig:
    """Configuration for sandbox execution."""

    sandbox_type: SandboxType = SandboxType.SUBPROCESS

    # Docker settings
    docker_image: str = "dgm"
    docker_network: str = "none"  # Disable networking by default

    # Resource limits
    max_memory_mb: int = 4096
    max_cpu_percent: int = 100
    max_execution_seconds: float = 600.0

    # Output beyond this many characters per stream is dropped
    max_output_chars: int = 1_000_000

    # Permissions
    allow_network: bool = False

    @classmethod
    def from_settings(cls, settings: SandboxSettings) -> SandboxConfig:
        """Create from run settings."""
        return cls(
            sandbox_type=SandboxType(settings.sandbox_type),
            docker_image=settings.docker_image,
            max_memory_mb=settings.max_memory_mb,
            max_cpu_percent=settings.max_cpu_percent,
            allow_network=settings.allow_network,
        )


@dataclass
class ExecutionResult:
    """Result of sandboxed execution."""

    command: str = ""

    # Status
    success: bool = False
    exit_code: int = -1
    timed_out: bool = False

    # Output
    stdout: str = ""
    stderr: str = ""

    # Metrics
    execution_time_seconds: float = 0.0

    # Error
    error: str | None = None

    # Timestamps
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: datetime | None = None

    @property
    def output(self) -> str:
        """Combined stdout and stderr."""
        if self.stderr:
            return f"{self.stdout}\n{self.stderr}" if self.stdout else self.stderr
        return self.stdout

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "command": self.command,
            "success": self.success,
            "exitCode": self.exit_code,
            "timedOut": self.timed_out,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "executionTimeSeconds": self.execution_time_seconds,
            "error": self.error,
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }


class Sandbox:
    """
    Sandboxed Execution Environment.

    Example:
        ```python
        sandbox = Sandbox(SandboxConfig())

        async with repository.checkout(revision) as workdir:
            result = await sandbox.run("pytest -x", workdir, timeout=300)
            if result.timed_out:
                ...
        ```
    """

    def __init__(self, config: SandboxConfig | None = None):
        """
        Initialize the sandbox.

        Args:
            config: Sandbox configuration
        """
        self.config = config or SandboxConfig()

        if self.config.sandbox_type == SandboxType.DOCKER and shutil.which("docker") is None:
            raise SandboxError("Docker sandbox requested but the docker CLI is not installed")

    async def run(
        self,
        command: str,
        workdir: str | Path,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
        extra_paths: list[Path] | None = None,
    ) -> ExecutionResult:
        """
        Run a shell command with `workdir` as its root.

        Args:
            command: Shell command, run with `bash -c`
            workdir: Checkout the command runs in
            timeout: Execution timeout (overrides config)
            env: Extra environment variables
            extra_paths: Further host directories the command may use

        Returns:
            Execution result. A timeout is reported via `timed_out`, not raised.

        Raises:
            SandboxError: The sandbox itself could not be started
        """
        timeout = timeout or self.config.max_execution_seconds
        workdir = Path(workdir)

        if self.config.sandbox_type == SandboxType.DOCKER:
            return await self._execute_docker(command, workdir, timeout, env, extra_paths or [])
        return await self._execute_subprocess(command, workdir, timeout, env)

    async def _execute_subprocess(
        self,
        command: str,
        working_dir: Path,
        timeout: float,
        env: dict[str, str] | None,
    ) -> ExecutionResult:
        """Execute in a fresh process group."""
        result = ExecutionResult(command=command)

        exec_env = dict(os.environ)
        if env:
            exec_env.update(env)

        try:
            process = await asyncio.create_subprocess_exec(
                "bash", "-c", command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=working_dir,
                env=exec_env,
                start_new_session=True,
            )
        except OSError as e:
            raise SandboxError(f"Failed to start sandboxed process: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._kill_process_group(process)
            result.timed_out = True
            result.error = f"Execution timed out after {timeout}s"
            return self._finish(result)
        except asyncio.CancelledError:
            await self._kill_process_group(process)
            raise

        result.stdout = self._clip(stdout)
        result.stderr = self._clip(stderr)
        result.exit_code = process.returncode if process.returncode is not None else -1
        result.success = result.exit_code == 0
        return self._finish(result)

    async def _kill_process_group(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
        await process.wait()

    async def _execute_docker(
        self,
        command: str,
        working_dir: Path,
        timeout: float,
        env: dict[str, str] | None,
        extra_paths: list[Path],
    ) -> ExecutionResult:
        """Execute in a throwaway container."""
        result = ExecutionResult(command=command)
        container_name = f"dgm-{uuid4().hex[:12]}"

        network = "bridge" if self.config.allow_network else self.config.docker_network
        docker_cmd = [
            "docker", "run",
            "--rm",
            "--name", container_name,
            f"--memory={self.config.max_memory_mb}m",
            f"--cpus={self.config.max_cpu_percent / 100}",
            f"--network={network}",
        ]

        # Host paths are mounted at the same location inside the container
        for path in [working_dir, *extra_paths]:
            resolved = Path(path).resolve()
            docker_cmd.extend(["-v", f"{resolved}:{resolved}:rw"])
        docker_cmd.extend(["-w", str(working_dir.resolve())])

        if env:
            for key, value in env.items():
                docker_cmd.extend(["-e", f"{key}={value}"])

        docker_cmd.extend([self.config.docker_image, "bash", "-c", command])

        try:
            process = await asyncio.create_subprocess_exec(
                *docker_cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SandboxError(f"Failed to start docker: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._kill_container(container_name, process)
            result.timed_out = True
            result.error = f"Docker execution timed out after {timeout}s"
            return self._finish(result)
        except asyncio.CancelledError:
            await self._kill_container(container_name, process)
            raise

        result.stdout = self._clip(stdout)
        result.stderr = self._clip(stderr)
        result.exit_code = process.returncode if process.returncode is not None else -1

        # 125: docker itself failed (bad image, daemon down)
        if result.exit_code == 125:
            raise SandboxError(f"docker run failed: {result.stderr.strip()[:500]}")

        result.success = result.exit_code == 0
        return self._finish(result)

    async def _kill_container(self, name: str, process: asyncio.subprocess.Process) -> None:
        killer = await asyncio.create_subprocess_exec(
            "docker", "kill", name,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        await killer.wait()
        if process.returncode is None:
            process.kill()
        await process.wait()

    def _clip(self, data: bytes) -> str:
        text = data.decode("utf-8", errors="replace")
        limit = self.config.max_output_chars
        if len(text) > limit:
            return text[:limit] + "\n<output clipped>"
        return text

    def _finish(self, result: ExecutionResult) -> ExecutionResult:
        result.completed_at = datetime.utcnow()
        result.execution_time_seconds = (
            result.completed_at - result.started_at
        ).total_seconds()
        return result

    @asynccontextmanager
    async def scratch_dir(self, prefix: str = "dgm_sandbox_") -> AsyncIterator[Path]:
        """A temporary directory that is always removed afterwards."""
        temp_dir = Path(tempfile.mkdtemp(prefix=prefix))
        try:
            yield temp_dir
        finally:
            self._cleanup_temp_dir(temp_dir)

    def _cleanup_temp_dir(self, temp_dir: Path) -> None:
        """Clean up a temporary directory."""
        try:
            if temp_dir.exists():
                shutil.rmtree(temp_dir)
        except OSError as e:
            logger.warning("Failed to cleanup temp dir", path=str(temp_dir), error=str(e))

    @property
    def is_docker(self) -> bool:
        """Check if this sandbox isolates with Docker."""
        return self.config.sandbox_type == SandboxType.DOCKER
