"""
Bash Tool

Runs shell commands inside the agent's working checkout through the
sandbox executor.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog

from dgm.core.errors import ToolError
from dgm.evolution.sandbox import Sandbox
from dgm.tools.base import Tool

logger = structlog.get_logger(__name__)

DEFAULT_BLOCKED = [
    "rm -rf /",
    "mkfs",
    "dd if=/dev/zero",
    ":(){:|:&};:",  # Fork bomb
    "chmod -R 777 /",
    "shutdown",
    "reboot",
    "halt",
    "poweroff",
]


class BashTool(Tool):
    """Shell command execution rooted at the working checkout."""

    name = "bash"
    description = (
        "Run commands in a bash shell.\n"
        "* Every command starts in the repository root; `cd` does not persist between calls.\n"
        "* You don't have access to the internet via this tool.\n"
        "* To inspect a particular line range of a file, e.g. lines 10-25, try "
        "'sed -n 10,25p /path/to/the/file'.\n"
        "* Please avoid commands that may produce a very large amount of output.\n"
        "* Long-running commands are killed after the timeout."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The bash command to run.",
            },
        },
        "required": ["command"],
    }

    def __init__(
        self,
        sandbox: Sandbox,
        workdir: str | Path,
        timeout: float = 120.0,
        max_output_length: int = 10000,
        blocked_commands: list[str] | None = None,
        env: dict[str, str] | None = None,
    ):
        """
        Initialize the tool.

        Args:
            sandbox: Executor the commands run in
            workdir: Repository root the commands start in
            timeout: Per-command timeout
            max_output_length: Output beyond this is clipped
            blocked_commands: Patterns that are refused outright
            env: Extra environment variables
        """
        self.sandbox = sandbox
        self.workdir = Path(workdir)
        self.timeout = timeout
        self.max_output_length = max_output_length
        self.blocked_commands = blocked_commands if blocked_commands is not None else DEFAULT_BLOCKED
        self.env = env

    def _validate_command(self, command: str) -> None:
        if not command.strip():
            raise ToolError("Empty command")
        for blocked in self.blocked_commands:
            if blocked in command:
                raise ToolError(f"Blocked command pattern: {blocked}")

    async def execute(self, **arguments: Any) -> str:
        command = arguments["command"]
        if not isinstance(command, str):
            raise ToolError("'command' must be a string")
        if "\x00" in command:
            raise ToolError("The command contains a null byte.")
        self._validate_command(command)

        result = await self.sandbox.run(command, self.workdir, timeout=self.timeout, env=self.env)

        if result.timed_out:
            raise ToolError(
                f"Command timed out after {self.timeout}s and was killed: {command[:200]}"
            )

        parts = []
        if result.stdout.strip():
            parts.append(result.stdout.rstrip())
        if result.stderr.strip():
            parts.append(f"Error:\n{result.stderr.rstrip()}")
        if result.exit_code != 0:
            parts.append(f"Exit code: {result.exit_code}")

        output = "\n".join(parts)
        if len(output) > self.max_output_length:
            output = output[: self.max_output_length] + "\n<response clipped>"
        return output
