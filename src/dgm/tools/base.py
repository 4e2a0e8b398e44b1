"""
Tool Interface

A tool is a named operation the model can request. The registry dispatches
requested calls and always answers with a `ToolResult`: bad requests come
back as error results the model can read and correct, while sandbox
failures propagate and end the run.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel, Field

from dgm.core.errors import ToolError
from dgm.llm.base import ToolCall, ToolDefinition

logger = structlog.get_logger(__name__)


class ToolResult(BaseModel):
    """Result from a tool execution."""

    tool_call_id: str
    tool_name: str
    output: str = ""
    error: str | None = None
    execution_time_ms: float = 0.0
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    @property
    def success(self) -> bool:
        """Check if the tool execution was successful."""
        return self.error is None

    @property
    def content(self) -> str:
        """Text returned to the model."""
        if self.error is not None:
            return f"Error: {self.error}"
        return self.output

    class Config:
        frozen = True


class Tool(ABC):
    """Base class for tools."""

    name: str = ""
    description: str = ""
    input_schema: dict[str, Any] = {}

    def definition(self) -> ToolDefinition:
        """Definition advertised to the model."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.input_schema,
        )

    @abstractmethod
    async def execute(self, **arguments: Any) -> str:
        """
        Run the tool.

        Raises:
            ToolError: The request cannot be carried out
            SandboxError: The execution environment failed
        """
        ...


class ToolRegistry:
    """
    Dispatches tool calls by name.

    Example:
        ```python
        registry = ToolRegistry([BashTool(sandbox, workdir), EditorTool(workdir)])
        result = await registry.invoke(ToolCall(id="1", name="bash", arguments={"command": "ls"}))
        ```
    """

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """Add a tool, replacing any tool with the same name."""
        self._tools[tool.name] = tool

    def definitions(self) -> list[ToolDefinition]:
        """Definitions of every registered tool."""
        return [tool.definition() for tool in self._tools.values()]

    def describe(self) -> str:
        """Plain-text tool list for models without native tool calling."""
        lines = []
        for tool in self._tools.values():
            lines.append(f"- {tool.name}: {tool.description.splitlines()[0]}")
        return "\n".join(lines)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    async def invoke(self, call: ToolCall) -> ToolResult:
        """
        Execute a requested tool call.

        Unknown tools, malformed arguments, `ToolError`s and input the tool
        cannot encode or pass to the OS are returned as error results.
        `SandboxError` propagates.
        """
        start = time.monotonic()

        def result(output: str = "", error: str | None = None) -> ToolResult:
            return ToolResult(
                tool_call_id=call.id,
                tool_name=call.name,
                output=output,
                error=error,
                execution_time_ms=(time.monotonic() - start) * 1000,
            )

        if "__raw__" in call.arguments:
            return result(error=f"Could not parse tool call: {str(call.arguments['__raw__'])[:500]}")

        tool = self._tools.get(call.name)
        if tool is None:
            logger.debug("Unknown tool requested", tool=call.name)
            return result(error=f"Unknown tool {call.name!r}. Available tools: {', '.join(self._tools)}")

        required = tool.input_schema.get("required", [])
        missing = [name for name in required if name not in call.arguments]
        if missing:
            return result(error=f"Missing required parameter(s): {', '.join(missing)}")

        allowed = set(tool.input_schema.get("properties", {}))
        unexpected = [name for name in call.arguments if allowed and name not in allowed]
        if unexpected:
            return result(error=f"Unexpected parameter(s): {', '.join(unexpected)}")

        try:
            output = await tool.execute(**call.arguments)
        except ToolError as e:
            logger.debug("Tool reported error", tool=call.name, error=str(e))
            return result(error=str(e))
        except (ValueError, UnicodeError, OSError) as e:
            logger.warning("Tool rejected its input", tool=call.name, error=repr(e))
            return result(error=f"{type(e).__name__}: {e}")

        return result(output=output)
