"""
Agent Tools

The closed set of tools a coding agent can call:
- bash: shell commands in the working checkout
- editor: view, create and overwrite files
"""

from dgm.tools.base import Tool, ToolRegistry, ToolResult
from dgm.tools.bash import BashTool
from dgm.tools.editor import EditorTool

__all__ = [
    "Tool",
    "ToolRegistry",
    "ToolResult",
    "BashTool",
    "EditorTool",
    "default_tools",
]


def default_tools(sandbox, workdir, timeout: float = 120.0, max_output_length: int = 10000) -> ToolRegistry:
    """Registry with the standard coding tools rooted at `workdir`."""
    return ToolRegistry([
        BashTool(sandbox, workdir, timeout=timeout, max_output_length=max_output_length),
        EditorTool(workdir),
    ])
