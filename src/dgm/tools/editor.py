"""
Editor Tool

Views, creates and overwrites files. Every path must stay inside the
working checkout.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from dgm.core.errors import ToolError
from dgm.tools.base import Tool

MAX_VIEW_CHARS = 10000


class EditorTool(Tool):
    """File viewing and editing rooted at the working checkout."""

    name = "editor"
    description = (
        "Custom editing tool for viewing, creating, and editing files.\n"
        "* If `path` is a file, `view` displays the entire file with line numbers. "
        "If `path` is a directory, `view` lists non-hidden files and directories up to 2 levels deep.\n"
        "* The `create` command cannot be used if the specified `path` already exists as a file.\n"
        "* If a `command` generates a long output, it will be truncated and marked with `<response clipped>`.\n"
        "* The `edit` command overwrites the entire file with the provided `file_text`.\n"
        "* No partial/line-range edits or partial viewing are supported."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "enum": ["view", "create", "edit"],
                "description": "The command to run: `view`, `create`, or `edit`.",
            },
            "path": {
                "type": "string",
                "description": "Path to a file or directory, absolute or relative to the repository root.",
            },
            "file_text": {
                "type": "string",
                "description": "Required for `create` and `edit`: the content for the entire file.",
            },
        },
        "required": ["command", "path"],
    }

    def __init__(self, workdir: str | Path):
        self.workdir = Path(workdir).resolve()

    def _resolve(self, path_str: str) -> Path:
        if "\x00" in path_str:
            raise ToolError("The path contains a null byte.")
        path = Path(path_str)
        if not path.is_absolute():
            path = self.workdir / path
        path = path.resolve()
        if path != self.workdir and self.workdir not in path.parents:
            raise ToolError(f"The path {path_str} is outside the repository {self.workdir}.")
        return path

    async def execute(self, **arguments: Any) -> str:
        command = arguments["command"]
        path = self._resolve(str(arguments["path"]))
        file_text = arguments.get("file_text")

        if command == "view":
            return self._view(path)
        if command in ("create", "edit"):
            if not isinstance(file_text, str):
                raise ToolError(f"Missing 'file_text' for {command} command")
            if command == "create":
                return self._create(path, file_text)
            return self._edit(path, file_text)
        raise ToolError(f"Unknown command: {command}")

    def _view(self, path: Path) -> str:
        if not path.exists():
            raise ToolError(f"The path {path} does not exist.")
        if path.is_dir():
            return self._view_directory(path)

        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            raise ToolError(f"Failed to read file: {e}") from e

        if len(content) > MAX_VIEW_CHARS:
            content = content[:MAX_VIEW_CHARS] + "\n<response clipped>"
        content = content.expandtabs(4)
        numbered = "\n".join(
            f"{i:6}\t{line}" for i, line in enumerate(content.splitlines(), start=1)
        )
        return f"Here's the result of running `cat -n` on {path}:\n{numbered}\n"

    def _view_directory(self, path: Path, max_depth: int = 2) -> str:
        entries: list[str] = []
        level = [path]
        for _ in range(max_depth):
            next_level = []
            for directory in level:
                try:
                    children = sorted(directory.iterdir())
                except OSError:
                    continue
                for child in children:
                    if child.name.startswith("."):
                        continue
                    if child.is_dir():
                        entries.append(f"{child}/")
                        next_level.append(child)
                    else:
                        entries.append(str(child))
            level = next_level
        listing = "\n".join(sorted(entries))
        return (
            f"Here's the files and directories up to {max_depth} levels deep in {path}, "
            f"excluding hidden items:\n{listing}\n"
        )

    @staticmethod
    def _encode(content: str) -> bytes:
        try:
            return content.encode("utf-8")
        except UnicodeEncodeError as e:
            raise ToolError(f"file_text is not valid UTF-8 text: {e.reason} at position {e.start}") from e

    def _create(self, path: Path, content: str) -> str:
        if path.exists():
            raise ToolError(f"Cannot create new file; {path} already exists.")
        data = self._encode(content)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise ToolError(f"Failed to create file: {e}") from e
        return f"File created successfully at: {path}"

    def _edit(self, path: Path, content: str) -> str:
        if not path.exists():
            raise ToolError(f"The file {path} does not exist.")
        if path.is_dir():
            raise ToolError(f"{path} is a directory and cannot be edited as a file.")
        data = self._encode(content)
        try:
            path.write_bytes(data)
        except OSError as e:
            raise ToolError(f"Failed to edit file: {e}") from e
        return f"File at {path} has been overwritten with new content."
