"""Read tool for reading file contents."""

from typing import Any

from pprog.logging import get_logger
from pprog.tools.registry import Tool, ToolResult, resolve_project_path

log = get_logger(__name__)


class ReadFileTool(Tool):
    """Read file contents inside the project root."""

    name = "read_file"
    description = "Read the full contents of a file, relative to the project root."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to read, relative to the project root",
            },
        },
        "required": ["path"],
    }

    async def execute(self, path: str, **kwargs: Any) -> ToolResult:
        """Read a file.

        Args:
            path: Path to file

        Returns:
            ToolResult with file contents
        """
        try:
            file_path = resolve_project_path(kwargs.get("_project_root") or ".", path)
        except ValueError as e:
            return ToolResult(success=False, error=str(e))

        if not file_path.exists():
            return ToolResult(success=False, error=f"File not found: {path}")
        if not file_path.is_file():
            return ToolResult(success=False, error=f"Not a file: {path}")

        try:
            content = file_path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            log.error("Read failed", path=path, error=str(e))
            return ToolResult(success=False, error=f"Failed to read {path}: {e}")

        log.debug("Read file", path=str(file_path), chars=len(content))
        return ToolResult(success=True, content=content)
