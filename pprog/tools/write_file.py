"""Write tool for replacing file contents."""

from typing import Any

from pprog.logging import get_logger
from pprog.tools.registry import Tool, ToolResult, resolve_project_path

log = get_logger(__name__)


class WriteFileTool(Tool):
    """Create or overwrite files inside the project root."""

    name = "write_file"
    description = (
        "Create or overwrite a file with the given content. "
        "Parent directories are created as needed."
    )
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to write, relative to the project root",
            },
            "content": {
                "type": "string",
                "description": "Full new content of the file",
            },
        },
        "required": ["path", "content"],
    }
    aliases = {"contents": "content"}

    async def execute(self, path: str, content: str, **kwargs: Any) -> ToolResult:
        """Write a file.

        Args:
            path: Path to file
            content: Content to write

        Returns:
            ToolResult with success status
        """
        try:
            file_path = resolve_project_path(kwargs.get("_project_root") or ".", path)
        except ValueError as e:
            return ToolResult(success=False, error=str(e))

        text = content if isinstance(content, str) else str(content)
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_text(text, encoding="utf-8")
        except OSError as e:
            log.error("Write failed", path=path, error=str(e))
            return ToolResult(success=False, error=f"Failed to write {path}: {e}")

        log.info("Wrote file", path=str(file_path), chars=len(text))
        return ToolResult(success=True, content=f"Written {len(text)} chars to {path}")
