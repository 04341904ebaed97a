"""Project health-check tool."""

from pathlib import Path
from typing import Any

from pprog.logging import get_logger
from pprog.tools.execute import ShellRunner
from pprog.tools.registry import Tool, ToolResult, truncate_output

log = get_logger(__name__)


class CompileCheckTool(Tool):
    """Run the configured check command and report its output verbatim."""

    name = "compile_check"
    description = (
        "Run the project's configured health-check command (compiler, type checker "
        "or linter) and return its output."
    )
    parameters = {
        "type": "object",
        "properties": {},
        "required": [],
    }
    timeout_seconds = None

    def __init__(
        self,
        check_cmd: str = "",
        runner: ShellRunner | None = None,
        max_output_chars: int = 10000,
    ):
        self.check_cmd = (check_cmd or "").strip()
        self.runner = runner or ShellRunner()
        self.max_output_chars = max_output_chars

    async def execute(self, **kwargs: Any) -> ToolResult:
        if not self.check_cmd:
            return ToolResult(
                success=False,
                error="No check command configured (set tools.check_cmd or run `pprog init`)",
            )

        project_root = kwargs.get("_project_root") or Path.cwd()
        log.info("Running check command", command=self.check_cmd)
        outcome = await self.runner.run(self.check_cmd, cwd=project_root)

        output = truncate_output(outcome.output.strip(), self.max_output_chars)
        if outcome.error:
            detail = f"{outcome.error}\n{output}" if output else outcome.error
            return ToolResult(success=False, content=output, error=detail)
        # A failing check is still a successful tool call; the output is the report
        if not output:
            if outcome.returncode == 0:
                output = "No errors."
            else:
                output = f"Check command exited with status {outcome.returncode} and no output."
        return ToolResult(success=True, content=output)
