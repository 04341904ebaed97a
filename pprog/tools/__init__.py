"""Tools package for pprog."""

from pathlib import Path

from pprog.config import Config, get_config
from pprog.tools.compile_check import CompileCheckTool
from pprog.tools.execute import ExecuteTool, ShellOutcome, ShellRunner
from pprog.tools.privileged import (
    PendingPrivilegedExecution,
    PrivilegedInputChannel,
    PrivilegedInputUnavailable,
    StaticPrivilegedInput,
    TerminalPrivilegedInput,
)
from pprog.tools.read_file import ReadFileTool
from pprog.tools.registry import Tool, ToolRegistry, ToolResult
from pprog.tools.write_file import WriteFileTool

__all__ = [
    "Tool",
    "ToolRegistry",
    "ToolResult",
    "ReadFileTool",
    "WriteFileTool",
    "ExecuteTool",
    "CompileCheckTool",
    "ShellRunner",
    "ShellOutcome",
    "PendingPrivilegedExecution",
    "PrivilegedInputChannel",
    "PrivilegedInputUnavailable",
    "StaticPrivilegedInput",
    "TerminalPrivilegedInput",
    "build_default_registry",
]


def build_default_registry(
    config: Config | None = None,
    privileged_input: PrivilegedInputChannel | None = None,
    project_root: Path | str | None = None,
) -> ToolRegistry:
    """Build a registry with read_file, write_file, execute and compile_check.

    Args:
        config: Configuration (global config when omitted)
        privileged_input: Channel for elevation prompts; None refuses them
        project_root: Root override; defaults to the configured project root
    """
    cfg = config or get_config()
    root = Path(project_root) if project_root is not None else cfg.resolved_project_root()
    runner = ShellRunner(
        timeout=cfg.tools.execute_timeout,
        prompt_patterns=cfg.tools.privilege_prompt_patterns,
        privileged_input=privileged_input,
        privileged_input_timeout=cfg.tools.privileged_input_timeout,
    )

    registry = ToolRegistry(project_root=root)
    registry.register(ReadFileTool())
    registry.register(WriteFileTool())
    registry.register(
        ExecuteTool(
            runner=runner,
            max_output_chars=cfg.tools.max_output_chars,
            blocked=cfg.tools.blocked,
        )
    )
    registry.register(
        CompileCheckTool(
            check_cmd=cfg.tools.check_cmd,
            runner=runner,
            max_output_chars=cfg.tools.max_output_chars,
        )
    )
    return registry
