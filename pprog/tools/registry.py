"""Tool registry and base tool class."""

import asyncio
import re
import shlex
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from pydantic import BaseModel, model_validator

from pprog.exceptions import ToolError, ToolFailure, ToolNotFoundError
from pprog.logging import get_logger

log = get_logger(__name__)

_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=.*$")
_SHELL_SEPARATOR_TOKENS = {";", "&&", "||", "|", "&"}
_SHELL_WRAPPER_TOKENS = {"sudo", "command", "builtin", "nohup", "time"}


def _compile_shell_pattern(pattern: str) -> re.Pattern[str]:
    """Compile regex pattern with literal fallback for invalid regex input."""
    try:
        return re.compile(pattern)
    except re.error:
        return re.compile(re.escape(pattern))


def _tokenize_shell_command(command: str) -> list[str]:
    """Tokenize shell command while preserving control operators."""
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    lexer.commenters = ""
    return list(lexer)


def _split_shell_segments(command: str) -> list[list[str]]:
    """Split shell command into tokenized segments separated by control operators."""
    tokens = _tokenize_shell_command(command)
    segments: list[list[str]] = []
    current: list[str] = []
    for token in tokens:
        if token in _SHELL_SEPARATOR_TOKENS:
            if current:
                segments.append(current)
                current = []
            continue
        current.append(token)
    if current:
        segments.append(current)
    return segments


def _extract_segment_base_command(tokens: list[str]) -> str:
    """Extract executable command token from a tokenized shell segment."""
    idx = 0
    while idx < len(tokens):
        token = str(tokens[idx]).strip()
        if not token:
            idx += 1
            continue
        if token in _SHELL_WRAPPER_TOKENS:
            idx += 1
            continue
        if _ASSIGNMENT_RE.match(token) and "/" not in token:
            idx += 1
            continue
        return token
    return ""


def is_blocked_shell_command(command: str, blocked_patterns: list[str]) -> tuple[bool, str]:
    """Evaluate command against blocked patterns using parsed command matching."""
    cleaned = str(command or "").strip()
    if not cleaned:
        return True, "empty_command"

    try:
        segments = _split_shell_segments(cleaned)
    except ValueError:
        return True, "unparseable_command"
    if not segments:
        return True, "unparseable_command"

    segment_texts = [" ".join(tokens) for tokens in segments]
    base_commands = [
        base
        for segment in segments
        if (base := _extract_segment_base_command(segment))
    ]
    if not base_commands:
        return True, "unparseable_command"

    for raw_pattern in blocked_patterns or []:
        pattern = str(raw_pattern or "").strip()
        if not pattern:
            continue
        compiled = _compile_shell_pattern(pattern)
        segment_level_pattern = bool(re.search(r"\s", pattern))
        targets = segment_texts if segment_level_pattern else base_commands
        matcher = compiled.search if segment_level_pattern else compiled.match
        for target in targets:
            if matcher(target):
                return True, pattern
    return False, ""


def resolve_project_path(project_root: Path | str, path: str) -> Path:
    """Resolve ``path`` against the project root, refusing escapes.

    Raises:
        ValueError if the resolved path lies outside the project root
    """
    root = Path(project_root).expanduser().resolve()
    requested = Path(str(path or "").strip())
    if not str(requested) or str(requested) == ".":
        raise ValueError("Path is empty")
    candidate = (root / requested).resolve()
    try:
        candidate.relative_to(root)
    except ValueError:
        raise ValueError(f"Path escapes project root: {path}") from None
    return candidate


def truncate_output(text: str, max_chars: int) -> str:
    """Clip captured output to ``max_chars`` with a trailing note."""
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return text[:max_chars] + f"\n... [truncated, {len(text)} total chars]"


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    content: str = ""
    error: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self

    def model_text(self) -> str:
        """Text fed back to the model as tool result content."""
        if self.success:
            return self.content or "[no output]"
        return self.error or "Tool execution failed"


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    # Alternate argument names accepted from the model
    aliases: dict[str, str] = {}
    # None leaves timing to the tool itself
    timeout_seconds: float | None = 30.0

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments

        Returns:
            ToolResult with success status and content
        """

    def get_definition(self) -> dict[str, Any]:
        """Get the tool definition for LLM.

        Returns:
            Vendor-neutral definition (name, description, JSON schema)
        """
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    def normalize_arguments(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Map aliased argument names onto their canonical names."""
        normalized = dict(arguments or {})
        for alias, canonical in self.aliases.items():
            if alias in normalized and canonical not in normalized:
                normalized[canonical] = normalized.pop(alias)
        return normalized

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Validate tool arguments against schema.

        Raises:
            ToolFailure if a required argument is missing
        """
        required = self.parameters.get("required", [])
        for field in required:
            if field not in arguments:
                raise ToolFailure(
                    self.name,
                    f"Missing required argument: {field}",
                )


class ToolRegistry:
    """Registry for managing and executing available tools.

    ``execute`` never raises for a failing tool: every failure comes back as
    an unsuccessful ToolResult so the model can read it and adapt.
    """

    def __init__(self, project_root: Path | str | None = None):
        self._tools: dict[str, Tool] = {}
        self.set_project_root(project_root or Path.cwd())

    def set_project_root(self, project_root: Path | str) -> None:
        """Set the directory all file and shell tools are confined to."""
        self._project_root = Path(project_root).expanduser().resolve()

    @property
    def project_root(self) -> Path:
        return self._project_root

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools)

    def get_definitions(self) -> list[dict[str, Any]]:
        """Get all tool definitions for the provider."""
        return [tool.get_definition() for tool in self._tools.values()]

    async def execute(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Execute a tool by name and return its result or failure."""
        try:
            tool = self.get(name)
            if not isinstance(arguments, dict):
                raise ToolFailure(name, "Arguments must be a JSON object")
            normalized = tool.normalize_arguments(arguments)
            tool.validate_arguments(normalized)

            log.info("Executing tool", tool=name, arg_keys=sorted(normalized))
            run = tool.execute(**normalized, _project_root=self.project_root)
            if tool.timeout_seconds:
                result = await asyncio.wait_for(run, timeout=max(1.0, float(tool.timeout_seconds)))
            else:
                result = await run

            if not isinstance(result, ToolResult):
                raise ToolFailure(name, "Tool returned invalid result payload")
            log.info("Tool executed", tool=name, success=result.success)
            return result
        except asyncio.TimeoutError:
            timeout = tool.timeout_seconds or 0
            label = int(timeout) if float(timeout).is_integer() else timeout
            log.warning("Tool timed out", tool=name, timeout=label)
            return ToolResult(success=False, error=str(ToolFailure(name, f"Execution timed out after {label}s")))
        except ToolError as e:
            log.warning("Tool rejected", tool=name, error=str(e))
            return ToolResult(success=False, error=str(e))
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            return ToolResult(success=False, error=str(ToolFailure(name, str(e))))
