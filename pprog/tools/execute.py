"""Shell execution tool with privileged-prompt handling."""

import asyncio
import codecs
import os
import re
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pprog.config import DEFAULT_PRIVILEGE_PROMPT_PATTERNS
from pprog.exceptions import ToolBlockedError
from pprog.logging import get_logger
from pprog.tools.privileged import (
    PendingPrivilegedExecution,
    PrivilegedInputChannel,
    PrivilegedInputUnavailable,
)
from pprog.tools.registry import Tool, ToolResult, is_blocked_shell_command, truncate_output

log = get_logger(__name__)

_SUDO_WORD_RE = re.compile(r"sudo(?=$|[ \t\n;&|)])(?![ \t]+-S\b)")
_ASSIGNMENT_WORD_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*=[^ \t\n;&|()]*")
_HEREDOC_RE = re.compile(r"<<-?[ \t]*(['\"]?)([A-Za-z0-9_]+)\1")
_COMMAND_SEPARATORS = ";&|(\n"
_REDACTED = "********"
_READ_CHUNK = 4096


def _skip_heredoc_bodies(command: str, pos: int, delimiters: list[str]) -> int:
    """Return the offset just past the bodies of ``delimiters`` starting at ``pos``."""
    for delimiter in delimiters:
        while pos < len(command):
            end = command.find("\n", pos)
            if end == -1:
                end = len(command)
            line = command[pos:end]
            pos = end + 1
            if line.strip() == delimiter:
                break
    return pos


def sudo_insertion_points(command: str) -> list[int]:
    """Offsets just after each ``sudo`` that sits in command position.

    Quoted text, comments, heredoc bodies and arguments are left alone, so
    ``echo "use sudo"`` or ``grep sudo /etc/group`` yield nothing.
    """
    points: list[int] = []
    heredocs: list[str] = []
    quote = ""
    at_command = True
    i = 0
    while i < len(command):
        ch = command[i]
        if quote:
            if ch == "\\" and quote == '"':
                i += 2
                continue
            if ch == quote:
                quote = ""
            i += 1
            continue
        if ch == "\n":
            i = _skip_heredoc_bodies(command, i + 1, heredocs)
            heredocs = []
            at_command = True
            continue
        if ch in " \t":
            i += 1
            continue
        if ch == "&" and i > 0 and command[i - 1] in "<>":
            i += 1
            continue
        if ch in _COMMAND_SEPARATORS:
            at_command = True
            i += 1
            continue
        if ch in "'\"":
            quote = ch
            at_command = False
            i += 1
            continue
        if ch == "\\":
            at_command = False
            i += 2
            continue
        if ch == "#" and (i == 0 or command[i - 1] in " \t\n;&|("):
            end = command.find("\n", i)
            i = len(command) if end == -1 else end
            continue
        if command.startswith("<<", i):
            heredoc = _HEREDOC_RE.match(command, i)
            if heredoc:
                heredocs.append(heredoc.group(2))
                i = heredoc.end()
                continue
        if at_command:
            assignment = _ASSIGNMENT_WORD_RE.match(command, i)
            if assignment:
                i = assignment.end()
                continue
            if _SUDO_WORD_RE.match(command, i):
                points.append(i + len("sudo"))
                i += len("sudo")
                at_command = False
                continue
        at_command = False
        i += 1
    return points


@dataclass
class ShellOutcome:
    """Captured result of one shell run."""

    output: str
    returncode: int | None = None
    error: str | None = None


class ShellRunner:
    """Spawn a shell command and capture combined stdout/stderr.

    When the output ends in something that looks like a password prompt the
    run is suspended on a PendingPrivilegedExecution until the operator
    supplies the secret, which is then written to the command's stdin.
    """

    def __init__(
        self,
        timeout: float = 120,
        prompt_patterns: list[str] | None = None,
        privileged_input: PrivilegedInputChannel | None = None,
        privileged_input_timeout: float = 300,
        shell: str = "/bin/bash",
    ):
        self.timeout = max(1.0, float(timeout))
        self.prompt_patterns = [
            re.compile(pattern)
            for pattern in (prompt_patterns if prompt_patterns is not None else DEFAULT_PRIVILEGE_PROMPT_PATTERNS)
        ]
        self.privileged_input = privileged_input
        self.privileged_input_timeout = max(1.0, float(privileged_input_timeout))
        self.shell = shell

    @staticmethod
    def prepare_command(command: str) -> str:
        """Make sudo read its password from stdin instead of the terminal."""
        prepared = command
        for point in reversed(sudo_insertion_points(command)):
            prepared = prepared[:point] + " -S" + prepared[point:]
        return prepared

    def is_privilege_prompt(self, text: str) -> bool:
        tail = text.rstrip("\n")
        if not tail.strip():
            return False
        return any(pattern.search(tail) for pattern in self.prompt_patterns)

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            # The shell leads its own process group; take its children down too
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            await process.wait()

    async def _supply_secret(
        self,
        process: asyncio.subprocess.Process,
        command: str,
        prompt: str,
        secrets: list[str],
    ) -> None:
        if self.privileged_input is None:
            raise PrivilegedInputUnavailable(
                "Command is waiting for a password but no operator input channel is configured"
            )
        pending = PendingPrivilegedExecution(command=command, prompt=prompt)
        log.info("Privilege prompt detected", request_id=pending.id, command=command)
        try:
            secret = await asyncio.wait_for(
                self.privileged_input.request_secret(pending),
                timeout=self.privileged_input_timeout,
            )
        except asyncio.TimeoutError:
            raise PrivilegedInputUnavailable(
                f"No operator input within {int(self.privileged_input_timeout)}s"
            ) from None

        if secret:
            secrets.append(secret)
        assert process.stdin is not None
        process.stdin.write((secret + "\n").encode("utf-8"))
        await process.stdin.drain()
        log.info("Privileged input forwarded", request_id=pending.id)

    async def run(self, command: str, cwd: Path | str) -> ShellOutcome:
        """Run ``command`` in ``cwd``; never raises for command failures."""
        prepared = self.prepare_command(command)
        env = os.environ.copy()
        env["PATH"] = os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin")

        process = await asyncio.create_subprocess_exec(
            self.shell,
            "-c",
            prepared,
            cwd=str(cwd),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=env,
            # Detach from the controlling terminal so tools cannot read it directly
            start_new_session=True,
        )
        assert process.stdout is not None

        loop = asyncio.get_running_loop()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        output = ""
        scan_from = 0
        secrets: list[str] = []
        deadline = loop.time() + self.timeout

        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError
                chunk = await asyncio.wait_for(process.stdout.read(_READ_CHUNK), timeout=remaining)
                if not chunk:
                    output += decoder.decode(b"", final=True)
                    break
                output += decoder.decode(chunk)

                line_start = output.rfind("\n", scan_from) + 1
                tail = output[max(line_start, scan_from):]
                if self.is_privilege_prompt(tail):
                    waited_from = loop.time()
                    await self._supply_secret(process, command, tail, secrets)
                    # Time spent waiting on the operator does not count against the command
                    deadline += loop.time() - waited_from
                    scan_from = len(output)

            remaining = max(1.0, deadline - loop.time())
            returncode = await asyncio.wait_for(process.wait(), timeout=remaining)
        except asyncio.TimeoutError:
            await self._kill(process)
            return ShellOutcome(
                output=self._redact(output, secrets),
                error=f"Command timed out after {int(self.timeout)}s",
            )
        except PrivilegedInputUnavailable as e:
            await self._kill(process)
            return ShellOutcome(output=self._redact(output, secrets), error=str(e))
        except asyncio.CancelledError:
            await self._kill(process)
            raise
        finally:
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()

        return ShellOutcome(output=self._redact(output, secrets), returncode=returncode)

    @staticmethod
    def _redact(text: str, secrets: list[str]) -> str:
        for secret in secrets:
            text = text.replace(secret, _REDACTED)
        return text


class ExecuteTool(Tool):
    """Execute shell commands in the project root."""

    name = "execute"
    description = "Execute bash statements as a single string in the project root directory."
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The bash statement to be executed.",
            },
        },
        "required": ["command"],
    }
    aliases = {"statement": "command"}
    # The runner enforces its own deadline, excluding operator wait time
    timeout_seconds = None

    def __init__(
        self,
        runner: ShellRunner | None = None,
        max_output_chars: int = 10000,
        blocked: list[str] | None = None,
    ):
        self.runner = runner or ShellRunner()
        self.max_output_chars = max_output_chars
        self.blocked = list(blocked or [])

    def _is_command_safe(self, command: str) -> tuple[bool, str]:
        """Check if command is safe to execute.

        Returns:
            Tuple of (is_safe, reason)
        """
        blocked, matched = is_blocked_shell_command(command, self.blocked)
        if blocked:
            if matched == "empty_command":
                return False, "Command is empty"
            if matched == "unparseable_command":
                return False, "Command is not parseable"
            return False, f"Command matches blocked pattern: {matched}"
        return True, ""

    async def execute(self, command: str, **kwargs: Any) -> ToolResult:
        """Execute a shell command.

        Args:
            command: Shell command to execute

        Returns:
            ToolResult with combined output

        Raises:
            ToolBlockedError if the command matches a blocked pattern
        """
        is_safe, reason = self._is_command_safe(command)
        if not is_safe:
            log.warning("Blocked unsafe command", command=command, reason=reason)
            raise ToolBlockedError(self.name, reason)

        project_root = kwargs.get("_project_root") or Path.cwd()
        log.info("Executing shell command", command=command, timeout=self.runner.timeout)
        outcome = await self.runner.run(command, cwd=project_root)

        output = truncate_output(outcome.output.strip(), self.max_output_chars)
        if outcome.error:
            detail = f"{outcome.error}\n{output}" if output else outcome.error
            return ToolResult(success=False, content=output, error=detail)
        if outcome.returncode != 0:
            return ToolResult(
                success=False,
                content=output,
                error=f"Command exited with status {outcome.returncode}\n{output}".rstrip(),
            )
        return ToolResult(success=True, content=output or "[no output]")
