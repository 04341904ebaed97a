"""Out-of-band operator input for commands waiting on an elevation prompt.

A shell command that stops at a ``sudo`` (or similar) password prompt is
suspended on a :class:`PendingPrivilegedExecution` handle while a
:class:`PrivilegedInputChannel` collects the secret from the local operator.
The secret goes straight to the subprocess; it is never logged, never stored
on the handle and never placed into tool output.
"""

from __future__ import annotations

import asyncio
import os
import termios
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime

from pprog.logging import get_logger

log = get_logger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class PendingPrivilegedExecution:
    """A blocked shell command awaiting a secret from the operator."""

    command: str
    prompt: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=_utcnow_iso)


class PrivilegedInputUnavailable(Exception):
    """The channel cannot (or will not) supply a secret."""


class PrivilegedInputChannel(ABC):
    """Source of operator-supplied secrets for pending executions."""

    @abstractmethod
    async def request_secret(self, pending: PendingPrivilegedExecution) -> str:
        """Block until the operator supplies the secret for ``pending``.

        Raises:
            PrivilegedInputUnavailable if no secret can be obtained
        """


class TerminalPrivilegedInput(PrivilegedInputChannel):
    """Read secrets from the controlling terminal with echo off.

    Only one prompt is shown at a time; other sessions sharing this channel
    queue behind it without blocking the event loop. The read is driven by
    the event loop rather than a worker thread, so a request that times out
    or is cancelled stops reading the terminal and restores echo at once.
    """

    def __init__(self, tty_path: str = "/dev/tty"):
        self.tty_path = tty_path
        self._lock = asyncio.Lock()

    async def request_secret(self, pending: PendingPrivilegedExecution) -> str:
        async with self._lock:
            log.info("Waiting for privileged input", request_id=pending.id, command=pending.command)
            label = f"\n[pprog] `{pending.command}` asks: {pending.prompt.strip()} "
            try:
                fd = os.open(self.tty_path, os.O_RDWR | os.O_NOCTTY)
            except OSError as e:
                raise PrivilegedInputUnavailable(f"Terminal input unavailable: {e}") from e
            try:
                return await self._read_hidden_line(fd, label)
            finally:
                os.close(fd)

    @staticmethod
    async def _read_hidden_line(fd: int, label: str) -> str:
        loop = asyncio.get_running_loop()
        try:
            saved = termios.tcgetattr(fd)
        except termios.error as e:
            raise PrivilegedInputUnavailable(f"Terminal input unavailable: {e}") from e

        hidden = list(saved)
        hidden[3] &= ~termios.ECHO
        # TCSAFLUSH drops anything typed before the prompt appeared
        termios.tcsetattr(fd, termios.TCSAFLUSH, hidden)

        line: asyncio.Future[str] = loop.create_future()
        buffer = bytearray()

        def on_readable() -> None:
            if line.done():
                return
            try:
                data = os.read(fd, 1024)
            except OSError as e:
                line.set_exception(PrivilegedInputUnavailable(f"Terminal input unavailable: {e}"))
                return
            if not data:
                line.set_exception(PrivilegedInputUnavailable("Terminal closed before input was given"))
                return
            buffer.extend(data)
            if b"\n" in buffer:
                text = buffer.split(b"\n", 1)[0].decode("utf-8", errors="replace")
                line.set_result(text.rstrip("\r"))

        loop.add_reader(fd, on_readable)
        try:
            os.write(fd, label.encode("utf-8"))
            return await line
        finally:
            loop.remove_reader(fd)
            termios.tcsetattr(fd, termios.TCSANOW, saved)
            try:
                os.write(fd, b"\n")
            except OSError:
                pass


class StaticPrivilegedInput(PrivilegedInputChannel):
    """Hand out a preconfigured secret; for headless runs and tests."""

    def __init__(self, secret: str):
        self._secret = secret
        self.requests: list[PendingPrivilegedExecution] = []

    async def request_secret(self, pending: PendingPrivilegedExecution) -> str:
        self.requests.append(pending)
        return self._secret
