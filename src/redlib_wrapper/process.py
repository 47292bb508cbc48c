"""Process runner: spawn a command and expose line-oriented output streams."""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from collections.abc import AsyncIterator, Mapping, Sequence
import logging
import os
from pathlib import Path
import signal

from .exceptions import ProcessSpawnError

LOGGER = logging.getLogger(__name__)

DEFAULT_TERMINATE_GRACE_SECONDS = 5.0
# asyncio's default StreamReader limit is 64 KiB; long log lines are common.
STREAM_LIMIT = 1024 * 1024


class ProcessHandle(ABC):
    """A started process whose output can be drained line by line."""

    pid: int | None = None

    @abstractmethod
    def stdout_lines(self) -> AsyncIterator[str]:
        """Yield stdout lines without their trailing newline until EOF."""

    @abstractmethod
    def stderr_lines(self) -> AsyncIterator[str]:
        """Yield stderr lines without their trailing newline until EOF."""

    @abstractmethod
    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code."""

    @abstractmethod
    async def terminate(self) -> None:
        """Stop the process (and its children) if it is still running."""

    @property
    @abstractmethod
    def running(self) -> bool:
        """True until the exit code has been collected."""


class ProcessRunner(ABC):
    """Spawns commands. Deployments may substitute their own process layer."""

    @abstractmethod
    async def start(
        self,
        command: Sequence[str],
        working_dir: str | os.PathLike[str],
        env: Mapping[str, str] | None = None,
        pty: bool = False,
    ) -> ProcessHandle:
        """Start ``command`` in ``working_dir``.

        Raises:
            ProcessSpawnError: The binary could not be located or executed.
        """


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace").rstrip("\r\n")


async def _iter_lines(stream: asyncio.StreamReader | None) -> AsyncIterator[str]:
    if stream is None:
        return
    discarding = False
    while True:
        try:
            raw = await stream.readuntil(b"\n")
        except asyncio.IncompleteReadError as exc:
            # EOF: whatever is left is a final unterminated line.
            if exc.partial and not discarding:
                yield _decode(exc.partial)
            return
        except asyncio.LimitOverrunError as exc:
            # Drop an over-long line whole, up to and including its newline.
            if not discarding:
                LOGGER.debug(
                    "process.line_overrun",
                    extra={"event": "process.line_overrun", "limit": STREAM_LIMIT},
                )
            discarding = True
            await stream.readexactly(exc.consumed)
            continue
        if discarding:
            discarding = False
            continue
        yield _decode(raw)


class AsyncioProcessHandle(ProcessHandle):
    def __init__(
        self,
        process: asyncio.subprocess.Process,
        grace_seconds: float = DEFAULT_TERMINATE_GRACE_SECONDS,
    ) -> None:
        self._process = process
        self._grace_seconds = grace_seconds
        self.pid = process.pid

    def stdout_lines(self) -> AsyncIterator[str]:
        return _iter_lines(self._process.stdout)

    def stderr_lines(self) -> AsyncIterator[str]:
        return _iter_lines(self._process.stderr)

    @property
    def running(self) -> bool:
        return self._process.returncode is None

    async def wait(self) -> int:
        return await self._process.wait()

    def _signal_group(self, sig: signal.Signals) -> None:
        try:
            if os.name == "posix":
                os.killpg(os.getpgid(self._process.pid), sig)
            elif sig == signal.SIGTERM:
                self._process.terminate()
            else:
                self._process.kill()
        except ProcessLookupError:
            pass
        except OSError:
            try:
                self._process.kill()
            except ProcessLookupError:
                pass

    async def terminate(self) -> None:
        if not self.running:
            return
        self._signal_group(signal.SIGTERM)
        try:
            await asyncio.wait_for(self._process.wait(), timeout=self._grace_seconds)
        except TimeoutError:
            LOGGER.warning(
                "process.kill_after_grace",
                extra={"event": "process.kill_after_grace", "pid": self.pid},
            )
            self._signal_group(getattr(signal, "SIGKILL", signal.SIGTERM))
            await self._process.wait()


class AsyncioProcessRunner(ProcessRunner):
    """Default runner built on ``asyncio.create_subprocess_exec``.

    Children get their own session so termination reaches the whole process
    group. The ``pty`` flag is accepted for interface parity and ignored; the
    child always talks through plain pipes.
    """

    def __init__(
        self, terminate_grace_seconds: float = DEFAULT_TERMINATE_GRACE_SECONDS
    ) -> None:
        self.terminate_grace_seconds = terminate_grace_seconds

    async def start(
        self,
        command: Sequence[str],
        working_dir: str | os.PathLike[str],
        env: Mapping[str, str] | None = None,
        pty: bool = False,
    ) -> ProcessHandle:
        if not command:
            raise ProcessSpawnError("Empty command.")
        binary = str(command[0])
        cwd = Path(working_dir).expanduser()
        if not cwd.is_dir():
            raise ProcessSpawnError(f"Invalid working directory: {cwd}", binary)
        if pty:
            LOGGER.debug(
                "process.pty_ignored",
                extra={"event": "process.pty_ignored", "binary": binary},
            )

        try:
            process = await asyncio.create_subprocess_exec(
                *[str(part) for part in command],
                cwd=str(cwd),
                env={**os.environ, **env} if env else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=(os.name == "posix"),
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError as exc:
            raise ProcessSpawnError(f"{binary}: command not found", binary) from exc
        except PermissionError as exc:
            raise ProcessSpawnError(f"{binary}: permission denied", binary) from exc
        except OSError as exc:
            raise ProcessSpawnError(f"{binary}: {exc.strerror or exc}", binary) from exc

        LOGGER.debug(
            "process.started",
            extra={"event": "process.started", "binary": binary, "pid": process.pid},
        )
        return AsyncioProcessHandle(process, self.terminate_grace_seconds)
