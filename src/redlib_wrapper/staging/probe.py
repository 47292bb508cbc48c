"""Sanity probes for a freshly staged binary."""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
import logging
import os
from pathlib import Path
import re
from typing import Literal

from ..config import DEFAULT_VERSION_PATTERN
from ..exceptions import ProcessSpawnError
from ..process import AsyncioProcessRunner, ProcessRunner

LOGGER = logging.getLogger(__name__)

ProbeMode = Literal["auto", "execute", "content"]

CONTENT_PROBE_LIMIT = 64 * 1024


@dataclass(frozen=True)
class ProbeOutcome:
    success: bool
    version: str | None = None
    notes: str | None = None


class SanityProbe(ABC):
    @abstractmethod
    async def probe(self, binary: Path) -> ProbeOutcome:
        """Decide whether ``binary`` is a working instance of the managed binary.

        Probe problems are reported as an unsuccessful outcome, not raised.
        """


async def _collect(lines: AsyncIterator[str], sink: list[str]) -> None:
    async for line in lines:
        sink.append(line)


class VersionProbe(SanityProbe):
    """Ask the binary for its version and require a parsable answer.

    ``execute`` runs the binary with ``probe_args``; ``content`` only scans
    the head of the file for the version banner; ``auto`` executes files that
    carry an execute bit and scans the rest.
    """

    def __init__(
        self,
        runner: ProcessRunner | None = None,
        mode: ProbeMode = "auto",
        probe_args: Sequence[str] = ("--version",),
        timeout: float = 10.0,
        version_pattern: str = DEFAULT_VERSION_PATTERN,
    ) -> None:
        self.runner = runner or AsyncioProcessRunner(terminate_grace_seconds=1.0)
        self.mode = mode
        self.probe_args = tuple(probe_args)
        self.timeout = timeout
        self.pattern = re.compile(version_pattern)

    def resolve_mode(self, binary: Path) -> Literal["execute", "content"]:
        if self.mode != "auto":
            return self.mode
        return "execute" if os.access(binary, os.X_OK) else "content"

    def _match(self, text: str) -> str | None:
        match = self.pattern.search(text)
        return match.group(1) if match else None

    async def probe(self, binary: Path) -> ProbeOutcome:
        if self.resolve_mode(binary) == "execute":
            return await self._execute(binary)
        return await self._inspect_content(binary)

    async def _inspect_content(self, binary: Path) -> ProbeOutcome:
        def _read_head() -> bytes:
            with binary.open("rb") as fh:
                return fh.read(CONTENT_PROBE_LIMIT)

        try:
            head = await asyncio.to_thread(_read_head)
        except OSError as exc:
            return ProbeOutcome(False, notes=f"Unable to read staged binary: {exc}")
        version = self._match(head.decode("utf-8", errors="replace"))
        if version is None:
            return ProbeOutcome(False, notes="Version banner not found in artifact.")
        return ProbeOutcome(True, version=version, notes="Version banner found in artifact.")

    async def _execute(self, binary: Path) -> ProbeOutcome:
        command = [str(binary), *self.probe_args]
        try:
            handle = await self.runner.start(command, binary.parent)
        except ProcessSpawnError as exc:
            return ProbeOutcome(False, notes=f"Probe could not start: {exc}")

        stdout: list[str] = []
        stderr: list[str] = []
        try:
            async with asyncio.timeout(self.timeout):
                async with asyncio.TaskGroup() as group:
                    group.create_task(_collect(handle.stdout_lines(), stdout))
                    group.create_task(_collect(handle.stderr_lines(), stderr))
                exit_code = await handle.wait()
        except TimeoutError:
            return ProbeOutcome(False, notes=f"Probe timed out after {self.timeout:g}s.")
        finally:
            if handle.running:
                await handle.terminate()

        output = "\n".join(stdout + stderr)
        LOGGER.debug(
            "update.probe.output",
            extra={"event": "update.probe.output", "exit_code": exit_code, "output": output[:500]},
        )
        if exit_code != 0:
            return ProbeOutcome(False, notes=f"Probe exited with code {exit_code}.")
        version = self._match(output)
        if version is None:
            return ProbeOutcome(False, notes="Probe output did not contain a version.")
        return ProbeOutcome(True, version=version, notes="Probe succeeded.")
