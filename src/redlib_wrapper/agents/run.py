"""Run agent: launch the managed binary and stream its lifecycle as events."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass
import logging
from pathlib import Path
import time
from typing import IO

from ..config import RunConfig
from ..events.bus import EventBus
from ..events.models import (
    BaseEvent,
    RunFailed,
    RunLine,
    RunResult,
    RunStarted,
    RunStatus,
    StreamName,
    new_correlation_id,
)
from ..exceptions import ProcessFailedError, ProcessSpawnError, RunFailureReason
from ..process import AsyncioProcessRunner, ProcessRunner
from ..task_manager import TaskManager

LOGGER = logging.getLogger(__name__)

EnvResolver = Callable[[str], Mapping[str, str] | None]

_EOF = None


@dataclass(frozen=True)
class RunRequest:
    """What to run. ``env_profile_name`` is passed to the resolver untouched."""

    binary_path: str
    args: tuple[str, ...] = ()
    env_profile_name: str | None = None
    working_dir: str | None = None
    pty: bool = False


class _Capture:
    """Bookkeeping for one run's output: summaries, stderr tail, transcript."""

    def __init__(self, stderr_sample_lines: int, transcript: IO[str] | None) -> None:
        self.last_stdout: str | None = None
        self.last_stderr: str | None = None
        self.stderr_tail: deque[str] = deque(maxlen=stderr_sample_lines)
        self._transcript = transcript

    def record(self, stream: StreamName, text: str) -> None:
        if stream == "stdout":
            self.last_stdout = text
        else:
            self.last_stderr = text
            self.stderr_tail.append(text)
        if self._transcript is not None:
            self._transcript.write(f"[{stream}] {text}\n")
            self._transcript.flush()

    def stderr_sample(self) -> str | None:
        return "\n".join(self.stderr_tail) if self.stderr_tail else None

    def close(self) -> None:
        if self._transcript is not None:
            self._transcript.close()
            self._transcript = None


class RunAgent:
    """Drives one process to completion per :meth:`run_binary` call.

    Every event is published on the bus before it is handed to the caller, so
    observers and the direct consumer see the same ordered sequence. The first
    event is always ``RunStarted`` and the last is exactly one ``RunResult``
    or ``RunFailed``.
    """

    def __init__(
        self,
        bus: EventBus,
        runner: ProcessRunner | None = None,
        config: RunConfig | None = None,
        env_resolver: EnvResolver | None = None,
    ) -> None:
        self.bus = bus
        self.config = config or RunConfig()
        self.runner = runner or AsyncioProcessRunner(
            terminate_grace_seconds=self.config.terminate_grace_seconds
        )
        self.env_resolver = env_resolver

    async def _emit(self, event: BaseEvent) -> BaseEvent:
        await self.bus.publish(event)
        return event

    def _resolve_env(self, request: RunRequest) -> Mapping[str, str] | None:
        if request.env_profile_name is None or self.env_resolver is None:
            return None
        return self.env_resolver(request.env_profile_name)

    def _open_transcript(self, run_id: str) -> tuple[IO[str] | None, str | None]:
        if not self.config.logs_dir:
            return None, None
        target = Path(self.config.logs_dir).expanduser() / f"run-{run_id}.log"
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            return target.open("w", encoding="utf-8"), str(target)
        except OSError as exc:
            LOGGER.warning(
                "run.transcript_unavailable",
                extra={
                    "event": "run.transcript_unavailable",
                    "run_id": run_id,
                    "path": str(target),
                    "error": str(exc),
                },
            )
            return None, None

    @staticmethod
    async def _drain(
        lines: AsyncIterator[str],
        stream: StreamName,
        queue: asyncio.Queue[tuple[StreamName, str] | None],
    ) -> None:
        # A full queue stops the drain, so the child blocks on its own pipe.
        try:
            async for text in lines:
                await queue.put((stream, text))
        finally:
            task = asyncio.current_task()
            # Nobody reads the queue once the drains are being cancelled.
            if task is None or not task.cancelling():
                await queue.put(_EOF)

    async def run_binary(self, request: RunRequest) -> AsyncIterator[BaseEvent]:
        """Run ``request`` and yield its events as they happen.

        Closing the iterator early or cancelling the consuming task terminates
        the process; ``RunStatus(killed)`` and ``RunFailed`` are then published
        on the bus only, and the cancellation propagates.
        """
        run_id = new_correlation_id()
        started_at = time.monotonic()
        tasks = TaskManager(owner=f"run:{run_id}")
        handle = None
        capture: _Capture | None = None
        started = False
        finished = False
        command = [request.binary_path, *request.args]
        working_dir = request.working_dir or self.config.working_dir

        try:
            env = self._resolve_env(request)
            try:
                handle = await self.runner.start(
                    command, working_dir, env=env, pty=request.pty
                )
            except ProcessSpawnError as exc:
                LOGGER.info(
                    "run.spawn_failed",
                    extra={"event": "run.spawn_failed", "run_id": run_id, "error": str(exc)},
                )
                started = True
                yield await self._emit(RunStarted(id=run_id))
                yield await self._emit(RunLine(id=run_id, stream="stderr", text=str(exc)))
                finished = True
                yield await self._emit(
                    RunFailed(
                        id=run_id,
                        reason=RunFailureReason.SPAWN_FAILED,
                        stderr_sample=str(exc),
                    )
                )
                return

            started = True
            yield await self._emit(RunStarted(id=run_id, pid=handle.pid))

            transcript, logs_path = self._open_transcript(run_id)
            capture = _Capture(self.config.stderr_sample_lines, transcript)
            queue: asyncio.Queue[tuple[StreamName, str] | None] = asyncio.Queue(
                maxsize=self.bus.buffer_size
            )
            tasks.spawn(self._drain(handle.stdout_lines(), "stdout", queue), name="stdout")
            tasks.spawn(self._drain(handle.stderr_lines(), "stderr", queue), name="stderr")

            open_streams = 2
            while open_streams:
                item = await queue.get()
                if item is _EOF:
                    open_streams -= 1
                    continue
                stream, text = item
                capture.record(stream, text)
                yield await self._emit(RunLine(id=run_id, stream=stream, text=text))

            # Surfaces a drain failure before trusting the exit code.
            await tasks.join()
            exit_code = await handle.wait()
            duration_ms = int((time.monotonic() - started_at) * 1000)
            if exit_code != 0:
                raise ProcessFailedError(exit_code)

            LOGGER.info(
                "run.completed",
                extra={"event": "run.completed", "run_id": run_id, "duration_ms": duration_ms},
            )
            finished = True
            yield await self._emit(
                RunResult(
                    id=run_id,
                    exit_code=exit_code,
                    duration_ms=duration_ms,
                    stdout_summary=capture.last_stdout,
                    stderr_summary=capture.last_stderr,
                    logs_path=logs_path,
                )
            )
        except ProcessFailedError as exc:
            LOGGER.info(
                "run.process_failed",
                extra={
                    "event": "run.process_failed",
                    "run_id": run_id,
                    "exit_code": exc.exit_code,
                },
            )
            sample = capture.stderr_sample() if capture is not None else None
            finished = True
            yield await self._emit(
                RunFailed(
                    id=run_id,
                    reason=RunFailureReason.PROCESS_FAILED,
                    stderr_sample=sample or str(exc),
                )
            )
        except (asyncio.CancelledError, GeneratorExit):
            if finished:
                raise
            LOGGER.info("run.cancelled", extra={"event": "run.cancelled", "run_id": run_id})
            if handle is not None and handle.running:
                await handle.terminate()
            if not started:
                await self.bus.publish(RunStarted(id=run_id))
            await self.bus.publish(RunStatus(id=run_id, state="killed"))
            await self.bus.publish(
                RunFailed(
                    id=run_id,
                    reason=RunFailureReason.UNKNOWN_ERROR,
                    stderr_sample="run cancelled",
                )
            )
            raise
        except Exception as exc:  # noqa: BLE001 - every fault becomes a RunFailed event.
            LOGGER.exception(
                "run.unknown_error",
                extra={"event": "run.unknown_error", "run_id": run_id},
            )
            if not started:
                yield await self._emit(RunStarted(id=run_id))
            sample = capture.stderr_sample() if capture is not None else None
            finished = True
            yield await self._emit(
                RunFailed(
                    id=run_id,
                    reason=RunFailureReason.UNKNOWN_ERROR,
                    stderr_sample=sample or f"{type(exc).__name__}: {exc}",
                )
            )
        finally:
            await tasks.cancel_all()
            if handle is not None and handle.running:
                try:
                    await handle.terminate()
                except Exception as exc:  # noqa: BLE001 - cleanup must not mask the outcome.
                    LOGGER.warning(
                        "run.terminate_failed",
                        extra={"event": "run.terminate_failed", "run_id": run_id, "error": str(exc)},
                    )
            if capture is not None:
                capture.close()

    async def run(self, request: RunRequest) -> RunResult | RunFailed:
        """Drive :meth:`run_binary` to its end and return the terminal event.

        Convenient for callers that only observe the bus.
        """
        terminal: BaseEvent | None = None
        async for event in self.run_binary(request):
            terminal = event
        if not isinstance(terminal, (RunResult, RunFailed)):
            raise RuntimeError("run ended without a terminal event")
        return terminal
