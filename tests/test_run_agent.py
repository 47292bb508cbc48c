"""Tests for the run agent's event sequence and failure classification."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
import sys
import tempfile
from pathlib import Path
import unittest

from redlib_wrapper.agents import RunAgent, RunRequest
from redlib_wrapper.config import RunConfig
from redlib_wrapper.events import (
    EventBus,
    RunFailed,
    RunLine,
    RunResult,
    RunStarted,
    RunStatus,
)
from redlib_wrapper.process import AsyncioProcessRunner, ProcessHandle, ProcessRunner


def _python(script: str) -> RunRequest:
    return RunRequest(binary_path=sys.executable, args=("-c", script))


async def _drain(subscription) -> list:
    return [event async for event in subscription]


class BrokenStreamHandle(ProcessHandle):
    """Handle whose stdout breaks after one line."""

    pid = 4242

    def __init__(self) -> None:
        self.terminated = False

    async def _stdout(self) -> AsyncIterator[str]:
        yield "partial"
        raise RuntimeError("stream broke")

    async def _stderr(self) -> AsyncIterator[str]:
        return
        yield  # pragma: no cover

    def stdout_lines(self) -> AsyncIterator[str]:
        return self._stdout()

    def stderr_lines(self) -> AsyncIterator[str]:
        return self._stderr()

    async def wait(self) -> int:
        return 0

    async def terminate(self) -> None:
        self.terminated = True

    @property
    def running(self) -> bool:
        return False


class ScriptedRunner(ProcessRunner):
    def __init__(self, handle: ProcessHandle) -> None:
        self.handle = handle

    async def start(self, command, working_dir, env=None, pty=False) -> ProcessHandle:
        return self.handle


class RecordingRunner(AsyncioProcessRunner):
    """Real runner that remembers what it started."""

    def __init__(self) -> None:
        super().__init__(terminate_grace_seconds=2.0)
        self.handles: list[ProcessHandle] = []
        self.envs: list[object] = []

    async def start(self, command, working_dir, env=None, pty=False) -> ProcessHandle:
        self.envs.append(env)
        handle = await super().start(command, working_dir, env=env, pty=pty)
        self.handles.append(handle)
        return handle


class RunAgentTests(unittest.IsolatedAsyncioTestCase):
    """Validate RunAgent lifecycles against real and scripted processes."""

    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.bus = EventBus(buffer_size=16)
        self.config = RunConfig(working_dir=str(self.tmp))

    async def asyncTearDown(self) -> None:
        self.bus.close()
        self._tmp.cleanup()

    async def test_successful_run_emits_started_line_result(self) -> None:
        agent = RunAgent(self.bus, config=self.config)
        observer = self.bus.subscribe()
        collected = asyncio.create_task(_drain(observer))

        events = [e async for e in agent.run_binary(_python("print('tool version 1.2.3')"))]
        self.bus.close()
        observed = await collected

        self.assertEqual(
            [type(e) for e in events], [RunStarted, RunLine, RunResult]
        )
        self.assertIsNotNone(events[0].pid)
        self.assertEqual(events[1].stream, "stdout")
        self.assertEqual(events[1].text, "tool version 1.2.3")
        self.assertEqual(events[2].exit_code, 0)
        self.assertEqual(events[2].stdout_summary, "tool version 1.2.3")
        self.assertGreaterEqual(events[2].duration_ms, 0)
        self.assertEqual(len({e.id for e in events}), 1)
        # Observers and the direct consumer see the same sequence.
        self.assertEqual(observed, events)

    async def test_missing_binary_reports_spawn_failure(self) -> None:
        agent = RunAgent(self.bus, config=self.config)
        events = [
            e async for e in agent.run_binary(RunRequest(binary_path="/bin/missing"))
        ]

        self.assertEqual([type(e) for e in events], [RunStarted, RunLine, RunFailed])
        self.assertIsNone(events[0].pid)
        self.assertEqual(events[1].stream, "stderr")
        self.assertIn("not found", events[1].text)
        self.assertEqual(events[2].reason, "spawn_failed")

    async def test_invalid_working_directory_is_a_spawn_failure(self) -> None:
        agent = RunAgent(self.bus, config=self.config)
        request = RunRequest(
            binary_path=sys.executable, working_dir=str(self.tmp / "nope")
        )
        terminal = await agent.run(request)
        self.assertIsInstance(terminal, RunFailed)
        self.assertEqual(terminal.reason, "spawn_failed")

    async def test_non_zero_exit_reports_process_failed_with_stderr_sample(self) -> None:
        agent = RunAgent(self.bus, config=self.config)
        script = (
            "import sys; print('working'); "
            "sys.stderr.write('first problem\\nbad thing\\n'); sys.exit(3)"
        )
        events = [e async for e in agent.run_binary(_python(script))]

        terminal = events[-1]
        self.assertIsInstance(terminal, RunFailed)
        self.assertEqual(terminal.reason, "process_failed")
        self.assertEqual(terminal.stderr_sample, "first problem\nbad thing")
        stderr_lines = [e.text for e in events if isinstance(e, RunLine) and e.stream == "stderr"]
        self.assertEqual(stderr_lines, ["first problem", "bad thing"])

    async def test_silent_non_zero_exit_falls_back_to_exit_message(self) -> None:
        agent = RunAgent(self.bus, config=self.config)
        terminal = await agent.run(_python("raise SystemExit(5)"))
        self.assertEqual(terminal.reason, "process_failed")
        self.assertEqual(terminal.stderr_sample, "Process exited with code 5")

    async def test_heavy_output_on_both_streams_does_not_deadlock(self) -> None:
        agent = RunAgent(self.bus, config=self.config)
        script = (
            "import sys\n"
            "for i in range(3000):\n"
            "    sys.stdout.write(f'out {i}\\n')\n"
            "    sys.stderr.write(f'err {i} ' + 'x' * 200 + '\\n')\n"
        )
        events = await asyncio.wait_for(
            _collect(agent.run_binary(_python(script))), timeout=60
        )

        self.assertIsInstance(events[-1], RunResult)
        stdout = [e.text for e in events if isinstance(e, RunLine) and e.stream == "stdout"]
        stderr = [e.text for e in events if isinstance(e, RunLine) and e.stream == "stderr"]
        self.assertEqual(stdout, [f"out {i}" for i in range(3000)])
        self.assertEqual(len(stderr), 3000)
        self.assertTrue(stderr[-1].startswith("err 2999 "))

    async def test_stalled_observer_holds_back_the_child(self) -> None:
        bus = EventBus(buffer_size=1, publish_timeout=None)
        runner = RecordingRunner()
        agent = RunAgent(bus, runner=runner, config=self.config)
        stalled = bus.subscribe()
        marker = self.tmp / "finished"
        script = (
            "import sys\n"
            "for i in range(50000):\n"
            "    sys.stdout.write(f'{i:08d} ' + 'x' * 90 + '\\n')\n"
            "sys.stdout.flush()\n"
            f"open({str(marker)!r}, 'w').close()\n"
        )
        seen: list = []

        async def _consume() -> None:
            async for event in agent.run_binary(_python(script)):
                seen.append(event)

        task = asyncio.create_task(_consume())
        await asyncio.sleep(1.0)
        try:
            # Output is read only as fast as the slowest observer takes it.
            self.assertFalse(marker.exists())
            self.assertTrue(runner.handles[0].running)
            self.assertEqual([type(e) for e in seen], [RunStarted])
        finally:
            stalled.close()
            await asyncio.wait_for(task, timeout=60)
            bus.close()

        self.assertTrue(marker.exists())
        self.assertIsInstance(seen[-1], RunResult)
        self.assertEqual(sum(isinstance(e, RunLine) for e in seen), 50000)

    async def test_stream_fault_reports_unknown_error(self) -> None:
        handle = BrokenStreamHandle()
        agent = RunAgent(self.bus, runner=ScriptedRunner(handle), config=self.config)
        with self.assertLogs("redlib_wrapper.agents.run", level="ERROR"):
            events = [e async for e in agent.run_binary(RunRequest(binary_path="/x"))]

        self.assertEqual([type(e) for e in events], [RunStarted, RunLine, RunFailed])
        self.assertEqual(events[0].pid, 4242)
        self.assertEqual(events[2].reason, "unknown_error")
        self.assertIn("stream broke", events[2].stderr_sample)

    async def test_closing_the_stream_early_terminates_the_process(self) -> None:
        runner = RecordingRunner()
        agent = RunAgent(self.bus, runner=runner, config=self.config)
        observer = self.bus.subscribe()
        collected = asyncio.create_task(_drain(observer))

        script = "import time; print('ready', flush=True); time.sleep(60)"
        stream = agent.run_binary(_python(script))
        async for event in stream:
            if isinstance(event, RunLine):
                break
        await asyncio.wait_for(stream.aclose(), timeout=10)
        self.bus.close()
        observed = await collected

        self.assertFalse(runner.handles[0].running)
        self.assertEqual(
            [type(e) for e in observed],
            [RunStarted, RunLine, RunStatus, RunFailed],
        )
        self.assertEqual(observed[2].state, "killed")
        self.assertEqual(observed[3].reason, "unknown_error")

    async def test_cancelling_the_consumer_terminates_the_process(self) -> None:
        runner = RecordingRunner()
        agent = RunAgent(self.bus, runner=runner, config=self.config)
        script = "import time; print('ready', flush=True); time.sleep(60)"
        started = asyncio.Event()

        async def _consume() -> None:
            async for event in agent.run_binary(_python(script)):
                if isinstance(event, RunLine):
                    started.set()

        task = asyncio.create_task(_consume())
        await asyncio.wait_for(started.wait(), timeout=10)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertFalse(runner.handles[0].running)

    async def test_transcript_is_written_when_logs_dir_is_set(self) -> None:
        config = RunConfig(working_dir=str(self.tmp), logs_dir=str(self.tmp / "logs"))
        agent = RunAgent(self.bus, config=config)
        script = "import sys; print('hello'); sys.stderr.write('careful\\n')"
        terminal = await agent.run(_python(script))

        self.assertIsInstance(terminal, RunResult)
        self.assertIsNotNone(terminal.logs_path)
        transcript = Path(terminal.logs_path).read_text(encoding="utf-8").splitlines()
        self.assertIn("[stdout] hello", transcript)
        self.assertIn("[stderr] careful", transcript)
        self.assertEqual(terminal.stderr_summary, "careful")

    async def test_env_profile_is_resolved_into_the_environment(self) -> None:
        runner = RecordingRunner()
        requested: list[str] = []

        def _resolver(name: str) -> dict[str, str]:
            requested.append(name)
            return {"REDLIB_PROFILE_VALUE": f"profile-{name}"}

        agent = RunAgent(self.bus, runner=runner, config=self.config, env_resolver=_resolver)
        request = RunRequest(
            binary_path=sys.executable,
            args=("-c", "import os; print(os.environ['REDLIB_PROFILE_VALUE'])"),
            env_profile_name="staging",
        )
        terminal = await agent.run(request)

        self.assertEqual(requested, ["staging"])
        self.assertEqual(terminal.stdout_summary, "profile-staging")

    async def test_no_resolver_means_inherited_environment(self) -> None:
        runner = RecordingRunner()
        agent = RunAgent(self.bus, runner=runner, config=self.config)
        request = RunRequest(
            binary_path=sys.executable, args=("-V",), env_profile_name="ignored"
        )
        await agent.run(request)
        self.assertEqual(runner.envs, [None])


async def _collect(stream) -> list:
    return [event async for event in stream]


if __name__ == "__main__":
    unittest.main()
