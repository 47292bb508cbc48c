"""Tests for the TaskManager lifecycle helper."""

from __future__ import annotations

import asyncio
import unittest

from redlib_wrapper.task_manager import TaskManager


class TaskManagerTests(unittest.IsolatedAsyncioTestCase):
    """Validate named and anonymous task lifecycle management."""

    async def test_spawn_names_task_after_owner(self) -> None:
        tm = TaskManager(owner="run:abc")

        async def _quick() -> int:
            return 1

        task = tm.spawn(_quick(), name="stdout")
        self.assertEqual(task.get_name(), "run:abc:stdout")
        await tm.join()
        self.assertEqual(task.result(), 1)

    async def test_spawn_anonymous_and_cancel_all(self) -> None:
        tm = TaskManager()
        cancelled: list[bool] = []

        async def _worker() -> None:
            try:
                await asyncio.sleep(9999)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        task = tm.spawn(_worker())
        await asyncio.sleep(0)  # Let the task start.
        await tm.cancel_all()
        self.assertTrue(task.done())
        self.assertTrue(cancelled)

    async def test_join_propagates_first_failure(self) -> None:
        tm = TaskManager()

        async def _boom() -> None:
            raise ValueError("drain failed")

        tm.spawn(_boom(), name="drain")
        with self.assertRaises(ValueError):
            await tm.join()

    async def test_join_skips_cancelled_tasks(self) -> None:
        tm = TaskManager()

        async def _worker() -> None:
            await asyncio.sleep(9999)

        task = tm.spawn(_worker(), name="sleeper")
        task.cancel()
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        await tm.join()
        self.assertTrue(task.cancelled())

    async def test_join_waits_for_running_anonymous_task(self) -> None:
        tm = TaskManager()
        finished: list[bool] = []

        async def _worker() -> None:
            await asyncio.sleep(0.01)
            finished.append(True)

        tm.spawn(_worker())
        await tm.join()
        self.assertEqual(finished, [True])

    async def test_anonymous_failure_is_logged(self) -> None:
        tm = TaskManager(owner="cli")

        async def _boom() -> None:
            raise RuntimeError("printer died")

        with self.assertLogs("redlib_wrapper.task_manager", level="WARNING") as logs:
            task = tm.spawn(_boom())
            with self.assertRaises(RuntimeError):
                await task
            await asyncio.sleep(0)
        self.assertTrue(any("task.anonymous.exception" in line for line in logs.output))
        # A finished anonymous task is no longer tracked, so join does not re-raise.
        await tm.join()

    async def test_cancel_all_handles_mixed_tasks(self) -> None:
        tm = TaskManager()
        results: list[str] = []

        async def _named_worker() -> None:
            try:
                await asyncio.sleep(9999)
            except asyncio.CancelledError:
                results.append("named")
                raise

        async def _anon_worker() -> None:
            try:
                await asyncio.sleep(9999)
            except asyncio.CancelledError:
                results.append("anon")
                raise

        tm.spawn(_named_worker(), name="n1")
        tm.spawn(_anon_worker())
        await asyncio.sleep(0)  # Let the tasks start.
        await tm.cancel_all()
        self.assertIn("named", results)
        self.assertIn("anon", results)


if __name__ == "__main__":
    unittest.main()
