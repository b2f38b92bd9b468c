import asyncio
import unittest

from mealcal.tasks import BackgroundTasks


class BackgroundTasksTests(unittest.IsolatedAsyncioTestCase):
    async def test_tasks_are_tracked_until_done(self) -> None:
        tasks = BackgroundTasks()
        release = asyncio.Event()

        async def work():
            await release.wait()
            return "done"

        task = tasks.spawn(work(), name="work")
        self.assertEqual(tasks.running, 1)
        release.set()
        await tasks.wait_idle()
        self.assertEqual(tasks.running, 0)
        self.assertEqual(task.result(), "done")

    async def test_failures_are_logged(self) -> None:
        tasks = BackgroundTasks()

        async def broken():
            raise RuntimeError("boom")

        with self.assertLogs("mealcal.tasks", level="ERROR") as logs:
            tasks.spawn(broken(), name="broken-task")
            await tasks.wait_idle()
            await asyncio.sleep(0)
        self.assertIn("broken-task", "\n".join(logs.output))

    async def test_shutdown_cancels_running_work(self) -> None:
        tasks = BackgroundTasks()
        task = tasks.spawn(asyncio.sleep(60), name="sleeper")
        await tasks.shutdown(timeout=1)
        self.assertTrue(task.cancelled())
        self.assertEqual(tasks.running, 0)


if __name__ == "__main__":
    unittest.main()
