import asyncio
import tempfile
import unittest
from datetime import timedelta
from pathlib import Path

from fake_caldav import FakeCalDAVServer
from mealcal.config_manager import ConfigManager
from mealcal.events import EventBus
from mealcal.models import CaldavAccountConfig, PlannedItem, utc_now
from mealcal.planned_store import PlannedItemStore
from mealcal.scheduler import RetryScheduler
from mealcal.state_store import StateStore
from mealcal.sync_manager import SyncManager

COLLECTION = "https://dav.example.com/cal/"


class RetrySchedulerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        self.config_manager = ConfigManager(str(root / "config.yaml"))
        self.state_store = StateStore(str(root / "state.db"))
        self.planned_store = PlannedItemStore(str(root / "state.db"))
        self.server = FakeCalDAVServer()
        self.sync_manager = SyncManager(
            self.config_manager,
            self.state_store,
            self.planned_store,
            EventBus(),
            service_factory=self.server.factory,
        )
        self.scheduler = RetryScheduler(self.sync_manager, self.state_store, self.planned_store, self.config_manager)
        self.state_store.save_account(
            CaldavAccountConfig(user_id="u1", server_url=COLLECTION, username="alice", password="secret", enabled=True)
        )
        self.now = utc_now()

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def failed_row(self, item_id: str, retry_count: int, minutes_ago: int, title: str = "Soup") -> None:
        last_sync = self.now - timedelta(minutes=minutes_ago)
        for attempt in range(retry_count + 1):
            self.state_store.record_sync_failure(
                user_id="u1",
                item_id=item_id,
                item_type="recipe",
                planned_item_id=item_id,
                event_title=title,
                error_message="down",
                fresh=attempt == 0,
                synced_at=last_sync,
            )

    def plan(self, item_id: str, title: str = "Soup") -> None:
        self.planned_store.upsert_item(
            PlannedItem(
                id=item_id,
                user_id="u1",
                item_type="recipe",
                date="2026-05-04",
                slot="Dinner",
                title=title,
                recipe_id="r1",
            )
        )

    async def test_eligible_item_is_retried_with_live_title(self) -> None:
        self.failed_row("p1", retry_count=0, minutes_ago=5, title="Soup")
        self.plan("p1", title="Tomato Soup")
        result = await self.scheduler.run_once(now=self.now)
        self.assertEqual(result, {"retried": 1, "skipped": 0})
        status = self.state_store.get_sync_status("u1", "p1")
        self.assertEqual(status.sync_status, "synced")
        self.assertEqual(status.event_title, "Tomato Soup")
        self.assertEqual([e.summary for e in self.server.events_for(COLLECTION).values()], ["Tomato Soup"])
        self.assertEqual(self.scheduler.last_result, result)

    async def test_backoff_not_elapsed_is_skipped(self) -> None:
        self.failed_row("p1", retry_count=4, minutes_ago=10)
        self.plan("p1")
        result = await self.scheduler.run_once(now=self.now)
        self.assertEqual(result, {"retried": 0, "skipped": 1})
        self.assertEqual(self.server.creates, [])

    async def test_exhausted_item_is_skipped(self) -> None:
        self.failed_row("p1", retry_count=10, minutes_ago=60 * 24 * 7)
        self.plan("p1")
        result = await self.scheduler.run_once(now=self.now)
        self.assertEqual(result, {"retried": 0, "skipped": 1})

    async def test_missing_planned_item_is_skipped(self) -> None:
        self.failed_row("gone", retry_count=0, minutes_ago=5)
        with self.assertLogs("mealcal.scheduler", level="WARNING"):
            result = await self.scheduler.run_once(now=self.now)
        self.assertEqual(result, {"retried": 0, "skipped": 1})

    async def test_failed_retry_is_not_counted_and_does_not_raise(self) -> None:
        self.failed_row("p1", retry_count=1, minutes_ago=5)
        self.plan("p1")
        self.server.create_error = RuntimeError("still down")
        with self.assertLogs("mealcal.scheduler", level="ERROR"):
            result = await self.scheduler.run_once(now=self.now)
        self.assertEqual(result, {"retried": 0, "skipped": 0})
        self.assertEqual(self.state_store.get_sync_status("u1", "p1").retry_count, 2)

    async def test_user_without_enabled_account_is_not_swept(self) -> None:
        self.failed_row("p1", retry_count=0, minutes_ago=5)
        self.plan("p1")
        self.state_store.save_account(
            CaldavAccountConfig(user_id="u1", server_url=COLLECTION, username="alice", password="secret", enabled=False)
        )
        with self.assertNoLogs("mealcal.scheduler", level="ERROR"):
            result = await self.scheduler.run_once(now=self.now)
        self.assertEqual(result, {"retried": 0, "skipped": 0})
        self.assertEqual(self.server.creates, [])
        self.assertEqual(self.state_store.get_sync_status("u1", "p1").retry_count, 0)

    async def test_start_runs_a_sweep_and_stop_ends_the_loop(self) -> None:
        self.scheduler.start()
        self.assertTrue(self.scheduler.running)
        await self.scheduler.stop()
        self.assertFalse(self.scheduler.running)
        self.assertEqual(self.scheduler.last_result, {"retried": 0, "skipped": 0})

    async def test_manual_trigger_runs_another_sweep(self) -> None:
        async def wait_for_sweep() -> None:
            while self.scheduler.last_result is None:
                await asyncio.sleep(0.01)

        self.scheduler.start()
        await asyncio.wait_for(wait_for_sweep(), timeout=5)
        self.scheduler.last_result = None
        self.failed_row("p1", retry_count=0, minutes_ago=5)
        self.plan("p1")
        self.scheduler.trigger_manual()
        await asyncio.wait_for(wait_for_sweep(), timeout=5)
        await self.scheduler.stop()
        self.assertEqual(self.scheduler.last_result, {"retried": 1, "skipped": 0})
        self.assertEqual(self.state_store.get_sync_status("u1", "p1").sync_status, "synced")


if __name__ == "__main__":
    unittest.main()
