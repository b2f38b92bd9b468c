from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Optional

from mealcal.config_manager import ConfigManager
from mealcal.models import PlannedItem, SyncStatus
from mealcal.planned_store import PlannedItemStore
from mealcal.retry_policy import should_retry
from mealcal.state_store import StateStore
from mealcal.sync_manager import SyncManager


logger = logging.getLogger(__name__)


class RetryScheduler:
    """Periodic sweep that retries pending/failed items once their backoff has elapsed."""

    def __init__(
        self,
        sync_manager: SyncManager,
        state_store: StateStore,
        planned_store: PlannedItemStore,
        config_manager: ConfigManager,
    ) -> None:
        self.sync_manager = sync_manager
        self.state_store = state_store
        self.planned_store = planned_store
        self.config_manager = config_manager
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._manual_trigger_event = asyncio.Event()
        self.last_result: dict[str, int] | None = None

    async def _retry_item(self, user_id: str, status: SyncStatus, item: PlannedItem) -> None:
        await self.sync_manager.sync_planned_item(
            user_id,
            status.item_id,
            status.item_type,
            status.planned_item_id,
            item.title,
            item.date,
            item.slot,
            item.recipe_id if status.item_type == "recipe" else None,
        )

    async def _sweep_user(self, user_id: str, now: datetime | None) -> tuple[int, int]:
        retried = 0
        skipped = 0
        eligible: list[tuple[SyncStatus, PlannedItem]] = []
        account = self.state_store.get_account(user_id)
        if account is None or not account.enabled:
            logger.debug("CalDAV not configured or disabled for user %s, skipping retry sweep", user_id)
            return retried, skipped
        for status in self.state_store.pending_or_failed(user_id):
            if not should_retry(status.retry_count, status.last_sync_at, now):
                skipped += 1
                continue
            item = self.planned_store.get_item(status.item_id)
            if item is None:
                logger.warning("Planned %s %s not found, skipping retry", status.item_type, status.item_id)
                skipped += 1
                continue
            eligible.append((status, item))

        if not eligible:
            return retried, skipped

        logger.info("Retrying %s CalDAV items for user %s", len(eligible), user_id)
        results = await asyncio.gather(
            *(self._retry_item(user_id, status, item) for status, item in eligible),
            return_exceptions=True,
        )
        for (status, _item), result in zip(eligible, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Failed to retry CalDAV sync for %s %s: %s",
                    status.item_type,
                    status.item_id,
                    result,
                )
                continue
            retried += 1
            logger.info(
                "Retried CalDAV sync for %s %s (attempt %s)",
                status.item_type,
                status.item_id,
                status.retry_count + 1,
            )
        return retried, skipped

    async def run_once(self, now: datetime | None = None) -> dict[str, int]:
        """Sweep every known user. Never raises; returns ``{"retried", "skipped"}``."""
        retried = 0
        skipped = 0
        try:
            user_ids = self.state_store.known_user_ids()
        except Exception:
            logger.exception("Could not list users for CalDAV retry")
            return {"retried": 0, "skipped": 0}

        for user_id in user_ids:
            try:
                user_retried, user_skipped = await self._sweep_user(user_id, now)
            except Exception:
                logger.exception("Error processing user %s for CalDAV retry", user_id)
                continue
            retried += user_retried
            skipped += user_skipped

        result = {"retried": retried, "skipped": skipped}
        self.last_result = result
        logger.info("CalDAV retry sweep complete: %s", result)
        return result

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop(), name="mealcal-retry-scheduler")

    async def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=5)
            except asyncio.TimeoutError:
                self._task.cancel()
            self._task = None

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    async def _loop(self) -> None:
        # Sweep once at startup so items that failed before a restart are picked up quickly.
        await self.run_once()

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(30, int(config.scheduler.interval_seconds))
            try:
                await asyncio.wait_for(self._manual_trigger_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            await self.run_once()
