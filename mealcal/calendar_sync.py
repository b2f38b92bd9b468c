from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable

from mealcal.errors import CaldavNotConfiguredError
from mealcal.events import EventBus, ItemDeleted, ItemPlanned, ItemUpdated, RecipeRenamed
from mealcal.models import PlannedItem, SyncStatus
from mealcal.planned_store import PlannedItemStore
from mealcal.state_store import StateStore
from mealcal.sync_manager import SyncManager


logger = logging.getLogger(__name__)


def _log_failure(message: str, exc: BaseException, **context: Any) -> None:
    details = ", ".join(f"{key}={value}" for key, value in context.items())
    if isinstance(exc, CaldavNotConfiguredError):
        logger.debug("%s (%s): %s", message, details, exc)
    else:
        logger.error("%s (%s): %s", message, details, exc)


class CalendarSync:
    """Turns planned-item lifecycle events into CalDAV sync calls.

    Each handler owns its failures: one item that cannot be synced never stops the
    bus from delivering the next event.
    """

    def __init__(
        self,
        sync_manager: SyncManager,
        state_store: StateStore,
        planned_store: PlannedItemStore,
        event_bus: EventBus,
        max_concurrency: int = 8,
    ) -> None:
        self.sync_manager = sync_manager
        self.state_store = state_store
        self.planned_store = planned_store
        self.event_bus = event_bus
        self.max_concurrency = max(1, int(max_concurrency))
        self._unsubscribers: list[Callable[[], None]] = []

    @property
    def registered(self) -> bool:
        return bool(self._unsubscribers)

    def register(self) -> None:
        if self.registered:
            logger.warning("CalDAV sync listeners already registered")
            return
        self._unsubscribers = [
            self.event_bus.subscribe(ItemPlanned, self.on_item_planned),
            self.event_bus.subscribe(ItemDeleted, self.on_item_deleted),
            self.event_bus.subscribe(ItemUpdated, self.on_item_updated),
            self.event_bus.subscribe(RecipeRenamed, self.on_recipe_renamed),
        ]
        logger.info("CalDAV sync listeners registered")

    def unregister(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    async def _sync_item(self, item: PlannedItem, planned_item_id: str | None = None) -> SyncStatus:
        return await self.sync_manager.sync_planned_item(
            item.user_id,
            item.id,
            item.item_type,
            planned_item_id or item.id,
            item.title,
            item.date,
            item.slot,
            item.recipe_id if item.item_type == "recipe" else None,
        )

    async def _run_bounded(self, calls: Iterable[Callable[[], Awaitable[Any]]]) -> list[Any]:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _guarded(call: Callable[[], Awaitable[Any]]) -> Any:
            async with semaphore:
                return await call()

        return await asyncio.gather(*(_guarded(call) for call in calls), return_exceptions=True)

    async def on_item_planned(self, event: ItemPlanned) -> None:
        item = PlannedItem(
            id=event.id,
            user_id=event.user_id,
            item_type=event.item_type,
            date=event.date,
            slot=event.slot,
            title=event.title,
            recipe_id=event.recipe_id,
        )
        self.planned_store.upsert_item(item)
        logger.debug("Item %s planned for user %s, syncing", event.id, event.user_id)
        try:
            await self._sync_item(item)
        except Exception as exc:
            _log_failure("CalDAV sync failed for planned item", exc, item_id=event.id, user_id=event.user_id)
            return
        logger.info("CalDAV sync completed for planned %s %s", event.item_type, event.id)

    async def on_item_deleted(self, event: ItemDeleted) -> None:
        self.planned_store.delete_item(event.id)
        logger.debug("Item %s unplanned for user %s, removing from CalDAV", event.id, event.user_id)
        try:
            await self.sync_manager.delete_planned_item(event.user_id, event.id)
        except Exception as exc:
            _log_failure("CalDAV delete failed for unplanned item", exc, item_id=event.id, user_id=event.user_id)

    async def on_item_updated(self, event: ItemUpdated) -> None:
        existing = self.state_store.get_sync_status(event.user_id, event.id)
        if existing is not None and existing.sync_status == "removed":
            logger.debug("Item %s was removed, skipping update", event.id)
            return
        item = PlannedItem(
            id=event.id,
            user_id=event.user_id,
            item_type=event.item_type,
            date=event.new_date,
            slot=event.slot,
            title=event.title,
            recipe_id=event.recipe_id,
        )
        self.planned_store.upsert_item(item)
        if existing is None:
            logger.debug("Item %s was never synced, skipping update", event.id)
            return
        try:
            await self._sync_item(item)
        except Exception as exc:
            _log_failure("CalDAV sync failed for item update", exc, item_id=event.id, user_id=event.user_id)
            return
        logger.info("CalDAV sync completed for %s %s moved to %s", event.item_type, event.id, event.new_date)

    async def on_recipe_renamed(self, event: RecipeRenamed) -> None:
        if not event.recipe_id or not event.new_name:
            return
        items = self.planned_store.rename_recipe(event.recipe_id, event.new_name)
        results = await self._run_bounded([lambda item=item: self._sync_item(item) for item in items])
        failed = 0
        for item, result in zip(items, results):
            if isinstance(result, BaseException):
                failed += 1
                _log_failure("CalDAV sync failed for renamed recipe", result, item_id=item.id, user_id=item.user_id)
        logger.info(
            "CalDAV sync for renamed recipe %s: %s planned items, %s failed",
            event.recipe_id,
            len(items),
            failed,
        )

    async def sync_all_future_items(self, user_id: str) -> dict[str, int]:
        """Resync every planned item of the user dated today or later."""
        items = self.planned_store.future_items(user_id)
        logger.info("Starting full CalDAV sync of %s items for user %s", len(items), user_id)
        results = await self._run_bounded([lambda item=item: self._sync_item(item) for item in items])
        total_failed = 0
        for item, result in zip(items, results):
            if isinstance(result, BaseException):
                total_failed += 1
                _log_failure("Failed to sync item during full sync", result, item_id=item.id, user_id=user_id)
        summary = {"total_synced": len(items) - total_failed, "total_failed": total_failed}
        logger.info("Full CalDAV sync for user %s finished: %s", user_id, summary)
        return summary

    async def retry_failed_syncs(self, user_id: str) -> dict[str, int]:
        """Resync the user's pending/failed items using their live planned data."""
        statuses = self.state_store.pending_or_failed(user_id)
        pairs: list[tuple[SyncStatus, PlannedItem]] = []
        for status in statuses:
            item = self.planned_store.get_item(status.item_id)
            if item is None:
                logger.debug("Planned item %s no longer exists, skipping retry", status.item_id)
                continue
            pairs.append((status, item))

        logger.info("Retrying %s pending/failed CalDAV items for user %s", len(pairs), user_id)
        results = await self._run_bounded(
            [
                lambda status=status, item=item: self.sync_manager.sync_planned_item(
                    user_id,
                    status.item_id,
                    item.item_type,
                    status.planned_item_id or item.id,
                    item.title,
                    item.date,
                    item.slot,
                    item.recipe_id if item.item_type == "recipe" else None,
                )
                for status, item in pairs
            ]
        )
        total_failed = 0
        for (status, _item), result in zip(pairs, results):
            if isinstance(result, BaseException):
                total_failed += 1
                _log_failure("Failed to retry sync item", result, item_id=status.item_id, user_id=user_id)
        summary = {"total_retried": len(pairs) - total_failed, "total_failed": total_failed}
        logger.info("CalDAV retry for user %s finished: %s", user_id, summary)
        return summary
