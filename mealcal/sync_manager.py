from __future__ import annotations

import asyncio
import logging
import weakref
from datetime import date
from typing import Any, Callable

from mealcal.caldav_client import CalDAVService
from mealcal.config_manager import ConfigManager
from mealcal.errors import CaldavNotConfiguredError, CaldavRequestError
from mealcal.events import (
    ITEM_STATUS_UPDATED,
    SYNC_COMPLETED,
    SYNC_FAILED,
    EventBus,
)
from mealcal.models import (
    CaldavAccountConfig,
    CreatedEvent,
    EventPayload,
    SyncStatus,
    event_time_range,
    event_uid,
    normalize_server_url,
    recipe_deep_link,
)
from mealcal.planned_store import PlannedItemStore
from mealcal.retry_policy import truncate_error_message
from mealcal.state_store import StateStore


logger = logging.getLogger(__name__)

ServiceFactory = Callable[..., Any]


def _error_text(exc: BaseException) -> str:
    return truncate_error_message(str(exc) or exc.__class__.__name__)


class SyncManager:
    """Synchronizes one planned item with the user's CalDAV calendar.

    Calls for the same ``(user_id, item_id)`` are serialized; the outcome of every
    attempt is written to the status row in a single upsert before notifications go out.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        planned_store: PlannedItemStore,
        event_bus: EventBus,
        service_factory: ServiceFactory | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.planned_store = planned_store
        self.event_bus = event_bus
        self.service_factory = service_factory or CalDAVService
        self._locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = weakref.WeakValueDictionary()

    def _item_lock(self, user_id: str, item_id: str) -> asyncio.Lock:
        key = (str(user_id), str(item_id))
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def service_for(self, account: CaldavAccountConfig) -> Any:
        settings = self.config_manager.load()
        return self.service_factory(account, timeout_seconds=settings.caldav.timeout_seconds)

    def _enabled_account(self, user_id: str) -> CaldavAccountConfig | None:
        account = self.state_store.get_account(user_id)
        if account is None or not account.enabled:
            return None
        return account

    async def sync_planned_item(
        self,
        user_id: str,
        item_id: str,
        item_type: str,
        planned_item_id: str | None,
        event_title: str,
        plan_date: str | date,
        slot: str,
        recipe_id: str | None = None,
    ) -> SyncStatus:
        """Push the item to the user's calendar and record the outcome.

        Raises :class:`CaldavNotConfiguredError` without touching any row when the user has
        no enabled account. Any other failure is persisted as ``failed`` and re-raised.
        """
        account = self._enabled_account(user_id)
        if account is None:
            raise CaldavNotConfiguredError(user_id)

        async with self._item_lock(user_id, item_id):
            existing = self.state_store.get_sync_status(user_id, item_id)
            if existing is not None and existing.sync_status == "removed":
                # Tombstones are final; a late update or retry must not bring the event back.
                logger.info("Item %s was removed for user %s, not syncing it again", item_id, user_id)
                return existing

            renamed = False
            try:
                overwrite = False
                if existing is not None and existing.caldav_event_uid:
                    if existing.event_title != event_title:
                        # Rename heuristic: a different title means the old event must go first.
                        logger.info("Title of %s changed, recreating its event", item_id)
                        await self._delete_locked(user_id, item_id)
                        renamed = True
                    else:
                        overwrite = True

                start, end = event_time_range(plan_date, slot, account)
                link = recipe_deep_link(self.config_manager.load().app.base_url, recipe_id)
                payload = EventPayload(
                    summary=event_title,
                    start=start,
                    end=end,
                    description=link,
                    url=link,
                    uid=existing.caldav_event_uid if overwrite else event_uid(user_id, item_id, event_title),
                )
                service = self.service_for(account)
                created = await self._put_event(service, payload, overwrite)
            except Exception as exc:
                status = self.state_store.record_sync_failure(
                    user_id=user_id,
                    item_id=item_id,
                    item_type=item_type,
                    planned_item_id=planned_item_id,
                    event_title=event_title,
                    error_message=_error_text(exc),
                    fresh=existing is None or renamed,
                )
                logger.warning(
                    "CalDAV sync failed for %s item %s (user %s, retry %s): %s",
                    item_type,
                    item_id,
                    user_id,
                    status.retry_count,
                    status.error_message,
                )
                self._notify_failed(status)
                raise

            status = self.state_store.record_sync_success(
                user_id=user_id,
                item_id=item_id,
                item_type=item_type,
                planned_item_id=planned_item_id,
                event_title=event_title,
                caldav_event_uid=created.uid,
            )
        logger.debug("Synced %s item %s for user %s as %s", item_type, item_id, user_id, created.uid)
        self._notify_synced(status)
        return status

    async def _put_event(self, service: Any, payload: EventPayload, overwrite: bool) -> CreatedEvent:
        try:
            return await asyncio.to_thread(service.create_event, payload, overwrite=overwrite)
        except CaldavRequestError as exc:
            if overwrite or exc.status != 412:
                raise
        # An earlier attempt that timed out may still have stored the event under this UID.
        logger.info("Event %s already exists on the server, overwriting it", payload.uid)
        return await asyncio.to_thread(service.create_event, payload, overwrite=True)

    async def delete_planned_item(self, user_id: str, item_id: str) -> SyncStatus | None:
        """Remove the item's event and tombstone its row. Never raises for CalDAV failures."""
        async with self._item_lock(user_id, item_id):
            status = await self._delete_locked(user_id, item_id)
        if status is not None:
            self.event_bus.notify(
                user_id,
                ITEM_STATUS_UPDATED,
                {
                    "item_id": status.item_id,
                    "item_type": status.item_type,
                    "sync_status": status.sync_status,
                    "error_message": status.error_message,
                    "caldav_event_uid": None,
                },
            )
        return status

    async def _delete_locked(self, user_id: str, item_id: str) -> SyncStatus | None:
        status = self.state_store.get_sync_status(user_id, item_id)
        if status is None:
            return None
        if not status.caldav_event_uid:
            return self.state_store.mark_removed(user_id, item_id, keep_error=True)

        account = self._enabled_account(user_id)
        if account is None:
            logger.info(
                "CalDAV disabled for user %s; abandoning remote event %s",
                user_id,
                status.caldav_event_uid,
            )
            return self.state_store.mark_removed(user_id, item_id, keep_error=True)

        service = self.service_for(account)
        try:
            existed = await asyncio.to_thread(service.delete_event, status.caldav_event_uid)
        except Exception as exc:
            logger.warning("CalDAV delete failed for item %s (user %s): %s", item_id, user_id, exc)
            return self.state_store.mark_removed(user_id, item_id, error_message=_error_text(exc))
        if not existed:
            logger.debug("Event %s was already gone from the server", status.caldav_event_uid)
        return self.state_store.mark_removed(user_id, item_id, error_message=None)

    def household_servers(self, user_id: str) -> dict[str, CaldavAccountConfig]:
        """One enabled account per distinct server URL in the user's household.

        Accounts are visited oldest first, so the first registered member's credentials win.
        """
        member_ids = self.planned_store.household_member_ids(user_id)
        servers: dict[str, CaldavAccountConfig] = {}
        for account in self.state_store.enabled_accounts(member_ids):
            servers.setdefault(normalize_server_url(account.server_url), account)
        return servers

    async def sync_to_household_servers(
        self,
        user_id: str,
        item_id: str,
        item_type: str,
        planned_item_id: str | None,
        event_title: str,
        plan_date: str | date,
        slot: str,
        recipe_id: str | None = None,
    ) -> dict[str, bool]:
        servers = self.household_servers(user_id)
        if not servers:
            return {}
        results = await asyncio.gather(
            *(
                self.sync_planned_item(
                    account.user_id,
                    item_id,
                    item_type,
                    planned_item_id,
                    event_title,
                    plan_date,
                    slot,
                    recipe_id,
                )
                for account in servers.values()
            ),
            return_exceptions=True,
        )
        outcome: dict[str, bool] = {}
        for (server_url, account), result in zip(servers.items(), results):
            if isinstance(result, BaseException):
                logger.error(
                    "Failed to sync item %s to CalDAV server %s (user %s): %s",
                    item_id,
                    server_url,
                    account.user_id,
                    result,
                )
                outcome[server_url] = False
            else:
                outcome[server_url] = True
        return outcome

    async def remove_all_events(self, user_id: str) -> int:
        """Delete every synced event of the user from the server. Returns how many rows were tombstoned."""
        statuses = self.state_store.synced_statuses(user_id)
        results = await asyncio.gather(
            *(self.delete_planned_item(user_id, status.item_id) for status in statuses),
            return_exceptions=True,
        )
        removed = 0
        for status, result in zip(statuses, results):
            if isinstance(result, BaseException):
                logger.error("Failed to remove event for item %s (user %s): %s", status.item_id, user_id, result)
            elif result is not None:
                removed += 1
        return removed

    def _notify_synced(self, status: SyncStatus) -> None:
        self.event_bus.notify(
            status.user_id,
            ITEM_STATUS_UPDATED,
            {
                "item_id": status.item_id,
                "item_type": status.item_type,
                "sync_status": status.sync_status,
                "error_message": None,
                "caldav_event_uid": status.caldav_event_uid,
            },
        )
        self.event_bus.notify(
            status.user_id,
            SYNC_COMPLETED,
            {"item_id": status.item_id, "caldav_event_uid": status.caldav_event_uid},
        )

    def _notify_failed(self, status: SyncStatus) -> None:
        self.event_bus.notify(
            status.user_id,
            ITEM_STATUS_UPDATED,
            {
                "item_id": status.item_id,
                "item_type": status.item_type,
                "sync_status": status.sync_status,
                "error_message": status.error_message,
                "caldav_event_uid": None,
            },
        )
        self.event_bus.notify(
            status.user_id,
            SYNC_FAILED,
            {
                "item_id": status.item_id,
                "error_message": status.error_message,
                "retry_count": status.retry_count,
            },
        )
