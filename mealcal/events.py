from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Iterator

from mealcal.models import utc_now


logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]


# Domain events published by the meal-planning application.


@dataclass(frozen=True)
class ItemPlanned:
    id: str
    user_id: str
    title: str
    date: str
    slot: str
    item_type: str = "recipe"
    recipe_id: str | None = None


@dataclass(frozen=True)
class ItemDeleted:
    id: str
    user_id: str
    item_type: str = "recipe"


@dataclass(frozen=True)
class ItemUpdated:
    id: str
    user_id: str
    title: str
    new_date: str
    slot: str
    item_type: str = "recipe"
    recipe_id: str | None = None


@dataclass(frozen=True)
class RecipeRenamed:
    recipe_id: str
    new_name: str


DOMAIN_EVENTS: dict[str, type] = {
    "item-planned": ItemPlanned,
    "item-deleted": ItemDeleted,
    "item-updated": ItemUpdated,
    "recipe-renamed": RecipeRenamed,
}


# Notifications for UI subscribers.

ITEM_STATUS_UPDATED = "item_status_updated"
SYNC_STARTED = "sync_started"
SYNC_COMPLETED = "sync_completed"
SYNC_FAILED = "sync_failed"
INITIAL_SYNC_COMPLETE = "initial_sync_complete"
CONFIG_SAVED = "config_saved"


@dataclass(frozen=True)
class UserNotification:
    user_id: str
    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: utc_now().isoformat())

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class EventBus:
    """Typed publish/subscribe channel owned by the application context.

    Domain events go through :meth:`publish`, which awaits every handler in turn and
    logs (never propagates) a handler failure. User notifications go through
    :meth:`notify`; delivery is best effort and at most once.
    """

    def __init__(self, queue_size: int = 100) -> None:
        self._handlers: dict[type, list[Handler]] = defaultdict(list)
        self._user_queues: dict[str, set[asyncio.Queue]] = defaultdict(set)
        self._queue_size = queue_size

    def subscribe(self, event_type: type, handler: Handler) -> Callable[[], None]:
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers.get(event_type, []):
                self._handlers[event_type].remove(handler)

        return unsubscribe

    def handler_count(self, event_type: type) -> int:
        return len(self._handlers.get(event_type, []))

    async def publish(self, event: Any) -> None:
        for handler in list(self._handlers.get(type(event), [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Handler %r failed for %s", handler, type(event).__name__)

    def notify(self, user_id: str, name: str, payload: dict[str, Any] | None = None) -> None:
        """Send a notification to the user's listeners. Listeners must be plain callables."""
        notification = UserNotification(user_id=str(user_id), name=name, payload=dict(payload or {}))
        for handler in list(self._handlers.get(UserNotification, [])):
            try:
                handler(notification)
            except Exception:
                logger.exception("Notification listener %r failed for %s", handler, name)
        for queue in list(self._user_queues.get(notification.user_id, ())):
            try:
                queue.put_nowait(notification)
            except asyncio.QueueFull:
                logger.warning("Dropping %s notification for user %s: listener queue full", name, user_id)

    @contextlib.contextmanager
    def user_queue(self, user_id: str) -> Iterator[asyncio.Queue]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._user_queues[str(user_id)].add(queue)
        try:
            yield queue
        finally:
            self._user_queues[str(user_id)].discard(queue)
            if not self._user_queues[str(user_id)]:
                self._user_queues.pop(str(user_id), None)
