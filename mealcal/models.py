from __future__ import annotations

import re
import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any


SYNC_STATUSES = ("pending", "synced", "failed", "removed")
RETRYABLE_STATUSES = ("pending", "failed")

DEFAULT_SLOT_TIMES = {
    "breakfast_time": "08:00-09:00",
    "lunch_time": "12:00-13:00",
    "dinner_time": "18:00-19:00",
    "snack_time": "15:00-15:30",
}

TIME_RANGE_PATTERN = re.compile(r"^(\d{2}):(\d{2})-(\d{2}):(\d{2})$")


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def parse_plan_date(value: str | date) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip())


def is_valid_time_range(value: str) -> bool:
    match = TIME_RANGE_PATTERN.match(str(value or "").strip())
    if not match:
        return False
    start_hour, start_minute, end_hour, end_minute = (int(x) for x in match.groups())
    return start_hour < 24 and end_hour < 24 and start_minute < 60 and end_minute < 60


def parse_time_range(value: str) -> tuple[tuple[int, int], tuple[int, int]]:
    """Split ``HH:MM-HH:MM`` into ``((start_h, start_m), (end_h, end_m))``."""
    start_text, end_text = str(value).split("-", 1)
    start_hour, start_minute = (int(x) for x in start_text.strip().split(":"))
    end_hour, end_minute = (int(x) for x in end_text.strip().split(":"))
    return (start_hour, start_minute), (end_hour, end_minute)


def normalize_server_url(value: str) -> str:
    url = str(value or "").strip()
    if url and not url.endswith("/"):
        url += "/"
    return url


@dataclass
class CaldavAccountConfig:
    user_id: str
    server_url: str = ""
    username: str = ""
    password: str = ""
    enabled: bool = False
    breakfast_time: str = DEFAULT_SLOT_TIMES["breakfast_time"]
    lunch_time: str = DEFAULT_SLOT_TIMES["lunch_time"]
    dinner_time: str = DEFAULT_SLOT_TIMES["dinner_time"]
    snack_time: str = DEFAULT_SLOT_TIMES["snack_time"]
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CaldavAccountConfig":
        data = data or {}
        return cls(
            user_id=str(data.get("user_id", "")).strip(),
            server_url=str(data.get("server_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")),
            enabled=bool(data.get("enabled", False)),
            breakfast_time=str(data.get("breakfast_time") or DEFAULT_SLOT_TIMES["breakfast_time"]).strip(),
            lunch_time=str(data.get("lunch_time") or DEFAULT_SLOT_TIMES["lunch_time"]).strip(),
            dinner_time=str(data.get("dinner_time") or DEFAULT_SLOT_TIMES["dinner_time"]).strip(),
            snack_time=str(data.get("snack_time") or DEFAULT_SLOT_TIMES["snack_time"]).strip(),
            created_at=parse_iso_datetime(data.get("created_at")),
            updated_at=parse_iso_datetime(data.get("updated_at")),
        )

    def slot_time(self, slot: str) -> str:
        mapping = {
            "breakfast": self.breakfast_time,
            "lunch": self.lunch_time,
            "dinner": self.dinner_time,
            "snack": self.snack_time,
        }
        key = str(slot or "").strip().lower()
        if key not in mapping:
            raise ValueError(f"Unknown meal slot: {slot}")
        return mapping[key]

    @property
    def collection_url(self) -> str:
        return normalize_server_url(self.server_url)

    def validation_errors(self) -> list[str]:
        errors: list[str] = []
        if not re.match(r"^https?://[^\s/]+", self.server_url):
            errors.append("server_url must be an http(s) URL")
        if not self.username:
            errors.append("username is required")
        if not self.password:
            errors.append("password is required")
        for name in DEFAULT_SLOT_TIMES:
            if not is_valid_time_range(getattr(self, name)):
                errors.append(f"{name} must match HH:MM-HH:MM")
        return errors

    def to_dict(self, include_password: bool = True) -> dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = serialize_datetime(self.created_at)
        payload["updated_at"] = serialize_datetime(self.updated_at)
        if not include_password:
            payload.pop("password", None)
        return payload


@dataclass
class SyncStatus:
    user_id: str
    item_id: str
    item_type: str
    event_title: str
    sync_status: str = "pending"
    planned_item_id: str | None = None
    caldav_event_uid: str | None = None
    retry_count: int = 0
    error_message: str | None = None
    last_sync_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    id: int | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "SyncStatus":
        return cls(
            id=row.get("id"),
            user_id=str(row["user_id"]),
            item_id=str(row["item_id"]),
            item_type=str(row["item_type"]),
            planned_item_id=row.get("planned_item_id"),
            event_title=str(row.get("event_title") or ""),
            sync_status=str(row.get("sync_status") or "pending"),
            caldav_event_uid=row.get("caldav_event_uid"),
            retry_count=int(row.get("retry_count") or 0),
            error_message=row.get("error_message"),
            last_sync_at=parse_iso_datetime(row.get("last_sync_at")),
            created_at=parse_iso_datetime(row.get("created_at")),
            updated_at=parse_iso_datetime(row.get("updated_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["last_sync_at"] = serialize_datetime(self.last_sync_at)
        payload["created_at"] = serialize_datetime(self.created_at)
        payload["updated_at"] = serialize_datetime(self.updated_at)
        return payload


@dataclass
class PlannedItem:
    id: str
    user_id: str
    item_type: str
    date: str
    slot: str
    title: str
    recipe_id: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "PlannedItem":
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            item_type=str(row["item_type"]),
            date=str(row["date"]),
            slot=str(row["slot"]),
            title=str(row.get("title") or ""),
            recipe_id=row.get("recipe_id"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class EventPayload:
    summary: str
    start: datetime
    end: datetime
    description: str = ""
    url: str = ""
    uid: str = ""


@dataclass
class CreatedEvent:
    uid: str
    href: str
    etag: str = ""
    raw_ics: str = field(default="", repr=False)


def event_time_range(plan_date: str | date, slot: str, config: CaldavAccountConfig) -> tuple[datetime, datetime]:
    """Resolve a slot on a calendar date into UTC start/end instants.

    The configured window is used as UTC wall-clock time; no timezone conversion happens.
    """
    day = parse_plan_date(plan_date)
    (start_hour, start_minute), (end_hour, end_minute) = parse_time_range(config.slot_time(slot))
    start = datetime(day.year, day.month, day.day, start_hour, start_minute, tzinfo=timezone.utc)
    end = datetime(day.year, day.month, day.day, end_hour, end_minute, tzinfo=timezone.utc)
    return start, end


def recipe_deep_link(base_url: str, recipe_id: str | None) -> str:
    if not recipe_id:
        return ""
    return f"{str(base_url or '').rstrip('/')}/recipes/{recipe_id}"


@dataclass
class AppSettings:
    base_url: str = "http://localhost:3000"
    database_path: str = "data/mealcal.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppSettings":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "http://localhost:3000")).strip() or "http://localhost:3000",
            database_path=str(data.get("database_path", "data/mealcal.db")).strip() or "data/mealcal.db",
        )


@dataclass
class CaldavSettings:
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CaldavSettings":
        data = data or {}
        return cls(timeout_seconds=max(1, int(data.get("timeout_seconds", 30))))


@dataclass
class SchedulerSettings:
    enabled: bool = True
    interval_seconds: int = 300

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SchedulerSettings":
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", True)),
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
        )


@dataclass
class LoggingSettings:
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file_path: str | None = None
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingSettings":
        data = data or {}
        file_path = data.get("file_path")
        return cls(
            level=str(data.get("level", "INFO")).strip().upper() or "INFO",
            format=str(data.get("format") or cls.format),
            file_path=str(file_path).strip() if file_path else None,
            max_bytes=int(data.get("max_bytes", cls.max_bytes)),
            backup_count=int(data.get("backup_count", cls.backup_count)),
        )


@dataclass
class AppConfig:
    app: AppSettings = field(default_factory=AppSettings)
    caldav: CaldavSettings = field(default_factory=CaldavSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            app=AppSettings.from_dict(data.get("app")),
            caldav=CaldavSettings.from_dict(data.get("caldav")),
            scheduler=SchedulerSettings.from_dict(data.get("scheduler")),
            logging=LoggingSettings.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


def event_uid(user_id: str, item_id: str, title: str) -> str:
    """Stable UID for an item's event, so a retried PUT lands on the same resource.

    The title is part of the name: a renamed item gets a new event.
    """
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"mealcal:{user_id}/{item_id}/{title}"))
