from __future__ import annotations

import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from mealcal.errors import MealCalError
from mealcal.models import (
    RETRYABLE_STATUSES,
    SYNC_STATUSES,
    CaldavAccountConfig,
    SyncStatus,
    serialize_datetime,
    utc_now,
)


def _utc_now() -> str:
    return utc_now().isoformat()


def _stamp(value: datetime | None) -> str:
    return serialize_datetime(value) or _utc_now()


class StateStore:
    """SQLite persistence for CalDAV accounts and per-item sync status rows.

    Every write is a single statement keyed by ``(user_id, item_id)`` so concurrent
    attempts on the same item never interleave partial state.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS caldav_accounts (
            user_id TEXT PRIMARY KEY,
            server_url TEXT NOT NULL,
            username TEXT NOT NULL,
            password TEXT NOT NULL,
            enabled INTEGER NOT NULL DEFAULT 0,
            breakfast_time TEXT NOT NULL DEFAULT '08:00-09:00',
            lunch_time TEXT NOT NULL DEFAULT '12:00-13:00',
            dinner_time TEXT NOT NULL DEFAULT '18:00-19:00',
            snack_time TEXT NOT NULL DEFAULT '15:00-15:30',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS caldav_sync_status (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            item_id TEXT NOT NULL,
            item_type TEXT NOT NULL,
            planned_item_id TEXT,
            event_title TEXT NOT NULL,
            sync_status TEXT NOT NULL DEFAULT 'pending',
            caldav_event_uid TEXT,
            retry_count INTEGER NOT NULL DEFAULT 0,
            error_message TEXT,
            last_sync_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (user_id, item_id)
        );

        CREATE INDEX IF NOT EXISTS idx_caldav_sync_user_status
            ON caldav_sync_status(user_id, sync_status);
        CREATE INDEX IF NOT EXISTS idx_caldav_sync_status_retry
            ON caldav_sync_status(sync_status, retry_count, last_sync_at);
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # Accounts

    def get_account(self, user_id: str) -> CaldavAccountConfig | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM caldav_accounts WHERE user_id = ?",
                    (str(user_id),),
                ).fetchone()
        if row is None:
            return None
        return CaldavAccountConfig.from_dict(dict(row))

    def save_account(self, config: CaldavAccountConfig) -> CaldavAccountConfig:
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO caldav_accounts(
                        user_id, server_url, username, password, enabled,
                        breakfast_time, lunch_time, dinner_time, snack_time, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        server_url = excluded.server_url,
                        username = excluded.username,
                        password = excluded.password,
                        enabled = excluded.enabled,
                        breakfast_time = excluded.breakfast_time,
                        lunch_time = excluded.lunch_time,
                        dinner_time = excluded.dinner_time,
                        snack_time = excluded.snack_time,
                        updated_at = excluded.updated_at
                    """,
                    (
                        config.user_id,
                        config.server_url,
                        config.username,
                        config.password,
                        1 if config.enabled else 0,
                        config.breakfast_time,
                        config.lunch_time,
                        config.dinner_time,
                        config.snack_time,
                        now,
                        now,
                    ),
                )
                conn.commit()
            saved = self.get_account(config.user_id)
        if saved is None:
            raise MealCalError(f"CalDAV account for user {config.user_id} was not stored")
        return saved

    def delete_account(self, user_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM caldav_accounts WHERE user_id = ?", (str(user_id),))
                conn.commit()
                return cursor.rowcount > 0

    def enabled_accounts(self, user_ids: Iterable[str]) -> list[CaldavAccountConfig]:
        """Enabled accounts of the given users, oldest registration first."""
        wanted = [str(x) for x in user_ids]
        if not wanted:
            return []
        placeholders = ", ".join("?" for _ in wanted)
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT * FROM caldav_accounts
                    WHERE enabled = 1 AND user_id IN ({placeholders})
                    ORDER BY created_at ASC, rowid ASC
                    """,
                    wanted,
                ).fetchall()
        return [CaldavAccountConfig.from_dict(dict(row)) for row in rows]

    def known_user_ids(self) -> list[str]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT user_id FROM caldav_accounts
                    UNION
                    SELECT DISTINCT user_id FROM caldav_sync_status
                    ORDER BY user_id
                    """
                ).fetchall()
        return [str(row["user_id"]) for row in rows]

    # Sync status rows

    def get_sync_status(self, user_id: str, item_id: str) -> SyncStatus | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM caldav_sync_status WHERE user_id = ? AND item_id = ?",
                    (str(user_id), str(item_id)),
                ).fetchone()
        if row is None:
            return None
        return SyncStatus.from_row(dict(row))

    def record_sync_success(
        self,
        *,
        user_id: str,
        item_id: str,
        item_type: str,
        planned_item_id: str | None,
        event_title: str,
        caldav_event_uid: str,
        synced_at: datetime | None = None,
    ) -> SyncStatus:
        stamp = _stamp(synced_at)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO caldav_sync_status(
                        user_id, item_id, item_type, planned_item_id, event_title, sync_status,
                        caldav_event_uid, retry_count, error_message, last_sync_at, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, 'synced', ?, 0, NULL, ?, ?, ?)
                    ON CONFLICT(user_id, item_id) DO UPDATE SET
                        item_type = excluded.item_type,
                        planned_item_id = COALESCE(excluded.planned_item_id, caldav_sync_status.planned_item_id),
                        event_title = excluded.event_title,
                        sync_status = 'synced',
                        caldav_event_uid = excluded.caldav_event_uid,
                        retry_count = 0,
                        error_message = NULL,
                        last_sync_at = excluded.last_sync_at,
                        updated_at = excluded.updated_at
                    """,
                    (
                        str(user_id),
                        str(item_id),
                        item_type,
                        planned_item_id,
                        event_title,
                        caldav_event_uid,
                        stamp,
                        stamp,
                        stamp,
                    ),
                )
                conn.commit()
            saved = self.get_sync_status(user_id, item_id)
        if saved is None:
            raise MealCalError(f"Sync status for item {item_id} (user {user_id}) was not stored")
        return saved

    def record_sync_failure(
        self,
        *,
        user_id: str,
        item_id: str,
        item_type: str,
        planned_item_id: str | None,
        event_title: str,
        error_message: str,
        fresh: bool = False,
        synced_at: datetime | None = None,
    ) -> SyncStatus:
        """Persist a failed attempt.

        ``fresh`` marks an attempt that started without a usable row (first sync, or a
        rename that tombstoned the previous event); its retry count starts at 0.
        """
        stamp = _stamp(synced_at)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO caldav_sync_status(
                        user_id, item_id, item_type, planned_item_id, event_title, sync_status,
                        caldav_event_uid, retry_count, error_message, last_sync_at, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, 'failed', NULL, 0, ?, ?, ?, ?)
                    ON CONFLICT(user_id, item_id) DO UPDATE SET
                        item_type = excluded.item_type,
                        planned_item_id = COALESCE(excluded.planned_item_id, caldav_sync_status.planned_item_id),
                        event_title = excluded.event_title,
                        sync_status = 'failed',
                        caldav_event_uid = NULL,
                        retry_count = CASE WHEN ? THEN 0 ELSE caldav_sync_status.retry_count + 1 END,
                        error_message = excluded.error_message,
                        last_sync_at = excluded.last_sync_at,
                        updated_at = excluded.updated_at
                    """,
                    (
                        str(user_id),
                        str(item_id),
                        item_type,
                        planned_item_id,
                        event_title,
                        error_message,
                        stamp,
                        stamp,
                        stamp,
                        1 if fresh else 0,
                    ),
                )
                conn.commit()
            saved = self.get_sync_status(user_id, item_id)
        if saved is None:
            raise MealCalError(f"Sync status for item {item_id} (user {user_id}) was not stored")
        return saved

    def mark_removed(
        self,
        user_id: str,
        item_id: str,
        *,
        error_message: str | None = None,
        keep_error: bool = False,
        removed_at: datetime | None = None,
    ) -> SyncStatus | None:
        stamp = _stamp(removed_at)
        with self._lock:
            with self._connect() as conn:
                if keep_error:
                    conn.execute(
                        """
                        UPDATE caldav_sync_status
                        SET sync_status = 'removed', caldav_event_uid = NULL, last_sync_at = ?, updated_at = ?
                        WHERE user_id = ? AND item_id = ?
                        """,
                        (stamp, stamp, str(user_id), str(item_id)),
                    )
                else:
                    conn.execute(
                        """
                        UPDATE caldav_sync_status
                        SET sync_status = 'removed', caldav_event_uid = NULL, error_message = ?,
                            last_sync_at = ?, updated_at = ?
                        WHERE user_id = ? AND item_id = ?
                        """,
                        (error_message, stamp, stamp, str(user_id), str(item_id)),
                    )
                conn.commit()
            return self.get_sync_status(user_id, item_id)

    def _statuses_where(self, where_sql: str, params: list[Any]) -> list[SyncStatus]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT * FROM caldav_sync_status WHERE {where_sql} ORDER BY id ASC",
                    params,
                ).fetchall()
        return [SyncStatus.from_row(dict(row)) for row in rows]

    def pending_or_failed(self, user_id: str) -> list[SyncStatus]:
        placeholders = ", ".join("?" for _ in RETRYABLE_STATUSES)
        return self._statuses_where(
            f"user_id = ? AND sync_status IN ({placeholders})",
            [str(user_id), *RETRYABLE_STATUSES],
        )

    def synced_statuses(self, user_id: str) -> list[SyncStatus]:
        return self._statuses_where(
            "user_id = ? AND sync_status = 'synced' AND caldav_event_uid IS NOT NULL",
            [str(user_id)],
        )

    def list_sync_statuses(
        self,
        user_id: str,
        statuses: list[str] | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[SyncStatus], int]:
        page = max(1, int(page))
        page_size = max(1, int(page_size))
        where_sql = "user_id = ?"
        params: list[Any] = [str(user_id)]
        wanted = [x for x in (statuses or []) if x in SYNC_STATUSES]
        if wanted:
            where_sql += f" AND sync_status IN ({', '.join('?' for _ in wanted)})"
            params.extend(wanted)
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT * FROM caldav_sync_status
                    WHERE {where_sql}
                    ORDER BY created_at DESC, id DESC
                    LIMIT ? OFFSET ?
                    """,
                    [*params, page_size, (page - 1) * page_size],
                ).fetchall()
                total = conn.execute(
                    f"SELECT COUNT(*) AS total FROM caldav_sync_status WHERE {where_sql}",
                    params,
                ).fetchone()
        return [SyncStatus.from_row(dict(row)) for row in rows], int(total["total"])

    def summary(self, user_id: str) -> dict[str, int]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT sync_status, COUNT(*) AS total
                    FROM caldav_sync_status
                    WHERE user_id = ?
                    GROUP BY sync_status
                    """,
                    (str(user_id),),
                ).fetchall()
        output = {status: 0 for status in SYNC_STATUSES}
        for row in rows:
            if row["sync_status"] in output:
                output[row["sync_status"]] = int(row["total"])
        return output
