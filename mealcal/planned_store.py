from __future__ import annotations

import sqlite3
import threading
from datetime import date
from pathlib import Path

from mealcal.models import PlannedItem, parse_plan_date, utc_now


class PlannedItemStore:
    """Local view of the meal-planning application's planned items and households.

    The planning application owns the real rows; this store mirrors what the domain
    events announce so that retries can re-resolve the live date, slot and title of an
    item instead of trusting the snapshot kept on its sync status row.
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
        CREATE TABLE IF NOT EXISTS planned_items (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            item_type TEXT NOT NULL,
            date TEXT NOT NULL,
            slot TEXT NOT NULL,
            title TEXT NOT NULL,
            recipe_id TEXT,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_planned_items_recipe ON planned_items(recipe_id);
        CREATE INDEX IF NOT EXISTS idx_planned_items_user_date ON planned_items(user_id, date);

        CREATE TABLE IF NOT EXISTS household_members (
            household_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            PRIMARY KEY (household_id, user_id)
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def upsert_item(self, item: PlannedItem) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO planned_items(id, user_id, item_type, date, slot, title, recipe_id, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        user_id = excluded.user_id,
                        item_type = excluded.item_type,
                        date = excluded.date,
                        slot = excluded.slot,
                        title = excluded.title,
                        recipe_id = excluded.recipe_id,
                        updated_at = excluded.updated_at
                    """,
                    (
                        item.id,
                        item.user_id,
                        item.item_type,
                        parse_plan_date(item.date).isoformat(),
                        item.slot,
                        item.title,
                        item.recipe_id,
                        utc_now().isoformat(),
                    ),
                )
                conn.commit()

    def delete_item(self, item_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM planned_items WHERE id = ?", (str(item_id),))
                conn.commit()

    def get_item(self, item_id: str) -> PlannedItem | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM planned_items WHERE id = ?", (str(item_id),)).fetchone()
        return PlannedItem.from_row(dict(row)) if row else None

    def items_for_recipe(self, recipe_id: str) -> list[PlannedItem]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM planned_items WHERE recipe_id = ? ORDER BY date ASC, id ASC",
                    (str(recipe_id),),
                ).fetchall()
        return [PlannedItem.from_row(dict(row)) for row in rows]

    def rename_recipe(self, recipe_id: str, new_name: str) -> list[PlannedItem]:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE planned_items SET title = ?, updated_at = ? WHERE recipe_id = ?",
                    (new_name, utc_now().isoformat(), str(recipe_id)),
                )
                conn.commit()
            return self.items_for_recipe(recipe_id)

    def future_items(self, user_id: str, today: date | None = None) -> list[PlannedItem]:
        """Items of ``user_id`` dated today or later."""
        cutoff = (today or utc_now().date()).isoformat()
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM planned_items
                    WHERE user_id = ? AND date >= ?
                    ORDER BY date ASC, id ASC
                    """,
                    (str(user_id), cutoff),
                ).fetchall()
        return [PlannedItem.from_row(dict(row)) for row in rows]

    def set_household(self, household_id: str, user_ids: list[str]) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM household_members WHERE household_id = ?", (str(household_id),))
                conn.executemany(
                    "INSERT OR IGNORE INTO household_members(household_id, user_id) VALUES (?, ?)",
                    [(str(household_id), str(uid)) for uid in user_ids],
                )
                conn.commit()

    def household_member_ids(self, user_id: str) -> list[str]:
        """All members of the user's households, the user included."""
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT DISTINCT m.user_id
                    FROM household_members m
                    JOIN household_members me ON me.household_id = m.household_id
                    WHERE me.user_id = ?
                    ORDER BY m.user_id
                    """,
                    (str(user_id),),
                ).fetchall()
        members = [str(row["user_id"]) for row in rows]
        if str(user_id) not in members:
            members.insert(0, str(user_id))
        return members
