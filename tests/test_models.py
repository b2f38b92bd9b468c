import unittest
from datetime import date, datetime, timezone

from mealcal.models import (
    AppConfig,
    CaldavAccountConfig,
    SyncStatus,
    event_time_range,
    is_valid_time_range,
    normalize_server_url,
    parse_iso_datetime,
    recipe_deep_link,
)


def _account(**overrides) -> CaldavAccountConfig:
    data = {
        "user_id": "u1",
        "server_url": "https://dav.example.com/cal/",
        "username": "alice",
        "password": "secret",
        "enabled": True,
    }
    data.update(overrides)
    return CaldavAccountConfig.from_dict(data)


class ModelTests(unittest.TestCase):
    def test_time_range_validation(self) -> None:
        self.assertTrue(is_valid_time_range("08:00-09:00"))
        self.assertTrue(is_valid_time_range("23:59-00:00"))
        self.assertFalse(is_valid_time_range("8:00-9:00"))
        self.assertFalse(is_valid_time_range("24:00-25:00"))
        self.assertFalse(is_valid_time_range("08:60-09:00"))
        self.assertFalse(is_valid_time_range(""))

    def test_event_time_range_uses_slot_window_as_utc(self) -> None:
        account = _account(dinner_time="19:30-20:45")
        start, end = event_time_range("2026-05-04", "Dinner", account)
        self.assertEqual(start, datetime(2026, 5, 4, 19, 30, tzinfo=timezone.utc))
        self.assertEqual(end, datetime(2026, 5, 4, 20, 45, tzinfo=timezone.utc))

    def test_event_time_range_defaults_and_date_objects(self) -> None:
        start, end = event_time_range(date(2026, 5, 4), "snack", _account())
        self.assertEqual((start.hour, start.minute), (15, 0))
        self.assertEqual((end.hour, end.minute), (15, 30))

    def test_unknown_slot_raises(self) -> None:
        with self.assertRaises(ValueError):
            event_time_range("2026-05-04", "Brunch", _account())

    def test_recipe_deep_link(self) -> None:
        self.assertEqual(recipe_deep_link("https://meals.example.com/", "r-1"), "https://meals.example.com/recipes/r-1")
        self.assertEqual(recipe_deep_link("https://meals.example.com", None), "")

    def test_normalize_server_url(self) -> None:
        self.assertEqual(normalize_server_url("https://dav.example.com/cal"), "https://dav.example.com/cal/")
        self.assertEqual(normalize_server_url(" https://dav.example.com/cal/ "), "https://dav.example.com/cal/")
        self.assertEqual(normalize_server_url(""), "")

    def test_account_validation(self) -> None:
        self.assertEqual(_account().validation_errors(), [])
        errors = _account(server_url="dav.example.com", password="", lunch_time="noon").validation_errors()
        self.assertEqual(len(errors), 3)
        self.assertTrue(any("server_url" in e for e in errors))
        self.assertTrue(any("password" in e for e in errors))
        self.assertTrue(any("lunch_time" in e for e in errors))

    def test_account_to_dict_can_hide_password(self) -> None:
        public = _account().to_dict(include_password=False)
        self.assertNotIn("password", public)
        self.assertEqual(public["username"], "alice")
        self.assertEqual(_account().to_dict()["password"], "secret")

    def test_sync_status_from_row(self) -> None:
        status = SyncStatus.from_row(
            {
                "id": 3,
                "user_id": "u1",
                "item_id": "i1",
                "item_type": "note",
                "event_title": "Leftovers",
                "sync_status": "failed",
                "retry_count": 2,
                "last_sync_at": "2026-05-04T10:00:00Z",
            }
        )
        self.assertEqual(status.retry_count, 2)
        self.assertEqual(status.last_sync_at, datetime(2026, 5, 4, 10, 0, tzinfo=timezone.utc))
        self.assertEqual(status.to_dict()["last_sync_at"], "2026-05-04T10:00:00+00:00")

    def test_parse_iso_datetime_naive_is_utc(self) -> None:
        self.assertEqual(
            parse_iso_datetime("2026-05-04T10:00:00"),
            datetime(2026, 5, 4, 10, 0, tzinfo=timezone.utc),
        )
        self.assertIsNone(parse_iso_datetime(""))

    def test_app_config_clamps_scheduler_interval(self) -> None:
        config = AppConfig.from_dict({"scheduler": {"interval_seconds": 5}, "logging": {"level": "debug"}})
        self.assertEqual(config.scheduler.interval_seconds, 30)
        self.assertEqual(config.logging.level, "DEBUG")
        self.assertEqual(config.app.base_url, "http://localhost:3000")


if __name__ == "__main__":
    unittest.main()
