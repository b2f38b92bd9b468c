import os
import tempfile
import unittest
from pathlib import Path

import yaml
from fastapi.testclient import TestClient

from fake_caldav import FakeCalDAVServer
from mealcal.web_admin import create_app

CONFIG_BODY = {
    "server_url": "https://dav.example.com/cal/",
    "username": "alice",
    "password": "secret-pass",
    "enabled": False,
}


class WebAdminTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = str(Path(self.temp_dir.name) / "config.yaml")
        self.state_path = str(Path(self.temp_dir.name) / "state.db")
        Path(self.config_path).write_text(
            yaml.safe_dump({"scheduler": {"enabled": False}, "app": {"base_url": "https://meals.example.com"}}),
            encoding="utf-8",
        )
        os.environ["MEALCAL_CONFIG_PATH"] = self.config_path
        os.environ["MEALCAL_STATE_PATH"] = self.state_path
        self.server = FakeCalDAVServer()
        self.app = create_app(service_factory=self.server.factory)
        self.context = self.app.state.context
        self.client = TestClient(self.app)
        self.client.__enter__()

    def tearDown(self) -> None:
        self.client.__exit__(None, None, None)
        os.environ.pop("MEALCAL_CONFIG_PATH", None)
        os.environ.pop("MEALCAL_STATE_PATH", None)
        self.temp_dir.cleanup()

    def save_config(self, **overrides):
        body = dict(CONFIG_BODY)
        body.update(overrides)
        return self.client.put("/api/users/u1/caldav/config", json=body)

    def plan_item(self, item_id: str = "p1", title: str = "Soup"):
        payload = {
            "id": item_id,
            "user_id": "u1",
            "title": title,
            "date": "2026-05-04",
            "slot": "Dinner",
            "recipe_id": "r1",
        }
        return self.client.post("/api/events/item-planned?wait=true", json=payload)

    def test_healthz(self) -> None:
        resp = self.client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "ok")
        self.assertFalse(resp.json()["scheduler_running"])

    def test_save_config_hides_password(self) -> None:
        resp = self.save_config()
        self.assertEqual(resp.status_code, 200)
        self.assertNotIn("password", resp.json())
        self.assertEqual(resp.json()["username"], "alice")

        config = self.client.get("/api/users/u1/caldav/config").json()
        self.assertNotIn("password", config)
        self.assertEqual(config["breakfast_time"], "08:00-09:00")
        password = self.client.get("/api/users/u1/caldav/password").json()
        self.assertEqual(password["password"], "secret-pass")

    def test_missing_config(self) -> None:
        self.assertIsNone(self.client.get("/api/users/nobody/caldav/config").json())
        self.assertIsNone(self.client.get("/api/users/nobody/caldav/password").json()["password"])
        resp = self.client.get("/api/users/nobody/caldav/connection")
        self.assertEqual(resp.json(), {"success": False, "message": "No configuration found"})

    def test_masked_password_keeps_existing(self) -> None:
        self.assertEqual(self.save_config().status_code, 200)
        resp = self.save_config(password="***", username="alice2")
        self.assertEqual(resp.status_code, 200)
        account = self.context.state_store.get_account("u1")
        self.assertEqual(account.password, "secret-pass")
        self.assertEqual(account.username, "alice2")

    def test_invalid_config_is_rejected(self) -> None:
        resp = self.save_config(dinner_time="dinner")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"]["error_code"], "CONFIG_INVALID")
        self.assertIsNone(self.context.state_store.get_account("u1"))

    def test_failed_connection_check_is_rejected(self) -> None:
        self.server.connection_ok = False
        resp = self.save_config()
        self.assertEqual(resp.status_code, 400)
        self.assertIn("401", resp.json()["detail"])
        self.assertIsNone(self.context.state_store.get_account("u1"))

    def test_test_connection(self) -> None:
        resp = self.client.post(
            "/api/caldav/test-connection",
            json={"server_url": "https://dav.example.com/", "username": "a", "password": "b"},
        )
        self.assertEqual(resp.json(), {"success": True, "message": "Connection successful"})
        self.server.connection_ok = False
        resp = self.client.post(
            "/api/caldav/test-connection",
            json={"server_url": "https://dav.example.com/", "username": "a", "password": "b"},
        )
        self.assertFalse(resp.json()["success"])

    def test_events_drive_sync_status(self) -> None:
        self.save_config(enabled=True)
        resp = self.plan_item()
        self.assertEqual(resp.status_code, 202)

        resp = self.client.get("/api/users/u1/caldav/sync-status")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["total"], 1)
        self.assertEqual((data["page"], data["page_size"]), (1, 20))
        row = data["statuses"][0]
        self.assertEqual(row["sync_status"], "synced")
        self.assertEqual((row["date"], row["slot"]), ("2026-05-04", "Dinner"))

        summary = self.client.get("/api/users/u1/caldav/summary").json()
        self.assertEqual(summary, {"pending": 0, "synced": 1, "failed": 0, "removed": 0})

        resp = self.client.post("/api/events/item-deleted?wait=true", json={"id": "p1", "user_id": "u1"})
        self.assertEqual(resp.status_code, 202)
        removed = self.client.get("/api/users/u1/caldav/sync-status?status=removed").json()
        self.assertEqual(removed["total"], 1)
        self.assertIsNone(removed["statuses"][0]["date"])

    def test_sync_status_rejects_unknown_filter(self) -> None:
        resp = self.client.get("/api/users/u1/caldav/sync-status?status=done")
        self.assertEqual(resp.status_code, 400)

    def test_unknown_or_malformed_events(self) -> None:
        self.assertEqual(self.client.post("/api/events/item-archived", json={}).status_code, 404)
        resp = self.client.post("/api/events/item-planned", json={"id": "p1"})
        self.assertEqual(resp.status_code, 400)

    def test_delete_config_can_remove_events(self) -> None:
        self.save_config(enabled=True)
        self.plan_item()
        resp = self.client.delete("/api/users/u1/caldav/config?delete_events=true")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"success": True, "deleted": True, "removed_events": 1})
        self.assertEqual(self.server.events_for("https://dav.example.com/cal/"), {})
        self.assertIsNone(self.client.get("/api/users/u1/caldav/config").json())

    def test_manual_sync_endpoints_start_work(self) -> None:
        self.save_config(enabled=True)
        self.assertEqual(self.client.post("/api/users/u1/caldav/sync/all").json(), {"started": True})
        self.assertEqual(self.client.post("/api/users/u1/caldav/sync/retry").json(), {"started": True})

    def test_put_household(self) -> None:
        resp = self.client.put("/api/households/h1", json={"user_ids": ["u1", "u2"]})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.context.planned_store.household_member_ids("u2"), ["u1", "u2"])


if __name__ == "__main__":
    unittest.main()
