from __future__ import annotations

import unittest
from collections.abc import Generator
from datetime import datetime, timezone
from unittest.mock import patch

from fastapi.testclient import TestClient
from pywebpush import WebPushException

from opstrack.db import get_db
from opstrack.errors import ApiError
from opstrack.main import app
from opstrack.models import Notification, WebPushSubscription
from opstrack.services.push_notifications import PushNotifier, get_push_notifier
from opstrack.services.web_push import send_web_push_to_user, upsert_web_push_subscription


class _ScalarRows:
    def __init__(self, rows):
        self._rows = rows

    def all(self):
        return self._rows


class _UpdateResult:
    def __init__(self, rowcount: int):
        self.rowcount = rowcount


class _FakeNotificationDB:
    def __init__(self, *, rows: list[object] | None = None, scalar_value: object | None = None):
        self.rows = list(rows or [])
        self.scalar_value = scalar_value
        self.added: list[object] = []
        self.commits = 0
        self.executed: list[object] = []

    def scalars(self, _statement):  # type: ignore[no-untyped-def]
        return _ScalarRows(self.rows)

    def scalar(self, _statement):  # type: ignore[no-untyped-def]
        return self.scalar_value

    def execute(self, statement):  # type: ignore[no-untyped-def]
        self.executed.append(statement)
        return _UpdateResult(2)

    def add(self, obj) -> None:  # type: ignore[no-untyped-def]
        self.added.append(obj)

    def commit(self) -> None:
        self.commits += 1


def _override_get_db(fake_db: _FakeNotificationDB):
    def _override() -> Generator[_FakeNotificationDB, None, None]:
        yield fake_db

    return _override


class NotificationEndpointTests(unittest.TestCase):
    def tearDown(self) -> None:
        app.dependency_overrides.clear()

    def test_list_notifications_for_user(self) -> None:
        row = Notification(
            id=1,
            user_id=3,
            message="New note",
            link="/reports/7",
            is_read=False,
            created_at=datetime(2026, 5, 1, tzinfo=timezone.utc),
        )
        app.dependency_overrides[get_db] = _override_get_db(_FakeNotificationDB(rows=[row]))
        client = TestClient(app)

        response = client.get("/api/notifications/3")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body[0]["message"], "New note")
        self.assertFalse(body[0]["isRead"])

    def test_invalid_user_id_is_rejected(self) -> None:
        app.dependency_overrides[get_db] = _override_get_db(_FakeNotificationDB())
        client = TestClient(app)

        response = client.get("/api/notifications/abc")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "USER_ID_REQUIRED")

    def test_mark_all_read(self) -> None:
        fake_db = _FakeNotificationDB()
        app.dependency_overrides[get_db] = _override_get_db(fake_db)
        client = TestClient(app)

        response = client.post("/api/notifications/read/3")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(fake_db.executed), 1)
        self.assertEqual(fake_db.commits, 1)

    def test_fcm_token_registration_uses_notifier(self) -> None:
        fake_db = _FakeNotificationDB(scalar_value=None)
        app.dependency_overrides[get_db] = _override_get_db(fake_db)
        app.dependency_overrides[get_push_notifier] = lambda: PushNotifier(None)
        client = TestClient(app)

        response = client.post("/api/fcm-token", json={"userId": 3, "token": "device-1"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(fake_db.added[0].token, "device-1")
        self.assertEqual(fake_db.added[0].user_id, 3)

    def test_web_push_send_without_vapid_is_unavailable(self) -> None:
        app.dependency_overrides[get_db] = _override_get_db(_FakeNotificationDB())
        client = TestClient(app)

        with patch("opstrack.services.web_push.is_web_push_enabled", return_value=False):
            response = client.post("/api/webpush/send", json={"userId": 3})

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["error"]["code"], "PUSH_NOT_CONFIGURED")


class WebPushServiceTests(unittest.TestCase):
    def test_subscription_requires_endpoint(self) -> None:
        with self.assertRaises(ApiError) as ctx:
            upsert_web_push_subscription(_FakeNotificationDB(), user_id=3, subscription={"keys": {}})  # type: ignore[arg-type]
        self.assertEqual(ctx.exception.code, "INVALID_PUSH_SUBSCRIPTION")

    def test_existing_subscription_is_refreshed(self) -> None:
        existing = WebPushSubscription(id=1, user_id=3, endpoint="https://push.example/a", last_error="old")
        fake_db = _FakeNotificationDB(scalar_value=existing)

        row = upsert_web_push_subscription(
            fake_db,  # type: ignore[arg-type]
            user_id=3,
            subscription={"endpoint": "https://push.example/a", "keys": {"p256dh": "p", "auth": "a"}},
        )

        self.assertIs(row, existing)
        self.assertEqual(existing.keys_p256dh, "p")
        self.assertIsNone(existing.last_error)
        self.assertEqual(fake_db.added, [])

    def test_provider_failure_is_recorded_and_raised(self) -> None:
        subscription = WebPushSubscription(
            id=1,
            user_id=3,
            endpoint="https://push.example/a",
            keys_p256dh="p",
            keys_auth="a",
            raw=None,
        )
        fake_db = _FakeNotificationDB(scalar_value=subscription)

        with (
            patch("opstrack.services.web_push.is_web_push_enabled", return_value=True),
            patch("opstrack.services.web_push.webpush", side_effect=WebPushException("gone")),
        ):
            with self.assertRaises(ApiError) as ctx:
                send_web_push_to_user(fake_db, user_id=3, title="t", body="b")  # type: ignore[arg-type]

        self.assertEqual(ctx.exception.status_code, 502)
        self.assertIn("gone", subscription.last_error or "")


if __name__ == "__main__":
    unittest.main()
