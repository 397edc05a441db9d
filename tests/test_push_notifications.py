from __future__ import annotations

import io
import json
import unittest
from unittest.mock import patch

from opstrack.errors import InvalidArgumentError
from opstrack.models import FcmToken
from opstrack.services.push_notifications import (
    INVALID_TOKEN,
    UNREGISTERED_TOKEN,
    LegacyFcmTransport,
    PushNotifier,
    PushTransport,
    TokenResult,
)


class _ScalarRows:
    def __init__(self, rows):
        self._rows = rows

    def all(self):
        return self._rows


class _DeleteResult:
    def __init__(self, rowcount: int):
        self.rowcount = rowcount


class _FakeTokenStore:
    def __init__(self, tokens: list[str]):
        self.tokens = list(tokens)
        self.sessions_opened = 0

    def session(self):  # type: ignore[no-untyped-def]
        self.sessions_opened += 1
        return _FakeTokenSession(self)


class _FakeTokenSession:
    def __init__(self, store: _FakeTokenStore):
        self._store = store
        self._pending: list[str] = []

    def __enter__(self):  # type: ignore[no-untyped-def]
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False

    def scalars(self, _statement):  # type: ignore[no-untyped-def]
        return _ScalarRows(list(self._store.tokens))

    def execute(self, statement):  # type: ignore[no-untyped-def]
        token = statement.whereclause.right.value
        if token in self._store.tokens:
            self._pending.append(token)
            return _DeleteResult(1)
        return _DeleteResult(0)

    def commit(self) -> None:
        for token in self._pending:
            self._store.tokens.remove(token)
        self._pending.clear()


class _ScriptedTransport(PushTransport):
    name = "scripted"

    def __init__(self, outcomes: dict[str, str | None] | None = None, *, error: Exception | None = None):
        self.outcomes = outcomes or {}
        self.error = error
        self.calls: list[list[str]] = []

    def send_multicast(self, tokens, title, body, data=None):  # type: ignore[no-untyped-def]
        self.calls.append(list(tokens))
        if self.error is not None:
            raise self.error
        return [
            TokenResult(token=token, success=self.outcomes.get(token) is None, error_code=self.outcomes.get(token))
            for token in tokens
        ]


class _FakeRegisterDB:
    def __init__(self, existing: FcmToken | None):
        self.existing = existing
        self.added: list[object] = []
        self.commits = 0

    def scalar(self, _statement):  # type: ignore[no-untyped-def]
        return self.existing

    def add(self, obj) -> None:  # type: ignore[no-untyped-def]
        self.added.append(obj)

    def commit(self) -> None:
        self.commits += 1


class PushNotifierTests(unittest.TestCase):
    def test_dead_tokens_are_pruned_and_live_tokens_kept(self) -> None:
        store = _FakeTokenStore(["ok", "gone", "bad", "flaky"])
        transport = _ScriptedTransport({"gone": UNREGISTERED_TOKEN, "bad": INVALID_TOKEN, "flaky": "unavailable"})
        notifier = PushNotifier(transport, session_factory=store.session)

        summary = notifier.send(3, "title", "body", {"link": "/reports/1"})

        self.assertEqual(summary["sent"], 1)
        self.assertEqual(summary["failed"], 3)
        self.assertEqual(summary["removed"], 2)
        self.assertEqual(store.tokens, ["ok", "flaky"])

    def test_no_tokens_is_a_noop(self) -> None:
        store = _FakeTokenStore([])
        transport = _ScriptedTransport()
        notifier = PushNotifier(transport, session_factory=store.session)

        summary = notifier.send(3, "title", "body")

        self.assertEqual(summary["sent"], 0)
        self.assertEqual(transport.calls, [])

    def test_without_provider_nothing_is_loaded(self) -> None:
        store = _FakeTokenStore(["ok"])
        notifier = PushNotifier(None, session_factory=store.session)

        summary = notifier.send(3, "title", "body")

        self.assertFalse(notifier.available)
        self.assertEqual(summary["sent"], 0)
        self.assertEqual(store.sessions_opened, 0)

    def test_transport_error_is_reported_not_raised(self) -> None:
        store = _FakeTokenStore(["ok"])
        notifier = PushNotifier(_ScriptedTransport(error=RuntimeError("fcm 503")), session_factory=store.session)

        summary = notifier.send(3, "title", "body")

        self.assertEqual(summary["failed"], 1)
        self.assertIn("fcm 503", summary["error"])
        self.assertEqual(store.tokens, ["ok"])

    def test_register_token_reassigns_existing_token(self) -> None:
        existing = FcmToken(id=1, user_id=3, token="device-token")
        fake_db = _FakeRegisterDB(existing)
        notifier = PushNotifier(None, session_factory=_FakeTokenStore([]).session)

        row = notifier.register_token(fake_db, user_id=9, token=" device-token ")  # type: ignore[arg-type]

        self.assertIs(row, existing)
        self.assertEqual(existing.user_id, 9)
        self.assertEqual(fake_db.added, [])
        self.assertEqual(fake_db.commits, 1)

    def test_register_token_requires_values(self) -> None:
        notifier = PushNotifier(None, session_factory=_FakeTokenStore([]).session)
        with self.assertRaises(InvalidArgumentError) as ctx:
            notifier.register_token(_FakeRegisterDB(None), user_id=None, token="x")  # type: ignore[arg-type]
        self.assertEqual(ctx.exception.code, "FCM_TOKEN_REQUIRED")


class _FakeHttpResponse(io.BytesIO):
    def __enter__(self):  # type: ignore[no-untyped-def]
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        self.close()
        return False


class LegacyFcmTransportTests(unittest.TestCase):
    def test_error_codes_are_mapped_per_token(self) -> None:
        transport = LegacyFcmTransport("server-key", url="https://fcm.example/send", timeout_seconds=5)
        body = json.dumps(
            {"results": [{"message_id": "1"}, {"error": "NotRegistered"}, {"error": "InvalidRegistration"}]}
        ).encode("utf-8")

        with patch(
            "opstrack.services.push_notifications.urllib_request.urlopen",
            return_value=_FakeHttpResponse(body),
        ) as urlopen_mock:
            results = transport.send_multicast(["a", "b", "c"], "t", "b", {"link": "/x", "count": 2})

        self.assertTrue(results[0].success)
        self.assertEqual(results[1].error_code, UNREGISTERED_TOKEN)
        self.assertEqual(results[2].error_code, INVALID_TOKEN)
        request = urlopen_mock.call_args.args[0]
        sent = json.loads(request.data.decode("utf-8"))
        self.assertEqual(sent["registration_ids"], ["a", "b", "c"])
        self.assertEqual(sent["data"], {"link": "/x", "count": "2", "click_action": "FLUTTER_NOTIFICATION_CLICK"})
        self.assertEqual(request.get_header("Authorization"), "key=server-key")


if __name__ == "__main__":
    unittest.main()
