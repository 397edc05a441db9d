from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable
from urllib import error as urllib_error
from urllib import request as urllib_request

import firebase_admin
from firebase_admin import credentials, exceptions as firebase_exceptions, messaging
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from opstrack.db import SessionLocal
from opstrack.errors import InvalidArgumentError
from opstrack.models import FcmToken
from opstrack.settings import get_settings, is_firebase_configured, is_legacy_fcm_configured

logger = logging.getLogger("opstrack.push")

INVALID_TOKEN = "invalid_token"
UNREGISTERED_TOKEN = "unregistered_token"
DEAD_TOKEN_CODES = frozenset({INVALID_TOKEN, UNREGISTERED_TOKEN})

CLICK_ACTION = "FLUTTER_NOTIFICATION_CLICK"

_LEGACY_ERROR_CODES = {
    "InvalidRegistration": INVALID_TOKEN,
    "NotRegistered": UNREGISTERED_TOKEN,
}


@dataclass(frozen=True, slots=True)
class TokenResult:
    token: str
    success: bool
    error_code: str | None = None
    error: str | None = None

    @property
    def is_dead(self) -> bool:
        return not self.success and self.error_code in DEAD_TOKEN_CODES


def _stringify_data(data: dict[str, Any] | None) -> dict[str, str]:
    # FCM data payloads only carry string values.
    payload = {str(key): "" if value is None else str(value) for key, value in (data or {}).items()}
    payload["click_action"] = CLICK_ACTION
    return payload


class PushTransport:
    name: str = "none"

    def send_multicast(
        self,
        tokens: list[str],
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
    ) -> list[TokenResult]:
        raise NotImplementedError


class FirebaseMulticastTransport(PushTransport):
    name = "firebase"

    def __init__(self, service_account_key: str):
        try:
            self.app = firebase_admin.get_app()
        except ValueError:
            certificate = credentials.Certificate(json.loads(service_account_key))
            self.app = firebase_admin.initialize_app(certificate)

    @staticmethod
    def _map_error(exc: BaseException | None) -> str | None:
        if exc is None:
            return None
        if isinstance(exc, messaging.UnregisteredError):
            return UNREGISTERED_TOKEN
        if isinstance(exc, firebase_exceptions.InvalidArgumentError):
            return INVALID_TOKEN
        return str(getattr(exc, "code", None) or "unknown")

    def send_multicast(
        self,
        tokens: list[str],
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
    ) -> list[TokenResult]:
        message = messaging.MulticastMessage(
            tokens=tokens,
            notification=messaging.Notification(title=title, body=body),
            data=_stringify_data(data),
        )
        response = messaging.send_each_for_multicast(message, app=self.app)
        results: list[TokenResult] = []
        for token, item in zip(tokens, response.responses):
            if item.success:
                results.append(TokenResult(token=token, success=True))
                continue
            results.append(
                TokenResult(
                    token=token,
                    success=False,
                    error_code=self._map_error(item.exception),
                    error=str(item.exception)[:500] if item.exception is not None else None,
                )
            )
        return results


class LegacyFcmTransport(PushTransport):
    name = "legacy_fcm"

    def __init__(self, server_key: str, *, url: str, timeout_seconds: int = 10):
        self.server_key = server_key
        self.url = url
        self.timeout_seconds = max(1, timeout_seconds)

    def _post_json(self, payload: dict[str, Any]) -> dict[str, Any]:
        request = urllib_request.Request(
            url=self.url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Content-Type": "application/json",
                "Authorization": f"key={self.server_key}",
            },
        )
        try:
            with urllib_request.urlopen(request, timeout=self.timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8", errors="ignore") or "{}")
        except urllib_error.HTTPError as exc:
            error_body = exc.read(512).decode("utf-8", errors="ignore")
            raise RuntimeError(f"Legacy FCM request failed ({exc.code}): {error_body or exc}") from exc

    def send_multicast(
        self,
        tokens: list[str],
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
    ) -> list[TokenResult]:
        result = self._post_json(
            {
                "registration_ids": tokens,
                "notification": {"title": title, "body": body},
                "data": _stringify_data(data),
            }
        )
        items = result.get("results") if isinstance(result.get("results"), list) else []
        results: list[TokenResult] = []
        for index, token in enumerate(tokens):
            item = items[index] if index < len(items) and isinstance(items[index], dict) else {}
            error_text = item.get("error")
            if not error_text:
                results.append(TokenResult(token=token, success=True))
                continue
            results.append(
                TokenResult(
                    token=token,
                    success=False,
                    error_code=_LEGACY_ERROR_CODES.get(str(error_text), str(error_text)),
                    error=str(error_text),
                )
            )
        return results


class PushNotifier:
    """Delivers push notifications to every registered device of a user.

    Token lookups and pruning use their own short-lived sessions so no pooled
    connection is held while the provider call is in flight.
    """

    def __init__(
        self,
        transport: PushTransport | None,
        *,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.transport = transport
        self.session_factory = session_factory

    @property
    def available(self) -> bool:
        return self.transport is not None

    def _load_tokens(self, user_id: int) -> list[str]:
        with self.session_factory() as session:
            return [
                token
                for token in session.scalars(select(FcmToken.token).where(FcmToken.user_id == user_id)).all()
                if token
            ]

    def send(
        self,
        user_id: int,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        summary: dict[str, Any] = {"user_id": user_id, "sent": 0, "failed": 0, "removed": 0}
        if self.transport is None:
            logger.info("push_skipped_no_provider", extra={"user_id": user_id})
            return summary

        tokens = self._load_tokens(user_id)
        if not tokens:
            logger.info("push_skipped_no_tokens", extra={"user_id": user_id})
            return summary

        try:
            results = self.transport.send_multicast(tokens, title, body, data)
        except Exception as exc:
            logger.warning(
                "push_send_failed",
                extra={"user_id": user_id, "provider": self.transport.name, "error": str(exc)[:500]},
            )
            summary["failed"] = len(tokens)
            summary["error"] = str(exc)[:500]
            return summary

        for item in results:
            if item.success:
                summary["sent"] += 1
                continue
            summary["failed"] += 1
            logger.warning(
                "push_token_failed",
                extra={"user_id": user_id, "error_code": item.error_code, "error": item.error},
            )
            if item.is_dead and self.remove_token(item.token):
                summary["removed"] += 1

        logger.info(
            "push_sent",
            extra={"provider": self.transport.name, **summary},
        )
        return summary

    def remove_token(self, token: str) -> bool:
        try:
            with self.session_factory() as session:
                result = session.execute(delete(FcmToken).where(FcmToken.token == token))
                session.commit()
        except Exception as exc:
            logger.warning("push_token_remove_failed", extra={"error": str(exc)[:500]})
            return False
        removed = bool(result.rowcount)
        if removed:
            logger.info("push_token_removed")
        return removed

    def register_token(self, db: Session, *, user_id: int | None, token: str | None) -> FcmToken:
        normalized = (token or "").strip()
        if not user_id or not normalized:
            raise InvalidArgumentError(code="FCM_TOKEN_REQUIRED", message="userId and token are required.")

        row = db.scalar(select(FcmToken).where(FcmToken.token == normalized))
        if row is None:
            row = FcmToken(user_id=user_id, token=normalized)
            db.add(row)
        else:
            row.user_id = user_id
        db.commit()
        logger.info("push_token_registered", extra={"user_id": user_id})
        return row


_NOTIFIER: PushNotifier | None = None
_NOTIFIER_LOCK = threading.Lock()


def _build_transport() -> PushTransport | None:
    settings = get_settings()
    if is_firebase_configured():
        try:
            return FirebaseMulticastTransport(settings.firebase_service_account_key or "")
        except Exception:
            logger.exception("firebase_init_failed")
    if is_legacy_fcm_configured():
        return LegacyFcmTransport(
            settings.fcm_server_key or "",
            url=settings.fcm_legacy_url,
            timeout_seconds=settings.notification_timeout_seconds,
        )
    logger.warning("push_provider_not_configured")
    return None


def init_push_notifier() -> PushNotifier:
    global _NOTIFIER
    with _NOTIFIER_LOCK:
        if _NOTIFIER is None:
            _NOTIFIER = PushNotifier(_build_transport())
            logger.info(
                "push_notifier_initialized",
                extra={
                    "available": _NOTIFIER.available,
                    "provider": _NOTIFIER.transport.name if _NOTIFIER.transport else None,
                },
            )
        return _NOTIFIER


def get_push_notifier() -> PushNotifier:
    return _NOTIFIER or init_push_notifier()


def get_push_channel_health() -> dict[str, Any]:
    notifier = _NOTIFIER
    return {
        "initialized": notifier is not None,
        "available": bool(notifier and notifier.available),
        "provider": notifier.transport.name if notifier and notifier.transport else None,
        "firebase_configured": is_firebase_configured(),
        "legacy_fcm_configured": is_legacy_fcm_configured(),
    }
