from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from pywebpush import WebPushException, webpush
from sqlalchemy import select
from sqlalchemy.orm import Session

from opstrack.errors import ApiError, InvalidArgumentError, NotFoundError
from opstrack.models import WebPushSubscription
from opstrack.settings import get_settings, is_web_push_enabled

logger = logging.getLogger("opstrack.web_push")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_web_push_public_config() -> dict[str, Any]:
    settings = get_settings()
    enabled = is_web_push_enabled()
    return {
        "enabled": enabled,
        "vapid_public_key": settings.push_vapid_public_key if enabled else None,
    }


def upsert_web_push_subscription(
    db: Session,
    *,
    user_id: int | None,
    subscription: dict[str, Any] | None,
) -> WebPushSubscription:
    endpoint = str((subscription or {}).get("endpoint") or "").strip()
    if not user_id or not endpoint:
        raise InvalidArgumentError(
            code="INVALID_PUSH_SUBSCRIPTION",
            message="userId and subscription.endpoint are required.",
        )

    keys = subscription.get("keys") if isinstance(subscription.get("keys"), dict) else {}
    p256dh = str(keys.get("p256dh") or "").strip() or None
    auth = str(keys.get("auth") or "").strip() or None
    now_utc = _utcnow()

    row = db.scalar(
        select(WebPushSubscription).where(
            WebPushSubscription.user_id == user_id,
            WebPushSubscription.endpoint == endpoint,
        )
    )
    if row is None:
        row = WebPushSubscription(
            user_id=user_id,
            endpoint=endpoint,
            keys_p256dh=p256dh,
            keys_auth=auth,
            raw=subscription,
            last_error=None,
            created_at=now_utc,
            updated_at=now_utc,
        )
        db.add(row)
    else:
        row.keys_p256dh = p256dh
        row.keys_auth = auth
        row.raw = subscription
        row.last_error = None
        row.updated_at = now_utc

    db.commit()
    logger.info("web_push_subscription_saved", extra={"user_id": user_id})
    return row


def _subscription_info(row: WebPushSubscription) -> dict[str, Any]:
    raw = row.raw if isinstance(row.raw, dict) else {}
    if raw.get("endpoint") and isinstance(raw.get("keys"), dict):
        return raw
    return {
        "endpoint": row.endpoint,
        "keys": {"p256dh": row.keys_p256dh, "auth": row.keys_auth},
    }


def send_web_push_to_user(
    db: Session,
    *,
    user_id: int | None,
    title: str,
    body: str,
    link: str = "/",
) -> dict[str, Any]:
    if not user_id:
        raise InvalidArgumentError(code="USER_ID_REQUIRED", message="userId is required.")
    if not is_web_push_enabled():
        raise ApiError(
            status_code=503,
            code="PUSH_NOT_CONFIGURED",
            message="Push notification service is not configured.",
        )

    row = db.scalar(
        select(WebPushSubscription)
        .where(WebPushSubscription.user_id == user_id)
        .order_by(WebPushSubscription.updated_at.desc(), WebPushSubscription.id.desc())
        .limit(1)
    )
    if row is None:
        raise NotFoundError(
            code="PUSH_SUBSCRIPTION_NOT_FOUND",
            message="No web push subscription found for user.",
        )

    subscription_info = _subscription_info(row)
    endpoint = row.endpoint
    # Release the pooled connection before the network call.
    db.commit()

    settings = get_settings()
    status_code: int | None = None
    error_text: str | None = None
    try:
        webpush(
            subscription_info=subscription_info,
            data=json.dumps({"title": title, "body": body, "link": link}),
            vapid_private_key=settings.push_vapid_private_key,
            vapid_claims={"sub": settings.push_vapid_subject},
            ttl=60,
            timeout=max(1, settings.notification_timeout_seconds),
        )
    except WebPushException as exc:
        if exc.response is not None:
            status_code = exc.response.status_code
        error_text = str(exc)

    if error_text is None:
        row.last_error = None
        db.commit()
        logger.info("web_push_sent", extra={"user_id": user_id})
        return {"ok": True, "status_code": None, "endpoint": endpoint}

    row.last_error = error_text[:2000]
    db.commit()
    logger.warning(
        "web_push_failed",
        extra={"user_id": user_id, "status_code": status_code, "error": error_text[:500]},
    )
    raise ApiError(
        status_code=502,
        code="WEB_PUSH_FAILED",
        message="Failed to send notification.",
    )
