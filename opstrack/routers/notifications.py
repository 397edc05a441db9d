from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from opstrack.db import get_db
from opstrack.schemas import (
    FcmTokenRequest,
    MessageResponse,
    NotificationRead,
    WebPushSendRequest,
    WebPushSubscribeRequest,
)
from opstrack.services.notifications import list_notifications, mark_all_read, serialize_notification
from opstrack.services.push_notifications import PushNotifier, get_push_notifier
from opstrack.services.web_push import (
    get_web_push_public_config,
    send_web_push_to_user,
    upsert_web_push_subscription,
)

router = APIRouter(prefix="/api", tags=["notifications"])


@router.get("/notifications/{user_id}", response_model=list[NotificationRead])
def list_notifications_endpoint(user_id: str, db: Session = Depends(get_db)) -> list[NotificationRead]:
    return [serialize_notification(row) for row in list_notifications(db, user_id)]


@router.post("/notifications/read/{user_id}", response_model=MessageResponse)
def mark_notifications_read_endpoint(user_id: str, db: Session = Depends(get_db)) -> MessageResponse:
    updated = mark_all_read(db, user_id)
    return MessageResponse(message=f"{updated} notifications marked as read.")


@router.post("/fcm-token", response_model=MessageResponse)
def register_fcm_token_endpoint(
    payload: FcmTokenRequest,
    db: Session = Depends(get_db),
    notifier: PushNotifier = Depends(get_push_notifier),
) -> MessageResponse:
    notifier.register_token(db, user_id=payload.user_id, token=payload.token)
    return MessageResponse(message="Token saved.")


@router.get("/webpush/public-config")
def web_push_public_config_endpoint() -> dict[str, Any]:
    return get_web_push_public_config()


@router.post("/webpush/subscribe", response_model=MessageResponse)
def web_push_subscribe_endpoint(payload: WebPushSubscribeRequest, db: Session = Depends(get_db)) -> MessageResponse:
    upsert_web_push_subscription(db, user_id=payload.user_id, subscription=payload.subscription)
    return MessageResponse(message="Subscription saved.")


@router.post("/webpush/send")
def web_push_send_endpoint(payload: WebPushSendRequest, db: Session = Depends(get_db)) -> dict[str, Any]:
    return send_web_push_to_user(
        db,
        user_id=payload.user_id,
        title=payload.title,
        body=payload.body,
        link=payload.link,
    )
