from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from opstrack.errors import InvalidArgumentError
from opstrack.models import Notification
from opstrack.schemas import NotificationRead
from opstrack.services.push_notifications import PushNotifier
from opstrack.settings import get_settings

logger = logging.getLogger("opstrack.notifications")

NOTIFICATION_LIST_LIMIT = 50


def _parse_user_id(value: object) -> int | None:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def serialize_notification(row: Notification) -> NotificationRead:
    return NotificationRead(
        id=str(row.id),
        message=row.message,
        link=row.link,
        is_read=bool(row.is_read),
        created_at=row.created_at,
    )


def list_notifications(db: Session, user_id: object, *, limit: int = NOTIFICATION_LIST_LIMIT) -> list[Notification]:
    parsed = _parse_user_id(user_id)
    if parsed is None:
        raise InvalidArgumentError(code="USER_ID_REQUIRED", message="A valid user id is required.")
    stmt = (
        select(Notification)
        .where(Notification.user_id == parsed)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
    )
    return list(db.scalars(stmt).all())


def mark_all_read(db: Session, user_id: object) -> int:
    parsed = _parse_user_id(user_id)
    if parsed is None:
        raise InvalidArgumentError(code="USER_ID_REQUIRED", message="A valid user id is required.")
    result = db.execute(
        update(Notification)
        .where(Notification.user_id == parsed, Notification.is_read.is_(False))
        .values(is_read=True)
    )
    db.commit()
    return int(result.rowcount or 0)


def create_notification(db: Session, *, user_id: object, message: str, link: str | None) -> Notification | None:
    """Persist one in-app notification in its own commit.

    A failure is logged and rolled back; it never affects other recipients.
    """
    parsed = _parse_user_id(user_id)
    if parsed is None:
        logger.warning("notification_skipped_invalid_user", extra={"user_id": str(user_id)})
        return None

    row = Notification(user_id=parsed, message=message, link=link, is_read=False)
    try:
        db.add(row)
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.warning(
            "notification_insert_failed",
            extra={"user_id": parsed, "error": str(exc)[:500]},
        )
        return None
    return row


def fan_out(
    db: Session,
    *,
    recipients: list[str],
    title: str,
    message: str,
    link: str | None,
    notifier: PushNotifier | None,
) -> dict[str, Any]:
    summary: dict[str, Any] = {
        "recipients": len(recipients),
        "persisted": 0,
        "pushed": 0,
        "push_failed": 0,
    }
    targets: list[int] = []
    for recipient in recipients:
        if create_notification(db, user_id=recipient, message=message, link=link) is not None:
            summary["persisted"] += 1
        parsed = _parse_user_id(recipient)
        if parsed is not None:
            targets.append(parsed)

    if not targets:
        return summary
    if notifier is None or not notifier.available:
        logger.info("push_fanout_skipped", extra={"recipients": len(targets)})
        return summary

    settings = get_settings()
    data = {"link": link or ""}
    executor = ThreadPoolExecutor(
        max_workers=max(1, min(settings.notification_max_workers, len(targets))),
        thread_name_prefix="push",
    )
    try:
        futures = {
            executor.submit(notifier.send, user_id, title, message, data): user_id
            for user_id in targets
        }
        done, not_done = wait(futures, timeout=max(1, settings.notification_timeout_seconds))
        for future in done:
            exc = future.exception()
            if exc is None:
                summary["pushed"] += 1
                continue
            summary["push_failed"] += 1
            logger.warning(
                "push_fanout_recipient_failed",
                extra={"user_id": futures[future], "error": str(exc)[:500]},
            )
        if not_done:
            summary["push_failed"] += len(not_done)
            logger.warning(
                "push_fanout_timeout",
                extra={"pending_user_ids": sorted(futures[item] for item in not_done)},
            )
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    logger.info("notification_fanout_complete", extra=summary)
    return summary
