from __future__ import annotations

import hmac
import logging
import threading
from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone

from passlib.context import CryptContext
from passlib.exc import UnknownHashError
from sqlalchemy import select
from sqlalchemy.orm import Session

from opstrack.errors import ApiError, NotFoundError, PermissionDeniedError
from opstrack.models import User, UserRole
from opstrack.settings import get_settings

logger = logging.getLogger("opstrack.security")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

BCRYPT_PREFIXES: tuple[str, ...] = ("$2a$", "$2b$", "$2y$")

_LOCK = threading.Lock()
_FAILED_ATTEMPTS: dict[str, deque[datetime]] = defaultdict(deque)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _attempt_window() -> timedelta:
    return timedelta(minutes=max(1, get_settings().login_attempt_window_minutes))


def _cleanup_attempts(ip: str, now: datetime) -> None:
    queue = _FAILED_ATTEMPTS[ip]
    threshold = now - _attempt_window()
    while queue and queue[0] < threshold:
        queue.popleft()
    if not queue:
        _FAILED_ATTEMPTS.pop(ip, None)


def ensure_login_attempt_allowed(ip: str) -> None:
    now = _utcnow()
    with _LOCK:
        _cleanup_attempts(ip, now)
        queue = _FAILED_ATTEMPTS.get(ip, deque())
        if len(queue) >= max(1, get_settings().login_max_attempts):
            raise ApiError(
                status_code=429,
                code="TOO_MANY_ATTEMPTS",
                message="Too many failed login attempts. Please try again later.",
            )


def register_login_failure(ip: str) -> None:
    now = _utcnow()
    with _LOCK:
        _cleanup_attempts(ip, now)
        _FAILED_ATTEMPTS[ip].append(now)


def register_login_success(ip: str) -> None:
    with _LOCK:
        _FAILED_ATTEMPTS.pop(ip, None)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return pwd_context.verify(password, password_hash)
    except (ValueError, TypeError, UnknownHashError):
        return False


def is_recognized_hash(stored: str | None) -> bool:
    return bool(stored) and str(stored).startswith(BCRYPT_PREFIXES)


def check_user_password(db: Session, user: User, password: str) -> bool:
    """Verify ``password`` against the stored credential of ``user``.

    Accounts created before hashing was introduced still hold plaintext. Those
    are compared directly and, on a match, upgraded to a bcrypt hash. This
    migration path is temporary; a failed upgrade never blocks the login.
    """
    stored = user.password or ""
    if is_recognized_hash(stored):
        return verify_password(password, stored)

    if not stored or not hmac.compare_digest(password.encode("utf-8"), stored.encode("utf-8")):
        return False

    try:
        user.password = hash_password(password)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "legacy_password_rehash_failed",
            extra={"user_id": user.id, "username": user.username},
        )
    else:
        logger.info(
            "legacy_password_rehashed",
            extra={"user_id": user.id, "username": user.username},
        )
    return True


def resolve_user_by_username(db: Session, username: str | None) -> User:
    normalized = (username or "").strip()
    user = db.scalar(select(User).where(User.username == normalized)) if normalized else None
    if user is None:
        raise NotFoundError(code="USER_NOT_FOUND", message="User not found.")
    return user


def require_import_export_permission(db: Session, employee_id: str | None) -> User:
    if not (employee_id or "").strip():
        raise ApiError(status_code=401, code="UNAUTHORIZED", message="User ID is missing.")
    user = resolve_user_by_username(db, employee_id)
    if user.role == UserRole.ADMIN.value or user.has_import_export_permission:
        return user
    raise PermissionDeniedError(
        code="IMPORT_EXPORT_FORBIDDEN",
        message="You do not have permission for this operation.",
    )
