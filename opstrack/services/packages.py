from __future__ import annotations

import enum
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from opstrack.audit import record_action
from opstrack.errors import InvalidArgumentError, NotFoundError
from opstrack.models import (
    PackageAttachment,
    PackageAttachmentType,
    PackageLog,
    PackagePriority,
    PackageRequest,
    PackageStatus,
    User,
)
from opstrack.schemas import (
    PackageAttachmentRead,
    PackageAttachmentsRead,
    PackageLogRead,
    PackageRequestCreate,
    PackageRequestDetailRead,
    PackageRequestRead,
    PackageRequestUpdate,
)
from opstrack.security import resolve_user_by_username
from opstrack.services.attachments import AttachmentStore, FilePayload, get_attachment_store, upload_files

logger = logging.getLogger("opstrack.packages")

PACKAGE_UPLOAD_NAMESPACE = "packages"
PAID_ON_CREATE_PROGRESS = 10


class PackageAction(str, enum.Enum):
    CONFIRM_PAYMENT = "confirm-payment"
    START = "start"
    MARK_READY = "mark-ready"
    CONFIRM_DELIVERY = "confirm-delivery"


@dataclass(frozen=True, slots=True)
class PackageTransition:
    status: PackageStatus
    progress: int
    attachment_type: PackageAttachmentType | None
    audit_action: str


# Transitions are unguarded: each action applies from any current status.
PACKAGE_TRANSITIONS: dict[PackageAction, PackageTransition] = {
    PackageAction.CONFIRM_PAYMENT: PackageTransition(
        status=PackageStatus.PAYMENT_CONFIRMED,
        progress=20,
        attachment_type=PackageAttachmentType.PAYMENT_PROOF,
        audit_action="payment_confirmed",
    ),
    PackageAction.START: PackageTransition(
        status=PackageStatus.PROCESSING,
        progress=50,
        attachment_type=None,
        audit_action="processing_started",
    ),
    PackageAction.MARK_READY: PackageTransition(
        status=PackageStatus.READY_FOR_DELIVERY,
        progress=75,
        attachment_type=PackageAttachmentType.SHIPPING_DOC,
        audit_action="marked_ready",
    ),
    PackageAction.CONFIRM_DELIVERY: PackageTransition(
        status=PackageStatus.DELIVERED,
        progress=100,
        attachment_type=None,
        audit_action="delivery_confirmed",
    ),
}

STATUS_PROGRESS: dict[str, int] = {
    PackageStatus.NEW.value: 0,
    **{item.status.value: item.progress for item in PACKAGE_TRANSITIONS.values()},
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _generate_package_id(db: Session) -> str:
    candidate = f"PKG-{int(time.time() * 1000) % 1_000_000:06d}"
    while db.get(PackageRequest, candidate) is not None:
        candidate = f"PKG-{secrets.randbelow(1_000_000):06d}"
    return candidate


def _load_package(db: Session, package_id: str) -> PackageRequest:
    package = db.get(PackageRequest, package_id)
    if package is None:
        raise NotFoundError(code="PACKAGE_NOT_FOUND", message="Package request not found.")
    return package


def serialize_package(package: PackageRequest) -> PackageRequestRead:
    user = package.user
    branch = user.branch if user is not None else None
    username = user.username if user is not None else None
    return PackageRequestRead(
        id=package.id,
        title=package.title or "N/A",
        description=package.description or "",
        customer_name=package.customer_name or "N/A",
        customer_phone=package.customer_phone or "N/A",
        priority=package.priority or PackagePriority.MEDIUM.value,
        status=package.status or PackageStatus.NEW.value,
        progress_percent=int(package.progress_percent or 0),
        creation_date=package.created_at or _utcnow(),
        last_modified=package.last_modified or _utcnow(),
        employee_id=username or "N/A",
        employee_name=(user.full_name if user is not None else None) or username or "N/A",
        branch=branch.name if branch is not None else "N/A",
        customer_location=package.customer_location or None,
        meta=dict(package.meta or {}),
    )


def list_package_requests(
    db: Session,
    *,
    requester_id: str | None = None,
    requester_role: str | None = None,
) -> list[PackageRequest]:
    stmt = (
        select(PackageRequest)
        .options(selectinload(PackageRequest.user).selectinload(User.branch))
        .order_by(PackageRequest.created_at.desc())
    )
    role = (requester_role or "").strip().lower()
    if role == "employee" and (requester_id or "").strip():
        try:
            stmt = stmt.where(PackageRequest.user_id == int(requester_id))
        except ValueError as exc:
            raise InvalidArgumentError(code="INVALID_REQUESTER", message="Requester id must be numeric.") from exc
    return list(db.scalars(stmt).all())


def create_package_request(db: Session, payload: PackageRequestCreate) -> PackageRequest:
    user = resolve_user_by_username(db, payload.employee_id)

    meta: dict[str, Any] = dict(payload.meta or {})
    for key, value in (
        ("packageType", payload.package_type),
        ("deliveryMethod", payload.delivery_method),
        ("modifications", payload.modifications),
        ("isPaid", payload.is_paid),
        ("customerLocation", payload.customer_location),
    ):
        if value is not None:
            meta[key] = value

    now_utc = _utcnow()
    package = PackageRequest(
        id=_generate_package_id(db),
        user_id=user.id,
        title=payload.title or f"{payload.package_type or 'Package'} - {payload.customer_name or ''}".strip(),
        description=payload.description or payload.modifications or "",
        customer_name=payload.customer_name or "",
        customer_phone=payload.customer_phone or "",
        priority=(payload.priority or PackagePriority.MEDIUM).value,
        status=PackageStatus.PAYMENT_CONFIRMED.value if payload.is_paid else PackageStatus.NEW.value,
        progress_percent=PAID_ON_CREATE_PROGRESS if payload.is_paid else 0,
        customer_location=payload.customer_location or None,
        meta=meta,
        created_at=now_utc,
        last_modified=now_utc,
    )
    package.user = user
    db.add(package)
    db.commit()
    logger.info(
        "package_request_created",
        extra={"package_id": package.id, "user_id": user.id, "status": package.status},
    )
    return package


def get_package_detail(db: Session, package_id: str) -> PackageRequestDetailRead:
    package = _load_package(db, package_id)
    attachments = list(
        db.scalars(
            select(PackageAttachment)
            .where(PackageAttachment.package_id == package.id)
            .order_by(PackageAttachment.upload_date.desc(), PackageAttachment.id.desc())
        ).all()
    )
    logs = list(
        db.scalars(
            select(PackageLog)
            .where(PackageLog.package_id == package.id)
            .order_by(PackageLog.date.desc(), PackageLog.id.desc())
        ).all()
    )

    items = [PackageAttachmentRead(url=row.url, file_name=row.file_name, type=row.type) for row in attachments]
    base = serialize_package(package)
    return PackageRequestDetailRead(
        **base.model_dump(),
        attachments=PackageAttachmentsRead(
            payment_proofs=[item for item in items if item.type == PackageAttachmentType.PAYMENT_PROOF.value],
            shipping_docs=[item for item in items if item.type == PackageAttachmentType.SHIPPING_DOC.value],
            all=items,
        ),
        logs=[
            PackageLogRead(
                id=str(row.id),
                action=row.action,
                comment=row.comment or "",
                actor_id=str(row.actor_id or ""),
                date=row.date,
            )
            for row in logs
        ],
    )


def apply_package_action(
    db: Session,
    *,
    package_id: str,
    action: PackageAction | str,
    employee_id: str | None,
    comment: str | None = None,
    files: Iterable[FilePayload] = (),
    store: AttachmentStore | None = None,
    request_id: str | None = None,
) -> PackageRequest:
    """Move a package to the status of ``action`` and record it.

    Files are uploaded before anything is written. If any upload fails the
    package, its attachments and its log stay untouched.
    """
    transition = PACKAGE_TRANSITIONS[PackageAction(action)]
    actor = resolve_user_by_username(db, employee_id)
    actor_id = actor.id
    package = _load_package(db, package_id)

    payloads = list(files) if transition.attachment_type is not None else []
    stored = []
    if payloads:
        # End the read transaction so no pooled connection is held during uploads.
        db.commit()
        stored = upload_files(
            store or get_attachment_store(),
            payloads,
            namespace=PACKAGE_UPLOAD_NAMESPACE,
            uploaded_by=actor_id,
        )

    now_utc = _utcnow()
    try:
        for item in stored:
            db.add(
                PackageAttachment(
                    package_id=package.id,
                    type=transition.attachment_type.value,
                    url=item.url,
                    storage_id=item.id or None,
                    file_name=item.file_name,
                    uploaded_by=actor_id,
                    upload_date=now_utc,
                )
            )
        package.status = transition.status.value
        package.progress_percent = transition.progress
        package.last_modified = now_utc
        record_action(
            db,
            parent=package,
            actor_id=actor_id,
            action=transition.audit_action,
            comment=comment,
            request_id=request_id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "package_transition_applied",
        extra={
            "request_id": request_id,
            "package_id": package.id,
            "action": PackageAction(action).value,
            "status": package.status,
            "attachments": len(stored),
        },
    )
    return package


def update_package_request(
    db: Session,
    package_id: str,
    payload: PackageRequestUpdate,
    *,
    request_id: str | None = None,
) -> PackageRequest:
    actor = resolve_user_by_username(db, payload.employee_id)
    changes = payload.model_dump(exclude_unset=True, exclude={"employee_id"})
    if not changes:
        raise InvalidArgumentError(code="NO_FIELDS", message="No fields to update.")

    package = _load_package(db, package_id)
    for field in ("title", "description", "customer_name", "customer_phone"):
        if field in changes:
            setattr(package, field, changes[field])
    if changes.get("priority") is not None:
        package.priority = PackagePriority(changes["priority"]).value
    if changes.get("status") is not None:
        status = PackageStatus(changes["status"]).value
        package.status = status
        package.progress_percent = STATUS_PROGRESS[status]
    package.last_modified = _utcnow()

    record_action(
        db,
        parent=package,
        actor_id=actor.id,
        action="request_updated",
        comment=", ".join(sorted(changes)),
        request_id=request_id,
    )
    db.commit()
    return package


def delete_package_request(db: Session, package_id: str) -> None:
    package = _load_package(db, package_id)
    db.delete(package)
    db.commit()
    logger.info("package_request_deleted", extra={"package_id": package_id})
