from __future__ import annotations

import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from opstrack.errors import InvalidArgumentError, NotFoundError
from opstrack.models import WorkflowRequest
from opstrack.schemas import WorkflowRequestCreate, WorkflowRequestRead, WorkflowRequestUpdateData
from opstrack.security import require_import_export_permission
from opstrack.services.attachments import AttachmentStore, FilePayload, get_attachment_store, upload_files

logger = logging.getLogger("opstrack.workflow_requests")

WORKFLOW_UPLOAD_NAMESPACE = "workflows"
DOCUMENT_NAME_SEPARATOR = "___"
DEFAULT_TYPE = "استيراد"
DEFAULT_PRIORITY = "منخفضة"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _generate_request_id(db: Session) -> str:
    candidate = f"REQ-{int(time.time() * 1000) % 10_000:04d}"
    while db.get(WorkflowRequest, candidate) is not None:
        candidate = f"REQ-{secrets.randbelow(1_000_000):06d}"
    return candidate


def serialize_workflow_request(row: WorkflowRequest) -> WorkflowRequestRead:
    return WorkflowRequestRead(
        id=row.id,
        title=row.title or "N/A",
        description=row.description or "",
        type=row.type or DEFAULT_TYPE,
        priority=row.priority or DEFAULT_PRIORITY,
        current_stage_id=row.current_stage_id or 1,
        creation_date=row.creation_date or _utcnow(),
        last_modified=row.last_modified or _utcnow(),
        stage_history=list(row.stage_history or []),
        employee_id=row.user.username if row.user is not None else None,
        container_count_20ft=row.container_count_20ft,
        container_count_40ft=row.container_count_40ft,
        expected_departure_date=row.expected_departure_date,
        departure_port=row.departure_port,
    )


def list_workflow_requests(db: Session) -> list[WorkflowRequest]:
    stmt = (
        select(WorkflowRequest)
        .options(selectinload(WorkflowRequest.user))
        .order_by(WorkflowRequest.creation_date.desc())
    )
    return list(db.scalars(stmt).all())


def _load_request(db: Session, request_id: str) -> WorkflowRequest:
    row = db.get(WorkflowRequest, request_id)
    if row is None:
        raise NotFoundError(code="WORKFLOW_REQUEST_NOT_FOUND", message="Workflow request not found.")
    return row


def create_workflow_request(db: Session, payload: WorkflowRequestCreate) -> WorkflowRequest:
    user = require_import_export_permission(db, payload.employee_id)
    now_utc = _utcnow()
    row = WorkflowRequest(
        id=_generate_request_id(db),
        user_id=user.id,
        title=payload.title,
        description=payload.description,
        type=payload.type,
        priority=payload.priority,
        current_stage_id=1,
        stage_history=list(payload.stage_history or []),
        creation_date=now_utc,
        last_modified=now_utc,
    )
    row.user = user
    db.add(row)
    db.commit()
    logger.info("workflow_request_created", extra={"workflow_request_id": row.id, "user_id": user.id})
    return row


def _split_document_name(file_name: str) -> tuple[str, str, str] | None:
    parts = file_name.split(DOCUMENT_NAME_SEPARATOR)
    if len(parts) != 3:
        return None
    return parts[0], parts[1], parts[2]


def _attach_documents(
    store: AttachmentStore,
    stage_history: list[dict[str, Any]],
    files: list[FilePayload],
    employee_id: str,
) -> list[dict[str, Any]]:
    """Upload stage documents and append them to the latest history entry.

    File names carry ``<docId>___<docType>___<originalName>``; others are skipped.
    """
    named: list[tuple[str, str, FilePayload]] = []
    for payload in files:
        parts = _split_document_name(payload.file_name)
        if parts is None:
            logger.warning("workflow_document_name_invalid", extra={"file_name": payload.file_name})
            continue
        doc_id, doc_type, original_name = parts
        named.append(
            (doc_id, doc_type, FilePayload(data=payload.data, file_name=original_name, content_type=payload.content_type))
        )
    if not named or not stage_history:
        return stage_history

    stored = upload_files(
        store,
        [item[2] for item in named],
        namespace=WORKFLOW_UPLOAD_NAMESPACE,
        uploaded_by=employee_id,
    )
    upload_date = _utcnow().isoformat().replace("+00:00", "Z")
    documents = [
        {"id": doc_id, "type": doc_type, "uploadDate": upload_date, "url": item.url, "fileName": item.file_name}
        for (doc_id, doc_type, _), item in zip(named, stored)
    ]
    history = [dict(entry) for entry in stage_history]
    last = history[-1]
    last["documents"] = [*(last.get("documents") or []), *documents]
    return history


def update_workflow_request(
    db: Session,
    request_id: str,
    payload: WorkflowRequestUpdateData,
    *,
    files: Iterable[FilePayload] = (),
    store: AttachmentStore | None = None,
) -> WorkflowRequest:
    employee_id = (payload.employee_id or "").strip()
    if not employee_id:
        raise InvalidArgumentError(code="EMPLOYEE_ID_REQUIRED", message="Employee ID is missing.")
    require_import_export_permission(db, employee_id)
    row = _load_request(db, request_id)

    stage_history = list(payload.stage_history or [])
    payloads = list(files)
    if payloads:
        db.commit()
        stage_history = _attach_documents(store or get_attachment_store(), stage_history, payloads, employee_id)

    row.current_stage_id = payload.current_stage_id
    row.stage_history = stage_history
    row.last_modified = _utcnow()
    fields_set = payload.model_fields_set
    if "container_count_20ft" in fields_set:
        row.container_count_20ft = payload.container_count_20ft
    if "container_count_40ft" in fields_set:
        row.container_count_40ft = payload.container_count_40ft
    if "expected_departure_date" in fields_set:
        row.expected_departure_date = payload.expected_departure_date
    if "departure_port" in fields_set:
        row.departure_port = payload.departure_port or None
    db.commit()
    logger.info(
        "workflow_request_updated",
        extra={"workflow_request_id": row.id, "current_stage_id": row.current_stage_id},
    )
    return row


def delete_workflow_request(db: Session, request_id: str, *, employee_id: str | None) -> None:
    require_import_export_permission(db, employee_id)
    row = _load_request(db, request_id)
    db.delete(row)
    db.commit()
    logger.info("workflow_request_deleted", extra={"workflow_request_id": request_id})
