from __future__ import annotations

import copy
import logging
import re
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Mapping

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from opstrack.errors import InvalidArgumentError, NotFoundError
from opstrack.models import Branch, Report, ReportType, User
from opstrack.schemas import (
    AdminNote,
    AttachedFile,
    ReportCreateData,
    ReportDetails,
    ReportRead,
    ReportUpdateData,
    dump_report_details,
    parse_report_details,
)
from opstrack.security import resolve_user_by_username
from opstrack.services.attachments import AttachmentStore, FilePayload, StoredFile, get_attachment_store, upload_files

logger = logging.getLogger("opstrack.reports")

UPLOAD_NAMESPACE_BY_TYPE = {
    ReportType.MAINTENANCE.value: "maintenance",
    ReportType.SALES.value: "sales",
    ReportType.PROJECT.value: "projects",
}
EVALUATION_NAMESPACE = "evaluations"

_INDEXED_FIELD = re.compile(r"^(sales_customer|project_update)_(\d+)_files$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_report_id(report_id: str | int) -> int:
    try:
        return int(str(report_id).strip())
    except ValueError as exc:
        raise NotFoundError(code="REPORT_NOT_FOUND", message="Report not found.") from exc


def _parse_team_id(value: str | None) -> int | None:
    normalized = (value or "").strip()
    if not normalized:
        return None
    try:
        return int(normalized)
    except ValueError as exc:
        raise InvalidArgumentError(code="INVALID_TEAM_ID", message="assignedTeamId must be numeric.") from exc


def load_report(db: Session, report_id: str | int, *, for_update: bool = False) -> Report:
    stmt = select(Report).where(Report.id == _parse_report_id(report_id))
    if for_update:
        # Re-read the row under lock so the JSON columns reflect the latest commit.
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    report = db.scalar(stmt)
    if report is None:
        raise NotFoundError(code="REPORT_NOT_FOUND", message="Report not found.")
    return report


def parse_details(report_type: str, raw: Mapping[str, Any] | None) -> ReportDetails:
    try:
        return parse_report_details(report_type, dict(raw or {}))
    except ValidationError as exc:
        raise InvalidArgumentError(code="INVALID_DETAILS", message="Report details are malformed.") from exc
    except ValueError as exc:
        raise InvalidArgumentError(code="INVALID_REPORT_TYPE", message=str(exc)) from exc


def _is_team_lead(role: str | None) -> bool:
    return (role or "").replace("_", "").strip().lower() == "teamlead"


def _filter_project_files_for(details: dict[str, Any], requester_id: str) -> dict[str, Any]:
    filtered = copy.deepcopy(details)
    for update in filtered.get("updates") or []:
        if isinstance(update, dict) and isinstance(update.get("files"), list):
            update["files"] = [
                item
                for item in update["files"]
                if isinstance(item, dict) and str(item.get("uploadedBy")) == requester_id
            ]
    return filtered


def serialize_report(
    report: Report,
    *,
    requester_id: str | None = None,
    requester_role: str | None = None,
) -> ReportRead:
    """Shape a report for API clients.

    Team leads only see stage files they uploaded themselves on project
    reports; the stored content is never modified.
    """
    details = dict(report.content or {})
    if (
        requester_id
        and _is_team_lead(requester_role)
        and report.report_type == ReportType.PROJECT.value
        and details.get("updates")
    ):
        details = _filter_project_files_for(details, str(requester_id))

    user = report.user
    return ReportRead(
        id=str(report.id),
        employee_id=(user.username if user is not None else None) or "N/A",
        employee_name=(user.full_name if user is not None else None) or "N/A",
        branch=report.branch.name if report.branch is not None else "N/A",
        department=(user.department if user is not None else None) or "N/A",
        type=report.report_type,
        date=report.created_at or _utcnow(),
        status=report.status,
        details=details,
        evaluation=report.evaluation,
        modifications=list(report.modifications or []),
        assigned_team_id=str(report.assigned_team_id) if report.assigned_team_id else None,
        project_workflow_status=report.project_workflow_status or None,
        admin_notes=[AdminNote.model_validate(item) for item in report.admin_notes or []],
    )


def list_reports(db: Session) -> list[Report]:
    stmt = (
        select(Report)
        .options(selectinload(Report.user), selectinload(Report.branch))
        .order_by(Report.created_at.desc(), Report.id.desc())
    )
    return list(db.scalars(stmt).all())


def _group_indexed_uploads(uploads: Mapping[str, list[FilePayload]], prefix: str) -> dict[int, list[FilePayload]]:
    grouped: dict[int, list[FilePayload]] = defaultdict(list)
    for field_name, payloads in uploads.items():
        match = _INDEXED_FIELD.match(field_name)
        if match and match.group(1) == prefix:
            grouped[int(match.group(2))].extend(payloads)
    return grouped


def _upload_groups(
    store: AttachmentStore,
    groups: list[tuple[Any, list[FilePayload]]],
    *,
    namespace: str,
    uploaded_by: int,
) -> list[tuple[Any, list[StoredFile]]]:
    """Upload every group as one batch and split the results back per group key."""
    flat = [payload for _, payloads in groups for payload in payloads]
    stored = upload_files(store, flat, namespace=namespace, uploaded_by=uploaded_by)
    result: list[tuple[Any, list[StoredFile]]] = []
    offset = 0
    for key, payloads in groups:
        result.append((key, stored[offset : offset + len(payloads)]))
        offset += len(payloads)
    return result


def _attached(items: list[StoredFile]) -> list[AttachedFile]:
    return [item.as_attached_file() for item in items]


def _apply_create_uploads(
    store: AttachmentStore,
    details: ReportDetails,
    report_type: str,
    uploads: Mapping[str, list[FilePayload]],
    uploaded_by: int,
) -> None:
    namespace = UPLOAD_NAMESPACE_BY_TYPE[report_type]
    if report_type == ReportType.MAINTENANCE.value:
        groups = [
            (field, list(uploads.get(f"maintenance_{field}") or []))
            for field in ("beforeImages", "afterImages")
        ]
        groups = [item for item in groups if item[1]]
        for field, stored in _upload_groups(store, groups, namespace=namespace, uploaded_by=uploaded_by):
            if field == "beforeImages":
                details.before_images = _attached(stored)
            else:
                details.after_images = _attached(stored)
    elif report_type == ReportType.SALES.value:
        grouped = _group_indexed_uploads(uploads, "sales_customer")
        groups = [(index, grouped[index]) for index in sorted(grouped) if index < len(details.customers)]
        for index, stored in _upload_groups(store, groups, namespace=namespace, uploaded_by=uploaded_by):
            details.customers[index].files = _attached(stored)
    elif report_type == ReportType.PROJECT.value:
        grouped = _group_indexed_uploads(uploads, "project_update")
        updates = details.updates or []
        groups = [(index, grouped[index]) for index in sorted(grouped) if index < len(updates)]
        for index, stored in _upload_groups(store, groups, namespace=namespace, uploaded_by=uploaded_by):
            updates[index].files = [*updates[index].files, *_attached(stored)]


def create_report(
    db: Session,
    data: ReportCreateData,
    *,
    uploads: Mapping[str, list[FilePayload]] | None = None,
    store: AttachmentStore | None = None,
) -> Report:
    user = resolve_user_by_username(db, data.employee_id)
    branch = db.scalar(select(Branch).where(Branch.name == data.branch))
    if branch is None:
        raise NotFoundError(code="BRANCH_NOT_FOUND", message="Branch not found.")

    report_type = ReportType(data.type).value
    details = parse_details(report_type, data.details)
    user_id = user.id
    if uploads and any(uploads.values()):
        db.commit()
        _apply_create_uploads(store or get_attachment_store(), details, report_type, uploads, user_id)

    report = Report(
        user_id=user_id,
        branch_id=branch.id,
        report_type=report_type,
        content=dump_report_details(details),
        status=data.status,
        modifications=[],
        admin_notes=[],
        assigned_team_id=_parse_team_id(data.assigned_team_id),
        project_workflow_status=data.project_workflow_status or None,
        created_at=_utcnow(),
    )
    report.user = user
    report.branch = branch
    db.add(report)
    db.commit()
    logger.info(
        "report_created",
        extra={"report_id": report.id, "user_id": user_id, "report_type": report_type},
    )
    return report


def update_report(
    db: Session,
    report_id: str | int,
    data: ReportUpdateData,
    *,
    uploads: Mapping[str, list[FilePayload]] | None = None,
    store: AttachmentStore | None = None,
) -> Report:
    report = load_report(db, report_id)
    uploader = None
    if (data.employee_id or "").strip():
        uploader = db.scalar(select(User).where(User.username == data.employee_id.strip()))

    report_type = ReportType(data.type).value
    details = parse_details(report_type, data.details)
    evaluation = dict(data.evaluation) if data.evaluation is not None else None

    if uploader is not None and uploads and any(uploads.values()):
        uploader_id = uploader.id
        db.commit()
        attachment_store = store or get_attachment_store()
        if report_type == ReportType.SALES.value:
            grouped = _group_indexed_uploads(uploads, "sales_customer")
            groups = [(index, grouped[index]) for index in sorted(grouped) if index < len(details.customers)]
            for index, stored in _upload_groups(
                attachment_store, groups, namespace="sales", uploaded_by=uploader_id
            ):
                details.customers[index].files = [*details.customers[index].files, *_attached(stored)]
        if report_type == ReportType.PROJECT.value and details.updates:
            grouped = _group_indexed_uploads(uploads, "project_update")
            groups = [(index, grouped[index]) for index in sorted(grouped) if index < len(details.updates)]
            for index, stored in _upload_groups(
                attachment_store, groups, namespace="projects", uploaded_by=uploader_id
            ):
                details.updates[index].files = [*details.updates[index].files, *_attached(stored)]
        evaluation_files = list(uploads.get("evaluation_files") or [])
        if evaluation_files and evaluation is not None:
            stored = upload_files(
                attachment_store,
                evaluation_files,
                namespace=EVALUATION_NAMESPACE,
                uploaded_by=uploader_id,
            )
            evaluation["files"] = [
                *(evaluation.get("files") or []),
                *(item.as_attached_file().model_dump(mode="json", by_alias=True) for item in stored),
            ]

    report.report_type = report_type
    report.content = dump_report_details(details)
    report.status = data.status
    report.modifications = list(data.modifications or [])
    report.evaluation = evaluation
    report.assigned_team_id = _parse_team_id(data.assigned_team_id)
    report.project_workflow_status = data.project_workflow_status or None
    if "admin_notes" in data.model_fields_set:
        report.admin_notes = [
            note.model_dump(mode="json", by_alias=True) for note in data.admin_notes
        ]
    db.commit()
    logger.info("report_updated", extra={"report_id": report.id})
    return report


def delete_report(db: Session, report_id: str | int) -> None:
    report = load_report(db, report_id)
    db.delete(report)
    db.commit()
    logger.info("report_deleted", extra={"report_id": report.id})
