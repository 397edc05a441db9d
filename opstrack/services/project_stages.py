from __future__ import annotations

import enum
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy.orm import Session

from opstrack.audit import record_action
from opstrack.errors import InvalidArgumentError
from opstrack.models import ProjectWorkflowStatus, Report, ReportType
from opstrack.schemas import AttachedFile, ProjectDetails, ProjectException, dump_report_details
from opstrack.security import resolve_user_by_username
from opstrack.services.attachments import AttachmentStore, FilePayload, StoredFile, get_attachment_store, upload_files
from opstrack.services.reports import load_report, parse_details

logger = logging.getLogger("opstrack.project_stages")

STAGE_UPLOAD_NAMESPACE = "projects"
EXCEPTION_UPLOAD_NAMESPACE = "projects/exceptions"

# Index of the signed handover document inside the deliveryHandover files.
SIGNED_HANDOVER_SLOT = 1


class ProjectStageAction(str, enum.Enum):
    CONCRETE_WORKS = "concreteWorks"
    TECHNICAL_COMPLETION = "technicalCompletion"
    DELIVERY_HANDOVER_SIGNED = "deliveryHandover_signed"
    WORKFLOW_DOCS = "workflowDocs"


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_stage(stage_id: str | None) -> ProjectStageAction:
    try:
        return ProjectStageAction(stage_id)
    except ValueError as exc:
        raise InvalidArgumentError(
            code="UNKNOWN_STAGE",
            message=f"Stage action '{stage_id}' is not recognized.",
        ) from exc


def _project_details(report: Report, *, require_updates: bool) -> ProjectDetails:
    if report.report_type != ReportType.PROJECT.value:
        raise InvalidArgumentError(code="NOT_A_PROJECT_REPORT", message="This action is only for Project reports.")
    details = parse_details(report.report_type, report.content)
    if require_updates and details.updates is None:
        raise InvalidArgumentError(code="NOT_A_PROJECT_REPORT", message="This action is only for Project reports.")
    return details


def _attached(items: list[StoredFile]) -> list[AttachedFile]:
    return [item.as_attached_file() for item in items]


def _apply_stage(
    details: ProjectDetails,
    report: Report,
    action: ProjectStageAction,
    comment: str | None,
    uploaded: list[AttachedFile],
) -> bool:
    """Mutate ``details`` (and the workflow status) for ``action``; return whether anything changed."""
    if action is ProjectStageAction.CONCRETE_WORKS:
        stage = details.find_stage("concreteWorks")
        if stage is None:
            raise InvalidArgumentError(code="STAGE_NOT_FOUND", message="Stage 'concreteWorks' is missing.")
        stage.completed = True
        stage.timestamp = _utc_iso()
        stage.comment = comment or stage.comment
        stage.files = [*stage.files, *uploaded]
        report.project_workflow_status = ProjectWorkflowStatus.CONCRETE_WORKS_DONE.value
        return True

    if action is ProjectStageAction.TECHNICAL_COMPLETION:
        stage = details.find_stage("installationComplete")
        if stage is not None:
            stage.completed = True
            stage.timestamp = _utc_iso()
            stage.comment = comment
            stage.files = list(uploaded)
        if details.model_extra is not None:
            details.model_extra.pop("completionProof", None)
        report.project_workflow_status = ProjectWorkflowStatus.TECHNICALLY_COMPLETED.value
        return True

    if action is ProjectStageAction.DELIVERY_HANDOVER_SIGNED:
        stage = details.find_stage("deliveryHandover")
        if stage is None or not uploaded:
            return False
        files = list(stage.files)
        while len(files) <= SIGNED_HANDOVER_SLOT:
            files.append(None)
        files[SIGNED_HANDOVER_SLOT] = uploaded[0]
        stage.files = files
        return True

    details.workflow_docs = [*details.workflow_docs, *uploaded]
    return True


def confirm_stage(
    db: Session,
    *,
    report_id: str | int,
    stage_id: str | None,
    employee_id: str | None,
    comment: str | None = None,
    files: Iterable[FilePayload] = (),
    store: AttachmentStore | None = None,
    request_id: str | None = None,
) -> Report:
    if not (stage_id or "").strip() or not (employee_id or "").strip():
        raise InvalidArgumentError(code="STAGE_FIELDS_REQUIRED", message="stageId and employeeId are required.")

    actor = resolve_user_by_username(db, employee_id)
    actor_id = actor.id
    report = load_report(db, report_id)
    current = _project_details(report, require_updates=True)
    action = _parse_stage(stage_id)
    if action is ProjectStageAction.CONCRETE_WORKS and current.find_stage("concreteWorks") is None:
        raise InvalidArgumentError(code="STAGE_NOT_FOUND", message="Stage 'concreteWorks' is missing.")

    payloads = list(files)
    stored: list[StoredFile] = []
    if payloads:
        db.commit()
        stored = upload_files(
            store or get_attachment_store(),
            payloads,
            namespace=STAGE_UPLOAD_NAMESPACE,
            uploaded_by=actor_id,
        )

    try:
        report = load_report(db, report_id, for_update=True)
        details = _project_details(report, require_updates=True)
        changed = _apply_stage(details, report, action, comment, _attached(stored))
        if changed:
            report.content = dump_report_details(details)
        record_action(
            db,
            parent=report,
            actor_id=actor_id,
            action=f"stage_{action.value}",
            comment=comment,
            request_id=request_id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "project_stage_confirmed",
        extra={
            "request_id": request_id,
            "report_id": report.id,
            "stage_id": action.value,
            "changed": changed,
            "files": len(stored),
            "workflow_status": report.project_workflow_status,
        },
    )
    return report


def add_exception(
    db: Session,
    *,
    report_id: str | int,
    employee_id: str | None,
    comment: str | None = None,
    files: Iterable[FilePayload] = (),
    store: AttachmentStore | None = None,
    request_id: str | None = None,
) -> Report:
    actor = resolve_user_by_username(db, employee_id)
    actor_id = actor.id
    report = load_report(db, report_id)
    _project_details(report, require_updates=False)

    payloads = list(files)
    stored: list[StoredFile] = []
    if payloads:
        db.commit()
        stored = upload_files(
            store or get_attachment_store(),
            payloads,
            namespace=EXCEPTION_UPLOAD_NAMESPACE,
            uploaded_by=actor_id,
        )

    try:
        report = load_report(db, report_id, for_update=True)
        details = _project_details(report, require_updates=False)
        exception = ProjectException(
            id=f"exc-{int(time.time() * 1000)}-{secrets.token_hex(3)}",
            comment=comment,
            files=_attached(stored),
            timestamp=_utc_iso(),
            uploaded_by=actor_id,
        )
        details.exceptions = [*details.exceptions, exception]
        report.content = dump_report_details(details)
        record_action(
            db,
            parent=report,
            actor_id=actor_id,
            action="exception_added",
            comment=comment,
            request_id=request_id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "project_exception_added",
        extra={"request_id": request_id, "report_id": report.id, "exception_id": exception.id},
    )
    return report
