from typing import TypeVar

from fastapi import APIRouter, Depends, File, Form, Header, Request, UploadFile, status
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import FormData

from opstrack.db import get_db
from opstrack.errors import InvalidArgumentError, get_request_id
from opstrack.schemas import (
    MarkNotesReadRequest,
    MessageResponse,
    NoteCreateRequest,
    ReportCreateData,
    ReportRead,
    ReportUpdateData,
)
from opstrack.services.attachments import (
    AttachmentStore,
    get_attachment_store,
    read_form_uploads,
    read_upload_payloads,
)
from opstrack.services.discussion import add_note, add_reply, mark_read
from opstrack.services.project_stages import add_exception, confirm_stage
from opstrack.services.push_notifications import PushNotifier, get_push_notifier
from opstrack.services.reports import create_report, delete_report, list_reports, serialize_report, update_report

router = APIRouter(prefix="/api/reports", tags=["reports"])

ModelT = TypeVar("ModelT", bound=BaseModel)


def _parse_form_json(form: FormData, field_name: str, model: type[ModelT]) -> ModelT:
    raw = form.get(field_name)
    if not isinstance(raw, str) or not raw.strip():
        raise InvalidArgumentError(code="REPORT_DATA_REQUIRED", message=f"{field_name} is required.")
    try:
        return model.model_validate_json(raw)
    except ValidationError as exc:
        raise InvalidArgumentError(code="INVALID_REPORT_DATA", message=str(exc.errors())[:500]) from exc


@router.get("", response_model=list[ReportRead])
def list_all_reports(
    db: Session = Depends(get_db),
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> list[ReportRead]:
    return [
        serialize_report(report, requester_id=x_user_id, requester_role=x_user_role)
        for report in list_reports(db)
    ]


@router.post("", response_model=ReportRead, status_code=status.HTTP_201_CREATED)
async def create_report_endpoint(
    request: Request,
    db: Session = Depends(get_db),
    store: AttachmentStore = Depends(get_attachment_store),
) -> ReportRead:
    form = await request.form()
    data = _parse_form_json(form, "reportData", ReportCreateData)
    request.state.actor_id = data.employee_id
    uploads = await read_form_uploads(form)
    report = await run_in_threadpool(create_report, db, data, uploads=uploads, store=store)
    return serialize_report(report)


@router.put("/{report_id}", response_model=ReportRead)
async def update_report_endpoint(
    report_id: str,
    request: Request,
    db: Session = Depends(get_db),
    store: AttachmentStore = Depends(get_attachment_store),
) -> ReportRead:
    form = await request.form()
    data = _parse_form_json(form, "reportData", ReportUpdateData)
    request.state.actor_id = data.employee_id
    uploads = await read_form_uploads(form)
    report = await run_in_threadpool(update_report, db, report_id, data, uploads=uploads, store=store)
    return serialize_report(report)


@router.delete("/{report_id}", response_model=MessageResponse)
def delete_report_endpoint(report_id: str, db: Session = Depends(get_db)) -> MessageResponse:
    delete_report(db, report_id)
    return MessageResponse(message="Report deleted.")


@router.post("/{report_id}/confirm-stage", response_model=ReportRead)
def confirm_stage_endpoint(
    report_id: str,
    request: Request,
    stage_id: str | None = Form(default=None, alias="stageId"),
    employee_id: str | None = Form(default=None, alias="employeeId"),
    comment: str | None = Form(default=None),
    files: list[UploadFile] | None = File(default=None),
    files_list: list[UploadFile] | None = File(default=None, alias="files[]"),
    db: Session = Depends(get_db),
    store: AttachmentStore = Depends(get_attachment_store),
) -> ReportRead:
    request.state.actor_id = employee_id
    report = confirm_stage(
        db,
        report_id=report_id,
        stage_id=stage_id,
        employee_id=employee_id,
        comment=comment,
        files=read_upload_payloads(files, files_list),
        store=store,
        request_id=get_request_id(request),
    )
    return serialize_report(report)


@router.post("/{report_id}/add-exception", response_model=ReportRead)
def add_exception_endpoint(
    report_id: str,
    request: Request,
    employee_id: str | None = Form(default=None, alias="employeeId"),
    comment: str | None = Form(default=None),
    files: list[UploadFile] | None = File(default=None),
    files_list: list[UploadFile] | None = File(default=None, alias="files[]"),
    db: Session = Depends(get_db),
    store: AttachmentStore = Depends(get_attachment_store),
) -> ReportRead:
    request.state.actor_id = employee_id
    report = add_exception(
        db,
        report_id=report_id,
        employee_id=employee_id,
        comment=comment,
        files=read_upload_payloads(files, files_list),
        store=store,
        request_id=get_request_id(request),
    )
    return serialize_report(report)


@router.post("/{report_id}/notes", response_model=ReportRead, status_code=status.HTTP_201_CREATED)
def add_note_endpoint(
    report_id: str,
    payload: NoteCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
    notifier: PushNotifier = Depends(get_push_notifier),
) -> ReportRead:
    request.state.actor_id = str(payload.author_id)
    report = add_note(
        db,
        report_id=report_id,
        author_id=payload.author_id,
        author_name=payload.author_name,
        content=payload.content,
        notifier=notifier,
        request_id=get_request_id(request),
    )
    return serialize_report(report)


@router.post("/{report_id}/notes/read", response_model=ReportRead)
def mark_notes_read_endpoint(
    report_id: str,
    payload: MarkNotesReadRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> ReportRead:
    request.state.actor_id = str(payload.user_id) if payload.user_id is not None else None
    return serialize_report(mark_read(db, report_id=report_id, user_id=payload.user_id))


@router.post("/{report_id}/notes/{note_id}/reply", response_model=ReportRead, status_code=status.HTTP_201_CREATED)
def add_reply_endpoint(
    report_id: str,
    note_id: str,
    payload: NoteCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
    notifier: PushNotifier = Depends(get_push_notifier),
) -> ReportRead:
    request.state.actor_id = str(payload.author_id)
    report = add_reply(
        db,
        report_id=report_id,
        note_id=note_id,
        author_id=payload.author_id,
        author_name=payload.author_name,
        content=payload.content,
        notifier=notifier,
        request_id=get_request_id(request),
    )
    return serialize_report(report)
