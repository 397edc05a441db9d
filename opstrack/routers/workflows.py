from fastapi import APIRouter, Depends, Request, status
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from opstrack.db import get_db
from opstrack.errors import InvalidArgumentError
from opstrack.schemas import (
    ActorRef,
    MessageResponse,
    WorkflowRequestCreate,
    WorkflowRequestRead,
    WorkflowRequestUpdateData,
)
from opstrack.services.attachments import AttachmentStore, get_attachment_store, read_form_uploads
from opstrack.services.workflow_requests import (
    create_workflow_request,
    delete_workflow_request,
    list_workflow_requests,
    serialize_workflow_request,
    update_workflow_request,
)

router = APIRouter(prefix="/api/workflow-requests", tags=["workflow-requests"])


@router.get("", response_model=list[WorkflowRequestRead])
def list_workflow_requests_endpoint(db: Session = Depends(get_db)) -> list[WorkflowRequestRead]:
    return [serialize_workflow_request(row) for row in list_workflow_requests(db)]


@router.post("", response_model=WorkflowRequestRead, status_code=status.HTTP_201_CREATED)
def create_workflow_request_endpoint(
    payload: WorkflowRequestCreate,
    request: Request,
    db: Session = Depends(get_db),
) -> WorkflowRequestRead:
    request.state.actor_id = payload.employee_id
    return serialize_workflow_request(create_workflow_request(db, payload))


@router.put("/{request_id}", response_model=WorkflowRequestRead)
async def update_workflow_request_endpoint(
    request_id: str,
    request: Request,
    db: Session = Depends(get_db),
    store: AttachmentStore = Depends(get_attachment_store),
) -> WorkflowRequestRead:
    form = await request.form()
    raw = form.get("requestData")
    if not isinstance(raw, str) or not raw.strip():
        raise InvalidArgumentError(code="REQUEST_DATA_REQUIRED", message="requestData is required.")
    try:
        payload = WorkflowRequestUpdateData.model_validate_json(raw)
    except ValidationError as exc:
        raise InvalidArgumentError(code="INVALID_REQUEST_DATA", message=str(exc.errors())[:500]) from exc

    request.state.actor_id = payload.employee_id
    uploads = await read_form_uploads(form)
    files = [item for group in uploads.values() for item in group]
    row = await run_in_threadpool(update_workflow_request, db, request_id, payload, files=files, store=store)
    return serialize_workflow_request(row)


@router.delete("/{request_id}", response_model=MessageResponse)
def delete_workflow_request_endpoint(
    request_id: str,
    request: Request,
    payload: ActorRef | None = None,
    db: Session = Depends(get_db),
) -> MessageResponse:
    employee_id = payload.employee_id if payload is not None else None
    request.state.actor_id = employee_id
    delete_workflow_request(db, request_id, employee_id=employee_id)
    return MessageResponse(message="Workflow request deleted.")
