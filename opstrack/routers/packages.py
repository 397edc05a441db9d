from fastapi import APIRouter, Depends, File, Form, Header, Request, UploadFile, status
from sqlalchemy.orm import Session

from opstrack.db import get_db
from opstrack.errors import get_request_id
from opstrack.schemas import (
    MessageResponse,
    PackageActionRequest,
    PackageRequestCreate,
    PackageRequestDetailRead,
    PackageRequestRead,
    PackageRequestUpdate,
)
from opstrack.services.attachments import AttachmentStore, get_attachment_store, read_upload_payloads
from opstrack.services.packages import (
    PackageAction,
    apply_package_action,
    create_package_request,
    delete_package_request,
    get_package_detail,
    list_package_requests,
    serialize_package,
    update_package_request,
)

router = APIRouter(prefix="/api/package-requests", tags=["packages"])


@router.get("", response_model=list[PackageRequestRead])
def list_packages(
    db: Session = Depends(get_db),
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> list[PackageRequestRead]:
    rows = list_package_requests(db, requester_id=x_user_id, requester_role=x_user_role)
    return [serialize_package(row) for row in rows]


@router.post("", response_model=PackageRequestRead, status_code=status.HTTP_201_CREATED)
def create_package(
    payload: PackageRequestCreate,
    request: Request,
    db: Session = Depends(get_db),
) -> PackageRequestRead:
    request.state.actor_id = payload.employee_id
    return serialize_package(create_package_request(db, payload))


@router.get("/{package_id}", response_model=PackageRequestDetailRead)
def get_package(package_id: str, db: Session = Depends(get_db)) -> PackageRequestDetailRead:
    return get_package_detail(db, package_id)


@router.put("/{package_id}", response_model=PackageRequestRead)
def update_package(
    package_id: str,
    payload: PackageRequestUpdate,
    request: Request,
    db: Session = Depends(get_db),
) -> PackageRequestRead:
    request.state.actor_id = payload.employee_id
    package = update_package_request(db, package_id, payload, request_id=get_request_id(request))
    return serialize_package(package)


@router.delete("/{package_id}", response_model=MessageResponse)
def delete_package(package_id: str, db: Session = Depends(get_db)) -> MessageResponse:
    delete_package_request(db, package_id)
    return MessageResponse(message="Package request deleted.")


@router.post("/{package_id}/confirm-payment", response_model=PackageRequestRead)
def confirm_payment(
    package_id: str,
    request: Request,
    employee_id: str | None = Form(default=None, alias="employeeId"),
    comment: str | None = Form(default=None),
    payment_proof: list[UploadFile] | None = File(default=None),
    payment_proof_list: list[UploadFile] | None = File(default=None, alias="payment_proof[]"),
    db: Session = Depends(get_db),
    store: AttachmentStore = Depends(get_attachment_store),
) -> PackageRequestRead:
    request.state.actor_id = employee_id
    package = apply_package_action(
        db,
        package_id=package_id,
        action=PackageAction.CONFIRM_PAYMENT,
        employee_id=employee_id,
        comment=comment,
        files=read_upload_payloads(payment_proof, payment_proof_list),
        store=store,
        request_id=get_request_id(request),
    )
    return serialize_package(package)


@router.post("/{package_id}/start", response_model=PackageRequestRead)
def start_processing(
    package_id: str,
    payload: PackageActionRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> PackageRequestRead:
    request.state.actor_id = payload.employee_id
    package = apply_package_action(
        db,
        package_id=package_id,
        action=PackageAction.START,
        employee_id=payload.employee_id,
        comment=payload.comment,
        request_id=get_request_id(request),
    )
    return serialize_package(package)


@router.post("/{package_id}/mark-ready", response_model=PackageRequestRead)
def mark_ready(
    package_id: str,
    request: Request,
    employee_id: str | None = Form(default=None, alias="employeeId"),
    comment: str | None = Form(default=None),
    shipping_docs: list[UploadFile] | None = File(default=None),
    shipping_docs_list: list[UploadFile] | None = File(default=None, alias="shipping_docs[]"),
    db: Session = Depends(get_db),
    store: AttachmentStore = Depends(get_attachment_store),
) -> PackageRequestRead:
    request.state.actor_id = employee_id
    package = apply_package_action(
        db,
        package_id=package_id,
        action=PackageAction.MARK_READY,
        employee_id=employee_id,
        comment=comment,
        files=read_upload_payloads(shipping_docs, shipping_docs_list),
        store=store,
        request_id=get_request_id(request),
    )
    return serialize_package(package)


@router.post("/{package_id}/confirm-delivery", response_model=PackageRequestRead)
def confirm_delivery(
    package_id: str,
    payload: PackageActionRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> PackageRequestRead:
    request.state.actor_id = payload.employee_id
    package = apply_package_action(
        db,
        package_id=package_id,
        action=PackageAction.CONFIRM_DELIVERY,
        employee_id=payload.employee_id,
        comment=payload.comment,
        request_id=get_request_id(request),
    )
    return serialize_package(package)
