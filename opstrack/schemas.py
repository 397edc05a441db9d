from datetime import date, datetime
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from opstrack.models import PackagePriority, PackageStatus, ReportType


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class PayloadModel(ApiModel):
    """Shape of JSON stored inside report columns; unknown keys are preserved."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


class MessageResponse(BaseModel):
    message: str


# Report payloads


class AttachedFile(PayloadModel):
    url: str | None = None
    file_name: str | None = None
    id: str | None = None
    uploaded_by: str | int | None = None


class StageUpdate(PayloadModel):
    id: str
    completed: bool = False
    timestamp: str | None = None
    comment: str | None = None
    files: list[AttachedFile | None] = Field(default_factory=list)


class ProjectException(PayloadModel):
    id: str
    comment: str | None = None
    files: list[AttachedFile] = Field(default_factory=list)
    timestamp: str
    uploaded_by: str | int | None = None


class MaintenanceDetails(PayloadModel):
    before_images: list[AttachedFile] = Field(default_factory=list)
    after_images: list[AttachedFile] = Field(default_factory=list)


class SalesCustomer(PayloadModel):
    files: list[AttachedFile] = Field(default_factory=list)


class SalesDetails(PayloadModel):
    customers: list[SalesCustomer] = Field(default_factory=list)


class ProjectDetails(PayloadModel):
    updates: list[StageUpdate] | None = None
    exceptions: list[ProjectException] = Field(default_factory=list)
    workflow_docs: list[AttachedFile] = Field(default_factory=list)

    def find_stage(self, stage_id: str) -> StageUpdate | None:
        for update in self.updates or []:
            if update.id == stage_id:
                return update
        return None


ReportDetails = Union[MaintenanceDetails, SalesDetails, ProjectDetails]

_DETAILS_BY_TYPE: dict[str, type[PayloadModel]] = {
    ReportType.MAINTENANCE.value: MaintenanceDetails,
    ReportType.SALES.value: SalesDetails,
    ReportType.PROJECT.value: ProjectDetails,
}


def parse_report_details(report_type: str, raw: dict[str, Any] | None) -> ReportDetails:
    model = _DETAILS_BY_TYPE.get(report_type)
    if model is None:
        raise ValueError(f"Unknown report type: {report_type}")
    return model.model_validate(raw or {})  # type: ignore[return-value]


def dump_report_details(details: ReportDetails) -> dict[str, Any]:
    # exclude_unset keeps keys the client never sent out of the stored payload.
    return details.model_dump(mode="json", by_alias=True, exclude_unset=True)


class NoteReply(PayloadModel):
    id: str
    author_id: str
    author_name: str | None = None
    content: str
    timestamp: str
    read_by: list[str] = Field(default_factory=list)


class AdminNote(PayloadModel):
    id: str
    author_id: str
    author_name: str | None = None
    content: str
    timestamp: str
    read_by: list[str] = Field(default_factory=list)
    replies: list[NoteReply] = Field(default_factory=list)


# Packages


class PackageRequestCreate(ApiModel):
    employee_id: str = Field(min_length=1)
    title: str | None = None
    description: str | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    package_type: str | None = None
    delivery_method: str | None = None
    modifications: str | None = None
    customer_location: str | None = None
    is_paid: bool = False
    priority: PackagePriority | None = None
    meta: dict[str, Any] | None = None


class PackageRequestUpdate(ApiModel):
    employee_id: str = Field(min_length=1)
    title: str | None = None
    description: str | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    priority: PackagePriority | None = None
    status: PackageStatus | None = None


class PackageActionRequest(ApiModel):
    employee_id: str | None = None
    comment: str | None = None


class PackageRequestRead(ApiModel):
    id: str
    title: str
    description: str
    customer_name: str
    customer_phone: str
    priority: str
    status: str
    progress_percent: int
    creation_date: datetime
    last_modified: datetime
    employee_id: str
    employee_name: str
    branch: str
    customer_location: str | None = None
    meta: dict[str, Any] = Field(default_factory=dict)


class PackageAttachmentRead(ApiModel):
    url: str
    file_name: str | None = None
    type: str


class PackageAttachmentsRead(ApiModel):
    payment_proofs: list[PackageAttachmentRead]
    shipping_docs: list[PackageAttachmentRead]
    all: list[PackageAttachmentRead]


class PackageLogRead(ApiModel):
    id: str
    action: str
    comment: str
    actor_id: str
    date: datetime


class PackageRequestDetailRead(PackageRequestRead):
    attachments: PackageAttachmentsRead
    logs: list[PackageLogRead]


# Reports


class ReportCreateData(ApiModel):
    employee_id: str
    branch: str
    type: ReportType
    details: dict[str, Any] = Field(default_factory=dict)
    status: str | None = None
    assigned_team_id: str | None = None
    project_workflow_status: str | None = None


class ReportUpdateData(ApiModel):
    employee_id: str | None = None
    type: ReportType
    details: dict[str, Any] = Field(default_factory=dict)
    status: str | None = None
    modifications: list[Any] = Field(default_factory=list)
    evaluation: dict[str, Any] | None = None
    assigned_team_id: str | None = None
    project_workflow_status: str | None = None
    admin_notes: list[AdminNote] = Field(default_factory=list)


class ReportRead(ApiModel):
    id: str
    employee_id: str
    employee_name: str
    branch: str
    department: str
    type: str
    date: datetime
    status: str | None = None
    details: dict[str, Any]
    evaluation: dict[str, Any] | None = None
    modifications: list[Any] = Field(default_factory=list)
    assigned_team_id: str | None = None
    project_workflow_status: str | None = None
    admin_notes: list[AdminNote] = Field(default_factory=list)


class NoteCreateRequest(ApiModel):
    content: str = Field(min_length=1)
    author_id: str | int
    author_name: str | None = None


class MarkNotesReadRequest(ApiModel):
    user_id: str | int | None = None


# Notifications


class NotificationRead(ApiModel):
    id: str
    message: str
    link: str | None = None
    is_read: bool
    created_at: datetime


class FcmTokenRequest(ApiModel):
    user_id: int | None = None
    token: str | None = None


class WebPushSubscribeRequest(ApiModel):
    user_id: int | None = None
    subscription: dict[str, Any] | None = None


class WebPushSendRequest(ApiModel):
    user_id: int | None = None
    title: str = "إشعار"
    body: str = "لديك إشعار جديد"
    link: str = "/"


# Directory


class LoginRequest(ApiModel):
    employee_id: str | None = None
    password: str | None = None


class UserRead(ApiModel):
    id: str
    employee_id: str
    name: str
    email: str
    phone: str
    role: str
    branch: str
    department: str
    position: str
    join_date: datetime
    employee_type: str
    has_import_export_permission: bool
    is_first_login: bool
    allowed_report_types: list[str] = Field(default_factory=list)


class UserCreate(ApiModel):
    employee_id: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=1)
    email: str | None = None
    name: str | None = None
    phone: str | None = None
    role: str = "employee"
    branch: str | None = None
    department: str | None = None
    position: str | None = None
    employee_type: str | None = None
    has_import_export_permission: bool = False
    allowed_report_types: list[str] | None = None


class UserUpdate(ApiModel):
    employee_id: str | None = None
    email: str | None = None
    name: str | None = None
    phone: str | None = None
    role: str | None = None
    branch: str | None = None
    department: str | None = None
    position: str | None = None
    employee_type: str | None = None
    has_import_export_permission: bool | None = None
    allowed_report_types: list[str] | None = None
    password: str | None = None


class ProfileCompletionRequest(ApiModel):
    user_id: int | None = None
    name: str | None = None
    phone: str | None = None
    password: str | None = None


class PasswordChangeRequest(ApiModel):
    user_id: int | None = None
    current_password: str | None = None
    new_password: str | None = None


class BranchUpsert(ApiModel):
    name: str = Field(min_length=1, max_length=255)
    location: str | None = None
    phone: str | None = None
    manager: str | None = None


class BranchRead(ApiModel):
    id: str
    name: str
    location: str
    phone: str
    manager: str
    creation_date: datetime


class TeamUpsert(ApiModel):
    name: str = Field(min_length=1, max_length=255)
    leader_id: int
    members: list[Any] = Field(default_factory=list)


class TeamRead(ApiModel):
    id: str
    name: str
    leader_id: str
    leader_name: str | None = None
    members: list[Any] = Field(default_factory=list)
    creation_date: datetime


# Import/export workflow requests


class WorkflowRequestCreate(ApiModel):
    employee_id: str | None = None
    title: str | None = None
    description: str | None = None
    type: str | None = None
    priority: str | None = None
    stage_history: list[dict[str, Any]] = Field(default_factory=list)


class WorkflowRequestUpdateData(ApiModel):
    employee_id: str | None = None
    current_stage_id: int = 1
    stage_history: list[dict[str, Any]] = Field(default_factory=list)
    container_count_20ft: int | None = Field(default=None, alias="containerCount20ft")
    container_count_40ft: int | None = Field(default=None, alias="containerCount40ft")
    expected_departure_date: date | None = None
    departure_port: str | None = None


class WorkflowRequestRead(ApiModel):
    id: str
    title: str
    description: str
    type: str
    priority: str
    current_stage_id: int
    creation_date: datetime
    last_modified: datetime
    stage_history: list[dict[str, Any]] = Field(default_factory=list)
    employee_id: str | None = None
    container_count_20ft: int | None = Field(default=None, alias="containerCount20ft")
    container_count_40ft: int | None = Field(default=None, alias="containerCount40ft")
    expected_departure_date: date | None = None
    departure_port: str | None = None


class ActorRef(ApiModel):
    employee_id: str | None = None
