from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from opstrack.errors import ApiError, InvalidArgumentError, NotFoundError
from opstrack.models import Branch, TechnicalTeam, User, UserRole
from opstrack.schemas import (
    BranchRead,
    BranchUpsert,
    LoginRequest,
    PasswordChangeRequest,
    ProfileCompletionRequest,
    TeamRead,
    TeamUpsert,
    UserCreate,
    UserRead,
    UserUpdate,
)
from opstrack.security import (
    check_user_password,
    ensure_login_attempt_allowed,
    hash_password,
    register_login_failure,
    register_login_success,
    verify_password,
)

logger = logging.getLogger("opstrack.directory")

DEFAULT_EMPLOYEE_TYPE = "Technician"
UNASSIGNED_BRANCH_NAMES = frozenset({"", "N/A", "غير محدد"})

_ROLE_ALIASES = {
    "admin": UserRole.ADMIN,
    "employee": UserRole.EMPLOYEE,
    "teamlead": UserRole.TEAM_LEAD,
    "team_lead": UserRole.TEAM_LEAD,
    "branchmanager": UserRole.BRANCH_MANAGER,
    "branch_manager": UserRole.BRANCH_MANAGER,
    "branch manager": UserRole.BRANCH_MANAGER,
    "hrmanager": UserRole.HR_MANAGER,
    "hr_manager": UserRole.HR_MANAGER,
    "hr manager": UserRole.HR_MANAGER,
}

_ROLE_LABELS = {
    UserRole.ADMIN.value: "Admin",
    UserRole.EMPLOYEE.value: "Employee",
    UserRole.TEAM_LEAD.value: "TeamLead",
    UserRole.BRANCH_MANAGER.value: "Branch Manager",
    UserRole.HR_MANAGER.value: "HR Manager",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_role(value: str | None) -> str:
    normalized = " ".join((value or "").strip().lower().split())
    role = _ROLE_ALIASES.get(normalized)
    if role is None:
        raise InvalidArgumentError(code="INVALID_ROLE", message=f"Unknown role '{value}'.")
    return role.value


def role_label(value: str | None) -> str:
    if not value:
        return "Employee"
    return _ROLE_LABELS.get(value, value[:1].upper() + value[1:])


def serialize_user(user: User) -> UserRead:
    return UserRead(
        id=str(user.id),
        employee_id=user.username or "N/A",
        name=user.full_name or "N/A",
        email=user.email or "N/A",
        phone=user.phone or "N/A",
        role=role_label(user.role),
        branch=user.branch.name if user.branch is not None else "N/A",
        department=user.department or "N/A",
        position=user.position or "N/A",
        join_date=user.created_at or _utcnow(),
        employee_type=user.employee_type or DEFAULT_EMPLOYEE_TYPE,
        has_import_export_permission=bool(user.has_import_export_permission),
        is_first_login=bool(user.is_first_login),
        allowed_report_types=list(user.allowed_report_types or []),
    )


def login(db: Session, payload: LoginRequest, *, client_ip: str) -> User:
    employee_id = (payload.employee_id or "").strip()
    password = payload.password or ""
    if not employee_id or not password:
        raise InvalidArgumentError(
            code="CREDENTIALS_REQUIRED",
            message="Employee ID and password are required.",
        )

    ensure_login_attempt_allowed(client_ip)
    user = db.scalar(select(User).where(User.username == employee_id))
    if user is None:
        register_login_failure(client_ip)
        raise NotFoundError(code="USER_NOT_FOUND", message="Employee not found.")
    if not check_user_password(db, user, password):
        register_login_failure(client_ip)
        logger.info("login_failed", extra={"username": employee_id, "client_ip": client_ip})
        raise ApiError(status_code=401, code="INVALID_CREDENTIALS", message="Incorrect password.")

    register_login_success(client_ip)
    logger.info("login_succeeded", extra={"user_id": user.id, "client_ip": client_ip})
    return user


def _resolve_branch_id(db: Session, branch_name: str | None) -> int | None:
    normalized = (branch_name or "").strip()
    if normalized in UNASSIGNED_BRANCH_NAMES:
        return None
    branch = db.scalar(select(Branch).where(Branch.name == normalized))
    if branch is None:
        raise InvalidArgumentError(code="BRANCH_NOT_FOUND", message=f"Branch '{normalized}' not found.")
    return branch.id


def _load_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError(code="USER_NOT_FOUND", message="User not found.")
    return user


def list_users(db: Session) -> list[User]:
    stmt = select(User).options(selectinload(User.branch)).order_by(User.created_at.desc(), User.id.desc())
    return list(db.scalars(stmt).all())


def create_user(db: Session, payload: UserCreate) -> User:
    user = User(
        username=payload.employee_id.strip(),
        password=hash_password(payload.password),
        email=payload.email,
        full_name=payload.name,
        phone=payload.phone,
        role=normalize_role(payload.role),
        branch_id=_resolve_branch_id(db, payload.branch),
        department=payload.department,
        position=payload.position,
        employee_type=payload.employee_type,
        has_import_export_permission=payload.has_import_export_permission,
        is_first_login=True,
        is_active=True,
        allowed_report_types=list(payload.allowed_report_types or []),
        created_at=_utcnow(),
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ApiError(status_code=409, code="USERNAME_TAKEN", message="Employee ID already exists.") from exc
    db.refresh(user)
    logger.info("user_created", extra={"user_id": user.id, "role": user.role})
    return user


def update_user(db: Session, user_id: int, payload: UserUpdate) -> User:
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise InvalidArgumentError(code="NO_FIELDS", message="No fields provided to update.")

    user = _load_user(db, user_id)
    if "employee_id" in changes and changes["employee_id"]:
        user.username = changes["employee_id"].strip()
    if "email" in changes:
        user.email = changes["email"]
    if "name" in changes:
        user.full_name = changes["name"]
    if "phone" in changes:
        user.phone = changes["phone"]
    if "department" in changes:
        user.department = changes["department"]
    if "position" in changes:
        user.position = changes["position"]
    if "employee_type" in changes:
        user.employee_type = changes["employee_type"]
    if "has_import_export_permission" in changes:
        user.has_import_export_permission = bool(changes["has_import_export_permission"])
    if "allowed_report_types" in changes:
        user.allowed_report_types = list(changes["allowed_report_types"] or [])
    if "role" in changes and changes["role"] is not None:
        user.role = normalize_role(changes["role"])
    if "branch" in changes:
        user.branch_id = _resolve_branch_id(db, changes["branch"])
    if changes.get("password"):
        user.password = hash_password(changes["password"])

    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ApiError(status_code=409, code="USERNAME_TAKEN", message="Employee ID already exists.") from exc
    db.refresh(user)
    logger.info("user_updated", extra={"user_id": user.id, "fields": sorted(changes)})
    return user


def delete_user(db: Session, user_id: int) -> None:
    user = _load_user(db, user_id)
    db.delete(user)
    db.commit()
    logger.info("user_deleted", extra={"user_id": user_id})


def complete_profile(db: Session, payload: ProfileCompletionRequest) -> User:
    if not payload.user_id or not payload.name or not payload.phone or not payload.password:
        raise InvalidArgumentError(code="PROFILE_FIELDS_REQUIRED", message="All fields are required.")
    user = _load_user(db, payload.user_id)
    user.full_name = payload.name
    user.phone = payload.phone
    user.password = hash_password(payload.password)
    user.is_first_login = False
    db.commit()
    logger.info("user_profile_completed", extra={"user_id": user.id})
    return user


def change_password(db: Session, payload: PasswordChangeRequest) -> User:
    if not payload.user_id or not payload.current_password or not payload.new_password:
        raise InvalidArgumentError(code="PASSWORD_FIELDS_REQUIRED", message="All password fields are required.")
    user = _load_user(db, payload.user_id)
    if not verify_password(payload.current_password, user.password or ""):
        raise InvalidArgumentError(code="INVALID_CURRENT_PASSWORD", message="Current password is incorrect.")
    user.password = hash_password(payload.new_password)
    db.commit()
    logger.info("user_password_changed", extra={"user_id": user.id})
    return user


# Branches


def serialize_branch(branch: Branch) -> BranchRead:
    return BranchRead(
        id=str(branch.id),
        name=branch.name or "N/A",
        location=branch.location or "N/A",
        phone=branch.phone or "N/A",
        manager=branch.manager_name or "N/A",
        creation_date=branch.created_at or _utcnow(),
    )


def list_branches(db: Session) -> list[Branch]:
    return list(db.scalars(select(Branch).order_by(Branch.created_at.desc(), Branch.id.desc())).all())


def _commit_branch(db: Session, branch: Branch) -> Branch:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ApiError(status_code=409, code="BRANCH_NAME_TAKEN", message="Branch name already exists.") from exc
    db.refresh(branch)
    return branch


def create_branch(db: Session, payload: BranchUpsert) -> Branch:
    branch = Branch(
        name=payload.name.strip(),
        location=payload.location,
        phone=payload.phone,
        manager_name=payload.manager,
        created_at=_utcnow(),
    )
    db.add(branch)
    return _commit_branch(db, branch)


def update_branch(db: Session, branch_id: int, payload: BranchUpsert) -> Branch:
    branch = db.get(Branch, branch_id)
    if branch is None:
        raise NotFoundError(code="BRANCH_NOT_FOUND", message="Branch not found.")
    branch.name = payload.name.strip()
    branch.location = payload.location
    branch.phone = payload.phone
    branch.manager_name = payload.manager
    return _commit_branch(db, branch)


def delete_branch(db: Session, branch_id: int) -> None:
    branch = db.get(Branch, branch_id)
    if branch is None:
        raise NotFoundError(code="BRANCH_NOT_FOUND", message="Branch not found.")
    db.delete(branch)
    db.commit()


# Technical teams


def serialize_team(team: TechnicalTeam) -> TeamRead:
    return TeamRead(
        id=str(team.id),
        name=team.name,
        leader_id=str(team.leader_id),
        leader_name=team.leader.full_name if team.leader is not None else None,
        members=list(team.members or []),
        creation_date=team.created_at or _utcnow(),
    )


def list_teams(db: Session) -> list[TechnicalTeam]:
    stmt = (
        select(TechnicalTeam)
        .options(selectinload(TechnicalTeam.leader))
        .order_by(TechnicalTeam.created_at.desc(), TechnicalTeam.id.desc())
    )
    return list(db.scalars(stmt).all())


def create_team(db: Session, payload: TeamUpsert) -> TechnicalTeam:
    leader = _load_user(db, payload.leader_id)
    team = TechnicalTeam(
        name=payload.name.strip(),
        leader_id=leader.id,
        members=list(payload.members or []),
        created_at=_utcnow(),
    )
    team.leader = leader
    db.add(team)
    db.commit()
    db.refresh(team)
    logger.info("technical_team_created", extra={"team_id": team.id, "leader_id": leader.id})
    return team


def update_team(db: Session, team_id: int, payload: TeamUpsert) -> TechnicalTeam:
    team = db.get(TechnicalTeam, team_id)
    if team is None:
        raise NotFoundError(code="TEAM_NOT_FOUND", message="Team not found.")
    leader = _load_user(db, payload.leader_id)
    team.name = payload.name.strip()
    team.leader_id = leader.id
    team.leader = leader
    team.members = list(payload.members or [])
    db.commit()
    db.refresh(team)
    return team


def delete_team(db: Session, team_id: int) -> None:
    team = db.get(TechnicalTeam, team_id)
    if team is None:
        raise NotFoundError(code="TEAM_NOT_FOUND", message="Team not found.")
    db.delete(team)
    db.commit()
