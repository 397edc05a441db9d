from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from opstrack.db import get_db
from opstrack.schemas import (
    BranchRead,
    BranchUpsert,
    LoginRequest,
    MessageResponse,
    PasswordChangeRequest,
    ProfileCompletionRequest,
    TeamRead,
    TeamUpsert,
    UserCreate,
    UserRead,
    UserUpdate,
)
from opstrack.services.directory import (
    change_password,
    complete_profile,
    create_branch,
    create_team,
    create_user,
    delete_branch,
    delete_team,
    delete_user,
    list_branches,
    list_teams,
    list_users,
    login,
    serialize_branch,
    serialize_team,
    serialize_user,
    update_branch,
    update_team,
    update_user,
)

router = APIRouter(prefix="/api", tags=["directory"])


def _client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


@router.post("/login", response_model=UserRead)
def login_endpoint(payload: LoginRequest, request: Request, db: Session = Depends(get_db)) -> UserRead:
    request.state.actor = "user"
    user = login(db, payload, client_ip=_client_ip(request))
    request.state.actor_id = str(user.id)
    return serialize_user(user)


# Users


@router.get("/users", response_model=list[UserRead])
def list_users_endpoint(db: Session = Depends(get_db)) -> list[UserRead]:
    return [serialize_user(user) for user in list_users(db)]


@router.post("/users", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user_endpoint(payload: UserCreate, db: Session = Depends(get_db)) -> UserRead:
    return serialize_user(create_user(db, payload))


@router.put("/users/profile", response_model=UserRead)
def complete_profile_endpoint(payload: ProfileCompletionRequest, db: Session = Depends(get_db)) -> UserRead:
    return serialize_user(complete_profile(db, payload))


@router.put("/users/change-password", response_model=MessageResponse)
def change_password_endpoint(payload: PasswordChangeRequest, db: Session = Depends(get_db)) -> MessageResponse:
    change_password(db, payload)
    return MessageResponse(message="Password changed.")


@router.put("/users/{user_id}", response_model=UserRead)
def update_user_endpoint(user_id: int, payload: UserUpdate, db: Session = Depends(get_db)) -> UserRead:
    return serialize_user(update_user(db, user_id, payload))


@router.delete("/users/{user_id}", response_model=MessageResponse)
def delete_user_endpoint(user_id: int, db: Session = Depends(get_db)) -> MessageResponse:
    delete_user(db, user_id)
    return MessageResponse(message="User deleted.")


# Branches


@router.get("/branches", response_model=list[BranchRead])
def list_branches_endpoint(db: Session = Depends(get_db)) -> list[BranchRead]:
    return [serialize_branch(branch) for branch in list_branches(db)]


@router.post("/branches", response_model=BranchRead, status_code=status.HTTP_201_CREATED)
def create_branch_endpoint(payload: BranchUpsert, db: Session = Depends(get_db)) -> BranchRead:
    return serialize_branch(create_branch(db, payload))


@router.put("/branches/{branch_id}", response_model=BranchRead)
def update_branch_endpoint(branch_id: int, payload: BranchUpsert, db: Session = Depends(get_db)) -> BranchRead:
    return serialize_branch(update_branch(db, branch_id, payload))


@router.delete("/branches/{branch_id}", response_model=MessageResponse)
def delete_branch_endpoint(branch_id: int, db: Session = Depends(get_db)) -> MessageResponse:
    delete_branch(db, branch_id)
    return MessageResponse(message="Branch deleted.")


# Technical teams


@router.get("/teams", response_model=list[TeamRead])
def list_teams_endpoint(db: Session = Depends(get_db)) -> list[TeamRead]:
    return [serialize_team(team) for team in list_teams(db)]


@router.post("/teams", response_model=TeamRead, status_code=status.HTTP_201_CREATED)
def create_team_endpoint(payload: TeamUpsert, db: Session = Depends(get_db)) -> TeamRead:
    return serialize_team(create_team(db, payload))


@router.put("/teams/{team_id}", response_model=TeamRead)
def update_team_endpoint(team_id: int, payload: TeamUpsert, db: Session = Depends(get_db)) -> TeamRead:
    return serialize_team(update_team(db, team_id, payload))


@router.delete("/teams/{team_id}", response_model=MessageResponse)
def delete_team_endpoint(team_id: int, db: Session = Depends(get_db)) -> MessageResponse:
    delete_team(db, team_id)
    return MessageResponse(message="Team deleted.")
