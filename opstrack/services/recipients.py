from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from opstrack.models import Report, ReportType, TechnicalTeam, User, UserRole
from opstrack.schemas import AdminNote


def _normalize_id(value: object) -> str:
    return str(value).strip() if value is not None else ""


def resolve_thread_recipients(
    db: Session,
    *,
    report: Report,
    actor_id: object,
    note: AdminNote | None = None,
) -> list[str]:
    """Return the user ids to notify about a discussion event on ``report``.

    The report owner, every admin and, for project reports with an assigned
    team, the team leader are always included. When ``note`` is given (a reply),
    the note author and every reply author of that thread are added as well.
    The actor is never part of the result. Ids are returned as strings in a
    stable order.
    """
    candidates: list[object] = [report.user_id]
    candidates.extend(db.scalars(select(User.id).where(User.role == UserRole.ADMIN.value)).all())

    if report.report_type == ReportType.PROJECT.value and report.assigned_team_id:
        team = db.get(TechnicalTeam, report.assigned_team_id)
        if team is not None:
            candidates.append(team.leader_id)

    if note is not None:
        candidates.append(note.author_id)
        candidates.extend(reply.author_id for reply in note.replies)

    actor = _normalize_id(actor_id)
    ordered = dict.fromkeys(_normalize_id(item) for item in candidates)
    return [item for item in ordered if item and item != actor]
