from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from opstrack.models import PackageLog, PackageRequest, Report, ReportLog

logger = logging.getLogger("opstrack.audit")


def record_action(
    db: Session,
    *,
    parent: PackageRequest | Report,
    actor_id: int | None,
    action: str,
    comment: str | None = None,
    request_id: str | None = None,
) -> PackageLog | ReportLog:
    """Append an audit entry for ``parent`` to the current unit of work.

    The entry is committed together with the state change that caused it, so
    callers own the commit. Entries are never updated afterwards.
    """
    now_utc = datetime.now(timezone.utc)
    entry: PackageLog | ReportLog
    if isinstance(parent, PackageRequest):
        entry = PackageLog(
            package_id=parent.id,
            action=action,
            comment=comment or "",
            actor_id=actor_id,
            date=now_utc,
        )
        entity_type = "package_request"
    elif isinstance(parent, Report):
        entry = ReportLog(
            report_id=parent.id,
            action=action,
            comment=comment or "",
            actor_id=actor_id,
            date=now_utc,
        )
        entity_type = "report"
    else:
        raise TypeError(f"Unsupported audit parent: {type(parent).__name__}")

    db.add(entry)
    logger.info(
        "audit_event",
        extra={
            "request_id": request_id,
            "action": action,
            "actor_id": actor_id,
            "entity_type": entity_type,
            "entity_id": str(parent.id),
        },
    )
    return entry
