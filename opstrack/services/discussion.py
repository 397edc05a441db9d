from __future__ import annotations

import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from opstrack.errors import InvalidArgumentError, NotFoundError
from opstrack.models import Report
from opstrack.schemas import AdminNote, NoteReply
from opstrack.services.notifications import fan_out
from opstrack.services.push_notifications import PushNotifier
from opstrack.services.recipients import resolve_thread_recipients
from opstrack.services.reports import load_report

logger = logging.getLogger("opstrack.discussion")

NOTE_PUSH_TITLE = "ملاحظة جديدة"
REPLY_PUSH_TITLE = "رد جديد"


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _entry_id(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


def _normalize_author(author_id: object) -> str:
    normalized = str(author_id).strip() if author_id is not None else ""
    if not normalized:
        raise InvalidArgumentError(code="AUTHOR_REQUIRED", message="authorId is required.")
    return normalized


def _report_link(report: Report) -> str:
    return f"/reports/{report.id}"


def _notify(
    db: Session,
    *,
    recipients: list[str],
    title: str,
    message: str,
    link: str,
    notifier: PushNotifier | None,
    request_id: str | None,
) -> None:
    # The discussion change is already committed; delivery problems are only logged.
    try:
        fan_out(db, recipients=recipients, title=title, message=message, link=link, notifier=notifier)
    except Exception as exc:
        db.rollback()
        logger.warning(
            "discussion_fanout_failed",
            extra={"request_id": request_id, "recipients": len(recipients), "error": str(exc)[:500]},
        )


def add_note(
    db: Session,
    *,
    report_id: str | int,
    author_id: object,
    author_name: str | None,
    content: str,
    notifier: PushNotifier | None = None,
    request_id: str | None = None,
) -> Report:
    author = _normalize_author(author_id)
    try:
        report = load_report(db, report_id, for_update=True)
        note = AdminNote(
            id=_entry_id("note"),
            author_id=author,
            author_name=author_name,
            content=content,
            timestamp=_utc_iso(),
            read_by=[author],
            replies=[],
        )
        report.admin_notes = [*(report.admin_notes or []), note.model_dump(mode="json", by_alias=True)]
        recipients = resolve_thread_recipients(db, report=report, actor_id=author)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "report_note_added",
        extra={"request_id": request_id, "report_id": report.id, "note_id": note.id, "recipients": len(recipients)},
    )
    _notify(
        db,
        recipients=recipients,
        title=NOTE_PUSH_TITLE,
        message=f"{author_name} أضاف ملاحظة على تقرير #{report.id}",
        link=_report_link(report),
        notifier=notifier,
        request_id=request_id,
    )
    return report


def add_reply(
    db: Session,
    *,
    report_id: str | int,
    note_id: str,
    author_id: object,
    author_name: str | None,
    content: str,
    notifier: PushNotifier | None = None,
    request_id: str | None = None,
) -> Report:
    author = _normalize_author(author_id)
    try:
        report = load_report(db, report_id, for_update=True)
        notes: list[dict[str, Any]] = [dict(item) for item in report.admin_notes or []]
        index = next((i for i, item in enumerate(notes) if item.get("id") == note_id), None)
        if index is None:
            raise NotFoundError(code="NOTE_NOT_FOUND", message="Note not found.")

        reply = NoteReply(
            id=_entry_id("reply"),
            author_id=author,
            author_name=author_name,
            content=content,
            timestamp=_utc_iso(),
            read_by=[author],
        )
        notes[index]["replies"] = [*(notes[index].get("replies") or []), reply.model_dump(mode="json", by_alias=True)]
        report.admin_notes = notes
        recipients = resolve_thread_recipients(
            db,
            report=report,
            actor_id=author,
            note=AdminNote.model_validate(notes[index]),
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "report_note_reply_added",
        extra={
            "request_id": request_id,
            "report_id": report.id,
            "note_id": note_id,
            "reply_id": reply.id,
            "recipients": len(recipients),
        },
    )
    _notify(
        db,
        recipients=recipients,
        title=REPLY_PUSH_TITLE,
        message=f"{author_name} رد في محادثة بتقرير #{report.id}",
        link=_report_link(report),
        notifier=notifier,
        request_id=request_id,
    )
    return report


def _with_reader(entry: dict[str, Any], reader: str) -> tuple[dict[str, Any], bool]:
    read_by = [str(item) for item in entry.get("readBy") or []]
    if reader in read_by:
        return entry, False
    return {**entry, "readBy": [*read_by, reader]}, True


def mark_read(db: Session, *, report_id: str | int, user_id: object) -> Report:
    """Add ``user_id`` to the readers of every note and reply on the report.

    Calling it again for the same user changes nothing.
    """
    reader = str(user_id).strip() if user_id is not None else ""
    if not reader:
        raise InvalidArgumentError(code="USER_ID_REQUIRED", message="User ID is required.")

    try:
        report = load_report(db, report_id, for_update=True)
        changed = False
        notes: list[dict[str, Any]] = []
        for raw_note in report.admin_notes or []:
            note, note_changed = _with_reader(dict(raw_note), reader)
            replies = []
            for raw_reply in note.get("replies") or []:
                reply, reply_changed = _with_reader(dict(raw_reply), reader)
                replies.append(reply)
                note_changed = note_changed or reply_changed
            if replies:
                note = {**note, "replies": replies}
            notes.append(note)
            changed = changed or note_changed
        if changed:
            report.admin_notes = notes
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("report_notes_marked_read", extra={"report_id": report.id, "user_id": reader, "changed": changed})
    return report
