"""Append-only side-effect records: activity log entries and notifications."""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .models import ADMIN_ROLES, ActivityLog, Notification, NotificationType, User

logger = logging.getLogger(__name__)


def log_activity(
    db: Session,
    user_id: Optional[str],
    action: str,
    description: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    """Record one activity-log row. Failures are logged and do not undo the caller's work."""

    try:
        db.add(ActivityLog(user_id=user_id, action=action, description=description, extra=extra or {}))
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Failed to write activity log %s for %s: %s", action, user_id, exc)


def notify_many(
    db: Session,
    recipient_ids: Iterable[str],
    title: str,
    message: str,
    type: NotificationType = NotificationType.SYSTEM,
    sender_id: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> int:
    rows = [
        Notification(
            sender_id=sender_id,
            recipient_id=recipient_id,
            type=type,
            title=title,
            message=message,
            extra=extra or {},
        )
        for recipient_id in recipient_ids
    ]
    if not rows:
        return 0
    try:
        db.add_all(rows)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Failed to write %d notification(s) '%s': %s", len(rows), title, exc)
        return 0
    return len(rows)


def notify(
    db: Session,
    recipient_id: str,
    title: str,
    message: str,
    type: NotificationType = NotificationType.SYSTEM,
    sender_id: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    notify_many(db, [recipient_id], title, message, type=type, sender_id=sender_id, extra=extra)


def notify_admins(db: Session, title: str, message: str, extra: Optional[Dict[str, Any]] = None) -> int:
    admin_ids = [row.id for row in db.query(User.id).filter(User.role.in_(ADMIN_ROLES)).all()]
    return notify_many(db, admin_ids, title, message, extra=extra)
