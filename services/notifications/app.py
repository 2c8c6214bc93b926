import logging
from datetime import datetime

from fastapi import Depends, Query, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from common.app_factory import create_service_app
from common.database import get_db
from common.dependencies import get_current_user
from common.errors import BadRequest, NotFound
from common.models import Notification, User
from common.rate_limit import limiter
from common.schemas import NotificationOut, Pagination, envelope

logger = logging.getLogger(__name__)

app = create_service_app("Notifications Service", "notifications")


def _commit(db: Session, failure_message: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("%s: %s", failure_message, exc)
        raise BadRequest(failure_message) from exc


def _own_notification(db: Session, notification_id: str, user: User) -> Notification:
    notification = (
        db.query(Notification)
        .filter(Notification.id == notification_id, Notification.recipient_id == user.id)
        .first()
    )
    if not notification:
        raise NotFound("Notifikasi tidak ditemukan")
    return notification


@app.get("/notifications")
@limiter.limit("60/minute")
def list_notifications(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    unread_only: bool = Query(False, alias="unreadOnly"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(Notification).filter(Notification.recipient_id == current_user.id)
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    total = query.count()
    rows = query.order_by(Notification.sent_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return envelope(
        {
            "notifications": [NotificationOut.model_validate(row) for row in rows],
            "pagination": Pagination.build(page, limit, total),
        }
    )


@app.get("/notifications/unread-count")
@limiter.limit("60/minute")
def unread_count(
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    count = (
        db.query(Notification)
        .filter(Notification.recipient_id == current_user.id, Notification.is_read.is_(False))
        .count()
    )
    return envelope({"count": count})


@app.patch("/notifications/read-all")
@limiter.limit("20/minute")
def mark_all_read(
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    updated = (
        db.query(Notification)
        .filter(Notification.recipient_id == current_user.id, Notification.is_read.is_(False))
        .update({Notification.is_read: True, Notification.read_at: datetime.utcnow()}, synchronize_session=False)
    )
    _commit(db, "Gagal memperbarui notifikasi")
    return envelope({"updatedCount": updated}, "Semua notifikasi ditandai sebagai dibaca")


@app.get("/notifications/{notification_id}")
@limiter.limit("60/minute")
def get_notification(
    request: Request,
    notification_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    return envelope(NotificationOut.model_validate(_own_notification(db, notification_id, current_user)))


@app.patch("/notifications/{notification_id}/read")
@limiter.limit("60/minute")
def mark_read(
    request: Request,
    notification_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    notification = _own_notification(db, notification_id, current_user)
    if not notification.is_read:
        notification.is_read = True
        notification.read_at = datetime.utcnow()
        _commit(db, "Gagal memperbarui notifikasi")
    return envelope(NotificationOut.model_validate(notification), "Notifikasi ditandai sebagai dibaca")


@app.delete("/notifications/{notification_id}")
@limiter.limit("30/minute")
def delete_notification(
    request: Request,
    notification_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    notification = _own_notification(db, notification_id, current_user)
    db.delete(notification)
    _commit(db, "Gagal menghapus notifikasi")
    return envelope(message="Notifikasi dihapus")
