import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, Query, Request, status
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from common.activity import log_activity
from common.app_factory import create_service_app
from common.config import Settings, get_settings
from common.database import get_db
from common.dependencies import get_current_user, require_roles
from common.errors import BadRequest, Conflict, Forbidden, NotFound
from common.models import ADMIN_ROLES, AttendanceRecord, AttendanceSession, AttendanceStatus, User, UserRole
from common.qr import qr_data_url
from common.rate_limit import limiter
from common.schemas import (
    AttendanceRecordOut,
    AttendanceSessionOut,
    AttendanceSessionWithQr,
    CheckIn,
    CreateAttendanceSession,
    MyAttendanceRecord,
    envelope,
)

logger = logging.getLogger(__name__)

app = create_service_app("Attendance Service", "attendance")

require_session_creator = require_roles(UserRole.TEACHER, UserRole.ADMIN)


def _commit(db: Session, failure_message: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("%s: %s", failure_message, exc)
        raise BadRequest(failure_message) from exc


def _new_qr_token() -> str:
    return secrets.token_urlsafe(32)


def _with_qr(session: AttendanceSession) -> AttendanceSessionWithQr:
    payload = {
        "sessionId": session.id,
        "token": session.qr_token,
        "validUntil": session.valid_until.isoformat(),
    }
    return AttendanceSessionWithQr(session=AttendanceSessionOut.model_validate(session), qr_code=qr_data_url(payload))


def _owned_session(db: Session, session_id: str, user: User) -> AttendanceSession:
    session = db.get(AttendanceSession, session_id)
    if not session:
        raise NotFound("Sesi absensi tidak ditemukan")
    if session.creator_id != user.id and user.role not in ADMIN_ROLES:
        raise Forbidden("Anda tidak memiliki akses ke sesi ini")
    return session


@app.post("/attendance/sessions", status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def create_session(
    request: Request,
    payload: CreateAttendanceSession,
    current_user: User = Depends(require_session_creator),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> dict:
    validity = payload.validity_minutes or settings.attendance_validity_minutes
    session = AttendanceSession(
        creator_id=current_user.id,
        title=payload.title,
        description=payload.description,
        location=payload.location,
        latitude=payload.latitude,
        longitude=payload.longitude,
        qr_token=_new_qr_token(),
        valid_until=datetime.utcnow() + timedelta(minutes=validity),
        is_active=True,
    )
    db.add(session)
    _commit(db, "Gagal membuat sesi absensi")

    log_activity(
        db,
        current_user.id,
        "CREATE_ATTENDANCE_SESSION",
        f"Created attendance session '{session.title}'",
        {"sessionId": session.id, "validityMinutes": validity},
    )
    return envelope(_with_qr(session), "Sesi absensi berhasil dibuat")


@app.get("/attendance/sessions")
@limiter.limit("30/minute")
def list_sessions(
    request: Request,
    current_user: User = Depends(require_session_creator),
    db: Session = Depends(get_db),
) -> dict:
    sessions = (
        db.query(AttendanceSession)
        .filter(AttendanceSession.creator_id == current_user.id)
        .order_by(AttendanceSession.created_at.desc())
        .all()
    )
    return envelope([AttendanceSessionOut.model_validate(session) for session in sessions])


@app.get("/attendance/sessions/{session_id}/qr")
@limiter.limit("30/minute")
def session_qr(
    request: Request,
    session_id: str,
    current_user: User = Depends(require_session_creator),
    db: Session = Depends(get_db),
) -> dict:
    session = _owned_session(db, session_id, current_user)
    if not session.is_active or session.valid_until <= datetime.utcnow():
        raise BadRequest("Sesi absensi sudah berakhir")
    return envelope(_with_qr(session))


@app.get("/attendance/sessions/{session_id}/records")
@limiter.limit("30/minute")
def session_records(
    request: Request,
    session_id: str,
    current_user: User = Depends(require_session_creator),
    db: Session = Depends(get_db),
) -> dict:
    session = _owned_session(db, session_id, current_user)
    records = (
        db.query(AttendanceRecord)
        .filter(AttendanceRecord.session_id == session.id)
        .order_by(AttendanceRecord.check_in_time.asc())
        .all()
    )
    return envelope(
        {
            "session": AttendanceSessionOut.model_validate(session),
            "records": [AttendanceRecordOut.model_validate(record) for record in records],
            "totalPresent": len(records),
        }
    )


@app.patch("/attendance/sessions/{session_id}/close")
@limiter.limit("10/minute")
def close_session(
    request: Request,
    session_id: str,
    current_user: User = Depends(require_session_creator),
    db: Session = Depends(get_db),
) -> dict:
    session = _owned_session(db, session_id, current_user)
    session.is_active = False
    _commit(db, "Gagal menutup sesi absensi")
    log_activity(
        db, current_user.id, "CLOSE_ATTENDANCE_SESSION", f"Closed session '{session.title}'", {"sessionId": session.id}
    )
    return envelope(AttendanceSessionOut.model_validate(session), "Sesi absensi ditutup")


@app.post("/attendance/sessions/{session_id}/regenerate")
@limiter.limit("10/minute")
def regenerate_qr(
    request: Request,
    session_id: str,
    validity_minutes: Optional[int] = Query(None, alias="validityMinutes", ge=1, le=1440),
    current_user: User = Depends(require_session_creator),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> dict:
    session = _owned_session(db, session_id, current_user)
    validity = validity_minutes or settings.attendance_validity_minutes
    session.qr_token = _new_qr_token()
    session.valid_until = datetime.utcnow() + timedelta(minutes=validity)
    session.is_active = True
    _commit(db, "Gagal memperbarui QR code")
    return envelope(_with_qr(session), "QR code berhasil diperbarui")


@app.post("/attendance/check-in", status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def check_in(
    request: Request,
    payload: CheckIn,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    session = db.get(AttendanceSession, payload.session_id)
    if not session:
        raise NotFound("Sesi absensi tidak ditemukan")
    if not secrets.compare_digest(session.qr_token.encode(), payload.qr_token.encode()):
        raise BadRequest("QR code tidak valid")
    if not session.is_active:
        raise BadRequest("Sesi absensi sudah ditutup")
    if session.valid_until <= datetime.utcnow():
        raise BadRequest("QR code sudah kedaluwarsa")

    already = (
        db.query(AttendanceRecord.id)
        .filter(AttendanceRecord.session_id == session.id, AttendanceRecord.user_id == current_user.id)
        .first()
    )
    if already:
        raise Conflict("Anda sudah melakukan absensi untuk sesi ini")

    record = AttendanceRecord(
        session_id=session.id,
        user_id=current_user.id,
        latitude=payload.latitude,
        longitude=payload.longitude,
        status=AttendanceStatus.PRESENT,
    )
    try:
        db.add(record)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise Conflict("Anda sudah melakukan absensi untuk sesi ini") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Failed to record check-in for %s: %s", current_user.id, exc)
        raise BadRequest("Gagal melakukan absensi") from exc

    log_activity(db, current_user.id, "CHECK_IN", f"Checked in to '{session.title}'", {"sessionId": session.id})
    return envelope(AttendanceRecordOut.model_validate(record), "Absensi berhasil")


@app.get("/attendance/my-attendance")
@limiter.limit("30/minute")
def my_attendance(
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    records = (
        db.query(AttendanceRecord)
        .filter(AttendanceRecord.user_id == current_user.id)
        .order_by(AttendanceRecord.check_in_time.desc())
        .all()
    )
    return envelope([MyAttendanceRecord.model_validate(record) for record in records])
