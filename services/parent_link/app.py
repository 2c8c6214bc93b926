import logging
from datetime import datetime

from fastapi import Depends, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from common.activity import log_activity, notify
from common.app_factory import create_service_app
from common.database import get_db
from common.dependencies import require_roles
from common.errors import BadRequest, NotFound
from common.models import LinkStatus, NotificationType, Parent, Student, User, UserRole
from common.rate_limit import limiter
from common.schemas import LinkedStudent, ParentLinkRequest, PendingParentLink, envelope

logger = logging.getLogger(__name__)

app = create_service_app("Parent Link Service", "parent_link")

require_parent = require_roles(UserRole.PARENT)
require_student = require_roles(UserRole.STUDENT)


def _commit(db: Session, failure_message: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("%s: %s", failure_message, exc)
        raise BadRequest(failure_message) from exc


def _parent_of(user: User) -> Parent:
    if user.parent is None:
        raise NotFound("Profil orang tua tidak ditemukan")
    return user.parent


def _student_of(user: User) -> Student:
    if user.student is None:
        raise NotFound("Profil siswa tidak ditemukan")
    return user.student


def _has_other_approved_parent(db: Session, student_id: str, parent_id: str) -> bool:
    return (
        db.query(Parent.id)
        .filter(
            Parent.student_id == student_id,
            Parent.link_status == LinkStatus.APPROVED,
            Parent.id != parent_id,
        )
        .first()
        is not None
    )


def _pending_link(db: Session, parent_id: str, student: Student) -> Parent:
    parent = db.get(Parent, parent_id)
    if not parent:
        raise NotFound("Permintaan tidak ditemukan")
    if parent.student_id != student.id:
        raise BadRequest("Permintaan ini bukan untuk Anda")
    if parent.link_status != LinkStatus.PENDING:
        raise BadRequest("Permintaan sudah diproses sebelumnya")
    return parent


@app.post("/parent-link/request")
@limiter.limit("5/minute")
def request_link(
    request: Request,
    payload: ParentLinkRequest,
    current_user: User = Depends(require_parent),
    db: Session = Depends(get_db),
) -> dict:
    parent = _parent_of(current_user)
    if parent.student_id and parent.link_status == LinkStatus.APPROVED:
        raise BadRequest("Anda sudah terhubung dengan seorang siswa")

    student = db.query(Student).filter(Student.nisn == payload.nisn).first()
    if not student:
        raise NotFound("Siswa dengan NISN tersebut tidak ditemukan")
    if not student.is_verified:
        raise BadRequest("Siswa belum terverifikasi")
    if _has_other_approved_parent(db, student.id, parent.id):
        raise BadRequest("Siswa ini sudah terhubung dengan orang tua lain")

    parent.student_id = student.id
    parent.link_status = LinkStatus.PENDING
    parent.link_requested_at = datetime.utcnow()
    parent.link_approved_at = None
    _commit(db, "Gagal mengirim permintaan")

    notify(
        db,
        student.user_id,
        "Permintaan Akses Orang Tua",
        f"{parent.full_name} ({parent.relation.value}) meminta akses sebagai orang tua Anda. Apakah Anda menyetujui?",
        type=NotificationType.PARENT_LINK,
        sender_id=current_user.id,
        extra={"parentId": parent.id, "parentName": parent.full_name, "relationship": parent.relation.value},
    )
    log_activity(
        db, current_user.id, "REQUEST_PARENT_LINK", f"Requested link to NISN {student.nisn}", {"studentId": student.id}
    )
    return envelope(
        {"studentName": student.full_name, "linkStatus": LinkStatus.PENDING.value},
        "Permintaan berhasil dikirim. Menunggu persetujuan siswa.",
    )


@app.get("/parent-link/status")
@limiter.limit("30/minute")
def link_status(request: Request, current_user: User = Depends(require_parent)) -> dict:
    parent = _parent_of(current_user)
    return envelope(
        {
            "linkStatus": parent.link_status.value if parent.link_status else None,
            "linkRequestedAt": parent.link_requested_at,
            "linkApprovedAt": parent.link_approved_at,
            "student": LinkedStudent.model_validate(parent.student) if parent.student else None,
        }
    )


@app.get("/parent-link/pending")
@limiter.limit("30/minute")
def pending_links(
    request: Request,
    current_user: User = Depends(require_student),
    db: Session = Depends(get_db),
) -> dict:
    student = _student_of(current_user)
    parents = (
        db.query(Parent)
        .filter(Parent.student_id == student.id, Parent.link_status == LinkStatus.PENDING)
        .order_by(Parent.link_requested_at.desc())
        .all()
    )
    return envelope([PendingParentLink.model_validate(parent) for parent in parents])


@app.post("/parent-link/{parent_id}/approve")
@limiter.limit("10/minute")
def approve_link(
    request: Request,
    parent_id: str,
    current_user: User = Depends(require_student),
    db: Session = Depends(get_db),
) -> dict:
    student = _student_of(current_user)
    parent = _pending_link(db, parent_id, student)
    if _has_other_approved_parent(db, student.id, parent.id):
        raise BadRequest("Siswa ini sudah terhubung dengan orang tua lain")

    parent.link_status = LinkStatus.APPROVED
    parent.link_approved_at = datetime.utcnow()
    _commit(db, "Gagal menyetujui permintaan")

    notify(
        db,
        parent.user_id,
        "Permintaan Disetujui",
        f"{student.full_name} telah menyetujui permintaan Anda. Anda sekarang dapat melihat data siswa.",
        type=NotificationType.PARENT_LINK,
        sender_id=current_user.id,
        extra={"studentId": student.id},
    )
    log_activity(
        db, current_user.id, "APPROVE_PARENT_LINK", f"Approved parent {parent.full_name}", {"parentId": parent.id}
    )
    return envelope(message="Permintaan orang tua disetujui")


@app.post("/parent-link/{parent_id}/reject")
@limiter.limit("10/minute")
def reject_link(
    request: Request,
    parent_id: str,
    current_user: User = Depends(require_student),
    db: Session = Depends(get_db),
) -> dict:
    student = _student_of(current_user)
    parent = _pending_link(db, parent_id, student)

    parent.link_status = LinkStatus.REJECTED
    parent.student_id = None
    _commit(db, "Gagal menolak permintaan")

    notify(
        db,
        parent.user_id,
        "Permintaan Ditolak",
        f"{student.full_name} menolak permintaan Anda untuk terhubung.",
        type=NotificationType.SYSTEM,
        sender_id=current_user.id,
    )
    log_activity(
        db, current_user.id, "REJECT_PARENT_LINK", f"Rejected parent {parent.full_name}", {"parentId": parent.id}
    )
    return envelope(message="Permintaan orang tua ditolak")
