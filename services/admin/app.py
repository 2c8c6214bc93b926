import logging
from datetime import datetime
from typing import Optional

from fastapi import Depends, Query, Request, status
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from common.accounts import AccountFactory
from common.activity import log_activity, notify, notify_many
from common.app_factory import create_service_app
from common.config import Settings, get_settings
from common.database import get_db
from common.dependencies import get_account_factory, get_login_service, get_registration_workflow, require_admin
from common.errors import BadRequest, Forbidden, NotFound
from common.login import LoginService
from common.models import (
    ActivityLog,
    Admin,
    NotificationType,
    RegistrationRequest,
    RegistrationStatus,
    RegistrationType,
    Student,
    Teacher,
    User,
    UserRole,
    UserStatus,
)
from common.profiles import build_authenticated_user
from common.rate_limit import limiter
from common.registration import RegistrationWorkflow
from common.schemas import (
    ActivityLogOut,
    AdminCreateStudent,
    AdminCreateTeacher,
    ApproveRegistration,
    BroadcastNotification,
    CreateAdmin,
    CreatedAccount,
    Pagination,
    RegistrationRequestDetail,
    RegistrationRequestOut,
    RejectRegistration,
    RoleBroadcastNotification,
    SendNotification,
    SuspendUser,
    envelope,
)

logger = logging.getLogger(__name__)

app = create_service_app("Admin Service", "admin")


def _commit(db: Session, failure_message: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("%s: %s", failure_message, exc)
        raise BadRequest(failure_message) from exc


def _get_user(db: Session, user_id: str) -> User:
    user = db.get(User, user_id)
    if not user:
        raise NotFound("User tidak ditemukan")
    return user


def _registration_page(rows: list[RegistrationRequest], page: int, limit: int, total: int) -> dict:
    return {
        "registrations": [RegistrationRequestOut.model_validate(row) for row in rows],
        "pagination": Pagination.build(page, limit, total),
    }


# ---------------------------------------------------------------------------
# Registrations
# ---------------------------------------------------------------------------


@app.get("/admin/registrations")
@limiter.limit("30/minute")
def list_registrations(
    request: Request,
    status_filter: Optional[RegistrationStatus] = Query(None, alias="status"),
    registration_type: Optional[RegistrationType] = Query(None, alias="type"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    _: User = Depends(require_admin),
    workflow: RegistrationWorkflow = Depends(get_registration_workflow),
) -> dict:
    rows, total = workflow.list_requests(status_filter, registration_type, page, limit)
    return envelope(_registration_page(rows, page, limit, total))


@app.get("/admin/registrations/pending")
@limiter.limit("30/minute")
def list_pending_registrations(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    _: User = Depends(require_admin),
    workflow: RegistrationWorkflow = Depends(get_registration_workflow),
) -> dict:
    rows, total = workflow.list_pending(page, limit)
    return envelope(_registration_page(rows, page, limit, total))


@app.get("/admin/registrations/{request_id}")
@limiter.limit("30/minute")
def get_registration(
    request: Request,
    request_id: str,
    _: User = Depends(require_admin),
    workflow: RegistrationWorkflow = Depends(get_registration_workflow),
) -> dict:
    registration = workflow.get(request_id)
    detail = RegistrationRequestDetail.model_validate(registration).model_copy(
        update={"email": registration.user.email if registration.user else None}
    )
    return envelope(detail)


@app.post("/admin/registrations/{request_id}/approve")
@limiter.limit("20/minute")
def approve_registration(
    request: Request,
    request_id: str,
    payload: Optional[ApproveRegistration] = None,
    admin: User = Depends(require_admin),
    workflow: RegistrationWorkflow = Depends(get_registration_workflow),
) -> dict:
    result = workflow.approve(request_id, admin.id, payload.notes if payload else None)
    return envelope(result, "Pendaftaran berhasil disetujui")


@app.post("/admin/registrations/{request_id}/reject")
@limiter.limit("20/minute")
def reject_registration(
    request: Request,
    request_id: str,
    payload: RejectRegistration,
    admin: User = Depends(require_admin),
    workflow: RegistrationWorkflow = Depends(get_registration_workflow),
) -> dict:
    workflow.reject(request_id, admin.id, payload.reason)
    return envelope(message="Pendaftaran berhasil ditolak")


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@app.get("/admin/users")
@limiter.limit("30/minute")
def list_users(
    request: Request,
    role: Optional[UserRole] = None,
    status_filter: Optional[UserStatus] = Query(None, alias="status"),
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(User)
    if role is not None:
        query = query.filter(User.role == role)
    if status_filter is not None:
        query = query.filter(User.status == status_filter)
    if search:
        query = query.filter(User.email.ilike(f"%{search}%"))
    total = query.count()
    users = query.order_by(User.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return envelope(
        {
            "users": [build_authenticated_user(user) for user in users],
            "pagination": Pagination.build(page, limit, total),
        }
    )


@app.get("/admin/users/{user_id}")
@limiter.limit("30/minute")
def get_user(
    request: Request,
    user_id: str,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict:
    return envelope(build_authenticated_user(_get_user(db, user_id)))


@app.patch("/admin/users/{user_id}/suspend")
@limiter.limit("10/minute")
def suspend_user(
    request: Request,
    user_id: str,
    payload: Optional[SuspendUser] = None,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    login: LoginService = Depends(get_login_service),
) -> dict:
    user = _get_user(db, user_id)
    if user.role == UserRole.SUPER_ADMIN:
        raise BadRequest("Tidak dapat menonaktifkan Super Admin")

    reason = payload.reason if payload else None
    user.status = UserStatus.SUSPENDED
    _commit(db, "Gagal menonaktifkan user")
    login.end_all(user.id)

    message = "Akun Anda telah dinonaktifkan oleh admin."
    if reason:
        message += f" Alasan: {reason}"
    notify(db, user.id, "Akun Dinonaktifkan", message, sender_id=admin.id)
    log_activity(db, admin.id, "SUSPEND_USER", f"Suspended user {user.email}", {"userId": user.id, "reason": reason})
    return envelope(message="User berhasil dinonaktifkan")


@app.patch("/admin/users/{user_id}/reactivate")
@limiter.limit("10/minute")
def reactivate_user(
    request: Request,
    user_id: str,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict:
    user = _get_user(db, user_id)
    if user.status != UserStatus.SUSPENDED:
        raise BadRequest("User tidak dalam status suspended")

    user.status = UserStatus.ACTIVE
    _commit(db, "Gagal mengaktifkan user")

    notify(db, user.id, "Akun Diaktifkan Kembali", "Akun Anda telah diaktifkan kembali oleh admin.", sender_id=admin.id)
    log_activity(db, admin.id, "REACTIVATE_USER", f"Reactivated user {user.email}", {"userId": user.id})
    return envelope(message="User berhasil diaktifkan kembali")


@app.delete("/admin/users/{user_id}")
@limiter.limit("5/minute")
def delete_user(
    request: Request,
    user_id: str,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    accounts: AccountFactory = Depends(get_account_factory),
) -> dict:
    user = _get_user(db, user_id)
    if user.role == UserRole.SUPER_ADMIN:
        raise BadRequest("Tidak dapat menghapus Super Admin")

    email = user.email
    try:
        accounts.delete_user(user)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Failed to delete user %s: %s", user_id, exc)
        raise BadRequest("Gagal menghapus user") from exc

    log_activity(db, admin.id, "DELETE_USER", f"Deleted user {email}", {"userId": user_id, "email": email})
    return envelope(message="User berhasil dihapus")


# ---------------------------------------------------------------------------
# Direct account creation
# ---------------------------------------------------------------------------


@app.post("/admin/students", status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def create_student(
    request: Request,
    payload: AdminCreateStudent,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    accounts: AccountFactory = Depends(get_account_factory),
) -> dict:
    accounts.ensure_nisn_available(payload.nisn)
    accounts.ensure_email_available(payload.email)

    password = accounts.generate_password()
    user = accounts.create_user(
        email=payload.email,
        role=UserRole.STUDENT,
        status=UserStatus.ACTIVE,
        password=password,
        must_change_password=True,
        email_verified=True,
    )
    student = accounts.attach(
        user,
        Student(
            user_id=user.id,
            nisn=payload.nisn,
            full_name=payload.full_name,
            kelas=payload.kelas,
            jurusan=payload.jurusan,
            wali_kelas=payload.wali_kelas,
            tahun_ajaran=payload.tahun_ajaran,
            phone=payload.phone,
            address=payload.address,
            is_verified=True,
            verified_at=datetime.utcnow(),
            verified_by=admin.id,
        ),
        failure_message="Gagal membuat profil siswa",
        description=f"student profile insert for user {user.id}",
    )

    log_activity(
        db,
        admin.id,
        "CREATE_STUDENT",
        f"Created student {student.full_name}",
        {"studentId": student.id, "nisn": student.nisn, "email": user.email},
    )
    return envelope(
        {
            "student": {"id": student.id, "nisn": student.nisn, "fullName": student.full_name, "email": user.email},
            "generatedPassword": password,
        },
        "Siswa berhasil dibuat",
    )


@app.post("/admin/teachers", status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def create_teacher(
    request: Request,
    payload: AdminCreateTeacher,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    accounts: AccountFactory = Depends(get_account_factory),
) -> dict:
    accounts.ensure_nip_available(payload.nip)
    accounts.ensure_email_available(payload.email)

    password = accounts.generate_password()
    user = accounts.create_user(
        email=payload.email,
        role=UserRole.TEACHER,
        status=UserStatus.ACTIVE,
        password=password,
        must_change_password=True,
        email_verified=True,
    )
    teacher = accounts.attach(
        user,
        Teacher(
            user_id=user.id,
            nip=payload.nip,
            full_name=payload.full_name,
            subject=payload.subject,
            phone=payload.phone,
            address=payload.address,
            is_verified=True,
            verified_at=datetime.utcnow(),
            verified_by=admin.id,
        ),
        failure_message="Gagal membuat profil guru",
        description=f"teacher profile insert for user {user.id}",
    )

    log_activity(
        db,
        admin.id,
        "CREATE_TEACHER",
        f"Created teacher {teacher.full_name}",
        {"teacherId": teacher.id, "nip": teacher.nip, "email": user.email},
    )
    return envelope(
        {
            "teacher": {"id": teacher.id, "nip": teacher.nip, "fullName": teacher.full_name, "email": user.email},
            "generatedPassword": password,
        },
        "Guru berhasil dibuat",
    )


@app.post("/admin/admins", status_code=status.HTTP_201_CREATED)
@limiter.limit("5/minute")
def create_admin(
    request: Request,
    payload: CreateAdmin,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    accounts: AccountFactory = Depends(get_account_factory),
    settings: Settings = Depends(get_settings),
) -> dict:
    if admin.role != UserRole.SUPER_ADMIN:
        raise Forbidden("Hanya Super Admin yang dapat membuat admin baru")
    accounts.ensure_email_available(payload.email)

    password = accounts.generate_password(settings.admin_generated_password_length)
    user = accounts.create_user(
        email=payload.email,
        role=UserRole.SUPER_ADMIN if payload.is_super_admin else UserRole.ADMIN,
        status=UserStatus.ACTIVE,
        password=password,
        must_change_password=True,
        email_verified=True,
    )
    profile = accounts.attach(
        user,
        Admin(
            user_id=user.id,
            full_name=payload.full_name,
            phone=payload.phone,
            is_super_admin=payload.is_super_admin,
            permissions={"all": True} if payload.is_super_admin else {},
        ),
        failure_message="Gagal membuat profil admin",
        description=f"admin profile insert for user {user.id}",
    )

    log_activity(
        db,
        admin.id,
        "CREATE_ADMIN",
        f"Created {'super admin' if payload.is_super_admin else 'admin'} {user.email}",
        {"adminId": profile.id, "email": user.email, "isSuperAdmin": payload.is_super_admin},
    )
    account = CreatedAccount(id=user.id, email=user.email, full_name=profile.full_name, generated_password=password)
    return envelope(account, "Admin berhasil dibuat")


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


def _active_user_ids(db: Session, roles: Optional[list[UserRole]] = None) -> list[str]:
    query = db.query(User.id).filter(User.status == UserStatus.ACTIVE)
    if roles:
        query = query.filter(User.role.in_(roles))
    return [row.id for row in query.all()]


@app.post("/admin/notifications/broadcast")
@limiter.limit("10/minute")
def broadcast_notification(
    request: Request,
    payload: BroadcastNotification,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict:
    recipients = _active_user_ids(db)
    if not recipients:
        raise BadRequest("Tidak ada user aktif")

    sent = notify_many(
        db, recipients, payload.title, payload.message, type=NotificationType.BROADCAST, sender_id=admin.id
    )
    log_activity(db, admin.id, "BROADCAST", f"Broadcast '{payload.title}'", {"recipientCount": sent})
    return envelope({"recipientCount": sent}, f"Notifikasi berhasil dikirim ke {sent} user")


@app.post("/admin/notifications/send")
@limiter.limit("20/minute")
def send_notification(
    request: Request,
    payload: SendNotification,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict:
    recipient = db.get(User, payload.recipient_id)
    if not recipient:
        raise NotFound("Penerima tidak ditemukan")

    notify(db, recipient.id, payload.title, payload.message, type=NotificationType.TARGETED, sender_id=admin.id)
    log_activity(
        db,
        admin.id,
        "SEND_NOTIFICATION",
        f"Sent '{payload.title}' to {recipient.email}",
        {"recipientId": recipient.id},
    )
    return envelope(message="Notifikasi berhasil dikirim")


@app.post("/admin/notifications/role-broadcast")
@limiter.limit("10/minute")
def role_broadcast_notification(
    request: Request,
    payload: RoleBroadcastNotification,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict:
    recipients = _active_user_ids(db, payload.target_roles)
    if not recipients:
        raise BadRequest("Tidak ada user aktif dengan role tersebut")

    target_roles = [role.value for role in payload.target_roles]
    sent = notify_many(
        db,
        recipients,
        payload.title,
        payload.message,
        type=NotificationType.BROADCAST,
        sender_id=admin.id,
        extra={"targetRoles": target_roles},
    )
    log_activity(
        db,
        admin.id,
        "ROLE_BROADCAST",
        f"Role broadcast '{payload.title}'",
        {"targetRoles": target_roles, "recipientCount": sent},
    )
    return envelope(
        {"recipientCount": sent, "roleCount": len(target_roles)},
        f"Notifikasi berhasil dikirim ke {sent} user",
    )


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


@app.get("/admin/dashboard/stats")
@limiter.limit("30/minute")
def dashboard_stats(
    request: Request,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict:
    def count(*criteria) -> int:
        return db.query(func.count(User.id)).filter(*criteria).scalar() or 0

    pending = (
        db.query(func.count(RegistrationRequest.id))
        .filter(RegistrationRequest.status == RegistrationStatus.PENDING)
        .scalar()
        or 0
    )
    recent = db.query(ActivityLog).order_by(ActivityLog.created_at.desc()).limit(10).all()
    return envelope(
        {
            "totalStudents": count(User.role == UserRole.STUDENT, User.status == UserStatus.ACTIVE),
            "totalTeachers": count(User.role == UserRole.TEACHER, User.status == UserStatus.ACTIVE),
            "totalParents": count(User.role == UserRole.PARENT, User.status == UserStatus.ACTIVE),
            "totalUsers": count(User.status == UserStatus.ACTIVE),
            "pendingRegistrations": pending,
            "recentActivities": [ActivityLogOut.model_validate(row) for row in recent],
        }
    )
