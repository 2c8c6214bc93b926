"""Registration approval workflow.

Students and teachers self-register into a pending account plus a
registration request. An admin either approves (account activated with a
generated password, verified role profile created) or rejects (account marked
rejected). Both outcomes are terminal. Parents skip approval entirely.

The pending-status guard on approve/reject is a read followed by a write with
no compare-and-set, so two admins acting on the same request at the same
moment can both pass it.
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import List, Optional, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .accounts import AccountFactory
from .activity import log_activity, notify, notify_admins
from .compensation import run_compensated
from .errors import BadRequest, NotFound
from .models import (
    LinkStatus,
    NotificationType,
    Parent,
    RegistrationRequest,
    RegistrationStatus,
    RegistrationType,
    Student,
    Teacher,
    User,
    UserRole,
    UserStatus,
)
from .schemas import ApprovalResult, SignupParent, SignupStudent, SignupTeacher

logger = logging.getLogger(__name__)

SUBMITTED_MESSAGE = "Pendaftaran berhasil dikirim. Silakan tunggu persetujuan admin."


class RegistrationWorkflow:
    def __init__(self, db: Session, accounts: AccountFactory) -> None:
        self.db = db
        self.accounts = accounts

    def _commit(self, failure_message: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("%s: %s", failure_message, exc)
            raise BadRequest(failure_message) from exc

    # -- submit -------------------------------------------------------------

    def _submit(
        self,
        kind: RegistrationType,
        natural_key: str,
        email: str,
        form_data: dict,
    ) -> RegistrationRequest:
        role = UserRole.STUDENT if kind == RegistrationType.STUDENT else UserRole.TEACHER
        user = self.accounts.create_user(
            email=email,
            role=role,
            status=UserStatus.PENDING,
            must_change_password=True,
        )
        request = RegistrationRequest(
            user_id=user.id,
            type=kind,
            natural_key=natural_key,
            form_data=form_data,
            status=RegistrationStatus.PENDING,
        )
        return self.accounts.attach(
            user,
            request,
            failure_message="Gagal membuat permintaan pendaftaran",
            description=f"registration request insert for user {user.id}",
        )

    def submit_student(self, dto: SignupStudent) -> RegistrationRequest:
        self.accounts.ensure_nisn_available(dto.nisn)
        self.accounts.ensure_email_available(dto.email)

        request = self._submit(
            RegistrationType.STUDENT,
            dto.nisn,
            dto.email,
            dto.model_dump(mode="json", by_alias=True),
        )
        notify_admins(
            self.db,
            "Pendaftaran Siswa Baru",
            f"{dto.full_name} (NISN: {dto.nisn}) mendaftar sebagai siswa baru",
            extra={"requestId": request.id, "type": "student_registration"},
        )
        logger.info("Student registration request created: %s", request.id)
        return request

    def submit_teacher(self, dto: SignupTeacher) -> RegistrationRequest:
        self.accounts.ensure_nip_available(dto.nip)
        self.accounts.ensure_email_available(dto.email)

        request = self._submit(
            RegistrationType.TEACHER,
            dto.nip,
            dto.email,
            dto.model_dump(mode="json", by_alias=True),
        )
        notify_admins(
            self.db,
            "Pendaftaran Guru Baru",
            f"{dto.full_name} (NIP: {dto.nip}) mendaftar sebagai guru baru",
            extra={"requestId": request.id, "type": "teacher_registration"},
        )
        logger.info("Teacher registration request created: %s", request.id)
        return request

    def register_parent(self, dto: SignupParent) -> Tuple[User, Parent]:
        self.accounts.ensure_email_available(dto.email)

        user = self.accounts.create_user(
            email=dto.email,
            role=UserRole.PARENT,
            status=UserStatus.ACTIVE,
            password=dto.password,
            must_change_password=False,
        )

        student: Optional[Student] = None
        if dto.child_nisn:
            student = self.db.query(Student).filter(Student.nisn == dto.child_nisn).first()
            if student is None:
                logger.info("Student with NISN %s not found, parent will link later", dto.child_nisn)
            elif not student.is_verified:
                logger.info("Student with NISN %s not verified yet", dto.child_nisn)
                student = None

        parent = Parent(
            user_id=user.id,
            student_id=student.id if student else None,
            full_name=dto.full_name,
            phone=dto.phone,
            address=dto.address,
            relation=dto.relationship,
            link_status=LinkStatus.PENDING if student else None,
            link_requested_at=datetime.utcnow() if student else None,
        )
        self.accounts.attach(
            user,
            parent,
            failure_message="Gagal membuat profil orang tua",
            description=f"parent profile insert for user {user.id}",
        )

        if student is not None:
            notify(
                self.db,
                student.user_id,
                "Permintaan Akses Orang Tua",
                f"{dto.full_name} ({dto.relationship.value}) meminta akses sebagai orang tua Anda. "
                "Apakah Anda menyetujui?",
                type=NotificationType.PARENT_LINK,
                extra={
                    "parentUserId": user.id,
                    "parentName": dto.full_name,
                    "relationship": dto.relationship.value,
                    "parentId": parent.id,
                },
            )
        log_activity(self.db, user.id, "REGISTER", "Parent registered successfully")
        return user, parent

    # -- review -------------------------------------------------------------

    def get(self, request_id: str) -> RegistrationRequest:
        request = self.db.get(RegistrationRequest, request_id)
        if request is None:
            raise NotFound("Pendaftaran tidak ditemukan")
        return request

    def _pending(self, request_id: str) -> RegistrationRequest:
        request = self.get(request_id)
        if request.status != RegistrationStatus.PENDING:
            raise BadRequest("Pendaftaran sudah diproses sebelumnya")
        return request

    @staticmethod
    def _build_profile(request: RegistrationRequest, admin_id: str) -> Union[Student, Teacher]:
        form = request.form_data or {}
        verified = {"is_verified": True, "verified_at": datetime.utcnow(), "verified_by": admin_id}
        if request.type == RegistrationType.STUDENT:
            birth = form.get("dateOfBirth")
            return Student(
                user_id=request.user_id,
                nisn=form.get("nisn") or request.natural_key,
                full_name=form.get("fullName", ""),
                kelas=form.get("kelas"),
                jurusan=form.get("jurusan"),
                tahun_ajaran=form.get("tahunAjaran"),
                date_of_birth=date.fromisoformat(birth) if birth else None,
                phone=form.get("phone"),
                address=form.get("address"),
                **verified,
            )
        return Teacher(
            user_id=request.user_id,
            nip=form.get("nip") or request.natural_key,
            full_name=form.get("fullName", ""),
            subject=form.get("subject"),
            phone=form.get("phone"),
            address=form.get("address"),
            **verified,
        )

    def approve(self, request_id: str, admin_id: str, notes: Optional[str] = None) -> ApprovalResult:
        request = self._pending(request_id)
        user = request.user
        if user is None:
            raise NotFound("User tidak ditemukan")

        password = self.accounts.generate_password()
        previous = (user.password_hash, user.status, user.must_change_password)
        user.password_hash = self.accounts.hasher.hash(password)
        user.status = UserStatus.ACTIVE
        user.must_change_password = True
        self._commit("Gagal mengaktifkan akun")

        def revert_activation() -> None:
            user.password_hash, user.status, user.must_change_password = previous
            self.db.commit()

        profile = self._build_profile(request, admin_id)
        label = "siswa" if request.type == RegistrationType.STUDENT else "guru"
        run_compensated(
            self.db,
            lambda: self.accounts.insert(profile),
            revert_activation,
            failure_message=f"Gagal membuat profil {label}",
            description=f"{label} profile insert for registration {request.id}",
        )

        request.status = RegistrationStatus.APPROVED
        request.reviewed_by = admin_id
        request.reviewed_at = datetime.utcnow()
        request.admin_notes = notes
        request.generated_password = password
        self._commit("Gagal memperbarui status pendaftaran")

        notify(
            self.db,
            user.id,
            "Pendaftaran Disetujui",
            "Selamat! Pendaftaran Anda telah disetujui. Password sementara akan diberikan oleh admin sekolah. "
            "Silakan ganti password setelah login.",
        )
        log_activity(
            self.db,
            admin_id,
            "APPROVE_REGISTRATION",
            f"Approved registration {request.id}",
            {"requestId": request.id, "type": request.type.value, "email": user.email},
        )
        logger.info("Registration %s approved by %s", request.id, admin_id)
        return ApprovalResult(generated_password=password, user_email=user.email)

    def reject(self, request_id: str, admin_id: str, reason: str) -> RegistrationRequest:
        if not reason or not reason.strip():
            raise BadRequest("Alasan penolakan wajib diisi")
        request = self._pending(request_id)

        request.status = RegistrationStatus.REJECTED
        request.rejection_reason = reason
        request.reviewed_by = admin_id
        request.reviewed_at = datetime.utcnow()
        if request.user is not None:
            request.user.status = UserStatus.REJECTED
        self._commit("Gagal menolak pendaftaran")

        notify(
            self.db,
            request.user_id,
            "Pendaftaran Ditolak",
            f"Maaf, pendaftaran Anda ditolak. Alasan: {reason}",
        )
        log_activity(
            self.db,
            admin_id,
            "REJECT_REGISTRATION",
            f"Rejected registration {request.id}",
            {"requestId": request.id, "reason": reason, "email": request.user.email if request.user else None},
        )
        logger.info("Registration %s rejected by %s", request.id, admin_id)
        return request

    # -- listing ------------------------------------------------------------

    def list_requests(
        self,
        status: Optional[RegistrationStatus] = None,
        registration_type: Optional[RegistrationType] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[RegistrationRequest], int]:
        query = self.db.query(RegistrationRequest)
        if status is not None:
            query = query.filter(RegistrationRequest.status == status)
        if registration_type is not None:
            query = query.filter(RegistrationRequest.type == registration_type)
        total = query.count()
        rows = (
            query.order_by(RegistrationRequest.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return rows, total

    def list_pending(self, page: int = 1, limit: int = 20) -> Tuple[List[RegistrationRequest], int]:
        return self.list_requests(status=RegistrationStatus.PENDING, page=page, limit=limit)
