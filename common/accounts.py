"""Account creation primitives shared by self-registration and admin creation."""
from __future__ import annotations

import logging
from typing import Optional, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .auth import PasswordHasher, generate_password
from .compensation import run_compensated
from .config import Settings
from .errors import BadRequest, Conflict
from .models import RegistrationRequest, RegistrationStatus, RegistrationType, Student, Teacher, User, UserRole, UserStatus

logger = logging.getLogger(__name__)

P = TypeVar("P")


class AccountFactory:
    def __init__(self, db: Session, hasher: PasswordHasher, settings: Settings) -> None:
        self.db = db
        self.hasher = hasher
        self.settings = settings

    # -- natural key checks -------------------------------------------------

    def ensure_email_available(self, email: str) -> None:
        if self.db.query(User.id).filter(User.email == email).first():
            raise Conflict("Email sudah terdaftar")

    def _pending_request_exists(self, kind: RegistrationType, natural_key: str) -> bool:
        return (
            self.db.query(RegistrationRequest.id)
            .filter(
                RegistrationRequest.type == kind,
                RegistrationRequest.natural_key == natural_key,
                RegistrationRequest.status == RegistrationStatus.PENDING,
            )
            .first()
            is not None
        )

    def ensure_nisn_available(self, nisn: str) -> None:
        if self.db.query(Student.id).filter(Student.nisn == nisn).first():
            raise Conflict("NISN sudah terdaftar")
        if self._pending_request_exists(RegistrationType.STUDENT, nisn):
            raise Conflict("Sudah ada pendaftaran dengan NISN yang sama yang sedang diproses")

    def ensure_nip_available(self, nip: str) -> None:
        if self.db.query(Teacher.id).filter(Teacher.nip == nip).first():
            raise Conflict("NIP sudah terdaftar")
        if self._pending_request_exists(RegistrationType.TEACHER, nip):
            raise Conflict("Sudah ada pendaftaran dengan NIP yang sama yang sedang diproses")

    # -- writes -------------------------------------------------------------

    def generate_password(self, length: Optional[int] = None) -> str:
        return generate_password(
            length or self.settings.generated_password_length,
            self.settings.generated_password_alphabet,
        )

    def create_user(
        self,
        *,
        email: str,
        role: UserRole,
        status: UserStatus,
        password: Optional[str] = None,
        must_change_password: bool = False,
        email_verified: bool = False,
    ) -> User:
        user = User(
            email=email,
            role=role,
            status=status,
            password_hash=self.hasher.hash(password) if password else None,
            must_change_password=must_change_password,
            email_verified=email_verified,
        )
        try:
            self.db.add(user)
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            logger.warning("User insert for %s hit a uniqueness constraint: %s", email, exc)
            raise Conflict("Email sudah terdaftar") from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Failed to create user %s: %s", email, exc)
            raise BadRequest("Gagal membuat akun") from exc
        return user

    def delete_user(self, user: User) -> None:
        self.db.delete(user)
        self.db.commit()

    def insert(self, row: P) -> P:
        self.db.add(row)
        self.db.commit()
        return row

    def attach(self, user: User, row: P, *, failure_message: str, description: str) -> P:
        """Insert a row that depends on a freshly created user, deleting the user if it fails."""

        return run_compensated(
            self.db,
            lambda: self.insert(row),
            lambda: self.delete_user(user),
            failure_message=failure_message,
            description=description,
        )
