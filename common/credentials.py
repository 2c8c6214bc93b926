"""Credential verification for the four password login identities."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from functools import lru_cache
from typing import Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .activity import log_activity
from .auth import PasswordHasher
from .errors import BadRequest, NotFound, Unauthorized
from .models import ADMIN_ROLES, Student, Teacher, User, UserRole, UserStatus
from .profiles import RoleProfile

logger = logging.getLogger(__name__)


@lru_cache
def _dummy_hash(rounds: int) -> str:
    """Hash compared against when no stored hash is checked, so rejections take equally long."""
    return PasswordHasher(rounds=rounds).hash("dummy-password-for-timing")


class LookupField(str, Enum):
    NISN = "nisn"
    NIP_OR_EMAIL = "nip_or_email"
    EMAIL = "email"
    ADMIN_EMAIL = "admin_email"


_FAILURE_MESSAGES = {
    LookupField.NISN: "NISN atau password salah",
    LookupField.NIP_OR_EMAIL: "NIP/Email atau password salah",
    LookupField.EMAIL: "Email atau password salah",
    LookupField.ADMIN_EMAIL: "Email atau password salah",
}

_LOGIN_DESCRIPTIONS = {
    LookupField.NISN: "Student logged in via NISN",
    LookupField.EMAIL: "Parent logged in via email",
    LookupField.ADMIN_EMAIL: "Admin logged in",
}


@dataclass
class VerifiedIdentity:
    user: User
    profile: RoleProfile


class CredentialVerifier:
    def __init__(self, db: Session, hasher: PasswordHasher) -> None:
        self.db = db
        self.hasher = hasher

    def _resolve(self, lookup_key: str, lookup_field: LookupField) -> Tuple[Optional[User], Optional[RoleProfile]]:
        if lookup_field == LookupField.NISN:
            student = self.db.query(Student).filter(Student.nisn == lookup_key).first()
            return (student.user, student) if student else (None, None)

        if lookup_field == LookupField.NIP_OR_EMAIL:
            if "@" in lookup_key:
                user = (
                    self.db.query(User)
                    .filter(User.email == lookup_key, User.role == UserRole.TEACHER)
                    .first()
                )
                return (user, user.teacher) if user else (None, None)
            teacher = self.db.query(Teacher).filter(Teacher.nip == lookup_key).first()
            return (teacher.user, teacher) if teacher else (None, None)

        if lookup_field == LookupField.EMAIL:
            user = self.db.query(User).filter(User.email == lookup_key, User.role == UserRole.PARENT).first()
            return (user, user.parent) if user else (None, None)

        user = self.db.query(User).filter(User.email == lookup_key, User.role.in_(ADMIN_ROLES)).first()
        return (user, user.admin) if user else (None, None)

    def authenticate(self, lookup_key: str, lookup_field: LookupField, password: str) -> VerifiedIdentity:
        user, profile = self._resolve(lookup_key, lookup_field)

        reason: Optional[str] = None
        if user is None or profile is None:
            reason = "no matching account"
        elif user.status != UserStatus.ACTIVE:
            reason = f"account status is {user.status.value}"
        elif not user.password_hash:
            reason = "account has no password"

        if reason is not None:
            # Every rejection pays for one bcrypt comparison.
            self.hasher.verify(password, _dummy_hash(self.hasher.rounds))
        elif not self.hasher.verify(password, user.password_hash):
            reason = "password mismatch"

        if reason is not None:
            logger.info("Login rejected (%s=%s): %s", lookup_field.value, lookup_key, reason)
            raise Unauthorized(_FAILURE_MESSAGES[lookup_field])

        user.last_login = datetime.utcnow()
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Failed to record last login for %s: %s", user.id, exc)
            raise BadRequest("Gagal memproses login") from exc

        if lookup_field == LookupField.NIP_OR_EMAIL:
            description = f"Teacher logged in via {'email' if '@' in lookup_key else 'NIP'}"
        else:
            description = _LOGIN_DESCRIPTIONS[lookup_field]
        log_activity(self.db, user.id, "LOGIN", description)
        return VerifiedIdentity(user=user, profile=profile)

    def verify_password(self, user: User, password: str) -> bool:
        return self.hasher.verify(password, user.password_hash)

    def change_password(self, user_id: str, current_password: str, new_password: str, confirm_password: str) -> None:
        if new_password != confirm_password:
            raise BadRequest("Password baru dan konfirmasi tidak cocok")

        user = self.db.get(User, user_id)
        if user is None:
            raise NotFound("User tidak ditemukan")
        if not self.hasher.verify(current_password, user.password_hash):
            raise Unauthorized("Password lama salah")

        user.password_hash = self.hasher.hash(new_password)
        user.must_change_password = False
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Failed to change password for %s: %s", user_id, exc)
            raise BadRequest("Gagal mengubah password") from exc

        log_activity(self.db, user_id, "CHANGE_PASSWORD", "Password changed successfully")
