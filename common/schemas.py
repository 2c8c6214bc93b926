"""Pydantic schemas shared across the services.

JSON bodies use camelCase on the wire; Python code uses snake_case.
"""
from __future__ import annotations

import re
from datetime import date, datetime
from typing import Annotated, Any, Dict, List, Optional

from fastapi.encoders import jsonable_encoder
from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field, StringConstraints
from pydantic.alias_generators import to_camel

from .models import (
    AttendanceStatus,
    LinkStatus,
    NotificationType,
    ParentRelationship,
    RegistrationStatus,
    RegistrationType,
    UserRole,
    UserStatus,
)

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]

_DIGITS = re.compile(r"^[0-9]+$")
_SPECIALS = "@$!%*?&"


def validate_nisn(value: str) -> str:
    if len(value) != 10:
        raise ValueError("NISN harus 10 digit")
    if not _DIGITS.match(value):
        raise ValueError("NISN hanya boleh berisi angka")
    return value


def validate_strong_password(value: str) -> str:
    if len(value) < 8:
        raise ValueError("Password minimal 8 karakter")
    checks = (
        any(ch.islower() for ch in value),
        any(ch.isupper() for ch in value),
        any(ch.isdigit() for ch in value),
        any(ch in _SPECIALS for ch in value),
    )
    if not all(checks):
        raise ValueError("Password harus mengandung huruf besar, huruf kecil, angka, dan karakter spesial")
    return value


Nisn = Annotated[str, AfterValidator(validate_nisn)]
StrongPassword = Annotated[str, AfterValidator(validate_strong_password)]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


def envelope(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    """Wrap a payload in the ``{success, message, data}`` response shape."""

    body: Dict[str, Any] = {"success": True}
    if message is not None:
        body["message"] = message
    if data is not None:
        body["data"] = jsonable_encoder(data, by_alias=True)
    return body


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        return cls(page=page, limit=limit, total=total, total_pages=(total + limit - 1) // limit if limit else 0)


# ---------------------------------------------------------------------------
# Auth requests
# ---------------------------------------------------------------------------


class SignupStudent(CamelModel):
    nisn: Nisn
    full_name: NonEmptyStr
    email: EmailStr
    phone: NonEmptyStr
    kelas: NonEmptyStr
    jurusan: NonEmptyStr
    tahun_ajaran: NonEmptyStr
    date_of_birth: Optional[date] = None
    address: Optional[str] = None


class SignupTeacher(CamelModel):
    nip: NonEmptyStr
    full_name: NonEmptyStr
    email: EmailStr
    phone: NonEmptyStr
    subject: NonEmptyStr
    address: Optional[str] = None


class SignupParent(CamelModel):
    email: EmailStr
    password: StrongPassword
    full_name: NonEmptyStr
    phone: NonEmptyStr
    relationship: ParentRelationship
    address: Optional[str] = None
    child_nisn: Optional[Nisn] = None


class LoginStudent(CamelModel):
    nisn: NonEmptyStr
    password: NonEmptyStr


class LoginTeacher(CamelModel):
    nip_or_email: NonEmptyStr
    password: NonEmptyStr


class LoginEmail(CamelModel):
    email: EmailStr
    password: NonEmptyStr


class ChangePasswordRequest(CamelModel):
    current_password: NonEmptyStr
    new_password: StrongPassword
    confirm_password: NonEmptyStr

class RefreshRequest(CamelModel):
    refresh_token: NonEmptyStr


class LogoutRequest(CamelModel):
    refresh_token: Optional[str] = None


# ---------------------------------------------------------------------------
# Projections
# ---------------------------------------------------------------------------


class StudentProfile(CamelModel):
    id: str
    user_id: str
    nisn: str
    full_name: str
    kelas: Optional[str] = None
    jurusan: Optional[str] = None
    wali_kelas: Optional[str] = None
    tahun_ajaran: Optional[str] = None
    date_of_birth: Optional[date] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    avatar_url: Optional[str] = None
    is_verified: bool
    verified_at: Optional[datetime] = None


class TeacherProfile(CamelModel):
    id: str
    user_id: str
    nip: str
    full_name: str
    subject: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    avatar_url: Optional[str] = None
    is_verified: bool
    verified_at: Optional[datetime] = None


class LinkedStudent(CamelModel):
    id: str
    nisn: str
    full_name: str
    kelas: Optional[str] = None
    jurusan: Optional[str] = None


class ParentProfile(CamelModel):
    id: str
    user_id: str
    student_id: Optional[str] = None
    full_name: str
    phone: Optional[str] = None
    address: Optional[str] = None
    relationship: ParentRelationship = Field(validation_alias="relation")
    link_status: Optional[LinkStatus] = None
    link_requested_at: Optional[datetime] = None
    link_approved_at: Optional[datetime] = None
    student: Optional[LinkedStudent] = None


class AdminProfile(CamelModel):
    id: str
    user_id: str
    full_name: str
    phone: Optional[str] = None
    is_super_admin: bool
    permissions: Dict[str, Any] = Field(default_factory=dict)


class AuthenticatedUser(CamelModel):
    id: str
    email: Optional[str] = None
    role: UserRole
    status: UserStatus
    email_verified: bool
    must_change_password: bool
    last_login: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    profile: Optional[Dict[str, Any]] = None


class AuthSession(CamelModel):
    access_token: str
    refresh_token: str
    expires_at: int
    session_id: Optional[str] = None
    user: AuthenticatedUser


class UserSummary(CamelModel):
    id: str
    email: Optional[str] = None
    role: UserRole
    status: UserStatus
    email_verified: bool
    must_change_password: bool
    last_login: Optional[datetime] = None
    created_at: datetime


class DeviceSessionOut(CamelModel):
    id: str
    device_name: str
    device_type: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool
    last_activity: datetime
    created_at: datetime


class ActivityLogOut(CamelModel):
    id: str
    user_id: Optional[str] = None
    action: str
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="extra")
    created_at: datetime


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class ApproveRegistration(CamelModel):
    notes: Optional[str] = None


class RejectRegistration(CamelModel):
    reason: NonEmptyStr


class RegistrationRequestOut(CamelModel):
    id: str
    user_id: str
    type: RegistrationType
    form_data: Dict[str, Any]
    status: RegistrationStatus
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    admin_notes: Optional[str] = None
    created_at: datetime


class RegistrationRequestDetail(RegistrationRequestOut):
    email: Optional[str] = None
    generated_password: Optional[str] = None


class ApprovalResult(CamelModel):
    generated_password: str
    user_email: Optional[str] = None


class AdminCreateStudent(CamelModel):
    nisn: Nisn
    full_name: NonEmptyStr
    email: EmailStr
    phone: NonEmptyStr
    kelas: NonEmptyStr
    jurusan: NonEmptyStr
    tahun_ajaran: NonEmptyStr
    wali_kelas: Optional[str] = None
    address: Optional[str] = None


class AdminCreateTeacher(CamelModel):
    nip: NonEmptyStr
    full_name: NonEmptyStr
    email: EmailStr
    phone: NonEmptyStr
    subject: NonEmptyStr
    address: Optional[str] = None


class CreateAdmin(CamelModel):
    email: EmailStr
    full_name: NonEmptyStr
    phone: Optional[str] = None
    is_super_admin: bool = False


class CreatedAccount(CamelModel):
    id: str
    email: str
    full_name: str
    generated_password: str


class SuspendUser(CamelModel):
    reason: Optional[str] = None


class BroadcastNotification(CamelModel):
    title: NonEmptyStr
    message: NonEmptyStr


class SendNotification(BroadcastNotification):
    recipient_id: NonEmptyStr


class RoleBroadcastNotification(BroadcastNotification):
    target_roles: List[UserRole] = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


class ProfileUpdate(CamelModel):
    full_name: Optional[NonEmptyStr] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    avatar_url: Optional[str] = None
    date_of_birth: Optional[date] = None


class ProfilePasswordChange(CamelModel):
    current_password: NonEmptyStr
    new_password: StrongPassword


class LogoutAllSessions(CamelModel):
    current_session_id: Optional[str] = None


class DeleteAccount(CamelModel):
    password: str = ""


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class NotificationOut(CamelModel):
    id: str
    sender_id: Optional[str] = None
    recipient_id: str
    type: NotificationType
    title: str
    message: str
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="extra")
    is_read: bool
    read_at: Optional[datetime] = None
    sent_at: datetime


# ---------------------------------------------------------------------------
# Attendance
# ---------------------------------------------------------------------------


class CreateAttendanceSession(CamelModel):
    title: NonEmptyStr
    description: Optional[str] = None
    location: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    validity_minutes: Optional[int] = Field(default=None, ge=1, le=1440)


class CheckIn(CamelModel):
    session_id: NonEmptyStr
    qr_token: NonEmptyStr
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class AttendanceSessionOut(CamelModel):
    id: str
    creator_id: str
    title: str
    description: Optional[str] = None
    location: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    qr_token: str
    valid_until: datetime
    is_active: bool
    created_at: datetime


class AttendanceSessionSummary(CamelModel):
    id: str
    title: str
    location: Optional[str] = None
    created_at: datetime


class AttendanceRecordOut(CamelModel):
    id: str
    session_id: str
    user_id: str
    check_in_time: datetime
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    status: AttendanceStatus


class MyAttendanceRecord(AttendanceRecordOut):
    session: Optional[AttendanceSessionSummary] = None


class AttendanceSessionWithQr(CamelModel):
    session: AttendanceSessionOut
    qr_code: str


# ---------------------------------------------------------------------------
# Parent link
# ---------------------------------------------------------------------------


class ParentLinkRequest(CamelModel):
    nisn: Nisn


class PendingParentLink(CamelModel):
    id: str
    user_id: str
    full_name: str
    phone: Optional[str] = None
    relationship: ParentRelationship = Field(validation_alias="relation")
    link_requested_at: Optional[datetime] = None
