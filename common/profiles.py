"""Role profile lookup and the authenticated-user projection."""
from __future__ import annotations

from typing import Any, Dict, Optional, Union

from .models import Admin, Parent, Student, Teacher, User, UserRole
from .schemas import AdminProfile, AuthenticatedUser, ParentProfile, StudentProfile, TeacherProfile

RoleProfile = Union[Student, Teacher, Parent, Admin]


def profile_of(user: User) -> Optional[RoleProfile]:
    if user.role == UserRole.STUDENT:
        return user.student
    if user.role == UserRole.TEACHER:
        return user.teacher
    if user.role == UserRole.PARENT:
        return user.parent
    if user.role in (UserRole.ADMIN, UserRole.SUPER_ADMIN):
        return user.admin
    return None


def profile_payload(profile: Optional[RoleProfile]) -> Optional[Dict[str, Any]]:
    if profile is None:
        return None
    if isinstance(profile, Student):
        schema = StudentProfile
    elif isinstance(profile, Teacher):
        schema = TeacherProfile
    elif isinstance(profile, Parent):
        schema = ParentProfile
    else:
        schema = AdminProfile
    return schema.model_validate(profile).model_dump(by_alias=True, mode="json")


def build_authenticated_user(user: User, profile: Optional[RoleProfile] = None) -> AuthenticatedUser:
    return AuthenticatedUser(
        id=user.id,
        email=user.email,
        role=user.role,
        status=user.status,
        email_verified=user.email_verified,
        must_change_password=user.must_change_password,
        last_login=user.last_login,
        created_at=user.created_at,
        updated_at=user.updated_at,
        profile=profile_payload(profile if profile is not None else profile_of(user)),
    )
