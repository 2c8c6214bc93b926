import logging
from typing import Optional

from fastapi import Depends, Query, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from common.accounts import AccountFactory
from common.activity import log_activity
from common.app_factory import create_service_app
from common.credentials import CredentialVerifier
from common.database import get_db
from common.dependencies import (
    get_account_factory,
    get_credential_verifier,
    get_current_user,
    get_refresh_token_store,
    get_session_registry,
)
from common.errors import BadRequest, NotFound
from common.models import ActivityLog, Admin, Parent, Student, Teacher, User, UserRole
from common.profiles import build_authenticated_user, profile_of
from common.rate_limit import limiter
from common.schemas import (
    ActivityLogOut,
    DeleteAccount,
    DeviceSessionOut,
    LogoutAllSessions,
    Pagination,
    ProfilePasswordChange,
    ProfileUpdate,
    envelope,
)
from common.sessions import DeviceSessionRegistry
from common.tokens import RefreshTokenStore

logger = logging.getLogger(__name__)

app = create_service_app("Profile Service", "profile")

EDITABLE_FIELDS = {
    Student: {"full_name", "phone", "address", "avatar_url", "date_of_birth"},
    Teacher: {"full_name", "phone", "address", "avatar_url"},
    Parent: {"full_name", "phone", "address"},
    Admin: {"full_name", "phone"},
}


@app.get("/profile")
@limiter.limit("30/minute")
def get_profile(request: Request, current_user: User = Depends(get_current_user)) -> dict:
    return envelope(build_authenticated_user(current_user))


@app.patch("/profile")
@limiter.limit("10/minute")
def update_profile(
    request: Request,
    payload: ProfileUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    profile = profile_of(current_user)
    if profile is None:
        raise NotFound("Profil tidak ditemukan")

    allowed = EDITABLE_FIELDS[type(profile)]
    submitted = payload.model_dump(exclude_unset=True, exclude_none=True)
    changes = {key: value for key, value in submitted.items() if key in allowed}
    for key, value in changes.items():
        setattr(profile, key, value)
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Failed to update profile for %s: %s", current_user.id, exc)
        raise BadRequest("Gagal memperbarui profil") from exc

    log_activity(db, current_user.id, "UPDATE_PROFILE", "Profile updated", {"fields": sorted(changes)})
    return envelope(build_authenticated_user(current_user, profile), "Profil berhasil diupdate")


@app.get("/profile/security/sessions")
@limiter.limit("30/minute")
def list_sessions(
    request: Request,
    current_user: User = Depends(get_current_user),
    sessions: DeviceSessionRegistry = Depends(get_session_registry),
) -> dict:
    active = sessions.list_active(current_user.id)
    return envelope([DeviceSessionOut.model_validate(session) for session in active])


@app.delete("/profile/security/sessions/{session_id}")
@limiter.limit("10/minute")
def revoke_session(
    request: Request,
    session_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    sessions: DeviceSessionRegistry = Depends(get_session_registry),
) -> dict:
    revoked = sessions.revoke(current_user.id, session_id)
    log_activity(
        db,
        current_user.id,
        "REVOKE_SESSION",
        f"Revoked session on {revoked.device_name}",
        {"sessionId": session_id},
    )
    return envelope(message="Sesi berhasil dicabut")


@app.post("/profile/security/sessions/logout-all")
@limiter.limit("5/minute")
def logout_all_sessions(
    request: Request,
    payload: Optional[LogoutAllSessions] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    sessions: DeviceSessionRegistry = Depends(get_session_registry),
    refresh_tokens: RefreshTokenStore = Depends(get_refresh_token_store),
) -> dict:
    current_session_id = payload.current_session_id if payload else None
    revoked = sessions.revoke_all_others(current_user.id, current_session_id)
    if not current_session_id:
        refresh_tokens.revoke_all(current_user.id)

    log_activity(
        db,
        current_user.id,
        "REVOKE_ALL_SESSIONS",
        f"Revoked {revoked} session(s)",
        {"keptSessionId": current_session_id},
    )
    return envelope({"revokedCount": revoked}, "Semua sesi lain berhasil dicabut")


@app.get("/profile/security/activity")
@limiter.limit("30/minute")
def activity_log(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(ActivityLog).filter(ActivityLog.user_id == current_user.id)
    total = query.count()
    rows = query.order_by(ActivityLog.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return envelope(
        {
            "activities": [ActivityLogOut.model_validate(row) for row in rows],
            "pagination": Pagination.build(page, limit, total),
        }
    )


@app.patch("/profile/security/password")
@limiter.limit("5/minute")
def change_password(
    request: Request,
    payload: ProfilePasswordChange,
    current_user: User = Depends(get_current_user),
    verifier: CredentialVerifier = Depends(get_credential_verifier),
) -> dict:
    verifier.change_password(current_user.id, payload.current_password, payload.new_password, payload.new_password)
    return envelope(message="Password berhasil diubah")


@app.delete("/profile/account")
@limiter.limit("3/minute")
def delete_account(
    request: Request,
    payload: DeleteAccount,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    verifier: CredentialVerifier = Depends(get_credential_verifier),
    accounts: AccountFactory = Depends(get_account_factory),
) -> dict:
    if current_user.role == UserRole.SUPER_ADMIN:
        raise BadRequest("Super Admin tidak dapat menghapus akun sendiri")
    if not verifier.verify_password(current_user, payload.password):
        raise BadRequest("Password salah")

    user_id = current_user.id
    try:
        accounts.delete_user(current_user)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Failed to delete account %s: %s", user_id, exc)
        raise BadRequest("Gagal menghapus akun") from exc

    logger.info("Account %s deleted by its owner", user_id)
    return envelope(message="Akun berhasil dihapus")
