"""Reusable FastAPI dependencies: component wiring and the auth guard chain."""
from typing import Callable, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from .accounts import AccountFactory
from .auth import PasswordHasher, TokenIssuer
from .config import Settings, get_settings
from .credentials import CredentialVerifier
from .database import get_db
from .errors import Forbidden, Unauthorized
from .login import LoginService
from .models import User, UserRole, UserStatus
from .registration import RegistrationWorkflow
from .sessions import DeviceSessionRegistry
from .tokens import RefreshTokenStore

bearer_scheme = HTTPBearer(auto_error=False)


def get_password_hasher(settings: Settings = Depends(get_settings)) -> PasswordHasher:
    return PasswordHasher(rounds=settings.bcrypt_rounds)


def get_token_issuer(settings: Settings = Depends(get_settings)) -> TokenIssuer:
    return TokenIssuer(settings)


def get_refresh_token_store(
    db: Session = Depends(get_db),
    hasher: PasswordHasher = Depends(get_password_hasher),
    settings: Settings = Depends(get_settings),
) -> RefreshTokenStore:
    return RefreshTokenStore(db, hasher, settings)


def get_session_registry(
    db: Session = Depends(get_db),
    hasher: PasswordHasher = Depends(get_password_hasher),
    settings: Settings = Depends(get_settings),
) -> DeviceSessionRegistry:
    return DeviceSessionRegistry(db, hasher, settings)


def get_credential_verifier(
    db: Session = Depends(get_db),
    hasher: PasswordHasher = Depends(get_password_hasher),
) -> CredentialVerifier:
    return CredentialVerifier(db, hasher)


def get_account_factory(
    db: Session = Depends(get_db),
    hasher: PasswordHasher = Depends(get_password_hasher),
    settings: Settings = Depends(get_settings),
) -> AccountFactory:
    return AccountFactory(db, hasher, settings)


def get_login_service(
    db: Session = Depends(get_db),
    issuer: TokenIssuer = Depends(get_token_issuer),
    refresh_tokens: RefreshTokenStore = Depends(get_refresh_token_store),
    sessions: DeviceSessionRegistry = Depends(get_session_registry),
) -> LoginService:
    return LoginService(db, issuer, refresh_tokens, sessions)


def get_registration_workflow(
    db: Session = Depends(get_db),
    accounts: AccountFactory = Depends(get_account_factory),
) -> RegistrationWorkflow:
    return RegistrationWorkflow(db, accounts)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
    issuer: TokenIssuer = Depends(get_token_issuer),
) -> User:
    """Verify the bearer token, then reload the user so bans and deletions apply immediately."""

    if credentials is None or not credentials.credentials:
        raise Unauthorized("Token tidak ditemukan")
    payload = issuer.decode(credentials.credentials)
    user = db.get(User, payload["sub"])
    if user is None or user.status != UserStatus.ACTIVE:
        raise Unauthorized("Akun tidak ditemukan atau tidak aktif")
    return user


def require_roles(*roles: UserRole) -> Callable[[User], User]:
    allowed = set(roles)

    def dependency(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role == UserRole.SUPER_ADMIN or current_user.role in allowed:
            return current_user
        raise Forbidden(f"Akses ditolak: memerlukan salah satu peran [{', '.join(r.value for r in roles)}]")

    return dependency


require_admin = require_roles(UserRole.ADMIN)
