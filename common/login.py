"""Session lifecycle: start a session after login, rotate it on refresh, end it on logout."""
from __future__ import annotations

import logging
import time
from typing import Optional

from sqlalchemy.orm import Session

from .activity import log_activity
from .auth import TokenIssuer
from .errors import Unauthorized
from .models import DeviceSession, User, UserStatus
from .profiles import RoleProfile, build_authenticated_user, profile_of
from .schemas import AuthSession
from .sessions import DEFAULT_DEVICE_NAME, DEFAULT_DEVICE_TYPE, DeviceInfo, DeviceSessionRegistry
from .tokens import RefreshTokenStore

logger = logging.getLogger(__name__)

INVALID_REFRESH_MESSAGE = "Refresh token tidak valid atau sudah kedaluwarsa"


class LoginService:
    def __init__(
        self,
        db: Session,
        issuer: TokenIssuer,
        refresh_tokens: RefreshTokenStore,
        sessions: DeviceSessionRegistry,
    ) -> None:
        self.db = db
        self.issuer = issuer
        self.refresh_tokens = refresh_tokens
        self.sessions = sessions

    def start(self, user: User, profile: Optional[RoleProfile], device: Optional[DeviceInfo] = None) -> AuthSession:
        tokens = self.issuer.issue(user.id, user.email, user.role)
        self.refresh_tokens.store(user.id, tokens.refresh_token)
        session = self.sessions.register(user.id, tokens.refresh_token, device)
        return AuthSession(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=int(time.time() * 1000) + tokens.expires_in * 1000,
            session_id=session.id,
            user=build_authenticated_user(user, profile),
        )

    def refresh(self, raw_token: str, device: Optional[DeviceInfo] = None) -> AuthSession:
        """Exchange a refresh token for a new pair. Each refresh token works once."""

        record = self.refresh_tokens.find(raw_token)
        if record is None:
            raise Unauthorized(INVALID_REFRESH_MESSAGE)

        user = self.db.get(User, record.user_id)
        session = self.sessions.find_active(record.user_id, raw_token)

        # The presented token is consumed whether or not the exchange succeeds.
        self.refresh_tokens.revoke_record(record)

        if user is None or user.status != UserStatus.ACTIVE:
            logger.info("Refresh refused for %s: account missing or not active", record.user_id)
            raise Unauthorized(INVALID_REFRESH_MESSAGE)
        if session is None:
            logger.info("Refresh refused for %s: device session revoked or expired", user.id)
            raise Unauthorized("Sesi sudah berakhir, silakan login kembali")

        self.sessions.deactivate(session)
        return self.start(user, profile_of(user), self._carry_device(session, device))

    @staticmethod
    def _carry_device(previous: DeviceSession, device: Optional[DeviceInfo]) -> DeviceInfo:
        device = device or DeviceInfo()
        return DeviceInfo(
            name=previous.device_name if device.name == DEFAULT_DEVICE_NAME else device.name,
            type=previous.device_type if device.type == DEFAULT_DEVICE_TYPE else device.type,
            user_agent=device.user_agent or previous.user_agent,
            ip=device.ip or previous.ip_address,
        )

    def logout(self, user_id: str, raw_token: Optional[str] = None) -> None:
        if raw_token:
            record = self.refresh_tokens.find(raw_token, user_id=user_id)
            if record is not None:
                self.refresh_tokens.revoke_record(record)
            session = self.sessions.find_active(user_id, raw_token)
            if session is not None:
                self.sessions.deactivate(session)
            log_activity(self.db, user_id, "LOGOUT", "Logged out from one device")
        else:
            self.end_all(user_id)
            log_activity(self.db, user_id, "LOGOUT", "Logged out from all devices")

    def end_all(self, user_id: str) -> None:
        """Revoke every refresh token and device session a user holds."""

        self.refresh_tokens.revoke_all(user_id)
        self.sessions.revoke_all(user_id)
