"""Device session registry: one row per login, independently revocable."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .auth import PasswordHasher
from .config import Settings
from .errors import BadRequest, NotFound
from .models import DeviceSession

logger = logging.getLogger(__name__)

DEFAULT_DEVICE_NAME = "Unknown Device"
DEFAULT_DEVICE_TYPE = "unknown"


@dataclass
class DeviceInfo:
    name: str = DEFAULT_DEVICE_NAME
    type: str = DEFAULT_DEVICE_TYPE
    user_agent: Optional[str] = None
    ip: Optional[str] = None

    @classmethod
    def from_request(cls, request: Request) -> "DeviceInfo":
        headers = request.headers
        return cls(
            name=headers.get("x-device-name") or DEFAULT_DEVICE_NAME,
            type=headers.get("x-device-type") or DEFAULT_DEVICE_TYPE,
            user_agent=headers.get("user-agent"),
            ip=request.client.host if request.client else None,
        )


class DeviceSessionRegistry:
    def __init__(self, db: Session, hasher: PasswordHasher, settings: Settings) -> None:
        self.db = db
        self.hasher = hasher
        self.lifetime = timedelta(days=settings.device_session_expire_days)

    def _commit(self, failure_message: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("%s: %s", failure_message, exc)
            raise BadRequest(failure_message) from exc

    def register(self, user_id: str, raw_token: str, device: Optional[DeviceInfo] = None) -> DeviceSession:
        device = device or DeviceInfo()
        now = datetime.utcnow()
        session = DeviceSession(
            user_id=user_id,
            device_name=device.name,
            device_type=device.type,
            user_agent=device.user_agent,
            ip_address=device.ip,
            refresh_token_hash=self.hasher.hash(raw_token),
            is_active=True,
            expires_at=now + self.lifetime,
            last_activity=now,
        )
        self.db.add(session)
        self._commit("Gagal menyimpan sesi perangkat")
        return session

    def list_active(self, user_id: str) -> List[DeviceSession]:
        return (
            self.db.query(DeviceSession)
            .filter(DeviceSession.user_id == user_id, DeviceSession.is_active.is_(True))
            .order_by(DeviceSession.last_activity.desc())
            .all()
        )

    def find_active(self, user_id: str, raw_token: str) -> Optional[DeviceSession]:
        candidates = (
            self.db.query(DeviceSession)
            .filter(
                DeviceSession.user_id == user_id,
                DeviceSession.is_active.is_(True),
                DeviceSession.expires_at > datetime.utcnow(),
            )
            .all()
        )
        for session in candidates:
            if self.hasher.verify(raw_token, session.refresh_token_hash):
                return session
        return None

    def deactivate(self, session: DeviceSession) -> None:
        session.is_active = False
        self._commit("Gagal mencabut sesi")

    def revoke(self, user_id: str, session_id: str) -> DeviceSession:
        session = (
            self.db.query(DeviceSession)
            .filter(DeviceSession.id == session_id, DeviceSession.user_id == user_id)
            .first()
        )
        if not session:
            raise NotFound("Sesi tidak ditemukan")
        self.deactivate(session)
        return session

    def revoke_all_others(self, user_id: str, current_session_id: Optional[str] = None) -> int:
        query = self.db.query(DeviceSession).filter(
            DeviceSession.user_id == user_id, DeviceSession.is_active.is_(True)
        )
        if current_session_id:
            query = query.filter(DeviceSession.id != current_session_id)
        sessions = query.all()
        for session in sessions:
            session.is_active = False
        self._commit("Gagal mencabut sesi")
        return len(sessions)

    def revoke_all(self, user_id: str) -> int:
        return self.revoke_all_others(user_id)
