"""Refresh token store.

Only a bcrypt hash of each refresh token is persisted. Since bcrypt hashes are
salted they cannot be looked up by value, so lookups scan every non-revoked,
unexpired record and compare the presented token against each hash. That is
O(active tokens) per call and is the known scaling limit of this store.

Records are never deleted; revocation only flips ``revoked``.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .auth import PasswordHasher
from .config import Settings
from .errors import BadRequest
from .models import RefreshToken

logger = logging.getLogger(__name__)


class RefreshTokenStore:
    def __init__(self, db: Session, hasher: PasswordHasher, settings: Settings) -> None:
        self.db = db
        self.hasher = hasher
        self.lifetime = timedelta(days=settings.refresh_token_expire_days)

    def store(self, user_id: str, raw_token: str) -> RefreshToken:
        record = RefreshToken(
            user_id=user_id,
            token_hash=self.hasher.hash(raw_token),
            expires_at=datetime.utcnow() + self.lifetime,
            revoked=False,
        )
        try:
            self.db.add(record)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Failed to store refresh token for %s: %s", user_id, exc)
            raise BadRequest("Gagal menyimpan sesi login") from exc
        return record

    def _live_records(self, user_id: Optional[str] = None) -> list[RefreshToken]:
        query = self.db.query(RefreshToken).filter(
            RefreshToken.user_id.is_not(None),
            RefreshToken.revoked.is_(False),
            RefreshToken.expires_at > datetime.utcnow(),
        )
        if user_id is not None:
            query = query.filter(RefreshToken.user_id == user_id)
        return query.all()

    def find(self, raw_token: str, user_id: Optional[str] = None) -> Optional[RefreshToken]:
        for record in self._live_records(user_id):
            if self.hasher.verify(raw_token, record.token_hash):
                return record
        return None

    def validate(self, raw_token: str) -> bool:
        return self.find(raw_token) is not None

    def _revoke(self, records: list[RefreshToken]) -> int:
        if not records:
            return 0
        now = datetime.utcnow()
        for record in records:
            record.revoked = True
            record.revoked_at = now
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Failed to revoke %d refresh token(s): %s", len(records), exc)
            raise BadRequest("Gagal mencabut token") from exc
        return len(records)

    def revoke_record(self, record: RefreshToken) -> None:
        self._revoke([record])

    def revoke_by_hash(self, raw_token: str) -> bool:
        record = self.find(raw_token)
        return bool(record and self._revoke([record]))

    def revoke_for_user(self, user_id: str, raw_token: str) -> bool:
        record = self.find(raw_token, user_id=user_id)
        return bool(record and self._revoke([record]))

    def revoke_all(self, user_id: str) -> int:
        records = (
            self.db.query(RefreshToken)
            .filter(RefreshToken.user_id == user_id, RefreshToken.revoked.is_(False))
            .all()
        )
        return self._revoke(records)
