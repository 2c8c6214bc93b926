"""Password hashing, token issuance and password generation."""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext

from .config import Settings
from .errors import Unauthorized
from .models import UserRole

logger = logging.getLogger(__name__)


class PasswordHasher:
    """bcrypt hashing for passwords and for refresh/device tokens."""

    def __init__(self, rounds: int = 10) -> None:
        self.rounds = rounds
        self._context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)

    def hash(self, secret: str) -> str:
        return self._context.hash(secret)

    def verify(self, secret: str, hashed: Optional[str]) -> bool:
        if not hashed:
            return False
        try:
            return self._context.verify(secret, hashed)
        except (ValueError, TypeError):
            logger.warning("Stored hash could not be parsed; treating as mismatch")
            return False


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: str
    expires_in: int


class TokenIssuer:
    """Mints a signed access token and an unrelated opaque refresh token."""

    def __init__(self, settings: Settings) -> None:
        self._secret = settings.jwt_secret
        self._algorithm = settings.jwt_algorithm
        self._lifetime = timedelta(minutes=settings.access_token_expire_minutes)

    def issue(
        self,
        user_id: str,
        email: Optional[str],
        role: UserRole,
        expires_delta: Optional[timedelta] = None,
    ) -> IssuedTokens:
        lifetime = expires_delta if expires_delta is not None else self._lifetime
        issued_at = datetime.now(timezone.utc)
        claims = {
            "sub": user_id,
            "email": email,
            "role": role.value,
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + lifetime).timestamp()),
        }
        access_token = jwt.encode(claims, self._secret, algorithm=self._algorithm)
        return IssuedTokens(
            access_token=access_token,
            refresh_token=secrets.token_urlsafe(48),
            expires_in=int(lifetime.total_seconds()),
        )

    def decode(self, token: str) -> Dict[str, Any]:
        try:
            payload = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except ExpiredSignatureError as exc:
            raise Unauthorized("Token sudah kedaluwarsa") from exc
        except JWTError as exc:
            raise Unauthorized("Token tidak valid") from exc
        if not payload.get("sub"):
            raise Unauthorized("Token tidak valid")
        return payload


def generate_password(length: int, alphabet: str) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))
