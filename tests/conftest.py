import itertools
import os
from typing import Callable, Generator, Optional

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("RATE_LIMITING_ENABLED", "false")
os.environ.setdefault("METRICS_ENABLED", "false")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("JWT_SECRET", "test-only-signing-secret-0123456789abcdef")

from common.config import get_settings, reset_settings_cache  # noqa: E402

reset_settings_cache()

from common.auth import PasswordHasher  # noqa: E402
from common.database import Base, SessionLocal, engine  # noqa: E402
from common.models import (  # noqa: E402
    Admin,
    Parent,
    ParentRelationship,
    Student,
    Teacher,
    User,
    UserRole,
    UserStatus,
)
from services.admin.app import app as admin_app  # noqa: E402
from services.attendance.app import app as attendance_app  # noqa: E402
from services.auth.app import app as auth_app  # noqa: E402
from services.notifications.app import app as notifications_app  # noqa: E402
from services.parent_link.app import app as parent_link_app  # noqa: E402
from services.profile.app import app as profile_app  # noqa: E402

DEFAULT_PASSWORD = "Rahasia@123"

_sequence = itertools.count(1)


@pytest.fixture(autouse=True, scope="function")
def _create_test_database() -> Generator[None, None, None]:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session() -> Generator:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=get_settings().bcrypt_rounds)


@pytest.fixture()
def make_user(db_session, hasher) -> Callable[..., User]:
    """Insert an account with its role profile straight into the database."""

    def _make(
        role: UserRole,
        email: Optional[str] = None,
        password: Optional[str] = DEFAULT_PASSWORD,
        status: UserStatus = UserStatus.ACTIVE,
        **profile_fields,
    ) -> User:
        n = next(_sequence)
        user = User(
            email=email or f"{role.value}{n}@sekolah.id",
            role=role,
            status=status,
            password_hash=hasher.hash(password) if password else None,
            email_verified=True,
        )
        db_session.add(user)
        db_session.flush()

        if role == UserRole.STUDENT:
            profile_fields.setdefault("nisn", f"{n:010d}")
            profile_fields.setdefault("full_name", f"Siswa {n}")
            profile_fields.setdefault("is_verified", True)
            db_session.add(Student(user_id=user.id, **profile_fields))
        elif role == UserRole.TEACHER:
            profile_fields.setdefault("nip", f"1980{n:08d}")
            profile_fields.setdefault("full_name", f"Guru {n}")
            profile_fields.setdefault("is_verified", True)
            db_session.add(Teacher(user_id=user.id, **profile_fields))
        elif role == UserRole.PARENT:
            profile_fields.setdefault("full_name", f"Orang Tua {n}")
            profile_fields.setdefault("relation", ParentRelationship.AYAH)
            db_session.add(Parent(user_id=user.id, **profile_fields))
        elif role in (UserRole.ADMIN, UserRole.SUPER_ADMIN):
            profile_fields.setdefault("full_name", f"Admin {n}")
            profile_fields.setdefault("is_super_admin", role == UserRole.SUPER_ADMIN)
            db_session.add(Admin(user_id=user.id, **profile_fields))

        db_session.commit()
        return user

    return _make


@pytest.fixture()
def auth_client() -> Generator[TestClient, None, None]:
    with TestClient(auth_app) as client:
        yield client


@pytest.fixture()
def admin_client() -> Generator[TestClient, None, None]:
    with TestClient(admin_app) as client:
        yield client


@pytest.fixture()
def profile_client() -> Generator[TestClient, None, None]:
    with TestClient(profile_app) as client:
        yield client


@pytest.fixture()
def notifications_client() -> Generator[TestClient, None, None]:
    with TestClient(notifications_app) as client:
        yield client


@pytest.fixture()
def attendance_client() -> Generator[TestClient, None, None]:
    with TestClient(attendance_app) as client:
        yield client


@pytest.fixture()
def parent_link_client() -> Generator[TestClient, None, None]:
    with TestClient(parent_link_app) as client:
        yield client


@pytest.fixture()
def login(auth_client) -> Callable[..., dict]:
    """Log in through the auth service and return the session payload."""

    def _login(kind: str, password: str = DEFAULT_PASSWORD, headers: Optional[dict] = None, **identity) -> dict:
        response = auth_client.post(
            f"/auth/login/{kind}",
            json={**identity, "password": password},
            headers=headers or {},
        )
        assert response.status_code == 200, response.text
        return response.json()["data"]

    return _login
