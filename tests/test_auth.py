import pytest
from sqlalchemy.exc import SQLAlchemyError

from common.accounts import AccountFactory
from common.config import get_settings
from common.models import (
    DeviceSession,
    Notification,
    NotificationType,
    RegistrationRequest,
    User,
    UserRole,
    UserStatus,
)

STUDENT_SIGNUP = {
    "nisn": "0051234567",
    "fullName": "Budi Santoso",
    "email": "budi@sekolah.id",
    "phone": "081234567890",
    "kelas": "X IPA 1",
    "jurusan": "IPA",
    "tahunAjaran": "2024/2025",
    "dateOfBirth": "2009-04-12",
}

TEACHER_SIGNUP = {
    "nip": "198001012005011001",
    "fullName": "Siti Rahma",
    "email": "siti@sekolah.id",
    "phone": "081298765432",
    "subject": "Matematika",
}


def auth_header(session: dict) -> dict[str, str]:
    return {"Authorization": f"Bearer {session['accessToken']}"}


def test_student_signup_approval_and_login(auth_client, admin_client, make_user, login):
    signup = auth_client.post("/auth/signup/student", json=STUDENT_SIGNUP)
    assert signup.status_code == 201
    body = signup.json()
    assert body["success"] is True
    request_id = body["data"]["requestId"]

    make_user(UserRole.ADMIN, email="admin@sekolah.id")
    admin = login("admin", email="admin@sekolah.id")
    approve = admin_client.post(f"/admin/registrations/{request_id}/approve", json={}, headers=auth_header(admin))
    assert approve.status_code == 200
    approved = approve.json()["data"]
    password = approved["generatedPassword"]
    assert approved["userEmail"] == "budi@sekolah.id"
    assert len(password) >= 12
    assert set(password) <= set(get_settings().generated_password_alphabet)

    student = login("student", password=password, nisn=STUDENT_SIGNUP["nisn"])
    assert student["user"]["role"] == "student"
    assert student["user"]["mustChangePassword"] is True
    assert student["user"]["profile"]["nisn"] == STUDENT_SIGNUP["nisn"]
    assert student["user"]["profile"]["isVerified"] is True
    assert student["refreshToken"]
    assert student["sessionId"]

    change = auth_client.patch(
        "/auth/change-password",
        json={"currentPassword": password, "newPassword": "Baru@12345", "confirmPassword": "Baru@12345"},
        headers=auth_header(student),
    )
    assert change.status_code == 200

    relogin = login("student", password="Baru@12345", nisn=STUDENT_SIGNUP["nisn"])
    assert relogin["user"]["mustChangePassword"] is False


def test_teacher_signup_notifies_admins(auth_client, make_user, db_session):
    admin = make_user(UserRole.ADMIN)

    response = auth_client.post("/auth/signup/teacher", json=TEACHER_SIGNUP)
    assert response.status_code == 201

    notifications = db_session.query(Notification).filter(Notification.recipient_id == admin.id).all()
    assert len(notifications) == 1
    assert TEACHER_SIGNUP["nip"] in notifications[0].message


def test_duplicate_nisn_is_rejected_without_writes(auth_client, db_session):
    first = auth_client.post("/auth/signup/student", json=STUDENT_SIGNUP)
    assert first.status_code == 201

    duplicate = auth_client.post("/auth/signup/student", json={**STUDENT_SIGNUP, "email": "lain@sekolah.id"})
    assert duplicate.status_code == 409
    assert duplicate.json()["statusCode"] == 409

    assert db_session.query(User).count() == 1
    assert db_session.query(RegistrationRequest).count() == 1


def test_duplicate_email_is_rejected(auth_client, make_user):
    make_user(UserRole.PARENT, email="budi@sekolah.id")

    response = auth_client.post("/auth/signup/student", json=STUDENT_SIGNUP)
    assert response.status_code == 409
    assert response.json()["message"] == "Email sudah terdaftar"


def test_nisn_of_existing_student_is_rejected(auth_client, make_user):
    make_user(UserRole.STUDENT, nisn=STUDENT_SIGNUP["nisn"])

    response = auth_client.post("/auth/signup/student", json=STUDENT_SIGNUP)
    assert response.status_code == 409


def test_failed_request_insert_removes_pending_user(auth_client, db_session, monkeypatch):
    def failing_insert(self, row):
        raise SQLAlchemyError("simulated store failure")

    monkeypatch.setattr(AccountFactory, "insert", failing_insert)

    response = auth_client.post("/auth/signup/student", json=STUDENT_SIGNUP)
    assert response.status_code == 400
    assert db_session.query(User).filter(User.email == STUDENT_SIGNUP["email"]).count() == 0
    assert db_session.query(RegistrationRequest).count() == 0


def test_validation_errors_are_reported_together(auth_client):
    response = auth_client.post(
        "/auth/signup/student",
        json={**STUDENT_SIGNUP, "nisn": "12ab", "email": "bukan-email", "kelas": ""},
    )
    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "Bad Request"
    assert isinstance(body["message"], list)
    assert len(body["message"]) >= 3
    assert "nisn: NISN harus 10 digit" in body["message"]


def test_inactive_account_gets_same_error_as_wrong_password(auth_client, make_user):
    make_user(UserRole.STUDENT, nisn="1111111111")
    make_user(UserRole.STUDENT, nisn="2222222222", status=UserStatus.SUSPENDED)

    wrong_password = auth_client.post("/auth/login/student", json={"nisn": "1111111111", "password": "Salah@123"})
    suspended = auth_client.post("/auth/login/student", json={"nisn": "2222222222", "password": "Rahasia@123"})
    unknown = auth_client.post("/auth/login/student", json={"nisn": "3333333333", "password": "Rahasia@123"})

    assert wrong_password.status_code == suspended.status_code == unknown.status_code == 401
    assert wrong_password.json()["message"] == suspended.json()["message"] == unknown.json()["message"]


@pytest.mark.parametrize(
    "status, password",
    [
        (UserStatus.PENDING, "Rahasia@123"),
        (UserStatus.REJECTED, "Rahasia@123"),
        (UserStatus.ACTIVE, None),
    ],
)
def test_login_fails_closed_for_unusable_accounts(auth_client, make_user, status, password):
    make_user(UserRole.PARENT, email="ortu.benar@sekolah.id")
    make_user(UserRole.PARENT, email="ortu@sekolah.id", status=status, password=password)

    wrong_password = auth_client.post(
        "/auth/login/parent", json={"email": "ortu.benar@sekolah.id", "password": "Salah@123"}
    )
    response = auth_client.post("/auth/login/parent", json={"email": "ortu@sekolah.id", "password": "Rahasia@123"})

    assert response.status_code == 401
    assert response.json()["message"] == wrong_password.json()["message"]


def test_teacher_logs_in_with_nip_or_email(make_user, login):
    make_user(UserRole.TEACHER, email="guru@sekolah.id", nip="198501012010011002")

    by_nip = login("teacher", nipOrEmail="198501012010011002")
    by_email = login("teacher", nipOrEmail="guru@sekolah.id")

    assert by_nip["user"]["id"] == by_email["user"]["id"]
    assert by_nip["sessionId"] != by_email["sessionId"]


def test_parent_login_ignores_other_roles(auth_client, make_user):
    make_user(UserRole.ADMIN, email="admin@sekolah.id")

    response = auth_client.post("/auth/login/parent", json={"email": "admin@sekolah.id", "password": "Rahasia@123"})
    assert response.status_code == 401


def test_refresh_rotates_and_rejects_reuse(auth_client, make_user, login):
    make_user(UserRole.PARENT, email="ortu@sekolah.id")
    session = login("parent", email="ortu@sekolah.id")

    refreshed = auth_client.post("/auth/refresh", json={"refreshToken": session["refreshToken"]})
    assert refreshed.status_code == 200
    rotated = refreshed.json()["data"]
    assert rotated["refreshToken"] != session["refreshToken"]

    reused = auth_client.post("/auth/refresh", json={"refreshToken": session["refreshToken"]})
    assert reused.status_code == 401

    again = auth_client.post("/auth/refresh", json={"refreshToken": rotated["refreshToken"]})
    assert again.status_code == 200


def test_refresh_keeps_device_name(auth_client, make_user, login, db_session):
    make_user(UserRole.PARENT, email="ortu@sekolah.id")
    session = login("parent", email="ortu@sekolah.id", headers={"X-Device-Name": "Pixel 8", "X-Device-Type": "mobile"})

    refreshed = auth_client.post("/auth/refresh", json={"refreshToken": session["refreshToken"]})
    assert refreshed.status_code == 200

    active = db_session.query(DeviceSession).filter(DeviceSession.is_active.is_(True)).all()
    assert len(active) == 1
    assert active[0].device_name == "Pixel 8"
    assert active[0].device_type == "mobile"


def test_refresh_fails_once_device_session_is_revoked(auth_client, profile_client, make_user, login):
    make_user(UserRole.PARENT, email="ortu@sekolah.id")
    session = login("parent", email="ortu@sekolah.id")

    revoke = profile_client.delete(f"/profile/security/sessions/{session['sessionId']}", headers=auth_header(session))
    assert revoke.status_code == 200

    response = auth_client.post("/auth/refresh", json={"refreshToken": session["refreshToken"]})
    assert response.status_code == 401


def test_logout_one_device_keeps_the_other(auth_client, make_user, login):
    make_user(UserRole.PARENT, email="ortu@sekolah.id")
    phone = login("parent", email="ortu@sekolah.id")
    laptop = login("parent", email="ortu@sekolah.id")

    logout = auth_client.post(
        "/auth/logout", json={"refreshToken": phone["refreshToken"]}, headers=auth_header(phone)
    )
    assert logout.status_code == 200

    assert auth_client.post("/auth/refresh", json={"refreshToken": phone["refreshToken"]}).status_code == 401
    assert auth_client.post("/auth/refresh", json={"refreshToken": laptop["refreshToken"]}).status_code == 200


def test_logout_everywhere(auth_client, make_user, login):
    make_user(UserRole.PARENT, email="ortu@sekolah.id")
    phone = login("parent", email="ortu@sekolah.id")
    laptop = login("parent", email="ortu@sekolah.id")

    assert auth_client.post("/auth/logout", headers=auth_header(phone)).status_code == 200

    for session in (phone, laptop):
        assert auth_client.post("/auth/refresh", json={"refreshToken": session["refreshToken"]}).status_code == 401


def test_parent_signup_opens_session_and_link_request(auth_client, make_user, db_session):
    student = make_user(UserRole.STUDENT, nisn="0099887766")

    response = auth_client.post(
        "/auth/signup/parent",
        json={
            "email": "ortu@sekolah.id",
            "password": "Rahasia@123",
            "fullName": "Ahmad Santoso",
            "phone": "081200000000",
            "relationship": "ayah",
            "childNisn": "0099887766",
        },
    )
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["accessToken"]
    assert data["user"]["role"] == "parent"
    assert data["user"]["profile"]["linkStatus"] == "pending"
    assert data["user"]["profile"]["relationship"] == "ayah"

    notification = db_session.query(Notification).filter(Notification.recipient_id == student.id).one()
    assert notification.type == NotificationType.PARENT_LINK


def test_parent_signup_rejects_weak_password(auth_client):
    response = auth_client.post(
        "/auth/signup/parent",
        json={
            "email": "ortu@sekolah.id",
            "password": "lemah",
            "fullName": "Ahmad",
            "phone": "0812",
            "relationship": "ayah",
        },
    )
    assert response.status_code == 400


def test_me_requires_valid_bearer(auth_client, make_user, login):
    missing = auth_client.get("/auth/me")
    assert missing.status_code == 401
    assert missing.json()["path"] == "/auth/me"

    garbage = auth_client.get("/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert garbage.status_code == 401

    make_user(UserRole.PARENT, email="ortu@sekolah.id")
    session = login("parent", email="ortu@sekolah.id")
    me = auth_client.get("/auth/me", headers=auth_header(session))
    assert me.status_code == 200
    assert me.json()["data"]["email"] == "ortu@sekolah.id"


def test_change_password_errors(auth_client, make_user, login):
    make_user(UserRole.PARENT, email="ortu@sekolah.id")
    session = login("parent", email="ortu@sekolah.id")

    mismatch = auth_client.patch(
        "/auth/change-password",
        json={"currentPassword": "Rahasia@123", "newPassword": "Baru@12345", "confirmPassword": "Beda@12345"},
        headers=auth_header(session),
    )
    assert mismatch.status_code == 400

    wrong_current = auth_client.patch(
        "/auth/change-password",
        json={"currentPassword": "Salah@123", "newPassword": "Baru@12345", "confirmPassword": "Baru@12345"},
        headers=auth_header(session),
    )
    assert wrong_current.status_code == 401


def test_health(auth_client):
    response = auth_client.get("/health")
    assert response.status_code == 200
    assert response.json()["service"] == "auth"
