from common.models import (
    ActivityLog,
    DeviceSession,
    Notification,
    RefreshToken,
    RegistrationRequest,
    RegistrationStatus,
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
}


def auth_header(session: dict) -> dict[str, str]:
    return {"Authorization": f"Bearer {session['accessToken']}"}


def admin_session(make_user, login, role: UserRole = UserRole.ADMIN) -> dict:
    email = "super@sekolah.id" if role == UserRole.SUPER_ADMIN else "admin@sekolah.id"
    make_user(role, email=email)
    return login("admin", email=email)


def submit_student(auth_client, **overrides) -> str:
    response = auth_client.post("/auth/signup/student", json={**STUDENT_SIGNUP, **overrides})
    assert response.status_code == 201
    return response.json()["data"]["requestId"]


def test_admin_routes_require_admin_role(admin_client, make_user, login):
    make_user(UserRole.PARENT, email="ortu@sekolah.id")
    parent = login("parent", email="ortu@sekolah.id")

    assert admin_client.get("/admin/registrations").status_code == 401
    response = admin_client.get("/admin/registrations", headers=auth_header(parent))
    assert response.status_code == 403
    assert response.json()["error"] == "Forbidden"


def test_super_admin_passes_admin_guard(admin_client, make_user, login):
    session = admin_session(make_user, login, UserRole.SUPER_ADMIN)

    response = admin_client.get("/admin/registrations", headers=auth_header(session))
    assert response.status_code == 200


def test_registration_listing_and_detail(auth_client, admin_client, make_user, login):
    first = submit_student(auth_client)
    submit_student(auth_client, nisn="0051234568", email="ani@sekolah.id")
    admin = admin_session(make_user, login)

    listing = admin_client.get("/admin/registrations/pending", headers=auth_header(admin))
    assert listing.status_code == 200
    data = listing.json()["data"]
    assert data["pagination"]["total"] == 2
    assert len(data["registrations"]) == 2

    detail = admin_client.get(f"/admin/registrations/{first}", headers=auth_header(admin))
    assert detail.status_code == 200
    assert detail.json()["data"]["email"] == "budi@sekolah.id"
    assert detail.json()["data"]["formData"]["nisn"] == STUDENT_SIGNUP["nisn"]

    filtered = admin_client.get(
        "/admin/registrations", params={"status": "approved", "type": "student"}, headers=auth_header(admin)
    )
    assert filtered.json()["data"]["pagination"]["total"] == 0

    missing = admin_client.get("/admin/registrations/does-not-exist", headers=auth_header(admin))
    assert missing.status_code == 404


def test_double_approval_is_rejected(auth_client, admin_client, make_user, login, db_session):
    request_id = submit_student(auth_client)
    admin = admin_session(make_user, login)

    first = admin_client.post(f"/admin/registrations/{request_id}/approve", json={}, headers=auth_header(admin))
    assert first.status_code == 200

    second = admin_client.post(f"/admin/registrations/{request_id}/approve", json={}, headers=auth_header(admin))
    assert second.status_code == 400
    assert second.json()["message"] == "Pendaftaran sudah diproses sebelumnya"

    registration = db_session.get(RegistrationRequest, request_id)
    assert registration.status == RegistrationStatus.APPROVED
    assert registration.generated_password == first.json()["data"]["generatedPassword"]


def test_approval_notification_omits_password(auth_client, admin_client, make_user, login, db_session):
    request_id = submit_student(auth_client)
    admin = admin_session(make_user, login)

    approve = admin_client.post(f"/admin/registrations/{request_id}/approve", json={}, headers=auth_header(admin))
    password = approve.json()["data"]["generatedPassword"]

    user = db_session.query(User).filter(User.email == STUDENT_SIGNUP["email"]).one()
    messages = [n.message for n in db_session.query(Notification).filter(Notification.recipient_id == user.id)]
    assert messages
    assert all(password not in message for message in messages)


def test_rejection_is_terminal(auth_client, admin_client, make_user, login, db_session):
    request_id = submit_student(auth_client)
    admin = admin_session(make_user, login)

    blank = admin_client.post(f"/admin/registrations/{request_id}/reject", json={"reason": "  "}, headers=auth_header(admin))
    assert blank.status_code == 400

    reject = admin_client.post(
        f"/admin/registrations/{request_id}/reject", json={"reason": "Data tidak lengkap"}, headers=auth_header(admin)
    )
    assert reject.status_code == 200

    approve = admin_client.post(f"/admin/registrations/{request_id}/approve", json={}, headers=auth_header(admin))
    assert approve.status_code == 400

    user = db_session.query(User).filter(User.email == STUDENT_SIGNUP["email"]).one()
    assert user.status == UserStatus.REJECTED


def test_suspension_ends_every_session(auth_client, admin_client, make_user, login, db_session):
    student = make_user(UserRole.STUDENT, nisn="1234512345")
    phone = login("student", nisn="1234512345")
    laptop = login("student", nisn="1234512345")
    admin = admin_session(make_user, login)

    suspend = admin_client.patch(
        f"/admin/users/{student.id}/suspend", json={"reason": "Pelanggaran tata tertib"}, headers=auth_header(admin)
    )
    assert suspend.status_code == 200

    assert auth_client.get("/auth/me", headers=auth_header(phone)).status_code == 401
    for session in (phone, laptop):
        assert auth_client.post("/auth/refresh", json={"refreshToken": session["refreshToken"]}).status_code == 401
    relogin = auth_client.post("/auth/login/student", json={"nisn": "1234512345", "password": "Rahasia@123"})
    assert relogin.status_code == 401

    assert db_session.query(DeviceSession).filter(
        DeviceSession.user_id == student.id, DeviceSession.is_active.is_(True)
    ).count() == 0
    assert db_session.query(RefreshToken).filter(
        RefreshToken.user_id == student.id, RefreshToken.revoked.is_(False)
    ).count() == 0

    reactivate = admin_client.patch(f"/admin/users/{student.id}/reactivate", headers=auth_header(admin))
    assert reactivate.status_code == 200
    assert login("student", nisn="1234512345")["user"]["status"] == "active"


def test_super_admin_cannot_be_suspended_or_deleted(admin_client, make_user, login):
    target = make_user(UserRole.SUPER_ADMIN, email="root@sekolah.id")
    admin = admin_session(make_user, login)

    suspend = admin_client.patch(f"/admin/users/{target.id}/suspend", json={}, headers=auth_header(admin))
    assert suspend.status_code == 400
    delete = admin_client.delete(f"/admin/users/{target.id}", headers=auth_header(admin))
    assert delete.status_code == 400


def test_reactivate_requires_suspended_user(admin_client, make_user, login):
    target = make_user(UserRole.TEACHER)
    admin = admin_session(make_user, login)

    response = admin_client.patch(f"/admin/users/{target.id}/reactivate", headers=auth_header(admin))
    assert response.status_code == 400


def test_delete_user_removes_account(admin_client, make_user, login, db_session):
    target = make_user(UserRole.TEACHER, email="guru@sekolah.id")
    target_id = target.id
    login("teacher", nipOrEmail="guru@sekolah.id")
    admin = admin_session(make_user, login)

    response = admin_client.delete(f"/admin/users/{target_id}", headers=auth_header(admin))
    assert response.status_code == 200

    assert db_session.query(User).filter(User.id == target_id).count() == 0
    assert db_session.query(DeviceSession).filter(DeviceSession.user_id == target_id).count() == 0
    # Refresh token rows stay behind, detached from the deleted account.
    orphaned = db_session.query(RefreshToken).filter(RefreshToken.user_id.is_(None)).all()
    assert len(orphaned) == 1
    assert orphaned[0].token_hash


def test_user_listing_filters(admin_client, make_user, login):
    make_user(UserRole.STUDENT, email="siswa.a@sekolah.id")
    make_user(UserRole.STUDENT, email="siswa.b@sekolah.id", status=UserStatus.SUSPENDED)
    make_user(UserRole.TEACHER, email="guru@sekolah.id")
    admin = admin_session(make_user, login)

    students = admin_client.get("/admin/users", params={"role": "student"}, headers=auth_header(admin))
    assert students.json()["data"]["pagination"]["total"] == 2

    suspended = admin_client.get("/admin/users", params={"status": "suspended"}, headers=auth_header(admin))
    assert [u["email"] for u in suspended.json()["data"]["users"]] == ["siswa.b@sekolah.id"]

    search = admin_client.get("/admin/users", params={"search": "guru"}, headers=auth_header(admin))
    assert search.json()["data"]["pagination"]["total"] == 1


def test_direct_student_creation(admin_client, make_user, login):
    admin = admin_session(make_user, login)

    response = admin_client.post("/admin/students", json=STUDENT_SIGNUP, headers=auth_header(admin))
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["student"]["nisn"] == STUDENT_SIGNUP["nisn"]
    assert len(data["generatedPassword"]) == 12

    student = login("student", password=data["generatedPassword"], nisn=STUDENT_SIGNUP["nisn"])
    assert student["user"]["mustChangePassword"] is True

    duplicate = admin_client.post(
        "/admin/students", json={**STUDENT_SIGNUP, "email": "lain@sekolah.id"}, headers=auth_header(admin)
    )
    assert duplicate.status_code == 409


def test_direct_teacher_creation(admin_client, make_user, login):
    admin = admin_session(make_user, login)

    response = admin_client.post(
        "/admin/teachers",
        json={
            "nip": "197001012000011001",
            "fullName": "Siti Rahma",
            "email": "siti@sekolah.id",
            "phone": "0812",
            "subject": "Fisika",
        },
        headers=auth_header(admin),
    )
    assert response.status_code == 201
    password = response.json()["data"]["generatedPassword"]
    assert login("teacher", password=password, nipOrEmail="197001012000011001")["user"]["role"] == "teacher"


def test_only_super_admin_creates_admins(admin_client, make_user, login):
    admin = admin_session(make_user, login)
    payload = {"email": "baru@sekolah.id", "fullName": "Admin Baru"}

    forbidden = admin_client.post("/admin/admins", json=payload, headers=auth_header(admin))
    assert forbidden.status_code == 403

    root = admin_session(make_user, login, UserRole.SUPER_ADMIN)
    created = admin_client.post("/admin/admins", json=payload, headers=auth_header(root))
    assert created.status_code == 201
    data = created.json()["data"]
    assert len(data["generatedPassword"]) == 16
    assert login("admin", password=data["generatedPassword"], email="baru@sekolah.id")["user"]["role"] == "admin"


def test_notifications_fan_out(admin_client, make_user, login, db_session):
    student = make_user(UserRole.STUDENT)
    make_user(UserRole.TEACHER)
    make_user(UserRole.PARENT, status=UserStatus.SUSPENDED)
    admin = admin_session(make_user, login)

    broadcast = admin_client.post(
        "/admin/notifications/broadcast", json={"title": "Libur", "message": "Sekolah libur besok"},
        headers=auth_header(admin),
    )
    assert broadcast.status_code == 200
    assert broadcast.json()["data"]["recipientCount"] == 3

    by_role = admin_client.post(
        "/admin/notifications/role-broadcast",
        json={"title": "Rapat", "message": "Rapat guru", "targetRoles": ["teacher"]},
        headers=auth_header(admin),
    )
    assert by_role.json()["data"]["recipientCount"] == 1

    targeted = admin_client.post(
        "/admin/notifications/send",
        json={"title": "Halo", "message": "Pesan pribadi", "recipientId": student.id},
        headers=auth_header(admin),
    )
    assert targeted.status_code == 200
    assert db_session.query(Notification).filter(Notification.recipient_id == student.id).count() == 2

    missing = admin_client.post(
        "/admin/notifications/send",
        json={"title": "Halo", "message": "Pesan", "recipientId": "nobody"},
        headers=auth_header(admin),
    )
    assert missing.status_code == 404


def test_dashboard_stats(auth_client, admin_client, make_user, login, db_session):
    make_user(UserRole.STUDENT)
    make_user(UserRole.TEACHER)
    submit_student(auth_client)
    admin = admin_session(make_user, login)

    response = admin_client.get("/admin/dashboard/stats", headers=auth_header(admin))
    assert response.status_code == 200
    stats = response.json()["data"]
    assert stats["totalStudents"] == 1
    assert stats["totalTeachers"] == 1
    assert stats["pendingRegistrations"] == 1
    assert stats["totalUsers"] == 3
    assert any(entry["action"] == "LOGIN" for entry in stats["recentActivities"])
    assert db_session.query(ActivityLog).count() >= 1
