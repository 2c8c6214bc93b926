from typing import Optional

from fastapi import Depends, Request, status

from common.app_factory import create_service_app
from common.credentials import CredentialVerifier, LookupField
from common.dependencies import (
    get_credential_verifier,
    get_current_user,
    get_login_service,
    get_registration_workflow,
)
from common.login import LoginService
from common.models import User
from common.profiles import build_authenticated_user
from common.rate_limit import limiter
from common.registration import SUBMITTED_MESSAGE, RegistrationWorkflow
from common.schemas import (
    ChangePasswordRequest,
    LoginEmail,
    LoginStudent,
    LoginTeacher,
    LogoutRequest,
    RefreshRequest,
    SignupParent,
    SignupStudent,
    SignupTeacher,
    envelope,
)
from common.sessions import DeviceInfo

app = create_service_app("Auth Service", "auth")

LOGIN_MESSAGE = "Login berhasil"


@app.post("/auth/signup/student", status_code=status.HTTP_201_CREATED)
@limiter.limit("5/minute")
def signup_student(
    request: Request,
    payload: SignupStudent,
    workflow: RegistrationWorkflow = Depends(get_registration_workflow),
) -> dict:
    registration = workflow.submit_student(payload)
    return envelope({"requestId": registration.id}, SUBMITTED_MESSAGE)


@app.post("/auth/signup/teacher", status_code=status.HTTP_201_CREATED)
@limiter.limit("5/minute")
def signup_teacher(
    request: Request,
    payload: SignupTeacher,
    workflow: RegistrationWorkflow = Depends(get_registration_workflow),
) -> dict:
    registration = workflow.submit_teacher(payload)
    return envelope({"requestId": registration.id}, SUBMITTED_MESSAGE)


@app.post("/auth/signup/parent", status_code=status.HTTP_201_CREATED)
@limiter.limit("5/minute")
def signup_parent(
    request: Request,
    payload: SignupParent,
    workflow: RegistrationWorkflow = Depends(get_registration_workflow),
    login: LoginService = Depends(get_login_service),
) -> dict:
    user, parent = workflow.register_parent(payload)
    session = login.start(user, parent, DeviceInfo.from_request(request))
    return envelope(session, "Registrasi berhasil")


def _login(
    request: Request,
    lookup_key: str,
    lookup_field: LookupField,
    password: str,
    verifier: CredentialVerifier,
    login: LoginService,
) -> dict:
    identity = verifier.authenticate(lookup_key, lookup_field, password)
    session = login.start(identity.user, identity.profile, DeviceInfo.from_request(request))
    return envelope(session, LOGIN_MESSAGE)


@app.post("/auth/login/student")
@limiter.limit("10/minute")
def login_student(
    request: Request,
    payload: LoginStudent,
    verifier: CredentialVerifier = Depends(get_credential_verifier),
    login: LoginService = Depends(get_login_service),
) -> dict:
    return _login(request, payload.nisn, LookupField.NISN, payload.password, verifier, login)


@app.post("/auth/login/teacher")
@limiter.limit("10/minute")
def login_teacher(
    request: Request,
    payload: LoginTeacher,
    verifier: CredentialVerifier = Depends(get_credential_verifier),
    login: LoginService = Depends(get_login_service),
) -> dict:
    return _login(request, payload.nip_or_email, LookupField.NIP_OR_EMAIL, payload.password, verifier, login)


@app.post("/auth/login/parent")
@limiter.limit("10/minute")
def login_parent(
    request: Request,
    payload: LoginEmail,
    verifier: CredentialVerifier = Depends(get_credential_verifier),
    login: LoginService = Depends(get_login_service),
) -> dict:
    return _login(request, payload.email, LookupField.EMAIL, payload.password, verifier, login)


@app.post("/auth/login/admin")
@limiter.limit("10/minute")
def login_admin(
    request: Request,
    payload: LoginEmail,
    verifier: CredentialVerifier = Depends(get_credential_verifier),
    login: LoginService = Depends(get_login_service),
) -> dict:
    return _login(request, payload.email, LookupField.ADMIN_EMAIL, payload.password, verifier, login)


@app.post("/auth/refresh")
@limiter.limit("20/minute")
def refresh(
    request: Request,
    payload: RefreshRequest,
    login: LoginService = Depends(get_login_service),
) -> dict:
    session = login.refresh(payload.refresh_token, DeviceInfo.from_request(request))
    return envelope(session, "Token berhasil diperbarui")


@app.post("/auth/logout")
@limiter.limit("20/minute")
def logout(
    request: Request,
    payload: Optional[LogoutRequest] = None,
    current_user: User = Depends(get_current_user),
    login: LoginService = Depends(get_login_service),
) -> dict:
    login.logout(current_user.id, payload.refresh_token if payload else None)
    return envelope(message="Logout berhasil")


@app.get("/auth/me")
@limiter.limit("30/minute")
def me(request: Request, current_user: User = Depends(get_current_user)) -> dict:
    return envelope(build_authenticated_user(current_user))


@app.patch("/auth/change-password")
@limiter.limit("5/minute")
def change_password(
    request: Request,
    payload: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    verifier: CredentialVerifier = Depends(get_credential_verifier),
) -> dict:
    verifier.change_password(
        current_user.id,
        payload.current_password,
        payload.new_password,
        payload.confirm_password,
    )
    return envelope(message="Password berhasil diubah")
