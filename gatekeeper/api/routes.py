from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Path, Request, Response

from gatekeeper.api.cookies import (
    access_token_from_request,
    clear_token_cookies,
    deliver_tokens,
    refresh_token_from_request,
)
from gatekeeper.api.schemas import (
    AuthResponse,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutAllRequest,
    MfaChallengeResponse,
    MfaDeviceResponse,
    MfaResetRequest,
    MfaStatusResponse,
    PasswordChangeRequest,
    RecoveryCodeResponse,
    ResetPasswordRequest,
    ResetPasswordWithTokenRequest,
    SendMfaCodeRequest,
    SendMfaCodeResponse,
    SessionResponse,
    SignupRequest,
    TokenPairResponse,
    TokenRefreshRequest,
    TotpSetupRequest,
    TotpSetupResponse,
    TotpVerifyRequest,
    UserResponse,
    VerifyCodeRequest,
    VerifyMfaRequest,
    VerifyResetCodeRequest,
    VerifySessionMfaRequest,
)
from gatekeeper.config import TokenDelivery
from gatekeeper.service.auth import AuthContext, AuthResult, MfaChallenge
from gatekeeper.service.errors import MissingRequiredFieldsError
from gatekeeper.service.mfa import IssuedCode
from gatekeeper.service.runtime import Runtime
from gatekeeper.service.sessions import DeviceMeta
from gatekeeper.service.tokens import TokenPair
from gatekeeper.storage.models import MfaDevice, User

router = APIRouter(prefix="/v1")


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


async def get_user(request: Request) -> AuthContext:
    """Authenticated caller with a fully verified session."""
    runtime = get_runtime(request)
    return await runtime.auth.authenticate(
        access_token_from_request(request, runtime.settings)
    )


async def get_pending_user(request: Request) -> AuthContext:
    """Authenticated caller whose session may still be waiting on its second factor."""
    runtime = get_runtime(request)
    return await runtime.auth.authenticate(
        access_token_from_request(request, runtime.settings), allow_pending_mfa=True
    )


def _device(request: Request, device_name: Optional[str] = None) -> DeviceMeta:
    return DeviceMeta(
        device_name=device_name,
        user_agent=request.headers.get("user-agent"),
        ip_address=request.client.host if request.client else None,
    )


def _user_response(runtime: Runtime, user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        phone=user.phone,
        tenant_id=user.tenant_id,
        is_verified=user.is_verified,
        is_mfa_enabled=user.is_mfa_enabled,
        roles=runtime.roles.role_names(user.id),
    )


def _token_response(tokens: Optional[TokenPair]) -> Optional[TokenPairResponse]:
    if tokens is None:
        return None
    return TokenPairResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        access_expires_at=tokens.access_expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
    )


def _auth_envelope(runtime: Runtime, response: Response, result: AuthResult) -> Envelope:
    body_tokens = deliver_tokens(response, runtime.settings, result.tokens)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=_user_response(runtime, result.user),
            session_id=result.session.id if result.session else None,
            session_expires_at=result.session.expires_at if result.session else None,
            tokens=_token_response(body_tokens),
            trusted_device_token=result.trusted_device_token,
            requires_mfa=result.requires_mfa,
        ),
    )


def _challenge_envelope(challenge: MfaChallenge) -> Envelope:
    return Envelope(
        status="ok",
        data=MfaChallengeResponse(
            user_id=challenge.user_id,
            challenge_token=challenge.challenge_token,
            methods=challenge.methods,
            default_method=challenge.default_method,
            expires_at=challenge.expires_at,
        ),
    )


def _code_sent_envelope(issued: IssuedCode) -> Envelope:
    # The code itself only travels through the event channel
    return Envelope(
        status="ok",
        data=SendMfaCodeResponse(
            method=issued.method,
            destination=issued.destination,
            expires_at=issued.expires_at,
        ),
    )


def _device_response(device: MfaDevice) -> MfaDeviceResponse:
    return MfaDeviceResponse(
        id=device.id,
        device_name=device.device_name,
        verified=device.verified,
        last_used_at=device.last_used_at,
        created_at=device.created_at,
    )


# -- registration and login -----------------------------------------------


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request, response: Response):
    """Create an account with an email and/or phone number.

    Starts a session straight away when ``auto_login_after_signup`` is on and
    email verification is not required.

    Raises:
        403: If registration is disabled
        409: If the email or phone already exists in the tenant
    """
    runtime = get_runtime(request)
    result = await runtime.auth.signup(
        email=body.email,
        phone=body.phone,
        password=body.password,
        tenant_id=body.tenant_id,
        metadata=body.metadata,
        device=_device(request, body.device_name),
    )
    return _auth_envelope(runtime, response, result)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with any enabled credential provider.

    Returns an MFA challenge instead of tokens when a second factor is due.
    """
    runtime = get_runtime(request)
    outcome = await runtime.auth.login(
        body.provider,
        body.credentials,
        tenant_id=body.tenant_id,
        device=_device(request, body.device_name),
        trusted_device_token=body.trusted_device_token,
        create_user_if_not_exists=body.create_user_if_not_exists,
    )
    if isinstance(outcome, MfaChallenge):
        return _challenge_envelope(outcome)
    return _auth_envelope(runtime, response, outcome)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(request: Request, response: Response, body: Optional[TokenRefreshRequest] = None):
    runtime = get_runtime(request)
    refresh_token = (body.refresh_token if body else None) or refresh_token_from_request(
        request, runtime.settings
    )
    if not refresh_token:
        raise MissingRequiredFieldsError(
            "Refresh token is required", detail={"missing": ["refresh_token"]}
        )
    result = await runtime.auth.refresh(refresh_token)
    return _auth_envelope(runtime, response, result)


# -- second factor ----------------------------------------------------------


@router.post("/auth/2fa/send", response_model=Envelope, tags=["mfa"])
async def send_mfa_code(body: SendMfaCodeRequest, request: Request):
    """Send an email or SMS code for a pending login challenge."""
    runtime = get_runtime(request)
    if not body.challenge_token:
        raise MissingRequiredFieldsError(
            "Challenge token is required", detail={"missing": ["challenge_token"]}
        )
    issued = await runtime.auth.send_mfa_code(body.method, challenge_token=body.challenge_token)
    return _code_sent_envelope(issued)


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["mfa"])
async def verify_mfa(body: VerifyMfaRequest, request: Request, response: Response):
    runtime = get_runtime(request)
    result = await runtime.auth.verify_2fa(
        body.challenge_token,
        body.code,
        body.method,
        remember_device=body.remember_device,
        device=_device(request, body.device_name),
    )
    return _auth_envelope(runtime, response, result)


@router.post("/auth/session/2fa/send", response_model=Envelope, tags=["mfa"])
async def send_session_mfa_code(
    body: SendMfaCodeRequest,
    request: Request,
    principal: AuthContext = Depends(get_pending_user),
):
    runtime = get_runtime(request)
    issued = await runtime.auth.send_mfa_code(body.method, user_id=principal.user_id)
    return _code_sent_envelope(issued)


@router.post("/auth/session/2fa/verify", response_model=Envelope, tags=["mfa"])
async def verify_session_mfa(
    body: VerifySessionMfaRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_pending_user),
):
    """Complete the second factor on the caller's current session."""
    runtime = get_runtime(request)
    result = await runtime.auth.verify_session_2fa(
        principal.session_id,
        body.code,
        body.method,
        remember_device=body.remember_device,
        device=_device(request, body.device_name),
    )
    return _auth_envelope(runtime, response, result)


# -- logout and sessions ----------------------------------------------------


@router.post("/auth/logout", response_model=Envelope, tags=["sessions"])
async def logout(
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_pending_user),
):
    runtime = get_runtime(request)
    await runtime.auth.logout(principal.session_id)
    if runtime.settings.token_delivery == TokenDelivery.COOKIE:
        clear_token_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"status": "logged_out"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["sessions"])
async def logout_all(
    request: Request,
    response: Response,
    body: Optional[LogoutAllRequest] = None,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime(request)
    keep_current = bool(body and body.keep_current)
    count = await runtime.auth.logout_all(
        principal.user_id,
        except_session_id=principal.session_id if keep_current else None,
    )
    if not keep_current and runtime.settings.token_delivery == TokenDelivery.COOKIE:
        clear_token_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"revoked": count})


@router.get("/auth/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(request: Request, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime(request)
    views = await runtime.auth.list_sessions(principal.user_id, principal.session_id)
    return Envelope(status="ok", data=[SessionResponse(**view) for view in views])


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    request: Request,
    session_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime(request)
    # Another user's session still raises; a missing one counts as revoked
    await runtime.auth.revoke_session(principal.user_id, session_id)
    return Envelope(status="ok", data={"status": "revoked", "session_id": session_id})


# -- MFA management ---------------------------------------------------------


@router.get("/auth/mfa/status", response_model=Envelope, tags=["mfa"])
async def get_mfa_status(request: Request, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime(request)
    mfa = runtime.mfa
    return Envelope(
        status="ok",
        data=MfaStatusResponse(
            enabled=principal.user.is_mfa_enabled,
            required=mfa.is_requires_mfa(principal.user),
            enabled_methods=mfa.get_enabled_methods(),
            verified_methods=mfa.get_verified_methods(principal.user_id),
            has_recovery_code=mfa.has_recovery_code(principal.user_id),
        ),
    )


@router.post("/auth/mfa/enable", response_model=Envelope, tags=["mfa"])
async def enable_mfa(request: Request, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime(request)
    user = runtime.mfa.enable_mfa(principal.user_id)
    return Envelope(status="ok", data=_user_response(runtime, user))


@router.post("/auth/mfa/disable", response_model=Envelope, tags=["mfa"])
async def disable_mfa(request: Request, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime(request)
    user = runtime.mfa.disable_mfa(principal.user_id)
    return Envelope(status="ok", data=_user_response(runtime, user))


@router.post("/auth/mfa/totp/setup", response_model=Envelope, tags=["mfa"])
async def setup_totp(
    request: Request,
    body: Optional[TotpSetupRequest] = None,
    principal: AuthContext = Depends(get_pending_user),
):
    runtime = get_runtime(request)
    setup = runtime.mfa.setup_totp_device(
        principal.user_id, body.device_name if body else None
    )
    return Envelope(
        status="ok",
        data=TotpSetupResponse(
            device_id=setup.device_id,
            secret=setup.secret,
            provisioning_uri=setup.provisioning_uri,
        ),
    )


@router.post("/auth/mfa/totp/verify", response_model=Envelope, tags=["mfa"])
async def verify_totp(
    body: TotpVerifyRequest,
    request: Request,
    principal: AuthContext = Depends(get_pending_user),
):
    runtime = get_runtime(request)
    device = runtime.mfa.verify_totp_setup(principal.user_id, body.secret, body.code)
    return Envelope(status="ok", data=_device_response(device))


@router.get("/auth/mfa/devices", response_model=Envelope, tags=["mfa"])
async def list_mfa_devices(request: Request, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime(request)
    devices = runtime.mfa.list_devices(principal.user_id)
    return Envelope(status="ok", data=[_device_response(d) for d in devices])


@router.delete("/auth/mfa/devices/{device_id}", response_model=Envelope, tags=["mfa"])
async def remove_mfa_device(
    request: Request,
    device_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime(request)
    runtime.mfa.remove_device(principal.user_id, device_id)
    return Envelope(status="ok", data={"status": "removed", "device_id": device_id})


@router.post("/auth/mfa/recovery-code", response_model=Envelope, tags=["mfa"])
async def generate_recovery_code(request: Request, principal: AuthContext = Depends(get_user)):
    """Issue a new recovery code; any previous one stops working."""
    runtime = get_runtime(request)
    code = runtime.mfa.generate_recovery_code(principal.user_id)
    return Envelope(status="ok", data=RecoveryCodeResponse(recovery_code=code))


@router.post("/auth/mfa/reset", response_model=Envelope, tags=["mfa"])
async def reset_mfa(
    body: MfaResetRequest,
    request: Request,
    principal: AuthContext = Depends(get_pending_user),
):
    """Spend the recovery code to drop every authenticator device."""
    runtime = get_runtime(request)
    runtime.mfa.reset_mfa(principal.user_id, body.recovery_code)
    return Envelope(status="ok", data={"status": "reset"})


# -- passwords --------------------------------------------------------------


@router.post("/auth/password/change", response_model=Envelope, tags=["password"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime(request)
    await runtime.auth.change_password(
        principal.user_id,
        body.current_password,
        body.new_password,
        current_session_id=principal.session_id,
    )
    return Envelope(status="ok", data={"status": "changed"})


@router.post("/auth/password/forgot", response_model=Envelope, tags=["password"])
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    """Always succeeds so account existence is not revealed."""
    runtime = get_runtime(request)
    await runtime.auth.forgot_password(
        email=body.email, phone=body.phone, tenant_id=body.tenant_id
    )
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/password/verify-code", response_model=Envelope, tags=["password"])
async def verify_reset_code(body: VerifyResetCodeRequest, request: Request):
    runtime = get_runtime(request)
    token = await runtime.auth.verify_forgot_password_otp(
        body.code, email=body.email, phone=body.phone, tenant_id=body.tenant_id
    )
    return Envelope(status="ok", data={"reset_token": token})


@router.post("/auth/password/reset", response_model=Envelope, tags=["password"])
async def reset_password(body: ResetPasswordRequest, request: Request):
    runtime = get_runtime(request)
    await runtime.auth.reset_password(
        body.code,
        body.new_password,
        email=body.email,
        phone=body.phone,
        tenant_id=body.tenant_id,
    )
    return Envelope(status="ok", data={"status": "reset"})


@router.post("/auth/password/reset-token", response_model=Envelope, tags=["password"])
async def reset_password_with_token(body: ResetPasswordWithTokenRequest, request: Request):
    runtime = get_runtime(request)
    await runtime.auth.reset_password_with_token(body.token, body.new_password)
    return Envelope(status="ok", data={"status": "reset"})


# -- contact verification ---------------------------------------------------


@router.post("/auth/verify/email/send", response_model=Envelope, tags=["verification"])
async def send_email_verification(
    request: Request, principal: AuthContext = Depends(get_pending_user)
):
    runtime = get_runtime(request)
    issued = await runtime.auth.send_email_verification(principal.user_id)
    return _code_sent_envelope(issued)


@router.post("/auth/verify/email", response_model=Envelope, tags=["verification"])
async def verify_email(
    body: VerifyCodeRequest,
    request: Request,
    principal: AuthContext = Depends(get_pending_user),
):
    runtime = get_runtime(request)
    user = await runtime.auth.verify_email(principal.user_id, body.code)
    return Envelope(status="ok", data=_user_response(runtime, user))


@router.post("/auth/verify/phone/send", response_model=Envelope, tags=["verification"])
async def send_phone_verification(
    request: Request, principal: AuthContext = Depends(get_pending_user)
):
    runtime = get_runtime(request)
    issued = await runtime.auth.send_phone_verification(principal.user_id)
    return _code_sent_envelope(issued)


@router.post("/auth/verify/phone", response_model=Envelope, tags=["verification"])
async def verify_phone(
    body: VerifyCodeRequest,
    request: Request,
    principal: AuthContext = Depends(get_pending_user),
):
    runtime = get_runtime(request)
    user = await runtime.auth.verify_phone(principal.user_id, body.code)
    return Envelope(status="ok", data=_user_response(runtime, user))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(request: Request, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime(request)
    return Envelope(status="ok", data=_user_response(runtime, principal.user))
