from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Union

from gatekeeper.config import MfaMethod, Settings
from gatekeeper.logging import bind_log_context, get_logger
from gatekeeper.service.errors import (
    AccountInactiveError,
    EmailAlreadyExistsError,
    EmailNotVerifiedError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidProviderError,
    MfaRequiredError,
    MissingRequiredFieldsError,
    OtpInvalidError,
    PhoneAlreadyExistsError,
    RegistrationDisabledError,
    SessionNotFoundError,
    TokenInvalidError,
    UserNotFoundError,
    ValidationError,
)
from gatekeeper.service.events import AuditEmitter, EventName
from gatekeeper.service.mfa import IssuedCode, MfaService
from gatekeeper.service.passwords import PasswordService
from gatekeeper.service.providers import (
    EMAIL,
    PHONE,
    CredentialProvider,
    ProviderRegistry,
    ProviderUser,
    require_fields,
    scoped_identity_id,
)
from gatekeeper.service.roles import RoleService
from gatekeeper.service.sessions import DeviceMeta, SessionManager, to_session_view
from gatekeeper.service.tenants import TenantService
from gatekeeper.service.tokens import ACCESS, MFA_CHALLENGE, TokenPair, TokenService
from gatekeeper.storage.common import normalize_email, normalize_phone
from gatekeeper.storage.errors import ConstraintViolation
from gatekeeper.storage.models import Identity, OtpPurpose, Session, User, new_id, utcnow

logger = get_logger(__name__)


class UserStore(Protocol):
    def create_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(
        self, email: str, tenant_id: Optional[str] = None
    ) -> Optional[User]: ...

    def get_user_by_phone(
        self, phone: str, tenant_id: Optional[str] = None
    ) -> Optional[User]: ...

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]: ...

    def link_identity(self, identity: Identity) -> Identity: ...

    def find_identity(self, provider: str, provider_id: str) -> Optional[Identity]: ...

    def find_user_identity(self, user_id: str, provider: str) -> Optional[Identity]: ...

    def list_identities(self, user_id: str) -> List[Identity]: ...


@dataclass
class AuthResult:
    user: User
    session: Optional[Session] = None
    tokens: Optional[TokenPair] = None
    trusted_device_token: Optional[str] = None
    requires_mfa: bool = False


@dataclass
class MfaChallenge:
    """Returned by ``login`` instead of tokens when a second factor is due."""

    user_id: str
    challenge_token: str
    methods: List[MfaMethod]
    default_method: Optional[MfaMethod]
    expires_at: datetime


@dataclass
class AuthContext:
    user: User
    session: Session
    claims: Dict[str, Any]
    roles: List[str] = field(default_factory=list)

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def tenant_id(self) -> Optional[str]:
        return self.user.tenant_id


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


class AuthOrchestrator:
    """End-to-end flows composed from providers, sessions, MFA and tokens.

    Every flow is an explicit sequence of calls; lifecycle events are
    published once the flow has succeeded.

    Spent MFA challenge ids live in this instance only. Behind several
    workers a challenge stays single-use per worker, bounded by the short
    ``mfa_challenge_expiry``; the second factor itself is still checked by
    ``MfaService.verify`` on every attempt.
    """

    def __init__(
        self,
        settings: Settings,
        users: UserStore,
        *,
        tokens: TokenService,
        sessions: SessionManager,
        mfa: MfaService,
        providers: ProviderRegistry,
        passwords: PasswordService,
        tenants: TenantService,
        roles: RoleService,
        events: Optional[AuditEmitter] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.users = users
        self.tokens = tokens
        self.sessions = sessions
        self.mfa = mfa
        self.providers = providers
        self.passwords = passwords
        self.tenants = tenants
        self.roles = roles
        self.events = events
        self.logger = logger
        self._clock = clock or utcnow
        self._state_lock = threading.Lock()
        # Spent MFA challenge ids mapped to their expiry
        self._used_challenges: Dict[str, datetime] = {}

    def _now(self) -> datetime:
        return self._clock()

    # -- helpers ---------------------------------------------------------

    def _publish(
        self,
        name: EventName,
        user: Optional[User] = None,
        session: Optional[Session] = None,
        **payload: Any,
    ) -> None:
        if not self.events:
            return
        self.events.publish(
            name,
            user_id=user.id if user else None,
            tenant_id=user.tenant_id if user else None,
            session_id=session.id if session else None,
            payload=payload,
        )

    def build_claims(self, user: User) -> Dict[str, Any]:
        return {
            "sub": user.id,
            "email": user.email,
            "phone": user.phone,
            "isVerified": user.is_verified,
            "roles": self.roles.role_names(user.id),
            "tenantId": user.tenant_id,
            "isMfaEnabled": user.is_mfa_enabled,
        }

    def _require_user(self, user_id: str) -> User:
        user = self.users.get_user(user_id)
        if not user:
            raise UserNotFoundError("User not found")
        return user

    def _ensure_active(self, user: User) -> None:
        if not user.is_active:
            self.logger.info("login_rejected_inactive", user_id=user.id)
            raise AccountInactiveError("Your account is suspended, please contact support")

    def _start_session(
        self,
        user: User,
        device: Optional[DeviceMeta],
        *,
        is_mfa_verified: bool,
        provider: Optional[str] = None,
    ) -> tuple[Session, TokenPair]:
        data = {"provider": provider} if provider else None
        return self.sessions.create(
            user,
            device,
            claims=self.build_claims(user),
            data=data,
            is_mfa_verified=is_mfa_verified,
        )

    def _find_user(
        self,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> Optional[User]:
        if email:
            return self.users.get_user_by_email(email, tenant_id)
        if phone:
            return self.users.get_user_by_phone(phone, tenant_id)
        return None

    def _create_user(self, user: User) -> User:
        try:
            return self.users.create_user(user)
        except ConstraintViolation as exc:
            if exc.field == "phone":
                raise PhoneAlreadyExistsError("Phone number already exists in this tenant")
            raise EmailAlreadyExistsError("Email already exists in this tenant")

    def _link(self, user: User, provider: str, provider_id: str, metadata: Optional[Dict] = None) -> None:
        try:
            self.users.link_identity(
                Identity(
                    id=new_id(),
                    user_id=user.id,
                    provider=provider,
                    provider_id=provider_id,
                    metadata=dict(metadata or {}),
                )
            )
        except ConstraintViolation:
            self.logger.warning("identity_link_conflict", user_id=user.id, provider=provider)
            raise InvalidCredentialsError("Identity is linked to another account")

    # -- signup ----------------------------------------------------------

    async def signup(
        self,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        password: Optional[str] = None,
        tenant_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        device: Optional[DeviceMeta] = None,
    ) -> AuthResult:
        if not self.settings.registration_enabled:
            raise RegistrationDisabledError("Registration is disabled")
        email = normalize_email(email)
        phone = normalize_phone(phone)
        if not email and not phone:
            raise MissingRequiredFieldsError(
                "Either email or phone must be provided",
                detail={"missing": ["email|phone"]},
            )
        if email and not self.settings.email_auth_enabled:
            raise InvalidProviderError("Email authentication is not enabled")
        if phone and not self.settings.phone_auth_enabled:
            raise InvalidProviderError("Phone authentication is not enabled")
        if password is not None or email:
            self.passwords.validate_policy(password)

        resolved_tenant = self.tenants.resolve_tenant_id(tenant_id)
        user = self._create_user(
            User(
                id=new_id(),
                email=email,
                phone=phone,
                tenant_id=resolved_tenant,
                password_hash=self.passwords.hash(password) if password else None,
                metadata=dict(metadata or {}),
            )
        )
        if email:
            self._link(user, EMAIL, scoped_identity_id(resolved_tenant, email))
        if phone:
            self._link(user, PHONE, scoped_identity_id(resolved_tenant, phone))
        self.roles.assign_default_roles(user)
        self.logger.info("user_registered", user_id=user.id, tenant_id=resolved_tenant)

        result = AuthResult(user=user, requires_mfa=self.mfa.is_requires_mfa(user))
        auto_login = self.settings.auto_login_after_signup and not (
            self.settings.require_email_verification and email
        )
        if auto_login:
            result.session, result.tokens = self._start_session(
                user, device, is_mfa_verified=False, provider=EMAIL if email else PHONE
            )
        self._publish(
            EventName.REGISTERED,
            user,
            result.session,
            requires_mfa=result.requires_mfa,
            auto_login=auto_login,
        )
        return result

    # -- login -----------------------------------------------------------

    async def login(
        self,
        provider_name: str,
        credentials: Mapping[str, Any],
        *,
        tenant_id: Optional[str] = None,
        device: Optional[DeviceMeta] = None,
        trusted_device_token: Optional[str] = None,
        create_user_if_not_exists: bool = False,
    ) -> Union[AuthResult, MfaChallenge]:
        provider = self.providers.get(provider_name)
        require_fields(provider, credentials)
        resolved_tenant = self.tenants.resolve_tenant_id(tenant_id)
        provider_user = await provider.validate(credentials, tenant_id=resolved_tenant)

        user = provider_user.user or self._resolve_identity(
            provider, provider_user, resolved_tenant
        )
        if not user:
            if not create_user_if_not_exists:
                self.logger.info("login_unknown_identity", provider=provider.name)
                raise InvalidCredentialsError("Invalid credentials")
            user = self._handle_social_login(provider, provider_user, resolved_tenant)
        elif provider_user.user is not None:
            # Local providers: make sure the identity row exists for older accounts
            self._link(user, provider.name, provider_user.provider_user_id)

        self._ensure_active(user)
        if (
            self.settings.require_email_verification
            and provider.name == EMAIL
            and not user.email_verified_at
        ):
            raise EmailNotVerifiedError("Email address has not been verified")
        self._maybe_rehash(user, credentials)

        requires_mfa = not provider.skip_mfa and self.mfa.is_requires_mfa(user)
        trusted = False
        if requires_mfa and trusted_device_token:
            trusted = self.mfa.validate_trusted_device(user.id, trusted_device_token)
            if trusted:
                requires_mfa = False
                self.logger.info("login_mfa_bypassed_trusted_device", user_id=user.id)

        if requires_mfa:
            return self._issue_challenge(user, provider.name)

        session, tokens = self._start_session(
            user,
            device,
            is_mfa_verified=trusted or provider.skip_mfa,
            provider=provider.name,
        )
        self.logger.info("login_succeeded", user_id=user.id, provider=provider.name)
        self._publish(EventName.LOGGED_IN, user, session, provider=provider.name)
        return AuthResult(user=user, session=session, tokens=tokens)

    def _resolve_identity(
        self,
        provider: CredentialProvider,
        provider_user: ProviderUser,
        tenant_id: Optional[str],
    ) -> Optional[User]:
        identity = self.users.find_identity(
            provider.name, provider.normalize_id(provider_user.provider_user_id)
        )
        if not identity:
            return None
        user = self.users.get_user(identity.user_id)
        # An identity owned by another tenant's user does not exist for this tenant
        if not user or user.tenant_id != tenant_id:
            return None
        return user

    def _handle_social_login(
        self,
        provider: CredentialProvider,
        provider_user: ProviderUser,
        tenant_id: Optional[str],
    ) -> User:
        if not self.settings.registration_enabled:
            raise RegistrationDisabledError("Registration is disabled")
        provider_id = provider.normalize_id(provider_user.provider_user_id)
        if self.users.find_identity(provider.name, provider_id):
            # Owned by a user in another tenant; _resolve_identity already hid it
            self.logger.warning(
                "identity_owned_elsewhere", provider=provider.name, tenant_id=tenant_id
            )
            raise InvalidCredentialsError("Identity is linked to another account")
        link_with = provider.link_user_with()
        email = provider_user.email if link_with == "email" else None
        phone = provider_user.phone if link_with == "phone" else None
        user = self._find_user(email=email, phone=phone, tenant_id=tenant_id)
        if not user:
            now = self._now()
            try:
                user = self.users.create_user(
                    User(
                        id=new_id(),
                        email=email,
                        phone=phone,
                        tenant_id=tenant_id,
                        is_verified=True,
                        email_verified_at=now if email else None,
                        phone_verified_at=now if phone else None,
                        metadata=dict(provider_user.metadata),
                    )
                )
            except ConstraintViolation:
                # Created concurrently by another login
                user = self._find_user(email=email, phone=phone, tenant_id=tenant_id)
                if not user:
                    raise
            else:
                self.roles.assign_default_roles(user)
                self.logger.info(
                    "user_auto_created", user_id=user.id, provider=provider.name
                )
                self._publish(EventName.REGISTERED, user, provider=provider.name)
        self._link(user, provider.name, provider_id, provider_user.metadata)
        return user

    def _maybe_rehash(self, user: User, credentials: Mapping[str, Any]) -> None:
        password = credentials.get("password")
        if not password or not user.password_hash:
            return
        if self.passwords.needs_rehash(user.password_hash):
            self.users.update_user(user.id, password_hash=self.passwords.hash(str(password)))
            self.logger.info("password_rehashed", user_id=user.id)

    def _issue_challenge(self, user: User, provider_name: str) -> MfaChallenge:
        methods = self.mfa.get_challenge_methods(user)
        challenge_token = self.tokens.generate_mfa_challenge_token(
            {"sub": user.id, "tenantId": user.tenant_id, "provider": provider_name}
        )
        expires_at = self._now() + timedelta(seconds=self.tokens.mfa_challenge_ttl)
        self.logger.info("login_mfa_challenge_issued", user_id=user.id, methods=len(methods))
        return MfaChallenge(
            user_id=user.id,
            challenge_token=challenge_token,
            methods=methods,
            default_method=methods[0] if methods else None,
            expires_at=expires_at,
        )

    def _read_challenge(self, challenge_token: str) -> Dict[str, Any]:
        payload = self.tokens.verify_token(challenge_token, expected_type=MFA_CHALLENGE)
        jti = payload.get("jti")
        with self._state_lock:
            now = self._now()
            for stale, expiry in list(self._used_challenges.items()):
                if expiry <= now:
                    self._used_challenges.pop(stale, None)
            if not jti or jti in self._used_challenges:
                raise TokenInvalidError("MFA challenge has already been completed")
        return payload

    def _spend_challenge(self, payload: Dict[str, Any]) -> None:
        expiry = datetime.fromtimestamp(float(payload["exp"]), tz=self._now().tzinfo)
        with self._state_lock:
            if payload["jti"] in self._used_challenges:
                raise TokenInvalidError("MFA challenge has already been completed")
            self._used_challenges[payload["jti"]] = expiry

    # -- second factor ---------------------------------------------------

    async def send_mfa_code(
        self,
        method: MfaMethod,
        *,
        challenge_token: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> IssuedCode:
        if challenge_token:
            user_id = str(self._read_challenge(challenge_token)["sub"])
        if not user_id:
            raise MissingRequiredFieldsError(
                "A challenge token or user is required", detail={"missing": ["challenge_token"]}
            )
        return self.mfa.send_code(self._require_user(user_id).id, method)

    async def verify_2fa(
        self,
        challenge_token: str,
        code: str,
        method: MfaMethod,
        *,
        remember_device: bool = False,
        device: Optional[DeviceMeta] = None,
    ) -> AuthResult:
        payload = self._read_challenge(challenge_token)
        user = self._require_user(str(payload["sub"]))
        self._ensure_active(user)
        self.mfa.verify(user.id, code, method)
        self._spend_challenge(payload)

        session, tokens = self._start_session(
            user, device, is_mfa_verified=True, provider=payload.get("provider")
        )
        trust_token = None
        if remember_device:
            trust_token = self.mfa.create_trusted_device(user.id, device)
        self.logger.info("mfa_verified", user_id=user.id, method=method.value)
        self._publish(EventName.TWO_FACTOR_VERIFIED, user, session, method=method.value)
        self._publish(EventName.LOGGED_IN, user, session, provider=payload.get("provider"))
        return AuthResult(
            user=user, session=session, tokens=tokens, trusted_device_token=trust_token
        )

    async def verify_session_2fa(
        self,
        session_id: str,
        code: str,
        method: MfaMethod,
        *,
        remember_device: bool = False,
        device: Optional[DeviceMeta] = None,
    ) -> AuthResult:
        """Complete the second factor on an existing session (e.g. right after signup)."""
        session = self.sessions.validate_session(session_id)
        user = self._require_user(session.user_id)
        self.mfa.verify(user.id, code, method)
        self.sessions.mark_mfa_verified(session.id)
        session, tokens = self.sessions.reissue(session.id, self.build_claims(user))
        trust_token = None
        if remember_device:
            trust_token = self.mfa.create_trusted_device(user.id, device)
        self._publish(EventName.TWO_FACTOR_VERIFIED, user, session, method=method.value)
        return AuthResult(
            user=user, session=session, tokens=tokens, trusted_device_token=trust_token
        )

    # -- refresh and logout ----------------------------------------------

    async def refresh(self, refresh_token: str) -> AuthResult:
        unverified = self.tokens.decode_token(refresh_token) or {}
        user = self.users.get_user(str(unverified.get("sub"))) if unverified.get("sub") else None
        claims = self.build_claims(user) if user else None
        session, tokens = self.sessions.refresh(refresh_token, claims=claims)
        if not user or user.id != session.user_id:
            user = self.users.get_user(session.user_id)
        if not user or not user.is_active:
            self.sessions.revoke(session.id)
            raise AccountInactiveError("Your account is suspended, please contact support")
        self._publish(EventName.REFRESH_TOKEN, user, session)
        return AuthResult(user=user, session=session, tokens=tokens)

    async def logout(self, session_id: str) -> bool:
        session = self.sessions.store.get_session(session_id)
        removed = self.sessions.revoke(session_id)
        if session:
            user = self.users.get_user(session.user_id)
            self._publish(EventName.LOGGED_OUT, user, session)
        return removed

    async def logout_all(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        user = self._require_user(user_id)
        if except_session_id:
            count = self.sessions.revoke_others(user.id, except_session_id)
        else:
            count = self.sessions.revoke_all(user.id)
        self._publish(EventName.LOGGED_OUT_ALL, user, count=count)
        return count

    # -- passwords -------------------------------------------------------

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        current_session_id: Optional[str] = None,
        revoke_other_sessions: bool = True,
    ) -> User:
        user = self._require_user(user_id)
        if not self.passwords.verify(user.password_hash, current_password):
            self.logger.info("password_change_rejected", user_id=user.id)
            raise InvalidCredentialsError("Current password is incorrect")
        self.passwords.validate_policy(new_password)
        updated = self.users.update_user(user.id, password_hash=self.passwords.hash(new_password))
        if revoke_other_sessions:
            if current_session_id:
                self.sessions.revoke_others(user.id, current_session_id)
            else:
                self.sessions.revoke_all(user.id)
        self._publish(EventName.PASSWORD_CHANGED, user)
        return updated or user

    async def forgot_password(
        self,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> None:
        """Issue a reset code if the account exists; callers always see success."""
        resolved_tenant = self.tenants.resolve_tenant_id(tenant_id)
        user = self._find_user(
            email=normalize_email(email), phone=normalize_phone(phone), tenant_id=resolved_tenant
        )
        if not user or not user.is_active:
            self.logger.info("password_reset_requested_unknown")
            return
        issued = self.mfa.issue_code(
            user.id,
            OtpPurpose.PASSWORD_RESET,
            self.settings.seconds("password_reset_otp_expiry"),
        )
        self.logger.info("password_reset_requested", user_id=user.id)
        self._publish(
            EventName.PASSWORD_RESET_REQUESTED,
            user,
            code=issued.code,
            destination=user.email if email else user.phone,
            expires_at=issued.expires_at.isoformat(),
        )

    def _user_for_code(
        self,
        email: Optional[str],
        phone: Optional[str],
        tenant_id: Optional[str],
    ) -> User:
        resolved_tenant = self.tenants.resolve_tenant_id(tenant_id)
        user = self._find_user(
            email=normalize_email(email), phone=normalize_phone(phone), tenant_id=resolved_tenant
        )
        if not user:
            # Same error shape as a wrong code
            raise OtpInvalidError("Code is invalid")
        return user

    async def verify_forgot_password_otp(
        self,
        code: str,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> str:
        """Exchange a reset code for a short-lived password reset token."""
        user = self._user_for_code(email, phone, tenant_id)
        self.mfa.consume_code(user.id, OtpPurpose.PASSWORD_RESET, code, mode="mark")
        return self.tokens.generate_password_reset_token(
            user.id, self.passwords.fingerprint(user.password_hash)
        )

    async def reset_password(
        self,
        code: str,
        new_password: str,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> User:
        user = self._user_for_code(email, phone, tenant_id)
        self.passwords.validate_policy(new_password)
        self.mfa.consume_code(user.id, OtpPurpose.PASSWORD_RESET, code, mode="mark")
        return self._apply_password_reset(user, new_password)

    async def reset_password_with_token(self, token: str, new_password: str) -> User:
        unverified = self.tokens.decode_token(token) or {}
        user = self.users.get_user(str(unverified.get("sub", "")))
        if not user:
            raise TokenInvalidError("Password reset token is invalid")
        self.tokens.verify_password_reset_token(
            token, self.passwords.fingerprint(user.password_hash)
        )
        self.passwords.validate_policy(new_password)
        return self._apply_password_reset(user, new_password)

    def _apply_password_reset(self, user: User, new_password: str) -> User:
        updated = self.users.update_user(user.id, password_hash=self.passwords.hash(new_password))
        revoked = self.sessions.revoke_all(user.id)
        self.logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        self._publish(EventName.PASSWORD_RESET, user)
        return updated or user

    # -- contact verification --------------------------------------------

    async def send_email_verification(self, user_id: str) -> IssuedCode:
        user = self._require_user(user_id)
        if not user.email:
            raise ValidationError("User has no email address")
        issued = self.mfa.issue_code(
            user.id,
            OtpPurpose.VERIFICATION,
            self.settings.seconds("email_verification_otp_expiry"),
        )
        issued.destination = user.email
        self._publish(
            EventName.EMAIL_VERIFICATION_REQUESTED,
            user,
            code=issued.code,
            destination=user.email,
            expires_at=issued.expires_at.isoformat(),
        )
        return issued

    async def verify_email(self, user_id: str, code: str) -> User:
        user = self._require_user(user_id)
        self.mfa.consume_code(user.id, OtpPurpose.VERIFICATION, code)
        updated = self.users.update_user(
            user.id, email_verified_at=self._now(), is_verified=True
        )
        self.logger.info("email_verified", user_id=user.id)
        self._publish(EventName.EMAIL_VERIFIED, user)
        return updated or user

    async def send_phone_verification(self, user_id: str) -> IssuedCode:
        user = self._require_user(user_id)
        if not user.phone:
            raise ValidationError("User has no phone number")
        issued = self.mfa.issue_code(user.id, OtpPurpose.VERIFICATION, self.mfa.otp_ttl)
        issued.destination = user.phone
        self._publish(
            EventName.PHONE_VERIFICATION_REQUESTED,
            user,
            code=issued.code,
            destination=user.phone,
            expires_at=issued.expires_at.isoformat(),
        )
        return issued

    async def verify_phone(self, user_id: str, code: str) -> User:
        user = self._require_user(user_id)
        self.mfa.consume_code(user.id, OtpPurpose.VERIFICATION, code)
        updated = self.users.update_user(
            user.id, phone_verified_at=self._now(), is_verified=True
        )
        self.logger.info("phone_verified", user_id=user.id)
        self._publish(EventName.PHONE_VERIFIED, user)
        return updated or user

    # -- request authentication ------------------------------------------

    async def authenticate(
        self,
        access_token: Optional[str],
        *,
        allow_pending_mfa: bool = False,
        guard: Optional[str] = None,
        roles: Optional[Iterable[str]] = None,
        permissions: Optional[Iterable[str]] = None,
    ) -> AuthContext:
        """Resolve an access token to a live session and active user.

        Checks in order: signature and expiry, session existence, account
        state, MFA completion, then role and permission requirements.
        """
        if not access_token:
            raise TokenInvalidError("Access token missing")
        claims = self.tokens.verify_token(access_token, expected_type=ACCESS)
        session_id = claims.get("sessionId")
        if not session_id:
            raise TokenInvalidError("Access token is not bound to a session")
        session = self.sessions.validate_session(str(session_id))
        if session.user_id != claims.get("sub"):
            self.logger.warning("access_token_session_mismatch", session_id=session.id)
            raise TokenInvalidError("Access token does not match its session")
        user = self.users.get_user(session.user_id)
        if not user:
            raise UserNotFoundError("User not found")
        self._ensure_active(user)
        if (
            not allow_pending_mfa
            and self.mfa.is_requires_mfa(user)
            and not session.is_mfa_verified
        ):
            raise MfaRequiredError("Multi-factor authentication required")

        role_names = self.roles.role_names(user.id, guard=guard)
        required_roles = list(roles or [])
        if required_roles and not set(required_roles) & set(role_names):
            raise ForbiddenError("Insufficient role", detail={"required": required_roles})
        for permission in permissions or []:
            if not self.roles.has_permission(user.id, permission, guard=guard):
                raise ForbiddenError(
                    "Insufficient permissions", detail={"required": permission}
                )
        bind_log_context(user_id=user.id, session_id=session.id, tenant_id=user.tenant_id)
        return AuthContext(user=user, session=session, claims=claims, roles=role_names)

    # -- session management ----------------------------------------------

    async def list_sessions(
        self, user_id: str, current_session_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        return [
            to_session_view(s, current_session_id)
            for s in self.sessions.list_active(user_id, current_session_id)
        ]

    async def revoke_session(self, user_id: str, session_id: str) -> bool:
        session = self.sessions.store.get_session(session_id)
        if not session:
            return False
        if session.user_id != user_id:
            raise SessionNotFoundError("Session not found")
        return self.sessions.revoke(session_id)
