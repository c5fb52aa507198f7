from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from gatekeeper.config import Settings
from gatekeeper.logging import get_logger
from gatekeeper.service.errors import TokenExpiredError, TokenInvalidError

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
PASSWORD_RESET = "password_reset"
MFA_CHALLENGE = "mfa_challenge"
ENGINE_TOKEN_TYPES = frozenset({ACCESS, REFRESH, PASSWORD_RESET, MFA_CHALLENGE})

# Claims the service sets itself; callers cannot override them
_RESERVED_CLAIMS = ("type", "iat", "exp", "jti")


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"

    def as_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "access_expires_at": self.access_expires_at.isoformat(),
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
        }


def strip_reserved(claims: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in claims.items() if k not in _RESERVED_CLAIMS}


class TokenService:
    """HS256 signing and verification of access, refresh and single-purpose tokens.

    Verification is stateless: signature, expiry and the ``type``
    discriminator only. Revocation is the session store's concern.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Callable[[], float]] = None,
        secret: Optional[str] = None,
    ) -> None:
        self.settings = settings
        self._secret = (secret or settings.jwt_secret).encode()
        self._clock = clock or time.time
        self.access_ttl = settings.seconds("access_token_expiry")
        self.refresh_ttl = settings.seconds("refresh_token_expiry")
        self.password_reset_ttl = settings.seconds("password_reset_token_expiry")
        self.mfa_challenge_ttl = settings.seconds("mfa_challenge_expiry")

    def generate_access_token(self, claims: dict[str, Any]) -> str:
        return self._sign(claims, ACCESS, self.access_ttl)

    def generate_refresh_token(
        self, claims: dict[str, Any], *, expires_at: Optional[float] = None
    ) -> str:
        # A random jti keeps each rotation distinct even within the same second
        return self._sign(
            claims,
            REFRESH,
            self.refresh_ttl,
            expires_at=expires_at,
            jti=secrets.token_urlsafe(16),
        )

    def generate_tokens(
        self, claims: dict[str, Any], *, refresh_expires_at: Optional[float] = None
    ) -> TokenPair:
        now = int(self._clock())
        refresh_exp = (
            int(refresh_expires_at)
            if refresh_expires_at is not None
            else now + self.refresh_ttl
        )
        return TokenPair(
            access_token=self.generate_access_token(claims),
            refresh_token=self.generate_refresh_token(claims, expires_at=refresh_exp),
            access_expires_at=datetime.fromtimestamp(now + self.access_ttl, tz=timezone.utc),
            refresh_expires_at=datetime.fromtimestamp(refresh_exp, tz=timezone.utc),
        )

    def verify_token(
        self, token: str, *, expected_type: Optional[str] = None
    ) -> dict[str, Any]:
        """Return the decoded claims or raise TokenInvalidError / TokenExpiredError."""
        payload = self._decode(token)
        exp = payload.get("exp")
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            raise TokenInvalidError("Token has no valid expiry")
        if exp_ts <= self._clock():
            raise TokenExpiredError("Token has expired", detail={"type": payload.get("type")})
        if expected_type and payload.get("type") != expected_type:
            logger.warning(
                "token_type_mismatch",
                expected=expected_type,
                received=payload.get("type"),
            )
            raise TokenInvalidError("Token type mismatch")
        return payload

    def decode_token(self, token: str) -> Optional[dict[str, Any]]:
        """Decode a token without checking signature or expiry; None if malformed."""
        try:
            _, payload_b64, _ = token.split(".")
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            return None
        return payload if isinstance(payload, dict) else None

    def generate_password_reset_token(self, user_id: str, password_fingerprint: str) -> str:
        return self._sign(
            {"sub": user_id, "pwd": password_fingerprint},
            PASSWORD_RESET,
            self.password_reset_ttl,
        )

    def verify_password_reset_token(self, token: str, current_fingerprint: str) -> str:
        """Return the user id the token was issued for.

        The token dies as soon as the password it was issued against changes.
        """
        payload = self.verify_token(token, expected_type=PASSWORD_RESET)
        stored = str(payload.get("pwd", ""))
        if not stored or not hmac.compare_digest(stored, current_fingerprint):
            raise TokenInvalidError("Password reset token is no longer valid")
        return str(payload["sub"])

    def generate_mfa_challenge_token(self, claims: dict[str, Any]) -> str:
        return self._sign(
            claims, MFA_CHALLENGE, self.mfa_challenge_ttl, jti=secrets.token_urlsafe(16)
        )

    def _sign(
        self,
        claims: dict[str, Any],
        token_type: str,
        ttl: int,
        *,
        expires_at: Optional[float] = None,
        jti: Optional[str] = None,
    ) -> str:
        now = int(self._clock())
        payload = strip_reserved(claims)
        payload.update(
            {
                "type": token_type,
                "iat": now,
                "exp": int(expires_at) if expires_at is not None else now + ttl,
            }
        )
        if jti:
            payload["jti"] = jti
        return self._encode_jwt(payload)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":"), default=str).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _decode(self, token: str) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise TokenInvalidError("Token missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError("Malformed token")

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise TokenInvalidError("Malformed token header")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalidError("Unsupported token algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenInvalidError("Token signature mismatch")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError("Malformed token payload")
        if not isinstance(payload, dict):
            raise TokenInvalidError("Malformed token payload")
        return payload
