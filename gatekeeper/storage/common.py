"""Storage helpers shared between the memory, postgres and redis backends."""

from __future__ import annotations

import base64
import hashlib
import json
from datetime import datetime, timezone
from ipaddress import ip_address
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from gatekeeper.logging import get_logger

logger = get_logger(__name__)


def hash_token(value: str) -> str:
    """One-way digest used wherever an opaque bearer value is persisted."""
    return hashlib.sha256(value.encode()).hexdigest()


def normalize_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    return email.strip().lower() or None


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    if not phone:
        return None
    cleaned = "".join(ch for ch in phone.strip() if ch.isdigit() or ch == "+")
    return cleaned or None


def parse_ip_address(raw_ip: Any) -> Optional[str]:
    """Normalize an IP address to its canonical string form, or None."""
    if raw_ip is None:
        return None
    text = str(raw_ip).strip()
    if not text:
        return None
    try:
        return str(ip_address(text))
    except ValueError:
        logger.warning("ip_address_invalid", raw_ip=text)
        return None


def parse_json_meta(raw_meta: Any) -> Dict:
    if raw_meta is None:
        return {}
    if isinstance(raw_meta, dict):
        return raw_meta
    if isinstance(raw_meta, (str, bytes)):
        try:
            parsed = json.loads(raw_meta)
        except (TypeError, ValueError):
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def serialize_datetime(value: Optional[datetime]) -> Optional[str]:
    return as_utc(value).isoformat() if value is not None else None


def deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    return as_utc(datetime.fromisoformat(raw))


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Read a column from a dict_row or mapping without raising on absence."""
    if row is None:
        return default
    try:
        value = row[key]
    except (KeyError, IndexError, TypeError):
        return default
    return default if value is None else value


class SecretCipher:
    """Fernet wrapper for TOTP secrets at rest.

    The key is derived from arbitrary key material via SHA-256 so operators can
    supply any sufficiently random string.
    """

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("key material required for secret encryption")
        derived = base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())
        self._fernet = Fernet(derived)

    def encrypt(self, secret: str) -> str:
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            logger.error("mfa_secret_decrypt_failed")
            raise ValueError("stored MFA secret cannot be decrypted") from exc
