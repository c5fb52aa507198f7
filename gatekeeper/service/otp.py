"""One-time codes: random OTPs for email/SMS challenges and RFC 6238 TOTP."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import secrets
import string
import time
from typing import Optional
from urllib.parse import quote, urlencode

from gatekeeper.config import OtpFormat
from gatekeeper.logging import get_logger

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
# One adjacent step either side covers roughly 30s of clock skew
TOTP_WINDOW = 1

_ALPHANUMERIC = string.ascii_uppercase + string.digits


def generate_otp(length: int = 6, fmt: OtpFormat = OtpFormat.NUMERIC) -> str:
    alphabet = string.digits if fmt == OtpFormat.NUMERIC else _ALPHANUMERIC
    return "".join(secrets.choice(alphabet) for _ in range(length))


def generate_totp_secret(num_bytes: int = 20) -> str:
    return base64.b32encode(os.urandom(num_bytes)).decode("utf-8").rstrip("=")


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}", safe=":@")
    query = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": TOTP_DIGITS,
            "period": TOTP_INTERVAL,
        }
    )
    return f"otpauth://totp/{label}?{query}"


def generate_totp(
    secret: str,
    timestamp: Optional[float] = None,
    *,
    interval: int = TOTP_INTERVAL,
    digits: int = TOTP_DIGITS,
) -> str:
    """Return the TOTP code for ``timestamp`` or an empty string for a bad secret."""
    ts = time.time() if timestamp is None else timestamp
    padded = secret.strip().upper() + "=" * ((8 - len(secret.strip()) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(ts // interval).to_bytes(8, "big")
    # SHA1 is what authenticator apps implement
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    *,
    timestamp: Optional[float] = None,
    window: int = TOTP_WINDOW,
    interval: int = TOTP_INTERVAL,
) -> bool:
    if not code:
        return False
    candidate = code.strip().replace(" ", "")
    if not candidate.isdigit():
        return False
    now = time.time() if timestamp is None else timestamp
    matched = False
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, now + offset * interval, interval=interval)
        # Compare every step so the loop runs the same number of times either way
        if generated and hmac.compare_digest(generated, candidate):
            matched = True
    return matched


def generate_recovery_code() -> str:
    """Human-transcribable code grouped as XXXX-XXXX-XXXX-XXXX."""
    raw = "".join(secrets.choice(_ALPHANUMERIC) for _ in range(16))
    return "-".join(raw[i : i + 4] for i in range(0, 16, 4))


def normalize_recovery_code(code: str) -> str:
    return code.strip().upper().replace(" ", "").replace("-", "")
