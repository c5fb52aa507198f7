"""Transparent access-token refresh for HTTP callers.

When a request carries an expired (or missing) access token together with a
usable refresh token, the pair is rotated once before the route runs. The
route then sees the fresh access token and the response carries the new
pair. Any failure passes the request through untouched so the route's own
authentication decides the outcome.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Optional

from fastapi import Request, Response

from gatekeeper.api.cookies import (
    access_token_from_request,
    apply_token_cookies,
    refresh_token_from_request,
)
from gatekeeper.config import TokenDelivery
from gatekeeper.logging import get_logger
from gatekeeper.service.auth import AuthOrchestrator, AuthResult
from gatekeeper.service.errors import ServiceError, TokenExpiredError
from gatekeeper.service.tokens import ACCESS

logger = get_logger(__name__)

ACCESS_TOKEN_HEADER = "X-Access-Token"
REFRESH_TOKEN_HEADER = "X-Refresh-Token"

# Routes that spend the refresh token themselves
SKIP_PATH_SUFFIXES = ("/auth/refresh", "/auth/logout", "/auth/logout-all")


async def refresh_if_expired(
    auth: AuthOrchestrator,
    access_token: Optional[str],
    refresh_token: Optional[str],
) -> Optional[AuthResult]:
    """Rotate the pair when the access token is expired or absent; None otherwise."""
    if not refresh_token:
        return None
    if access_token:
        try:
            auth.tokens.verify_token(access_token, expected_type=ACCESS)
            return None
        except TokenExpiredError:
            pass
        except ServiceError:
            # A forged or malformed access token is not a refresh trigger
            return None
    try:
        return await auth.refresh(refresh_token)
    except ServiceError as exc:
        logger.info("transparent_refresh_failed", error_code=exc.error_code)
        return None


def _replace_authorization(request: Request, access_token: str) -> None:
    headers = [
        (name, value)
        for name, value in request.scope["headers"]
        if name.lower() != b"authorization"
    ]
    headers.append((b"authorization", f"Bearer {access_token}".encode("latin-1")))
    request.scope["headers"] = headers


async def transparent_refresh(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None or request.url.path.endswith(SKIP_PATH_SUFFIXES):
        return await call_next(request)
    settings = runtime.settings
    result = await refresh_if_expired(
        runtime.auth,
        access_token_from_request(request, settings),
        refresh_token_from_request(request, settings),
    )
    if result is None or result.tokens is None:
        return await call_next(request)

    _replace_authorization(request, result.tokens.access_token)
    logger.info("transparent_refresh_applied", session_id=result.session.id if result.session else None)
    response = await call_next(request)
    if settings.token_delivery == TokenDelivery.COOKIE:
        apply_token_cookies(response, settings, result.tokens)
    else:
        response.headers[ACCESS_TOKEN_HEADER] = result.tokens.access_token
        response.headers[REFRESH_TOKEN_HEADER] = result.tokens.refresh_token
    return response
