from __future__ import annotations

from typing import Optional

from fastapi import Request, Response

from gatekeeper.config import Settings, TokenDelivery
from gatekeeper.service.auth import extract_bearer
from gatekeeper.service.tokens import TokenPair


def _cookie_kwargs(settings: Settings) -> dict:
    return {
        "httponly": True,
        "secure": settings.cookie_secure,
        "samesite": settings.cookie_samesite.value,
        "domain": settings.cookie_domain,
        "path": "/",
    }


def apply_token_cookies(response: Response, settings: Settings, tokens: TokenPair) -> None:
    """Set the access and refresh cookies; both live as long as the session."""
    max_age = settings.seconds("refresh_token_expiry")
    kwargs = _cookie_kwargs(settings)
    response.set_cookie(
        settings.access_cookie_name, tokens.access_token, max_age=max_age, **kwargs
    )
    response.set_cookie(
        settings.refresh_cookie_name, tokens.refresh_token, max_age=max_age, **kwargs
    )


def clear_token_cookies(response: Response, settings: Settings) -> None:
    kwargs = _cookie_kwargs(settings)
    kwargs.pop("httponly")
    response.delete_cookie(settings.access_cookie_name, **kwargs)
    response.delete_cookie(settings.refresh_cookie_name, **kwargs)


def deliver_tokens(
    response: Response, settings: Settings, tokens: Optional[TokenPair]
) -> Optional[TokenPair]:
    """Place tokens per ``token_delivery``; returns the pair to echo in the body, if any."""
    if tokens is None:
        return None
    if settings.token_delivery == TokenDelivery.COOKIE:
        apply_token_cookies(response, settings, tokens)
        return None
    return tokens


def access_token_from_request(request: Request, settings: Settings) -> Optional[str]:
    """Bearer header first, then the access cookie."""
    return extract_bearer(request.headers.get("authorization")) or request.cookies.get(
        settings.access_cookie_name
    )


def refresh_token_from_request(request: Request, settings: Settings) -> Optional[str]:
    """``X-Refresh-Token`` header first, then the refresh cookie."""
    return request.headers.get("x-refresh-token") or request.cookies.get(
        settings.refresh_cookie_name
    )
