"""Where refresh tokens travel: extraction, double-submit CSRF, cookies."""
from dataclasses import dataclass
import hmac
import logging
import secrets

from fastapi import Request, Response

from ledgerly.config import Settings
from ledgerly.schemas.auth import TokenRefresh
from ledgerly.services.errors import CsrfMismatchError

logger = logging.getLogger(__name__)

REFRESH_HEADER = "x-refresh-token"
CSRF_HEADERS = ("x-csrf-token", "x-xsrf-token")
CSRF_COOKIE_MAX_AGE = 7 * 24 * 60 * 60
MIN_BODY_TOKEN_LENGTH = 40


@dataclass(frozen=True)
class PresentedToken:
    token: str
    source: str  # cookie | header | body


def _from_cookie(request: Request, body: TokenRefresh | None, settings: Settings) -> str | None:
    return request.cookies.get(settings.refresh_cookie_name)


def _from_header(request: Request, body: TokenRefresh | None, settings: Settings) -> str | None:
    return request.headers.get(REFRESH_HEADER)


def _from_body(request: Request, body: TokenRefresh | None, settings: Settings) -> str | None:
    token = body.refresh_token if body else None
    if not token:
        return None
    if not settings.allow_body_refresh_token:
        logger.warning("Refresh token supplied in body but allow_body_refresh_token is off")
        return None
    if len(token) < MIN_BODY_TOKEN_LENGTH:
        return None
    return token


# Precedence order.
EXTRACTORS = (
    ("cookie", _from_cookie),
    ("header", _from_header),
    ("body", _from_body),
)


def extract_refresh_token(
    request: Request,
    body: TokenRefresh | None,
    settings: Settings,
) -> PresentedToken | None:
    """Return the first refresh token found, tagged with where it came from."""
    for source, extractor in EXTRACTORS:
        token = extractor(request, body, settings)
        if token and token.strip():
            return PresentedToken(token=token.strip(), source=source)
    return None


def require_csrf(request: Request, settings: Settings) -> None:
    """Double-submit check: the CSRF header must echo the CSRF cookie."""
    cookie = request.cookies.get(settings.csrf_cookie_name)
    header = next((request.headers[name] for name in CSRF_HEADERS if request.headers.get(name)), None)
    if not cookie or not header or not hmac.compare_digest(cookie.strip(), header.strip()):
        logger.warning(
            f"CSRF validation failed path={request.url.path} "
            f"cookie_present={bool(cookie)} header_present={bool(header)}"
        )
        raise CsrfMismatchError()


def set_refresh_cookies(response: Response, refresh_token: str, settings: Settings) -> str:
    """Issue the HttpOnly refresh cookie and a fresh JS-readable CSRF cookie."""
    response.set_cookie(
        key=settings.refresh_cookie_name,
        value=refresh_token,
        httponly=True,
        secure=settings.refresh_cookie_secure,
        samesite=settings.refresh_cookie_samesite,
        path=settings.refresh_cookie_path,
        max_age=settings.refresh_token_expire_days * 24 * 60 * 60,
    )
    csrf_token = secrets.token_urlsafe(24)
    response.set_cookie(
        key=settings.csrf_cookie_name,
        value=csrf_token,
        httponly=False,
        secure=settings.refresh_cookie_secure,
        samesite=settings.refresh_cookie_samesite,
        path="/",
        max_age=CSRF_COOKIE_MAX_AGE,
    )
    return csrf_token


def clear_refresh_cookies(response: Response, settings: Settings) -> None:
    """Clear refresh-token and CSRF cookies."""
    response.delete_cookie(
        key=settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        secure=settings.refresh_cookie_secure,
        httponly=True,
        samesite=settings.refresh_cookie_samesite,
    )
    response.delete_cookie(
        key=settings.csrf_cookie_name,
        path="/",
        secure=settings.refresh_cookie_secure,
        httponly=False,
        samesite=settings.refresh_cookie_samesite,
    )
