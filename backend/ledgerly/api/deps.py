"""FastAPI dependencies: database, settings, clock, services and the current user."""
from dataclasses import dataclass

from fastapi import BackgroundTasks, Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from ledgerly.clock import Clock
from ledgerly.config import Settings, get_settings
from ledgerly.database import get_db
from ledgerly.models.auth import UserSession
from ledgerly.models.user import User
from ledgerly.services.errors import UnauthorizedError
from ledgerly.services.notifications import NotificationDispatcher
from ledgerly.services.otp import OtpService
from ledgerly.services.sessions import ClientMeta, SessionManager
from ledgerly.services.tokens import AccessClaims, TokenIssuer

__all__ = [
    "get_db",
    "get_settings",
    "get_clock",
    "get_token_issuer",
    "get_session_manager",
    "get_otp_service",
    "get_current_principal",
    "get_current_user",
]

bearer_scheme = HTTPBearer(auto_error=False)

CLIENT_META_MAX_LENGTH = 255


def get_clock() -> Clock:
    return Clock()


def get_token_issuer(
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
) -> TokenIssuer:
    return TokenIssuer(settings, clock)


def get_session_manager(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    issuer: TokenIssuer = Depends(get_token_issuer),
    clock: Clock = Depends(get_clock),
) -> SessionManager:
    return SessionManager(db, settings, issuer=issuer, clock=clock)


class BackgroundNotifier:
    """Defers code delivery until after the response is sent."""

    def __init__(self, background_tasks: BackgroundTasks, dispatcher: NotificationDispatcher):
        self.background_tasks = background_tasks
        self.dispatcher = dispatcher

    def send_code(self, channel: str, target: str, code: str) -> None:
        self.background_tasks.add_task(self.dispatcher.send_code, channel, target, code)


def get_notifier(
    background_tasks: BackgroundTasks,
    settings: Settings = Depends(get_settings),
) -> BackgroundNotifier:
    return BackgroundNotifier(background_tasks, NotificationDispatcher(settings))


def get_otp_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    notifier: BackgroundNotifier = Depends(get_notifier),
    issuer: TokenIssuer = Depends(get_token_issuer),
    clock: Clock = Depends(get_clock),
) -> OtpService:
    return OtpService(db, settings, notifier, issuer=issuer, clock=clock)


def get_request_ip(request: Request) -> str | None:
    """Extract best-effort client IP for session metadata."""
    xff = request.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip()[:45]
    if request.client:
        return request.client.host
    return None


def _clean(value: str | None) -> str | None:
    return value[:CLIENT_META_MAX_LENGTH] if value else None


def get_client_meta(request: Request) -> ClientMeta:
    """Device/platform/IP hints from request headers, truncated for storage."""
    return ClientMeta(
        device=_clean(request.headers.get("sec-ch-ua")) or _clean(request.headers.get("user-agent")),
        platform=_clean(request.headers.get("sec-ch-ua-platform")),
        ip_address=get_request_ip(request),
    )


@dataclass
class Principal:
    """The authenticated caller behind a bearer access token."""

    user: User
    session: UserSession
    claims: AccessClaims

    @property
    def user_id(self) -> str:
        return self.user.user_id


def get_current_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    issuer: TokenIssuer = Depends(get_token_issuer),
    manager: SessionManager = Depends(get_session_manager),
) -> Principal:
    """Verify the access token and bind it to a live session at the same version."""
    if credentials is None or not credentials.credentials:
        raise UnauthorizedError("Missing token")

    claims = issuer.verify_access_token(credentials.credentials)
    session = manager.authenticate_access(claims)

    user = manager.db.query(User).filter(User.user_id == claims.subject).first()
    if user is None or not user.is_active:
        raise UnauthorizedError()
    return Principal(user=user, session=session, claims=claims)


def get_current_user(principal: Principal = Depends(get_current_principal)) -> User:
    return principal.user
