"""Session endpoints: refresh, logout, listing and revocation."""
from dataclasses import asdict
import logging

from fastapi import APIRouter, Depends, Request, Response

from ledgerly.api.deps import Principal, get_current_principal, get_session_manager, get_settings
from ledgerly.api.errors import auth_error_response
from ledgerly.api.transport import (
    clear_refresh_cookies,
    extract_refresh_token,
    require_csrf,
    set_refresh_cookies,
)
from ledgerly.config import Settings
from ledgerly.schemas.auth import MessageResponse, Token, TokenRefresh
from ledgerly.schemas.session import (
    RevokeOthersRequest,
    RevokeOthersResponse,
    SessionListResponse,
    SessionResponse,
)
from ledgerly.services.errors import InvalidRefreshTokenError, NotFoundError, TokenReuseDetectedError
from ledgerly.services.sessions import SessionManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/session", tags=["session"])


@router.post("/refresh", response_model=Token, response_model_exclude_none=True)
def refresh_tokens(
    request: Request,
    response: Response,
    body: TokenRefresh | None = None,
    settings: Settings = Depends(get_settings),
    manager: SessionManager = Depends(get_session_manager),
):
    """Rotate the refresh token.

    Order matters: extract, CSRF (cookie origin only), reuse detection, then
    rotation. Nothing is rotated unless every earlier step passed.
    """
    presented = extract_refresh_token(request, body, settings)
    if presented is None:
        raise InvalidRefreshTokenError()

    if presented.source == "cookie":
        require_csrf(request, settings)

    try:
        reused = manager.detect_reuse(presented.token)
        if reused is not None:
            raise TokenReuseDetectedError(session_id=reused.id, user_id=reused.user_id)
        issued = manager.rotate_refresh_token(presented.token)
    except InvalidRefreshTokenError as exc:
        if presented.source != "cookie":
            raise
        failure = auth_error_response(exc)
        clear_refresh_cookies(failure, settings)
        return failure

    # Deliver the new token the same way the old one arrived.
    if presented.source == "cookie":
        set_refresh_cookies(response, issued.refresh_token, settings)
        return Token(
            access_token=issued.access_token,
            session_id=issued.session.id,
            expires_at=issued.session.expires_at,
        )

    return Token(
        access_token=issued.access_token,
        refresh_token=issued.refresh_token,
        session_id=issued.session.id,
        expires_at=issued.session.expires_at,
    )


@router.post("/logout", response_model=MessageResponse)
def logout(
    request: Request,
    response: Response,
    body: TokenRefresh | None = None,
    settings: Settings = Depends(get_settings),
    manager: SessionManager = Depends(get_session_manager),
):
    """Revoke the presented session if any. Always succeeds."""
    presented = extract_refresh_token(request, body, settings)
    if presented is not None and presented.source == "cookie":
        require_csrf(request, settings)

    revoked = manager.logout(presented.token if presented else None)
    clear_refresh_cookies(response, settings)
    if revoked is None:
        return MessageResponse(message="No active session")
    return MessageResponse(message="Logged out")


@router.get("", response_model=SessionListResponse)
def list_sessions(
    include_revoked: bool = False,
    principal: Principal = Depends(get_current_principal),
    manager: SessionManager = Depends(get_session_manager),
):
    """List the caller's sessions, newest first."""
    summaries = manager.list_sessions(principal.user_id, include_revoked=include_revoked)
    return SessionListResponse(sessions=[
        SessionResponse(**asdict(summary), current=summary.id == principal.session.id)
        for summary in summaries
    ])


@router.delete("/{session_id}", response_model=MessageResponse)
def revoke_session(
    session_id: str,
    principal: Principal = Depends(get_current_principal),
    manager: SessionManager = Depends(get_session_manager),
):
    """Revoke one of the caller's sessions. Foreign sessions look absent."""
    if not manager.revoke_session(principal.user_id, session_id):
        raise NotFoundError("Session not found")
    return MessageResponse(message="Session revoked")


@router.post("/revoke-others", response_model=RevokeOthersResponse)
def revoke_other_sessions(
    body: RevokeOthersRequest | None = None,
    principal: Principal = Depends(get_current_principal),
    manager: SessionManager = Depends(get_session_manager),
):
    """Log out every other device, keeping the current session by default."""
    keep_session_id = (body.keep_session_id if body else None) or principal.session.id
    if keep_session_id != principal.session.id:
        active_ids = {summary.id for summary in manager.list_sessions(principal.user_id)}
        if keep_session_id not in active_ids:
            raise NotFoundError("Session not found")

    revoked = manager.revoke_all_sessions(principal.user_id, keep_session_id=keep_session_id)
    return RevokeOthersResponse(message="Other sessions revoked", revoked=revoked)


@router.post("/revoke-all", response_model=RevokeOthersResponse)
def revoke_all_sessions(
    response: Response,
    settings: Settings = Depends(get_settings),
    principal: Principal = Depends(get_current_principal),
    manager: SessionManager = Depends(get_session_manager),
):
    """Log out everywhere, including the current session."""
    revoked = manager.revoke_all_sessions(principal.user_id)
    clear_refresh_cookies(response, settings)
    return RevokeOthersResponse(message="All sessions revoked", revoked=revoked)
