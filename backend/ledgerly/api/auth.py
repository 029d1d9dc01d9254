"""OTP authentication endpoints."""
from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.orm import Session

from ledgerly.api.deps import (
    get_client_meta,
    get_clock,
    get_db,
    get_otp_service,
    get_request_ip,
    get_session_manager,
    get_settings,
)
from ledgerly.api.transport import set_refresh_cookies
from ledgerly.clock import Clock
from ledgerly.config import Settings
from ledgerly.schemas.auth import OtpSendRequest, OtpSendResponse, OtpVerifyRequest, Token
from ledgerly.services.errors import UnauthorizedError
from ledgerly.services.otp import OtpService
from ledgerly.services.sessions import SessionManager
from ledgerly.services.users import get_or_create_user

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/otp/send", response_model=OtpSendResponse, response_model_exclude_none=True)
def send_otp(
    payload: OtpSendRequest,
    request: Request,
    otp_service: OtpService = Depends(get_otp_service),
):
    """Issue a one-time code. The response is identical for known and unknown targets."""
    issued = otp_service.issue_challenge(
        payload.channel,
        payload.target,
        ip_address=get_request_ip(request),
    )
    return OtpSendResponse(
        challenge_id=issued.challenge_id,
        expires_at=issued.expires_at,
        otp=issued.code,
    )


@router.post("/otp/verify", response_model=Token, response_model_exclude_none=True)
def verify_otp(
    payload: OtpVerifyRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
    otp_service: OtpService = Depends(get_otp_service),
    manager: SessionManager = Depends(get_session_manager),
):
    """Verify a code, sign the user up on first sight, and open a session."""
    ip_address = get_request_ip(request)
    challenge = otp_service.verify_challenge(
        payload.channel,
        payload.target,
        payload.code,
        ip_address=ip_address,
    )

    user, _ = get_or_create_user(
        db,
        settings,
        challenge.channel,
        challenge.target,
        user_from=request.headers.get("x-user-from") or payload.user_from,
        ip_address=ip_address,
        clock=clock,
    )
    if not user.is_active:
        raise UnauthorizedError("Account disabled")

    issued = manager.create_session(user, get_client_meta(request))

    # Browsers get the refresh token as an HttpOnly cookie, never in the body.
    if request.headers.get("x-client", "").lower() == "web":
        set_refresh_cookies(response, issued.refresh_token, settings)
        return Token(
            access_token=issued.access_token,
            session_id=issued.session.id,
            user_id=user.user_id,
            expires_at=issued.session.expires_at,
        )

    return Token(
        access_token=issued.access_token,
        refresh_token=issued.refresh_token,
        session_id=issued.session.id,
        user_id=user.user_id,
        expires_at=issued.session.expires_at,
    )
