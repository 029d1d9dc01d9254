"""Authentication schemas."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class OtpSendRequest(BaseModel):
    """OTP send request."""

    channel: str = Field(..., max_length=8)  # PHONE or EMAIL
    target: str = Field(..., min_length=1, max_length=255)


class OtpSendResponse(BaseModel):
    """OTP send response. ``otp`` is only present in diagnostic mode."""

    success: bool = True
    message: str = "OTP sent"
    challenge_id: str
    expires_at: datetime
    otp: str | None = None


class OtpVerifyRequest(BaseModel):
    """OTP verification request."""

    channel: str = Field(..., max_length=8)
    target: str = Field(..., min_length=1, max_length=255)
    code: str = Field(..., max_length=16)
    user_from: str | None = Field(default=None, max_length=16)


class Token(BaseModel):
    """Token response. ``refresh_token`` is omitted for cookie delivery."""

    success: bool = True
    access_token: str
    refresh_token: str | None = None
    token_type: str = "bearer"
    session_id: str | None = None
    user_id: str | None = None
    expires_at: str | None = None


class TokenRefresh(BaseModel):
    """Token refresh request (native clients only)."""

    refresh_token: str | None = None


class UserResponse(BaseModel):
    """User info response."""

    model_config = ConfigDict(from_attributes=True)

    user_id: str
    phone_number: str | None = None
    email: str | None = None
    is_active: bool
    is_verified: bool
    kyc_status: str
    role: str
    created_at: str


class MessageResponse(BaseModel):
    """Generic message response."""

    success: bool = True
    message: str


class ErrorResponse(BaseModel):
    """Error envelope with a stable machine-readable code."""

    success: bool = False
    code: str
    message: str
