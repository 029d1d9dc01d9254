"""Session management schemas."""
from pydantic import BaseModel, ConfigDict


class SessionResponse(BaseModel):
    """Session metadata. Token hashes never leave the server."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    session_version: int
    device: str | None = None
    platform: str | None = None
    ip_address: str | None = None
    created_at: str
    last_used_at: str | None = None
    expires_at: str
    absolute_expires_at: str | None = None
    revoked_at: str | None = None
    revoke_reason: str | None = None
    active: bool
    current: bool = False


class SessionListResponse(BaseModel):
    success: bool = True
    sessions: list[SessionResponse]


class RevokeOthersRequest(BaseModel):
    """Defaults to keeping the caller's current session."""

    keep_session_id: str | None = None


class RevokeOthersResponse(BaseModel):
    success: bool = True
    message: str
    revoked: int
