"""Authentication/session models."""
import uuid

from sqlalchemy import Column, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship

from ledgerly.clock import Clock
from ledgerly.database import Base

_clock = Clock()


class UserSession(Base):
    """One authenticated device/client session, rotated in place on refresh."""

    __tablename__ = "user_sessions"
    __table_args__ = (
        Index("ix_user_sessions_user_active", "user_id", "revoked_at"),
        Index("ix_user_sessions_expires_at", "expires_at"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(16), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False, index=True)
    refresh_token_hash = Column(String(60))
    refresh_token_lookup = Column(String(64), index=True)  # HMAC fingerprint, never reversible
    session_version = Column(Integer, nullable=False, default=1)
    device = Column(String(255))
    platform = Column(String(255))
    ip_address = Column(String(45))
    created_at = Column(String(26), nullable=False, default=_clock.now_iso)
    last_used_at = Column(String(26))
    expires_at = Column(String(26), nullable=False)
    absolute_expires_at = Column(String(26), nullable=False)  # fixed at creation, never extended
    revoked_at = Column(String(26))
    revoke_reason = Column(String(64))

    user = relationship("User", back_populates="sessions")
    revoked_tokens = relationship("RevokedRefreshToken", back_populates="session", passive_deletes=True)


class RevokedRefreshToken(Base):
    """A refresh-token hash superseded by rotation, kept for reuse detection."""

    __tablename__ = "revoked_refresh_tokens"
    __table_args__ = (
        Index("ix_revoked_refresh_tokens_created_at", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(String(36), ForeignKey("user_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    token_hash = Column(String(60), nullable=False)
    token_lookup = Column(String(64), nullable=False, index=True)
    created_at = Column(String(26), nullable=False, default=_clock.now_iso)

    session = relationship("UserSession", back_populates="revoked_tokens")
