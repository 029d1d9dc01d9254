"""OTP challenge model."""
import uuid

from sqlalchemy import Column, Index, Integer, String

from ledgerly.clock import Clock
from ledgerly.database import Base

_clock = Clock()


class OtpChallenge(Base):
    """A single one-time-code window for a (channel, target) pair.

    Only a bcrypt hash of the code is stored. There is deliberately no foreign
    key to ``users``: challenges precede user resolution.
    """

    __tablename__ = "otp_challenges"
    __table_args__ = (
        Index("ix_otp_challenges_identity_active", "channel", "target", "consumed_at", "created_at"),
        Index("ix_otp_challenges_expires_at", "expires_at"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    channel = Column(String(8), nullable=False)  # PHONE | EMAIL
    target = Column(String(255), nullable=False)
    code_hash = Column(String(60), nullable=False)
    expires_at = Column(String(26), nullable=False)
    consumed_at = Column(String(26))
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(String(26), nullable=False, default=_clock.now_iso)
